"""
Calibration point search module.

Finds the calibration pattern among a set of unreliable point detections.
Given K reference points with known world coordinates and M >= K detected
image points (in arbitrary order, possibly including spurious
detections), the search picks the K detections and their ordering that
best explain the reference arrangement, and returns the matching camera
pose.

Assumptions:
    - The reference points lie on a plane
    - World points are listed counter-clockwise around their center in a
      right-handed coordinate system, as seen by the camera

Search Strategy:
    1. Detections whose nearest neighbour is farther than max_distance are
       discarded as outliers.
    2. Every K-subset of the remaining detections is checked against the
       distance limits. All pairwise distances must be within
       [min_distance, max_distance].
    3. The points of an accepted subset are sorted counter-clockwise around
       their centroid. Every cyclic rotation of that order is tried as the
       correspondence to the world points.
    4. Each candidate correspondence is scored by solving the camera pose
       and summing squared reprojection errors in normalized coordinates.
       The lowest score wins.
"""

import numpy as np
from itertools import combinations, islice
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Iterator, Optional, Tuple
import logging

from .calibration import calculate_camera_position
from .camera import perspective_projection, undistort
from .config import CameraParameters, PointFinderSettings
from .errors import CalibrationError
from .transforms import RelativePosition, world_to_camera_coordinates

logger = logging.getLogger(__name__)

# (total squared error, point indices in world point order, camera pose)
Candidate = Tuple[float, Tuple[int, ...], RelativePosition]

# Candidates queued per worker thread at a time
BATCH_SIZE_PER_WORKER = 16


def pairwise_squared_distances(points: np.ndarray) -> np.ndarray:
    """Return the symmetric MxM matrix of squared distances between points."""
    diff = points[:, np.newaxis, :] - points[np.newaxis, :, :]
    return np.sum(diff ** 2, axis=-1)


def order_counter_clockwise(points: np.ndarray, indices: Tuple[int, ...]) -> Tuple[int, ...]:
    """
    Sort point indices counter-clockwise around the centroid of the points.

    Pixel coordinates are assumed, i.e. the y axis points down. Ties are
    broken by index.

    Args:
        points: Mx2 array of all points
        indices: Indices of the points to sort

    Returns:
        The indices ordered by increasing angle
    """
    selected = points[list(indices)]
    center = selected.mean(axis=0)
    angles = np.arctan2(center[1] - selected[:, 1], selected[:, 0] - center[0])
    return tuple(index for _, index in sorted(zip(angles.tolist(), indices)))


class CalibrationPointFinder:
    """
    Finds the detections that best match a known calibration pattern.

    Example usage:
        finder = CalibrationPointFinder(min_distance=5, max_distance=300)
        pose = finder.calculate_camera_position(world_points, detections, intrinsic)
        print(finder.min_error, finder.selected_points())
    """

    def __init__(
        self,
        min_distance: float = 0.0,
        max_distance: float = float('inf'),
        workers: Optional[int] = None,
    ):
        """
        Initialize the point finder.

        Args:
            min_distance: Minimum allowed distance (pixels) between two points
                of the pattern on the image plane. Cuts off too small
                detections.
            max_distance: Maximum allowed extent (pixels) of the whole pattern
                on the image plane. Cuts off detections that clearly deviate
                from the others.
            workers: If given, candidate correspondences are scored in a
                thread pool of this size
        """
        # Distances are compared squared
        self._min_distance2 = min_distance * min_distance
        self._max_distance2 = max_distance * max_distance
        self.workers = workers

        self._world_points = np.zeros((0, 3))
        self._image_points = np.zeros((0, 2))
        self._undistorted = np.zeros((0, 2))
        self._intrinsic: Optional[CameraParameters] = None
        self._point_count = 0
        self._best: Optional[Candidate] = None

    @classmethod
    def from_settings(cls, settings: PointFinderSettings, workers: Optional[int] = None):
        return cls(settings.min_distance, settings.max_distance, workers)

    @property
    def min_distance(self) -> float:
        return float(np.sqrt(self._min_distance2))

    @min_distance.setter
    def min_distance(self, value: float) -> None:
        self._min_distance2 = value * value

    @property
    def max_distance(self) -> float:
        return float(np.sqrt(self._max_distance2))

    @max_distance.setter
    def max_distance(self, value: float) -> None:
        self._max_distance2 = value * value

    @property
    def min_error(self) -> float:
        """Mean squared reprojection error per point of the best match."""
        if self._best is None:
            return float('inf')
        return self._best[0] / self._point_count

    def selected_points(self) -> np.ndarray:
        """
        Get the image coordinates of the selected calibration points.

        Returns:
            Kx2 array in the order of the world points. Empty (0x2) if no
            search has succeeded.
        """
        if self._best is None:
            return np.zeros((0, 2))
        return self._image_points[list(self._best[1])].copy()

    def calculate_camera_position(
        self,
        world_points: np.ndarray,
        image_points: np.ndarray,
        intrinsic: CameraParameters,
    ) -> RelativePosition:
        """
        Find the detections that best match the arrangement of world points.

        Args:
            world_points: Kx3 known coordinates of the calibration points
            image_points: Mx2 detected points in pixel coordinates, M >= K.
                The order is irrelevant. Rows with NaN are ignored.
            intrinsic: Intrinsic parameters of the camera

        Returns:
            Pose of the camera with respect to the world frame

        Raises:
            CalibrationError: if there are too few detections or no
                combination satisfies the distance limits
        """
        world_points = np.asarray(world_points, dtype=float)
        image_points = np.asarray(image_points, dtype=float).reshape(-1, 2)
        image_points = image_points[~np.isnan(image_points).any(axis=1)]

        if len(image_points) < len(world_points):
            raise CalibrationError(
                "The number of valid calibration points is less than the "
                "number of reference points."
            )

        self._world_points = world_points
        self._intrinsic = intrinsic
        self._point_count = len(world_points)
        self._best = None

        self._image_points, distances = self._prune_outliers(image_points)
        self._undistorted = undistort(self._image_points, intrinsic)

        candidates = self._candidate_orderings(distances)
        if self.workers:
            with ThreadPoolExecutor(max_workers=self.workers) as pool:
                scored = self._score_in_batches(pool, candidates)
                self._best = self._select_best(scored)
        else:
            self._best = self._select_best(map(self._score, candidates))

        if self._best is None:
            raise CalibrationError(
                "No combination of calibration point candidates satisfies "
                "the given restrictions."
            )

        logger.debug(f"Best match {self._best[1]} with mean error {self.min_error:.3e}")
        return self._best[2]

    def _prune_outliers(self, image_points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        distances = pairwise_squared_distances(image_points)

        # Closest neighbour of each point, ignoring the point itself
        neighbours = distances + np.diag(np.full(len(image_points), np.inf))
        nearest = neighbours.min(axis=0) if len(image_points) > 1 else np.zeros(len(image_points))
        keep = nearest <= self._max_distance2

        if not keep.all():
            logger.warning(f"Discarding {np.count_nonzero(~keep)} outlier detections")

        return image_points[keep], distances[np.ix_(keep, keep)]

    def _candidate_orderings(self, distances: np.ndarray) -> Iterator[Tuple[int, ...]]:
        """
        Yield every admissible correspondence as a tuple of point indices,
        the i'th index corresponding to the i'th world point.
        """
        k = self._point_count
        # All pairings within the pattern
        pairs = np.array(list(combinations(range(k), 2)), dtype=int).reshape(-1, 2)

        for combination in combinations(range(len(self._image_points)), k):
            indices = np.array(combination)
            pair_distances = distances[indices[pairs[:, 0]], indices[pairs[:, 1]]]
            # Too large/small structure -> can't be the right combination
            if np.any(pair_distances > self._max_distance2) or \
                    np.any(pair_distances < self._min_distance2):
                continue

            ordered = order_counter_clockwise(self._image_points, combination)
            # The starting point is unknown. Try all.
            for first in range(k):
                yield ordered[first:] + ordered[:first]

    def _score_in_batches(
        self,
        pool: ThreadPoolExecutor,
        candidates: Iterator[Tuple[int, ...]],
    ) -> Iterator[Candidate]:
        """
        Score candidates in the pool without draining the whole enumeration.

        At most workers * BATCH_SIZE_PER_WORKER candidates are pending at a
        time. Results are yielded in enumeration order.
        """
        batch_size = self.workers * BATCH_SIZE_PER_WORKER
        while True:
            batch = list(islice(candidates, batch_size))
            if not batch:
                return
            yield from pool.map(self._score, batch)

    @staticmethod
    def _select_best(scored: Iterable[Candidate]) -> Optional[Candidate]:
        # min() keeps the first of equal scores, i.e. the earliest candidate
        finite = (candidate for candidate in scored if np.isfinite(candidate[0]))
        return min(finite, key=lambda c: c[0], default=None)

    def _score(self, indices: Tuple[int, ...]) -> Candidate:
        position = calculate_camera_position(
            self._world_points, self._image_points[list(indices)], self._intrinsic
        )
        projected = perspective_projection(
            world_to_camera_coordinates(self._world_points, position)
        )
        error = float(np.sum((projected - self._undistorted[list(indices)]) ** 2))
        # Points projected behind or onto the camera plane
        if not np.isfinite(error):
            error = float('inf')
        return error, indices, position
