"""
Multi-view triangulation module.

Reconstructs 3D coordinates of points observed by two or more calibrated
cameras. Every camera pair produces its own estimate by intersecting the
viewing rays, and the final result is the mean of all valid pairwise
estimates.

Coordinate System:
    Results are expressed in the reference frame of the first added
    camera. calculate_world_points() maps them to the world frame.

Usage:
    The triangulator is filled once in a setup phase (add_camera) and then
    used repeatedly (calculate_3d_points). The triangulation methods do not
    modify the camera registry and may be called concurrently once setup
    is complete.
"""

import numpy as np
from typing import List, Sequence
import logging

from .camera import undistort
from .config import CameraParameters
from .errors import CalibrationError
from .transforms import (
    RelativePosition,
    calculate_relative_position,
    camera_to_world_coordinates,
)

logger = logging.getLogger(__name__)


class StereoTriangulator:
    """
    Triangulates 3D points from the image points of N calibrated cameras.

    For every pair of cameras (i, j) with i < j, the relative position of
    camera j with respect to camera i is computed when camera j is added
    and cached. positions[i][0] is the pose of camera i with respect to
    the world, positions[i][k] (k > 0) is the pose of camera i+k with
    respect to camera i.

    Example usage:
        triangulator = StereoTriangulator()
        triangulator.add_camera(left_intrinsic, left_extrinsic)
        triangulator.add_camera(right_intrinsic, right_extrinsic)
        points_3d = triangulator.calculate_3d_points([left_points, right_points])
    """

    def __init__(self):
        self._cameras: List[CameraParameters] = []
        self._positions: List[List[RelativePosition]] = []

    @property
    def camera_count(self) -> int:
        return len(self._cameras)

    def add_camera(
        self,
        intrinsic: CameraParameters,
        extrinsic: RelativePosition,
    ) -> None:
        """
        Add a calibrated camera.

        Args:
            intrinsic: Intrinsic parameters of the camera
            extrinsic: Pose of the camera with respect to the world frame
        """
        self._cameras.append(intrinsic)
        for positions in self._positions:
            positions.append(calculate_relative_position(positions[0], extrinsic))
        self._positions.append([extrinsic])

        logger.debug(f"Added camera {len(self._cameras) - 1}: "
                     f"rotation {extrinsic.rotation}, translation {extrinsic.translation}")

    def relative_position(self, camera1: int, camera2: int) -> RelativePosition:
        """
        Get the pose of camera2 with respect to camera1.

        Args:
            camera1: Index of the reference camera
            camera2: Index of the other camera, camera2 >= camera1. If equal,
                the pose of the camera with respect to the world is returned.
        """
        if not 0 <= camera1 <= camera2 < len(self._cameras):
            raise IndexError(
                f"Invalid camera pair ({camera1}, {camera2}) for "
                f"{len(self._cameras)} cameras"
            )
        return self._positions[camera1][camera2 - camera1]

    def calculate_3d_points(self, image_points: Sequence[np.ndarray]) -> np.ndarray:
        """
        Triangulate 3D points from their image coordinates.

        Args:
            image_points: One Nx2 array of pixel coordinates per added camera,
                in the order the cameras were added. Row r of every array
                refers to the same physical point. A row with NaN marks a
                point not observed by that camera.

        Returns:
            Nx3 array of points in the first camera's reference frame. A
            point with no valid camera pair is NaN in all coordinates.

        Raises:
            CalibrationError: if the number or shape of the point sets is wrong
        """
        if len(image_points) != len(self._cameras):
            raise CalibrationError(
                f"Measurement points must be provided for all added cameras. "
                f"Expected {len(self._cameras)}, got {len(image_points)}."
            )
        if not self._cameras:
            return np.zeros((0, 3))

        image_points = [np.asarray(p, dtype=float) for p in image_points]
        for view, points in enumerate(image_points):
            if points.ndim != 2 or points.shape[1] != 2:
                dimension = points.shape[1] if points.ndim == 2 else points.ndim
                raise CalibrationError(
                    f"Measurement points must be 2-dimensional. "
                    f"View {view} is {dimension}-dimensional."
                )

        points_per_view = len(image_points[0])
        normalized = []
        for view, points in enumerate(image_points):
            if len(points) != points_per_view:
                raise CalibrationError(
                    f"Each view must have the same number of measurement points. "
                    f"View 0 has {points_per_view}, view {view} has {len(points)}"
                )
            # Normalized image coordinates with a fixed z coordinate
            normalized.append(undistort(points, self._cameras[view], 1.0))

        total = np.zeros((points_per_view, 3))
        valid_pairs = np.zeros(points_per_view, dtype=int)

        camera_count = len(self._cameras)
        for c1 in range(camera_count):
            for c2 in range(c1 + 1, camera_count):
                points_3d = self._triangulate(c1, c2, normalized[c1], normalized[c2])
                # Bring every estimate to the first camera's frame
                if c1 != 0:
                    points_3d = camera_to_world_coordinates(points_3d, self._positions[0][c1])

                valid = ~np.isnan(points_3d).any(axis=1)
                total[valid] += points_3d[valid]
                valid_pairs[valid] += 1

                logger.debug(f"Camera pair ({c1}, {c2}): {valid.sum()} of "
                             f"{points_per_view} points triangulated")

        result = np.full((points_per_view, 3), np.nan)
        found = valid_pairs > 0
        result[found] = total[found] / valid_pairs[found, np.newaxis]

        if not found.all():
            logger.warning(f"{np.count_nonzero(~found)} points could not be "
                           f"triangulated from any camera pair")

        return result

    def calculate_world_points(self, image_points: Sequence[np.ndarray]) -> np.ndarray:
        """
        Triangulate 3D points and express them in the world frame.

        Same as calculate_3d_points(), followed by a transformation from the
        first camera's frame to the world frame.
        """
        points = self.calculate_3d_points(image_points)
        if not self._cameras:
            return points
        return camera_to_world_coordinates(points, self._positions[0][0])

    def _triangulate(
        self,
        camera1: int,
        camera2: int,
        normalized_a: np.ndarray,
        normalized_b: np.ndarray,
    ) -> np.ndarray:
        """
        Intersect the viewing rays of two cameras.

        For each point, finds depths zA and zB such that zA*a (camera1 frame)
        and zB*b (camera2 frame) are the closest points on the two rays, and
        returns their midpoint in camera1's frame.

        Args:
            camera1: Index of the first camera
            camera2: Index of the second camera (camera2 > camera1)
            normalized_a: Nx3 normalized rays (z = 1) in camera1
            normalized_b: Nx3 normalized rays (z = 1) in camera2

        Returns:
            Nx3 array of points in camera1's reference frame
        """
        position = self._positions[camera1][camera2 - camera1]
        # Rigid motion between the cameras: X2 = R @ X1 + T
        R = position.rotation_matrix()
        T = position.translation

        a = normalized_a
        b = normalized_b
        # A's rays in B's coordinate system
        u = a @ R.T

        norm2_a = np.einsum('ij,ij->i', a, a)
        norm2_b = np.einsum('ij,ij->i', b, b)
        dot_ub = np.einsum('ij,ij->i', u, b)
        dot_uT = u @ T
        dot_bT = b @ T

        DD = norm2_a * norm2_b - dot_ub ** 2
        with np.errstate(divide='ignore', invalid='ignore'):
            z_a = (dot_ub * dot_bT - norm2_b * dot_uT) / DD
            z_b = (norm2_a * dot_bT - dot_uT * dot_ub) / DD

        X1 = a * z_a[:, np.newaxis]
        X2 = (b * z_b[:, np.newaxis] - T) @ R

        return (X1 + X2) * 0.5
