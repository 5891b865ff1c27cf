"""
Tests for calibration point search module.

A planar pentagon is projected into a synthetic camera and mixed with
spurious detections. The search must recover the pentagon regardless of
detection order.
"""

import threading

import pytest
import numpy as np
from numpy.testing import assert_allclose

from stereocal.camera import world_to_pixel_coordinates
from stereocal.config import CameraParameters, PointFinderSettings
from stereocal.errors import CalibrationError
from stereocal.point_finder import (
    BATCH_SIZE_PER_WORKER,
    CalibrationPointFinder,
    order_counter_clockwise,
    pairwise_squared_distances,
)
from stereocal.transforms import RelativePosition


@pytest.fixture
def intrinsic():
    return CameraParameters(fx=1000.0, fy=1000.0, cx=320.0, cy=240.0)


@pytest.fixture
def world_points():
    """Pentagon on the z = 0 plane, listed counter-clockwise."""
    return np.array([
        [0.0, 0.0, 0.0],
        [60.0, -10.0, 0.0],
        [100.0, 40.0, 0.0],
        [50.0, 90.0, 0.0],
        [-10.0, 50.0, 0.0],
    ])


@pytest.fixture
def pose():
    """Camera looking at the pattern from the +z side."""
    return RelativePosition([2.9, 0.1, 0.05], [-40.0, 40.0, 1000.0])


@pytest.fixture
def pattern(world_points, pose, intrinsic):
    return world_to_pixel_coordinates(world_points, pose, intrinsic)


@pytest.fixture
def detections(pattern):
    """Pattern points followed by a nearby distractor and a far outlier."""
    return np.vstack([pattern, [[300.0, 340.0], [5.0, 5.0]]])


class TestHelpers:

    def test_pairwise_squared_distances(self):
        points = np.array([[0.0, 0.0], [3.0, 4.0], [0.0, 1.0]])
        distances = pairwise_squared_distances(points)

        assert_allclose(distances, [[0, 25, 1], [25, 0, 18], [1, 18, 0]])

    def test_order_counter_clockwise(self):
        """In pixel coordinates y points down."""
        square = np.array([[10.0, 10.0], [20.0, 10.0], [20.0, 20.0], [10.0, 20.0]])
        assert order_counter_clockwise(square, (0, 1, 2, 3)) == (3, 2, 1, 0)

    def test_order_uses_given_indices(self):
        points = np.array([[0.0, 0.0], [10.0, 10.0], [99.0, 99.0],
                           [20.0, 10.0], [20.0, 20.0], [10.0, 20.0]])
        assert order_counter_clockwise(points, (1, 3, 4, 5)) == (5, 4, 3, 1)


class TestCalibrationPointFinder:
    """Tests for the search."""

    def test_initial_state(self):
        finder = CalibrationPointFinder()

        assert finder.min_error == float('inf')
        assert finder.selected_points().shape == (0, 2)

    def test_distance_properties(self):
        finder = CalibrationPointFinder(min_distance=3.0, max_distance=40.0)
        assert finder.min_distance == pytest.approx(3.0)
        assert finder.max_distance == pytest.approx(40.0)

        finder.max_distance = 25.0
        assert finder.max_distance == pytest.approx(25.0)

    def test_from_settings(self):
        finder = CalibrationPointFinder.from_settings(PointFinderSettings(2.0, 50.0), workers=3)

        assert finder.min_distance == pytest.approx(2.0)
        assert finder.max_distance == pytest.approx(50.0)
        assert finder.workers == 3

    def test_exact_pattern(self, world_points, pattern, pose, intrinsic):
        finder = CalibrationPointFinder()
        result = finder.calculate_camera_position(world_points, pattern, intrinsic)

        assert_allclose(result.rotation, pose.rotation, atol=1e-6)
        assert_allclose(result.translation, pose.translation, atol=1e-3)
        assert finder.min_error < 1e-12
        assert_allclose(finder.selected_points(), pattern, atol=1e-9)

    def test_with_spurious_detections(self, world_points, detections, pattern, pose, intrinsic):
        finder = CalibrationPointFinder(max_distance=300.0)
        result = finder.calculate_camera_position(world_points, detections, intrinsic)

        assert_allclose(result.rotation, pose.rotation, atol=1e-6)
        assert_allclose(result.translation, pose.translation, atol=1e-3)
        assert_allclose(finder.selected_points(), pattern, atol=1e-9)

    def test_detection_order_is_irrelevant(self, world_points, detections, pattern, intrinsic):
        finder = CalibrationPointFinder(max_distance=300.0)
        expected = finder.calculate_camera_position(world_points, detections, intrinsic)
        expected_error = finder.min_error

        rng = np.random.default_rng(3)
        shuffled = detections[rng.permutation(len(detections))]
        result = finder.calculate_camera_position(world_points, shuffled, intrinsic)

        assert finder.min_error == pytest.approx(expected_error, abs=1e-12)
        assert_allclose(result.rotation, expected.rotation, atol=1e-6)
        assert_allclose(result.translation, expected.translation, atol=1e-3)
        assert_allclose(finder.selected_points(), pattern, atol=1e-9)

    def test_starting_world_point_is_irrelevant(self, world_points, detections, pattern, pose, intrinsic):
        finder = CalibrationPointFinder(max_distance=300.0)
        shifted = np.roll(world_points, 2, axis=0)
        result = finder.calculate_camera_position(shifted, detections, intrinsic)

        assert_allclose(result.rotation, pose.rotation, atol=1e-6)
        assert_allclose(result.translation, pose.translation, atol=1e-3)
        assert_allclose(finder.selected_points(), np.roll(pattern, 2, axis=0), atol=1e-9)

    def test_thread_pool_gives_same_result(self, world_points, detections, intrinsic):
        serial = CalibrationPointFinder(max_distance=300.0)
        expected = serial.calculate_camera_position(world_points, detections, intrinsic)

        parallel = CalibrationPointFinder(max_distance=300.0, workers=2)
        result = parallel.calculate_camera_position(world_points, detections, intrinsic)

        assert parallel.min_error == pytest.approx(serial.min_error, abs=1e-12)
        assert_allclose(result.rotation, expected.rotation, atol=1e-9)
        assert_allclose(parallel.selected_points(), serial.selected_points())

    def test_nan_detections_are_ignored(self, world_points, pattern, pose, intrinsic):
        detections = np.vstack([[[np.nan, np.nan]], pattern, [[np.nan, 12.0]]])
        finder = CalibrationPointFinder()
        result = finder.calculate_camera_position(world_points, detections, intrinsic)

        assert_allclose(result.rotation, pose.rotation, atol=1e-6)

    def test_too_few_detections_raises(self, world_points, pattern, intrinsic):
        finder = CalibrationPointFinder()

        with pytest.raises(CalibrationError, match="less than the number of reference points"):
            finder.calculate_camera_position(world_points, pattern[:4], intrinsic)

    def test_nan_detections_do_not_count(self, world_points, pattern, intrinsic):
        detections = pattern.copy()
        detections[0] = np.nan
        finder = CalibrationPointFinder()

        with pytest.raises(CalibrationError, match="less than"):
            finder.calculate_camera_position(world_points, detections, intrinsic)

    def test_no_admissible_combination_raises(self, world_points, detections, intrinsic):
        finder = CalibrationPointFinder(min_distance=1000.0)

        with pytest.raises(CalibrationError, match="No combination"):
            finder.calculate_camera_position(world_points, detections, intrinsic)

        assert finder.min_error == float('inf')

    def test_all_candidates_unusable_raises(self, world_points, pattern, intrinsic):
        finder = CalibrationPointFinder()
        finder._score = lambda indices: (float('inf'), indices, RelativePosition())

        with pytest.raises(CalibrationError, match="No combination"):
            finder.calculate_camera_position(world_points, pattern, intrinsic)

        assert finder.selected_points().shape == (0, 2)


class TestOutlierPruning:
    """Tests for the nearest-neighbour pre-filter."""

    def test_isolated_detection_is_dropped(self):
        points = np.array([[0.0, 0.0], [3.0, 0.0], [0.0, 4.0], [100.0, 100.0]])
        finder = CalibrationPointFinder(max_distance=10.0)

        kept, distances = finder._prune_outliers(points)

        assert_allclose(kept, points[:3])
        assert distances.shape == (3, 3)
        assert_allclose(distances, pairwise_squared_distances(points[:3]))

    def test_tight_cluster_is_kept(self):
        """A point's zero distance to itself does not make it a neighbour."""
        points = np.array([[0.0, 0.0], [6.0, 8.0]])

        kept, _ = CalibrationPointFinder(max_distance=10.0)._prune_outliers(points)
        assert len(kept) == 2

        kept, _ = CalibrationPointFinder(max_distance=9.0)._prune_outliers(points)
        assert len(kept) == 0

    def test_dropped_detections_are_logged(self, caplog):
        points = np.array([[0.0, 0.0], [3.0, 0.0], [100.0, 100.0]])

        with caplog.at_level("WARNING", logger="stereocal.point_finder"):
            CalibrationPointFinder(max_distance=10.0)._prune_outliers(points)

        assert "Discarding 1 outlier" in caplog.text

    def test_search_pool_excludes_outlier(self, world_points, pattern, intrinsic):
        detections = np.vstack([pattern, [[2000.0, 2000.0]]])
        finder = CalibrationPointFinder(max_distance=300.0)

        finder.calculate_camera_position(world_points, detections, intrinsic)

        assert len(finder._image_points) == len(pattern)


class CountingFinder(CalibrationPointFinder):
    """Records how many candidates were enumerated but not yet scored."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._lock = threading.Lock()
        self.yielded = 0
        self.scored = 0
        self.peak_pending = 0

    def _candidate_orderings(self, distances):
        for candidate in super()._candidate_orderings(distances):
            with self._lock:
                self.yielded += 1
                self.peak_pending = max(self.peak_pending, self.yielded - self.scored)
            yield candidate

    def _score(self, indices):
        result = super()._score(indices)
        with self._lock:
            self.scored += 1
        return result


class TestThreadPoolBatching:
    """Scoring in a pool keeps the enumeration lazy."""

    @pytest.fixture
    def crowded_detections(self, pattern):
        rng = np.random.default_rng(11)
        distractors = pattern.mean(axis=0) + rng.uniform(-80, 80, size=(3, 2))
        return np.vstack([pattern, distractors])

    def test_pending_candidates_are_bounded(self, world_points, crowded_detections, intrinsic):
        finder = CountingFinder(workers=1)
        finder.calculate_camera_position(world_points, crowded_detections, intrinsic)

        # C(8, 5) subsets with 5 rotations each
        assert finder.yielded == 280
        assert finder.scored == finder.yielded
        assert finder.peak_pending <= BATCH_SIZE_PER_WORKER

    def test_batched_result_matches_serial(self, world_points, crowded_detections, pattern, intrinsic):
        serial = CalibrationPointFinder()
        expected = serial.calculate_camera_position(world_points, crowded_detections, intrinsic)

        batched = CalibrationPointFinder(workers=3)
        result = batched.calculate_camera_position(world_points, crowded_detections, intrinsic)

        assert batched.min_error == pytest.approx(serial.min_error, abs=1e-12)
        assert_allclose(result.rotation, expected.rotation)
        assert_allclose(batched.selected_points(), pattern, atol=1e-9)
