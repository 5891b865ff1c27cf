"""
Lens distortion removal for whole images.

An undistortion map tells, for each pixel of the corrected output image,
where to sample the distorted input image. The output covers the bounding
box of the undistorted image corners and has the same size as the input.

Two map flavors are supported:
    - double maps: sub-pixel source coordinates, used with bilinear
      interpolation
    - int maps: source coordinates rounded to the nearest pixel, used with
      nearest-neighbour sampling
"""

import numpy as np
from typing import Callable, Optional, Tuple
from scipy.ndimage import map_coordinates
import logging

from .camera import undistort, normalized_point_to_pixel
from .config import CameraParameters
from .errors import CalibrationError

logger = logging.getLogger(__name__)

# A rounding policy maps an array of float coordinates to the stored type
RoundingPolicy = Callable[[np.ndarray], np.ndarray]


def identity(values: np.ndarray) -> np.ndarray:
    return values


def round_to_int(values: np.ndarray) -> np.ndarray:
    return np.rint(values).astype(int)


def undistort_map(
    rows: int,
    columns: int,
    intrinsic: CameraParameters,
    rounding: RoundingPolicy = identity,
) -> np.ndarray:
    """
    Create a coordinate map that removes lens distortion.

    The four image corners are undistorted to find the extent of the
    corrected image in normalized coordinates. This extent is divided
    evenly into rows x columns cells, and each cell is mapped back to
    distorted pixel coordinates.

    Args:
        rows: Number of image rows
        columns: Number of image columns
        intrinsic: Camera intrinsic parameters
        rounding: Applied to the source coordinates before storing them

    Returns:
        rows x columns x 2 array. Element [r, c] holds the (x, y) source
        coordinate in the distorted image for output pixel (r, c).
    """
    corners = np.array([
        [0.0, 0.0],
        [0.0, rows - 1.0],
        [columns - 1.0, rows - 1.0],
        [columns - 1.0, 0.0]
    ])

    undistorted_corners = undistort(corners, intrinsic)
    min_corner = undistorted_corners.min(axis=0)
    max_corner = undistorted_corners.max(axis=0)

    x_step = (max_corner[0] - min_corner[0]) / columns
    y_step = (max_corner[1] - min_corner[1]) / rows

    logger.debug(f"Undistorted extent: {min_corner} - {max_corner}, "
                 f"step ({x_step}, {y_step})")

    x = min_corner[0] + np.arange(columns) * x_step
    y = min_corner[1] + np.arange(rows) * y_step
    grid_x, grid_y = np.meshgrid(x, y)

    source_x, source_y = normalized_point_to_pixel(intrinsic, grid_x, grid_y)

    return np.stack([rounding(source_x), rounding(source_y)], axis=-1)


def undistort_map_int(
    rows: int,
    columns: int,
    intrinsic: CameraParameters,
) -> np.ndarray:
    """Create an undistortion map with source coordinates rounded to integers."""
    return undistort_map(rows, columns, intrinsic, round_to_int)


class ImageUndistorter:
    """
    Removes lens distortion from images.

    The coordinate map is computed lazily for the size of the first image
    and reused as long as the image size and camera parameters stay the
    same. If the principal point is NaN, the center of the image is used.

    Example usage:
        undistorter = ImageUndistorter(CameraParameters(fx=1000, fy=1000,
                                                        cx=np.nan, cy=np.nan,
                                                        k1=-0.2))
        corrected = undistorter.undistort(image)
    """

    INTERPOLATIONS = ('linear', 'nearest')

    def __init__(
        self,
        intrinsic: CameraParameters,
        interpolation: str = 'linear',
    ):
        """
        Initialize the undistorter.

        Args:
            intrinsic: Camera intrinsic parameters
            interpolation: 'linear' for bilinear sampling, 'nearest' for
                nearest-neighbour sampling
        """
        self._intrinsic = CameraParameters(**intrinsic.to_dict())
        self._check_parameters()
        self.interpolation = interpolation
        self._map: Optional[np.ndarray] = None
        self._map_shape: Optional[Tuple[int, int]] = None

    @property
    def interpolation(self) -> str:
        return self._interpolation

    @interpolation.setter
    def interpolation(self, value: str) -> None:
        if value not in self.INTERPOLATIONS:
            raise ValueError(
                f"Unknown interpolation '{value}', expected one of {self.INTERPOLATIONS}"
            )
        self._interpolation = value
        self.invalidate()

    @property
    def intrinsic(self) -> CameraParameters:
        return self._intrinsic

    def set_camera_parameters(self, values) -> None:
        """
        Set all camera parameters at once.

        Args:
            values: [fx, fy, cx, cy, k1, k2, p1, p2]
        """
        self._intrinsic = CameraParameters.from_vector(values)
        self._check_parameters()
        self.invalidate()

    def camera_parameters(self) -> np.ndarray:
        """Return [fx, fy, cx, cy, k1, k2, p1, p2]."""
        return self._intrinsic.to_vector()

    def invalidate(self) -> None:
        """Discard the cached coordinate map."""
        self._map = None
        self._map_shape = None

    def _check_parameters(self) -> None:
        values = [self._intrinsic.fx, self._intrinsic.fy,
                  self._intrinsic.k1, self._intrinsic.k2,
                  self._intrinsic.p1, self._intrinsic.p2]
        if np.any(np.isnan(values)):
            raise CalibrationError("Camera parameters cannot be NaNs.")

    def coordinate_map(self, rows: int, columns: int) -> np.ndarray:
        """Return the (cached) coordinate map for an image of the given size."""
        if self._map is None or self._map_shape != (rows, columns):
            intrinsic = CameraParameters(**self._intrinsic.to_dict())
            if np.isnan(intrinsic.cx):
                intrinsic.cx = columns // 2 - 0.5
            if np.isnan(intrinsic.cy):
                intrinsic.cy = rows // 2 - 0.5

            logger.debug(f"Computing {self._interpolation} undistortion map "
                         f"for {rows}x{columns} image")
            if self._interpolation == 'linear':
                self._map = undistort_map(rows, columns, intrinsic)
            else:
                self._map = undistort_map_int(rows, columns, intrinsic)
            self._map_shape = (rows, columns)
        return self._map

    def undistort(self, image: np.ndarray) -> np.ndarray:
        """
        Remove lens distortion from an image.

        Args:
            image: 2-D grey-level or 3-D channel-last image

        Returns:
            Corrected image of the same shape and dtype. Pixels that map
            outside of the input are zero.
        """
        image = np.asarray(image)
        if image.ndim not in (2, 3):
            raise ValueError(f"Expected a 2-D or 3-D image, got {image.ndim} dimensions")

        rows, columns = image.shape[:2]
        coords = self.coordinate_map(rows, columns)

        if image.ndim == 2:
            return self._remap(image, coords)

        channels = [self._remap(image[:, :, c], coords) for c in range(image.shape[2])]
        return np.stack(channels, axis=-1)

    def _remap(self, channel: np.ndarray, coords: np.ndarray) -> np.ndarray:
        if self._interpolation == 'linear':
            # map_coordinates takes (row, col) ordering
            sampled = map_coordinates(
                channel.astype(np.float64),
                [coords[:, :, 1], coords[:, :, 0]],
                order=1, mode='constant', cval=0.0,
            )
            if np.issubdtype(channel.dtype, np.integer):
                sampled = np.rint(sampled)
            return sampled.astype(channel.dtype)

        x = coords[:, :, 0]
        y = coords[:, :, 1]
        inside = (x >= 0) & (x < channel.shape[1]) & (y >= 0) & (y < channel.shape[0])
        result = np.zeros_like(channel)
        result[inside] = channel[y[inside], x[inside]]
        return result
