"""
Camera model module for projecting 3D points to image coordinates and back.

Implements the pinhole camera model with lens distortion and its inverse.

Coordinate System:
    - Camera frame: X-right, Y-down, Z forward (looking along +Z)
    - Image frame: u-right, v-down (origin at top-left corner)

Projection Model:
    1. Perspective projection: x' = X/Z, y' = Y/Z
    2. Distortion: apply radial and tangential distortion
    3. Pixel mapping: u = fx*x'' + cx, v = fy*y'' + cy

The distortion model follows the OpenCV convention restricted to four
coefficients:
    r² = x'² + y'²
    x'' = x'(1 + k1*r² + k2*r⁴) + 2*p1*x'*y' + p2*(r² + 2*x'²)
    y'' = y'(1 + k1*r² + k2*r⁴) + p1*(r² + 2*y'²) + 2*p2*x'*y'

Missing observations are represented by NaN coordinates. NaN propagates
through every function in this module.
"""

import numpy as np
from typing import Tuple
from scipy.optimize import least_squares
import logging

from .config import CameraParameters
from .errors import CalibrationError
from .transforms import RelativePosition, world_to_camera_coordinates

logger = logging.getLogger(__name__)


def has_distortion(intrinsic: CameraParameters) -> bool:
    """Return True if any distortion coefficient is non-zero."""
    return not np.allclose(intrinsic.distortion_coefficients(), 0)


def normalized_to_distorted(intrinsic: CameraParameters, x, y) -> Tuple:
    """
    Apply lens distortion to normalized coordinates.

    Works element-wise on scalars and arrays.

    Args:
        intrinsic: Camera parameters holding the distortion coefficients
        x: Normalized x coordinate(s) (X/Z)
        y: Normalized y coordinate(s) (Y/Z)

    Returns:
        Distorted (x, y) normalized coordinates
    """
    x2 = x * x
    y2 = y * y
    xy = x * y
    r2 = x2 + y2

    # Radial distortion is approximated up to 4th order
    radial = 1.0 + intrinsic.k1 * r2 + intrinsic.k2 * r2 * r2

    x_tangential = 2 * intrinsic.p1 * xy + intrinsic.p2 * (r2 + 2 * x2)
    y_tangential = intrinsic.p1 * (r2 + 2 * y2) + 2 * intrinsic.p2 * xy

    return x * radial + x_tangential, y * radial + y_tangential


def normalized_point_to_pixel(intrinsic: CameraParameters, x, y) -> Tuple:
    """
    Map normalized coordinates to (distorted) pixel coordinates.

    Works element-wise on scalars and arrays.
    """
    x_dist, y_dist = normalized_to_distorted(intrinsic, x, y)
    return (intrinsic.fx * x_dist + intrinsic.cx,
            intrinsic.fy * y_dist + intrinsic.cy)


def undistort_point(
    intrinsic: CameraParameters,
    x: float,
    y: float,
) -> Tuple[float, float]:
    """
    Remove distortion from a pixel coordinate.

    The result is the normalized (undistorted) coordinate whose distorted
    pixel projection is (x, y). It is found by minimizing the squared
    pixel-space residual with Levenberg-Marquardt, starting from the
    distortion-free guess ((x - cx)/fx, (y - cy)/fy). Termination is
    governed by the solver's own convergence criteria.

    Args:
        intrinsic: Camera intrinsic parameters
        x: Distorted x pixel coordinate
        y: Distorted y pixel coordinate

    Returns:
        Undistorted normalized (x, y). (nan, nan) if either input is NaN.
    """
    if np.isnan(x) or np.isnan(y):
        return np.nan, np.nan

    initial = np.array([
        (x - intrinsic.cx) / intrinsic.fx,
        (y - intrinsic.cy) / intrinsic.fy
    ])

    if not has_distortion(intrinsic):
        return float(initial[0]), float(initial[1])

    def residuals(params):
        u, v = normalized_point_to_pixel(intrinsic, params[0], params[1])
        return np.array([u - x, v - y])

    result = least_squares(
        residuals,
        initial,
        method='lm',
        xtol=1e-12,
        ftol=1e-12,
        gtol=1e-12,
    )

    return float(result.x[0]), float(result.x[1])


def undistort(
    distorted: np.ndarray,
    intrinsic: CameraParameters,
    z_value: float = np.nan,
) -> np.ndarray:
    """
    Remove lens distortion from a set of pixel coordinates.

    Args:
        distorted: Nx2 array of distorted pixel coordinates
        intrinsic: Camera intrinsic parameters
        z_value: If not NaN, a constant third column with this value is
            appended to the result

    Returns:
        Nx2 (or Nx3) array of undistorted normalized coordinates
    """
    points = np.asarray(distorted, dtype=float)
    if points.ndim != 2 or points.shape[1] != 2:
        raise CalibrationError(
            f"Distorted coordinates must be represented by a N-by-2 matrix. "
            f"{'-by-'.join(str(s) for s in points.shape)} was given."
        )

    n_columns = 2 if np.isnan(z_value) else 3
    result = np.empty((len(points), n_columns))
    if n_columns == 3:
        result[:, 2] = z_value

    for row, (x, y) in enumerate(points):
        result[row, 0], result[row, 1] = undistort_point(intrinsic, x, y)

    return result


def normalized_to_pixel_coordinates(
    points: np.ndarray,
    intrinsic: CameraParameters,
) -> np.ndarray:
    """
    Convert normalized coordinates to pixel coordinates.

    Applies lens distortion, multiplies by the focal length and adds the
    principal point.

    Args:
        points: Nx2 array of normalized coordinates (extra columns are ignored)
        intrinsic: Camera intrinsic parameters

    Returns:
        Nx2 array of pixel coordinates
    """
    points = np.asarray(points, dtype=float)
    u, v = normalized_point_to_pixel(intrinsic, points[:, 0], points[:, 1])
    return np.column_stack([u, v])


def perspective_projection(
    points: np.ndarray,
    z_value: float = np.nan,
) -> np.ndarray:
    """
    Project 3D points onto the z = 1 plane.

    Args:
        points: Nx3 array of points in camera frame
        z_value: If not NaN, a constant third column with this value is
            kept in the result

    Returns:
        Nx2 (or Nx3) array of (X/Z, Y/Z[, z_value])
    """
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    projected = points[:, :2] / points[:, 2:3]
    if np.isnan(z_value):
        return projected
    return np.column_stack([projected, np.full(len(points), z_value)])


def camera_to_pixel_coordinates(
    points: np.ndarray,
    intrinsic: CameraParameters,
) -> np.ndarray:
    """
    Project points in camera frame to pixel coordinates.

    Args:
        points: Nx3 array of camera frame coordinates
        intrinsic: Camera intrinsic parameters

    Returns:
        Nx2 array of pixel coordinates
    """
    return normalized_to_pixel_coordinates(perspective_projection(points), intrinsic)


def world_to_pixel_coordinates(
    points: np.ndarray,
    extrinsic: RelativePosition,
    intrinsic: CameraParameters,
) -> np.ndarray:
    """
    Project world points to pixel coordinates of a calibrated camera.

    Args:
        points: Nx3 array of world coordinates
        extrinsic: Pose of the camera with respect to the world
        intrinsic: Camera intrinsic parameters

    Returns:
        Nx2 array of pixel coordinates
    """
    return camera_to_pixel_coordinates(
        world_to_camera_coordinates(points, extrinsic), intrinsic
    )
