"""
Camera calibration module.

Estimates intrinsic camera parameters and per-view camera poses from
paired world/image point observations. The nonlinear optimization is
delegated to OpenCV:
    - cv2.calibrateCamera: Levenberg-Marquardt bundle adjustment over all
      views, refining intrinsic parameters and one pose per view
    - cv2.solvePnP: pose only, intrinsic parameters held fixed

The distortion model has four coefficients (k1, k2, p1, p2). OpenCV's third
radial term is always fixed to zero.
"""

import enum
import numpy as np
import cv2
from typing import List, Optional, Sequence
import logging

from .camera import world_to_pixel_coordinates
from .config import CameraParameters
from .errors import CalibrationError
from .transforms import RelativePosition

logger = logging.getLogger(__name__)

MIN_POINTS_PER_VIEW = 4


class CalibrationOptions(enum.IntFlag):
    """
    Options for calibrate_camera().

    NONE: none of the options applies.

    ESTIMATE_INTRINSIC: derive an initial guess of the intrinsic parameters
    assuming a planar calibration rig. Without this option the given
    intrinsic parameters are used as the initial guess and the focal
    lengths must be positive. An estimate of the principal point is always
    required.

    FIX_PRINCIPAL_POINT: keep the principal point at its initial value.

    FIX_ASPECT_RATIO: keep the ratio fx/fy fixed. With ESTIMATE_INTRINSIC
    the focal lengths start from arbitrary values and only their ratio is
    meaningful.

    NO_TANGENTIAL_DISTORTION: tangential distortion factors are set to zero
    and not optimized.
    """
    NONE = 0
    ESTIMATE_INTRINSIC = 1
    FIX_PRINCIPAL_POINT = 2
    FIX_ASPECT_RATIO = 4
    NO_TANGENTIAL_DISTORTION = 8


def _solver_flags(options: CalibrationOptions) -> int:
    flags = cv2.CALIB_FIX_K3
    if not options & CalibrationOptions.ESTIMATE_INTRINSIC:
        flags |= cv2.CALIB_USE_INTRINSIC_GUESS
    if options & CalibrationOptions.FIX_PRINCIPAL_POINT:
        flags |= cv2.CALIB_FIX_PRINCIPAL_POINT
    if options & CalibrationOptions.FIX_ASPECT_RATIO:
        flags |= cv2.CALIB_FIX_ASPECT_RATIO
    if options & CalibrationOptions.NO_TANGENTIAL_DISTORTION:
        flags |= cv2.CALIB_ZERO_TANGENT_DIST
    return flags


def _relative_position(rvec, tvec) -> RelativePosition:
    return RelativePosition(np.asarray(rvec, dtype=float).ravel(),
                            np.asarray(tvec, dtype=float).ravel())


def _dimension(points: np.ndarray) -> int:
    # Column count of an NxD array, otherwise the number of array dimensions
    return points.shape[1] if points.ndim == 2 else points.ndim


def calibrate_camera(
    world_points: Sequence[np.ndarray],
    image_points: Sequence[np.ndarray],
    intrinsic: CameraParameters,
    extrinsic: Optional[List[RelativePosition]] = None,
    options: CalibrationOptions = CalibrationOptions.ESTIMATE_INTRINSIC,
) -> CameraParameters:
    """
    Calibrate a camera using one or more views of known world points.

    Args:
        world_points: Nx3 world coordinates, either one array shared by all
            views or one array per view
        image_points: One Nx2 array of image coordinates per view. Row i
            corresponds to row i of the world points of the same view.
        intrinsic: Initial intrinsic parameters. Updated in place with the
            calibrated values. The principal point must always be set.
        extrinsic: If given, cleared and filled with one pose per view, in
            input order
        options: Calibration options

    Returns:
        The updated intrinsic parameters (the same object as `intrinsic`)

    Raises:
        CalibrationError: if the input is inconsistent
    """
    world_points = [np.asarray(w, dtype=float) for w in world_points]
    image_points = [np.asarray(p, dtype=float) for p in image_points]

    if (len(world_points) == 0 or len(image_points) == 0 or
            (len(world_points) != 1 and len(world_points) != len(image_points))):
        raise CalibrationError(
            f"Cannot calibrate with non-matching number of views. "
            f"World views: {len(world_points)}. Image views: {len(image_points)}"
        )

    if intrinsic.cx == 0 or intrinsic.cy == 0:
        raise CalibrationError("An initial estimate of camera principal point is required.")

    options = CalibrationOptions(options)
    if not options & CalibrationOptions.ESTIMATE_INTRINSIC:
        if intrinsic.fx <= 0 or intrinsic.fy <= 0:
            raise CalibrationError("Focal lengths must be positive")

    object_views = []
    image_views = []
    for view, points in enumerate(image_points):
        world = world_points[0] if len(world_points) == 1 else world_points[view]
        if world.ndim != 2 or points.ndim != 2 or world.shape[1] != 3 or points.shape[1] != 2:
            raise CalibrationError(
                f"Incorrect point dimensions. View {view} has a "
                f"{_dimension(world)}-dimensional world space and a "
                f"{_dimension(points)}-dimensional image space."
            )
        n_points = len(points)
        if n_points < MIN_POINTS_PER_VIEW:
            raise CalibrationError(
                f"The number of calibration points per view must be at least four. "
                f"View {view} has only {n_points}."
            )
        if len(world) != n_points:
            raise CalibrationError(
                f"The number of calibration points per view must match. "
                f"View {view} has {len(world)} world points and {n_points} image points."
            )
        object_views.append(world.astype(np.float32))
        image_views.append(points.astype(np.float32))

    # Image size derived from the principal point. 1.1 instead of 1.0 keeps
    # rounding errors from dropping the size one pixel low.
    image_size = (int(intrinsic.cx * 2 + 1.1), int(intrinsic.cy * 2 + 1.1))

    camera_matrix = intrinsic.as_matrix()
    if options & CalibrationOptions.ESTIMATE_INTRINSIC and options & CalibrationOptions.FIX_ASPECT_RATIO:
        # Only the ratio is used from the initial guess
        if camera_matrix[0, 0] <= 0 or camera_matrix[1, 1] <= 0:
            camera_matrix[0, 0] = camera_matrix[1, 1] = 1.0
    dist_coeffs = np.zeros(5)
    dist_coeffs[:4] = intrinsic.distortion_coefficients()

    logger.debug(f"Calibrating {len(image_views)} views, image size {image_size}, "
                 f"options {options!r}")

    rms, camera_matrix, dist_coeffs, rvecs, tvecs = cv2.calibrateCamera(
        object_views,
        image_views,
        image_size,
        camera_matrix,
        dist_coeffs,
        flags=_solver_flags(options),
    )

    dist = np.asarray(dist_coeffs, dtype=float).ravel()
    intrinsic.fx = float(camera_matrix[0, 0])
    intrinsic.fy = float(camera_matrix[1, 1])
    intrinsic.cx = float(camera_matrix[0, 2])
    intrinsic.cy = float(camera_matrix[1, 2])
    intrinsic.k1, intrinsic.k2, intrinsic.p1, intrinsic.p2 = (float(v) for v in dist[:4])

    logger.info(f"Calibration finished: RMS reprojection error {rms:.4f} px, "
                f"f=({intrinsic.fx:.2f}, {intrinsic.fy:.2f}), "
                f"c=({intrinsic.cx:.2f}, {intrinsic.cy:.2f})")

    if extrinsic is not None:
        extrinsic.clear()
        extrinsic.extend(_relative_position(r, t) for r, t in zip(rvecs, tvecs))

    return intrinsic


def calculate_camera_position(
    world_points: np.ndarray,
    image_points: np.ndarray,
    intrinsic: CameraParameters,
) -> RelativePosition:
    """
    Calculate the pose of a calibrated camera from a single view.

    Args:
        world_points: Nx3 world coordinates (N >= 4)
        image_points: Nx2 image coordinates of the same points
        intrinsic: Intrinsic parameters of the camera (held fixed)

    Returns:
        Pose of the camera with respect to the world frame

    Raises:
        CalibrationError: if the input is inconsistent
    """
    world_points = np.asarray(world_points, dtype=float)
    image_points = np.asarray(image_points, dtype=float)

    if (world_points.ndim != 2 or image_points.ndim != 2 or
            world_points.shape[1] != 3 or image_points.shape[1] != 2):
        raise CalibrationError(
            f"World points must be 3-dimensional (was {_dimension(world_points)}) "
            f"and image points 2-dimensional (was {_dimension(image_points)})."
        )
    if len(world_points) < MIN_POINTS_PER_VIEW:
        raise CalibrationError("The number of calibration points must be at least four.")
    if len(world_points) != len(image_points):
        raise CalibrationError(
            f"The number of world and image points must match. "
            f"{len(world_points)} world and {len(image_points)} image points were given."
        )

    _, rvec, tvec = cv2.solvePnP(
        world_points,
        image_points,
        intrinsic.as_matrix(),
        intrinsic.distortion_coefficients(),
        flags=cv2.SOLVEPNP_ITERATIVE,
    )

    return _relative_position(rvec, tvec)


def reprojection_errors(
    world_points: np.ndarray,
    image_points: np.ndarray,
    extrinsic: RelativePosition,
    intrinsic: CameraParameters,
) -> np.ndarray:
    """
    Compute per-point reprojection errors.

    Args:
        world_points: Nx3 world coordinates
        image_points: Nx2 measured image coordinates
        extrinsic: Pose of the camera
        intrinsic: Intrinsic parameters of the camera

    Returns:
        N-element array of Euclidean distances in pixels. NaN where the
        measurement is missing.
    """
    projected = world_to_pixel_coordinates(world_points, extrinsic, intrinsic)
    measured = np.asarray(image_points, dtype=float)
    if projected.shape != measured.shape:
        raise CalibrationError(
            f"The number of world and image points must match. "
            f"{len(projected)} world and {len(measured)} image points were given."
        )
    return np.sqrt(np.sum((projected - measured) ** 2, axis=1))
