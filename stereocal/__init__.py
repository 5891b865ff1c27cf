"""
Camera Calibration and Multi-View Triangulation Package

A Python package to calibrate cameras from known world/image point
correspondences and to reconstruct 3D points observed by several calibrated
cameras.

Coordinate System Chain:
    World → Camera (X_cam = R·X_world + T) → Normalized (X/Z, Y/Z)
    → Distorted → Pixel (u, v)

Conventions:
    - Camera poses are rotation vectors (axis-angle) and translations
    - Pixel coordinates: u-right, v-down, origin at top-left
    - NaN in any coordinate marks a missing observation

Components:
    - Rotation vector / matrix conversion and rigid transforms
    - Lens distortion model and its inverse
    - Camera calibration and single-view pose estimation
    - N-camera triangulation
    - Calibration pattern search among unreliable detections
"""

from .errors import CalibrationError
from .config import Config, CameraParameters, CameraSetup, PointFinderSettings
from .transforms import (
    RelativePosition,
    rotation_vector_to_matrix,
    rotation_matrix_to_vector,
    calculate_relative_position,
    world_to_camera_coordinates,
    camera_to_world_coordinates,
)
from .camera import (
    normalized_to_distorted,
    undistort_point,
    undistort,
    normalized_to_pixel_coordinates,
    perspective_projection,
    camera_to_pixel_coordinates,
    world_to_pixel_coordinates,
)
from .undistort_map import undistort_map, undistort_map_int, ImageUndistorter
from .calibration import (
    CalibrationOptions,
    calibrate_camera,
    calculate_camera_position,
    reprojection_errors,
)
from .triangulator import StereoTriangulator
from .point_finder import CalibrationPointFinder

__version__ = "1.0.0"
__all__ = [
    "CalibrationError",
    "Config",
    "CameraParameters",
    "CameraSetup",
    "PointFinderSettings",
    "RelativePosition",
    "rotation_vector_to_matrix",
    "rotation_matrix_to_vector",
    "calculate_relative_position",
    "world_to_camera_coordinates",
    "camera_to_world_coordinates",
    "normalized_to_distorted",
    "undistort_point",
    "undistort",
    "normalized_to_pixel_coordinates",
    "perspective_projection",
    "camera_to_pixel_coordinates",
    "world_to_pixel_coordinates",
    "undistort_map",
    "undistort_map_int",
    "ImageUndistorter",
    "CalibrationOptions",
    "calibrate_camera",
    "calculate_camera_position",
    "reprojection_errors",
    "StereoTriangulator",
    "CalibrationPointFinder",
]
