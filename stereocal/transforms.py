"""
Rigid transformation module.

This module handles the rotation representations and the rigid motions
between coordinate frames:
    1. Rotation vector (axis-angle) <-> rotation matrix (Rodrigues' formula)
    2. World frame <-> camera frame
    3. Pose of one camera with respect to another

Frame Convention:
    A camera pose is a rotation R and translation T that map world
    coordinates into the camera reference frame:

        X_cam = R @ X_world + T

    T is thus the origin of the world frame expressed in the camera frame.

Rotation Conventions:
    - Rotation vectors encode the rotation angle (radians) as their length
      and the rotation axis as their direction
    - All rotations use the right-hand rule
"""

import numpy as np
from typing import Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)

# Rotation angles below this are treated as no rotation at all
ANGLE_TOLERANCE = 1e-12


def rotation_vector_to_matrix(rotation) -> np.ndarray:
    """
    Convert a rotation vector to a rotation matrix using Rodrigues' formula.

    With theta = |v| and M the antisymmetric cross-product matrix of the
    unit axis v/theta:

        R = I + M sin(theta) + M^2 (1 - cos(theta))

    Args:
        rotation: Rotation vector (3 elements)

    Returns:
        3x3 rotation matrix
    """
    vector = np.asarray(rotation, dtype=float).ravel()
    theta = np.linalg.norm(vector)
    if theta < ANGLE_TOLERANCE:
        return np.eye(3)

    x, y, z = vector / theta

    M = np.array([
        [0.0, -z, y],
        [z, 0.0, -x],
        [-y, x, 0.0]
    ])

    return np.eye(3) + M * np.sin(theta) + M @ M * (1.0 - np.cos(theta))


def rotation_matrix_to_vector(matrix) -> np.ndarray:
    """
    Convert a rotation matrix to a rotation vector (inverse Rodrigues).

    The antisymmetric part of R gives the axis scaled by sin(theta):

        (R - R^T) / 2 = M sin(theta)

    If only one axis component is non-zero, R is an elementary rotation
    about that axis and cos(theta) is read from a diagonal element that
    equals it. Otherwise the symmetric part is used:

        (R + R^T) / 2 - I = M^2 (1 - cos(theta))

    where the off-diagonal element (i, j) of M^2 is u_i * u_j. The pair with
    the largest |u_i * u_j| is used to keep the division well conditioned.
    When sin(theta) is negligible, cos(theta) = (trace(R) - 1) / 2 is used.

    Args:
        matrix: 3x3 rotation matrix

    Returns:
        Rotation vector with angle in [0, pi]. A zero vector is returned if
        the input is not 3x3.
    """
    R = np.asarray(matrix, dtype=float)
    if R.shape != (3, 3):
        return np.zeros(3)

    M = (R - R.T) * 0.5
    vector = np.array([M[2, 1], M[0, 2], M[1, 0]])

    nonzero = vector != 0
    if not nonzero.any():
        return vector

    sin_theta = np.linalg.norm(vector)
    axis = vector / sin_theta

    if sin_theta < ANGLE_TOLERANCE:
        # Axis components are rounding noise, only the sign of cos matters
        cos_theta = (np.trace(R) - 1.0) * 0.5
    elif nonzero.sum() == 1:
        # Rotation about x: R[1, 1] = cos, about y or z: R[0, 0] = cos
        cos_theta = R[1, 1] if nonzero[0] else R[0, 0]
    else:
        M2 = (R + R.T) * 0.5 - np.eye(3)
        pairs = [(i, j) for i, j in ((0, 1), (0, 2), (1, 2)) if nonzero[i] and nonzero[j]]
        i, j = max(pairs, key=lambda p: abs(axis[p[0]] * axis[p[1]]))
        cos_theta = np.clip(1.0 - M2[i, j] / (axis[i] * axis[j]), -1.0, 1.0)

    theta = np.arctan2(sin_theta, cos_theta)
    if theta < 0:
        theta += np.pi

    return axis * theta


@dataclass
class RelativePosition:
    """
    Pose of a camera with respect to a reference frame.

    Attributes:
        rotation: Rotation vector from the reference frame to the camera frame
        translation: Origin of the reference frame in the camera frame
    """
    rotation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    translation: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self):
        self.rotation = np.asarray(self.rotation, dtype=float).ravel().copy()
        self.translation = np.asarray(self.translation, dtype=float).ravel().copy()
        if self.rotation.size != 3 or self.translation.size != 3:
            raise ValueError(
                f"Rotation and translation must be 3-vectors, got "
                f"{self.rotation.size} and {self.translation.size} elements"
            )

    @classmethod
    def from_matrix(cls, rotation_matrix, translation) -> "RelativePosition":
        """
        Create a relative position from a rotation matrix.

        Args:
            rotation_matrix: 3x3 rotation matrix
            translation: 3x1 or 1x3 translation vector
        """
        return cls(rotation_matrix_to_vector(rotation_matrix), translation)

    def rotation_matrix(self) -> np.ndarray:
        """Convert the rotation vector to a 3x3 rotation matrix."""
        return rotation_vector_to_matrix(self.rotation)

    def translation_matrix(self) -> np.ndarray:
        """Return the translation vector as a 3x1 column matrix."""
        return self.translation.reshape(3, 1)

    def __eq__(self, other):
        if not isinstance(other, RelativePosition):
            return NotImplemented
        return (np.array_equal(self.rotation, other.rotation) and
                np.array_equal(self.translation, other.translation))


def calculate_relative_position(
    camera1: RelativePosition,
    camera2: RelativePosition,
) -> RelativePosition:
    """
    Calculate the pose of camera2 with respect to camera1.

    Both poses must be given with respect to the same world frame. The
    result maps camera1 coordinates to camera2 coordinates:

        X_2 = R_s @ X_1 + T_s,  R_s = R_2 @ R_1^T,  T_s = T_2 - R_s @ T_1

    R_1^T is the inverse of R_1 because rotation matrices are orthogonal.

    Args:
        camera1: Pose of the reference camera
        camera2: Pose of the other camera

    Returns:
        Relative position of camera2 in camera1's reference frame
    """
    R1 = camera1.rotation_matrix()
    R2 = camera2.rotation_matrix()

    Rs = R2 @ R1.T
    Ts = camera2.translation - Rs @ camera1.translation

    return RelativePosition.from_matrix(Rs, Ts)


def world_to_camera_coordinates(
    world_points: np.ndarray,
    extrinsic: RelativePosition,
) -> np.ndarray:
    """
    Transform points from the world frame to the camera frame.

    Args:
        world_points: Nx3 array of world coordinates
        extrinsic: Pose of the camera

    Returns:
        Nx3 array of camera frame coordinates
    """
    points = np.asarray(world_points, dtype=float).reshape(-1, 3)
    return points @ extrinsic.rotation_matrix().T + extrinsic.translation


def camera_to_world_coordinates(
    camera_points: np.ndarray,
    extrinsic: RelativePosition,
) -> np.ndarray:
    """
    Transform points from the camera frame to the world frame.

    Inverts X_cam = R @ X_world + T as X_world = R^T @ (X_cam - T).

    Args:
        camera_points: Nx3 array of camera frame coordinates
        extrinsic: Pose of the camera

    Returns:
        Nx3 array of world coordinates
    """
    points = np.asarray(camera_points, dtype=float).reshape(-1, 3)
    return (points - extrinsic.translation) @ extrinsic.rotation_matrix()


def validate_rotation_matrix(R: np.ndarray, tol: float = 1e-6) -> bool:
    """
    Validate that a matrix is a proper rotation matrix.

    A proper rotation matrix must:
        1. Be orthogonal: R @ R.T = I
        2. Have determinant = +1 (not a reflection)

    Args:
        R: 3x3 matrix to validate
        tol: Numerical tolerance

    Returns:
        True if R is a valid rotation matrix
    """
    if R.shape != (3, 3):
        return False

    if not np.allclose(R @ R.T, np.eye(3), atol=tol):
        return False

    return bool(np.isclose(np.linalg.det(R), 1.0, atol=tol))
