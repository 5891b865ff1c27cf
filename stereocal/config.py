"""
Configuration module for camera calibration and triangulation.

Holds the intrinsic camera parameter structure shared by every other
module and handles loading and saving of multi-camera setups from YAML
files.
"""

import yaml
import numpy as np
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any
import logging

from .transforms import RelativePosition

logger = logging.getLogger(__name__)


@dataclass
class CameraParameters:
    """
    Intrinsic camera parameters.

    These depend on the camera and its lens only, not on the viewed scene.
    The distortion model is the 4-coefficient Brown-Conrady model: radial
    terms up to 4th order (k1, k2) and two tangential terms (p1, p2).
    """
    fx: float = 0.0  # Focal length in x (pixels)
    fy: float = 0.0  # Focal length in y (pixels)
    cx: float = 0.0  # Principal point x (pixels)
    cy: float = 0.0  # Principal point y (pixels)
    k1: float = 0.0  # 2nd order radial distortion
    k2: float = 0.0  # 4th order radial distortion
    p1: float = 0.0  # First tangential distortion
    p2: float = 0.0  # Second tangential distortion

    @classmethod
    def from_image_size(cls, width: int, height: int) -> "CameraParameters":
        """
        Create an initial guess based on the image size.

        The principal point is placed at the center of the image, all other
        parameters are zero.

        Args:
            width: Image width in pixels
            height: Image height in pixels

        Returns:
            Initial intrinsic parameters
        """
        return cls(cx=width / 2 - 0.5, cy=height / 2 - 0.5)

    @property
    def focal_length(self) -> np.ndarray:
        return np.array([self.fx, self.fy])

    @property
    def center(self) -> np.ndarray:
        return np.array([self.cx, self.cy])

    def as_matrix(self) -> np.ndarray:
        """Return the 3x3 camera matrix [[fx, 0, cx], [0, fy, cy], [0, 0, 1]]."""
        return np.array([
            [self.fx, 0.0, self.cx],
            [0.0, self.fy, self.cy],
            [0.0, 0.0, 1.0]
        ])

    def distortion_coefficients(self) -> np.ndarray:
        """Return the distortion coefficients as [k1, k2, p1, p2]."""
        return np.array([self.k1, self.k2, self.p1, self.p2])

    def to_vector(self) -> np.ndarray:
        """Flatten to [fx, fy, cx, cy, k1, k2, p1, p2]."""
        return np.array([
            self.fx, self.fy, self.cx, self.cy,
            self.k1, self.k2, self.p1, self.p2
        ])

    @classmethod
    def from_vector(cls, values) -> "CameraParameters":
        """Inverse of :meth:`to_vector`."""
        values = np.asarray(values, dtype=float).ravel()
        if values.size != 8:
            raise ValueError(
                f"Camera parameter vector must have 8 elements, got {values.size}"
            )
        return cls(*(float(v) for v in values))

    def to_dict(self) -> Dict[str, float]:
        return {
            'fx': self.fx, 'fy': self.fy,
            'cx': self.cx, 'cy': self.cy,
            'k1': self.k1, 'k2': self.k2,
            'p1': self.p1, 'p2': self.p2,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CameraParameters":
        missing = [key for key in ('cx', 'cy') if key not in data]
        if missing:
            raise ValueError(
                f"Intrinsic parameters need cx and cy, missing {', '.join(missing)}"
            )
        return cls(
            fx=float(data.get('fx', 0.0)),
            fy=float(data.get('fy', 0.0)),
            cx=float(data['cx']),
            cy=float(data['cy']),
            k1=float(data.get('k1', 0.0)),
            k2=float(data.get('k2', 0.0)),
            p1=float(data.get('p1', 0.0)),
            p2=float(data.get('p2', 0.0)),
        )


@dataclass
class PointFinderSettings:
    """
    Geometric restrictions for the calibration point search.

    Both distances are in pixels on the image plane.
    """
    min_distance: float = 0.0  # Minimum distance between two pattern points
    max_distance: float = float('inf')  # Maximum extent of the whole pattern


@dataclass
class CameraSetup:
    """A named camera with its intrinsic and extrinsic parameters."""
    name: str
    intrinsic: CameraParameters
    extrinsic: RelativePosition = field(default_factory=RelativePosition)


@dataclass
class Config:
    """
    Main configuration class for a calibrated multi-camera rig.

    Attributes:
        cameras: Calibrated cameras in the order they are added to the
            triangulator. The first one defines the reference frame.
        point_finder: Restrictions for the calibration point search
        observations: Optional per-camera Nx2 image points. NaN (null in
            YAML) marks a point not seen by that camera.
    """
    cameras: List[CameraSetup] = field(default_factory=list)
    point_finder: PointFinderSettings = field(default_factory=PointFinderSettings)
    observations: Optional[List[np.ndarray]] = None

    @classmethod
    def from_yaml(cls, config_path: str) -> "Config":
        """
        Load configuration from a YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Config object with loaded parameters

        Example YAML structure:
            cameras:
              - name: left
                intrinsic:
                  fx: 1000.0
                  fy: 1000.0
                  cx: 320.0
                  cy: 240.0
                  k1: -0.1
                extrinsic:
                  rotation: [0.0, 0.0, 0.0]
                  translation: [0.0, 0.0, 0.0]
            point_finder:
              min_distance: 5.0
              max_distance: 400.0
            observations:
              - [[320.0, 240.0], [null, null]]
        """
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}

        logger.info(f"Loading configuration from {config_path}")

        cameras = []
        for index, cam_data in enumerate(data.get('cameras', [])):
            if 'intrinsic' not in cam_data:
                raise ValueError(f"Camera {index} has no intrinsic parameters")
            ext_data = cam_data.get('extrinsic', {})
            try:
                intrinsic = CameraParameters.from_dict(cam_data['intrinsic'])
            except ValueError as e:
                raise ValueError(f"Camera {index}: {e}") from e
            cameras.append(CameraSetup(
                name=str(cam_data.get('name', f"camera{index}")),
                intrinsic=intrinsic,
                extrinsic=RelativePosition(
                    rotation=ext_data.get('rotation', [0.0, 0.0, 0.0]),
                    translation=ext_data.get('translation', [0.0, 0.0, 0.0]),
                ),
            ))

        finder_data = data.get('point_finder', {})
        point_finder = PointFinderSettings(
            min_distance=float(finder_data.get('min_distance', 0.0)),
            max_distance=float(finder_data.get('max_distance', float('inf'))),
        )

        observations = None
        if data.get('observations') is not None:
            observations = [_points_from_yaml(view) for view in data['observations']]

        return cls(cameras=cameras, point_finder=point_finder, observations=observations)

    def to_yaml(self, config_path: str) -> None:
        """Save configuration to a YAML file."""
        data = {
            'cameras': [
                {
                    'name': camera.name,
                    'intrinsic': camera.intrinsic.to_dict(),
                    'extrinsic': {
                        'rotation': [float(v) for v in camera.extrinsic.rotation],
                        'translation': [float(v) for v in camera.extrinsic.translation],
                    },
                }
                for camera in self.cameras
            ],
            'point_finder': {
                'min_distance': self.point_finder.min_distance,
                'max_distance': self.point_finder.max_distance,
            },
        }
        if self.observations is not None:
            data['observations'] = [_points_to_yaml(view) for view in self.observations]

        with open(config_path, 'w') as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {config_path}")


def _points_from_yaml(rows) -> np.ndarray:
    # null coordinates mark missing observations
    values = [[np.nan if v is None else float(v) for v in row] for row in rows]
    if not values:
        return np.zeros((0, 2))
    return np.array(values, dtype=float)


def _points_to_yaml(points: np.ndarray) -> list:
    return [[None if np.isnan(v) else float(v) for v in row] for row in np.asarray(points)]
