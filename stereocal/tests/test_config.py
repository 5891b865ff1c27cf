"""
Tests for configuration module.
"""

import pytest
import tempfile
import numpy as np
from numpy.testing import assert_allclose

from stereocal.config import (
    CameraParameters,
    CameraSetup,
    Config,
    PointFinderSettings,
)
from stereocal.transforms import RelativePosition


RIG_YAML = """
cameras:
  - name: left
    intrinsic:
      fx: 1000.0
      fy: 1001.0
      cx: 320.0
      cy: 240.0
      k1: -0.1
  - name: right
    intrinsic: {fx: 990.0, fy: 990.0, cx: 318.0, cy: 242.0, p2: 0.001}
    extrinsic:
      rotation: [0.0, -0.1, 0.0]
      translation: [-200.0, 0.0, 0.0]
point_finder:
  min_distance: 5.0
observations:
  - [[320.0, 240.0], [null, null]]
  - [[300.0, 241.0], [400.0, 100.0]]
"""


class TestCameraParameters:

    def test_from_image_size(self):
        intrinsic = CameraParameters.from_image_size(640, 480)

        assert intrinsic.cx == 319.5
        assert intrinsic.cy == 239.5
        assert intrinsic.fx == 0.0

    def test_as_matrix(self):
        intrinsic = CameraParameters(fx=800.0, fy=810.0, cx=320.0, cy=240.0)
        assert_allclose(intrinsic.as_matrix(), [[800, 0, 320], [0, 810, 240], [0, 0, 1]])

    def test_vector_round_trip(self):
        values = [800.0, 810.0, 320.0, 240.0, -0.1, 0.01, 0.001, -0.002]
        intrinsic = CameraParameters.from_vector(values)

        assert intrinsic.k2 == 0.01
        assert_allclose(intrinsic.to_vector(), values)
        assert_allclose(intrinsic.distortion_coefficients(), values[4:])

    def test_from_vector_wrong_size_raises(self):
        with pytest.raises(ValueError, match="8 elements"):
            CameraParameters.from_vector([1.0, 2.0, 3.0])

    def test_from_dict_requires_center(self):
        with pytest.raises(ValueError, match="missing cx, cy"):
            CameraParameters.from_dict({'fx': 1000.0, 'fy': 1000.0})


class TestConfig:

    @pytest.fixture
    def temp_rig_file(self):
        """Create a temporary rig configuration file."""
        with tempfile.NamedTemporaryFile(mode='w', suffix='.yaml', delete=False) as f:
            f.write(RIG_YAML)
            return f.name

    def test_defaults(self):
        config = Config()

        assert config.cameras == []
        assert config.point_finder.min_distance == 0.0
        assert config.point_finder.max_distance == float('inf')
        assert config.observations is None

    def test_from_yaml(self, temp_rig_file):
        config = Config.from_yaml(temp_rig_file)

        assert [camera.name for camera in config.cameras] == ['left', 'right']
        left, right = config.cameras
        assert left.intrinsic.k1 == -0.1
        assert left.extrinsic == RelativePosition()
        assert right.intrinsic.p2 == 0.001
        assert_allclose(right.extrinsic.rotation, [0.0, -0.1, 0.0])
        assert_allclose(right.extrinsic.translation, [-200.0, 0.0, 0.0])

        assert config.point_finder.min_distance == 5.0
        assert config.point_finder.max_distance == float('inf')

        assert len(config.observations) == 2
        assert config.observations[0].shape == (2, 2)
        assert np.isnan(config.observations[0][1]).all()
        assert_allclose(config.observations[1], [[300.0, 241.0], [400.0, 100.0]])

    def test_yaml_round_trip(self, tmp_path):
        config = Config(
            cameras=[
                CameraSetup('a', CameraParameters(fx=500.0, fy=500.0, cx=10.0, cy=20.0, k1=0.1)),
                CameraSetup('b', CameraParameters(fx=600.0, fy=610.0, cx=11.0, cy=21.0),
                            RelativePosition([0.1, 0.2, 0.3], [1.0, 2.0, 3.0])),
            ],
            point_finder=PointFinderSettings(min_distance=2.0),
            observations=[np.array([[1.0, 2.0], [np.nan, np.nan]]),
                          np.array([[3.0, 4.0], [5.0, 6.0]])],
        )
        path = tmp_path / "out.yaml"

        config.to_yaml(str(path))
        loaded = Config.from_yaml(str(path))

        assert [c.name for c in loaded.cameras] == ['a', 'b']
        assert loaded.cameras[0].intrinsic == config.cameras[0].intrinsic
        assert loaded.cameras[1].extrinsic == config.cameras[1].extrinsic
        assert loaded.point_finder == config.point_finder
        assert_allclose(loaded.observations[0], config.observations[0])
        assert_allclose(loaded.observations[1], config.observations[1])

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = Config.from_yaml(str(path))

        assert config.cameras == []
        assert config.observations is None

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            Config.from_yaml(str(tmp_path / "missing.yaml"))

    def test_missing_intrinsic_raises(self, tmp_path):
        path = tmp_path / "rig.yaml"
        path.write_text("cameras:\n  - name: left\n")

        with pytest.raises(ValueError, match="Camera 0 has no intrinsic parameters"):
            Config.from_yaml(str(path))

    def test_missing_principal_point_raises(self, tmp_path):
        path = tmp_path / "rig.yaml"
        path.write_text("cameras:\n  - name: left\n    intrinsic: {fx: 1000.0, fy: 1000.0, cx: 320.0}\n")

        with pytest.raises(ValueError, match="Camera 0: .*missing cy"):
            Config.from_yaml(str(path))
