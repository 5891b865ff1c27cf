"""
Error types raised by the calibration and triangulation routines.
"""


class CalibrationError(ValueError):
    """
    Raised when calibration, pose estimation or triangulation input is
    inconsistent.

    The message names the violated condition and, where applicable, the
    offending view or point count. Numerical failures inside the external
    solvers are not wrapped; they propagate as raised by OpenCV or scipy.
    """
