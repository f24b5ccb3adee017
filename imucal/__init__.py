"""IMU triad calibration from multi-position static data.

This package contains:
- sensors: triad sample types, the calibrated triad model, static interval
  segmentation, gyroscope integration and the multi-position calibrator
- estimators: nonlinear least squares solvers (Gauss-Newton, Levenberg-Marquardt)
- sim: synthetic multi-position logs for testing
"""

__version__ = "0.1.0"
