"""
Triad sensor models and multi-position calibration.

Modules:
    types: TriadSample and DataInterval data structures
    calibrated_triad: Misalignment/scale/bias model T·K·(X − B) and its file format
    intervals: Static interval segmentation from externally assigned ids
    strapdown: Quaternion kinematics and gyro interval integration
    gravity: Latitude-dependent gravity magnitude
    calibration: MultiPositionCalibrator for accelerometer and gyroscope

Design principles:
    - Samples and calibrations are immutable
    - Expected failures (short data, non-convergence, I/O) are reported as
      False/None and logged, invalid arguments raise ValueError
    - All numerics use NumPy, precision selectable (float32/float64)

Example:
    >>> from imucal.sensors import CalibrationConfig, MultiPositionCalibrator
    >>> config = CalibrationConfig(g_mag=9.81, n_init_samples=200)
    >>> calibrator = MultiPositionCalibrator(config)
    >>> ok = calibrator.calibrate_accelerometer(acc_samples)
"""

from imucal.sensors.types import (
    UNASSIGNED_INTERVAL_ID,
    TriadSample,
    DataInterval,
    samples_from_arrays,
    samples_to_arrays,
)
from imucal.sensors.calibrated_triad import (
    CalibratedTriad,
    CalibrationFileError,
)
from imucal.sensors.intervals import (
    InvalidIntervalIdError,
    static_intervals_detector,
    extract_interval_samples,
    data_mean,
    data_variance,
    initial_interval,
    interval_from_timestamps,
)
from imucal.sensors.strapdown import (
    omega_matrix,
    quat_multiply,
    quat_to_rotmat,
    quat_integrate_rk4,
    integrate_gyro_rates,
    integrate_gyro_interval,
)
from imucal.sensors.gravity import (
    gravity_magnitude,
    gravity_magnitude_wgs84,
    gravity_magnitude_from_lat_deg,
)
from imucal.sensors.calibration import (
    MIN_STATIC_INTERVALS,
    MIN_GYRO_PAIRS,
    CalibrationConfig,
    CalibrationResult,
    MultiPositionCalibrator,
)

__all__ = [
    # Data types
    "UNASSIGNED_INTERVAL_ID",
    "TriadSample",
    "DataInterval",
    "samples_from_arrays",
    "samples_to_arrays",
    # Calibration model
    "CalibratedTriad",
    "CalibrationFileError",
    # Static intervals
    "InvalidIntervalIdError",
    "static_intervals_detector",
    "extract_interval_samples",
    "data_mean",
    "data_variance",
    "initial_interval",
    "interval_from_timestamps",
    # Gyro integration
    "omega_matrix",
    "quat_multiply",
    "quat_to_rotmat",
    "quat_integrate_rk4",
    "integrate_gyro_rates",
    "integrate_gyro_interval",
    # Gravity
    "gravity_magnitude",
    "gravity_magnitude_wgs84",
    "gravity_magnitude_from_lat_deg",
    # Calibration
    "MIN_STATIC_INTERVALS",
    "MIN_GYRO_PAIRS",
    "CalibrationConfig",
    "CalibrationResult",
    "MultiPositionCalibrator",
]

__version__ = "0.1.0"
