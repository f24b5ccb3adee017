"""
Multi-position calibration of accelerometer and gyroscope triads.

The sensor is left static in several distinct orientations, separated by
short motions. From such a log this module estimates the CalibratedTriad
parameters of the accelerometer and, optionally, of the gyroscope:

Accelerometer (gravity norm fit):
    In every static interval the calibrated specific force must have the norm
    of local gravity g. With x_k the static readings the fit minimizes

        Σ_k ( g - ‖T·K·(x_k − B)‖ )²

    over the body-frame misalignment (mis_yz, mis_zy, mis_zx), the scale
    factors (s_x, s_y, s_z) and the bias (b_x, b_y, b_z): 9 unknowns, hence
    at least MIN_STATIC_INTERVALS non-parallel orientations. The remaining
    misalignment terms are fixed at 0 because the gravity norm is invariant
    to rotations of the calibrated frame. The fit is rejected when its
    Jacobian at the solution is rank deficient.

Gyroscope (gravity direction fit):
    For two consecutive static intervals i, i+1 the calibrated accelerometer
    gives unit gravity directions ĝ_i, ĝ_{i+1} in sensor axes. Integrating the
    calibrated gyro over the motion in between gives the rotation R_i of the
    body frame at i+1 expressed in the body frame at i, so ĝ_{i+1} = R_iᵀ·ĝ_i.
    The fit minimizes Σ_i ‖R_iᵀ·ĝ_i − ĝ_{i+1}‖² over the 6 misalignment terms
    and 3 scale factors (plus a bias correction if optimize_gyro_bias).
    Each pair fixes only two degrees of freedom, since a rotation about
    gravity leaves ĝ unchanged, so at least MIN_GYRO_PAIRS pairs are
    needed. The same rank check applies.
    The gyro bias is initialised with the mean of the first n_init_samples
    gyro samples, recorded while the sensor is still.

Static intervals are not detected here: every sample carries an interval id
assigned by an external static/motion detector (see intervals module).

References:
    D. Tedaldi, A. Pretto, E. Menegatti, "A Robust and Easy to Implement
    Method for IMU Calibration without External Equipments", ICRA 2014.
"""

import logging
import warnings
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, NamedTuple, Optional, Sequence

import numpy as np

from imucal.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    jacobian_rank,
    levenberg_marquardt,
    numerical_jacobian,
)
from imucal.sensors.calibrated_triad import CalibratedTriad
from imucal.sensors.gravity import gravity_magnitude_from_lat_deg
from imucal.sensors.intervals import (
    InvalidIntervalIdError,
    data_mean,
    extract_interval_samples,
    initial_interval,
    static_intervals_detector,
)
from imucal.sensors.strapdown import integrate_gyro_rates, interval_time_steps
from imucal.sensors.types import (
    DataInterval,
    TriadSample,
    check_dtype,
    samples_from_arrays,
    samples_to_arrays,
)

logger = logging.getLogger(__name__)

# Number of accelerometer unknowns
MIN_STATIC_INTERVALS = 9

# Each adjacent static pair constrains two rotation degrees of freedom, so
# 9 gyroscope unknowns (12 with bias) need at least 5 (6) pairs
MIN_GYRO_PAIRS = 5


@dataclass(frozen=True)
class CalibrationConfig:
    """
    Settings of a multi-position calibration run.

    Attributes:
        g_mag: Local gravity magnitude in m/s². Required; see from_latitude().
        min_num_intervals: Minimum number of usable static intervals
                           (>= MIN_STATIC_INTERVALS). Default: 12.
        n_init_samples: Length of the initial still window used to bootstrap
                        the accelerometer scale and the gyroscope bias.
        interval_n_samples: Minimum samples of a usable static interval, and
                            the number of centred raw samples used per
                            interval when acc_use_means is False.
        acc_use_means: Use one mean vector per static interval instead of
                       the raw samples.
        gyro_dt: Gyroscope sampling period in seconds; <= 0 uses the sample
                 timestamps.
        optimize_gyro_bias: Refine the gyro bias together with misalignment
                            and scale.
        optimize_acc_bias: Fit the accelerometer bias; when False it stays
                           at the initial value.
        max_iter: Iteration cap of the Levenberg-Marquardt solver.
        tol: Relative step tolerance of the solver.
        verbose: Log progress at INFO instead of DEBUG level.
        init_acc_calibration: Initial accelerometer guess (identity with a
                              bootstrap scale when None).
        init_gyro_calibration: Initial gyroscope misalignment/scale guess
                               (identity when None).

    Example:
        >>> config = CalibrationConfig.from_latitude(45.0, n_init_samples=500)
        >>> print(round(config.g_mag, 4))  # 9.8062
    """

    g_mag: float
    min_num_intervals: int = 12
    n_init_samples: int = 1000
    interval_n_samples: int = 100
    acc_use_means: bool = False
    gyro_dt: float = -1.0
    optimize_gyro_bias: bool = False
    optimize_acc_bias: bool = True
    max_iter: int = 200
    tol: float = 1e-10
    verbose: bool = False
    init_acc_calibration: Optional[CalibratedTriad] = None
    init_gyro_calibration: Optional[CalibratedTriad] = None

    def __post_init__(self) -> None:
        """Validate settings."""
        if not np.isfinite(self.g_mag) or self.g_mag <= 0:
            raise ValueError(f"g_mag must be a positive number, got {self.g_mag}")
        if self.min_num_intervals < MIN_STATIC_INTERVALS:
            raise ValueError(
                f"min_num_intervals must be >= {MIN_STATIC_INTERVALS}, "
                f"got {self.min_num_intervals}"
            )
        if self.n_init_samples < 1:
            raise ValueError(
                f"n_init_samples must be positive, got {self.n_init_samples}"
            )
        if self.interval_n_samples < 1:
            raise ValueError(
                f"interval_n_samples must be positive, got {self.interval_n_samples}"
            )
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")
        if self.tol <= 0:
            raise ValueError(f"tol must be positive, got {self.tol}")
        for name in ("init_acc_calibration", "init_gyro_calibration"):
            value = getattr(self, name)
            if value is not None and not isinstance(value, CalibratedTriad):
                raise ValueError(f"{name} must be a CalibratedTriad or None")

    @classmethod
    def from_latitude(cls, lat_deg: float, **kwargs) -> "CalibrationConfig":
        """Config with g_mag from the WGS-84 gravity model at lat_deg."""
        return cls(g_mag=gravity_magnitude_from_lat_deg(lat_deg), **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-compatible dict; initial calibrations become parameter lists."""
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, CalibratedTriad):
                value = value.params.astype(np.float64).tolist()
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CalibrationConfig":
        """
        Inverse of to_dict().

        Raises:
            ValueError: On unknown keys or invalid values.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown calibration settings: {sorted(unknown)}")

        kwargs = dict(data)
        for name in ("init_acc_calibration", "init_gyro_calibration"):
            if kwargs.get(name) is not None:
                kwargs[name] = CalibratedTriad.from_params(np.asarray(kwargs[name]))
        return cls(**kwargs)


@dataclass
class CalibrationResult:
    """
    Output of one successful calibration call.

    Attributes:
        acc_calibration: Fitted accelerometer model.
        calibrated_acc_samples: Accelerometer input after unbias_normalize.
        static_intervals: Static intervals used by the accelerometer fit.
        acc_cost: Final accelerometer cost ½Σr².
        gyro_calibration: Fitted gyroscope model (None for accelerometer-only runs).
        calibrated_gyro_samples: Gyroscope input after unbias_normalize.
        gyro_cost: Final gyroscope cost ½Σr² (None for accelerometer-only runs).
    """

    acc_calibration: CalibratedTriad
    calibrated_acc_samples: List[TriadSample]
    static_intervals: List[DataInterval]
    acc_cost: float
    gyro_calibration: Optional[CalibratedTriad] = None
    calibrated_gyro_samples: List[TriadSample] = field(default_factory=list)
    gyro_cost: Optional[float] = None


class _AccFit(NamedTuple):
    calibration: CalibratedTriad
    calibrated_samples: List[TriadSample]
    static_intervals: List[DataInterval]
    solver: NonlinearLSResult


class _GyroPair(NamedTuple):
    g_versor0: np.ndarray
    g_versor1: np.ndarray
    omega: np.ndarray
    dts: np.ndarray


def _acc_calibration_from_x(x: np.ndarray, bias: np.ndarray) -> CalibratedTriad:
    """Accelerometer triad from [mis_yz, mis_zy, mis_zx, s_x, s_y, s_z (, b)]."""
    if len(x) == 9:
        bias = x[6:9]
    return CalibratedTriad(
        mis_yz=x[0], mis_zy=x[1], mis_zx=x[2],
        s_x=x[3], s_y=x[4], s_z=x[5],
        b_x=bias[0], b_y=bias[1], b_z=bias[2],
    )


def _gyro_calibration_from_x(x: np.ndarray) -> CalibratedTriad:
    """Gyroscope triad from [6 misalignment, 3 scale (, 3 bias)]."""
    bias = x[9:12] if len(x) == 12 else np.zeros(3)
    return CalibratedTriad(*x[:9], *bias)


def _apply_to_samples(
    calib: CalibratedTriad, samples: Sequence[TriadSample]
) -> List[TriadSample]:
    t, data, ids = samples_to_arrays(samples)
    if len(t) == 0:
        return []
    return samples_from_arrays(t, calib.unbias_normalize(data), ids, dtype=calib.dtype)


class MultiPositionCalibrator:
    """
    Accelerometer/gyroscope calibration from a multi-position log.

    Each call to calibrate_accelerometer() or
    calibrate_accelerometer_gyroscope() replaces the previous result. An
    instance can be reused for independent runs but must not be shared
    between threads.

    Args:
        config: Calibration settings.
        dtype: Precision of the returned calibrations and samples
               (np.float64 or np.float32). The fit itself runs in float64.

    Example:
        >>> config = CalibrationConfig(g_mag=9.81, n_init_samples=300)
        >>> calibrator = MultiPositionCalibrator(config)
        >>> if calibrator.calibrate_accelerometer_gyroscope(acc_samples, gyro_samples):
        ...     print(calibrator.acc_calibration)
        ...     calibrator.gyro_calibration.save("gyro_calib.txt")
    """

    def __init__(self, config: CalibrationConfig, dtype=np.float64) -> None:
        self._config = config
        self._dtype = check_dtype(dtype)
        self._result: Optional[CalibrationResult] = None

    @property
    def config(self) -> CalibrationConfig:
        return self._config

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    @property
    def result(self) -> Optional[CalibrationResult]:
        """Result of the last successful call, None after a failure."""
        return self._result

    @property
    def acc_calibration(self) -> Optional[CalibratedTriad]:
        return self._result.acc_calibration if self._result else None

    @property
    def gyro_calibration(self) -> Optional[CalibratedTriad]:
        return self._result.gyro_calibration if self._result else None

    @property
    def calibrated_acc_samples(self) -> List[TriadSample]:
        return self._result.calibrated_acc_samples if self._result else []

    @property
    def calibrated_gyro_samples(self) -> List[TriadSample]:
        return self._result.calibrated_gyro_samples if self._result else []

    def _log(self, msg: str, *args) -> None:
        logger.log(logging.INFO if self._config.verbose else logging.DEBUG, msg, *args)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def calibrate_accelerometer(self, acc_samples: Sequence[TriadSample]) -> bool:
        """
        Calibrate the accelerometer from a labelled multi-position log.

        Args:
            acc_samples: Raw accelerometer samples in time order, each tagged
                         with its static interval id.

        Returns:
            True on success (result available through the accessors), False
            if the data are insufficient or the fit does not converge.
        """
        self._result = None

        fit = self._fit_accelerometer(acc_samples)
        if fit is None:
            return False

        self._result = CalibrationResult(
            acc_calibration=fit.calibration,
            calibrated_acc_samples=fit.calibrated_samples,
            static_intervals=fit.static_intervals,
            acc_cost=fit.solver.cost,
        )
        return True

    def calibrate_accelerometer_gyroscope(
        self,
        acc_samples: Sequence[TriadSample],
        gyro_samples: Sequence[TriadSample],
    ) -> bool:
        """
        Calibrate the accelerometer, then the gyroscope against it.

        Args:
            acc_samples: Raw accelerometer samples with static interval ids.
            gyro_samples: Raw gyroscope samples on the same time base, in
                          time order. Their interval ids are not used.

        Returns:
            True on success, False otherwise.
        """
        self._result = None
        cfg = self._config

        acc_fit = self._fit_accelerometer(acc_samples)
        if acc_fit is None:
            return False

        if len(gyro_samples) < cfg.n_init_samples:
            logger.warning(
                "Gyroscope calibration failed: %d samples, at least %d needed "
                "for the initial bias", len(gyro_samples), cfg.n_init_samples,
            )
            return False

        t_gyro, raw_gyro, _ = samples_to_arrays(gyro_samples)
        raw_gyro = raw_gyro.astype(np.float64)
        if len(t_gyro) < 2 or np.any(np.diff(t_gyro) <= 0):
            logger.warning(
                "Gyroscope calibration failed: timestamps must be strictly increasing"
            )
            return False

        gyro_bias = data_mean(gyro_samples, initial_interval(gyro_samples, cfg.n_init_samples))
        self._log("Gyroscope initial bias: %s", gyro_bias)

        init_gyro = cfg.init_gyro_calibration or CalibratedTriad()
        x0 = init_gyro.params[:9].astype(np.float64)
        if cfg.optimize_gyro_bias:
            x0 = np.concatenate([x0, np.zeros(3)])

        pairs = self._gyro_pairs(acc_fit, t_gyro, raw_gyro - gyro_bias)
        min_pairs = max(MIN_GYRO_PAIRS, -(-len(x0) // 2))
        if len(pairs) < min_pairs:
            logger.warning(
                "Gyroscope calibration failed: %d usable static interval pairs, "
                "at least %d needed", len(pairs), min_pairs,
            )
            return False

        def h(x):
            calib = _gyro_calibration_from_x(x)
            residuals = []
            for pair in pairs:
                omega = calib.unbias_normalize(pair.omega)
                rot = integrate_gyro_rates(omega, pair.dts)
                residuals.append(rot.T @ pair.g_versor0 - pair.g_versor1)
            return np.concatenate(residuals)

        solver = levenberg_marquardt(
            h,
            lambda x: numerical_jacobian(h, x),
            np.zeros(3 * len(pairs)),
            x0,
            max_iter=cfg.max_iter,
            tol=cfg.tol,
            return_covariance=False,
        )
        self._log(
            "Gyroscope fit: %d pairs, cost %.6g -> %.6g in %d iterations",
            len(pairs), solver.initial_cost, solver.cost, solver.iterations,
        )
        if not solver.converged or not np.all(np.isfinite(solver.x)):
            logger.warning(
                "Gyroscope calibration failed: solver did not converge "
                "(%d iterations, cost %.6g)", solver.iterations, solver.cost,
            )
            return False
        rank = jacobian_rank(numerical_jacobian(h, solver.x))
        if rank < len(solver.x):
            logger.warning(
                "Gyroscope calibration failed: the rotations between static "
                "intervals constrain only %d of %d parameters", rank, len(solver.x),
            )
            return False

        bias = gyro_bias + (solver.x[9:12] if cfg.optimize_gyro_bias else 0.0)
        gyro_calib = CalibratedTriad(*solver.x[:9], *bias, dtype=self._dtype)
        self._log("Gyroscope calibration:\n%s", gyro_calib)

        self._result = CalibrationResult(
            acc_calibration=acc_fit.calibration,
            calibrated_acc_samples=acc_fit.calibrated_samples,
            static_intervals=acc_fit.static_intervals,
            acc_cost=acc_fit.solver.cost,
            gyro_calibration=gyro_calib,
            calibrated_gyro_samples=_apply_to_samples(gyro_calib, gyro_samples),
            gyro_cost=solver.cost,
        )
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fit_accelerometer(self, acc_samples: Sequence[TriadSample]) -> Optional[_AccFit]:
        cfg = self._config

        try:
            intervals = static_intervals_detector(acc_samples)
        except InvalidIntervalIdError as e:
            logger.warning("Accelerometer calibration failed: %s", e)
            return None

        if len(acc_samples) < cfg.n_init_samples:
            logger.warning(
                "Accelerometer calibration failed: %d samples, at least %d needed "
                "for the initial window", len(acc_samples), cfg.n_init_samples,
            )
            return None

        static_samples, static_intervals = extract_interval_samples(
            acc_samples, intervals, cfg.interval_n_samples, cfg.acc_use_means
        )
        self._log(
            "Accelerometer: %d static intervals, %d with >= %d samples",
            len(intervals), len(static_intervals), cfg.interval_n_samples,
        )
        if len(static_intervals) < cfg.min_num_intervals:
            logger.warning(
                "Accelerometer calibration failed: %d usable static intervals, "
                "at least %d needed", len(static_intervals), cfg.min_num_intervals,
            )
            return None

        init_calib = self._bootstrap_acc_calibration(acc_samples)
        if init_calib is None:
            return None

        x0 = np.concatenate([
            [init_calib.mis_yz, init_calib.mis_zy, init_calib.mis_zx],
            init_calib.scale_vector.astype(np.float64),
        ])
        fixed_bias = init_calib.bias_vector.astype(np.float64)
        if cfg.optimize_acc_bias:
            x0 = np.concatenate([x0, fixed_bias])

        data = np.vstack([s.data for s in static_samples]).astype(np.float64)

        def h(x):
            calib = _acc_calibration_from_x(x, fixed_bias)
            return np.linalg.norm(calib.unbias_normalize(data), axis=1)

        solver = levenberg_marquardt(
            h,
            lambda x: numerical_jacobian(h, x),
            np.full(len(data), cfg.g_mag),
            x0,
            max_iter=cfg.max_iter,
            tol=cfg.tol,
            return_covariance=False,
        )
        self._log(
            "Accelerometer fit: %d residuals, cost %.6g -> %.6g in %d iterations",
            len(data), solver.initial_cost, solver.cost, solver.iterations,
        )
        if not solver.converged or not np.all(np.isfinite(solver.x)):
            logger.warning(
                "Accelerometer calibration failed: solver did not converge "
                "(%d iterations, cost %.6g)", solver.iterations, solver.cost,
            )
            return None
        rank = jacobian_rank(numerical_jacobian(h, solver.x))
        if rank < len(solver.x):
            logger.warning(
                "Accelerometer calibration failed: the static orientations "
                "constrain only %d of %d parameters", rank, len(solver.x),
            )
            return None

        calib = _acc_calibration_from_x(solver.x, fixed_bias).astype(self._dtype)
        self._log("Accelerometer calibration:\n%s", calib)

        return _AccFit(
            calibration=calib,
            calibrated_samples=_apply_to_samples(calib, acc_samples),
            static_intervals=static_intervals,
            solver=solver,
        )

    def _bootstrap_acc_calibration(
        self, acc_samples: Sequence[TriadSample]
    ) -> Optional[CalibratedTriad]:
        """Initial accelerometer guess; scale from the initial still window."""
        cfg = self._config
        if cfg.init_acc_calibration is not None:
            return cfg.init_acc_calibration.astype(np.float64)

        init_mean = data_mean(acc_samples, initial_interval(acc_samples, cfg.n_init_samples))
        norm = float(np.linalg.norm(init_mean))
        if not np.isfinite(norm) or norm <= 0:
            logger.warning(
                "Accelerometer calibration failed: initial window has zero mean"
            )
            return None

        scale = cfg.g_mag / norm
        self._log("Accelerometer initial scale: %.6g", scale)
        return CalibratedTriad(s_x=scale, s_y=scale, s_z=scale)

    def _gyro_pairs(
        self,
        acc_fit: _AccFit,
        t_gyro: np.ndarray,
        omega: np.ndarray,
    ) -> List[_GyroPair]:
        """Gravity directions and gyro rates for each adjacent static pair."""
        cfg = self._config
        calibrated_acc = acc_fit.calibrated_samples
        intervals = acc_fit.static_intervals

        g_versors = []
        for interval in intervals:
            g = data_mean(calibrated_acc, interval).astype(np.float64)
            g_versors.append(g / np.linalg.norm(g))

        pairs = []
        for i in range(len(intervals) - 1):
            ts0 = calibrated_acc[intervals[i].end_idx].timestamp
            ts1 = calibrated_acc[intervals[i + 1].start_idx].timestamp

            idx0 = int(np.searchsorted(t_gyro, ts0, side="left"))
            idx1 = int(np.searchsorted(t_gyro, ts1, side="left")) - 1
            if idx0 >= len(t_gyro) or idx1 < idx0:
                warnings.warn(
                    f"No gyroscope samples between static intervals {i} and {i + 1} "
                    f"(t={ts0:.3f}s..{ts1:.3f}s); pair skipped.",
                    UserWarning,
                )
                continue
            # The gyro log must span the whole rotation
            if t_gyro[0] > ts0 or idx1 + 1 >= len(t_gyro):
                warnings.warn(
                    f"Gyroscope log covers only part of the motion between static "
                    f"intervals {i} and {i + 1} (t={ts0:.3f}s..{ts1:.3f}s); pair skipped.",
                    UserWarning,
                )
                continue

            gyro_interval = DataInterval(idx0, idx1)
            dts = interval_time_steps(t_gyro, gyro_interval, cfg.gyro_dt)
            pairs.append(
                _GyroPair(
                    g_versor0=g_versors[i],
                    g_versor1=g_versors[i + 1],
                    omega=omega[gyro_interval.as_slice()],
                    dts=dts,
                )
            )

        return pairs
