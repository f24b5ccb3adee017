"""
Unit tests for imucal/sensors/calibration.py (multi-position calibration).

Tests cover:
    - CalibrationConfig validation and dict round trip
    - Accelerometer recovery from noise-free synthetic logs
    - Accelerometer failure paths (too few intervals, short data, invalid ids,
      parallel orientations, iteration cap)
    - Gyroscope recovery with and without bias refinement
    - Gyroscope failure paths (short or truncated logs)
    - float32 output precision

Run with: pytest tests/imucal/sensors/test_multi_position_calibration.py -v
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from imucal.sensors.calibrated_triad import CalibratedTriad
from imucal.sensors.calibration import (
    MIN_STATIC_INTERVALS,
    CalibrationConfig,
    MultiPositionCalibrator,
)
from imucal.sensors.types import samples_from_arrays, samples_to_arrays
from imucal.sim.multi_position import generate_multi_position_data

G = 9.81

TRUE_ACC = CalibratedTriad(
    mis_yz=0.01, mis_zy=-0.02, mis_zx=0.015,
    s_x=1.02, s_y=0.98, s_z=1.01,
    b_x=0.12, b_y=-0.08, b_z=0.2,
)

TRUE_GYRO = CalibratedTriad(
    mis_yz=0.008, mis_zy=-0.012, mis_zx=0.01,
    mis_xz=-0.006, mis_xy=0.009, mis_yx=0.005,
    s_x=1.03, s_y=0.97, s_z=1.02,
    b_x=0.01, b_y=-0.02, b_z=0.015,
)

LOGGER = "imucal.sensors.calibration"


def _make_log(n_positions=14, seed=7):
    return generate_multi_position_data(
        TRUE_ACC,
        TRUE_GYRO,
        n_positions=n_positions,
        g_mag=G,
        dt=0.01,
        n_init_samples=200,
        n_static_samples=100,
        n_motion_samples=40,
        max_rate=4.0,
        seed=seed,
    )


def _config(**kwargs):
    settings = dict(g_mag=G, n_init_samples=200, interval_n_samples=50)
    settings.update(kwargs)
    return CalibrationConfig(**settings)


class TestCalibrationConfig(unittest.TestCase):
    """Test suite for CalibrationConfig."""

    def test_defaults(self) -> None:
        config = CalibrationConfig(g_mag=G)
        self.assertEqual(config.min_num_intervals, 12)
        self.assertEqual(config.n_init_samples, 1000)
        self.assertEqual(config.interval_n_samples, 100)
        self.assertFalse(config.acc_use_means)
        self.assertFalse(config.optimize_gyro_bias)
        self.assertTrue(config.optimize_acc_bias)
        self.assertLessEqual(config.gyro_dt, 0)

    def test_invalid_values(self) -> None:
        with self.assertRaises(ValueError):
            CalibrationConfig(g_mag=0.0)
        with self.assertRaises(ValueError):
            CalibrationConfig(g_mag=G, min_num_intervals=MIN_STATIC_INTERVALS - 1)
        with self.assertRaises(ValueError):
            CalibrationConfig(g_mag=G, n_init_samples=0)
        with self.assertRaises(ValueError):
            CalibrationConfig(g_mag=G, interval_n_samples=0)
        with self.assertRaises(ValueError):
            CalibrationConfig(g_mag=G, tol=0.0)
        with self.assertRaises(ValueError):
            CalibrationConfig(g_mag=G, init_acc_calibration=np.eye(3))

    def test_dict_round_trip(self) -> None:
        config = _config(verbose=True, init_gyro_calibration=TRUE_GYRO)
        data = config.to_dict()
        restored = CalibrationConfig.from_dict(data)

        self.assertEqual(data["init_gyro_calibration"], TRUE_GYRO.params.tolist())
        self.assertIsNone(data["init_acc_calibration"])
        self.assertTrue(restored.init_gyro_calibration.allclose(TRUE_GYRO, atol=0.0))
        self.assertEqual(restored.to_dict(), data)

    def test_from_dict_unknown_key(self) -> None:
        with self.assertRaises(ValueError):
            CalibrationConfig.from_dict({"g_mag": G, "gyro_rate": 100})

    def test_from_latitude(self) -> None:
        config = CalibrationConfig.from_latitude(45.0, n_init_samples=10)
        self.assertAlmostEqual(config.g_mag, 9.8062, places=3)
        self.assertEqual(config.n_init_samples, 10)


class TestAccelerometerCalibration(unittest.TestCase):
    """Accelerometer-only calibration."""

    @classmethod
    def setUpClass(cls) -> None:
        cls.log = _make_log()

    def test_recovers_true_parameters(self) -> None:
        calibrator = MultiPositionCalibrator(_config())

        self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))

        assert_allclose(calibrator.acc_calibration.params, TRUE_ACC.params, atol=1e-6)
        self.assertIsNone(calibrator.gyro_calibration)
        self.assertEqual(calibrator.calibrated_gyro_samples, [])
        self.assertEqual(len(calibrator.result.static_intervals), 15)
        self.assertLess(calibrator.result.acc_cost, 1e-10)

    def test_calibrated_samples(self) -> None:
        calibrator = MultiPositionCalibrator(_config())
        self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))

        calibrated = calibrator.calibrated_acc_samples
        self.assertEqual(len(calibrated), len(self.log.acc_samples))
        for raw, cal in zip(self.log.acc_samples, calibrated):
            self.assertEqual(raw.timestamp, cal.timestamp)
            self.assertEqual(raw.interval_id, cal.interval_id)

        # Every sample (static or moving) has the norm of gravity
        norms = np.linalg.norm(np.vstack([s.data for s in calibrated]), axis=1)
        assert_allclose(norms, G, atol=1e-5)

    def test_interval_means(self) -> None:
        calibrator = MultiPositionCalibrator(_config(acc_use_means=True))

        self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))
        assert_allclose(calibrator.acc_calibration.params, TRUE_ACC.params, atol=1e-6)

    def test_fixed_bias(self) -> None:
        init = CalibratedTriad(b_x=TRUE_ACC.b_x, b_y=TRUE_ACC.b_y, b_z=TRUE_ACC.b_z)
        calibrator = MultiPositionCalibrator(
            _config(optimize_acc_bias=False, init_acc_calibration=init)
        )

        self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))
        assert_allclose(calibrator.acc_calibration.params, TRUE_ACC.params, atol=1e-6)

    def test_float32_output(self) -> None:
        calibrator = MultiPositionCalibrator(_config(), dtype=np.float32)

        self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))
        self.assertEqual(calibrator.acc_calibration.dtype, np.float32)
        self.assertEqual(calibrator.calibrated_acc_samples[0].data.dtype, np.float32)
        assert_allclose(calibrator.acc_calibration.params, TRUE_ACC.params, atol=1e-5)

    def test_verbose_logs_progress(self) -> None:
        calibrator = MultiPositionCalibrator(_config(verbose=True))
        with self.assertLogs(LOGGER, level="INFO"):
            self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))

    def test_too_few_intervals(self) -> None:
        log = _make_log(n_positions=MIN_STATIC_INTERVALS - 2)
        calibrator = MultiPositionCalibrator(_config(min_num_intervals=MIN_STATIC_INTERVALS))

        with self.assertLogs(LOGGER, level="WARNING"):
            self.assertFalse(calibrator.calibrate_accelerometer(log.acc_samples))
        self.assertIsNone(calibrator.result)
        self.assertIsNone(calibrator.acc_calibration)
        self.assertEqual(calibrator.calibrated_acc_samples, [])

    def test_intervals_shorter_than_required(self) -> None:
        """Only the initial hold is long enough."""
        calibrator = MultiPositionCalibrator(_config(interval_n_samples=150))
        self.assertFalse(calibrator.calibrate_accelerometer(self.log.acc_samples))

    def test_fewer_samples_than_initial_window(self) -> None:
        calibrator = MultiPositionCalibrator(_config(n_init_samples=len(self.log.acc_samples) + 1))
        self.assertFalse(calibrator.calibrate_accelerometer(self.log.acc_samples))

    def test_invalid_interval_id(self) -> None:
        samples = list(self.log.acc_samples)
        samples[500] = samples[500].with_interval_id(-3)
        calibrator = MultiPositionCalibrator(_config())

        with self.assertLogs(LOGGER, level="WARNING"):
            self.assertFalse(calibrator.calibrate_accelerometer(samples))

    def test_parallel_orientations(self) -> None:
        """Every hold sees gravity along the same body axis."""
        t, _, ids = samples_to_arrays(self.log.acc_samples)
        raw = np.linalg.solve(TRUE_ACC.ms_matrix, [0.0, 0.0, G]) + TRUE_ACC.bias_vector
        samples = samples_from_arrays(t, np.tile(raw, (len(t), 1)), ids)
        calibrator = MultiPositionCalibrator(_config())

        with self.assertLogs(LOGGER, level="WARNING"):
            self.assertFalse(calibrator.calibrate_accelerometer(samples))
        self.assertIsNone(calibrator.result)

    def test_iteration_cap_reached(self) -> None:
        init = CalibratedTriad(s_x=1.1, s_y=1.1, s_z=1.1)
        calibrator = MultiPositionCalibrator(_config(max_iter=1, init_acc_calibration=init))

        with self.assertLogs(LOGGER, level="WARNING") as cm:
            self.assertFalse(calibrator.calibrate_accelerometer(self.log.acc_samples))
        self.assertIn("did not converge", cm.output[-1])
        self.assertIsNone(calibrator.result)
        self.assertIsNone(calibrator.acc_calibration)

    def test_empty_input(self) -> None:
        calibrator = MultiPositionCalibrator(_config())
        self.assertFalse(calibrator.calibrate_accelerometer([]))

    def test_failure_clears_previous_result(self) -> None:
        calibrator = MultiPositionCalibrator(_config())
        self.assertTrue(calibrator.calibrate_accelerometer(self.log.acc_samples))
        self.assertFalse(calibrator.calibrate_accelerometer(self.log.acc_samples[:100]))
        self.assertIsNone(calibrator.result)


class TestAccelerometerGyroscopeCalibration(unittest.TestCase):
    """Joint accelerometer and gyroscope calibration."""

    @classmethod
    def setUpClass(cls) -> None:
        cls.log = _make_log()

    def test_recovers_gyro_misalignment_and_scale(self) -> None:
        calibrator = MultiPositionCalibrator(_config())

        ok = calibrator.calibrate_accelerometer_gyroscope(
            self.log.acc_samples, self.log.gyro_samples
        )

        self.assertTrue(ok)
        assert_allclose(calibrator.acc_calibration.params, TRUE_ACC.params, atol=1e-6)
        gyro = calibrator.gyro_calibration
        assert_allclose(gyro.params[:9], TRUE_GYRO.params[:9], atol=1e-5)
        # Bias from the initial still window
        assert_allclose(gyro.bias_vector, TRUE_GYRO.bias_vector, atol=1e-12)
        self.assertLess(calibrator.result.gyro_cost, 1e-10)

    def test_recovers_gyro_bias_when_optimized(self) -> None:
        calibrator = MultiPositionCalibrator(_config(optimize_gyro_bias=True))

        ok = calibrator.calibrate_accelerometer_gyroscope(
            self.log.acc_samples, self.log.gyro_samples
        )

        self.assertTrue(ok)
        assert_allclose(calibrator.gyro_calibration.params, TRUE_GYRO.params, atol=1e-5)

    def test_calibrated_gyro_samples(self) -> None:
        calibrator = MultiPositionCalibrator(_config(gyro_dt=0.01))
        self.assertTrue(
            calibrator.calibrate_accelerometer_gyroscope(
                self.log.acc_samples, self.log.gyro_samples
            )
        )

        calibrated = calibrator.calibrated_gyro_samples
        self.assertEqual(len(calibrated), len(self.log.gyro_samples))
        # Static samples read zero rate once calibrated
        static = np.vstack([s.data for s in calibrated if s.interval_id >= 0])
        assert_allclose(static, 0.0, atol=1e-5)

    def test_too_few_gyro_samples(self) -> None:
        calibrator = MultiPositionCalibrator(_config())
        with self.assertLogs(LOGGER, level="WARNING"):
            ok = calibrator.calibrate_accelerometer_gyroscope(
                self.log.acc_samples, self.log.gyro_samples[:150]
            )
        self.assertFalse(ok)
        self.assertIsNone(calibrator.result)

    def test_gyro_log_covering_three_rotations(self) -> None:
        """Three rotations leave the gyroscope model underdetermined."""
        calibrator = MultiPositionCalibrator(_config())

        with self.assertWarns(UserWarning), self.assertLogs(LOGGER, level="WARNING") as cm:
            ok = calibrator.calibrate_accelerometer_gyroscope(
                self.log.acc_samples, self.log.gyro_samples[:640]
            )

        self.assertFalse(ok)
        self.assertIn("3 usable static interval pairs", cm.output[-1])
        self.assertIsNone(calibrator.result)
        self.assertIsNone(calibrator.gyro_calibration)

    def test_bias_refinement_needs_six_pairs(self) -> None:
        calibrator = MultiPositionCalibrator(_config(optimize_gyro_bias=True))

        with self.assertWarns(UserWarning), self.assertLogs(LOGGER, level="WARNING") as cm:
            ok = calibrator.calibrate_accelerometer_gyroscope(
                self.log.acc_samples, self.log.gyro_samples[:900]
            )

        self.assertFalse(ok)
        self.assertIn("5 usable static interval pairs, at least 6 needed", cm.output[-1])

    def test_non_increasing_gyro_timestamps(self) -> None:
        calibrator = MultiPositionCalibrator(_config())
        ok = calibrator.calibrate_accelerometer_gyroscope(
            self.log.acc_samples, self.log.gyro_samples[::-1]
        )
        self.assertFalse(ok)

    def test_accelerometer_failure_propagates(self) -> None:
        calibrator = MultiPositionCalibrator(_config(interval_n_samples=150))
        ok = calibrator.calibrate_accelerometer_gyroscope(
            self.log.acc_samples, self.log.gyro_samples
        )
        self.assertFalse(ok)
        self.assertIsNone(calibrator.gyro_calibration)


if __name__ == "__main__":
    unittest.main()
