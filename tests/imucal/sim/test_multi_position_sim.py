"""
Unit tests for imucal/sim/multi_position.py (synthetic multi-position logs).

Run with: pytest tests/imucal/sim/test_multi_position_sim.py -v
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from imucal.sensors.calibrated_triad import CalibratedTriad
from imucal.sensors.intervals import static_intervals_detector
from imucal.sensors.strapdown import integrate_gyro_rates
from imucal.sensors.types import UNASSIGNED_INTERVAL_ID, samples_to_arrays
from imucal.sim.multi_position import generate_multi_position_data


class TestGenerateMultiPositionData(unittest.TestCase):
    """Test suite for generate_multi_position_data."""

    def setUp(self) -> None:
        self.acc_calib = CalibratedTriad(mis_yz=0.01, s_x=1.02, s_z=0.99, b_y=0.1)
        self.gyro_calib = CalibratedTriad(mis_xy=0.02, s_y=1.03, b_x=0.01, b_z=-0.02)
        self.log = generate_multi_position_data(
            self.acc_calib,
            self.gyro_calib,
            n_positions=5,
            n_init_samples=50,
            n_static_samples=30,
            n_motion_samples=20,
            seed=11,
        )

    def test_layout(self) -> None:
        n_total = 50 + 5 * (20 + 30)
        self.assertEqual(len(self.log.acc_samples), n_total)
        self.assertEqual(len(self.log.gyro_samples), n_total)
        self.assertEqual(self.log.orientations.shape, (6, 3, 3))

        intervals = static_intervals_detector(self.log.acc_samples)
        self.assertEqual(len(intervals), 6)
        self.assertEqual(intervals[0].n_samples, 50)
        self.assertTrue(all(iv.n_samples == 30 for iv in intervals[1:]))

        ids = [s.interval_id for s in self.log.acc_samples]
        self.assertEqual(ids[50:70], [UNASSIGNED_INTERVAL_ID] * 20)

    def test_shared_timestamps(self) -> None:
        t_acc, _, _ = samples_to_arrays(self.log.acc_samples)
        t_gyro, _, _ = samples_to_arrays(self.log.gyro_samples)
        assert_allclose(t_acc, t_gyro)
        self.assertTrue(np.all(np.diff(t_acc) > 0))

    def test_calibrated_static_acc_is_gravity(self) -> None:
        for interval, R in zip(static_intervals_detector(self.log.acc_samples),
                               self.log.orientations):
            sample = self.log.acc_samples[interval.start_idx]
            acc = self.acc_calib.unbias_normalize(sample.data)
            assert_allclose(acc, R.T @ [0.0, 0.0, 9.81], atol=1e-12)

    def test_gyro_motion_matches_orientations(self) -> None:
        """Integrating the calibrated gyro between holds gives the relative rotation."""
        intervals = static_intervals_detector(self.log.acc_samples)
        _, raw_gyro, _ = samples_to_arrays(self.log.gyro_samples)
        omega = self.gyro_calib.unbias_normalize(raw_gyro)

        for i in range(len(intervals) - 1):
            span = slice(intervals[i].end_idx, intervals[i + 1].start_idx)
            R = integrate_gyro_rates(omega[span], np.full(span.stop - span.start, 0.01))
            expected = self.log.orientations[i].T @ self.log.orientations[i + 1]
            assert_allclose(R, expected, atol=1e-8)

    def test_static_gyro_reads_bias(self) -> None:
        sample = self.log.gyro_samples[10]
        assert_allclose(sample.data, self.gyro_calib.bias_vector, atol=1e-15)

    def test_reproducible_with_seed(self) -> None:
        other = generate_multi_position_data(
            self.acc_calib, self.gyro_calib, n_positions=5,
            n_init_samples=50, n_static_samples=30, n_motion_samples=20, seed=11,
        )
        assert_allclose(other.orientations, self.log.orientations)

    def test_noise(self) -> None:
        noisy = generate_multi_position_data(
            self.acc_calib, self.gyro_calib, n_positions=2,
            n_init_samples=500, acc_noise_std=0.05, seed=3,
        )
        _, acc, _ = samples_to_arrays(noisy.acc_samples[:500])
        self.assertAlmostEqual(np.std(acc[:, 0]), 0.05, delta=0.01)

    def test_invalid_arguments(self) -> None:
        with self.assertRaises(ValueError):
            generate_multi_position_data(self.acc_calib, self.gyro_calib, n_positions=-1)
        with self.assertRaises(ValueError):
            generate_multi_position_data(self.acc_calib, self.gyro_calib, 3, dt=0.0)
        with self.assertRaises(ValueError):
            generate_multi_position_data(
                self.acc_calib, self.gyro_calib, 3, n_motion_samples=0
            )


if __name__ == "__main__":
    unittest.main()
