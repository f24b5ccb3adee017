"""
Synthetic multi-position IMU logs.

Generates raw accelerometer and gyroscope sequences as recorded by a sensor
that is first left still, then rotated through a series of static
orientations:

    [initial hold] -> rotate -> [hold 1] -> rotate -> [hold 2] -> ...

Each rotation runs at a constant body rate about a random axis. Static
samples are tagged with the hold index (0 for the initial hold), motion
samples with UNASSIGNED_INTERVAL_ID. The true specific force and angular
rate are mapped to raw readings by inverting the supplied calibrations,

    raw = M⁻¹ · true + B,    M = T · K

so that a perfect calibrator recovers exactly the supplied models.

Frames:
    The reference frame is z-up with gravity along -z, hence a static
    accelerometer reads the body-frame specific force Rᵀ·[0, 0, g].
"""

from dataclasses import dataclass
from typing import List, Optional

import numpy as np
from scipy.spatial.transform import Rotation

from imucal.sensors.calibrated_triad import CalibratedTriad
from imucal.sensors.types import UNASSIGNED_INTERVAL_ID, TriadSample, samples_from_arrays


@dataclass
class MultiPositionLog:
    """
    Generated log and its ground truth.

    Attributes:
        acc_samples: Raw accelerometer samples with interval ids.
        gyro_samples: Raw gyroscope samples on the same timestamps.
        orientations: Body-to-reference rotation of each static hold,
                      shape (n_positions + 1, 3, 3); index 0 is the initial hold.
        acc_calibration: True accelerometer calibration.
        gyro_calibration: True gyroscope calibration.
    """

    acc_samples: List[TriadSample]
    gyro_samples: List[TriadSample]
    orientations: np.ndarray
    acc_calibration: CalibratedTriad
    gyro_calibration: CalibratedTriad


def _raw_from_true(calib: CalibratedTriad, true_data: np.ndarray) -> np.ndarray:
    m_inv = np.linalg.inv(calib.ms_matrix.astype(np.float64))
    bias = calib.bias_vector.astype(np.float64)
    return true_data @ m_inv.T + bias


def generate_multi_position_data(
    acc_calib: CalibratedTriad,
    gyro_calib: CalibratedTriad,
    n_positions: int,
    g_mag: float = 9.81,
    dt: float = 0.01,
    n_init_samples: int = 200,
    n_static_samples: int = 100,
    n_motion_samples: int = 50,
    max_rate: float = 2.0,
    acc_noise_std: float = 0.0,
    gyro_noise_std: float = 0.0,
    seed: Optional[int] = None,
) -> MultiPositionLog:
    """
    Simulate a multi-position calibration session.

    Args:
        acc_calib: True accelerometer calibration (body frame: mis_xz,
                   mis_xy and mis_yx should be 0).
        gyro_calib: True gyroscope calibration.
        n_positions: Number of static holds after the initial one.
        g_mag: Gravity magnitude in m/s².
        dt: Sampling period in seconds.
        n_init_samples: Length of the initial still hold.
        n_static_samples: Length of every following hold.
        n_motion_samples: Length of each rotation between holds.
        max_rate: Upper bound of the rotation rate in rad/s. The rate is
                  drawn so that every rotation turns between 30° and 150°,
                  capped at this value.
        acc_noise_std: White noise std added to raw accelerometer readings.
        gyro_noise_std: White noise std added to raw gyroscope readings.
        seed: Random seed for reproducibility.

    Returns:
        MultiPositionLog with (n_init_samples + n_positions *
        (n_motion_samples + n_static_samples)) samples per sensor.

    Example:
        >>> log = generate_multi_position_data(CalibratedTriad(), CalibratedTriad(),
        ...                                    n_positions=12, seed=1)
        >>> len({s.interval_id for s in log.acc_samples})  # 13 holds + sentinel
        14
    """
    if n_positions < 0:
        raise ValueError(f"n_positions must be non-negative, got {n_positions}")
    if n_init_samples < 1 or n_static_samples < 1 or n_motion_samples < 1:
        raise ValueError("Segment lengths must be positive")
    if dt <= 0:
        raise ValueError(f"dt must be positive, got {dt}")

    rng = np.random.default_rng(seed)
    g_ref = np.array([0.0, 0.0, g_mag])

    n_total = n_init_samples + n_positions * (n_motion_samples + n_static_samples)
    t = np.arange(n_total) * dt
    true_acc = np.zeros((n_total, 3))
    true_gyro = np.zeros((n_total, 3))
    ids = np.full(n_total, UNASSIGNED_INTERVAL_ID, dtype=int)

    attitude = Rotation.from_rotvec(rng.uniform(-np.pi, np.pi, 3))
    orientations = [attitude.as_matrix()]

    true_acc[:n_init_samples] = attitude.inv().apply(g_ref)
    ids[:n_init_samples] = 0
    k = n_init_samples

    motion_time = n_motion_samples * dt
    for position in range(1, n_positions + 1):
        axis = rng.normal(size=3)
        axis /= np.linalg.norm(axis)
        angle = rng.uniform(np.deg2rad(30.0), np.deg2rad(150.0))
        omega = axis * min(angle / motion_time, max_rate)

        # Sample k carries omega over [t_k, t_k + dt]
        for j in range(n_motion_samples):
            current = attitude * Rotation.from_rotvec(omega * j * dt)
            true_acc[k] = current.inv().apply(g_ref)
            true_gyro[k] = omega
            k += 1

        attitude = attitude * Rotation.from_rotvec(omega * motion_time)
        orientations.append(attitude.as_matrix())

        true_acc[k:k + n_static_samples] = attitude.inv().apply(g_ref)
        ids[k:k + n_static_samples] = position
        k += n_static_samples

    raw_acc = _raw_from_true(acc_calib, true_acc)
    raw_gyro = _raw_from_true(gyro_calib, true_gyro)
    if acc_noise_std > 0:
        raw_acc += rng.normal(0.0, acc_noise_std, raw_acc.shape)
    if gyro_noise_std > 0:
        raw_gyro += rng.normal(0.0, gyro_noise_std, raw_gyro.shape)

    return MultiPositionLog(
        acc_samples=samples_from_arrays(t, raw_acc, ids),
        gyro_samples=samples_from_arrays(t, raw_gyro, ids),
        orientations=np.array(orientations),
        acc_calibration=acc_calib,
        gyro_calibration=gyro_calib,
    )
