"""
Quaternion kinematics and gyroscope integration between static intervals.

The gyroscope part of the multi-position calibration predicts how the
sensor rotated between two static holds by integrating the calibrated
angular rates over the motion segment. This module provides:
    - Ω(ω) matrix for quaternion kinematics (dq/dt = 0.5 * Ω(ω) * q)
    - Quaternion product and quaternion → rotation matrix conversion
    - 4th-order Runge-Kutta quaternion integration step
    - Integration of a gyroscope interval into a relative rotation matrix

Quaternion Convention:
    - Scalar-first: q = [q0, q1, q2, q3]
    - q rotates body-frame vectors into the reference frame:
      v_ref = C(q) @ v_body
    - Angular rates are expressed in the body frame.

When integration starts from the identity quaternion, the result is the
orientation of the body frame at the end of the interval expressed in the
body frame at its start.
"""

from typing import Optional, Sequence

import numpy as np

from imucal.sensors.types import DataInterval, TriadSample


def omega_matrix(omega_b: np.ndarray) -> np.ndarray:
    """
    Build the Ω(ω) matrix used in quaternion kinematics.

        Ω(ω) = [  0    -ωx   -ωy   -ωz ]
               [ ωx     0     ωz   -ωy ]
               [ ωy    -ωz    0     ωx ]
               [ ωz     ωy   -ωx    0  ]

    so that dq/dt = 0.5 * Ω(ω) * q for body-frame rates ω.

    Args:
        omega_b: Angular velocity in body frame. Shape: (3,). Units: rad/s.

    Returns:
        Ω matrix, shape (4, 4), skew-symmetric.
    """
    if omega_b.shape != (3,):
        raise ValueError(f"omega_b must have shape (3,), got {omega_b.shape}")

    wx, wy, wz = omega_b

    return np.array(
        [
            [0.0, -wx, -wy, -wz],
            [wx, 0.0, wz, -wy],
            [wy, -wz, 0.0, wx],
            [wz, wy, -wx, 0.0],
        ]
    )


def quat_multiply(q1: np.ndarray, q2: np.ndarray) -> np.ndarray:
    """Hamilton product q1 ⊗ q2 of scalar-first quaternions, shape (4,)."""
    w1, x1, y1, z1 = q1
    w2, x2, y2, z2 = q2

    return np.array(
        [
            w1 * w2 - x1 * x2 - y1 * y2 - z1 * z2,
            w1 * x2 + x1 * w2 + y1 * z2 - z1 * y2,
            w1 * y2 - x1 * z2 + y1 * w2 + z1 * x2,
            w1 * z2 + x1 * y2 - y1 * x2 + z1 * w2,
        ]
    )


def quat_to_rotmat(q: np.ndarray) -> np.ndarray:
    """
    Convert a scalar-first quaternion to the rotation matrix C(q).

    Args:
        q: Quaternion [q0, q1, q2, q3], shape (4,). Normalized internally.

    Returns:
        Rotation matrix, shape (3, 3), with v_ref = C @ v_body.
    """
    if q.shape != (4,):
        raise ValueError(f"q must have shape (4,), got {q.shape}")

    q = q / np.linalg.norm(q)
    q0, q1, q2, q3 = q

    return np.array(
        [
            [
                1 - 2 * (q2**2 + q3**2),
                2 * (q1 * q2 - q0 * q3),
                2 * (q1 * q3 + q0 * q2),
            ],
            [
                2 * (q1 * q2 + q0 * q3),
                1 - 2 * (q1**2 + q3**2),
                2 * (q2 * q3 - q0 * q1),
            ],
            [
                2 * (q1 * q3 - q0 * q2),
                2 * (q2 * q3 + q0 * q1),
                1 - 2 * (q1**2 + q2**2),
            ],
        ]
    )


def quat_integrate_rk4(
    q_prev: np.ndarray,
    omega0: np.ndarray,
    omega1: np.ndarray,
    dt: float,
) -> np.ndarray:
    """
    One Runge-Kutta (4th order) step of dq/dt = 0.5 * Ω(ω) * q.

    The angular rate is interpolated linearly from omega0 (start of the step)
    to omega1 (end of the step); pass omega1 = omega0 for a zero-order hold.

    Args:
        q_prev: Quaternion at the start of the step, shape (4,).
        omega0: Body rate at the start of the step, shape (3,). Units: rad/s.
        omega1: Body rate at the end of the step, shape (3,). Units: rad/s.
        dt: Step length in seconds (> 0).

    Returns:
        Normalized quaternion at the end of the step, shape (4,).
    """
    if q_prev.shape != (4,):
        raise ValueError(f"q_prev must have shape (4,), got {q_prev.shape}")
    if dt <= 0:
        raise ValueError(f"dt must be positive, got {dt}")

    Omega0 = 0.5 * omega_matrix(omega0)
    Omega1 = 0.5 * omega_matrix(omega1)
    Omega_mid = 0.5 * (Omega0 + Omega1)

    k1 = Omega0 @ q_prev
    k2 = Omega_mid @ (q_prev + 0.5 * dt * k1)
    k3 = Omega_mid @ (q_prev + 0.5 * dt * k2)
    k4 = Omega1 @ (q_prev + dt * k3)

    q_next = q_prev + (dt / 6.0) * (k1 + 2.0 * k2 + 2.0 * k3 + k4)
    return q_next / np.linalg.norm(q_next)


def integrate_gyro_rates(omega: np.ndarray, dts: np.ndarray) -> np.ndarray:
    """
    Integrate a sequence of body rates into a relative rotation matrix.

    Each rate omega[k] is held constant for dts[k] seconds.

    Args:
        omega: Calibrated body rates, shape (N, 3). Units: rad/s.
        dts: Hold time of each rate, shape (N,). Units: seconds.

    Returns:
        Rotation matrix R, shape (3, 3), of the body frame after the last
        step expressed in the body frame before the first step
        (v_start = R @ v_end). Identity for N = 0.
    """
    omega = np.asarray(omega, dtype=np.float64)
    dts = np.asarray(dts, dtype=np.float64)
    if omega.ndim != 2 or omega.shape[1] != 3:
        raise ValueError(f"omega must have shape (N, 3), got {omega.shape}")
    if dts.shape != (omega.shape[0],):
        raise ValueError(f"dts must have shape ({omega.shape[0]},), got {dts.shape}")

    q = np.array([1.0, 0.0, 0.0, 0.0])
    for w, dt in zip(omega, dts):
        q = quat_integrate_rk4(q, w, w, dt)

    return quat_to_rotmat(q)


def interval_time_steps(
    timestamps: np.ndarray,
    interval: DataInterval,
    dt: Optional[float] = None,
) -> np.ndarray:
    """
    Hold time of each sample in interval.

    With dt > 0 every sample is held for dt. Otherwise the hold time is the
    gap to the next timestamp; the last sample of the sequence reuses the
    previous gap.
    """
    n = interval.n_samples
    if dt is not None and dt > 0:
        return np.full(n, float(dt))

    timestamps = np.asarray(timestamps, dtype=np.float64)
    if len(timestamps) < 2:
        raise ValueError("At least two timestamps are needed to derive time steps")

    gaps = np.diff(timestamps)
    gaps = np.append(gaps, gaps[-1])
    steps = gaps[interval.as_slice()]
    if np.any(steps <= 0):
        raise ValueError("Timestamps must be strictly increasing")
    return steps


def integrate_gyro_interval(
    gyro_samples: Sequence[TriadSample],
    interval: DataInterval,
    dt: Optional[float] = None,
) -> np.ndarray:
    """
    Rotation accumulated by already calibrated gyro samples over interval.

    Args:
        gyro_samples: Calibrated gyroscope samples (rad/s).
        interval: Index range to integrate.
        dt: Sampling period in seconds; None or <= 0 uses timestamps.

    Returns:
        Rotation matrix R, shape (3, 3), with v_start = R @ v_end.

    Example:
        >>> # 90 deg about z in 1 s at 100 Hz
        >>> t = np.arange(100) * 0.01
        >>> gyro = [TriadSample(ti, np.array([0.0, 0.0, np.pi / 2])) for ti in t]
        >>> R = integrate_gyro_interval(gyro, DataInterval(0, 99), dt=0.01)
        >>> print(np.round(R @ [1, 0, 0], 6))  # [0, 1, 0]
    """
    if interval.end_idx >= len(gyro_samples):
        raise ValueError(
            f"Interval [{interval.start_idx}, {interval.end_idx}] exceeds "
            f"sample count {len(gyro_samples)}"
        )

    selected = gyro_samples[interval.as_slice()]
    omega = np.vstack([s.data for s in selected]).astype(np.float64)
    timestamps = np.array([s.timestamp for s in gyro_samples], dtype=np.float64)
    dts = interval_time_steps(timestamps, interval, dt)

    return integrate_gyro_rates(omega, dts)
