"""
Data structures for triad sensor samples and static intervals.

This module defines the shared data types used across the calibration code:
    - TriadSample: one timestamped 3-axis reading (accelerometer or gyroscope)
    - DataInterval: an inclusive index range into a sample sequence
    - Conversion helpers between sample lists and NumPy arrays

Time Base Convention:
    All timestamps are float seconds (monotonic).

Interval Id Convention:
    Every sample carries an integer interval id assigned by an external
    static/motion detector. Samples recorded while the sensor rests in one
    orientation share a non-negative id. The reserved sentinel
    UNASSIGNED_INTERVAL_ID (-1) marks motion or unassigned samples.

Precision:
    Sample data is stored with a configurable floating dtype (np.float64 by
    default, np.float32 supported). Transform code keeps the dtype of its
    inputs.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np

UNASSIGNED_INTERVAL_ID = -1

SUPPORTED_DTYPES = (np.float32, np.float64)


def check_dtype(dtype) -> np.dtype:
    """Return dtype as np.dtype, rejecting non floating-point precisions."""
    dtype = np.dtype(dtype)
    if dtype.type not in SUPPORTED_DTYPES:
        raise ValueError(f"dtype must be float32 or float64, got {dtype}")
    return dtype


@dataclass(frozen=True, eq=False)
class TriadSample:
    """
    Single timestamped reading of a 3-axis sensor.

    Attributes:
        timestamp: Sample time in seconds.
        data: Sensor vector, shape (3,). Stored as a read-only copy.
              Units: m/s² (accelerometer) or rad/s (gyroscope).
        interval_id: Static-interval id assigned by an external detector;
                     integral values only.
                     UNASSIGNED_INTERVAL_ID (-1) for motion/unassigned samples.

    Notes:
        - frozen=True and a read-only data array make samples immutable.
        - The dtype of `data` follows the input when it is float32/float64,
          anything else is converted to float64.

    Example:
        >>> s = TriadSample(0.01, np.array([0.1, -0.2, 9.8]), interval_id=3)
        >>> s.data.dtype
        dtype('float64')
    """

    timestamp: float
    data: np.ndarray
    interval_id: int = UNASSIGNED_INTERVAL_ID

    def __post_init__(self) -> None:
        data = np.asarray(self.data)
        if data.dtype.type not in SUPPORTED_DTYPES:
            data = data.astype(np.float64)
        if data.shape != (3,):
            raise ValueError(
                f"TriadSample.data must have shape (3,), got {data.shape}"
            )
        data = data.copy()
        data.flags.writeable = False
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "timestamp", float(self.timestamp))
        interval_id = int(self.interval_id)
        if interval_id != self.interval_id:
            raise ValueError(
                f"interval_id must be an integer, got {self.interval_id!r}"
            )
        object.__setattr__(self, "interval_id", interval_id)

    @property
    def x(self) -> float:
        return float(self.data[0])

    @property
    def y(self) -> float:
        return float(self.data[1])

    @property
    def z(self) -> float:
        return float(self.data[2])

    def with_data(self, data: np.ndarray) -> "TriadSample":
        """Return a copy with new vector data, same timestamp and interval id."""
        return TriadSample(self.timestamp, data, self.interval_id)

    def with_interval_id(self, interval_id: int) -> "TriadSample":
        """Return a copy tagged with another interval id."""
        return TriadSample(self.timestamp, self.data, interval_id)

    def __repr__(self) -> str:
        return (
            f"TriadSample(timestamp={self.timestamp!r}, "
            f"data={self.data.tolist()!r}, interval_id={self.interval_id})"
        )


@dataclass(frozen=True)
class DataInterval:
    """
    Inclusive index range [start_idx, end_idx] into a sample sequence.

    Attributes:
        start_idx: Index of the first sample in the interval.
        end_idx: Index of the last sample in the interval.

    Notes:
        - A single-sample interval has start_idx == end_idx.
        - Intervals produced by the static-interval detector are ordered by
          start_idx and do not overlap.
    """

    start_idx: int
    end_idx: int

    def __post_init__(self) -> None:
        if self.start_idx < 0:
            raise ValueError(
                f"DataInterval.start_idx must be non-negative, got {self.start_idx}"
            )
        if self.end_idx < self.start_idx:
            raise ValueError(
                f"DataInterval end_idx ({self.end_idx}) must be >= "
                f"start_idx ({self.start_idx})"
            )

    @property
    def n_samples(self) -> int:
        """Number of samples covered by the interval."""
        return self.end_idx - self.start_idx + 1

    def as_slice(self) -> slice:
        return slice(self.start_idx, self.end_idx + 1)


def samples_from_arrays(
    timestamps: np.ndarray,
    data: np.ndarray,
    interval_ids: Optional[np.ndarray] = None,
    dtype=np.float64,
) -> list:
    """
    Build a list of TriadSample from time-series arrays.

    Args:
        timestamps: Sample times, shape (N,). Units: seconds.
        data: Sensor readings, shape (N, 3).
        interval_ids: Optional integer ids, shape (N,).
                      Default: all UNASSIGNED_INTERVAL_ID.
        dtype: Floating precision of the sample data (float32 or float64).

    Returns:
        List of N TriadSample objects in input order.

    Example:
        >>> t = np.arange(3) * 0.01
        >>> acc = np.tile([0.0, 0.0, 9.81], (3, 1))
        >>> samples = samples_from_arrays(t, acc, np.array([0, 0, -1]))
        >>> [s.interval_id for s in samples]
        [0, 0, -1]
    """
    dtype = check_dtype(dtype)
    timestamps = np.asarray(timestamps, dtype=np.float64)
    data = np.asarray(data, dtype=dtype)

    if timestamps.ndim != 1:
        raise ValueError(f"timestamps must be 1D array, got shape {timestamps.shape}")
    n = timestamps.shape[0]
    if data.shape != (n, 3):
        raise ValueError(f"data must have shape ({n}, 3), got {data.shape}")

    if interval_ids is None:
        interval_ids = np.full(n, UNASSIGNED_INTERVAL_ID, dtype=int)
    else:
        interval_ids = np.asarray(interval_ids)
        if interval_ids.shape != (n,):
            raise ValueError(
                f"interval_ids must have shape ({n},), got {interval_ids.shape}"
            )

    return [
        TriadSample(timestamps[i], data[i], interval_ids[i]) for i in range(n)
    ]


def samples_to_arrays(
    samples: Sequence[TriadSample],
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Stack a sample sequence into arrays.

    Returns:
        Tuple (t, data, ids) with shapes (N,), (N, 3) and (N,).
        For an empty sequence data has shape (0, 3).
    """
    if len(samples) == 0:
        return np.zeros(0), np.zeros((0, 3)), np.zeros(0, dtype=int)

    t = np.array([s.timestamp for s in samples], dtype=np.float64)
    data = np.vstack([s.data for s in samples])
    ids = np.array([s.interval_id for s in samples], dtype=int)
    return t, data, ids
