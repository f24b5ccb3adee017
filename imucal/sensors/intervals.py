"""
Static interval segmentation and per-interval sample statistics.

The multi-position procedure alternates static holds (sensor motionless in
one orientation) with motion. An external detector labels every sample with
an interval id; this module turns those labels into index ranges and
extracts the data used by the calibration cost functions:

    - static_intervals_detector: maximal runs of equal, valid interval ids
    - extract_interval_samples: per-interval means or centred raw windows
    - data_mean / data_variance: statistics over an index range
    - interval_from_timestamps / initial_interval: index ranges from times

Sentinel handling:
    Samples tagged UNASSIGNED_INTERVAL_ID (-1) are ignored when deciding
    interval boundaries. Any other negative id is an input error and raises
    InvalidIntervalIdError.
"""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from imucal.sensors.types import (
    UNASSIGNED_INTERVAL_ID,
    DataInterval,
    TriadSample,
)


class InvalidIntervalIdError(ValueError):
    """Raised when a sample carries a negative id other than the sentinel."""


def static_intervals_detector(samples: Sequence[TriadSample]) -> List[DataInterval]:
    """
    Group samples into static intervals from their interval ids.

    Single forward scan over the samples:
        - sentinel (-1) samples are skipped; they do not open, extend or
          close a run
        - an id different from the previous valid id closes the open run
          (if any) and opens a new one at this index
        - an id equal to the previous valid id extends the open run

    Args:
        samples: Chronologically ordered samples with interval ids.

    Returns:
        Ordered, non-overlapping list of DataInterval, one per maximal run of
        equal valid ids. Empty input (or only sentinels) gives [].

    Raises:
        InvalidIntervalIdError: If a sample has a negative id other than
                                UNASSIGNED_INTERVAL_ID.

    Example:
        >>> S = UNASSIGNED_INTERVAL_ID
        >>> ids = [1, 1, 1, 2, 2, S, S, 3, 3, 3]
        >>> samples = [TriadSample(i, np.zeros(3), k) for i, k in enumerate(ids)]
        >>> [(iv.start_idx, iv.end_idx) for iv in static_intervals_detector(samples)]
        [(0, 2), (3, 4), (7, 9)]
    """
    intervals: List[DataInterval] = []

    start_idx = -1
    end_idx = -1
    previous_id: Optional[int] = None

    for i, sample in enumerate(samples):
        interval_id = sample.interval_id

        if interval_id == UNASSIGNED_INTERVAL_ID:
            continue
        if interval_id < 0:
            raise InvalidIntervalIdError(
                f"Sample {i} has invalid interval id {interval_id} "
                f"(only {UNASSIGNED_INTERVAL_ID} may be negative)"
            )

        if interval_id != previous_id:
            if start_idx >= 0:
                intervals.append(DataInterval(start_idx, end_idx))
            start_idx = i
            previous_id = interval_id

        end_idx = i

    if start_idx >= 0:
        intervals.append(DataInterval(start_idx, end_idx))

    return intervals


def _check_interval(samples: Sequence[TriadSample], interval: DataInterval) -> None:
    if interval.end_idx >= len(samples):
        raise ValueError(
            f"Interval [{interval.start_idx}, {interval.end_idx}] exceeds "
            f"sample count {len(samples)}"
        )


def _interval_data(samples: Sequence[TriadSample], interval: DataInterval) -> np.ndarray:
    _check_interval(samples, interval)
    return np.vstack([s.data for s in samples[interval.as_slice()]])


def data_mean(samples: Sequence[TriadSample], interval: DataInterval) -> np.ndarray:
    """Mean vector of the samples in interval, shape (3,)."""
    data = _interval_data(samples, interval)
    return np.mean(data, axis=0)


def data_variance(samples: Sequence[TriadSample], interval: DataInterval) -> np.ndarray:
    """Per-axis (population) variance of the samples in interval, shape (3,)."""
    data = _interval_data(samples, interval)
    return np.var(data, axis=0)


def initial_interval(samples: Sequence[TriadSample], n_samples: int) -> DataInterval:
    """
    Interval covering the first n_samples samples.

    Raises:
        ValueError: If samples is empty or n_samples < 1.
    """
    if n_samples < 1:
        raise ValueError(f"n_samples must be positive, got {n_samples}")
    if len(samples) == 0:
        raise ValueError("Cannot take an initial interval of an empty sequence")
    return DataInterval(0, min(n_samples, len(samples)) - 1)


def interval_from_timestamps(
    samples: Sequence[TriadSample],
    start_ts: float,
    end_ts: float,
) -> Optional[DataInterval]:
    """
    Index range of the samples with start_ts <= t <= end_ts.

    Samples are assumed to be sorted by timestamp.

    Returns:
        DataInterval, or None if no sample falls in the time range.
    """
    if end_ts < start_ts:
        raise ValueError(f"end_ts ({end_ts}) must be >= start_ts ({start_ts})")

    t = np.array([s.timestamp for s in samples], dtype=np.float64)
    start_idx = int(np.searchsorted(t, start_ts, side="left"))
    end_idx = int(np.searchsorted(t, end_ts, side="right")) - 1

    if start_idx >= len(t) or end_idx < start_idx:
        return None
    return DataInterval(start_idx, end_idx)


def extract_interval_samples(
    samples: Sequence[TriadSample],
    intervals: Sequence[DataInterval],
    interval_n_samples: int = 100,
    only_means: bool = False,
) -> Tuple[List[TriadSample], List[DataInterval]]:
    """
    Extract the calibration data of each sufficiently long static interval.

    Intervals with fewer than interval_n_samples samples are discarded. For
    every kept interval:
        - only_means=True: one sample holding the mean over the whole
          interval, timestamped at the interval centre
        - only_means=False: the interval_n_samples raw samples centred in
          the interval

    Args:
        samples: Source sample sequence.
        intervals: Static intervals into samples.
        interval_n_samples: Minimum interval length, and raw window length.
        only_means: Emit one mean per interval instead of raw samples.

    Returns:
        Tuple (extracted_samples, extracted_intervals), where
        extracted_intervals lists the kept intervals in input order.
    """
    if interval_n_samples < 1:
        raise ValueError(
            f"interval_n_samples must be positive, got {interval_n_samples}"
        )

    extracted_samples: List[TriadSample] = []
    extracted_intervals: List[DataInterval] = []

    for interval in intervals:
        _check_interval(samples, interval)
        interval_size = interval.n_samples
        if interval_size < interval_n_samples:
            continue

        extracted_intervals.append(interval)
        centre_idx = interval.start_idx + interval_size // 2

        if only_means:
            centre = samples[centre_idx]
            extracted_samples.append(
                TriadSample(
                    centre.timestamp,
                    data_mean(samples, interval).astype(centre.data.dtype),
                    centre.interval_id,
                )
            )
        else:
            start_idx = centre_idx - interval_n_samples // 2
            extracted_samples.extend(samples[start_idx:start_idx + interval_n_samples])

    return extracted_samples, extracted_intervals
