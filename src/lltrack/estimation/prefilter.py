"""Inertial pre-filter.

Conditions raw accelerometer and gyroscope samples before they are buffered:
drops non-finite samples, optionally smooths each stream with an exponential
low-pass filter, and detects stationary periods.

The pre-filter does not own a bias estimate. While the device is stationary it
reports the mean measured angular rate, which the pose estimator folds into
its own gyro bias state.
"""

from __future__ import annotations

import logging
import threading
from collections import deque

import numpy as np

from ..config import TrackingConfig
from ..io.samples import AccelerometerSample, GyroSample

logger = logging.getLogger(__name__)


def bias_corrected_rate(angular_rate: np.ndarray, gyro_bias: np.ndarray) -> np.ndarray:
    """Remove the gyro bias from a measured angular rate."""
    return np.asarray(angular_rate, dtype=np.float64) - gyro_bias


class _StreamConditioner:
    """Low-pass filter and running window for one 3-axis stream.

    Not thread-safe; the owning pre-filter guards it with the stream's lock.
    """

    def __init__(self, smoothing: float, window_size: int) -> None:
        self._smoothing = smoothing
        self._filtered: np.ndarray | None = None
        self._window: deque[np.ndarray] = deque(maxlen=window_size)

    def update(self, value: np.ndarray, apply_filter: bool) -> np.ndarray:
        """Feed one raw value and return the conditioned value."""
        self._window.append(value)

        if self._filtered is None:
            self._filtered = value.copy()
        else:
            a = self._smoothing
            self._filtered = a * value + (1.0 - a) * self._filtered

        # The filter memory keeps running while disabled so re-enabling
        # does not start from a stale value.
        return self._filtered.copy() if apply_filter else value

    def window_stats(self) -> tuple[int, np.ndarray, float]:
        """Return (count, mean, max per-axis variance) of the raw window."""
        if not self._window:
            return 0, np.zeros(3), 0.0
        values = np.array(self._window)
        return len(values), values.mean(axis=0), float(values.var(axis=0).max())

    def reset(self) -> None:
        self._filtered = None
        self._window.clear()


class InertialPreFilter:
    """Conditions raw inertial samples and detects stationarity.

    Gyro and accelerometer state are guarded by separate locks so the two
    producer threads never wait on each other.
    """

    def __init__(self, config: TrackingConfig | None = None) -> None:
        """Initialize pre-filter.

        Args:
            config: Tracking configuration (smoothing factors and
                stationarity thresholds)
        """
        self._config = config or TrackingConfig()
        self._gyro = _StreamConditioner(
            self._config.gyro_smoothing, self._config.stationary_window
        )
        self._accel = _StreamConditioner(
            self._config.accel_smoothing, self._config.stationary_window
        )
        self._gyro_lock = threading.Lock()
        self._accel_lock = threading.Lock()

    def condition_gyro(
        self, sample: GyroSample, apply_filter: bool = True
    ) -> GyroSample | None:
        """Condition a gyro sample.

        Args:
            sample: Raw gyro sample
            apply_filter: If True, return the low-pass filtered rate

        Returns:
            Conditioned sample, or None if the sample was dropped
        """
        rate = np.asarray(sample.angular_rate, dtype=np.float64)
        if not np.all(np.isfinite(rate)):
            logger.debug("Dropped non-finite gyro sample at t=%.6f", sample.timestamp)
            return None

        with self._gyro_lock:
            conditioned = self._gyro.update(rate, apply_filter)

        if not apply_filter:
            return sample
        return GyroSample(timestamp=sample.timestamp, angular_rate=conditioned)

    def condition_accelerometer(
        self, sample: AccelerometerSample, apply_filter: bool = True
    ) -> AccelerometerSample | None:
        """Condition an accelerometer sample.

        Args:
            sample: Raw accelerometer sample
            apply_filter: If True, return the low-pass filtered acceleration

        Returns:
            Conditioned sample, or None if the sample was dropped
        """
        accel = np.asarray(sample.acceleration, dtype=np.float64)
        if not np.all(np.isfinite(accel)):
            logger.debug(
                "Dropped non-finite accelerometer sample at t=%.6f", sample.timestamp
            )
            return None

        with self._accel_lock:
            conditioned = self._accel.update(accel, apply_filter)

        if not apply_filter:
            return sample
        return AccelerometerSample(timestamp=sample.timestamp, acceleration=conditioned)

    def is_stationary(self) -> bool:
        """Return True if recent samples indicate the device is at rest.

        Requires a full gyro window with low variance and a small mean rate.
        When accelerometer data is present its variance must be low too.
        """
        return self.stationary_rate() is not None

    def stationary_rate(self) -> np.ndarray | None:
        """Mean measured angular rate over the window while stationary.

        Returns:
            Mean gyro rate (3,) if the device is stationary, else None
        """
        cfg = self._config
        with self._gyro_lock:
            gyro_count, gyro_mean, gyro_var = self._gyro.window_stats()
        with self._accel_lock:
            accel_count, _, accel_var = self._accel.window_stats()

        if gyro_count < cfg.stationary_window:
            return None
        if gyro_var > cfg.stationary_gyro_variance:
            return None
        if np.linalg.norm(gyro_mean) > cfg.stationary_max_rate:
            return None
        if accel_count > 0 and accel_var > cfg.stationary_accel_variance:
            return None
        return gyro_mean

    def reset(self) -> None:
        """Clear filter memories and stationarity windows."""
        with self._gyro_lock:
            self._gyro.reset()
        with self._accel_lock:
            self._accel.reset()
