"""Tests for the inertial pre-filter."""

import numpy as np
import pytest

from lltrack.config import TrackingConfig
from lltrack.estimation.prefilter import InertialPreFilter, bias_corrected_rate
from lltrack.io.samples import AccelerometerSample, GyroSample


@pytest.fixture
def config() -> TrackingConfig:
    """Config with a short stationarity window."""
    return TrackingConfig(stationary_window=10, gyro_smoothing=0.5, accel_smoothing=0.5)


@pytest.fixture
def prefilter(config: TrackingConfig) -> InertialPreFilter:
    """Fresh pre-filter."""
    return InertialPreFilter(config)


def feed_static(prefilter: InertialPreFilter, rate: np.ndarray, count: int) -> None:
    """Feed a constant gyro rate and gravity-only accelerometer readings."""
    for i in range(count):
        t = i * 0.005
        prefilter.condition_gyro(GyroSample(t, rate))
        prefilter.condition_accelerometer(AccelerometerSample(t, np.array([0.0, 9.81, 0.0])))


class TestInertialPreFilter:
    """Test suite for InertialPreFilter."""

    def test_bias_corrected_rate(self):
        """Test bias subtraction."""
        np.testing.assert_allclose(
            bias_corrected_rate(np.array([1.0, 2.0, 3.0]), np.array([0.5, 0.5, 0.5])),
            [0.5, 1.5, 2.5],
        )

    def test_first_sample_passes_through(self, prefilter: InertialPreFilter):
        """Test that the filter is seeded with the first sample."""
        out = prefilter.condition_gyro(GyroSample(0.0, [1.0, 0.0, 0.0]))

        np.testing.assert_allclose(out.angular_rate, [1.0, 0.0, 0.0])
        assert out.timestamp == 0.0

    def test_low_pass_smooths_gyro(self, prefilter: InertialPreFilter):
        """Test exponential smoothing of the gyro stream."""
        prefilter.condition_gyro(GyroSample(0.0, [0.0, 0.0, 0.0]))
        out = prefilter.condition_gyro(GyroSample(0.01, [1.0, 0.0, 0.0]))

        np.testing.assert_allclose(out.angular_rate, [0.5, 0.0, 0.0])

    def test_filter_disabled_returns_raw_sample(self, prefilter: InertialPreFilter):
        """Test that a disabled filter returns the input unchanged."""
        prefilter.condition_gyro(GyroSample(0.0, [0.0, 0.0, 0.0]))
        sample = GyroSample(0.01, [1.0, 0.0, 0.0])

        assert prefilter.condition_gyro(sample, apply_filter=False) is sample

    def test_accelerometer_toggle_independent(self, prefilter: InertialPreFilter):
        """Test that accelerometer filtering is toggled on its own."""
        prefilter.condition_accelerometer(AccelerometerSample(0.0, [0.0, 0.0, 0.0]))
        raw = AccelerometerSample(0.01, [2.0, 0.0, 0.0])

        assert prefilter.condition_accelerometer(raw, apply_filter=False) is raw
        smoothed = prefilter.condition_accelerometer(AccelerometerSample(0.02, [2.0, 0.0, 0.0]))
        # Filter memory kept running while disabled: 0 -> 1 -> 1.5
        np.testing.assert_allclose(smoothed.acceleration, [1.5, 0.0, 0.0])

    def test_not_stationary_before_window_full(self, prefilter: InertialPreFilter):
        """Test that stationarity needs a full window."""
        feed_static(prefilter, np.array([0.01, 0.0, 0.0]), 5)

        assert not prefilter.is_stationary()
        assert prefilter.stationary_rate() is None

    def test_stationary_rate_is_mean_rate(self, prefilter: InertialPreFilter):
        """Test that a static device reports its mean rate as stationary rate."""
        bias = np.array([0.01, -0.02, 0.005])
        feed_static(prefilter, bias, 20)

        assert prefilter.is_stationary()
        np.testing.assert_allclose(prefilter.stationary_rate(), bias, atol=1e-12)

    def test_rotation_is_not_stationary(self, prefilter: InertialPreFilter):
        """Test that a constant fast rotation is not treated as bias."""
        feed_static(prefilter, np.array([0.0, 0.0, 1.0]), 20)

        assert not prefilter.is_stationary()

    def test_shaking_is_not_stationary(self, prefilter: InertialPreFilter):
        """Test that high accelerometer variance blocks stationarity."""
        for i in range(20):
            t = i * 0.005
            prefilter.condition_gyro(GyroSample(t, [0.0, 0.0, 0.0]))
            accel = np.array([0.0, 9.81 + (3.0 if i % 2 else -3.0), 0.0])
            prefilter.condition_accelerometer(AccelerometerSample(t, accel))

        assert not prefilter.is_stationary()

    def test_reset_clears_window(self, prefilter: InertialPreFilter):
        """Test that reset forgets the stationarity window."""
        feed_static(prefilter, np.zeros(3), 20)
        prefilter.reset()

        assert prefilter.stationary_rate() is None
