"""Tests for TrackingConfig and FeatureFlags."""

from pathlib import Path

import numpy as np
import pytest

from lltrack.config import FeatureFlags, TrackingConfig
from lltrack.errors import ConfigurationError


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """YAML config nested under a `tracking` key.

    Args:
        tmp_path: Pytest temporary directory fixture

    Returns:
        Path to the YAML file
    """
    path = tmp_path / "tracking.yaml"
    path.write_text(
        "tracking:\n"
        "  buffer_capacity: 400\n"
        "  max_dt: 0.1\n"
        "  integrate_acceleration: true\n"
        "  gravity: [0.0, 0.0, -9.81]\n"
    )
    return path


class TestTrackingConfig:
    """Test suite for TrackingConfig."""

    def test_defaults_are_valid(self):
        """Test that the default config passes validation."""
        config = TrackingConfig()

        assert config.buffer_capacity == 200
        assert config.min_warmup_samples == 0
        np.testing.assert_allclose(config.gravity_vector, [0.0, -9.81, 0.0])

    def test_frozen(self):
        """Test that configs are immutable."""
        config = TrackingConfig()

        with pytest.raises(AttributeError):
            config.max_dt = 1.0

    def test_invalid_values_rejected(self):
        """Test range validation on construction."""
        with pytest.raises(ConfigurationError, match="max_dt must be positive"):
            TrackingConfig(max_dt=0.0)

        with pytest.raises(ConfigurationError, match="gyro_noise_density must be non-negative"):
            TrackingConfig(gyro_noise_density=-1.0)

        with pytest.raises(ConfigurationError, match="gate_probability"):
            TrackingConfig(gate_probability=1.0)

        with pytest.raises(ConfigurationError, match="gyro_smoothing"):
            TrackingConfig(gyro_smoothing=0.0)

    def test_stale_limits_ordered(self):
        """Test that the hard limit cannot be below the stale threshold."""
        with pytest.raises(ConfigurationError, match="hard_stale_limit"):
            TrackingConfig(stale_threshold=1.0, hard_stale_limit=0.5)

    def test_gravity_must_be_3d(self):
        """Test gravity validation."""
        with pytest.raises(ConfigurationError, match="gravity"):
            TrackingConfig(gravity=(0.0, -9.81))

    def test_from_dict_unknown_key(self):
        """Test that typos in keys are reported."""
        with pytest.raises(ConfigurationError, match="Unknown configuration keys: max_tD"):
            TrackingConfig.from_dict({"max_tD": 0.1})

    def test_from_yaml(self, config_file: Path):
        """Test loading a nested YAML config."""
        config = TrackingConfig.from_yaml(config_file)

        assert config.buffer_capacity == 400
        assert config.max_dt == pytest.approx(0.1)
        assert config.integrate_acceleration
        assert config.gravity == (0.0, 0.0, -9.81)
        assert config.stale_threshold == TrackingConfig().stale_threshold

    def test_from_yaml_flat(self, tmp_path: Path):
        """Test loading a flat YAML mapping."""
        path = tmp_path / "flat.yaml"
        path.write_text("stale_threshold: 0.25\n")

        assert TrackingConfig.from_yaml(path).stale_threshold == pytest.approx(0.25)

    def test_from_yaml_empty_file(self, tmp_path: Path):
        """Test that an empty file yields defaults."""
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert TrackingConfig.from_yaml(path) == TrackingConfig()

    def test_from_yaml_missing_file(self, tmp_path: Path):
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError, match="Tracking config not found"):
            TrackingConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_invalid_content(self, tmp_path: Path):
        """Test that malformed YAML and non-mappings are rejected."""
        broken = tmp_path / "broken.yaml"
        broken.write_text("max_dt: [0.1\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            TrackingConfig.from_yaml(broken)

        listing = tmp_path / "list.yaml"
        listing.write_text("- 1\n- 2\n")
        with pytest.raises(ConfigurationError, match="Expected a mapping"):
            TrackingConfig.from_yaml(listing)

    def test_from_yaml_invalid_value(self, tmp_path: Path):
        """Test that out-of-range values in a file are rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text("buffer_capacity: -5\n")

        with pytest.raises(ConfigurationError, match="buffer_capacity"):
            TrackingConfig.from_yaml(path)


class TestFeatureFlags:
    """Test suite for FeatureFlags."""

    def test_defaults(self):
        """Test that all features are on by default."""
        flags = FeatureFlags()

        assert flags.filter_gyro and flags.filter_accelerometer and flags.low_latency

    def test_with_changes_returns_copy(self):
        """Test that toggling returns a new snapshot."""
        flags = FeatureFlags()
        changed = flags.with_changes(low_latency=False)

        assert flags.low_latency
        assert not changed.low_latency
        assert changed.filter_gyro
