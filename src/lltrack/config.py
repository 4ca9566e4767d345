"""Configuration for the low-latency tracking engine.

`TrackingConfig` holds every tuning constant of the engine and can be loaded
from a YAML file. `FeatureFlags` is the small immutable snapshot of runtime
toggles that the lifecycle controller swaps atomically.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .errors import ConfigurationError


@dataclass(frozen=True)
class FeatureFlags:
    """Runtime toggles, read as one snapshot per processing step."""

    filter_gyro: bool = True  # Low-pass the gyroscope stream
    filter_accelerometer: bool = True  # Low-pass the accelerometer stream
    low_latency: bool = True  # False = pass the latest VI pose through

    def with_changes(self, **changes: bool) -> FeatureFlags:
        """Return a copy with the given toggles replaced."""
        return replace(self, **changes)


@dataclass(frozen=True)
class TrackingConfig:
    """Tuning constants for buffers, pre-filter and estimator.

    Times are in seconds, angles in radians, distances in meters.
    """

    # Buffers
    buffer_capacity: int = 200  # ~1 s of samples at 200 Hz

    # Initialization
    min_warmup_samples: int = 0  # Gyro samples required before tracking
    warmup_window: float = 1.0  # Max age of warm-up samples used for bias seed

    # Integration limits
    max_dt: float = 0.2  # Larger inertial gaps are clamped
    max_extrapolation: float = 0.1  # Cap on prediction past the newest sample

    # Staleness of visual-inertial corrections
    stale_threshold: float = 0.5  # Older corrections mark tracking as lost
    hard_stale_limit: float = 2.0  # Older corrections force re-initialization

    # Process noise
    gyro_noise_density: float = 1.7e-3  # rad/s/sqrt(Hz)
    gyro_bias_random_walk: float = 2.0e-5  # rad/s^2/sqrt(Hz)
    accel_noise_density: float = 2.0e-2  # m/s^2/sqrt(Hz)
    position_random_walk: float = 1.0e-3  # m/sqrt(s)
    velocity_random_walk: float = 0.5  # m/s/sqrt(s), constant-velocity model

    # Measurement noise of the visual-inertial pose
    position_noise_std: float = 0.005  # m
    orientation_noise_std: float = 0.01  # rad

    # Initial uncertainty
    initial_orientation_std: float = 0.05  # rad
    initial_gyro_bias_std: float = 0.01  # rad/s
    initial_position_std: float = 0.01  # m
    initial_velocity_std: float = 0.5  # m/s

    # Gating
    max_rotation_residual: float = 0.35  # rad, larger residuals are rejected
    max_position_residual: float = 0.5  # m, larger residuals are rejected
    gate_probability: float = 0.999  # Chi-square gate for down-weighting
    max_consecutive_outliers: int = 5  # Rejections in a row before LOST

    # Pre-filter
    gyro_smoothing: float = 0.6  # EMA weight of the newest gyro sample
    accel_smoothing: float = 0.3  # EMA weight of the newest accel sample
    stationary_window: int = 50  # Samples in the stationarity window
    stationary_gyro_variance: float = 1.0e-4  # (rad/s)^2
    stationary_accel_variance: float = 1.0e-2  # (m/s^2)^2
    stationary_max_rate: float = 0.05  # rad/s
    stationary_bias_noise_std: float = 2.0e-3  # rad/s, bias observation noise

    # Motion model
    integrate_acceleration: bool = False
    accelerometer_scale: float = 1.0  # Multiplier to m/s^2 (9.81 for g units)
    gravity: tuple[float, float, float] = field(default=(0.0, -9.81, 0.0))

    def __post_init__(self) -> None:
        """Validate values on construction."""
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigurationError: If any value is out of range
        """
        positive = (
            "buffer_capacity",
            "warmup_window",
            "max_dt",
            "stale_threshold",
            "hard_stale_limit",
            "position_noise_std",
            "orientation_noise_std",
            "max_rotation_residual",
            "max_position_residual",
            "max_consecutive_outliers",
            "stationary_window",
            "stationary_bias_noise_std",
            "accelerometer_scale",
        )
        for name in positive:
            if not getattr(self, name) > 0:
                raise ConfigurationError(f"{name} must be positive, got {getattr(self, name)}")

        non_negative = (
            "min_warmup_samples",
            "max_extrapolation",
            "gyro_noise_density",
            "gyro_bias_random_walk",
            "accel_noise_density",
            "position_random_walk",
            "velocity_random_walk",
            "initial_orientation_std",
            "initial_gyro_bias_std",
            "initial_position_std",
            "initial_velocity_std",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}")

        if self.hard_stale_limit < self.stale_threshold:
            raise ConfigurationError("hard_stale_limit must not be below stale_threshold")
        if not 0.0 < self.gate_probability < 1.0:
            raise ConfigurationError(
                f"gate_probability must be in (0, 1), got {self.gate_probability}"
            )
        for name in ("gyro_smoothing", "accel_smoothing"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ConfigurationError(f"{name} must be in (0, 1], got {value}")
        if len(self.gravity) != 3 or not np.all(np.isfinite(self.gravity)):
            raise ConfigurationError(f"gravity must be a finite 3-vector, got {self.gravity}")

    @property
    def gravity_vector(self) -> np.ndarray:
        """Return gravity in the world frame as a (3,) array."""
        return np.asarray(self.gravity, dtype=np.float64)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingConfig:
        """Create a config from a mapping, rejecting unknown keys.

        Args:
            data: Mapping of field name to value

        Returns:
            Validated TrackingConfig

        Raises:
            ConfigurationError: If a key is unknown or a value is invalid
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {', '.join(unknown)}")

        values = dict(data)
        if "gravity" in values:
            values["gravity"] = tuple(float(g) for g in values["gravity"])
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> TrackingConfig:
        """Load a config from a YAML file.

        The file holds a flat mapping of field names, optionally nested under
        a top-level ``tracking`` key. Missing fields keep their defaults.

        Args:
            yaml_path: Path to the YAML file

        Returns:
            Validated TrackingConfig

        Raises:
            FileNotFoundError: If the file doesn't exist
            ConfigurationError: If the file content is invalid
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Tracking config not found: {yaml_path}")

        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigurationError(f"Invalid YAML in {yaml_path}: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError(f"Expected a mapping in {yaml_path}")
        if isinstance(data.get("tracking"), dict):
            data = data["tracking"]

        return cls.from_dict(data)
