"""Sensor sample types delivered by the platform bridges.

All samples are immutable and validated on construction. Timestamps are
monotonic seconds, vectors are in the device frame.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np

from ..errors import MalformedSampleError

ORIENTATION_NORM_TOLERANCE = 1e-6


def _as_vector(name: str, value: np.ndarray, size: int = 3) -> np.ndarray:
    """Convert to a read-only finite float64 vector of the given size."""
    try:
        arr = np.array(value, dtype=np.float64).flatten()
    except (TypeError, ValueError) as e:
        raise MalformedSampleError(f"{name} is not numeric: {value!r}") from e
    if arr.shape != (size,):
        raise MalformedSampleError(f"{name} must be ({size},), got {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise MalformedSampleError(f"{name} has non-finite values: {arr}")
    arr.setflags(write=False)
    return arr


def _as_timestamp(value: float) -> float:
    try:
        timestamp = float(value)
    except (TypeError, ValueError) as e:
        raise MalformedSampleError(f"timestamp is not numeric: {value!r}") from e
    if not np.isfinite(timestamp):
        raise MalformedSampleError(f"timestamp is not finite: {timestamp}")
    return timestamp


@dataclass(frozen=True)
class AccelerometerSample:
    """Single accelerometer reading.

    Attributes:
        timestamp: Sample time in seconds
        acceleration: Linear acceleration (ax, ay, az)
    """

    timestamp: float
    acceleration: np.ndarray  # (3,)

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_timestamp(self.timestamp))
        object.__setattr__(self, "acceleration", _as_vector("acceleration", self.acceleration))


@dataclass(frozen=True)
class GyroSample:
    """Single gyroscope reading.

    Attributes:
        timestamp: Sample time in seconds
        angular_rate: Angular velocity (wx, wy, wz) in rad/s
    """

    timestamp: float
    angular_rate: np.ndarray  # (3,) rad/s

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_timestamp(self.timestamp))
        object.__setattr__(self, "angular_rate", _as_vector("angular_rate", self.angular_rate))


@dataclass(frozen=True)
class IMUSample:
    """Gyro reading paired with the accelerometer value at the same instant.

    Attributes:
        timestamp: Gyro timestamp in seconds
        angular_rate: Angular velocity in rad/s
        acceleration: Accelerometer value interpolated at `timestamp`, or
            None when no accelerometer data covers it
    """

    timestamp: float
    angular_rate: np.ndarray
    acceleration: np.ndarray | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_timestamp(self.timestamp))
        object.__setattr__(self, "angular_rate", _as_vector("angular_rate", self.angular_rate))
        if self.acceleration is not None:
            object.__setattr__(
                self, "acceleration", _as_vector("acceleration", self.acceleration)
            )


@dataclass(frozen=True)
class VisualInertialSample:
    """Absolute pose from the visual-inertial tracking session.

    The orientation is normalized on construction, so consumers can rely on
    unit norm.

    Attributes:
        timestamp: Capture time in seconds
        position: Device position in the tracking world frame
        orientation: Unit quaternion (w, x, y, z), world from device
        camera_intrinsics: 3x3 camera intrinsic matrix K
    """

    timestamp: float
    position: np.ndarray  # (3,)
    orientation: np.ndarray  # (4,) w, x, y, z
    camera_intrinsics: np.ndarray = field(default_factory=lambda: np.eye(3))

    def __post_init__(self) -> None:
        object.__setattr__(self, "timestamp", _as_timestamp(self.timestamp))
        object.__setattr__(self, "position", _as_vector("position", self.position))

        q = np.array(_as_vector("orientation", self.orientation, size=4))
        norm = np.linalg.norm(q)
        if norm < ORIENTATION_NORM_TOLERANCE:
            raise MalformedSampleError(f"orientation has zero norm: {q}")
        q = q / norm
        q.setflags(write=False)
        object.__setattr__(self, "orientation", q)

        try:
            K = np.array(self.camera_intrinsics, dtype=np.float64)
        except (TypeError, ValueError) as e:
            raise MalformedSampleError("camera_intrinsics is not numeric") from e
        if K.shape != (3, 3):
            raise MalformedSampleError(f"camera_intrinsics must be 3x3, got {K.shape}")
        if not np.all(np.isfinite(K)):
            raise MalformedSampleError("camera_intrinsics has non-finite values")
        K.setflags(write=False)
        object.__setattr__(self, "camera_intrinsics", K)
