"""Inertial propagation of the kinematic state.

Integrates buffered gyroscope (and optionally accelerometer) samples forward
from a corrected filter state. Used by the estimator's prediction step and by
the pose query path, which integrates without touching the covariance.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass

import numpy as np

from ..config import TrackingConfig
from ..io.samples import AccelerometerSample, GyroSample, IMUSample
from .prefilter import bias_corrected_rate
from .rotation import integrate_quaternion, quaternion_to_matrix, slerp

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KinematicState:
    """Pose, velocity and gyro bias at a given time.

    Attributes:
        timestamp: State time in seconds
        orientation: Unit quaternion (w, x, y, z), world from device
        position: Position in world frame (3,)
        velocity: Velocity in world frame (3,)
        gyro_bias: Gyroscope bias (3,) in rad/s
        angular_rate: Last measured (biased) angular rate, or None if no
            gyro sample has been seen at this state
        acceleration: Last measured acceleration, or None
    """

    timestamp: float
    orientation: np.ndarray
    position: np.ndarray
    velocity: np.ndarray
    gyro_bias: np.ndarray
    angular_rate: np.ndarray | None = None
    acceleration: np.ndarray | None = None


@dataclass(frozen=True)
class StepResult:
    """One integration step with the quantities the covariance update needs.

    Attributes:
        state: State after the step
        dt: Integrated time span (after clamping)
        omega: Bias-corrected angular rate used over the step
        acceleration: Scaled device-frame acceleration used, or None
        clamped: True if the raw time gap exceeded max_dt
    """

    state: KinematicState
    dt: float
    omega: np.ndarray
    acceleration: np.ndarray | None
    clamped: bool


def pair_imu_samples(
    gyro: list[GyroSample],
    accel: list[AccelerometerSample],
    max_gap: float = 0.2,
) -> list[IMUSample]:
    """Pair each gyro sample with the accelerometer value at its timestamp.

    The accelerometer stream is linearly interpolated at gyro timestamps. A
    gyro sample outside the accelerometer time range takes the nearest
    accelerometer value if it is within `max_gap`, otherwise no acceleration.

    Args:
        gyro: Gyro samples in ascending timestamp order
        accel: Accelerometer samples in ascending timestamp order
        max_gap: Largest distance to an accelerometer sample that is used

    Returns:
        IMU samples on the gyro clock
    """
    if not accel:
        return [IMUSample(timestamp=g.timestamp, angular_rate=g.angular_rate) for g in gyro]

    accel_times = [a.timestamp for a in accel]
    paired: list[IMUSample] = []

    for g in gyro:
        t = g.timestamp
        idx = bisect.bisect_left(accel_times, t)

        acceleration: np.ndarray | None
        if idx < len(accel) and accel_times[idx] == t:
            acceleration = accel[idx].acceleration
        elif idx == 0:
            nearest = accel[0]
            acceleration = nearest.acceleration if nearest.timestamp - t <= max_gap else None
        elif idx >= len(accel):
            nearest = accel[-1]
            acceleration = nearest.acceleration if t - nearest.timestamp <= max_gap else None
        else:
            a0, a1 = accel[idx - 1], accel[idx]
            alpha = (t - a0.timestamp) / (a1.timestamp - a0.timestamp)
            acceleration = (1 - alpha) * a0.acceleration + alpha * a1.acceleration

        paired.append(
            IMUSample(timestamp=t, angular_rate=g.angular_rate, acceleration=acceleration)
        )

    return paired


class InertialPropagator:
    """Integrates IMU samples to move a kinematic state forward in time.

    - Rotation: quaternion exponential of the bias-corrected rate, averaged
      between consecutive samples (trapezoidal rule)
    - Velocity: constant, or integrated from gravity-compensated acceleration
      when `integrate_acceleration` is enabled
    - Position: integrated from velocity
    """

    def __init__(self, config: TrackingConfig | None = None) -> None:
        """Initialize propagator.

        Args:
            config: Tracking configuration (max_dt, gravity, accel model)
        """
        self._config = config or TrackingConfig()
        self._gravity = self._config.gravity_vector

    def step(
        self,
        state: KinematicState,
        sample: IMUSample,
    ) -> StepResult:
        """Integrate from `state` to the time of `sample`.

        Args:
            state: State at the start of the step
            sample: Next IMU sample (timestamp >= state.timestamp)

        Returns:
            StepResult with the state at sample.timestamp
        """
        raw_dt = sample.timestamp - state.timestamp
        clamped = raw_dt > self._config.max_dt
        dt = min(max(raw_dt, 0.0), self._config.max_dt)

        rate_start = state.angular_rate if state.angular_rate is not None else sample.angular_rate
        omega = bias_corrected_rate(0.5 * (rate_start + sample.angular_rate), state.gyro_bias)

        accel_start = state.acceleration if state.acceleration is not None else sample.acceleration
        acceleration = None
        if (
            self._config.integrate_acceleration
            and sample.acceleration is not None
            and accel_start is not None
        ):
            acceleration = 0.5 * (accel_start + sample.acceleration) * self._config.accelerometer_scale

        moved = self._integrate(state, omega, acceleration, dt)
        new_state = KinematicState(
            timestamp=sample.timestamp,
            orientation=moved[0],
            position=moved[1],
            velocity=moved[2],
            gyro_bias=state.gyro_bias,
            angular_rate=sample.angular_rate,
            acceleration=sample.acceleration if sample.acceleration is not None else state.acceleration,
        )
        return StepResult(new_state, dt, omega, acceleration, clamped)

    def extrapolate(self, state: KinematicState, target_timestamp: float) -> StepResult:
        """Predict past the newest sample, holding the last measured rate.

        Args:
            state: Latest integrated state
            target_timestamp: Time to predict to

        Returns:
            StepResult with the state at target_timestamp
        """
        raw_dt = target_timestamp - state.timestamp
        clamped = raw_dt > self._config.max_dt
        dt = min(max(raw_dt, 0.0), self._config.max_dt)

        if state.angular_rate is None:
            omega = np.zeros(3)
        else:
            omega = bias_corrected_rate(state.angular_rate, state.gyro_bias)

        acceleration = None
        if self._config.integrate_acceleration and state.acceleration is not None:
            acceleration = state.acceleration * self._config.accelerometer_scale

        moved = self._integrate(state, omega, acceleration, dt)
        new_state = KinematicState(
            timestamp=target_timestamp,
            orientation=moved[0],
            position=moved[1],
            velocity=moved[2],
            gyro_bias=state.gyro_bias,
            angular_rate=state.angular_rate,
            acceleration=state.acceleration,
        )
        return StepResult(new_state, dt, omega, acceleration, clamped)

    def _integrate(
        self,
        state: KinematicState,
        omega: np.ndarray,
        acceleration: np.ndarray | None,
        dt: float,
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Return (orientation, position, velocity) after dt."""
        if dt <= 0:
            return state.orientation, state.position, state.velocity

        q_new = integrate_quaternion(state.orientation, omega, dt)

        if acceleration is None:
            v_new = state.velocity
            p_new = state.position + state.velocity * dt
        else:
            # Mid-point rotation for the body-to-world transform
            q_mid = integrate_quaternion(state.orientation, omega, 0.5 * dt)
            accel_world = quaternion_to_matrix(q_mid) @ acceleration + self._gravity
            v_new = state.velocity + accel_world * dt
            p_new = state.position + state.velocity * dt + 0.5 * accel_world * dt**2

        return q_new, p_new, v_new

    def integrate(
        self,
        state: KinematicState,
        samples: list[IMUSample],
        end_timestamp: float | None = None,
    ) -> list[KinematicState]:
        """Integrate through samples and return the state after each one.

        Samples at or before `state.timestamp` only refresh the measured rate.

        Args:
            state: Starting state
            samples: IMU samples in ascending timestamp order
            end_timestamp: If given, samples after it are ignored

        Returns:
            Trajectory starting with `state`, one entry per integrated sample
        """
        trajectory = [state]
        current = state
        num_clamped = 0

        for sample in samples:
            if end_timestamp is not None and sample.timestamp > end_timestamp:
                break
            if sample.timestamp <= current.timestamp:
                current = refresh_measurement(current, sample)
                trajectory[-1] = current
                continue

            result = self.step(current, sample)
            num_clamped += result.clamped
            current = result.state
            trajectory.append(current)

        if num_clamped:
            logger.debug("Clamped %d inertial gaps longer than %.3fs", num_clamped, self._config.max_dt)

        return trajectory


def refresh_measurement(state: KinematicState, sample: IMUSample) -> KinematicState:
    """Copy of state with the sample's measured rate and acceleration."""
    return KinematicState(
        timestamp=state.timestamp,
        orientation=state.orientation,
        position=state.position,
        velocity=state.velocity,
        gyro_bias=state.gyro_bias,
        angular_rate=sample.angular_rate,
        acceleration=sample.acceleration if sample.acceleration is not None else state.acceleration,
    )


def interpolate_states(
    trajectory: list[KinematicState], target_timestamp: float
) -> KinematicState:
    """Interpolate an integrated trajectory at a time inside its span.

    Orientation is slerped and position/velocity linearly interpolated
    between the two bracketing states.

    Args:
        trajectory: States in ascending timestamp order
        target_timestamp: Query time

    Returns:
        Interpolated state (the first/last state outside the span)
    """
    timestamps = [s.timestamp for s in trajectory]
    idx = bisect.bisect_left(timestamps, target_timestamp)

    if idx < len(trajectory) and timestamps[idx] == target_timestamp:
        return trajectory[idx]
    if idx == 0:
        return trajectory[0]
    if idx >= len(trajectory):
        return trajectory[-1]

    s0, s1 = trajectory[idx - 1], trajectory[idx]
    alpha = (target_timestamp - s0.timestamp) / (s1.timestamp - s0.timestamp)

    return KinematicState(
        timestamp=target_timestamp,
        orientation=slerp(s0.orientation, s1.orientation, alpha),
        position=(1 - alpha) * s0.position + alpha * s1.position,
        velocity=(1 - alpha) * s0.velocity + alpha * s1.velocity,
        gyro_bias=s0.gyro_bias,
        angular_rate=s1.angular_rate,
        acceleration=s1.acceleration,
    )
