"""Low-latency head pose tracking engine.

`LowLatencyTracker` is the object the sensor bridges and the render loop share.
Sensor bridges call the `on_*_data_updated` callbacks from their own threads;
the render loop calls `get_pose` once per frame.

Threading model:
- Accelerometer, gyro and visual-inertial streams each have their own lock
- Estimator mutations (seeding, correction) are serialized by the
  estimator's lock and run on the visual-inertial callback thread
- `get_pose` reads the published filter state without locking, copies the
  recent inertial window under the per-stream locks, and integrates on the
  copy
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .config import FeatureFlags, TrackingConfig
from .errors import MalformedSampleError
from .estimation.pose import Pose
from .estimation.pose_ekf import CorrectionOutcome, EstimatorPhase, FilterState, PoseEKF
from .estimation.prefilter import InertialPreFilter
from .estimation.propagation import (
    KinematicState,
    interpolate_states,
    pair_imu_samples,
)
from .estimation.rotation import slerp
from .io.sample_buffer import LatestSampleCell, SampleBuffer
from .io.samples import AccelerometerSample, GyroSample, VisualInertialSample

logger = logging.getLogger(__name__)


class PoseStatus(Enum):
    """Status of a pose query."""

    OK = "OK"
    DEGRADED = "DEGRADED"  # Dead reckoning, corrections stale or rejected
    PASSTHROUGH = "PASSTHROUGH"  # Low-latency mode off, raw visual-inertial pose
    NOT_READY = "NOT_READY"


@dataclass
class QueryTiming:
    """Timing breakdown for one pose query."""

    snapshot_ms: float = 0.0
    integration_ms: float = 0.0
    total_ms: float = 0.0


@dataclass
class PoseEstimate:
    """Result of a pose query.

    Attributes:
        timestamp: Requested timestamp in seconds
        status: Query status; `pose` is None when NOT_READY
        pose: Estimated pose T_world_device
        num_integrated_samples: Gyro samples integrated after the last correction
        timing: Processing time breakdown
    """

    timestamp: float
    status: PoseStatus
    pose: Pose | None = None
    num_integrated_samples: int = 0
    timing: QueryTiming = field(default_factory=QueryTiming)

    @property
    def is_ready(self) -> bool:
        """Return True if a pose is available."""
        return self.status != PoseStatus.NOT_READY and self.pose is not None

    @property
    def position(self) -> np.ndarray | None:
        """Return device position in world frame."""
        return self.pose.position if self.pose is not None else None

    @property
    def orientation(self) -> np.ndarray | None:
        """Return device orientation quaternion (w, x, y, z)."""
        return self.pose.orientation if self.pose is not None else None


@dataclass
class TrackingStats:
    """Counters describing input quality and estimator activity."""

    accelerometer_samples: int = 0
    gyro_samples: int = 0
    visual_inertial_samples: int = 0
    malformed_samples: int = 0
    out_of_order_samples: int = 0
    corrections_accepted: int = 0
    corrections_down_weighted: int = 0
    corrections_rejected: int = 0
    corrections_stale: int = 0
    seeds: int = 0
    queries: int = 0
    not_ready_queries: int = 0
    clamped_extrapolations: int = 0


class _StatsRecorder:
    """Thread-safe increments on a TrackingStats instance."""

    def __init__(self) -> None:
        self._stats = TrackingStats()
        self._lock = threading.Lock()

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self._stats, name, getattr(self._stats, name) + amount)

    def snapshot(self) -> TrackingStats:
        with self._lock:
            return TrackingStats(**vars(self._stats))

    def reset(self) -> None:
        with self._lock:
            self._stats = TrackingStats()


@dataclass(frozen=True)
class _DeadReckoningBase:
    """Filter state carried forward through gyro samples evicted from the buffer.

    Valid only while the filter's last correction is `correction_timestamp`.
    """

    correction_timestamp: float
    state: KinematicState


_OUTCOME_COUNTERS = {
    CorrectionOutcome.ACCEPTED: "corrections_accepted",
    CorrectionOutcome.DOWN_WEIGHTED: "corrections_down_weighted",
    CorrectionOutcome.REJECTED: "corrections_rejected",
    CorrectionOutcome.STALE: "corrections_stale",
    CorrectionOutcome.SEEDED: "seeds",
}


class LowLatencyTracker:
    """Fuses inertial and visual-inertial streams into low-latency poses.

    Example usage:
        tracker = LowLatencyTracker()
        tracker.on_gyro_data_updated(t, angular_rate)
        tracker.on_arkit_data_updated(t, position, orientation, intrinsics)
        estimate = tracker.get_pose(t + 0.016)
        if estimate.is_ready:
            render(estimate.pose)
    """

    def __init__(self, config: TrackingConfig | None = None, active: bool = True) -> None:
        """Initialize tracker.

        Args:
            config: Tracking configuration
            active: Start in the active state
        """
        self._config = config or TrackingConfig()
        self._flags = FeatureFlags()
        self._flags_lock = threading.Lock()
        self._active = active

        self._accel_buffer: SampleBuffer[AccelerometerSample] = SampleBuffer(
            self._config.buffer_capacity, name="accelerometer"
        )
        self._gyro_buffer: SampleBuffer[GyroSample] = SampleBuffer(
            self._config.buffer_capacity, name="gyro"
        )
        self._latest_vi: LatestSampleCell[VisualInertialSample] = LatestSampleCell()

        self._prefilter = InertialPreFilter(self._config)
        self._ekf = PoseEKF(self._config)
        self._stats = _StatsRecorder()

        self._dead_reckoning: _DeadReckoningBase | None = None
        self._dead_reckoning_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def on_accelerometer_data_updated(self, timestamp: float, acceleration: np.ndarray) -> bool:
        """Ingest an accelerometer sample.

        Args:
            timestamp: Sample time in seconds
            acceleration: Acceleration (3,) in the device frame

        Returns:
            True if the sample was buffered
        """
        try:
            sample = AccelerometerSample(timestamp=timestamp, acceleration=acceleration)
        except MalformedSampleError as e:
            self._drop_malformed("accelerometer", e)
            return False

        self._stats.increment("accelerometer_samples")
        if self._is_out_of_order(self._accel_buffer, sample):
            return False

        flags = self._flags
        conditioned = self._prefilter.condition_accelerometer(
            sample, apply_filter=flags.filter_accelerometer
        )
        if conditioned is None:
            self._stats.increment("malformed_samples")
            return False

        self._ekf.begin_initialization()
        return self._buffer_push(self._accel_buffer, conditioned)

    def on_gyro_data_updated(self, timestamp: float, angular_rate: np.ndarray) -> bool:
        """Ingest a gyroscope sample.

        Args:
            timestamp: Sample time in seconds
            angular_rate: Angular rate (3,) in rad/s, device frame

        Returns:
            True if the sample was buffered
        """
        try:
            sample = GyroSample(timestamp=timestamp, angular_rate=angular_rate)
        except MalformedSampleError as e:
            self._drop_malformed("gyro", e)
            return False

        self._stats.increment("gyro_samples")
        if self._is_out_of_order(self._gyro_buffer, sample):
            return False

        flags = self._flags
        conditioned = self._prefilter.condition_gyro(sample, apply_filter=flags.filter_gyro)
        if conditioned is None:
            self._stats.increment("malformed_samples")
            return False

        self._ekf.begin_initialization()
        accepted, evicted = self._gyro_buffer.push_evicting(conditioned)
        if not accepted:
            self._stats.increment("out_of_order_samples")
            return False
        if evicted is not None:
            self._fold_evicted_gyro(evicted)
        return True

    def on_arkit_data_updated(
        self,
        timestamp: float,
        position: np.ndarray,
        orientation: np.ndarray,
        intrinsics: np.ndarray | None = None,
    ) -> CorrectionOutcome | None:
        """Ingest a visual-inertial pose and correct the estimator.

        Args:
            timestamp: Capture time in seconds
            position: Device position (3,) in the world frame
            orientation: Device orientation quaternion (w, x, y, z)
            intrinsics: 3x3 camera intrinsic matrix (default: identity)

        Returns:
            What the estimator did with the sample, or None if the sample was
            dropped or estimation is skipped
        """
        try:
            sample = VisualInertialSample(
                timestamp=timestamp,
                position=position,
                orientation=orientation,
                camera_intrinsics=np.eye(3) if intrinsics is None else intrinsics,
            )
        except MalformedSampleError as e:
            self._drop_malformed("visual-inertial", e)
            return None

        self._stats.increment("visual_inertial_samples")
        self._latest_vi.put(sample)

        if not self._active or not self._flags.low_latency:
            return None

        return self._correct(sample)

    def _correct(self, sample: VisualInertialSample) -> CorrectionOutcome:
        """Run the estimator correction for one visual-inertial sample."""
        state = self._ekf.state
        since = state.last_correction_timestamp if state.valid else None

        if since is None:
            # Seeding: hand over the warm-up window
            gyro = self._gyro_buffer.snapshot_since(sample.timestamp - self._config.warmup_window)
            outcome = self._ekf.correct(
                sample,
                samples=[],
                warmup=[g for g in gyro if g.timestamp <= sample.timestamp],
                stationary_rate=self._prefilter.stationary_rate(),
            )
        else:
            # Accelerometer window reaches back one max_dt so the first gyro
            # samples can be interpolated
            gyro = self._gyro_buffer.snapshot_since(since)
            accel = self._accel_buffer.snapshot_since(since - self._config.max_dt)
            outcome = self._ekf.correct(
                sample,
                samples=pair_imu_samples(gyro, accel, self._config.max_dt),
                stationary_rate=self._prefilter.stationary_rate(),
            )

        if outcome in (
            CorrectionOutcome.ACCEPTED,
            CorrectionOutcome.DOWN_WEIGHTED,
            CorrectionOutcome.SEEDED,
        ):
            self._reset_dead_reckoning()

        counter = _OUTCOME_COUNTERS.get(outcome)
        if counter is not None:
            self._stats.increment(counter)

        new_state = self._ekf.state
        if new_state.valid and new_state.last_correction_timestamp is not None:
            horizon = new_state.last_correction_timestamp - self._config.max_dt
            self._gyro_buffer.discard_before(horizon)
            self._accel_buffer.discard_before(horizon)

        return outcome

    def _buffer_push(self, buffer: SampleBuffer, sample: object) -> bool:
        if buffer.push(sample):
            return True
        self._stats.increment("out_of_order_samples")
        return False

    def _is_out_of_order(
        self, buffer: SampleBuffer, sample: GyroSample | AccelerometerSample
    ) -> bool:
        """Count and report a sample older than the newest buffered one.

        Checked before conditioning so the pre-filter memory only sees
        in-order samples.
        """
        newest = buffer.latest()
        if newest is None or sample.timestamp >= newest.timestamp:
            return False
        self._stats.increment("out_of_order_samples")
        logger.debug(
            "Dropped out-of-order %s sample at t=%.6f (newest t=%.6f)",
            buffer.name,
            sample.timestamp,
            newest.timestamp,
        )
        return True

    def _fold_evicted_gyro(self, evicted: GyroSample) -> None:
        """Integrate a gyro sample the buffer dropped into the dead-reckoned base.

        Keeps queries exact while corrections are stale for longer than the
        buffer holds samples.
        """
        state = self._ekf.state
        correction_timestamp = state.last_correction_timestamp
        if not state.valid or correction_timestamp is None:
            return
        if evicted.timestamp <= correction_timestamp:
            return

        accel = []
        if self._config.integrate_acceleration:
            accel = self._accel_buffer.snapshot_since(evicted.timestamp - self._config.max_dt)
        sample = pair_imu_samples([evicted], accel, self._config.max_dt)[0]

        with self._dead_reckoning_lock:
            current = self._dead_reckoning
            if current is not None and current.correction_timestamp == correction_timestamp:
                base = current.state
            else:
                base = state.kinematic_state()
            if sample.timestamp <= base.timestamp:
                return
            result = self._ekf.propagator.step(base, sample)
            self._dead_reckoning = _DeadReckoningBase(correction_timestamp, result.state)

    def _dead_reckoning_base(self, state: FilterState) -> KinematicState | None:
        """Dead-reckoned base for `state`, or None if nothing was evicted since."""
        current = self._dead_reckoning
        if current is None or current.correction_timestamp != state.last_correction_timestamp:
            return None
        return current.state

    def _reset_dead_reckoning(self) -> None:
        with self._dead_reckoning_lock:
            self._dead_reckoning = None

    def _drop_malformed(self, stream: str, error: MalformedSampleError) -> None:
        self._stats.increment("malformed_samples")
        logger.warning("Dropped malformed %s sample: %s", stream, error)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def get_pose(self, target_timestamp: float) -> PoseEstimate:
        """Estimate the device pose at `target_timestamp`.

        Integrates the last corrected filter state through buffered inertial
        samples newer than the correction, extrapolating past the newest
        sample or interpolating between integrated samples.

        Args:
            target_timestamp: Time in seconds, typically slightly in the future

        Returns:
            PoseEstimate; status NOT_READY if the engine is inactive or not
            initialized
        """
        start_time = time.perf_counter()
        self._stats.increment("queries")

        if not self._active:
            return self._not_ready(target_timestamp, start_time)

        if not self._flags.low_latency:
            return self._passthrough(target_timestamp, start_time)

        state = self._ekf.state
        if not state.valid or state.last_correction_timestamp is None:
            return self._not_ready(target_timestamp, start_time)

        staleness = target_timestamp - state.last_correction_timestamp
        if staleness > self._config.hard_stale_limit:
            self._ekf.expire_if_stale(target_timestamp)
            return self._not_ready(target_timestamp, start_time)
        if staleness > self._config.stale_threshold:
            self._ekf.mark_lost_if_stale(target_timestamp)

        # Copy the recent window; the only lock-holding part of the query
        gyro = self._gyro_buffer.snapshot_since(state.last_correction_timestamp)
        accel = self._accel_buffer.snapshot_since(
            state.last_correction_timestamp - self._config.max_dt
        )
        dead_reckoned = self._dead_reckoning_base(state)
        snapshot_done = time.perf_counter()

        kinematics, num_integrated = self._integrate_to(
            state, gyro, accel, target_timestamp, dead_reckoned
        )
        integration_done = time.perf_counter()

        degraded = state.degraded or staleness > self._config.stale_threshold
        return PoseEstimate(
            timestamp=target_timestamp,
            status=PoseStatus.DEGRADED if degraded else PoseStatus.OK,
            pose=Pose(position=kinematics.position, orientation=kinematics.orientation),
            num_integrated_samples=num_integrated,
            timing=QueryTiming(
                snapshot_ms=(snapshot_done - start_time) * 1000,
                integration_ms=(integration_done - snapshot_done) * 1000,
                total_ms=(integration_done - start_time) * 1000,
            ),
        )

    def _integrate_to(
        self,
        state: FilterState,
        gyro: list[GyroSample],
        accel: list[AccelerometerSample],
        target_timestamp: float,
        dead_reckoned: KinematicState | None = None,
    ) -> tuple[KinematicState, int]:
        """Integrate the corrected state to the target time, lock-free.

        `dead_reckoned` replaces the corrected state as the starting point
        when samples newer than the correction were evicted from the buffer.
        """
        base = state.kinematic_state()

        if target_timestamp <= base.timestamp:
            return self._before_correction(state, base, target_timestamp), 0

        if dead_reckoned is not None:
            if target_timestamp <= dead_reckoned.timestamp:
                # The samples in between are gone; interpolate the two anchors
                return interpolate_states([base, dead_reckoned], target_timestamp), 0
            base = dead_reckoned

        samples = pair_imu_samples(gyro, accel, self._config.max_dt)
        propagator = self._ekf.propagator
        trajectory = propagator.integrate(base, samples)
        newest = trajectory[-1]

        if target_timestamp < newest.timestamp:
            # Backward query: bracketing integrated states exist
            num_integrated = sum(1 for s in trajectory[1:] if s.timestamp <= target_timestamp)
            return interpolate_states(trajectory, target_timestamp), num_integrated

        horizon = min(target_timestamp, newest.timestamp + self._config.max_extrapolation)
        if horizon < target_timestamp:
            self._stats.increment("clamped_extrapolations")
        return propagator.extrapolate(newest, horizon).state, len(trajectory) - 1

    @staticmethod
    def _before_correction(
        state: FilterState, base: KinematicState, target_timestamp: float
    ) -> KinematicState:
        """Interpolate between the previous and the current correction."""
        previous = state.previous_correction
        if previous is None or target_timestamp >= base.timestamp:
            return base
        if target_timestamp <= previous.timestamp or base.timestamp <= previous.timestamp:
            return KinematicState(
                timestamp=target_timestamp,
                orientation=previous.orientation,
                position=previous.position,
                velocity=base.velocity,
                gyro_bias=base.gyro_bias,
            )

        alpha = (target_timestamp - previous.timestamp) / (base.timestamp - previous.timestamp)
        return KinematicState(
            timestamp=target_timestamp,
            orientation=slerp(previous.orientation, base.orientation, alpha),
            position=(1 - alpha) * previous.position + alpha * base.position,
            velocity=base.velocity,
            gyro_bias=base.gyro_bias,
        )

    def _passthrough(self, target_timestamp: float, start_time: float) -> PoseEstimate:
        """Return the latest visual-inertial pose unmodified."""
        sample = self._latest_vi.get()
        if sample is None:
            return self._not_ready(target_timestamp, start_time)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        return PoseEstimate(
            timestamp=target_timestamp,
            status=PoseStatus.PASSTHROUGH,
            pose=Pose(position=sample.position, orientation=sample.orientation),
            timing=QueryTiming(total_ms=elapsed_ms),
        )

    def _not_ready(self, target_timestamp: float, start_time: float) -> PoseEstimate:
        self._stats.increment("not_ready_queries")
        elapsed_ms = (time.perf_counter() - start_time) * 1000
        return PoseEstimate(
            timestamp=target_timestamp,
            status=PoseStatus.NOT_READY,
            timing=QueryTiming(total_ms=elapsed_ms),
        )

    # ------------------------------------------------------------------
    # Lifecycle and feature toggles
    # ------------------------------------------------------------------

    def activate(self) -> None:
        """Enable estimation; also re-enables gyro and accelerometer filtering."""
        self._update_flags(filter_gyro=True, filter_accelerometer=True)
        self._active = True
        logger.info("Tracker activated")

    def deactivate(self) -> None:
        """Disable estimation; samples are still buffered, queries fail."""
        self._active = False
        logger.info("Tracker deactivated")

    def is_active(self) -> bool:
        """Return True if estimation is enabled."""
        return self._active

    def init_ekf(self) -> None:
        """Force the estimator back to initialization, keeping buffers."""
        self._ekf.reinitialize()
        self._reset_dead_reckoning()

    def clear(self) -> None:
        """Reset buffers, pre-filter and estimator to the initial condition."""
        self._accel_buffer.clear()
        self._gyro_buffer.clear()
        self._latest_vi.clear()
        self._prefilter.reset()
        self._ekf.reset()
        self._reset_dead_reckoning()
        logger.info("Tracker cleared")

    def set_filtering_gyro(self, enabled: bool) -> None:
        """Toggle low-pass filtering of the gyro stream."""
        self._update_flags(filter_gyro=enabled)

    def set_filtering_accelerometer(self, enabled: bool) -> None:
        """Toggle low-pass filtering of the accelerometer stream."""
        self._update_flags(filter_accelerometer=enabled)

    def set_low_latency_enabled(self, enabled: bool) -> None:
        """Toggle low-latency mode; when off, queries pass through raw poses."""
        self._update_flags(low_latency=enabled)
        logger.info("Low-latency mode %s", "enabled" if enabled else "disabled")

    def is_low_latency_enabled(self) -> bool:
        """Return True if low-latency mode is on."""
        return self._flags.low_latency

    def _update_flags(self, **changes: bool) -> None:
        # Writers swap a new snapshot; readers take self._flags once per step
        with self._flags_lock:
            self._flags = self._flags.with_changes(**changes)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def flags(self) -> FeatureFlags:
        """Current feature toggle snapshot."""
        return self._flags

    @property
    def config(self) -> TrackingConfig:
        """Tracking configuration."""
        return self._config

    @property
    def phase(self) -> EstimatorPhase:
        """Estimator lifecycle phase."""
        return self._ekf.phase

    @property
    def filter_state(self) -> FilterState:
        """Latest published filter state."""
        return self._ekf.state

    @property
    def latest_visual_inertial(self) -> VisualInertialSample | None:
        """Most recent visual-inertial sample."""
        return self._latest_vi.get()

    @property
    def stats(self) -> TrackingStats:
        """Copy of the tracking counters."""
        return self._stats.snapshot()
