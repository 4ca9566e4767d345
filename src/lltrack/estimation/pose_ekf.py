"""Extended Kalman Filter fusing inertial prediction with visual-inertial poses.

The filter keeps a nominal state (orientation quaternion, gyro bias, position,
velocity) and a 12-dimensional error-state covariance:

    δx = [δθ (3), δb_g (3), δp (3), δv (3)]

with the orientation error defined on the right: q_true = q ⊗ exp(δθ).

Prediction integrates bias-corrected gyro rates; correction applies the
absolute position and orientation of a visual-inertial sample. The filter
state is published as an immutable `FilterState` snapshot after each mutation,
so readers never need the filter lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from enum import Enum

import numpy as np
import scipy.linalg as linalg
from scipy.stats import chi2

from ..config import TrackingConfig
from ..io.samples import GyroSample, IMUSample, VisualInertialSample
from .propagation import InertialPropagator, KinematicState, StepResult, refresh_measurement
from .rotation import (
    exp_so3,
    identity_quaternion,
    quaternion_conjugate,
    quaternion_exp,
    quaternion_log,
    quaternion_multiply,
    quaternion_to_matrix,
    skew,
)

logger = logging.getLogger(__name__)

ERROR_STATE_DIM = 12
THETA = slice(0, 3)
BIAS = slice(3, 6)
POS = slice(6, 9)
VEL = slice(9, 12)


class EstimatorPhase(Enum):
    """Lifecycle phase of the estimator."""

    UNINITIALIZED = "UNINITIALIZED"
    INITIALIZING = "INITIALIZING"
    TRACKING = "TRACKING"
    LOST = "LOST"  # Dead reckoning, results are degraded


class CorrectionOutcome(Enum):
    """What the estimator did with a visual-inertial sample."""

    SEEDED = "SEEDED"  # Used to (re)initialize the state
    ACCEPTED = "ACCEPTED"
    DOWN_WEIGHTED = "DOWN_WEIGHTED"  # Applied with inflated noise
    REJECTED = "REJECTED"  # Outlier, state unchanged
    STALE = "STALE"  # Older than the current state
    PENDING = "PENDING"  # Warm-up incomplete


@dataclass(frozen=True)
class CorrectedPose:
    """Pose of the filter right after a correction."""

    timestamp: float
    position: np.ndarray
    orientation: np.ndarray


@dataclass(frozen=True)
class FilterState:
    """Immutable snapshot of the estimator.

    Attributes:
        phase: Estimator lifecycle phase
        orientation: Unit quaternion (w, x, y, z), world from device
        gyro_bias: Gyroscope bias (3,) in rad/s
        position: Position in world frame (3,)
        velocity: Velocity in world frame (3,)
        covariance: 12x12 error-state covariance
        last_correction_timestamp: Time of the state, None before seeding
        angular_rate: Last measured gyro rate at the state time
        acceleration: Last measured acceleration at the state time
        previous_correction: Pose after the correction before this one
    """

    phase: EstimatorPhase
    orientation: np.ndarray
    gyro_bias: np.ndarray
    position: np.ndarray
    velocity: np.ndarray
    covariance: np.ndarray
    last_correction_timestamp: float | None = None
    angular_rate: np.ndarray | None = None
    acceleration: np.ndarray | None = None
    previous_correction: CorrectedPose | None = None

    @classmethod
    def uninitialized(cls, phase: EstimatorPhase = EstimatorPhase.UNINITIALIZED) -> FilterState:
        """Return the pre-initialization state."""
        return cls(
            phase=phase,
            orientation=identity_quaternion(),
            gyro_bias=np.zeros(3),
            position=np.zeros(3),
            velocity=np.zeros(3),
            covariance=np.eye(ERROR_STATE_DIM),
        )

    @property
    def initialized(self) -> bool:
        """True once initialization has started."""
        return self.phase != EstimatorPhase.UNINITIALIZED

    @property
    def valid(self) -> bool:
        """True if the state can answer pose queries."""
        return self.phase in (EstimatorPhase.TRACKING, EstimatorPhase.LOST)

    @property
    def degraded(self) -> bool:
        """True while dead reckoning without trusted corrections."""
        return self.phase == EstimatorPhase.LOST

    def kinematic_state(self) -> KinematicState:
        """Return the kinematic part used for propagation."""
        if self.last_correction_timestamp is None:
            raise ValueError("Filter state has not been seeded")
        return KinematicState(
            timestamp=self.last_correction_timestamp,
            orientation=self.orientation,
            position=self.position,
            velocity=self.velocity,
            gyro_bias=self.gyro_bias,
            angular_rate=self.angular_rate,
            acceleration=self.acceleration,
        )


class PoseEKF:
    """Extended Kalman Filter for device orientation, bias, position and velocity.

    All mutations run under one lock (single mutator). Readers use `state`,
    which returns the last published immutable snapshot without locking.
    """

    def __init__(self, config: TrackingConfig | None = None) -> None:
        """Initialize filter.

        Args:
            config: Tracking configuration (noise, gating, staleness)
        """
        self._config = config or TrackingConfig()
        self._propagator = InertialPropagator(self._config)
        self._lock = threading.Lock()
        self._state = FilterState.uninitialized()
        self._consecutive_outliers = 0

        # Chi-square gate on the 6-dof pose innovation
        self._gate = float(chi2.ppf(self._config.gate_probability, df=6))

        cfg = self._config
        self._measurement_noise = np.diag(
            [cfg.orientation_noise_std**2] * 3 + [cfg.position_noise_std**2] * 3
        )
        self._H = np.zeros((6, ERROR_STATE_DIM))
        self._H[0:3, THETA] = np.eye(3)
        self._H[3:6, POS] = np.eye(3)

    @property
    def state(self) -> FilterState:
        """Latest published filter state."""
        return self._state

    @property
    def phase(self) -> EstimatorPhase:
        """Current lifecycle phase."""
        return self._state.phase

    @property
    def propagator(self) -> InertialPropagator:
        """Propagator used for prediction."""
        return self._propagator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def begin_initialization(self) -> None:
        """Move from UNINITIALIZED to INITIALIZING on the first sample."""
        if self._state.phase != EstimatorPhase.UNINITIALIZED:
            return
        with self._lock:
            if self._state.phase == EstimatorPhase.UNINITIALIZED:
                self._set_phase(EstimatorPhase.INITIALIZING)

    def reinitialize(self) -> None:
        """Discard the estimate and wait for a new seed."""
        with self._lock:
            self._state = FilterState.uninitialized(EstimatorPhase.INITIALIZING)
            self._consecutive_outliers = 0
        logger.info("Estimator re-initializing")

    def reset(self) -> None:
        """Return to the pre-initialization state."""
        with self._lock:
            self._state = FilterState.uninitialized()
            self._consecutive_outliers = 0

    def expire_if_stale(self, now: float) -> bool:
        """Force re-initialization if corrections are older than the hard limit.

        Never blocks: if a correction is in progress the check is skipped.

        Args:
            now: Current time in seconds

        Returns:
            True if the estimator was sent back to INITIALIZING
        """
        state = self._state
        if not state.valid or state.last_correction_timestamp is None:
            return False
        if now - state.last_correction_timestamp <= self._config.hard_stale_limit:
            return False

        if not self._lock.acquire(blocking=False):
            return False
        try:
            current = self._state
            if current is not state:
                return False
            logger.warning(
                "No visual-inertial correction for %.3fs, re-initializing",
                now - state.last_correction_timestamp,
            )
            # Keep the learned bias for the next seed
            self._state = replace(
                FilterState.uninitialized(EstimatorPhase.INITIALIZING),
                gyro_bias=state.gyro_bias,
            )
            self._consecutive_outliers = 0
            return True
        finally:
            self._lock.release()

    def mark_lost_if_stale(self, now: float) -> bool:
        """Enter LOST if the last correction is older than the stale threshold.

        Never blocks: if a correction is in progress the check is skipped.

        Args:
            now: Current time in seconds

        Returns:
            True if the estimator moved from TRACKING to LOST
        """
        state = self._state
        if state.phase != EstimatorPhase.TRACKING or state.last_correction_timestamp is None:
            return False
        staleness = now - state.last_correction_timestamp
        if staleness <= self._config.stale_threshold:
            return False

        if not self._lock.acquire(blocking=False):
            return False
        try:
            if self._state is not state:
                return False
            logger.warning(
                "No visual-inertial correction for %.3fs, tracking lost", staleness
            )
            self._state = replace(state, phase=EstimatorPhase.LOST)
            return True
        finally:
            self._lock.release()

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def predict(
        self,
        samples: list[IMUSample],
        end_timestamp: float,
        state: FilterState | None = None,
    ) -> tuple[KinematicState, np.ndarray]:
        """Propagate a state and its covariance to `end_timestamp`.

        Does not modify the published state.

        Args:
            samples: IMU samples in ascending order
            end_timestamp: Time to predict to
            state: State to start from (default: the published state)

        Returns:
            Tuple of (predicted kinematic state, predicted covariance)
        """
        if state is None:
            state = self._state
        current = state.kinematic_state()
        P = state.covariance.copy()

        for sample in samples:
            if sample.timestamp > end_timestamp:
                break
            if sample.timestamp <= current.timestamp:
                current = refresh_measurement(current, sample)
                continue
            result = self._propagator.step(current, sample)
            P = self._propagate_covariance(P, result, current.orientation)
            if result.clamped:
                logger.debug(
                    "Clamped inertial gap at t=%.6f to %.3fs", sample.timestamp, result.dt
                )
            current = result.state

        if end_timestamp > current.timestamp:
            result = self._propagator.extrapolate(current, end_timestamp)
            P = self._propagate_covariance(P, result, current.orientation)
            current = result.state

        return current, P

    def _propagate_covariance(
        self, P: np.ndarray, step: StepResult, q_start: np.ndarray
    ) -> np.ndarray:
        """Propagate the error-state covariance through one step."""
        dt = step.dt
        if dt <= 0:
            return P

        cfg = self._config
        F = np.eye(ERROR_STATE_DIM)
        F[THETA, THETA] = exp_so3(step.omega * dt).T
        F[THETA, BIAS] = -np.eye(3) * dt
        F[POS, VEL] = np.eye(3) * dt

        Q = np.zeros((ERROR_STATE_DIM, ERROR_STATE_DIM))
        Q[THETA, THETA] = np.eye(3) * cfg.gyro_noise_density**2 * dt
        Q[BIAS, BIAS] = np.eye(3) * cfg.gyro_bias_random_walk**2 * dt
        Q[POS, POS] = np.eye(3) * cfg.position_random_walk**2 * dt

        if step.acceleration is not None:
            R = quaternion_to_matrix(q_start)
            F[VEL, THETA] = -R @ skew(step.acceleration) * dt
            Q[VEL, VEL] = np.eye(3) * cfg.accel_noise_density**2 * dt
        else:
            Q[VEL, VEL] = np.eye(3) * cfg.velocity_random_walk**2 * dt

        P = F @ P @ F.T + Q
        return 0.5 * (P + P.T)

    # ------------------------------------------------------------------
    # Correction
    # ------------------------------------------------------------------

    def correct(
        self,
        measurement: VisualInertialSample,
        samples: list[IMUSample],
        warmup: list[GyroSample] | None = None,
        stationary_rate: np.ndarray | None = None,
    ) -> CorrectionOutcome:
        """Fold a visual-inertial sample into the filter.

        While initializing, the sample seeds orientation and position once
        enough warm-up gyro samples have been seen. While tracking, the state
        is predicted through `samples` up to the sample time and updated.

        Args:
            measurement: Visual-inertial pose sample
            samples: IMU samples newer than the current state
            warmup: Gyro samples preceding the measurement (initialization)
            stationary_rate: Mean gyro rate if the device is stationary

        Returns:
            What was done with the measurement
        """
        with self._lock:
            state = self._state

            if not state.valid:
                return self._try_seed(measurement, warmup or [], stationary_rate)

            gap = measurement.timestamp - state.last_correction_timestamp
            if gap < 0:
                logger.debug(
                    "Ignored visual-inertial sample at t=%.6f older than state t=%.6f",
                    measurement.timestamp,
                    state.last_correction_timestamp,
                )
                return CorrectionOutcome.STALE

            if state.phase == EstimatorPhase.LOST or gap > self._config.stale_threshold:
                if gap > self._config.stale_threshold:
                    logger.warning(
                        "Visual-inertial gap of %.3fs exceeds %.3fs, re-seeding",
                        gap,
                        self._config.stale_threshold,
                    )
                self._seed(measurement, state.gyro_bias, _latest_rate(samples, measurement))
                return CorrectionOutcome.SEEDED

            if stationary_rate is not None:
                state = self._observe_bias(state, stationary_rate)

            predicted, P = self.predict(samples, measurement.timestamp, state)
            return self._update(state, predicted, P, measurement)

    def observe_stationary_rate(self, rate: np.ndarray) -> None:
        """Update the bias estimate from the mean rate of a stationary window.

        Args:
            rate: Mean measured angular rate (3,) while at rest
        """
        with self._lock:
            if self._state.phase != EstimatorPhase.TRACKING:
                return
            self._state = self._observe_bias(self._state, rate)

    def _observe_bias(self, state: FilterState, rate: np.ndarray) -> FilterState:
        """Kalman update of the bias states with a direct bias observation."""
        H = np.zeros((3, ERROR_STATE_DIM))
        H[:, BIAS] = np.eye(3)
        R = np.eye(3) * self._config.stationary_bias_noise_std**2

        residual = np.asarray(rate, dtype=np.float64) - state.gyro_bias
        P = state.covariance
        try:
            dx, P_new = self._kalman_update(P, H, R, residual)
        except linalg.LinAlgError:
            logger.warning("Bias observation skipped: singular innovation covariance")
            return state

        # Only the bias is observed directly; correlated states move with it
        q = quaternion_multiply(state.orientation, quaternion_exp(dx[THETA]))
        return replace(
            state,
            orientation=q / np.linalg.norm(q),
            gyro_bias=state.gyro_bias + dx[BIAS],
            position=state.position + dx[POS],
            velocity=state.velocity + dx[VEL],
            covariance=P_new,
        )

    def _update(
        self,
        state: FilterState,
        predicted: KinematicState,
        P: np.ndarray,
        measurement: VisualInertialSample,
    ) -> CorrectionOutcome:
        """Apply the pose measurement to the predicted state."""
        cfg = self._config

        # Orientation residual on the manifold, position residual in R^3
        r_theta = quaternion_log(
            quaternion_multiply(quaternion_conjugate(predicted.orientation), measurement.orientation)
        )
        r_pos = measurement.position - predicted.position

        rot_err = float(np.linalg.norm(r_theta))
        pos_err = float(np.linalg.norm(r_pos))
        if rot_err > cfg.max_rotation_residual or pos_err > cfg.max_position_residual:
            return self._reject(state, measurement, rot_err, pos_err)

        residual = np.concatenate([r_theta, r_pos])
        R = self._measurement_noise
        outcome = CorrectionOutcome.ACCEPTED

        try:
            S = self._H @ P @ self._H.T + R
            d2 = float(residual @ linalg.cho_solve(linalg.cho_factor(S), residual))
            if d2 > self._gate:
                # Down-weight: scale noise so the innovation sits on the gate
                R = R * (d2 / self._gate)
                outcome = CorrectionOutcome.DOWN_WEIGHTED
                logger.debug(
                    "Down-weighted correction at t=%.6f (mahalanobis^2=%.2f)",
                    measurement.timestamp,
                    d2,
                )
            dx, P_new = self._kalman_update(P, self._H, R, residual)
        except linalg.LinAlgError:
            logger.warning(
                "Singular innovation covariance at t=%.6f, re-seeding", measurement.timestamp
            )
            self._seed(measurement, state.gyro_bias, predicted.angular_rate)
            return CorrectionOutcome.SEEDED

        q = quaternion_multiply(predicted.orientation, quaternion_exp(dx[THETA]))
        q = q / np.linalg.norm(q)

        self._consecutive_outliers = 0
        self._state = FilterState(
            phase=EstimatorPhase.TRACKING,
            orientation=q,
            gyro_bias=predicted.gyro_bias + dx[BIAS],
            position=predicted.position + dx[POS],
            velocity=predicted.velocity + dx[VEL],
            covariance=P_new,
            last_correction_timestamp=measurement.timestamp,
            angular_rate=predicted.angular_rate,
            acceleration=predicted.acceleration,
            previous_correction=_corrected_pose(state),
        )
        return outcome

    def _kalman_update(
        self, P: np.ndarray, H: np.ndarray, R: np.ndarray, residual: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Compute the error-state correction and Joseph-form covariance.

        Raises:
            scipy.linalg.LinAlgError: If the innovation covariance is not
                positive definite
        """
        S = H @ P @ H.T + R
        # K = P H^T S^-1, solved as S K^T = H P
        K = linalg.cho_solve(linalg.cho_factor(S), H @ P).T
        dx = K @ residual

        I_KH = np.eye(ERROR_STATE_DIM) - K @ H
        P_new = I_KH @ P @ I_KH.T + K @ R @ K.T
        return dx, 0.5 * (P_new + P_new.T)

    def _reject(
        self,
        state: FilterState,
        measurement: VisualInertialSample,
        rot_err: float,
        pos_err: float,
    ) -> CorrectionOutcome:
        """Reject an outlier and track consecutive rejections."""
        self._consecutive_outliers += 1
        logger.info(
            "Rejected visual-inertial outlier at t=%.6f (rotation %.3f rad, position %.3f m)",
            measurement.timestamp,
            rot_err,
            pos_err,
        )
        if (
            self._consecutive_outliers >= self._config.max_consecutive_outliers
            and state.phase != EstimatorPhase.LOST
        ):
            logger.warning(
                "%d consecutive outliers, tracking lost", self._consecutive_outliers
            )
            self._state = replace(state, phase=EstimatorPhase.LOST)
        return CorrectionOutcome.REJECTED

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def _try_seed(
        self,
        measurement: VisualInertialSample,
        warmup: list[GyroSample],
        stationary_rate: np.ndarray | None,
    ) -> CorrectionOutcome:
        """Seed the filter once the warm-up window is complete."""
        if self._state.phase == EstimatorPhase.UNINITIALIZED:
            self._set_phase(EstimatorPhase.INITIALIZING)

        window_start = measurement.timestamp - self._config.warmup_window
        window = [
            g for g in warmup if window_start <= g.timestamp <= measurement.timestamp
        ]
        if len(window) < self._config.min_warmup_samples:
            logger.debug(
                "Warm-up incomplete: %d/%d gyro samples",
                len(window),
                self._config.min_warmup_samples,
            )
            return CorrectionOutcome.PENDING

        bias = stationary_rate if stationary_rate is not None else self._state.gyro_bias
        rate = None
        if window and measurement.timestamp - window[-1].timestamp <= self._config.max_dt:
            rate = window[-1].angular_rate

        self._seed(measurement, bias, rate)
        return CorrectionOutcome.SEEDED

    def _seed(
        self,
        measurement: VisualInertialSample,
        gyro_bias: np.ndarray,
        angular_rate: np.ndarray | None,
    ) -> None:
        """Reset the state to the measured pose."""
        cfg = self._config
        P0 = np.zeros((ERROR_STATE_DIM, ERROR_STATE_DIM))
        P0[THETA, THETA] = np.eye(3) * cfg.initial_orientation_std**2
        P0[BIAS, BIAS] = np.eye(3) * cfg.initial_gyro_bias_std**2
        P0[POS, POS] = np.eye(3) * cfg.initial_position_std**2
        P0[VEL, VEL] = np.eye(3) * cfg.initial_velocity_std**2

        previous = self._state
        self._consecutive_outliers = 0
        self._state = FilterState(
            phase=EstimatorPhase.TRACKING,
            orientation=np.array(measurement.orientation),
            gyro_bias=np.array(gyro_bias, dtype=np.float64),
            position=np.array(measurement.position),
            velocity=np.zeros(3),
            covariance=P0,
            last_correction_timestamp=measurement.timestamp,
            angular_rate=angular_rate,
            previous_correction=_corrected_pose(previous) if previous.valid else None,
        )
        logger.info(
            "Estimator %s -> %s at t=%.6f",
            previous.phase.value,
            EstimatorPhase.TRACKING.value,
            measurement.timestamp,
        )

    def _set_phase(self, phase: EstimatorPhase) -> None:
        logger.info("Estimator %s -> %s", self._state.phase.value, phase.value)
        self._state = replace(self._state, phase=phase)


def _corrected_pose(state: FilterState) -> CorrectedPose | None:
    if state.last_correction_timestamp is None:
        return None
    return CorrectedPose(
        timestamp=state.last_correction_timestamp,
        position=state.position,
        orientation=state.orientation,
    )


def _latest_rate(samples: list[IMUSample], measurement: VisualInertialSample) -> np.ndarray | None:
    """Rate of the newest sample at or before the measurement."""
    rate = None
    for sample in samples:
        if sample.timestamp > measurement.timestamp:
            break
        rate = sample.angular_rate
    return rate
