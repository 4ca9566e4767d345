"""Inertial pre-filtering, propagation and pose estimation."""

from .pose import Pose
from .pose_ekf import (
    CorrectedPose,
    CorrectionOutcome,
    EstimatorPhase,
    FilterState,
    PoseEKF,
)
from .prefilter import InertialPreFilter, bias_corrected_rate
from .propagation import (
    InertialPropagator,
    KinematicState,
    interpolate_states,
    pair_imu_samples,
)
from .rotation import quaternion_from_euler

__all__ = [
    "Pose",
    "PoseEKF",
    "FilterState",
    "EstimatorPhase",
    "CorrectionOutcome",
    "CorrectedPose",
    "InertialPreFilter",
    "bias_corrected_rate",
    "InertialPropagator",
    "KinematicState",
    "interpolate_states",
    "pair_imu_samples",
    "quaternion_from_euler",
]
