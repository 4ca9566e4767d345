"""lltrack - Low-latency head pose tracking from inertial and visual-inertial data."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import FeatureFlags, TrackingConfig
from .errors import ConfigurationError, MalformedSampleError, TrackingError
from .io import (
    AccelerometerSample,
    EuRoCSequence,
    GyroSample,
    ReplayFeeder,
    VisualInertialSample,
)
from .estimation import (
    CorrectionOutcome,
    EstimatorPhase,
    FilterState,
    Pose,
    PoseEKF,
    quaternion_from_euler,
)
from .tracker import (
    LowLatencyTracker,
    PoseEstimate,
    PoseStatus,
    QueryTiming,
    TrackingStats,
)

__all__ = [
    "__version__",
    # Tracker
    "LowLatencyTracker",
    "PoseEstimate",
    "PoseStatus",
    "QueryTiming",
    "TrackingStats",
    # Configuration
    "TrackingConfig",
    "FeatureFlags",
    # Errors
    "TrackingError",
    "MalformedSampleError",
    "ConfigurationError",
    # Samples / I/O
    "AccelerometerSample",
    "GyroSample",
    "VisualInertialSample",
    "EuRoCSequence",
    "ReplayFeeder",
    # Estimation
    "PoseEKF",
    "FilterState",
    "EstimatorPhase",
    "CorrectionOutcome",
    "Pose",
    "quaternion_from_euler",
]
