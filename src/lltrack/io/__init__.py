"""Sensor samples, buffers and dataset replay."""

from .euroc_replay import EuRoCSequence, GroundTruthPose, ReplayFeeder
from .sample_buffer import LatestSampleCell, SampleBuffer
from .samples import (
    AccelerometerSample,
    GyroSample,
    IMUSample,
    VisualInertialSample,
)

__all__ = [
    # Samples
    "AccelerometerSample",
    "GyroSample",
    "IMUSample",
    "VisualInertialSample",
    # Buffers
    "SampleBuffer",
    "LatestSampleCell",
    # Replay
    "EuRoCSequence",
    "GroundTruthPose",
    "ReplayFeeder",
]
