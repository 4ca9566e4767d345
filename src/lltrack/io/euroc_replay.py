"""EuRoC dataset replay.

Loads inertial data and ground truth from a EuRoC sequence and replays them
into a `LowLatencyTracker` as three independent sensor streams. Ground truth
poses are subsampled to stand in for the visual-inertial pose source.

Layout used (mav0 directory):
    imu0/data.csv
        #timestamp [ns], w_x, w_y, w_z [rad/s], a_x, a_y, a_z [m/s^2]
    state_groundtruth_estimate0/data.csv
        #timestamp [ns], p_x, p_y, p_z [m], q_w, q_x, q_y, q_z, ...
"""

from __future__ import annotations

import bisect
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

import numpy as np

from ..errors import MalformedSampleError
from ..estimation.pose import Pose
from ..estimation.rotation import slerp
from .samples import AccelerometerSample, GyroSample, VisualInertialSample

if TYPE_CHECKING:
    from ..tracker import LowLatencyTracker

logger = logging.getLogger(__name__)

NS_PER_SECOND = 1e9

# EuRoC world frame is z-up
EUROC_GRAVITY = (0.0, 0.0, -9.81)

# Float seconds lose sub-microsecond precision at EuRoC epoch timestamps
TIME_TOLERANCE = 1e-6


def _read_csv_rows(path: Path, min_columns: int) -> list[list[str]]:
    """Read data rows of a EuRoC CSV file, skipping comments and short rows."""
    rows = []
    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            parts = line.split(",")
            if len(parts) < min_columns:
                continue
            rows.append(parts)
    return rows


@dataclass(frozen=True)
class GroundTruthPose:
    """Ground truth body pose at one timestamp."""

    timestamp: float
    position: np.ndarray
    orientation: np.ndarray  # w, x, y, z


class EuRoCSequence:
    """Inertial streams and ground truth of one EuRoC sequence.

    Example usage:
        sequence = EuRoCSequence("data/euroc/MH_01_easy/mav0")
        vi_samples = sequence.visual_inertial_samples(rate_hz=30.0)
        print(f"{len(sequence.gyro_samples)} IMU samples over {sequence.duration:.1f}s")
    """

    def __init__(self, dataset_path: str | Path) -> None:
        """Load a sequence.

        Args:
            dataset_path: Path to EuRoC mav0 directory

        Raises:
            FileNotFoundError: If imu0/data.csv or the ground truth is missing
        """
        self._dataset_path = Path(dataset_path)
        self._imu_path = self._dataset_path / "imu0" / "data.csv"
        self._gt_path = self._dataset_path / "state_groundtruth_estimate0" / "data.csv"

        if not self._imu_path.exists():
            raise FileNotFoundError(
                f"IMU data not found: {self._imu_path}\n"
                f"Expected EuRoC format with imu0/data.csv"
            )
        if not self._gt_path.exists():
            raise FileNotFoundError(
                f"Ground truth not found: {self._gt_path}\n"
                f"Expected EuRoC format with state_groundtruth_estimate0/data.csv"
            )

        self._gyro: list[GyroSample] = []
        self._accel: list[AccelerometerSample] = []
        self._ground_truth: list[GroundTruthPose] = []
        self._gt_timestamps: list[float] = []

        self._load_imu()
        self._load_ground_truth()
        logger.info(
            "Loaded EuRoC sequence %s: %d IMU samples, %d ground truth poses",
            self._dataset_path,
            len(self._gyro),
            len(self._ground_truth),
        )

    def _load_imu(self) -> None:
        """Split imu0/data.csv into gyro and accelerometer streams."""
        skipped = 0
        for parts in _read_csv_rows(self._imu_path, 7):
            try:
                timestamp = int(parts[0]) / NS_PER_SECOND
                gyro = GyroSample(timestamp, np.array([float(v) for v in parts[1:4]]))
                accel = AccelerometerSample(timestamp, np.array([float(v) for v in parts[4:7]]))
            except (ValueError, MalformedSampleError):
                skipped += 1
                continue
            self._gyro.append(gyro)
            self._accel.append(accel)

        if skipped:
            logger.warning("Skipped %d unreadable IMU rows in %s", skipped, self._imu_path)

    def _load_ground_truth(self) -> None:
        """Load ground truth poses from CSV file."""
        skipped = 0
        for parts in _read_csv_rows(self._gt_path, 8):
            try:
                timestamp = int(parts[0]) / NS_PER_SECOND
                position = np.array([float(v) for v in parts[1:4]])
                orientation = np.array([float(v) for v in parts[4:8]])
                norm = np.linalg.norm(orientation)
                if not np.isfinite(norm) or norm == 0:
                    raise ValueError("invalid quaternion")
            except ValueError:
                skipped += 1
                continue
            self._ground_truth.append(GroundTruthPose(timestamp, position, orientation / norm))
            self._gt_timestamps.append(timestamp)

        if skipped:
            logger.warning("Skipped %d unreadable ground truth rows in %s", skipped, self._gt_path)

    def ground_truth_at(self, timestamp: float) -> Pose | None:
        """Interpolate the ground truth pose at a timestamp.

        Args:
            timestamp: Query time in seconds

        Returns:
            Pose, or None if outside the ground truth range
        """
        if not self._gt_timestamps:
            return None
        if timestamp < self._gt_timestamps[0] or timestamp > self._gt_timestamps[-1]:
            return None

        idx = bisect.bisect_left(self._gt_timestamps, timestamp)
        if self._gt_timestamps[idx] == timestamp:
            gt = self._ground_truth[idx]
            return Pose(position=gt.position, orientation=gt.orientation)

        g0, g1 = self._ground_truth[idx - 1], self._ground_truth[idx]
        alpha = (timestamp - g0.timestamp) / (g1.timestamp - g0.timestamp)
        return Pose(
            position=(1 - alpha) * g0.position + alpha * g1.position,
            orientation=slerp(g0.orientation, g1.orientation, alpha),
        )

    def visual_inertial_samples(
        self,
        rate_hz: float = 30.0,
        position_noise_std: float = 0.0,
        seed: int | None = None,
    ) -> list[VisualInertialSample]:
        """Subsample ground truth into a simulated visual-inertial stream.

        Args:
            rate_hz: Output rate
            position_noise_std: Gaussian noise added to positions (m)
            seed: Random seed for the noise

        Returns:
            Visual-inertial samples in ascending timestamp order
        """
        if rate_hz <= 0:
            raise ValueError(f"rate_hz must be positive, got {rate_hz}")
        if not self._ground_truth:
            return []

        rng = np.random.default_rng(seed)
        period = 1.0 / rate_hz
        samples = []
        start = self._ground_truth[0].timestamp
        next_index = 0
        for gt in self._ground_truth:
            elapsed = gt.timestamp - start + TIME_TOLERANCE
            if elapsed < next_index * period:
                continue
            position = gt.position
            if position_noise_std > 0:
                position = position + rng.normal(0.0, position_noise_std, 3)
            samples.append(
                VisualInertialSample(
                    timestamp=gt.timestamp, position=position, orientation=gt.orientation
                )
            )
            next_index = int(elapsed / period) + 1
        return samples

    @property
    def gyro_samples(self) -> list[GyroSample]:
        """Gyroscope stream."""
        return self._gyro

    @property
    def accelerometer_samples(self) -> list[AccelerometerSample]:
        """Accelerometer stream."""
        return self._accel

    @property
    def ground_truth(self) -> list[GroundTruthPose]:
        """Ground truth poses."""
        return self._ground_truth

    @property
    def start_timestamp(self) -> float | None:
        """First IMU timestamp in seconds."""
        return self._gyro[0].timestamp if self._gyro else None

    @property
    def end_timestamp(self) -> float | None:
        """Last IMU timestamp in seconds."""
        return self._gyro[-1].timestamp if self._gyro else None

    @property
    def duration(self) -> float:
        """Length of the IMU recording in seconds."""
        if not self._gyro:
            return 0.0
        return self._gyro[-1].timestamp - self._gyro[0].timestamp

    def __len__(self) -> int:
        """Number of IMU samples."""
        return len(self._gyro)


class ReplayFeeder:
    """Replays a sequence into a tracker from one thread per sensor stream.

    With `speed=None` every stream is pushed as fast as possible; otherwise
    samples are released at `speed` times real time, and each visual-inertial
    sample is delivered `vi_latency` seconds after its capture time.

    Example usage:
        feeder = ReplayFeeder(tracker, sequence, speed=1.0)
        feeder.start()
        while feeder.is_running:
            estimate = tracker.get_pose(feeder.replay_time() + 0.02)
        feeder.stop()
    """

    def __init__(
        self,
        tracker: LowLatencyTracker,
        sequence: EuRoCSequence,
        speed: float | None = 1.0,
        vi_rate_hz: float = 30.0,
        vi_latency: float = 0.05,
    ) -> None:
        """Initialize feeder.

        Args:
            tracker: Tracker receiving the streams
            sequence: Loaded sequence
            speed: Replay speed factor, or None for no pacing
            vi_rate_hz: Rate of the simulated visual-inertial stream
            vi_latency: Delivery delay of visual-inertial samples (s)
        """
        if speed is not None and speed <= 0:
            raise ValueError(f"speed must be positive, got {speed}")

        self._tracker = tracker
        self._sequence = sequence
        self._speed = speed
        self._vi_latency = vi_latency
        self._vi_samples = sequence.visual_inertial_samples(rate_hz=vi_rate_hz)

        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._start_wall_time = 0.0
        self._start_timestamp = sequence.start_timestamp or 0.0

    def start(self) -> None:
        """Start the producer threads."""
        if self.is_running:
            return

        self._stop_event.clear()
        self._start_wall_time = time.monotonic()

        tracker = self._tracker
        streams: list[tuple[str, list, Callable, float]] = [
            (
                "gyro",
                self._sequence.gyro_samples,
                lambda s: tracker.on_gyro_data_updated(s.timestamp, s.angular_rate),
                0.0,
            ),
            (
                "accelerometer",
                self._sequence.accelerometer_samples,
                lambda s: tracker.on_accelerometer_data_updated(s.timestamp, s.acceleration),
                0.0,
            ),
            (
                "visual-inertial",
                self._vi_samples,
                lambda s: tracker.on_arkit_data_updated(
                    s.timestamp, s.position, s.orientation, s.camera_intrinsics
                ),
                self._vi_latency,
            ),
        ]

        self._threads = [
            threading.Thread(
                target=self._run_stream,
                args=(samples, deliver, delay),
                name=f"replay-{name}",
                daemon=True,
            )
            for name, samples, deliver, delay in streams
        ]
        for thread in self._threads:
            thread.start()
        logger.info("Replay started (speed=%s)", self._speed)

    def _run_stream(self, samples: list, deliver: Callable, delay: float) -> None:
        for sample in samples:
            if self._stop_event.is_set():
                return
            if self._speed is not None:
                wait = self._wall_time_of(sample.timestamp + delay) - time.monotonic()
                if wait > 0 and self._stop_event.wait(wait):
                    return
            deliver(sample)

    def _wall_time_of(self, timestamp: float) -> float:
        return self._start_wall_time + (timestamp - self._start_timestamp) / self._speed

    def replay_time(self) -> float:
        """Current position of the replay on the sequence clock.

        Returns the sequence end time when replaying without pacing.
        """
        if self._speed is None:
            return self._sequence.end_timestamp or 0.0
        elapsed = (time.monotonic() - self._start_wall_time) * self._speed
        return self._start_timestamp + elapsed

    def join(self, timeout: float | None = None) -> None:
        """Wait for all streams to finish."""
        for thread in self._threads:
            thread.join(timeout)

    def stop(self) -> None:
        """Stop the producer threads."""
        self._stop_event.set()
        self.join(timeout=2.0)
        self._threads = []
        logger.info("Replay stopped")

    @property
    def is_running(self) -> bool:
        """True while any stream is still producing."""
        return any(thread.is_alive() for thread in self._threads)

    @property
    def visual_inertial_samples(self) -> list[VisualInertialSample]:
        """Simulated visual-inertial stream."""
        return self._vi_samples
