#!/usr/bin/env python3
"""Demo script for low-latency pose tracking on a EuRoC sequence.

Replays the IMU streams and a subsampled ground truth (standing in for the
visual-inertial pose source) into a LowLatencyTracker, then queries the pose
at a render rate a short horizon ahead of the replay clock and compares it
to ground truth.

Usage:
    uv run python examples/replay_demo.py
"""

import logging
import time

import numpy as np

from lltrack import EuRoCSequence, LowLatencyTracker, Pose, PoseStatus, ReplayFeeder, TrackingConfig
from lltrack.estimation.rotation import quaternion_angle_between
from lltrack.io.euroc_replay import EUROC_GRAVITY


def main() -> None:
    """Run the low-latency tracking demo."""
    # Configuration
    dataset_path = "data/euroc/MH_01_easy/mav0"
    speed = 2.0  # Replay speed factor
    render_rate_hz = 60.0
    prediction_horizon = 0.02  # Seconds ahead of the replay clock
    visualize = False  # Requires the Rerun viewer

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    # Initialize
    print("Initializing low-latency tracker...")
    print("=" * 80)
    sequence = EuRoCSequence(dataset_path)
    tracker = LowLatencyTracker(TrackingConfig(gravity=EUROC_GRAVITY))
    feeder = ReplayFeeder(tracker, sequence, speed=speed, vi_rate_hz=30.0, vi_latency=0.05)

    viz = None
    if visualize:
        from lltrack.visualization import RerunVisualizer

        viz = RerunVisualizer(app_name="lltrack_replay")
        viz.log_ground_truth_trajectory(np.array([gt.position for gt in sequence.ground_truth]))

    print(f"Loaded {len(sequence)} IMU samples over {sequence.duration:.1f}s")
    print(f"Visual-inertial samples: {len(feeder.visual_inertial_samples)}")
    print()

    # Column headers
    print(
        f"{'Query':>6} {'Status':^12} {'IMU#':>5} | "
        f"{'Time':>7} | "
        f"{'Fused Position':^30} | "
        f"{'Pos Err':>8} {'Rot Err':>8}"
    )
    print("-" * 100)

    # Statistics
    position_errors: list[float] = []
    rotation_errors: list[float] = []
    status_counts = {status: 0 for status in PoseStatus}
    total_ms = 0.0
    num_queries = 0

    feeder.start()
    period = 1.0 / render_rate_hz
    try:
        while feeder.is_running:
            target = feeder.replay_time() + prediction_horizon
            estimate = tracker.get_pose(target)
            status_counts[estimate.status] += 1
            total_ms += estimate.timing.total_ms
            num_queries += 1

            truth = sequence.ground_truth_at(target)
            pos_err = rot_err = np.nan
            if estimate.is_ready and truth is not None:
                pos_err = float(np.linalg.norm(estimate.position - truth.position))
                rot_err = float(np.degrees(quaternion_angle_between(estimate.orientation, truth.orientation)))
                position_errors.append(pos_err)
                rotation_errors.append(rot_err)

            if viz is not None:
                viz.log_estimate(estimate)
                latest = tracker.latest_visual_inertial
                if latest is not None:
                    viz.log_visual_inertial(latest.timestamp, Pose(latest.position, latest.orientation))

            # Print progress every 60 queries
            if num_queries % 60 == 0:
                if estimate.is_ready:
                    p = estimate.position
                    pos_str = f"[{p[0]:8.3f}, {p[1]:8.3f}, {p[2]:8.3f}]"
                else:
                    pos_str = "[       N/A       ]"
                print(
                    f"{num_queries:6d} {estimate.status.value:^12} {estimate.num_integrated_samples:5d} | "
                    f"{estimate.timing.total_ms:6.2f}ms | "
                    f"{pos_str} | "
                    f"{pos_err:7.3f}m {rot_err:7.2f}°"
                )

            time.sleep(period)
    except KeyboardInterrupt:
        print("\nInterrupted")
    finally:
        feeder.stop()

    # Final statistics
    stats = tracker.stats
    print()
    print("=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print(f"Queries:              {num_queries}")
    for status, count in status_counts.items():
        print(f"  {status.value:<18}  {count}")
    print("Corrections:")
    print(f"  Accepted:           {stats.corrections_accepted}")
    print(f"  Down-weighted:      {stats.corrections_down_weighted}")
    print(f"  Rejected:           {stats.corrections_rejected}")
    print(f"  Seeds:              {stats.seeds}")
    print(f"Clamped extrapolations: {stats.clamped_extrapolations}")
    print()

    if position_errors:
        print(f"Error vs ground truth at +{prediction_horizon * 1000:.0f} ms:")
        print(f"  Position mean:   {np.mean(position_errors):7.3f} m")
        print(f"  Position median: {np.median(position_errors):7.3f} m")
        print(f"  Position max:    {np.max(position_errors):7.3f} m")
        print(f"  Rotation mean:   {np.mean(rotation_errors):7.2f} °")
        print(f"  Rotation max:    {np.max(rotation_errors):7.2f} °")
        print()

    if num_queries:
        print(f"Average query time: {total_ms / num_queries:6.3f} ms")


if __name__ == "__main__":
    main()
