"""Rerun-based visualization for low-latency tracking."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

if TYPE_CHECKING:
    from ..estimation.pose import Pose
    from ..tracker import PoseEstimate


class RerunVisualizer:
    """Rerun-based visualization of fused and visual-inertial poses.

    Entity hierarchy:
        world/
            fused           - Low-latency pose from the tracker
            fused/path      - Fused trajectory (yellow)
            vi              - Latest visual-inertial pose
            vi/path         - Visual-inertial trajectory (magenta)
            ground_truth    - Ground truth trajectory (green)
        plots/
            latency_ms      - Query processing time
            integrated      - Inertial samples integrated per query
    """

    def __init__(
        self,
        app_name: str = "lltrack",
        spawn: bool = True,
        max_trajectory_length: int = 2000,
    ) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
            max_trajectory_length: Positions kept per trajectory
        """
        rr.init(app_name, spawn=spawn)
        self._max_trajectory_length = max_trajectory_length
        self._fused_positions: list[np.ndarray] = []
        self._vi_positions: list[np.ndarray] = []
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Configure the 3D coordinate system (right-handed, Y up)."""
        rr.log("world", rr.ViewCoordinates.RIGHT_HAND_Y_UP, static=True)

    def _setup_layout(self) -> None:
        """Configure the viewer layout"""
        blueprint = rrb.Blueprint(
            rrb.Horizontal(
                contents=[
                    rrb.Spatial3DView(name="Poses", origin="world"),
                    rrb.Vertical(
                        contents=[
                            rrb.TimeSeriesView(name="Query latency", origin="plots/latency_ms"),
                            rrb.TimeSeriesView(name="Integrated samples", origin="plots/integrated"),
                        ]
                    ),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def log_estimate(self, estimate: PoseEstimate) -> None:
        """Log a pose query result.

        Args:
            estimate: Result of `LowLatencyTracker.get_pose`
        """
        if not estimate.is_ready:
            return

        rr.set_time("timestamp", duration=estimate.timestamp)
        self.log_pose(estimate.pose, "world/fused")
        self._append(self._fused_positions, estimate.pose.position)
        self.log_trajectory(np.array(self._fused_positions), "world/fused/path", [255, 255, 0])

        rr.log("plots/latency_ms", rr.Scalars(estimate.timing.total_ms))
        rr.log("plots/integrated", rr.Scalars(float(estimate.num_integrated_samples)))

    def log_visual_inertial(self, timestamp: float, pose: Pose) -> None:
        """Log a visual-inertial pose sample.

        Args:
            timestamp: Sample time in seconds
            pose: Visual-inertial pose
        """
        rr.set_time("timestamp", duration=timestamp)
        self.log_pose(pose, "world/vi")
        self._append(self._vi_positions, pose.position)
        self.log_trajectory(np.array(self._vi_positions), "world/vi/path", [255, 0, 255])

    def log_pose(self, pose: Pose, entity_path: str) -> None:
        """Log a pose as a 3D transform.

        Args:
            pose: Pose T_world_device
            entity_path: Rerun entity path
        """
        rr.log(
            entity_path,
            rr.Transform3D(
                translation=pose.position,
                mat3x3=pose.rotation,
            ),
        )

    def log_trajectory(
        self,
        positions: np.ndarray,
        entity_path: str,
        color: list[int],
    ) -> None:
        """Log a trajectory as a 3D line strip.

        Args:
            positions: Nx3 array of positions in world frame
            entity_path: Rerun entity path for the trajectory
            color: RGB color
        """
        if len(positions) < 2:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D(
                [positions],
                colors=[color],
                radii=0.005,
            ),
        )

    def log_ground_truth_trajectory(
        self,
        positions: np.ndarray,
        entity_path: str = "world/ground_truth",
    ) -> None:
        """Log a ground truth trajectory once, as static data.

        Args:
            positions: Nx3 array of ground truth positions
            entity_path: Rerun entity path for the ground truth trajectory
        """
        if len(positions) < 2:
            return

        rr.log(
            entity_path,
            rr.LineStrips3D(
                [positions],
                colors=[[0, 255, 0]],  # Green
                radii=0.005,
            ),
            static=True,
        )

    def _append(self, positions: list[np.ndarray], position: np.ndarray) -> None:
        positions.append(np.asarray(position, dtype=np.float64))
        if len(positions) > self._max_trajectory_length:
            del positions[: len(positions) - self._max_trajectory_length]
