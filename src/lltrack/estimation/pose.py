"""Rigid body pose with quaternion orientation."""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from .rotation import (
    identity_quaternion,
    normalize_quaternion,
    quaternion_conjugate,
    quaternion_from_matrix,
    quaternion_multiply,
    quaternion_to_matrix,
)


@dataclass
class Pose:
    """Rigid body transformation T_world_device.

    Transforms points from the device frame to the world frame:

        p_world = R(orientation) @ p_device + position

    Attributes:
        position: 3D translation vector
        orientation: Unit quaternion (w, x, y, z)
    """

    position: np.ndarray  # (3,)
    orientation: np.ndarray  # (4,) w, x, y, z

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        if self.position.shape != (3,):
            raise ValueError(f"Position must be (3,), got {self.position.shape}")

        orientation = np.asarray(self.orientation, dtype=np.float64).flatten()
        if orientation.shape != (4,):
            raise ValueError(f"Orientation must be (4,), got {orientation.shape}")
        self.orientation = normalize_quaternion(orientation)

    @classmethod
    def identity(cls) -> Pose:
        """Create identity pose (no rotation, no translation)."""
        return cls(position=np.zeros(3), orientation=identity_quaternion())

    @classmethod
    def from_matrix(cls, T: np.ndarray) -> Pose:
        """Create Pose from 4x4 homogeneous transformation matrix.

        Args:
            T: 4x4 transformation matrix [[R, t], [0, 1]]

        Returns:
            Pose
        """
        T = np.asarray(T)
        if T.shape != (4, 4):
            raise ValueError(f"Transform must be 4x4, got {T.shape}")
        return cls(position=T[:3, 3], orientation=quaternion_from_matrix(T[:3, :3]))

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> Pose:
        """Create Pose from OpenCV Rodrigues vector and translation.

        Args:
            rvec: 3D Rodrigues rotation vector (axis * angle)
            tvec: 3D translation vector

        Returns:
            Pose
        """
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).flatten())
        return cls(position=np.asarray(tvec).flatten(), orientation=quaternion_from_matrix(R))

    def to_rvec_tvec(self) -> tuple[np.ndarray, np.ndarray]:
        """Convert to OpenCV Rodrigues vector and translation."""
        rvec, _ = cv2.Rodrigues(self.rotation)
        return rvec.flatten(), self.position.copy()

    @property
    def rotation(self) -> np.ndarray:
        """3x3 rotation matrix of the orientation."""
        return quaternion_to_matrix(self.orientation)

    def to_matrix(self) -> np.ndarray:
        """Convert to 4x4 homogeneous transformation matrix."""
        T = np.eye(4, dtype=np.float64)
        T[:3, :3] = self.rotation
        T[:3, 3] = self.position
        return T

    def inverse(self) -> Pose:
        """Compute the inverse transformation.

        For T = [R, t], the inverse is [R^T, -R^T @ t].
        """
        q_inv = quaternion_conjugate(self.orientation)
        return Pose(position=-quaternion_to_matrix(q_inv) @ self.position, orientation=q_inv)

    def compose(self, other: Pose) -> Pose:
        """Compose with another transformation: self @ other.

        Example:
            T_world_device.compose(T_device_eye) gives T_world_eye
        """
        return Pose(
            position=self.rotation @ other.position + self.position,
            orientation=quaternion_multiply(self.orientation, other.orientation),
        )

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Transform a single point from device frame to world frame."""
        point = np.asarray(point, dtype=np.float64).flatten()
        return self.rotation @ point + self.position

    def __repr__(self) -> str:
        """Return string representation."""
        p = self.position
        q = self.orientation
        return (
            f"Pose(position=[{p[0]:.3f}, {p[1]:.3f}, {p[2]:.3f}], "
            f"orientation=[{q[0]:.4f}, {q[1]:.4f}, {q[2]:.4f}, {q[3]:.4f}])"
        )

    def __matmul__(self, other: Pose) -> Pose:
        """Composition operator: T_result = T1 @ T2."""
        return self.compose(other)
