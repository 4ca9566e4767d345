"""Tests for quaternion helpers and the Pose type."""

import numpy as np
import pytest

from lltrack.estimation.pose import Pose
from lltrack.estimation.rotation import (
    exp_so3,
    integrate_quaternion,
    normalize_quaternion,
    quaternion_angle_between,
    quaternion_conjugate,
    quaternion_exp,
    quaternion_from_euler,
    quaternion_log,
    quaternion_multiply,
    quaternion_to_matrix,
    skew,
    slerp,
)


def z_rotation(angle: float) -> np.ndarray:
    """Quaternion for a rotation of `angle` radians about z."""
    return np.array([np.cos(angle / 2), 0.0, 0.0, np.sin(angle / 2)])


class TestQuaternionHelpers:
    """Test suite for quaternion and SO(3) functions."""

    def test_skew_matches_cross_product(self):
        """Test that skew(a) @ b equals a x b."""
        a = np.array([0.3, -1.2, 2.0])
        b = np.array([1.0, 0.5, -0.7])

        np.testing.assert_allclose(skew(a) @ b, np.cross(a, b))

    def test_exp_so3_matches_quaternion_exp(self):
        """Test that both exponential maps describe the same rotation."""
        rotvec = np.array([0.2, -0.4, 0.9])

        np.testing.assert_allclose(
            exp_so3(rotvec), quaternion_to_matrix(quaternion_exp(rotvec)), atol=1e-12
        )

    def test_log_inverts_exp(self):
        """Test that log(exp(v)) returns v."""
        rotvec = np.array([0.1, 0.7, -0.3])

        np.testing.assert_allclose(quaternion_log(quaternion_exp(rotvec)), rotvec, atol=1e-12)

    def test_log_takes_shortest_path(self):
        """Test that q and -q have the same logarithm."""
        q = quaternion_exp(np.array([0.0, 0.0, 0.5]))

        np.testing.assert_allclose(quaternion_log(-q), quaternion_log(q), atol=1e-12)

    def test_exp_small_angle(self):
        """Test that tiny rotations stay unit norm."""
        q = quaternion_exp(np.array([1e-12, 0.0, 0.0]))

        assert np.linalg.norm(q) == pytest.approx(1.0)

    def test_multiply_by_conjugate_is_identity(self):
        """Test that q ⊗ q* is the identity."""
        q = normalize_quaternion(np.array([0.5, 0.1, -0.3, 0.8]))

        np.testing.assert_allclose(
            quaternion_multiply(q, quaternion_conjugate(q)), [1.0, 0.0, 0.0, 0.0], atol=1e-12
        )

    def test_normalize_zero_raises(self):
        """Test that a zero quaternion cannot be normalized."""
        with pytest.raises(ValueError, match="Cannot normalize"):
            normalize_quaternion(np.zeros(4))

    def test_integrate_constant_rate(self):
        """Test integrating a constant rate about z."""
        q = integrate_quaternion(np.array([1.0, 0.0, 0.0, 0.0]), np.array([0.0, 0.0, 1.0]), 0.5)

        np.testing.assert_allclose(q, z_rotation(0.5), atol=1e-12)

    def test_rotation_matrix_convention(self):
        """Test that a 90 degree z rotation maps x onto y."""
        R = quaternion_to_matrix(z_rotation(np.pi / 2))

        np.testing.assert_allclose(R @ [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], atol=1e-12)

    def test_quaternion_from_euler(self):
        """Test conversion of a yaw angle in degrees."""
        q = quaternion_from_euler(np.array([0.0, 0.0, 90.0]), degrees=True)

        assert quaternion_angle_between(q, z_rotation(np.pi / 2)) == pytest.approx(0.0, abs=1e-7)

    def test_angle_between_ignores_sign(self):
        """Test that q and -q are zero angle apart."""
        q = z_rotation(0.4)

        assert quaternion_angle_between(q, -q) == pytest.approx(0.0, abs=1e-7)
        assert quaternion_angle_between(q, z_rotation(0.1)) == pytest.approx(0.3)

    def test_slerp_midpoint(self):
        """Test that the slerp midpoint is half the rotation."""
        q = slerp(z_rotation(0.0), z_rotation(1.0), 0.5)

        assert quaternion_angle_between(q, z_rotation(0.5)) == pytest.approx(0.0, abs=1e-7)

    def test_slerp_endpoints_exact(self):
        """Test that alpha 0 and 1 return the inputs."""
        q0, q1 = z_rotation(0.2), z_rotation(0.9)

        np.testing.assert_allclose(slerp(q0, q1, 0.0), q0)
        np.testing.assert_allclose(slerp(q0, q1, 1.0), q1)


class TestPose:
    """Test suite for Pose."""

    def test_identity(self):
        """Test the identity pose matrix."""
        np.testing.assert_allclose(Pose.identity().to_matrix(), np.eye(4))

    def test_orientation_normalized(self):
        """Test that construction normalizes the orientation."""
        pose = Pose(position=[0, 0, 0], orientation=[0.0, 0.0, 0.0, 3.0])

        np.testing.assert_allclose(pose.orientation, [0.0, 0.0, 0.0, 1.0])

    def test_invalid_shapes(self):
        """Test that wrong-sized inputs raise ValueError."""
        with pytest.raises(ValueError, match="Position must be"):
            Pose(position=[0, 0], orientation=[1, 0, 0, 0])

        with pytest.raises(ValueError, match="Orientation must be"):
            Pose(position=[0, 0, 0], orientation=[1, 0, 0])

    def test_matrix_round_trip(self):
        """Test that from_matrix recovers the pose."""
        pose = Pose(position=[1.0, 2.0, 3.0], orientation=z_rotation(0.7))
        recovered = Pose.from_matrix(pose.to_matrix())

        np.testing.assert_allclose(recovered.position, pose.position)
        assert quaternion_angle_between(recovered.orientation, pose.orientation) < 1e-7

    def test_compose_with_inverse(self):
        """Test that T @ T^-1 is the identity."""
        pose = Pose(position=[0.5, -1.0, 2.0], orientation=quaternion_exp([0.1, 0.2, 0.3]))
        result = pose @ pose.inverse()

        np.testing.assert_allclose(result.to_matrix(), np.eye(4), atol=1e-12)

    def test_transform_point(self):
        """Test rotating and translating a point."""
        pose = Pose(position=[1.0, 0.0, 0.0], orientation=z_rotation(np.pi / 2))

        np.testing.assert_allclose(pose.transform_point([1.0, 0.0, 0.0]), [1.0, 1.0, 0.0], atol=1e-12)

    def test_rvec_tvec(self):
        """Test the OpenCV Rodrigues conversions."""
        rvec = np.array([0.0, 0.3, 0.0])
        pose = Pose.from_rvec_tvec(rvec, np.array([1.0, 2.0, 3.0]))

        assert quaternion_angle_between(pose.orientation, quaternion_exp(rvec)) < 1e-7
        rvec_out, tvec_out = pose.to_rvec_tvec()
        np.testing.assert_allclose(rvec_out, rvec, atol=1e-9)
        np.testing.assert_allclose(tvec_out, [1.0, 2.0, 3.0])
