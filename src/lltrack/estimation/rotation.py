"""Quaternion and SO(3) helpers.

Quaternions use the Hamilton convention stored as (w, x, y, z), which is the
layout of the visual-inertial tracking bridge. SciPy works in (x, y, z, w), so
conversions go through `to_scipy` / `from_scipy`.
"""

from __future__ import annotations

import numpy as np
from scipy.spatial.transform import Rotation, Slerp

_SMALL_ANGLE = 1e-10


def skew(v: np.ndarray) -> np.ndarray:
    """Create skew-symmetric matrix from vector.

    Args:
        v: 3D vector

    Returns:
        3x3 skew-symmetric matrix [v]×
    """
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ], dtype=np.float64)


def exp_so3(omega: np.ndarray) -> np.ndarray:
    """Exponential map from so(3) to SO(3) (Rodrigues formula).

    Args:
        omega: Axis-angle rotation vector (3,)

    Returns:
        3x3 rotation matrix
    """
    theta = np.linalg.norm(omega)
    if theta < _SMALL_ANGLE:
        # First-order approximation for small angles: R ≈ I + [omega]×
        return np.eye(3) + skew(omega)

    K = skew(omega / theta)

    # R = I + sin(θ)K + (1 - cos(θ))K²
    return np.eye(3) + np.sin(theta) * K + (1 - np.cos(theta)) * (K @ K)


def normalize_quaternion(q: np.ndarray) -> np.ndarray:
    """Return q scaled to unit norm.

    Raises:
        ValueError: If q has zero or non-finite norm
    """
    q = np.asarray(q, dtype=np.float64).flatten()
    norm = np.linalg.norm(q)
    if not np.isfinite(norm) or norm < _SMALL_ANGLE:
        raise ValueError(f"Cannot normalize quaternion {q}")
    return q / norm


def identity_quaternion() -> np.ndarray:
    """Return the identity rotation (1, 0, 0, 0)."""
    return np.array([1.0, 0.0, 0.0, 0.0])


def quaternion_multiply(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Hamilton product a ⊗ b."""
    aw, ax, ay, az = a
    bw, bx, by, bz = b
    return np.array([
        aw * bw - ax * bx - ay * by - az * bz,
        aw * bx + ax * bw + ay * bz - az * by,
        aw * by - ax * bz + ay * bw + az * bx,
        aw * bz + ax * by - ay * bx + az * bw,
    ])


def quaternion_conjugate(q: np.ndarray) -> np.ndarray:
    """Conjugate, equal to the inverse for unit quaternions."""
    return np.array([q[0], -q[1], -q[2], -q[3]])


def quaternion_exp(rotvec: np.ndarray) -> np.ndarray:
    """Map an axis-angle vector to a unit quaternion.

    Args:
        rotvec: Rotation vector (3,), direction = axis, norm = angle

    Returns:
        Unit quaternion (w, x, y, z)
    """
    rotvec = np.asarray(rotvec, dtype=np.float64)
    theta = np.linalg.norm(rotvec)
    if theta < _SMALL_ANGLE:
        q = np.array([1.0, 0.5 * rotvec[0], 0.5 * rotvec[1], 0.5 * rotvec[2]])
        return q / np.linalg.norm(q)

    half = 0.5 * theta
    axis = rotvec / theta
    return np.concatenate(([np.cos(half)], np.sin(half) * axis))


def quaternion_log(q: np.ndarray) -> np.ndarray:
    """Map a unit quaternion to its shortest axis-angle vector.

    Args:
        q: Unit quaternion (w, x, y, z)

    Returns:
        Rotation vector (3,) with norm in [0, pi]
    """
    q = np.asarray(q, dtype=np.float64)
    if q[0] < 0:
        q = -q  # q and -q are the same rotation
    vec = q[1:]
    sin_half = np.linalg.norm(vec)
    if sin_half < _SMALL_ANGLE:
        return 2.0 * vec
    theta = 2.0 * np.arctan2(sin_half, q[0])
    return theta * vec / sin_half


def integrate_quaternion(q: np.ndarray, omega: np.ndarray, dt: float) -> np.ndarray:
    """Integrate a body-frame angular rate over dt.

    Uses the closed-form quaternion exponential, exact for a rate that is
    constant over the step: q_new = q ⊗ exp(omega * dt).

    Args:
        q: Current orientation (w, x, y, z)
        omega: Body-frame angular rate (3,) in rad/s
        dt: Time step in seconds

    Returns:
        Re-normalized orientation
    """
    q_new = quaternion_multiply(q, quaternion_exp(np.asarray(omega) * dt))
    return q_new / np.linalg.norm(q_new)


def quaternion_angle_between(a: np.ndarray, b: np.ndarray) -> float:
    """Angle in radians of the rotation taking a to b."""
    dot = abs(float(np.dot(normalize_quaternion(a), normalize_quaternion(b))))
    return 2.0 * float(np.arccos(np.clip(dot, -1.0, 1.0)))


def to_scipy(q: np.ndarray) -> Rotation:
    """Convert a (w, x, y, z) quaternion to a SciPy Rotation."""
    q = np.asarray(q, dtype=np.float64)
    return Rotation.from_quat([q[1], q[2], q[3], q[0]])


def from_scipy(rotation: Rotation) -> np.ndarray:
    """Convert a single SciPy Rotation to a (w, x, y, z) quaternion."""
    x, y, z, w = rotation.as_quat()
    return np.array([w, x, y, z])


def quaternion_to_matrix(q: np.ndarray) -> np.ndarray:
    """Rotation matrix of a (w, x, y, z) quaternion."""
    return to_scipy(q).as_matrix()


def quaternion_from_matrix(R: np.ndarray) -> np.ndarray:
    """Quaternion (w, x, y, z) of a 3x3 rotation matrix."""
    return from_scipy(Rotation.from_matrix(np.asarray(R, dtype=np.float64)))


def quaternion_from_euler(euler: np.ndarray, degrees: bool = False) -> np.ndarray:
    """Convert roll/pitch/yaw angles to a quaternion.

    Angles are applied about the fixed x, then y, then z axes, matching the
    euler helper of the tracking bridge.

    Args:
        euler: (roll, pitch, yaw) about x, y, z
        degrees: If True, angles are in degrees

    Returns:
        Unit quaternion (w, x, y, z)
    """
    return from_scipy(Rotation.from_euler("xyz", np.asarray(euler, dtype=np.float64), degrees=degrees))


def slerp(q0: np.ndarray, q1: np.ndarray, alpha: float) -> np.ndarray:
    """Spherical linear interpolation between two orientations.

    Args:
        q0: Orientation at alpha = 0 (w, x, y, z)
        q1: Orientation at alpha = 1 (w, x, y, z)
        alpha: Interpolation factor in [0, 1]

    Returns:
        Interpolated unit quaternion (w, x, y, z)
    """
    alpha = float(np.clip(alpha, 0.0, 1.0))
    if alpha == 0.0:
        return normalize_quaternion(q0)
    if alpha == 1.0:
        return normalize_quaternion(q1)

    key_rotations = Rotation.concatenate([to_scipy(q0), to_scipy(q1)])
    interpolator = Slerp([0.0, 1.0], key_rotations)
    return normalize_quaternion(from_scipy(interpolator([alpha])[0]))
