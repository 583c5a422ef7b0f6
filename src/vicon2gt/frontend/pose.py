"""Rotation, quaternion and SE(3) utilities.

Quaternions are Hamilton, stored scalar first as (w, x, y, z), the same order
used by the EuRoC ground truth files. Rotation perturbations are applied on
the right: R_perturbed = R @ exp_so3(delta).
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

_SMALL_ANGLE = 1e-10
_LOG_SMALL_ANGLE = 1e-4


def skew(v: np.ndarray) -> np.ndarray:
    """Create skew-symmetric matrix from vector.

    Args:
        v: 3D vector

    Returns:
        3x3 skew-symmetric matrix [v]x
    """
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ], dtype=np.float64)


def exp_so3(omega: np.ndarray) -> np.ndarray:
    """Exponential map from so(3) to SO(3) (Rodrigues formula).

    Args:
        omega: Axis-angle vector (3,)

    Returns:
        3x3 rotation matrix
    """
    omega = np.asarray(omega, dtype=np.float64)
    theta = np.linalg.norm(omega)
    if theta < _SMALL_ANGLE:
        # First-order approximation for small angles: R ≈ I + [omega]x
        return np.eye(3) + skew(omega)

    K = skew(omega / theta)
    # Rodrigues formula: R = I + sin(θ)K + (1 - cos(θ))K²
    return np.eye(3) + np.sin(theta) * K + (1 - np.cos(theta)) * (K @ K)


def log_so3(R: np.ndarray) -> np.ndarray:
    """Logarithm map from SO(3) to an axis-angle vector.

    Args:
        R: 3x3 rotation matrix

    Returns:
        Axis-angle vector (3,) with norm in [0, pi]
    """
    R = np.ascontiguousarray(R, dtype=np.float64)
    v = 0.5 * np.array([R[2, 1] - R[1, 2], R[0, 2] - R[2, 0], R[1, 0] - R[0, 1]])
    sin_theta = np.linalg.norm(v)
    if sin_theta < _LOG_SMALL_ANGLE and np.trace(R) > 1.0:
        # cv2.Rodrigues rounds angles below ~1e-5 rad to zero
        return (1.0 + sin_theta * sin_theta / 6.0) * v

    rvec, _ = cv2.Rodrigues(R)
    return rvec.flatten()


def right_jacobian_so3(omega: np.ndarray) -> np.ndarray:
    """Right Jacobian of SO(3).

    Satisfies exp(omega + d) ≈ exp(omega) @ exp(Jr(omega) @ d) for small d.
    """
    theta = np.linalg.norm(omega)
    K = skew(omega)
    if theta < 1e-6:
        return np.eye(3) - 0.5 * K
    theta2 = theta * theta
    return (
        np.eye(3)
        - (1 - np.cos(theta)) / theta2 * K
        + (theta - np.sin(theta)) / (theta2 * theta) * (K @ K)
    )


def quaternion_normalize(q: np.ndarray) -> np.ndarray:
    """Normalize a (w, x, y, z) quaternion to unit length.

    Raises:
        ValueError: If the quaternion is zero or not finite
    """
    q = np.asarray(q, dtype=np.float64).flatten()
    if q.shape != (4,):
        raise ValueError(f"Quaternion must have 4 components, got {q.shape}")
    norm = np.linalg.norm(q)
    if not np.isfinite(norm) or norm < 1e-12:
        raise ValueError(f"Quaternion cannot be normalized: {q}")
    return q / norm


def quaternion_to_rotation(q: np.ndarray) -> np.ndarray:
    """Convert a (w, x, y, z) quaternion to a rotation matrix."""
    qw, qx, qy, qz = quaternion_normalize(q)

    # https://www.euclideanspace.com/maths/geometry/rotations/conversions/quaternionToMatrix/
    return np.array(
        [
            [
                1 - 2 * qy * qy - 2 * qz * qz,
                2 * qx * qy - 2 * qz * qw,
                2 * qx * qz + 2 * qy * qw,
            ],
            [
                2 * qx * qy + 2 * qz * qw,
                1 - 2 * qx * qx - 2 * qz * qz,
                2 * qy * qz - 2 * qx * qw,
            ],
            [
                2 * qx * qz - 2 * qy * qw,
                2 * qy * qz + 2 * qx * qw,
                1 - 2 * qx * qx - 2 * qy * qy,
            ],
        ],
        dtype=np.float64,
    )


def rotation_to_quaternion(R: np.ndarray) -> np.ndarray:
    """Convert a rotation matrix to a unit (w, x, y, z) quaternion with w >= 0."""
    R = np.asarray(R, dtype=np.float64)
    trace = np.trace(R)
    if trace > 0:
        s = 2.0 * np.sqrt(trace + 1.0)
        q = np.array([
            0.25 * s,
            (R[2, 1] - R[1, 2]) / s,
            (R[0, 2] - R[2, 0]) / s,
            (R[1, 0] - R[0, 1]) / s,
        ])
    elif R[0, 0] > R[1, 1] and R[0, 0] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[0, 0] - R[1, 1] - R[2, 2])
        q = np.array([
            (R[2, 1] - R[1, 2]) / s,
            0.25 * s,
            (R[0, 1] + R[1, 0]) / s,
            (R[0, 2] + R[2, 0]) / s,
        ])
    elif R[1, 1] > R[2, 2]:
        s = 2.0 * np.sqrt(1.0 + R[1, 1] - R[0, 0] - R[2, 2])
        q = np.array([
            (R[0, 2] - R[2, 0]) / s,
            (R[0, 1] + R[1, 0]) / s,
            0.25 * s,
            (R[1, 2] + R[2, 1]) / s,
        ])
    else:
        s = 2.0 * np.sqrt(1.0 + R[2, 2] - R[0, 0] - R[1, 1])
        q = np.array([
            (R[1, 0] - R[0, 1]) / s,
            (R[0, 2] + R[2, 0]) / s,
            (R[1, 2] + R[2, 1]) / s,
            0.25 * s,
        ])
    q = q / np.linalg.norm(q)
    return q if q[0] >= 0 else -q


def quaternion_slerp(q0: np.ndarray, q1: np.ndarray, fraction: float) -> np.ndarray:
    """Spherical linear interpolation along the shorter arc.

    q1 is sign-aligned with q0 before interpolating, so both members of the
    double cover give the same result. fraction = 0 returns q0 and
    fraction = 1 returns the sign-aligned q1, exactly.

    Args:
        q0: Start quaternion (w, x, y, z)
        q1: End quaternion (w, x, y, z)
        fraction: Interpolation fraction in [0, 1]

    Returns:
        Unit quaternion (w, x, y, z)
    """
    q0 = quaternion_normalize(q0)
    q1 = quaternion_normalize(q1)

    dot = float(np.dot(q0, q1))
    if dot < 0.0:
        q1 = -q1
        dot = -dot

    if fraction <= 0.0:
        return q0
    if fraction >= 1.0:
        return q1

    if dot > 0.9995:
        # Nearly parallel: normalized lerp avoids dividing by sin(theta) ~ 0
        q = (1.0 - fraction) * q0 + fraction * q1
        return q / np.linalg.norm(q)

    theta = np.arccos(min(dot, 1.0))
    sin_theta = np.sin(theta)
    w0 = np.sin((1.0 - fraction) * theta) / sin_theta
    w1 = np.sin(fraction * theta) / sin_theta
    q = w0 * q0 + w1 * q1
    return q / np.linalg.norm(q)


@dataclass
class SE3:
    """Rigid body transformation (rotation + translation) in SE(3).

    Represents a pose T_world_frame that transforms points from the local
    frame to the world frame:

        p_world = R @ p_local + t

    Attributes:
        rotation: 3x3 orthonormal rotation matrix (det = +1)
        translation: 3D translation vector
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector

    def __post_init__(self) -> None:
        """Validate and normalize inputs."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.translation = np.asarray(self.translation, dtype=np.float64).flatten()

        if self.rotation.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {self.rotation.shape}")
        if self.translation.shape != (3,):
            raise ValueError(
                f"Translation must be (3,), got {self.translation.shape}"
            )

    @classmethod
    def from_quaternion(cls, quaternion: np.ndarray, translation: np.ndarray) -> SE3:
        """Create SE3 from a (w, x, y, z) quaternion and translation."""
        return cls(
            rotation=quaternion_to_rotation(quaternion),
            translation=np.asarray(translation).flatten(),
        )

    def to_quaternion(self) -> np.ndarray:
        """Return the rotation as a (w, x, y, z) quaternion."""
        return rotation_to_quaternion(self.rotation)

    def inverse(self) -> SE3:
        """Compute the inverse transformation T^{-1}.

        For T = [R, t], the inverse is [R^T, -R^T @ t].
        """
        R_inv = self.rotation.T
        t_inv = -R_inv @ self.translation
        return SE3(rotation=R_inv, translation=t_inv)

    def transform_point(self, point: np.ndarray) -> np.ndarray:
        """Transform a single point from the local frame to the world frame."""
        point = np.asarray(point).flatten()
        return self.rotation @ point + self.translation

    @property
    def position(self) -> np.ndarray:
        """Return frame origin in world coordinates."""
        return self.translation.copy()

    def __matmul__(self, other: SE3) -> SE3:
        """T_a_b @ T_b_c gives T_a_c."""
        return SE3(
            rotation=self.rotation @ other.rotation,
            translation=self.rotation @ other.translation + self.translation,
        )
