"""Unknowns of the calibration graph and the records exported after solving."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from ..frontend.pose import SE3, exp_so3, rotation_to_quaternion


@dataclass
class StateNode:
    """IMU state at one query timestamp.

    Attributes:
        timestamp: State time in seconds (inertial clock)
        rotation: 3x3 orientation R_world_imu
        position: (3,) IMU position in the world frame
        velocity: (3,) IMU velocity in the world frame
        gyro_bias: (3,) gyroscope bias in rad/s
        accel_bias: (3,) accelerometer bias in m/s²
    """

    timestamp: float
    rotation: np.ndarray
    position: np.ndarray
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape and type."""
        self.rotation = np.asarray(self.rotation, dtype=np.float64)
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.velocity = np.asarray(self.velocity, dtype=np.float64).flatten()
        self.gyro_bias = np.asarray(self.gyro_bias, dtype=np.float64).flatten()
        self.accel_bias = np.asarray(self.accel_bias, dtype=np.float64).flatten()

    @property
    def pose(self) -> SE3:
        """Return T_world_imu."""
        return SE3(rotation=self.rotation, translation=self.position)

    @property
    def orientation(self) -> np.ndarray:
        """Orientation as a (w, x, y, z) quaternion."""
        return rotation_to_quaternion(self.rotation)


@dataclass
class CalibrationParameters:
    """Unknowns shared by every pose edge.

    Attributes:
        extrinsic_rotation: R_imu_body, rotates body-frame vectors into the IMU frame
        extrinsic_translation: p_body_in_imu, body origin in the IMU frame
        time_offset: t_mocap - t_imu for the same physical instant (s)
        gravity_direction: Unit gravity direction in the world frame
        gravity_magnitude: Fixed gravity magnitude (m/s²)
    """

    extrinsic_rotation: np.ndarray = field(default_factory=lambda: np.eye(3))
    extrinsic_translation: np.ndarray = field(default_factory=lambda: np.zeros(3))
    time_offset: float = 0.0
    gravity_direction: np.ndarray = field(
        default_factory=lambda: np.array([0.0, 0.0, -1.0])
    )
    gravity_magnitude: float = 9.81

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape and a unit gravity direction."""
        self.extrinsic_rotation = np.asarray(self.extrinsic_rotation, dtype=np.float64)
        self.extrinsic_translation = np.asarray(
            self.extrinsic_translation, dtype=np.float64
        ).flatten()
        self.time_offset = float(self.time_offset)
        direction = np.asarray(self.gravity_direction, dtype=np.float64).flatten()
        self.gravity_direction = direction / np.linalg.norm(direction)
        self.gravity_magnitude = float(self.gravity_magnitude)

    @property
    def gravity(self) -> np.ndarray:
        """Gravity vector in the world frame."""
        return self.gravity_magnitude * self.gravity_direction

    @property
    def extrinsic(self) -> SE3:
        """Return T_imu_body."""
        return SE3(rotation=self.extrinsic_rotation, translation=self.extrinsic_translation)

    def body_to_imu(self, body_pose: SE3) -> SE3:
        """Map a body pose T_world_body to the IMU pose T_world_imu."""
        return body_pose @ self.extrinsic.inverse()

    def imu_to_body(self, imu_pose: SE3) -> SE3:
        """Map an IMU pose T_world_imu to the body pose T_world_body."""
        return imu_pose @ self.extrinsic

    def copy(self) -> CalibrationParameters:
        return CalibrationParameters(
            extrinsic_rotation=self.extrinsic_rotation.copy(),
            extrinsic_translation=self.extrinsic_translation.copy(),
            time_offset=self.time_offset,
            gravity_direction=self.gravity_direction.copy(),
            gravity_magnitude=self.gravity_magnitude,
        )


def gravity_tangent_basis(direction: np.ndarray) -> np.ndarray:
    """Return a 3x2 orthonormal basis of the plane orthogonal to direction."""
    d = direction / np.linalg.norm(direction)
    helper = np.array([1.0, 0.0, 0.0]) if abs(d[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    b1 = np.cross(d, helper)
    b1 /= np.linalg.norm(b1)
    b2 = np.cross(d, b1)
    return np.column_stack([b1, b2])


def perturb_gravity_direction(
    direction: np.ndarray, basis: np.ndarray, delta: np.ndarray
) -> np.ndarray:
    """Rotate a unit direction by a 2-DOF tangent-plane perturbation."""
    return exp_so3(basis @ delta) @ direction


class SolveStatus(Enum):
    """Outcome of a solve."""

    SOLVED = "SOLVED"
    NOT_CONVERGED = "NOT_CONVERGED"


@dataclass
class SolveDiagnostics:
    """Summary of a solve for the plain-text report.

    Attributes:
        status: SOLVED or NOT_CONVERGED
        initial_cost: Cost at the initial estimate (0.5 * sum of squared whitened residuals)
        final_cost: Cost at the returned estimate
        iterations: Optimizer iterations over all relinearization rounds
        function_evaluations: Residual evaluations, excluding Jacobian differencing
        relinearizations: Number of re-preintegration rounds performed
        message: Optimizer termination message
        num_states: Number of admitted states
        num_motion_edges: Number of motion edges
        num_pose_edges: Number of pose edges
        num_excluded_timestamps: Query timestamps rejected during build
        calibration_covariance: Marginal covariance of the calibration unknowns
        calibration_labels: Names of the rows/columns of calibration_covariance
    """

    status: SolveStatus
    initial_cost: float
    final_cost: float
    iterations: int
    function_evaluations: int
    relinearizations: int
    message: str
    num_states: int
    num_motion_edges: int
    num_pose_edges: int
    num_excluded_timestamps: int
    calibration_covariance: np.ndarray
    calibration_labels: list[str]

    @property
    def converged(self) -> bool:
        return self.status == SolveStatus.SOLVED

    @property
    def calibration_std(self) -> dict[str, float]:
        """Marginal standard deviation per calibration unknown."""
        std = np.sqrt(np.clip(np.diag(self.calibration_covariance), 0.0, None))
        return dict(zip(self.calibration_labels, std.tolist()))


@dataclass
class StateRecord:
    """Per-timestamp row for tabular export."""

    timestamp: float
    position: np.ndarray
    velocity: np.ndarray
    orientation: np.ndarray  # (w, x, y, z)
    gyro_bias: np.ndarray
    accel_bias: np.ndarray


@dataclass
class TrajectoryRecord:
    """Pose sample for external rendering."""

    timestamp: float
    position: np.ndarray
    orientation: np.ndarray  # (w, x, y, z)


def rotation_error(R_a: np.ndarray, R_b: np.ndarray) -> float:
    """Angle in radians of the rotation R_a^T R_b."""
    cos_angle = 0.5 * (np.trace(R_a.T @ R_b) - 1.0)
    return float(np.arccos(np.clip(cos_angle, -1.0, 1.0)))
