"""Residual edges of the calibration graph and the parameter vector layout.

The optimizer works on one flat vector:

    [state_0 | state_1 | ... | state_{N-1} | calibration]

    state_i     = [δθ (3), p (3), v (3), b_g (3), b_a (3)]
    calibration = [δθ_ext (3), p_ext (3), Δt (1, optional), δg (2, optional)]

Rotations are local perturbations about a reference: R = R_ref @ Exp(δθ).
Gravity keeps its magnitude; its direction is perturbed on the 2-DOF
tangent plane of the reference direction.

Every edge returns a whitened residual L^{-1} r with Σ = L L^T, so the sum
of squares is the Mahalanobis cost. Edge evaluation only reads the decoded
estimate and the frozen measurement buffers.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.linalg import LinAlgError, cholesky, solve_triangular

from ..errors import NumericalFailure
from ..frontend.interpolator import Interpolator
from ..frontend.pose import exp_so3, log_so3
from ..frontend.preintegrator import RelativeMotion
from .state import (
    CalibrationParameters,
    StateNode,
    gravity_tangent_basis,
    perturb_gravity_direction,
)

STATE_DIM = 15
ROT = slice(0, 3)
POS = slice(3, 6)
VEL = slice(6, 9)
BG = slice(9, 12)
BA = slice(12, 15)


def whitening_factor(covariance: np.ndarray, name: str) -> np.ndarray:
    """Lower Cholesky factor L of a covariance, Σ = L L^T.

    Raises:
        NumericalFailure: If the covariance is not positive definite
    """
    try:
        return cholesky(0.5 * (covariance + covariance.T), lower=True)
    except (LinAlgError, ValueError) as e:
        raise NumericalFailure(f"{name} covariance is not positive definite: {e}") from e


@dataclass
class GraphEstimate:
    """Decoded parameter vector."""

    rotations: list[np.ndarray]
    positions: np.ndarray  # (N, 3)
    velocities: np.ndarray  # (N, 3)
    gyro_biases: np.ndarray  # (N, 3)
    accel_biases: np.ndarray  # (N, 3)
    extrinsic_rotation: np.ndarray
    extrinsic_translation: np.ndarray
    time_offset: float
    gravity: np.ndarray


class GraphParameterization:
    """Maps between the flat optimizer vector and states/calibration.

    References for the rotation perturbations are taken from the estimates
    the parameterization is created from, so a fresh instance is made
    whenever the problem is relinearized.
    """

    def __init__(
        self,
        states: list[StateNode],
        calibration: CalibrationParameters,
        estimate_time_offset: bool,
        estimate_gravity: bool,
    ) -> None:
        self._num_states = len(states)
        self._timestamps = [s.timestamp for s in states]
        self._ref_rotations = [s.rotation.copy() for s in states]
        self._ref_extrinsic_rotation = calibration.extrinsic_rotation.copy()
        self._fixed_time_offset = calibration.time_offset
        self._ref_gravity_direction = calibration.gravity_direction.copy()
        self._gravity_basis = gravity_tangent_basis(self._ref_gravity_direction)
        self._gravity_magnitude = calibration.gravity_magnitude
        self.estimate_time_offset = estimate_time_offset
        self.estimate_gravity = estimate_gravity

        self.calibration_offset = STATE_DIM * self._num_states
        next_index = self.calibration_offset + 6
        self.time_offset_index: int | None = None
        if estimate_time_offset:
            self.time_offset_index = next_index
            next_index += 1
        self.gravity_indices: list[int] = []
        if estimate_gravity:
            self.gravity_indices = [next_index, next_index + 1]
            next_index += 2
        self.size = next_index

    @property
    def num_states(self) -> int:
        return self._num_states

    def state_columns(self, i: int, block: slice | None = None) -> list[int]:
        """Vector indices of state i, optionally restricted to one block."""
        start = STATE_DIM * i
        if block is None:
            return list(range(start, start + STATE_DIM))
        return list(range(start + block.start, start + block.stop))

    @property
    def extrinsic_columns(self) -> list[int]:
        return list(range(self.calibration_offset, self.calibration_offset + 6))

    @property
    def calibration_columns(self) -> list[int]:
        return list(range(self.calibration_offset, self.size))

    @property
    def calibration_labels(self) -> list[str]:
        labels = ["rot_x", "rot_y", "rot_z", "trans_x", "trans_y", "trans_z"]
        if self.estimate_time_offset:
            labels.append("time_offset")
        if self.estimate_gravity:
            labels.extend(["gravity_a", "gravity_b"])
        return labels

    def encode(
        self, states: list[StateNode], calibration: CalibrationParameters
    ) -> np.ndarray:
        """Pack estimates into a vector (rotation perturbations are zero)."""
        x = np.zeros(self.size)
        for i, state in enumerate(states):
            base = STATE_DIM * i
            x[base + POS.start : base + POS.stop] = state.position
            x[base + VEL.start : base + VEL.stop] = state.velocity
            x[base + BG.start : base + BG.stop] = state.gyro_bias
            x[base + BA.start : base + BA.stop] = state.accel_bias
        c = self.calibration_offset
        x[c + 3 : c + 6] = calibration.extrinsic_translation
        if self.time_offset_index is not None:
            x[self.time_offset_index] = calibration.time_offset
        return x

    def decode(self, x: np.ndarray) -> GraphEstimate:
        """Unpack a vector into rotations, positions, biases and calibration."""
        blocks = x[: self.calibration_offset].reshape(self._num_states, STATE_DIM)
        rotations = [
            R_ref @ exp_so3(blocks[i, ROT]) for i, R_ref in enumerate(self._ref_rotations)
        ]

        c = self.calibration_offset
        extrinsic_rotation = self._ref_extrinsic_rotation @ exp_so3(x[c : c + 3])
        time_offset = (
            float(x[self.time_offset_index])
            if self.time_offset_index is not None
            else self._fixed_time_offset
        )
        direction = self._ref_gravity_direction
        if self.gravity_indices:
            direction = perturb_gravity_direction(
                direction, self._gravity_basis, x[self.gravity_indices]
            )

        return GraphEstimate(
            rotations=rotations,
            positions=blocks[:, POS],
            velocities=blocks[:, VEL],
            gyro_biases=blocks[:, BG],
            accel_biases=blocks[:, BA],
            extrinsic_rotation=extrinsic_rotation,
            extrinsic_translation=x[c + 3 : c + 6].copy(),
            time_offset=time_offset,
            gravity=self._gravity_magnitude * direction,
        )

    def refresh(self, est: GraphEstimate, x: np.ndarray, column: int) -> None:
        """Update, in place, the part of a decoded estimate that x[column] drives.

        Used while differencing one column at a time: the estimate stays
        equal to decode(x) without decoding the whole vector again.
        """
        if column < self.calibration_offset:
            i, k = divmod(column, STATE_DIM)
            if k < POS.start:
                base = STATE_DIM * i
                est.rotations[i] = self._ref_rotations[i] @ exp_so3(x[base : base + 3])
                return
            blocks = (est.positions, est.velocities, est.gyro_biases, est.accel_biases)
            blocks[k // 3 - 1][i, k % 3] = x[column]
            return

        c = self.calibration_offset
        if column < c + 3:
            est.extrinsic_rotation = self._ref_extrinsic_rotation @ exp_so3(x[c : c + 3])
        elif column < c + 6:
            est.extrinsic_translation[column - c - 3] = x[column]
        elif column == self.time_offset_index:
            est.time_offset = float(x[column])
        else:
            direction = perturb_gravity_direction(
                self._ref_gravity_direction, self._gravity_basis, x[self.gravity_indices]
            )
            est.gravity = self._gravity_magnitude * direction

    def to_states(self, x: np.ndarray) -> list[StateNode]:
        estimate = self.decode(x)
        return [
            StateNode(
                timestamp=t,
                rotation=estimate.rotations[i],
                position=estimate.positions[i].copy(),
                velocity=estimate.velocities[i].copy(),
                gyro_bias=estimate.gyro_biases[i].copy(),
                accel_bias=estimate.accel_biases[i].copy(),
            )
            for i, t in enumerate(self._timestamps)
        ]

    def to_calibration(self, x: np.ndarray) -> CalibrationParameters:
        estimate = self.decode(x)
        return CalibrationParameters(
            extrinsic_rotation=estimate.extrinsic_rotation,
            extrinsic_translation=estimate.extrinsic_translation,
            time_offset=estimate.time_offset,
            gravity_direction=estimate.gravity / self._gravity_magnitude,
            gravity_magnitude=self._gravity_magnitude,
        )


class MotionEdge:
    """Preintegrated inertial constraint between consecutive states i and j.

    Residual (15):
        Log(ΔR(b)^T R_i^T R_j)
        R_i^T (v_j - v_i - g ΔT) - Δv(b)
        R_i^T (p_j - p_i - v_i ΔT - ½ g ΔT²) - Δp(b)
        b_g,j - b_g,i
        b_a,j - b_a,i
    """

    dim = 15

    def __init__(self, i: int, j: int, motion: RelativeMotion) -> None:
        self.i = i
        self.j = j
        self.motion = motion
        self._sqrt_cov = whitening_factor(
            motion.covariance, f"Motion edge {i}->{j}"
        )

    def columns(self, params: GraphParameterization) -> list[int]:
        return (
            params.state_columns(self.i)
            + params.state_columns(self.j)
            + params.gravity_indices
        )

    def residual(self, est: GraphEstimate) -> np.ndarray:
        i, j = self.i, self.j
        Ri = est.rotations[i]
        dT = self.motion.dt
        g = est.gravity

        dR, dv, dp = self.motion.corrected(est.gyro_biases[i], est.accel_biases[i])

        r = np.empty(15)
        r[0:3] = log_so3(dR.T @ Ri.T @ est.rotations[j])
        r[3:6] = Ri.T @ (est.velocities[j] - est.velocities[i] - g * dT) - dv
        r[6:9] = (
            Ri.T
            @ (
                est.positions[j]
                - est.positions[i]
                - est.velocities[i] * dT
                - 0.5 * g * dT * dT
            )
            - dp
        )
        r[9:12] = est.gyro_biases[j] - est.gyro_biases[i]
        r[12:15] = est.accel_biases[j] - est.accel_biases[i]
        return solve_triangular(self._sqrt_cov, r, lower=True)


class PoseEdge:
    """Motion-capture constraint on state i through the calibration.

    The body pose implied by the IMU state and the extrinsic is

        R_WB = R_WI R_IB,  p_B = p_I + R_WI p_B_in_I

    and is compared with the motion-capture pose interpolated at t_i + Δt.

    Residual (6): Log(R_meas^T R_WB), p_B - p_meas.
    """

    dim = 6

    def __init__(self, i: int, timestamp: float, interpolator: Interpolator) -> None:
        self.i = i
        self.timestamp = timestamp
        self._interpolator = interpolator

    def columns(self, params: GraphParameterization) -> list[int]:
        columns = (
            params.state_columns(self.i, ROT)
            + params.state_columns(self.i, POS)
            + params.extrinsic_columns
        )
        if params.time_offset_index is not None:
            columns.append(params.time_offset_index)
        return columns

    def residual(self, est: GraphEstimate) -> np.ndarray:
        measurement = self._interpolator.pose_at(self.timestamp + est.time_offset)
        R_wi = est.rotations[self.i]

        R_wb = R_wi @ est.extrinsic_rotation
        p_b = est.positions[self.i] + R_wi @ est.extrinsic_translation

        r = np.empty(6)
        r[0:3] = log_so3(measurement.rotation.T @ R_wb)
        r[3:6] = p_b - measurement.position
        L = whitening_factor(measurement.covariance, f"Pose edge {self.i}")
        return solve_triangular(L, r, lower=True)


class StatePosePrior:
    """Prior anchoring the orientation and position of one state."""

    dim = 6

    def __init__(
        self,
        i: int,
        rotation: np.ndarray,
        position: np.ndarray,
        rotation_sigma: float,
        position_sigma: float,
    ) -> None:
        self.i = i
        self._rotation = np.asarray(rotation, dtype=np.float64).copy()
        self._position = np.asarray(position, dtype=np.float64).copy()
        self._rotation_sigma = rotation_sigma
        self._position_sigma = position_sigma

    def columns(self, params: GraphParameterization) -> list[int]:
        return params.state_columns(self.i, ROT) + params.state_columns(self.i, POS)

    def residual(self, est: GraphEstimate) -> np.ndarray:
        r = np.empty(6)
        r[0:3] = log_so3(self._rotation.T @ est.rotations[self.i]) / self._rotation_sigma
        r[3:6] = (est.positions[self.i] - self._position) / self._position_sigma
        return r


class ExtrinsicRotationPrior:
    """Prior anchoring the extrinsic rotation."""

    dim = 3

    def __init__(self, rotation: np.ndarray, sigma: float) -> None:
        self._rotation = np.asarray(rotation, dtype=np.float64).copy()
        self._sigma = sigma

    def columns(self, params: GraphParameterization) -> list[int]:
        return params.extrinsic_columns[0:3]

    def residual(self, est: GraphEstimate) -> np.ndarray:
        return log_so3(self._rotation.T @ est.extrinsic_rotation) / self._sigma
