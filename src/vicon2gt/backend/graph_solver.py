"""Batch graph solver for the motion-capture to IMU calibration.

Unknowns are one IMU state per admitted query timestamp plus the shared
calibration (extrinsic rotation and translation, time offset, gravity
direction). Two edge families constrain them:

    motion edges  preintegrated IMU motion between consecutive states
    pose edges    interpolated motion-capture pose at t_i + Δt compared with
                  the body pose implied by state i and the extrinsic

plus an explicit gauge prior. Everything is solved jointly with a sparse
Levenberg-Marquardt.

Lifecycle:

    UNBUILT --build()--> BUILT --solve()--> SOLVED --export--> EXPORTED

There is no way back to BUILT; a new solver is needed per dataset. Both
measurement engines are frozen when the solver is created, so neither
buffer can change while edges read from it.
"""

from __future__ import annotations

import logging
import warnings
from enum import Enum

import numpy as np

from ..config import GaugePrior, SolverConfig
from ..errors import (
    InsufficientOverlap,
    NotConverged,
    SolverStateError,
)
from ..frontend.interpolator import Interpolator
from ..frontend.preintegrator import Preintegrator, RelativeMotion
from .factors import (
    ExtrinsicRotationPrior,
    GraphParameterization,
    MotionEdge,
    PoseEdge,
    StatePosePrior,
)
from .optimizer import OptimizerResult, ScipyGraphOptimizer
from .state import (
    CalibrationParameters,
    SolveDiagnostics,
    SolveStatus,
    StateNode,
    StateRecord,
    TrajectoryRecord,
)

logger = logging.getLogger(__name__)


class SolverPhase(Enum):
    """Lifecycle of a GraphSolver."""

    UNBUILT = "UNBUILT"
    BUILT = "BUILT"
    SOLVED = "SOLVED"
    EXPORTED = "EXPORTED"


class GraphSolver:
    """Joint estimator of the IMU trajectory and the calibration.

    Example:
        solver = GraphSolver(preintegrator, interpolator, config.solver)
        solver.set_query_timestamps(camera_timestamps)
        diagnostics = solver.build_and_solve()
        records = solver.state_records()
    """

    def __init__(
        self,
        preintegrator: Preintegrator,
        interpolator: Interpolator,
        config: SolverConfig | None = None,
        initial_calibration: CalibrationParameters | None = None,
    ) -> None:
        """Initialize the solver and close ingestion on both engines.

        Args:
            preintegrator: Buffered IMU samples
            interpolator: Buffered motion-capture poses
            config: Solver configuration
            initial_calibration: Initial calibration guess (default: identity
                extrinsic, zero time offset, configured gravity)
        """
        self._config = config or SolverConfig()
        self._config.validate()

        preintegrator.freeze()
        interpolator.freeze()
        self._preintegrator = preintegrator
        self._interpolator = interpolator

        if initial_calibration is None:
            initial_calibration = CalibrationParameters(
                gravity_direction=self._config.initial_gravity_direction,
                gravity_magnitude=self._config.gravity_magnitude,
            )
        # Copy so the caller's guess is never mutated
        self._initial_calibration = initial_calibration.copy()
        self._initial_calibration.gravity_magnitude = self._config.gravity_magnitude
        self._calibration = self._initial_calibration.copy()

        self._optimizer = ScipyGraphOptimizer(
            max_iterations=self._config.max_iterations,
            ftol=self._config.ftol,
            xtol=self._config.xtol,
            gtol=self._config.gtol,
        )

        self._phase = SolverPhase.UNBUILT
        self._query_timestamps: np.ndarray = np.empty(0)
        self._num_excluded = 0

        self._states: list[StateNode] = []
        self._motion_edges: list[MotionEdge] = []
        self._pose_edges: list[PoseEdge] = []
        self._prior_edges: list[StatePosePrior | ExtrinsicRotationPrior] = []
        self._diagnostics: SolveDiagnostics | None = None

    # ------------------------------------------------------------------
    # Graph construction
    # ------------------------------------------------------------------

    def set_query_timestamps(self, timestamps: list[float] | np.ndarray) -> None:
        """Set the timestamps (inertial clock) at which states are estimated.

        Input is sorted and de-duplicated; non-finite values are discarded.

        Args:
            timestamps: Query times in seconds, typically camera frame times

        Raises:
            SolverStateError: If the graph is already built
        """
        self._require(SolverPhase.UNBUILT, "set query timestamps")
        values = np.asarray(timestamps, dtype=np.float64).flatten()
        finite = values[np.isfinite(values)]
        self._query_timestamps = np.unique(finite)

        duplicates = len(finite) - len(self._query_timestamps)
        if duplicates or len(finite) != len(values):
            logger.info(
                "Query timestamps: %d given, %d duplicates, %d non-finite removed",
                len(values),
                duplicates,
                len(values) - len(finite),
            )

    def build(self) -> None:
        """Admit query timestamps, initialize states and assemble all edges.

        A timestamp is admitted when the IMU buffer covers it and the pose
        buffer brackets it for every time offset the solve may visit.

        Raises:
            SolverStateError: If not UNBUILT
            InsufficientOverlap: If fewer than `min_states` timestamps are
                admitted; the solver stays UNBUILT and nothing is modified
            NumericalFailure: If an edge covariance is not positive definite
        """
        self._require(SolverPhase.UNBUILT, "build")

        admitted = self._admit(self._query_timestamps)
        num_excluded = len(self._query_timestamps) - len(admitted)
        if len(admitted) < self._config.min_states:
            raise InsufficientOverlap(
                f"Only {len(admitted)} of {len(self._query_timestamps)} query "
                f"timestamps are covered by both streams, need at least "
                f"{self._config.min_states}"
            )

        states = self._initialize_states(admitted)
        motion_edges = [
            MotionEdge(i, i + 1, self._preintegrate(states[i], states[i + 1]))
            for i in range(len(states) - 1)
        ]
        pose_edges = [
            PoseEdge(i, state.timestamp, self._interpolator)
            for i, state in enumerate(states)
        ]

        self._states = states
        self._motion_edges = motion_edges
        self._pose_edges = pose_edges
        self._prior_edges = self._gauge_priors(states)
        self._num_excluded = num_excluded
        self._phase = SolverPhase.BUILT

        logger.info(
            "Graph built: %d states, %d motion edges, %d pose edges, "
            "%d prior edges, %d timestamps excluded",
            len(states),
            len(motion_edges),
            len(pose_edges),
            len(self._prior_edges),
            num_excluded,
        )

    def _admit(self, timestamps: np.ndarray) -> list[float]:
        offset = self._initial_calibration.time_offset
        margin = self._config.time_offset_bound if self._config.estimate_time_offset else 0.0

        admitted = []
        for t in timestamps:
            t = float(t)
            if not self._preintegrator.covers(t, t):
                continue
            if not (
                self._interpolator.can_bracket(t + offset - margin)
                and self._interpolator.can_bracket(t + offset + margin)
            ):
                continue
            admitted.append(t)
        return admitted

    def _initialize_states(self, timestamps: list[float]) -> list[StateNode]:
        """Seed states from the motion-capture poses through the initial calibration."""
        calibration = self._initial_calibration
        states = []
        for t in timestamps:
            body_pose = self._interpolator.pose_at(t + calibration.time_offset).to_se3()
            imu_pose = calibration.body_to_imu(body_pose)
            states.append(
                StateNode(timestamp=t, rotation=imu_pose.rotation, position=imu_pose.position)
            )

        # Finite-difference velocities, central where both neighbours exist
        n = len(states)
        for i in range(n):
            lo = max(i - 1, 0)
            hi = min(i + 1, n - 1)
            dt = states[hi].timestamp - states[lo].timestamp
            states[i].velocity = (states[hi].position - states[lo].position) / dt

        return states

    def _preintegrate(self, state_i: StateNode, state_j: StateNode) -> RelativeMotion:
        return self._preintegrator.relative_motion(
            state_i.timestamp,
            state_j.timestamp,
            gyro_bias=state_i.gyro_bias,
            accel_bias=state_i.accel_bias,
        )

    def _gauge_priors(
        self, states: list[StateNode]
    ) -> list[StatePosePrior | ExtrinsicRotationPrior]:
        prior = self._config.gauge_prior
        if prior == GaugePrior.FIRST_STATE:
            return [
                StatePosePrior(
                    0,
                    states[0].rotation,
                    states[0].position,
                    self._config.prior_rotation_sigma,
                    self._config.prior_position_sigma,
                )
            ]
        if prior == GaugePrior.CALIBRATION_ROTATION:
            return [
                ExtrinsicRotationPrior(
                    self._initial_calibration.extrinsic_rotation,
                    self._config.prior_rotation_sigma,
                )
            ]
        logger.warning(
            "Gauge prior disabled: global yaw and translation are only fixed "
            "by the motion-capture poses"
        )
        return []

    # ------------------------------------------------------------------
    # Solving
    # ------------------------------------------------------------------

    def solve(self) -> SolveDiagnostics:
        """Optimize all states and the calibration.

        The motion edges are re-preintegrated whenever a bias estimate
        drifts past the configured threshold from the bias it was
        integrated with, up to `max_relinearizations` times. All rounds
        draw on the same `max_iterations` budget.

        Returns:
            SolveDiagnostics; status NOT_CONVERGED when the iteration cap
            was reached (the best estimate is still published)

        Raises:
            SolverStateError: If not BUILT
            NumericalFailure: On non-finite residuals or a singular problem;
                the solver stays BUILT and no estimate is published
        """
        self._require(SolverPhase.BUILT, "solve")

        states = self._states
        calibration = self._calibration.copy()
        motion_edges = self._motion_edges
        lower_time_offset = self._initial_calibration.time_offset - self._config.time_offset_bound
        upper_time_offset = self._initial_calibration.time_offset + self._config.time_offset_bound

        initial_cost: float | None = None
        iterations = 0
        evaluations = 0
        relinearizations = 0

        while True:
            params = GraphParameterization(
                states,
                calibration,
                estimate_time_offset=self._config.estimate_time_offset,
                estimate_gravity=self._config.estimate_gravity_direction,
            )
            edges = [*motion_edges, *self._pose_edges, *self._prior_edges]
            x0 = params.encode(states, calibration)

            lower = np.full(params.size, -np.inf)
            upper = np.full(params.size, np.inf)
            if params.time_offset_index is not None:
                lower[params.time_offset_index] = lower_time_offset
                upper[params.time_offset_index] = upper_time_offset

            # All rounds share one iteration budget
            result = self._optimizer.optimize(
                params,
                edges,
                x0,
                lower,
                upper,
                max_iterations=self._config.max_iterations - iterations,
            )
            if initial_cost is None:
                initial_cost = result.initial_cost
            iterations += result.iterations
            evaluations += result.function_evaluations

            states = params.to_states(result.x)
            calibration = params.to_calibration(result.x)

            if (
                relinearizations >= self._config.max_relinearizations
                or iterations >= self._config.max_iterations
            ):
                break
            stale = self._stale_motion_edges(motion_edges, states)
            if not stale:
                break

            relinearizations += 1
            logger.info(
                "Relinearization %d: re-preintegrating %d motion edges",
                relinearizations,
                len(stale),
            )
            motion_edges = list(motion_edges)
            for k in stale:
                edge = motion_edges[k]
                motion_edges[k] = MotionEdge(
                    edge.i, edge.j, self._preintegrate(states[edge.i], states[edge.j])
                )

        covariance = ScipyGraphOptimizer.marginal_covariance(
            result.jacobian, params.calibration_columns
        )

        status = SolveStatus.SOLVED if result.converged else SolveStatus.NOT_CONVERGED
        diagnostics = SolveDiagnostics(
            status=status,
            initial_cost=initial_cost,
            final_cost=result.final_cost,
            iterations=iterations,
            function_evaluations=evaluations,
            relinearizations=relinearizations,
            message=result.message,
            num_states=len(states),
            num_motion_edges=len(motion_edges),
            num_pose_edges=len(self._pose_edges),
            num_excluded_timestamps=self._num_excluded,
            calibration_covariance=covariance,
            calibration_labels=params.calibration_labels,
        )

        # Publish only after everything above succeeded
        self._states = states
        self._calibration = calibration
        self._motion_edges = motion_edges
        self._diagnostics = diagnostics
        self._phase = SolverPhase.SOLVED

        self._log_result(result, diagnostics)
        return diagnostics

    def build_and_solve(self) -> SolveDiagnostics:
        """Convenience wrapper for build() followed by solve()."""
        self.build()
        return self.solve()

    def _stale_motion_edges(
        self, motion_edges: list[MotionEdge], states: list[StateNode]
    ) -> list[int]:
        stale = []
        for k, edge in enumerate(motion_edges):
            state = states[edge.i]
            gyro_shift, accel_shift = edge.motion.bias_shift(state.gyro_bias, state.accel_bias)
            if (
                gyro_shift > self._config.relinearize_gyro_bias
                or accel_shift > self._config.relinearize_accel_bias
            ):
                stale.append(k)
        return stale

    def _log_result(self, result: OptimizerResult, diagnostics: SolveDiagnostics) -> None:
        if diagnostics.status == SolveStatus.NOT_CONVERGED:
            message = (
                f"Solver stopped before converging after {diagnostics.iterations} "
                f"of {self._config.max_iterations} iterations: {result.message}"
            )
            logger.warning(message)
            warnings.warn(message, NotConverged, stacklevel=3)
        else:
            logger.info(
                "Solve converged: cost %.6e -> %.6e, %d relinearizations",
                diagnostics.initial_cost,
                diagnostics.final_cost,
                diagnostics.relinearizations,
            )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def state_records(self) -> list[StateRecord]:
        """Per-timestamp rows for tabular export.

        Raises:
            SolverStateError: If the solve has not completed
        """
        self._mark_exported("export state records")
        return [
            StateRecord(
                timestamp=state.timestamp,
                position=state.position.copy(),
                velocity=state.velocity.copy(),
                orientation=state.orientation,
                gyro_bias=state.gyro_bias.copy(),
                accel_bias=state.accel_bias.copy(),
            )
            for state in self._states
        ]

    def trajectory(self) -> list[TrajectoryRecord]:
        """Ordered (timestamp, position, orientation) records of the IMU.

        Raises:
            SolverStateError: If the solve has not completed
        """
        self._mark_exported("export the trajectory")
        return [
            TrajectoryRecord(
                timestamp=state.timestamp,
                position=state.position.copy(),
                orientation=state.orientation,
            )
            for state in self._states
        ]

    def _mark_exported(self, action: str) -> None:
        if self._phase not in (SolverPhase.SOLVED, SolverPhase.EXPORTED):
            raise SolverStateError(f"Cannot {action} in phase {self._phase.value}")
        self._phase = SolverPhase.EXPORTED

    def _require(self, phase: SolverPhase, action: str) -> None:
        if self._phase != phase:
            raise SolverStateError(
                f"Cannot {action} in phase {self._phase.value}, "
                f"requires {phase.value}"
            )

    @property
    def phase(self) -> SolverPhase:
        """Return the lifecycle phase."""
        return self._phase

    @property
    def calibration(self) -> CalibrationParameters:
        """Return the current calibration (the initial guess until solved)."""
        return self._calibration.copy()

    @property
    def initial_calibration(self) -> CalibrationParameters:
        """Return the initial calibration guess."""
        return self._initial_calibration.copy()

    @property
    def diagnostics(self) -> SolveDiagnostics:
        """Return diagnostics of the completed solve.

        Raises:
            SolverStateError: If the solve has not completed
        """
        if self._diagnostics is None:
            raise SolverStateError(f"No diagnostics in phase {self._phase.value}")
        return self._diagnostics

    @property
    def states(self) -> list[StateNode]:
        """Return the current state estimates (initial values until solved)."""
        return list(self._states)

    @property
    def query_timestamps(self) -> np.ndarray:
        """Return the sorted, de-duplicated query timestamps."""
        return self._query_timestamps.copy()

    @property
    def num_states(self) -> int:
        """Number of admitted states (zero before build)."""
        return len(self._states)
