"""Sparse Levenberg-Marquardt graph optimization on top of scipy.sparse.

Jointly optimizes every state and the calibration by minimizing the sum
of squared whitened residuals of all edges:

    minimize  Σ_e ||L_e^{-1} r_e(x)||²

Each edge only touches a few parameter blocks, so every iteration builds
the Jacobian edge by edge: an edge is differenced on its own columns only
and its block is scattered into one sparse matrix. The damped normal
equations

    (J^T J + μ D) Δx = -J^T r,   D = diag(J^T J)

are then solved exactly with a sparse LU factorization.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol, Sequence

import numpy as np
from scipy.sparse import coo_matrix, csc_matrix, csr_matrix, diags, identity
from scipy.sparse.linalg import splu

from ...errors import NumericalFailure
from ..factors import GraphEstimate, GraphParameterization

logger = logging.getLogger(__name__)

# Relative forward-difference step, sqrt of machine epsilon
_DIFF_STEP = np.sqrt(np.finfo(np.float64).eps)
_INITIAL_DAMPING = 1e-4
_MAX_DAMPING = 1e16
_MIN_SCALING = 1e-12


class Edge(Protocol):
    dim: int

    def columns(self, params: GraphParameterization) -> list[int]: ...

    def residual(self, est: GraphEstimate) -> np.ndarray: ...


@dataclass
class OptimizerResult:
    """Result of one least-squares run.

    Attributes:
        iterations: Number of linearizations (one Jacobian per iteration)
        function_evaluations: Number of full residual evaluations
        jacobian: Whitened Jacobian at the returned estimate
    """

    x: np.ndarray
    converged: bool
    status: int
    initial_cost: float
    final_cost: float
    iterations: int
    function_evaluations: int
    message: str
    jacobian: csr_matrix | None = None


class ScipyGraphOptimizer:
    """Levenberg-Marquardt over a sparse edge graph.

    Steps are projected onto simple bounds so the time offset stays inside
    its admissible interval.

    Status codes:
        0  iteration cap reached
        1  gradient below gtol
        2  relative cost decrease below ftol
        3  relative step below xtol
       -1  no step could decrease the cost
    """

    def __init__(
        self,
        max_iterations: int = 100,
        ftol: float = 1e-10,
        xtol: float = 1e-10,
        gtol: float = 1e-10,
    ) -> None:
        """Initialize optimizer.

        Args:
            max_iterations: Maximum number of linearizations
            ftol: Relative cost-decrease tolerance
            xtol: Relative step tolerance
            gtol: Gradient max-norm tolerance
        """
        self._max_iterations = max_iterations
        self._ftol = ftol
        self._xtol = xtol
        self._gtol = gtol

    def optimize(
        self,
        params: GraphParameterization,
        edges: Sequence[Edge],
        x0: np.ndarray,
        lower_bounds: np.ndarray | None = None,
        upper_bounds: np.ndarray | None = None,
        max_iterations: int | None = None,
    ) -> OptimizerResult:
        """Run the optimization.

        Args:
            params: Vector layout used to decode estimates
            edges: Residual edges
            x0: Initial parameter vector
            lower_bounds: Per-parameter lower bounds (default: unbounded)
            upper_bounds: Per-parameter upper bounds (default: unbounded)
            max_iterations: Iteration cap for this run (default: the
                optimizer's own cap)

        Returns:
            OptimizerResult with the best estimate found

        Raises:
            NumericalFailure: On non-finite residuals or a degenerate problem
        """
        if not edges:
            raise NumericalFailure("No edges to optimize")
        if max_iterations is None:
            max_iterations = self._max_iterations

        lb = np.full(x0.shape, -np.inf) if lower_bounds is None else lower_bounds
        ub = np.full(x0.shape, np.inf) if upper_bounds is None else upper_bounds

        x = np.clip(np.asarray(x0, dtype=np.float64), lb, ub)
        residuals = self.compute_residuals(x, params, edges)
        if not np.all(np.isfinite(residuals)):
            raise NumericalFailure("Residuals are not finite at the initial estimate")
        cost = 0.5 * float(residuals @ residuals)
        initial_cost = cost

        damping = _INITIAL_DAMPING
        growth = 2.0
        evaluations = 1
        iterations = 0
        status = 0
        message = f"Iteration cap ({max_iterations}) reached"

        while iterations < max_iterations:
            iterations += 1
            jacobian = self.compute_jacobian(x, params, edges, residuals, ub)
            gradient = jacobian.T @ residuals
            if np.max(np.abs(gradient)) <= self._gtol:
                status, message = 1, "Gradient below tolerance"
                break

            information = csc_matrix(jacobian.T @ jacobian)
            scale = 1.0 / np.sqrt(np.maximum(information.diagonal(), _MIN_SCALING))
            scaled = csc_matrix(diags(scale) @ information @ diags(scale))

            # Inner loop: raise the damping until a step decreases the cost
            while True:
                step = self._damped_step(scaled, scale, damping, gradient)
                x_new = np.clip(x + step, lb, ub)
                step = x_new - x
                predicted = -float(gradient @ step + 0.5 * step @ (information @ step))
                if predicted <= self._ftol * cost:
                    status, message = 2, "Predicted cost decrease below tolerance"
                    break

                residuals_new = self.compute_residuals(x_new, params, edges)
                evaluations += 1
                cost_new = 0.5 * float(residuals_new @ residuals_new)
                actual = cost - cost_new
                gain = actual / predicted if np.isfinite(cost_new) else -np.inf
                if gain > 0:
                    damping *= max(1.0 / 3.0, 1.0 - (2.0 * gain - 1.0) ** 3)
                    growth = 2.0
                    break

                damping *= growth
                growth *= 2.0
                if damping > _MAX_DAMPING:
                    status, message = -1, "No step decreases the cost"
                    break

            if status != 0:
                break

            previous_cost = cost
            x, residuals, cost = x_new, residuals_new, cost_new
            if actual <= self._ftol * previous_cost:
                status, message = 2, "Relative cost decrease below tolerance"
                break
            if np.linalg.norm(step) <= self._xtol * (self._xtol + np.linalg.norm(x)):
                status, message = 3, "Relative step below tolerance"
                break

        if not np.all(np.isfinite(x)) or not np.all(np.isfinite(residuals)):
            raise NumericalFailure("Optimization produced non-finite values")

        logger.info(
            "Levenberg-Marquardt finished: status=%d cost %.6e -> %.6e in %d iterations, "
            "%d evaluations (%s)",
            status,
            initial_cost,
            cost,
            iterations,
            evaluations,
            message,
        )

        return OptimizerResult(
            x=x,
            converged=status > 0,
            status=status,
            initial_cost=initial_cost,
            final_cost=cost,
            iterations=iterations,
            function_evaluations=evaluations,
            message=message,
            jacobian=self.compute_jacobian(x, params, edges, residuals, ub),
        )

    @staticmethod
    def _damped_step(
        scaled: csc_matrix, scale: np.ndarray, damping: float, gradient: np.ndarray
    ) -> np.ndarray:
        """Solve (H + μ D) Δx = -g through the unit-diagonal system S H S, S = D^{-1/2}."""
        system = csc_matrix(scaled + damping * identity(scaled.shape[0], format="csc"))
        try:
            return -scale * splu(system).solve(scale * gradient)
        except RuntimeError as e:
            raise NumericalFailure(f"Damped normal equations are singular: {e}") from e

    @staticmethod
    def compute_residuals(
        x: np.ndarray, params: GraphParameterization, edges: Sequence[Edge]
    ) -> np.ndarray:
        """Stack the whitened residuals of all edges."""
        estimate = params.decode(x)
        return np.concatenate([edge.residual(estimate) for edge in edges])

    @staticmethod
    def compute_jacobian(
        x: np.ndarray,
        params: GraphParameterization,
        edges: Sequence[Edge],
        residuals: np.ndarray,
        upper_bounds: np.ndarray,
    ) -> csr_matrix:
        """Sparse Jacobian of the stacked whitened residuals.

        Each edge is differenced on the columns it declares, with only the
        perturbed entry of the decoded estimate refreshed, so the cost per
        column is one edge evaluation. Steps that would leave the upper
        bound are taken backwards.

        Args:
            x: Linearization point
            params: Vector layout
            edges: Residual edges, in the order used for `residuals`
            residuals: Stacked residuals at x
            upper_bounds: Per-parameter upper bounds
        """
        work = np.array(x, dtype=np.float64)
        estimate = params.decode(work)

        rows: list[np.ndarray] = []
        cols: list[np.ndarray] = []
        values: list[np.ndarray] = []
        offset = 0
        for edge in edges:
            base = residuals[offset : offset + edge.dim]
            edge_rows = np.arange(offset, offset + edge.dim)
            for column in edge.columns(params):
                value = work[column]
                step = _DIFF_STEP * max(1.0, abs(value))
                if value + step > upper_bounds[column]:
                    step = -step
                work[column] = value + step
                step = work[column] - value
                params.refresh(estimate, work, column)
                derivative = (edge.residual(estimate) - base) / step
                work[column] = value
                params.refresh(estimate, work, column)

                rows.append(edge_rows)
                cols.append(np.full(edge.dim, column))
                values.append(derivative)
            offset += edge.dim

        return coo_matrix(
            (np.concatenate(values), (np.concatenate(rows), np.concatenate(cols))),
            shape=(offset, params.size),
        ).tocsr()

    @staticmethod
    def marginal_covariance(jacobian: csr_matrix, columns: list[int]) -> np.ndarray:
        """Marginal covariance of a subset of parameters.

        Solves the Jacobi-scaled normal equations for the selected columns
        of the identity and keeps the matching rows.

        Raises:
            NumericalFailure: If the information matrix is singular
        """
        information = csc_matrix(jacobian.T @ jacobian)
        scale = 1.0 / np.sqrt(np.maximum(information.diagonal(), _MIN_SCALING))
        try:
            factor = splu(csc_matrix(diags(scale) @ information @ diags(scale)))
        except RuntimeError as e:
            raise NumericalFailure(f"Information matrix is singular: {e}") from e

        # Σ = S (S H S)^{-1} S restricted to the selected columns
        selector = identity(information.shape[0], format="csc")[:, columns].toarray()
        solution = factor.solve(selector * scale[columns])
        covariance = solution[columns, :] * scale[columns][:, None]
        if not np.all(np.isfinite(covariance)) or np.any(np.diag(covariance) <= 0):
            raise NumericalFailure("Marginal covariance is not positive definite")
        return 0.5 * (covariance + covariance.T)
