"""Calibration graph: states, edges and the batch solver."""

from .factors import (
    ExtrinsicRotationPrior,
    GraphEstimate,
    GraphParameterization,
    MotionEdge,
    PoseEdge,
    StatePosePrior,
)
from .graph_solver import GraphSolver, SolverPhase
from .optimizer import OptimizerResult, ScipyGraphOptimizer
from .state import (
    CalibrationParameters,
    SolveDiagnostics,
    SolveStatus,
    StateNode,
    StateRecord,
    TrajectoryRecord,
)

__all__ = [
    # State
    "StateNode",
    "CalibrationParameters",
    "StateRecord",
    "TrajectoryRecord",
    "SolveDiagnostics",
    "SolveStatus",
    # Edges
    "GraphParameterization",
    "GraphEstimate",
    "MotionEdge",
    "PoseEdge",
    "StatePosePrior",
    "ExtrinsicRotationPrior",
    # Optimizer
    "ScipyGraphOptimizer",
    "OptimizerResult",
    # Solver
    "GraphSolver",
    "SolverPhase",
]
