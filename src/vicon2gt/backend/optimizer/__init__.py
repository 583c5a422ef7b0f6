"""Least-squares optimizers for the calibration graph."""

from .scipy_solver import OptimizerResult, ScipyGraphOptimizer

__all__ = [
    "ScipyGraphOptimizer",
    "OptimizerResult",
]
