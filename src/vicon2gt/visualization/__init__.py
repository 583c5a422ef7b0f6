"""Visualization of solver results."""

from .rerun_visualizer import TrajectoryVisualizer

__all__ = ["TrajectoryVisualizer"]
