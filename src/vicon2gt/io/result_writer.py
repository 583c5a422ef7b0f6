"""Export of the solved trajectory and calibration.

Two files are written:

    gt_states.csv       one row per state, EuRoC-style ground truth
    vicon2gt_info.txt   calibration, solver diagnostics and marginal std devs
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from ..backend.state import CalibrationParameters, SolveDiagnostics, StateRecord
from ..frontend.pose import rotation_to_quaternion
from .dataset_loader import seconds_to_ns

logger = logging.getLogger(__name__)

STATES_HEADER = "#time(ns),px,py,pz,qw,qx,qy,qz,vx,vy,vz,bwx,bwy,bwz,bax,bay,baz"


class ResultWriter:
    """Writes solver output to disk.

    Example usage:
        writer = ResultWriter(origin_ns=dataset.origin_ns)
        writer.write_states("gt_states.csv", solver.state_records())
        writer.write_info("vicon2gt_info.txt", solver.calibration, solver.diagnostics)
    """

    def __init__(self, origin_ns: int = 0) -> None:
        """Initialize result writer.

        Args:
            origin_ns: Absolute time in nanoseconds of t = 0 in the records
        """
        self._origin_ns = origin_ns

    def write_states(self, path: str | Path, records: list[StateRecord]) -> Path:
        """Write one CSV row per state.

        Args:
            path: Output CSV path (parent directories are created)
            records: State records in time order

        Returns:
            The written path
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            f.write(STATES_HEADER + "\n")
            for r in records:
                values = np.concatenate([
                    r.position,
                    r.orientation,
                    r.velocity,
                    r.gyro_bias,
                    r.accel_bias,
                ])
                row = ",".join(f"{v:.9f}" for v in values)
                f.write(f"{seconds_to_ns(r.timestamp, self._origin_ns)},{row}\n")

        logger.info("Wrote %d states to %s", len(records), path)
        return path

    def write_info(
        self,
        path: str | Path,
        calibration: CalibrationParameters,
        diagnostics: SolveDiagnostics,
    ) -> Path:
        """Write the plain-text calibration report.

        Args:
            path: Output text path (parent directories are created)
            calibration: Solved calibration
            diagnostics: Diagnostics of the solve

        Returns:
            The written path
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            f.write(format_report(calibration, diagnostics))

        logger.info("Wrote calibration report to %s", path)
        return path


def format_report(calibration: CalibrationParameters, diagnostics: SolveDiagnostics) -> str:
    """Human-readable calibration and diagnostics summary."""
    q = rotation_to_quaternion(calibration.extrinsic_rotation)
    std = diagnostics.calibration_std

    lines = [
        "Calibration (body frame -> IMU frame)",
        "=" * 40,
        "R_BtoI:",
        *(
            "  " + " ".join(f"{v: .9f}" for v in row)
            for row in calibration.extrinsic_rotation
        ),
        f"q_BtoI (w,x,y,z): {_vector(q)}",
        f"p_BinI (m): {_vector(calibration.extrinsic_translation)}",
        f"time offset t_vicon - t_imu (s): {calibration.time_offset:.9f}",
        f"gravity (m/s^2): {_vector(calibration.gravity)}",
        "",
        "Marginal standard deviations",
        "-" * 40,
        *(f"  {name}: {value:.6e}" for name, value in std.items()),
        "",
        "Solver",
        "-" * 40,
        f"status: {diagnostics.status.value}",
        f"message: {diagnostics.message}",
        f"initial cost: {diagnostics.initial_cost:.6e}",
        f"final cost: {diagnostics.final_cost:.6e}",
        f"iterations: {diagnostics.iterations}",
        f"function evaluations: {diagnostics.function_evaluations}",
        f"relinearizations: {diagnostics.relinearizations}",
        f"states: {diagnostics.num_states}",
        f"motion edges: {diagnostics.num_motion_edges}",
        f"pose edges: {diagnostics.num_pose_edges}",
        f"excluded timestamps: {diagnostics.num_excluded_timestamps}",
    ]
    return "\n".join(lines) + "\n"


def _vector(v: np.ndarray) -> str:
    return "[" + ", ".join(f"{x:.9f}" for x in v) + "]"
