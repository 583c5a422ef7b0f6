"""Rerun-based visualization of the solved trajectory and calibration."""

from __future__ import annotations

from pathlib import Path

import numpy as np
import rerun as rr
import rerun.blueprint as rrb

from ..backend.state import CalibrationParameters, TrajectoryRecord
from ..frontend.interpolator import PoseSample
from ..frontend.pose import quaternion_to_rotation


class TrajectoryVisualizer:
    """Logs the estimated IMU trajectory next to the raw motion-capture poses.

    Entity hierarchy:
        world/
            trajectory/vicon      - Raw motion-capture positions (red)
            trajectory/imu        - Solved IMU positions (yellow)
            imu                   - Solved IMU frame over time
            imu/body              - Motion-capture body frame through the extrinsic
            gravity               - Estimated gravity direction
    """

    def __init__(
        self,
        app_name: str = "vicon2gt",
        spawn: bool = True,
        save_path: str | Path | None = None,
    ) -> None:
        """Initialize Rerun visualization.

        Args:
            app_name: Name for the Rerun application window
            spawn: If True, automatically spawn the Rerun viewer
            save_path: Stream to this .rrd file instead of a viewer
        """
        rr.init(app_name, spawn=spawn and save_path is None)
        if save_path is not None:
            rr.save(str(save_path))
        self._setup_coordinate_system()
        self._setup_layout()

    def _setup_coordinate_system(self) -> None:
        """Motion-capture worlds are right-handed with Z up."""
        rr.log("world", rr.ViewCoordinates.RIGHT_HAND_Z_UP, static=True)

    def _setup_layout(self) -> None:
        blueprint = rrb.Blueprint(
            rrb.Horizontal(
                contents=[
                    rrb.Spatial3DView(name="Trajectory", origin="world"),
                ]
            )
        )
        rr.send_blueprint(blueprint)

    def log_pose_samples(
        self,
        samples: list[PoseSample],
        entity_path: str = "world/trajectory/vicon",
    ) -> None:
        """Log raw motion-capture positions as a static line strip (red)."""
        if len(samples) < 2:
            return
        positions = np.array([s.position for s in samples])
        rr.log(
            entity_path,
            rr.LineStrips3D([positions], colors=[[255, 0, 0]], radii=0.002),
            static=True,
        )

    def log_trajectory(
        self,
        records: list[TrajectoryRecord],
        calibration: CalibrationParameters | None = None,
        entity_path: str = "world/imu",
        trajectory_path: str = "world/trajectory/imu",
    ) -> None:
        """Log the solved trajectory (yellow) and the moving IMU frame.

        Args:
            records: Trajectory records in time order
            calibration: When given, the body frame is logged as a child of
                the IMU frame through the extrinsic
            entity_path: Rerun entity path for the IMU frame
            trajectory_path: Rerun entity path for the position line strip
        """
        if not records:
            return

        positions = np.array([r.position for r in records])
        rr.log(
            trajectory_path,
            rr.LineStrips3D([positions], colors=[[255, 255, 0]], radii=0.002),
            static=True,
        )

        if calibration is not None:
            # T_imu_body is constant, log it once
            rr.log(
                f"{entity_path}/body",
                rr.Transform3D(
                    translation=calibration.extrinsic_translation,
                    mat3x3=calibration.extrinsic_rotation,
                ),
                static=True,
            )
            rr.log(
                f"{entity_path}/body/origin",
                rr.Points3D([[0.0, 0.0, 0.0]], colors=[[0, 255, 0]], radii=0.01),
                static=True,
            )

        for r in records:
            rr.set_time("timestamp", duration=r.timestamp)
            rr.log(
                entity_path,
                rr.Transform3D(
                    translation=r.position,
                    mat3x3=quaternion_to_rotation(r.orientation),
                ),
            )

    def log_gravity(
        self,
        calibration: CalibrationParameters,
        origin: np.ndarray | None = None,
        entity_path: str = "world/gravity",
    ) -> None:
        """Log the estimated gravity direction as an arrow (cyan, 1 m long)."""
        origin = np.zeros(3) if origin is None else np.asarray(origin, dtype=np.float64)
        rr.log(
            entity_path,
            rr.Arrows3D(
                origins=[origin],
                vectors=[calibration.gravity_direction],
                colors=[[0, 255, 255]],
            ),
            static=True,
        )
