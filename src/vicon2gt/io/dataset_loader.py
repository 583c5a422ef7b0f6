"""Load a EuRoC-layout recording into the measurement engines.

Expected directory layout (mav0):

    imu0/data.csv       #timestamp [ns], w_x, w_y, w_z, a_x, a_y, a_z
    imu0/sensor.yaml    optional noise densities
    cam0/data.csv       #timestamp [ns], filename
    vicon0/data.csv     #timestamp [ns], p_x, p_y, p_z, q_w, q_x, q_y, q_z

All timestamps are converted to seconds relative to a common origin (the
first IMU timestamp of the window) before being fed, so float64 keeps
nanosecond resolution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ..config import Vicon2GTConfig
from ..errors import EmptyStream
from ..frontend.interpolator import Interpolator
from ..frontend.preintegrator import IngestionStats, Preintegrator
from .camera_reader import CameraTimestampReader
from .imu_reader import IMUReader
from .pose_reader import PoseReader

logger = logging.getLogger(__name__)


@dataclass
class LoadedDataset:
    """Engines fed from one recording window.

    Attributes:
        preintegrator: IMU buffer (not frozen)
        interpolator: Pose buffer (not frozen)
        query_timestamps: Camera frame times in seconds since origin_ns
        origin_ns: Absolute time of t = 0 in nanoseconds
        imu_stats: IMU ingestion counters
        pose_stats: Pose ingestion counters
        num_camera_frames: Camera frames inside the window
    """

    preintegrator: Preintegrator
    interpolator: Interpolator
    query_timestamps: np.ndarray
    origin_ns: int
    imu_stats: IngestionStats
    pose_stats: IngestionStats
    num_camera_frames: int


def ns_to_seconds(timestamp_ns: int, origin_ns: int) -> float:
    """Seconds since origin_ns."""
    return (timestamp_ns - origin_ns) * 1e-9


def seconds_to_ns(timestamp: float, origin_ns: int) -> int:
    """Absolute nanoseconds of a time in seconds since origin_ns."""
    return origin_ns + int(round(timestamp * 1e9))


class DatasetLoader:
    """Reads IMU, camera and pose files and feeds both engines.

    Example usage:
        loader = DatasetLoader("data/euroc/V1_01_easy/mav0", config)
        dataset = loader.load()
        solver = GraphSolver(dataset.preintegrator, dataset.interpolator, config.solver)
        solver.set_query_timestamps(dataset.query_timestamps)
    """

    def __init__(self, dataset_path: str | Path, config: Vicon2GTConfig | None = None) -> None:
        """Initialize dataset loader.

        Args:
            dataset_path: Path to the EuRoC mav0 directory
            config: Configuration (dataset window, noise, Vicon sigmas)

        Raises:
            FileNotFoundError: If a required file is missing
        """
        self._dataset_path = Path(dataset_path)
        if not self._dataset_path.exists():
            raise FileNotFoundError(f"Dataset not found: {self._dataset_path}")

        self._config = config or Vicon2GTConfig()
        self._imu_reader = IMUReader(self._dataset_path)
        self._camera_reader = CameraTimestampReader(
            self._dataset_path, self._config.dataset.camera
        )
        self._pose_reader = PoseReader(
            self._dataset_path / self._config.dataset.pose_file, self._config.vicon
        )

    def load(self) -> LoadedDataset:
        """Feed the configured window of the recording into fresh engines.

        Returns:
            LoadedDataset with both engines still open for ingestion

        Raises:
            EmptyStream: If no IMU sample, pose or camera frame is accepted
        """
        start_ns, end_ns = self.window()
        origin_ns = start_ns

        noise = self._config.noise
        if self._config.dataset.use_sensor_noise and self._imu_reader.noise is not None:
            noise = self._imu_reader.noise
        preintegrator = Preintegrator(noise)
        interpolator = Interpolator()

        for m in self._imu_reader.measurements_between(start_ns, end_ns):
            preintegrator.feed_inertial(
                ns_to_seconds(m.timestamp_ns, origin_ns), m.gyroscope, m.accelerometer
            )
        if preintegrator.stats.accepted == 0:
            raise EmptyStream(
                f"No valid IMU samples in window "
                f"[{start_ns}, {end_ns if end_ns is not None else 'end'}]"
            )

        for r in self._pose_reader.records_between(start_ns, end_ns):
            interpolator.feed_pose(
                ns_to_seconds(r.timestamp_ns, origin_ns),
                r.orientation,
                r.position,
                r.orientation_covariance,
                r.position_covariance,
            )
        if interpolator.stats.accepted == 0:
            raise EmptyStream("No valid motion-capture poses in window")

        camera_ns = self._camera_reader.timestamps_between(start_ns, end_ns)
        if not camera_ns:
            raise EmptyStream("No camera frames in window")
        query_timestamps = np.array([ns_to_seconds(t, origin_ns) for t in camera_ns])

        logger.info(
            "Dataset loaded: imu=%d (dropped %d), vicon=%d (dropped %d), cam=%d",
            preintegrator.stats.accepted,
            preintegrator.stats.dropped,
            interpolator.stats.accepted,
            interpolator.stats.dropped,
            len(camera_ns),
        )

        return LoadedDataset(
            preintegrator=preintegrator,
            interpolator=interpolator,
            query_timestamps=query_timestamps,
            origin_ns=origin_ns,
            imu_stats=preintegrator.stats,
            pose_stats=interpolator.stats,
            num_camera_frames=len(camera_ns),
        )

    def window(self) -> tuple[int, int | None]:
        """Absolute [start, end] of the configured window in nanoseconds.

        Raises:
            EmptyStream: If the IMU file holds no rows
        """
        first_ns = self._imu_reader.start_timestamp
        if first_ns is None:
            raise EmptyStream(f"No IMU rows in {self._dataset_path / 'imu0' / 'data.csv'}")

        start_ns = first_ns + int(round(self._config.dataset.start_offset * 1e9))
        end_ns = None
        if self._config.dataset.duration > 0:
            end_ns = start_ns + int(round(self._config.dataset.duration * 1e9))
        return start_ns, end_ns

    @property
    def imu_reader(self) -> IMUReader:
        return self._imu_reader

    @property
    def pose_reader(self) -> PoseReader:
        return self._pose_reader

    @property
    def camera_reader(self) -> CameraTimestampReader:
        return self._camera_reader
