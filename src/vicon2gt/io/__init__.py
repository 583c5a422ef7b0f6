"""Dataset readers and result export."""

from .camera_reader import CameraTimestampReader
from .dataset_loader import DatasetLoader, LoadedDataset, ns_to_seconds, seconds_to_ns
from .imu_reader import IMUMeasurement, IMUReader
from .pose_reader import PoseReader, PoseRecord
from .result_writer import STATES_HEADER, ResultWriter, format_report

__all__ = [
    "IMUReader",
    "IMUMeasurement",
    "PoseReader",
    "PoseRecord",
    "CameraTimestampReader",
    "DatasetLoader",
    "LoadedDataset",
    "ns_to_seconds",
    "seconds_to_ns",
    "ResultWriter",
    "STATES_HEADER",
    "format_report",
]
