"""Tests for dataset readers, the dataset loader and the result writer."""

from pathlib import Path

import numpy as np
import pytest

from vicon2gt.backend.state import (
    CalibrationParameters,
    SolveDiagnostics,
    SolveStatus,
    StateRecord,
)
from vicon2gt.config import Vicon2GTConfig, ViconConfig
from vicon2gt.errors import ConfigError, EmptyStream
from vicon2gt.io import (
    STATES_HEADER,
    CameraTimestampReader,
    DatasetLoader,
    IMUReader,
    PoseReader,
    ResultWriter,
    ns_to_seconds,
    seconds_to_ns,
)

T0 = 1403636579758555392
IMU_PERIOD_NS = 5_000_000
POSE_PERIOD_NS = 10_000_000
CAMERA_PERIOD_NS = 50_000_000

SENSOR_YAML = """\
sensor_type: imu
rate_hz: 200
gyroscope_noise_density: 1.0e-4
gyroscope_random_walk: 2.0e-5
accelerometer_noise_density: 3.0e-3
accelerometer_random_walk: 4.0e-3
"""


def _imu_row(k: int) -> str:
    return f"{T0 + k * IMU_PERIOD_NS},0.01,-0.02,0.03,0.1,0.2,9.81"


def _pose_row(k: int, extra: str = "") -> str:
    return f"{T0 + k * POSE_PERIOD_NS},{0.01 * k},0.5,1.2,1.0,0.0,0.0,0.0{extra}"


@pytest.fixture
def mock_dataset(tmp_path: Path) -> Path:
    """Create a mock EuRoC mav0 directory with 1 s of data.

    The IMU file has one unparsable line, one non-finite row and one row
    replayed out of order at the end.

    Args:
        tmp_path: Pytest temporary directory fixture

    Returns:
        Path to mock mav0 directory
    """
    mav0 = tmp_path / "mav0"
    for name in ("imu0", "cam0", "vicon0"):
        (mav0 / name).mkdir(parents=True)

    imu_lines = ["#timestamp [ns],w_RS_S_x,w_RS_S_y,w_RS_S_z,a_RS_S_x,a_RS_S_y,a_RS_S_z"]
    imu_lines += [_imu_row(k) for k in range(201)]
    imu_lines.insert(50, "garbage line")
    imu_lines.insert(80, f"{T0 + 1},nan,0,0,0,0,9.81")
    imu_lines.append(_imu_row(3))
    (mav0 / "imu0" / "data.csv").write_text("\n".join(imu_lines) + "\n")
    (mav0 / "imu0" / "sensor.yaml").write_text(SENSOR_YAML)

    cam_lines = ["#timestamp [ns],filename"]
    for k in range(21):
        stamp = T0 + k * CAMERA_PERIOD_NS
        cam_lines.append(f"{stamp},{stamp}.png")
    (mav0 / "cam0" / "data.csv").write_text("\n".join(cam_lines) + "\n")

    pose_lines = ["#timestamp [ns],p_x,p_y,p_z,q_w,q_x,q_y,q_z"]
    pose_lines += [_pose_row(k) for k in range(101)]
    (mav0 / "vicon0" / "data.csv").write_text("\n".join(pose_lines) + "\n")

    return mav0


class TestIMUReader:
    def test_reads_rows_in_file_order(self, mock_dataset: Path) -> None:
        reader = IMUReader(mock_dataset)
        assert len(reader) == 203
        assert reader.num_skipped_lines == 1
        assert reader.measurements[-1].timestamp_ns == T0 + 3 * IMU_PERIOD_NS
        assert reader.start_timestamp == T0
        assert reader.end_timestamp == T0 + 200 * IMU_PERIOD_NS

    def test_measurement_values(self, mock_dataset: Path) -> None:
        m = IMUReader(mock_dataset).measurements[0]
        assert m.timestamp_ns == T0
        assert np.allclose(m.gyroscope, [0.01, -0.02, 0.03])
        assert np.allclose(m.accelerometer, [0.1, 0.2, 9.81])

    def test_measurements_between_inclusive(self, mock_dataset: Path) -> None:
        reader = IMUReader(mock_dataset)
        rows = reader.measurements_between(T0 + 10 * IMU_PERIOD_NS, T0 + 20 * IMU_PERIOD_NS)
        assert len(rows) == 11

    def test_sensor_noise(self, mock_dataset: Path) -> None:
        noise = IMUReader(mock_dataset).noise
        assert noise.gyroscope_noise_density == 1.0e-4
        assert noise.accelerometer_random_walk == 4.0e-3

    def test_sensor_yaml_optional(self, mock_dataset: Path) -> None:
        (mock_dataset / "imu0" / "sensor.yaml").unlink()
        assert IMUReader(mock_dataset).noise is None

    def test_invalid_sensor_yaml(self, mock_dataset: Path) -> None:
        (mock_dataset / "imu0" / "sensor.yaml").write_text("gyroscope_noise_density: abc\n")
        with pytest.raises(ConfigError, match="gyroscope_noise_density"):
            IMUReader(mock_dataset)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError, match="imu0/data.csv"):
            IMUReader(tmp_path)


class TestPoseReader:
    def test_plain_poses_use_manual_sigmas(self, mock_dataset: Path) -> None:
        vicon = ViconConfig(sigmas=[1e-3, 1e-3, 1e-3, 1e-4, 1e-4, 1e-4])
        reader = PoseReader(mock_dataset / "vicon0" / "data.csv", vicon)
        assert len(reader) == 101
        assert reader.num_with_covariance == 0

        record = reader.records[10]
        assert record.timestamp_ns == T0 + 10 * POSE_PERIOD_NS
        assert np.allclose(record.position, [0.1, 0.5, 1.2])
        assert np.allclose(record.orientation, [1.0, 0.0, 0.0, 0.0])
        assert np.allclose(record.orientation_covariance, np.eye(3) * 1e-6)
        assert np.allclose(record.position_covariance, np.eye(3) * 1e-8)

    def test_diagonal_covariance_columns(self, tmp_path: Path) -> None:
        path = tmp_path / "poses.csv"
        path.write_text(_pose_row(0, ",1e-6,2e-6,3e-6,1e-4,2e-4,3e-4") + "\n")
        record = PoseReader(path).records[0]
        assert np.allclose(np.diag(record.position_covariance), [1e-6, 2e-6, 3e-6])
        assert np.allclose(np.diag(record.orientation_covariance), [1e-4, 2e-4, 3e-4])

    def test_full_covariance_position_block_first(self, tmp_path: Path) -> None:
        covariance = np.diag([1.0, 2.0, 3.0, 4.0, 5.0, 6.0]) * 1e-6
        covariance[0, 1] = covariance[1, 0] = 0.5e-6
        covariance[3, 4] = covariance[4, 3] = 1e-6
        extra = "," + ",".join(f"{v:.17g}" for v in covariance.flatten())

        path = tmp_path / "poses.csv"
        path.write_text(_pose_row(0, extra) + "\n")
        reader = PoseReader(path)
        record = reader.records[0]

        assert reader.num_with_covariance == 1
        assert np.allclose(record.position_covariance, covariance[0:3, 0:3])
        assert np.allclose(record.orientation_covariance, covariance[3:6, 3:6])

    def test_forced_manual_sigmas_ignore_file_covariance(self, tmp_path: Path) -> None:
        path = tmp_path / "poses.csv"
        path.write_text(_pose_row(0, ",1,1,1,1,1,1") + "\n")
        vicon = ViconConfig(use_manual_sigmas=True)
        record = PoseReader(path, vicon).records[0]
        assert np.allclose(record.orientation_covariance, vicon.orientation_covariance)

    def test_other_column_counts_read_as_plain_pose(self, tmp_path: Path) -> None:
        path = tmp_path / "poses.csv"
        path.write_text(_pose_row(0, ",0.1,0.2,0.3,0,0,0,0,0,0") + "\n")
        reader = PoseReader(path)
        assert len(reader) == 1
        assert reader.num_with_covariance == 0

    def test_skips_unparsable_lines(self, tmp_path: Path) -> None:
        path = tmp_path / "poses.csv"
        path.write_text("\n".join([_pose_row(0), "1,2,3", "x,0,0,0,1,0,0,0", _pose_row(1)]))
        reader = PoseReader(path)
        assert len(reader) == 2
        assert reader.num_skipped_lines == 2

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            PoseReader(tmp_path / "missing.csv")


class TestCameraTimestampReader:
    def test_timestamps(self, mock_dataset: Path) -> None:
        reader = CameraTimestampReader(mock_dataset)
        assert len(reader) == 21
        assert reader.timestamps[0] == T0
        assert len(reader.timestamps_between(T0, T0 + 4 * CAMERA_PERIOD_NS)) == 5

    def test_missing_camera(self, mock_dataset: Path) -> None:
        with pytest.raises(FileNotFoundError, match="cam1/data.csv"):
            CameraTimestampReader(mock_dataset, "cam1")


class TestDatasetLoader:
    def test_load_full_recording(self, mock_dataset: Path) -> None:
        dataset = DatasetLoader(mock_dataset).load()

        assert dataset.origin_ns == T0
        assert dataset.imu_stats.accepted == 201
        assert dataset.imu_stats.malformed == 1
        assert dataset.imu_stats.out_of_order == 1
        assert dataset.pose_stats.accepted == 101
        assert dataset.num_camera_frames == 21
        assert dataset.query_timestamps[0] == 0.0
        assert np.isclose(dataset.query_timestamps[-1], 1.0)
        assert np.isclose(dataset.preintegrator.end_time, 1.0)
        assert not dataset.preintegrator.is_frozen

    def test_window(self, mock_dataset: Path) -> None:
        config = Vicon2GTConfig.from_dict({"dataset": {"start_offset": 0.5, "duration": 0.2}})
        loader = DatasetLoader(mock_dataset, config)
        start_ns, end_ns = loader.window()
        assert start_ns == T0 + 500_000_000
        assert end_ns == T0 + 700_000_000

        dataset = loader.load()
        assert dataset.origin_ns == start_ns
        assert dataset.imu_stats.accepted == 41
        assert dataset.pose_stats.accepted == 21
        assert dataset.num_camera_frames == 5
        assert np.allclose(dataset.query_timestamps, [0.0, 0.05, 0.1, 0.15, 0.2])

    def test_sensor_noise_opt_in(self, mock_dataset: Path) -> None:
        default = DatasetLoader(mock_dataset).load()
        assert default.preintegrator.noise == Vicon2GTConfig().noise

        config = Vicon2GTConfig.from_dict({"dataset": {"use_sensor_noise": True}})
        dataset = DatasetLoader(mock_dataset, config).load()
        assert dataset.preintegrator.noise.gyroscope_noise_density == 1.0e-4

    def test_window_past_end_is_empty(self, mock_dataset: Path) -> None:
        config = Vicon2GTConfig.from_dict({"dataset": {"start_offset": 5.0}})
        with pytest.raises(EmptyStream, match="IMU"):
            DatasetLoader(mock_dataset, config).load()

    def test_no_poses_is_empty(self, mock_dataset: Path) -> None:
        (mock_dataset / "vicon0" / "data.csv").write_text("#timestamp\n")
        with pytest.raises(EmptyStream, match="poses"):
            DatasetLoader(mock_dataset).load()

    def test_missing_dataset(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            DatasetLoader(tmp_path / "nowhere")

    def test_time_conversion(self) -> None:
        t = ns_to_seconds(T0 + 1_234_567_891, T0)
        assert np.isclose(t, 1.234567891)
        assert seconds_to_ns(t, T0) == T0 + 1_234_567_891


class TestResultWriter:
    @pytest.fixture
    def records(self) -> list[StateRecord]:
        return [
            StateRecord(
                timestamp=0.1 * k,
                position=np.array([1.0, 2.0, 3.0]) * k,
                velocity=np.array([0.1, 0.0, -0.1]),
                orientation=np.array([1.0, 0.0, 0.0, 0.0]),
                gyro_bias=np.array([1e-3, 0.0, 0.0]),
                accel_bias=np.zeros(3),
            )
            for k in range(3)
        ]

    @pytest.fixture
    def diagnostics(self) -> SolveDiagnostics:
        return SolveDiagnostics(
            status=SolveStatus.SOLVED,
            initial_cost=10.0,
            final_cost=0.5,
            iterations=12,
            function_evaluations=13,
            relinearizations=1,
            message="`xtol` termination condition is satisfied.",
            num_states=3,
            num_motion_edges=2,
            num_pose_edges=3,
            num_excluded_timestamps=0,
            calibration_covariance=np.eye(7) * 1e-6,
            calibration_labels=[
                "rot_x", "rot_y", "rot_z", "trans_x", "trans_y", "trans_z", "time_offset"
            ],
        )

    def test_write_states(self, tmp_path: Path, records) -> None:
        path = ResultWriter(origin_ns=T0).write_states(tmp_path / "out" / "gt.csv", records)
        lines = path.read_text().splitlines()

        assert lines[0] == STATES_HEADER
        assert len(lines) == 4
        fields = lines[2].split(",")
        assert len(fields) == 17
        assert int(fields[0]) == T0 + 100_000_000
        assert np.allclose([float(v) for v in fields[1:4]], [1.0, 2.0, 3.0])
        assert np.allclose([float(v) for v in fields[4:8]], [1.0, 0.0, 0.0, 0.0])
        assert float(fields[11]) == 0.001

    def test_write_info(self, tmp_path: Path, diagnostics) -> None:
        calibration = CalibrationParameters(
            extrinsic_translation=np.array([0.05, -0.02, 0.1]), time_offset=0.02
        )
        path = ResultWriter().write_info(tmp_path / "info.txt", calibration, diagnostics)
        text = path.read_text()

        assert "R_BtoI:" in text
        assert "p_BinI (m): [0.050000000, -0.020000000, 0.100000000]" in text
        assert "time offset t_vicon - t_imu (s): 0.020000000" in text
        assert "time_offset: 1.000000e-03" in text
        assert "status: SOLVED" in text
        assert "relinearizations: 1" in text
