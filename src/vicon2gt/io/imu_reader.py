"""EuRoC IMU data reader.

Loads raw IMU rows from imu0/data.csv and the noise densities from
imu0/sensor.yaml. Timestamps stay in integer nanoseconds; conversion to
seconds happens once a common time origin is known (see DatasetLoader).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import yaml

from ..config import NoiseConfig
from ..errors import ConfigError

logger = logging.getLogger(__name__)

_NOISE_KEYS = (
    "gyroscope_noise_density",
    "gyroscope_random_walk",
    "accelerometer_noise_density",
    "accelerometer_random_walk",
)


@dataclass
class IMUMeasurement:
    """Single IMU row.

    Attributes:
        timestamp_ns: Measurement timestamp in nanoseconds
        gyroscope: Angular velocity (wx, wy, wz) in rad/s
        accelerometer: Specific force (ax, ay, az) in m/s²
    """

    timestamp_ns: int
    gyroscope: np.ndarray  # (3,) rad/s
    accelerometer: np.ndarray  # (3,) m/s²

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape."""
        self.gyroscope = np.asarray(self.gyroscope, dtype=np.float64).flatten()
        self.accelerometer = np.asarray(self.accelerometer, dtype=np.float64).flatten()


class IMUReader:
    """Reader for EuRoC IMU data.

    Rows are kept in file order, including any out-of-order or non-finite
    ones, so the Preintegrator's drop counters see the stream as recorded.
    Lines that cannot be parsed at all are skipped and counted.

    Example usage:
        reader = IMUReader("data/euroc/V1_01_easy/mav0")
        for m in reader.measurements_between(t_start_ns, t_end_ns):
            preintegrator.feed_inertial(...)
    """

    def __init__(self, dataset_path: str | Path) -> None:
        """Initialize IMU reader.

        Args:
            dataset_path: Path to the EuRoC mav0 directory

        Raises:
            FileNotFoundError: If imu0/data.csv does not exist
            ConfigError: If imu0/sensor.yaml exists but cannot be parsed
        """
        self._dataset_path = Path(dataset_path)
        self._imu_data_path = self._dataset_path / "imu0" / "data.csv"
        self._imu_sensor_path = self._dataset_path / "imu0" / "sensor.yaml"

        if not self._imu_data_path.exists():
            raise FileNotFoundError(
                f"IMU data not found: {self._imu_data_path}\n"
                f"Expected EuRoC format with imu0/data.csv"
            )

        self._noise = self._load_noise()
        self._measurements: list[IMUMeasurement] = []
        self._num_skipped_lines = 0
        self._load_measurements()

        logger.info(
            "Loaded %d IMU rows from %s (%d unparsable lines skipped)",
            len(self._measurements),
            self._imu_data_path,
            self._num_skipped_lines,
        )

    def _load_noise(self) -> NoiseConfig | None:
        """Read noise densities from sensor.yaml, None when the file is absent."""
        if not self._imu_sensor_path.exists():
            return None

        with open(self._imu_sensor_path, "r") as f:
            try:
                content = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {self._imu_sensor_path}: {e}") from e

        if not isinstance(content, dict):
            raise ConfigError(f"{self._imu_sensor_path} is not a mapping")

        defaults = NoiseConfig()
        values = {}
        for key in _NOISE_KEYS:
            try:
                values[key] = float(content.get(key, getattr(defaults, key)))
            except (TypeError, ValueError) as e:
                raise ConfigError(
                    f"Invalid {key} in {self._imu_sensor_path}: {content.get(key)!r}"
                ) from e

        noise = NoiseConfig(**values)
        noise.validate()
        return noise

    def _load_measurements(self) -> None:
        """Load all IMU rows from the CSV file."""
        with open(self._imu_data_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                parts = line.split(",")
                if len(parts) < 7:
                    self._num_skipped_lines += 1
                    continue

                try:
                    values = [float(p) for p in parts[1:7]]
                    measurement = IMUMeasurement(
                        timestamp_ns=int(parts[0]),
                        gyroscope=np.array(values[0:3]),
                        accelerometer=np.array(values[3:6]),
                    )
                except ValueError:
                    self._num_skipped_lines += 1
                    continue

                self._measurements.append(measurement)

        self._sorted_timestamps = sorted(m.timestamp_ns for m in self._measurements)

    def measurements_between(
        self, start_ns: int, end_ns: int | None = None
    ) -> list[IMUMeasurement]:
        """Rows with start_ns <= timestamp_ns <= end_ns, in file order.

        Args:
            start_ns: Window start in nanoseconds (inclusive)
            end_ns: Window end in nanoseconds (inclusive), None for no limit

        Returns:
            Matching IMUMeasurement objects
        """
        return [
            m
            for m in self._measurements
            if m.timestamp_ns >= start_ns and (end_ns is None or m.timestamp_ns <= end_ns)
        ]

    @property
    def measurements(self) -> list[IMUMeasurement]:
        """Return all rows in file order."""
        return list(self._measurements)

    @property
    def noise(self) -> NoiseConfig | None:
        """Noise densities from sensor.yaml, None if the file is absent."""
        return self._noise

    @property
    def num_skipped_lines(self) -> int:
        """Number of lines that could not be parsed."""
        return self._num_skipped_lines

    @property
    def start_timestamp(self) -> int | None:
        """Earliest IMU timestamp in nanoseconds."""
        return self._sorted_timestamps[0] if self._sorted_timestamps else None

    @property
    def end_timestamp(self) -> int | None:
        """Latest IMU timestamp in nanoseconds."""
        return self._sorted_timestamps[-1] if self._sorted_timestamps else None

    def __len__(self) -> int:
        """Number of IMU rows."""
        return len(self._measurements)
