"""Configuration for ingestion, noise models and the graph solver.

All tunables live in plain dataclasses with defaults matching the EuRoC
VI-sensor and a Vicon system. A YAML file can override any subset:

    noise:
      gyroscope_noise_density: 1.6968e-04
    vicon:
      use_manual_sigmas: true
      sigmas: [1.0e-4, 1.0e-4, 1.0e-4, 1.0e-5, 1.0e-5, 1.0e-5]
    solver:
      gauge_prior: first_state
      estimate_time_offset: true
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import yaml

from .errors import ConfigError


class GaugePrior(Enum):
    """Prior used to pin otherwise weakly constrained directions."""

    FIRST_STATE = "first_state"  # Anchor first state orientation and position
    CALIBRATION_ROTATION = "calibration_rotation"  # Anchor extrinsic rotation
    NONE = "none"


@dataclass
class NoiseConfig:
    """IMU noise densities.

    Attributes:
        gyroscope_noise_density: Gyroscope white noise (rad/s/√Hz)
        gyroscope_random_walk: Gyroscope bias random walk (rad/s²/√Hz)
        accelerometer_noise_density: Accelerometer white noise (m/s²/√Hz)
        accelerometer_random_walk: Accelerometer bias random walk (m/s³/√Hz)
    """

    gyroscope_noise_density: float = 1.6968e-04
    gyroscope_random_walk: float = 1.9393e-05
    accelerometer_noise_density: float = 2.0000e-3
    accelerometer_random_walk: float = 3.0000e-3

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not value > 0:
                raise ConfigError(f"noise.{f.name} must be positive, got {value}")


@dataclass
class ViconConfig:
    """Motion-capture measurement noise.

    Attributes:
        sigmas: Standard deviations (rx, ry, rz, px, py, pz) in rad and m,
            used when the pose stream carries no covariance
        use_manual_sigmas: Always use `sigmas`, ignoring any covariance
            carried by the pose stream
    """

    sigmas: list[float] = field(
        default_factory=lambda: [1e-4, 1e-4, 1e-4, 1e-5, 1e-5, 1e-5]
    )
    use_manual_sigmas: bool = False

    def validate(self) -> None:
        if len(self.sigmas) != 6:
            raise ConfigError(f"vicon.sigmas needs 6 values, got {len(self.sigmas)}")
        if any(not s > 0 for s in self.sigmas):
            raise ConfigError(f"vicon.sigmas must be positive, got {self.sigmas}")

    @property
    def orientation_covariance(self) -> np.ndarray:
        """3x3 orientation covariance built from the manual sigmas."""
        return np.diag(np.square(self.sigmas[0:3]))

    @property
    def position_covariance(self) -> np.ndarray:
        """3x3 position covariance built from the manual sigmas."""
        return np.diag(np.square(self.sigmas[3:6]))


@dataclass
class SolverConfig:
    """Configuration for the calibration graph solver.

    Attributes:
        min_states: Minimum number of admitted states required to solve
        max_iterations: Linearization cap shared by all relinearization rounds
        ftol: Relative cost-decrease tolerance
        xtol: Relative step tolerance
        gtol: Gradient max-norm tolerance
        gravity_magnitude: Fixed gravity magnitude in m/s²
        initial_gravity_direction: Initial gravity direction in the world frame
        estimate_gravity_direction: Refine the gravity direction (2 DOF)
        estimate_time_offset: Optimize the time offset, otherwise keep it fixed
        time_offset_bound: Max deviation of the time offset from its initial value (s)
        gauge_prior: Which prior pins the gauge directions
        prior_rotation_sigma: Prior standard deviation for rotation (rad)
        prior_position_sigma: Prior standard deviation for position (m)
        max_relinearizations: Re-preintegration rounds after bias drift
        relinearize_gyro_bias: Gyro bias change (rad/s) that triggers re-preintegration
        relinearize_accel_bias: Accel bias change (m/s²) that triggers re-preintegration
    """

    min_states: int = 10
    max_iterations: int = 100
    ftol: float = 1e-10
    xtol: float = 1e-10
    gtol: float = 1e-10
    gravity_magnitude: float = 9.81
    initial_gravity_direction: list[float] = field(
        default_factory=lambda: [0.0, 0.0, -1.0]
    )
    estimate_gravity_direction: bool = True
    estimate_time_offset: bool = True
    time_offset_bound: float = 0.05
    gauge_prior: GaugePrior = GaugePrior.FIRST_STATE
    prior_rotation_sigma: float = 1.0
    prior_position_sigma: float = 1.0
    max_relinearizations: int = 3
    relinearize_gyro_bias: float = 1e-3
    relinearize_accel_bias: float = 1e-2

    def validate(self) -> None:
        if self.min_states < 2:
            raise ConfigError(f"solver.min_states must be >= 2, got {self.min_states}")
        if self.max_iterations < 1:
            raise ConfigError("solver.max_iterations must be >= 1")
        if not self.gravity_magnitude > 0:
            raise ConfigError("solver.gravity_magnitude must be positive")
        if len(self.initial_gravity_direction) != 3 or not np.linalg.norm(
            self.initial_gravity_direction
        ) > 0:
            raise ConfigError("solver.initial_gravity_direction must be a nonzero 3-vector")
        if self.time_offset_bound < 0:
            raise ConfigError("solver.time_offset_bound must be >= 0")
        if self.estimate_time_offset and self.time_offset_bound == 0:
            raise ConfigError(
                "solver.time_offset_bound must be positive when estimating the time offset"
            )
        if not (self.prior_rotation_sigma > 0 and self.prior_position_sigma > 0):
            raise ConfigError("solver prior sigmas must be positive")
        if self.max_relinearizations < 0:
            raise ConfigError("solver.max_relinearizations must be >= 0")


@dataclass
class DatasetConfig:
    """Which part of a recorded dataset to load.

    Attributes:
        start_offset: Seconds to skip from the beginning of the recording
        duration: Seconds to load after the start offset, negative for all
        pose_file: Pose CSV path relative to the dataset directory
        camera: Camera directory whose frame times become query timestamps
        use_sensor_noise: Take IMU noise densities from imu0/sensor.yaml when
            present instead of the noise section
    """

    start_offset: float = 0.0
    duration: float = -1.0
    pose_file: str = "vicon0/data.csv"
    camera: str = "cam0"
    use_sensor_noise: bool = False

    def validate(self) -> None:
        if self.start_offset < 0:
            raise ConfigError("dataset.start_offset must be >= 0")


@dataclass
class OutputConfig:
    """Result file locations."""

    states_path: str = "gt_states.csv"
    info_path: str = "vicon2gt_info.txt"


@dataclass
class Vicon2GTConfig:
    """Top-level configuration."""

    noise: NoiseConfig = field(default_factory=NoiseConfig)
    vicon: ViconConfig = field(default_factory=ViconConfig)
    solver: SolverConfig = field(default_factory=SolverConfig)
    dataset: DatasetConfig = field(default_factory=DatasetConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def validate(self) -> None:
        """Check all sections.

        Raises:
            ConfigError: If any value is invalid
        """
        self.noise.validate()
        self.vicon.validate()
        self.solver.validate()
        self.dataset.validate()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> Vicon2GTConfig:
        """Build a configuration from nested dictionaries.

        Args:
            data: Mapping of section name to a mapping of overrides

        Returns:
            Validated configuration

        Raises:
            ConfigError: On unknown sections, unknown keys or invalid values
        """
        data = data or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration must be a mapping, got {type(data).__name__}")

        config = cls()
        sections = {f.name for f in fields(cls)}
        for section, values in data.items():
            if section not in sections:
                raise ConfigError(f"Unknown configuration section: {section}")
            if values is None:
                continue
            if not isinstance(values, dict):
                raise ConfigError(f"Section '{section}' must be a mapping")
            _apply_overrides(getattr(config, section), section, values)

        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: str | Path) -> Vicon2GTConfig:
        """Load a configuration file.

        Args:
            path: Path to a YAML file

        Returns:
            Validated configuration
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, "r") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Could not parse {path}: {e}") from e

        return cls.from_dict(data)


def _apply_overrides(target: Any, section: str, values: dict[str, Any]) -> None:
    known = {f.name: f for f in fields(target)}
    for key, value in values.items():
        if key not in known:
            raise ConfigError(f"Unknown key '{key}' in section '{section}'")
        if key == "gauge_prior":
            try:
                value = GaugePrior(value)
            except ValueError as e:
                choices = ", ".join(p.value for p in GaugePrior)
                raise ConfigError(
                    f"solver.gauge_prior must be one of {choices}, got {value!r}"
                ) from e
        else:
            value = _coerce(getattr(target, key), value, f"{section}.{key}")
        setattr(target, key, value)


def _coerce(default: Any, value: Any, name: str) -> Any:
    # PyYAML reads exponents without a dot ("1e-4") as strings
    try:
        if isinstance(default, bool):
            if not isinstance(value, bool):
                raise ValueError(value)
            return value
        if isinstance(default, int):
            if isinstance(value, bool) or float(value) != int(float(value)):
                raise ValueError(value)
            return int(float(value))
        if isinstance(default, float):
            if isinstance(value, bool):
                raise ValueError(value)
            return float(value)
        if isinstance(default, list):
            return [float(v) for v in value]
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {value!r}") from e
    return value
