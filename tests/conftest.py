"""Shared fixtures: a synthetic IMU + motion-capture rig with known calibration."""

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import pytest

from vicon2gt.config import NoiseConfig
from vicon2gt.frontend.interpolator import Interpolator
from vicon2gt.frontend.pose import exp_so3, rotation_to_quaternion
from vicon2gt.frontend.preintegrator import Preintegrator

GRAVITY = np.array([0.0, 0.0, -9.81])


def _rot_x(a: float) -> np.ndarray:
    c, s = np.cos(a), np.sin(a)
    return np.array([[1, 0, 0], [0, c, -s], [0, s, c]])


def _rot_y(a: float) -> np.ndarray:
    c, s = np.cos(a), np.sin(a)
    return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])


def _rot_z(a: float) -> np.ndarray:
    c, s = np.cos(a), np.sin(a)
    return np.array([[c, -s, 0], [s, c, 0], [0, 0, 1]])


@dataclass
class SyntheticRig:
    """Noise-free rig moving with constant linear acceleration while rotating.

    The IMU orientation is R_WI(t) = Rz(α) Ry(β) Rx(γ) with sinusoidal
    angles, so the body rates are known in closed form. Motion-capture
    stamps are ahead of the inertial clock by `time_offset`. The IMU readings
    carry constant biases (zero by default).

    Times are generated from integer tick counts so IMU, pose and default
    query times fall on exact multiples of the IMU period.
    """

    duration_ticks: int = 600  # IMU ticks (100 Hz)
    imu_rate: int = 100
    pose_every: int = 10  # one pose per 10 IMU ticks (10 Hz)
    offset_ticks: int = 2  # time offset in IMU ticks
    extrinsic_rotation: np.ndarray = field(
        default_factory=lambda: exp_so3(np.array([0.1, -0.2, 0.3]))
    )
    extrinsic_translation: np.ndarray = field(
        default_factory=lambda: np.array([0.05, -0.02, 0.1])
    )
    initial_position: np.ndarray = field(default_factory=lambda: np.array([1.0, 0.5, 1.2]))
    initial_velocity: np.ndarray = field(default_factory=lambda: np.array([0.2, -0.1, 0.05]))
    acceleration: np.ndarray = field(default_factory=lambda: np.array([0.3, 0.2, -0.1]))
    gyro_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))
    accel_bias: np.ndarray = field(default_factory=lambda: np.zeros(3))

    amplitudes = (0.5, 0.3, 0.4)
    frequencies = (1.1, 1.7, 2.3)

    @property
    def time_offset(self) -> float:
        return self.offset_ticks / self.imu_rate

    def _angles(self, t: float) -> tuple[np.ndarray, np.ndarray]:
        a = np.array(self.amplitudes)
        w = np.array(self.frequencies)
        return a * np.sin(w * t), a * w * np.cos(w * t)

    def rotation(self, t: float) -> np.ndarray:
        (alpha, beta, gamma), _ = self._angles(t)
        return _rot_z(alpha) @ _rot_y(beta) @ _rot_x(gamma)

    def position(self, t: float) -> np.ndarray:
        return self.initial_position + self.initial_velocity * t + 0.5 * self.acceleration * t * t

    def velocity(self, t: float) -> np.ndarray:
        return self.initial_velocity + self.acceleration * t

    def angular_velocity(self, t: float) -> np.ndarray:
        """Body-frame angular rate of R_WI(t)."""
        (_, beta, gamma), (dalpha, dbeta, dgamma) = self._angles(t)
        Rx = _rot_x(gamma)
        Ry = _rot_y(beta)
        return (
            Rx.T @ Ry.T @ np.array([0.0, 0.0, dalpha])
            + Rx.T @ np.array([0.0, dbeta, 0.0])
            + np.array([dgamma, 0.0, 0.0])
        )

    def specific_force(self, t: float) -> np.ndarray:
        return self.rotation(t).T @ (self.acceleration - GRAVITY)

    def body_pose(self, t: float) -> tuple[np.ndarray, np.ndarray]:
        """Body orientation quaternion (w, x, y, z) and position at inertial time t."""
        R_wi = self.rotation(t)
        R_wb = R_wi @ self.extrinsic_rotation
        p_b = self.position(t) + R_wi @ self.extrinsic_translation
        return rotation_to_quaternion(R_wb), p_b

    def imu_samples(self) -> list[tuple[float, np.ndarray, np.ndarray]]:
        samples = []
        for k in range(self.duration_ticks + 1):
            t = k / self.imu_rate
            samples.append(
                (
                    t,
                    self.angular_velocity(t) + self.gyro_bias,
                    self.specific_force(t) + self.accel_bias,
                )
            )
        return samples

    def pose_samples(self) -> list[tuple[float, np.ndarray, np.ndarray]]:
        """Motion-capture samples stamped on the motion-capture clock."""
        samples = []
        for k in range(0, self.duration_ticks + 1, self.pose_every):
            stamp = k / self.imu_rate
            q, p = self.body_pose((k - self.offset_ticks) / self.imu_rate)
            samples.append((stamp, q, p))
        return samples

    def query_timestamps(self) -> list[float]:
        """Inertial times whose offset pose query lands on a pose sample."""
        return [
            (k - self.offset_ticks) / self.imu_rate
            for k in range(0, self.duration_ticks + 1, self.pose_every)
            if k - self.offset_ticks >= 0
        ]

    def unaligned_query_timestamps(self, shift: float = 0.037) -> list[float]:
        """Camera-like inertial times that never land on a pose sample."""
        period = self.pose_every / self.imu_rate
        return [
            t + shift
            for t in self.query_timestamps()
            if t + shift + period < self.duration_ticks / self.imu_rate
        ]

    def feed(
        self,
        preintegrator: Preintegrator,
        interpolator: Interpolator,
        pose_sigmas: tuple[float, float] = (1e-4, 1e-5),
    ) -> None:
        rot_cov = np.eye(3) * pose_sigmas[0] ** 2
        pos_cov = np.eye(3) * pose_sigmas[1] ** 2
        for t, w, a in self.imu_samples():
            preintegrator.feed_inertial(t, w, a)
        for t, q, p in self.pose_samples():
            interpolator.feed_pose(t, q, p, rot_cov, pos_cov)


@pytest.fixture
def rig() -> SyntheticRig:
    """Default synthetic rig (6 s)."""
    return SyntheticRig()


@pytest.fixture
def short_rig() -> SyntheticRig:
    """Shorter rig for tests that only need a small graph (2 s)."""
    return SyntheticRig(duration_ticks=200)


@pytest.fixture
def noise() -> NoiseConfig:
    return NoiseConfig()


@pytest.fixture
def stationary_preintegrator(noise: NoiseConfig) -> Preintegrator:
    """1 s of a perfectly stationary, level IMU at 200 Hz."""
    preintegrator = Preintegrator(noise)
    for k in range(201):
        preintegrator.feed_inertial(k / 200.0, np.zeros(3), -GRAVITY)
    return preintegrator


@pytest.fixture
def two_pose_interpolator() -> Interpolator:
    """Two poses 1 s apart, rotated 90 degrees about z, with different covariances."""
    interpolator = Interpolator()
    interpolator.feed_pose(
        0.0,
        np.array([1.0, 0.0, 0.0, 0.0]),
        np.zeros(3),
        np.diag([1e-4, 2e-4, 3e-4]),
        np.diag([1e-6, 1e-6, 1e-6]),
    )
    interpolator.feed_pose(
        1.0,
        np.array([np.cos(np.pi / 4), 0.0, 0.0, np.sin(np.pi / 4)]),
        np.array([1.0, 2.0, 3.0]),
        np.diag([4e-4, 4e-4, 4e-4]),
        np.diag([9e-6, 4e-6, 1e-6]),
    )
    return interpolator
