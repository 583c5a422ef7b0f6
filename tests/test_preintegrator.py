"""Tests for the IMU preintegrator."""

import numpy as np
import pytest

from vicon2gt.config import NoiseConfig
from vicon2gt.errors import BufferFrozen, InsufficientData, OutOfOrderSample
from vicon2gt.frontend.pose import log_so3
from vicon2gt.frontend.preintegrator import InertialSample, Preintegrator

from conftest import GRAVITY, SyntheticRig


class TestIngestion:
    """Tests for feeding samples."""

    def test_accepts_increasing_timestamps(self) -> None:
        p = Preintegrator()
        assert p.feed_inertial(0.0, np.zeros(3), np.zeros(3))
        assert p.feed_inertial(0.01, np.zeros(3), np.zeros(3))
        assert len(p) == 2
        assert p.stats.accepted == 2

    def test_drops_out_of_order_and_duplicates(self) -> None:
        p = Preintegrator()
        p.feed_inertial(0.0, np.zeros(3), np.zeros(3))
        p.feed_inertial(0.02, np.zeros(3), np.zeros(3))
        assert not p.feed_inertial(0.01, np.zeros(3), np.zeros(3))
        assert not p.feed_inertial(0.02, np.zeros(3), np.zeros(3))
        assert p.stats.out_of_order == 2
        assert p.stats.accepted == 2
        assert np.array_equal(p.timestamps, [0.0, 0.02])
        assert isinstance(p.stats.last_out_of_order, OutOfOrderSample)
        assert "t=0.020000000" in str(p.stats.last_out_of_order)

    def test_drops_malformed(self) -> None:
        p = Preintegrator()
        assert not p.feed(InertialSample(0.0, [np.nan, 0, 0], [0, 0, 9.81]))
        assert not p.feed(InertialSample(np.inf, [0, 0, 0], [0, 0, 9.81]))
        assert p.stats.malformed == 2
        assert p.stats.total == 2
        assert len(p) == 0

    def test_feed_after_freeze_raises(self) -> None:
        p = Preintegrator()
        p.freeze()
        assert p.is_frozen
        with pytest.raises(BufferFrozen):
            p.feed_inertial(0.0, np.zeros(3), np.zeros(3))


class TestRelativeMotion:
    """Tests for preintegration between two instants."""

    @pytest.mark.parametrize("t0, t1", [(0.0, 1.0), (0.1234, 0.5678), (0.3, 0.305)])
    def test_stationary_body(self, stationary_preintegrator: Preintegrator, t0, t1) -> None:
        """A stationary level IMU integrates to identity and zero deltas."""
        motion = stationary_preintegrator.relative_motion(t0, t1)

        assert np.allclose(motion.delta_rotation, np.eye(3), atol=1e-12)
        dv, dp = motion.gravity_compensated(GRAVITY)
        assert np.allclose(dv, 0.0, atol=1e-12)
        assert np.allclose(dp, 0.0, atol=1e-12)
        assert np.isclose(motion.dt, t1 - t0)

    def test_covariance_symmetric_positive_definite(
        self, stationary_preintegrator: Preintegrator
    ) -> None:
        motion = stationary_preintegrator.relative_motion(0.0, 0.1)
        P = motion.covariance
        assert P.shape == (15, 15)
        assert np.allclose(P, P.T)
        assert np.linalg.eigvalsh(P).min() > 0

    def test_covariance_grows_with_interval(
        self, stationary_preintegrator: Preintegrator
    ) -> None:
        short = stationary_preintegrator.relative_motion(0.0, 0.1).covariance
        long = stationary_preintegrator.relative_motion(0.0, 0.5).covariance
        assert np.all(np.diag(long) > np.diag(short))

    def test_gyro_noise_density_sets_rotation_variance(self) -> None:
        """Rotation variance of a 1 s stationary run is close to σ_g² T."""
        noise = NoiseConfig()
        p = Preintegrator(noise)
        for k in range(101):
            p.feed_inertial(k / 100.0, np.zeros(3), -GRAVITY)
        P = p.relative_motion(0.0, 1.0).covariance
        # Bias random walk adds a small T³ term on top
        assert np.allclose(np.diag(P)[0:3], noise.gyroscope_noise_density**2, rtol=1e-2)

    @pytest.mark.parametrize("t0, t1", [(-0.1, 0.5), (0.5, 1.1), (2.0, 3.0)])
    def test_outside_span_raises(self, stationary_preintegrator: Preintegrator, t0, t1) -> None:
        with pytest.raises(InsufficientData, match="not bracketed"):
            stationary_preintegrator.relative_motion(t0, t1)

    @pytest.mark.parametrize("t0, t1", [(0.5, 0.5), (0.6, 0.5)])
    def test_empty_interval_raises(self, stationary_preintegrator: Preintegrator, t0, t1) -> None:
        with pytest.raises(InsufficientData, match="Empty interval"):
            stationary_preintegrator.relative_motion(t0, t1)

    def test_constant_rotation_rate(self) -> None:
        """A constant body rate integrates to Exp(ω T) exactly."""
        omega = np.array([0.1, -0.3, 0.5])
        p = Preintegrator()
        for k in range(201):
            p.feed_inertial(k / 200.0, omega, np.zeros(3))
        motion = p.relative_motion(0.1, 0.9)
        assert np.allclose(log_so3(motion.delta_rotation), omega * 0.8, atol=1e-12)

    def test_matches_true_motion(self, rig: SyntheticRig) -> None:
        """Deltas of the synthetic rig agree with its closed-form trajectory."""
        p = Preintegrator()
        for t, w, a in rig.imu_samples():
            p.feed_inertial(t, w, a)

        t0, t1 = 1.0, 1.1
        motion = p.relative_motion(t0, t1)
        R0 = rig.rotation(t0)
        dT = t1 - t0

        expected_dR = R0.T @ rig.rotation(t1)
        expected_dv = R0.T @ (rig.velocity(t1) - rig.velocity(t0) - GRAVITY * dT)
        expected_dp = R0.T @ (
            rig.position(t1) - rig.position(t0) - rig.velocity(t0) * dT - 0.5 * GRAVITY * dT**2
        )

        assert np.linalg.norm(log_so3(expected_dR.T @ motion.delta_rotation)) < 1e-5
        assert np.allclose(motion.delta_velocity, expected_dv, atol=1e-4)
        assert np.allclose(motion.delta_position, expected_dp, atol=1e-5)


class TestBiasCorrection:
    """Tests for the first-order bias update."""

    @pytest.fixture
    def rotating(self) -> Preintegrator:
        p = Preintegrator()
        for k in range(201):
            t = k / 200.0
            w = np.array([0.3 * np.sin(2 * t), 0.2, -0.1 * t])
            a = np.array([0.5 * np.cos(3 * t), 0.1, 9.81])
            p.feed_inertial(t, w, a)
        return p

    def test_zero_bias_change_returns_integrated_deltas(self, rotating: Preintegrator) -> None:
        motion = rotating.relative_motion(0.0, 0.2)
        dR, dv, dp = motion.corrected(np.zeros(3), np.zeros(3))
        assert np.allclose(dR, motion.delta_rotation)
        assert np.allclose(dv, motion.delta_velocity)
        assert np.allclose(dp, motion.delta_position)

    def test_correction_matches_reintegration(self, rotating: Preintegrator) -> None:
        """A small bias change corrected to first order matches re-integrating."""
        bg = np.array([1e-3, -2e-3, 1.5e-3])
        ba = np.array([-2e-2, 1e-2, 3e-2])

        motion = rotating.relative_motion(0.0, 0.2)
        dR, dv, dp = motion.corrected(bg, ba)
        exact = rotating.relative_motion(0.0, 0.2, gyro_bias=bg, accel_bias=ba)

        # Corrections are many times larger than the remaining error
        assert np.linalg.norm(log_so3(exact.delta_rotation.T @ dR)) < 1e-6
        assert np.linalg.norm(dv - exact.delta_velocity) < 5e-5
        assert np.linalg.norm(dp - exact.delta_position) < 1e-5
        assert np.linalg.norm(dv - motion.delta_velocity) > 1e-3

    def test_bias_shift(self, rotating: Preintegrator) -> None:
        motion = rotating.relative_motion(0.0, 0.2)
        gyro_shift, accel_shift = motion.bias_shift(np.array([0.0, 3e-3, 4e-3]), np.zeros(3))
        assert np.isclose(gyro_shift, 5e-3)
        assert accel_shift == 0.0

    def test_integrated_bias_is_recorded(self, rotating: Preintegrator) -> None:
        bg = np.array([1e-3, 0.0, 0.0])
        motion = rotating.relative_motion(0.0, 0.2, gyro_bias=bg)
        assert np.array_equal(motion.gyro_bias, bg)
        assert np.array_equal(motion.accel_bias, np.zeros(3))
        # Removing a gyro bias changes the rotation
        assert not np.allclose(
            motion.delta_rotation, rotating.relative_motion(0.0, 0.2).delta_rotation
        )
