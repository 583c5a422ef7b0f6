#!/usr/bin/env python3
"""Demo of the calibration solver on a simulated IMU + motion-capture rig.

Simulates a body swinging on all three axes while accelerating, with a
known body-to-IMU extrinsic and a known motion-capture clock offset. The
solver starts from a perturbed guess and the recovered calibration is
compared against the truth.

Usage:
    python examples/synthetic_demo.py
    python examples/synthetic_demo.py --visualize
"""

import argparse
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vicon2gt import CalibrationParameters, GraphSolver, Interpolator, Preintegrator, SolverConfig
from vicon2gt.backend.state import rotation_error
from vicon2gt.frontend.pose import exp_so3, log_so3, rotation_to_quaternion
from vicon2gt.io import format_report

GRAVITY = np.array([0.0, 0.0, -9.81])
IMU_RATE = 200.0
POSE_RATE = 100.0
CAMERA_RATE = 20.0
DURATION = 10.0

TRUE_ROTATION = exp_so3(np.array([0.05, -0.1, 1.2]))
TRUE_TRANSLATION = np.array([0.03, 0.08, -0.04])
TRUE_TIME_OFFSET = 0.015


def imu_rotation(t: float) -> np.ndarray:
    return exp_so3(np.array([0.4 * np.sin(1.3 * t), 0.3 * np.sin(0.9 * t), 0.6 * t]))


def imu_position(t: float) -> np.ndarray:
    return np.array([np.cos(0.5 * t), np.sin(0.5 * t), 1.0 + 0.2 * np.sin(t)])


def imu_acceleration(t: float) -> np.ndarray:
    return np.array([-0.25 * np.cos(0.5 * t), -0.25 * np.sin(0.5 * t), -0.2 * np.sin(t)])


def body_rate(t: float, h: float = 1e-5) -> np.ndarray:
    """Body angular rate by central difference of the orientation."""
    return log_so3(imu_rotation(t - h).T @ imu_rotation(t + h)) / (2 * h)


def simulate(noise_scale: float, rng: np.random.Generator) -> tuple[Preintegrator, Interpolator]:
    preintegrator = Preintegrator()
    interpolator = Interpolator()

    for k in range(int(DURATION * IMU_RATE) + 1):
        t = k / IMU_RATE
        R = imu_rotation(t)
        gyro = body_rate(t) + noise_scale * rng.normal(scale=1e-3, size=3)
        accel = R.T @ (imu_acceleration(t) - GRAVITY) + noise_scale * rng.normal(
            scale=1e-2, size=3
        )
        preintegrator.feed_inertial(t, gyro, accel)

    rot_sigma, pos_sigma = 1e-3, 1e-4
    for k in range(int(DURATION * POSE_RATE) + 1):
        stamp = k / POSE_RATE
        t = stamp - TRUE_TIME_OFFSET
        R = imu_rotation(t)
        R_wb = R @ TRUE_ROTATION
        p_wb = imu_position(t) + R @ TRUE_TRANSLATION
        R_wb = R_wb @ exp_so3(noise_scale * rng.normal(scale=rot_sigma, size=3))
        p_wb = p_wb + noise_scale * rng.normal(scale=pos_sigma, size=3)
        interpolator.feed_pose(
            stamp,
            rotation_to_quaternion(R_wb),
            p_wb,
            np.eye(3) * rot_sigma**2,
            np.eye(3) * pos_sigma**2,
        )

    return preintegrator, interpolator


def main() -> None:
    parser = argparse.ArgumentParser(description="Synthetic calibration demo")
    parser.add_argument("--noise", type=float, default=1.0, help="Noise scale (0 = noise free)")
    parser.add_argument("--seed", type=int, default=0, help="Random seed")
    parser.add_argument("--visualize", action="store_true", help="Show results in Rerun")
    args = parser.parse_args()

    print("Simulating rig...")
    print("=" * 60)
    preintegrator, interpolator = simulate(args.noise, np.random.default_rng(args.seed))
    print(f"IMU samples:  {len(preintegrator)}")
    print(f"Vicon poses:  {len(interpolator)}")

    initial = CalibrationParameters(
        extrinsic_rotation=TRUE_ROTATION @ exp_so3(np.array([0.05, 0.05, -0.05])),
        extrinsic_translation=TRUE_TRANSLATION + 0.03,
        time_offset=0.0,
    )
    solver = GraphSolver(preintegrator, interpolator, SolverConfig(), initial)
    solver.set_query_timestamps(np.arange(0.0, DURATION, 1.0 / CAMERA_RATE))
    diagnostics = solver.build_and_solve()

    print()
    print(format_report(solver.calibration, diagnostics))

    calibration = solver.calibration
    print("Errors against the simulated truth")
    print("-" * 60)
    rot_err = np.degrees(rotation_error(calibration.extrinsic_rotation, TRUE_ROTATION))
    trans_err = np.linalg.norm(calibration.extrinsic_translation - TRUE_TRANSLATION)
    print(f"  Rotation:    {rot_err:.4f} deg")
    print(f"  Translation: {trans_err * 1000:.3f} mm")
    print(f"  Time offset: {abs(calibration.time_offset - TRUE_TIME_OFFSET) * 1000:.3f} ms")

    if args.visualize:
        from vicon2gt.visualization import TrajectoryVisualizer

        viz = TrajectoryVisualizer(app_name="vicon2gt_synthetic")
        viz.log_pose_samples(interpolator.samples)
        viz.log_trajectory(solver.trajectory(), calibration)
        viz.log_gravity(calibration)


if __name__ == "__main__":
    main()
