#!/usr/bin/env python3
"""Estimate the motion-capture to IMU calibration of a EuRoC-layout recording.

Loads IMU samples, camera frame times and motion-capture poses, solves for
the IMU trajectory at every camera frame together with the body-to-IMU
extrinsic, the time offset and the gravity direction, then prints a
summary and optionally writes the results.

Usage:
    python scripts/estimate_vicon2gt.py --dataset data/euroc/V1_01_easy/mav0
    python scripts/estimate_vicon2gt.py --config config/euroc.yaml \\
        --dataset data/euroc/V1_01_easy/mav0 --save --visualize
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from vicon2gt import DatasetLoader, GraphSolver, ResultWriter, Vicon2GTConfig, Vicon2GTError
from vicon2gt.io import format_report


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Motion-capture to IMU calibration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="YAML configuration file (default: built-in defaults)",
    )
    parser.add_argument(
        "--dataset",
        type=Path,
        required=True,
        help="Path to the EuRoC mav0 directory",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Write the state CSV and the info report",
    )
    parser.add_argument(
        "--visualize",
        action="store_true",
        help="Show the solved trajectory in the Rerun viewer",
    )
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=None,
        help="Directory for relative output paths (default: current directory)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log per-sample drops and solver details",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = Vicon2GTConfig.from_yaml(args.config) if args.config else Vicon2GTConfig()
    except (FileNotFoundError, Vicon2GTError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    print("=" * 60)
    print("vicon2gt")
    print("=" * 60)
    print(f"Dataset: {args.dataset}")
    print(f"Config: {args.config or 'defaults'}")
    print(f"Gauge prior: {config.solver.gauge_prior.value}")
    print(f"Estimate time offset: {config.solver.estimate_time_offset}")
    print()

    try:
        loader = DatasetLoader(args.dataset, config)
        dataset = loader.load()

        print(f"IMU samples:   {dataset.imu_stats.accepted} ({dataset.imu_stats.dropped} dropped)")
        print(f"Vicon poses:   {dataset.pose_stats.accepted} ({dataset.pose_stats.dropped} dropped)")
        print(f"Camera frames: {dataset.num_camera_frames}")
        print()

        solver = GraphSolver(dataset.preintegrator, dataset.interpolator, config.solver)
        solver.set_query_timestamps(dataset.query_timestamps)
        diagnostics = solver.build_and_solve()
    except (FileNotFoundError, Vicon2GTError) as e:
        print(f"Error: {e}")
        sys.exit(1)

    calibration = solver.calibration
    print(format_report(calibration, diagnostics))

    if args.save:
        output_dir = args.output_dir or Path.cwd()
        writer = ResultWriter(origin_ns=dataset.origin_ns)
        states_path = writer.write_states(
            output_dir / config.output.states_path, solver.state_records()
        )
        info_path = writer.write_info(output_dir / config.output.info_path, calibration, diagnostics)
        print(f"States saved to: {states_path}")
        print(f"Report saved to: {info_path}")

    if args.visualize:
        from vicon2gt.visualization import TrajectoryVisualizer

        viz = TrajectoryVisualizer()
        viz.log_pose_samples(dataset.interpolator.samples)
        viz.log_trajectory(solver.trajectory(), calibration)
        viz.log_gravity(calibration)

    if not diagnostics.converged:
        sys.exit(2)


if __name__ == "__main__":
    main()
