"""Measurement engines.

- Preintegrator: buffered IMU samples summarized into relative motion
- Interpolator: buffered motion-capture poses queried at arbitrary times
- pose: rotation, quaternion and SE(3) helpers shared by both
"""

from .pose import (
    SE3,
    exp_so3,
    log_so3,
    quaternion_normalize,
    quaternion_slerp,
    quaternion_to_rotation,
    rotation_to_quaternion,
    skew,
)
from .interpolator import InterpolatedPose, Interpolator, PoseSample
from .preintegrator import InertialSample, IngestionStats, Preintegrator, RelativeMotion

__all__ = [
    # Pose
    "SE3",
    "skew",
    "exp_so3",
    "log_so3",
    "quaternion_normalize",
    "quaternion_to_rotation",
    "rotation_to_quaternion",
    "quaternion_slerp",
    # Preintegration
    "Preintegrator",
    "InertialSample",
    "RelativeMotion",
    "IngestionStats",
    # Interpolation
    "Interpolator",
    "PoseSample",
    "InterpolatedPose",
]
