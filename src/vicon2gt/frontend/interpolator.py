"""Motion-capture pose buffer with covariance-aware interpolation.

Motion-capture poses arrive at their own rate and clock. The interpolator
turns them into a "virtual measurement" at any time inside the buffered
span, so the solver can anchor states defined at camera timestamps.

Orientation is interpolated with slerp on the shorter arc, position
linearly. Each endpoint covariance is weighted by its interpolation factor
and the two are summed:

    Σ(λ) = (1 - λ) Σ_a + λ Σ_b

A convex combination of PSD matrices is PSD, so the result stays a valid
covariance for every λ in [0, 1]. The weighting is a first-order model and
assumes the pose changes smoothly between neighbouring samples.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass

import numpy as np

from ..errors import BufferFrozen, OutOfOrderSample, OutOfRange
from .pose import SE3, quaternion_normalize, quaternion_slerp, quaternion_to_rotation
from .preintegrator import IngestionStats

logger = logging.getLogger(__name__)

_SYMMETRY_TOL = 1e-9


@dataclass
class PoseSample:
    """Single motion-capture pose of the tracked body.

    Attributes:
        timestamp: Sample time in seconds (motion-capture clock)
        orientation: Unit quaternion (w, x, y, z) of the body in the world frame
        position: Body position in the world frame (m)
        orientation_covariance: 3x3 orientation covariance (rad²)
        position_covariance: 3x3 position covariance (m²)
    """

    timestamp: float
    orientation: np.ndarray
    position: np.ndarray
    orientation_covariance: np.ndarray
    position_covariance: np.ndarray

    def __post_init__(self) -> None:
        """Ensure arrays have correct type."""
        self.timestamp = float(self.timestamp)
        self.orientation = np.asarray(self.orientation, dtype=np.float64).flatten()
        self.position = np.asarray(self.position, dtype=np.float64).flatten()
        self.orientation_covariance = np.asarray(
            self.orientation_covariance, dtype=np.float64
        )
        self.position_covariance = np.asarray(self.position_covariance, dtype=np.float64)

    @property
    def is_valid(self) -> bool:
        """Return True if the sample is finite and its covariances are valid."""
        if not np.isfinite(self.timestamp):
            return False
        if self.orientation.shape != (4,) or self.position.shape != (3,):
            return False
        if not (np.all(np.isfinite(self.orientation)) and np.all(np.isfinite(self.position))):
            return False
        if np.linalg.norm(self.orientation) < 1e-12:
            return False
        return _is_covariance(self.orientation_covariance) and _is_covariance(
            self.position_covariance
        )


@dataclass
class InterpolatedPose:
    """Pose with covariance at a query time.

    Attributes:
        timestamp: Query time in seconds
        orientation: Unit quaternion (w, x, y, z)
        position: (3,) position
        covariance: 6x6 covariance, orientation block first then position
    """

    timestamp: float
    orientation: np.ndarray
    position: np.ndarray
    covariance: np.ndarray

    @property
    def rotation(self) -> np.ndarray:
        """Orientation as a 3x3 rotation matrix."""
        return quaternion_to_rotation(self.orientation)

    def to_se3(self) -> SE3:
        """Return the pose as SE3 (T_world_body)."""
        return SE3(rotation=self.rotation, translation=self.position)


def _is_covariance(C: np.ndarray) -> bool:
    if C.shape != (3, 3) or not np.all(np.isfinite(C)):
        return False
    if not np.allclose(C, C.T, atol=_SYMMETRY_TOL):
        return False
    return bool(np.linalg.eigvalsh(0.5 * (C + C.T)).min() >= -_SYMMETRY_TOL)


class Interpolator:
    """Time-ordered motion-capture pose buffer.

    Follows the same ingestion discipline as the Preintegrator: strictly
    increasing timestamps, drops counted, read-only after `freeze()`.
    """

    def __init__(self) -> None:
        self._timestamps: list[float] = []
        self._samples: list[PoseSample] = []
        self._stats = IngestionStats()
        self._frozen = False

    def feed_pose(
        self,
        timestamp: float,
        orientation: np.ndarray,
        position: np.ndarray,
        orientation_covariance: np.ndarray,
        position_covariance: np.ndarray,
    ) -> bool:
        """Append a pose given as raw values. See `feed`."""
        return self.feed(
            PoseSample(
                timestamp=timestamp,
                orientation=orientation,
                position=position,
                orientation_covariance=orientation_covariance,
                position_covariance=position_covariance,
            )
        )

    def feed(self, sample: PoseSample) -> bool:
        """Append a pose sample to the buffer.

        The stored quaternion is normalized to unit length.

        Args:
            sample: Motion-capture pose

        Returns:
            True if the sample was stored, False if it was dropped

        Raises:
            BufferFrozen: If called after freeze()
        """
        if self._frozen:
            raise BufferFrozen("Interpolator is frozen, ingestion has finished")

        if not sample.is_valid:
            self._stats.malformed += 1
            logger.debug("Dropping malformed pose sample at t=%s", sample.timestamp)
            return False

        if self._timestamps and sample.timestamp <= self._timestamps[-1]:
            error = OutOfOrderSample(
                f"Pose sample t={sample.timestamp:.9f} is not after "
                f"the last stored t={self._timestamps[-1]:.9f}"
            )
            self._stats.record_out_of_order(error)
            logger.debug("Dropping %s", error)
            return False

        stored = PoseSample(
            timestamp=sample.timestamp,
            orientation=quaternion_normalize(sample.orientation),
            position=sample.position.copy(),
            orientation_covariance=0.5
            * (sample.orientation_covariance + sample.orientation_covariance.T),
            position_covariance=0.5
            * (sample.position_covariance + sample.position_covariance.T),
        )
        self._timestamps.append(stored.timestamp)
        self._samples.append(stored)
        self._stats.accepted += 1
        return True

    def freeze(self) -> None:
        """Close ingestion; the buffer is read-only from now on."""
        if not self._frozen:
            logger.info(
                "Pose buffer frozen: %d samples accepted, %d out-of-order, %d malformed",
                self._stats.accepted,
                self._stats.out_of_order,
                self._stats.malformed,
            )
        self._frozen = True

    def can_bracket(self, t: float) -> bool:
        """Return True if t lies inside the buffered span."""
        if not self._timestamps:
            return False
        return self._timestamps[0] <= t <= self._timestamps[-1]

    def pose_at(self, t: float) -> InterpolatedPose:
        """Interpolate the pose at time t.

        Args:
            t: Query time in seconds (motion-capture clock)

        Returns:
            InterpolatedPose at t

        Raises:
            OutOfRange: If t precedes the first or follows the last sample
        """
        if not self.can_bracket(t):
            span = (
                f"[{self._timestamps[0]:.9f}, {self._timestamps[-1]:.9f}]"
                if self._timestamps
                else "empty buffer"
            )
            raise OutOfRange(f"Pose query t={t:.9f} outside buffered span {span}")

        # Bracketing pair t_a <= t <= t_b
        idx = bisect.bisect_left(self._timestamps, t)
        if self._timestamps[idx] == t:
            return self._as_interpolated(self._samples[idx], t)

        a = self._samples[idx - 1]
        b = self._samples[idx]
        lam = (t - a.timestamp) / (b.timestamp - a.timestamp)

        orientation = quaternion_slerp(a.orientation, b.orientation, lam)
        position = (1.0 - lam) * a.position + lam * b.position

        covariance = np.zeros((6, 6))
        covariance[0:3, 0:3] = (
            (1.0 - lam) * a.orientation_covariance + lam * b.orientation_covariance
        )
        covariance[3:6, 3:6] = (
            (1.0 - lam) * a.position_covariance + lam * b.position_covariance
        )

        return InterpolatedPose(
            timestamp=t,
            orientation=orientation,
            position=position,
            covariance=0.5 * (covariance + covariance.T),
        )

    @staticmethod
    def _as_interpolated(sample: PoseSample, t: float) -> InterpolatedPose:
        covariance = np.zeros((6, 6))
        covariance[0:3, 0:3] = sample.orientation_covariance
        covariance[3:6, 3:6] = sample.position_covariance
        return InterpolatedPose(
            timestamp=t,
            orientation=sample.orientation.copy(),
            position=sample.position.copy(),
            covariance=covariance,
        )

    @property
    def stats(self) -> IngestionStats:
        """Return ingestion counters."""
        return self._stats

    @property
    def is_frozen(self) -> bool:
        """Return True once ingestion has been closed."""
        return self._frozen

    @property
    def samples(self) -> list[PoseSample]:
        """Return the buffered samples (read-only use)."""
        return list(self._samples)

    @property
    def start_time(self) -> float | None:
        """First buffered timestamp in seconds."""
        return self._timestamps[0] if self._timestamps else None

    @property
    def end_time(self) -> float | None:
        """Last buffered timestamp in seconds."""
        return self._timestamps[-1] if self._timestamps else None

    def __len__(self) -> int:
        """Number of buffered poses."""
        return len(self._timestamps)
