"""Inertial preintegration between arbitrary bracketed instants.

Buffers gyroscope and accelerometer samples and summarizes the run between
two times t0 and t1 into a single relative-motion estimate:

    delta_rotation  ΔR = prod Exp((ω - b_g) dt)
    delta_velocity  Δv = ∫ ΔR(t) (a - b_a) dt
    delta_position  Δp = ∬ ΔR(t) (a - b_a) dt²

Deltas are expressed in the IMU frame at t0 and exclude gravity. The
covariance of the 15-dim error state (rotation, velocity, position, gyro
bias, accel bias) is propagated alongside, and the bias Jacobians of the
deltas are read off the accumulated error-state transition so small bias
updates are applied to first order instead of re-integrating.

Validity preconditions of the first-order bias correction:
- the bias change since integration is small (a few times the bias
  random-walk over the interval); larger changes should re-integrate,
- intervals are short enough that the linearized error transition holds
  (the solver uses consecutive camera frames, tens of milliseconds).
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass, field

import numpy as np

from ..config import NoiseConfig
from ..errors import BufferFrozen, InsufficientData, OutOfOrderSample
from .pose import exp_so3, right_jacobian_so3, skew

logger = logging.getLogger(__name__)

# Steps shorter than this are merged into their neighbour
_MIN_STEP = 1e-9


@dataclass
class InertialSample:
    """Single IMU sample.

    Attributes:
        timestamp: Sample time in seconds
        angular_velocity: Angular velocity (wx, wy, wz) in rad/s
        linear_acceleration: Specific force (ax, ay, az) in m/s²
    """

    timestamp: float
    angular_velocity: np.ndarray  # (3,) rad/s
    linear_acceleration: np.ndarray  # (3,) m/s²

    def __post_init__(self) -> None:
        """Ensure arrays have correct shape and type."""
        self.timestamp = float(self.timestamp)
        self.angular_velocity = np.asarray(
            self.angular_velocity, dtype=np.float64
        ).flatten()
        self.linear_acceleration = np.asarray(
            self.linear_acceleration, dtype=np.float64
        ).flatten()

    @property
    def is_valid(self) -> bool:
        """Return True if all fields are finite 3-vectors."""
        return (
            np.isfinite(self.timestamp)
            and self.angular_velocity.shape == (3,)
            and self.linear_acceleration.shape == (3,)
            and bool(np.all(np.isfinite(self.angular_velocity)))
            and bool(np.all(np.isfinite(self.linear_acceleration)))
        )


@dataclass
class IngestionStats:
    """Counts of accepted and dropped samples for one measurement stream.

    Attributes:
        accepted: Samples stored in the buffer
        out_of_order: Samples dropped for a timestamp not after the last stored one
        malformed: Samples dropped for non-finite or invalid values
        last_out_of_order: Most recent out-of-order rejection, if any
    """

    accepted: int = 0
    out_of_order: int = 0
    malformed: int = 0
    last_out_of_order: OutOfOrderSample | None = field(default=None, compare=False)

    def record_out_of_order(self, error: OutOfOrderSample) -> None:
        self.out_of_order += 1
        self.last_out_of_order = error

    @property
    def dropped(self) -> int:
        """Total number of dropped samples."""
        return self.out_of_order + self.malformed

    @property
    def total(self) -> int:
        """Total number of samples fed."""
        return self.accepted + self.dropped


@dataclass
class RelativeMotion:
    """Preintegrated motion between two inertial timestamps.

    Attributes:
        start_time: Interval start in seconds
        end_time: Interval end in seconds
        delta_rotation: 3x3 rotation from the frame at end_time to the frame at start_time
        delta_velocity: (3,) velocity change in the start frame, gravity excluded
        delta_position: (3,) position change in the start frame, gravity excluded
        covariance: 15x15 covariance ordered (rotation, velocity, position, gyro bias, accel bias)
        jacobian_bias: 9x6 Jacobian of (rotation, velocity, position) w.r.t. (gyro bias, accel bias)
        gyro_bias: Gyro bias the deltas were integrated with
        accel_bias: Accel bias the deltas were integrated with
        num_samples: Number of integration nodes, including interpolated endpoints
    """

    start_time: float
    end_time: float
    delta_rotation: np.ndarray
    delta_velocity: np.ndarray
    delta_position: np.ndarray
    covariance: np.ndarray
    jacobian_bias: np.ndarray
    gyro_bias: np.ndarray
    accel_bias: np.ndarray
    num_samples: int = 0

    @property
    def dt(self) -> float:
        """Interval length in seconds."""
        return self.end_time - self.start_time

    def bias_shift(
        self, gyro_bias: np.ndarray, accel_bias: np.ndarray
    ) -> tuple[float, float]:
        """Return the norms of the bias changes since integration."""
        return (
            float(np.linalg.norm(gyro_bias - self.gyro_bias)),
            float(np.linalg.norm(accel_bias - self.accel_bias)),
        )

    def corrected(
        self, gyro_bias: np.ndarray, accel_bias: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Apply a first-order bias correction to the deltas.

        Args:
            gyro_bias: Current gyro bias estimate
            accel_bias: Current accel bias estimate

        Returns:
            Tuple of (delta_rotation, delta_velocity, delta_position)
        """
        dbg = np.asarray(gyro_bias, dtype=np.float64) - self.gyro_bias
        dba = np.asarray(accel_bias, dtype=np.float64) - self.accel_bias
        J = self.jacobian_bias

        delta_rotation = self.delta_rotation @ exp_so3(J[0:3, 0:3] @ dbg)
        delta_velocity = self.delta_velocity + J[3:6, 0:3] @ dbg + J[3:6, 3:6] @ dba
        delta_position = self.delta_position + J[6:9, 0:3] @ dbg + J[6:9, 3:6] @ dba
        return delta_rotation, delta_velocity, delta_position

    def gravity_compensated(
        self, gravity_in_start_frame: np.ndarray
    ) -> tuple[np.ndarray, np.ndarray]:
        """Return the velocity and position deltas with gravity added back.

        For a body that is really stationary over the interval both results
        are zero.

        Args:
            gravity_in_start_frame: Gravity vector expressed in the start IMU frame

        Returns:
            Tuple of (delta_velocity, delta_position)
        """
        g = np.asarray(gravity_in_start_frame, dtype=np.float64)
        dt = self.dt
        return (
            self.delta_velocity + g * dt,
            self.delta_position + 0.5 * g * dt * dt,
        )


class Preintegrator:
    """Time-ordered IMU buffer with on-demand preintegration.

    Samples must be fed in strictly increasing timestamp order; anything
    else is dropped and counted. Once `freeze()` is called the buffer is
    read-only and further feeds raise BufferFrozen.
    """

    def __init__(self, noise: NoiseConfig | None = None) -> None:
        """Initialize preintegrator.

        Args:
            noise: IMU noise densities (defaults match the EuRoC VI-sensor)
        """
        self._noise = noise or NoiseConfig()
        self._timestamps: list[float] = []
        self._gyro: list[np.ndarray] = []
        self._accel: list[np.ndarray] = []
        self._stats = IngestionStats()
        self._frozen = False

        # Continuous-time noise spectral densities
        self._noise_psd = np.diag(
            np.concatenate([
                np.full(3, self._noise.gyroscope_noise_density**2),
                np.full(3, self._noise.accelerometer_noise_density**2),
                np.full(3, self._noise.gyroscope_random_walk**2),
                np.full(3, self._noise.accelerometer_random_walk**2),
            ])
        )

    def feed_inertial(
        self,
        timestamp: float,
        angular_velocity: np.ndarray,
        linear_acceleration: np.ndarray,
    ) -> bool:
        """Append a sample given as raw values. See `feed`."""
        return self.feed(
            InertialSample(
                timestamp=timestamp,
                angular_velocity=angular_velocity,
                linear_acceleration=linear_acceleration,
            )
        )

    def feed(self, sample: InertialSample) -> bool:
        """Append a sample to the buffer.

        Args:
            sample: IMU sample

        Returns:
            True if the sample was stored, False if it was dropped

        Raises:
            BufferFrozen: If called after freeze()
        """
        if self._frozen:
            raise BufferFrozen("Preintegrator is frozen, ingestion has finished")

        if not sample.is_valid:
            self._stats.malformed += 1
            logger.debug("Dropping malformed IMU sample at t=%s", sample.timestamp)
            return False

        if self._timestamps and sample.timestamp <= self._timestamps[-1]:
            error = OutOfOrderSample(
                f"IMU sample t={sample.timestamp:.9f} is not after "
                f"the last stored t={self._timestamps[-1]:.9f}"
            )
            self._stats.record_out_of_order(error)
            logger.debug("Dropping %s", error)
            return False

        self._timestamps.append(sample.timestamp)
        self._gyro.append(sample.angular_velocity.copy())
        self._accel.append(sample.linear_acceleration.copy())
        self._stats.accepted += 1
        return True

    def freeze(self) -> None:
        """Close ingestion; the buffer is read-only from now on."""
        if not self._frozen:
            logger.info(
                "IMU buffer frozen: %d samples accepted, %d out-of-order, %d malformed",
                self._stats.accepted,
                self._stats.out_of_order,
                self._stats.malformed,
            )
        self._frozen = True

    def covers(self, t0: float, t1: float) -> bool:
        """Return True if [t0, t1] lies inside the buffered span."""
        if len(self._timestamps) < 2:
            return False
        return self._timestamps[0] <= t0 and t1 <= self._timestamps[-1]

    def relative_motion(
        self,
        t0: float,
        t1: float,
        gyro_bias: np.ndarray | None = None,
        accel_bias: np.ndarray | None = None,
    ) -> RelativeMotion:
        """Preintegrate the samples between t0 and t1.

        Samples at the interval boundaries are linearly interpolated from
        their buffered neighbours, so t0 and t1 need not coincide with
        sample times.

        Args:
            t0: Interval start in seconds
            t1: Interval end in seconds
            gyro_bias: Gyro bias to remove (default: zeros)
            accel_bias: Accel bias to remove (default: zeros)

        Returns:
            RelativeMotion for the interval

        Raises:
            InsufficientData: If t1 <= t0 or [t0, t1] is not bracketed
        """
        if t1 <= t0:
            raise InsufficientData(f"Empty interval [{t0:.9f}, {t1:.9f}]")
        if not self.covers(t0, t1):
            span = (
                f"[{self._timestamps[0]:.9f}, {self._timestamps[-1]:.9f}]"
                if self._timestamps
                else "empty buffer"
            )
            raise InsufficientData(
                f"Interval [{t0:.9f}, {t1:.9f}] not bracketed by IMU samples {span}"
            )

        bg = np.zeros(3) if gyro_bias is None else np.asarray(gyro_bias, dtype=np.float64)
        ba = np.zeros(3) if accel_bias is None else np.asarray(accel_bias, dtype=np.float64)

        times, gyros, accels = self._select_samples(t0, t1)

        dR = np.eye(3)
        dv = np.zeros(3)
        dp = np.zeros(3)
        P = np.zeros((15, 15))
        Phi = np.eye(15)

        for k in range(len(times) - 1):
            dt = times[k + 1] - times[k]

            # Mid-point rates with biases removed
            omega = 0.5 * (gyros[k] + gyros[k + 1]) - bg
            a0 = accels[k] - ba
            a1 = accels[k + 1] - ba

            theta = omega * dt
            dR_step = exp_so3(theta)
            dR_next = dR @ dR_step
            accel_mid = 0.5 * (dR @ a0 + dR_next @ a1)

            # Linearized error-state transition
            a_bar = 0.5 * (a0 + a1)
            Jr = right_jacobian_so3(theta)
            dR_skew_a = dR @ skew(a_bar)

            A = np.eye(15)
            A[0:3, 0:3] = dR_step.T
            A[0:3, 9:12] = -Jr * dt
            A[3:6, 0:3] = -dR_skew_a * dt
            A[3:6, 12:15] = -dR * dt
            A[6:9, 0:3] = -0.5 * dR_skew_a * dt * dt
            A[6:9, 3:6] = np.eye(3) * dt
            A[6:9, 12:15] = -0.5 * dR * dt * dt

            G = np.zeros((15, 12))
            G[0:3, 0:3] = Jr * dt
            G[3:6, 3:6] = dR * dt
            G[6:9, 3:6] = 0.5 * dR * dt * dt
            G[9:12, 6:9] = np.eye(3) * dt
            G[12:15, 9:12] = np.eye(3) * dt

            P = A @ P @ A.T + G @ (self._noise_psd / dt) @ G.T
            Phi = A @ Phi

            dp = dp + dv * dt + 0.5 * accel_mid * dt * dt
            dv = dv + accel_mid * dt
            dR = dR_next

        jacobian_bias = np.zeros((9, 6))
        jacobian_bias[:, 0:3] = Phi[0:9, 9:12]
        jacobian_bias[:, 3:6] = Phi[0:9, 12:15]

        return RelativeMotion(
            start_time=t0,
            end_time=t1,
            delta_rotation=dR,
            delta_velocity=dv,
            delta_position=dp,
            covariance=0.5 * (P + P.T),
            jacobian_bias=jacobian_bias,
            gyro_bias=bg.copy(),
            accel_bias=ba.copy(),
            num_samples=len(times),
        )

    def _select_samples(
        self, t0: float, t1: float
    ) -> tuple[list[float], list[np.ndarray], list[np.ndarray]]:
        """Collect integration nodes for [t0, t1], interpolating the endpoints."""
        ts = self._timestamps

        # First sample strictly after t0, first sample at or after t1
        i0 = bisect.bisect_right(ts, t0)
        i1 = bisect.bisect_left(ts, t1)

        gyro0, accel0 = self._interpolate(i0 - 1, t0)
        times = [t0]
        gyros = [gyro0]
        accels = [accel0]

        for k in range(i0, i1):
            if ts[k] - times[-1] < _MIN_STEP:
                continue
            times.append(ts[k])
            gyros.append(self._gyro[k])
            accels.append(self._accel[k])

        gyro1, accel1 = self._interpolate(i1 - 1, t1)
        if t1 - times[-1] < _MIN_STEP and len(times) > 1:
            # Replace a node that sits on top of t1
            times.pop()
            gyros.pop()
            accels.pop()
        times.append(t1)
        gyros.append(gyro1)
        accels.append(accel1)

        return times, gyros, accels

    def _interpolate(self, index: int, t: float) -> tuple[np.ndarray, np.ndarray]:
        """Linearly interpolate the readings at t from samples index and index + 1."""
        ts = self._timestamps
        index = min(max(index, 0), len(ts) - 1)
        if ts[index] == t or index + 1 >= len(ts):
            return self._gyro[index], self._accel[index]

        t_a = ts[index]
        t_b = ts[index + 1]
        lam = (t - t_a) / (t_b - t_a)
        gyro = (1.0 - lam) * self._gyro[index] + lam * self._gyro[index + 1]
        accel = (1.0 - lam) * self._accel[index] + lam * self._accel[index + 1]
        return gyro, accel

    @property
    def noise(self) -> NoiseConfig:
        """Return the IMU noise densities."""
        return self._noise

    @property
    def stats(self) -> IngestionStats:
        """Return ingestion counters."""
        return self._stats

    @property
    def is_frozen(self) -> bool:
        """Return True once ingestion has been closed."""
        return self._frozen

    @property
    def timestamps(self) -> np.ndarray:
        """Return buffered sample timestamps in seconds."""
        return np.asarray(self._timestamps, dtype=np.float64)

    @property
    def start_time(self) -> float | None:
        """First buffered timestamp in seconds."""
        return self._timestamps[0] if self._timestamps else None

    @property
    def end_time(self) -> float | None:
        """Last buffered timestamp in seconds."""
        return self._timestamps[-1] if self._timestamps else None

    def __len__(self) -> int:
        """Number of buffered samples."""
        return len(self._timestamps)
