"""Exception types raised by the measurement engines and the graph solver."""

from __future__ import annotations


class Vicon2GTError(Exception):
    """Base class for all vicon2gt errors."""


class OutOfOrderSample(Vicon2GTError):
    """A sample arrived with a timestamp not after the last stored one.

    Feed calls never raise this; the sample is dropped and counted. The type
    exists so drop statistics and log messages can name the condition.
    """


class InsufficientData(Vicon2GTError):
    """A relative-motion query is not bracketed by buffered inertial samples."""


class OutOfRange(Vicon2GTError):
    """A pose query falls outside the buffered motion-capture span."""


class InsufficientOverlap(Vicon2GTError):
    """Too few query timestamps are covered by both measurement streams."""


class NumericalFailure(Vicon2GTError):
    """The linearized problem is singular or produced non-finite values."""


class NotConverged(UserWarning):
    """The solver hit its iteration cap before meeting its tolerances."""


class BufferFrozen(Vicon2GTError):
    """A sample was fed after ingestion was closed."""


class EmptyStream(Vicon2GTError):
    """Every sample of a measurement stream was rejected."""


class SolverStateError(Vicon2GTError):
    """A solver operation was requested from the wrong lifecycle state."""


class ConfigError(Vicon2GTError):
    """A configuration value is missing, unknown or invalid."""
