"""vicon2gt - Motion-capture to IMU calibration and ground-truth generation."""

__version__ = "0.1.0"

# Re-export main classes for convenient imports
from .config import (
    DatasetConfig,
    GaugePrior,
    NoiseConfig,
    OutputConfig,
    SolverConfig,
    Vicon2GTConfig,
    ViconConfig,
)
from .errors import (
    BufferFrozen,
    ConfigError,
    EmptyStream,
    InsufficientData,
    InsufficientOverlap,
    NotConverged,
    NumericalFailure,
    OutOfOrderSample,
    OutOfRange,
    SolverStateError,
    Vicon2GTError,
)
from .frontend import (
    SE3,
    InertialSample,
    InterpolatedPose,
    Interpolator,
    PoseSample,
    Preintegrator,
    RelativeMotion,
)
from .backend import (
    CalibrationParameters,
    GraphSolver,
    SolveDiagnostics,
    SolverPhase,
    SolveStatus,
    StateNode,
    StateRecord,
    TrajectoryRecord,
)
from .io import DatasetLoader, ResultWriter

__all__ = [
    "__version__",
    # Configuration
    "Vicon2GTConfig",
    "NoiseConfig",
    "ViconConfig",
    "SolverConfig",
    "DatasetConfig",
    "OutputConfig",
    "GaugePrior",
    # Errors
    "Vicon2GTError",
    "OutOfOrderSample",
    "InsufficientData",
    "OutOfRange",
    "InsufficientOverlap",
    "NumericalFailure",
    "NotConverged",
    "BufferFrozen",
    "EmptyStream",
    "SolverStateError",
    "ConfigError",
    # Engines
    "SE3",
    "Preintegrator",
    "InertialSample",
    "RelativeMotion",
    "Interpolator",
    "PoseSample",
    "InterpolatedPose",
    # Solver
    "GraphSolver",
    "SolverPhase",
    "SolveStatus",
    "SolveDiagnostics",
    "StateNode",
    "CalibrationParameters",
    "StateRecord",
    "TrajectoryRecord",
    # I/O
    "DatasetLoader",
    "ResultWriter",
]
