"""Motion-capture pose CSV reader.

CSV format, one pose per row:

    #timestamp_ns, px, py, pz, qw, qx, qy, qz[, covariance...]

The covariance columns are optional and recognised by count:

    6 extra columns   variances (px, py, pz, rx, ry, rz)
    36 extra columns  full 6x6 covariance, row-major, position block first

Any other count, including the 17-column EuRoC ground-truth layout, is
read as a plain pose. Poses without covariance (or all poses when manual
sigmas are forced) get the configured sigmas.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np

from ..config import ViconConfig

logger = logging.getLogger(__name__)

_POSE_COLUMNS = 8
_VARIANCE_COLUMNS = _POSE_COLUMNS + 6
_FULL_COVARIANCE_COLUMNS = _POSE_COLUMNS + 36


@dataclass
class PoseRecord:
    """Single motion-capture row.

    Attributes:
        timestamp_ns: Pose timestamp in nanoseconds (motion-capture clock)
        orientation: Quaternion (w, x, y, z), as recorded
        position: Position (x, y, z) in meters
        orientation_covariance: 3x3 orientation covariance (rad²)
        position_covariance: 3x3 position covariance (m²)
    """

    timestamp_ns: int
    orientation: np.ndarray
    position: np.ndarray
    orientation_covariance: np.ndarray
    position_covariance: np.ndarray


class PoseReader:
    """Reader for motion-capture poses with optional covariance.

    Example usage:
        reader = PoseReader("mav0/vicon0/data.csv", config.vicon)
        for record in reader.records:
            interpolator.feed_pose(...)
    """

    def __init__(self, path: str | Path, vicon: ViconConfig | None = None) -> None:
        """Initialize pose reader.

        Args:
            path: Path to the pose CSV file
            vicon: Manual sigmas and whether to force them

        Raises:
            FileNotFoundError: If the file does not exist
        """
        self._path = Path(path)
        self._vicon = vicon or ViconConfig()

        if not self._path.exists():
            raise FileNotFoundError(f"Pose data not found: {self._path}")

        self._records: list[PoseRecord] = []
        self._num_skipped_lines = 0
        self._num_with_covariance = 0
        self._load_records()

        logger.info(
            "Loaded %d poses from %s (%d with covariance, %d unparsable lines skipped)",
            len(self._records),
            self._path,
            self._num_with_covariance,
            self._num_skipped_lines,
        )

    def _load_records(self) -> None:
        """Load all pose rows from the CSV file."""
        with open(self._path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue

                parts = line.split(",")
                if len(parts) < _POSE_COLUMNS:
                    self._num_skipped_lines += 1
                    continue

                try:
                    timestamp_ns = int(parts[0])
                    values = np.array([float(p) for p in parts[1:]])
                except ValueError:
                    self._num_skipped_lines += 1
                    continue

                self._records.append(self._make_record(timestamp_ns, values))

    def _make_record(self, timestamp_ns: int, values: np.ndarray) -> PoseRecord:
        position = values[0:3]
        orientation = values[3:7]
        extra = values[7:]

        orientation_cov = self._vicon.orientation_covariance
        position_cov = self._vicon.position_covariance
        if not self._vicon.use_manual_sigmas:
            covariance = None
            if len(values) + 1 == _VARIANCE_COLUMNS:
                covariance = np.diag(extra)
            elif len(values) + 1 == _FULL_COVARIANCE_COLUMNS:
                covariance = extra.reshape(6, 6)

            if covariance is not None:
                position_cov = covariance[0:3, 0:3]
                orientation_cov = covariance[3:6, 3:6]
                self._num_with_covariance += 1

        return PoseRecord(
            timestamp_ns=timestamp_ns,
            orientation=orientation,
            position=position,
            orientation_covariance=orientation_cov,
            position_covariance=position_cov,
        )

    def records_between(
        self, start_ns: int, end_ns: int | None = None
    ) -> list[PoseRecord]:
        """Rows with start_ns <= timestamp_ns <= end_ns, in file order."""
        return [
            r
            for r in self._records
            if r.timestamp_ns >= start_ns and (end_ns is None or r.timestamp_ns <= end_ns)
        ]

    @property
    def records(self) -> list[PoseRecord]:
        """Return all rows in file order."""
        return list(self._records)

    @property
    def num_skipped_lines(self) -> int:
        """Number of lines that could not be parsed."""
        return self._num_skipped_lines

    @property
    def num_with_covariance(self) -> int:
        """Number of rows whose own covariance is used."""
        return self._num_with_covariance

    def __len__(self) -> int:
        """Number of pose rows."""
        return len(self._records)
