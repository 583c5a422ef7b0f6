"""Camera frame timestamps from EuRoC cam*/data.csv."""

from __future__ import annotations

from pathlib import Path


class CameraTimestampReader:
    """Reads the frame times of one camera.

    Only the timestamp column is used; image file names are ignored.

    CSV format:
        #timestamp [ns],filename
    """

    def __init__(self, dataset_path: str | Path, camera: str = "cam0") -> None:
        """Initialize camera timestamp reader.

        Args:
            dataset_path: Path to the EuRoC mav0 directory
            camera: Camera directory name

        Raises:
            FileNotFoundError: If <camera>/data.csv does not exist
        """
        self._data_path = Path(dataset_path) / camera / "data.csv"
        if not self._data_path.exists():
            raise FileNotFoundError(
                f"Camera data not found: {self._data_path}\n"
                f"Expected EuRoC format with {camera}/data.csv"
            )

        self._timestamps: list[int] = []
        with open(self._data_path, "r") as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#"):
                    continue
                try:
                    self._timestamps.append(int(line.split(",")[0]))
                except ValueError:
                    continue

    def timestamps_between(self, start_ns: int, end_ns: int | None = None) -> list[int]:
        """Frame times in [start_ns, end_ns], in file order."""
        return [
            t for t in self._timestamps if t >= start_ns and (end_ns is None or t <= end_ns)
        ]

    @property
    def timestamps(self) -> list[int]:
        """All frame times in nanoseconds."""
        return list(self._timestamps)

    def __len__(self) -> int:
        """Number of frames."""
        return len(self._timestamps)
