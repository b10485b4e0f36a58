"""CSV persistence for decoded channel vectors."""
from __future__ import annotations

import csv
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TextIO

import numpy as np
import pandas as pd

from .frames import CHANNEL_LABELS, NUM_CHANNELS

TIME_COLUMN = "t_s"
FIELDNAMES = [TIME_COLUMN, *CHANNEL_LABELS]


class CsvRecorder:
    """
    Sample subscriber writing one CSV row per channel vector.

    The file is created lazily on the first vector so that a session that
    never streams leaves nothing behind. Timestamps are host monotonic seconds
    relative to the first recorded vector.
    """

    def __init__(self, path: Path, clock: Callable[[], float] = time.monotonic):
        self.path = Path(path)
        self._clock = clock
        self._writer: Optional[Any] = None
        self._file_handle: Optional[TextIO] = None
        self._pending_metadata: List[str] = []
        self._t0: Optional[float] = None
        self._rows = 0
        self._lock = threading.Lock()

    @property
    def rows(self) -> int:
        return self._rows

    def __call__(self, vector: np.ndarray) -> None:
        self.append(vector)

    def append(self, vector: np.ndarray) -> None:
        if len(vector) != NUM_CHANNELS:
            raise ValueError(f"Expected {NUM_CHANNELS} channel values, got {len(vector)}")
        with self._lock:
            now = self._clock()
            if self._t0 is None:
                self._t0 = now
            writer = self._writer if self._writer is not None else self._open()
            writer.writerow([f"{now - self._t0:.6f}", *(f"{value:.1f}" for value in vector)])
            self._rows += 1

    def set_metadata(self, metadata: Dict[str, str]) -> None:
        if not metadata:
            return
        line = "# " + " ".join(f"{key}={value}" for key, value in metadata.items())
        with self._lock:
            if self._writer is None:
                self._pending_metadata.append(line)
                return
            if self._file_handle is not None:
                self._file_handle.write(line + "\n")

    def flush(self) -> None:
        with self._lock:
            if self._file_handle is not None:
                self._file_handle.flush()

    def close(self) -> None:
        with self._lock:
            if self._file_handle:
                self._file_handle.close()
                self._file_handle = None
                self._writer = None

    def _open(self) -> Any:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file_handle = self.path.open("w", newline="", encoding="utf-8")
        for line in self._pending_metadata:
            self._file_handle.write(line + "\n")
        self._pending_metadata.clear()
        writer = csv.writer(self._file_handle)
        writer.writerow(FIELDNAMES)
        self._writer = writer
        return writer


def load_recording(path: str | Path) -> pd.DataFrame:
    """Load a recording written by :class:`CsvRecorder`.

    Parameters
    ----------
    path:
        CSV file with a ``t_s`` column and one column per channel label.
        ``#`` metadata lines are skipped.

    Returns
    -------
    pandas.DataFrame
        One row per channel vector, float columns in channel-label order.
    """

    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(path)
    df = pd.read_csv(path, comment="#")
    missing = [name for name in FIELDNAMES if name not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")
    return df[FIELDNAMES].astype(float)


def read_metadata(path: str | Path) -> Dict[str, str]:
    metadata: Dict[str, str] = {}
    with Path(path).open("r", encoding="utf-8") as fh:
        for line in fh:
            if not line.startswith("#"):
                break
            for token in line[1:].split():
                if "=" in token:
                    key, value = token.split("=", 1)
                    metadata[key] = value
    return metadata
