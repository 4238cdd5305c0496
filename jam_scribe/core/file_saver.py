"""Durable local storage for recorded sessions."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Protocol


class FileSaver(Protocol):
    def write_file(self, file_name: str, data: bytes) -> Path:
        """Persist *data* and return where it was written."""
        ...


class LocalFileSaver:
    """Write files under a base directory, fsync'd before returning."""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)

    def path_for(self, file_name: str) -> Path:
        return self.base_dir / file_name

    def write_file(self, file_name: str, data: bytes) -> Path:
        path = self.path_for(file_name)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        return path
