"""
Result Export Storage

Writes processed images out of the engine (the "download" action). Only
export lives here: the engine itself keeps no state on disk.
"""

from abc import ABC, abstractmethod
from pathlib import Path


class IResultStore(ABC):
    """Interface for result export."""

    @abstractmethod
    async def save(self, data: bytes, filename: str) -> str:
        """
        Save a result and return where it went.

        Args:
            data: Encoded image bytes
            filename: Target file name, e.g. "photo_processed.png"

        Returns:
            Storage key/path of the saved file
        """
        pass

    @abstractmethod
    async def exists(self, storage_key: str) -> bool:
        pass


class LocalResultStore(IResultStore):
    """Local filesystem export."""

    def __init__(self, base_path: str = "./data/exports"):
        self.base_path = Path(base_path)

    def _unique_path(self, filename: str) -> Path:
        """Avoid clobbering earlier exports: photo_processed (1).png, ..."""
        path = self.base_path / filename
        counter = 1
        while path.exists():
            path = self.base_path / f"{Path(filename).stem} ({counter}){Path(filename).suffix}"
            counter += 1
        return path

    async def save(self, data: bytes, filename: str) -> str:
        self.base_path.mkdir(parents=True, exist_ok=True)
        path = self._unique_path(Path(filename).name)
        with open(path, "wb") as f:
            f.write(data)
        return str(path)

    async def exists(self, storage_key: str) -> bool:
        return Path(storage_key).exists()
