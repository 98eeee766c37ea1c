"""
Image Handles and their Lifecycle

A Handle is an opaque reference to one image buffer (source, preview or
result). The ResourceLifecycleManager hands them out and is the only place
that frees them, so every handle is released exactly once.
"""

import uuid
from enum import Enum
from typing import Dict, List, Optional

from cutout.core.logging import get_logger
from cutout.core.metrics import record_handle_acquired, record_handle_released

logger = get_logger(__name__)


class HandleKind(str, Enum):
    """What a handle's buffer is used for."""
    SOURCE = "source"     # Compressed input, fed to every transform attempt
    PREVIEW = "preview"   # Uncompressed upload, display only
    RESULT = "result"     # Transform output


class Handle:
    """Reference to an image buffer owned by one Job field."""

    def __init__(self, handle_id: str, kind: HandleKind, data: bytes, content_type: str):
        self.id = handle_id
        self.kind = kind
        self.content_type = content_type
        self.size = len(data)
        self._data: Optional[bytes] = data

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise RuntimeError(f"Handle {self.id} ({self.kind.value}) has been released")
        return self._data

    def __repr__(self) -> str:
        state = "released" if self.released else f"{self.size} bytes"
        return f"<Handle {self.kind.value} {self.id} {state}>"


class ResourceLifecycleManager:
    """
    Tracks live handles and releases them exactly once.

    release() is idempotent. replace() is the only sanctioned way to swap a
    handle held in a Job field: it releases the current one and returns the
    new one for assignment.
    """

    def __init__(self):
        self._live: Dict[str, Handle] = {}

    def acquire(
        self,
        data: bytes,
        kind: HandleKind,
        content_type: str = "application/octet-stream"
    ) -> Handle:
        """Wrap a buffer in a new tracked handle."""
        handle = Handle(uuid.uuid4().hex, kind, data, content_type)
        self._live[handle.id] = handle
        record_handle_acquired(kind.value)
        return handle

    def release(self, handle: Optional[Handle]) -> bool:
        """
        Release a handle.

        Returns:
            True if this call freed the buffer, False for None or an
            already-released handle.
        """
        if handle is None or handle.released:
            return False

        self._live.pop(handle.id, None)
        self._free(handle)
        record_handle_released(handle.kind.value)
        logger.debug("handle_released", handle_id=handle.id, kind=handle.kind.value)
        return True

    def replace(self, current: Optional[Handle], new: Optional[Handle]) -> Optional[Handle]:
        """Release `current` (unless it is `new` itself) and return `new`."""
        if current is not None and current is not new:
            self.release(current)
        return new

    def release_all(self) -> int:
        """Release every handle still live. Returns how many were freed."""
        count = 0
        for handle in list(self._live.values()):
            if self.release(handle):
                count += 1
        return count

    def is_live(self, handle: Optional[Handle]) -> bool:
        return handle is not None and handle.id in self._live

    @property
    def live_count(self) -> int:
        return len(self._live)

    def live_handles(self) -> List[Handle]:
        return list(self._live.values())

    def _free(self, handle: Handle):
        """Drop the buffer. Override to hook into external buffer owners."""
        handle._data = None
