"""In-memory storage for image and video bytes behind opaque handles.

Nothing is written to disk; the store lives as long as the process. Every
handle handed out by acquire() must be given back to release() exactly once.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Dict, Tuple

from media_codec import MediaPayload, bytes_to_payload

log = logging.getLogger(__name__)

HANDLE_PREFIX = "blob:"


class MediaStore:
    def __init__(self) -> None:
        self._blobs: Dict[str, Tuple[bytes, str]] = {}
        self._lock = threading.Lock()

    def acquire(self, data: bytes, mime_type: str) -> str:
        handle = f"{HANDLE_PREFIX}{uuid.uuid4().hex}"
        with self._lock:
            self._blobs[handle] = (bytes(data), mime_type)
        log.debug("Acquired %s (%s, %d bytes)", handle, mime_type, len(data))
        return handle

    def open(self, handle: str) -> Tuple[bytes, str]:
        """Return ``(bytes, mime_type)``. Unknown or released handles raise KeyError."""
        with self._lock:
            return self._blobs[handle]

    def to_payload(self, handle: str) -> MediaPayload:
        data, mime_type = self.open(handle)
        return bytes_to_payload(data, mime_type)

    def release(self, handle: str) -> None:
        with self._lock:
            if handle not in self._blobs:
                raise KeyError(f"Handle {handle!r} is unknown or already released")
            del self._blobs[handle]
        log.debug("Released %s", handle)

    def release_all(self) -> int:
        with self._lock:
            count = len(self._blobs)
            self._blobs.clear()
        if count:
            log.info("Released %d remaining media handles", count)
        return count

    def __contains__(self, handle: object) -> bool:
        with self._lock:
            return handle in self._blobs

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)
