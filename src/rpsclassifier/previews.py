"""In-memory preview blobs addressed by opaque handles.

A handle is the server-side counterpart of a browser object-URL: it is owned
by one session and must be released when the preview is replaced or the
session ends. Releasing twice is a no-op.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreviewBlob:
    """Stored preview bytes and their content type."""

    data: bytes
    content_type: str


class PreviewHandle:
    """Reference to a stored preview. release() is idempotent."""

    def __init__(self, store: PreviewStore, handle_id: str) -> None:
        self._store = store
        self._handle_id = handle_id
        self._released = False
        self._lock = threading.Lock()

    @property
    def handle_id(self) -> str:
        return self._handle_id

    @property
    def released(self) -> bool:
        return self._released

    @property
    def url(self) -> str:
        return f"/previews/{self._handle_id}"

    def release(self) -> bool:
        """Free the stored blob. Returns False if it was already released."""
        with self._lock:
            if self._released:
                return False
            self._released = True
        self._store.revoke(self._handle_id)
        return True

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"PreviewHandle({self._handle_id!r}, {state})"


class PreviewStore:
    """Thread-safe map of handle ids to preview blobs."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blobs: dict[str, PreviewBlob] = {}

    def create(self, data: bytes, content_type: str) -> PreviewHandle:
        """Store a blob and return a fresh handle to it."""
        handle_id = secrets.token_urlsafe(16)
        with self._lock:
            self._blobs[handle_id] = PreviewBlob(data=data, content_type=content_type)
        logger.debug("Created preview %s (%s bytes)", handle_id, len(data))
        return PreviewHandle(self, handle_id)

    def get(self, handle_id: str) -> PreviewBlob:
        """Return a stored blob.

        Raises:
            KeyError: If the handle is unknown or released.
        """
        with self._lock:
            try:
                return self._blobs[handle_id]
            except KeyError:
                raise KeyError(f"Unknown preview: {handle_id}") from None

    def revoke(self, handle_id: str) -> None:
        """Drop a blob; unknown ids are ignored."""
        with self._lock:
            removed = self._blobs.pop(handle_id, None)
        if removed is not None:
            logger.debug("Released preview %s", handle_id)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._blobs)

    def clear(self) -> None:
        with self._lock:
            self._blobs.clear()
