"""Per-user selection/result state and the store that holds it.

Each session moves through idle -> file_selected -> predicting -> resulted
(or error). Selecting a file is allowed from any phase and always lands in
file_selected. Every prediction carries a sequence number; a completion is
applied only if its number is still current, so results of superseded
requests are dropped.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

from rpsclassifier.errors import NO_FILE_MESSAGE, PredictionInProgressError
from rpsclassifier.ml.classifier import format_scores

if TYPE_CHECKING:
    from rpsclassifier.previews import PreviewHandle, PreviewStore

logger = logging.getLogger(__name__)


class Phase(StrEnum):
    IDLE = "idle"
    FILE_SELECTED = "file_selected"
    PREDICTING = "predicting"
    RESULTED = "resulted"
    ERROR = "error"


_PREDICTABLE = frozenset({Phase.FILE_SELECTED, Phase.RESULTED, Phase.ERROR})


@dataclass(frozen=True)
class SelectedFile:
    """An uploaded image held until replaced or the session ends."""

    filename: str
    content_type: str
    data: bytes


class ClassifierSession:
    """Explicit state of one page user."""

    def __init__(self, session_id: str) -> None:
        self._session_id = session_id
        self._phase = Phase.IDLE
        self._file: SelectedFile | None = None
        self._preview: PreviewHandle | None = None
        self._message: str | None = None
        self._scores: list[float] | None = None
        self._sequence = 0
        self.last_seen = time.monotonic()

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def file(self) -> SelectedFile | None:
        return self._file

    @property
    def preview(self) -> PreviewHandle | None:
        return self._preview

    @property
    def message(self) -> str | None:
        return self._message

    @property
    def scores(self) -> list[float] | None:
        return self._scores

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def can_predict(self) -> bool:
        return self._phase in _PREDICTABLE

    @property
    def result_text(self) -> str | None:
        """Text shown after "Result:", or None when there is nothing to show."""
        if self._message is not None:
            return self._message
        if self._scores is not None:
            return format_scores(self._scores)
        return None

    def touch(self) -> None:
        self.last_seen = time.monotonic()

    def select_file(self, file: SelectedFile, preview: PreviewHandle) -> None:
        """Replace the selected file. Any in-flight prediction becomes stale."""
        previous = self._preview
        self._file = file
        self._preview = preview
        self._message = None
        self._scores = None
        self._sequence += 1
        self._phase = Phase.FILE_SELECTED
        if previous is not None and previous is not preview:
            previous.release()
        logger.debug("Session %s selected %s (seq=%s)", self._session_id, file.filename, self._sequence)

    def begin_prediction(self) -> int | None:
        """Enter the predicting phase and return its sequence number.

        Returns None, with the "select an image" message set, when no file is
        selected.

        Raises:
            PredictionInProgressError: If a prediction is already running.
        """
        if self._file is None:
            self._message = NO_FILE_MESSAGE
            self._scores = None
            return None
        if self._phase is Phase.PREDICTING:
            raise PredictionInProgressError(f"Session {self._session_id} is already predicting")

        self._sequence += 1
        self._phase = Phase.PREDICTING
        self._message = None
        self._scores = None
        return self._sequence

    def complete(self, sequence: int, scores: list[float]) -> bool:
        """Apply a prediction result; returns False if it is stale."""
        if not self._is_current(sequence):
            logger.info("Discarding stale result for session %s (seq=%s)", self._session_id, sequence)
            return False
        self._scores = list(scores)
        self._message = None
        self._phase = Phase.RESULTED
        return True

    def fail(self, sequence: int, message: str) -> bool:
        """Apply a prediction failure; returns False if it is stale."""
        if not self._is_current(sequence):
            logger.info("Discarding stale failure for session %s (seq=%s)", self._session_id, sequence)
            return False
        self._scores = None
        self._message = message
        self._phase = Phase.ERROR
        return True

    def teardown(self) -> None:
        """Release the preview and return to idle."""
        if self._preview is not None:
            self._preview.release()
        self._preview = None
        self._file = None
        self._message = None
        self._scores = None
        self._sequence += 1
        self._phase = Phase.IDLE

    def _is_current(self, sequence: int) -> bool:
        return sequence == self._sequence and self._phase is Phase.PREDICTING


class SessionStore:
    """Holds sessions by id and evicts the ones idle longer than the TTL."""

    def __init__(self, previews: PreviewStore, ttl: int = 1800) -> None:
        self._previews = previews
        self._ttl = ttl
        self._lock = threading.Lock()
        self._sessions: dict[str, ClassifierSession] = {}

    def create(self) -> ClassifierSession:
        session = ClassifierSession(secrets.token_urlsafe(16))
        with self._lock:
            self._sessions[session.session_id] = session
        logger.debug("Created session %s", session.session_id)
        return session

    def get(self, session_id: str) -> ClassifierSession:
        """Return a session and mark it as seen.

        Raises:
            KeyError: If the id is unknown or was evicted.
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise KeyError(f"Unknown session: {session_id}")
        session.touch()
        return session

    def get_or_create(self, session_id: str | None) -> ClassifierSession:
        if session_id is not None:
            try:
                return self.get(session_id)
            except KeyError:
                pass
        return self.create()

    def discard(self, session_id: str) -> bool:
        """Tear down and forget a session. Returns False if it was unknown."""
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.teardown()
        return True

    def evict_idle(self) -> int:
        """Tear down sessions not seen within the TTL; returns how many."""
        if self._ttl == 0:
            return 0

        now = time.monotonic()
        with self._lock:
            expired = [s for s in self._sessions.values() if (now - s.last_seen) > self._ttl]
            for session in expired:
                del self._sessions[session.session_id]
        for session in expired:
            session.teardown()
            logger.info("Evicted idle session %s", session.session_id)
        return len(expired)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def shutdown(self) -> None:
        """Tear down every session and drop any preview blobs left behind."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.teardown()
        self._previews.clear()
        logger.info("All sessions closed")
