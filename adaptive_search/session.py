"""Search session tracking for click and rating attribution."""

import time
import uuid
from typing import Optional

from .models import normalize_text


def generate_session_id() -> str:
    return f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class SessionTracker:
    """Holds a session id and the most recent query issued in the session."""

    def __init__(self, session_id: Optional[str] = None):
        self.session_id = session_id or generate_session_id()
        self._current_query: Optional[str] = None

    @property
    def current_query(self) -> Optional[str]:
        return self._current_query

    def begin_query(self, query: str) -> Optional[str]:
        """Make query the attribution target; an empty query clears it."""
        self._current_query = normalize_text(query) or None
        return self._current_query

    def __repr__(self) -> str:
        return f"SessionTracker(session_id={self.session_id!r}, current_query={self._current_query!r})"


__all__ = ["SessionTracker", "generate_session_id"]
