"""
In-memory session store for the lending wizard.

Each browser holds one session id (cookie); the store maps it to a
``LendingSession`` with a fixed time-to-live. Sessions are lost on restart.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from lending_desk.config import settings
from lending_desk.models import Book, Loan, Student

logger = logging.getLogger(__name__)

BORROW = "borrow"
RETURN = "return"
EXTEND = "extend"

INITIAL = "initial"
BOOK_FOUND = "book_found"
NAME_REQUEST = "name_request"
CONFIRM_PERIOD = "confirm_period"
SHOW_RULES = "show_rules"
CHECK_DEADLINE = "check_deadline"
LOANS_LISTED = "loans_listed"
COMPLETED = "completed"


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class LendingSession:
    """Selections accumulated by one in-progress flow."""

    session_id: str
    flow: str
    step: str = INITIAL
    book: Optional[Book] = None
    student: Optional[Student] = None
    loan: Optional[Loan] = None
    created_at: datetime = field(default_factory=datetime.now)

    def has(self, *names: str) -> bool:
        return all(getattr(self, name) is not None for name in names)


class SessionStore:
    """Thread-safe session map with per-entry expiry and a size cap."""

    def __init__(self, ttl_seconds: Optional[int] = None, max_entries: Optional[int] = None):
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
        self.max_entries = max_entries if max_entries is not None else settings.session_max_entries
        self._sessions: Dict[str, Tuple[LendingSession, datetime]] = {}
        self._lock = threading.RLock()
        self.stats = {"created": 0, "destroyed": 0, "expired": 0}

    def get(self, session_id: Optional[str]) -> Optional[LendingSession]:
        """Return the live session, or None if absent or expired."""
        if not session_id:
            return None
        with self._lock:
            entry = self._sessions.get(session_id)
            if not entry:
                return None
            session, expires_at = entry
            if datetime.now() >= expires_at:
                del self._sessions[session_id]
                self.stats["expired"] += 1
                logger.info(f"Session {session_id[:8]} expired")
                return None
            return session

    def save(self, session: LendingSession) -> None:
        with self._lock:
            if session.session_id not in self._sessions:
                self.stats["created"] += 1
            expires_at = session.created_at + timedelta(seconds=self.ttl_seconds)
            self._sessions[session.session_id] = (session, expires_at)

            if len(self._sessions) > self.max_entries:
                # Drop the oldest tenth
                by_expiry = sorted(self._sessions.items(), key=lambda item: item[1][1])
                for key, _ in by_expiry[: max(1, self.max_entries // 10)]:
                    self._sessions.pop(key, None)
                logger.warning(f"Session store over capacity; evicted down to {len(self._sessions)}")

    def start(self, session_id: str, flow: str) -> LendingSession:
        """Replace whatever the id held with a fresh session for ``flow``."""
        session = LendingSession(session_id=session_id, flow=flow)
        with self._lock:
            self._sessions.pop(session_id, None)
            self.save(session)
        return session

    def pop(self, session_id: Optional[str]) -> Optional[LendingSession]:
        """Remove and return the live session atomically (used to claim terminal steps)."""
        with self._lock:
            session = self.get(session_id)
            if session is not None:
                del self._sessions[session_id]
                self.stats["destroyed"] += 1
            return session

    def destroy(self, session_id: Optional[str]) -> bool:
        return self.pop(session_id) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def get_stats(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        stats["active"] = len(self)
        stats["ttl_seconds"] = self.ttl_seconds
        return stats
