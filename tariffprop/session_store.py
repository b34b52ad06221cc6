"""
tariffprop.session_store — Thread-safe, bounded store of per-session engines.

Every editing session owns one TariffPropagation instance. Engines are
never shared between sessions, so one user's edits can never leak into
another's export.

Design contract:
    - Bounded by MAX_SESSIONS (default 64). Creating a session beyond the
      bound evicts the least-recently-used one.
    - get() refreshes recency; an unknown or evicted id returns None.
    - The store lock (a threading.Lock) guards the session map only. Each
      Session carries its own asyncio.Lock, which request handlers hold
      while touching the engine.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable

from tariffprop.engine import TariffPropagation

logger = logging.getLogger("tariffprop.sessions")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

MAX_SESSIONS: int = int(os.getenv("MAX_SESSIONS", "64"))
"""Maximum number of live sessions held in memory.
Controlled by MAX_SESSIONS env var. Default: 64."""


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

@dataclass
class Session:
    session_id: str
    engine: TariffPropagation
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------

class SessionStore:
    """Bounded LRU map of session id → Session.

    Usage::

        store = SessionStore(lambda: TariffPropagation().initialize(dataset=ds))
        session = store.create()
        async with session.lock:
            session.engine.pre_calculate_weights("CHN")
    """

    def __init__(
        self,
        factory: Callable[[], TariffPropagation],
        max_sessions: int | None = None,
    ) -> None:
        self._factory = factory
        self._max: int = max_sessions if max_sessions is not None else MAX_SESSIONS
        if self._max < 1:
            raise ValueError(f"max_sessions must be at least 1, got {self._max!r}")
        self._lock: threading.Lock = threading.Lock()
        self._sessions: OrderedDict[str, Session] = OrderedDict()

    def create(self) -> Session:
        """Create a session with a fresh engine, evicting the LRU one if full."""
        # Engine construction runs outside the lock.
        session = Session(session_id=uuid.uuid4().hex, engine=self._factory())

        with self._lock:
            while len(self._sessions) >= self._max:
                evicted_id, _ = self._sessions.popitem(last=False)
                logger.info(json.dumps({
                    "event": "session_evicted",
                    "session_prefix": evicted_id[:8],
                    "max_sessions": self._max,
                }))
            self._sessions[session.session_id] = session

        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                self._sessions.move_to_end(session_id)
            return session

    def drop(self, session_id: str) -> bool:
        """Remove one session. Returns False if it did not exist."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def clear(self) -> int:
        """Remove every session. Returns how many were removed."""
        with self._lock:
            count = len(self._sessions)
            self._sessions.clear()
            return count

    @property
    def session_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    @property
    def stats(self) -> dict[str, Any]:
        """Store statistics for diagnostics."""
        with self._lock:
            return {
                "max_sessions": self._max,
                "sessions_used": len(self._sessions),
                "countries_exported": sum(
                    len(s.engine.iso_list) for s in self._sessions.values()
                ),
            }
