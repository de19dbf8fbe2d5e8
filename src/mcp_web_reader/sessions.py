"""
Session tracking for the MCP Web URL Reader.

This module provides:
- Session: One admitted client conversation bound to its ProtocolHandler
- SessionStore: Lock-guarded mapping from session ID to Session

Concurrency discipline:
- Every read and write of the mapping happens under one `threading.Lock`;
  the lock is never held across an `await` or while a handler is closed.
- `put` completes before the gateway returns the new ID to any client.
- `remove` takes the entry out of the mapping immediately, so later lookups
  miss. The handler itself is released once no request holds a lease on
  the session (see `Session.lease`).
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from mcp_web_reader.logging import get_logger

if TYPE_CHECKING:
    from mcp_web_reader.handler import ProtocolHandler

logger = get_logger(__name__)


@dataclass
class Session:
    """
    An admitted session.

    Attributes:
        session_id: Opaque server-generated identifier.
        handler: The session's protocol handler (never shared).
        created_at: Creation time (UTC), for diagnostics.
    """

    session_id: str
    handler: ProtocolHandler
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _inflight: int = field(default=0, init=False, repr=False)
    _retired: bool = field(default=False, init=False, repr=False)

    @property
    def inflight(self) -> int:
        """Number of requests currently delegating to the handler."""
        return self._inflight

    @property
    def retired(self) -> bool:
        """Whether the session has been removed from its store."""
        return self._retired

    @property
    def age_seconds(self) -> float:
        """Seconds since the session was created."""
        return (datetime.now(UTC) - self.created_at).total_seconds()

    @contextmanager
    def lease(self) -> Iterator[ProtocolHandler]:
        """
        Mark a request as executing against this session's handler.

        If the session is retired while leases are held, the handler is
        closed when the last lease is released.

        Example:
            >>> with session.lease() as handler:
            ...     reply = await handler.handle_payload(payload)
        """
        with self._lock:
            self._inflight += 1
        try:
            yield self.handler
        finally:
            with self._lock:
                self._inflight -= 1
                release = self._retired and self._inflight == 0
            if release:
                self.handler.close()

    def retire(self) -> None:
        """
        Mark the session as removed and release the handler when idle.

        Idempotent.
        """
        with self._lock:
            if self._retired:
                return
            self._retired = True
            release = self._inflight == 0
        if release:
            self.handler.close()


class SessionStore:
    """
    Thread-safe mapping from session ID to Session.

    The store exclusively owns the mapping. It is created by the application
    factory and injected into the gateway, so tests can drive it directly.

    Example:
        >>> store = SessionStore()
        >>> store.put(Session("abc", handler))
        >>> store.get("abc").handler is handler
        True
        >>> _ = store.remove("abc")
        >>> store.get("abc") is None
        True
    """

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def get(self, session_id: str) -> Session | None:
        """Look up an active session, or None if absent or removed."""
        with self._lock:
            return self._sessions.get(session_id)

    def put(self, session: Session) -> None:
        """
        Add a session.

        Raises:
            ValueError: If the ID is already in use; an ID maps to exactly
                one handler for its lifetime.
        """
        with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session '{session.session_id}' already exists")
            self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Session | None:
        """
        Remove a session and retire it. Removing an absent ID is a no-op.

        Returns:
            The removed Session, or None if it was not present.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return None

        logger.info(
            "Session removed",
            extra={
                "session_id": session_id,
                "age_seconds": round(session.age_seconds, 3),
                "inflight": session.inflight,
            },
        )
        session.retire()
        return session

    def close_all(self) -> int:
        """
        Remove and retire every session (used at shutdown).

        Returns:
            Number of sessions closed.
        """
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.retire()
        return len(sessions)

    def session_ids(self) -> list[str]:
        """Return a snapshot of the active session IDs."""
        with self._lock:
            return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        with self._lock:
            return session_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
