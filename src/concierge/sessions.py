"""Per-conversation sessions with a fixed time-to-live.

A session in ``AWAITING_AUDIO`` routes the conversation's next audio message
to the transcription handler instead of the command router. Expiry is
observed either lazily on access or by the background sweep; whichever sees
it first deletes the entry, under the store lock.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from concierge.errors import SessionExpired

logger = logging.getLogger(__name__)

DEFAULT_TTL = 300.0  # 5 minutes


class SessionMode(Enum):
    """What a conversation is waiting for."""
    IDLE = "idle"
    AWAITING_AUDIO = "awaiting_audio"


@dataclass
class Session:
    conversation_id: str
    mode: SessionMode
    created_at: float
    params: dict[str, str] = field(default_factory=dict)

    def is_expired(self, now: float, ttl: float) -> bool:
        return now - self.created_at >= ttl


class SessionStore:
    """Keyed session store; at most one session per conversation."""

    def __init__(self, ttl: float = DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._sweep_task: asyncio.Task | None = None
        self._expired_count = 0
        self._consumed_count = 0
        self._cancelled_count = 0

    async def put(
        self,
        conversation_id: str,
        mode: SessionMode,
        params: dict[str, str] | None = None,
    ) -> Session:
        """Create (or replace) the conversation's session with a fresh TTL."""
        session = Session(
            conversation_id=conversation_id,
            mode=mode,
            created_at=self._clock(),
            params=dict(params or {}),
        )
        async with self._lock:
            self._sessions[conversation_id] = session
        logger.debug(f"Session {conversation_id} -> {mode.value}")
        return session

    async def get(self, conversation_id: str) -> Session | None:
        """Return the live session, if any.

        Raises:
            SessionExpired: the session had expired; it has now been deleted.
                Raised only once, subsequent calls return None.
        """
        async with self._lock:
            session = self._sessions.get(conversation_id)
            if session is None:
                return None
            if session.is_expired(self._clock(), self.ttl):
                del self._sessions[conversation_id]
                self._expired_count += 1
                logger.info(f"Session {conversation_id} expired")
                raise SessionExpired(conversation_id)
            return session

    async def consume(self, conversation_id: str, mode: SessionMode) -> Session | None:
        """Atomically take the session if it is live and in ``mode``.

        Returns None (and leaves the store untouched) when there is no
        session or it is in another mode.

        Raises:
            SessionExpired: the session had expired; it has been deleted.
        """
        async with self._lock:
            session = self._sessions.get(conversation_id)
            if session is None:
                return None
            if session.is_expired(self._clock(), self.ttl):
                del self._sessions[conversation_id]
                self._expired_count += 1
                raise SessionExpired(conversation_id)
            if session.mode != mode:
                return None
            del self._sessions[conversation_id]
            self._consumed_count += 1
            return session

    async def cancel(self, conversation_id: str) -> Session | None:
        """Delete the conversation's session; returns it if there was one."""
        async with self._lock:
            session = self._sessions.pop(conversation_id, None)
        if session is not None:
            self._cancelled_count += 1
            logger.info(f"Session {conversation_id} cancelled")
        return session

    async def sweep(self) -> int:
        """Delete every expired session. Returns how many were removed."""
        removed = 0
        async with self._lock:
            now = self._clock()
            for conversation_id in list(self._sessions):
                if self._sessions[conversation_id].is_expired(now, self.ttl):
                    del self._sessions[conversation_id]
                    removed += 1
        if removed:
            self._expired_count += removed
            logger.info(f"Swept {removed} expired session(s)")
        return removed

    def __len__(self) -> int:
        return len(self._sessions)

    # --- Background sweep ---

    async def _sweep_loop(self, interval: float) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Session sweep error: {e}")

    def start_sweeper(self, interval: float = 30.0) -> None:
        """Start the periodic sweep on the running loop."""
        if self._running:
            return
        self._running = True
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval))
        logger.info(f"Session sweeper started (every {interval:.0f}s, ttl {self.ttl:.0f}s)")

    async def stop_sweeper(self) -> None:
        """Stop the periodic sweep."""
        self._running = False
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        logger.info("Session sweeper stopped")

    def get_stats(self) -> dict[str, Any]:
        """Get session store statistics."""
        return {
            "active": len(self._sessions),
            "ttl_seconds": self.ttl,
            "expired": self._expired_count,
            "consumed": self._consumed_count,
            "cancelled": self._cancelled_count,
            "sweeper_running": self._running,
        }
