"""Backend fallback chain: ordered, strictly sequential, first success wins.

Backends are interchangeable invokers for one task (e.g. speech-to-text).
They are tried in ascending priority order, one at a time; a failed backend
is never retried within the same run. Only when every backend has failed
does the caller see an error, carrying the last failure reason.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, TypeVar

from concierge.cancellation import CancelToken, run_with_timeout
from concierge.errors import ChainExhausted, OperationCancelled

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT")
ValueT = TypeVar("ValueT")


@dataclass(frozen=True)
class BackendResult(Generic[ValueT]):
    """Outcome of one backend invocation."""
    ok: bool
    value: ValueT | None = None
    error: str | None = None

    @classmethod
    def success(cls, value: ValueT) -> "BackendResult[ValueT]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> "BackendResult[ValueT]":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class BackendDescriptor(Generic[InputT, ValueT]):
    """Static configuration of one backend."""
    name: str
    priority: int
    invoke: Callable[[InputT], Awaitable[BackendResult[ValueT]]]
    timeout: float | None = None


@dataclass
class ChainOutcome(Generic[ValueT]):
    """Successful chain run: the value and which backend produced it."""
    value: ValueT
    service: str
    attempts: list[tuple[str, str]] = field(default_factory=list)  # (name, failure reason)


class FallbackChain:
    """Runs backends in priority order until one succeeds."""

    def __init__(self, default_timeout: float | None = None):
        self.default_timeout = default_timeout
        self._stats: dict[str, dict[str, Any]] = {}
        self._runs = 0
        self._exhausted = 0

    @staticmethod
    def order(backends: list[BackendDescriptor]) -> list[BackendDescriptor]:
        """Ascending priority; ties keep their configured order."""
        return sorted(backends, key=lambda b: b.priority)

    async def run(
        self,
        input: InputT,
        backends: list[BackendDescriptor[InputT, ValueT]],
        token: CancelToken | None = None,
    ) -> ChainOutcome[ValueT]:
        """Invoke ``backends`` one at a time until the first success.

        Raises:
            ChainExhausted: every backend failed (or the list was empty).
            OperationCancelled: the token fired; no further backend is tried.
        """
        self._runs += 1
        attempts: list[tuple[str, str]] = []

        for backend in self.order(backends):
            if token is not None:
                token.raise_if_cancelled()

            stats = self._stats.setdefault(
                backend.name, {"attempts": 0, "successes": 0, "failures": 0, "total_ms": 0.0}
            )
            stats["attempts"] += 1
            start = time.monotonic()
            logger.info(f"Trying backend {backend.name} (priority {backend.priority})")

            try:
                result = await run_with_timeout(
                    backend.invoke(input),
                    backend.timeout or self.default_timeout,
                    token,
                    what=f"backend {backend.name}",
                )
            except OperationCancelled as e:
                if token is not None and token.cancelled:
                    raise
                result = BackendResult.failure(str(e))
            except Exception as e:
                result = BackendResult.failure(f"{type(e).__name__}: {e}")
            finally:
                stats["total_ms"] += (time.monotonic() - start) * 1000

            if result.ok:
                stats["successes"] += 1
                logger.info(f"Backend {backend.name} succeeded")
                return ChainOutcome(value=result.value, service=backend.name, attempts=attempts)

            stats["failures"] += 1
            reason = result.error or "unknown error"
            attempts.append((backend.name, reason))
            logger.warning(f"Backend {backend.name} failed: {reason}")

        self._exhausted += 1
        last_reason = attempts[-1][1] if attempts else "no backends configured"
        raise ChainExhausted(last_reason, attempts)

    def get_stats(self) -> dict[str, Any]:
        """Get per-backend usage statistics."""
        return {
            "runs": self._runs,
            "exhausted": self._exhausted,
            "backends": {
                name: {
                    **s,
                    "avg_ms": round(s["total_ms"] / s["attempts"], 1) if s["attempts"] else 0,
                }
                for name, s in self._stats.items()
            },
        }
