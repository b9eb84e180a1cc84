"""Cancellation tokens, per-call timeouts and bounded polling.

Every external call made by the invoice pipeline or the fallback chain goes
through ``run_with_timeout`` so a hung call cannot block a conversation
forever, and a ``CancelToken`` can stop a run between steps.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, TypeVar

from concierge.errors import OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancelToken:
    """Cooperative cancellation signal shared by one run."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(f"operation cancelled: {self._reason}")

    async def wait(self) -> None:
        await self._event.wait()


async def run_with_timeout(
    awaitable: Awaitable[T],
    timeout: float | None,
    token: CancelToken | None = None,
    what: str = "operation",
) -> T:
    """Await ``awaitable`` bounded by ``timeout`` seconds and ``token``.

    Raises:
        OperationCancelled: on timeout or when the token fires first.
    """
    if token is not None and token.cancelled:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        token.raise_if_cancelled()

    task = asyncio.ensure_future(awaitable)
    if token is None:
        try:
            return await asyncio.wait_for(task, timeout=timeout)
        except asyncio.TimeoutError:
            raise OperationCancelled(f"{what} timed out after {timeout}s") from None

    cancel_waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, cancel_waiter},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        cancel_waiter.cancel()

    if task in done:
        return task.result()

    task.cancel()
    try:
        await task
    except (asyncio.CancelledError, Exception):
        pass
    if token.cancelled:
        raise OperationCancelled(f"{what} cancelled: {token.reason}")
    raise OperationCancelled(f"{what} timed out after {timeout}s")


async def poll_until(
    check: Callable[[], Awaitable[Any]],
    timeout: float,
    interval: float = 0.25,
    backoff: float = 2.0,
    max_interval: float = 2.0,
    token: CancelToken | None = None,
) -> Any:
    """Call ``check`` until it returns a truthy value or ``timeout`` elapses.

    The wait between checks starts at ``interval`` and grows by ``backoff``
    up to ``max_interval``. Check exceptions count as a miss.

    Returns:
        The first truthy check value, or None on timeout.
    """
    deadline = time.monotonic() + timeout
    delay = interval
    attempts = 0
    while True:
        if token is not None:
            token.raise_if_cancelled()
        attempts += 1
        try:
            value = await check()
        except Exception as e:
            logger.debug(f"Poll check failed (attempt {attempts}): {e}")
            value = None
        if value:
            return value

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.debug(f"Poll gave up after {attempts} attempts")
            return None
        await asyncio.sleep(min(delay, remaining))
        delay = min(delay * backoff, max_interval)
