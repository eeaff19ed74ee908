"""Cooperative cancellation shared by the bridge and consumer loops."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Awaitable
from contextlib import suppress
from typing import TypeVar

import structlog

logger = structlog.get_logger()

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)

T = TypeVar("T")


class StopToken:
    """A one-shot stop signal every blocking step of a loop observes."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def reason(self) -> str | None:
        return self._reason

    def set(self, reason: str = "requested") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait up to *timeout* seconds; return whether the token is set."""
        if timeout is None:
            await self._event.wait()
            return True
        with suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout)
        return self._event.is_set()


async def unless_stopped(
    work: Awaitable[T], stop: StopToken | None
) -> tuple[bool, T | None]:
    """Await *work* unless *stop* fires first.

    Returns ``(True, result)`` when *work* finished and ``(False, None)`` when
    it was cancelled because the token was set. Errors from *work* propagate.
    """
    if stop is None:
        return True, await work
    task = asyncio.ensure_future(work)
    stopped = asyncio.ensure_future(stop.wait())
    try:
        await asyncio.wait({task, stopped}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopped.cancel()
        if not task.done():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
    if task.cancelled():
        return False, None
    return True, task.result()


def install_signal_handlers(token: StopToken) -> None:
    """Set *token* on SIGINT / SIGTERM for the running event loop."""
    loop = asyncio.get_running_loop()

    def _shutdown(signum: signal.Signals) -> None:
        logger.info("relay.shutdown_signal", signal=signum.name)
        token.set(f"signal {signum.name}")

    for sig in _SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _shutdown, sig)


def remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in _SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
