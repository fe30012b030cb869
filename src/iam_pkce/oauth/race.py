"""First-settled-wins arbitration between asynchronous event sources."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Generic, TypeVar

from iam_pkce.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class Race(Generic[T]):
    """A one-shot result slot that several event sources compete to fill.

    The first ``resolve``/``reject`` wins; later calls return False and
    have no effect. Every resource registered with :meth:`on_release`
    (timers, pollers, DOM-like handles) is released exactly once, either
    when the race settles or when the waiter stops waiting.

    Must be created inside a running event loop.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._cleanups: list[Callable[[], object]] = []
        self._released = False

    @property
    def settled(self) -> bool:
        return self._future.done()

    @property
    def released(self) -> bool:
        return self._released

    def on_release(self, cleanup: Callable[[], object]) -> None:
        """Register a cleanup; runs immediately if the race is already released."""
        if self._released:
            self._run_cleanup(cleanup)
            return
        self._cleanups.append(cleanup)

    def resolve(self, value: T) -> bool:
        """Settle with a value. Returns False if the race was already settled."""
        if self._future.done():
            return False
        self._future.set_result(value)
        self._release()
        return True

    def reject(self, exc: BaseException) -> bool:
        """Settle with an exception. Returns False if the race was already settled."""
        if self._future.done():
            return False
        self._future.set_exception(exc)
        self._release()
        return True

    async def wait(self) -> T:
        """Wait for the winning outcome."""
        try:
            return await self._future
        finally:
            self._release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        cleanups, self._cleanups = self._cleanups, []
        for cleanup in reversed(cleanups):
            self._run_cleanup(cleanup)

    @staticmethod
    def _run_cleanup(cleanup: Callable[[], object]) -> None:
        try:
            cleanup()
        except Exception:
            logger.exception("Race cleanup failed")
