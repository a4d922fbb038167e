"""
Generation tokens and duplicate suppression for in-flight async work.

Every user-driven selection or search calls `issue()` on its scope's guard.
Work spawned for that generation captures the returned token and calls
`check(token)` right before it mutates shared state; a superseded token
raises `StaleResultDiscarded`, which the task boundary drops silently.
Issuing a new generation also cancels the tasks of the previous one.
"""
import asyncio
import logging
from contextlib import contextmanager
from typing import Any, Coroutine, Hashable, Iterator, Optional

from starfield.errors import StaleResultDiscarded
from starfield.telemetry import STALE_RESULTS_TOTAL

logger = logging.getLogger(__name__)


class GenerationGuard:
    def __init__(self, scope: str) -> None:
        self.scope = scope
        self._generation = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def current(self) -> int:
        return self._generation

    def issue(self) -> int:
        self._generation += 1
        self.cancel_pending()
        return self._generation

    def is_current(self, token: int) -> bool:
        return token == self._generation

    def check(self, token: int) -> None:
        if token != self._generation:
            STALE_RESULTS_TOTAL.labels(scope=self.scope).inc()
            raise StaleResultDiscarded(
                f"{self.scope}: generation {token} superseded by {self._generation}"
            )

    def spawn(self, coro: Coroutine[Any, Any, Any], token: Optional[int] = None) -> asyncio.Task:
        """
        Run `coro` as a task owned by the current generation. Stale results
        and cancellation end the task quietly; anything else is logged.
        """
        token = self._generation if token is None else token
        task = asyncio.create_task(self._run(coro, token))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, coro: Coroutine[Any, Any, Any], token: int) -> Any:
        try:
            return await coro
        except StaleResultDiscarded:
            logger.debug("%s: dropped stale result for generation %d", self.scope, token)
        except asyncio.CancelledError:
            logger.debug("%s: generation %d cancelled", self.scope, token)
        except Exception:
            logger.exception("%s: task for generation %d failed", self.scope, token)
        return None

    def cancel_pending(self) -> int:
        cancelled = 0
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        return cancelled

    @property
    def pending(self) -> int:
        return sum(1 for t in self._tasks if not t.done())

    async def drain(self) -> None:
        """Wait for every owned task to settle (tests and shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class InFlightRegistry:
    """While a fetch for key K is outstanding, a second request for K is a no-op."""

    def __init__(self) -> None:
        self._keys: set[Hashable] = set()

    @contextmanager
    def claim(self, key: Hashable) -> Iterator[bool]:
        if key in self._keys:
            yield False
            return
        self._keys.add(key)
        try:
            yield True
        finally:
            self._keys.discard(key)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._keys
