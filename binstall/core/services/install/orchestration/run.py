"""
L5 Orchestration: Install run handle.

``InstallRun`` is both the event stream and the cancel handle of one
install. The producer side (the orchestrator) calls ``emit``,
``complete`` and ``fail``; the consumer iterates::

    run = install({"force_reinstall": True})
    async for event in run:
        print(event.id)

Iteration ends on ``complete``; a terminal error is raised from the
iterator. Exactly one terminal signal is delivered, and nothing is
delivered after it or after ``cancel()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from typing import Any

from binstall.core.models.event import ProgressEvent

logger = logging.getLogger(__name__)

_COMPLETE = object()
_CANCELLED = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        self.error = error


Driver = Callable[["InstallRun"], Coroutine[Any, Any, None]]


class InstallRun:
    """Single-producer, single-consumer channel with cooperative cancellation.

    Work does not start until the first ``__anext__`` (or an explicit
    ``start()`` from inside a running event loop).
    """

    def __init__(self, driver: Driver, *, name: str = "install") -> None:
        self._driver = driver
        self._name = name
        self._queue: asyncio.Queue[Any] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._started = False
        self._closed = False
        self._cancelled = False
        self._finished = False

    def __repr__(self) -> str:
        if self._cancelled:
            state = "cancelled"
        elif self._closed:
            state = "closed"
        elif self._started:
            state = "running"
        else:
            state = "pending"
        return f"<InstallRun {self._name} {state}>"

    # ── State ────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        """True once a terminal signal was issued or the run was cancelled."""
        return self._closed

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    # ── Lifecycle ────────────────────────────────────────────────

    def start(self) -> None:
        """Start the driver. Must be called with a running event loop."""
        if self._started:
            return
        self._started = True
        self._queue = asyncio.Queue()
        if self._cancelled:
            self._queue.put_nowait(_CANCELLED)
            return
        self.spawn(self._drive(), name=f"{self._name}:driver")

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task[Any]:
        """Run *coro* as a task that ``cancel()`` will tear down."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        if self._cancelled:
            task.cancel()
        return task

    def cancel(self) -> None:
        """Stop every in-flight operation and suppress further events.

        Files already written are left in place.
        """
        if self._finished:
            return
        first = not self._cancelled
        self._cancelled = True
        self._closed = True
        for task in list(self._tasks):
            task.cancel()
        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue.put_nowait(_CANCELLED)
        if first:
            logger.debug("%s cancelled", self._name)

    async def aclose(self) -> None:
        self.cancel()

    async def _drive(self) -> None:
        try:
            await self._driver(self)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug("%s driver raised %r", self._name, e)
            self.fail(e)
        else:
            # A driver that returns without a terminal signal completes the run
            self.complete()

    # ── Producer side ────────────────────────────────────────────

    def emit(self, event: ProgressEvent) -> bool:
        """Queue *event* unless the run is closed. Returns whether it was queued."""
        if self._closed or self._queue is None:
            return False
        self._queue.put_nowait(event)
        return True

    def complete(self) -> None:
        if self._closed or self._queue is None:
            return
        self._closed = True
        self._queue.put_nowait(_COMPLETE)

    def fail(self, error: BaseException) -> None:
        if self._closed or self._queue is None:
            return
        self._closed = True
        self._queue.put_nowait(_Failure(error))

    # ── Consumer side ────────────────────────────────────────────

    def __aiter__(self) -> InstallRun:
        return self

    async def __anext__(self) -> ProgressEvent:
        if self._finished:
            raise StopAsyncIteration
        if not self._started:
            self.start()

        item = await self._queue.get()  # type: ignore[union-attr]
        if item is _COMPLETE or item is _CANCELLED:
            self._finished = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self._finished = True
            raise item.error
        return item

    async def wait(self) -> list[ProgressEvent]:
        """Drain the run and return every event (raises on terminal error)."""
        return [event async for event in self]
