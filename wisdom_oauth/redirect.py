"""Bridge an externally delivered event into a single awaited result.

``EventWaiter`` subscribes to an ``EventEmitter`` and lets an adapter
decide, per event, whether to resolve or reject a future. The first
settlement wins; later events are ignored. The subscription is released
on every settlement path, and ``cancel()`` releases it synchronously.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import inspect
import logging

from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .exceptions import AuthFlowCancelled


if TYPE_CHECKING:
    from .events import EventEmitter


logger = logging.getLogger("wisdom_oauth.auth")

T = TypeVar("T")
R = TypeVar("R")

# (event, resolve, reject) -> None or an awaitable
PromiseAdapter = Callable[[T, Callable[[R], None], Callable[[BaseException], None]], Any]


class EventWaiter(Generic[T, R]):
    """One-shot, cancellable wait on an event source.

    Must be created from within a running event loop. Events may be
    fired from any thread; they are handled on the owning loop.

    Parameters
    ----------
    source : EventEmitter
        The event source to subscribe to.
    adapter : PromiseAdapter
        ``adapter(event, resolve, reject)``; may be sync or async. An
        exception raised by the adapter rejects the waiter.
    """

    def __init__(self, source: EventEmitter[T], adapter: PromiseAdapter[T, R]) -> None:
        """Subscribe to ``source`` and create the pending future."""
        self._loop = asyncio.get_running_loop()
        self._adapter = adapter
        self._pending: set[asyncio.Future[Any]] = set()
        self.future: asyncio.Future[R] = self._loop.create_future()
        self._subscription = source.subscribe(self._on_event)
        self.future.add_done_callback(self._on_done)

    @property
    def is_subscribed(self) -> bool:
        """Whether the waiter still listens to its event source."""
        return not self._subscription.is_disposed

    def __await__(self) -> Any:
        return self.future.__await__()

    def cancel(self, reason: str = "Cancelled") -> None:
        """Reject the waiter if still pending and release the subscription."""
        self._reject(AuthFlowCancelled(reason))
        self._release()

    def _on_event(self, value: T) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._handle(value)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._handle, value)

    def _handle(self, value: T) -> None:
        if self.future.done():
            return
        try:
            result = self._adapter(value, self._resolve, self._reject)
        except Exception as exc:  # noqa: BLE001
            self._reject(exc)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._pending.add(task)
            task.add_done_callback(self._on_adapter_done)

    def _on_adapter_done(self, task: asyncio.Future[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._reject(exc)

    def _resolve(self, value: R) -> None:
        if not self.future.done():
            self.future.set_result(value)
            self._release()

    def _reject(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)
            self._release()

    def _release(self) -> None:
        self._subscription.dispose()
        for task in list(self._pending):
            task.cancel()

    def _on_done(self, future: asyncio.Future[R]) -> None:
        self._release()
        # Mark the exception as retrieved; losers of a race are never awaited
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Event wait settled with %s", type(future.exception()).__name__)


def wait_for_event(source: EventEmitter[T], adapter: PromiseAdapter[T, R]) -> EventWaiter[T, R]:
    """Start waiting on ``source`` with ``adapter``.

    Parameters
    ----------
    source : EventEmitter
        The event source.
    adapter : PromiseAdapter
        Decides how each event settles the wait.

    Returns
    -------
    EventWaiter
        The pending waiter; await it or its ``future``.
    """
    return EventWaiter(source, adapter)
