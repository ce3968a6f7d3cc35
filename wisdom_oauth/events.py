"""Event primitives shared by the auth flow and its host.

Provides a small typed event emitter (sync or async listeners), the
redirect URI event source the host feeds, and a cancellation token.
"""

# pylint: disable=logging-too-many-args

from __future__ import annotations

import asyncio
import inspect
import logging
import threading

from collections.abc import Callable
from typing import Any, Generic, TypeVar


logger = logging.getLogger("wisdom_oauth.auth")

T = TypeVar("T")

# Listener functions (sync or async)
Listener = Callable[[T], Any]


class Disposable:
    """Handle returned by ``EventEmitter.subscribe``.

    Calling ``dispose()`` more than once is a no-op.
    """

    def __init__(self, on_dispose: Callable[[], None]) -> None:
        """Initialize the disposable."""
        self._on_dispose: Callable[[], None] | None = on_dispose

    @property
    def is_disposed(self) -> bool:
        """Whether the subscription has been released."""
        return self._on_dispose is None

    def dispose(self) -> None:
        """Release the subscription."""
        on_dispose, self._on_dispose = self._on_dispose, None
        if on_dispose is not None:
            on_dispose()


class EventEmitter(Generic[T]):
    """Typed multi-listener event source.

    Listeners run synchronously in ``fire`` on the calling thread. Async
    listeners are scheduled on the running event loop. Listener errors
    are logged and never propagate to the caller of ``fire``.
    """

    def __init__(self) -> None:
        """Initialize the emitter."""
        self._listeners: list[Listener[T]] = []
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Future[Any]] = set()

    @property
    def listener_count(self) -> int:
        """Number of active listeners."""
        with self._lock:
            return len(self._listeners)

    def subscribe(self, listener: Listener[T]) -> Disposable:
        """Register a listener.

        Parameters
        ----------
        listener : callable
            Called with each fired value. May be sync or async.

        Returns
        -------
        Disposable
            Handle that removes the listener when disposed.
        """
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return Disposable(_remove)

    def fire(self, value: T) -> None:
        """Deliver ``value`` to every registered listener."""
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                result = listener(value)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception:
                logger.exception("Event listener %r failed", listener)

    def _on_task_done(self, task: asyncio.Future[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Async event listener failed: %s", task.exception())

    def dispose(self) -> None:
        """Remove all listeners."""
        with self._lock:
            self._listeners.clear()


class UriEventHandler(EventEmitter[str]):
    """Event source for inbound redirect URIs.

    The host calls ``handle_uri`` whenever the browser redirects back
    to the application.
    """

    def handle_uri(self, uri: str) -> None:
        """Fire a redirect URI to all listeners."""
        logger.debug("Redirect URI received")
        self.fire(uri)


class CancellationToken:
    """Read side of a cancellation signal."""

    def __init__(self) -> None:
        """Initialize an un-cancelled token."""
        self._cancelled = False
        self.on_cancellation_requested: EventEmitter[None] = EventEmitter()

    @property
    def is_cancellation_requested(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancelled


class CancellationTokenSource:
    """Owner of a ``CancellationToken`` that can request cancellation."""

    def __init__(self) -> None:
        """Initialize the source with a fresh token."""
        self.token = CancellationToken()

    def cancel(self) -> None:
        """Request cancellation. Listeners are notified once."""
        if self.token._cancelled:  # noqa: SLF001
            return
        self.token._cancelled = True  # noqa: SLF001
        self.token.on_cancellation_requested.fire(None)

    def dispose(self) -> None:
        """Drop all cancellation listeners."""
        self.token.on_cancellation_requested.dispose()
