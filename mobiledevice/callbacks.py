"""Callback side table and disposal tokens for streaming operations."""

import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class Disposable:
    """Token returned by every streaming call.

    ``dispose()`` runs the release action at most once, however many times
    it is called and from whichever thread.
    """

    def __init__(self, action: Callable[[], None] | None = None):
        self._action = action
        self._lock = threading.Lock()
        self._disposed = False
        # failure that ended the stream early, set by the delivery thread
        self.error: Exception | None = None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            action, self._action = self._action, None
        if action is not None:
            action()

    def __enter__(self) -> "Disposable":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.dispose()


class CallbackRegistry:
    """Boxed callbacks keyed by an opaque integer token.

    A delivery thread looks a callback up by token before each invocation,
    so once a token is released no further deliveries happen.
    """

    def __init__(self) -> None:
        self._callbacks: dict[int, Callable[..., Any]] = {}
        self._cancelled: dict[int, threading.Event] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def register(self, callback: Callable[..., Any]) -> int:
        with self._lock:
            token = next(self._tokens)
            self._callbacks[token] = callback
            self._cancelled[token] = threading.Event()
        return token

    def get(self, token: int) -> Callable[..., Any] | None:
        with self._lock:
            return self._callbacks.get(token)

    def is_registered(self, token: int) -> bool:
        with self._lock:
            return token in self._callbacks

    def cancelled(self, token: int) -> threading.Event:
        """Event set once the token is released; delivery loops poll it."""
        with self._lock:
            event = self._cancelled.get(token)
        if event is None:
            event = threading.Event()
            event.set()
        return event

    def invoke(self, token: int, *args: Any) -> bool:
        """Call the callback registered under ``token``.

        Returns:
            False if the token was already released
        """
        callback = self.get(token)
        if callback is None:
            return False
        callback(*args)
        return True

    def release(self, token: int) -> bool:
        """Unregister ``token``; only the first release returns True."""
        with self._lock:
            callback = self._callbacks.pop(token, None)
            event = self._cancelled.pop(token, None)
        if event is not None:
            event.set()
        if callback is None:
            return False
        logger.debug("Released callback token %d", token)
        return True

    def disposable(self, token: int, on_dispose: Callable[[], None] | None = None) -> Disposable:
        """Token that releases ``token`` and then runs ``on_dispose``."""

        def action() -> None:
            self.release(token)
            if on_dispose is not None:
                on_dispose()

        return Disposable(action)

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)


# Shared by every service client in the process
registry = CallbackRegistry()
