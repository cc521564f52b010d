"""Cancellation signals, deadlines and request-scoped values passed to tasks.

A context is handed to every task run by the worker pool, the scheduler and
the pipeline. Cancelling a context cancels every context derived from it;
a context with a deadline cancels itself once the deadline passes.
"""

from __future__ import annotations

import threading
import time
import weakref
from typing import Any, Hashable, Optional


class ContextError(Exception):
    """Base class for the reasons a context has ended."""


class Cancelled(ContextError):
    """The context was cancelled explicitly."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(ContextError):
    """The context's deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)


_NO_KEY = object()


class Context:
    """A cancellable scope carrying an optional deadline and a key/value pair.

    Deadlines are expressed on the ``time.monotonic()`` clock.
    """

    def __init__(
        self,
        parent: Optional["Context"] = None,
        *,
        deadline: Optional[float] = None,
        key: Any = _NO_KEY,
        value: Any = None,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value
        self._lock = threading.Lock()
        self._event = threading.Event()
        self._error: Optional[ContextError] = None
        self._children: "weakref.WeakSet[Context]" = weakref.WeakSet()
        self._timer: Optional[threading.Timer] = None

        inherited = parent.deadline() if parent is not None else None
        if deadline is None:
            self._deadline = inherited
        elif inherited is None:
            self._deadline = deadline
        else:
            self._deadline = min(deadline, inherited)

        if parent is not None:
            parent._attach(self)

        if deadline is not None and not self._event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._cancel(DeadlineExceeded())
            else:
                timer = threading.Timer(remaining, self._cancel, args=(DeadlineExceeded(),))
                timer.daemon = True
                with self._lock:
                    if self._error is None:
                        self._timer = timer
                        timer.start()

    def _attach(self, child: "Context") -> None:
        with self._lock:
            error = self._error
            if error is None:
                self._children.add(child)
        if error is not None:
            child._cancel(error)

    def _cancel(self, error: ContextError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            children = list(self._children)
            self._children.clear()
            timer, self._timer = self._timer, None
        self._event.set()
        if timer is not None:
            timer.cancel()
        for child in children:
            child._cancel(error)

    def cancel(self) -> None:
        """Cancel this context and everything derived from it."""
        self._cancel(Cancelled())

    def done(self) -> bool:
        """Return True once the context has been cancelled or has expired."""
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context ends or ``timeout`` seconds pass; return done()."""
        return self._event.wait(timeout)

    def err(self) -> Optional[ContextError]:
        """The reason the context ended, or None while it is still live."""
        with self._lock:
            return self._error

    def value(self, key: Hashable) -> Any:
        """Look ``key`` up in this context and its ancestors; None if absent."""
        ctx: Optional[Context] = self
        while ctx is not None:
            if ctx._key is not _NO_KEY and ctx._key == key:
                return ctx._value
            ctx = ctx._parent
        return None

    def deadline(self) -> Optional[float]:
        """The monotonic time at which this context expires, or None."""
        return self._deadline


def background() -> Context:
    """A fresh root context with no deadline and no values."""
    return Context()


def with_cancel(parent: Optional[Context]) -> Context:
    """A child of ``parent`` that can be cancelled on its own."""
    return Context(parent)


def with_timeout(parent: Optional[Context], timeout: float) -> Context:
    """A child of ``parent`` that expires ``timeout`` seconds from now."""
    return Context(parent, deadline=time.monotonic() + timeout)


def with_value(parent: Optional[Context], key: Hashable, value: Any) -> Context:
    """A child of ``parent`` carrying ``key`` mapped to ``value``."""
    return Context(parent, key=key, value=value)