"""Cancellable deadline token passed to every blocking pool operation.

A ``Context`` is cancelled explicitly with :meth:`Context.cancel`, when its
deadline passes, or when any ancestor is cancelled. Background loops sleep with
:meth:`Context.wait` so a shutdown interrupts them immediately.
"""

import threading
import time
import weakref

from runner_pool.errors import OperationCancelled


class Context:
    def __init__(self, timeout: float | None = None, parent: "Context | None" = None):
        self._event = threading.Event()
        self._children: weakref.WeakSet[Context] = weakref.WeakSet()
        self._lock = threading.Lock()
        self.parent = parent

        deadline = time.monotonic() + timeout if timeout is not None else None
        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self.deadline = deadline

        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "Context") -> None:
        with self._lock:
            self._children.add(child)
        if self._event.is_set():
            child.cancel()

    def child(self, timeout: float | None = None) -> "Context":
        return Context(timeout=timeout, parent=self)

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            children = list(self._children)
        for child in children:
            child.cancel()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def done(self) -> bool:
        return self._event.is_set() or self.expired()

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if the context finished meanwhile."""
        remaining = self.remaining()
        if remaining is not None:
            seconds = min(seconds, remaining)
        if seconds > 0:
            self._event.wait(seconds)
        return self.done()

    def check(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("operation cancelled")
        if self.expired():
            raise OperationCancelled("deadline exceeded")


def background() -> Context:
    return Context()
