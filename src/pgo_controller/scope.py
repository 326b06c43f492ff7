"""Cancellable execution scopes.

A :class:`Scope` is a node in a parent/child tree.  Cancelling a scope
cancels every descendant, and each scope runs its registered callbacks
exactly once when it is cancelled.  Controller groups derive their scope
from the manager's root scope, so cancelling the root stops everything.
"""

from __future__ import annotations

import threading
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


class Scope:
    """A cancellable execution scope.

    Parameters
    ----------
    name:
        Label used in log output.
    parent:
        Optional parent scope.  A child of an already-cancelled parent
        starts out cancelled.
    """

    def __init__(self, name: str = "root", parent: Scope | None = None) -> None:
        self.name = name
        self._parent = parent
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._children: list[Scope] = []
        self._callbacks: list[Callable[[], None]] = []

    # -- tree -------------------------------------------------------------------

    def child(self, name: str) -> Scope:
        """Derive a child scope that is cancelled whenever this one is."""
        child = Scope(name=name, parent=self)
        with self._lock:
            if not self._done.is_set():
                self._children.append(child)
                return child
        child.cancel()
        return child

    def _detach(self, child: Scope) -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)

    # -- cancellation -----------------------------------------------------------

    @property
    def cancelled(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        """Cancel this scope and all of its descendants.  Safe to call twice."""
        with self._lock:
            if self._done.is_set():
                return
            self._done.set()
            children, self._children = self._children, []
            callbacks, self._callbacks = self._callbacks, []

        for child in children:
            child.cancel()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("scope_cancel_callback_error", scope=self.name)
        if self._parent is not None:
            self._parent._detach(self)

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run on cancellation (immediately if already cancelled)."""
        with self._lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses; return ``True`` if cancelled."""
        return self._done.wait(timeout)

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"Scope({self.name!r}, {state})"


def until(fn: Callable[[], None], period: float, scope: Scope) -> None:
    """Run *fn* repeatedly until *scope* is cancelled.

    At least *period* seconds pass between the end of one call and the start
    of the next, so a loop body that returns early never spins.  Exceptions
    raised by *fn* are logged and the loop carries on.
    """
    while not scope.cancelled:
        try:
            fn()
        except Exception:
            logger.exception("loop_iteration_error", scope=scope.name)
        if scope.wait(period):
            break
