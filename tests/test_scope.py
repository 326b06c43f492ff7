"""Tests for cancellable scopes and the ``until`` loop helper."""

from __future__ import annotations

from unittest.mock import MagicMock

from pgo_controller.scope import Scope, until


class TestScope:
    def test_new_scope_is_active(self) -> None:
        scope = Scope()
        assert not scope.cancelled
        assert scope.wait(0) is False

    def test_cancel_propagates_to_descendants(self) -> None:
        root = Scope()
        child = root.child("child")
        grandchild = child.child("grandchild")

        root.cancel()

        assert child.cancelled
        assert grandchild.cancelled

    def test_cancel_child_leaves_parent_and_siblings(self) -> None:
        root = Scope()
        a = root.child("a")
        b = root.child("b")

        a.cancel()

        assert a.cancelled
        assert not root.cancelled
        assert not b.cancelled

    def test_child_of_cancelled_parent_starts_cancelled(self) -> None:
        root = Scope()
        root.cancel()
        assert root.child("late").cancelled

    def test_callbacks_run_once(self) -> None:
        scope = Scope()
        callback = MagicMock()
        scope.on_cancel(callback)

        scope.cancel()
        scope.cancel()

        callback.assert_called_once()

    def test_callback_registered_after_cancel_runs_immediately(self) -> None:
        scope = Scope()
        scope.cancel()
        callback = MagicMock()
        scope.on_cancel(callback)
        callback.assert_called_once()

    def test_failing_callback_does_not_block_others(self) -> None:
        scope = Scope()
        second = MagicMock()
        scope.on_cancel(MagicMock(side_effect=RuntimeError("boom")))
        scope.on_cancel(second)

        scope.cancel()

        second.assert_called_once()

    def test_parent_cancel_runs_child_callbacks(self) -> None:
        root = Scope()
        callback = MagicMock()
        root.child("child").on_cancel(callback)

        root.cancel()

        callback.assert_called_once()


class TestUntil:
    def test_runs_until_cancelled(self) -> None:
        scope = Scope()
        calls = []

        def body() -> None:
            calls.append(1)
            if len(calls) == 3:
                scope.cancel()

        until(body, 0.001, scope)
        assert len(calls) == 3

    def test_survives_exceptions(self) -> None:
        scope = Scope()
        calls = []

        def body() -> None:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            scope.cancel()

        until(body, 0.001, scope)
        assert len(calls) == 2

    def test_does_nothing_when_already_cancelled(self) -> None:
        scope = Scope()
        scope.cancel()
        body = MagicMock()
        until(body, 0.001, scope)
        body.assert_not_called()
