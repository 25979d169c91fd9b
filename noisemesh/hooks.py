"""Ordered callback collections used to hook into message processing."""

from __future__ import annotations

import threading
from typing import Any, Callable


class SequentialHooks:
    """Callbacks run one after another with the same arguments.

    A callback signals failure by raising; every callback still runs, and the
    raised exceptions are collected and returned in order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._callbacks: list[Callable[..., Any]] = []

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def register(self, *args: Callable[..., Any]) -> None:
        """Append each given callback, in order."""
        with self._lock:
            self._callbacks.extend(args)

    def run(self, *args: Any) -> list[Exception]:
        """Call every callback with ``args``; return the exceptions raised."""
        with self._lock:
            callbacks = list(self._callbacks)
        errors: list[Exception] = []
        for callback in callbacks:
            try:
                callback(*args)
            except Exception as exc:  # noqa: BLE001 - collected for the caller
                errors.append(exc)
        return errors


class ReduceHooks:
    """Callbacks that each transform a value handed on to the next.

    Each callback is called as ``callback(value, *args)`` and returns the new
    value. A callback that raises leaves the value unchanged; its exception is
    collected. With ``reverse`` set, the most recently registered callback
    runs first.
    """

    def __init__(self, reverse: bool = False) -> None:
        self._lock = threading.Lock()
        self._callbacks: list[Callable[..., Any]] = []
        self.reverse = reverse

    def __len__(self) -> int:
        with self._lock:
            return len(self._callbacks)

    def register(self, *args: Callable[..., Any]) -> None:
        """Append each given callback, in order."""
        with self._lock:
            self._callbacks.extend(args)

    def run(self, initial: Any, *args: Any) -> tuple[Any, list[Exception]]:
        """Fold ``initial`` through the callbacks; return the result and errors."""
        with self._lock:
            callbacks = list(self._callbacks)
        if self.reverse:
            callbacks.reverse()
        value = initial
        errors: list[Exception] = []
        for callback in callbacks:
            try:
                value = callback(value, *args)
            except Exception as exc:  # noqa: BLE001 - collected for the caller
                errors.append(exc)
        return value, errors