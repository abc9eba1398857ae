"""Re-entrancy guard: at most one mutating vault invocation in flight."""

from __future__ import annotations

import contextlib
import functools
import threading
from collections.abc import Callable, Iterator
from typing import Any, TypeVar

from basketvault.errors import ReentrancyError

F = TypeVar("F", bound=Callable[..., Any])


class ExclusiveGuard:
    """Non-blocking exclusive lock.

    A second acquisition, whether nested on the same thread or concurrent
    from another, fails immediately with ReentrancyError instead of waiting.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._holder = ""

    @property
    def active(self) -> bool:
        return self._lock.locked()

    @property
    def holder(self) -> str:
        return self._holder

    @contextlib.contextmanager
    def hold(self, name: str) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise ReentrancyError(f"{name} rejected: {self._holder or 'another call'} in flight")
        self._holder = name
        try:
            yield
        finally:
            self._holder = ""
            self._lock.release()


def exclusive(method: F) -> F:
    """Run a method under ``self._guard``."""

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        with self._guard.hold(method.__name__):
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]
