from __future__ import annotations

import logging
from typing import Callable, Generic, List, TypeVar

T = TypeVar("T")

log = logging.getLogger("netview.signals")


class Signal(Generic[T]):
    """An observable value: visibility, dark mode, connection state."""

    def __init__(self, value: T):
        self._value = value
        self._listeners: List[Callable[[T], object]] = []

    @property
    def value(self) -> T:
        return self._value

    def set(self, value: T) -> None:
        if value == self._value:
            return
        self._value = value
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                log.exception("Signal listener failed")

    def subscribe(self, listener: Callable[[T], object]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
