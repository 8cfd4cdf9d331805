from __future__ import annotations

import threading
from typing import Callable

from .events import TurnEvent

Subscriber = Callable[[TurnEvent], None]


class EventBus:
    """
    In-process fan-out for turn events.

    A failing subscriber never affects the publisher or other subscribers.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._subscribers.remove(fn)
                except ValueError:
                    pass

        return _unsubscribe

    def publish(self, event: TurnEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(event)
            except Exception:
                pass
