from __future__ import annotations

import asyncio
import threading
from typing import Callable


class TurnCancelled(RuntimeError):
    pass


class CancellationToken:
    """
    Cancellation scope for one turn.

    `cancel()` may be called from any thread. Suspension points either check
    `raise_if_cancelled()` before resuming or race their await against
    `wait()`.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._listeners: list[Callable[[], None]] = []
        self._reason: str | None = None

    def cancel(self, reason: str | None = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            listeners = list(self._listeners)
            self._listeners.clear()
        for fn in listeners:
            try:
                fn()
            except Exception:
                pass

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_listener(self, fn: Callable[[], None]) -> Callable[[], None]:
        """Register `fn` to run once on cancellation; returns an unsubscribe callable."""

        with self._lock:
            if not self._event.is_set():
                self._listeners.append(fn)

                def _remove() -> None:
                    with self._lock:
                        try:
                            self._listeners.remove(fn)
                        except ValueError:
                            pass

                return _remove
        fn()
        return lambda: None

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TurnCancelled(self._reason or "cancelled")

    def wait(self) -> asyncio.Future[None]:
        """Future resolved on the running loop when the token is cancelled."""

        loop = asyncio.get_running_loop()
        fut: asyncio.Future[None] = loop.create_future()

        def _resolve() -> None:
            if not fut.done():
                fut.set_result(None)

        def _on_cancel() -> None:
            try:
                loop.call_soon_threadsafe(_resolve)
            except RuntimeError:
                # Loop already closed.
                pass

        remove = self.add_listener(_on_cancel)
        fut.add_done_callback(lambda _f: remove())
        return fut
