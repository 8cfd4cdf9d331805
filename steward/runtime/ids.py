from __future__ import annotations

import threading
import time
import uuid


def new_id(prefix: str) -> str:
    ts = time.time_ns()
    rand = uuid.uuid4().hex
    return f"{prefix}_{ts:016x}_{rand}"


def now_ts_ms() -> int:
    return int(time.time() * 1000)


_created_lock = threading.Lock()
_last_created = 0


def next_created_ts() -> int:
    """
    Millisecond timestamp for a new message.

    Message identity is keyed by creation time, so values handed out here are
    strictly increasing within the process even when two messages are created
    in the same millisecond.
    """

    global _last_created
    with _created_lock:
        ts = now_ts_ms()
        if ts <= _last_created:
            ts = _last_created + 1
        _last_created = ts
        return ts
