from __future__ import annotations

from enum import StrEnum
from typing import Iterable


class OperationStatus(StrEnum):
    PENDING = "pending"
    ANALYZED = "analyzed"
    DONE = "done"
    DONE_ERROR = "doneError"
    REJECTED = "rejected"


_OPERATION_TERMINAL: frozenset[OperationStatus] = frozenset(
    {OperationStatus.DONE, OperationStatus.DONE_ERROR, OperationStatus.REJECTED}
)


_ALLOWED_OPERATION_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    # Auto-execution skips analysis; a failed analysis also lands in DONE_ERROR.
    OperationStatus.PENDING: frozenset({OperationStatus.ANALYZED, OperationStatus.DONE, OperationStatus.DONE_ERROR}),
    OperationStatus.ANALYZED: frozenset({OperationStatus.DONE, OperationStatus.DONE_ERROR, OperationStatus.REJECTED}),
    OperationStatus.DONE: frozenset(),
    OperationStatus.DONE_ERROR: frozenset(),
    OperationStatus.REJECTED: frozenset(),
}


def is_terminal_status(status: OperationStatus) -> bool:
    return status in _OPERATION_TERMINAL


def allowed_next_operation_statuses(status: OperationStatus) -> frozenset[OperationStatus]:
    return _ALLOWED_OPERATION_TRANSITIONS.get(status, frozenset())


def validate_operation_transition(*, before: OperationStatus, after: OperationStatus) -> None:
    _validate_transition(
        before=before,
        after=after,
        allowed=allowed_next_operation_statuses(before),
        kind="OperationStatus",
    )


def _validate_transition(*, before: StrEnum, after: StrEnum, allowed: Iterable[StrEnum], kind: str) -> None:
    allowed_set = set(allowed)
    if after in allowed_set:
        return
    if before == after:
        raise ValueError(f"Illegal {kind} transition: {before.value} -> {after.value} (no-op not allowed)")
    rendered = ", ".join(s.value for s in sorted(allowed_set, key=lambda s: s.value))
    raise ValueError(f"Illegal {kind} transition: {before.value} -> {after.value} (allowed: {rendered or '∅'})")
