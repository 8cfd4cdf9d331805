from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class TurnEventKind(StrEnum):
    PENDING_UPDATE = "pendingUpdate"
    UPDATE = "update"
    USAGE = "usage"
    ELAPSED = "elapsed"
    STATUS = "status"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_EVENT_KINDS: frozenset[TurnEventKind] = frozenset(
    {TurnEventKind.COMPLETE, TurnEventKind.ERROR, TurnEventKind.CANCELLED}
)


@dataclass(frozen=True, slots=True)
class TurnEvent:
    """
    One entry of a turn's event stream.

    `sequence` is strictly increasing per turn. Payload shapes:

    - pendingUpdate / update / complete: `{"message": <Message JSON>}`
    - usage: `{"delta": {...}, "turn": {...}, "chat": {...} | None, "estimate": {...}}`
    - elapsed: `{"elapsed_ms": int}`
    - status: `{"status": str | None}`
    - error: `{"error": str, "error_code": str}`
    - cancelled: `{"reason": str | None}`
    """

    kind: TurnEventKind
    sequence: int
    chat_id: str
    turn_id: str
    timestamp: int
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_EVENT_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "sequence": self.sequence,
            "chat_id": self.chat_id,
            "turn_id": self.turn_id,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "TurnEvent":
        return TurnEvent(
            kind=TurnEventKind(str(raw["kind"])),
            sequence=int(raw["sequence"]),
            chat_id=str(raw["chat_id"]),
            turn_id=str(raw["turn_id"]),
            timestamp=int(raw["timestamp"]),
            payload=dict(raw.get("payload") or {}),
        )
