from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..error_codes import ErrorCode
from ..ids import new_id
from .status import OperationStatus, is_terminal_status, validate_operation_transition


class EffectClass(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Operation(BaseModel):
    """
    Snapshot of one agent-proposed operation.

    Snapshots are immutable: every change yields a new instance with `version`
    bumped, and the owning message swaps it in.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: new_id("op"))
    type: str
    effect: EffectClass | None = None
    input: dict[str, Any] = Field(default_factory=dict)
    status: OperationStatus = OperationStatus.PENDING
    analysis: str | None = None
    output: Any = None
    error: str | None = None
    error_code: ErrorCode | None = None
    message: str | None = None
    start_ms: int | None = None
    end_ms: int | None = None
    version: int = Field(default=0, ge=0)

    @field_validator("type")
    @classmethod
    def _non_empty_type(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Operation type must be a non-empty string.")
        return v.strip()

    @property
    def terminal(self) -> bool:
        return is_terminal_status(self.status)

    def transition(self, status: OperationStatus, **changes: Any) -> "Operation":
        validate_operation_transition(before=self.status, after=status)
        return self.model_copy(update={**changes, "status": status, "version": self.version + 1})

    def revised(self, **changes: Any) -> "Operation":
        if "status" in changes:
            raise ValueError("Use transition() to change an operation's status.")
        return self.model_copy(update={**changes, "version": self.version + 1})
