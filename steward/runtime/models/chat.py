from __future__ import annotations

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .operation import Operation
from .usage import UsageTotals


class ChatMode(StrEnum):
    NONE = "none"
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MessageRole(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class MessageContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    content: str = ""
    operation_index: int | None = Field(default=None, ge=0)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    name: str | None = None
    content: tuple[MessageContent, ...] = ()
    created: int
    tokens: int | None = Field(default=None, ge=0)
    cost: float | None = Field(default=None, ge=0)
    operations: tuple[Operation, ...] = ()

    @property
    def text(self) -> str:
        return "".join(c.content for c in self.content if c.operation_index is None)

    def has_content(self) -> bool:
        return bool(self.operations) or any(c.content for c in self.content)

    def with_text_appended(self, delta: str) -> "Message":
        if not delta:
            return self
        blocks = list(self.content)
        if blocks and blocks[-1].operation_index is None:
            last = blocks[-1]
            blocks[-1] = last.model_copy(update={"content": last.content + delta})
        else:
            blocks.append(MessageContent(content=delta))
        return self.model_copy(update={"content": tuple(blocks)})

    def with_current_text(self, text: str) -> "Message":
        """Replace the text segment currently being streamed (the trailing text block)."""

        blocks = list(self.content)
        if blocks and blocks[-1].operation_index is None:
            blocks[-1] = blocks[-1].model_copy(update={"content": text})
        elif text:
            blocks.append(MessageContent(content=text))
        return self.model_copy(update={"content": tuple(blocks)})

    def with_full_text(self, text: str) -> "Message":
        """
        Reconcile the text blocks with the complete text of the turn.

        Operation blocks stay where they are. Text already committed before the
        trailing block is kept when `text` extends it; otherwise the earlier
        text blocks are dropped and `text` becomes the trailing block.
        """

        blocks = list(self.content)
        trailing = len(blocks) - 1 if blocks and blocks[-1].operation_index is None else None
        committed = "".join(c.content for i, c in enumerate(blocks) if c.operation_index is None and i != trailing)
        if text.startswith(committed):
            rest = text[len(committed) :]
        else:
            blocks = [c for i, c in enumerate(blocks) if c.operation_index is not None or i == trailing]
            rest = text
        if blocks and blocks[-1].operation_index is None:
            blocks[-1] = blocks[-1].model_copy(update={"content": rest})
        elif rest:
            blocks.append(MessageContent(content=rest))
        return self.model_copy(update={"content": tuple(blocks)})

    def with_operation_added(self, op: Operation) -> tuple["Message", int]:
        index = len(self.operations)
        blocks = [*self.content, MessageContent(content=op.message or "", operation_index=index)]
        updated = self.model_copy(update={"content": tuple(blocks), "operations": (*self.operations, op)})
        return updated, index

    def with_operation(self, index: int, op: Operation) -> "Message":
        if index < 0 or index >= len(self.operations):
            raise IndexError(f"Operation index out of range: {index}")
        ops = list(self.operations)
        ops[index] = op
        blocks = [
            c.model_copy(update={"content": op.message or ""}) if c.operation_index == index else c
            for c in self.content
        ]
        return self.model_copy(update={"content": tuple(blocks), "operations": tuple(ops)})

    def with_summary(self, summary: str) -> "Message":
        return self.model_copy(update={"content": (*self.content, MessageContent(content=f"__{summary}__"))})


class ChatMeta(BaseModel):
    id: str
    title: str = ""
    mode: ChatMode = ChatMode.NONE
    assistant: str | None = None
    created: int
    updated: int
    usage: UsageTotals = Field(default_factory=UsageTotals)

    @field_validator("id")
    @classmethod
    def _non_empty_id(cls, v: str) -> str:
        if not isinstance(v, str) or not v.strip():
            raise ValueError("Chat id must be a non-empty string.")
        return v.strip()


class ChatMessages(BaseModel):
    updated: int
    messages: list[Message] = Field(default_factory=list)
