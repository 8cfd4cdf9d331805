from __future__ import annotations

from .chat import ChatMessages, ChatMeta, ChatMode, Message, MessageContent, MessageRole
from .operation import EffectClass, Operation
from .status import OperationStatus, is_terminal_status, validate_operation_transition
from .usage import UsageDelta, UsageTotals, estimate_tokens

__all__ = [
    "ChatMessages",
    "ChatMeta",
    "ChatMode",
    "EffectClass",
    "Message",
    "MessageContent",
    "MessageRole",
    "Operation",
    "OperationStatus",
    "UsageDelta",
    "UsageTotals",
    "estimate_tokens",
    "is_terminal_status",
    "validate_operation_transition",
]
