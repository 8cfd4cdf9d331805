from __future__ import annotations

import json
from enum import StrEnum


class ErrorCode(StrEnum):
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    BAD_REQUEST = "bad_request"
    PERMISSION = "permission"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    TOOL_UNKNOWN = "tool_unknown"
    TOOL_FAILED = "tool_failed"
    STREAM_FAILED = "stream_failed"
    UNKNOWN = "unknown"


class OperationFailure(RuntimeError):
    """Raised by operation implementations for expected, user-facing failures."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.TOOL_FAILED) -> None:
        super().__init__(message)
        self.code = code


def classify_exception(exc: BaseException) -> ErrorCode:
    if isinstance(exc, OperationFailure):
        return exc.code
    if isinstance(exc, PermissionError):
        return ErrorCode.PERMISSION
    if isinstance(exc, (FileNotFoundError, KeyError)):
        return ErrorCode.NOT_FOUND
    if isinstance(exc, FileExistsError):
        return ErrorCode.CONFLICT
    if isinstance(exc, TimeoutError):
        return ErrorCode.TIMEOUT
    if isinstance(exc, (ValueError, TypeError, json.JSONDecodeError)):
        return ErrorCode.BAD_REQUEST
    return ErrorCode.UNKNOWN


def error_message(exc: BaseException) -> str:
    text = str(exc).strip()
    if isinstance(exc, KeyError) and text.startswith("'") and text.endswith("'"):
        text = text[1:-1]
    return text or type(exc).__name__
