from __future__ import annotations

import json
import random
import re
from typing import Any

from .error_codes import ErrorCode
from .models.operation import Operation
from .models.status import OperationStatus

INPUT_START = "\n\n<input>\n"
INPUT_END = "\n</input>"
ANALYSIS_START = "\n\n<analysis>\n"
ANALYSIS_END = "\n</analysis>"
OUTPUT_START = "\n\n<output>\n"
OUTPUT_END = "\n</output>"

_THINKING_VERBS = (
    "Cogitating",
    "Ruminating",
    "Deliberating",
    "Contemplating",
    "Mulling",
    "Noodling",
    "Puzzling",
    "Synthesizing",
    "Orchestrating",
    "Triangulating",
    "Extrapolating",
    "Perambulating",
    "Conflabulating",
)


def format_elapsed(ms: float) -> str:
    if ms < 1:
        return f"{ms:.2f}ms"
    if ms < 1000:
        return f"{ms:.0f}ms"
    return f"{ms / 1000:.1f}s"


def pluralize(count: int, singular: str, plural: str | None = None, *, prefix_count: bool = True) -> str:
    unit = singular if count == 1 else (plural or singular + "s")
    return f"{count} {unit}" if prefix_count else unit


def format_name(name: str) -> str:
    """`file_edit` / `fileEdit` / `file-edit` -> `File Edit`."""

    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", name)
    parts = [p for p in re.split(r"[\s_\-]+", spaced) if p]
    return " ".join(p[:1].upper() + p[1:] for p in parts)


def thinking_status(rng: random.Random | None = None) -> str:
    return f"{(rng or random).choice(_THINKING_VERBS)}..."


def format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, sort_keys=True, indent=2, default=str)
    except (TypeError, ValueError):
        return str(value)


def render_operation_message(op: Operation) -> str:
    if op.status is OperationStatus.DONE_ERROR:
        head = f"Operation {op.type} failed: {op.error}"
    elif op.status is OperationStatus.DONE:
        head = f"Operation {op.type} completed successfully:"
    elif op.status is OperationStatus.ANALYZED:
        head = f"Operation {op.type} requires approval:"
    elif op.status is OperationStatus.REJECTED:
        if op.error_code is ErrorCode.PERMISSION:
            head = f"Operation {op.type} cannot be performed:"
        else:
            head = f"Operation {op.type} was rejected by the user."
    else:
        head = f"Operation {op.type} is pending."

    out = head
    if op.input:
        out += f"{INPUT_START}{format_value(op.input)}{INPUT_END}"
    if op.analysis and op.output is None:
        out += f"{ANALYSIS_START}{op.analysis}{ANALYSIS_END}"
    if op.output is not None:
        out += f"{OUTPUT_START}{format_value(op.output)}{OUTPUT_END}"
    return out
