from __future__ import annotations

import asyncio
import inspect
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from ..cancel import CancellationToken
from ..error_codes import ErrorCode, classify_exception, error_message
from ..formatting import render_operation_message
from ..ids import now_ts_ms
from ..models.operation import EffectClass, Operation
from ..models.status import OperationStatus
from ..models.usage import UsageDelta
from .registry import OperationAnalysis, OperationDefinition, OperationRegistry

UpdateCallback = Callable[[int, Operation], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class OperationContext:
    project_root: Path
    chat_id: str
    cancel: CancellationToken
    usage_sink: Callable[[UsageDelta], None] | None = None

    def report_usage(self, delta: UsageDelta) -> None:
        """Merge usage incurred by an operation (e.g. a nested model call) into turn and chat totals."""

        if self.usage_sink is not None and not delta.is_empty():
            self.usage_sink(delta)


def _snapshot(op: Operation, status: OperationStatus, **changes: Any) -> Operation:
    nxt = op.transition(status, **changes)
    return nxt.model_copy(update={"message": render_operation_message(nxt)})


def _failure_code(exc: BaseException) -> ErrorCode:
    code = classify_exception(exc)
    return ErrorCode.TOOL_FAILED if code is ErrorCode.UNKNOWN else code


async def _invoke(fn: Callable[..., Any], **kwargs: Any) -> Any:
    # Plain callables may block (filesystem, subprocess); keep them off the loop.
    if inspect.iscoroutinefunction(fn):
        return await fn(**kwargs)
    result = await asyncio.to_thread(fn, **kwargs)
    if inspect.isawaitable(result):
        result = await result
    return result


class OperationExecutor:
    """
    Sole writer of operation status.

    Every method takes a snapshot and returns the next one; callers swap the
    returned snapshot into the owning message. Terminal snapshots are returned
    unchanged, and an operation id is only ever executed once.

    Ids of finished executions are remembered up to `max_tracked` (oldest
    forgotten first); ids still running are always remembered.
    """

    def __init__(self, registry: OperationRegistry, *, max_tracked: int = 10_000) -> None:
        self._registry = registry
        self._max_tracked = max(1, int(max_tracked))
        self._running: set[str] = set()
        self._finished: OrderedDict[str, None] = OrderedDict()

    @property
    def registry(self) -> OperationRegistry:
        return self._registry

    def was_started(self, op: Operation) -> bool:
        return op.id in self._running or op.id in self._finished

    def resolve_effect(self, type: str, args: dict[str, Any]) -> EffectClass | None:
        definition = self._registry.get(type)
        if definition is None:
            return None
        try:
            return EffectClass(definition.effect_for(args))
        except (ValueError, TypeError, KeyError):
            # Malformed input; the operation goes through analysis, which reports the problem.
            return None

    def propose(self, type: str, args: dict[str, Any] | None = None) -> Operation:
        args = dict(args or {})
        op = Operation(type=type, input=args, effect=self.resolve_effect(type, args))
        return op.model_copy(update={"message": render_operation_message(op)})

    async def analyze(self, op: Operation, *, context: OperationContext) -> Operation:
        """
        Move a pending operation to `analyzed` with a human-readable rationale.

        Not doable -> `rejected` (error_code=permission); unknown kind or a failing
        analysis -> `doneError`.
        """

        if op.status is not OperationStatus.PENDING:
            return op
        definition = self._registry.get(op.type)
        if definition is None:
            return self._unknown(op)

        try:
            result = await _invoke(definition.analyze, args=dict(op.input), context=context)
        except Exception as e:
            return _snapshot(
                op,
                OperationStatus.DONE_ERROR,
                error=error_message(e),
                error_code=_failure_code(e),
            )

        if not isinstance(result, OperationAnalysis):
            result = OperationAnalysis(analysis=str(result), doable=True)
        analyzed = _snapshot(op, OperationStatus.ANALYZED, analysis=result.analysis)
        if result.doable:
            return analyzed
        return _snapshot(
            analyzed,
            OperationStatus.REJECTED,
            error=result.analysis,
            error_code=ErrorCode.PERMISSION,
        )

    async def execute(self, op: Operation, *, approved: bool, context: OperationContext) -> Operation:
        if op.terminal or self.was_started(op):
            return op

        if not approved:
            if op.status is OperationStatus.PENDING:
                op = _snapshot(op, OperationStatus.ANALYZED)
            return _snapshot(op, OperationStatus.REJECTED)

        definition = self._registry.get(op.type)
        if definition is None:
            return self._unknown(op)

        # Not started yet: a cancelled turn leaves it as it is.
        if context.cancel.cancelled:
            return op

        self._running.add(op.id)
        start_ms = now_ts_ms()
        try:
            output = await _invoke(definition.execute, args=dict(op.input), context=context)
        except Exception as e:
            return _snapshot(
                op,
                OperationStatus.DONE_ERROR,
                error=error_message(e),
                error_code=_failure_code(e),
                start_ms=start_ms,
                end_ms=now_ts_ms(),
            )
        finally:
            self._finish(op.id)
        return _snapshot(op, OperationStatus.DONE, output=output, start_ms=start_ms, end_ms=now_ts_ms())

    def _finish(self, op_id: str) -> None:
        self._running.discard(op_id)
        self._finished[op_id] = None
        while len(self._finished) > self._max_tracked:
            self._finished.popitem(last=False)

    async def execute_batch(
        self,
        items: Sequence[tuple[int, Operation, bool]],
        *,
        context: OperationContext,
        on_update: UpdateCallback | None = None,
    ) -> list[Operation]:
        """
        Run `(index, op, approved)` items in order; one failure never stops the rest.

        Stops at the first item reached after `context.cancel` fires, so the
        result may be shorter than `items`. Items not returned were left as they were.
        """

        out: list[Operation] = []
        for index, op, approved in items:
            if context.cancel.cancelled:
                break
            nxt = await self.execute(op, approved=approved, context=context)
            if not nxt.terminal and context.cancel.cancelled:
                break
            out.append(nxt)
            if on_update is not None and nxt is not op:
                await on_update(index, nxt)
        return out

    def _unknown(self, op: Operation) -> Operation:
        return _snapshot(
            op,
            OperationStatus.DONE_ERROR,
            error=f"Unknown operation: {op.type}",
            error_code=ErrorCode.TOOL_UNKNOWN,
        )

    def definition(self, type: str) -> OperationDefinition | None:
        return self._registry.get(type)
