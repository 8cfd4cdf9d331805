import asyncio
from typing import Any

import pytest

from steward.runtime.cancel import CancellationToken
from steward.runtime.error_codes import ErrorCode, OperationFailure
from steward.runtime.models.operation import EffectClass
from steward.runtime.models.status import OperationStatus
from steward.runtime.models.usage import UsageDelta
from steward.runtime.operations import (
    FunctionOperation,
    OperationContext,
    OperationExecutor,
    OperationRegistry,
    OperationRegistryError,
)


@pytest.mark.asyncio
async def test_approved_operation_completes(executor, op_context, call_log):
    """A pending operation executed with approval lands in done with its output."""
    op = executor.propose("lookup", {"q": "invoices"})
    assert op.status is OperationStatus.PENDING
    assert op.effect is EffectClass.READ

    done = await executor.execute(op, approved=True, context=op_context)

    assert done.status is OperationStatus.DONE
    assert done.output == {"found": "invoices"}
    assert done.error is None
    assert done.start_ms is not None and done.end_ms is not None
    assert done.message.startswith("Operation lookup completed successfully:")
    assert call_log.names() == ["lookup"]


@pytest.mark.asyncio
async def test_execution_failure_is_recorded_on_the_operation(executor, op_context):
    op = executor.propose("explode")
    failed = await executor.execute(op, approved=True, context=op_context)
    assert failed.status is OperationStatus.DONE_ERROR
    assert failed.error == "boom"
    assert failed.error_code is ErrorCode.TOOL_FAILED
    assert failed.message == "Operation explode failed: boom"


@pytest.mark.asyncio
async def test_operation_failure_keeps_its_code(op_context):
    def _run(args: dict[str, Any], context: OperationContext) -> None:
        raise OperationFailure("no such record", code=ErrorCode.NOT_FOUND)

    reg = OperationRegistry()
    reg.register(FunctionOperation(name="fetch", effect=EffectClass.READ, run=_run))
    ex = OperationExecutor(reg)
    op = await ex.execute(ex.propose("fetch"), approved=True, context=op_context)
    assert op.error_code is ErrorCode.NOT_FOUND


@pytest.mark.asyncio
async def test_rejection_never_runs_the_effect(executor, op_context, call_log):
    op = await executor.analyze(executor.propose("update_record", {"id": 1}), context=op_context)
    assert op.status is OperationStatus.ANALYZED

    rejected = await executor.execute(op, approved=False, context=op_context)

    assert rejected.status is OperationStatus.REJECTED
    assert rejected.output is None
    assert call_log.names() == []


@pytest.mark.asyncio
async def test_rejecting_a_pending_operation_passes_through_analyzed(executor, op_context):
    op = executor.propose("update_record")
    rejected = await executor.execute(op, approved=False, context=op_context)
    assert rejected.status is OperationStatus.REJECTED
    assert rejected.version == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("name,approved", [("lookup", True), ("explode", True), ("update_record", False)])
async def test_terminal_operations_are_left_untouched(executor, op_context, call_log, name, approved):
    """Re-running the executor on a terminal snapshot is a no-op."""
    terminal = await executor.execute(executor.propose(name), approved=approved, context=op_context)
    calls_before = list(call_log.names())

    again = await executor.execute(terminal, approved=True, context=op_context)
    rejected_again = await executor.execute(terminal, approved=False, context=op_context)

    assert again is terminal
    assert rejected_again is terminal
    assert call_log.names() == calls_before


@pytest.mark.asyncio
async def test_concurrent_execution_runs_the_effect_once(executor, op_context, call_log):
    op = executor.propose("lookup", {"q": "x"})
    first, second = await asyncio.gather(
        executor.execute(op, approved=True, context=op_context),
        executor.execute(op, approved=True, context=op_context),
    )
    assert call_log.names() == ["lookup"]
    assert {first.status, second.status} == {OperationStatus.DONE, OperationStatus.PENDING}
    assert executor.was_started(op)


@pytest.mark.asyncio
@pytest.mark.parametrize("failing_index", [0, 2, 4])
async def test_batch_failure_is_isolated(executor, op_context, failing_index):
    """Exactly the engineered failure ends in doneError; every sibling still runs."""
    ops = [executor.propose("explode" if i == failing_index else "lookup", {"q": i}) for i in range(5)]
    updates: list[int] = []

    async def _on_update(index, op):
        updates.append(index)

    results = await executor.execute_batch(
        [(i, op, True) for i, op in enumerate(ops)],
        context=op_context,
        on_update=_on_update,
    )

    statuses = [op.status for op in results]
    expected = [OperationStatus.DONE_ERROR if i == failing_index else OperationStatus.DONE for i in range(5)]
    assert statuses == expected
    assert updates == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_analyze_records_rationale(executor, op_context):
    op = await executor.analyze(executor.propose("lookup", {"q": "a"}), context=op_context)
    assert op.status is OperationStatus.ANALYZED
    assert op.analysis == "Will look up 'a'."
    assert op.message.startswith("Operation lookup requires approval:")
    assert "<analysis>\nWill look up 'a'.\n</analysis>" in op.message


@pytest.mark.asyncio
async def test_analysis_not_doable_rejects_with_permission(op_context):
    reg = OperationRegistry()
    reg.register(
        FunctionOperation(
            name="drop_table",
            effect=EffectClass.DELETE,
            run=lambda args, ctx: None,
            check=lambda args: "Table is protected.",
        )
    )
    ex = OperationExecutor(reg)
    op = await ex.analyze(ex.propose("drop_table"), context=op_context)
    assert op.status is OperationStatus.REJECTED
    assert op.error_code is ErrorCode.PERMISSION
    assert op.analysis == "Table is protected."
    assert op.message.startswith("Operation drop_table cannot be performed:")


@pytest.mark.asyncio
async def test_analysis_failure_is_done_error(op_context):
    def _describe(args):
        raise ValueError("missing id")

    reg = OperationRegistry()
    reg.register(FunctionOperation(name="touch", effect=EffectClass.UPDATE, run=lambda a, c: None, describe=_describe))
    ex = OperationExecutor(reg)
    op = await ex.analyze(ex.propose("touch"), context=op_context)
    assert op.status is OperationStatus.DONE_ERROR
    assert op.error == "missing id"
    assert op.error_code is ErrorCode.BAD_REQUEST


@pytest.mark.asyncio
async def test_unknown_kind_fails_with_tool_unknown(executor, op_context):
    op = executor.propose("teleport", {"to": "mars"})
    assert op.effect is None

    analyzed = await executor.analyze(op, context=op_context)
    executed = await executor.execute(op, approved=True, context=op_context)

    for result in (analyzed, executed):
        assert result.status is OperationStatus.DONE_ERROR
        assert result.error_code is ErrorCode.TOOL_UNKNOWN


@pytest.mark.asyncio
async def test_cancelled_context_skips_unstarted_operation(executor, tmp_path, call_log):
    cancel = CancellationToken()
    cancel.cancel("stop")
    ctx = OperationContext(project_root=tmp_path, chat_id="c", cancel=cancel)
    op = executor.propose("lookup")
    assert await executor.execute(op, approved=True, context=ctx) is op
    assert call_log.names() == []


@pytest.mark.asyncio
async def test_cancelled_batch_runs_nothing(executor, tmp_path, call_log):
    cancel = CancellationToken()
    cancel.cancel("stop")
    ctx = OperationContext(project_root=tmp_path, chat_id="c", cancel=cancel)
    items = [(0, executor.propose("lookup"), True), (1, executor.propose("update_record"), False)]

    assert await executor.execute_batch(items, context=ctx) == []
    assert call_log.names() == []


@pytest.mark.asyncio
async def test_batch_stops_after_cancel(executor, op_context, call_log):
    updates = []

    async def _on_update(index, op):
        updates.append((index, op.status))
        op_context.cancel.cancel()

    items = [(i, executor.propose("lookup", {"q": i}), True) for i in range(3)]
    results = await executor.execute_batch(items, context=op_context, on_update=_on_update)

    assert [op.status for op in results] == [OperationStatus.DONE]
    assert updates == [(0, OperationStatus.DONE)]
    assert call_log.names() == ["lookup"]


@pytest.mark.asyncio
async def test_finished_ids_are_forgotten_oldest_first(registry, op_context):
    executor = OperationExecutor(registry, max_tracked=2)
    ops = [executor.propose("lookup", {"q": i}) for i in range(3)]
    for op in ops:
        await executor.execute(op, approved=True, context=op_context)

    assert not executor.was_started(ops[0])
    assert executor.was_started(ops[1])
    assert executor.was_started(ops[2])


@pytest.mark.asyncio
async def test_async_run_functions_are_awaited(op_context):
    async def _run(args, context):
        await asyncio.sleep(0)
        return "async-ok"

    reg = OperationRegistry()
    reg.register(FunctionOperation(name="ping", effect=EffectClass.READ, run=_run))
    ex = OperationExecutor(reg)
    op = await ex.execute(ex.propose("ping"), approved=True, context=op_context)
    assert op.output == "async-ok"


@pytest.mark.asyncio
async def test_effect_may_depend_on_input(op_context):
    reg = OperationRegistry()
    reg.register(
        FunctionOperation(
            name="save",
            effect=lambda args: EffectClass.UPDATE if args.get("id") else EffectClass.CREATE,
            run=lambda a, c: None,
        )
    )
    ex = OperationExecutor(reg)
    assert ex.propose("save", {}).effect is EffectClass.CREATE
    assert ex.propose("save", {"id": 3}).effect is EffectClass.UPDATE


@pytest.mark.asyncio
async def test_operations_can_report_usage(tmp_path):
    seen: list[UsageDelta] = []

    def _run(args, context):
        context.report_usage(UsageDelta(input_tokens=3, output_tokens=2, cost=0.5))
        context.report_usage(UsageDelta())
        return None

    reg = OperationRegistry()
    reg.register(FunctionOperation(name="summarize", effect=EffectClass.READ, run=_run))
    ex = OperationExecutor(reg)
    ctx = OperationContext(project_root=tmp_path, chat_id="c", cancel=CancellationToken(), usage_sink=seen.append)
    await ex.execute(ex.propose("summarize"), approved=True, context=ctx)
    assert seen == [UsageDelta(input_tokens=3, output_tokens=2, cost=0.5)]


def test_registry_rejects_duplicates():
    reg = OperationRegistry()
    reg.register(FunctionOperation(name="a", effect=EffectClass.READ, run=lambda a, c: None))
    with pytest.raises(OperationRegistryError):
        reg.register(FunctionOperation(name="a", effect=EffectClass.READ, run=lambda a, c: None))
    assert reg.names() == ["a"]
    assert "a" in reg
