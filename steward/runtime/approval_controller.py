from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable

from . import approval
from .approval import (
    ApprovalChoice,
    ApprovalSession,
    ApprovalState,
    ApprovalStateError,
    CompletionResult,
    Decision,
)
from .cancel import TurnCancelled
from .models.chat import Message
from .models.operation import Operation
from .models.status import OperationStatus
from .operations.executor import OperationContext, OperationExecutor

MessageCallback = Callable[[Message], Awaitable[None] | None]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class ApprovalController:
    """
    Collects decisions for one assistant message's `analyzed` operations and executes them.

    The trust mode is not consulted here: whatever policy decided at analysis
    time stands. Decisions apply in operation-list order. Once complete, the
    controller dismisses itself after `dismiss_after_s` by calling `on_dismiss`;
    callers may dismiss earlier via `dismiss()`.

    Once the context's cancellation token fires, `choose()` raises
    `TurnCancelled`. A batch interrupted by cancellation keeps the snapshots it
    already produced; the session reopens over the operations still `analyzed`
    and no summary is written.
    """

    def __init__(
        self,
        *,
        message: Message,
        executor: OperationExecutor,
        context: OperationContext,
        persist: Callable[[Message], None] | None = None,
        on_update: MessageCallback | None = None,
        on_dismiss: Callable[[], None] | None = None,
        dismiss_after_s: float = 2.5,
    ) -> None:
        self._message = message
        self._executor = executor
        self._context = context
        self._persist = persist
        self._on_update = on_update
        self._on_dismiss = on_dismiss
        self._dismiss_after_s = max(0.0, float(dismiss_after_s))
        self._session: ApprovalSession | None = approval.start_session(message.operations)
        self._started_at: float | None = None
        self._finished_at: float | None = None
        self._dismiss_handle: asyncio.TimerHandle | None = None
        self._dismissed = asyncio.Event()

    @property
    def active(self) -> bool:
        return self._session is not None

    @property
    def message(self) -> Message:
        return self._message

    @property
    def session(self) -> ApprovalSession | None:
        return self._session

    @property
    def state(self) -> ApprovalState | None:
        return None if self._session is None else self._session.state

    @property
    def cursor(self) -> int | None:
        return None if self._session is None else self._session.current_index

    @property
    def current_operation(self) -> Operation | None:
        index = self.cursor
        return None if index is None else self._message.operations[index]

    @property
    def pending_operations(self) -> list[tuple[int, Operation]]:
        if self._session is None:
            return []
        return [(i, self._message.operations[i]) for i in self._session.indices]

    def options(self) -> tuple[ApprovalChoice, ...]:
        return () if self._session is None else self._session.options()

    @property
    def result(self) -> CompletionResult | None:
        return None if self._session is None else self._session.result

    @property
    def elapsed_ms(self) -> float:
        if self._started_at is None:
            return 0.0
        end = self._finished_at if self._finished_at is not None else time.perf_counter()
        return (end - self._started_at) * 1000

    @property
    def cancelled(self) -> bool:
        return self._context.cancel.cancelled

    @property
    def dismissed(self) -> bool:
        return self._dismissed.is_set()

    async def choose(self, choice: ApprovalChoice | str) -> ApprovalState:
        if self._session is None:
            raise ApprovalStateError("No operations awaiting approval.")
        self._context.cancel.raise_if_cancelled()
        self._session = approval.choose(self._session, choice)
        if self._session.state is ApprovalState.PROCESSING:
            await self._process()
        return self._session.state

    async def wait_dismissed(self) -> None:
        await self._dismissed.wait()

    def dismiss(self) -> None:
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        if self._dismissed.is_set():
            return
        self._dismissed.set()
        if self._on_dismiss is not None:
            self._on_dismiss()

    async def _process(self) -> None:
        session = self._session
        if session is None or session.batch_kind is None:
            raise ApprovalStateError("Approval session has no decided batch.")
        self._started_at = time.perf_counter()

        batch = session.batch()
        results = await self._executor.execute_batch(
            [(index, self._message.operations[index], decision is Decision.APPROVE) for index, decision in batch],
            context=self._context,
            on_update=self._commit_operation,
        )
        self._finished_at = time.perf_counter()

        if len(results) < len(batch):
            # Cancelled part way: whatever is still analyzed awaits a new decision.
            self._session = approval.start_session(self._message.operations)
            raise TurnCancelled(self._context.cancel.reason or "cancelled")

        statuses = [op.status for op in results]
        result = CompletionResult(
            success=statuses.count(OperationStatus.DONE),
            failed=statuses.count(OperationStatus.DONE_ERROR),
            rejected=statuses.count(OperationStatus.REJECTED),
        )
        single_type = self._message.operations[batch[0][0]].type if len(batch) == 1 else None
        summary = approval.summarize_batch(
            session.batch_kind,
            result,
            elapsed_ms=self.elapsed_ms,
            single_type=single_type,
        )
        await self._commit(self._message.with_summary(summary))
        self._session = approval.finish(session, result)
        self._schedule_dismiss()

    async def _commit_operation(self, index: int, op: Operation) -> None:
        await self._commit(self._message.with_operation(index, op))

    async def _commit(self, message: Message) -> None:
        self._message = message
        if self._persist is not None:
            self._persist(message)
        if self._on_update is not None:
            await _maybe_await(self._on_update(message))

    def _schedule_dismiss(self) -> None:
        loop = asyncio.get_running_loop()
        self._dismiss_handle = loop.call_later(self._dismiss_after_s, self.dismiss)


def needs_approval(message: Message) -> bool:
    return approval.start_session(message.operations) is not None

