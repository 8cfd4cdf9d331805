from __future__ import annotations

import asyncio
import contextlib
import inspect
import random
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

from .agent_source import AgentChunk, AgentChunkKind, AgentRequest, AgentSource, AgentStreamError, iterate_chunks
from .approval_controller import ApprovalController
from .cancel import CancellationToken, TurnCancelled
from .config import StewardConfig
from .error_codes import ErrorCode, error_message
from .event_bus import EventBus
from .events import TurnEvent, TurnEventKind
from .formatting import format_elapsed, format_name, thinking_status
from .ids import new_id, next_created_ts, now_ts_ms
from .models.chat import ChatMode, Message, MessageContent, MessageRole
from .models.status import OperationStatus
from .models.usage import UsageDelta, UsageTotals, estimate_tokens
from .operations.executor import OperationContext, OperationExecutor
from .policy import should_auto_execute
from .stores import ChatMetaStore, ChatNotFoundError, ChatTranscriptStore

TurnStatus = Literal["completed", "failed", "cancelled"]
EventCallback = Callable[[TurnEvent], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class TurnContext:
    """
    Inputs for one turn.

    `mode` pins the trust mode; when omitted it is read once from the chat
    meta store at turn start. `timeout_s` overrides the configured turn
    timeout.
    """

    chat_id: str
    user_input: str | None = None
    cancel: CancellationToken = field(default_factory=CancellationToken)
    mode: ChatMode | None = None
    timeout_s: float | None = None
    turn_id: str = field(default_factory=lambda: new_id("turn"))


@dataclass(frozen=True, slots=True)
class TurnResult:
    status: TurnStatus
    chat_id: str
    turn_id: str
    mode: ChatMode | None = None
    message: Message | None = None
    error: str | None = None
    error_code: ErrorCode | None = None
    usage: UsageTotals = field(default_factory=UsageTotals)
    elapsed_ms: float = 0.0

    @property
    def needs_approval(self) -> bool:
        if self.message is None:
            return False
        return any(op.status is OperationStatus.ANALYZED for op in self.message.operations)


class TurnOrchestrator:
    """
    Drives one conversational turn at a time for a chat.

    Consumes the agent stream, persists the assistant message, applies the
    trust policy to each proposed operation, auto-executes or analyzes it on a
    sequential worker, and reports everything as an ordered `TurnEvent`
    stream ending in exactly one of complete / error / cancelled.
    """

    def __init__(
        self,
        *,
        source: AgentSource,
        executor: OperationExecutor,
        store: ChatTranscriptStore,
        project_root: Path,
        meta_store: ChatMetaStore | None = None,
        event_bus: EventBus | None = None,
        config: StewardConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.source = source
        self.executor = executor
        self.store = store
        self.project_root = Path(project_root).expanduser().resolve()
        self.meta_store = meta_store
        self.event_bus = event_bus or EventBus()
        self.config = config or StewardConfig()
        self._rng = rng

    def events(self, ctx: TurnContext) -> AsyncIterator[TurnEvent]:
        return _stream_turn(_Turn(self, ctx))

    async def run(self, ctx: TurnContext, on_event: EventCallback | None = None) -> TurnResult:
        turn = _Turn(self, ctx)
        async for event in _stream_turn(turn):
            if on_event is not None:
                res = on_event(event)
                if inspect.isawaitable(res):
                    await res
        if turn.result is None:
            raise RuntimeError("Turn ended without a result.")
        return turn.result

    def approval_for(
        self,
        chat_id: str,
        message: Message,
        *,
        cancel: CancellationToken | None = None,
        on_update: Callable[[Message], Awaitable[None] | None] | None = None,
        on_dismiss: Callable[[], None] | None = None,
    ) -> ApprovalController:
        """Approval controller for `message`, persisting through this orchestrator's store."""

        context = OperationContext(
            project_root=self.project_root,
            chat_id=chat_id,
            cancel=cancel or CancellationToken(),
            usage_sink=lambda delta: self._add_chat_usage(chat_id, delta),
        )
        return ApprovalController(
            message=message,
            executor=self.executor,
            context=context,
            persist=self.store.replace,
            on_update=on_update,
            on_dismiss=on_dismiss,
            dismiss_after_s=self.config.approval_dismiss_s,
        )

    def _resolve_mode(self, ctx: TurnContext) -> ChatMode:
        if ctx.mode is not None:
            return ChatMode(ctx.mode)
        if self.meta_store is not None:
            try:
                return self.meta_store.get(ctx.chat_id).mode
            except ChatNotFoundError:
                pass
        return self.config.default_mode

    def _add_chat_usage(self, chat_id: str, delta: UsageDelta) -> UsageTotals | None:
        if self.meta_store is None:
            return None
        try:
            return self.meta_store.add_usage(chat_id, delta).usage
        except ChatNotFoundError:
            return None


async def _stream_turn(turn: "_Turn") -> AsyncIterator[TurnEvent]:
    task = asyncio.create_task(turn.drive())

    def _on_done(t: asyncio.Task[None]) -> None:
        # Unexpected driver failure: wake the consumer instead of leaving it blocked.
        if not t.cancelled() and t.exception() is not None:
            turn.channel.put_nowait(t.exception())

    task.add_done_callback(_on_done)
    try:
        while True:
            item = await turn.channel.get()
            if isinstance(item, BaseException):
                raise item
            yield item
            if item.terminal:
                break
        await task
    finally:
        if not task.done():
            turn.ctx.cancel.cancel("event consumer closed")
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task


class _Turn:
    def __init__(self, owner: TurnOrchestrator, ctx: TurnContext) -> None:
        self.owner = owner
        self.ctx = ctx
        self.channel: asyncio.Queue[TurnEvent | BaseException] = asyncio.Queue()
        self.result: TurnResult | None = None

        self._sequence = 0
        self._event_lock = asyncio.Lock()
        self._started_at = time.perf_counter()
        self._mode: ChatMode | None = None

        self._user: Message | None = None
        self._user_committed = False
        self._pending: Message | None = None
        self._appended = False

        self._ops: asyncio.Queue[int | None] = asyncio.Queue()
        self._skip_ops = False
        self._background: set[asyncio.Task[Any]] = set()

        self._status: str | None = None
        self._usage = UsageTotals()
        self._reported_output = False
        self._output_estimate = 0
        self._reasoning_text = ""
        self._reasoning_estimate = 0
        self._discarded = 0

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started_at) * 1000

    # ------------------------------------------------------------------ events

    async def _emit(self, kind: TurnEventKind, payload: dict[str, Any]) -> TurnEvent:
        async with self._event_lock:
            self._sequence += 1
            event = TurnEvent(
                kind=kind,
                sequence=self._sequence,
                chat_id=self.ctx.chat_id,
                turn_id=self.ctx.turn_id,
                timestamp=now_ts_ms(),
                payload=payload,
            )
            self.owner.event_bus.publish(event)
            self.channel.put_nowait(event)
            return event

    async def _set_status(self, status: str | None) -> None:
        if status == self._status:
            return
        self._status = status
        await self._emit(TurnEventKind.STATUS, {"status": status})

    async def _emit_message(self, kind: TurnEventKind) -> None:
        msg = self._pending
        await self._emit(kind, {"message": None if msg is None else msg.model_dump(mode="json")})

    async def _emit_usage(self, delta: UsageDelta, chat_totals: UsageTotals | None = None) -> None:
        await self._emit(
            TurnEventKind.USAGE,
            {
                "delta": delta.model_dump(mode="json"),
                "turn": self._usage.model_dump(mode="json"),
                "chat": None if chat_totals is None else chat_totals.model_dump(mode="json"),
                "estimate": {
                    "output": self._output_estimate,
                    "reasoning": self._reasoning_estimate,
                    "discarded": self._discarded,
                },
            },
        )

    async def _tick(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            await self._emit(TurnEventKind.ELAPSED, {"elapsed_ms": int(self.elapsed_ms)})

    # ------------------------------------------------------------------ persistence

    def _commit_user(self) -> None:
        # Held back until the turn consumes a chunk or ends without being cancelled.
        if self._user is not None and not self._user_committed:
            self.owner.store.append(self._user)
            self._user_committed = True

    def _persist_pending(self) -> None:
        msg = self._pending
        if msg is None:
            return
        if self._appended:
            self.owner.store.replace(msg)
        elif msg.has_content():
            self._commit_user()
            self.owner.store.append(msg)
            self._appended = True

    # ------------------------------------------------------------------ usage

    async def _apply_usage(self, delta: UsageDelta) -> None:
        self._usage = self._usage.merged(delta)
        chat_totals = self.owner._add_chat_usage(self.ctx.chat_id, delta)
        await self._emit_usage(delta, chat_totals)

    def _report_usage_threadsafe(self, loop: asyncio.AbstractEventLoop, delta: UsageDelta) -> None:
        def _schedule() -> None:
            task = loop.create_task(self._apply_usage(delta))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        loop.call_soon_threadsafe(_schedule)

    # ------------------------------------------------------------------ driver

    async def drive(self) -> None:
        ctx = self.ctx
        if ctx.cancel.cancelled:
            await self._finish_cancelled()
            return

        self._mode = self.owner._resolve_mode(ctx)
        loop = asyncio.get_running_loop()
        op_context = OperationContext(
            project_root=self.owner.project_root,
            chat_id=ctx.chat_id,
            cancel=ctx.cancel,
            usage_sink=lambda delta: self._report_usage_threadsafe(loop, delta),
        )

        ticker: asyncio.Task[None] | None = None
        interval = self.owner.config.elapsed_interval_s
        if interval:
            ticker = asyncio.create_task(self._tick(interval))

        worker = asyncio.create_task(self._op_worker(op_context))
        try:
            if ctx.user_input:
                self._user = Message(
                    role=MessageRole.USER,
                    content=(MessageContent(content=ctx.user_input),),
                    created=next_created_ts(),
                    tokens=estimate_tokens(ctx.user_input),
                )

            self._pending = Message(
                role=MessageRole.ASSISTANT,
                name=self.owner.config.assistant_name,
                created=next_created_ts(),
            )
            await self._emit_message(TurnEventKind.PENDING_UPDATE)
            await self._set_status(thinking_status(self.owner._rng))

            try:
                await self._consume(loop)
            except TurnCancelled:
                await self._drain_worker(worker, skip=True)
                await self._stop_ticker(ticker)
                self._persist_pending()
                await self._finish_cancelled()
                return
            except Exception as e:
                await self._drain_worker(worker, skip=True)
                await self._stop_ticker(ticker)
                await self._finish_failed(e)
                return

            await self._drain_worker(worker, skip=False)
            await self._stop_ticker(ticker)
            if ctx.cancel.cancelled:
                self._persist_pending()
                await self._finish_cancelled()
                return
            await self._finish_completed()
        finally:
            if not worker.done():
                worker.cancel()
            if ticker is not None and not ticker.done():
                ticker.cancel()

    async def _consume(self, loop: asyncio.AbstractEventLoop) -> None:
        ctx = self.ctx
        request = AgentRequest(
            chat_id=ctx.chat_id,
            mode=self._mode or ChatMode.NONE,
            messages=(*self.owner.store.load(), *([self._user] if self._user is not None else [])),
            cancel=ctx.cancel,
        )
        timeout_s = ctx.timeout_s if ctx.timeout_s is not None else self.owner.config.turn_timeout_s
        deadline = None if timeout_s is None else loop.time() + timeout_s

        chunks = iterate_chunks(self.owner.source.stream(request), cancel=ctx.cancel).__aiter__()
        cancelled = ctx.cancel.wait()
        try:
            while True:
                ctx.cancel.raise_if_cancelled()
                remaining = None if deadline is None else deadline - loop.time()
                if remaining is not None and remaining <= 0:
                    raise TimeoutError(f"Turn timed out after {format_elapsed(timeout_s * 1000)}")

                next_chunk = asyncio.ensure_future(chunks.__anext__())
                done, _ = await asyncio.wait(
                    {next_chunk, cancelled},
                    timeout=remaining,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if next_chunk not in done:
                    next_chunk.cancel()
                    # The abandoned chunk, or a failure racing the cancel, is dropped.
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration, Exception):
                        await next_chunk
                    ctx.cancel.raise_if_cancelled()
                    continue

                try:
                    chunk = next_chunk.result()
                except StopAsyncIteration:
                    return
                # A chunk that raced a cancellation is dropped.
                ctx.cancel.raise_if_cancelled()
                await self._handle_chunk(chunk)
        finally:
            cancelled.cancel()
            aclose = getattr(chunks, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    async def _handle_chunk(self, chunk: AgentChunk) -> None:
        msg = self._pending
        if msg is None:
            raise RuntimeError("No in-flight message.")
        self._commit_user()

        if chunk.kind is AgentChunkKind.TEXT_DELTA:
            if not chunk.text:
                return
            self._pending = msg.with_text_appended(chunk.text)
            await self._emit_message(TurnEventKind.PENDING_UPDATE)
            await self._set_status(None)
            await self._update_output_estimate()
        elif chunk.kind is AgentChunkKind.TEXT_COMPLETE:
            self._pending = msg.with_full_text(chunk.text)
            await self._emit_message(TurnEventKind.PENDING_UPDATE)
            await self._update_output_estimate()
        elif chunk.kind is AgentChunkKind.TEXT_RESET:
            self._discarded += self._output_estimate
            self._output_estimate = 0
            self._pending = msg.with_current_text("")
            await self._emit_message(TurnEventKind.PENDING_UPDATE)
            await self._emit_usage(UsageDelta())
        elif chunk.kind is AgentChunkKind.REASONING_DELTA:
            self._reasoning_text += chunk.text
            estimate = estimate_tokens(self._reasoning_text)
            if estimate != self._reasoning_estimate:
                self._reasoning_estimate = estimate
                await self._emit_usage(UsageDelta())
        elif chunk.kind is AgentChunkKind.USAGE:
            if chunk.usage is None:
                return
            # Reported numbers supersede the running estimates.
            self._reported_output = True
            self._discarded = 0
            self._output_estimate = self._usage.output_tokens + chunk.usage.output_tokens
            self._reasoning_estimate = self._usage.reasoning_tokens + chunk.usage.reasoning_tokens
            await self._apply_usage(chunk.usage)
        elif chunk.kind is AgentChunkKind.OPERATION:
            if chunk.operation is None:
                return
            op = self.owner.executor.propose(chunk.operation.type, chunk.operation.input)
            self._pending, index = msg.with_operation_added(op)
            self._persist_pending()
            await self._emit_message(TurnEventKind.PENDING_UPDATE)
            self._ops.put_nowait(index)
        elif chunk.kind is AgentChunkKind.ERROR:
            raise AgentStreamError(chunk.error or "Agent stream failed.")

    async def _update_output_estimate(self) -> None:
        if self._reported_output or self._pending is None:
            return
        estimate = estimate_tokens(self._pending.text)
        if estimate != self._output_estimate:
            self._output_estimate = estimate
            await self._emit_usage(UsageDelta())

    # ------------------------------------------------------------------ operations

    async def _op_worker(self, context: OperationContext) -> None:
        """Evaluates proposed operations one at a time, in list order."""

        executor = self.owner.executor
        mode = self._mode or ChatMode.NONE
        while True:
            index = await self._ops.get()
            if index is None:
                return
            if self._skip_ops or context.cancel.cancelled or self._pending is None:
                continue

            op = self._pending.operations[index]
            label = format_name(op.type)
            await self._set_status(f"Processing operation: {label}")
            if op.effect is not None and should_auto_execute(mode, op.effect):
                nxt = await executor.execute(op, approved=True, context=context)
                if nxt is not op and nxt.terminal:
                    await self._set_status(f"Analyzing {label} results...")
            else:
                nxt = await executor.analyze(op, context=context)

            if nxt is op or self._pending is None:
                continue
            self._pending = self._pending.with_operation(index, nxt)
            self._persist_pending()
            await self._emit_message(TurnEventKind.UPDATE)

    async def _drain_worker(self, worker: asyncio.Task[None], *, skip: bool) -> None:
        # An operation already executing is awaited, never interrupted.
        if skip:
            self._skip_ops = True
        self._ops.put_nowait(None)
        await worker
        if self._background:
            await asyncio.gather(*list(self._background))

    async def _stop_ticker(self, ticker: asyncio.Task[None] | None) -> None:
        if ticker is None:
            return
        ticker.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await ticker

    # ------------------------------------------------------------------ terminal outcomes

    def _finalized(self) -> Message | None:
        msg = self._pending
        if msg is None:
            return None
        tokens = self._output_estimate + self._reasoning_estimate + self._discarded
        return msg.model_copy(update={"tokens": tokens, "cost": self._usage.cost or None})

    async def _finish_completed(self) -> None:
        self._commit_user()
        self._pending = self._finalized()
        self._persist_pending()
        await self._set_status(None)
        await self._emit_message(TurnEventKind.COMPLETE)
        self.result = TurnResult(
            status="completed",
            chat_id=self.ctx.chat_id,
            turn_id=self.ctx.turn_id,
            mode=self._mode,
            message=self._pending,
            usage=self._usage,
            elapsed_ms=self.elapsed_ms,
        )

    async def _finish_failed(self, exc: Exception) -> None:
        code = ErrorCode.TIMEOUT if isinstance(exc, TimeoutError) else ErrorCode.STREAM_FAILED
        text = error_message(exc)

        self._commit_user()
        # Whatever was generated before the failure stays in the transcript.
        if self._pending is not None and self._pending.has_content():
            self._pending = self._finalized()
            self._persist_pending()
        self.owner.store.append(
            Message(
                role=MessageRole.SYSTEM,
                content=(MessageContent(content=f"Error: {text}"),),
                created=next_created_ts(),
            )
        )
        await self._emit(TurnEventKind.ERROR, {"error": text, "error_code": code.value})
        self.result = TurnResult(
            status="failed",
            chat_id=self.ctx.chat_id,
            turn_id=self.ctx.turn_id,
            mode=self._mode,
            message=self._pending if self._appended else None,
            error=text,
            error_code=code,
            usage=self._usage,
            elapsed_ms=self.elapsed_ms,
        )

    async def _finish_cancelled(self) -> None:
        await self._emit(TurnEventKind.CANCELLED, {"reason": self.ctx.cancel.reason})
        self.result = TurnResult(
            status="cancelled",
            chat_id=self.ctx.chat_id,
            turn_id=self.ctx.turn_id,
            mode=self._mode,
            message=self._pending if self._appended else None,
            error_code=ErrorCode.CANCELLED,
            usage=self._usage,
            elapsed_ms=self.elapsed_ms,
        )
