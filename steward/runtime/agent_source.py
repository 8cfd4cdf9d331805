from __future__ import annotations

import asyncio
import json
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Iterable, Protocol

from .cancel import CancellationToken
from .models.chat import ChatMode, Message
from .models.usage import UsageDelta


class AgentStreamError(RuntimeError):
    pass


class AgentChunkKind(StrEnum):
    TEXT_DELTA = "text_delta"
    TEXT_COMPLETE = "text_complete"
    TEXT_RESET = "text_reset"
    REASONING_DELTA = "reasoning_delta"
    OPERATION = "operation"
    USAGE = "usage"
    ERROR = "error"


@dataclass(frozen=True, slots=True)
class ProposedOperation:
    type: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AgentChunk:
    kind: AgentChunkKind
    text: str = ""
    operation: ProposedOperation | None = None
    usage: UsageDelta | None = None
    error: str | None = None

    @classmethod
    def text_delta(cls, text: str) -> "AgentChunk":
        return cls(kind=AgentChunkKind.TEXT_DELTA, text=text)

    @classmethod
    def text_complete(cls, text: str) -> "AgentChunk":
        """The complete text of the turn so far, spanning any operations in between."""

        return cls(kind=AgentChunkKind.TEXT_COMPLETE, text=text)

    @classmethod
    def text_reset(cls) -> "AgentChunk":
        return cls(kind=AgentChunkKind.TEXT_RESET)

    @classmethod
    def reasoning_delta(cls, text: str) -> "AgentChunk":
        return cls(kind=AgentChunkKind.REASONING_DELTA, text=text)

    @classmethod
    def propose(cls, type: str, input: dict[str, Any] | None = None) -> "AgentChunk":
        return cls(kind=AgentChunkKind.OPERATION, operation=ProposedOperation(type=type, input=dict(input or {})))

    @classmethod
    def usage_delta(
        cls,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        reasoning_tokens: int = 0,
        cost: float = 0.0,
    ) -> "AgentChunk":
        return cls(
            kind=AgentChunkKind.USAGE,
            usage=UsageDelta(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                reasoning_tokens=reasoning_tokens,
                cost=cost,
            ),
        )

    @classmethod
    def failure(cls, error: str) -> "AgentChunk":
        return cls(kind=AgentChunkKind.ERROR, error=error)

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "AgentChunk":
        """
        Parse the JSON form used by scripted sources.

        Examples:
          {"kind": "text_delta", "text": "Hello"}
          {"kind": "operation", "type": "file_read", "input": {"path": "README.md"}}
          {"kind": "usage", "input_tokens": 10, "output_tokens": 3, "cost": 0.001}
          {"kind": "error", "error": "upstream closed"}
        """

        if not isinstance(raw, dict):
            raise ValueError("Agent chunk must be a JSON object.")
        try:
            kind = AgentChunkKind(str(raw.get("kind")))
        except ValueError as e:
            raise ValueError(f"Unknown agent chunk kind: {raw.get('kind')!r}") from e

        if kind is AgentChunkKind.OPERATION:
            op_type = raw.get("type")
            op_input = raw.get("input", {})
            if not isinstance(op_type, str) or not op_type.strip():
                raise ValueError("Operation chunk requires a non-empty 'type'.")
            if not isinstance(op_input, dict):
                raise ValueError("Operation chunk 'input' must be an object.")
            return AgentChunk.propose(op_type, op_input)
        if kind is AgentChunkKind.USAGE:
            return AgentChunk(
                kind=kind,
                usage=UsageDelta.model_validate(
                    {k: raw[k] for k in ("input_tokens", "output_tokens", "reasoning_tokens", "cost") if k in raw}
                ),
            )
        if kind is AgentChunkKind.ERROR:
            return AgentChunk.failure(str(raw.get("error") or "Agent stream failed."))
        if kind is AgentChunkKind.TEXT_RESET:
            return AgentChunk.text_reset()
        text = raw.get("text", "")
        if not isinstance(text, str):
            raise ValueError(f"Chunk '{kind.value}' requires string 'text'.")
        return AgentChunk(kind=kind, text=text)


@dataclass(frozen=True, slots=True)
class AgentRequest:
    chat_id: str
    mode: ChatMode
    messages: tuple[Message, ...]
    cancel: CancellationToken


ChunkStream = Iterable[AgentChunk] | AsyncIterable[AgentChunk]


class AgentSource(Protocol):
    """Opaque streaming text+operation source. Each call yields a fresh, never replayed, stream."""

    def stream(self, request: AgentRequest) -> ChunkStream: ...


class ScriptedAgentSource:
    """Replays a fixed chunk list; used by tests and `steward replay`."""

    def __init__(
        self,
        chunks: Iterable[AgentChunk],
        *,
        delay_s: float = 0.0,
        fail_with: str | None = None,
    ) -> None:
        self._chunks = list(chunks)
        self._delay_s = max(0.0, float(delay_s))
        self._fail_with = fail_with
        self.requests: list[AgentRequest] = []

    @classmethod
    def from_jsonl(cls, path: Path, **kwargs: Any) -> "ScriptedAgentSource":
        chunks: list[AgentChunk] = []
        for lineno, line in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                chunks.append(AgentChunk.from_dict(json.loads(line)))
            except (json.JSONDecodeError, ValueError) as e:
                raise ValueError(f"{path}:{lineno}: {e}") from e
        return cls(chunks, **kwargs)

    def stream(self, request: AgentRequest) -> AsyncIterator[AgentChunk]:
        self.requests.append(request)
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AgentChunk]:
        for chunk in self._chunks:
            if self._delay_s:
                await asyncio.sleep(self._delay_s)
            yield chunk
        if self._fail_with is not None:
            raise AgentStreamError(self._fail_with)


async def iterate_chunks(stream: ChunkStream, *, cancel: CancellationToken | None = None) -> AsyncIterator[AgentChunk]:
    """
    Uniform async view over a sync or async chunk stream.

    Blocking iterables are drained on a daemon thread and handed over through
    an asyncio.Queue so the event loop keeps running between chunks.
    """

    if hasattr(stream, "__aiter__"):
        async for chunk in stream:  # type: ignore[union-attr]
            yield chunk
        return

    loop = asyncio.get_running_loop()
    q: asyncio.Queue[AgentChunk | BaseException | None] = asyncio.Queue()

    def _put(item: AgentChunk | BaseException | None) -> None:
        try:
            loop.call_soon_threadsafe(q.put_nowait, item)
        except RuntimeError:
            # Loop closed; the consumer is gone.
            pass

    def _producer() -> None:
        try:
            for chunk in stream:  # type: ignore[union-attr]
                if cancel is not None and cancel.cancelled:
                    break
                _put(chunk)
            _put(None)
        except BaseException as e:
            _put(e)

    threading.Thread(target=_producer, name="steward-agent-stream", daemon=True).start()

    while True:
        item = await q.get()
        if item is None:
            return
        if isinstance(item, BaseException):
            raise item
        yield item
