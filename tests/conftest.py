from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from steward.runtime.agent_source import AgentChunk, ScriptedAgentSource
from steward.runtime.cancel import CancellationToken
from steward.runtime.config import StewardConfig
from steward.runtime.models.chat import ChatMeta, ChatMode
from steward.runtime.models.operation import EffectClass
from steward.runtime.operations import FunctionOperation, OperationContext, OperationExecutor, OperationRegistry
from steward.runtime.orchestrator import TurnOrchestrator
from steward.runtime.stores import FileChatMetaStore, InMemoryChatStore

CHAT_ID = "chat-1"


class CallLog:
    """Thread-safe record of operation invocations (operations run on worker threads)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def record(self, name: str, args: dict[str, Any]) -> None:
        with self._lock:
            self.calls.append((name, dict(args)))

    def names(self) -> list[str]:
        with self._lock:
            return [name for name, _ in self.calls]


@pytest.fixture
def call_log() -> CallLog:
    return CallLog()


@pytest.fixture
def registry(call_log: CallLog) -> OperationRegistry:
    def _lookup(args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        call_log.record("lookup", args)
        return {"found": args.get("q")}

    def _update(args: dict[str, Any], context: OperationContext) -> dict[str, Any]:
        call_log.record("update_record", args)
        return {"updated": True}

    def _explode(args: dict[str, Any], context: OperationContext) -> None:
        call_log.record("explode", args)
        raise RuntimeError("boom")

    reg = OperationRegistry()
    reg.register(
        FunctionOperation(
            name="lookup",
            effect=EffectClass.READ,
            run=_lookup,
            describe=lambda args: f"Will look up {args.get('q')!r}.",
        )
    )
    reg.register(FunctionOperation(name="update_record", effect=EffectClass.UPDATE, run=_update))
    reg.register(FunctionOperation(name="explode", effect=EffectClass.READ, run=_explode))
    return reg


@pytest.fixture
def executor(registry: OperationRegistry) -> OperationExecutor:
    return OperationExecutor(registry)


@pytest.fixture
def op_context(tmp_path: Path) -> OperationContext:
    return OperationContext(project_root=tmp_path, chat_id=CHAT_ID, cancel=CancellationToken())


@pytest.fixture
def quiet_config() -> StewardConfig:
    # No elapsed ticks so event sequences are deterministic.
    return StewardConfig(elapsed_interval_s=None, approval_dismiss_s=0.01, turn_timeout_s=5.0)


@pytest.fixture
def build_orchestrator(tmp_path: Path, registry: OperationRegistry, quiet_config: StewardConfig):
    def _build(
        chunks: list[AgentChunk],
        *,
        mode: ChatMode = ChatMode.NONE,
        fail_with: str | None = None,
        delay_s: float = 0.0,
        config: StewardConfig | None = None,
        source: Any = None,
    ) -> tuple[TurnOrchestrator, InMemoryChatStore, FileChatMetaStore]:
        store = InMemoryChatStore()
        meta_store = FileChatMetaStore(tmp_path / ".steward" / "chats.json")
        meta_store.upsert(ChatMeta(id=CHAT_ID, mode=mode, created=1, updated=1))
        orchestrator = TurnOrchestrator(
            source=source or ScriptedAgentSource(chunks, delay_s=delay_s, fail_with=fail_with),
            executor=OperationExecutor(registry),
            store=store,
            project_root=tmp_path,
            meta_store=meta_store,
            config=config or quiet_config,
        )
        return orchestrator, store, meta_store

    return _build
