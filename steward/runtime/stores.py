from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Callable, Protocol

from .events import TurnEvent, TurnEventKind
from .ids import now_ts_ms
from .models.chat import ChatMessages, ChatMeta, ChatMode, Message
from .models.usage import UsageDelta


class ChatStoreError(RuntimeError):
    pass


class ChatNotFoundError(ChatStoreError):
    pass


def _safe_write_json(path: Path, obj: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(
        json.dumps(obj, ensure_ascii=False, sort_keys=True, indent=2) + "\n",
        encoding="utf-8",
        errors="backslashreplace",
    )
    tmp.replace(path)


def _load_json_dict(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise
    except Exception as e:
        raise ChatStoreError(f"Failed to read JSON file {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ChatStoreError(f"Invalid JSON object in file {path}.")
    return raw


class ChatTranscriptStore(Protocol):
    def load(self) -> list[Message]: ...

    def append(self, message: Message) -> None: ...

    def replace(self, message: Message) -> None: ...


class InMemoryChatStore:
    def __init__(self, messages: list[Message] | None = None) -> None:
        self._lock = threading.Lock()
        self._messages: list[Message] = list(messages or [])

    def load(self) -> list[Message]:
        with self._lock:
            return list(self._messages)

    def append(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)

    def replace(self, message: Message) -> None:
        with self._lock:
            for i, existing in enumerate(self._messages):
                if existing.created == message.created:
                    self._messages[i] = message
                    return
        raise ChatStoreError(f"No message with created={message.created} to replace.")


class FileChatStore:
    """
    One chat transcript as a JSON document: `{"updated": ms, "messages": [...]}`.

    Writes are serialized and atomic (tmp file + replace). Message identity is
    the `created` timestamp.
    """

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> ChatMessages:
        if not self._path.exists():
            return ChatMessages(updated=0, messages=[])
        raw = _load_json_dict(self._path)
        try:
            return ChatMessages.model_validate(raw)
        except ValueError as e:
            raise ChatStoreError(f"Invalid chat transcript {self._path}: {e}") from e

    def _write(self, doc: ChatMessages) -> None:
        _safe_write_json(self._path, doc.model_dump(mode="json"))

    def load(self) -> list[Message]:
        with self._lock:
            return list(self._read().messages)

    def append(self, message: Message) -> None:
        with self._lock:
            doc = self._read()
            doc.messages.append(message)
            doc.updated = now_ts_ms()
            self._write(doc)

    def replace(self, message: Message) -> None:
        with self._lock:
            doc = self._read()
            for i, existing in enumerate(doc.messages):
                if existing.created == message.created:
                    doc.messages[i] = message
                    doc.updated = now_ts_ms()
                    self._write(doc)
                    return
        raise ChatStoreError(f"No message with created={message.created} in {self._path}.")


class ChatMetaStore(Protocol):
    def get(self, chat_id: str) -> ChatMeta: ...

    def list(self) -> list[ChatMeta]: ...

    def upsert(self, meta: ChatMeta) -> ChatMeta: ...

    def set_mode(self, chat_id: str, mode: ChatMode) -> ChatMeta: ...

    def add_usage(self, chat_id: str, delta: UsageDelta) -> ChatMeta: ...


class FileChatMetaStore:
    """Chat index (`chats.json`): id -> ChatMeta, including persisted usage totals."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    def _read_all(self) -> dict[str, ChatMeta]:
        if not self._path.exists():
            return {}
        raw = _load_json_dict(self._path)
        chats = raw.get("chats") or {}
        if not isinstance(chats, dict):
            raise ChatStoreError(f"Invalid chat index {self._path}: 'chats' must be an object.")
        try:
            return {str(k): ChatMeta.model_validate(v) for k, v in chats.items()}
        except ValueError as e:
            raise ChatStoreError(f"Invalid chat index {self._path}: {e}") from e

    def _write_all(self, chats: dict[str, ChatMeta]) -> None:
        _safe_write_json(self._path, {"chats": {k: v.model_dump(mode="json") for k, v in chats.items()}})

    def get(self, chat_id: str) -> ChatMeta:
        with self._lock:
            chats = self._read_all()
        meta = chats.get(chat_id)
        if meta is None:
            raise ChatNotFoundError(f"Chat not found: {chat_id}")
        return meta

    def list(self) -> list[ChatMeta]:
        with self._lock:
            chats = self._read_all()
        return sorted(chats.values(), key=lambda m: (m.updated, m.id), reverse=True)

    def upsert(self, meta: ChatMeta) -> ChatMeta:
        with self._lock:
            chats = self._read_all()
            chats[meta.id] = meta
            self._write_all(chats)
        return meta

    def _update(self, chat_id: str, patch: Callable[[ChatMeta], dict[str, Any]]) -> ChatMeta:
        with self._lock:
            chats = self._read_all()
            meta = chats.get(chat_id)
            if meta is None:
                raise ChatNotFoundError(f"Chat not found: {chat_id}")
            updated = meta.model_copy(update={**patch(meta), "updated": now_ts_ms()})
            chats[chat_id] = updated
            self._write_all(chats)
        return updated

    def set_mode(self, chat_id: str, mode: ChatMode) -> ChatMeta:
        return self._update(chat_id, lambda _meta: {"mode": ChatMode(mode)})

    def add_usage(self, chat_id: str, delta: UsageDelta) -> ChatMeta:
        return self._update(chat_id, lambda meta: {"usage": meta.usage.merged(delta)})


class FileEventLogStore:
    """Append-only JSONL log of turn events, one file per chat."""

    _SKIPPED_KINDS = frozenset({TurnEventKind.ELAPSED})

    def __init__(self, events_dir: Path) -> None:
        self._dir = Path(events_dir)
        self._lock = threading.Lock()

    def path_for(self, chat_id: str) -> Path:
        return self._dir / f"{chat_id}.jsonl"

    def append(self, event: TurnEvent) -> None:
        if event.kind in self._SKIPPED_KINDS:
            return
        path = self.path_for(event.chat_id)
        line = json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True, default=str)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read(self, chat_id: str) -> list[TurnEvent]:
        path = self.path_for(chat_id)
        if not path.exists():
            return []
        out: list[TurnEvent] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            if not line.strip():
                continue
            try:
                out.append(TurnEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                raise ChatStoreError(f"Corrupt event log line in {path}: {e}") from e
        return out
