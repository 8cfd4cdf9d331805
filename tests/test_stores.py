import json

import pytest

from steward.runtime.events import TurnEvent, TurnEventKind
from steward.runtime.ids import next_created_ts
from steward.runtime.models.chat import ChatMeta, ChatMode, Message, MessageContent, MessageRole
from steward.runtime.models.usage import UsageDelta
from steward.runtime.stores import (
    ChatNotFoundError,
    ChatStoreError,
    FileChatMetaStore,
    FileChatStore,
    FileEventLogStore,
    InMemoryChatStore,
)


def _message(text, role=MessageRole.ASSISTANT):
    return Message(role=role, content=(MessageContent(content=text),), created=next_created_ts())


def test_file_chat_store_append_and_replace(tmp_path):
    """Messages are matched by creation time when replaced."""
    store = FileChatStore(tmp_path / "chats" / "c1.json")
    assert store.load() == []

    first = _message("hi", MessageRole.USER)
    second = _message("draft")
    store.append(first)
    store.append(second)
    store.replace(second.with_text_appended(" done"))

    loaded = store.load()
    assert [m.text for m in loaded] == ["hi", "draft done"]
    raw = json.loads(store.path.read_text(encoding="utf-8"))
    assert raw["updated"] > 0
    assert len(raw["messages"]) == 2
    assert not store.path.with_suffix(".json.tmp").exists()


def test_file_chat_store_replace_unknown_message(tmp_path):
    store = FileChatStore(tmp_path / "c1.json")
    store.append(_message("a"))
    with pytest.raises(ChatStoreError):
        store.replace(_message("b"))


def test_file_chat_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "c1.json"
    path.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ChatStoreError):
        FileChatStore(path).load()


def test_in_memory_store_replace():
    msg = _message("x")
    store = InMemoryChatStore([msg])
    store.replace(msg.with_text_appended("y"))
    assert store.load()[0].text == "xy"
    with pytest.raises(ChatStoreError):
        store.replace(_message("z"))


def test_meta_store_mode_and_usage(tmp_path):
    store = FileChatMetaStore(tmp_path / "chats.json")
    store.upsert(ChatMeta(id="old", created=1, updated=1))
    store.upsert(ChatMeta(id="c1", created=2, updated=2))

    meta = store.set_mode("c1", ChatMode.UPDATE)
    assert meta.mode is ChatMode.UPDATE
    assert meta.updated > 2

    store.add_usage("c1", UsageDelta(input_tokens=3, output_tokens=1, cost=0.5))
    store.add_usage("c1", UsageDelta(output_tokens=2))
    usage = store.get("c1").usage
    assert (usage.input_tokens, usage.output_tokens, usage.cost) == (3, 3, 0.5)

    assert [m.id for m in store.list()] == ["c1", "old"]
    assert store.get("c1").mode is ChatMode.UPDATE


def test_meta_store_missing_chat(tmp_path):
    store = FileChatMetaStore(tmp_path / "chats.json")
    with pytest.raises(ChatNotFoundError):
        store.get("nope")
    with pytest.raises(ChatNotFoundError):
        store.set_mode("nope", ChatMode.READ)
    assert store.list() == []


def test_event_log_skips_elapsed_ticks(tmp_path):
    log = FileEventLogStore(tmp_path / "events")
    for seq, kind in enumerate([TurnEventKind.STATUS, TurnEventKind.ELAPSED, TurnEventKind.COMPLETE], start=1):
        log.append(TurnEvent(kind=kind, sequence=seq, chat_id="c1", turn_id="t1", timestamp=seq, payload={"n": seq}))

    events = log.read("c1")
    assert [e.kind for e in events] == [TurnEventKind.STATUS, TurnEventKind.COMPLETE]
    assert events[1].payload == {"n": 3}
    assert log.read("other") == []


def test_event_log_corrupt_line(tmp_path):
    log = FileEventLogStore(tmp_path)
    log.path_for("c1").write_text("{not json}\n", encoding="utf-8")
    with pytest.raises(ChatStoreError):
        log.read("c1")
