import json

import pytest

from steward.runtime.agent_source import (
    AgentChunk,
    AgentChunkKind,
    AgentStreamError,
    ScriptedAgentSource,
    iterate_chunks,
)
from steward.runtime.cancel import CancellationToken


def test_from_jsonl_parses_every_chunk_kind(tmp_path):
    path = tmp_path / "chunks.jsonl"
    lines = [
        {"kind": "text_delta", "text": "Hel"},
        {"kind": "text_complete", "text": "Hello"},
        {"kind": "reasoning_delta", "text": "hmm"},
        {"kind": "text_reset"},
        {"kind": "operation", "type": "file_read", "input": {"path": "README.md"}},
        {"kind": "usage", "input_tokens": 10, "output_tokens": 3, "cost": 0.001},
        {"kind": "error", "error": "upstream closed"},
    ]
    path.write_text("\n".join(json.dumps(line) for line in lines) + "\n\n", encoding="utf-8")

    source = ScriptedAgentSource.from_jsonl(path)

    chunks = source._chunks
    assert [c.kind for c in chunks] == [
        AgentChunkKind.TEXT_DELTA,
        AgentChunkKind.TEXT_COMPLETE,
        AgentChunkKind.REASONING_DELTA,
        AgentChunkKind.TEXT_RESET,
        AgentChunkKind.OPERATION,
        AgentChunkKind.USAGE,
        AgentChunkKind.ERROR,
    ]
    assert chunks[4].operation.input == {"path": "README.md"}
    assert chunks[5].usage.output_tokens == 3
    assert chunks[6].error == "upstream closed"


def test_from_jsonl_reports_line_number(tmp_path):
    path = tmp_path / "bad.jsonl"
    path.write_text('{"kind": "text_delta", "text": "ok"}\n{"kind": "operation"}\n', encoding="utf-8")
    with pytest.raises(ValueError, match="bad.jsonl:2"):
        ScriptedAgentSource.from_jsonl(path)


@pytest.mark.parametrize(
    "raw",
    [{"kind": "nope"}, {"kind": "operation", "type": "x", "input": []}, {"kind": "text_delta", "text": 3}, "text"],
)
def test_from_dict_rejects_malformed(raw):
    with pytest.raises(ValueError):
        AgentChunk.from_dict(raw)


@pytest.mark.asyncio
async def test_iterate_chunks_over_sync_iterable():
    chunks = [AgentChunk.text_delta("a"), AgentChunk.text_delta("b")]
    seen = [c.text async for c in iterate_chunks(iter(chunks))]
    assert seen == ["a", "b"]


@pytest.mark.asyncio
async def test_iterate_chunks_propagates_producer_errors():
    def _broken():
        yield AgentChunk.text_delta("a")
        raise AgentStreamError("socket closed")

    seen = []
    with pytest.raises(AgentStreamError, match="socket closed"):
        async for chunk in iterate_chunks(_broken(), cancel=CancellationToken()):
            seen.append(chunk.text)
    assert seen == ["a"]


@pytest.mark.asyncio
async def test_scripted_source_fails_after_chunks():
    source = ScriptedAgentSource([AgentChunk.text_delta("x")], fail_with="gone")
    seen = []
    with pytest.raises(AgentStreamError, match="gone"):
        async for chunk in source._iterate():
            seen.append(chunk)
    assert len(seen) == 1
