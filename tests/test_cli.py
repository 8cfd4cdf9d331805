import json

import pytest

from steward.cli import EXIT_CONFIG_ERROR, EXIT_ERROR, EXIT_OK, EXIT_REJECTED, main


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("STEWARD_ELAPSED_INTERVAL_S", "off")
    monkeypatch.setenv("STEWARD_APPROVAL_DISMISS_S", "0")
    assert main(["init"]) == EXIT_OK
    return tmp_path


def _write_chunks(path, *chunks):
    path.write_text("\n".join(json.dumps(c) for c in chunks) + "\n", encoding="utf-8")
    return str(path)


def test_init_creates_state_dir(tmp_path, capsys):
    target = tmp_path / "fresh"
    assert main(["init", str(target)]) == EXIT_OK

    state = target / ".steward"
    assert (state / "chats").is_dir()
    assert (state / "events").is_dir()
    assert json.loads((state / "config.json").read_text(encoding="utf-8"))["default_mode"] == "none"
    assert "Initialized" in capsys.readouterr().out


def test_replay_auto_executes_in_read_mode(project, capsys):
    """A read operation runs without prompting when the chat trusts reads."""
    (project / "README.md").write_text("hello\n", encoding="utf-8")
    chunks = _write_chunks(
        project / "turn.jsonl",
        {"kind": "text_delta", "text": "Reading the readme."},
        {"kind": "operation", "type": "file_read", "input": {"path": "README.md"}},
        {"kind": "usage", "input_tokens": 12, "output_tokens": 5},
    )

    code = main(["replay", chunks, "--chat", "c1", "--mode", "read", "--input", "show readme"])

    out = capsys.readouterr().out
    assert code == EXIT_OK
    assert "Reading the readme." in out
    assert "[op 0] file_read: done" in out
    assert "· usage: in=12 out=5" in out

    transcript = json.loads((project / ".steward" / "chats" / "c1.json").read_text(encoding="utf-8"))
    assert [m["role"] for m in transcript["messages"]] == ["user", "assistant"]
    assert (project / ".steward" / "events" / "c1.jsonl").is_file()


@pytest.mark.parametrize(
    "decide,expected_code,exists",
    [("approve", EXIT_OK, True), ("reject", EXIT_REJECTED, False)],
)
def test_replay_resolves_approvals(project, capsys, decide, expected_code, exists):
    chunks = _write_chunks(
        project / "turn.jsonl",
        {"kind": "operation", "type": "file_create", "input": {"path": "out.txt", "content": "x"}},
    )

    code = main(["replay", chunks, "--chat", "c2", "--decide", decide])

    out = capsys.readouterr().out
    assert code == expected_code
    assert "[op 0] file_create: analyzed" in out
    assert (project / "out.txt").exists() is exists
    assert ("✓ 1 completed" in out) if exists else ("✓ 1 rejected" in out)


def test_replay_asks_on_plain_input(project, capsys, monkeypatch):
    monkeypatch.setenv("STEWARD_PLAIN_INPUT", "1")
    answers = iter(["maybe", "approve some", "reject", "approve"])
    monkeypatch.setattr("builtins.input", lambda _prompt="": next(answers))
    (project / "a.txt").write_text("a", encoding="utf-8")
    chunks = _write_chunks(
        project / "turn.jsonl",
        {"kind": "operation", "type": "file_delete", "input": {"path": "a.txt"}},
        {"kind": "operation", "type": "file_create", "input": {"path": "b.txt", "content": "b"}},
    )

    code = main(["replay", chunks, "--chat", "c3"])

    captured = capsys.readouterr()
    assert code == EXIT_OK
    assert "Please answer one of" in captured.err
    assert (project / "a.txt").exists()
    assert (project / "b.txt").read_text(encoding="utf-8") == "b"
    assert "✓ 1 completed, 1 rejected" in captured.out


def test_replay_stream_error_exits_nonzero(project, capsys):
    chunks = _write_chunks(
        project / "turn.jsonl",
        {"kind": "text_delta", "text": "partial"},
        {"kind": "error", "error": "upstream closed"},
    )

    assert main(["replay", chunks, "--chat", "c4"]) == EXIT_ERROR
    assert "Error [stream_failed]: upstream closed" in capsys.readouterr().err


def test_replay_bad_chunk_file(project, capsys):
    chunks = _write_chunks(project / "turn.jsonl", {"kind": "mystery"})
    assert main(["replay", chunks, "--chat", "c5"]) == EXIT_ERROR
    assert "turn.jsonl:1" in capsys.readouterr().err


def test_chats_list_and_set_mode(project, capsys):
    chunks = _write_chunks(project / "turn.jsonl", {"kind": "text_delta", "text": "hi"})
    assert main(["replay", chunks, "--chat", "c6", "--mode", "read", "--input", "hello"]) == EXIT_OK
    capsys.readouterr()

    assert main(["chats"]) == EXIT_OK
    assert "c6\tmode=read" in capsys.readouterr().out

    assert main(["chats", "--chat", "c6", "--mode", "delete"]) == EXIT_OK
    assert capsys.readouterr().out.strip() == "c6\tmode=delete"

    assert main(["chats", "--chat", "missing", "--mode", "read"]) == EXIT_ERROR
    assert main(["chats", "--mode", "read"]) == EXIT_ERROR


def test_commands_require_an_initialized_project(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    assert main(["chats"]) == EXIT_CONFIG_ERROR
    assert ".steward" in capsys.readouterr().err
