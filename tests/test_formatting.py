import random

import pytest

from steward.runtime.formatting import format_elapsed, format_name, pluralize, render_operation_message, thinking_status
from steward.runtime.models.operation import Operation
from steward.runtime.models.status import OperationStatus


@pytest.mark.parametrize(
    "ms,expected",
    [(0.5, "0.50ms"), (40, "40ms"), (999.4, "999ms"), (1500, "1.5s"), (12_345, "12.3s")],
)
def test_format_elapsed(ms, expected):
    assert format_elapsed(ms) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [("file_edit", "File Edit"), ("fileEdit", "File Edit"), ("file-edit", "File Edit"), ("lookup", "Lookup")],
)
def test_format_name(raw, expected):
    assert format_name(raw) == expected


def test_pluralize():
    assert pluralize(1, "operation") == "1 operation"
    assert pluralize(2, "operation") == "2 operations"
    assert pluralize(0, "entry", "entries", prefix_count=False) == "entries"


def test_thinking_status_is_seeded():
    assert thinking_status(random.Random(7)) == thinking_status(random.Random(7))
    assert thinking_status().endswith("...")


def test_render_operation_message_sections():
    op = Operation(type="lookup", input={"q": "x"})
    analyzed = op.transition(OperationStatus.ANALYZED, analysis="Will look.")
    text = render_operation_message(analyzed)
    assert text.startswith("Operation lookup requires approval:")
    assert '<input>\n{\n  "q": "x"\n}\n</input>' in text
    assert "<analysis>\nWill look.\n</analysis>" in text

    done = analyzed.transition(OperationStatus.DONE, output="found")
    text = render_operation_message(done)
    assert text.startswith("Operation lookup completed successfully:")
    assert "<output>\nfound\n</output>" in text
    assert "<analysis>" not in text

    failed = op.transition(OperationStatus.DONE_ERROR, error="boom")
    assert render_operation_message(failed).startswith("Operation lookup failed: boom")
