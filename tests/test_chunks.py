"""Tests for stream-json parsing and run output accumulation."""
from __future__ import annotations

import json

from heimerdinger.engine.chunks import RunOutput, StreamLineParser, parse_line

from conftest import assistant, result


def test_parse_line_rejects_blank_and_malformed():
    assert parse_line("") is None
    assert parse_line("   ") is None
    assert parse_line("not json") is None
    assert parse_line('"a string"') is None
    assert parse_line("[1, 2]") is None


def test_parse_result_line():
    chunk = parse_line(json.dumps({
        "type": "result",
        "subtype": "success",
        "session_id": "s1",
        "result": "ok",
        "total_cost_usd": 0.25,
        "permission_denials": [
            {"tool_name": "Bash", "tool_use_id": "t1", "tool_input": {"command": "ls"}},
            "junk",
        ],
    }))
    assert chunk.is_result
    assert chunk.session_id == "s1"
    assert chunk.cost_usd == 0.25
    assert [d.tool_name for d in chunk.permission_denials] == ["Bash"]
    assert chunk.permission_denials[0].tool_input == {"command": "ls"}


def test_parse_assistant_blocks():
    chunk = parse_line(json.dumps({
        "type": "assistant",
        "uuid": "u1",
        "message": {"content": [
            {"type": "text", "text": "Hi"},
            {"type": "tool_use", "id": "t1", "name": "Edit", "input": {"file_path": "/a"}},
            {"no_type": True},
        ]},
    }))
    assert chunk.message_id == "u1"
    assert [b.type for b in chunk.blocks] == ["text", "tool_use"]
    assert chunk.blocks[1].name == "Edit"


def test_legacy_cost_field_is_used():
    chunk = parse_line(json.dumps({"type": "result", "cost_usd": 0.1}))
    assert chunk.cost_usd == 0.1


def test_line_parser_buffers_partial_lines():
    parser = StreamLineParser()
    line = json.dumps({"type": "result", "session_id": "s1"}) + "\n"

    assert parser.feed(line[:10].encode()) == []
    chunks = parser.feed(line[10:].encode() + b"garbage\n")

    assert [c.session_id for c in chunks] == ["s1"]
    assert parser.flush() == []


def test_line_parser_handles_split_utf8():
    parser = StreamLineParser()
    data = json.dumps({"type": "result", "result": "日本"}, ensure_ascii=False).encode("utf-8")
    cut = data.index("日".encode("utf-8")) + 1

    assert parser.feed(data[:cut]) == []
    assert parser.feed(data[cut:]) == []
    chunks = parser.flush()

    assert chunks[0].result == "日本"


def test_run_output_accumulates_text_once_per_message():
    output = RunOutput()
    first = assistant("Hello ", uuid="m1")

    assert output.apply(first) is True
    assert output.apply(first) is False
    assert output.apply(assistant("world", uuid="m2")) is True
    assert output.text == "Hello world"


def test_run_output_tracks_file_edits_without_text():
    output = RunOutput()
    chunk = assistant(tools=[
        {"name": "Write", "input": {"file_path": "/repo/new.py", "content": "x"}},
        {"name": "Read", "input": {"file_path": "/repo/other.py"}},
    ])

    assert output.apply(chunk) is True
    assert output.text == ""
    assert [(c.path, c.tool) for c in output.file_changes] == [("/repo/new.py", "Write")]


def test_run_output_result_marks_finished():
    output = RunOutput()
    final = result("s9")

    assert output.apply(final) is False
    assert output.finished
    assert output.last_result is final
