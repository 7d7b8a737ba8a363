"""Tests for content blocks, messages and the transcript."""

import pytest

from ferry.messages import (
    ASSISTANT,
    USER,
    Message,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    Transcript,
    block_from_wire,
    block_to_wire,
)
from ferry.report import ProtocolError


# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------


class TestBlockWire:
    def test_text_to_wire(self):
        assert block_to_wire(TextBlock("hi")) == {"type": "text", "text": "hi"}

    def test_tool_use_to_wire(self):
        block = ToolUseBlock(id="tu_1", name="read_file", input={"file_path": "a.txt"})
        assert block_to_wire(block) == {
            "type": "tool_use",
            "id": "tu_1",
            "name": "read_file",
            "input": {"file_path": "a.txt"},
        }

    def test_tool_result_to_wire(self):
        block = ToolResultBlock(tool_use_id="tu_1", content="ok")
        assert block_to_wire(block) == {
            "type": "tool_result",
            "tool_use_id": "tu_1",
            "content": "ok",
        }

    def test_to_wire_rejects_other_objects(self):
        with pytest.raises(TypeError):
            block_to_wire({"type": "text", "text": "x"})

    def test_from_wire_text(self):
        assert block_from_wire({"type": "text", "text": "hello"}) == TextBlock("hello")

    def test_from_wire_tool_use(self):
        block = block_from_wire(
            {"type": "tool_use", "id": "x", "name": "terminal", "input": {"command": "ls"}}
        )
        assert block == ToolUseBlock(id="x", name="terminal", input={"command": "ls"})

    def test_from_wire_tool_use_without_input(self):
        block = block_from_wire({"type": "tool_use", "id": "x", "name": "terminal"})
        assert block.input == {}

    def test_from_wire_non_string_input_values_become_json(self):
        block = block_from_wire(
            {
                "type": "tool_use",
                "id": "x",
                "name": "terminal",
                "input": {"command": "sleep 1", "timeout": 5, "flags": ["a", "b"]},
            }
        )
        assert block.input == {
            "command": "sleep 1",
            "timeout": "5",
            "flags": '["a", "b"]',
        }

    def test_from_wire_unknown_type(self):
        with pytest.raises(ValueError, match="unknown content block type"):
            block_from_wire({"type": "image", "source": {}})

    def test_from_wire_missing_field(self):
        with pytest.raises(ValueError, match="missing 'id'"):
            block_from_wire({"type": "tool_use", "name": "terminal", "input": {}})

    def test_from_wire_not_an_object(self):
        with pytest.raises(ValueError):
            block_from_wire(["text"])

    def test_from_wire_non_string_text(self):
        with pytest.raises(ValueError):
            block_from_wire({"type": "text", "text": 3})

    def test_extra_fields_ignored(self):
        block = block_from_wire({"type": "text", "text": "a", "citations": None})
        assert block == TextBlock("a")


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------


class TestMessage:
    def test_invalid_role(self):
        with pytest.raises(ValueError):
            Message("system", (TextBlock("x"),))

    def test_content_is_tuple(self):
        msg = Message(USER, [TextBlock("x")])
        assert isinstance(msg.content, tuple)

    def test_tool_uses_in_order(self):
        a = ToolUseBlock("a", "read_file", {})
        b = ToolUseBlock("b", "terminal", {})
        msg = Message(ASSISTANT, (TextBlock("thinking"), a, b))
        assert msg.tool_uses() == [a, b]
        assert msg.tool_results() == []

    def test_to_wire(self):
        msg = Message(USER, (TextBlock("hi"),))
        assert msg.to_wire() == {
            "role": "user",
            "content": [{"type": "text", "text": "hi"}],
        }


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------


def _with_tool_uses(*ids):
    t = Transcript()
    t.append_user_text("go")
    t.append_assistant([ToolUseBlock(i, "terminal", {"command": "true"}) for i in ids])
    return t


class TestTranscript:
    def test_empty(self):
        t = Transcript()
        assert len(t) == 0
        assert t.last is None
        assert t.pending_tool_uses() == []
        assert t.to_wire() == []

    def test_append_user_text(self):
        t = Transcript()
        msg = t.append_user_text("hello")
        assert t.last is msg
        assert msg.role == USER
        assert msg.content == (TextBlock("hello"),)

    def test_pending_tool_uses(self):
        t = _with_tool_uses("a", "b")
        assert [b.id for b in t.pending_tool_uses()] == ["a", "b"]

    def test_no_pending_after_text_answer(self):
        t = Transcript()
        t.append_user_text("hi")
        t.append_assistant([TextBlock("hello")])
        assert t.pending_tool_uses() == []

    def test_append_tool_results_in_one_message(self):
        t = _with_tool_uses("a", "b")
        msg = t.append_tool_results(
            [ToolResultBlock("a", "one"), ToolResultBlock("b", "two")]
        )
        assert msg.role == USER
        assert [r.tool_use_id for r in msg.tool_results()] == ["a", "b"]
        assert len(t) == 3
        assert t.pending_tool_uses() == []

    def test_results_without_pending_uses(self):
        t = Transcript()
        t.append_user_text("hi")
        with pytest.raises(ProtocolError):
            t.append_tool_results([ToolResultBlock("a", "x")])

    def test_unmatched_result(self):
        t = _with_tool_uses("a")
        with pytest.raises(ProtocolError, match="does not match"):
            t.append_tool_results([ToolResultBlock("zzz", "x")])
        assert len(t) == 2

    def test_duplicate_result(self):
        t = _with_tool_uses("a", "b")
        with pytest.raises(ProtocolError, match="duplicate"):
            t.append_tool_results(
                [ToolResultBlock("a", "x"), ToolResultBlock("a", "y")]
            )

    def test_missing_result(self):
        t = _with_tool_uses("a", "b")
        with pytest.raises(ProtocolError, match="missing tool results for b"):
            t.append_tool_results([ToolResultBlock("a", "x")])

    def test_resolve_pending(self):
        t = _with_tool_uses("a", "b")
        assert t.resolve_pending("interrupted") == 2
        assert [r.content for r in t.last.tool_results()] == [
            "interrupted",
            "interrupted",
        ]
        assert t.resolve_pending("again") == 0
        assert len(t) == 3

    def test_resolve_pending_collapses_repeated_ids(self):
        t = _with_tool_uses("a", "a")
        assert t.resolve_pending("interrupted") == 1
        assert t.pending_tool_uses() == []

    def test_clear(self):
        t = _with_tool_uses("a")
        t.clear()
        assert len(t) == 0

    def test_to_wire_order(self):
        t = _with_tool_uses("a")
        t.append_tool_results([ToolResultBlock("a", "done")])
        assert [m["role"] for m in t.to_wire()] == ["user", "assistant", "user"]
