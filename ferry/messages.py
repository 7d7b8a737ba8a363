"""Content blocks, messages and the conversation transcript.

A message is a role plus an ordered list of content blocks. The block
vocabulary is closed: text, tool_use and tool_result, told apart on the
wire by the ``type`` field.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field

from .report import ProtocolError

USER = "user"
ASSISTANT = "assistant"
ROLES = (USER, ASSISTANT)


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    input: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str


ContentBlock = TextBlock | ToolUseBlock | ToolResultBlock


def block_to_wire(block: ContentBlock) -> dict:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {
            "type": "tool_use",
            "id": block.id,
            "name": block.name,
            "input": dict(block.input),
        }
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
        }
    raise TypeError(f"not a content block: {block!r}")


def _stringify(value) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False)


def block_from_wire(data: dict) -> ContentBlock:
    """Build a content block from its wire dict.

    Raises ValueError for unknown types or missing fields. Non-string
    tool_use input values are replaced by their JSON text.
    """
    if not isinstance(data, dict):
        raise ValueError(f"content block must be an object, got {type(data).__name__}")
    kind = data.get("type")
    try:
        if kind == "text":
            return TextBlock(text=_require_str(data, "text"))
        if kind == "tool_use":
            raw_input = data.get("input") or {}
            if not isinstance(raw_input, dict):
                raise ValueError("tool_use input must be an object")
            return ToolUseBlock(
                id=_require_str(data, "id"),
                name=_require_str(data, "name"),
                input={str(k): _stringify(v) for k, v in raw_input.items()},
            )
        if kind == "tool_result":
            return ToolResultBlock(
                tool_use_id=_require_str(data, "tool_use_id"),
                content=_require_str(data, "content"),
            )
    except KeyError as e:
        raise ValueError(f"{kind} block is missing {e.args[0]!r}") from None
    raise ValueError(f"unknown content block type {kind!r}")


def _require_str(data: dict, key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class Message:
    role: str
    content: tuple[ContentBlock, ...]

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"invalid role {self.role!r}")
        object.__setattr__(self, "content", tuple(self.content))

    def tool_uses(self) -> list[ToolUseBlock]:
        return [b for b in self.content if isinstance(b, ToolUseBlock)]

    def tool_results(self) -> list[ToolResultBlock]:
        return [b for b in self.content if isinstance(b, ToolResultBlock)]

    def to_wire(self) -> dict:
        return {"role": self.role, "content": [block_to_wire(b) for b in self.content]}


class Transcript:
    """Append-only message history for one conversation.

    The orchestrator owns it; the model client appends assistant messages
    after each successful response.
    """

    def __init__(self, messages: list[Message] | None = None):
        self._messages: list[Message] = list(messages or [])

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self):
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def append(self, message: Message) -> None:
        self._messages.append(message)

    def append_user_text(self, text: str) -> Message:
        msg = Message(USER, (TextBlock(text),))
        self.append(msg)
        return msg

    def append_assistant(self, blocks) -> Message:
        msg = Message(ASSISTANT, tuple(blocks))
        self.append(msg)
        return msg

    def pending_tool_uses(self) -> list[ToolUseBlock]:
        """Tool uses in the last message still waiting for a result."""
        last = self.last
        if last is None or last.role != ASSISTANT:
            return []
        return last.tool_uses()

    def append_tool_results(self, results: list[ToolResultBlock]) -> Message:
        """Append one user message answering every pending tool use.

        Each result must match exactly one tool use of the preceding
        assistant message and every tool use must be answered.
        """
        pending = [b.id for b in self.pending_tool_uses()]
        if not pending:
            raise ProtocolError("no assistant tool uses are waiting for results")
        seen: set[str] = set()
        for result in results:
            if result.tool_use_id not in pending:
                raise ProtocolError(
                    f"tool result {result.tool_use_id!r} does not match any pending tool use"
                )
            if result.tool_use_id in seen:
                raise ProtocolError(f"duplicate tool result for {result.tool_use_id!r}")
            seen.add(result.tool_use_id)
        missing = [i for i in pending if i not in seen]
        if missing:
            raise ProtocolError(f"missing tool results for {', '.join(missing)}")
        msg = Message(USER, tuple(results))
        self.append(msg)
        return msg

    def resolve_pending(self, content: str) -> int:
        """Answer every pending tool use with the same fixed content."""
        ids = list(dict.fromkeys(b.id for b in self.pending_tool_uses()))
        if ids:
            results = [ToolResultBlock(tool_use_id=i, content=content) for i in ids]
            self.append(Message(USER, tuple(results)))
        return len(ids)

    def clear(self) -> None:
        self._messages.clear()

    def to_wire(self) -> list[dict]:
        return [m.to_wire() for m in self._messages]
