"""Shared data types for deecli."""

from __future__ import annotations

import enum
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

ROLES = ("system", "user", "assistant", "tool")


def _optional_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key!r} must be a string, got {type(value).__name__}")
    return value


def _tool_call_list(container: dict[str, Any]) -> list[ToolCall]:
    raw = container.get("tool_calls") or []
    if not isinstance(raw, list):
        raise ValueError("'tool_calls' must be a list")
    return [ToolCall.from_dict(tc) for tc in raw]


def _first_choice(data: dict[str, Any]) -> dict[str, Any] | None:
    choices = data.get("choices") or []
    if not isinstance(choices, list):
        raise ValueError("'choices' must be a list")
    if not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        raise ValueError(f"choice must be an object, got {type(choice).__name__}")
    return choice


def _usage(data: dict[str, Any]) -> dict[str, int]:
    usage = data.get("usage")
    return usage if isinstance(usage, dict) else {}


# ---------------------------------------------------------------------------
# Tool types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolDefinition:
    """A function the model may call.  Forwarded verbatim, never interpreted."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolDefinition:
        func = data.get("function", data)
        return cls(
            name=func.get("name", ""),
            description=func.get("description", ""),
            parameters=func.get("parameters", {}) or {},
        )


@dataclass(frozen=True)
class ToolCall:
    """A tool invocation, or one streamed fragment of it.

    ``arguments`` is raw JSON text.  While streaming it is the concatenation
    of every fragment received so far and may not parse yet.
    """

    id: str = ""
    name: str = ""
    arguments: str = ""
    index: int | None = None
    type: str = "function"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        """Build from a wire object.  Raises ``ValueError`` on a wrong shape."""
        if not isinstance(data, dict):
            raise ValueError(f"tool call must be an object, got {type(data).__name__}")
        func = data.get("function") or {}
        if not isinstance(func, dict):
            raise ValueError("tool call 'function' must be an object")
        args = func.get("arguments", "")
        if args is None:
            args = ""
        elif not isinstance(args, str):
            args = json.dumps(args)
        call_id = _optional_str(data, "id")
        name = _optional_str(func, "name")
        index = data.get("index")
        return cls(
            id=call_id,
            name=name,
            arguments=args,
            index=index if isinstance(index, int) else None,
            type=_optional_str(data, "type") or "function",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @property
    def arguments_complete(self) -> bool:
        """True when the accumulated argument text is valid JSON."""
        if not self.arguments:
            return True
        try:
            json.loads(self.arguments)
        except json.JSONDecodeError:
            return False
        return True

    def parsed_arguments(self) -> dict[str, Any]:
        """Decode the argument text.  Raises ``json.JSONDecodeError``."""
        if not self.arguments:
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            return {"value": value}
        return value


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    """One conversation entry.  Immutable once appended."""

    role: str
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str = ""

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"invalid message role: {self.role!r}")
        if not isinstance(self.tool_calls, tuple):
            object.__setattr__(self, "tool_calls", tuple(self.tool_calls))

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role="user", content=content)

    @classmethod
    def assistant(
        cls, content: str = "", tool_calls: list[ToolCall] | tuple[ToolCall, ...] = (),
    ) -> Message:
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls))

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> Message:
        return cls(role="tool", content=content, tool_call_id=tool_call_id)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass(frozen=True)
class SourceFile:
    """A file the user loaded as context for a code operation."""

    path: str
    content: str
    language: str = ""

    @classmethod
    def read(cls, path: str | Path) -> SourceFile:
        """Load *path* as UTF-8 text; the language is taken from its suffix."""
        p = Path(path)
        return cls(
            path=str(path),
            content=p.read_text(encoding="utf-8", errors="replace"),
            language=p.suffix.lstrip(".") or "text",
        )

    @property
    def size(self) -> int:
        """Size in bytes of the UTF-8 encoded content."""
        return len(self.content.encode("utf-8"))


# ---------------------------------------------------------------------------
# LLM response types
# ---------------------------------------------------------------------------

@dataclass
class StreamChunk:
    """One decoded server-sent event."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamChunk:
        """Decode one frame.  Raises ``ValueError`` when its shape is wrong."""
        model = _optional_str(data, "model")
        choice = _first_choice(data)
        if choice is None:
            return cls(model=model, usage=_usage(data))
        delta = choice.get("delta") or {}
        if not isinstance(delta, dict):
            raise ValueError("'delta' must be an object")
        return cls(
            content=_optional_str(delta, "content"),
            tool_calls=_tool_call_list(delta),
            finish_reason=_optional_str(choice, "finish_reason") or None,
            model=model,
            usage=_usage(data),
        )


@dataclass
class ChatResponse:
    """Result of one successful non-streaming request."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    model: str = ""
    latency_ms: float = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChatResponse:
        """Decode a complete response body.

        Raises ``ValueError`` when the body has the wrong shape, including
        an empty ``choices`` list.
        """
        choice = _first_choice(data)
        if choice is None:
            raise ValueError("response has no choices")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ValueError("'message' must be an object")
        return cls(
            content=_optional_str(message, "content"),
            tool_calls=_tool_call_list(message),
            finish_reason=_optional_str(choice, "finish_reason"),
            usage=_usage(data),
            model=_optional_str(data, "model"),
        )

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Turn types
# ---------------------------------------------------------------------------

class TurnState(enum.Enum):
    """Per-turn state of the conversation service."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"


@dataclass
class TurnResult:
    """Outcome of a non-streaming turn: text or tool calls."""

    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = ""
    suppressed: bool = False

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0


class StreamEventKind(enum.Enum):
    TEXT = "text"
    TOOL_CALLS = "tool_calls"
    DONE = "done"
    ERROR = "error"


@dataclass
class StreamEvent:
    """Incremental output of a streaming turn.

    ``TEXT`` events carry one delta in ``text``.  The terminal event
    (``DONE``, ``TOOL_CALLS`` or ``ERROR``) carries everything accumulated
    so far in ``content`` and ``tool_calls``, including on error.
    """

    kind: StreamEventKind
    text: str = ""
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    error: Exception | None = None
    finalized_by: str = ""  # "finish_reason" | "end_of_stream"

    @property
    def is_terminal(self) -> bool:
        return self.kind is not StreamEventKind.TEXT


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events published by the conversation service."""

    TURN_STARTED = "turn.started"
    TURN_COMPLETED = "turn.completed"
    TURN_FAILED = "turn.failed"
    TURN_CANCELLED = "turn.cancelled"

    STREAM_TEXT = "stream.text"
    TOOL_CALLS_READY = "tool_calls.ready"

    CONTEXT_REJECTED = "context.rejected"


@dataclass
class ChatEvent:
    """Event emitted via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
