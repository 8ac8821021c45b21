"""Structured message log for an agent conversation.

A session's conversation is an append-only list of ``Message`` turns. Each
assistant turn starts with flat string content and is promoted to a list of
content segments (text, reasoning, tool use) the first time a structured
segment is needed. Tool invocations are held in ``ToolRecord`` objects that
are created once and mutated in place; nested invocations made inside a
sub-conversation hang off their parent record as ``SubagentCall`` entries.

The log also keeps an id index of its tool records so lookups by tool id do
not have to walk the message list.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Union

from .partial_json import parse_final_json, parse_partial_json

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now().isoformat()


def _now_ms() -> float:
    return time.time() * 1000.0


# =============================================================================
# Tool records
# =============================================================================

@dataclass
class _ToolState:
    """Fields shared by top-level tool records and subagent calls."""
    id: str
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    input_json: str = ""
    parsed_input: Optional[Any] = None
    result: Optional[str] = None
    is_loading: bool = True
    is_error: bool = False

    def append_input(self, delta: str) -> None:
        """Append an argument fragment and refresh the best-effort parse."""
        self.input_json += delta
        parsed = parse_partial_json(self.input_json)
        if parsed is not None:
            self.parsed_input = parsed

    def finalize_input(self) -> None:
        """Freeze the parsed arguments once the argument stream has ended."""
        if not self.input_json:
            return
        parsed = parse_final_json(self.input_json)
        if parsed is not None:
            self.parsed_input = parsed

    def start_result(self, content: str, is_error: Optional[bool] = None) -> None:
        self.result = content
        if is_error is not None:
            self.is_error = is_error

    def append_result(self, delta: str) -> None:
        self.result = (self.result or "") + delta

    def complete_result(self, content: Optional[str], is_error: Optional[bool] = None) -> None:
        if content is not None:
            self.result = content
        if isinstance(is_error, bool):
            self.is_error = is_error
        self.is_loading = False

    def _base_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "input": self.input,
            "input_json": self.input_json,
            "parsed_input": self.parsed_input,
            "result": self.result,
            "is_loading": self.is_loading,
            "is_error": self.is_error,
        }


@dataclass
class SubagentCall(_ToolState):
    """A tool invocation issued inside a sub-conversation."""

    def to_dict(self) -> Dict[str, Any]:
        return self._base_dict()


@dataclass
class ToolRecord(_ToolState):
    """A top-level tool invocation and everything nested under it."""
    stream_index: Optional[int] = None
    subagent_calls: List[SubagentCall] = field(default_factory=list)

    def find_subagent_call(self, call_id: str) -> Optional[SubagentCall]:
        for call in self.subagent_calls:
            if call.id == call_id:
                return call
        return None

    def to_dict(self) -> Dict[str, Any]:
        d = self._base_dict()
        d["stream_index"] = self.stream_index
        d["subagent_calls"] = [call.to_dict() for call in self.subagent_calls]
        return d


# =============================================================================
# Content segments
# =============================================================================

@dataclass
class TextSegment:
    text: str = ""
    type: str = "text"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "text": self.text}


@dataclass
class ReasoningSegment:
    """Model reasoning; open until ``completed_at`` is set."""
    stream_index: int
    started_at: float = field(default_factory=_now_ms)
    text: str = ""
    completed_at: Optional[float] = None
    duration_ms: Optional[float] = None
    type: str = "reasoning"

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def complete(self) -> None:
        if self.is_complete:
            return
        self.completed_at = _now_ms()
        self.duration_ms = max(0.0, self.completed_at - self.started_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "text": self.text,
            "stream_index": self.stream_index,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ToolUseSegment:
    tool: ToolRecord
    type: str = "tool_use"

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "tool": self.tool.to_dict()}


Segment = Union[TextSegment, ReasoningSegment, ToolUseSegment]


# =============================================================================
# Messages
# =============================================================================

@dataclass
class AttachmentInfo:
    """Descriptor of a file the user attached to a turn."""
    name: str
    size: int = 0
    mime_type: str = ""
    saved_path: Optional[str] = None
    relative_path: Optional[str] = None
    preview_url: Optional[str] = None
    is_image: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AttachmentInfo":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "mime_type": self.mime_type,
            "saved_path": self.saved_path,
            "relative_path": self.relative_path,
            "preview_url": self.preview_url,
            "is_image": self.is_image,
        }


@dataclass
class Message:
    """A single conversation turn."""
    id: str
    role: str
    content: Union[str, List[Segment]] = ""
    timestamp: str = field(default_factory=_now_iso)
    attachments: Optional[List[AttachmentInfo]] = None

    def ensure_segments(self) -> List[Segment]:
        """Promote string content to a segment list (at most once)."""
        if isinstance(self.content, str):
            text = self.content
            self.content = [TextSegment(text=text)] if text else []
        return self.content

    @property
    def text(self) -> str:
        """Concatenated plain text of the turn."""
        if isinstance(self.content, str):
            return self.content
        return "".join(s.text for s in self.content if isinstance(s, TextSegment))

    def append_text(self, chunk: str) -> None:
        if isinstance(self.content, str):
            self.content += chunk
            return
        if self.content and isinstance(self.content[-1], TextSegment):
            self.content[-1].text += chunk
        else:
            self.content.append(TextSegment(text=chunk))

    def open_reasoning(self, stream_index: int) -> ReasoningSegment:
        segment = ReasoningSegment(stream_index=stream_index)
        self.ensure_segments().append(segment)
        return segment

    def find_open_reasoning(self, stream_index: int) -> Optional[ReasoningSegment]:
        if isinstance(self.content, str):
            return None
        for segment in reversed(self.content):
            if (
                isinstance(segment, ReasoningSegment)
                and segment.stream_index == stream_index
                and not segment.is_complete
            ):
                return segment
        return None

    def complete_open_reasoning(self) -> int:
        """Force-complete every open reasoning segment; returns how many."""
        if isinstance(self.content, str):
            return 0
        closed = 0
        for segment in self.content:
            if isinstance(segment, ReasoningSegment) and not segment.is_complete:
                segment.complete()
                closed += 1
        return closed

    def tools(self) -> List[ToolRecord]:
        if isinstance(self.content, str):
            return []
        return [s.tool for s in self.content if isinstance(s, ToolUseSegment)]

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.content, str):
            content: Any = self.content
        else:
            content = [segment.to_dict() for segment in self.content]
        d: Dict[str, Any] = {
            "id": self.id,
            "role": self.role,
            "content": content,
            "timestamp": self.timestamp,
        }
        if self.attachments:
            d["attachments"] = [a.to_dict() for a in self.attachments]
        return d


class MessageLog:
    """Append-only list of turns plus an id index of tool records.

    Example:
        log = MessageLog()
        log.append_user("fix the crash")
        turn = log.append_assistant()
        log.add_tool(turn, ToolRecord(id="t1", name="Read", stream_index=1))
        assert log.find_tool("t1") is not None
    """

    def __init__(self):
        self._messages: List[Message] = []
        self._tools: Dict[str, ToolRecord] = {}
        self._sequence = 0

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def _next_id(self) -> str:
        message_id = str(self._sequence)
        self._sequence += 1
        return message_id

    def last(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def last_assistant(self) -> Optional[Message]:
        last = self.last()
        if last is not None and last.role == "assistant":
            return last
        return None

    def append_user(
        self,
        text: str,
        attachments: Optional[List[AttachmentInfo]] = None,
    ) -> Message:
        message = Message(
            id=self._next_id(),
            role="user",
            content=text,
            attachments=attachments or None,
        )
        self._messages.append(message)
        return message

    def append_assistant(self, content: str = "") -> Message:
        message = Message(id=self._next_id(), role="assistant", content=content)
        self._messages.append(message)
        return message

    def add_tool(self, message: Message, record: ToolRecord) -> ToolRecord:
        """Append a tool segment to ``message`` unless the id is already known.

        Returns:
            The record that owns the id, which is the existing one when the
            runtime repeats a start for a tool it already announced.
        """
        existing = self._tools.get(record.id)
        if existing is not None:
            logger.debug(f"Tool {record.id} already recorded, keeping existing record")
            return existing
        message.ensure_segments().append(ToolUseSegment(tool=record))
        self._tools[record.id] = record
        return record

    def find_tool(self, tool_id: Optional[str]) -> Optional[ToolRecord]:
        if not tool_id:
            return None
        return self._tools.get(tool_id)

    def to_list(self) -> List[Dict[str, Any]]:
        return [message.to_dict() for message in self._messages]

    def to_json(self) -> str:
        return json.dumps(self.to_list())
