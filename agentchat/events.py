"""Event Protocol for agentchat.

This module defines every notification the session engine publishes and
every request a client may send. Events are JSON-serializable dataclasses;
``EventChannel`` fans them out to in-process subscribers (the WebSocket
boundary being the main one).

Event Flow:
    Engine -> Client: session lifecycle, status, streaming deltas, errors
    Client -> Engine: messages, interrupts, session management

Every engine event carries the ``session_id`` it belongs to. Events of one
session are published in the order the session reconciled them.

Protocol Version: 1.0
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


# =============================================================================
# Event Types
# =============================================================================

class EventType(str, Enum):
    """Wire names of every event and request."""

    # Connection lifecycle
    CONNECTED = "connected"

    # Session registry (Engine -> Client)
    SESSION_CREATED = "session.created"
    SESSION_DELETED = "session.deleted"
    SESSION_SWITCHED = "session.switched"
    SESSION_UPDATED = "session.updated"
    SESSION_LIST = "session.list"
    SESSION_SNAPSHOT = "session.snapshot"

    # Session status and diagnostics (Engine -> Client)
    STATUS = "chat.status"
    LOG = "chat.log"
    SYSTEM_INIT = "chat.system_init"
    AGENT_ERROR = "chat.agent_error"
    DEBUG = "chat.debug"

    # Conversation streaming (Engine -> Client)
    MESSAGE_REPLAY = "chat.message_replay"
    MESSAGE_CHUNK = "chat.message_chunk"
    REASONING_START = "chat.reasoning_start"
    REASONING_CHUNK = "chat.reasoning_chunk"
    SEGMENT_STOP = "chat.segment_stop"
    MESSAGE_COMPLETE = "chat.message_complete"
    MESSAGE_STOPPED = "chat.message_stopped"
    MESSAGE_ERROR = "chat.message_error"

    # Tool activity (Engine -> Client)
    TOOL_USE_START = "chat.tool_use_start"
    TOOL_INPUT_DELTA = "chat.tool_input_delta"
    TOOL_RESULT_START = "chat.tool_result_start"
    TOOL_RESULT_DELTA = "chat.tool_result_delta"
    TOOL_RESULT_COMPLETE = "chat.tool_result_complete"
    SUBAGENT_TOOL_USE = "chat.subagent_tool_use"
    SUBAGENT_TOOL_INPUT_DELTA = "chat.subagent_tool_input_delta"
    SUBAGENT_TOOL_RESULT_START = "chat.subagent_tool_result_start"
    SUBAGENT_TOOL_RESULT_DELTA = "chat.subagent_tool_result_delta"
    SUBAGENT_TOOL_RESULT_COMPLETE = "chat.subagent_tool_result_complete"

    # Errors
    ERROR = "error"

    # Client requests (Client -> Engine)
    SEND_MESSAGE = "message.send"
    INTERRUPT = "chat.interrupt"
    CREATE_SESSION = "session.create"
    DELETE_SESSION = "session.delete"
    SWITCH_SESSION = "session.switch"
    LIST_SESSIONS = "session.list_request"
    GET_SNAPSHOT = "session.snapshot_request"


# =============================================================================
# Base Event
# =============================================================================

@dataclass
class Event:
    """Base class for all events."""
    type: EventType
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Plain-dict form with the enum flattened to its wire name."""
        d = asdict(self)
        if isinstance(d.get('type'), EventType):
            d['type'] = d['type'].value
        return d

    def to_json(self) -> str:
        """JSON frame for this event."""
        return json.dumps(self.to_dict(), default=str)


# =============================================================================
# Engine -> Client Events: registry
# =============================================================================

@dataclass
class ConnectedEvent(Event):
    """First frame a client receives: its id and the current registry."""
    type: EventType = field(default=EventType.CONNECTED)
    protocol_version: str = "1.0"
    client_id: str = ""
    active_session_id: Optional[str] = None
    sessions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SessionCreatedEvent(Event):
    type: EventType = field(default=EventType.SESSION_CREATED)
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionDeletedEvent(Event):
    type: EventType = field(default=EventType.SESSION_DELETED)


@dataclass
class SessionSwitchedEvent(Event):
    type: EventType = field(default=EventType.SESSION_SWITCHED)


@dataclass
class SessionUpdatedEvent(Event):
    """Session metadata changed (currently: its display name)."""
    type: EventType = field(default=EventType.SESSION_UPDATED)
    session: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SessionListEvent(Event):
    """Response to a list request."""
    type: EventType = field(default=EventType.SESSION_LIST)
    active_session_id: Optional[str] = None
    sessions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SessionSnapshotEvent(Event):
    """Full state of one session, for clients joining mid-conversation."""
    type: EventType = field(default=EventType.SESSION_SNAPSHOT)
    session: Dict[str, Any] = field(default_factory=dict)
    messages: List[Dict[str, Any]] = field(default_factory=list)
    log_lines: List[str] = field(default_factory=list)
    system_init: Optional[Dict[str, Any]] = None


# =============================================================================
# Engine -> Client Events: status and diagnostics
# =============================================================================

@dataclass
class StatusEvent(Event):
    """Session lifecycle state changed ("idle", "running", "error")."""
    type: EventType = field(default=EventType.STATUS)
    state: str = ""


@dataclass
class LogLineEvent(Event):
    """A raw runtime event, timestamped, as appended to the session log."""
    type: EventType = field(default=EventType.LOG)
    line: str = ""


@dataclass
class SystemInitEvent(Event):
    type: EventType = field(default=EventType.SYSTEM_INIT)
    info: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentErrorEvent(Event):
    """The runtime reported an error without failing the stream."""
    type: EventType = field(default=EventType.AGENT_ERROR)
    message: str = ""


@dataclass
class DebugEvent(Event):
    """Runtime diagnostic output (stderr), only sent in debug mode."""
    type: EventType = field(default=EventType.DEBUG)
    message: str = ""


# =============================================================================
# Engine -> Client Events: conversation streaming
# =============================================================================

@dataclass
class MessageReplayEvent(Event):
    """A complete message clients should add (deduplicated by id)."""
    type: EventType = field(default=EventType.MESSAGE_REPLAY)
    message: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageChunkEvent(Event):
    type: EventType = field(default=EventType.MESSAGE_CHUNK)
    text: str = ""


@dataclass
class ReasoningStartEvent(Event):
    type: EventType = field(default=EventType.REASONING_START)
    index: int = 0


@dataclass
class ReasoningChunkEvent(Event):
    type: EventType = field(default=EventType.REASONING_CHUNK)
    index: int = 0
    delta: str = ""


@dataclass
class SegmentStopEvent(Event):
    """A content block (reasoning, text or tool arguments) finished streaming."""
    type: EventType = field(default=EventType.SEGMENT_STOP)
    index: int = 0
    tool_id: Optional[str] = None


@dataclass
class MessageCompleteEvent(Event):
    type: EventType = field(default=EventType.MESSAGE_COMPLETE)


@dataclass
class MessageStoppedEvent(Event):
    """The turn was interrupted by the user."""
    type: EventType = field(default=EventType.MESSAGE_STOPPED)


@dataclass
class MessageErrorEvent(Event):
    """The runtime stream failed; the session is now in error state."""
    type: EventType = field(default=EventType.MESSAGE_ERROR)
    error: str = ""


# =============================================================================
# Engine -> Client Events: tool activity
# =============================================================================

@dataclass
class ToolUseStartEvent(Event):
    type: EventType = field(default=EventType.TOOL_USE_START)
    tool: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolInputDeltaEvent(Event):
    type: EventType = field(default=EventType.TOOL_INPUT_DELTA)
    index: int = 0
    tool_id: str = ""
    delta: str = ""


@dataclass
class ToolResultStartEvent(Event):
    type: EventType = field(default=EventType.TOOL_RESULT_START)
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


@dataclass
class ToolResultDeltaEvent(Event):
    type: EventType = field(default=EventType.TOOL_RESULT_DELTA)
    tool_use_id: str = ""
    delta: str = ""


@dataclass
class ToolResultCompleteEvent(Event):
    type: EventType = field(default=EventType.TOOL_RESULT_COMPLETE)
    tool_use_id: str = ""
    content: str = ""
    is_error: Optional[bool] = None


@dataclass
class SubagentToolUseEvent(Event):
    """A tool call issued inside the sub-conversation of ``parent_tool_use_id``."""
    type: EventType = field(default=EventType.SUBAGENT_TOOL_USE)
    parent_tool_use_id: str = ""
    tool: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SubagentToolInputDeltaEvent(Event):
    type: EventType = field(default=EventType.SUBAGENT_TOOL_INPUT_DELTA)
    parent_tool_use_id: str = ""
    tool_id: str = ""
    delta: str = ""


@dataclass
class SubagentToolResultStartEvent(Event):
    type: EventType = field(default=EventType.SUBAGENT_TOOL_RESULT_START)
    parent_tool_use_id: str = ""
    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


@dataclass
class SubagentToolResultDeltaEvent(Event):
    type: EventType = field(default=EventType.SUBAGENT_TOOL_RESULT_DELTA)
    parent_tool_use_id: str = ""
    tool_use_id: str = ""
    delta: str = ""


@dataclass
class SubagentToolResultCompleteEvent(Event):
    type: EventType = field(default=EventType.SUBAGENT_TOOL_RESULT_COMPLETE)
    parent_tool_use_id: str = ""
    tool_use_id: str = ""
    content: str = ""
    is_error: Optional[bool] = None


@dataclass
class ErrorEvent(Event):
    """A request could not be served."""
    type: EventType = field(default=EventType.ERROR)
    error: str = ""
    error_type: str = ""


# =============================================================================
# Client -> Engine Requests
# =============================================================================

@dataclass
class SendMessageRequest(Event):
    """Send a user turn; ``session_id`` None targets the active session."""
    type: EventType = field(default=EventType.SEND_MESSAGE)
    text: str = ""
    attachments: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class InterruptRequest(Event):
    type: EventType = field(default=EventType.INTERRUPT)


@dataclass
class CreateSessionRequest(Event):
    type: EventType = field(default=EventType.CREATE_SESSION)


@dataclass
class DeleteSessionRequest(Event):
    type: EventType = field(default=EventType.DELETE_SESSION)


@dataclass
class SwitchSessionRequest(Event):
    type: EventType = field(default=EventType.SWITCH_SESSION)


@dataclass
class ListSessionsRequest(Event):
    type: EventType = field(default=EventType.LIST_SESSIONS)


@dataclass
class SnapshotRequest(Event):
    type: EventType = field(default=EventType.GET_SNAPSHOT)


# =============================================================================
# Serialization Helpers
# =============================================================================

_EVENT_CLASSES: Dict[str, type] = {
    EventType.CONNECTED.value: ConnectedEvent,
    EventType.SESSION_CREATED.value: SessionCreatedEvent,
    EventType.SESSION_DELETED.value: SessionDeletedEvent,
    EventType.SESSION_SWITCHED.value: SessionSwitchedEvent,
    EventType.SESSION_UPDATED.value: SessionUpdatedEvent,
    EventType.SESSION_LIST.value: SessionListEvent,
    EventType.SESSION_SNAPSHOT.value: SessionSnapshotEvent,
    EventType.STATUS.value: StatusEvent,
    EventType.LOG.value: LogLineEvent,
    EventType.SYSTEM_INIT.value: SystemInitEvent,
    EventType.AGENT_ERROR.value: AgentErrorEvent,
    EventType.DEBUG.value: DebugEvent,
    EventType.MESSAGE_REPLAY.value: MessageReplayEvent,
    EventType.MESSAGE_CHUNK.value: MessageChunkEvent,
    EventType.REASONING_START.value: ReasoningStartEvent,
    EventType.REASONING_CHUNK.value: ReasoningChunkEvent,
    EventType.SEGMENT_STOP.value: SegmentStopEvent,
    EventType.MESSAGE_COMPLETE.value: MessageCompleteEvent,
    EventType.MESSAGE_STOPPED.value: MessageStoppedEvent,
    EventType.MESSAGE_ERROR.value: MessageErrorEvent,
    EventType.TOOL_USE_START.value: ToolUseStartEvent,
    EventType.TOOL_INPUT_DELTA.value: ToolInputDeltaEvent,
    EventType.TOOL_RESULT_START.value: ToolResultStartEvent,
    EventType.TOOL_RESULT_DELTA.value: ToolResultDeltaEvent,
    EventType.TOOL_RESULT_COMPLETE.value: ToolResultCompleteEvent,
    EventType.SUBAGENT_TOOL_USE.value: SubagentToolUseEvent,
    EventType.SUBAGENT_TOOL_INPUT_DELTA.value: SubagentToolInputDeltaEvent,
    EventType.SUBAGENT_TOOL_RESULT_START.value: SubagentToolResultStartEvent,
    EventType.SUBAGENT_TOOL_RESULT_DELTA.value: SubagentToolResultDeltaEvent,
    EventType.SUBAGENT_TOOL_RESULT_COMPLETE.value: SubagentToolResultCompleteEvent,
    EventType.ERROR.value: ErrorEvent,
    EventType.SEND_MESSAGE.value: SendMessageRequest,
    EventType.INTERRUPT.value: InterruptRequest,
    EventType.CREATE_SESSION.value: CreateSessionRequest,
    EventType.DELETE_SESSION.value: DeleteSessionRequest,
    EventType.SWITCH_SESSION.value: SwitchSessionRequest,
    EventType.LIST_SESSIONS.value: ListSessionsRequest,
    EventType.GET_SNAPSHOT.value: SnapshotRequest,
}


def serialize_event(event: Event) -> str:
    return event.to_json()


def deserialize_event(json_str: str) -> Event:
    """Build an event from one JSON frame.

    Keys the event class does not declare are ignored, so newer clients can
    talk to older servers.

    Raises:
        ValueError: The frame is not an object or names no known type.
        json.JSONDecodeError: The frame is not JSON at all.
    """
    payload = json.loads(json_str)
    if not isinstance(payload, dict):
        raise ValueError("Event payload must be a JSON object")

    type_name = payload.get("type")
    event_class = _EVENT_CLASSES.get(type_name) if isinstance(type_name, str) else None
    if event_class is None:
        raise ValueError(f"Unknown event type: {type_name}")

    declared = {f.name for f in fields(event_class)}
    kwargs = {key: value for key, value in payload.items() if key in declared and key != "type"}
    return event_class(type=EventType(type_name), **kwargs)


# =============================================================================
# Outbound Channel
# =============================================================================

class EventChannel:
    """Fire-and-forget fan-out of engine events.

    Publishers never block: every subscriber has its own bounded queue and an
    event that does not fit is dropped for that subscriber only. Synchronous
    listeners are called inline; a failing listener is logged and skipped.

    Example:
        channel = EventChannel()
        queue = channel.subscribe()
        channel.publish(StatusEvent(session_id="abc", state="running"))
        event = await queue.get()
    """

    def __init__(self, max_pending: int = 10000):
        self._max_pending = max_pending
        self._subscribers: List[asyncio.Queue] = []
        self._listeners: List[Callable[[Event], None]] = []

    def subscribe(self) -> "asyncio.Queue[Event]":
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_pending)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Event]") -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def add_listener(self, listener: Callable[[Event], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Event], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers) + len(self._listeners)

    def publish(self, event: Event) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full, dropping {event.type.value} event")
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed on {event.type.value}: {e}")
