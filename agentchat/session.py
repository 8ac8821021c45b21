"""Agent session: lifecycle state machine and event reconciliation.

One ``AgentSession`` owns one conversation with the agent runtime. It

- queues user turns and feeds them to the runtime through a lazy generator,
- runs a single driving loop per live conversation that consumes the
  runtime's event stream,
- reconciles every event into its ``MessageLog`` (text, reasoning and tool
  segments, nested subagent calls) and publishes a typed delta event for it.

Reconciliation of one event is synchronous, so events of a session are
applied strictly in arrival order and nothing else can observe a half-applied
event.

Lifecycle:
    idle -> running     a user turn is enqueued
    running -> idle     terminal result, interrupt, or normal stream end
    running -> error    the runtime stream raised
    error -> running    the next user turn is enqueued
"""

import asyncio
import json
import logging
import re
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .config import ServerConfig
from .errors import SessionClosedError
from .events import (
    AgentErrorEvent,
    DebugEvent,
    EventChannel,
    LogLineEvent,
    MessageChunkEvent,
    MessageCompleteEvent,
    MessageErrorEvent,
    MessageReplayEvent,
    MessageStoppedEvent,
    ReasoningChunkEvent,
    ReasoningStartEvent,
    SegmentStopEvent,
    SessionUpdatedEvent,
    StatusEvent,
    SubagentToolInputDeltaEvent,
    SubagentToolResultCompleteEvent,
    SubagentToolResultDeltaEvent,
    SubagentToolResultStartEvent,
    SubagentToolUseEvent,
    SystemInitEvent,
    ToolInputDeltaEvent,
    ToolResultCompleteEvent,
    ToolResultDeltaEvent,
    ToolResultStartEvent,
    ToolUseStartEvent,
)
from .message_log import AttachmentInfo, Message, MessageLog, ToolRecord
from .message_queue import UserTurnQueue
from .protocol import (
    TOOL_RESULT_BLOCK_TYPES,
    TOOL_USE_BLOCK_TYPES,
    SystemInitInfo,
    extract_agent_error,
    format_assistant_content,
    parse_system_init_info,
    stringify_tool_result_content,
)
from .runtime import AgentRuntime, RuntimeHandle
from .session_logging import AgentLogWriter, logging_context
from .tool_tracker import ToolCallTracker

logger = logging.getLogger(__name__)

NAME_PREVIEW_LENGTH = 30
CLOSE_TIMEOUT = 5.0

_NAME_BREAK = re.compile(r"[。\n]")


class SessionState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    (SessionState.IDLE, SessionState.RUNNING),
    (SessionState.RUNNING, SessionState.IDLE),
    (SessionState.RUNNING, SessionState.ERROR),
    (SessionState.ERROR, SessionState.RUNNING),
}


def derive_session_name(text: str) -> str:
    """Display name from a first user turn: a short preview cut at a line break."""
    preview = _NAME_BREAK.split(text[:NAME_PREVIEW_LENGTH])[0]
    if len(text) > NAME_PREVIEW_LENGTH:
        preview += "..."
    return preview


def default_session_name(now: Optional[datetime] = None) -> str:
    return f"Session {(now or datetime.now()).strftime('%Y-%m-%d %H:%M:%S')}"


@dataclass
class SessionMetadata:
    """Summary of a session for listings."""
    id: str
    name: str
    created_at: datetime
    last_activity: datetime
    state: SessionState
    message_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "state": self.state.value,
            "message_count": self.message_count,
        }


class AgentSession:
    """A conversation with the agent runtime and its reconciled message log.

    Example:
        session = AgentSession(runtime=runtime, channel=channel, config=config)
        await session.send("fix the crash")   # returns once the runtime took the turn
        ...
        await session.interrupt()
        await session.close()
    """

    def __init__(
        self,
        runtime: AgentRuntime,
        channel: EventChannel,
        config: ServerConfig,
        session_id: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.created_at = datetime.now()
        self.last_activity = self.created_at
        self.name = name or default_session_name(self.created_at)
        self.state = SessionState.IDLE
        self.system_init: Optional[SystemInitInfo] = None

        self.log = MessageLog()
        self.tracker = ToolCallTracker(self.log)
        self.queue = UserTurnQueue(self.id, poll_interval=config.queue_poll_interval)

        self._runtime = runtime
        self._channel = channel
        self._config = config
        self._log_lines: Deque[str] = deque(maxlen=config.log_ring_size)
        self._agent_log = AgentLogWriter(self.id, config.resolved_log_dir)

        self._handle: Optional[RuntimeHandle] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._terminated = asyncio.Event()
        self._terminated.set()
        self._processing = False
        self._should_abort = False
        self._interrupting = False
        self._turn_message: Optional[Message] = None
        self._closed = False

    # =========================================================================
    # Accessors
    # =========================================================================

    @property
    def is_active(self) -> bool:
        """True while a driving loop (and runtime handle) is live."""
        return self._processing

    @property
    def log_lines(self) -> List[str]:
        return list(self._log_lines)

    def get_messages(self) -> List[Dict[str, Any]]:
        return self.log.to_list()

    def metadata(self) -> SessionMetadata:
        return SessionMetadata(
            id=self.id,
            name=self.name,
            created_at=self.created_at,
            last_activity=self.last_activity,
            state=self.state,
            message_count=len(self.log),
        )

    def _publish(self, event) -> None:
        event.session_id = self.id
        self._channel.publish(event)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def set_state(self, state: SessionState) -> bool:
        """Apply a lifecycle transition; illegal transitions are refused."""
        if state == self.state:
            return True
        if (self.state, state) not in _ALLOWED_TRANSITIONS:
            logger.warning(
                f"Session {self.id}: refusing transition {self.state.value} -> {state.value}"
            )
            return False
        self.state = state
        self._publish(StatusEvent(state=state.value))
        return True

    async def send(
        self,
        text: str,
        attachments: Optional[List[AttachmentInfo]] = None,
    ) -> Optional[Message]:
        """Enqueue a user turn and wait until the runtime has taken it.

        Args:
            text: The user's message; blank text is ignored.
            attachments: Descriptors of files uploaded with the turn.

        Returns:
            The user message appended to the log, or None for blank text.
        """
        text = (text or "").strip()
        if not text:
            return None
        if self._closed:
            raise SessionClosedError(f"Session {self.id} is closed")

        self.last_activity = datetime.now()
        self.set_state(SessionState.RUNNING)
        message = self.log.append_user(text, attachments)
        self._publish(MessageReplayEvent(message=message.to_dict()))
        if len(self.log) == 1:
            self.name = derive_session_name(text)
            self._publish(SessionUpdatedEvent(session=self.metadata().to_dict()))

        if not self._processing:
            await self.start()

        handed_off = self.queue.put(text)
        await handed_off
        return message

    async def start(self) -> bool:
        """Start the driving loop unless one is already live.

        Waits for a previous loop to finish terminating first.

        Returns:
            True if a new loop was started.
        """
        await self._terminated.wait()
        if self._processing or self._closed:
            return False

        self._should_abort = False
        self._processing = True
        self._terminated.clear()
        self.tracker.reset_stream_indices()
        self.set_state(SessionState.RUNNING)
        self._loop_task = asyncio.create_task(self._run_loop(), name=f"session-{self.id[:8]}")
        return True

    def _should_stop(self) -> bool:
        return self._should_abort

    def _on_stderr(self, line: str) -> None:
        logger.debug(f"runtime stderr: {line.rstrip()}")
        if self._config.debug:
            self._publish(DebugEvent(message=line))

    async def _run_loop(self) -> None:
        with logging_context(session_id=self.id, workspace_path=self._config.workspace_dir):
            logger.info(f"Starting agent loop in {self._config.workspace_dir}")
            try:
                self._handle = await self._runtime.open(
                    self._config.workspace_dir,
                    self.queue.stream(self._should_stop),
                    self._on_stderr,
                )
                async for event in self._handle.events():
                    self._record_log_line(event)
                    self._capture_system_init(event)
                    self._report_agent_error(event)
                    if self._should_abort:
                        break
                    self.reconcile(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._should_abort:
                    logger.debug(f"Agent stream ended while closing: {e}")
                else:
                    logger.error(f"Agent stream failed: {e}", exc_info=True)
                    self._on_stream_error(str(e) or type(e).__name__)
                    waiting = self.queue.fail_waiters(e)
                    if waiting:
                        logger.warning(f"{waiting} queued turn(s) kept for the next agent loop")
            finally:
                # Turns sent from here on wait for termination and start a fresh loop.
                self._processing = False
                self._turn_message = None
                handle, self._handle = self._handle, None
                if handle is not None:
                    try:
                        await handle.close()
                    except Exception as e:
                        logger.warning(f"Error closing runtime handle: {e}")
                if self.state == SessionState.RUNNING:
                    self.set_state(SessionState.IDLE)
                self._terminated.set()
                logger.info("Agent loop finished")

    async def interrupt(self) -> bool:
        """Stop the turn in progress, keeping the conversation open.

        Returns:
            False if there is no live runtime handle, True otherwise
            (including when an interrupt is already in flight).
        """
        handle = self._handle
        if handle is None:
            return False
        if self._interrupting:
            return True

        self._interrupting = True
        try:
            await handle.interrupt()
            self._publish(MessageStoppedEvent())
            self._on_message_stopped()
            return True
        finally:
            self._interrupting = False

    async def close(self) -> None:
        """Stop the loop, release the runtime handle and close the agent log."""
        if self._closed:
            return
        self._closed = True
        self._should_abort = True
        self.queue.wake()

        handle = self._handle
        if handle is not None:
            try:
                await handle.close()
            except Exception as e:
                logger.warning(f"Error closing runtime handle for {self.id}: {e}")

        task = self._loop_task
        if task is not None and not task.done():
            try:
                await asyncio.wait_for(self._terminated.wait(), timeout=CLOSE_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Agent loop for {self.id} did not stop, cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.queue.cancel_pending()
        self._agent_log.close()
        logger.info(f"Session closed: {self.id}")

    # =========================================================================
    # Per-event bookkeeping
    # =========================================================================

    def _record_log_line(self, event: Dict[str, Any]) -> None:
        line = f"{datetime.now().isoformat()} {json.dumps(event, default=str)}"
        self._log_lines.append(line)
        self._agent_log.write(line)
        self._publish(LogLineEvent(line=line))

    def _capture_system_init(self, event: Dict[str, Any]) -> None:
        info = parse_system_init_info(event)
        if info is not None:
            self.system_init = info
            self._publish(SystemInitEvent(info=info.to_dict()))

    def _report_agent_error(self, event: Dict[str, Any]) -> None:
        message = extract_agent_error(event)
        if message:
            logger.warning(f"Agent reported error: {message}")
            self._publish(AgentErrorEvent(message=message))

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, event: Dict[str, Any]) -> None:
        """Apply one runtime event to the message log and publish its delta."""
        kind = event.get("type")
        parent = event.get("parent_tool_use_id")
        if kind == "stream_event":
            self._on_stream_event(event.get("event") or {}, parent)
        elif kind == "user":
            self._on_user_message(event.get("message") or {}, parent)
        elif kind == "assistant":
            self._on_assistant_message(event.get("message") or {}, parent)
        elif kind == "result":
            self._publish(MessageCompleteEvent())
            self._turn_message = None
            self.set_state(SessionState.IDLE)

    def _ensure_assistant(self) -> Message:
        """Assistant message of the current turn cycle, created on first use.

        User turns sent mid-stream land after it in the log; the cycle keeps
        writing to this message until a result, interrupt or failure ends it.
        """
        if self._turn_message is None:
            self._turn_message = self.log.append_assistant()
        return self._turn_message

    def _on_stream_event(self, stream: Dict[str, Any], parent: Optional[str]) -> None:
        event_type = stream.get("type")
        index = stream.get("index")

        if event_type == "content_block_delta":
            delta = stream.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                self._on_text_delta(delta.get("text", ""), parent)
            elif delta_type == "thinking_delta":
                self._on_reasoning_delta(index, delta.get("thinking", ""), parent)
            elif delta_type == "input_json_delta":
                self._on_input_delta(index, delta.get("partial_json", ""), parent)

        elif event_type == "content_block_start":
            block = stream.get("content_block") or {}
            block_type = block.get("type")
            if block_type == "thinking":
                self._on_reasoning_start(index, parent)
            elif block_type in TOOL_USE_BLOCK_TYPES:
                self._on_tool_use_start(index, block, parent)
            elif block_type in TOOL_RESULT_BLOCK_TYPES and block.get("tool_use_id"):
                self._on_result_block_start(index, block, parent)

        elif event_type == "content_block_stop":
            if parent:
                self._on_subagent_block_stop(index, parent)
            else:
                self._on_block_stop(index)

    def _on_text_delta(self, text: str, parent: Optional[str]) -> None:
        if parent:
            # Text streamed inside a sub-conversation is output of the parent tool.
            self.tracker.append_result(parent, text)
            owner = self.tracker.parent_of(parent)
            if owner:
                self._publish(SubagentToolResultDeltaEvent(
                    parent_tool_use_id=owner, tool_use_id=parent, delta=text,
                ))
            else:
                self._publish(ToolResultDeltaEvent(tool_use_id=parent, delta=text))
            return

        self._ensure_assistant().append_text(text)
        self._publish(MessageChunkEvent(text=text))

    def _on_reasoning_start(self, index: Optional[int], parent: Optional[str]) -> None:
        if parent or index is None:
            logger.debug(f"Ignoring reasoning block {index} (parent={parent})")
            return
        self._ensure_assistant().open_reasoning(index)
        self._publish(ReasoningStartEvent(index=index))

    def _on_reasoning_delta(self, index: Optional[int], text: str, parent: Optional[str]) -> None:
        if parent or index is None:
            return
        message = self._turn_message
        segment = message.find_open_reasoning(index) if message is not None else None
        if segment is not None:
            segment.text += text
        else:
            logger.debug(f"Dropping reasoning delta for unknown block {index}")
        self._publish(ReasoningChunkEvent(index=index, delta=text))

    def _on_tool_use_start(self, index: Optional[int], block: Dict[str, Any], parent: Optional[str]) -> None:
        tool_id = block.get("id")
        if not tool_id:
            return
        name = block.get("name") or ""
        tool_input = block.get("input") or {}

        if index is not None:
            self.tracker.bind_stream_index(index, tool_id, scope=parent)

        if parent:
            call = self.tracker.open_subagent_call(parent, tool_id, name, tool_input)
            if call is not None:
                self._publish(SubagentToolUseEvent(parent_tool_use_id=parent, tool=call.to_dict()))
            return

        record = ToolRecord(id=tool_id, name=name, input=tool_input, stream_index=index)
        record = self.log.add_tool(self._ensure_assistant(), record)
        self._publish(ToolUseStartEvent(tool=record.to_dict()))

    def _on_input_delta(self, index: Optional[int], delta: str, parent: Optional[str]) -> None:
        tool_id = self.tracker.tool_for_index(index, scope=parent)
        self.tracker.append_input(tool_id, delta, parent_id=parent)
        if parent:
            self._publish(SubagentToolInputDeltaEvent(
                parent_tool_use_id=parent, tool_id=tool_id or "", delta=delta,
            ))
        else:
            self._publish(ToolInputDeltaEvent(index=index or 0, tool_id=tool_id or "", delta=delta))

    def _on_result_block_start(self, index: Optional[int], block: Dict[str, Any], parent: Optional[str]) -> None:
        tool_use_id = block["tool_use_id"]
        if index is not None:
            self.tracker.bind_result_index(index, tool_use_id, scope=parent)
        content = stringify_tool_result_content(block.get("content"))
        if not content:
            return
        is_error = bool(block.get("is_error"))

        owner = self.tracker.parent_of(tool_use_id) or parent
        if owner:
            self.tracker.ensure_placeholder(owner, tool_use_id)
            self.tracker.start_result(tool_use_id, content, is_error)
            self._publish(SubagentToolResultStartEvent(
                parent_tool_use_id=owner, tool_use_id=tool_use_id,
                content=content, is_error=is_error,
            ))
        else:
            self.tracker.start_result(tool_use_id, content, is_error)
            self._publish(ToolResultStartEvent(
                tool_use_id=tool_use_id, content=content, is_error=is_error,
            ))

    def _on_block_stop(self, index: Optional[int]) -> None:
        tool_id = self.tracker.release_stream_index(index)
        message = self._turn_message
        reasoning = message.find_open_reasoning(index) if (message is not None and index is not None) else None
        if reasoning is not None:
            reasoning.complete()
        elif tool_id:
            self.tracker.finalize_input(tool_id)

        result_id = self.tracker.pop_result_index(index)
        if result_id:
            record = self.log.find_tool(result_id)
            if record is not None and record.is_loading:
                record.complete_result(record.result)
                self._publish(ToolResultCompleteEvent(
                    tool_use_id=result_id, content=record.result or "", is_error=record.is_error,
                ))

        self._publish(SegmentStopEvent(index=index or 0, tool_id=tool_id))

    def _on_subagent_block_stop(self, index: Optional[int], parent: str) -> None:
        tool_id = self.tracker.release_stream_index(index, scope=parent)
        if tool_id:
            self.tracker.finalize_input(tool_id, parent_id=parent)

        result_id = self.tracker.pop_result_index(index, scope=parent)
        if result_id:
            call = self.tracker.finish_subagent_result(result_id)
            if call is not None:
                self._publish(SubagentToolResultCompleteEvent(
                    parent_tool_use_id=self.tracker.parent_of(result_id) or parent,
                    tool_use_id=result_id,
                    content=call.result or "",
                    is_error=call.is_error,
                ))

    def _complete_result(self, tool_use_id: str, content: str, is_error: Optional[bool], parent: Optional[str]) -> None:
        owner = self.tracker.parent_of(tool_use_id) or parent
        if owner:
            self.tracker.ensure_placeholder(owner, tool_use_id)
            self.tracker.complete_result(tool_use_id, content, is_error)
            self._publish(SubagentToolResultCompleteEvent(
                parent_tool_use_id=owner, tool_use_id=tool_use_id,
                content=content, is_error=is_error,
            ))
        else:
            self.tracker.complete_result(tool_use_id, content, is_error)
            self._publish(ToolResultCompleteEvent(
                tool_use_id=tool_use_id, content=content, is_error=is_error,
            ))

    def _on_user_message(self, message: Dict[str, Any], parent: Optional[str]) -> None:
        content = message.get("content")
        if not isinstance(content, list):
            return
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "tool_result":
                continue
            tool_use_id = block.get("tool_use_id")
            if not tool_use_id:
                continue
            is_error = block.get("is_error")
            self._complete_result(
                tool_use_id,
                stringify_tool_result_content(block.get("content")),
                is_error if isinstance(is_error, bool) else None,
                parent,
            )

    def _on_assistant_message(self, message: Dict[str, Any], parent: Optional[str]) -> None:
        content = message.get("content")
        blocks = content if isinstance(content, list) else []

        if parent:
            for block in blocks:
                if not isinstance(block, dict) or block.get("type") not in TOOL_USE_BLOCK_TYPES:
                    continue
                if not block.get("id") or "name" not in block:
                    continue
                tool_input = block.get("input") or {}
                call = self.tracker.open_subagent_call(
                    parent, block["id"], block["name"], tool_input,
                    input_json=json.dumps(tool_input, indent=2),
                )
                if call is not None:
                    self._publish(SubagentToolUseEvent(parent_tool_use_id=parent, tool=call.to_dict()))

            text = format_assistant_content(content)
            if text:
                record = self.log.find_tool(parent)
                if record is not None:
                    combined = f"{record.result}\n{text}" if record.result else text
                    record.start_result(combined)
                    self._publish(ToolResultCompleteEvent(tool_use_id=parent, content=combined))

        for block in blocks:
            if not isinstance(block, dict) or "tool_use_id" not in block or "content" not in block:
                continue
            is_error = block.get("is_error")
            self._complete_result(
                block["tool_use_id"],
                stringify_tool_result_content(block.get("content")),
                bool(is_error),
                parent,
            )

    def _on_message_stopped(self) -> None:
        message, self._turn_message = self._turn_message, None
        if message is not None:
            message.complete_open_reasoning()
        self.set_state(SessionState.IDLE)

    def _on_stream_error(self, error: str) -> None:
        self._publish(MessageErrorEvent(error=error))
        self._turn_message = None
        self.log.append_assistant(f"Error: {error}")
        self.set_state(SessionState.ERROR)

    def snapshot(self) -> Dict[str, Any]:
        """Everything a late-joining client needs to render the session."""
        return {
            "session": self.metadata().to_dict(),
            "messages": self.get_messages(),
            "log_lines": self.log_lines,
            "system_init": self.system_init.to_dict() if self.system_init else None,
        }
