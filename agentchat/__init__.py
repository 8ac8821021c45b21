"""agentchat - multi-session chat engine for an autonomous coding agent.

This package reconciles the agent runtime's event stream into structured,
incrementally rendered conversations and publishes every change as a typed
event.

Usage:
    from agentchat import EventChannel, SessionManager, ServerConfig
    from agentchat.runtime import ClaudeAgentRuntime

    config = ServerConfig(workspace_dir="/work/repo")
    channel = EventChannel()
    manager = SessionManager(ClaudeAgentRuntime(config), channel, config)
    await manager.send_message("fix the crash")

Or run the WebSocket server:
    python -m agentchat --web-socket :8080
"""

from .config import ServerConfig, load_server_config
from .errors import (
    AgentChatError,
    RuntimeUnavailableError,
    SessionClosedError,
    SessionNotFoundError,
)
from .events import (
    Event,
    EventChannel,
    EventType,
    deserialize_event,
    serialize_event,
)
from .message_log import (
    AttachmentInfo,
    Message,
    MessageLog,
    ReasoningSegment,
    SubagentCall,
    TextSegment,
    ToolRecord,
    ToolUseSegment,
)
from .partial_json import parse_final_json, parse_partial_json
from .session import AgentSession, SessionMetadata, SessionState
from .session_manager import SessionManager
from .tool_tracker import ToolCallTracker


__all__ = [
    # Configuration
    "ServerConfig",
    "load_server_config",
    # Errors
    "AgentChatError",
    "RuntimeUnavailableError",
    "SessionClosedError",
    "SessionNotFoundError",
    # Events
    "Event",
    "EventChannel",
    "EventType",
    "deserialize_event",
    "serialize_event",
    # Message log
    "AttachmentInfo",
    "Message",
    "MessageLog",
    "ReasoningSegment",
    "SubagentCall",
    "TextSegment",
    "ToolRecord",
    "ToolUseSegment",
    "ToolCallTracker",
    "parse_final_json",
    "parse_partial_json",
    # Sessions
    "AgentSession",
    "SessionManager",
    "SessionMetadata",
    "SessionState",
]
