"""Helpers for reading the agent runtime's event protocol.

Runtime events are plain dicts (see ``runtime.normalize_message``). The
functions here extract the pieces the session cares about without making
assumptions about fields the runtime may omit.
"""

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Block types that open a tool call, client or server side.
TOOL_USE_BLOCK_TYPES = frozenset({"tool_use", "server_tool_use", "mcp_tool_use"})

# Block types that carry the result of a tool call, client or server side.
TOOL_RESULT_BLOCK_TYPES = frozenset({
    "tool_result",
    "web_search_tool_result",
    "web_fetch_tool_result",
    "code_execution_tool_result",
    "bash_code_execution_tool_result",
    "text_editor_code_execution_tool_result",
    "mcp_tool_result",
})

_AGENT_ERROR_PATTERN = re.compile(
    r"api error|authentication_error|unauthorized|forbidden", re.IGNORECASE
)


def _safe_stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value)
    except (TypeError, ValueError):
        return str(value)


def _as_string(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _as_string_list(value: Any) -> Optional[List[str]]:
    if not isinstance(value, list):
        return None
    return [_safe_stringify(item) for item in value]


@dataclass
class SystemInitInfo:
    """Snapshot of the runtime's ``system/init`` announcement."""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    type: Optional[str] = None
    subtype: Optional[str] = None
    cwd: Optional[str] = None
    session_id: Optional[str] = None
    tools: Optional[List[str]] = None
    mcp_servers: Optional[List[str]] = None
    model: Optional[str] = None
    permission_mode: Optional[str] = None
    slash_commands: Optional[List[str]] = None
    api_key_source: Optional[str] = None
    claude_code_version: Optional[str] = None
    output_style: Optional[str] = None
    agents: Optional[List[str]] = None
    skills: Optional[List[str]] = None
    plugins: Optional[List[str]] = None
    uuid: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_system_init(message: Dict[str, Any]) -> bool:
    return message.get("type") == "system" and message.get("subtype") == "init"


def parse_system_init_info(message: Any) -> Optional[SystemInitInfo]:
    """Build a SystemInitInfo from a ``system/init`` event, else None."""
    if not isinstance(message, dict) or not is_system_init(message):
        return None
    return SystemInitInfo(
        type=_as_string(message.get("type")),
        subtype=_as_string(message.get("subtype")),
        cwd=_as_string(message.get("cwd")),
        session_id=_as_string(message.get("session_id")),
        tools=_as_string_list(message.get("tools")),
        mcp_servers=_as_string_list(message.get("mcp_servers")),
        model=_as_string(message.get("model")),
        permission_mode=_as_string(
            message.get("permissionMode", message.get("permission_mode"))
        ),
        slash_commands=_as_string_list(message.get("slash_commands")),
        api_key_source=_as_string(
            message.get("apiKeySource", message.get("api_key_source"))
        ),
        claude_code_version=_as_string(message.get("claude_code_version")),
        output_style=_as_string(message.get("output_style")),
        agents=_as_string_list(message.get("agents")),
        skills=_as_string_list(message.get("skills")),
        plugins=_as_string_list(message.get("plugins")),
        uuid=_as_string(message.get("uuid")),
    )


def format_assistant_content(content: Any) -> str:
    """Flatten assistant content blocks into readable text.

    Text blocks are kept as-is, thinking blocks are prefixed with
    ``Thinking:``; parts are trimmed and joined by blank lines.
    """
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return ""

    parts: List[str] = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
            continue
        if not isinstance(block, dict):
            continue
        block_type = block.get("type")
        if block_type == "text" and "text" in block:
            parts.append(str(block.get("text") or ""))
        elif block_type == "thinking" and "thinking" in block:
            text = str(block.get("thinking") or "").strip()
            if text:
                parts.append(f"Thinking:\n{text}")
        elif isinstance(block.get("text"), str):
            parts.append(block["text"])

    return "\n\n".join(p.strip() for p in parts if p.strip())


def stringify_tool_result_content(content: Any) -> str:
    """Render tool-result content as text.

    Lists are rendered item by item (the ``text`` of text items, pretty JSON
    otherwise) and joined by newlines. Non-string scalars and objects become
    pretty-printed JSON.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        rendered = []
        for item in content:
            if isinstance(item, str):
                rendered.append(item)
            elif isinstance(item, dict) and isinstance(item.get("text"), str):
                rendered.append(item["text"])
            else:
                rendered.append(json.dumps(item, indent=2, default=str))
        return "\n".join(rendered)
    return json.dumps(content, indent=2, default=str)


def extract_agent_error(message: Any) -> Optional[str]:
    """Return a user-facing error carried by a runtime event, if any.

    Either an explicit ``error`` field, or assistant text that reports an
    API, authentication or authorization failure.
    """
    if not isinstance(message, dict):
        return None
    candidate = message.get("error")
    if candidate:
        return _safe_stringify(candidate)

    if message.get("type") == "assistant" and isinstance(message.get("message"), dict):
        text = format_assistant_content(message["message"].get("content"))
        if text and _AGENT_ERROR_PATTERN.search(text):
            return text
    return None
