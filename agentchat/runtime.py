"""Agent runtime adapter.

The session engine talks to the agent through two small interfaces:

- ``AgentRuntime.open(cwd, prompts, on_stderr)`` starts a conversation that
  reads user turns from the async iterator ``prompts``.
- The returned ``RuntimeHandle`` exposes the runtime's event stream as plain
  dicts, plus ``interrupt()`` and ``close()``.

``ClaudeAgentRuntime`` implements them on top of the Claude Agent SDK and
``normalize_message`` converts SDK message objects into the dict protocol the
session reconciles (``system``, ``stream_event``, ``assistant``, ``user``,
``result``).
"""

import asyncio
import dataclasses
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Callable, Dict, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKClient,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import StreamEvent

from .config import ServerConfig
from .errors import RuntimeUnavailableError

logger = logging.getLogger(__name__)

StderrCallback = Callable[[str], None]


class RuntimeHandle(ABC):
    """A live conversation with the agent runtime."""

    @abstractmethod
    def events(self) -> AsyncIterator[Dict[str, Any]]:
        """Iterate over runtime events as normalized dicts."""

    @abstractmethod
    async def interrupt(self) -> None:
        """Stop the current turn, keeping the conversation open."""

    @abstractmethod
    async def close(self) -> None:
        """Release the conversation and its resources."""


class AgentRuntime(ABC):
    """Factory for runtime handles."""

    @abstractmethod
    async def open(
        self,
        cwd: str,
        prompts: AsyncIterator[Dict[str, Any]],
        on_stderr: Optional[StderrCallback] = None,
    ) -> RuntimeHandle:
        """Start a conversation fed by ``prompts``.

        Raises:
            RuntimeUnavailableError: If the runtime cannot be started.
        """


# =============================================================================
# SDK message normalization
# =============================================================================

def _block_to_dict(block: Any) -> Dict[str, Any]:
    if isinstance(block, dict):
        return block
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking, "signature": block.signature}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": block.is_error,
        }
    if dataclasses.is_dataclass(block):
        return dataclasses.asdict(block)
    return {"type": "unknown", "text": str(block)}


def _content_to_wire(content: Any) -> Any:
    if isinstance(content, list):
        return [_block_to_dict(block) for block in content]
    return content


def normalize_message(message: Any) -> Dict[str, Any]:
    """Convert an SDK message into the dict protocol.

    Dicts pass through untouched so runtimes that already speak the wire
    protocol can be plugged in directly.
    """
    if isinstance(message, dict):
        return message

    if isinstance(message, StreamEvent):
        return {
            "type": "stream_event",
            "uuid": message.uuid,
            "session_id": message.session_id,
            "event": message.event,
            "parent_tool_use_id": message.parent_tool_use_id,
        }

    if isinstance(message, SystemMessage):
        data = dict(message.data or {})
        data.setdefault("type", "system")
        data.setdefault("subtype", message.subtype)
        return data

    if isinstance(message, AssistantMessage):
        normalized: Dict[str, Any] = {
            "type": "assistant",
            "message": {
                "role": "assistant",
                "model": message.model,
                "content": _content_to_wire(message.content),
            },
            "parent_tool_use_id": message.parent_tool_use_id,
        }
        error = getattr(message, "error", None)
        if error:
            normalized["error"] = error
        return normalized

    if isinstance(message, UserMessage):
        return {
            "type": "user",
            "message": {"role": "user", "content": _content_to_wire(message.content)},
            "parent_tool_use_id": message.parent_tool_use_id,
        }

    if isinstance(message, ResultMessage):
        return {
            "type": "result",
            "subtype": message.subtype,
            "is_error": message.is_error,
            "result": message.result,
            "session_id": message.session_id,
            "num_turns": message.num_turns,
            "duration_ms": message.duration_ms,
            "total_cost_usd": message.total_cost_usd,
        }

    if dataclasses.is_dataclass(message):
        return dataclasses.asdict(message)
    raise TypeError(f"Unsupported runtime message: {type(message).__name__}")


# =============================================================================
# Claude Agent SDK runtime
# =============================================================================

class ClaudeRuntimeHandle(RuntimeHandle):
    """Wraps a connected ClaudeSDKClient and the task feeding it user turns."""

    def __init__(self, client: ClaudeSDKClient, query_task: "asyncio.Task[None]"):
        self._client = client
        self._query_task = query_task
        self._closed = False

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        async for message in self._client.receive_messages():
            yield normalize_message(message)

    async def interrupt(self) -> None:
        await self._client.interrupt()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self._query_task.done():
            self._query_task.cancel()
        try:
            await self._query_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Prompt stream ended with error: {e}")
        await self._client.disconnect()


class ClaudeAgentRuntime(AgentRuntime):
    """Runs conversations through the Claude Agent SDK.

    Example:
        runtime = ClaudeAgentRuntime(config)
        handle = await runtime.open(config.workspace_dir, queue.stream(stop))
        async for event in handle.events():
            ...
    """

    def __init__(self, config: ServerConfig):
        self._config = config

    def build_options(self, cwd: str, on_stderr: Optional[StderrCallback] = None) -> ClaudeAgentOptions:
        options_kwargs: Dict[str, Any] = {
            "cwd": cwd,
            "include_partial_messages": True,
            "permission_mode": self._config.permission_mode,
            "max_thinking_tokens": self._config.max_thinking_tokens,
            "setting_sources": ["project"],
            "system_prompt": {"type": "preset", "preset": "claude_code"},
        }
        if self._config.model:
            options_kwargs["model"] = self._config.model
        if on_stderr is not None:
            options_kwargs["stderr"] = on_stderr
        return ClaudeAgentOptions(**options_kwargs)

    async def open(
        self,
        cwd: str,
        prompts: AsyncIterator[Dict[str, Any]],
        on_stderr: Optional[StderrCallback] = None,
    ) -> RuntimeHandle:
        client = ClaudeSDKClient(self.build_options(cwd, on_stderr))
        try:
            await client.connect()
        except Exception as e:
            raise RuntimeUnavailableError(f"Failed to start agent runtime: {e}") from e

        # query() drains the prompt iterator, so it runs beside receive_messages().
        query_task = asyncio.create_task(client.query(prompts))
        query_task.add_done_callback(_log_query_failure)
        logger.info(f"Agent runtime connected (cwd={cwd})")
        return ClaudeRuntimeHandle(client, query_task)


def _log_query_failure(task: "asyncio.Task[None]") -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Prompt stream failed: {error}")

