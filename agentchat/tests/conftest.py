"""Pytest fixtures for agentchat tests.

``ScriptedRuntime`` stands in for the agent runtime: every user turn it
receives pops the next script (a list of runtime events) and plays it on the
event stream. An ``Exception`` instance in a script is raised from the
stream instead of being yielded.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import pytest

from agentchat.config import ServerConfig
from agentchat.events import Event, EventChannel
from agentchat.runtime import AgentRuntime, RuntimeHandle

_CLOSED = object()


class ScriptedHandle(RuntimeHandle):
    def __init__(self, runtime: "ScriptedRuntime", prompts: AsyncIterator[Dict[str, Any]]):
        self._runtime = runtime
        self._events: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.interrupts = 0
        self._feeder = asyncio.create_task(self._feed(prompts))

    async def _feed(self, prompts: AsyncIterator[Dict[str, Any]]) -> None:
        async for envelope in prompts:
            self._runtime.received.append(envelope)
            script = self._runtime.scripts.pop(0) if self._runtime.scripts else []
            for event in script:
                self._events.put_nowait(event)

    def push(self, event: Any) -> None:
        """Inject an event outside of any script."""
        self._events.put_nowait(event)

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            item = await self._events.get()
            if item is _CLOSED:
                return
            if isinstance(item, Exception):
                raise item
            yield item

    async def interrupt(self) -> None:
        self.interrupts += 1
        self._runtime.interrupts += 1

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._runtime.closes += 1
        self._feeder.cancel()
        self._events.put_nowait(_CLOSED)


class ScriptedRuntime(AgentRuntime):
    def __init__(self, scripts: Optional[List[List[Any]]] = None):
        self.scripts: List[List[Any]] = list(scripts or [])
        self.received: List[Dict[str, Any]] = []
        self.handles: List[ScriptedHandle] = []
        self.opened_with: List[str] = []
        self.interrupts = 0
        self.closes = 0

    async def open(self, cwd, prompts, on_stderr=None) -> RuntimeHandle:
        self.opened_with.append(cwd)
        handle = ScriptedHandle(self, prompts)
        self.handles.append(handle)
        return handle


class FailingRuntime(AgentRuntime):
    def __init__(self, error: Exception):
        self.error = error

    async def open(self, cwd, prompts, on_stderr=None) -> RuntimeHandle:
        raise self.error


class EventRecorder:
    """Collects everything published on a channel."""

    def __init__(self, channel: EventChannel):
        self.events: List[Event] = []
        channel.add_listener(self.events.append)

    def of_type(self, event_class: type) -> List[Event]:
        return [e for e in self.events if isinstance(e, event_class)]

    def types(self) -> List[str]:
        return [e.type.value for e in self.events]


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Runtime event builders
# ---------------------------------------------------------------------------

def stream(event: Dict[str, Any], parent: Optional[str] = None) -> Dict[str, Any]:
    return {"type": "stream_event", "event": event, "parent_tool_use_id": parent}


def text_delta(text: str, index: int = 0, parent: Optional[str] = None) -> Dict[str, Any]:
    return stream({
        "type": "content_block_delta", "index": index,
        "delta": {"type": "text_delta", "text": text},
    }, parent)


def thinking_start(index: int) -> Dict[str, Any]:
    return stream({
        "type": "content_block_start", "index": index,
        "content_block": {"type": "thinking", "thinking": ""},
    })


def thinking_delta(index: int, text: str) -> Dict[str, Any]:
    return stream({
        "type": "content_block_delta", "index": index,
        "delta": {"type": "thinking_delta", "thinking": text},
    })


def tool_start(index: int, tool_id: str, name: str, parent: Optional[str] = None) -> Dict[str, Any]:
    return stream({
        "type": "content_block_start", "index": index,
        "content_block": {"type": "tool_use", "id": tool_id, "name": name, "input": {}},
    }, parent)


def input_delta(index: int, fragment: str, parent: Optional[str] = None) -> Dict[str, Any]:
    return stream({
        "type": "content_block_delta", "index": index,
        "delta": {"type": "input_json_delta", "partial_json": fragment},
    }, parent)


def block_stop(index: int, parent: Optional[str] = None) -> Dict[str, Any]:
    return stream({"type": "content_block_stop", "index": index}, parent)


def tool_result_message(tool_use_id: str, content: Any, parent: Optional[str] = None,
                        is_error: Optional[bool] = None) -> Dict[str, Any]:
    block: Dict[str, Any] = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
    if is_error is not None:
        block["is_error"] = is_error
    return {
        "type": "user",
        "message": {"role": "user", "content": [block]},
        "parent_tool_use_id": parent,
    }


def result_event() -> Dict[str, Any]:
    return {"type": "result", "subtype": "success", "is_error": False}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def config(tmp_path) -> ServerConfig:
    return ServerConfig(workspace_dir=str(tmp_path), queue_poll_interval=0.01)


@pytest.fixture
def channel() -> EventChannel:
    return EventChannel()


@pytest.fixture
def recorder(channel) -> EventRecorder:
    return EventRecorder(channel)
