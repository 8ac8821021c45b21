"""Tests for the event protocol and the outbound channel."""

import asyncio
import json

import pytest

from agentchat.events import (
    ConnectedEvent,
    EventChannel,
    EventType,
    MessageChunkEvent,
    SendMessageRequest,
    StatusEvent,
    SubagentToolResultCompleteEvent,
    ToolUseStartEvent,
    deserialize_event,
    serialize_event,
)


class TestSerialization:
    """Tests for serialize_event / deserialize_event."""

    def test_type_serialized_as_value(self):
        data = json.loads(serialize_event(StatusEvent(session_id="s1", state="running")))
        assert data["type"] == "chat.status"
        assert data["session_id"] == "s1"
        assert data["state"] == "running"
        assert "timestamp" in data

    def test_request_deserialization(self):
        event = deserialize_event(json.dumps({
            "type": "message.send", "text": "fix the crash", "session_id": "s1",
        }))
        assert isinstance(event, SendMessageRequest)
        assert event.type == EventType.SEND_MESSAGE
        assert event.text == "fix the crash"
        assert event.attachments == []

    def test_unknown_fields_are_dropped(self):
        event = deserialize_event(json.dumps({"type": "chat.message_chunk", "text": "a", "extra": 1}))
        assert isinstance(event, MessageChunkEvent)
        assert event.text == "a"

    def test_nested_payload_survives(self):
        original = ToolUseStartEvent(session_id="s1", tool={"id": "t1", "name": "Read"})
        event = deserialize_event(serialize_event(original))
        assert event.tool == {"id": "t1", "name": "Read"}

    def test_optional_error_flag(self):
        event = SubagentToolResultCompleteEvent(
            parent_tool_use_id="t1", tool_use_id="c1", content="ok",
        )
        assert json.loads(event.to_json())["is_error"] is None

    def test_unknown_type_raises(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            deserialize_event(json.dumps({"type": "nope"}))

    def test_non_object_raises(self):
        with pytest.raises(ValueError):
            deserialize_event("[1, 2]")

    def test_invalid_json_raises(self):
        with pytest.raises(json.JSONDecodeError):
            deserialize_event("{not json")

    def test_connected_event_defaults(self):
        event = ConnectedEvent(client_id="client_1")
        assert event.protocol_version == "1.0"
        assert event.sessions == []


class TestEventChannel:
    """Tests for EventChannel fan-out."""

    @pytest.mark.asyncio
    async def test_queue_subscribers_receive_in_order(self):
        channel = EventChannel()
        queue = channel.subscribe()
        channel.publish(MessageChunkEvent(text="a"))
        channel.publish(MessageChunkEvent(text="b"))
        first = await asyncio.wait_for(queue.get(), timeout=1.0)
        second = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert [first.text, second.text] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_full_queue_drops_event(self):
        channel = EventChannel(max_pending=1)
        queue = channel.subscribe()
        channel.publish(MessageChunkEvent(text="kept"))
        channel.publish(MessageChunkEvent(text="dropped"))
        assert queue.qsize() == 1
        assert queue.get_nowait().text == "kept"

    def test_unsubscribe(self):
        channel = EventChannel()
        queue = channel.subscribe()
        assert channel.subscriber_count == 1
        channel.unsubscribe(queue)
        channel.unsubscribe(queue)
        assert channel.subscriber_count == 0

    def test_publish_without_subscribers(self):
        EventChannel().publish(StatusEvent(state="idle"))

    def test_listeners_called_inline(self):
        channel = EventChannel()
        seen = []
        channel.add_listener(seen.append)
        channel.publish(StatusEvent(state="idle"))
        assert seen[0].state == "idle"
        channel.remove_listener(seen.append)
        channel.publish(StatusEvent(state="running"))
        assert len(seen) == 1

    def test_failing_listener_does_not_block_others(self):
        channel = EventChannel()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        channel.add_listener(broken)
        channel.add_listener(seen.append)
        channel.publish(StatusEvent(state="idle"))
        assert len(seen) == 1
