"""Tests for the user turn queue."""

import asyncio

import pytest

from agentchat.message_queue import UserTurnQueue


async def _next(stream):
    return await stream.__anext__()


class TestUserTurnQueue:
    """Tests for UserTurnQueue."""

    @pytest.mark.asyncio
    async def test_put_and_pop_fifo(self):
        queue = UserTurnQueue("s1")
        queue.put("first")
        queue.put("second")
        assert len(queue) == 2
        assert [t.text for t in queue.peek_all()] == ["first", "second"]
        assert queue.pop_any().text == "first"
        assert queue.pop_any().text == "second"
        assert queue.pop_any() is None
        assert queue.is_empty()

    def test_envelope_shape(self):
        queue = UserTurnQueue("s1")
        envelope = queue.envelope("hello")
        assert envelope["type"] == "user"
        assert envelope["session_id"] == "s1"
        assert envelope["parent_tool_use_id"] is None
        assert envelope["message"]["content"] == [{"type": "text", "text": "hello"}]

    @pytest.mark.asyncio
    async def test_stream_resolves_hand_off_when_consumer_resumes(self):
        queue = UserTurnQueue("s1", poll_interval=0.01)
        handed_off = queue.put("hello")
        stream = queue.stream(lambda: False)

        envelope = await stream.__anext__()
        assert envelope["message"]["content"][0]["text"] == "hello"
        assert not handed_off.done()

        # Asking for the next turn acknowledges the previous one.
        next_turn = asyncio.create_task(_next(stream))
        await asyncio.wait_for(handed_off, timeout=1.0)
        next_turn.cancel()
        with pytest.raises(asyncio.CancelledError):
            await next_turn

    @pytest.mark.asyncio
    async def test_stream_wakes_on_push(self):
        queue = UserTurnQueue("s1", poll_interval=10.0)
        stream = queue.stream(lambda: False)
        pending = asyncio.create_task(_next(stream))
        await asyncio.sleep(0.01)
        assert not pending.done()

        queue.put("late")
        envelope = await asyncio.wait_for(pending, timeout=1.0)
        assert envelope["message"]["content"][0]["text"] == "late"
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_stream_stops_on_predicate(self):
        stop = False
        queue = UserTurnQueue("s1", poll_interval=0.01)
        stream = queue.stream(lambda: stop)
        pending = asyncio.create_task(_next(stream))
        await asyncio.sleep(0.02)

        stop = True
        queue.wake()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(pending, timeout=1.0)

    @pytest.mark.asyncio
    async def test_cancel_pending_cancels_futures(self):
        queue = UserTurnQueue("s1")
        first = queue.put("a")
        second = queue.put("b")
        assert queue.cancel_pending() == 2
        assert first.cancelled()
        assert second.cancelled()
        assert queue.is_empty()

    @pytest.mark.asyncio
    async def test_cancel_pending_with_error(self):
        queue = UserTurnQueue("s1")
        future = queue.put("a")
        error = RuntimeError("stream failed")
        assert queue.cancel_pending(error) == 1
        with pytest.raises(RuntimeError, match="stream failed"):
            await future

    @pytest.mark.asyncio
    async def test_fail_waiters_keeps_turns(self):
        queue = UserTurnQueue("s1", poll_interval=0.01)
        future = queue.put("a")
        assert queue.fail_waiters(RuntimeError("stream failed")) == 1
        with pytest.raises(RuntimeError, match="stream failed"):
            await future
        assert len(queue) == 1

        stream = queue.stream(lambda: False)
        envelope = await _next(stream)
        assert envelope["message"]["content"][0]["text"] == "a"
        await stream.aclose()
