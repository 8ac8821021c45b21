"""UserTurnQueue - hands queued user turns to the agent runtime.

The runtime consumes user input as an async iterator. ``UserTurnQueue`` is
the bridge between callers that enqueue turns at arbitrary times and that
iterator:

- ``put()`` appends a turn and returns a future resolved once the runtime
  has actually taken the turn.
- ``stream()`` is the lazy generator handed to the runtime. It sleeps until
  a turn is pushed (or the stop predicate flips) instead of busy-polling.

Example:
    queue = UserTurnQueue(session_id="abc")
    handed_off = queue.put("fix the crash")
    async for envelope in queue.stream(lambda: stopping):
        ...
    await handed_off
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1


@dataclass
class QueuedTurn:
    """A user turn waiting to be handed to the runtime."""
    text: str
    handed_off: "asyncio.Future[None]"
    timestamp: datetime = field(default_factory=datetime.now)


class UserTurnQueue:
    """FIFO of pending user turns with hand-off signalling."""

    def __init__(self, session_id: str, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.session_id = session_id
        self._poll_interval = poll_interval
        self._turns: Deque[QueuedTurn] = deque()
        self._wakeup = asyncio.Event()

    def put(self, text: str) -> "asyncio.Future[None]":
        """Append a turn to the end of the queue.

        Args:
            text: The user's message text.

        Returns:
            Future resolved once the turn has been yielded to the runtime.
        """
        future = asyncio.get_running_loop().create_future()
        self._turns.append(QueuedTurn(text=text, handed_off=future))
        self._wakeup.set()
        return future

    def pop_any(self) -> Optional[QueuedTurn]:
        return self._turns.popleft() if self._turns else None

    def is_empty(self) -> bool:
        return not self._turns

    def __len__(self) -> int:
        return len(self._turns)

    def peek_all(self) -> List[QueuedTurn]:
        return list(self._turns)

    def wake(self) -> None:
        """Interrupt a pending wait so the stop predicate is re-checked."""
        self._wakeup.set()

    def cancel_pending(self, error: Optional[BaseException] = None) -> int:
        """Drop every queued turn.

        Args:
            error: Raised from the hand-off futures instead of cancelling them.

        Returns:
            Number of turns dropped.
        """
        dropped = 0
        while self._turns:
            turn = self._turns.popleft()
            if not turn.handed_off.done():
                if error is None:
                    turn.handed_off.cancel()
                else:
                    turn.handed_off.set_exception(error)
                dropped += 1
        self._wakeup.set()
        return dropped

    def fail_waiters(self, error: BaseException) -> int:
        """Raise ``error`` in everyone awaiting a hand-off; the turns stay queued.

        The next stream still delivers them, it just no longer has anyone
        to notify.
        """
        failed = 0
        for turn in self._turns:
            if not turn.handed_off.done():
                turn.handed_off.set_exception(error)
                failed += 1
        return failed

    def envelope(self, text: str) -> Dict[str, Any]:
        """Wrap text in the user-message shape the runtime expects."""
        return {
            "type": "user",
            "message": {
                "role": "user",
                "content": [{"type": "text", "text": text}],
            },
            "parent_tool_use_id": None,
            "session_id": self.session_id,
        }

    async def _wait_for_turn(self, should_stop: Callable[[], bool]) -> Optional[QueuedTurn]:
        while not should_stop():
            turn = self.pop_any()
            if turn is not None:
                return turn
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._poll_interval)
            except asyncio.TimeoutError:
                pass
        return None

    async def stream(self, should_stop: Callable[[], bool]) -> AsyncIterator[Dict[str, Any]]:
        """Yield queued turns to the runtime until ``should_stop()`` is true."""
        while True:
            turn = await self._wait_for_turn(should_stop)
            if turn is None:
                logger.debug(f"Turn stream for {self.session_id} stopped")
                return
            yield self.envelope(turn.text)
            if not turn.handed_off.done():
                turn.handed_off.set_result(None)
