"""Session Manager for multi-session support.

This module manages the set of agent sessions served by one process. Each
session owns its own conversation with the agent runtime; all of them share
the workspace directory and the outbound event channel.

Sessions are:
- Created on demand, the first one becoming active
- Listed by most recent activity
- Deleted only while not running
- Kept in memory for the life of the process

The manager is an ordinary object owned by whoever hosts it (the CLI, a
test); several independent managers can coexist.
"""

import logging
from typing import Any, Dict, List, Optional

from .config import ServerConfig
from .errors import SessionNotFoundError
from .events import (
    EventChannel,
    SessionCreatedEvent,
    SessionDeletedEvent,
    SessionSwitchedEvent,
)
from .message_log import AttachmentInfo, Message
from .protocol import SystemInitInfo
from .runtime import AgentRuntime
from .session import AgentSession, SessionMetadata, SessionState

logger = logging.getLogger(__name__)


class SessionManager:
    """Registry of agent sessions with an active-session pointer.

    Example:
        manager = SessionManager(runtime, channel, config)
        session = manager.create_session()
        await manager.send_message("fix the crash")
        await manager.delete_session(session.id)
    """

    def __init__(self, runtime: AgentRuntime, channel: EventChannel, config: ServerConfig):
        self._runtime = runtime
        self._channel = channel
        self._config = config
        self._sessions: Dict[str, AgentSession] = {}
        self._active_session_id: Optional[str] = None

    @property
    def workspace_dir(self) -> str:
        return self._config.workspace_dir

    @property
    def channel(self) -> EventChannel:
        return self._channel

    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    # =========================================================================
    # Registry
    # =========================================================================

    def create_session(self) -> AgentSession:
        """Create a new idle session; it becomes active if none is.

        Returns:
            The new session.
        """
        session = AgentSession(
            runtime=self._runtime,
            channel=self._channel,
            config=self._config,
        )
        self._sessions[session.id] = session
        if self._active_session_id is None:
            self._active_session_id = session.id

        logger.info(f"Session created: {session.id} ({session.name})")
        self._channel.publish(SessionCreatedEvent(
            session_id=session.id,
            session=session.metadata().to_dict(),
        ))
        return session

    def switch_session(self, session_id: str) -> bool:
        """Make ``session_id`` the active session.

        Returns:
            False if the session does not exist.
        """
        if session_id not in self._sessions:
            return False
        self._active_session_id = session_id
        logger.info(f"Switched to session {session_id}")
        self._channel.publish(SessionSwitchedEvent(session_id=session_id))
        return True

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session and release its runtime handle and log.

        Returns:
            False if the session does not exist or is running.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if session.state == SessionState.RUNNING:
            logger.info(f"Refusing to delete running session {session_id}")
            return False

        del self._sessions[session_id]
        await session.close()
        logger.info(f"Session deleted: {session_id}")
        self._channel.publish(SessionDeletedEvent(session_id=session_id))

        if self._active_session_id == session_id:
            self._active_session_id = next(iter(self._sessions), None)
            if self._active_session_id is not None:
                self._channel.publish(SessionSwitchedEvent(session_id=self._active_session_id))
        return True

    def list_sessions(self) -> List[SessionMetadata]:
        """Metadata of all sessions, most recently active first."""
        return sorted(
            (session.metadata() for session in self._sessions.values()),
            key=lambda m: m.last_activity,
            reverse=True,
        )

    def get_session(self, session_id: Optional[str] = None) -> Optional[AgentSession]:
        """Session by id, or the active session when no id is given."""
        if session_id is None:
            session_id = self._active_session_id
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def get_active_session(self) -> Optional[AgentSession]:
        return self.get_session(None)

    def get_or_create_active_session(self) -> AgentSession:
        session = self.get_active_session()
        if session is None:
            session = self.create_session()
        return session

    def __len__(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # Conversation
    # =========================================================================

    async def send_message(
        self,
        text: str,
        attachments: Optional[List[Dict[str, Any]]] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Message]:
        """Send a user turn to a session (the active one by default).

        Returns once the runtime has taken the turn.

        Raises:
            SessionNotFoundError: If ``session_id`` is given but unknown.
        """
        if not (text or "").strip():
            return None
        if session_id is not None:
            session = self._sessions.get(session_id)
            if session is None:
                raise SessionNotFoundError(session_id)
        else:
            session = self.get_or_create_active_session()

        infos = [AttachmentInfo.from_dict(a) for a in attachments] if attachments else None
        return await session.send(text, infos)

    async def interrupt(self, session_id: Optional[str] = None) -> bool:
        """Interrupt the turn in progress; False if nothing is running."""
        session = self.get_session(session_id)
        if session is None:
            return False
        return await session.interrupt()

    async def initialize(self, workspace_dir: Optional[str] = None, initial_prompt: Optional[str] = None) -> AgentSession:
        """Point the manager at a workspace and open the first session.

        Args:
            workspace_dir: Replaces the configured workspace when given.
            initial_prompt: Sent to the first session if non-blank.
        """
        if workspace_dir:
            self._config.workspace_dir = workspace_dir
        session = self.get_or_create_active_session()
        logger.info(f"Agent workspace: {self._config.workspace_dir}")
        if initial_prompt and initial_prompt.strip():
            await self.send_message(initial_prompt, session_id=session.id)
        return session

    # =========================================================================
    # Read accessors (default to the active session)
    # =========================================================================

    def get_agent_state(self, session_id: Optional[str] = None) -> Dict[str, Any]:
        session = self.get_session(session_id)
        return {
            "workspace_dir": self._config.workspace_dir,
            "session_state": (session.state if session else SessionState.IDLE).value,
            "has_initial_prompt": session is not None and len(session.log) > 0,
            "session_id": session.id if session else None,
        }

    def get_system_init(self, session_id: Optional[str] = None) -> Optional[SystemInitInfo]:
        session = self.get_session(session_id)
        return session.system_init if session else None

    def get_log_lines(self, session_id: Optional[str] = None) -> List[str]:
        session = self.get_session(session_id)
        return session.log_lines if session else []

    def get_messages(self, session_id: Optional[str] = None) -> List[Dict[str, Any]]:
        session = self.get_session(session_id)
        return session.get_messages() if session else []

    def is_session_active(self, session_id: Optional[str] = None) -> bool:
        session = self.get_session(session_id)
        return session.is_active if session else False

    def get_snapshot(self, session_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        session = self.get_session(session_id)
        return session.snapshot() if session else None

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def shutdown(self) -> None:
        """Close every session regardless of state."""
        logger.info("SessionManager shutting down...")
        for session in list(self._sessions.values()):
            try:
                await session.close()
            except Exception as e:
                logger.error(f"Error closing session {session.id}: {e}")
        self._sessions.clear()
        self._active_session_id = None
        logger.info("SessionManager shutdown complete")
