"""Exceptions raised by the session engine."""


class AgentChatError(Exception):
    """Base class for engine errors."""


class SessionNotFoundError(AgentChatError):
    """Raised when a request names a session id the registry does not know."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionClosedError(AgentChatError):
    """Raised when a turn is sent to a session that has been closed."""


class RuntimeUnavailableError(AgentChatError):
    """Raised when the agent runtime could not be opened."""
