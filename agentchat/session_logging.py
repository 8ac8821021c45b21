"""Session-aware logging.

Two concerns live here:

- Server logs: ContextVars carry the session id of the code currently
  running, and ``SessionContextFilter`` stamps it onto every record so the
  root handler can print it.
- Agent logs: each session writes the raw runtime event stream to its own
  file, ``<log_dir>/agent-<UTC timestamp>-<id[:8]>.log``, through a
  dedicated non-propagating logger.

Usage:
    with logging_context(session_id=session.id, workspace_path=workspace):
        logger.info("Runtime opened")   # record.session_id is set

    writer = AgentLogWriter(session.id, log_dir)
    writer.write("2025-01-01T00:00:00 {...}")
    writer.close()
"""

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

# Context variables for session routing
session_context: ContextVar[Optional[str]] = ContextVar('session_id', default=None)
workspace_context: ContextVar[Optional[str]] = ContextVar('workspace_path', default=None)

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(session_id)s] %(name)s: %(message)s"

_AGENT_LOGGER_PREFIX = "agentchat.agent_log"


def get_logging_context() -> Dict[str, Any]:
    """Get the current logging context."""
    return {
        'session_id': session_context.get(),
        'workspace_path': workspace_context.get(),
    }


@contextmanager
def logging_context(
    session_id: Optional[str] = None,
    workspace_path: Optional[str] = None,
):
    """Context manager for setting logging context.

    Args:
        session_id: The session ID stamped onto log records.
        workspace_path: The workspace the session operates in.
    """
    session_token = session_context.set(session_id) if session_id is not None else None
    workspace_token = workspace_context.set(workspace_path) if workspace_path is not None else None
    try:
        yield
    finally:
        if workspace_token is not None:
            workspace_context.reset(workspace_token)
        if session_token is not None:
            session_context.reset(session_token)


class SessionContextFilter(logging.Filter):
    """Logging filter that adds session context to log records.

    Adds ``session_id`` (``-`` outside a session) and ``workspace_path``
    attributes.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.session_id = session_context.get() or "-"
        record.workspace_path = workspace_context.get() or ""
        return True


def configure_logging(verbose: bool = False) -> logging.Handler:
    """Install a root stream handler that prints the session id.

    Args:
        verbose: Log at DEBUG instead of INFO.

    Returns:
        The installed handler.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(SessionContextFilter())

    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(handler)
    return handler


def agent_log_path(session_id: str, log_dir: Path, now: Optional[datetime] = None) -> Path:
    """Path of the agent log for ``session_id``."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    return Path(log_dir) / f"agent-{stamp}-{session_id[:8]}.log"


class AgentLogWriter:
    """Appends raw runtime event lines to a session's agent log file.

    The file is opened lazily on first write so sessions that never talk to
    the runtime leave nothing on disk. Write failures are logged and the
    writer disables itself; they never propagate into the session.
    """

    def __init__(self, session_id: str, log_dir: Path):
        self.session_id = session_id
        self.path = agent_log_path(session_id, log_dir)
        self._logger = logging.getLogger(f"{_AGENT_LOGGER_PREFIX}.{session_id}")
        self._logger.propagate = False
        self._logger.setLevel(logging.INFO)
        self._handler: Optional[logging.FileHandler] = None
        self._failed = False
        self._closed = False

    def _ensure_handler(self) -> bool:
        if self._handler is not None:
            return True
        if self._failed or self._closed:
            return False
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(self.path, encoding="utf-8")
        except OSError as e:
            logger.error(f"Cannot open agent log {self.path}: {e}")
            self._failed = True
            return False
        handler.setFormatter(logging.Formatter("%(message)s"))
        self._logger.addHandler(handler)
        self._handler = handler
        logger.debug(f"Agent log for {self.session_id}: {self.path}")
        return True

    def write(self, line: str) -> None:
        if self._ensure_handler():
            self._logger.info(line)

    @property
    def is_open(self) -> bool:
        return self._handler is not None

    def close(self) -> None:
        self._closed = True
        if self._handler is None:
            return
        self._logger.removeHandler(self._handler)
        self._handler.close()
        self._handler = None
