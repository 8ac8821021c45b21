"""Tests for session-aware logging and agent log files."""

import logging
from datetime import datetime, timezone

from agentchat.session_logging import (
    AgentLogWriter,
    SessionContextFilter,
    agent_log_path,
    get_logging_context,
    logging_context,
)


def _record() -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, "msg", None, None)


class TestLoggingContext:
    """Tests for the ContextVar based session context."""

    def test_context_set_and_restored(self):
        assert get_logging_context()["session_id"] is None
        with logging_context(session_id="s1", workspace_path="/work"):
            assert get_logging_context() == {"session_id": "s1", "workspace_path": "/work"}
            with logging_context(session_id="s2"):
                assert get_logging_context()["session_id"] == "s2"
                assert get_logging_context()["workspace_path"] == "/work"
            assert get_logging_context()["session_id"] == "s1"
        assert get_logging_context()["session_id"] is None

    def test_filter_stamps_records(self):
        record = _record()
        with logging_context(session_id="s1"):
            assert SessionContextFilter().filter(record)
        assert record.session_id == "s1"

    def test_filter_outside_session(self):
        record = _record()
        SessionContextFilter().filter(record)
        assert record.session_id == "-"
        assert record.workspace_path == ""


class TestAgentLog:
    """Tests for per-session agent log files."""

    def test_path_format(self, tmp_path):
        now = datetime(2025, 3, 4, 5, 6, 7, 890000, tzinfo=timezone.utc)
        path = agent_log_path("0123456789abcdef", tmp_path, now=now)
        assert path == tmp_path / "agent-2025-03-04T05-06-07-890000Z-01234567.log"

    def test_lazy_open_and_write(self, tmp_path):
        writer = AgentLogWriter("session-lazy", tmp_path / "logs")
        assert not writer.is_open
        assert not (tmp_path / "logs").exists()

        writer.write("line one")
        writer.write("line two")
        assert writer.is_open
        writer.close()

        assert writer.path.read_text(encoding="utf-8").splitlines() == ["line one", "line two"]
        assert not writer.is_open

    def test_write_after_close_is_ignored(self, tmp_path):
        writer = AgentLogWriter("session-closed", tmp_path)
        writer.close()
        writer.write("late")
        assert not writer.path.exists()

    def test_unwritable_directory_disables_writer(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        writer = AgentLogWriter("session-broken", blocker / "logs")
        writer.write("line")
        writer.write("line")
        assert not writer.is_open
