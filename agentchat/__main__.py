#!/usr/bin/env python3
"""agentchat server - streams an autonomous coding agent to WebSocket clients.

Usage:
    # Serve the current directory on localhost:8080
    python -m agentchat

    # Pick the workspace and address
    python -m agentchat --workspace ~/src/project --web-socket :9000

    # Start with a first prompt already queued
    python -m agentchat --initial-prompt "run the test suite"
"""

import argparse
import asyncio
import logging
import os
import signal
from typing import List, Optional, Tuple

from .config import ServerConfig, load_server_config
from .events import EventChannel
from .runtime import ClaudeAgentRuntime
from .session_logging import configure_logging
from .session_manager import SessionManager
from .websocket import ChatWSServer

logger = logging.getLogger(__name__)

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def parse_address(value: str, default_host: str = "localhost") -> Tuple[str, int]:
    """Split ``[HOST:]PORT``; a bare ``:PORT`` listens on every interface."""
    host, sep, port = value.rpartition(':')
    if not sep:
        return default_host, int(port)
    return host or "0.0.0.0", int(port)


class AgentChatDaemon:
    """One process: an event channel, a session manager and a WebSocket server."""

    def __init__(self, config: ServerConfig, initial_prompt: Optional[str] = None):
        self.config = config
        self.initial_prompt = initial_prompt

        self._channel = EventChannel(max_pending=config.subscriber_queue_size)
        self._manager = SessionManager(ClaudeAgentRuntime(config), self._channel, config)
        self._ws_server = ChatWSServer(self._manager, host=config.host, port=config.port)
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        if not self._shutdown_event.is_set():
            logger.info("Shutdown requested")
        self._shutdown_event.set()

    async def _open_first_session(self) -> None:
        try:
            await self._manager.initialize(self.config.workspace_dir, self.initial_prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # The server keeps running; clients can still open sessions.
            logger.error(f"Initial session failed: {e}", exc_info=True)

    async def run(self) -> None:
        """Serve until a shutdown signal or request_shutdown()."""
        loop = asyncio.get_running_loop()
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown)

        serving = asyncio.create_task(self._ws_server.start(), name="websocket")
        opening = asyncio.create_task(self._open_first_session(), name="first-session")
        logger.info(f"agentchat serving {self.config.workspace_dir}")
        try:
            await self._shutdown_event.wait()
        finally:
            for sig in SHUTDOWN_SIGNALS:
                loop.remove_signal_handler(sig)
            opening.cancel()
            await self._ws_server.stop()
            results = await asyncio.gather(serving, opening, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Task failed during shutdown: {result}")
            await self._manager.shutdown()
            logger.info("agentchat stopped")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentchat",
        description="Multi-session chat server for an autonomous coding agent",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Configuration is read from the env file, then AGENTCHAT_* variables,\n"
            "then these options, each overriding the one before.\n"
        ),
    )
    parser.add_argument("--workspace", metavar="DIR",
                        help="agent working directory (default: AGENTCHAT_WORKSPACE or cwd)")
    parser.add_argument("--web-socket", metavar="[HOST:]PORT",
                        help="listen address, for example :8080 or 127.0.0.1:9000")
    parser.add_argument("--env-file", default=".env", metavar="PATH",
                        help="dotenv file to read first (default: %(default)s)")
    parser.add_argument("--initial-prompt", metavar="TEXT",
                        help="queue this prompt on the first session at startup")
    parser.add_argument("--model", help="model passed to the agent runtime")
    parser.add_argument("--debug", action="store_true", default=None,
                        help="publish runtime stderr to clients as debug events")
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="log at DEBUG level")
    return parser


def config_from_args(args: argparse.Namespace) -> ServerConfig:
    """Resolve the layered configuration with command-line values on top."""
    host, port = parse_address(args.web_socket) if args.web_socket else (None, None)
    workspace = os.path.abspath(args.workspace) if args.workspace else None
    return load_server_config(
        env_file=args.env_file,
        workspace_dir=workspace,
        host=host,
        port=port,
        model=args.model,
        debug=args.debug,
    )


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    daemon = AgentChatDaemon(config_from_args(args), initial_prompt=args.initial_prompt)
    try:
        asyncio.run(daemon.run())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
