"""Server configuration loading with layered precedence.

Configuration precedence (highest wins):
1. Explicit overrides (command-line arguments)
2. Environment variables (AGENTCHAT_*)
3. The .env file, loaded with python-dotenv
4. Built-in defaults

Usage:
    from agentchat.config import load_server_config

    config = load_server_config(env_file=".env", workspace_dir="/work/repo")

Environment Variables:
    AGENTCHAT_WORKSPACE: Working directory handed to the agent (default: cwd)
    AGENTCHAT_LOG_DIR: Agent log directory, relative to the workspace (default: logs)
    AGENTCHAT_LOG_RING_SIZE: Log lines kept in memory per session (default: 2000)
    AGENTCHAT_QUEUE_POLL_INTERVAL: Fallback poll of the turn queue, seconds (default: 0.1)
    AGENTCHAT_MAX_THINKING_TOKENS: Reasoning budget passed to the runtime (default: 32000)
    AGENTCHAT_PERMISSION_MODE: Runtime permission mode (default: bypassPermissions)
    AGENTCHAT_MODEL: Model override (default: runtime default)
    AGENTCHAT_DEBUG: Forward runtime stderr to clients (default: false)
    AGENTCHAT_HOST / AGENTCHAT_PORT: WebSocket bind address (default: localhost:8080)
    AGENTCHAT_SUBSCRIBER_QUEUE_SIZE: Pending events per subscriber (default: 10000)
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, get_type_hints

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

ENV_PREFIX = "AGENTCHAT_"

# Field name -> environment variable, where the name is not simply upper-cased.
_ENV_NAME_OVERRIDES: Dict[str, str] = {
    "workspace_dir": "AGENTCHAT_WORKSPACE",
}


def _parse_bool(value: str) -> bool:
    """Parse boolean from string."""
    return value.lower() in ("true", "1", "yes", "on")


def _parse_env_value(value: str, target_type: Type) -> Any:
    """Parse environment variable value to target type."""
    args = getattr(target_type, '__args__', ())
    if args and type(None) in args:
        if value == "":
            return None
        inner_types = [a for a in args if a is not type(None)]
        if inner_types:
            target_type = inner_types[0]

    if target_type == bool:
        return _parse_bool(value)
    elif target_type == int:
        return int(value)
    elif target_type == float:
        return float(value)
    return value


@dataclass
class ServerConfig:
    """Runtime settings for the session engine and its WebSocket boundary.

    Attributes:
        workspace_dir: Directory the agent works in; shared by all sessions.
        log_dir: Where per-session agent logs are written. Relative paths are
            resolved against ``workspace_dir``.
        log_ring_size: Number of raw log lines kept in memory per session.
        queue_poll_interval: Fallback wake-up interval of the turn generator.
        max_thinking_tokens: Reasoning budget handed to the runtime.
        permission_mode: Runtime tool permission mode.
        model: Model override, None for the runtime default.
        debug: Forward runtime stderr to clients as debug events.
        host: WebSocket bind host.
        port: WebSocket bind port.
        subscriber_queue_size: Pending events buffered per subscriber.
    """
    workspace_dir: str = field(default_factory=os.getcwd)
    log_dir: str = "logs"
    log_ring_size: int = 2000
    queue_poll_interval: float = 0.1
    max_thinking_tokens: int = 32000
    permission_mode: str = "bypassPermissions"
    model: Optional[str] = None
    debug: bool = False
    host: str = "localhost"
    port: int = 8080
    subscriber_queue_size: int = 10000

    def __post_init__(self):
        """Validate configuration values."""
        if self.log_ring_size < 1:
            raise ValueError("log_ring_size must be at least 1")
        if self.queue_poll_interval <= 0:
            raise ValueError("queue_poll_interval must be positive")
        if not (0 < self.port < 65536):
            raise ValueError("port must be between 1 and 65535")

    @property
    def resolved_log_dir(self) -> Path:
        path = Path(self.log_dir).expanduser()
        if not path.is_absolute():
            path = Path(self.workspace_dir) / path
        return path


def env_var_name(field_name: str) -> str:
    return _ENV_NAME_OVERRIDES.get(field_name, ENV_PREFIX + field_name.upper())


def load_server_config(
    env_file: Optional[str] = ".env",
    environ: Optional[Dict[str, str]] = None,
    **overrides: Any,
) -> ServerConfig:
    """Load server configuration with layered precedence.

    Args:
        env_file: Path to a .env file; missing files are ignored.
        environ: Environment mapping (defaults to ``os.environ``).
        **overrides: Explicit values (None entries are ignored).

    Returns:
        The merged ServerConfig.
    """
    env: Dict[str, Optional[str]] = {}
    if env_file and Path(env_file).exists():
        env.update(dotenv_values(env_file))
        logger.debug(f"Loaded config values from {env_file}")
    env.update(os.environ if environ is None else environ)

    type_hints = get_type_hints(ServerConfig)
    values: Dict[str, Any] = {}
    for f in fields(ServerConfig):
        raw = env.get(env_var_name(f.name))
        if raw is None:
            continue
        try:
            values[f.name] = _parse_env_value(raw, type_hints[f.name])
        except ValueError as e:
            logger.warning(f"Invalid value for {env_var_name(f.name)}: {raw!r} ({e})")

    for key, value in overrides.items():
        if value is None:
            continue
        if key not in type_hints:
            raise TypeError(f"Unknown configuration key: {key}")
        values[key] = value

    return ServerConfig(**values)
