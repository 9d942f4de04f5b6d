"""
Configuration

Pydantic models for the gateway configuration. Field aliases match the
camelCase keys used in the proxy's config.yml, so a loaded YAML document
validates directly.
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .constants import (
    DEFAULT_AUTH_TIMEOUT_MS,
    DEFAULT_COMMAND_PREFIXES,
    DEFAULT_HEARTBEAT_INTERVAL_MS,
    DEFAULT_HEARTBEAT_TIMEOUT_MS,
    DEFAULT_MAIN_PREFIX,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_MAX_RECONNECT_ATTEMPTS,
    DEFAULT_MAX_RECONNECT_DELAY_MS,
    DEFAULT_RECONNECT_INTERVAL_MS,
    DEFAULT_URL,
    ENV_WS_TOKEN,
    ENV_WS_URL,
)

logger = logging.getLogger(__name__)


class BackoffPolicy(str, Enum):
    """How the reconnect delay grows with each attempt."""

    LINEAR = "linear"  # base * attempt
    EXPONENTIAL = "exponential"  # base * 2^(attempt - 1)


class OverflowPolicy(str, Enum):
    """What to do when the outbound queue is full."""

    DROP_OLDEST = "drop_oldest"
    DROP_NEWEST = "drop_newest"
    REJECT = "reject"


class WebSocketConfig(BaseModel):
    """Upstream connection settings."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = DEFAULT_URL
    token: str = ""
    reconnect_interval_ms: int = Field(
        default=DEFAULT_RECONNECT_INTERVAL_MS, alias="reconnectIntervalMs", gt=0
    )
    max_reconnect_attempts: int = Field(
        default=DEFAULT_MAX_RECONNECT_ATTEMPTS, alias="maxReconnectAttempts", ge=0
    )
    max_reconnect_delay_ms: int = Field(
        default=DEFAULT_MAX_RECONNECT_DELAY_MS, alias="maxReconnectDelayMs", gt=0
    )
    reconnect_backoff: BackoffPolicy = Field(
        default=BackoffPolicy.LINEAR, alias="reconnectBackoff"
    )
    heartbeat_interval_ms: int = Field(
        default=DEFAULT_HEARTBEAT_INTERVAL_MS, alias="heartbeatIntervalMs", gt=0
    )
    heartbeat_timeout_ms: int = Field(
        default=DEFAULT_HEARTBEAT_TIMEOUT_MS, alias="heartbeatTimeoutMs", gt=0
    )
    auth_timeout_ms: int = Field(default=DEFAULT_AUTH_TIMEOUT_MS, alias="authTimeoutMs", gt=0)
    max_queue_size: int = Field(default=DEFAULT_MAX_QUEUE_SIZE, alias="maxQueueSize", gt=0)
    queue_overflow: OverflowPolicy = Field(
        default=OverflowPolicy.DROP_OLDEST, alias="queueOverflow"
    )

    def reconnect_delay_ms(self, attempt: int) -> int:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        if attempt < 1:
            return 0
        if self.reconnect_backoff == BackoffPolicy.EXPONENTIAL:
            delay = self.reconnect_interval_ms * (2 ** (attempt - 1))
        else:
            delay = self.reconnect_interval_ms * attempt
        return min(delay, self.max_reconnect_delay_ms)


class ChatConfig(BaseModel):
    """Chat formatting and routing settings."""

    model_config = ConfigDict(populate_by_name=True)

    main_prefix: str = Field(default=DEFAULT_MAIN_PREFIX, alias="mainPrefix")
    server_prefix_mapping: Dict[str, str] = Field(
        default_factory=dict, alias="serverPrefixMapping"
    )
    command_prefixes: List[str] = Field(
        default_factory=lambda: list(DEFAULT_COMMAND_PREFIXES),
        alias="commandPrefixes",
        # Older proxy configs name this key mcdrCommandPrefix
        validation_alias=AliasChoices("commandPrefixes", "mcdrCommandPrefix", "command_prefixes"),
    )

    def server_prefix(self, server: str) -> str:
        """Display prefix for a server, falling back to its raw name."""
        return self.server_prefix_mapping.get(server) or server

    @property
    def servers(self) -> List[str]:
        """Backend servers the gateway delivers to."""
        return list(self.server_prefix_mapping.keys())

    def is_command(self, message: str) -> bool:
        return any(message.startswith(prefix) for prefix in self.command_prefixes if prefix)


class ForwardConfig(BaseModel):
    """Top-level configuration."""

    websocket: WebSocketConfig = Field(default_factory=WebSocketConfig)
    chat: ChatConfig = Field(default_factory=ChatConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ForwardConfig":
        return cls.model_validate(data or {})


def apply_env_overrides(config: ForwardConfig) -> ForwardConfig:
    """Let the environment override the upstream URL and token."""
    updates = {}
    url = os.getenv(ENV_WS_URL)
    if url:
        updates["url"] = url
    token = os.getenv(ENV_WS_TOKEN)
    if token:
        updates["token"] = token
    if not updates:
        return config
    websocket = config.websocket.model_copy(update=updates)
    return config.model_copy(update={"websocket": websocket})


def load_config(path: Union[str, Path]) -> ForwardConfig:
    """
    Load configuration from a YAML file.

    A missing file yields the defaults. Environment overrides are applied
    last. Validation errors propagate to the caller.
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Config file {path} not found, using defaults")
        return apply_env_overrides(ForwardConfig())

    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    config = ForwardConfig.from_dict(data)
    logger.info(
        f"Loaded config from {path}: url={config.websocket.url}, "
        f"{len(config.chat.server_prefix_mapping)} server mappings"
    )
    return apply_env_overrides(config)
