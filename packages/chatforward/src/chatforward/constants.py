"""Constants for the forwarding gateway."""

# WebSocket close codes
NORMAL_CLOSE_CODE: int = 1000
ABNORMAL_CLOSE_CODE: int = 1006
HEARTBEAT_TIMEOUT_CLOSE_CODE: int = 4000
AUTH_FAILED_CLOSE_CODE: int = 4001

# Connection defaults (milliseconds)
DEFAULT_URL: str = "ws://localhost:8080/chat"
DEFAULT_RECONNECT_INTERVAL_MS: int = 5000
DEFAULT_MAX_RECONNECT_ATTEMPTS: int = 10
DEFAULT_MAX_RECONNECT_DELAY_MS: int = 60000
DEFAULT_HEARTBEAT_INTERVAL_MS: int = 30000
DEFAULT_HEARTBEAT_TIMEOUT_MS: int = 60000
DEFAULT_AUTH_TIMEOUT_MS: int = 10000

# Outbound queue
DEFAULT_MAX_QUEUE_SIZE: int = 1000

# Request/response correlation (seconds)
DEFAULT_REQUEST_TIMEOUT_S: float = 10.0
SWEEP_INTERVAL_S: float = 60.0
SWEEP_MAX_AGE_S: float = 30.0

# Chat defaults
DEFAULT_MAIN_PREFIX: str = "[Network]"
DEFAULT_COMMAND_PREFIXES: tuple = ("!!", "##")

# Environment overrides
ENV_WS_URL: str = "CHATFORWARD_WS_URL"
ENV_WS_TOKEN: str = "CHATFORWARD_WS_TOKEN"
