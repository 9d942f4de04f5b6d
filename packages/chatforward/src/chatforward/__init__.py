"""
Chat Forward Package

Bidirectional event-forwarding gateway between a game proxy and an
external orchestration service over one WebSocket connection.
"""

from .errors import (
    ForwardError,
    GatewayConnectionError,
    AuthenticationError,
    ProtocolError,
    ReconnectExhaustedError,
    DuplicateRequestError,
)

from .config import (
    BackoffPolicy,
    OverflowPolicy,
    WebSocketConfig,
    ChatConfig,
    ForwardConfig,
    load_config,
)

from .protocol import (
    EventMode,
    Action,
    decode_envelope,
    encode_envelope,
    parse_envelope,
    create_chat_event,
    create_join_event,
    create_left_event,
    create_handoff_event,
    create_request,
)

from .host import (
    BackendServer,
    ProxyHost,
)

from .correlation import (
    CorrelationStore,
    RequestResult,
    RequestStatus,
)

from .connection import (
    ConnectionManager,
    ConnectionState,
    ConnectionStatus,
    SendResult,
)

from .dispatcher import ProtocolDispatcher

from .service import ForwardService

__all__ = [
    # Errors
    "ForwardError",
    "GatewayConnectionError",
    "AuthenticationError",
    "ProtocolError",
    "ReconnectExhaustedError",
    "DuplicateRequestError",
    # Config
    "BackoffPolicy",
    "OverflowPolicy",
    "WebSocketConfig",
    "ChatConfig",
    "ForwardConfig",
    "load_config",
    # Protocol
    "EventMode",
    "Action",
    "decode_envelope",
    "encode_envelope",
    "parse_envelope",
    "create_chat_event",
    "create_join_event",
    "create_left_event",
    "create_handoff_event",
    "create_request",
    # Host
    "BackendServer",
    "ProxyHost",
    # Correlation
    "CorrelationStore",
    "RequestResult",
    "RequestStatus",
    # Connection
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "SendResult",
    # Dispatch
    "ProtocolDispatcher",
    # Service
    "ForwardService",
]
