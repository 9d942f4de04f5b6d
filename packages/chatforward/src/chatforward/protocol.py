"""
Forwarding Protocol

Defines the envelopes exchanged with the orchestration service.

All messages are single-line JSON objects tagged by exactly one of:
{
    "Mode": "PlayerChatEvent",     # event notification
    ...
}
or
{
    "action": "player_list",       # command, request or response
    "echo": "<correlation id>",    # optional
    ...
}

Inbound payloads are decoded into one typed variant per Mode/action. A
payload that is missing a required field or carries an unknown tag raises
ProtocolError at decode time.
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Type, Union

from .errors import ProtocolError

MODE_KEY = "Mode"
ACTION_KEY = "action"
ECHO_KEY = "echo"


class EventMode(str, Enum):
    """Event notifications, tagged with `Mode`."""

    PLAYER_CHAT = "PlayerChatEvent"
    PLAYER_JOIN = "PlayerJoinEvent"
    PLAYER_LEFT = "PlayerLeftEvent"
    PLAYER_HANDOFF = "PlayerHandoffEvent"
    PLAYER_LIST_UPDATE = "PlayerListUpdate"


class Action(str, Enum):
    """Commands, requests and responses, tagged with `action`."""

    # Handshake and keepalive
    AUTH = "auth"
    PING = "ping"
    PONG = "pong"

    # Service -> proxy
    BROADCAST = "broadcast"
    COMMAND = "command"
    PLAYER_LIST = "player_list"
    SERVER_STATUS = "server_status"

    # Proxy -> service
    PLAYER_LIST_RESPONSE = "player_list_response"
    SERVER_STATUS_RESPONSE = "server_status_response"


# Inbound commands may carry an echo of their own; it belongs to the reply
# we send, not to a request we are waiting on.
INBOUND_COMMANDS = frozenset(
    {Action.BROADCAST.value, Action.COMMAND.value, Action.PLAYER_LIST.value, Action.SERVER_STATUS.value}
)

AUTH_OK = "ok"
BROADCAST_ALL = "all"
BROADCAST_SPECIFIC = "specific_servers"
ALL_SERVERS = "all"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


# ============================================================================
# Field helpers
# ============================================================================


def _text(data: Mapping[str, Any], key: str, default: str = "") -> str:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, (str, int, float)) or isinstance(value, bool):
        raise ProtocolError(f"Field '{key}' must be a string", field=key)
    text = str(value)
    return text if text.strip() else default


def _required(data: Mapping[str, Any], key: str) -> str:
    text = _text(data, key)
    if not text:
        raise ProtocolError(f"Missing required field '{key}'", field=key)
    return text


def _text_list(data: Mapping[str, Any], key: str, required: bool = False) -> List[str]:
    value = data.get(key)
    if value is None:
        if required:
            raise ProtocolError(f"Missing required field '{key}'", field=key)
        return []
    if not isinstance(value, list):
        raise ProtocolError(f"Field '{key}' must be a list", field=key)
    return [str(item) for item in value if item is not None]


def _echo(data: Mapping[str, Any]) -> Optional[str]:
    return _text(data, ECHO_KEY) or None


# ============================================================================
# Envelope variants
# ============================================================================


@dataclass
class Envelope:
    """Base class for all envelope variants."""

    def to_dict(self) -> Dict[str, Any]:
        raise NotImplementedError

    def to_json(self) -> str:
        return encode_envelope(self.to_dict())


@dataclass
class ModeEnvelope(Envelope):
    """Base for `Mode`-tagged event notifications."""

    mode: ClassVar[EventMode]


@dataclass
class ActionEnvelope(Envelope):
    """Base for `action`-tagged envelopes."""

    action: ClassVar[Action]


@dataclass
class PlayerChatEvent(ModeEnvelope):
    """A player said something on a backend server."""

    mode: ClassVar[EventMode] = EventMode.PLAYER_CHAT

    player: str
    message: str
    server: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            MODE_KEY: self.mode.value,
            "player": self.player,
            "message": self.message,
            "server": self.server,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerChatEvent":
        return cls(
            player=_required(data, "player"),
            message=_required(data, "message"),
            server=_required(data, "server"),
        )


@dataclass
class PlayerJoinEvent(ModeEnvelope):
    """A player joined the network."""

    mode: ClassVar[EventMode] = EventMode.PLAYER_JOIN

    player: str
    server: str

    def to_dict(self) -> Dict[str, Any]:
        return {MODE_KEY: self.mode.value, "player": self.player, "server": self.server}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerJoinEvent":
        return cls(player=_required(data, "player"), server=_required(data, "server"))


@dataclass
class PlayerLeftEvent(ModeEnvelope):
    """A player left the network."""

    mode: ClassVar[EventMode] = EventMode.PLAYER_LEFT

    player: str

    def to_dict(self) -> Dict[str, Any]:
        return {MODE_KEY: self.mode.value, "player": self.player}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerLeftEvent":
        return cls(player=_required(data, "player"))


@dataclass
class PlayerHandoffEvent(ModeEnvelope):
    """A player moved between backend servers."""

    mode: ClassVar[EventMode] = EventMode.PLAYER_HANDOFF

    player: str
    from_server: str
    to_server: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            MODE_KEY: self.mode.value,
            "player": self.player,
            "fromserver": self.from_server,
            "toserver": self.to_server,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerHandoffEvent":
        return cls(
            player=_required(data, "player"),
            from_server=_required(data, "fromserver"),
            to_server=_required(data, "toserver"),
        )


@dataclass
class PlayerListUpdate(ModeEnvelope):
    """Snapshot of the players on a server, pushed by the service."""

    mode: ClassVar[EventMode] = EventMode.PLAYER_LIST_UPDATE

    server: str
    players: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {MODE_KEY: self.mode.value, "server": self.server, "players": list(self.players)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerListUpdate":
        return cls(
            server=_required(data, "server"),
            players=_text_list(data, "players", required=True),
        )


@dataclass
class AuthRequest(ActionEnvelope):
    """Handshake sent right after the socket opens."""

    action: ClassVar[Action] = Action.AUTH

    token: str
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {ACTION_KEY: self.action.value, "token": self.token, "timestamp": self.timestamp}


@dataclass
class AuthReply(ActionEnvelope):
    """Handshake verdict from the service."""

    action: ClassVar[Action] = Action.AUTH

    status: str = ""

    @property
    def accepted(self) -> bool:
        return self.status == AUTH_OK

    def to_dict(self) -> Dict[str, Any]:
        return {ACTION_KEY: self.action.value, "status": self.status}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AuthReply":
        return cls(status=_text(data, "status"))


@dataclass
class Ping(ActionEnvelope):
    """Keepalive ping."""

    action: ClassVar[Action] = Action.PING

    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {ACTION_KEY: self.action.value, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Ping":
        timestamp = data.get("timestamp")
        return cls(timestamp=timestamp if isinstance(timestamp, int) else 0)


@dataclass
class BroadcastCommand(ActionEnvelope):
    """Deliver a message to all or some backend servers."""

    action: ClassVar[Action] = Action.BROADCAST

    message: str
    target: str = BROADCAST_ALL
    servers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            ACTION_KEY: self.action.value,
            "message": self.message,
            "target": self.target,
            "servers": list(self.servers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BroadcastCommand":
        return cls(
            message=_required(data, "message"),
            target=_text(data, "target", BROADCAST_ALL),
            servers=_text_list(data, "servers"),
        )


@dataclass
class ExecuteCommand(ActionEnvelope):
    """Request to run a proxy command."""

    action: ClassVar[Action] = Action.COMMAND

    command: str
    executor: str = "console"

    def to_dict(self) -> Dict[str, Any]:
        return {ACTION_KEY: self.action.value, "command": self.command, "executor": self.executor}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ExecuteCommand":
        return cls(command=_required(data, "command"), executor=_text(data, "executor", "console"))


@dataclass
class PlayerListRequest(ActionEnvelope):
    """The service asks which players are online."""

    action: ClassVar[Action] = Action.PLAYER_LIST

    server: str = ALL_SERVERS
    echo: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {ACTION_KEY: self.action.value, "server": self.server}
        if self.echo:
            data[ECHO_KEY] = self.echo
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PlayerListRequest":
        return cls(server=_text(data, "server", ALL_SERVERS), echo=_echo(data))


@dataclass
class ServerStatusRequest(ActionEnvelope):
    """The service asks for per-server status."""

    action: ClassVar[Action] = Action.SERVER_STATUS

    echo: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {ACTION_KEY: self.action.value}
        if self.echo:
            data[ECHO_KEY] = self.echo
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ServerStatusRequest":
        return cls(echo=_echo(data))


@dataclass
class PlayerListResponse(ActionEnvelope):
    """Reply to a player_list request."""

    action: ClassVar[Action] = Action.PLAYER_LIST_RESPONSE

    server: str
    players: List[str]
    echo: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            ACTION_KEY: self.action.value,
            "server": self.server,
            "players": list(self.players),
            "count": len(self.players),
            ECHO_KEY: self.echo,
        }


@dataclass
class ServerStatusResponse(ActionEnvelope):
    """Reply to a server_status request."""

    action: ClassVar[Action] = Action.SERVER_STATUS_RESPONSE

    status: Dict[str, Any]
    echo: str

    def to_dict(self) -> Dict[str, Any]:
        return {ACTION_KEY: self.action.value, "status": self.status, ECHO_KEY: self.echo}


@dataclass
class ActionRequest(Envelope):
    """Outbound request to the service, answered with the same echo."""

    action: str
    params: Dict[str, Any] = field(default_factory=dict)
    echo: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {ACTION_KEY: self.action, "params": dict(self.params)}
        if self.echo:
            data[ECHO_KEY] = self.echo
        return data


InboundEnvelope = Union[
    PlayerChatEvent,
    PlayerJoinEvent,
    PlayerLeftEvent,
    PlayerHandoffEvent,
    PlayerListUpdate,
    AuthReply,
    Ping,
    BroadcastCommand,
    ExecuteCommand,
    PlayerListRequest,
    ServerStatusRequest,
]

MODE_TYPES: Dict[str, Type[ModeEnvelope]] = {
    EventMode.PLAYER_CHAT.value: PlayerChatEvent,
    EventMode.PLAYER_JOIN.value: PlayerJoinEvent,
    EventMode.PLAYER_LEFT.value: PlayerLeftEvent,
    EventMode.PLAYER_HANDOFF.value: PlayerHandoffEvent,
    EventMode.PLAYER_LIST_UPDATE.value: PlayerListUpdate,
}

ACTION_TYPES: Dict[str, Type[ActionEnvelope]] = {
    Action.AUTH.value: AuthReply,
    Action.PING.value: Ping,
    Action.BROADCAST.value: BroadcastCommand,
    Action.COMMAND.value: ExecuteCommand,
    Action.PLAYER_LIST.value: PlayerListRequest,
    Action.SERVER_STATUS.value: ServerStatusRequest,
}


# ============================================================================
# Encoding and decoding
# ============================================================================


def encode_envelope(data: Union[Mapping[str, Any], Envelope]) -> str:
    """Serialize an envelope to a single-line JSON string."""
    if isinstance(data, Envelope):
        data = data.to_dict()
    return json.dumps(data, ensure_ascii=False)


def parse_envelope(raw: Union[str, bytes]) -> Dict[str, Any]:
    """Parse a raw frame into a JSON object."""
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def envelope_tag(data: Mapping[str, Any]) -> str:
    """Return the `Mode` tag if present, else the `action` tag, else ''."""
    mode = data.get(MODE_KEY)
    if isinstance(mode, str) and mode.strip():
        return mode
    action = data.get(ACTION_KEY)
    if isinstance(action, str) and action.strip():
        return action
    return ""


def decode_envelope(data: Mapping[str, Any]) -> InboundEnvelope:
    """
    Decode a parsed JSON object into its typed variant.

    A non-empty `Mode` wins over `action`. Raises ProtocolError for unknown
    tags, missing tags and missing required fields.
    """
    mode = data.get(MODE_KEY)
    if isinstance(mode, str) and mode.strip():
        mode_type = MODE_TYPES.get(mode)
        if mode_type is None:
            raise ProtocolError(f"Unknown Mode: {mode}", field=MODE_KEY)
        return mode_type.from_dict(data)  # type: ignore[attr-defined]

    action = data.get(ACTION_KEY)
    if isinstance(action, str) and action.strip():
        action_type = ACTION_TYPES.get(action)
        if action_type is None:
            raise ProtocolError(f"Unknown action: {action}", field=ACTION_KEY)
        return action_type.from_dict(data)  # type: ignore[attr-defined]

    raise ProtocolError("Unknown message format: no Mode or action")


# ============================================================================
# Outbound builders
# ============================================================================


def create_chat_event(player: str, message: str, server: str) -> Dict[str, Any]:
    return PlayerChatEvent(player=player, message=message, server=server).to_dict()


def create_join_event(player: str, server: str) -> Dict[str, Any]:
    return PlayerJoinEvent(player=player, server=server).to_dict()


def create_left_event(player: str) -> Dict[str, Any]:
    return PlayerLeftEvent(player=player).to_dict()


def create_handoff_event(player: str, from_server: str, to_server: str) -> Dict[str, Any]:
    return PlayerHandoffEvent(player=player, from_server=from_server, to_server=to_server).to_dict()


def create_request(
    action: str, params: Optional[Dict[str, Any]] = None, echo: Optional[str] = None
) -> Dict[str, Any]:
    return ActionRequest(action=action, params=params or {}, echo=echo).to_dict()
