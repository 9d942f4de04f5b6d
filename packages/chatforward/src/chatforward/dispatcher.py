"""
Protocol Dispatcher

Routes decoded inbound envelopes to their handlers. Event notifications
become chat lines delivered through the proxy; requests from the service
are answered through the reply callable.

Nothing here raises to the caller: malformed envelopes are logged and
dropped at the decode boundary.
"""

import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .config import ChatConfig
from .connection import SendResult
from .errors import ProtocolError
from .host import ProxyHost
from .protocol import (
    ALL_SERVERS,
    BROADCAST_ALL,
    BROADCAST_SPECIFIC,
    AuthReply,
    BroadcastCommand,
    ExecuteCommand,
    InboundEnvelope,
    Ping,
    PlayerChatEvent,
    PlayerHandoffEvent,
    PlayerJoinEvent,
    PlayerLeftEvent,
    PlayerListRequest,
    PlayerListResponse,
    PlayerListUpdate,
    ServerStatusRequest,
    ServerStatusResponse,
    decode_envelope,
    envelope_tag,
    now_ms,
    parse_envelope,
)

logger = logging.getLogger(__name__)

ReplySink = Callable[[Dict[str, Any]], SendResult]


class ProtocolDispatcher:
    """
    Interprets envelopes from the orchestration service.

    Handler table, keyed by envelope type:
    - PlayerChatEvent / PlayerJoinEvent: notice to the originating server
    - PlayerLeftEvent: notice to every configured server
    - PlayerHandoffEvent: notice to origin and destination
    - PlayerListUpdate: recorded in player_lists
    - broadcast: message to all or the listed configured servers
    - command: logged only
    - player_list / server_status: answered when they carry an echo
    """

    def __init__(self, chat: ChatConfig, host: ProxyHost, reply: ReplySink):
        self._chat = chat
        self._host = host
        self._reply = reply
        self._player_lists: Dict[str, List[str]] = {}

        self._handlers: Dict[type, Callable[[Any], None]] = {
            PlayerChatEvent: self._handle_chat,
            PlayerJoinEvent: self._handle_join,
            PlayerLeftEvent: self._handle_left,
            PlayerHandoffEvent: self._handle_handoff,
            PlayerListUpdate: self._handle_player_list_update,
            BroadcastCommand: self._handle_broadcast,
            ExecuteCommand: self._handle_command,
            PlayerListRequest: self._handle_player_list_request,
            ServerStatusRequest: self._handle_server_status_request,
            AuthReply: self._handle_auth,
            Ping: self._handle_ping,
        }

    @property
    def player_lists(self) -> Dict[str, List[str]]:
        """Latest player list pushed by the service, per server."""
        return {server: list(players) for server, players in self._player_lists.items()}

    def update_chat_config(self, chat: ChatConfig) -> None:
        self._chat = chat

    def set_reply_sink(self, reply: ReplySink) -> None:
        self._reply = reply

    def dispatch(self, data: Union[str, Mapping[str, Any]]) -> Optional[InboundEnvelope]:
        """
        Decode and handle one inbound envelope.

        Returns the decoded envelope, or None if it was dropped.
        """
        try:
            if isinstance(data, str):
                data = parse_envelope(data)
            envelope = decode_envelope(data)
        except ProtocolError as e:
            tag = envelope_tag(data) if isinstance(data, Mapping) else ""
            logger.warning(f"Dropping message{f' ({tag})' if tag else ''}: {e}")
            return None

        handler = self._handlers.get(type(envelope))
        if handler is None:
            logger.warning(f"No handler for {type(envelope).__name__}")
            return None

        try:
            handler(envelope)
        except Exception:
            logger.exception(f"Error handling {type(envelope).__name__}")
        return envelope

    # =========================================================================
    # Event notifications
    # =========================================================================

    def format_chat(self, event: PlayerChatEvent) -> str:
        prefix = self._chat.server_prefix(event.server)
        return f"{self._chat.main_prefix} [{prefix}] {event.player}: {event.message}"

    def _handle_chat(self, event: PlayerChatEvent) -> None:
        self._deliver(self.format_chat(event), [event.server])
        logger.info(f"Forwarded chat: {event.player}@{event.server}: {event.message}")

    def _handle_join(self, event: PlayerJoinEvent) -> None:
        prefix = self._chat.server_prefix(event.server)
        text = f"{self._chat.main_prefix} {event.player} joined {prefix}"
        self._deliver(text, [event.server])
        logger.info(f"Player joined: {event.player} -> {event.server}")

    def _handle_left(self, event: PlayerLeftEvent) -> None:
        text = f"{self._chat.main_prefix} {event.player} left the network"
        self._deliver(text, self._chat.servers)
        logger.info(f"Player left: {event.player}")

    def _handle_handoff(self, event: PlayerHandoffEvent) -> None:
        from_prefix = self._chat.server_prefix(event.from_server)
        to_prefix = self._chat.server_prefix(event.to_server)
        text = f"{self._chat.main_prefix} {event.player} moved from {from_prefix} to {to_prefix}"
        self._deliver(text, [event.from_server, event.to_server])
        logger.info(f"Player moved: {event.player} {event.from_server} -> {event.to_server}")

    def _handle_player_list_update(self, event: PlayerListUpdate) -> None:
        self._player_lists[event.server] = list(event.players)
        logger.debug(f"Player list update: {event.server} ({len(event.players)} players)")

    # =========================================================================
    # Commands and requests
    # =========================================================================

    def _handle_broadcast(self, command: BroadcastCommand) -> None:
        if command.target == BROADCAST_ALL:
            targets = self._chat.servers
        elif command.target == BROADCAST_SPECIFIC:
            configured = set(self._chat.servers)
            targets = [server for server in command.servers if server in configured]
            ignored = [server for server in command.servers if server not in configured]
            if ignored:
                logger.debug(f"Broadcast ignoring unconfigured servers: {ignored}")
        else:
            logger.warning(f"Unknown broadcast target: {command.target}")
            return

        self._deliver(command.message, targets)
        logger.info(f"Broadcast: {command.message} (target: {command.target})")

    def _handle_command(self, command: ExecuteCommand) -> None:
        # TODO: run the command through the host once it exposes a command capability
        logger.info(f"Command request received: {command.command} (executor: {command.executor})")

    def _handle_player_list_request(self, request: PlayerListRequest) -> None:
        if not request.echo:
            logger.warning(f"player_list request without echo, not answering (server={request.server})")
            return

        players = self._players(None if request.server == ALL_SERVERS else request.server)
        response = PlayerListResponse(server=request.server, players=players, echo=request.echo)
        self._send_reply(response.to_dict())
        logger.debug(f"Answered player_list: {request.server} ({len(players)} players)")

    def _handle_server_status_request(self, request: ServerStatusRequest) -> None:
        if not request.echo:
            logger.warning("server_status request without echo, not answering")
            return

        response = ServerStatusResponse(status=self.server_status(), echo=request.echo)
        self._send_reply(response.to_dict())
        logger.debug("Answered server_status")

    def _handle_auth(self, reply: AuthReply) -> None:
        logger.info(f"Authentication reply outside handshake: status={reply.status}")

    def _handle_ping(self, ping: Ping) -> None:
        logger.debug("Ping received")

    def server_status(self) -> Dict[str, Any]:
        """Per-server status for every configured server, plus totals."""
        servers: Dict[str, Dict[str, Any]] = {}
        for name in self._chat.servers:
            players = self._safe_list_players(name)
            servers[name] = {
                "online": players is not None,
                "player_count": len(players or []),
                "players": players or [],
            }

        everyone = self._safe_list_players(None)
        return {
            "servers": servers,
            "total_players": len(everyone or []),
            "online": True,
            "timestamp": now_ms(),
        }

    # =========================================================================
    # Host access
    # =========================================================================

    def _players(self, server: Optional[str]) -> List[str]:
        return self._safe_list_players(server) or []

    def _safe_list_players(self, server: Optional[str]) -> Optional[List[str]]:
        try:
            players = self._host.list_players(server)
        except Exception as e:
            logger.error(f"Failed to list players for {server or 'all'}: {e}")
            return None
        return list(players) if players is not None else None

    def _deliver(self, text: str, servers: List[str]) -> None:
        for server in servers:
            try:
                if not self._host.send_to_server(server, text):
                    logger.debug(f"Server not found: {server}")
            except Exception as e:
                logger.error(f"Failed to deliver to {server}: {e}")

    def _send_reply(self, data: Dict[str, Any]) -> None:
        result = self._reply(data)
        if result not in (SendResult.SENT, SendResult.QUEUED):
            logger.warning(f"Reply {data.get('action')} not sent: {result.value}")
