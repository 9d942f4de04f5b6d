"""
Forward Service

Public surface of the gateway. Composes the connection manager, the
protocol dispatcher and the correlation store, and exposes:
- connection lifecycle (connect, disconnect, reconnect, shutdown)
- fire-and-forget player events
- request/response calls correlated by echo id
"""

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional, Union

from .config import ForwardConfig
from .connection import ConnectionManager, ConnectionState, ConnectionStatus, SendResult
from .constants import DEFAULT_REQUEST_TIMEOUT_S, SWEEP_INTERVAL_S, SWEEP_MAX_AGE_S
from .correlation import CorrelationStore, RequestResult, RequestStatus
from .dispatcher import ProtocolDispatcher
from .errors import ProtocolError
from .host import ProxyHost, ServerRef, server_name
from .protocol import (
    MODE_TYPES,
    EventMode,
    PlayerChatEvent,
    create_chat_event,
    create_handoff_event,
    create_join_event,
    create_left_event,
    create_request,
    encode_envelope,
)
from .transport import SocketFactory, websocket_factory

logger = logging.getLogger(__name__)


class ForwardService:
    """
    Event-forwarding gateway between the proxy and the orchestration service.

    One instance per proxy. Lifecycle methods must be called on the event
    loop; send_event() may be called from any thread, and request_blocking()
    from any thread except the loop's own.
    """

    def __init__(
        self,
        config: ForwardConfig,
        host: ProxyHost,
        socket_factory: Optional[SocketFactory] = None,
        sweep_interval: float = SWEEP_INTERVAL_S,
        sweep_max_age: float = SWEEP_MAX_AGE_S,
    ):
        self._config = config
        self._host = host
        self._socket_factory = socket_factory
        self._sweep_interval = sweep_interval
        self._sweep_max_age = sweep_max_age

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._sweeper: Optional[asyncio.Task] = None

        self._store = CorrelationStore()
        self._connection = self._create_connection(config)
        self._dispatcher = ProtocolDispatcher(config.chat, host, self._connection.send)
        self._connection.set_envelope_handler(self._dispatcher.dispatch)

    def _create_connection(self, config: ForwardConfig) -> ConnectionManager:
        factory = self._socket_factory or websocket_factory(config.websocket.url)
        return ConnectionManager(
            config.websocket,
            factory,
            on_response=self._store.complete,
        )

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> ForwardConfig:
        return self._config

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def dispatcher(self) -> ProtocolDispatcher:
        return self._dispatcher

    @property
    def correlations(self) -> CorrelationStore:
        return self._store

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> bool:
        """Start connecting. Must be called on the event loop."""
        self._loop = asyncio.get_running_loop()
        self._start_sweeper()
        return self._connection.connect()

    def disconnect(self) -> None:
        self._connection.disconnect()

    def reconnect(self) -> bool:
        self._loop = asyncio.get_running_loop()
        self._start_sweeper()
        return self._connection.reconnect()

    def is_connected(self) -> bool:
        return self._connection.is_connected

    def status(self) -> ConnectionStatus:
        return self._connection.status()

    async def shutdown(self) -> None:
        """Disconnect, cancel every pending request and stop the sweeper."""
        logger.info("Shutting down forward service")
        self._connection.disconnect()
        self._store.cancel_all()

        sweeper = self._sweeper
        self._sweeper = None
        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass

    def reload(self, config: ForwardConfig) -> None:
        """
        Apply a new configuration.

        Chat settings take effect immediately. A changed websocket section
        replaces the connection, reconnecting if one was active.
        """
        self._dispatcher.update_chat_config(config.chat)
        websocket_changed = config.websocket != self._config.websocket
        self._config = config
        if not websocket_changed:
            logger.info("Reloaded chat configuration")
            return

        was_active = self._connection.state != ConnectionState.DISCONNECTED
        self._connection.disconnect()
        self._connection = self._create_connection(config)
        self._dispatcher.set_reply_sink(self._connection.send)
        self._connection.set_envelope_handler(self._dispatcher.dispatch)
        logger.info(f"Reloaded configuration, upstream is now {config.websocket.url}")

        if was_active:
            self._connection.connect()

    # =========================================================================
    # Events
    # =========================================================================

    def send_event(self, kind: Union[EventMode, str], **fields: Any) -> SendResult:
        """
        Forward a player event.

        `kind` is an EventMode or its wire name; `fields` are the event's
        fields (server arguments may be names or BackendServer handles).
        """
        mode = kind.value if isinstance(kind, EventMode) else kind
        event_type = MODE_TYPES.get(mode)
        if event_type is None:
            raise ProtocolError(f"Unknown event kind: {mode}")

        fields = {
            key: server_name(value) if key.endswith("server") else value
            for key, value in fields.items()
        }
        event = event_type(**fields)

        if isinstance(event, PlayerChatEvent) and self._config.chat.is_command(event.message):
            logger.debug(f"Not forwarding command chat from {event.player}")
            return SendResult.SKIPPED

        return self._connection.send(event.to_dict())

    def send_player_chat_event(self, player: str, message: str, server: ServerRef) -> SendResult:
        if self._config.chat.is_command(message):
            logger.debug(f"Not forwarding command chat from {player}")
            return SendResult.SKIPPED
        return self._connection.send(create_chat_event(player, message, server_name(server)))

    def send_player_join_event(self, player: str, server: ServerRef) -> SendResult:
        return self._connection.send(create_join_event(player, server_name(server)))

    def send_player_left_event(self, player: str) -> SendResult:
        return self._connection.send(create_left_event(player))

    def send_player_handoff_event(
        self, player: str, from_server: ServerRef, to_server: ServerRef
    ) -> SendResult:
        return self._connection.send(
            create_handoff_event(player, server_name(from_server), server_name(to_server))
        )

    # =========================================================================
    # Requests
    # =========================================================================

    async def send_request(
        self,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> RequestResult:
        """
        Send a request and wait up to `timeout` seconds for its response.

        Failures come back as a RequestResult status, never as exceptions.
        """
        if not self._connection.is_connected:
            logger.warning(f"Cannot send {action} request: not connected")
            return RequestResult(request_id=None, status=RequestStatus.NOT_CONNECTED)

        request_id = uuid.uuid4().hex
        try:
            text = encode_envelope(create_request(action, params, echo=request_id))
        except (TypeError, ValueError) as e:
            logger.error(f"Cannot encode {action} request: {e}")
            return RequestResult(request_id=None, status=RequestStatus.FAILED)

        self._store.register(request_id)

        result = self._connection.send(text)
        if result != SendResult.SENT:
            self._store.discard(request_id)
            status = (
                RequestStatus.NOT_CONNECTED
                if result == SendResult.QUEUED
                else RequestStatus.FAILED
            )
            logger.warning(f"Request {action} not sent ({result.value}): request_id={request_id}")
            return RequestResult(request_id=request_id, status=status)

        logger.debug(f"Sent {action} request: request_id={request_id}")
        return await self._store.wait(request_id, timeout)

    def request_blocking(
        self,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
    ) -> RequestResult:
        """
        send_request() for callers on other threads.

        Blocks the calling thread only. Raises RuntimeError when called on
        the event loop thread or before connect().
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            raise RuntimeError("Service has no running event loop; call connect() first")

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            raise RuntimeError("request_blocking() would block the event loop; await send_request()")

        future = asyncio.run_coroutine_threadsafe(self.send_request(action, params, timeout), loop)
        return future.result()

    # =========================================================================
    # Sweeper
    # =========================================================================

    def _start_sweeper(self) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self._store.sweep(self._sweep_max_age)
            except Exception:
                logger.exception("Correlation sweep failed")
