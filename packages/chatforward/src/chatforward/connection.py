"""
Connection Management

Owns the single upstream socket: handshake, heartbeat, reconnection with
backoff, and the outbound queue used while the link is down.

State machine:

    DISCONNECTED ──connect()──▶ CONNECTING ──open──▶ AUTHENTICATING
         ▲                          │                     │ auth ok
         │                          │ close               ▼
         └──────── CLOSING ◀────────┴────────────────  CONNECTED

Every transition is checked against TRANSITIONS. Callbacks from a socket
that has since been abandoned are ignored, so a late close from an old
connection cannot disturb a new one.

Lifecycle methods (connect, disconnect, reconnect) run on the event loop.
send() may be called from any thread.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Mapping, Optional, Union

from .config import OverflowPolicy, WebSocketConfig
from .constants import (
    AUTH_FAILED_CLOSE_CODE,
    HEARTBEAT_TIMEOUT_CLOSE_CODE,
    NORMAL_CLOSE_CODE,
)
from .errors import (
    AuthenticationError,
    ForwardError,
    GatewayConnectionError,
    ProtocolError,
    ReconnectExhaustedError,
)
from .protocol import (
    ACTION_KEY,
    ECHO_KEY,
    INBOUND_COMMANDS,
    Action,
    AuthReply,
    AuthRequest,
    Envelope,
    Ping,
    encode_envelope,
    parse_envelope,
)
from .transport import Socket, SocketFactory

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Upstream connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"  # Socket opening
    AUTHENTICATING = "authenticating"  # Open, waiting for auth reply
    CONNECTED = "connected"  # Authenticated, application traffic flows
    CLOSING = "closing"


TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.AUTHENTICATING, ConnectionState.CLOSING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.AUTHENTICATING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.CLOSING, ConnectionState.DISCONNECTED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.CLOSING, ConnectionState.DISCONNECTED}),
    ConnectionState.CLOSING: frozenset({ConnectionState.DISCONNECTED}),
}


class SendResult(str, Enum):
    """What happened to an outbound envelope."""

    SENT = "sent"
    QUEUED = "queued"
    DROPPED = "dropped"  # Queue full, dropped by overflow policy
    REJECTED = "rejected"  # Queue full, rejected by overflow policy
    FAILED = "failed"  # Transmission error; never retried
    SKIPPED = "skipped"  # Not forwarded by choice (e.g. command chat)


@dataclass
class ReconnectState:
    """Reconnect bookkeeping for the current failure episode."""

    max_attempts: int
    base_interval_ms: int
    attempt: int = 0
    exhausted: bool = False

    def reset(self) -> None:
        self.attempt = 0
        self.exhausted = False


@dataclass
class HeartbeatState:
    """Ping/pong timestamps in milliseconds on the manager's clock."""

    interval_ms: int
    timeout_ms: int
    last_sent_at: float = 0.0
    last_ack_at: float = 0.0

    def reset(self, now: float) -> None:
        self.last_sent_at = now
        self.last_ack_at = now

    @property
    def check_period_ms(self) -> int:
        return max(1, min(self.interval_ms, self.timeout_ms) // 2)


class OutboundQueue:
    """
    FIFO of serialized envelopes waiting for an authenticated link.

    Bounded; when full the overflow policy decides what gives. Not
    synchronized on its own, the connection manager's lock guards it.
    """

    def __init__(self, max_size: int, overflow: OverflowPolicy = OverflowPolicy.DROP_OLDEST):
        self.max_size = max_size
        self.overflow = overflow
        self.dropped = 0
        self._items: Deque[str] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def push(self, text: str) -> SendResult:
        if len(self._items) < self.max_size:
            self._items.append(text)
            return SendResult.QUEUED

        self.dropped += 1
        if self.overflow == OverflowPolicy.DROP_OLDEST:
            self._items.popleft()
            self._items.append(text)
            logger.warning(f"Outbound queue full ({self.max_size}), dropped oldest message")
            return SendResult.QUEUED
        if self.overflow == OverflowPolicy.DROP_NEWEST:
            logger.warning(f"Outbound queue full ({self.max_size}), dropped new message")
            return SendResult.DROPPED
        logger.error(f"Outbound queue full ({self.max_size}), message rejected")
        return SendResult.REJECTED

    def drain(self) -> List[str]:
        items = list(self._items)
        self._items.clear()
        return items

    def clear(self) -> int:
        count = len(self._items)
        self._items.clear()
        return count


@dataclass
class ConnectionStatus:
    """Point-in-time view of the connection, for status queries and tests."""

    state: ConnectionState
    url: str
    reconnect_attempt: int
    max_reconnect_attempts: int
    reconnect_pending: bool
    reconnect_exhausted: bool
    queue_size: int
    dropped_messages: int
    last_error: Optional[ForwardError] = None

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "url": self.url,
            "reconnect_attempt": self.reconnect_attempt,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "reconnect_pending": self.reconnect_pending,
            "reconnect_exhausted": self.reconnect_exhausted,
            "queue_size": self.queue_size,
            "dropped_messages": self.dropped_messages,
            "last_error": self.last_error.message if self.last_error else None,
        }


EnvelopeHandler = Callable[[Dict[str, Any]], None]
ResponseHandler = Callable[[str, Dict[str, Any]], bool]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class _SocketEvents:
    """Listener handed to one socket; tags its callbacks with that socket's generation."""

    def __init__(self, manager: "ConnectionManager", generation: int):
        self._manager = manager
        self._generation = generation

    def on_open(self) -> None:
        self._invoke("open", self._manager._handle_open)

    def on_message(self, raw: str) -> None:
        self._invoke("message", self._manager._handle_message, raw)

    def on_close(self, code: int, reason: str, remote: bool) -> None:
        self._invoke("close", self._manager._handle_close, code, reason, remote)

    def on_error(self, error: BaseException) -> None:
        self._invoke("error", self._manager._handle_error, error)

    def _invoke(self, name: str, handler: Callable, *args) -> None:
        try:
            handler(self._generation, *args)
        except Exception:
            logger.exception(f"Error handling socket {name} event")


class ConnectionManager:
    """
    Upstream connection with authentication, heartbeat and reconnect.

    Inbound traffic is split three ways once authenticated:
    - pong frames update the heartbeat and stop here
    - frames echoing one of our requests go to the response handler
    - everything else goes to the envelope handler
    """

    def __init__(
        self,
        config: WebSocketConfig,
        socket_factory: SocketFactory,
        on_envelope: Optional[EnvelopeHandler] = None,
        on_response: Optional[ResponseHandler] = None,
        clock: Callable[[], float] = _monotonic_ms,
    ):
        self._config = config
        self._socket_factory = socket_factory
        self._on_envelope = on_envelope
        self._on_response = on_response
        self._clock = clock

        self._lock = threading.RLock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = ConnectionState.DISCONNECTED
        self._socket: Optional[Socket] = None
        self._generation = 0
        self._last_error: Optional[ForwardError] = None

        self._reconnect = ReconnectState(
            max_attempts=config.max_reconnect_attempts,
            base_interval_ms=config.reconnect_interval_ms,
        )
        self._heartbeat = HeartbeatState(
            interval_ms=config.heartbeat_interval_ms,
            timeout_ms=config.heartbeat_timeout_ms,
        )
        self._queue = OutboundQueue(config.max_queue_size, config.queue_overflow)

        self._heartbeat_timer: Optional[asyncio.TimerHandle] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._auth_timer: Optional[asyncio.TimerHandle] = None

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    @property
    def heartbeat_state(self) -> HeartbeatState:
        return self._heartbeat

    @property
    def queue_size(self) -> int:
        with self._lock:
            return len(self._queue)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def set_envelope_handler(self, handler: Optional[EnvelopeHandler]) -> None:
        self._on_envelope = handler

    def set_response_handler(self, handler: Optional[ResponseHandler]) -> None:
        self._on_response = handler

    def status(self) -> ConnectionStatus:
        with self._lock:
            return ConnectionStatus(
                state=self._state,
                url=self._config.url,
                reconnect_attempt=self._reconnect.attempt,
                max_reconnect_attempts=self._reconnect.max_attempts,
                reconnect_pending=self._reconnect_timer is not None,
                reconnect_exhausted=self._reconnect.exhausted,
                queue_size=len(self._queue),
                dropped_messages=self._queue.dropped,
                last_error=self._last_error,
            )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def connect(self) -> bool:
        """
        Start opening the upstream socket.

        Returns as soon as the attempt is under way; the outcome arrives via
        socket callbacks. Returns False if a connection already exists or
        the socket could not even be created (a reconnect is then scheduled).
        """
        with self._lock:
            if self._state != ConnectionState.DISCONNECTED:
                logger.warning(f"Connection already in progress (state={self._state.value})")
                return False

            self._loop = asyncio.get_running_loop()
            self._generation += 1
            self._transition(ConnectionState.CONNECTING)
            logger.info(f"Connecting to {self._config.url}")

            try:
                self._socket = self._socket_factory(_SocketEvents(self, self._generation))
                self._socket.open()
            except Exception as e:
                logger.error(f"Failed to open connection to {self._config.url}: {e}")
                self._last_error = GatewayConnectionError(
                    f"Failed to open connection: {e}", original_error=e
                )
                self._socket = None
                self._generation += 1
                self._transition(ConnectionState.DISCONNECTED)
                self.schedule_reconnect()
                return False

        return True

    def disconnect(self) -> None:
        """Close the connection locally. No reconnect follows."""
        with self._lock:
            self._cancel_reconnect_timer()
            if self._state == ConnectionState.DISCONNECTED:
                return
            logger.info("Disconnecting from upstream service")
            self._abandon_socket(NORMAL_CLOSE_CODE, "Client disconnect")

    def reconnect(self) -> bool:
        """Manually start a fresh connection episode."""
        logger.info("Manual reconnect requested")
        with self._lock:
            self._cancel_reconnect_timer()
            if self._state != ConnectionState.DISCONNECTED:
                self._abandon_socket(NORMAL_CLOSE_CODE, "Reconnecting")
            self._reconnect.reset()
            return self.connect()

    def schedule_reconnect(self) -> bool:
        """
        Arm the reconnect timer for the next attempt of this episode.

        No-op if a reconnect is already pending or the attempts are used up.
        """
        with self._lock:
            if self._reconnect_timer is not None:
                logger.debug("Reconnect already pending")
                return False

            reconnect = self._reconnect
            if reconnect.attempt >= reconnect.max_attempts:
                if not reconnect.exhausted:
                    reconnect.exhausted = True
                    self._last_error = ReconnectExhaustedError(reconnect.attempt)
                    logger.warning(
                        f"Reached maximum reconnect attempts ({reconnect.max_attempts}), giving up"
                    )
                return False

            reconnect.attempt += 1
            delay_ms = self._config.reconnect_delay_ms(reconnect.attempt)
            logger.info(
                f"Reconnecting in {delay_ms}ms "
                f"(attempt {reconnect.attempt}/{reconnect.max_attempts})"
            )

            loop = self._loop or asyncio.get_running_loop()
            self._reconnect_timer = loop.call_later(delay_ms / 1000, self._fire_reconnect)
            return True

    def _fire_reconnect(self) -> None:
        try:
            with self._lock:
                self._reconnect_timer = None
                if self._state != ConnectionState.DISCONNECTED:
                    logger.debug(f"Skipping reconnect, state={self._state.value}")
                    return
                logger.info("Attempting to reconnect...")
                self.connect()
        except Exception:
            logger.exception("Reconnect attempt failed")

    # =========================================================================
    # Sending
    # =========================================================================

    def send(self, envelope: Union[str, Mapping[str, Any], Envelope]) -> SendResult:
        """
        Transmit an envelope, or queue it until the link is authenticated.

        Never blocks on network I/O. Failed transmissions are not retried.
        """
        text = envelope if isinstance(envelope, str) else encode_envelope(envelope)

        with self._lock:
            if self._state == ConnectionState.CONNECTED and self._socket is not None:
                try:
                    self._socket.send(text)
                    return SendResult.SENT
                except Exception as e:
                    logger.error(f"Failed to send message: {e}")
                    return SendResult.FAILED

            result = self._queue.push(text)

        if result == SendResult.QUEUED:
            logger.debug(f"Not connected, queued message: {text[:50]}...")
        return result

    def clear_queue(self) -> int:
        with self._lock:
            return self._queue.clear()

    # =========================================================================
    # Socket callbacks
    # =========================================================================

    def _handle_open(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            if self._state != ConnectionState.CONNECTING:
                logger.warning(f"Unexpected open in state {self._state.value}")
                return

            self._reconnect.reset()
            self._cancel_reconnect_timer()
            self._heartbeat.reset(self._clock())
            self._transition(ConnectionState.AUTHENTICATING)
            logger.info(f"Connection established: {self._config.url}")

            try:
                self._socket.send(AuthRequest(token=self._config.token).to_json())
                logger.info("Sent authentication request")
            except Exception as e:
                logger.error(f"Failed to send authentication: {e}")

            self._arm_auth_timer()

    def _handle_message(self, generation: int, raw: str) -> None:
        try:
            data = parse_envelope(raw)
        except ProtocolError as e:
            logger.warning(f"Dropping malformed message: {e}")
            return

        with self._lock:
            if generation != self._generation:
                return
            state = self._state

        if state == ConnectionState.AUTHENTICATING:
            self._handle_auth_message(generation, data)
            return

        if state != ConnectionState.CONNECTED:
            logger.debug(f"Ignoring message in state {state.value}")
            return

        action = data.get(ACTION_KEY)
        if action == Action.PONG.value:
            with self._lock:
                self._heartbeat.last_ack_at = self._clock()
            logger.debug("Received pong")
            return

        echo = data.get(ECHO_KEY)
        if isinstance(echo, str) and echo and action not in INBOUND_COMMANDS:
            if self._on_response is not None:
                self._on_response(echo, data)
            else:
                logger.warning(f"No response handler for echo={echo}")
            return

        if self._on_envelope is not None:
            self._on_envelope(data)
        else:
            logger.debug("No envelope handler, message dropped")

    def _handle_auth_message(self, generation: int, data: Dict[str, Any]) -> None:
        if data.get(ACTION_KEY) != Action.AUTH.value:
            logger.debug("Ignoring message received before authentication")
            return

        try:
            reply = AuthReply.from_dict(data)
        except ProtocolError as e:
            reply = AuthReply(status="")
            logger.warning(f"Malformed authentication reply: {e}")

        if reply.accepted:
            self._complete_authentication(generation)
        else:
            self._fail_authentication(
                generation,
                AuthenticationError(
                    f"Authentication rejected (status={reply.status or 'none'})",
                    status=reply.status,
                ),
            )

    def _complete_authentication(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._state != ConnectionState.AUTHENTICATING:
                return
            self._cancel_auth_timer()
            # Queued messages go out before the state flips, so nothing sent
            # after this point can overtake them.
            flushed = self._flush_queue()
            self._transition(ConnectionState.CONNECTED)
            self._last_error = None
            self._start_heartbeat()

        logger.info("Authenticated with upstream service")
        if flushed:
            logger.info(f"Sent {flushed} queued messages")

    def _fail_authentication(self, generation: int, error: AuthenticationError) -> None:
        with self._lock:
            if generation != self._generation or self._state != ConnectionState.AUTHENTICATING:
                return
            self._last_error = error
            logger.error(f"{error.message}, closing connection")
            self._abandon_socket(AUTH_FAILED_CLOSE_CODE, "Authentication failed")

    def _handle_close(self, generation: int, code: int, reason: str, remote: bool) -> None:
        with self._lock:
            if generation != self._generation:
                return

            logger.warning(f"Connection closed: code={code}, reason={reason}, remote={remote}")
            self._stop_timers()
            self._socket = None
            if self._state != ConnectionState.DISCONNECTED:
                self._transition(ConnectionState.DISCONNECTED)

            if code != NORMAL_CLOSE_CODE and remote:
                self._last_error = GatewayConnectionError(
                    f"Connection lost (code={code}, reason={reason})", code=code
                )
                self.schedule_reconnect()

    def _handle_error(self, generation: int, error: BaseException) -> None:
        # Recovery happens in the close handler
        logger.error(f"WebSocket error: {error}")

    # =========================================================================
    # Heartbeat
    # =========================================================================

    def check_heartbeat(self, now: Optional[float] = None) -> None:
        """
        One heartbeat check.

        A link with no pong for longer than the timeout is closed and a
        single reconnect scheduled; otherwise a ping goes out once the
        interval has passed.
        """
        with self._lock:
            if self._state != ConnectionState.CONNECTED or self._socket is None:
                return

            now = self._clock() if now is None else now
            heartbeat = self._heartbeat
            since_ack = now - heartbeat.last_ack_at

            if since_ack > heartbeat.timeout_ms:
                logger.warning(
                    f"Heartbeat timed out ({since_ack:.0f}ms > {heartbeat.timeout_ms}ms), reconnecting"
                )
                self._last_error = GatewayConnectionError(
                    "Heartbeat timed out", code=HEARTBEAT_TIMEOUT_CLOSE_CODE
                )
                self._abandon_socket(HEARTBEAT_TIMEOUT_CLOSE_CODE, "Heartbeat timeout")
                self.schedule_reconnect()
                return

            if now - heartbeat.last_sent_at > heartbeat.interval_ms:
                try:
                    self._socket.send(Ping(timestamp=int(time.time() * 1000)).to_json())
                    heartbeat.last_sent_at = now
                    logger.debug("Sent ping")
                except Exception as e:
                    logger.error(f"Failed to send ping: {e}")

    def _start_heartbeat(self) -> None:
        self._cancel_heartbeat_timer()
        self._arm_heartbeat_timer(self._generation)

    def _arm_heartbeat_timer(self, generation: int) -> None:
        if self._loop is None:
            return
        period = self._heartbeat.check_period_ms / 1000
        self._heartbeat_timer = self._loop.call_later(period, self._heartbeat_tick, generation)

    def _heartbeat_tick(self, generation: int) -> None:
        try:
            with self._lock:
                self._heartbeat_timer = None
                if generation != self._generation:
                    return
                self.check_heartbeat()
                if generation == self._generation and self._state == ConnectionState.CONNECTED:
                    self._arm_heartbeat_timer(generation)
        except Exception:
            logger.exception("Heartbeat check failed")

    # =========================================================================
    # Internals
    # =========================================================================

    def _transition(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if new_state not in TRANSITIONS[old_state]:
            raise RuntimeError(f"Invalid transition {old_state.value} -> {new_state.value}")
        self._state = new_state
        logger.debug(f"Connection state {old_state.value} -> {new_state.value}")

    def _flush_queue(self) -> int:
        items = self._queue.drain()
        sent = 0
        for index, text in enumerate(items):
            try:
                self._socket.send(text)
                sent += 1
            except Exception as e:
                remainder = len(items) - index
                self._queue.dropped += remainder
                logger.error(f"Failed to send queued message, dropped {remainder} queued messages: {e}")
                break
        return sent

    def _abandon_socket(self, code: int, reason: str) -> None:
        """Close the current socket and stop listening to it."""
        socket = self._socket
        self._socket = None
        self._generation += 1
        self._stop_timers()

        if self._state != ConnectionState.CLOSING:
            self._transition(ConnectionState.CLOSING)
        if socket is not None:
            try:
                socket.close(code, reason)
            except Exception as e:
                logger.warning(f"Error while closing socket: {e}")
        self._transition(ConnectionState.DISCONNECTED)

    def _arm_auth_timer(self) -> None:
        self._cancel_auth_timer()
        if self._loop is None:
            return
        generation = self._generation
        self._auth_timer = self._loop.call_later(
            self._config.auth_timeout_ms / 1000, self._auth_timeout, generation
        )

    def _auth_timeout(self, generation: int) -> None:
        try:
            with self._lock:
                self._auth_timer = None
            self._fail_authentication(
                generation,
                AuthenticationError(
                    f"No authentication reply within {self._config.auth_timeout_ms}ms"
                ),
            )
        except Exception:
            logger.exception("Authentication timeout handling failed")

    def _stop_timers(self) -> None:
        self._cancel_heartbeat_timer()
        self._cancel_auth_timer()

    def _cancel_heartbeat_timer(self) -> None:
        if self._heartbeat_timer is not None:
            self._heartbeat_timer.cancel()
            self._heartbeat_timer = None

    def _cancel_auth_timer(self) -> None:
        if self._auth_timer is not None:
            self._auth_timer.cancel()
            self._auth_timer = None

    def _cancel_reconnect_timer(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
