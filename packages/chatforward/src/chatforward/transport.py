"""
Socket Transport

The socket capability the connection manager drives, and its WebSocket
implementation.

A socket is opened, written to and closed without ever blocking the
caller. Everything it observes is reported back through a SocketListener,
always on the event loop that opened it.
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol, Union

import websockets
from websockets.exceptions import ConnectionClosed

from .constants import ABNORMAL_CLOSE_CODE, NORMAL_CLOSE_CODE
from .errors import GatewayConnectionError

logger = logging.getLogger(__name__)


class SocketListener(Protocol):
    """Callbacks a socket reports to."""

    def on_open(self) -> None: ...

    def on_message(self, raw: str) -> None: ...

    def on_close(self, code: int, reason: str, remote: bool) -> None: ...

    def on_error(self, error: BaseException) -> None: ...


class Socket(Protocol):
    """A single connection attempt. Never reused after it closes."""

    def open(self) -> None: ...

    def send(self, text: str) -> None: ...

    def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = "") -> None: ...


SocketFactory = Callable[[SocketListener], Socket]


class WebSocketTransport:
    """
    Socket implementation backed by the `websockets` asyncio client.

    open() starts a background task that connects and then reads frames.
    Outbound frames go through an in-memory queue drained by a writer task,
    so send() is safe from any thread and preserves order.
    """

    def __init__(
        self,
        url: str,
        listener: SocketListener,
        open_timeout: float = 10.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._url = url
        self._listener = listener
        self._open_timeout = open_timeout
        self._loop = loop
        self._ws = None
        self._outbox: Optional["asyncio.Queue[str]"] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._writer_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._closing_locally = False

    @property
    def is_open(self) -> bool:
        return self._ws is not None

    def open(self) -> None:
        """Start connecting. Must be called from a running event loop."""
        if self._reader_task is not None:
            raise GatewayConnectionError("Socket already opened")
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._reader_task = self._loop.create_task(self._run())

    def send(self, text: str) -> None:
        """Queue a text frame for transmission."""
        if self._ws is None or self._outbox is None:
            raise GatewayConnectionError("Socket is not open")
        self._on_loop(self._outbox.put_nowait, text)

    def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = "") -> None:
        """Close the socket; the listener sees on_close with remote=False."""
        self._closing_locally = True
        self._on_loop(self._begin_close, code, reason)

    def _on_loop(self, callback: Callable, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            callback(*args)
        else:
            loop.call_soon_threadsafe(callback, *args)

    def _begin_close(self, code: int, reason: str) -> None:
        ws = self._ws
        if ws is None:
            # Still connecting; abandon the attempt
            if self._reader_task is not None and not self._reader_task.done():
                self._reader_task.cancel()
            return
        if self._close_task is None:
            self._close_task = self._loop.create_task(ws.close(code=code, reason=reason))

    async def _run(self) -> None:
        try:
            # Liveness is handled by the application-level ping/pong
            ws = await websockets.connect(
                self._url,
                open_timeout=self._open_timeout,
                ping_interval=None,
            )
        except asyncio.CancelledError:
            logger.debug(f"Connection attempt to {self._url} cancelled")
            return
        except Exception as e:
            logger.error(f"Could not connect to {self._url}: {e}")
            self._listener.on_error(e)
            self._listener.on_close(ABNORMAL_CLOSE_CODE, str(e), True)
            return

        self._ws = ws
        self._outbox = asyncio.Queue()
        self._writer_task = asyncio.create_task(self._write_loop(ws, self._outbox))

        if self._closing_locally:
            await ws.close(code=NORMAL_CLOSE_CODE)
        else:
            self._listener.on_open()

        try:
            async for message in ws:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="replace")
                self._listener.on_message(message)
        except ConnectionClosed:
            pass
        except asyncio.CancelledError:
            await ws.close()
            raise
        except Exception as e:
            logger.error(f"WebSocket read failed: {e}")
            self._listener.on_error(e)
        finally:
            self._ws = None
            if self._writer_task is not None:
                self._writer_task.cancel()

        code: Union[int, None] = ws.close_code
        self._listener.on_close(
            code if code is not None else ABNORMAL_CLOSE_CODE,
            ws.close_reason or "",
            not self._closing_locally,
        )

    async def _write_loop(self, ws, outbox: "asyncio.Queue[str]") -> None:
        while True:
            text = await outbox.get()
            try:
                await ws.send(text)
            except ConnectionClosed:
                return
            except Exception as e:
                logger.error(f"WebSocket send failed: {e}")
                self._listener.on_error(e)


def websocket_factory(url: str, open_timeout: float = 10.0) -> SocketFactory:
    """Factory creating one WebSocketTransport per connection attempt."""

    def create(listener: SocketListener) -> Socket:
        return WebSocketTransport(url, listener, open_timeout=open_timeout)

    return create
