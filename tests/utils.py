"""
Test doubles and helpers for chatforward tests.

In-memory stand-ins for the socket and the proxy host, plus a controllable
clock, so connection behaviour can be driven step by step.
"""

import asyncio
import json
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from chatforward.connection import ConnectionManager
from chatforward.constants import NORMAL_CLOSE_CODE


class FakeSocket:
    """Socket that records what is sent and lets the test play the server."""

    def __init__(self, listener, fail_open: bool = False):
        self.listener = listener
        self.fail_open = fail_open
        self.fail_send = False
        self.fail_after: Optional[int] = None
        self.opened = False
        self.closed: Optional[Tuple[int, str]] = None
        self.sent: List[str] = []

    # Socket interface

    def open(self) -> None:
        if self.fail_open:
            raise OSError("connection refused")
        self.opened = True

    def send(self, text: str) -> None:
        if self.fail_send or (self.fail_after is not None and len(self.sent) >= self.fail_after):
            raise OSError("broken pipe")
        self.sent.append(text)

    def close(self, code: int = NORMAL_CLOSE_CODE, reason: str = "") -> None:
        self.closed = (code, reason)

    # Server side

    def server_open(self) -> None:
        self.listener.on_open()

    def receive(self, message: Union[str, Dict[str, Any]]) -> None:
        raw = message if isinstance(message, str) else json.dumps(message)
        self.listener.on_message(raw)

    def accept_auth(self) -> None:
        self.receive({"action": "auth", "status": "ok"})

    def remote_close(self, code: int = 1006, reason: str = "gone") -> None:
        self.listener.on_close(code, reason, True)

    @property
    def sent_json(self) -> List[Dict[str, Any]]:
        return [json.loads(text) for text in self.sent]

    def sent_actions(self) -> List[str]:
        return [data.get("action") or data.get("Mode") for data in self.sent_json]


class FakeSocketFactory:
    """Socket factory keeping every socket it created."""

    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.fail_open = False

    def __call__(self, listener) -> FakeSocket:
        socket = FakeSocket(listener, fail_open=self.fail_open)
        self.sockets.append(socket)
        return socket

    @property
    def latest(self) -> FakeSocket:
        return self.sockets[-1]


class FakeHost:
    """Proxy host with a fixed set of servers and players."""

    def __init__(self, players: Optional[Dict[str, List[str]]] = None):
        self.players: Dict[str, List[str]] = players or {}
        self.delivered: List[Tuple[str, str]] = []

    def send_to_server(self, server: str, text: str) -> bool:
        if server not in self.players:
            return False
        self.delivered.append((server, text))
        return True

    def list_players(self, server: Optional[str] = None) -> Optional[List[str]]:
        if server is None:
            return [player for players in self.players.values() for player in players]
        if server not in self.players:
            return None
        return list(self.players[server])

    def delivered_to(self, server: str) -> List[str]:
        return [text for name, text in self.delivered if name == server]


class FakeClock:
    """Millisecond clock advanced by hand."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    """Poll `predicate` on the event loop until it holds or `timeout` passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(0.005)
    return True


def establish(manager: ConnectionManager, factory: FakeSocketFactory) -> FakeSocket:
    """Connect, open and authenticate. Must run on the event loop."""
    assert manager.connect()
    socket = factory.latest
    socket.server_open()
    socket.accept_auth()
    return socket
