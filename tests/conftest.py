"""
Pytest fixtures for chatforward tests.
"""

from typing import Any, Dict, Iterator, List, Tuple

import pytest

from chatforward.config import ChatConfig, ForwardConfig, WebSocketConfig
from chatforward.connection import ConnectionManager

from .utils import FakeClock, FakeHost, FakeSocketFactory


@pytest.fixture
def ws_config() -> WebSocketConfig:
    """Connection settings with timers long enough not to fire on their own."""
    return WebSocketConfig(
        url="ws://test/chat",
        token="secret",
        reconnect_interval_ms=60000,
        max_reconnect_attempts=3,
        heartbeat_interval_ms=5000,
        heartbeat_timeout_ms=10000,
        auth_timeout_ms=60000,
    )


@pytest.fixture
def chat_config() -> ChatConfig:
    return ChatConfig(
        main_prefix="[Net]",
        server_prefix_mapping={"lobby": "Lobby", "survival": "Survival", "creative": ""},
    )


@pytest.fixture
def forward_config(ws_config, chat_config) -> ForwardConfig:
    return ForwardConfig(websocket=ws_config, chat=chat_config)


@pytest.fixture
def factory() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1000.0)


@pytest.fixture
def host() -> FakeHost:
    return FakeHost(
        {
            "lobby": ["Alex", "Steve"],
            "survival": ["Notch"],
            "creative": [],
            "dev": ["Dinnerbone"],
        }
    )


@pytest.fixture
def envelopes() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def responses() -> List[Tuple[str, Dict[str, Any]]]:
    return []


@pytest.fixture
def manager(ws_config, factory, clock, envelopes, responses) -> Iterator[ConnectionManager]:
    def on_response(request_id: str, payload: Dict[str, Any]) -> bool:
        responses.append((request_id, payload))
        return True

    manager = ConnectionManager(
        ws_config,
        factory,
        on_envelope=envelopes.append,
        on_response=on_response,
        clock=clock,
    )
    yield manager
    manager.disconnect()


