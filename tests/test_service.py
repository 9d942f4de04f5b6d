"""
Tests for the forward service facade.
"""

import asyncio
import functools

import pytest

from chatforward.config import ChatConfig, ForwardConfig
from chatforward.connection import ConnectionState, SendResult
from chatforward.correlation import RequestStatus
from chatforward.errors import ProtocolError
from chatforward.host import BackendServer
from chatforward.protocol import EventMode
from chatforward.service import ForwardService

from .utils import wait_until


@pytest.fixture
async def service(forward_config, host, factory):
    service = ForwardService(forward_config, host, socket_factory=factory)
    yield service
    await service.shutdown()


def go_online(service, factory):
    assert service.connect()
    socket = factory.latest
    socket.server_open()
    socket.accept_auth()
    return socket


def requests_sent(socket, action):
    return [data for data in socket.sent_json if data.get("action") == action]


class TestEvents:
    """Fire-and-forget player events."""

    @pytest.mark.asyncio
    async def test_chat_event_is_sent(self, service, factory):
        """Test a chat event goes out as a PlayerChatEvent envelope."""
        socket = go_online(service, factory)

        assert service.send_player_chat_event("Steve", "hello", "lobby") == SendResult.SENT
        assert socket.sent_json[-1] == {
            "Mode": "PlayerChatEvent",
            "player": "Steve",
            "message": "hello",
            "server": "lobby",
        }

    @pytest.mark.asyncio
    async def test_command_chat_is_skipped(self, service, factory):
        """Test chat starting with a command prefix is not forwarded."""
        socket = go_online(service, factory)

        assert service.send_player_chat_event("Steve", "!!tp home", "lobby") == SendResult.SKIPPED
        assert service.send_event(EventMode.PLAYER_CHAT, player="Steve", message="##list", server="lobby") == SendResult.SKIPPED
        assert socket.sent_actions() == ["auth"]

    @pytest.mark.asyncio
    async def test_events_queue_until_authenticated(self, service, factory):
        """Test events sent while offline go out after authentication."""
        assert service.send_player_join_event("Alex", BackendServer("lobby")) == SendResult.QUEUED
        assert service.send_player_left_event("Alex") == SendResult.QUEUED

        socket = go_online(service, factory)

        assert socket.sent_actions() == ["auth", "PlayerJoinEvent", "PlayerLeftEvent"]
        assert socket.sent_json[1]["server"] == "lobby"

    @pytest.mark.asyncio
    async def test_handoff_accepts_server_handles(self, service, factory):
        """Test handoff events accept server handles or plain names."""
        socket = go_online(service, factory)

        service.send_player_handoff_event("Alex", BackendServer("lobby"), "survival")
        service.send_event(
            "PlayerHandoffEvent",
            player="Notch",
            from_server="survival",
            to_server=BackendServer("creative"),
        )

        first, second = socket.sent_json[1:]
        assert (first["fromserver"], first["toserver"]) == ("lobby", "survival")
        assert (second["player"], second["fromserver"], second["toserver"]) == (
            "Notch",
            "survival",
            "creative",
        )

    def test_unknown_event_kind(self, forward_config, host, factory):
        """Test an unknown event kind raises ProtocolError."""
        service = ForwardService(forward_config, host, socket_factory=factory)

        with pytest.raises(ProtocolError):
            service.send_event("PlayerDanceEvent", player="Steve")


class TestRequests:
    """Correlated request/response calls."""

    @pytest.mark.asyncio
    async def test_not_connected(self, service):
        """Test a request while offline returns NOT_CONNECTED."""
        result = await service.send_request("player_list", {})

        assert result.status == RequestStatus.NOT_CONNECTED
        assert result.request_id is None
        assert service.correlations.size() == 0

    @pytest.mark.asyncio
    async def test_timeout_restores_store_size(self, service, factory):
        """Test a timed out request leaves the store as it found it."""
        go_online(service, factory)
        before = service.correlations.size()

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await service.send_request("player_list", {}, timeout=0.1)

        assert result.status == RequestStatus.TIMEOUT
        assert loop.time() - started < 1.0
        assert service.correlations.size() == before

    @pytest.mark.asyncio
    async def test_response_resolves_request(self, service, factory):
        """Test the matching response resolves the request."""
        socket = go_online(service, factory)

        task = asyncio.ensure_future(service.send_request("lookup", {"player": "Steve"}, timeout=2.0))
        assert await wait_until(lambda: requests_sent(socket, "lookup"))
        request = requests_sent(socket, "lookup")[0]
        assert request["params"] == {"player": "Steve"}

        socket.receive({"action": "lookup_response", "echo": request["echo"], "rank": "admin"})
        result = await task

        assert result.success
        assert result.request_id == request["echo"]
        assert result.payload["rank"] == "admin"

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_their_own_responses(self, service, factory):
        """Test responses answered out of order reach the right callers."""
        socket = go_online(service, factory)

        first = asyncio.ensure_future(service.send_request("lookup", {"n": 1}, timeout=2.0))
        second = asyncio.ensure_future(service.send_request("lookup", {"n": 2}, timeout=2.0))
        assert await wait_until(lambda: len(requests_sent(socket, "lookup")) == 2)

        ids = {data["params"]["n"]: data["echo"] for data in requests_sent(socket, "lookup")}
        assert ids[1] != ids[2]

        # Answer in reverse order
        socket.receive({"action": "lookup_response", "echo": ids[2], "n": 2})
        socket.receive({"action": "lookup_response", "echo": ids[1], "n": 1})

        assert (await first).payload["n"] == 1
        assert (await second).payload["n"] == 2

    @pytest.mark.asyncio
    async def test_failed_send_leaves_nothing_registered(self, service, factory):
        """Test a request whose send fails is fully deregistered."""
        socket = go_online(service, factory)
        socket.fail_send = True

        result = await service.send_request("player_list", {})

        assert result.status == RequestStatus.FAILED
        assert service.correlations.size() == 0
        assert service.correlations._futures == {}

    @pytest.mark.asyncio
    async def test_unencodable_params_fail_without_registering(self, service, factory):
        """Test params that cannot be encoded return FAILED instead of raising."""
        socket = go_online(service, factory)

        result = await service.send_request("player_list", {"ids": {1, 2}})

        assert result.status == RequestStatus.FAILED
        assert service.correlations.size() == 0
        assert socket.sent_actions() == ["auth"]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_requests(self, service, factory):
        """Test shutdown cancels requests still waiting."""
        socket = go_online(service, factory)
        task = asyncio.ensure_future(service.send_request("slow", timeout=5.0))
        assert await wait_until(lambda: requests_sent(socket, "slow"))

        await service.shutdown()
        result = await task

        assert result.status == RequestStatus.CANCELLED
        assert service.status().state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_sweeper_cancels_stale_requests(self, forward_config, host, factory):
        """Test the sweeper cancels requests past the max age."""
        service = ForwardService(
            forward_config, host, socket_factory=factory, sweep_interval=0.02, sweep_max_age=0.0
        )
        go_online(service, factory)

        result = await service.send_request("slow", timeout=5.0)

        assert result.status == RequestStatus.CANCELLED
        await service.shutdown()

    @pytest.mark.asyncio
    async def test_request_blocking_from_worker_thread(self, service, factory):
        """Test the blocking variant works from a worker thread."""
        socket = go_online(service, factory)
        loop = asyncio.get_running_loop()

        call = functools.partial(service.request_blocking, "lookup", {"n": 7}, 2.0)
        pending = loop.run_in_executor(None, call)
        assert await wait_until(lambda: requests_sent(socket, "lookup"))
        echo = requests_sent(socket, "lookup")[0]["echo"]
        socket.receive({"action": "lookup_response", "echo": echo, "n": 7})

        result = await pending
        assert result.success
        assert result.payload["n"] == 7

    @pytest.mark.asyncio
    async def test_request_blocking_refuses_loop_thread(self, service, factory):
        """Test the blocking variant refuses to run on the loop thread."""
        go_online(service, factory)

        with pytest.raises(RuntimeError):
            service.request_blocking("lookup")

    def test_request_blocking_requires_connect(self, forward_config, host, factory):
        """Test the blocking variant needs a loop captured by connect."""
        service = ForwardService(forward_config, host, socket_factory=factory)

        with pytest.raises(RuntimeError):
            service.request_blocking("lookup")


class TestInboundTraffic:
    """Envelopes from the service reach the dispatcher and the host."""

    @pytest.mark.asyncio
    async def test_chat_is_delivered_to_host(self, service, factory, host):
        """Test inbound chat is formatted and delivered to the host."""
        socket = go_online(service, factory)

        socket.receive({"Mode": "PlayerChatEvent", "player": "Steve", "message": "hi", "server": "lobby"})

        assert host.delivered == [("lobby", "[Net] [Lobby] Steve: hi")]

    @pytest.mark.asyncio
    async def test_player_list_request_is_answered(self, service, factory):
        """Test an inbound player_list request gets a correlated reply."""
        socket = go_online(service, factory)

        socket.receive({"action": "player_list", "server": "lobby", "echo": "srv-7"})

        reply = socket.sent_json[-1]
        assert reply["action"] == "player_list_response"
        assert reply["echo"] == "srv-7"
        assert reply["players"] == ["Alex", "Steve"]
        assert service.correlations.size() == 0


class TestLifecycle:
    """Connect, disconnect, reconnect and reload."""

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self, service, factory):
        """Test connecting and disconnecting without a reconnect."""
        socket = go_online(service, factory)
        assert service.is_connected()

        service.disconnect()

        assert not service.is_connected()
        assert socket.closed is not None
        assert not service.status().reconnect_pending

    @pytest.mark.asyncio
    async def test_reconnect(self, service, factory):
        """Test reconnect opens a fresh socket."""
        go_online(service, factory)

        assert service.reconnect()

        assert len(factory.sockets) == 2
        assert service.status().state == ConnectionState.CONNECTING

    @pytest.mark.asyncio
    async def test_reload_chat_settings(self, service, factory, host, forward_config):
        """Test reloading chat settings keeps the connection."""
        socket = go_online(service, factory)
        chat = ChatConfig(main_prefix="[Hub]", server_prefix_mapping={"lobby": "L"})

        service.reload(ForwardConfig(websocket=forward_config.websocket, chat=chat))
        socket.receive({"Mode": "PlayerChatEvent", "player": "Steve", "message": "hi", "server": "lobby"})

        assert len(factory.sockets) == 1
        assert host.delivered == [("lobby", "[Hub] [L] Steve: hi")]

    @pytest.mark.asyncio
    async def test_reload_websocket_settings_reconnects(self, service, factory, forward_config):
        """Test reloading websocket settings reconnects to the new url."""
        old = go_online(service, factory)
        websocket = forward_config.websocket.model_copy(update={"url": "ws://other/chat"})

        service.reload(ForwardConfig(websocket=websocket, chat=forward_config.chat))

        assert old.closed is not None
        assert len(factory.sockets) == 2
        assert service.status().url == "ws://other/chat"
        assert service.status().state == ConnectionState.CONNECTING
