"""
Tests for WebSocketConnection.

Tests cover:
- URL validation and header sanitization
- Connection lifecycle and state transitions
- State chain replay
- Fragment buffering and binary dispatch
- Socket.IO auto-pong and ping interval parsing
"""
import asyncio

import pytest
from websockets.exceptions import ConnectionClosedOK

from wsprobe.config import settings
from wsprobe.engine.connection_manager import (
    WebSocketConnection,
    parse_ping_interval,
    sanitize_header_value,
    validate_url,
)
from wsprobe.exceptions import (
    ConnectionFailedError,
    ConnectionStateError,
    ConnectionTimeoutError,
    InvalidURLError,
)
from wsprobe.models import ConnectionState, FrameProtocol

URL = "ws://target.test/socket.io/?EIO=4&transport=websocket"


class FakeWebSocket:
    """In-memory stand-in for a websockets client connection."""

    def __init__(self, fail_on=()):
        self.sent = []
        self.closed_with = None
        self.fail_on = set(fail_on)
        self._inbound: asyncio.Queue = asyncio.Queue()

    def feed(self, *fragments):
        """Queue one message delivered as the given fragments."""
        self._inbound.put_nowait(list(fragments))

    def drop(self):
        """Simulate the peer closing the connection."""
        self._inbound.put_nowait(None)

    async def recv_streaming(self):
        fragments = await self._inbound.get()
        if fragments is None:
            raise ConnectionClosedOK(None, None)
        for fragment in fragments:
            yield fragment

    async def send(self, data):
        if data in self.fail_on:
            raise RuntimeError(f"refused {data}")
        self.sent.append(data)

    async def close(self, code=1000, reason=""):
        self.closed_with = (code, reason)


class FakeConnector:
    """Records handshake arguments and hands out FakeWebSocket instances."""

    def __init__(self, ws=None, error=None, gate=None):
        self.ws = ws or FakeWebSocket()
        self.error = error
        self.gate = gate
        self.calls = []

    async def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.ws


async def wait_until(predicate, timeout=1.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def fast_chain(monkeypatch):
    monkeypatch.setattr(settings, "state_chain_delay_ms", 0)


class TestValidation:
    """Tests for URL validation and header sanitization."""

    @pytest.mark.parametrize("url", ["ws://host", "wss://host:8443/path?q=1", "WSS://Host/"])
    def test_valid_urls(self, url):
        assert validate_url(url) == url

    @pytest.mark.parametrize("url", [None, "", "   ", "http://host", "ftp://host", "ws://", "ws:///path", "host/ws",
        "ws://127.0.0.1:99999/ws", "ws://host:abc/"])
    def test_invalid_urls(self, url):
        with pytest.raises(InvalidURLError):
            validate_url(url)

    def test_sanitize_header_value(self):
        assert sanitize_header_value("a\r\nX-Injected: 1") == "aX-Injected: 1"
        assert sanitize_header_value(None) == ""

    def test_parse_ping_interval(self):
        assert parse_ping_interval('0{"sid":"a","pingInterval":30000}') == 30000
        assert parse_ping_interval('0{"sid":"a"}') is None

    def test_set_headers_strips_crlf(self):
        conn = WebSocketConnection()
        conn.set_headers({"Cookie": "a=1\r\nX-Evil: 2", "X-Token\n": "t", "\r\n": "gone"})

        assert conn.headers == {"Cookie": "a=1X-Evil: 2", "X-Token": "t"}


class TestConnectionLifecycle:
    """Tests for connect() and disconnect()."""

    @pytest.mark.asyncio
    async def test_invalid_url_never_touches_network(self):
        """Validation failure raises before any state change."""
        statuses = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_status=statuses.append, connector=connector)

        with pytest.raises(InvalidURLError):
            await conn.connect("http://target.test")

        assert connector.calls == []
        assert conn.state == ConnectionState.IDLE
        assert statuses[0].startswith("Invalid URL")

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self):
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)

        await conn.connect(URL)
        assert conn.state == ConnectionState.CONNECTED
        assert conn.connected is True

        await conn.disconnect()
        assert conn.state == ConnectionState.DISCONNECTED
        assert connector.ws.closed_with == (1000, "Normal closure")

    @pytest.mark.asyncio
    async def test_handshake_arguments(self):
        """Reserved headers are dropped and the subprotocol is requested."""
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)
        conn.set_headers({"Cookie": "s=1", "Host": "evil", "Sec-WebSocket-Key": "x", "Authorization": "Bearer t"})
        conn.set_subprotocol("graphql-transport-ws")

        await conn.connect(URL)
        await conn.disconnect()

        url, kwargs = connector.calls[0]
        assert url == URL
        assert kwargs["additional_headers"] == [("Cookie", "s=1"), ("Authorization", "Bearer t")]
        assert kwargs["subprotocols"] == ["graphql-transport-ws"]
        assert kwargs["max_size"] == settings.max_message_bytes

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        statuses = []
        conn = WebSocketConnection(
            on_status=statuses.append,
            connector=FakeConnector(error=ConnectionRefusedError("refused")),
        )

        with pytest.raises(ConnectionFailedError):
            await conn.connect(URL)

        assert conn.state == ConnectionState.DISCONNECTED
        assert any(s.startswith("Connection failed") for s in statuses)

    @pytest.mark.asyncio
    async def test_out_of_range_port_rejected_before_connecting(self):
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)

        with pytest.raises(InvalidURLError):
            await conn.connect("ws://127.0.0.1:99999/ws")

        assert connector.calls == []
        assert conn.state == ConnectionState.IDLE

    @pytest.mark.asyncio
    async def test_rejected_handshake_arguments_end_disconnected(self):
        """A client-side ValueError (malformed subprotocol) is a failed connect."""
        statuses = []
        connector = FakeConnector(error=ValueError("invalid subprotocol: a b"))
        conn = WebSocketConnection(on_status=statuses.append, connector=connector)
        conn.set_subprotocol("a b")

        with pytest.raises(ConnectionFailedError):
            await conn.connect(URL)

        assert conn.state == ConnectionState.DISCONNECTED
        assert any(s.startswith("Connection failed") for s in statuses)

        connector.error = None
        await conn.connect(URL)
        assert conn.state == ConnectionState.CONNECTED
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_reconnect_resets_detected_protocol(self):
        received = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_message=received.append, connector=connector)
        await conn.connect(URL)

        connector.ws.feed('0{"sid":"abc","pingInterval":5000}')
        await wait_until(lambda: received)
        assert conn.detected_protocol == FrameProtocol.SOCKET_IO
        assert conn.ping_interval_ms == 5000

        connector.ws = FakeWebSocket()
        await conn.connect("ws://other.test/ws")

        assert conn.detected_protocol == FrameProtocol.RAW
        assert conn.ping_interval_ms == settings.default_ping_interval_ms
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        conn = WebSocketConnection(connector=FakeConnector(gate=asyncio.Event()))

        with pytest.raises(ConnectionTimeoutError):
            await conn.connect(URL, timeout=0.05)

        assert conn.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connect_while_connecting_raises(self):
        gate = asyncio.Event()
        conn = WebSocketConnection(connector=FakeConnector(gate=gate))

        first = asyncio.create_task(conn.connect(URL))
        await wait_until(lambda: conn.state == ConnectionState.CONNECTING)

        with pytest.raises(ConnectionStateError):
            await conn.connect(URL)

        gate.set()
        await first
        assert conn.state == ConnectionState.CONNECTED
        await conn.disconnect()

    @pytest.mark.asyncio
    async def test_send_when_not_connected(self):
        conn = WebSocketConnection(connector=FakeConnector())

        assert await conn.send("hello") is False

    @pytest.mark.asyncio
    async def test_remote_close_marks_disconnected(self):
        statuses = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_status=statuses.append, connector=connector)
        await conn.connect(URL)

        connector.ws.drop()
        await wait_until(lambda: conn.state == ConnectionState.DISCONNECTED)

        assert any(s.startswith("Disconnected") for s in statuses)
        assert await conn.send("late") is False

    @pytest.mark.asyncio
    async def test_reconnect_replaces_socket(self):
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)
        await conn.connect(URL)
        old = connector.ws

        connector.ws = FakeWebSocket()
        await conn.connect(URL)

        assert old.closed_with == (1000, "Normal closure")
        assert await conn.send("x") is True
        assert connector.ws.sent == ["x"]
        await conn.disconnect()


class TestStateChain:
    """Tests for state chain replay."""

    @pytest.mark.asyncio
    async def test_replayed_in_order_after_connect(self):
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)
        conn.set_state_chain(["40", '42["join","room1"]', '42["auth","tok"]'])

        await conn.connect(URL)
        await conn.send("after")
        await conn.disconnect()

        assert connector.ws.sent == ["40", '42["join","room1"]', '42["auth","tok"]', "after"]

    @pytest.mark.asyncio
    async def test_failed_frame_does_not_abort_chain(self):
        statuses = []
        connector = FakeConnector(ws=FakeWebSocket(fail_on={"bad"}))
        conn = WebSocketConnection(on_status=statuses.append, connector=connector)
        conn.set_state_chain(["one", "bad", "three"])

        await conn.connect(URL)
        await conn.disconnect()

        assert connector.ws.sent == ["one", "three"]
        assert any(s.startswith("State chain replay failed") for s in statuses)


class TestInbound:
    """Tests for message delivery and protocol auto-responses."""

    @pytest.mark.asyncio
    async def test_fragments_buffered_until_message_end(self):
        received = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_message=received.append, connector=connector)
        await conn.connect(URL)

        connector.ws.feed("4", '2["chat",', '{"msg":"hi"}]')
        await wait_until(lambda: received)
        await conn.disconnect()

        assert received == ['42["chat",{"msg":"hi"}]']
        assert conn.detected_protocol == FrameProtocol.SOCKET_IO

    @pytest.mark.asyncio
    async def test_binary_messages(self):
        binary = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_binary=binary.append, connector=connector)
        await conn.connect(URL)

        connector.ws.feed(b"\x01\x02", b"\x03")
        await wait_until(lambda: binary)
        await conn.disconnect()

        assert binary == [b"\x01\x02\x03"]

    @pytest.mark.asyncio
    async def test_socketio_ping_answered_before_listener(self):
        seen = []
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)
        conn.add_message_listener(lambda m: seen.append((m, list(connector.ws.sent))))
        await conn.connect(URL)

        connector.ws.feed('0{"sid":"abc","pingInterval":30000,"pingTimeout":20000}')
        connector.ws.feed("2")
        await wait_until(lambda: len(seen) == 2)
        await conn.disconnect()

        assert seen[1] == ("2", ["3"])
        assert conn.ping_interval_ms == 30000

    @pytest.mark.asyncio
    async def test_missing_ping_interval_uses_default(self):
        statuses = []
        received = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_message=received.append, on_status=statuses.append, connector=connector)
        await conn.connect(URL)

        connector.ws.feed('0{"sid":"abc"}')
        await wait_until(lambda: received)
        await conn.disconnect()

        assert conn.ping_interval_ms == settings.default_ping_interval_ms
        assert any("pingInterval" in s for s in statuses)

    @pytest.mark.asyncio
    async def test_no_pong_for_other_protocols(self):
        received = []
        connector = FakeConnector()
        conn = WebSocketConnection(on_message=received.append, connector=connector)
        await conn.connect(URL)

        connector.ws.feed('{"type":"welcome"}')
        connector.ws.feed("2")
        await wait_until(lambda: len(received) == 2)
        await conn.disconnect()

        assert connector.ws.sent == []

    @pytest.mark.asyncio
    async def test_listener_errors_are_contained(self):
        received = []
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)
        conn.add_message_listener(lambda m: 1 / 0)
        conn.add_message_listener(received.append)
        await conn.connect(URL)

        connector.ws.feed("hello")
        await wait_until(lambda: received)
        await conn.disconnect()

        assert received == ["hello"]

    @pytest.mark.asyncio
    async def test_stats(self):
        connector = FakeConnector()
        conn = WebSocketConnection(connector=connector)
        await conn.connect(URL)
        await conn.send("a")
        await conn.send_binary(b"b")

        stats = conn.get_stats()
        await conn.disconnect()

        assert stats["state"] == "connected"
        assert stats["send_count"] == 2
        assert stats["connected_at"] is not None
