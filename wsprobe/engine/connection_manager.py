"""
Connection Manager - Owns one client WebSocket connection.

Provides:
- URL validation and CR/LF header sanitization before any network attempt
- idle -> connecting -> connected -> disconnected state tracking
- State chain replay after every successful (re)connect
- Fragment buffering until a message boundary, then dispatch to listeners
- Socket.IO auto-pong and ping-interval keepalive bookkeeping
- Send coordination via a per-connection lock shared with state changes
"""
from __future__ import annotations

import asyncio
import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import structlog
from websockets.asyncio.client import connect as websocket_connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from wsprobe.config import settings
from wsprobe.engine.classifier import detect_protocol
from wsprobe.exceptions import (
    ConnectionFailedError,
    ConnectionStateError,
    ConnectionTimeoutError,
    InvalidURLError,
)
from wsprobe.models import ConnectionState, FrameProtocol

logger = structlog.get_logger()

ALLOWED_SCHEMES = ("ws", "wss")

# Managed by the WebSocket handshake itself
RESERVED_HEADERS = frozenset(
    {"host", "upgrade", "connection", "sec-websocket-key", "sec-websocket-version"}
)

_CRLF_PATTERN = re.compile(r"[\r\n]")
_PING_INTERVAL_PATTERN = re.compile(r'"pingInterval"\s*:\s*(\d+)')

MessageListener = Callable[[str], Any]
BinaryListener = Callable[[bytes], Any]
StatusListener = Callable[[str], Any]


def validate_url(url: Optional[str]) -> str:
    """
    Validate a WebSocket URL.

    Raises:
        InvalidURLError: blank URL, scheme other than ws/wss, or missing host
    """
    if url is None or not url.strip():
        raise InvalidURLError("URL cannot be empty")

    try:
        parts = urlsplit(url.strip())
        host = parts.hostname
        parts.port  # raises ValueError when out of range or not numeric
    except ValueError as e:
        raise InvalidURLError(f"Invalid URL format: {e}", details={"url": url})

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidURLError("URL must use ws:// or wss:// scheme", details={"url": url})
    if not host:
        raise InvalidURLError("URL must have a valid host", details={"url": url})
    return url.strip()


def sanitize_header_value(value: Optional[str]) -> str:
    """Strip CR and LF so caller input cannot inject extra handshake lines."""
    if value is None:
        return ""
    return _CRLF_PATTERN.sub("", value)


def parse_ping_interval(open_frame: str) -> Optional[int]:
    """Read ``pingInterval`` (ms) from an Engine.IO open packet."""
    match = _PING_INTERVAL_PATTERN.search(open_frame)
    if not match:
        return None
    try:
        return int(match.group(1))
    except ValueError:
        return None


class WebSocketConnection:
    """
    Reconnectable client connection with state chain replay.

    The underlying websocket handle never leaves this object; other
    components use connect/send/disconnect and the listener hooks only.

    Example usage:
        conn = WebSocketConnection(on_status=print)
        conn.set_headers({"Cookie": "session=abc"})
        conn.set_state_chain(['42["join","room1"]'])
        await conn.connect("wss://target.example/socket.io/?EIO=4&transport=websocket")
        await conn.send('42["chat",{"msg":"hi"}]')
        await conn.disconnect()
    """

    def __init__(
        self,
        on_message: Optional[MessageListener] = None,
        on_status: Optional[StatusListener] = None,
        on_binary: Optional[BinaryListener] = None,
        connector: Optional[Callable[..., Any]] = None,
    ):
        self._connector = connector or websocket_connect

        self._message_listeners: List[MessageListener] = []
        self._status_listeners: List[StatusListener] = []
        self._binary_listeners: List[BinaryListener] = []
        if on_message:
            self.add_message_listener(on_message)
        if on_status:
            self.add_status_listener(on_status)
        if on_binary:
            self._binary_listeners.append(on_binary)

        self.url: Optional[str] = None
        self.headers: Dict[str, str] = {}
        self.subprotocol: Optional[str] = None
        self.state_chain: List[str] = []

        # Guarded by _lock
        self._ws: Any = None
        self._state = ConnectionState.IDLE
        self._lock = asyncio.Lock()

        self.detected_protocol = FrameProtocol.RAW
        self.ping_interval_ms = settings.default_ping_interval_ms
        self._last_server_ping: Optional[float] = None

        self._reader_task: Optional[asyncio.Task] = None
        self._keepalive_task: Optional[asyncio.Task] = None

        # Statistics
        self.connected_at: Optional[datetime] = None
        self.last_send: Optional[datetime] = None
        self.send_count: int = 0
        self.recv_count: int = 0

    # ==================== CONFIGURATION ====================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._ws is not None

    def set_headers(self, headers: Optional[Dict[str, str]]) -> None:
        """Set handshake headers (cookies, auth tokens); CR/LF are stripped."""
        self.headers = {}
        for key, value in (headers or {}).items():
            key = sanitize_header_value(key).strip()
            if key:
                self.headers[key] = sanitize_header_value(value)

    def set_subprotocol(self, subprotocol: Optional[str]) -> None:
        cleaned = sanitize_header_value(subprotocol).strip()
        self.subprotocol = cleaned or None

    def set_state_chain(self, frames: Iterable[str]) -> None:
        """Frames replayed, in order, after every successful connect."""
        self.state_chain = list(frames)

    def add_message_listener(self, listener: MessageListener) -> None:
        self._message_listeners.append(listener)

    def remove_message_listener(self, listener: MessageListener) -> None:
        if listener in self._message_listeners:
            self._message_listeners.remove(listener)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def add_binary_listener(self, listener: BinaryListener) -> None:
        self._binary_listeners.append(listener)

    # ==================== LIFECYCLE ====================

    async def connect(self, url: str, timeout: Optional[float] = None) -> None:
        """
        Open the connection and replay the state chain.

        Args:
            url: ws:// or wss:// URL
            timeout: Seconds to wait for the handshake (defaults to settings)

        Raises:
            InvalidURLError: URL rejected before any network attempt
            ConnectionStateError: another connect is already in flight
            ConnectionTimeoutError: handshake did not finish in time
            ConnectionFailedError: refused, rejected handshake, socket error
        """
        try:
            url = validate_url(url)
        except InvalidURLError as e:
            self._status(f"Invalid URL: {e.message}")
            raise

        async with self._lock:
            if self._state == ConnectionState.CONNECTING:
                raise ConnectionStateError(
                    "Connection already in progress",
                    current_state=self._state.value,
                    expected_state=ConnectionState.IDLE.value,
                )
            previous, self._ws = self._ws, None
            self._state = ConnectionState.CONNECTING
            self.detected_protocol = FrameProtocol.RAW
            self.ping_interval_ms = settings.default_ping_interval_ms

        if previous is not None:
            await self._teardown(previous)

        self.url = url
        timeout = settings.connect_timeout_sec if timeout is None else timeout

        try:
            ws = await asyncio.wait_for(self._open(url), timeout=timeout)
        except asyncio.TimeoutError:
            self._state = ConnectionState.DISCONNECTED
            self._status(f"Error: connection timeout after {timeout}s")
            logger.warning("connection_timeout", url=url, timeout_sec=timeout)
            raise ConnectionTimeoutError(
                f"Connection timeout to {url}", details={"timeout_sec": timeout}
            )
        except Exception as e:
            # refused socket, rejected handshake, or handshake arguments the
            # websockets client will not accept (bad port, malformed subprotocol)
            self._state = ConnectionState.DISCONNECTED
            self._status(f"Connection failed: {e}")
            logger.warning(
                "connection_failed",
                url=url,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ConnectionFailedError(
                f"Failed to connect to {url}: {e}", details={"error": str(e)}
            )
        except asyncio.CancelledError:
            self._state = ConnectionState.DISCONNECTED
            raise

        async with self._lock:
            self._ws = ws
            self._state = ConnectionState.CONNECTED
            self.connected_at = datetime.utcnow()
            self._last_server_ping = time.monotonic()

        self._status(f"Connected to {url}")
        logger.info("connection_opened", url=url, subprotocol=self.subprotocol)

        self._reader_task = asyncio.create_task(self._reader_loop(ws))
        await self._replay_state_chain(ws)

    async def _open(self, url: str) -> Any:
        headers = [
            (key, value)
            for key, value in self.headers.items()
            if key.lower() not in RESERVED_HEADERS
        ]
        kwargs: Dict[str, Any] = {
            "additional_headers": headers or None,
            "max_size": settings.max_message_bytes,
        }
        if self.subprotocol:
            kwargs["subprotocols"] = [self.subprotocol]
        return await self._connector(url, **kwargs)

    async def _replay_state_chain(self, ws: Any) -> None:
        """Send captured setup frames strictly in order, one delay apart."""
        chain = list(self.state_chain)
        if not chain:
            return

        self._status(f"Replaying state chain ({len(chain)} frames)...")
        delay = settings.state_chain_delay_ms / 1000

        for position, frame in enumerate(chain):
            try:
                async with self._lock:
                    await ws.send(frame)
            except Exception as e:
                self._status(f"State chain replay failed: {e}")
                logger.warning(
                    "state_chain_frame_failed",
                    position=position,
                    error=str(e),
                    error_type=type(e).__name__,
                )
            if delay > 0:
                await asyncio.sleep(delay)

        self._status("State chain replayed.")
        logger.info("state_chain_replayed", frames=len(chain))

    async def disconnect(self) -> None:
        """Close gracefully with the standard closure code."""
        self._stop_keepalive()
        async with self._lock:
            ws, self._ws = self._ws, None
            if self._state != ConnectionState.IDLE:
                self._state = ConnectionState.DISCONNECTED

        if ws is not None:
            await self._teardown(ws)
            logger.info(
                "connection_closed",
                url=self.url,
                send_count=self.send_count,
                recv_count=self.recv_count,
            )

    async def _teardown(self, ws: Any) -> None:
        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        try:
            await ws.close(code=settings.close_code, reason=settings.close_reason)
        except Exception as e:
            # Peer may already have closed the socket
            logger.debug("connection_close_error", error=str(e))

    # ==================== SENDING ====================

    async def send(self, message: str) -> bool:
        """Send a text frame; False when not connected or the send failed."""
        return await self._transmit(message)

    async def send_binary(self, data: bytes) -> bool:
        return await self._transmit(data)

    async def _transmit(self, data: Any) -> bool:
        async with self._lock:
            ws = self._ws
            if ws is None or self._state != ConnectionState.CONNECTED:
                return False
            try:
                await ws.send(data)
            except Exception as e:
                self._status(f"Send failed: {e}")
                logger.warning(
                    "send_failed",
                    url=self.url,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return False

            self.last_send = datetime.utcnow()
            self.send_count += 1
            return True

    # ==================== RECEIVING ====================

    async def _reader_loop(self, ws: Any) -> None:
        close_note = "connection lost"
        try:
            while True:
                fragments: List[Any] = []
                async for fragment in ws.recv_streaming():
                    fragments.append(fragment)

                if fragments and isinstance(fragments[0], (bytes, bytearray, memoryview)):
                    self._dispatch_binary(b"".join(bytes(f) for f in fragments))
                else:
                    await self._handle_incoming("".join(fragments))
        except ConnectionClosed as e:
            received = getattr(e, "rcvd", None)
            if received is not None:
                close_note = f"{received.code} {received.reason}".strip()
            else:
                close_note = str(e)
        except (OSError, WebSocketException) as e:
            close_note = f"Error: {e}"
            logger.warning("reader_error", url=self.url, error=str(e))
        finally:
            await self._mark_disconnected(ws, close_note)

    async def _mark_disconnected(self, ws: Any, note: str) -> None:
        async with self._lock:
            if self._ws is not ws:
                return
            self._ws = None
            self._state = ConnectionState.DISCONNECTED

        self._stop_keepalive()
        self._status(f"Disconnected: {note}")
        logger.info("connection_dropped", url=self.url, note=note)

    async def _handle_incoming(self, message: str) -> None:
        self.recv_count += 1

        if self.detected_protocol == FrameProtocol.RAW:
            self.detected_protocol = detect_protocol([message])

        if self.detected_protocol == FrameProtocol.SOCKET_IO:
            if message == "2":
                # Engine.IO ping: answer before anyone else sees it
                self._last_server_ping = time.monotonic()
                await self.send("3")
            elif message.startswith("0{"):
                interval = parse_ping_interval(message)
                if interval is None:
                    self._status("Warning: Could not parse pingInterval, using default")
                    interval = settings.default_ping_interval_ms
                self.ping_interval_ms = interval
                self._start_keepalive()

        for listener in list(self._message_listeners):
            try:
                listener(message)
            except Exception:
                logger.warning("message_listener_failed", exc_info=True)

    def _dispatch_binary(self, data: bytes) -> None:
        self.recv_count += 1
        for listener in list(self._binary_listeners):
            try:
                listener(data)
            except Exception:
                logger.warning("binary_listener_failed", exc_info=True)

    # ==================== KEEPALIVE ====================

    def _start_keepalive(self) -> None:
        self._stop_keepalive()
        self._last_server_ping = time.monotonic()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())

    def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _keepalive_loop(self) -> None:
        """Track server pings; Engine.IO servers ping every pingInterval ms."""
        interval = self.ping_interval_ms / 1000
        while self._state == ConnectionState.CONNECTED:
            await asyncio.sleep(interval)
            if self._last_server_ping is None:
                continue
            silence = time.monotonic() - self._last_server_ping
            if silence > 2 * interval:
                logger.warning(
                    "keepalive_overdue",
                    url=self.url,
                    silence_sec=round(silence, 3),
                    ping_interval_ms=self.ping_interval_ms,
                )
                self._status(f"Keepalive overdue: no ping for {silence:.1f}s")

    # ==================== STATUS ====================

    def _status(self, message: str) -> None:
        for listener in list(self._status_listeners):
            try:
                listener(message)
            except Exception:
                logger.warning("status_listener_failed", exc_info=True)

    def get_stats(self) -> Dict[str, Any]:
        """Get connection statistics."""
        return {
            "url": self.url,
            "state": self._state.value,
            "protocol": self.detected_protocol.value,
            "ping_interval_ms": self.ping_interval_ms,
            "connected_at": self.connected_at.isoformat() if self.connected_at else None,
            "last_send": self.last_send.isoformat() if self.last_send else None,
            "send_count": self.send_count,
            "recv_count": self.recv_count,
        }
