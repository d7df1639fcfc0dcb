"""
Sub-Protocol Codecs - Decode frames into DecodedFrame and re-encode mutated bodies.

One codec per FrameProtocol, all sharing the FrameCodec contract:
- decode(raw) -> DecodedFrame   (never raises through the module-level decode())
- encode(frame, body) -> str    (best-effort inverse, syntactically valid
                                 for the frame's protocol)

Codecs are stateless; a single instance of each is registered in the
dispatch table keyed by FrameProtocol.
"""
import re
from abc import ABC, abstractmethod
from typing import Dict, Optional

import structlog

from wsprobe.engine.field_extractor import extract_fields, match_brackets, unescape_string
from wsprobe.models import DecodedFrame, FrameProtocol

logger = structlog.get_logger()

RECORD_SEPARATOR = "\x1e"
NUL = "\x00"


def _find(pattern: "re.Pattern", text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


class FrameCodec(ABC):
    """Base class for sub-protocol codecs"""

    protocol: FrameProtocol

    def frame(self, raw: str, is_control: bool = False, event_name: str = "") -> DecodedFrame:
        return DecodedFrame(
            raw=raw, protocol=self.protocol, is_control=is_control, event_name=event_name
        )

    @abstractmethod
    def decode(self, raw: str) -> DecodedFrame:
        """Decode one raw frame."""

    @abstractmethod
    def encode(self, frame: DecodedFrame, body: str) -> str:
        """Wrap a (possibly mutated) fuzzable body back into the frame's envelope."""


class SocketIOCodec(FrameCodec):
    """
    Engine.IO / Socket.IO framing.

    Control packets are matched as fixed tokens. Event and ack packets follow
    ``<engine type><socket type>[/namespace,][ack id]["event"[,args]]``.
    """

    protocol = FrameProtocol.SOCKET_IO

    EVENT_PATTERN = re.compile(r'^(\d)(\d)(?:(/[^,]*),)?(\d+)?\["([^"]+)"(?:,(.*))?\]$', re.DOTALL)

    CONTROL_TOKENS = {"2": "ping", "3": "pong", "1": "close", "40": "connect", "41": "disconnect"}

    def decode(self, raw: str) -> DecodedFrame:
        if raw in self.CONTROL_TOKENS:
            return self.frame(raw, True, self.CONTROL_TOKENS[raw])
        if raw.startswith("0{"):
            return self.frame(raw, True, "open")
        if raw.startswith("40{") or raw.startswith("40/"):
            return self.frame(raw, True, "connect")

        match = self.EVENT_PATTERN.match(raw)
        if match:
            frame = self.frame(raw, event_name=match.group(5))
            frame.engineio_type = match.group(1)
            frame.socketio_type = match.group(2)
            frame.namespace = match.group(3) or "/"
            frame.ack_id = match.group(4)
            frame.body = match.group(6)
            if frame.body is not None:
                frame.fields = extract_fields(frame.body)
            return frame

        if raw.startswith("43"):
            return self.frame(raw, event_name="ack")

        return self.frame(raw)

    def encode(self, frame: DecodedFrame, body: str) -> str:
        # control packets and unparsed acks carry no event envelope
        if frame.is_control or frame.engineio_type is None:
            return frame.raw

        parts = [frame.engineio_type, frame.socketio_type or "2"]
        if frame.namespace and frame.namespace != "/":
            parts.append(frame.namespace + ",")
        if frame.ack_id:
            parts.append(frame.ack_id)

        parts.append('["' + frame.event_name + '"')
        if body:
            parts.append("," + body)
        parts.append("]")
        return "".join(parts)


class SignalRCodec(FrameCodec):
    """ASP.NET SignalR JSON hub protocol: JSON records terminated by 0x1E."""

    protocol = FrameProtocol.SIGNALR

    TARGET_PATTERN = re.compile(r'"target"\s*:\s*"([^"]+)"')
    TYPE_PATTERN = re.compile(r'"type"\s*:\s*(\d+)')
    PING_PATTERN = re.compile(r'"type":\s?6\b')
    CLOSE_PATTERN = re.compile(r'"type":\s?7\b')

    MESSAGE_TYPES = {
        1: "Invocation",
        2: "StreamItem",
        3: "Completion",
        4: "StreamInvocation",
        5: "CancelInvocation",
    }

    def decode(self, raw: str) -> DecodedFrame:
        clean = raw[:-1] if raw.endswith(RECORD_SEPARATOR) else raw

        if self.PING_PATTERN.search(clean):
            return self.frame(raw, True, "ping")
        if self.CLOSE_PATTERN.search(clean):
            return self.frame(raw, True, "close")

        frame = self.frame(raw, event_name=_find(self.TARGET_PATTERN, clean) or "")
        message_type = _find(self.TYPE_PATTERN, clean)
        if message_type is not None:
            frame.signalr_type = int(message_type)
            frame.signalr_type_name = self.MESSAGE_TYPES.get(frame.signalr_type)

        frame.body = clean
        frame.fields = extract_fields(clean)
        return frame

    def encode(self, frame: DecodedFrame, body: str) -> str:
        return body.rstrip(RECORD_SEPARATOR) + RECORD_SEPARATOR


class ActionCableCodec(FrameCodec):
    """
    Rails Action Cable.

    ``data`` and ``identifier`` are JSON documents serialized into JSON
    strings; the unescaped ``data`` document is what gets fuzzed.
    """

    protocol = FrameProtocol.ACTION_CABLE

    CONTROL_TYPES = ("welcome", "ping", "confirm_subscription")

    COMMAND_PATTERN = re.compile(r'"command"\s*:\s*"([^"]+)"')
    TYPE_PATTERN = re.compile(r'"type"\s*:\s*"([^"]+)"')
    DATA_PATTERN = re.compile(r'("data"\s*:\s*)"((?:[^"\\]|\\.)*)"')
    IDENTIFIER_PATTERN = re.compile(r'"identifier"\s*:\s*"((?:[^"\\]|\\.)*)"')

    def decode(self, raw: str) -> DecodedFrame:
        frame = self.frame(raw)

        message_type = _find(self.TYPE_PATTERN, raw)
        if message_type in self.CONTROL_TYPES:
            frame.is_control = True
            frame.event_name = message_type
            return frame

        frame.event_name = _find(self.COMMAND_PATTERN, raw) or message_type or ""

        data = self.DATA_PATTERN.search(raw)
        if data:
            frame.inner_data = unescape_string(data.group(2))
            frame.fields = extract_fields(frame.inner_data)

        identifier = _find(self.IDENTIFIER_PATTERN, raw)
        if identifier is not None:
            frame.inner_identifier = unescape_string(identifier)

        frame.body = raw
        return frame

    def encode(self, frame: DecodedFrame, body: str) -> str:
        if frame.inner_data is None:
            return frame.raw

        escaped = body.replace("\\", "\\\\").replace('"', '\\"')
        return self.DATA_PATTERN.sub(
            lambda m: m.group(1) + '"' + escaped + '"', frame.raw, count=1
        )


class GraphQLWSCodec(FrameCodec):
    """GraphQL over WebSocket (subscriptions-transport-ws and graphql-ws)."""

    protocol = FrameProtocol.GRAPHQL_WS

    CONTROL_TYPES = (
        "connection_init",
        "connection_ack",
        "ka",
        "connection_keep_alive",
        "ping",
        "pong",
    )

    TYPE_PATTERN = re.compile(r'"type"\s*:\s*"([^"]+)"')
    ID_PATTERN = re.compile(r'"id"\s*:\s*"([^"]+)"')
    VARIABLES_PATTERN = re.compile(r'"variables"\s*:\s*(?=\{)')

    def decode(self, raw: str) -> DecodedFrame:
        frame = self.frame(raw)

        message_type = _find(self.TYPE_PATTERN, raw)
        if message_type is not None:
            frame.event_name = message_type
            frame.is_control = message_type in self.CONTROL_TYPES

        frame.subscription_id = _find(self.ID_PATTERN, raw)
        frame.fields = self._variables(raw)
        frame.body = raw
        return frame

    def _variables(self, raw: str) -> Dict[str, str]:
        match = self.VARIABLES_PATTERN.search(raw)
        if not match:
            return {}
        close = match_brackets(raw).get(match.end())
        if close is None:
            return {}
        return extract_fields(raw[match.end():close + 1])

    def encode(self, frame: DecodedFrame, body: str) -> str:
        return body


class StompCodec(FrameCodec):
    """STOMP frames: command line, header lines, blank line, body, NUL."""

    protocol = FrameProtocol.STOMP

    CONTROL_COMMANDS = ("CONNECTED", "HEARTBEAT", "RECEIPT", "ERROR")

    def decode(self, raw: str) -> DecodedFrame:
        lines = raw.split("\n")
        frame = self.frame(raw, event_name=lines[0].strip())
        frame.is_control = frame.event_name in self.CONTROL_COMMANDS

        headers: Dict[str, str] = {}
        body_lines = None
        for idx, line in enumerate(lines[1:], start=1):
            line = line.rstrip("\r")
            if not line:
                body_lines = lines[idx + 1:]
                break
            key, sep, value = line.partition(":")
            if sep and key:
                headers.setdefault(key, value)

        frame.headers = headers
        fields = dict(headers)

        if body_lines is not None:
            body = "\n".join(body_lines).rstrip("\r\n").rstrip(NUL)
            if body:
                frame.body = body
                stripped = body.strip()
                if stripped.startswith("{") or stripped.startswith("["):
                    for key, value in extract_fields(body).items():
                        fields.setdefault(key, value)

        frame.fields = fields
        return frame

    def encode(self, frame: DecodedFrame, body: str) -> str:
        parts = [frame.event_name, "\n"]
        for key, value in frame.headers.items():
            parts.append(f"{key}:{value}\n")
        parts.append("\n")
        parts.append(body.rstrip(NUL))
        parts.append(NUL)
        return "".join(parts)


class SockJSCodec(FrameCodec):
    """SockJS framing: o / h / c[...] control frames and a[...] message arrays."""

    protocol = FrameProtocol.SOCKJS

    def decode(self, raw: str) -> DecodedFrame:
        if raw == "o":
            return self.frame(raw, True, "open")
        if raw == "h":
            return self.frame(raw, True, "heartbeat")
        if raw.startswith("c["):
            return self.frame(raw, True, "close")

        frame = self.frame(raw)
        if raw.startswith("a["):
            frame.event_name = "message"
            frame.body = raw[2:-1] if raw.endswith("]") else raw[2:]
            frame.fields = extract_fields(frame.body)
        return frame

    def encode(self, frame: DecodedFrame, body: str) -> str:
        if frame.event_name == "message":
            return "a[" + body + "]"
        return body


class GenericCodec(FrameCodec):
    """
    Fallback for plain JSON and unrecognized text.

    Knows a vocabulary of keepalive tokens; anything that looks like JSON is
    decomposed without any envelope semantics.
    """

    KEEPALIVE_TOKENS = ("PING", "PONG", "HEARTBEAT", "HB", "KEEPALIVE", "KA", "2", "3", "{}", "[]")
    KEEPALIVE_PREFIXES = ('{"TYPE":"PING"', '{"TYPE":"PONG"', '{"TYPE": "PING"', '{"TYPE": "PONG"')

    def __init__(self, protocol: FrameProtocol):
        self.protocol = protocol

    def decode(self, raw: str) -> DecodedFrame:
        token = raw.strip().upper()
        if token in self.KEEPALIVE_TOKENS or token.startswith(self.KEEPALIVE_PREFIXES):
            if "PING" in token:
                event_name = "PING"
            elif "PONG" in token:
                event_name = "PONG"
            elif token == "2":
                event_name = "ping"
            elif token == "3":
                event_name = "pong"
            else:
                event_name = "keepalive"
            return self.frame(raw, True, event_name)

        frame = self.frame(raw)
        stripped = raw.strip()
        if stripped.startswith("{") or stripped.startswith("["):
            frame.body = raw
            frame.fields = extract_fields(raw)
        return frame

    def encode(self, frame: DecodedFrame, body: str) -> str:
        return body


CODECS: Dict[FrameProtocol, FrameCodec] = {
    FrameProtocol.SOCKET_IO: SocketIOCodec(),
    FrameProtocol.SIGNALR: SignalRCodec(),
    FrameProtocol.ACTION_CABLE: ActionCableCodec(),
    FrameProtocol.GRAPHQL_WS: GraphQLWSCodec(),
    FrameProtocol.STOMP: StompCodec(),
    FrameProtocol.SOCKJS: SockJSCodec(),
    FrameProtocol.JSON: GenericCodec(FrameProtocol.JSON),
    FrameProtocol.RAW: GenericCodec(FrameProtocol.RAW),
}


def get_codec(protocol: FrameProtocol) -> FrameCodec:
    return CODECS[FrameProtocol(protocol)]


def decode(raw: Optional[str], protocol: FrameProtocol) -> DecodedFrame:
    """
    Decode a frame under ``protocol``.

    Never raises: any failure degrades to a minimal frame tagged with the
    requested protocol and the raw text preserved.
    """
    protocol = FrameProtocol(protocol)
    raw = raw or ""
    try:
        return get_codec(protocol).decode(raw)
    except Exception as e:
        logger.debug(
            "frame_decode_degraded",
            protocol=protocol.value,
            error=str(e),
            error_type=type(e).__name__,
        )
        return DecodedFrame(raw=raw, protocol=protocol)


def encode(frame: DecodedFrame, body: str) -> str:
    """Re-encode a mutated fuzzable body into the frame's envelope."""
    return get_codec(frame.protocol).encode(frame, body)
