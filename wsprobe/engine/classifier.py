"""
Frame Classifier - Decides which sub-protocol governs a WebSocket stream.

Rules are evaluated per sample, in priority order, and the first sample
matching any rule decides. Protocol-unique markers (record separator,
explicit type fields) are checked before looser bracket heuristics so that
frames sharing superficial syntax are not misfiled as plain JSON.
"""
from typing import Iterable, Optional

import structlog

from wsprobe.config import settings
from wsprobe.models import FrameProtocol

logger = structlog.get_logger()

STOMP_COMMANDS = ("CONNECT", "CONNECTED", "SEND", "SUBSCRIBE", "MESSAGE", "STOMP")

GRAPHQL_TYPE_MARKERS = (
    '"type":"connection_init"',
    '"type":"start"',
    '"type":"subscribe"',
)

ACTION_CABLE_WELCOME = ('"type":"welcome"', '"type": "welcome"')


def classify_sample(frame: str) -> Optional[FrameProtocol]:
    """Apply the detection rules to a single frame; None when nothing matches."""
    # Engine.IO open packet
    if frame.startswith("0{") and '"sid"' in frame:
        return FrameProtocol.SOCKET_IO

    # Socket.IO message packets: 40..46
    if len(frame) >= 2 and frame[0] == "4" and "0" <= frame[1] <= "6":
        return FrameProtocol.SOCKET_IO

    if frame.endswith("\x1e"):
        return FrameProtocol.SIGNALR

    if any(marker in frame for marker in ACTION_CABLE_WELCOME):
        return FrameProtocol.ACTION_CABLE

    if any(marker in frame for marker in GRAPHQL_TYPE_MARKERS):
        return FrameProtocol.GRAPHQL_WS

    if frame.startswith(STOMP_COMMANDS):
        return FrameProtocol.STOMP

    if frame in ("o", "h") or frame.startswith("a[") or frame.startswith("c["):
        return FrameProtocol.SOCKJS

    return None


def detect_protocol(samples: Iterable[Optional[str]]) -> FrameProtocol:
    """
    Classify a stream from its first frames.

    Samples longer than ``settings.max_input_length`` are skipped. When no
    rule matches, a first sample that looks like JSON gives ``json``,
    anything else ``raw``.
    """
    samples = list(samples or [])
    if not samples:
        return FrameProtocol.RAW

    for sample in samples:
        if sample is None or len(sample) > settings.max_input_length:
            continue
        protocol = classify_sample(sample)
        if protocol is not None:
            logger.debug("protocol_detected", protocol=protocol.value, samples=len(samples))
            return protocol

    first = samples[0] or ""
    if len(first) > settings.max_input_length:
        return FrameProtocol.RAW

    first = first.strip()
    if first.startswith("{") or first.startswith("["):
        return FrameProtocol.JSON
    return FrameProtocol.RAW
