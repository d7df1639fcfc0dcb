"""
Frame Inspector - Entry point for frames captured by an intercepting proxy.

One inspector per WebSocket endpoint. It classifies the stream from its
first frames, decodes every frame into a FrameEntry, keeps a bounded
history, and lets an optional interceptor forward, rewrite or drop
application frames. Control frames always pass through unchanged.
"""
import itertools
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, List, Optional

import structlog

from wsprobe.config import settings
from wsprobe.engine.classifier import detect_protocol
from wsprobe.engine.codecs import decode
from wsprobe.models import Direction, FrameEntry, FrameProtocol

logger = structlog.get_logger()

# Returns the text to forward, or None to drop the frame
Interceptor = Callable[[FrameEntry], Optional[str]]


class InterceptAction(str, Enum):
    FORWARD = "forward"
    MODIFY = "modify"
    DROP = "drop"


@dataclass(frozen=True)
class InterceptDecision:
    action: InterceptAction
    entry: FrameEntry
    text: Optional[str] = None  # replacement text for MODIFY


class FrameInspector:
    """Decodes and records the frames of one captured WebSocket."""

    def __init__(self, url: str, history_limit: Optional[int] = None):
        self.url = url
        self.protocol = FrameProtocol.RAW
        self.history: Deque[FrameEntry] = deque(
            maxlen=settings.history_limit if history_limit is None else history_limit
        )
        self._detection_frames: List[str] = []
        self._ids = itertools.count()

    def _observe(self, text: str) -> None:
        if len(self._detection_frames) >= settings.detection_sample_size:
            return
        self._detection_frames.append(text)
        detected = detect_protocol(self._detection_frames)
        if detected != self.protocol:
            logger.info("stream_protocol_detected", url=self.url, protocol=detected.value)
        self.protocol = detected

    def _record(self, entry: FrameEntry) -> FrameEntry:
        self.history.append(entry)
        return entry

    def capture(self, text: str, direction: Direction) -> FrameEntry:
        """Decode a text frame and record it without interception."""
        self._observe(text)
        decoded = decode(text, self.protocol)
        return self._record(
            FrameEntry(
                id=next(self._ids),
                direction=direction,
                raw=text,
                url=self.url,
                protocol=self.protocol,
                is_control=decoded.is_control,
                event_name=decoded.event_name,
                length=len(text),
                decoded=decoded,
            )
        )

    def inspect(
        self,
        text: str,
        direction: Direction,
        interceptor: Optional[Interceptor] = None,
    ) -> InterceptDecision:
        """
        Capture a frame and decide what happens to it.

        Args:
            text: Captured frame text
            direction: Which peer sent it
            interceptor: Caller hook; returns new text, or None to drop

        Returns:
            InterceptDecision (forward unchanged, forward modified, or drop)
        """
        entry = self.capture(text, direction)

        if interceptor is None or entry.is_control:
            return InterceptDecision(InterceptAction.FORWARD, entry)

        replacement = interceptor(entry)
        if replacement is None:
            logger.info("frame_dropped", url=self.url, frame_id=entry.id)
            return InterceptDecision(InterceptAction.DROP, entry)
        if replacement != text:
            logger.info("frame_modified", url=self.url, frame_id=entry.id)
            return InterceptDecision(InterceptAction.MODIFY, entry, replacement)
        return InterceptDecision(InterceptAction.FORWARD, entry)

    def inspect_binary(self, size: int, direction: Direction) -> FrameEntry:
        """Binary frames are recorded by size only and always forwarded."""
        placeholder = f"[binary: {size} bytes]"
        return self._record(
            FrameEntry(
                id=next(self._ids),
                direction=direction,
                raw=placeholder,
                url=self.url,
                protocol=self.protocol,
                event_name="binary",
                length=size,
            )
        )
