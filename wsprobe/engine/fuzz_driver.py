"""
Fuzz Driver - Delivers templated payload variants over a WebSocketConnection.

For each payload, in order:
1. Reconnect (bounded by a timeout) if the connection dropped, then give the
   state chain replay a moment to settle
2. Substitute the payload into the template (named field or markers)
3. Send the frame and record a MutationResult
4. Sleep the configured inter-frame delay

A failed reconnect is recorded against that payload and the run moves on.
``stop()`` ends the run after the in-flight payload.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, TYPE_CHECKING

import structlog

from wsprobe.config import settings
from wsprobe.engine.codecs import decode
from wsprobe.engine.mutator import PayloadEncoding, TemplateMutator
from wsprobe.exceptions import ProbeError, SendError
from wsprobe.models import ConnectionState

if TYPE_CHECKING:
    from wsprobe.engine.connection_manager import WebSocketConnection

logger = structlog.get_logger()


@dataclass(frozen=True)
class MutationResult:
    """Outcome of delivering one payload."""
    index: int
    payload: str
    sent: bool
    frame: Optional[str] = None  # exact text transmitted
    error: Optional[str] = None


ResultCallback = Callable[[MutationResult], None]


class FuzzDriver:
    """
    Runs payload sequences against one connection.

    Inbound application frames are attributed to the most recently sent
    payload and collected in ``responses`` (index -> messages); control
    frames of the detected protocol are ignored.

    Example usage:
        driver = FuzzDriver(connection, "wss://target.example/ws")
        results = await driver.run(
            '42["search",{"q":"§q§"}]',
            get_payload_set("XSS"),
            delay_ms=100,
        )
    """

    def __init__(
        self,
        connection: "WebSocketConnection",
        url: str,
        connect_timeout_sec: Optional[float] = None,
        reconnect_settle_ms: Optional[int] = None,
    ):
        self.connection = connection
        self.url = url
        self.connect_timeout_sec = (
            settings.connect_timeout_sec if connect_timeout_sec is None else connect_timeout_sec
        )
        self.reconnect_settle_ms = (
            settings.reconnect_settle_ms if reconnect_settle_ms is None else reconnect_settle_ms
        )

        self.responses: Dict[int, List[str]] = {}
        self.running = False
        self._stop_requested = False
        self._current_index: Optional[int] = None

    def stop(self) -> None:
        """Request a cooperative stop; checked once per payload."""
        self._stop_requested = True

    async def run(
        self,
        template: str,
        payloads: Iterable[str],
        field: Optional[str] = None,
        markers: Optional[Iterable[str]] = None,
        delay_ms: int = 0,
        encoding: PayloadEncoding = PayloadEncoding.NONE,
        on_result: Optional[ResultCallback] = None,
    ) -> List[MutationResult]:
        """
        Deliver every payload substituted into ``template``.

        Args:
            template: Frame text to mutate
            payloads: Ordered payload strings (may be empty)
            field: Named-field mode target
            markers: Position-marker mode targets (all template markers if
                     neither ``field`` nor ``markers`` is given)
            delay_ms: Sleep after each payload
            encoding: Encoding applied to each payload before substitution
            on_result: Called synchronously with each result as it is produced

        Returns:
            One MutationResult per attempted payload, in input order
        """
        mutator = TemplateMutator(template, field=field, markers=markers, encoding=encoding)
        payloads = list(payloads)
        results: List[MutationResult] = []

        self.responses = {}
        self._stop_requested = False
        self.running = True
        self.connection.add_message_listener(self._record_response)

        logger.info(
            "fuzz_run_started",
            url=self.url,
            payloads=len(payloads),
            mode=mutator.mode,
            delay_ms=delay_ms,
        )

        try:
            for index, payload in enumerate(payloads):
                if self._stop_requested:
                    logger.info("fuzz_run_stopped", url=self.url, completed=len(results))
                    break

                result = await self._deliver(index, payload, mutator)
                results.append(result)
                if on_result:
                    try:
                        on_result(result)
                    except Exception:
                        logger.warning("result_callback_failed", index=index, exc_info=True)

                if delay_ms > 0:
                    await asyncio.sleep(delay_ms / 1000)
        finally:
            self.connection.remove_message_listener(self._record_response)
            self.running = False
            self._current_index = None

        logger.info(
            "fuzz_run_completed",
            url=self.url,
            sent=sum(1 for r in results if r.sent),
            failed=sum(1 for r in results if not r.sent),
        )
        return results

    async def _deliver(self, index: int, payload: str, mutator: TemplateMutator) -> MutationResult:
        if self.connection.state != ConnectionState.CONNECTED:
            logger.info("fuzz_reconnecting", url=self.url, index=index)
            try:
                await self._reconnect()
            except ProbeError as e:
                logger.warning("fuzz_reconnect_failed", url=self.url, index=index, error=e.message)
                return MutationResult(
                    index=index,
                    payload=payload,
                    sent=False,
                    error=f"Reconnection failed: {e.message}",
                )

        frame = mutator.apply(payload)
        self._current_index = index
        sent = await self.connection.send(frame)

        logger.debug("fuzz_payload_sent", index=index, sent=sent, length=len(frame))
        return MutationResult(
            index=index,
            payload=payload,
            sent=sent,
            frame=frame,
            error=None if sent else "Send failed",
        )

    async def _reconnect(self) -> None:
        await self.connection.connect(self.url, timeout=self.connect_timeout_sec)
        if self.reconnect_settle_ms > 0:
            await asyncio.sleep(self.reconnect_settle_ms / 1000)

    def _record_response(self, message: str) -> None:
        if self._current_index is None:
            return
        if decode(message, self.connection.detected_protocol).is_control:
            return
        self.responses.setdefault(self._current_index, []).append(message)

    async def send_once(self, frame: str, wait_ms: Optional[int] = None) -> List[str]:
        """
        One-shot send: connect if needed, send ``frame`` and collect the
        application frames that arrive within ``wait_ms``.

        Raises:
            SendError: the frame could not be sent
        """
        wait_ms = settings.response_window_ms if wait_ms is None else wait_ms
        collected: List[str] = []

        def _collect(message: str) -> None:
            if not decode(message, self.connection.detected_protocol).is_control:
                collected.append(message)

        if self.connection.state != ConnectionState.CONNECTED:
            await self._reconnect()

        self.connection.add_message_listener(_collect)
        try:
            if not await self.connection.send(frame):
                raise SendError(f"Failed to send frame to {self.url}", details={"length": len(frame)})
            if wait_ms > 0:
                await asyncio.sleep(wait_ms / 1000)
        finally:
            self.connection.remove_message_listener(_collect)

        logger.info("single_frame_sent", url=self.url, responses=len(collected))
        return collected
