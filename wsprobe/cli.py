"""
wsprobe command line

Subcommands:
1. detect  - classify a captured stream (one frame per line)
2. decode  - decode a single frame into its uniform representation
3. markers - list the position markers found in a template
4. fuzz    - deliver a payload set through a template over a live connection
5. send    - send one frame and print the responses
"""
import argparse
import asyncio
import logging
import sys
from typing import Dict, List, Optional

import structlog

from wsprobe.engine.classifier import detect_protocol
from wsprobe.engine.codecs import decode
from wsprobe.engine.connection_manager import WebSocketConnection
from wsprobe.engine.fuzz_driver import FuzzDriver, MutationResult
from wsprobe.engine.mutator import PayloadEncoding, find_markers
from wsprobe.exceptions import ProbeError
from wsprobe.logging import setup_logging
from wsprobe.models import FrameProtocol
from wsprobe.payloads import PAYLOAD_SETS, get_payload_set, load_payload_file

logger = structlog.get_logger()


def _read_frames(source: str) -> List[str]:
    if source == "-":
        text = sys.stdin.read()
    else:
        with open(source, encoding="utf-8") as handle:
            text = handle.read()
    return [line for line in text.splitlines() if line]


def parse_headers(values: Optional[List[str]]) -> Dict[str, str]:
    """Turn repeated ``Name: value`` arguments into a header mapping."""
    headers: Dict[str, str] = {}
    for value in values or []:
        name, sep, rest = value.partition(":")
        if not sep:
            raise argparse.ArgumentTypeError(f"Header must be 'Name: value', got {value!r}")
        headers[name.strip()] = rest.strip()
    return headers


def _build_connection(args: argparse.Namespace) -> WebSocketConnection:
    connection = WebSocketConnection(on_status=lambda message: print(f"[status] {message}", file=sys.stderr))
    connection.set_headers(parse_headers(args.header))
    connection.set_subprotocol(args.subprotocol)
    if args.state_chain:
        connection.set_state_chain(_read_frames(args.state_chain))
    return connection


def _print_result(result: MutationResult) -> None:
    status = "sent" if result.sent else f"FAILED ({result.error})"
    print(f"#{result.index:<4} {status:<10} {result.payload}")


# ==================== COMMANDS ====================


def cmd_detect(args: argparse.Namespace) -> int:
    frames = _read_frames(args.source)
    print(detect_protocol(frames).value)
    return 0


def cmd_decode(args: argparse.Namespace) -> int:
    protocol = FrameProtocol(args.protocol) if args.protocol else detect_protocol([args.frame])
    frame = decode(args.frame, protocol)
    print(frame.model_dump_json(indent=2))
    return 0


def cmd_markers(args: argparse.Namespace) -> int:
    for name in find_markers(args.template):
        print(name)
    return 0


async def cmd_fuzz(args: argparse.Namespace) -> int:
    if args.payload_file:
        payloads = load_payload_file(args.payload_file)
    else:
        payloads = get_payload_set(args.payload_set)

    connection = _build_connection(args)
    driver = FuzzDriver(connection, args.url)
    try:
        results = await driver.run(
            args.template,
            payloads,
            field=args.field,
            markers=args.marker or None,
            delay_ms=args.delay_ms,
            encoding=PayloadEncoding(args.encoding),
            on_result=_print_result,
        )
    finally:
        await connection.disconnect()

    for index, messages in sorted(driver.responses.items()):
        for message in messages:
            print(f"#{index:<4} <- {message}")

    return 0 if all(result.sent for result in results) else 1


async def cmd_send(args: argparse.Namespace) -> int:
    connection = _build_connection(args)
    driver = FuzzDriver(connection, args.url)
    try:
        responses = await driver.send_once(args.frame, wait_ms=args.wait_ms)
    finally:
        await connection.disconnect()

    for message in responses:
        print(message)
    return 0


# ==================== PARSER ====================


def _add_connection_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("url", help="ws:// or wss:// target URL")
    parser.add_argument(
        "--header",
        action="append",
        help="Handshake header 'Name: value' (repeatable)",
    )
    parser.add_argument(
        "--subprotocol",
        help="Sec-WebSocket-Protocol to request",
    )
    parser.add_argument(
        "--state-chain",
        help="File of frames (one per line) replayed after every connect",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="wsprobe", description="WebSocket sub-protocol probe and fuzzer")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--log-file",
        action="store_true",
        help="Also write logs to the rotating log file",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    detect = commands.add_parser("detect", help="Classify a captured frame stream")
    detect.add_argument("source", help="File with one frame per line, or '-' for stdin")
    detect.set_defaults(handler=cmd_detect)

    decode_cmd = commands.add_parser("decode", help="Decode a single frame")
    decode_cmd.add_argument("frame", help="Frame text")
    decode_cmd.add_argument(
        "--protocol",
        choices=[p.value for p in FrameProtocol],
        help="Codec to use (detected from the frame when omitted)",
    )
    decode_cmd.set_defaults(handler=cmd_decode)

    markers = commands.add_parser("markers", help="List position markers in a template")
    markers.add_argument("template", help="Template frame text")
    markers.set_defaults(handler=cmd_markers)

    fuzz = commands.add_parser("fuzz", help="Deliver payloads through a template")
    _add_connection_arguments(fuzz)
    fuzz.add_argument("--template", required=True, help="Template frame text")
    target = fuzz.add_mutually_exclusive_group()
    target.add_argument("--field", help="Named field to replace")
    target.add_argument(
        "--marker",
        action="append",
        help="Marker name to replace (repeatable; default: all markers)",
    )
    source = fuzz.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--payload-set",
        choices=list(PAYLOAD_SETS),
        help="Built-in payload set",
    )
    source.add_argument("--payload-file", help="File with one payload per line")
    fuzz.add_argument(
        "--delay-ms",
        type=int,
        default=0,
        help="Delay after each payload",
    )
    fuzz.add_argument(
        "--encoding",
        choices=[e.value for e in PayloadEncoding],
        default=PayloadEncoding.NONE.value,
        help="Encoding applied to each payload",
    )
    fuzz.set_defaults(handler=cmd_fuzz)

    send = commands.add_parser("send", help="Send one frame and print responses")
    _add_connection_arguments(send)
    send.add_argument("frame", help="Frame text to send")
    send.add_argument(
        "--wait-ms",
        type=int,
        default=None,
        help="How long to collect responses",
    )
    send.set_defaults(handler=cmd_send)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging("wsprobe", level=logging.DEBUG if args.verbose else logging.WARNING, to_file=args.log_file)

    try:
        outcome = args.handler(args)
        if asyncio.iscoroutine(outcome):
            outcome = asyncio.run(outcome)
    except ProbeError as e:
        logger.error("command_failed", command=args.command, error=e.message, details=e.details)
        print(f"error: {e.message}", file=sys.stderr)
        return 2
    return outcome


if __name__ == "__main__":
    sys.exit(main())
