from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import sys
from typing import Iterable, Optional, TextIO

from .addressing import shorten_for_display
from .config import WebmailConfig, configure_logging
from .envelope import encode_envelope
from .mailbox import Mailbox
from .memory_network import InMemoryNetwork
from .network import StaticNameResolver
from .projection import WELCOME_SENT_AT_NS
from .provider_check import PROVIDER_VALID, validate_provider_id
from .store import SendError

# One simulated second per generated timestamp, starting a day after the welcome note.
SIMULATION_START_NS = WELCOME_SENT_AT_NS + 86_400 * 1_000_000_000
SIMULATION_STEP_NS = 1_000_000_000


def _emit(output: TextIO, payload: dict) -> None:
    output.write(json.dumps(payload, sort_keys=True) + "\n")


def _list_frame(mailbox: Mailbox) -> dict:
    items = mailbox.reconcile()
    return {
        "t": "list",
        "selected": mailbox.selected_id,
        "items": [
            {
                "id": item.id,
                "label": item.label,
                "subject": item.subject,
                "preview": item.preview,
                "ts_ns": item.timestamp_ns,
                "welcome": item.is_welcome,
            }
            for item in items
        ],
    }


async def simulate(
    frames: Iterable[dict],
    output: TextIO,
    *,
    self_address: Optional[str] = None,
    search: str = "",
    config: Optional[WebmailConfig] = None,
) -> None:
    """Drive an in-memory network and a mailbox through JSON frames.

    Every frame processed after ``attach`` emits the projected conversation
    list as one JSON line; send failures emit an ``error`` line instead of
    aborting the run.
    """

    clock = itertools.count(SIMULATION_START_NS, SIMULATION_STEP_NS)
    network = InMemoryNetwork(now_func=lambda: next(clock))
    names = StaticNameResolver()
    mailbox = Mailbox(config, name_resolver=names)
    mailbox.search(search)

    def inbox(address: str) -> str:
        return network.register(address, inbox_id=f"inbox:{address.lower()}")

    if self_address:
        inbox(self_address)

    try:
        for frame in frames:
            frame_type = frame.get("t")
            if frame_type == "name.set":
                names.register(frame["name"], frame["address"])
                continue
            if frame_type == "conv.create":
                network.open_dm(
                    inbox(frame["from"]),
                    inbox(frame["to"]),
                    conversation_id=frame.get("conv_id"),
                    created_at_ns=frame.get("ts_ns"),
                )
            elif frame_type == "msg.send":
                content = frame.get("content")
                if content is None:
                    content = encode_envelope(
                        frame.get("subject", ""),
                        frame.get("body", ""),
                        from_address=frame["from"],
                        to_address=frame.get("to"),
                        now_ms=frame.get("ts_ns", 0) // 1_000_000 or None,
                    )
                network.deliver(
                    frame["conv_id"],
                    inbox(frame["from"]),
                    content,
                    message_id=frame.get("msg_id"),
                    sent_at_ns=frame.get("ts_ns"),
                )
            elif frame_type == "consent.set":
                network.set_consent(inbox(frame["address"]), frame["conv_id"], frame["state"])
            elif frame_type == "attach":
                address = frame.get("address") or self_address
                if not address:
                    raise ValueError("attach needs an address (frame field or --self)")
                await mailbox.attach(network.client_for(inbox(address)))
            elif frame_type == "search":
                mailbox.search(frame.get("query", ""))
            elif frame_type == "select":
                await mailbox.select(frame.get("conv_id"))
            elif frame_type == "compose":
                try:
                    await mailbox.compose(frame.get("to", ""), frame.get("subject", ""), frame.get("body", ""))
                except SendError as exc:
                    _emit(output, {"t": "error", "message": str(exc)})
            else:
                raise ValueError(f"unsupported frame type: {frame_type}")

            await network.settle()
            if mailbox.store is not None:
                _emit(output, _list_frame(mailbox))
    finally:
        await mailbox.detach()


def _checked_frame(frame: object, where: str) -> dict:
    if not isinstance(frame, dict) or not isinstance(frame.get("t"), str):
        raise ValueError(f"{where}: expected an object with a string \"t\" field")
    return frame


def _load_frames(handle: TextIO) -> list[dict]:
    """Read frames as a JSON array, a single JSON object, or JSON lines."""

    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        frames = []
        for number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                frame = json.loads(line)
            except json.JSONDecodeError as exc:
                raise ValueError(f"line {number}: {exc.msg}") from exc
            frames.append(_checked_frame(frame, f"line {number}"))
        return frames

    if isinstance(parsed, list):
        return [_checked_frame(frame, f"frame {index}") for index, frame in enumerate(parsed)]
    return [_checked_frame(parsed, "frame 0")]


def _run_simulation(args: argparse.Namespace, config: WebmailConfig, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    asyncio.run(simulate(frames, output, self_address=args.self_address, search=args.search, config=config))
    return 0


def _run_check_provider(args: argparse.Namespace, config: WebmailConfig, output: TextIO) -> int:
    client_id = args.client_id if args.client_id is not None else config.identity_provider_id
    result = asyncio.run(
        validate_provider_id(
            client_id,
            rpc_url=config.identity_provider_rpc_url,
            timeout_seconds=config.provider_check_timeout_seconds,
        )
    )
    line = result.status if result.error is None else f"{result.status}: {result.error}"
    output.write(line + "\n")
    return 0 if result.status == PROVIDER_VALID else 1


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(prog="webmail", description="xmtp.mx webmail core")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay network frames through a mailbox")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )
    simulate_parser.add_argument("--self", dest="self_address", default=None, help="Address whose inbox is shown")
    simulate_parser.add_argument("--search", default="", help="Initial search query")

    check_parser = subparsers.add_parser("check-provider", help="Validate the identity provider id")
    check_parser.add_argument(
        "client_id",
        nargs="?",
        default=None,
        help="Id to check; defaults to WEBMAIL_IDENTITY_PROVIDER_ID",
    )

    shorten_parser = subparsers.add_parser("shorten", help="Print the display form of an address")
    shorten_parser.add_argument("value")
    shorten_parser.add_argument("--chars", type=int, default=4, help="Characters kept on each side")

    args = parser.parse_args(argv)
    config = WebmailConfig.from_env()
    configure_logging(config)

    if args.command == "simulate":
        return _run_simulation(args, config, output)
    if args.command == "check-provider":
        return _run_check_provider(args, config, output)

    output.write(shorten_for_display(args.value, args.chars) + "\n")
    return 0
