"""Terminal front end: pair by pasting blobs, then send or receive one file."""

import argparse
import asyncio
import logging
import sys

from config import (
    CHUNK_SIZE,
    DEFAULT_SAVE_DIR,
    LOG_FORMAT,
    LOG_LEVEL,
    MAX_CHUNK_SIZE,
    MIN_CHUNK_SIZE,
)
from errors import ProtocolViolation, SignalDecodeError
from session.manager import SessionManager
from session.models import SessionSettings, SessionState
from transfer.formatting import format_eta, format_size, format_speed
from transport.base import Role
from transport.tcp import TcpTransport

logger = logging.getLogger(__name__)


def _chunk_size(text: str) -> int:
    try:
        size = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not a number: {text!r}")
    if not MIN_CHUNK_SIZE <= size <= MAX_CHUNK_SIZE:
        raise argparse.ArgumentTypeError(
            f"must be between {MIN_CHUNK_SIZE} and {MAX_CHUNK_SIZE} bytes"
        )
    return size


async def _prompt(text: str) -> str:
    print(text, file=sys.stderr)
    return (await asyncio.to_thread(sys.stdin.readline)).strip()


async def _paste_signal(session, what: str) -> None:
    """Keep asking until the pasted blob decodes."""
    while True:
        blob = await _prompt(f"Paste the {what} from the other side and press Enter:")
        if not blob:
            continue
        try:
            await session.supply_remote_signal(blob)
            return
        except SignalDecodeError as e:
            print(f"That did not look right ({e}). Try again.", file=sys.stderr)


async def _print_events(event_type: str, data: dict) -> None:
    if event_type == "progress":
        print(
            f"\r{data['progress_percent']:5.1f}%  "
            f"{format_size(data['transferred_bytes'])} / {format_size(data['total_bytes'])}  "
            f"{format_speed(data['speed_bps'])}  {format_eta(data['eta_seconds'])}   ",
            end="",
            file=sys.stderr,
            flush=True,
        )
    elif event_type == "notification":
        print(f"\n{data['message']}", file=sys.stderr)


def _manager(args: argparse.Namespace) -> SessionManager:
    hosts = args.host or None
    manager = SessionManager(
        transport_factory=lambda: TcpTransport(hosts=hosts),
        settings=SessionSettings(chunk_size=args.chunk_size),
        save_dir=getattr(args, "out", DEFAULT_SAVE_DIR),
    )
    manager.on_event(_print_events)
    return manager


async def cmd_send(args: argparse.Namespace) -> int:
    manager = _manager(args)
    session = await manager.start_session(Role.INITIATOR)
    print(f"Pairing code: {session.share_code}", file=sys.stderr)
    print("Send this to the receiver:", file=sys.stderr)
    print(session.local_signal)

    await _paste_signal(session, "answer")
    state = await session.wait_for(SessionState.CONNECTED)
    if state != SessionState.CONNECTED:
        return 1

    await session.send_file(args.file)
    state = await session.wait_for(SessionState.COMPLETED, SessionState.CONNECTED)
    if state == SessionState.CONNECTED:
        print("\nThe receiver declined the file.", file=sys.stderr)
        await session.close()
    return 0 if state == SessionState.COMPLETED else 1


async def cmd_receive(args: argparse.Namespace) -> int:
    manager = _manager(args)
    session = await manager.start_session(Role.RESPONDER)
    print(f"Pairing code: {session.share_code}", file=sys.stderr)

    await _paste_signal(session, "offer")
    print("Send this back to the sender:", file=sys.stderr)
    print(session.local_signal)

    state = await session.wait_for(SessionState.CONFIRMING)
    if state != SessionState.CONFIRMING:
        return 1

    offered = session.incoming.metadata
    if args.yes:
        answer = "y"
    else:
        answer = await _prompt(
            f"Accept '{offered.name}' ({format_size(offered.size_bytes)})? [y/N]"
        )
    try:
        if answer.lower() not in ("y", "yes"):
            await session.decline()
            await session.close()
            return 0
        await session.accept()
    except ProtocolViolation:
        # The offer was declined on our behalf while the prompt was open
        print("The offer expired before it was answered.", file=sys.stderr)
        await session.close()
        return 1
    state = await session.wait_for(SessionState.COMPLETED)
    if state == SessionState.COMPLETED and manager.saved_files:
        print(manager.saved_files[-1])
    return 0 if state == SessionState.COMPLETED else 1


def cmd_serve(args: argparse.Namespace) -> int:
    from main import run

    run()
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(prog="peerdrop", description="Direct peer-to-peer file transfer.")
    sub = p.add_subparsers(dest="cmd", required=True)

    def add_common(x: argparse.ArgumentParser) -> None:
        x.add_argument("--chunk-size", type=_chunk_size, default=CHUNK_SIZE)
        x.add_argument("--host", action="append", help="address to advertise (repeatable)")

    send = sub.add_parser("send", help="offer a file to a peer")
    add_common(send)
    send.add_argument("file")
    send.set_defaults(func=cmd_send)

    receive = sub.add_parser("receive", help="receive a file from a peer")
    add_common(receive)
    receive.add_argument("--out", default=DEFAULT_SAVE_DIR)
    receive.add_argument("--yes", action="store_true", help="accept without asking")
    receive.set_defaults(func=cmd_receive)

    serve = sub.add_parser("serve", help="run the HTTP/WebSocket API")
    serve.set_defaults(func=cmd_serve)

    args = p.parse_args(argv)
    logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
    if args.func is cmd_serve:
        return cmd_serve(args)
    return int(asyncio.run(args.func(args)))


if __name__ == "__main__":
    raise SystemExit(main())
