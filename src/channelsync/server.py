"""Command line entry points: run the gateway, seed channels, or simulate a client."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, Iterable, TextIO

from aiohttp import web

from .client import ChatClient, ViewState
from .config import GatewayConfig, load_client_config_from_env
from .errors import ChatError, LoadError, PersistenceError, SubscriptionError, ValidationError
from .models import CHANNELS, KINDS
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import InMemoryStore, seed_channels
from .ws_transport import create_app

logger = logging.getLogger(__name__)

ERROR_CODES = {
    ValidationError: "validation_error",
    PersistenceError: "persistence_error",
    LoadError: "load_error",
    SubscriptionError: "subscription_error",
}


def _error_code(exc: ChatError) -> str:
    for error_type, code in ERROR_CODES.items():
        if isinstance(exc, error_type):
            return code
    return "error"


def _state_frame(state: ViewState) -> Dict[str, Any]:
    return {
        "t": "state",
        "joined": state.joined,
        "display_name": state.display_name,
        "selected_channel_id": state.selected_channel_id,
        "channels": [channel.name for channel in state.channels],
        "messages": [{"author": m.author, "content": m.content} for m in state.messages],
        "online": [session.display_name for session in state.online],
        "messages_stale": state.messages_stale,
        "roster_stale": state.roster_stale,
    }


def _resolve_channel(client: ChatClient, ref: str) -> str:
    for channel in client.directory.channels:
        if ref in (channel.id, channel.name):
            return channel.id
    raise ValidationError(f"unknown channel: {ref}")


async def simulate(frames: Iterable[dict], output: TextIO) -> None:
    """Drive an in-memory client with intent frames and emit one JSON line per frame."""

    store = InMemoryStore()
    await seed_channels(store)
    client = ChatClient(store, store.feed, load_client_config_from_env())

    def emit(payload: Dict[str, Any]) -> None:
        output.write(json.dumps(payload) + "\n")

    try:
        for frame in frames:
            frame_type = frame.get("t")
            try:
                if frame_type == "join":
                    await client.join_with_codename(frame.get("name", ""))
                elif frame_type == "select":
                    await client.select_channel(_resolve_channel(client, frame["channel"]))
                elif frame_type == "send":
                    await client.send_message(frame.get("text", ""))
                elif frame_type == "store.insert":
                    # Writes from other participants, straight to the store.
                    kind = frame["kind"]
                    if kind not in KINDS:
                        raise ValidationError(f"unknown record kind: {kind}")
                    fields = dict(frame.get("fields") or {})
                    if kind != CHANNELS and "channel" in fields:
                        fields["channel_id"] = _resolve_channel(client, fields.pop("channel"))
                    await store.insert(kind, fields)
                elif frame_type == "render":
                    pass
                else:
                    raise ValidationError(f"unsupported frame type: {frame_type}")
            except ChatError as exc:
                emit({"t": "error", "code": _error_code(exc), "message": str(exc)})
                continue
            await client.presence.drain()
            emit(_state_frame(client.render()))
    finally:
        await client.close()


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_simulation(args: argparse.Namespace, output: TextIO) -> int:
    if args.file is None:
        frames = _load_frames(sys.stdin)
    else:
        with args.file:
            frames = _load_frames(args.file)
    asyncio.run(simulate(frames, output))
    return 0


def _run_seed(args: argparse.Namespace, output: TextIO) -> int:
    backend = SQLiteBackend(args.db)
    try:
        created = asyncio.run(seed_channels(SQLiteStore(backend)))
    finally:
        backend.close()
    for channel in created:
        output.write(f"created #{channel.name} ({channel.visibility})\n")
    if not created:
        output.write("channels already present\n")
    return 0


def _run_serve(args: argparse.Namespace) -> int:
    config = GatewayConfig(
        host=args.host,
        port=args.port,
        db_path=args.db,
        ping_interval_s=args.ping_interval,
    )
    app = create_app(
        ping_interval_s=config.ping_interval_s,
        ping_miss_limit=config.ping_miss_limit,
        max_msg_size=config.max_msg_size,
        db_path=config.db_path,
    )
    if args.seed:
        async def seed(app: web.Application) -> None:
            created = await seed_channels(app["runtime"].store)
            if created:
                logger.info("seeded %d channel(s)", len(created))

        app.on_startup.append(seed)
    web.run_app(app, host=config.host, port=config.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(description="channelsync gateway and client tools")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp store gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )
    serve_parser.add_argument("--db", type=str, default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--seed", action="store_true", help="Create the default channels on startup")

    seed_parser = subparsers.add_parser("seed", help="Create the default channels in a SQLite database")
    seed_parser.add_argument("--db", type=str, required=True, help="Path to SQLite database")

    simulate_parser = subparsers.add_parser("simulate", help="Drive an in-memory client with JSON intent frames")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.command == "serve":
        return _run_serve(args)
    if args.command == "seed":
        return _run_seed(args, output or sys.stdout)
    return _run_simulation(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
