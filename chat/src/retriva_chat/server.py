"""Chat engine CLI: serve the WebSocket gateway or replay a frame script."""

from __future__ import annotations

import argparse
import asyncio
import itertools
import json
import logging
import sys
from typing import Any, Callable, Dict, Iterable, TextIO

from aiohttp import web

from .config import ChatConfig, load_chat_config_from_env
from .models import Viewer
from .presence import _now_ms
from .session import ChatSession, SendFailed
from .store import InMemoryDocumentStore
from .upload import UploadFailed
from .ws_transport import UnknownFrame, create_app, describe_error, dispatch

logger = logging.getLogger(__name__)


async def _settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def simulate(
    frames: Iterable[dict],
    output: TextIO,
    *,
    config: ChatConfig | None = None,
    now_func: Callable[[], int] = _now_ms,
) -> None:
    """Replay client frames against one shared store and emit every push.

    Each frame names the ``user_id`` it is sent as; ``session.start`` opens
    that user's session. Pushes and replies are written as NDJSON lines
    tagged with the receiving user.
    """

    asyncio.run(_simulate(list(frames), output, config or ChatConfig(), now_func))


async def _simulate(frames: list[dict], output: TextIO, config: ChatConfig, now_func: Callable[[], int]) -> None:
    counter = itertools.count(1)
    store = InMemoryDocumentStore(id_factory=lambda: f"doc-{next(counter)}")
    sessions: Dict[str, ChatSession] = {}

    def write(user_id: str, kind: str, body: Dict[str, Any]) -> None:
        output.write(json.dumps({"t": kind, "user_id": user_id, "body": body}, sort_keys=True) + "\n")

    def listener_for(user_id: str):
        def _listener(kind: str, body: Dict[str, Any]) -> None:
            write(user_id, kind, body)

        return _listener

    try:
        for frame in frames:
            frame_type = frame.get("t")
            user_id = frame.get("user_id")
            if not isinstance(user_id, str) or not user_id:
                raise ValueError("user_id required")

            if frame_type == "session.start":
                if user_id not in sessions:
                    session = ChatSession(
                        store,
                        Viewer(user_id=user_id, name=frame.get("name") or "Student"),
                        config=config,
                        now_func=now_func,
                    )
                    session.add_listener(listener_for(user_id))
                    await session.start()
                    sessions[user_id] = session
                    write(user_id, "session.ready", {"user_id": user_id, "broadcast_id": config.broadcast_id})
            elif frame_type == "session.end":
                session = sessions.pop(user_id, None)
                if session is not None:
                    await session.close()
            else:
                session = sessions.get(user_id)
                if session is None:
                    raise ValueError(f"no session for user: {user_id}")
                body = {key: value for key, value in frame.items() if key not in {"t", "user_id"}}
                try:
                    reply = await dispatch(session, frame_type, body)
                except UnknownFrame as exc:
                    raise ValueError(f"unsupported frame type: {frame_type}") from exc
                except (ValueError, PermissionError, SendFailed, UploadFailed) as exc:
                    code, message = describe_error(exc)
                    write(user_id, "error", {"code": code, "message": message})
                    continue
                if reply is not None:
                    write(user_id, reply[0], reply[1])
            await _settle()
            for session in sessions.values():
                await session.drain()
            await _settle()
    finally:
        for session in sessions.values():
            await session.close()


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


def _configure_logging(config: ChatConfig) -> None:
    logging.basicConfig(
        level=config.log_level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _run_simulation(args: argparse.Namespace, output: TextIO, config: ChatConfig) -> int:
    frames = _load_frames(args.file or sys.stdin)
    simulate(frames, output, config=config)
    return 0


def _run_serve(args: argparse.Namespace, config: ChatConfig) -> int:
    app = create_app(ping_interval_s=args.ping_interval, config=config)
    logger.info("serving chat gateway on %s:%s", args.host, args.port)
    web.run_app(app, host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="retriva-chat", description="Campus marketplace chat engine")
    subparsers = parser.add_subparsers(dest="command", required=True)

    simulate_parser = subparsers.add_parser("simulate", help="Replay chat frames against an in-memory store")
    simulate_parser.add_argument(
        "-f",
        "--file",
        type=argparse.FileType("r"),
        default=None,
        help="Path to JSON frames file; defaults to stdin",
    )

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp chat gateway")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=8080, help="Port to bind")
    serve_parser.add_argument(
        "--ping-interval",
        type=int,
        default=30,
        help="Seconds between heartbeat pings",
    )

    args = parser.parse_args(argv)
    config = load_chat_config_from_env()
    _configure_logging(config)

    if args.command == "simulate":
        return _run_simulation(args, output or sys.stdout, config)
    return _run_serve(args, config)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
