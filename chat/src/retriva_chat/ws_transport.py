from __future__ import annotations

import asyncio
import base64
import binascii
import logging
from typing import Any, Dict

from aiohttp import WSMsgType, web

from .blocking import BlockNotPermitted, SendBlocked
from .config import ChatConfig
from .models import Viewer
from .session import ChatSession, SendFailed
from .store import InMemoryDocumentStore
from .upload import HttpMediaUploader, UploadFailed

logger = logging.getLogger(__name__)


class UnknownFrame(ValueError):
    pass


class Runtime:
    def __init__(
        self,
        *,
        store: InMemoryDocumentStore,
        config: ChatConfig,
        uploader=None,
    ) -> None:
        self.store = store
        self.config = config
        self.uploader = uploader


RUNTIME_KEY = web.AppKey("runtime", Runtime)
WS_CONFIG_KEY = web.AppKey("ws_config", dict)


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 8_388_608,
    store: InMemoryDocumentStore | None = None,
    config: ChatConfig | None = None,
    uploader=None,
) -> web.Application:
    config = config or ChatConfig()
    if uploader is None and config.uploads_enabled:
        uploader = HttpMediaUploader(
            config.upload_url,
            upload_preset=config.upload_preset,
            timeout_s=config.upload_timeout_s,
        )
    runtime = Runtime(store=store or InMemoryDocumentStore(), config=config, uploader=uploader)

    app = web.Application()
    app[RUNTIME_KEY] = runtime
    app[WS_CONFIG_KEY] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/ws", websocket_handler)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def describe_error(exc: Exception) -> tuple[str, str]:
    """Map a session operation failure to a wire ``(code, message)`` pair."""

    if isinstance(exc, (SendBlocked, BlockNotPermitted)):
        return "forbidden", str(exc)
    if isinstance(exc, SendFailed):
        return "send_failed", str(exc)
    if isinstance(exc, UploadFailed):
        return "upload_failed", str(exc)
    return "invalid_request", str(exc)


def _required(body: Dict[str, Any], *names: str) -> None:
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise ValueError(f"{', '.join(missing)} required")


async def dispatch(session: ChatSession, frame_type: str, body: Dict[str, Any]) -> tuple[str, dict] | None:
    """Run one client frame against ``session``; returns the reply ``(t, body)``."""

    if frame_type == "conv.start":
        _required(body, "counterpart_id")
        conv_id = await session.start_direct(
            body["counterpart_id"],
            title=body.get("title") or "Chat",
            item_id=body.get("item_id"),
            conversation_id=body.get("conv_id"),
        )
        return "conv.started", {"conv_id": conv_id}
    if frame_type == "conv.open":
        session.open_conversation(body.get("conv_id"))
        return None
    if frame_type == "conv.send":
        _required(body, "conv_id")
        msg_id = await session.send_message(body["conv_id"], body.get("text") or "")
        return "conv.acked", {"conv_id": body["conv_id"], "msg_id": msg_id}
    if frame_type == "conv.attach":
        _required(body, "conv_id", "data_b64")
        try:
            payload = base64.b64decode(body["data_b64"], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError("data_b64 must be base64") from exc
        msg_id = await session.send_attachment(
            body["conv_id"],
            body.get("filename") or "upload",
            payload,
            body.get("content_type"),
            body.get("text") or "",
        )
        return "conv.acked", {"conv_id": body["conv_id"], "msg_id": msg_id}
    if frame_type == "conv.block":
        _required(body, "conv_id")
        state = await session.toggle_block(body["conv_id"])
        return "conv.block_state", {"conv_id": body["conv_id"], **state.to_dict()}
    if frame_type == "conv.delete":
        _required(body, "conv_id")
        await session.delete_conversation(body["conv_id"])
        return "conv.deleted", {"conv_id": body["conv_id"]}
    if frame_type == "conv.list":
        session.set_filter(body.get("filter") or "")
        return None
    if frame_type == "conv.typing":
        _required(body, "conv_id")
        session.keystroke(body["conv_id"])
        return None
    raise UnknownFrame("unknown frame type")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime = request.app[RUNTIME_KEY]
    ws_config = request.app[WS_CONFIG_KEY]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[dict | None] = asyncio.Queue(maxsize=1000)
    session: ChatSession | None = None
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    def push(kind: str, body: Dict[str, Any]) -> None:
        enqueue({"v": 1, "t": kind, "body": body})

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        first_msg = await ws.receive()
        if first_msg.type != WSMsgType.TEXT:
            await ws.close(code=1002, message=b"invalid handshake")
            return ws
        try:
            payload = first_msg.json()
        except ValueError:
            await ws.close(code=1002, message=b"invalid json")
            return ws

        if payload.get("v") != 1:
            await ws.send_json(_error_frame("invalid_request", "unsupported version", request_id=payload.get("id")))
            await ws.close()
            return ws

        body = payload.get("body") or {}
        if payload.get("t") != "session.start":
            await ws.send_json(_error_frame("invalid_request", "first frame must start session", request_id=payload.get("id")))
            await ws.close()
            return ws
        user_id = body.get("user_id")
        if not isinstance(user_id, str) or not user_id:
            await ws.send_json(_error_frame("invalid_request", "user_id required", request_id=payload.get("id")))
            await ws.close()
            return ws

        mark_activity()
        session = ChatSession(
            runtime.store,
            Viewer(user_id=user_id, name=body.get("name") or "Student"),
            config=runtime.config,
            uploader=runtime.uploader,
        )
        session.add_listener(push)
        await session.start()
        logger.info("chat session started for %s", user_id)
        enqueue(
            {
                "v": 1,
                "t": "session.ready",
                "id": payload.get("id"),
                "body": {
                    "user_id": user_id,
                    "broadcast_id": runtime.config.broadcast_id,
                },
            }
        )

        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue

                mark_activity()
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=frame.get("id")))
                    continue

                frame_type = frame.get("t")
                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": frame.get("id")})
                    continue
                if frame_type == "pong":
                    continue
                try:
                    reply = await dispatch(session, frame_type, frame.get("body") or {})
                except (ValueError, PermissionError, SendFailed, UploadFailed) as exc:
                    code, message = describe_error(exc)
                    enqueue(_error_frame(code, message, request_id=frame.get("id")))
                    continue
                if reply is not None:
                    kind, reply_body = reply
                    enqueue({"v": 1, "t": kind, "id": frame.get("id"), "body": reply_body})
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        if session is not None:
            await session.close()
            logger.info("chat session closed for %s", session.viewer.user_id)
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
