"""aiohttp gateway exposing a store over HTTP and its change feed over a WebSocket."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Union

from aiohttp import WSMsgType, web

from .errors import PersistenceError, SubscriptionError
from .feed import ChangeFeed, Subscription
from .models import EVENT_MASKS, KINDS, ChangeEvent
from .retention import RetentionPolicy, RetentionSweeper, load_retention_policy_from_env
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import InMemoryStore, Order

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        *,
        store,
        feed: ChangeFeed,
        backend: SQLiteBackend | None = None,
        sweeper: RetentionSweeper,
    ) -> None:
        self.store = store
        self.feed = feed
        self.backend = backend
        self.sweeper = sweeper


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def _invalid_request(message: str) -> web.Response:
    return web.json_response({"code": "invalid_request", "message": message}, status=400)


def _persistence_error(message: str) -> web.Response:
    return web.json_response({"code": "persistence_error", "message": message}, status=400)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


async def _read_body(request: web.Request) -> Dict[str, Any] | None:
    try:
        body = await request.json()
    except Exception:
        return None
    if not isinstance(body, dict):
        return None
    return body


async def handle_query(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    kind = body.get("kind")
    filter = body.get("filter") or {}
    limit = body.get("limit")
    if kind not in KINDS:
        return _invalid_request("kind must be one of channels, messages, sessions")
    if not isinstance(filter, dict):
        return _invalid_request("filter must be an object")
    if limit is not None and (not isinstance(limit, int) or limit < 0):
        return _invalid_request("limit must be a non-negative integer")
    try:
        order = Order.from_dict(body.get("order"))
        records = await runtime.store.query(kind, filter, order, limit)
    except (KeyError, TypeError, ValueError) as exc:
        return _invalid_request(str(exc))
    return _with_no_store(web.json_response({"records": [record.to_dict() for record in records]}))


async def handle_insert(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    kind = body.get("kind")
    fields = body.get("fields")
    if kind not in KINDS or not isinstance(fields, dict):
        return _invalid_request("kind and fields required")
    try:
        record = await runtime.store.insert(kind, fields)
    except PersistenceError as exc:
        return _persistence_error(str(exc))
    return _with_no_store(web.json_response({"record": record.to_dict()}))


async def handle_update(request: web.Request) -> web.Response:
    runtime: Runtime = request.app["runtime"]
    body = await _read_body(request)
    if body is None:
        return _invalid_request("malformed json")

    kind = body.get("kind")
    record_id = body.get("id")
    fields = body.get("fields")
    if kind not in KINDS or not isinstance(record_id, str) or not isinstance(fields, dict):
        return _invalid_request("kind, id and fields required")
    try:
        record = await runtime.store.update(kind, record_id, fields)
    except PersistenceError as exc:
        return _persistence_error(str(exc))
    return _with_no_store(web.json_response({"record": record.to_dict()}))


def create_app(
    *,
    ping_interval_s: int = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    db_path: str | None = None,
    store=None,
    retention: RetentionPolicy | None = None,
    start_retention_sweeper: bool = True,
) -> web.Application:
    backend: SQLiteBackend | None = None
    if store is None:
        if db_path is not None:
            backend = SQLiteBackend(db_path)
            store = SQLiteStore(backend)
        else:
            store = InMemoryStore()

    retention = retention or load_retention_policy_from_env()
    sweeper = RetentionSweeper(store, retention)
    runtime = Runtime(store=store, feed=store.feed, backend=backend, sweeper=sweeper)
    app = web.Application()
    app["runtime"] = runtime
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_post("/v1/query", handle_query)
    app.router.add_post("/v1/insert", handle_insert)
    app.router.add_post("/v1/update", handle_update)
    app.router.add_get("/v1/ws", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)

    async def start_retention(_: web.Application) -> None:
        if start_retention_sweeper:
            sweeper.start()

    async def stop_retention(_: web.Application) -> None:
        await sweeper.stop()

    app.on_startup.append(start_retention)
    app.on_cleanup.insert(0, stop_retention)
    return app


def _error_frame(code: str, message: str, *, request_id: str | None = None) -> dict[str, Any]:
    return {"v": 1, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _event_frame(sub_id: str, event: ChangeEvent) -> dict[str, Any]:
    body = event.to_dict()
    body["sub_id"] = sub_id
    return {"v": 1, "t": "feed.event", "body": body}


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    runtime: Runtime = request.app["runtime"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=1000)
    subscriptions: Dict[str, Subscription] = {}
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

    def callback_for(sub_id: str):
        def _callback(event: ChangeEvent) -> None:
            enqueue(_event_frame(sub_id, event))

        return _callback

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
                    await ws.send_json({"v": 1, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except Exception:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != 1:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}

                if frame_type == "ping":
                    enqueue({"v": 1, "t": "pong", "id": request_id})
                elif frame_type == "pong":
                    continue
                elif frame_type == "feed.subscribe":
                    sub_id = body.get("sub_id")
                    kind = body.get("kind")
                    events = body.get("events")
                    filter = body.get("filter") or {}
                    if not isinstance(sub_id, str) or kind not in KINDS or events not in EVENT_MASKS:
                        enqueue(_error_frame("invalid_request", "sub_id, kind and events required", request_id=request_id))
                        continue
                    if not isinstance(filter, dict):
                        enqueue(_error_frame("invalid_request", "filter must be an object", request_id=request_id))
                        continue
                    if sub_id in subscriptions:
                        enqueue(_error_frame("invalid_request", "sub_id already in use", request_id=request_id))
                        continue
                    try:
                        subscriptions[sub_id] = runtime.feed.open(kind, events, filter, callback_for(sub_id))
                    except SubscriptionError as exc:
                        enqueue(_error_frame("invalid_request", str(exc), request_id=request_id))
                        continue
                    enqueue({"v": 1, "t": "feed.subscribed", "id": request_id, "body": {"sub_id": sub_id}})
                elif frame_type == "feed.unsubscribe":
                    sub_id = body.get("sub_id")
                    subscription = subscriptions.pop(sub_id, None) if isinstance(sub_id, str) else None
                    if subscription is not None:
                        subscription.cancel()
                    enqueue({"v": 1, "t": "feed.unsubscribed", "id": request_id, "body": {"sub_id": sub_id}})
                else:
                    enqueue(_error_frame("invalid_request", "unknown frame type", request_id=request_id))
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            subscription.cancel()
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
