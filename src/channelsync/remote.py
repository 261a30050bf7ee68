"""aiohttp client for the gateway: the store boundary over HTTP, the feed over one WebSocket."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Set, Type

import aiohttp

from .errors import ChatError, LoadError, PersistenceError, SubscriptionError
from .feed import Callback, DropCallback, Subscription, validate_subscription
from .models import ChangeEvent, Record, record_from_dict
from .store import Order

logger = logging.getLogger(__name__)


def _build_url(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path}"


class _GatewayClient:
    def __init__(self, base_url: str, *, session: aiohttp.ClientSession | None = None, timeout_s: float = 10.0) -> None:
        self.base_url = base_url
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    def _session_timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.timeout_s)

    def _client_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._session_timeout())
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class RemoteStore(_GatewayClient):
    """Store boundary backed by the gateway's HTTP endpoints."""

    async def query(
        self,
        kind: str,
        filter: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Record]:
        payload: Dict[str, Any] = {"kind": kind, "filter": dict(filter or {}), "limit": limit}
        if order is not None:
            payload["order"] = order.to_dict()
        response = await self._post("/v1/query", payload, LoadError)
        return [record_from_dict(kind, row) for row in response.get("records", [])]

    async def insert(self, kind: str, fields: Mapping[str, Any]) -> Record:
        response = await self._post("/v1/insert", {"kind": kind, "fields": dict(fields)}, PersistenceError)
        return record_from_dict(kind, response["record"])

    async def update(self, kind: str, record_id: str, fields: Mapping[str, Any]) -> Record:
        response = await self._post(
            "/v1/update", {"kind": kind, "id": record_id, "fields": dict(fields)}, PersistenceError
        )
        return record_from_dict(kind, response["record"])

    async def _post(self, path: str, payload: Dict[str, Any], error: Type[ChatError]) -> Dict[str, Any]:
        url = _build_url(self.base_url, path)
        try:
            async with self._client_session().post(url, json=payload) as response:
                body = await response.json(content_type=None)
                status = response.status
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise error(f"gateway request {path} failed: {exc}") from exc
        if status != 200 or not isinstance(body, dict):
            message = body.get("message") if isinstance(body, dict) else None
            raise error(message or f"gateway request {path} returned {status}")
        return body


class RemoteFeed(_GatewayClient):
    """Change feed multiplexed over one gateway WebSocket.

    When the socket goes away every live subscription is dropped (its
    ``on_drop`` runs); the next ``subscribe`` reconnects.
    """

    def __init__(self, base_url: str, *, session: aiohttp.ClientSession | None = None, timeout_s: float = 10.0) -> None:
        super().__init__(base_url, session=session, timeout_s=timeout_s)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._subscriptions: Dict[str, Subscription] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._connect_lock = asyncio.Lock()
        self._request_counter = 0
        self._cleanup_tasks: Set[asyncio.Task] = set()

    def _session_timeout(self) -> aiohttp.ClientTimeout:
        # The socket is long-lived; only the handshake is bounded.
        return aiohttp.ClientTimeout(total=None, connect=self.timeout_s)

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def subscribe(
        self,
        kind: str,
        events: str,
        filter: Optional[Mapping[str, Any]],
        on_event: Callback,
        on_drop: Optional[DropCallback] = None,
    ) -> Subscription:
        validate_subscription(kind, events)
        ws = await self._connect()
        subscription = Subscription(
            kind=kind,
            events=events,
            filter=dict(filter or {}),
            callback=on_event,
            registry=self,
            on_drop=on_drop,
        ).start()
        try:
            await self._request(
                ws,
                "feed.subscribe",
                {"sub_id": subscription.sub_id, "kind": kind, "events": events, "filter": subscription.filter},
            )
        except BaseException:
            subscription.cancel()
            self._forget_remote(ws, subscription.sub_id)
            raise
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.cancel()
        ws = self._ws
        if ws is None or ws.closed:
            return
        await self._request(ws, "feed.unsubscribe", {"sub_id": subscription.sub_id})

    def _register(self, subscription: Subscription) -> None:
        self._subscriptions[subscription.sub_id] = subscription

    def _unregister(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.sub_id, None)

    async def disconnect(self) -> None:
        """Close the socket as a network failure would; subscriptions are dropped."""

        ws = self._ws
        if ws is not None:
            await ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            subscription.cancel()
        await self.disconnect()
        await super().close()

    async def _connect(self) -> aiohttp.ClientWebSocketResponse:
        async with self._connect_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            url = _build_url(self.base_url, "/v1/ws")
            try:
                ws = await self._client_session().ws_connect(url)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise SubscriptionError(f"could not connect to {url}: {exc}") from exc
            self._ws = ws
            self._reader_task = asyncio.create_task(self._read(ws))
            logger.info("change feed connected to %s", url)
            return ws

    async def _request(self, ws: aiohttp.ClientWebSocketResponse, frame_type: str, body: Dict[str, Any]) -> Dict[str, Any]:
        self._request_counter += 1
        request_id = f"r{self._request_counter}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
            return await asyncio.wait_for(future, timeout=self.timeout_s)
        except (aiohttp.ClientError, ConnectionError, asyncio.TimeoutError) as exc:
            raise SubscriptionError(f"{frame_type} failed: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)

    def _forget_remote(self, ws: aiohttp.ClientWebSocketResponse, sub_id: str) -> None:
        """Ask the gateway to drop ``sub_id`` without waiting for the ack.

        The server may have registered the subscription even though the ack
        never arrived. Sending happens in its own task so a cancelled caller
        still gets it out.
        """

        if ws.closed:
            return
        task = asyncio.ensure_future(self._send_unsubscribe(ws, sub_id))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    async def _send_unsubscribe(self, ws: aiohttp.ClientWebSocketResponse, sub_id: str) -> None:
        try:
            await ws.send_json({"v": 1, "t": "feed.unsubscribe", "id": None, "body": {"sub_id": sub_id}})
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as exc:
            logger.debug("could not release subscription %s: %s", sub_id, exc)

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("ignoring malformed frame from gateway")
                        continue
                    await self._dispatch(ws, frame)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        finally:
            self._connection_lost(ws, SubscriptionError("change feed connection lost"))

    async def _dispatch(self, ws: aiohttp.ClientWebSocketResponse, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "feed.event":
            subscription = self._subscriptions.get(body.get("sub_id"))
            if subscription is not None:
                subscription.deliver(ChangeEvent.from_dict(body))
        elif frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
        elif frame_type in {"feed.subscribed", "feed.unsubscribed", "pong", "error"}:
            future = self._pending.get(frame.get("id"))
            if future is None or future.done():
                return
            if frame_type == "error":
                future.set_exception(SubscriptionError(body.get("message") or "gateway error"))
            else:
                future.set_result(body)

    def _connection_lost(self, ws: aiohttp.ClientWebSocketResponse, exc: SubscriptionError) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(exc)
        dropped = list(self._subscriptions.values())
        if dropped:
            logger.warning("change feed lost; dropping %d subscription(s)", len(dropped))
        for subscription in dropped:
            subscription.drop(exc)
