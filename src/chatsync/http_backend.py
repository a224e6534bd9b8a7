"""Backend over a JSON table API and a realtime WebSocket, using aiohttp.

Tables live under ``/v1/tables/<entity>`` (``/<id>`` for single rows), blobs
under ``/v1/storage/<path>``. Change-feed and presence traffic share one
WebSocket at ``/v1/realtime`` carrying ``{"v": 1, "t": ..., "body": ...}``
frames. When the socket drops every feed and presence channel is told
``"closed"``; the next subscribe reconnects.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

import aiohttp

from .backend import BackendError, Filter, NotFoundError, Target, TransientNetworkError
from .events import ChangeEvent

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1


def _frame(frame_type: str, body: Dict[str, Any], *, request_id: Optional[str] = None) -> Dict[str, Any]:
    frame: Dict[str, Any] = {"v": PROTOCOL_VERSION, "t": frame_type, "body": body}
    if request_id is not None:
        frame["id"] = request_id
    return frame


class HttpFeedSubscription:
    def __init__(self, backend: "HttpBackend", sub_id: str, channel: str, callback, on_status) -> None:
        self._backend = backend
        self.sub_id = sub_id
        self.channel = channel
        self.callback = callback
        self.on_status = on_status
        self.closed = False

    def _status(self, status: str) -> None:
        if self.on_status is not None:
            self.on_status(status)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._backend._feeds.pop(self.sub_id, None)
        await self._backend._send_quietly(_frame("feed.unsubscribe", {}, request_id=self.sub_id))


class HttpPresenceChannel:
    def __init__(self, backend: "HttpBackend", name: str, key: str) -> None:
        self._backend = backend
        self.name = name
        self.key = key
        self._on_sync = None
        self._on_status = None
        self._state: Dict[str, Any] = {}
        self.subscribed = False

    async def subscribe(self, on_sync, on_status=None) -> None:
        self._on_sync = on_sync
        self._on_status = on_status
        # The first snapshot may arrive before the join is acknowledged.
        self.subscribed = True
        try:
            await self._backend._join_presence(self)
        except BackendError:
            self.subscribed = False
            raise
        if on_status is not None:
            on_status("subscribed")

    async def track(self, state: Dict[str, Any]) -> None:
        await self._backend._send(_frame("presence.track", {"channel": self.name, "key": self.key, "state": state}))

    async def untrack(self) -> None:
        await self._backend._send_quietly(_frame("presence.untrack", {"channel": self.name, "key": self.key}))

    async def unsubscribe(self) -> None:
        self.subscribed = False
        self._backend._presence.pop((self.name, self.key), None)
        await self._backend._send_quietly(_frame("presence.leave", {"channel": self.name, "key": self.key}))

    def presence_state(self) -> Dict[str, Any]:
        return dict(self._state)

    def _sync(self, state: Dict[str, Any]) -> None:
        self._state = state
        if self.subscribed and self._on_sync is not None:
            self._on_sync(state)

    def _lost(self) -> None:
        self.subscribed = False
        self._state = {}
        if self._on_status is not None:
            self._on_status("closed")


class HttpBackend:
    def __init__(
        self,
        base_url: str,
        session_token: str,
        *,
        timeout_s: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._token = session_token
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._feeds: Dict[str, HttpFeedSubscription] = {}
        self._presence: Dict[tuple[str, str], HttpPresenceChannel] = {}
        self._acks: Dict[str, asyncio.Future] = {}

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def close(self) -> None:
        await self._disconnect(notify=False)
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "HttpBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- tables --------------------------------------------------------------

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._http().request(method, self._url(path), headers=self._headers, **kwargs) as response:
                if response.status == 404:
                    raise NotFoundError(f"{method} {path}: not found")
                if response.status >= 500:
                    raise TransientNetworkError(f"{method} {path}: HTTP {response.status}")
                if response.status >= 400:
                    raise BackendError(f"{method} {path}: HTTP {response.status} {await response.text()}")
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise TransientNetworkError(f"{method} {path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise BackendError(f"{method} {path}: malformed response")
        return payload

    @staticmethod
    def _table_path(entity: str, target: Optional[str] = None) -> str:
        path = f"/v1/tables/{quote(entity, safe='')}"
        if target is not None:
            path += f"/{quote(target, safe='')}"
        return path

    async def query(
        self,
        entity: str,
        where: Optional[Filter] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {}
        if where is not None:
            params["where"] = json.dumps(where.to_json())
        if order_by:
            params["order_by"] = order_by
            params["descending"] = "1" if descending else "0"
        payload = await self._request("GET", self._table_path(entity), params=params)
        return list(payload.get("rows") or [])

    async def insert(self, entity: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", self._table_path(entity), json={"row": payload})
        row = response.get("row")
        if not isinstance(row, dict):
            raise BackendError(f"insert into {entity}: malformed response")
        return row

    async def update(self, entity: str, target: Target, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        if isinstance(target, Filter):
            body = {"where": target.to_json(), "patch": patch}
            response = await self._request("PATCH", self._table_path(entity), json=body)
        else:
            response = await self._request("PATCH", self._table_path(entity, target), json={"patch": patch})
        return list(response.get("rows") or [])

    async def delete(self, entity: str, target: Target) -> List[Dict[str, Any]]:
        if isinstance(target, Filter):
            response = await self._request("DELETE", self._table_path(entity), json={"where": target.to_json()})
        else:
            response = await self._request("DELETE", self._table_path(entity, target))
        return list(response.get("rows") or [])

    async def upload(self, path: str, data: bytes) -> str:
        response = await self._request("PUT", f"/v1/storage/{quote(path)}", data=data)
        url = response.get("url")
        if not isinstance(url, str):
            raise BackendError(f"upload {path}: malformed response")
        return url

    # -- realtime ------------------------------------------------------------

    async def _connect(self) -> aiohttp.ClientWebSocketResponse:
        async with self._connect_lock:
            if self._ws is not None and not self._ws.closed:
                return self._ws
            try:
                self._ws = await self._http().ws_connect(self._url("/v1/realtime"), headers=self._headers, heartbeat=30)
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                raise TransientNetworkError(f"realtime connect failed: {exc}") from exc
            self._reader = asyncio.create_task(self._read_loop(self._ws))
            return self._ws

    async def _send(self, frame: Dict[str, Any]) -> None:
        ws = await self._connect()
        try:
            await ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            raise TransientNetworkError(f"realtime send failed: {exc}") from exc

    async def _send_quietly(self, frame: Dict[str, Any]) -> None:
        # Teardown frames are best-effort once the socket is gone.
        if self._ws is None or self._ws.closed:
            return
        try:
            await self._ws.send_json(frame)
        except (aiohttp.ClientError, ConnectionResetError, RuntimeError) as exc:
            logger.debug("dropping %s frame: %s", frame.get("t"), exc)

    async def _request_ack(self, frame: Dict[str, Any]) -> Dict[str, Any]:
        request_id = frame["id"]
        future = asyncio.get_running_loop().create_future()
        self._acks[request_id] = future
        try:
            await self._send(frame)
            return await asyncio.wait_for(future, self._timeout.total)
        except asyncio.TimeoutError as exc:
            raise TransientNetworkError(f"{frame['t']} not acknowledged") from exc
        finally:
            self._acks.pop(request_id, None)

    async def subscribe(
        self,
        channel: str,
        entities: Iterable[str],
        callback: Callable[[ChangeEvent], None],
        on_status: Optional[Callable[[str], None]] = None,
        where: Optional[Filter] = None,
    ) -> HttpFeedSubscription:
        sub_id = f"sub_{secrets.token_hex(6)}"
        feed = HttpFeedSubscription(self, sub_id, channel, callback, on_status)
        self._feeds[sub_id] = feed
        body = {"channel": channel, "entities": list(entities), "where": where.to_json() if where else None}
        try:
            await self._request_ack(_frame("feed.subscribe", body, request_id=sub_id))
        except BackendError:
            self._feeds.pop(sub_id, None)
            raise
        feed._status("subscribed")
        return feed

    def presence_channel(self, name: str, key: str) -> HttpPresenceChannel:
        return HttpPresenceChannel(self, name, key)

    async def _join_presence(self, channel: HttpPresenceChannel) -> None:
        self._presence[(channel.name, channel.key)] = channel
        request_id = f"join_{secrets.token_hex(6)}"
        try:
            await self._request_ack(
                _frame("presence.join", {"channel": channel.name, "key": channel.key}, request_id=request_id)
            )
        except BackendError:
            self._presence.pop((channel.name, channel.key), None)
            raise

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = json.loads(message.data)
                    except json.JSONDecodeError:
                        logger.warning("ignoring non-JSON realtime frame")
                        continue
                    if isinstance(frame, dict):
                        self._handle_frame(frame)
                elif message.type in (aiohttp.WSMsgType.ERROR, aiohttp.WSMsgType.CLOSED):
                    break
        finally:
            if self._ws is ws:
                self._ws = None
                self._connection_lost()

    def _handle_frame(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") if isinstance(frame.get("body"), dict) else {}
        request_id = frame.get("id")
        if frame_type in ("feed.subscribed", "presence.joined", "error"):
            future = self._acks.get(request_id)
            if future is not None and not future.done():
                if frame_type == "error":
                    future.set_exception(BackendError(str(body.get("message") or "realtime error")))
                else:
                    future.set_result(body)
            return
        if frame_type == "feed.event":
            feed = self._feeds.get(request_id)
            if feed is not None and not feed.closed:
                feed.callback(ChangeEvent.from_dict(body))
            return
        if frame_type == "presence.sync":
            state = body.get("state") if isinstance(body.get("state"), dict) else {}
            for (name, _key), channel in list(self._presence.items()):
                if name == body.get("channel"):
                    channel._sync(state)
            return
        logger.debug("ignoring realtime frame %s", frame_type)

    def _connection_lost(self) -> None:
        for future in self._acks.values():
            if not future.done():
                future.set_exception(TransientNetworkError("realtime connection lost"))
        feeds, self._feeds = list(self._feeds.values()), {}
        channels, self._presence = list(self._presence.values()), {}
        for feed in feeds:
            feed.closed = True
            feed._status("closed")
        for channel in channels:
            channel._lost()

    async def _disconnect(self, *, notify: bool = True) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        if ws is not None:
            await ws.close()
        if reader is not None:
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if notify:
            self._connection_lost()
        else:
            self._feeds = {}
            self._presence = {}
