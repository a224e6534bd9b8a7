"""A small aiohttp server exposing an InMemoryBackend over the table and realtime API."""

import asyncio
import json
from typing import Any, Dict

from aiohttp import WSMsgType, web

from chatsync.backend import BackendError, Filter, NotFoundError, TransientNetworkError
from chatsync.memory_backend import InMemoryBackend

TOKEN = "secret"


def _error_response(exc: BackendError) -> web.Response:
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, TransientNetworkError):
        status = 503
    else:
        status = 400
    return web.json_response({"error": str(exc)}, status=status)


@web.middleware
async def auth_middleware(request: web.Request, handler):
    if request.headers.get("Authorization") != f"Bearer {request.app['token']}":
        return web.json_response({"error": "unauthorized"}, status=401)
    return await handler(request)


async def _body(request: web.Request) -> Dict[str, Any]:
    if not request.body_exists:
        return {}
    return await request.json()


def _target(request: web.Request, body: Dict[str, Any]):
    row_id = request.match_info.get("row_id")
    if row_id is not None:
        return row_id
    return Filter.from_json(body.get("where"))


async def handle_query(request: web.Request) -> web.Response:
    backend: InMemoryBackend = request.app["backend"]
    raw_where = request.query.get("where")
    where = Filter.from_json(json.loads(raw_where)) if raw_where else None
    try:
        rows = await backend.query(
            request.match_info["entity"],
            where,
            order_by=request.query.get("order_by"),
            descending=request.query.get("descending") == "1",
        )
    except BackendError as exc:
        return _error_response(exc)
    return web.json_response({"rows": rows})


async def handle_insert(request: web.Request) -> web.Response:
    body = await _body(request)
    try:
        row = await request.app["backend"].insert(request.match_info["entity"], body["row"])
    except BackendError as exc:
        return _error_response(exc)
    return web.json_response({"row": row})


async def handle_update(request: web.Request) -> web.Response:
    body = await _body(request)
    try:
        rows = await request.app["backend"].update(
            request.match_info["entity"], _target(request, body), body.get("patch") or {}
        )
    except BackendError as exc:
        return _error_response(exc)
    return web.json_response({"rows": rows})


async def handle_delete(request: web.Request) -> web.Response:
    body = await _body(request)
    try:
        rows = await request.app["backend"].delete(request.match_info["entity"], _target(request, body))
    except BackendError as exc:
        return _error_response(exc)
    return web.json_response({"rows": rows})


async def handle_upload(request: web.Request) -> web.Response:
    data = await request.read()
    try:
        url = await request.app["backend"].upload(request.match_info["path"], data)
    except BackendError as exc:
        return _error_response(exc)
    return web.json_response({"url": url})


class RealtimeConnection:
    def __init__(self, backend: InMemoryBackend, ws: web.WebSocketResponse) -> None:
        self.backend = backend
        self.ws = ws
        self.outbox: asyncio.Queue = asyncio.Queue()
        self.feeds: Dict[str, Any] = {}
        self.channels: Dict[tuple, Any] = {}

    def push(self, frame_type: str, body: Dict[str, Any], request_id: str | None = None) -> None:
        frame = {"v": 1, "t": frame_type, "body": body}
        if request_id is not None:
            frame["id"] = request_id
        self.outbox.put_nowait(frame)

    async def writer(self) -> None:
        while True:
            frame = await self.outbox.get()
            await self.ws.send_json(frame)

    async def handle(self, frame: Dict[str, Any]) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        request_id = frame.get("id")
        try:
            if frame_type == "feed.subscribe":
                where = Filter.from_json(body["where"]) if body.get("where") else None

                def forward(event, sub_id=request_id):
                    self.push("feed.event", event.to_dict(), sub_id)

                self.feeds[request_id] = await self.backend.subscribe(
                    body["channel"], body["entities"], forward, None, where
                )
                self.push("feed.subscribed", {}, request_id)
            elif frame_type == "feed.unsubscribe":
                feed = self.feeds.pop(request_id, None)
                if feed is not None:
                    await feed.close()
            elif frame_type == "presence.join":
                channel_name = body["channel"]
                channel = self.backend.presence_channel(channel_name, body["key"])
                self.channels[(channel_name, body["key"])] = channel

                def on_sync(state, name=channel_name):
                    self.push("presence.sync", {"channel": name, "state": state})

                await channel.subscribe(on_sync)
                self.push("presence.joined", {}, request_id)
            elif frame_type == "presence.track":
                await self.channels[(body["channel"], body["key"])].track(body["state"])
            elif frame_type == "presence.untrack":
                channel = self.channels.get((body["channel"], body["key"]))
                if channel is not None:
                    await channel.untrack()
            elif frame_type == "presence.leave":
                channel = self.channels.pop((body["channel"], body["key"]), None)
                if channel is not None:
                    await channel.unsubscribe()
        except BackendError as exc:
            self.push("error", {"message": str(exc)}, request_id)

    async def release(self) -> None:
        for feed in self.feeds.values():
            await feed.close()
        for channel in self.channels.values():
            await channel.untrack()
            await channel.unsubscribe()
        self.feeds = {}
        self.channels = {}


async def handle_realtime(request: web.Request) -> web.WebSocketResponse:
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    connection = RealtimeConnection(request.app["backend"], ws)
    request.app["sockets"].add(ws)
    writer = asyncio.create_task(connection.writer())
    try:
        async for message in ws:
            if message.type == WSMsgType.TEXT:
                await connection.handle(json.loads(message.data))
    finally:
        request.app["sockets"].discard(ws)
        writer.cancel()
        await asyncio.gather(writer, return_exceptions=True)
        await connection.release()
    return ws


def create_app(backend: InMemoryBackend, token: str = TOKEN) -> web.Application:
    app = web.Application(middlewares=[auth_middleware])
    app["backend"] = backend
    app["token"] = token
    app["sockets"] = set()
    app.router.add_get("/v1/tables/{entity}", handle_query)
    app.router.add_post("/v1/tables/{entity}", handle_insert)
    app.router.add_patch("/v1/tables/{entity}", handle_update)
    app.router.add_delete("/v1/tables/{entity}", handle_delete)
    app.router.add_patch("/v1/tables/{entity}/{row_id}", handle_update)
    app.router.add_delete("/v1/tables/{entity}/{row_id}", handle_delete)
    app.router.add_put("/v1/storage/{path:.*}", handle_upload)
    app.router.add_get("/v1/realtime", handle_realtime)
    return app


async def disconnect_all(app: web.Application) -> None:
    for ws in list(app["sockets"]):
        await ws.close()
