"""In-memory remote store with a change feed, blob storage and presence rooms.

Used by the tests and the ``simulate`` command. Change events are delivered
synchronously to matching subscriptions while the write is being served.
"""

from __future__ import annotations

import copy
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .backend import BackendError, Filter, NotFoundError, Target, TransientNetworkError, sort_rows, target_filter
from .events import OP_DELETE, OP_INSERT, OP_UPDATE, ChangeEvent

EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[str], None]


@dataclass
class MemorySubscription:
    channel: str
    entities: Tuple[str, ...]
    callback: EventCallback
    on_status: Optional[StatusCallback] = None
    where: Optional[Filter] = None
    closed: bool = False
    _backend: Optional["InMemoryBackend"] = field(default=None, repr=False)

    def wants(self, entity: str, row: Dict[str, Any]) -> bool:
        if self.closed or entity not in self.entities:
            return False
        return self.where is None or self.where.matches(row)

    def deliver(self, event: ChangeEvent) -> None:
        self.callback(event)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._backend is not None:
            self._backend._unregister(self)


class PresenceRoom:
    def __init__(self, name: str) -> None:
        self.name = name
        self.state: Dict[str, List[Dict[str, Any]]] = {}
        self.members: List["MemoryPresenceChannel"] = []

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return copy.deepcopy(self.state)

    def broadcast(self) -> None:
        for member in list(self.members):
            member._deliver(self.snapshot())


class MemoryPresenceChannel:
    def __init__(self, backend: "InMemoryBackend", room: PresenceRoom, key: str) -> None:
        self._backend = backend
        self._room = room
        self.key = key
        self._on_sync: Optional[Callable[[Dict[str, Any]], None]] = None
        self._on_status: Optional[StatusCallback] = None
        self.subscribed = False

    async def subscribe(self, on_sync, on_status=None) -> None:
        self._backend._maybe_fail("subscribe", self._room.name)
        self._on_sync = on_sync
        self._on_status = on_status
        self.subscribed = True
        if self not in self._room.members:
            self._room.members.append(self)
        if on_status is not None:
            on_status("subscribed")
        self._deliver(self._room.snapshot())

    async def track(self, state: Dict[str, Any]) -> None:
        self._backend._maybe_fail("track", self._room.name)
        self._backend.calls.append(("track", self._room.name, dict(state)))
        self._room.state[self.key] = [dict(state)]
        self._room.broadcast()

    async def untrack(self) -> None:
        self._backend.calls.append(("untrack", self._room.name, self.key))
        if self._room.state.pop(self.key, None) is not None:
            self._room.broadcast()

    async def unsubscribe(self) -> None:
        self.subscribed = False
        if self in self._room.members:
            self._room.members.remove(self)

    def presence_state(self) -> Dict[str, List[Dict[str, Any]]]:
        return self._room.snapshot()

    def _deliver(self, snapshot: Dict[str, Any]) -> None:
        if self.subscribed and self._on_sync is not None:
            self._on_sync(snapshot)

    def _drop(self) -> None:
        self.subscribed = False
        if self in self._room.members:
            self._room.members.remove(self)
        if self._on_status is not None:
            self._on_status("closed")


class InMemoryBackend:
    def __init__(self, *, blob_base_url: str = "memory://storage") -> None:
        self.blob_base_url = blob_base_url.rstrip("/")
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.blobs: Dict[str, bytes] = {}
        self.calls: List[Tuple[str, str, Any]] = []
        self._subscriptions: Dict[str, List[MemorySubscription]] = {}
        self._rooms: Dict[str, PresenceRoom] = {}
        self._failures: List[Tuple[str, Optional[str], BackendError]] = []

    # -- failure injection -------------------------------------------------

    def fail_next(self, method: str, entity: Optional[str] = None, error: Optional[BackendError] = None) -> None:
        """Make the next ``method`` call (optionally for ``entity``) raise."""

        self._failures.append((method, entity, error or TransientNetworkError(f"{method} failed")))

    def _maybe_fail(self, method: str, entity: Optional[str]) -> None:
        for index, (wanted_method, wanted_entity, error) in enumerate(self._failures):
            if wanted_method == method and (wanted_entity is None or wanted_entity == entity):
                del self._failures[index]
                raise error

    def writes(self, method: Optional[str] = None, entity: Optional[str] = None) -> List[Tuple[str, str, Any]]:
        return [
            call
            for call in self.calls
            if call[0] in ("insert", "update", "delete")
            and (method is None or call[0] == method)
            and (entity is None or call[1] == entity)
        ]

    # -- tables --------------------------------------------------------------

    def seed(self, entity: str, rows: Iterable[Dict[str, Any]]) -> None:
        table = self.tables.setdefault(entity, {})
        for row in rows:
            table[str(row["id"])] = dict(row)

    def row(self, entity: str, row_id: str) -> Optional[Dict[str, Any]]:
        found = self.tables.get(entity, {}).get(row_id)
        return dict(found) if found is not None else None

    async def query(
        self,
        entity: str,
        where: Optional[Filter] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        self._maybe_fail("query", entity)
        self.calls.append(("query", entity, where.to_json() if where else None))
        rows = [dict(row) for row in self.tables.get(entity, {}).values() if where is None or where.matches(row)]
        return sort_rows(rows, order_by, descending)

    async def insert(self, entity: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("insert", entity)
        row = dict(payload)
        row.setdefault("id", secrets.token_hex(8))
        table = self.tables.setdefault(entity, {})
        if row["id"] in table:
            raise BackendError(f"duplicate key {row['id']} in {entity}")
        self.calls.append(("insert", entity, dict(row)))
        table[row["id"]] = row
        self._emit(OP_INSERT, entity, row)
        return dict(row)

    async def update(self, entity: str, target: Target, patch: Dict[str, Any]) -> List[Dict[str, Any]]:
        self._maybe_fail("update", entity)
        where = target_filter(target)
        self.calls.append(("update", entity, (where.to_json(), dict(patch))))
        table = self.tables.get(entity, {})
        matched = [row for row in table.values() if where.matches(row)]
        if not matched and isinstance(target, str):
            raise NotFoundError(f"{entity} {target} not found")
        updated = []
        for row in matched:
            row.update(patch)
            updated.append(dict(row))
        for row in updated:
            self._emit(OP_UPDATE, entity, row)
        return updated

    async def delete(self, entity: str, target: Target) -> List[Dict[str, Any]]:
        self._maybe_fail("delete", entity)
        where = target_filter(target)
        self.calls.append(("delete", entity, where.to_json()))
        table = self.tables.get(entity, {})
        removed = [table.pop(row_id) for row_id, row in list(table.items()) if where.matches(row)]
        if not removed and isinstance(target, str):
            raise NotFoundError(f"{entity} {target} not found")
        for row in removed:
            self._emit(OP_DELETE, entity, row)
        return removed

    async def upload(self, path: str, data: bytes) -> str:
        self._maybe_fail("upload", None)
        self.calls.append(("upload", path, len(data)))
        self.blobs[path] = bytes(data)
        return f"{self.blob_base_url}/{path}"

    # -- change feed ---------------------------------------------------------

    async def subscribe(
        self,
        channel: str,
        entities: Iterable[str],
        callback: EventCallback,
        on_status: Optional[StatusCallback] = None,
        where: Optional[Filter] = None,
    ) -> MemorySubscription:
        self._maybe_fail("subscribe", channel)
        subscription = MemorySubscription(
            channel=channel,
            entities=tuple(entities),
            callback=callback,
            on_status=on_status,
            where=where,
            _backend=self,
        )
        self._subscriptions.setdefault(channel, []).append(subscription)
        if on_status is not None:
            on_status("subscribed")
        return subscription

    def _unregister(self, subscription: MemorySubscription) -> None:
        subs = self._subscriptions.get(subscription.channel)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.channel, None)

    def _emit(self, op: str, entity: str, row: Dict[str, Any]) -> None:
        for subs in list(self._subscriptions.values()):
            for subscription in list(subs):
                if subscription.wants(entity, row):
                    subscription.deliver(ChangeEvent(op=op, entity=entity, payload=dict(row)))

    def deliver(self, event: ChangeEvent, channel: Optional[str] = None) -> int:
        """Push ``event`` to subscribers directly, e.g. to replay a duplicate."""

        delivered = 0
        for name, subs in list(self._subscriptions.items()):
            if channel is not None and name != channel:
                continue
            for subscription in list(subs):
                if subscription.wants(event.entity, event.payload):
                    subscription.deliver(event)
                    delivered += 1
        return delivered

    def replay(self, event: ChangeEvent) -> None:
        """Apply a recorded change to the tables, then publish it to subscribers."""

        row_id = event.payload.get("id")
        table = self.tables.setdefault(event.entity, {})
        if isinstance(row_id, str):
            if event.op == OP_DELETE:
                table.pop(row_id, None)
            else:
                table[row_id] = {**table.get(row_id, {}), **event.payload}
        self.deliver(event)

    def subscriptions(self, channel: str) -> List[MemorySubscription]:
        return list(self._subscriptions.get(channel, []))

    def drop_channel(self, channel: str) -> None:
        """Simulate the server closing every subscription on ``channel``."""

        for subscription in self._subscriptions.pop(channel, []):
            subscription.closed = True
            if subscription.on_status is not None:
                subscription.on_status("closed")

    # -- presence ------------------------------------------------------------

    def presence_channel(self, name: str, key: str) -> MemoryPresenceChannel:
        room = self._rooms.setdefault(name, PresenceRoom(name))
        return MemoryPresenceChannel(self, room, key)

    def presence_room(self, name: str) -> PresenceRoom:
        return self._rooms.setdefault(name, PresenceRoom(name))

    def disconnect_presence(self, name: str, key: str) -> None:
        """Drop ``key``'s connection to a presence room; the others get a fresh sync."""

        room = self._rooms.get(name)
        if room is None:
            return
        for member in [member for member in room.members if member.key == key]:
            member._drop()
        if room.state.pop(key, None) is not None:
            room.broadcast()
