from __future__ import annotations

import bisect
import dataclasses
import itertools
import logging
from typing import Dict, Iterable, List, Optional

from .backend import Filter
from .events import ENTITY_MESSAGES, MessageDeleted, MessageInserted, MessageUpdated, NormalizedEvent
from .models import Message

logger = logging.getLogger(__name__)


def _order_key(message: Message) -> tuple[int, int]:
    return message.order_key


def _event_conv_id(event: NormalizedEvent) -> Optional[str]:
    if isinstance(event, (MessageInserted, MessageUpdated)):
        return event.message.conv_id
    if isinstance(event, MessageDeleted):
        return event.conv_id
    return None


class _PendingFetch:
    """Changes seen for a conversation while a snapshot of it is being fetched."""

    def __init__(self) -> None:
        self.fetches = 0
        self.events: List[NormalizedEvent] = []


class MessageStore:
    """Ordered message collections per conversation, kept current by change events.

    Messages are ordered by ``(created_at_ms, seq)`` where ``seq`` is a local
    insertion counter, so ties keep arrival order. Every ``apply`` is
    idempotent and re-checks the conversation's visibility boundary.

    Loading a fetched snapshot replaces the conversation's messages. Changes
    applied while that snapshot was in flight are replayed on top of it, so
    nothing confirmed in the meantime is lost.
    """

    def __init__(self) -> None:
        self._messages: Dict[str, List[Message]] = {}
        self._by_id: Dict[str, Message] = {}
        self._boundaries: Dict[str, Optional[int]] = {}
        self._pending: Dict[str, _PendingFetch] = {}
        self._seq = itertools.count(1)

    def boundary(self, conv_id: str) -> Optional[int]:
        return self._boundaries.get(conv_id)

    def set_boundary(self, conv_id: str, boundary_ms: Optional[int]) -> int:
        """Record the viewer's boundary; drops messages at or before it.

        Returns the number of messages dropped.
        """

        self._boundaries[conv_id] = boundary_ms
        if boundary_ms is None:
            return 0
        current = self._messages.get(conv_id, [])
        kept = [message for message in current if message.created_at_ms > boundary_ms]
        dropped = len(current) - len(kept)
        if dropped:
            for message in current:
                if message.created_at_ms <= boundary_ms:
                    self._by_id.pop(message.msg_id, None)
            self._messages[conv_id] = kept
        return dropped

    def _visible(self, conv_id: str, created_at_ms: int) -> bool:
        boundary = self._boundaries.get(conv_id)
        return boundary is None or created_at_ms > boundary

    # -- snapshots -------------------------------------------------------------

    def _begin_fetch(self, conv_ids: Iterable[str]) -> List[str]:
        conv_ids = list(conv_ids)
        for conv_id in conv_ids:
            self._pending.setdefault(conv_id, _PendingFetch()).fetches += 1
        return conv_ids

    def _end_fetch(self, conv_id: str) -> List[NormalizedEvent]:
        pending = self._pending.get(conv_id)
        if pending is None:
            return []
        pending.fetches -= 1
        if pending.fetches <= 0:
            del self._pending[conv_id]
        return list(pending.events)

    def fetching(self, conv_id: str) -> bool:
        return conv_id in self._pending

    async def fetch(self, backend, conv_id: str, boundary_ms: Optional[int] = None) -> List[Message]:
        """Query messages newer than ``boundary_ms`` without touching the store.

        Hand the result to ``load``, or call ``discard`` to drop it.
        """

        where = Filter().eq("conversation_id", conv_id)
        if boundary_ms is not None:
            where.gt("created_at", boundary_ms)
        self._begin_fetch([conv_id])
        try:
            rows = await backend.query(ENTITY_MESSAGES, where, order_by="created_at")
            return [Message.from_row(row) for row in rows]
        except BaseException:
            self._end_fetch(conv_id)
            raise

    async def fetch_many(self, backend, conv_ids: Iterable[str]) -> List[Message]:
        conv_ids = self._begin_fetch(conv_ids)
        if not conv_ids:
            return []
        try:
            rows = await backend.query(ENTITY_MESSAGES, Filter().is_in("conversation_id", conv_ids), order_by="created_at")
            return [Message.from_row(row) for row in rows]
        except BaseException:
            for conv_id in conv_ids:
                self._end_fetch(conv_id)
            raise

    def discard(self, conv_id: str) -> None:
        """Drop a fetch whose result will not be loaded."""

        self._end_fetch(conv_id)

    async def hydrate(self, backend, conv_id: str, boundary_ms: Optional[int] = None) -> List[Message]:
        """Fetch messages newer than ``boundary_ms`` and replace the local copy."""

        messages = await self.fetch(backend, conv_id, boundary_ms)
        self.load(conv_id, messages, boundary_ms)
        return self.messages(conv_id)

    def load(self, conv_id: str, messages: Iterable[Message], boundary_ms: Optional[int] = None) -> None:
        """Replace a conversation's messages wholesale (hydration/resync)."""

        for message in self._messages.pop(conv_id, []):
            self._by_id.pop(message.msg_id, None)
        self._boundaries[conv_id] = boundary_ms
        self._messages[conv_id] = []
        for message in messages:
            self._insert(message)
        for event in self._end_fetch(conv_id):
            self._apply(event)

    def load_many(self, messages: Iterable[Message], boundaries: Dict[str, Optional[int]]) -> None:
        grouped: Dict[str, List[Message]] = {conv_id: [] for conv_id in boundaries}
        for message in messages:
            grouped.setdefault(message.conv_id, []).append(message)
        for conv_id, items in grouped.items():
            self.load(conv_id, items, boundaries.get(conv_id))

    def forget(self, conv_id: str) -> None:
        for message in self._messages.pop(conv_id, []):
            self._by_id.pop(message.msg_id, None)
        self._boundaries.pop(conv_id, None)

    def _record(self, event: NormalizedEvent) -> None:
        if not self._pending:
            return
        conv_id = _event_conv_id(event)
        if conv_id is None:
            # A delete without its conversation may belong to any fetch.
            for pending in self._pending.values():
                pending.events.append(event)
        elif conv_id in self._pending:
            self._pending[conv_id].events.append(event)

    # -- changes ---------------------------------------------------------------

    def apply(self, event: NormalizedEvent) -> bool:
        """Apply a normalized message event; returns ``True`` if state changed."""

        changed = self._apply(event)
        self._record(event)
        return changed

    def _apply(self, event: NormalizedEvent) -> bool:
        if isinstance(event, MessageInserted):
            return self._insert(event.message)
        if isinstance(event, MessageUpdated):
            return self._replace(event.message)
        if isinstance(event, MessageDeleted):
            return self._remove(event.msg_id) is not None
        return False

    def _insert(self, message: Message) -> bool:
        if message.msg_id in self._by_id:
            return False
        if not self._visible(message.conv_id, message.created_at_ms):
            logger.debug("dropping message %s at or before boundary", message.msg_id)
            return False
        stored = dataclasses.replace(message, seq=next(self._seq))
        bucket = self._messages.setdefault(stored.conv_id, [])
        bisect.insort(bucket, stored, key=_order_key)
        self._by_id[stored.msg_id] = stored
        return True

    def insert(self, message: Message) -> bool:
        changed = self._insert(message)
        self._record(MessageInserted(message))
        return changed

    def replace(self, message: Message) -> bool:
        existing = self._by_id.get(message.msg_id)
        changed = self._replace(message)
        if existing is not None:
            self._record(MessageUpdated(dataclasses.replace(message, conv_id=existing.conv_id)))
        return changed

    def _replace(self, message: Message) -> bool:
        existing = self._by_id.get(message.msg_id)
        if existing is None:
            return False
        if not self._visible(existing.conv_id, message.created_at_ms):
            self._remove(existing.msg_id)
            return True
        updated = dataclasses.replace(message, conv_id=existing.conv_id, seq=existing.seq)
        bucket = self._messages[existing.conv_id]
        index = self._index_of(bucket, existing)
        if updated.created_at_ms == existing.created_at_ms:
            bucket[index] = updated
        else:
            del bucket[index]
            bisect.insort(bucket, updated, key=_order_key)
        self._by_id[updated.msg_id] = updated
        return True

    def remove(self, msg_id: str) -> Optional[Message]:
        existing = self._remove(msg_id)
        if existing is not None:
            self._record(MessageDeleted(msg_id=msg_id, conv_id=existing.conv_id))
        return existing

    def _remove(self, msg_id: str) -> Optional[Message]:
        existing = self._by_id.pop(msg_id, None)
        if existing is None:
            return None
        bucket = self._messages.get(existing.conv_id, [])
        del bucket[self._index_of(bucket, existing)]
        return existing

    @staticmethod
    def _index_of(bucket: List[Message], message: Message) -> int:
        index = bisect.bisect_left(bucket, message.order_key, key=_order_key)
        while bucket[index].msg_id != message.msg_id:
            index += 1
        return index

    def mark_read_local(self, conv_id: str, viewer_id: str) -> int:
        """Flip ``is_read`` on peer messages after a successful read receipt."""

        flipped = 0
        bucket = self._messages.get(conv_id, [])
        for index, message in enumerate(bucket):
            if message.sender_id != viewer_id and not message.is_read:
                updated = dataclasses.replace(message, is_read=True)
                bucket[index] = updated
                self._by_id[message.msg_id] = updated
                flipped += 1
        return flipped

    def get(self, msg_id: str) -> Optional[Message]:
        return self._by_id.get(msg_id)

    def messages(self, conv_id: str) -> List[Message]:
        return list(self._messages.get(conv_id, []))

    def conversation_ids(self) -> List[str]:
        return list(self._messages.keys())

    def __len__(self) -> int:
        return len(self._by_id)
