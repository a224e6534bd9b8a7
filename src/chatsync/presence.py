from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .backend import BackendError
from .models import now_ms

logger = logging.getLogger(__name__)

STATUS_UNKNOWN = "unknown"
STATUS_ONLINE = "online"


@dataclass
class PresenceConfig:
    typing_window_seconds: float = 2.5


@dataclass
class PresenceRecord:
    user_id: str
    online_at_ms: int


@dataclass
class TypingSignal:
    user_id: str
    conv_id: str
    expires_at_ms: int


def _metas(snapshot: Dict[str, Any]) -> Iterable[tuple[str, Dict[str, Any]]]:
    # Channel state is keyed by presence key; each key holds one or more metas.
    for key, value in snapshot.items():
        entries = value if isinstance(value, list) else [value]
        for meta in entries:
            if isinstance(meta, dict):
                yield str(key), meta


def last_seen_label(last_seen_ms: Optional[int], *, now_func: Callable[[], int] = now_ms) -> str:
    """Bucket a peer's last-seen time for display while they are offline."""

    if last_seen_ms is None:
        return "offline"
    delta_s = max(0, (now_func() - last_seen_ms) // 1000)
    if delta_s < 60:
        return "just now"
    if delta_s < 60 * 60:
        return f"{delta_s // 60}m ago"
    if delta_s < 24 * 60 * 60:
        return f"{delta_s // 3600}h ago"
    seen = datetime.fromtimestamp(last_seen_ms / 1000, timezone.utc)
    return f"{seen.day} {seen:%b}"


async def _cancel_all(tasks: Set[asyncio.Future]) -> None:
    pending = list(tasks)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
    tasks.clear()


class PresenceAggregator:
    """Online state of peers from full presence snapshots, plus the self heartbeat.

    Peer presence is only ever replaced by a sync snapshot. A disconnect
    forgets every peer so nobody is reported online from stale data, then the
    channel is resubscribed; the heartbeat is re-asserted once it is back. If
    resubscribing fails the aggregator reports itself degraded.
    """

    def __init__(self, viewer_id: str, config: PresenceConfig | None = None, *, now_func=now_ms) -> None:
        self.viewer_id = viewer_id
        self.config = config or PresenceConfig()
        self._now = now_func
        self._records: Dict[str, PresenceRecord] = {}
        self._channel = None
        self._on_tracked: Optional[Callable[[], Any]] = None
        self._joined = False
        self._recovering = False
        self._tasks: Set[asyncio.Future] = set()
        self._listeners: List[Callable[[], None]] = []
        self.connected = False
        self.sync_degraded = False

    def add_listener(self, callback: Callable[[], None]) -> None:
        self._listeners.append(callback)

    def _notify(self) -> None:
        for callback in list(self._listeners):
            callback()

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for scheduled resubscribe and heartbeat tasks."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def join(self, channel, on_tracked: Optional[Callable[[], Any]] = None) -> None:
        """Subscribe to the global presence channel and start the self heartbeat."""

        self._channel = channel
        self._on_tracked = on_tracked
        await channel.subscribe(self.on_sync, self.on_status)
        await self.track_self()
        self._joined = True

    async def leave(self) -> None:
        channel, self._channel = self._channel, None
        self._joined = False
        await _cancel_all(self._tasks)
        if channel is None:
            return
        try:
            await channel.untrack()
        finally:
            await channel.unsubscribe()
            self.on_disconnect()

    async def track_self(self) -> None:
        if self._channel is None:
            return
        await self._channel.track({"user_id": self.viewer_id, "online_at": self._now()})
        if self._on_tracked is not None:
            result = self._on_tracked()
            if asyncio.iscoroutine(result):
                await result

    async def _reassert(self) -> None:
        try:
            await self.track_self()
        except BackendError as exc:
            logger.warning("presence heartbeat re-assert failed: %s", exc)

    async def _resubscribe(self) -> None:
        try:
            channel = self._channel
            if channel is None:
                return
            try:
                await channel.subscribe(self.on_sync, self.on_status)
            except BackendError as exc:
                logger.warning("presence resubscribe failed: %s", exc)
                self.sync_degraded = True
                return
            self.sync_degraded = False
        finally:
            self._recovering = False

    def on_status(self, status: str) -> None:
        if status == "subscribed":
            self.connected = True
            if self._joined:
                # Channel came back; re-assert the heartbeat.
                self._spawn(self._reassert())
        elif status in ("closed", "error"):
            self.on_disconnect()
            if self._joined and not self._recovering:
                logger.info("presence channel lost (%s); resubscribing", status)
                self._recovering = True
                self._spawn(self._resubscribe())

    def on_sync(self, snapshot: Dict[str, Any]) -> None:
        records: Dict[str, PresenceRecord] = {}
        for key, meta in _metas(snapshot):
            user_id = meta.get("user_id") or key
            online_at = meta.get("online_at")
            records[str(user_id)] = PresenceRecord(
                user_id=str(user_id),
                online_at_ms=int(online_at) if isinstance(online_at, (int, float)) else self._now(),
            )
        self._records = records
        self._notify()

    def on_disconnect(self) -> None:
        self.connected = False
        if self._records:
            self._records = {}
            self._notify()

    def status(self, user_id: str) -> str:
        return STATUS_ONLINE if user_id in self._records else STATUS_UNKNOWN

    def is_online(self, user_id: str) -> bool:
        return user_id in self._records

    def online_users(self) -> List[str]:
        return sorted(self._records)


class TypingIndicator:
    """Typing signals for one open conversation.

    Each local keystroke re-tracks a typing record that carries its own
    expiry; the record is untracked once the window passes without another
    keystroke. A peer counts as typing while a record of theirs for this
    conversation is in the channel state and its window has not elapsed.
    A lost channel is resubscribed while the indicator is open.
    """

    def __init__(
        self,
        viewer_id: str,
        conv_id: Optional[str],
        channel,
        config: PresenceConfig | None = None,
        *,
        now_func=now_ms,
    ) -> None:
        self.viewer_id = viewer_id
        self.conv_id = conv_id
        self.config = config or PresenceConfig()
        self._channel = channel
        self._now = now_func
        self._signals: Dict[str, TypingSignal] = {}
        self._expire_task: asyncio.Task | None = None
        self._opened = False
        self._recovering = False
        self._tasks: Set[asyncio.Future] = set()
        self.sync_degraded = False

    @property
    def window_ms(self) -> int:
        return int(self.config.typing_window_seconds * 1000)

    async def open(self) -> None:
        await self._channel.subscribe(self.on_sync, self.on_status)
        self._opened = True

    async def close(self) -> None:
        self._opened = False
        await _cancel_all(self._tasks)
        if self._expire_task is not None:
            self._expire_task.cancel()
            try:
                await self._expire_task
            except asyncio.CancelledError:
                pass
            self._expire_task = None
        try:
            await self._channel.untrack()
        finally:
            await self._channel.unsubscribe()
            self._signals = {}

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def keystroke(self) -> None:
        if self.conv_id is None:
            return
        await self._channel.track(
            {
                "user_id": self.viewer_id,
                "typing_conv_id": self.conv_id,
                "typing_expires_at": self._now() + self.window_ms,
            }
        )
        if self._expire_task is not None:
            self._expire_task.cancel()
        self._expire_task = asyncio.create_task(self._expire_after(self.config.typing_window_seconds))

    async def _expire_after(self, delay_s: float) -> None:
        try:
            await asyncio.sleep(delay_s)
            await self._channel.untrack()
        except asyncio.CancelledError:
            return
        except BackendError as exc:
            logger.warning("typing untrack failed: %s", exc)

    async def _resubscribe(self) -> None:
        try:
            await self._channel.subscribe(self.on_sync, self.on_status)
        except BackendError as exc:
            logger.warning("typing resubscribe for %s failed: %s", self.conv_id, exc)
            self.sync_degraded = True
        else:
            self.sync_degraded = False
        finally:
            self._recovering = False

    def on_status(self, status: str) -> None:
        if status not in ("closed", "error"):
            return
        self._signals = {}
        if self._opened and not self._recovering:
            self._recovering = True
            task = asyncio.ensure_future(self._resubscribe())
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def on_sync(self, snapshot: Dict[str, Any]) -> None:
        signals: Dict[str, TypingSignal] = {}
        for key, meta in _metas(snapshot):
            user_id = str(meta.get("user_id") or key)
            conv_id = meta.get("typing_conv_id")
            expires_at = meta.get("typing_expires_at")
            if user_id == self.viewer_id or not isinstance(conv_id, str):
                continue
            if not isinstance(expires_at, (int, float)):
                expires_at = self._now() + self.window_ms
            signals[user_id] = TypingSignal(user_id=user_id, conv_id=conv_id, expires_at_ms=int(expires_at))
        self._signals = signals

    def is_typing(self, user_id: str) -> bool:
        signal = self._signals.get(user_id)
        if signal is None or signal.conv_id != self.conv_id:
            return False
        return signal.expires_at_ms > self._now()
