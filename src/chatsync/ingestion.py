from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .backend import BackendError, Filter
from .conversation_store import ConversationStore
from .events import (
    ENTITY_CONVERSATIONS,
    ENTITY_MESSAGES,
    ENTITY_PROFILES,
    ChangeEvent,
    ConversationInserted,
    ConversationUpdated,
    MalformedEvent,
    MessageDeleted,
    MessageInserted,
    MessageUpdated,
    NormalizedEvent,
    ProfileUpdated,
    normalize,
)
from .message_store import MessageStore

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global-sync"

Listener = Callable[[NormalizedEvent], Any]


@dataclass(frozen=True)
class Scope:
    """Either one conversation's message channel or the global channel."""

    conv_id: Optional[str] = None
    global_channel: str = GLOBAL_CHANNEL

    @property
    def is_global(self) -> bool:
        return self.conv_id is None

    @property
    def channel(self) -> str:
        if self.conv_id is None:
            return self.global_channel
        return f"chat_messages_{self.conv_id}"

    @property
    def entities(self) -> tuple[str, ...]:
        if self.conv_id is None:
            return (ENTITY_MESSAGES, ENTITY_CONVERSATIONS, ENTITY_PROFILES)
        return (ENTITY_MESSAGES,)

    def where(self) -> Optional[Filter]:
        if self.conv_id is None:
            return None
        return Filter().eq("conversation_id", self.conv_id)


@dataclass
class Subscription:
    scope: Scope
    feed: Any = None
    active: bool = True
    recovering: bool = field(default=False, repr=False)


class EventIngestionAdapter:
    """Routes change-feed events into the stores and keeps subscriptions alive.

    Store ``apply`` calls are idempotent, so duplicated deliveries and the
    overlap between a conversation channel and the global channel are
    harmless. When a channel is lost the adapter resubscribes and reloads the
    scope; if that fails the adapter reports itself degraded instead of
    raising.
    """

    def __init__(
        self,
        viewer_id: str,
        backend,
        conversations: ConversationStore,
        messages: MessageStore,
        *,
        profiles=None,
        global_channel: str = GLOBAL_CHANNEL,
        on_degraded: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self.viewer_id = viewer_id
        self._backend = backend
        self._conversations = conversations
        self._messages = messages
        self._profiles = profiles
        self._global_channel = global_channel
        self._on_degraded = on_degraded
        self._subscriptions: Dict[Scope, Subscription] = {}
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Future] = set()
        self.sync_degraded = False
        self.dropped_events = 0

    def scope(self, conv_id: Optional[str] = None) -> Scope:
        return Scope(conv_id=conv_id, global_channel=self._global_channel)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    async def subscribe(self, scope: Scope) -> Subscription:
        existing = self._subscriptions.get(scope)
        if existing is not None and existing.active:
            return existing
        subscription = Subscription(scope=scope)
        self._subscriptions[scope] = subscription
        try:
            subscription.feed = await self._open_feed(subscription)
        except BackendError:
            self._subscriptions.pop(scope, None)
            raise
        return subscription

    async def _open_feed(self, subscription: Subscription):
        scope = subscription.scope

        def on_status(status: str) -> None:
            self._on_status(subscription, status)

        return await self._backend.subscribe(
            scope.channel,
            scope.entities,
            self.dispatch,
            on_status,
            scope.where(),
        )

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        if self._subscriptions.get(subscription.scope) is subscription:
            self._subscriptions.pop(subscription.scope, None)
        feed, subscription.feed = subscription.feed, None
        if feed is not None:
            await feed.close()

    async def close(self) -> None:
        for subscription in list(self._subscriptions.values()):
            await self.unsubscribe(subscription)
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def dispatch(self, raw: ChangeEvent) -> Optional[NormalizedEvent]:
        """Apply one raw event to the owning store and notify listeners."""

        try:
            event = normalize(raw)
        except MalformedEvent as exc:
            self.dropped_events += 1
            logger.warning("dropping malformed %s event: %s", raw.entity, exc)
            return None
        self.apply(event)
        return event

    def apply(self, event: NormalizedEvent) -> bool:
        changed = False
        if isinstance(event, (MessageInserted, MessageUpdated, MessageDeleted)):
            if isinstance(event, MessageDeleted) or event.message.conv_id in self._conversations:
                changed = self._messages.apply(event)
        elif isinstance(event, (ConversationInserted, ConversationUpdated)):
            changed = self._conversations.apply(event)
            if changed:
                conv_id = event.conversation.conv_id
                self._messages.set_boundary(conv_id, self._conversations.boundary(conv_id))
        elif isinstance(event, ProfileUpdated):
            if self._profiles is not None:
                changed = self._profiles.apply(event)
        self._notify(event)
        return changed

    def _notify(self, event: NormalizedEvent) -> None:
        for listener in list(self._listeners):
            result = listener(event)
            if asyncio.iscoroutine(result):
                self._track(asyncio.ensure_future(result))

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("change listener failed", exc_info=task.exception())

    async def drain(self) -> None:
        """Wait for listener and recovery tasks scheduled so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _on_status(self, subscription: Subscription, status: str) -> None:
        if status not in ("closed", "error"):
            return
        if not subscription.active or subscription.recovering:
            return
        logger.info("channel %s lost (%s); resubscribing", subscription.scope.channel, status)
        subscription.recovering = True
        self._track(asyncio.ensure_future(self.recover(subscription)))

    async def recover(self, subscription: Subscription) -> bool:
        """Resubscribe a lost channel, then reload its scope from the store."""

        try:
            try:
                subscription.feed = await self._open_feed(subscription)
            except BackendError as exc:
                logger.warning("resubscribe to %s failed: %s", subscription.scope.channel, exc)
                self._set_degraded(True)
                return False
            if not subscription.active:
                feed, subscription.feed = subscription.feed, None
                await feed.close()
                return False
            try:
                await self.resync(subscription.scope)
            except BackendError as exc:
                logger.warning("resync of %s failed: %s", subscription.scope.channel, exc)
                self._set_degraded(True)
                return False
            self._set_degraded(False)
            return True
        finally:
            subscription.recovering = False

    async def resync(self, scope: Scope) -> None:
        if not scope.is_global:
            conv_id = scope.conv_id
            await self._messages.hydrate(self._backend, conv_id, self._conversations.boundary(conv_id))
            return
        await self._conversations.hydrate(self._backend)
        conv_ids = [conversation.conv_id for conversation in self._conversations.all()]
        messages = await self._messages.fetch_many(self._backend, conv_ids)
        boundaries = {conv_id: self._conversations.boundary(conv_id) for conv_id in conv_ids}
        self._messages.load_many(messages, boundaries)
        if self._profiles is not None:
            await self._profiles.hydrate(self._backend, self._conversations, self.viewer_id)

    def _set_degraded(self, degraded: bool) -> None:
        if self.sync_degraded == degraded:
            return
        self.sync_degraded = degraded
        if self._on_degraded is not None:
            self._on_degraded(degraded)
