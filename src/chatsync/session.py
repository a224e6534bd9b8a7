"""The viewer's session: wires the stores to a backend and owns every channel.

``ChatSession`` is an async context manager. Entering it hydrates the stores,
subscribes the global change feed and joins the presence channel; leaving it
closes the open conversation and releases every channel, even when a step of
the teardown fails. A conversation is opened with ``open_conversation`` and
released with ``close_conversation``; responses that arrive after their
conversation was closed are discarded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .backend import BackendError
from .config import SyncConfig
from .conversation_store import ConversationStore
from .events import NormalizedEvent
from .inbox import ConversationSummary, InboxBuilder
from .ingestion import EventIngestionAdapter, Subscription
from .message_store import MessageStore
from .models import Message, Profile, now_ms
from .optimistic import Draft, MutationCoordinator, OptimisticOperation
from .presence import PresenceAggregator, TypingIndicator
from .profiles import ProfileDirectory, ProfileEditor, ProfileUpdate, SearchHistory, find_contact
from .selection import BulkResult, SelectionManager
from .unread import ReadTracker
from .visibility import VIEW_ACTIVE, group_by_day, shared_media, visible_messages

logger = logging.getLogger(__name__)


class SessionClosed(RuntimeError):
    pass


@dataclass
class ConversationHandle:
    """An open conversation, or a temporary chat until its first message."""

    other_user_id: str
    conv_id: Optional[str] = None
    draft: Draft = field(default_factory=Draft)
    subscription: Optional[Subscription] = None
    typing: Optional[TypingIndicator] = None
    closed: bool = False

    @property
    def temporary(self) -> bool:
        return self.conv_id is None


class ChatSession:
    def __init__(
        self,
        viewer_id: str,
        backend,
        config: SyncConfig | None = None,
        *,
        history: Optional[SearchHistory] = None,
        now_func=now_ms,
    ) -> None:
        self.viewer_id = viewer_id
        self.backend = backend
        self.config = config or SyncConfig()
        self._now = now_func
        self.conversations = ConversationStore(viewer_id)
        self.messages = MessageStore()
        self.profiles = ProfileDirectory()
        self.ingestion = EventIngestionAdapter(
            viewer_id,
            backend,
            self.conversations,
            self.messages,
            profiles=self.profiles,
            global_channel=self.config.global_channel,
        )
        self.presence = PresenceAggregator(viewer_id, self.config.presence_config(), now_func=now_func)
        self.reads = ReadTracker(viewer_id, backend, self.conversations, self.messages)
        self.mutations = MutationCoordinator(
            viewer_id,
            backend,
            self.conversations,
            self.messages,
            attachments_prefix=self.config.attachments_prefix,
            now_func=now_func,
        )
        self.selection = SelectionManager(viewer_id, backend, self.conversations, self.messages, now_func=now_func)
        self.selection.before_conversation_action = self._close_if_selected
        self.editor = ProfileEditor(viewer_id, backend, self.profiles, avatar_prefix=self.config.avatars_prefix)
        self.inbox = InboxBuilder(
            viewer_id,
            self.conversations,
            self.messages,
            profiles=self.profiles,
            presence=self.presence,
            placeholder=self.config.placeholder_text,
            now_func=now_func,
        )
        if history is None:
            history = SearchHistory(self.config.history_path, self.config.history_size)
        self.history = history
        self.active: Optional[ConversationHandle] = None
        self._global: Optional[Subscription] = None
        self._started = False
        self._closed = False

    async def __aenter__(self) -> "ChatSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._closed:
            raise SessionClosed("session already closed")
        if self._started:
            return
        self._started = True
        self.ingestion.add_listener(self._on_event)
        try:
            self._global = await self.ingestion.subscribe(self.ingestion.scope())
            await self.ingestion.resync(self.ingestion.scope())
            channel = self.backend.presence_channel(self.config.presence_channel, self.viewer_id)
            await self.presence.join(channel, on_tracked=self._touch_last_seen)
        except BaseException:
            await self.close()
            raise

    async def close(self) -> None:
        """Release every channel; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        if self.active is not None:
            try:
                await self.close_conversation(self.active)
            except BackendError as exc:
                logger.warning("closing conversation failed: %s", exc)
        try:
            await self.presence.leave()
        except BackendError as exc:
            logger.warning("leaving presence failed: %s", exc)
        finally:
            await self.ingestion.close()
            self.ingestion.remove_listener(self._on_event)
            self._global = None

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosed("session closed")

    async def _touch_last_seen(self) -> None:
        try:
            await self.editor.touch_last_seen(now_func=self._now)
        except BackendError as exc:
            logger.warning("updating last_seen failed: %s", exc)

    async def _on_event(self, event: NormalizedEvent) -> None:
        self.mutations.reconcile(event)
        await self.reads.on_event(event)

    @property
    def sync_degraded(self) -> bool:
        """True while a feed, presence or typing channel could not be recovered."""

        typing = self.active.typing if self.active is not None else None
        return (
            self.ingestion.sync_degraded
            or self.presence.sync_degraded
            or (typing is not None and typing.sync_degraded)
        )

    async def drain(self) -> None:
        """Wait for background listener and channel recovery tasks."""

        await self.ingestion.drain()
        await self.presence.drain()
        if self.active is not None and self.active.typing is not None:
            await self.active.typing.drain()

    # -- conversations -------------------------------------------------------

    async def open_conversation(
        self, conv_id: Optional[str] = None, *, other_user_id: Optional[str] = None
    ) -> ConversationHandle:
        """Open ``conv_id``, or a temporary chat with ``other_user_id``.

        Any conversation already open is closed first.
        """

        self._check_open()
        if conv_id is not None:
            conversation = self.conversations.get(conv_id)
            if conversation is None:
                raise KeyError(conv_id)
            other_user_id = conversation.other_user_id(self.viewer_id)
        elif other_user_id is None:
            raise ValueError("either conv_id or other_user_id is required")
        if self.active is not None:
            await self.close_conversation(self.active)
        handle = ConversationHandle(other_user_id=other_user_id, conv_id=conv_id)
        self.active = handle
        if conv_id is not None:
            await self._attach(handle)
        return handle

    async def _attach(self, handle: ConversationHandle) -> None:
        conv_id = handle.conv_id
        handle.subscription = await self.ingestion.subscribe(self.ingestion.scope(conv_id))
        if handle.closed:
            await self.ingestion.unsubscribe(handle.subscription)
            return
        typing = TypingIndicator(
            self.viewer_id,
            conv_id,
            self.backend.presence_channel(self.config.typing_channel(conv_id), self.viewer_id),
            self.config.presence_config(),
            now_func=self._now,
        )
        handle.typing = typing
        await typing.open()
        fetched = await self.messages.fetch(self.backend, conv_id, self.conversations.boundary(conv_id))
        if handle.closed or self.active is not handle:
            self.messages.discard(conv_id)
            return
        self.messages.load(conv_id, fetched, self.conversations.boundary(conv_id))
        await self.reads.activate(conv_id)

    async def close_conversation(self, handle: ConversationHandle) -> None:
        if handle.closed:
            return
        handle.closed = True
        if self.active is handle:
            self.active = None
            self.reads.deactivate(handle.conv_id)
        typing, handle.typing = handle.typing, None
        subscription, handle.subscription = handle.subscription, None
        try:
            if typing is not None:
                await typing.close()
        finally:
            if subscription is not None:
                await self.ingestion.unsubscribe(subscription)

    async def _close_if_selected(self, conv_ids: List[str]) -> None:
        if self.active is not None and self.active.conv_id in conv_ids:
            await self.close_conversation(self.active)

    async def start_conversation(self, email: str, *, viewer_email: Optional[str] = None) -> ConversationHandle:
        """Look a contact up by email and open the conversation with them.

        When none exists yet a temporary chat is opened; the conversation is
        created by the first send.
        """

        self._check_open()
        if viewer_email is None:
            own = self.profiles.get(self.viewer_id)
            viewer_email = own.email if own else None
        contact = await find_contact(self.backend, self.viewer_id, email, viewer_email=viewer_email)
        self.profiles.upsert(contact)
        self.history.add(email)
        conv_id = await self.mutations.start_conversation(contact.user_id)
        if conv_id is not None:
            return await self.open_conversation(conv_id)
        return await self.open_conversation(other_user_id=contact.user_id)

    # -- reads ---------------------------------------------------------------

    def conversation_list(self, view: str = VIEW_ACTIVE, search_term: str = "") -> List[ConversationSummary]:
        open_conv_id = self.active.conv_id if self.active is not None else None
        return self.inbox.summaries(view, search_term, open_conv_id=open_conv_id)

    def archived_count(self) -> int:
        return self.inbox.archived_count()

    def visible_messages(self, handle: ConversationHandle) -> List[Message]:
        if handle.conv_id is None:
            return []
        return visible_messages(self.messages.messages(handle.conv_id), self.conversations.boundary(handle.conv_id))

    def message_groups(self, handle: ConversationHandle, today=None):
        return group_by_day(self.visible_messages(handle), today)

    def shared_media(self, handle: ConversationHandle) -> List[str]:
        return shared_media(self.visible_messages(handle))

    def peer_typing(self, handle: ConversationHandle) -> bool:
        return handle.typing is not None and handle.typing.is_typing(handle.other_user_id)

    def peer_online(self, handle: ConversationHandle) -> bool:
        return self.presence.is_online(handle.other_user_id)

    # -- writes --------------------------------------------------------------

    async def send(self, handle: ConversationHandle, text: Optional[str] = None) -> Optional[OptimisticOperation]:
        """Send (or apply the edit in) the handle's draft."""

        self._check_open()
        if text is not None:
            handle.draft.text = text
        op = await self.mutations.submit(handle.draft, handle.other_user_id)
        await self._promote(handle, op)
        return op

    async def upload(self, handle: ConversationHandle, filename: str, data: bytes) -> OptimisticOperation:
        self._check_open()
        op = await self.mutations.upload(handle.draft, handle.other_user_id, filename, data)
        await self._promote(handle, op)
        return op

    async def _promote(self, handle: ConversationHandle, op: Optional[OptimisticOperation]) -> None:
        # The first send of a temporary chat creates its conversation.
        if op is None or op.conv_id is None or not handle.temporary or handle.closed:
            return
        handle.conv_id = op.conv_id
        await self._attach(handle)

    def begin_edit(self, handle: ConversationHandle, msg_id: str) -> bool:
        return self.mutations.begin_edit(handle.draft, msg_id)

    async def keystroke(self, handle: ConversationHandle) -> None:
        if handle.typing is None:
            return
        try:
            await handle.typing.keystroke()
        except BackendError as exc:
            logger.warning("typing signal failed: %s", exc)

    async def bulk_archive(self, view: str = VIEW_ACTIVE) -> BulkResult:
        self._check_open()
        return await self.selection.bulk_archive(view)

    async def bulk_delete_conversations(self) -> BulkResult:
        self._check_open()
        return await self.selection.bulk_delete_conversations()

    async def bulk_delete_messages(self) -> BulkResult:
        self._check_open()
        return await self.selection.bulk_delete_messages()

    async def update_profile(self, update: ProfileUpdate) -> bool:
        self._check_open()
        return await self.editor.apply(update)

    def profile(self, user_id: Optional[str] = None) -> Optional[Profile]:
        return self.profiles.get(user_id or self.viewer_id)

    def failed_operations(self) -> List[OptimisticOperation]:
        return self.mutations.failed_operations()

    def snapshot(self) -> dict[str, Any]:
        return {
            "viewer_id": self.viewer_id,
            "conversations": len(self.conversations),
            "messages": len(self.messages),
            "online": self.presence.online_users(),
            "sync_degraded": self.sync_degraded,
        }
