from __future__ import annotations

import logging
from typing import Callable, List, Optional

from .backend import BackendError, Filter
from .conversation_store import ConversationStore
from .events import ENTITY_MESSAGES, MessageInserted, NormalizedEvent
from .message_store import MessageStore
from .models import Message
from .visibility import is_deleted_for_viewer, visible_messages

logger = logging.getLogger(__name__)


def _filtered(conversations: ConversationStore, messages: MessageStore, conv_id: str) -> List[Message]:
    return visible_messages(messages.messages(conv_id), conversations.boundary(conv_id))


def unread_count(conversations: ConversationStore, messages: MessageStore, conv_id: str, viewer_id: str) -> int:
    """Peer messages the viewer has not read, after the viewer's boundary."""

    conversation = conversations.get(conv_id)
    if conversation is not None and is_deleted_for_viewer(conversation, viewer_id):
        return 0
    return sum(
        1
        for message in _filtered(conversations, messages, conv_id)
        if message.sender_id != viewer_id and not message.is_read
    )


def last_message_is_read(conversations: ConversationStore, messages: MessageStore, conv_id: str) -> bool:
    visible = _filtered(conversations, messages, conv_id)
    if not visible:
        return True
    return visible[-1].is_read


def last_sender_for_display(conversations: ConversationStore, conv_id: str, viewer_id: str) -> Optional[str]:
    conversation = conversations.get(conv_id)
    if conversation is None or is_deleted_for_viewer(conversation, viewer_id):
        return None
    return conversation.last_message_sender_id


def read_receipt_filter(conv_id: str, viewer_id: str) -> Filter:
    return Filter().eq("conversation_id", conv_id).neq("user_id", viewer_id).eq("is_read", False)


class ReadTracker:
    """Issues read receipts for the conversation the viewer has open."""

    def __init__(
        self,
        viewer_id: str,
        backend,
        conversations: ConversationStore,
        messages: MessageStore,
        *,
        on_refresh: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.viewer_id = viewer_id
        self._backend = backend
        self._conversations = conversations
        self._messages = messages
        self._on_refresh = on_refresh
        self.active_conv_id: Optional[str] = None

    async def activate(self, conv_id: Optional[str]) -> bool:
        self.active_conv_id = conv_id
        if conv_id is None:
            return True
        return await self.mark_read(conv_id)

    def deactivate(self, conv_id: Optional[str] = None) -> None:
        if conv_id is None or conv_id == self.active_conv_id:
            self.active_conv_id = None

    async def mark_read(self, conv_id: str) -> bool:
        """Mark every unread peer message in ``conv_id`` read with one bulk write.

        Safe to repeat: a filter that matches nothing is not an error.
        Returns ``False`` when the write failed.
        """

        try:
            await self._backend.update(ENTITY_MESSAGES, read_receipt_filter(conv_id, self.viewer_id), {"is_read": True})
        except BackendError as exc:
            logger.warning("mark_read failed for %s: %s", conv_id, exc)
            return False
        self._messages.mark_read_local(conv_id, self.viewer_id)
        if self._on_refresh is not None:
            self._on_refresh(conv_id)
        return True

    def wants_receipt(self, event: NormalizedEvent) -> bool:
        return (
            isinstance(event, MessageInserted)
            and event.message.conv_id == self.active_conv_id
            and event.message.sender_id != self.viewer_id
        )

    async def on_event(self, event: NormalizedEvent) -> None:
        if self.wants_receipt(event):
            await self.mark_read(event.message.conv_id)
