"""Per-conversation list rows for the viewer, derived from store snapshots."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional

from .conversation_store import ConversationStore
from .message_store import MessageStore
from .models import Conversation, now_ms
from .presence import PresenceAggregator, last_seen_label
from .profiles import ProfileDirectory
from .unread import last_message_is_read, last_sender_for_display, unread_count
from .visibility import (
    PLACEHOLDER_TEXT,
    VIEW_ACTIVE,
    archived_count,
    display_text,
    filter_conversations,
    is_deleted_for_viewer,
)


@dataclass(frozen=True)
class ConversationSummary:
    conv_id: str
    other_user_id: str
    name: str
    avatar_url: Optional[str]
    text: str
    last_message_at_ms: Optional[int]
    last_sender_id: Optional[str]
    unread: int
    last_is_read: Optional[bool]
    is_deleted: bool
    online: bool
    status_label: str

    @property
    def sent_by_viewer(self) -> bool:
        return self.last_sender_id is not None and self.last_sender_id != self.other_user_id


class InboxBuilder:
    """Builds the conversation list rows shown for a view and search term."""

    def __init__(
        self,
        viewer_id: str,
        conversations: ConversationStore,
        messages: MessageStore,
        *,
        profiles: Optional[ProfileDirectory] = None,
        presence: Optional[PresenceAggregator] = None,
        placeholder: str = PLACEHOLDER_TEXT,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.viewer_id = viewer_id
        self._conversations = conversations
        self._messages = messages
        self._profiles = profiles
        self._presence = presence
        self._placeholder = placeholder
        self._now = now_func

    def display_name(self, user_id: str) -> Optional[str]:
        if self._profiles is None:
            return None
        return self._profiles.display_name(user_id)

    def row_name(self, user_id: str) -> str:
        """Name shown and searched for a peer; the id when nothing better is known."""

        return self.display_name(user_id) or user_id

    def summaries(
        self, view: str = VIEW_ACTIVE, search_term: str = "", *, open_conv_id: Optional[str] = None
    ) -> List[ConversationSummary]:
        """Visible conversations, newest activity first.

        Conversations the viewer deleted are left out until a new message
        arrives, unless that conversation is currently open.
        """

        rows = []
        for conversation in filter_conversations(
            self._conversations.all(), self.viewer_id, view, search_term, self.row_name
        ):
            deleted = is_deleted_for_viewer(conversation, self.viewer_id)
            if deleted and conversation.conv_id != open_conv_id:
                continue
            rows.append(self.summary(conversation))
        return rows

    def summary(self, conversation: Conversation) -> ConversationSummary:
        other_id = conversation.other_user_id(self.viewer_id)
        profile = self._profiles.get(other_id) if self._profiles is not None else None
        online = self._presence is not None and self._presence.is_online(other_id)
        if online:
            label = "online"
        else:
            label = last_seen_label(profile.last_seen_ms if profile else None, now_func=self._now)
        conv_id = conversation.conv_id
        deleted = is_deleted_for_viewer(conversation, self.viewer_id)
        return ConversationSummary(
            conv_id=conv_id,
            other_user_id=other_id,
            name=self.row_name(other_id),
            avatar_url=profile.avatar_url if profile else None,
            text=display_text(conversation, self.viewer_id, self._placeholder),
            last_message_at_ms=conversation.last_message_at_ms,
            last_sender_id=last_sender_for_display(self._conversations, conv_id, self.viewer_id),
            unread=unread_count(self._conversations, self._messages, conv_id, self.viewer_id),
            last_is_read=None if deleted else last_message_is_read(self._conversations, self._messages, conv_id),
            is_deleted=deleted,
            online=online,
            status_label=label,
        )

    def archived_count(self) -> int:
        return archived_count(self._conversations.all(), self.viewer_id)

    def total_unread(self) -> int:
        return sum(row.unread for row in self.summaries())
