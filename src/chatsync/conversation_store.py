from __future__ import annotations

import dataclasses
from typing import Dict, Iterable, List, Optional, Tuple

from .backend import Filter
from .events import ENTITY_CONVERSATIONS, ConversationInserted, ConversationUpdated, NormalizedEvent
from .models import Conversation

CacheFields = Tuple[Optional[str], Optional[int], Optional[str]]


class ConversationStore:
    """Conversation summaries for one viewer.

    Rows for conversations the viewer does not take part in are ignored, so
    the global change feed can be applied without pre-filtering.
    """

    def __init__(self, viewer_id: str) -> None:
        self.viewer_id = viewer_id
        self._conversations: Dict[str, Conversation] = {}

    async def hydrate(self, backend) -> List[Conversation]:
        where = Filter().either(("user1_id", "user2_id"), self.viewer_id)
        rows = await backend.query(ENTITY_CONVERSATIONS, where)
        self.load(Conversation.from_row(row) for row in rows)
        return self.all()

    def load(self, conversations: Iterable[Conversation]) -> None:
        self._conversations = {}
        for conversation in conversations:
            self.upsert(conversation)

    def apply(self, event: NormalizedEvent) -> bool:
        if isinstance(event, ConversationInserted):
            if event.conversation.conv_id in self._conversations:
                return False
            return self.upsert(event.conversation)
        if isinstance(event, ConversationUpdated):
            # Rows carry the full conversation, so an update for an unseen id
            # (missed insert) is adopted as-is.
            return self.upsert(event.conversation)
        return False

    def upsert(self, conversation: Conversation) -> bool:
        if not conversation.has_participant(self.viewer_id):
            return False
        if self._conversations.get(conversation.conv_id) == conversation:
            return False
        self._conversations[conversation.conv_id] = conversation
        return True

    def update_cache(
        self, conv_id: str, text: Optional[str], at_ms: Optional[int], sender_id: Optional[str]
    ) -> Optional[CacheFields]:
        """Set the last-message cache locally; returns the previous values."""

        conversation = self._conversations.get(conv_id)
        if conversation is None:
            return None
        previous = (
            conversation.last_message_text,
            conversation.last_message_at_ms,
            conversation.last_message_sender_id,
        )
        self._conversations[conv_id] = dataclasses.replace(
            conversation,
            last_message_text=text,
            last_message_at_ms=at_ms,
            last_message_sender_id=sender_id,
        )
        return previous

    def update_viewer_slot(self, conv_id: str, **changes) -> Optional[Conversation]:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            return None
        updated = conversation.with_slot(self.viewer_id, **changes)
        self._conversations[conv_id] = updated
        return updated

    def find_by_pair(self, user_a: str, user_b: str) -> Optional[Conversation]:
        wanted = {user_a, user_b}
        for conversation in self._conversations.values():
            if {conversation.slot_a.user_id, conversation.slot_b.user_id} == wanted:
                return conversation
        return None

    def get(self, conv_id: str) -> Optional[Conversation]:
        return self._conversations.get(conv_id)

    def boundary(self, conv_id: str) -> Optional[int]:
        conversation = self._conversations.get(conv_id)
        if conversation is None:
            return None
        return conversation.slot_for(self.viewer_id).deleted_at_ms

    def all(self) -> List[Conversation]:
        return list(self._conversations.values())

    def __contains__(self, conv_id: object) -> bool:
        return conv_id in self._conversations

    def __len__(self) -> int:
        return len(self._conversations)
