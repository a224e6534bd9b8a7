"""Pure per-viewer visibility rules over conversation and message snapshots."""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from .models import MESSAGE_TYPE_IMAGE, Conversation, Message, ParticipantSlot

VIEW_ACTIVE = "active"
VIEW_ARCHIVED = "archived"
VIEWS = (VIEW_ACTIVE, VIEW_ARCHIVED)

PLACEHOLDER_TEXT = "Start a conversation"


def resolve_slot(conversation: Conversation, viewer_id: str) -> ParticipantSlot:
    return conversation.slot_for(viewer_id)


def is_visible(conversation: Conversation, viewer_id: str, view: str = VIEW_ACTIVE) -> bool:
    if view not in VIEWS:
        raise ValueError(f"unknown view: {view}")
    slot = resolve_slot(conversation, viewer_id)
    if slot.hidden:
        return False
    if view == VIEW_ARCHIVED:
        return slot.archived
    return not slot.archived


def is_deleted_for_viewer(conversation: Conversation, viewer_id: str) -> bool:
    """True when the viewer deleted the conversation and nothing arrived since."""

    deleted_at = resolve_slot(conversation, viewer_id).deleted_at_ms
    if deleted_at is None:
        return False
    last_at = conversation.last_message_at_ms
    return last_at is None or last_at <= deleted_at


def display_text(conversation: Conversation, viewer_id: str, placeholder: str = PLACEHOLDER_TEXT) -> str:
    if is_deleted_for_viewer(conversation, viewer_id) or not conversation.last_message_text:
        return placeholder
    return conversation.last_message_text


def is_message_visible(message: Message, boundary_ms: Optional[int]) -> bool:
    return boundary_ms is None or message.created_at_ms > boundary_ms


def visible_messages(messages: Iterable[Message], boundary_ms: Optional[int]) -> List[Message]:
    return [message for message in messages if is_message_visible(message, boundary_ms)]


def activity_sort_key(last_at_ms: Optional[int]) -> Tuple[int, int]:
    # Conversations without activity sort first, then most recent first.
    if last_at_ms is None:
        return (0, 0)
    return (1, -last_at_ms)


def sort_conversations(conversations: Iterable[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda conversation: activity_sort_key(conversation.last_message_at_ms))


def matches_search(name: Optional[str], search_term: str) -> bool:
    if not search_term:
        return True
    if not name:
        return False
    return search_term.lower() in name.lower()


def filter_conversations(
    conversations: Iterable[Conversation],
    viewer_id: str,
    view: str = VIEW_ACTIVE,
    search_term: str = "",
    display_name: Callable[[str], Optional[str]] = lambda user_id: None,
) -> List[Conversation]:
    """Visible conversations for ``view`` whose peer name contains ``search_term``."""

    selected = []
    for conversation in conversations:
        if not is_visible(conversation, viewer_id, view):
            continue
        if not matches_search(display_name(conversation.other_user_id(viewer_id)), search_term):
            continue
        selected.append(conversation)
    return sort_conversations(selected)


def archived_count(conversations: Iterable[Conversation], viewer_id: str) -> int:
    return sum(1 for conversation in conversations if resolve_slot(conversation, viewer_id).archived)


def shared_media(messages: Iterable[Message]) -> List[str]:
    return [message.text for message in messages if message.type == MESSAGE_TYPE_IMAGE]


def day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return f"{day:%b} {day.day}, {day.year}"


def group_by_day(
    messages: Sequence[Message], today: Optional[date] = None, tz: timezone = timezone.utc
) -> List[Tuple[str, List[Message]]]:
    """Split an ordered message list into ``(label, messages)`` runs per day."""

    if today is None:
        today = datetime.now(tz).date()
    groups: List[Tuple[str, List[Message]]] = []
    current_day: Optional[date] = None
    for message in messages:
        day = datetime.fromtimestamp(message.created_at_ms / 1000, tz).date()
        if day != current_day:
            groups.append((day_label(day, today), []))
            current_day = day
        groups[-1][1].append(message)
    return groups
