"""Conversation, message and profile records plus row conversion helpers."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

MESSAGE_TYPE_TEXT = "text"
MESSAGE_TYPE_IMAGE = "image"
MESSAGE_TYPES = (MESSAGE_TYPE_TEXT, MESSAGE_TYPE_IMAGE)

SLOT_A = "user1"
SLOT_B = "user2"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def parse_ts(value: Any) -> Optional[int]:
    """Return ``value`` as epoch milliseconds.

    Rows may carry integer milliseconds or ISO-8601 strings (``Z`` suffix
    allowed). ``None`` and empty strings map to ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError("timestamp must not be a boolean")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return (parsed - _EPOCH) // timedelta(milliseconds=1)
    raise ValueError(f"unsupported timestamp: {value!r}")


class NotAParticipant(ValueError):
    pass


@dataclass
class ParticipantSlot:
    user_id: str
    archived: bool = False
    hidden: bool = False
    deleted_at_ms: Optional[int] = None


@dataclass
class Conversation:
    conv_id: str
    slot_a: ParticipantSlot
    slot_b: ParticipantSlot
    last_message_text: Optional[str] = None
    last_message_at_ms: Optional[int] = None
    last_message_sender_id: Optional[str] = None

    def has_participant(self, user_id: str) -> bool:
        return user_id in (self.slot_a.user_id, self.slot_b.user_id)

    def slot_name(self, viewer_id: str) -> str:
        """Return the row prefix (``user1``/``user2``) of the viewer's slot."""

        if self.slot_a.user_id == viewer_id:
            return SLOT_A
        if self.slot_b.user_id == viewer_id:
            return SLOT_B
        raise NotAParticipant(f"{viewer_id} is not part of conversation {self.conv_id}")

    def slot_for(self, viewer_id: str) -> ParticipantSlot:
        return self.slot_a if self.slot_name(viewer_id) == SLOT_A else self.slot_b

    def other_user_id(self, viewer_id: str) -> str:
        return self.slot_b.user_id if self.slot_name(viewer_id) == SLOT_A else self.slot_a.user_id

    def with_slot(self, viewer_id: str, **changes: Any) -> "Conversation":
        slot = replace(self.slot_for(viewer_id), **changes)
        if self.slot_name(viewer_id) == SLOT_A:
            return replace(self, slot_a=slot)
        return replace(self, slot_b=slot)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Conversation":
        slots = []
        for prefix in (SLOT_A, SLOT_B):
            user_id = row.get(f"{prefix}_id")
            if not isinstance(user_id, str) or not user_id:
                raise ValueError(f"conversation row missing {prefix}_id")
            slots.append(
                ParticipantSlot(
                    user_id=user_id,
                    archived=bool(row.get(f"{prefix}_archived") or False),
                    hidden=bool(row.get(f"{prefix}_is_hidden") or False),
                    deleted_at_ms=parse_ts(row.get(f"{prefix}_deleted_at")),
                )
            )
        conv_id = row.get("id")
        if not isinstance(conv_id, str) or not conv_id:
            raise ValueError("conversation row missing id")
        return cls(
            conv_id=conv_id,
            slot_a=slots[0],
            slot_b=slots[1],
            last_message_text=row.get("last_message_text"),
            last_message_at_ms=parse_ts(row.get("last_message_at")),
            last_message_sender_id=row.get("last_message_user_id"),
        )

    def to_row(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {"id": self.conv_id}
        for prefix, slot in ((SLOT_A, self.slot_a), (SLOT_B, self.slot_b)):
            row[f"{prefix}_id"] = slot.user_id
            row[f"{prefix}_archived"] = slot.archived
            row[f"{prefix}_is_hidden"] = slot.hidden
            row[f"{prefix}_deleted_at"] = slot.deleted_at_ms
        row["last_message_text"] = self.last_message_text
        row["last_message_at"] = self.last_message_at_ms
        row["last_message_user_id"] = self.last_message_sender_id
        return row


@dataclass
class Message:
    msg_id: str
    conv_id: str
    sender_id: str
    text: str
    created_at_ms: int
    type: str = MESSAGE_TYPE_TEXT
    is_read: bool = False
    is_edited: bool = False
    # Local insertion sequence; breaks created_at ties. Never sent upstream.
    seq: int = field(default=0, compare=False)

    @property
    def order_key(self) -> tuple[int, int]:
        return (self.created_at_ms, self.seq)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        msg_id = row.get("id")
        conv_id = row.get("conversation_id")
        sender_id = row.get("user_id")
        if not isinstance(msg_id, str) or not isinstance(conv_id, str) or not isinstance(sender_id, str):
            raise ValueError("message row requires id, conversation_id and user_id")
        created_at_ms = parse_ts(row.get("created_at"))
        if created_at_ms is None:
            raise ValueError("message row requires created_at")
        msg_type = row.get("type") or MESSAGE_TYPE_TEXT
        if msg_type not in MESSAGE_TYPES:
            raise ValueError(f"unknown message type: {msg_type}")
        return cls(
            msg_id=msg_id,
            conv_id=conv_id,
            sender_id=sender_id,
            text=str(row.get("text") or ""),
            created_at_ms=created_at_ms,
            type=msg_type,
            is_read=bool(row.get("is_read") or False),
            is_edited=bool(row.get("is_edited") or False),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.msg_id,
            "conversation_id": self.conv_id,
            "user_id": self.sender_id,
            "type": self.type,
            "text": self.text,
            "created_at": self.created_at_ms,
            "is_read": self.is_read,
            "is_edited": self.is_edited,
        }


@dataclass
class Profile:
    user_id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    last_seen_ms: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        user_id = row.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("profile row missing id")
        email = row.get("email")
        return cls(
            user_id=user_id,
            full_name=row.get("full_name"),
            email=email.lower() if isinstance(email, str) else None,
            bio=row.get("bio"),
            avatar_url=row.get("avatar_url"),
            last_seen_ms=parse_ts(row.get("last_seen")),
        )
