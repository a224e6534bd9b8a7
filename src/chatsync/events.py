from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .models import Conversation, Message, Profile

OP_INSERT = "insert"
OP_UPDATE = "update"
OP_DELETE = "delete"
OPS = (OP_INSERT, OP_UPDATE, OP_DELETE)

ENTITY_MESSAGES = "messages"
ENTITY_CONVERSATIONS = "conversations"
ENTITY_PROFILES = "profiles"


@dataclass(frozen=True)
class ChangeEvent:
    """A raw change-feed delivery: ``op`` applied to one ``entity`` row."""

    op: str
    entity: str
    payload: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"op": self.op, "entity": self.entity, "payload": dict(self.payload)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        payload = data.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        return cls(op=str(data.get("op", "")), entity=str(data.get("entity", "")), payload=payload)


@dataclass(frozen=True)
class MessageInserted:
    message: Message


@dataclass(frozen=True)
class MessageUpdated:
    message: Message


@dataclass(frozen=True)
class MessageDeleted:
    msg_id: str
    conv_id: Optional[str] = None


@dataclass(frozen=True)
class ConversationInserted:
    conversation: Conversation


@dataclass(frozen=True)
class ConversationUpdated:
    conversation: Conversation


@dataclass(frozen=True)
class ProfileUpdated:
    profile: Profile


NormalizedEvent = Union[
    MessageInserted,
    MessageUpdated,
    MessageDeleted,
    ConversationInserted,
    ConversationUpdated,
    ProfileUpdated,
]


class MalformedEvent(ValueError):
    pass


def normalize(event: ChangeEvent) -> NormalizedEvent:
    """Map a raw feed event onto the small tagged set the stores understand."""

    if event.op not in OPS:
        raise MalformedEvent(f"unsupported op: {event.op}")
    try:
        if event.entity == ENTITY_MESSAGES:
            if event.op == OP_DELETE:
                msg_id = event.payload.get("id")
                if not isinstance(msg_id, str) or not msg_id:
                    raise MalformedEvent("message delete without id")
                conv_id = event.payload.get("conversation_id")
                return MessageDeleted(msg_id=msg_id, conv_id=conv_id if isinstance(conv_id, str) else None)
            message = Message.from_row(event.payload)
            if event.op == OP_INSERT:
                return MessageInserted(message)
            return MessageUpdated(message)
        if event.entity == ENTITY_CONVERSATIONS:
            if event.op == OP_DELETE:
                raise MalformedEvent("conversations are never deleted")
            conversation = Conversation.from_row(event.payload)
            if event.op == OP_INSERT:
                return ConversationInserted(conversation)
            return ConversationUpdated(conversation)
        if event.entity == ENTITY_PROFILES and event.op != OP_DELETE:
            return ProfileUpdated(Profile.from_row(event.payload))
    except MalformedEvent:
        raise
    except ValueError as exc:
        raise MalformedEvent(str(exc)) from exc
    raise MalformedEvent(f"unsupported entity/op: {event.entity}/{event.op}")
