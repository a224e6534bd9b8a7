import asyncio
from typing import Any, Dict, Optional

from chatsync.models import Conversation, Message


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class Ids:
    def __init__(self, prefix: str = "m") -> None:
        self.prefix = prefix
        self.count = 0

    def __call__(self) -> str:
        self.count += 1
        return f"{self.prefix}{self.count}"


def conv_row(conv_id: str, user1: str = "alice", user2: str = "bob", **fields: Any) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": conv_id,
        "user1_id": user1,
        "user2_id": user2,
        "user1_archived": False,
        "user2_archived": False,
        "user1_is_hidden": False,
        "user2_is_hidden": False,
        "user1_deleted_at": None,
        "user2_deleted_at": None,
        "last_message_text": None,
        "last_message_at": None,
        "last_message_user_id": None,
    }
    row.update(fields)
    return row


def msg_row(
    msg_id: str,
    conv_id: str,
    sender: str,
    created_at: Any,
    text: Optional[str] = None,
    **fields: Any,
) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": msg_id,
        "conversation_id": conv_id,
        "user_id": sender,
        "type": "text",
        "text": text if text is not None else f"text {msg_id}",
        "created_at": created_at,
        "is_read": False,
        "is_edited": False,
    }
    row.update(fields)
    return row


def profile_row(user_id: str, full_name: Optional[str] = None, email: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
    row: Dict[str, Any] = {
        "id": user_id,
        "full_name": full_name,
        "email": email if email is not None else f"{user_id}@example.com",
        "bio": None,
        "avatar_url": None,
        "last_seen": None,
    }
    row.update(fields)
    return row


def conversation(conv_id: str, user1: str = "alice", user2: str = "bob", **fields: Any) -> Conversation:
    return Conversation.from_row(conv_row(conv_id, user1, user2, **fields))


def message(msg_id: str, conv_id: str, sender: str, created_at: int, text: Optional[str] = None, **fields: Any) -> Message:
    return Message.from_row(msg_row(msg_id, conv_id, sender, created_at, text, **fields))


class GatedBackend:
    """Wraps a backend so the next ``query`` of ``entity`` waits for ``release``.

    The rows are read before the wait, so changes made meanwhile are missing
    from the result.
    """

    def __init__(self, backend, entity: str = "messages") -> None:
        self.backend = backend
        self.entity = entity
        self.armed = False
        self.reached = asyncio.Event()
        self._gate = asyncio.Event()

    def __getattr__(self, name: str) -> Any:
        return getattr(self.backend, name)

    def arm(self) -> None:
        self.armed = True
        self.reached.clear()
        self._gate.clear()

    def release(self) -> None:
        self._gate.set()

    async def query(self, entity: str, *args: Any, **kwargs: Any):
        rows = await self.backend.query(entity, *args, **kwargs)
        if self.armed and entity == self.entity:
            self.armed = False
            self.reached.set()
            await self._gate.wait()
        return rows
