"""Local-first mutations (send, edit, upload) reconciled against the change feed.

Every mutation is an ``OptimisticOperation``: it is applied to the local
stores first, committed to the remote store, and then either reconciled when
the matching authoritative event arrives or rolled back when the commit
fails. Failures are recorded on the operation and never retried here. The
coordinator tracks an operation until it is reconciled; failed operations
are kept until dismissed.

Two near-simultaneous sends to a new contact from different surfaces can
each create a conversation (``ensure_conversation`` checks, then inserts).
That duplicate is left as-is.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import secrets
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .backend import BackendError, Filter
from .conversation_store import ConversationStore
from .events import ENTITY_CONVERSATIONS, ENTITY_MESSAGES, MessageInserted, MessageUpdated, NormalizedEvent
from .message_store import MessageStore
from .models import MESSAGE_TYPE_IMAGE, MESSAGE_TYPE_TEXT, Conversation, Message, now_ms

logger = logging.getLogger(__name__)

KIND_SEND = "send"
KIND_EDIT = "edit"
KIND_UPLOAD = "upload"

STATE_PENDING = "pending"
STATE_COMMITTED = "committed"
STATE_RECONCILED = "reconciled"
STATE_FAILED = "failed"

IMAGE_PREVIEW_TEXT = "Shared an image"


def _new_message_id() -> str:
    return f"m_{secrets.token_hex(8)}"


def _backend_errors(results: List[Any]) -> List[BackendError]:
    errors = []
    for result in results:
        if isinstance(result, BackendError):
            errors.append(result)
        elif isinstance(result, BaseException):
            raise result
    return errors


@dataclass
class Draft:
    """Composer state for one open conversation."""

    text: str = ""
    editing_msg_id: Optional[str] = None
    uploading: bool = False
    preview: Optional[str] = None


@dataclass
class OptimisticOperation:
    kind: str
    key: str
    conv_id: Optional[str] = None
    state: str = STATE_PENDING
    error: Optional[str] = None
    _rollbacks: List[Callable[[], None]] = field(default_factory=list, repr=False)

    @property
    def failed(self) -> bool:
        return self.state == STATE_FAILED

    @property
    def pending(self) -> bool:
        return self.state in (STATE_PENDING, STATE_COMMITTED)

    def apply(self, local: Callable[[], Any], rollback: Callable[[], None]) -> Any:
        """Run a local change now and remember how to undo it."""

        result = local()
        self._rollbacks.append(rollback)
        return result

    async def commit(self, *writes: Awaitable[Any]) -> bool:
        """Issue the remote writes concurrently; roll back if any of them fails."""

        errors = _backend_errors(await asyncio.gather(*writes, return_exceptions=True))
        if errors:
            self.fail(errors[0])
            return False
        self.committed()
        return True

    def committed(self) -> None:
        # The authoritative event may already have reconciled the operation.
        if self.state == STATE_PENDING:
            self.state = STATE_COMMITTED

    def fail(self, error: BaseException, *, rollback: bool = True) -> None:
        self.state = STATE_FAILED
        self.error = str(error) or error.__class__.__name__
        logger.warning("%s %s failed: %s", self.kind, self.key, self.error)
        rollbacks, self._rollbacks = self._rollbacks, []
        if rollback:
            for undo in reversed(rollbacks):
                undo()

    def reconcile(self) -> None:
        if self.state in (STATE_PENDING, STATE_COMMITTED):
            self.state = STATE_RECONCILED
            self._rollbacks.clear()


class MutationCoordinator:
    """Optimistic send/edit/upload for one viewer."""

    def __init__(
        self,
        viewer_id: str,
        backend,
        conversations: ConversationStore,
        messages: MessageStore,
        *,
        attachments_prefix: str = "chat-attachments",
        now_func: Callable[[], int] = now_ms,
        id_func: Callable[[], str] = _new_message_id,
    ) -> None:
        self.viewer_id = viewer_id
        self._backend = backend
        self._conversations = conversations
        self._messages = messages
        self._attachments_prefix = attachments_prefix.strip("/")
        self._now = now_func
        self._new_id = id_func
        self._conversation_ids: Dict[str, str] = {}
        self.operations: Dict[str, OptimisticOperation] = {}

    # -- conversations -------------------------------------------------------

    def known_conversation(self, other_id: str) -> Optional[str]:
        conv_id = self._conversation_ids.get(other_id)
        if conv_id is not None:
            return conv_id
        conversation = self._conversations.find_by_pair(self.viewer_id, other_id)
        if conversation is None:
            return None
        self._conversation_ids[other_id] = conversation.conv_id
        return conversation.conv_id

    async def ensure_conversation(self, other_id: str) -> str:
        """Return the conversation with ``other_id``, creating it if none is known.

        Check-then-act: concurrent callers may both create one.
        """

        conv_id = self.known_conversation(other_id)
        if conv_id is not None:
            return conv_id
        row = await self._backend.insert(ENTITY_CONVERSATIONS, {"user1_id": self.viewer_id, "user2_id": other_id})
        conversation = Conversation.from_row(row)
        self._conversations.upsert(conversation)
        self._conversation_ids[other_id] = conversation.conv_id
        return conversation.conv_id

    async def start_conversation(self, other_id: str) -> Optional[str]:
        """Find an existing conversation with ``other_id``; ``None`` means start a temporary one."""

        conv_id = self.known_conversation(other_id)
        if conv_id is not None:
            return conv_id
        rows = await self._backend.query(
            ENTITY_CONVERSATIONS,
            Filter().either(("user1_id", "user2_id"), self.viewer_id).either(("user1_id", "user2_id"), other_id),
        )
        for row in rows:
            conversation = Conversation.from_row(row)
            self._conversations.upsert(conversation)
            self._conversation_ids[other_id] = conversation.conv_id
            return conversation.conv_id
        return None

    # -- local helpers -------------------------------------------------------

    def _register(self, op: OptimisticOperation) -> OptimisticOperation:
        self.operations[op.key] = op
        return op

    def _apply_message(self, op: OptimisticOperation, message: Message) -> None:
        def rollback() -> None:
            self._messages.remove(message.msg_id)

        op.apply(lambda: self._messages.insert(message), rollback)

    def _apply_cache(self, op: OptimisticOperation, conv_id: str, text: str, at_ms: int) -> Callable[[], None]:
        previous: Dict[str, Any] = {}

        def local() -> None:
            conversation = self._conversations.get(conv_id)
            previous["hidden"] = conversation is not None and conversation.slot_for(self.viewer_id).hidden
            previous["fields"] = self._conversations.update_cache(conv_id, text, at_ms, self.viewer_id)
            if previous["hidden"]:
                self._conversations.update_viewer_slot(conv_id, hidden=False)

        def rollback() -> None:
            fields = previous.get("fields")
            current = self._conversations.get(conv_id)
            # Leave the cache alone if a newer message already replaced it.
            if fields is None or current is None or current.last_message_at_ms != at_ms:
                return
            self._conversations.update_cache(conv_id, *fields)
            if previous["hidden"]:
                self._conversations.update_viewer_slot(conv_id, hidden=True)

        op.apply(local, rollback)
        return rollback

    def _cache_patch(self, conv_id: str, text: str, at_ms: int, *, unhide: bool) -> Dict[str, Any]:
        patch: Dict[str, Any] = {"last_message_text": text, "last_message_at": at_ms, "last_message_user_id": self.viewer_id}
        if unhide:
            # Writing into a conversation the viewer deleted brings it back for them.
            prefix = self._conversations.get(conv_id).slot_name(self.viewer_id)
            patch[f"{prefix}_is_hidden"] = False
        return patch

    async def _publish(self, op: OptimisticOperation, message: Message, cache_text: str) -> bool:
        """Write the message and the conversation cache; returns whether the message was written.

        A failed message write rolls everything back. A failed cache write
        only restores the cache: the message exists remotely, so it is kept.
        """

        conversation = self._conversations.get(message.conv_id)
        unhide = conversation is not None and conversation.slot_for(self.viewer_id).hidden
        cache_patch = self._cache_patch(message.conv_id, cache_text, message.created_at_ms, unhide=unhide)
        self._apply_message(op, message)
        undo_cache = self._apply_cache(op, message.conv_id, cache_text, message.created_at_ms)
        message_result, cache_result = await asyncio.gather(
            self._backend.insert(ENTITY_MESSAGES, message.to_row()),
            self._backend.update(ENTITY_CONVERSATIONS, message.conv_id, cache_patch),
            return_exceptions=True,
        )
        _backend_errors([message_result, cache_result])
        if isinstance(message_result, BackendError):
            op.fail(message_result)
            return False
        if isinstance(cache_result, BackendError):
            undo_cache()
            op.fail(cache_result, rollback=False)
            # The insert event may have settled it already.
            self._register(op)
            return True
        op.committed()
        return True

    # -- mutations -----------------------------------------------------------

    async def submit(self, draft: Draft, other_id: str) -> Optional[OptimisticOperation]:
        """Send the draft, or apply it as an edit when a message is being edited."""

        if draft.editing_msg_id is not None:
            msg_id, text = draft.editing_msg_id, draft.text
            draft.editing_msg_id = None
            draft.text = ""
            op = await self.edit(msg_id, text)
            if op is not None and op.failed:
                draft.editing_msg_id = msg_id
                draft.text = text
            return op
        return await self.send(draft, other_id)

    def begin_edit(self, draft: Draft, msg_id: str) -> bool:
        message = self._messages.get(msg_id)
        if message is None or message.sender_id != self.viewer_id or message.type != MESSAGE_TYPE_TEXT:
            return False
        draft.editing_msg_id = msg_id
        draft.text = message.text
        return True

    async def send(self, draft: Draft, other_id: str) -> Optional[OptimisticOperation]:
        """Send the draft text; empty drafts are a no-op.

        The draft is cleared immediately and restored if the message could not
        be written, so the user can retry.
        """

        text = draft.text
        if not text.strip():
            return None
        draft.text = ""
        op = self._register(OptimisticOperation(kind=KIND_SEND, key=self._new_id()))
        op.apply(lambda: None, lambda: setattr(draft, "text", text))
        try:
            op.conv_id = await self.ensure_conversation(other_id)
        except BackendError as exc:
            op.fail(exc)
            return op
        message = Message(
            msg_id=op.key,
            conv_id=op.conv_id,
            sender_id=self.viewer_id,
            text=text,
            created_at_ms=self._now(),
            type=MESSAGE_TYPE_TEXT,
        )
        await self._publish(op, message, text)
        return op

    async def edit(self, msg_id: str, new_text: str) -> Optional[OptimisticOperation]:
        """Edit one of the viewer's messages; identical or empty text writes nothing."""

        current = self._messages.get(msg_id)
        text = new_text.strip()
        if current is None or not text or text == current.text:
            return None
        op = self._register(OptimisticOperation(kind=KIND_EDIT, key=msg_id, conv_id=current.conv_id))
        edited = dataclasses.replace(current, text=text, is_edited=True)

        def rollback() -> None:
            if self._messages.get(msg_id) is not None:
                self._messages.replace(current)

        op.apply(lambda: self._messages.replace(edited), rollback)
        await op.commit(self._backend.update(ENTITY_MESSAGES, msg_id, {"text": text, "is_edited": True}))
        return op

    async def upload(self, draft: Draft, other_id: str, filename: str, data: bytes) -> OptimisticOperation:
        """Upload ``data`` then send it as an image message.

        If the blob upload fails nothing else is written and the preview is
        kept for a retry. If the message write fails after the upload
        succeeded, the blob stays in storage unreferenced.
        """

        op = self._register(OptimisticOperation(kind=KIND_UPLOAD, key=self._new_id()))
        previous_preview = draft.preview

        def restore_preview() -> None:
            draft.uploading = False
            draft.preview = previous_preview if previous_preview is not None else filename

        op.apply(lambda: (setattr(draft, "uploading", True), setattr(draft, "preview", filename)), restore_preview)
        try:
            op.conv_id = await self.ensure_conversation(other_id)
            at_ms = self._now()
            path = f"{self._attachments_prefix}/{op.conv_id}/{at_ms}_{filename}"
            url = await self._backend.upload(path, data)
        except BackendError as exc:
            op.fail(exc)
            return op
        message = Message(
            msg_id=op.key,
            conv_id=op.conv_id,
            sender_id=self.viewer_id,
            text=url,
            created_at_ms=at_ms,
            type=MESSAGE_TYPE_IMAGE,
        )
        if not await self._publish(op, message, IMAGE_PREVIEW_TEXT):
            logger.warning("blob %s orphaned after failed message write", path)
            return op
        draft.uploading = False
        draft.preview = None
        return op

    # -- reconciliation ------------------------------------------------------

    def reconcile(self, event: NormalizedEvent) -> Optional[OptimisticOperation]:
        """Settle the pending operation matching an authoritative message event."""

        if not isinstance(event, (MessageInserted, MessageUpdated)):
            return None
        op = self.operations.get(event.message.msg_id)
        if op is None or not op.pending:
            return None
        if isinstance(event, MessageUpdated) and op.kind != KIND_EDIT:
            return None
        if isinstance(event, MessageUpdated) and event.message.text != self._edited_text(op):
            return None
        # The local copy was inserted first, so the store ignored the insert.
        self._messages.replace(event.message)
        op.reconcile()
        self._settle(op)
        return op

    def _settle(self, op: OptimisticOperation) -> None:
        """Forget a reconciled operation; failed ones stay until dismissed."""

        if op.state == STATE_RECONCILED and self.operations.get(op.key) is op:
            del self.operations[op.key]

    def _edited_text(self, op: OptimisticOperation) -> Optional[str]:
        message = self._messages.get(op.key)
        return message.text if message is not None else None

    def failed_operations(self) -> List[OptimisticOperation]:
        return [op for op in self.operations.values() if op.failed]

    def dismiss(self, key: str) -> None:
        self.operations.pop(key, None)

    def pending_operations(self) -> List[OptimisticOperation]:
        return [op for op in self.operations.values() if op.pending]
