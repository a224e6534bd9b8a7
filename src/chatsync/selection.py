"""Multi-select over conversations or messages and the bulk actions on it."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .backend import BackendError, NotFoundError
from .conversation_store import ConversationStore
from .events import ENTITY_CONVERSATIONS, ENTITY_MESSAGES
from .message_store import MessageStore
from .models import now_ms
from .visibility import VIEW_ACTIVE, VIEWS

logger = logging.getLogger(__name__)

# Viewer-slot column suffix -> ParticipantSlot field.
_SLOT_FIELDS = {"archived": "archived", "is_hidden": "hidden", "deleted_at": "deleted_at_ms"}


@dataclass
class BulkResult:
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


class SelectionManager:
    """Tracks selected ids and runs bulk archive/delete over them.

    Every item of a bulk action is written independently; a failure on one
    item does not stop or undo the others. The selection is cleared once the
    action finishes, whatever the outcome. Targets that no longer exist
    remotely count as done.
    """

    def __init__(
        self,
        viewer_id: str,
        backend,
        conversations: ConversationStore,
        messages: MessageStore,
        *,
        now_func: Callable[[], int] = now_ms,
    ) -> None:
        self.viewer_id = viewer_id
        self._backend = backend
        self._conversations = conversations
        self._messages = messages
        self._now = now_func
        self.selected: Set[str] = set()
        self.before_conversation_action: Optional[Callable[[List[str]], Awaitable[None]]] = None

    @property
    def active(self) -> bool:
        return bool(self.selected)

    def toggle(self, item_id: str) -> bool:
        """Flip ``item_id``; returns whether it is now selected."""

        if item_id in self.selected:
            self.selected.discard(item_id)
            return False
        self.selected.add(item_id)
        return True

    def clear(self) -> None:
        self.selected = set()

    async def activate(self, item_id: str, on_open: Callable[[str], Any]) -> bool:
        """Default action on an item: toggles while selecting, opens otherwise.

        Returns ``True`` when the item was opened.
        """

        if self.active:
            self.toggle(item_id)
            return False
        result = on_open(item_id)
        if asyncio.iscoroutine(result):
            await result
        return True

    async def _run(self, ids: Iterable[str], write: Callable[[str], Awaitable[Any]]) -> BulkResult:
        ids = sorted(ids)
        result = BulkResult()
        outcomes = await asyncio.gather(*(write(item_id) for item_id in ids), return_exceptions=True)
        for item_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, NotFoundError):
                logger.debug("bulk target %s already gone", item_id)
                result.succeeded.append(item_id)
            elif isinstance(outcome, BackendError):
                logger.warning("bulk write for %s failed: %s", item_id, outcome)
                result.failed.append(item_id)
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                result.succeeded.append(item_id)
        return result

    async def _conversation_action(self, values: Dict[str, Any]) -> BulkResult:
        ids = [conv_id for conv_id in self.selected if conv_id in self._conversations]

        async def write(conv_id: str) -> None:
            prefix = self._conversations.get(conv_id).slot_name(self.viewer_id)
            await self._backend.update(
                ENTITY_CONVERSATIONS,
                conv_id,
                {f"{prefix}_{column}": value for column, value in values.items()},
            )
            # Only the viewer's slot changes; the peer's view is untouched.
            self._conversations.update_viewer_slot(
                conv_id, **{_SLOT_FIELDS[column]: value for column, value in values.items()}
            )
            if "deleted_at" in values:
                self._messages.set_boundary(conv_id, values["deleted_at"])

        try:
            if self.before_conversation_action is not None and ids:
                await self.before_conversation_action(ids)
            return await self._run(ids, write)
        finally:
            self.clear()

    async def bulk_archive(self, view: str = VIEW_ACTIVE) -> BulkResult:
        """Archive the selection from the active view, unarchive it from the archived view."""

        if view not in VIEWS:
            raise ValueError(f"unknown view: {view}")
        archived = view == VIEW_ACTIVE
        return await self._conversation_action({"archived": archived})

    async def bulk_delete_conversations(self) -> BulkResult:
        """Soft-delete the selection for the viewer only."""

        return await self._conversation_action({"deleted_at": self._now(), "is_hidden": True})

    async def bulk_delete_messages(self) -> BulkResult:
        """Hard-delete the selected messages for both participants."""

        async def write(msg_id: str) -> None:
            await self._backend.delete(ENTITY_MESSAGES, msg_id)

        try:
            result = await self._run(self.selected, write)
        finally:
            self.clear()
        for msg_id in result.succeeded:
            self._messages.remove(msg_id)
        return result
