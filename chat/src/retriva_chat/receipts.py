from __future__ import annotations

import logging
from typing import Iterable, List

from .models import ORIGIN_STORE, STATUS_READ, Message, conversation_path, message_path
from .store import DocumentNotFound, InMemoryDocumentStore, StoreError

logger = logging.getLogger(__name__)


class ReadReceiptTracker:
    """Marks inbound messages read and resets the conversation's unread counter."""

    def __init__(self, store: InMemoryDocumentStore, viewer_id: str) -> None:
        self._store = store
        self._viewer_id = viewer_id

    def pending(self, timeline: Iterable[Message]) -> List[Message]:
        """Return inbound unread messages that can be addressed individually.

        Inline legacy messages have no document of their own and are skipped.
        """

        return [
            message
            for message in timeline
            if message.sender_id != self._viewer_id
            and not message.is_read
            and message.origin == ORIGIN_STORE
            and message.id
        ]

    async def mark_read(self, conversation_id: str, timeline: Iterable[Message]) -> int:
        """Commit read receipts for ``timeline`` as one batch.

        Returns the number of messages transitioned, or ``0`` when nothing was
        pending or the commit failed. Failures are never retried here; the
        next timeline change issues a fresh attempt.
        """

        unread = self.pending(timeline)
        if not unread:
            return 0

        batch = self._store.batch()
        for message in unread:
            batch.update(message_path(conversation_id, message.id), {"status": STATUS_READ})
        batch.update(conversation_path(conversation_id), {"unread_count": 0})

        try:
            await batch.commit()
        except DocumentNotFound:
            return 0
        except StoreError as exc:
            logger.warning("read receipt commit for %s failed: %s", conversation_id, exc)
            return 0
        return len(unread)
