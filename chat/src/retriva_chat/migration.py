"""One-time import of inline legacy messages into the message sub-store."""

from __future__ import annotations

import logging
from typing import Dict

from .models import Conversation, Message, conversation_path, message_path, messages_path
from .store import InMemoryDocumentStore

logger = logging.getLogger(__name__)


def legacy_identity(message: Message) -> str:
    return message.id or f"legacy-{message.timestamp}"


async def import_legacy_messages(store: InMemoryDocumentStore, conversation_id: str) -> int:
    """Move the inline array of ``conversation_id`` into per-message documents.

    Messages already present in the sub-store under the same identity are
    left alone. The copies and the emptying of the inline array are written
    in one batch. Returns the number of messages imported.
    """

    snapshot = await store.get(conversation_path(conversation_id))
    if snapshot.data is None:
        raise ValueError("unknown conversation")
    conversation = Conversation.from_document(snapshot.id, snapshot.data)
    if not conversation.legacy_messages:
        return 0

    existing = {doc.id for doc in await store.query(messages_path(conversation_id))}
    pending: Dict[str, Message] = {}
    for message in conversation.legacy_messages:
        identity = legacy_identity(message)
        if identity not in existing:
            pending[identity] = message

    batch = store.batch()
    for identity, message in pending.items():
        batch.set(message_path(conversation_id, identity), message.to_document())
    batch.update(conversation_path(conversation_id), {"messages": []})
    await batch.commit()

    logger.info("imported %d legacy messages into %s", len(pending), conversation_id)
    return len(pending)
