from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Tuple

from .hub import Subscription
from .models import Message, messages_path
from .store import InMemoryDocumentStore, QuerySnapshot

logger = logging.getLogger(__name__)

Timeline = Tuple[Message, ...]
TimelineListener = Callable[[str | None, Timeline], None]


def merge_timeline(legacy: Iterable[Message], live: Iterable[Message]) -> Timeline:
    """Merge inline legacy messages with sub-store messages.

    Messages are keyed by identity, falling back to the timestamp for legacy
    entries without one; two such entries sharing a timestamp collapse into
    one. Sub-store messages are installed last and win on a shared key. The
    result is sorted by timestamp; ties keep insertion order.
    """

    merged: Dict[str | int, Message] = {}
    for message in legacy:
        merged[message.dedup_key] = message
    for message in live:
        merged[message.dedup_key] = message
    return tuple(sorted(merged.values(), key=lambda message: message.timestamp))


class MessageReconciler:
    """Maintains the merged timeline of the active conversation.

    Every message subscription is tagged with a generation number. Switching
    conversations clears the accumulated state, bumps the generation and only
    then swaps the subscription, so a snapshot still in flight for the
    previous conversation is recognised as stale and dropped.
    """

    def __init__(self, store: InMemoryDocumentStore) -> None:
        self._store = store
        self._generation = 0
        self._conversation_id: str | None = None
        self._subscription: Subscription | None = None
        self._legacy: Timeline = ()
        self._live: Timeline = ()
        self._timeline: Timeline = ()
        self._listeners: List[TimelineListener] = []

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def timeline(self) -> Timeline:
        return self._timeline

    def add_listener(self, listener: TimelineListener) -> None:
        self._listeners.append(listener)

    def open(self, conversation_id: str | None) -> None:
        if conversation_id == self._conversation_id:
            return
        self._generation += 1
        generation = self._generation
        self._conversation_id = conversation_id
        self._legacy = ()
        self._live = ()
        self._recompute()

        if self._subscription is not None:
            self._store.unsubscribe(self._subscription)
            self._subscription = None
        if conversation_id is None:
            return
        self._subscription = self._store.subscribe_query(
            messages_path(conversation_id),
            lambda snapshot: self._on_snapshot(generation, snapshot),
            order_by="timestamp",
            on_error=lambda exc: self._on_error(generation, exc),
        )

    def close(self) -> None:
        self.open(None)

    def set_legacy(self, conversation_id: str, messages: Iterable[Message]) -> None:
        if conversation_id != self._conversation_id:
            return
        self._legacy = tuple(messages)
        self._recompute()

    def _on_snapshot(self, generation: int, snapshot: QuerySnapshot) -> None:
        if generation != self._generation:
            logger.debug("dropping stale message snapshot (generation %d, current %d)", generation, self._generation)
            return
        self._live = tuple(Message.from_document(doc.id, doc.data) for doc in snapshot if doc.data is not None)
        self._recompute()

    def _on_error(self, generation: int, exc: Exception) -> None:
        if generation != self._generation:
            return
        # The last merged timeline stays in place until the next snapshot.
        logger.warning("message subscription for %s failed: %s", self._conversation_id, exc)

    def _recompute(self) -> None:
        timeline = merge_timeline(self._legacy, self._live)
        if timeline == self._timeline:
            return
        self._timeline = timeline
        for listener in list(self._listeners):
            listener(self._conversation_id, timeline)
