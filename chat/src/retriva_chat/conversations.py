from __future__ import annotations

import logging
from typing import Callable, Dict, List

from .hub import Subscription
from .models import BROADCAST, CHATS, DIRECT, Conversation, Viewer, conversation_path
from .presence import _now_ms
from .store import ArrayRemove, ArrayUnion, DocumentSnapshot, InMemoryDocumentStore, QuerySnapshot

logger = logging.getLogger(__name__)

DEFAULT_BROADCAST_ID = "global"
DEFAULT_BROADCAST_TITLE = "Campus Community"
CHAT_STARTED = "Chat started"
BROADCAST_WELCOME = "Welcome to the community hub!"


class ConversationDirectory:
    """Creates and removes conversations on behalf of one viewer."""

    def __init__(
        self,
        store: InMemoryDocumentStore,
        viewer: Viewer,
        *,
        broadcast_id: str = DEFAULT_BROADCAST_ID,
        broadcast_title: str = DEFAULT_BROADCAST_TITLE,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self._store = store
        self._viewer = viewer
        self._broadcast_id = broadcast_id
        self._broadcast_title = broadcast_title
        self._now = now_func

    async def ensure_broadcast(self) -> None:
        path = conversation_path(self._broadcast_id)
        snapshot = await self._store.get(path)
        if snapshot.exists:
            return
        await self._store.set(
            path,
            {
                "type": BROADCAST,
                "title": self._broadcast_title,
                "participants": [],
                "messages": [],
                "last_message": BROADCAST_WELCOME,
                "last_message_time": self._now(),
                "unread_count": 0,
                "typing": {},
            },
        )

    async def start_direct(
        self,
        counterpart_id: str,
        *,
        title: str,
        item_id: str | None = None,
        existing: Conversation | None = None,
        conversation_id: str | None = None,
    ) -> str:
        """Return the direct conversation with ``counterpart_id``, creating it if needed.

        An ``existing`` conversation the viewer had removed is restored to the
        viewer's list instead of creating a duplicate.
        """

        if not counterpart_id:
            raise ValueError("counterpart_id required")
        if counterpart_id == self._viewer.user_id:
            raise ValueError("you cannot chat with yourself")

        if existing is not None:
            if existing.is_deleted_for(self._viewer.user_id):
                await self._store.update(
                    conversation_path(existing.id),
                    {"deleted_ids": ArrayRemove(self._viewer.user_id)},
                )
            return existing.id

        new_id = conversation_id or self._store.new_id()
        await self._store.set(
            conversation_path(new_id),
            {
                "type": DIRECT,
                "item_id": item_id,
                "title": title,
                "participants": [self._viewer.user_id, counterpart_id],
                "messages": [],
                "last_message": CHAT_STARTED,
                "last_message_time": self._now(),
                "unread_count": 0,
                "blocked": False,
                "blocked_by": None,
                "typing": {},
                "deleted_ids": [],
            },
        )
        return new_id

    async def remove_for_viewer(self, conversation: Conversation) -> None:
        """Hide ``conversation`` from the viewer's list; history is kept for others."""

        if conversation.is_broadcast:
            raise ValueError("broadcast conversations cannot be removed")
        await self._store.update(
            conversation_path(conversation.id),
            {"deleted_ids": ArrayUnion(self._viewer.user_id)},
        )


FeedListener = Callable[[List[Conversation]], None]


class ConversationFeed:
    """Live conversation list for a viewer.

    Ordering is owned here: the broadcast conversation first, then direct
    conversations by most recent message. Conversations the viewer removed
    are kept for lookups but left out of ``visible()``.
    """

    def __init__(
        self,
        store: InMemoryDocumentStore,
        viewer_id: str,
        *,
        broadcast_id: str = DEFAULT_BROADCAST_ID,
    ) -> None:
        self._store = store
        self._viewer_id = viewer_id
        self._broadcast_id = broadcast_id
        self._generation = 0
        self._direct: Dict[str, Conversation] = {}
        self._broadcast: Conversation | None = None
        self._subscriptions: List[Subscription] = []
        self._listeners: List[FeedListener] = []

    def add_listener(self, listener: FeedListener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        if self._subscriptions:
            return
        self._generation += 1
        generation = self._generation
        self._subscriptions.append(
            self._store.subscribe_query(
                CHATS,
                lambda snapshot: self._on_direct(generation, snapshot),
                where=[("participants", "array-contains", self._viewer_id)],
                on_error=self._on_error,
            )
        )
        self._subscriptions.append(
            self._store.subscribe_document(
                conversation_path(self._broadcast_id),
                lambda snapshot: self._on_broadcast(generation, snapshot),
                on_error=self._on_error,
            )
        )

    def stop(self) -> None:
        self._generation += 1
        for subscription in self._subscriptions:
            self._store.unsubscribe(subscription)
        self._subscriptions = []

    def get(self, conversation_id: str) -> Conversation | None:
        if self._broadcast is not None and self._broadcast.id == conversation_id:
            return self._broadcast
        return self._direct.get(conversation_id)

    def find_direct(self, counterpart_id: str, item_id: str | None) -> Conversation | None:
        for conversation in self._direct.values():
            if (
                conversation.type == DIRECT
                and counterpart_id in conversation.participants
                and conversation.item_id == item_id
            ):
                return conversation
        return None

    def visible(self) -> List[Conversation]:
        direct = [
            conversation
            for conversation in self._direct.values()
            if not conversation.is_deleted_for(self._viewer_id)
        ]
        direct.sort(key=lambda conversation: conversation.last_message_time, reverse=True)
        if self._broadcast is None:
            return direct
        return [self._broadcast, *direct]

    def _on_direct(self, generation: int, snapshot: QuerySnapshot) -> None:
        if generation != self._generation:
            return
        self._direct = {
            doc.id: Conversation.from_document(doc.id, doc.data)
            for doc in snapshot
            if doc.data is not None and doc.id != self._broadcast_id
        }
        self._emit()

    def _on_broadcast(self, generation: int, snapshot: DocumentSnapshot) -> None:
        if generation != self._generation:
            return
        self._broadcast = Conversation.from_document(snapshot.id, snapshot.data) if snapshot.data is not None else None
        self._emit()

    def _on_error(self, exc: Exception) -> None:
        logger.warning("conversation feed for %s failed: %s", self._viewer_id, exc)

    def _emit(self) -> None:
        conversations = self.visible()
        for listener in list(self._listeners):
            listener(conversations)
