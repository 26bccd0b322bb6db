"""Per-viewer chat session.

A ``ChatSession`` owns every subscription the chat view needs for one
viewer: the conversation list, the merged timeline of the active
conversation, and the counterpart's presence. All of them are keyed off the
single active conversation id and are released when it changes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Set

from . import blocking
from .blocking import BlockState, block_affordance, ensure_can_send, resolve_block
from .config import ChatConfig
from .conversations import ConversationDirectory, ConversationFeed
from .models import (
    ATTACHMENT_IMAGE,
    STATUS_SENT,
    Attachment,
    Conversation,
    Message,
    Viewer,
    conversation_path,
    messages_path,
)
from .presence import PresenceBeacon, PresenceConfig, PresenceDisplay, PresenceMonitor, _now_ms
from .projector import ConversationListProjector, ConversationRow
from .receipts import ReadReceiptTracker
from .reconciler import MessageReconciler, Timeline
from .store import Increment, InMemoryDocumentStore, StoreError
from .typing_signal import TypingSignal
from .upload import UploadFailed, attachment_kind

logger = logging.getLogger(__name__)

EVENT_LIST = "conv.list"
EVENT_TIMELINE = "conv.timeline"
EVENT_PRESENCE = "conv.presence"
EVENT_STATE = "conv.state"

PHOTO_PREVIEW = "Sent a photo"
FILE_PREVIEW = "Sent a file"

EventListener = Callable[[str, Dict[str, Any]], None]


class SendFailed(Exception):
    pass


def message_preview(text: str, attachment: Attachment | None) -> str:
    if attachment is None:
        return text
    return PHOTO_PREVIEW if attachment.kind == ATTACHMENT_IMAGE else FILE_PREVIEW


class ChatSession:
    def __init__(
        self,
        store: InMemoryDocumentStore,
        viewer: Viewer,
        *,
        config: ChatConfig | None = None,
        uploader=None,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.viewer = viewer
        self.config = config or ChatConfig()
        self._store = store
        self._uploader = uploader
        self._now = now_func
        self._active_id: str | None = None
        self._filter = ""
        self._started = False
        self._publishing = False
        self._typing: TypingSignal | None = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[EventListener] = []

        self._feed = ConversationFeed(store, viewer.user_id, broadcast_id=self.config.broadcast_id)
        self._directory = ConversationDirectory(
            store,
            viewer,
            broadcast_id=self.config.broadcast_id,
            broadcast_title=self.config.broadcast_title,
            now_func=now_func,
        )
        self._reconciler = MessageReconciler(store)
        self._receipts = ReadReceiptTracker(store, viewer.user_id)
        self._presence = PresenceMonitor(store, now_func=now_func)
        self._beacon = PresenceBeacon(
            store,
            viewer.user_id,
            PresenceConfig(heartbeat_interval_seconds=self.config.presence_heartbeat_s),
            now_func=now_func,
        )
        self._projector = ConversationListProjector(viewer.user_id)

        self._feed.add_listener(self._on_conversations)
        self._reconciler.add_listener(self._on_timeline)
        self._presence.add_listener(self._on_presence)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    async def start(self, *, publish_presence: bool = True) -> None:
        if self._started:
            return
        self._started = True
        await self._directory.ensure_broadcast()
        self._feed.start()
        if publish_presence:
            self._publishing = True
            await self._beacon.go_online()

    async def close(self) -> None:
        self.open_conversation(None)
        self._feed.stop()
        if self._publishing:
            self._publishing = False
            await self._beacon.go_offline()
        await self.drain()
        self._started = False

    async def drain(self) -> None:
        """Wait for background writes (read receipts, typing flags) to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    @property
    def conversation(self) -> Conversation | None:
        if self._active_id is None:
            return None
        return self._feed.get(self._active_id)

    @property
    def timeline(self) -> Timeline:
        return self._reconciler.timeline

    @property
    def presence(self) -> PresenceDisplay | None:
        if self._presence.target is None:
            return None
        return self._presence.display()

    @property
    def block_state(self) -> BlockState:
        return resolve_block(self.conversation, self.viewer.user_id)

    @property
    def affordance(self) -> str | None:
        return block_affordance(self.conversation, self.viewer.user_id)

    @property
    def total_unread(self) -> int:
        return self._projector.total_unread(self._feed.visible(), self._active_id)

    def conversations(self, query: str | None = None) -> List[ConversationRow]:
        return self._projector.project(
            self._feed.visible(),
            self._filter if query is None else query,
            self._active_id,
        )

    def set_filter(self, query: str) -> None:
        self._filter = query or ""
        self._emit_list()

    def state(self) -> Dict[str, Any]:
        conversation = self.conversation
        typing = sorted(conversation.typing_users(exclude=[self.viewer.user_id])) if conversation else []
        return {
            "conv_id": self._active_id,
            "block": self.block_state.to_dict(),
            "affordance": self.affordance,
            "can_compose": conversation is not None and not self.block_state.is_blocked,
            "typing": typing,
        }

    def open_conversation(self, conversation_id: str | None) -> None:
        if conversation_id == self._active_id:
            return
        if self._typing is not None:
            self._spawn(self._typing.close())
            self._typing = None

        self._active_id = conversation_id
        self._reconciler.open(conversation_id)
        conversation = self.conversation
        if conversation is not None:
            self._reconciler.set_legacy(conversation.id, conversation.legacy_messages)
        self._presence.watch(conversation.counterpart(self.viewer.user_id) if conversation else None)

        self._emit_presence()
        self._emit_state()
        self._emit_list()

    async def start_direct(
        self,
        counterpart_id: str,
        *,
        title: str,
        item_id: str | None = None,
        conversation_id: str | None = None,
    ) -> str:
        existing = self._feed.find_direct(counterpart_id, item_id)
        new_id = await self._directory.start_direct(
            counterpart_id,
            title=title,
            item_id=item_id,
            existing=existing,
            conversation_id=conversation_id,
        )
        self.open_conversation(new_id)
        return new_id

    async def send_message(self, conversation_id: str, body: str, attachment: Attachment | None = None) -> str:
        """Append a message and update the conversation summary.

        Refused before touching the store when the conversation is unknown,
        the message is empty, or either participant has blocked the other.
        """

        conversation = self._require_conversation(conversation_id)
        text = body or ""
        if not text.strip() and attachment is None:
            raise ValueError("message body or attachment required")
        ensure_can_send(conversation, self.viewer.user_id)

        timestamp = self._now()
        message = Message(
            id=None,
            sender_id=self.viewer.user_id,
            sender_name=self.viewer.name,
            text=text,
            timestamp=timestamp,
            status=STATUS_SENT,
            attachment=attachment,
        )
        try:
            message_id = await self._store.add(messages_path(conversation_id), message.to_document())
            await self._store.update(
                conversation_path(conversation_id),
                {
                    "last_message": message_preview(text, attachment),
                    "last_message_time": timestamp,
                    "last_sender_id": self.viewer.user_id,
                    "deleted_ids": [],
                    "unread_count": Increment(1),
                },
            )
        except StoreError as exc:
            logger.warning("sending to %s failed: %s", conversation_id, exc)
            raise SendFailed("failed to send message, please check your connection") from exc
        return message_id

    async def send_attachment(
        self,
        conversation_id: str,
        filename: str,
        payload: bytes,
        content_type: str | None,
        body: str = "",
    ) -> str:
        conversation = self._require_conversation(conversation_id)
        ensure_can_send(conversation, self.viewer.user_id)
        if self._uploader is None:
            raise UploadFailed("attachment uploads are not configured")
        url = await self._uploader.upload(filename, payload, content_type)
        return await self.send_message(
            conversation_id,
            body,
            Attachment(kind=attachment_kind(content_type), url=url),
        )

    async def toggle_block(self, conversation_id: str) -> BlockState:
        conversation = self._require_conversation(conversation_id)
        return await blocking.toggle_block(self._store, conversation, self.viewer.user_id)

    async def delete_conversation(self, conversation_id: str) -> None:
        conversation = self._require_conversation(conversation_id)
        await self._directory.remove_for_viewer(conversation)
        if self._active_id == conversation_id:
            self.open_conversation(None)

    def keystroke(self, conversation_id: str) -> None:
        if conversation_id != self._active_id:
            raise ValueError("conversation is not open")
        ensure_can_send(self._require_conversation(conversation_id), self.viewer.user_id)
        if self._typing is None:
            self._typing = TypingSignal(
                self._store,
                conversation_id,
                self.viewer.user_id,
                idle_seconds=self.config.typing_idle_seconds,
            )
        self._typing.keystroke()

    def _require_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._feed.get(conversation_id)
        if conversation is None:
            raise ValueError("unknown conversation")
        return conversation

    def _on_conversations(self, conversations: List[Conversation]) -> None:
        conversation = self.conversation
        if conversation is not None:
            self._reconciler.set_legacy(conversation.id, conversation.legacy_messages)
            self._presence.watch(conversation.counterpart(self.viewer.user_id))
            self._emit_state()
        self._emit_list()

    def _on_timeline(self, conversation_id: str | None, timeline: Timeline) -> None:
        self._emit(
            EVENT_TIMELINE,
            {"conv_id": conversation_id, "messages": [message.to_dict() for message in timeline]},
        )
        if conversation_id is not None and self._receipts.pending(timeline):
            self._spawn(self._receipts.mark_read(conversation_id, timeline))

    def _on_presence(self, user_id: str | None, display: PresenceDisplay) -> None:
        if user_id is not None:
            self._emit_presence()

    def _emit_presence(self) -> None:
        display = self.presence
        if display is None:
            return
        body: Dict[str, Any] = {"conv_id": self._active_id, "user_id": self._presence.target}
        body.update(display.to_dict())
        self._emit(EVENT_PRESENCE, body)

    def _emit_state(self) -> None:
        self._emit(EVENT_STATE, self.state())

    def _emit_list(self) -> None:
        self._emit(
            EVENT_LIST,
            {
                "conversations": [row.to_dict() for row in self.conversations()],
                "total_unread": self.total_unread,
            },
        )

    def _emit(self, kind: str, body: Dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(kind, body)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("background chat task failed", exc_info=exc)
