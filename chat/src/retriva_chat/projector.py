from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from .models import Conversation


@dataclass(frozen=True)
class ConversationRow:
    conversation_id: str
    type: str
    title: str
    preview: str
    last_message_time: int
    badge: int
    blocked: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conv_id": self.conversation_id,
            "type": self.type,
            "title": self.title,
            "preview": self.preview,
            "last_message_time": self.last_message_time,
            "badge": self.badge,
            "blocked": self.blocked,
        }


def matches_filter(conversation: Conversation, query: str) -> bool:
    needle = query.casefold()
    if not needle:
        return True
    return needle in conversation.title.casefold() or needle in conversation.last_message.casefold()


def filter_conversations(conversations: Iterable[Conversation], query: str) -> List[Conversation]:
    """Keep conversations matching ``query`` in their upstream order."""

    return [conversation for conversation in conversations if matches_filter(conversation, query)]


def unread_badge(conversation: Conversation, active_id: str | None, viewer_id: str) -> int:
    """Unread count to display, ``0`` meaning no badge.

    Hidden for the conversation currently open. Unlike the web client, which
    shows any positive counter outside the open chat, the badge is also
    hidden from the sender of the last message: the shared counter only
    counts what the sender's counterpart has not read yet.
    """

    if conversation.id == active_id:
        return 0
    if conversation.last_sender_id is not None and conversation.last_sender_id == viewer_id:
        return 0
    return max(conversation.unread_count, 0)


class ConversationListProjector:
    def __init__(self, viewer_id: str) -> None:
        self._viewer_id = viewer_id

    def project(
        self,
        conversations: Iterable[Conversation],
        query: str = "",
        active_id: str | None = None,
    ) -> List[ConversationRow]:
        return [
            ConversationRow(
                conversation_id=conversation.id,
                type=conversation.type,
                title=conversation.title,
                preview=conversation.last_message,
                last_message_time=conversation.last_message_time,
                badge=unread_badge(conversation, active_id, self._viewer_id),
                blocked=conversation.blocked and not conversation.is_broadcast,
            )
            for conversation in filter_conversations(conversations, query)
        ]

    def total_unread(self, conversations: Iterable[Conversation], active_id: str | None = None) -> int:
        return sum(unread_badge(conversation, active_id, self._viewer_id) for conversation in conversations)
