from __future__ import annotations

from dataclasses import dataclass
from typing import Dict

from .models import Conversation, conversation_path
from .store import InMemoryDocumentStore

BLOCK = "block"
UNBLOCK = "unblock"


class SendBlocked(PermissionError):
    """Raised when a block on the conversation forbids composing."""


class BlockNotPermitted(PermissionError):
    """Raised when the viewer may not toggle the block relation."""


@dataclass(frozen=True)
class BlockState:
    is_blocked: bool = False
    blocked_by_me: bool = False
    blocked_by_other: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {
            "is_blocked": self.is_blocked,
            "blocked_by_me": self.blocked_by_me,
            "blocked_by_other": self.blocked_by_other,
        }


def resolve_block(conversation: Conversation | None, viewer_id: str) -> BlockState:
    if conversation is None or conversation.is_broadcast or not conversation.blocked:
        return BlockState()
    blocked_by_me = conversation.blocked_by == viewer_id
    return BlockState(is_blocked=True, blocked_by_me=blocked_by_me, blocked_by_other=not blocked_by_me)


def block_affordance(conversation: Conversation | None, viewer_id: str) -> str | None:
    """Return the block action to offer the viewer, if any."""

    if conversation is None or conversation.is_broadcast:
        return None
    state = resolve_block(conversation, viewer_id)
    if state.blocked_by_other:
        return None
    return UNBLOCK if state.blocked_by_me else BLOCK


def ensure_can_send(conversation: Conversation, viewer_id: str) -> None:
    """Refuse composing while either party holds the block."""

    state = resolve_block(conversation, viewer_id)
    if state.blocked_by_other:
        raise SendBlocked("you cannot reply to this conversation")
    if state.blocked_by_me:
        raise SendBlocked("unblock to send messages")


async def toggle_block(store: InMemoryDocumentStore, conversation: Conversation, viewer_id: str) -> BlockState:
    """Flip the block relation as ``viewer_id`` with one targeted update."""

    action = block_affordance(conversation, viewer_id)
    if action is None:
        if conversation.is_broadcast:
            raise BlockNotPermitted("broadcast conversations cannot be blocked")
        raise BlockNotPermitted("only the blocking participant can unblock")

    if action == BLOCK:
        await store.update(conversation_path(conversation.id), {"blocked": True, "blocked_by": viewer_id})
        return BlockState(is_blocked=True, blocked_by_me=True)
    await store.update(conversation_path(conversation.id), {"blocked": False, "blocked_by": None})
    return BlockState()
