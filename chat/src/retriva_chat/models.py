from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Tuple

DIRECT = "direct"
BROADCAST = "broadcast"

STATUS_SENT = "sent"
STATUS_READ = "read"

ORIGIN_INLINE = "inline"
ORIGIN_STORE = "store"

ATTACHMENT_IMAGE = "image"
ATTACHMENT_FILE = "file"

CHATS = "chats"
USERS = "users"


def conversation_path(conversation_id: str) -> str:
    return f"{CHATS}/{conversation_id}"


def messages_path(conversation_id: str) -> str:
    return f"{CHATS}/{conversation_id}/messages"


def message_path(conversation_id: str, message_id: str) -> str:
    return f"{messages_path(conversation_id)}/{message_id}"


def user_path(user_id: str) -> str:
    return f"{USERS}/{user_id}"


@dataclass(frozen=True)
class Viewer:
    """The identity a chat session acts as."""

    user_id: str
    name: str = "Student"


@dataclass(frozen=True)
class Attachment:
    kind: str
    url: str

    @classmethod
    def from_dict(cls, raw: Any) -> "Attachment | None":
        if not isinstance(raw, dict):
            return None
        url = raw.get("url")
        if not isinstance(url, str) or not url:
            return None
        kind = ATTACHMENT_IMAGE if raw.get("kind") == ATTACHMENT_IMAGE else ATTACHMENT_FILE
        return cls(kind=kind, url=url)

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "url": self.url}


@dataclass(frozen=True)
class Message:
    """A chat message as seen on the merged timeline.

    ``id`` is ``None`` for legacy inline messages written before identities
    existed; such messages are keyed by their timestamp.
    """

    id: str | None
    sender_id: str
    timestamp: int
    text: str = ""
    sender_name: str | None = None
    status: str = STATUS_SENT
    attachment: Attachment | None = None
    origin: str = ORIGIN_STORE

    @property
    def dedup_key(self) -> str | int:
        return self.id if self.id else self.timestamp

    @property
    def is_read(self) -> bool:
        return self.status == STATUS_READ

    @classmethod
    def from_document(cls, doc_id: str | None, data: Dict[str, Any], *, origin: str = ORIGIN_STORE) -> "Message":
        timestamp = data.get("timestamp")
        return cls(
            id=doc_id or None,
            sender_id=str(data.get("sender_id") or ""),
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else 0,
            text=str(data.get("text") or ""),
            sender_name=data.get("sender_name"),
            status=STATUS_READ if data.get("status") == STATUS_READ else STATUS_SENT,
            attachment=Attachment.from_dict(data.get("attachment")),
            origin=origin,
        )

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
            "text": self.text,
            "timestamp": self.timestamp,
            "status": self.status,
        }
        if self.attachment is not None:
            document["attachment"] = self.attachment.to_dict()
        return document

    def to_dict(self) -> Dict[str, Any]:
        payload = self.to_document()
        payload["id"] = self.id
        payload["origin"] = self.origin
        return payload


def _legacy_messages(raw: Any) -> Tuple[Message, ...]:
    if not isinstance(raw, list):
        return ()
    messages = []
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        entry_id = entry.get("id")
        messages.append(
            Message.from_document(
                entry_id if isinstance(entry_id, str) else None,
                entry,
                origin=ORIGIN_INLINE,
            )
        )
    return tuple(messages)


def _string_tuple(raw: Any) -> Tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    return tuple(item for item in raw if isinstance(item, str))


@dataclass(frozen=True)
class Conversation:
    id: str
    type: str = DIRECT
    title: str = ""
    participants: Tuple[str, ...] = ()
    legacy_messages: Tuple[Message, ...] = ()
    last_message: str = ""
    last_message_time: int = 0
    last_sender_id: str | None = None
    unread_count: int = 0
    blocked: bool = False
    blocked_by: str | None = None
    item_id: str | None = None
    typing: FrozenSet[str] = field(default_factory=frozenset)
    deleted_ids: Tuple[str, ...] = ()

    @property
    def is_broadcast(self) -> bool:
        return self.type == BROADCAST

    def counterpart(self, viewer_id: str) -> str | None:
        """Return the other participant of a direct conversation."""

        if self.is_broadcast:
            return None
        for participant in self.participants:
            if participant != viewer_id:
                return participant
        return None

    def is_deleted_for(self, viewer_id: str) -> bool:
        return viewer_id in self.deleted_ids

    def typing_users(self, exclude: Iterable[str] = ()) -> FrozenSet[str]:
        return self.typing - frozenset(exclude)

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "Conversation":
        typing_raw = data.get("typing")
        typing = (
            frozenset(user for user, active in typing_raw.items() if active is True)
            if isinstance(typing_raw, dict)
            else frozenset()
        )
        blocked_by = data.get("blocked_by")
        last_sender = data.get("last_sender_id")
        item_id = data.get("item_id")
        return cls(
            id=doc_id,
            type=BROADCAST if data.get("type") == BROADCAST else DIRECT,
            title=str(data.get("title") or ""),
            participants=_string_tuple(data.get("participants")),
            legacy_messages=_legacy_messages(data.get("messages")),
            last_message=str(data.get("last_message") or ""),
            last_message_time=int(data.get("last_message_time") or 0),
            last_sender_id=last_sender if isinstance(last_sender, str) else None,
            unread_count=int(data.get("unread_count") or 0),
            blocked=bool(data.get("blocked", False)),
            blocked_by=blocked_by if isinstance(blocked_by, str) else None,
            item_id=item_id if isinstance(item_id, str) else None,
            typing=typing,
            deleted_ids=_string_tuple(data.get("deleted_ids")),
        )
