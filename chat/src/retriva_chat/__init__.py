"""Conversation synchronisation engine for the campus marketplace chat."""

from .blocking import BlockNotPermitted, BlockState, SendBlocked, resolve_block, toggle_block
from .config import ChatConfig, load_chat_config_from_env
from .models import Attachment, Conversation, Message, Viewer
from .presence import PresenceBeacon, PresenceDisplay, PresenceMonitor
from .projector import ConversationListProjector, ConversationRow
from .receipts import ReadReceiptTracker
from .reconciler import MessageReconciler, merge_timeline
from .server import main, simulate
from .session import ChatSession, SendFailed
from .store import DocumentNotFound, InMemoryDocumentStore, StoreError
from .typing_signal import TypingSignal
from .upload import HttpMediaUploader, UploadFailed

__all__ = [
    "Attachment",
    "BlockNotPermitted",
    "BlockState",
    "ChatConfig",
    "ChatSession",
    "Conversation",
    "ConversationListProjector",
    "ConversationRow",
    "DocumentNotFound",
    "HttpMediaUploader",
    "InMemoryDocumentStore",
    "Message",
    "MessageReconciler",
    "PresenceBeacon",
    "PresenceDisplay",
    "PresenceMonitor",
    "ReadReceiptTracker",
    "SendBlocked",
    "SendFailed",
    "StoreError",
    "TypingSignal",
    "UploadFailed",
    "Viewer",
    "load_chat_config_from_env",
    "main",
    "merge_timeline",
    "resolve_block",
    "simulate",
    "toggle_block",
]
