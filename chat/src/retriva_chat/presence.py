from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List

from .hub import Subscription
from .models import user_path
from .store import DocumentSnapshot, InMemoryDocumentStore, StoreError

logger = logging.getLogger(__name__)

ONLINE = "online"
LAST_SEEN = "last_seen"
OFFLINE = "offline"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class PresenceConfig:
    heartbeat_interval_seconds: float = 60.0


@dataclass(frozen=True)
class PresenceDisplay:
    status: str
    label: str

    def to_dict(self) -> Dict[str, str]:
        return {"status": self.status, "label": self.label}


def format_last_seen(last_seen_ms: int, now_ms: int) -> str:
    minutes = max(0, now_ms - last_seen_ms) // 60_000
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m ago"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h ago"
    return "a while ago"


def describe_presence(online: bool, last_seen_ms: int | None, now_ms: int) -> PresenceDisplay:
    if online:
        return PresenceDisplay(ONLINE, "online")
    if last_seen_ms is not None:
        return PresenceDisplay(LAST_SEEN, format_last_seen(last_seen_ms, now_ms))
    return PresenceDisplay(OFFLINE, "offline")


PresenceListener = Callable[[str | None, PresenceDisplay], None]


class PresenceMonitor:
    """Follows the presence record of one counterpart at a time.

    Watching ``None`` (no conversation, or a broadcast one) holds no
    subscription. Missing records and subscription failures read as offline.
    """

    def __init__(self, store: InMemoryDocumentStore, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._store = store
        self._now = now_func
        self._generation = 0
        self._target: str | None = None
        self._subscription: Subscription | None = None
        self._online = False
        self._last_seen: int | None = None
        self._listeners: List[PresenceListener] = []

    @property
    def target(self) -> str | None:
        return self._target

    def add_listener(self, listener: PresenceListener) -> None:
        self._listeners.append(listener)

    def display(self, now_ms: int | None = None) -> PresenceDisplay:
        return describe_presence(self._online, self._last_seen, self._now() if now_ms is None else now_ms)

    def watch(self, user_id: str | None) -> None:
        if user_id == self._target:
            return
        self._generation += 1
        generation = self._generation
        self._target = user_id
        self._apply(False, None)

        if self._subscription is not None:
            self._store.unsubscribe(self._subscription)
            self._subscription = None
        if user_id is None:
            return
        self._subscription = self._store.subscribe_document(
            user_path(user_id),
            lambda snapshot: self._on_snapshot(generation, snapshot),
            on_error=lambda exc: self._on_error(generation, exc),
        )

    def close(self) -> None:
        self.watch(None)

    def _on_snapshot(self, generation: int, snapshot: DocumentSnapshot) -> None:
        if generation != self._generation:
            return
        if not snapshot.exists:
            self._apply(False, None)
            return
        last_seen: Any = snapshot.get("last_seen")
        self._apply(
            snapshot.get("is_online") is True,
            int(last_seen) if isinstance(last_seen, (int, float)) else None,
        )

    def _on_error(self, generation: int, exc: Exception) -> None:
        if generation != self._generation:
            return
        logger.warning("presence subscription for %s failed: %s", self._target, exc)
        self._apply(False, None)

    def _apply(self, online: bool, last_seen: int | None) -> None:
        if (online, last_seen) == (self._online, self._last_seen):
            return
        self._online = online
        self._last_seen = last_seen
        display = self.display()
        for listener in list(self._listeners):
            listener(self._target, display)


class PresenceBeacon:
    """Publishes the session owner's own presence record."""

    def __init__(
        self,
        store: InMemoryDocumentStore,
        user_id: str,
        config: PresenceConfig | None = None,
        *,
        now_func: Callable[[], int] = _now_ms,
    ) -> None:
        self.config = config or PresenceConfig()
        self._store = store
        self._user_id = user_id
        self._now = now_func
        self._heartbeat_task: asyncio.Task | None = None

    async def go_online(self) -> None:
        await self._store.set(
            user_path(self._user_id),
            {"is_online": True, "last_seen": self._now()},
            merge=True,
        )
        self.start_heartbeat()

    async def go_offline(self) -> None:
        await self.stop_heartbeat()
        try:
            await self._store.update(user_path(self._user_id), {"is_online": False, "last_seen": self._now()})
        except StoreError as exc:
            logger.warning("could not mark %s offline: %s", self._user_id, exc)

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        try:
            await self._heartbeat_task
        except asyncio.CancelledError:
            pass
        self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.heartbeat_interval_seconds)
                await self.touch()
        except asyncio.CancelledError:
            return

    async def touch(self) -> None:
        try:
            await self._store.update(user_path(self._user_id), {"is_online": True, "last_seen": self._now()})
        except StoreError as exc:
            logger.warning("presence heartbeat for %s failed: %s", self._user_id, exc)
