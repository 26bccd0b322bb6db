from __future__ import annotations

import asyncio
import logging
from typing import Set

from .models import conversation_path
from .store import InMemoryDocumentStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_IDLE_SECONDS = 2.0


class TypingSignal:
    """Ephemeral ``typing.<viewer>`` flag on a conversation record.

    The first keystroke of a burst raises the flag; every keystroke re-arms
    the idle timer; the flag is cleared once the timer fires.
    """

    def __init__(
        self,
        store: InMemoryDocumentStore,
        conversation_id: str,
        viewer_id: str,
        *,
        idle_seconds: float = DEFAULT_IDLE_SECONDS,
    ) -> None:
        self.conversation_id = conversation_id
        self._store = store
        self._viewer_id = viewer_id
        self._idle_seconds = idle_seconds
        self._typing = False
        self._timer: asyncio.TimerHandle | None = None
        self._writes: Set[asyncio.Task] = set()

    @property
    def typing(self) -> bool:
        return self._typing

    def keystroke(self) -> None:
        loop = asyncio.get_running_loop()
        if not self._typing:
            self._typing = True
            self._write(True)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._idle_seconds, self._expire)

    async def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._typing:
            self._typing = False
            self._write(False)
        if self._writes:
            await asyncio.gather(*self._writes, return_exceptions=True)

    def _expire(self) -> None:
        self._timer = None
        if self._typing:
            self._typing = False
            self._write(False)

    def _write(self, value: bool) -> None:
        task = asyncio.create_task(self._publish(value))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _publish(self, value: bool) -> None:
        try:
            await self._store.update(
                conversation_path(self.conversation_id),
                {f"typing.{self._viewer_id}": value},
            )
        except StoreError as exc:
            logger.warning("typing flag update for %s failed: %s", self.conversation_id, exc)
