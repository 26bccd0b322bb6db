import asyncio
import itertools
from typing import Any, Dict, List

from retriva_chat.store import InMemoryDocumentStore, Operation


async def settle(rounds: int = 20) -> None:
    """Let scheduled snapshot deliveries and follow-up tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


def counter_ids(prefix: str = "doc"):
    counter = itertools.count(1)
    return lambda: f"{prefix}-{next(counter)}"


class FakeClock:
    def __init__(self, start_ms: int = 1_700_000_000_000) -> None:
        self.now_ms = start_ms

    def advance(self, seconds: float) -> None:
        self.now_ms += int(seconds * 1000)

    def now(self) -> int:
        return self.now_ms


class RecordingStore(InMemoryDocumentStore):
    """Store that records every applied batch and can be told to fail."""

    def __init__(self, **kwargs: Any) -> None:
        kwargs.setdefault("id_factory", counter_ids())
        super().__init__(**kwargs)
        self.batches: List[List[Operation]] = []
        self.fail_with: Exception | None = None

    async def apply_batch(self, operations) -> None:
        operations = list(operations)
        self.batches.append(operations)
        if self.fail_with is not None:
            raise self.fail_with
        await super().apply_batch(operations)

    def writes_to(self, path: str) -> List[Dict[str, Any]]:
        return [payload for batch in self.batches for _, op_path, payload in batch if op_path == path]
