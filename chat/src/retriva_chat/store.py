"""In-memory document store with live subscriptions.

Mirrors the contract of the managed backend the chat engine runs against:
collections of JSON-like documents addressed by slash-separated paths,
query and document subscriptions that push snapshots, targeted field
updates with transforms, and all-or-nothing write batches.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .hub import ErrorCallback, Subscription, SubscriptionHub


Where = Tuple[str, str, Any]
Operation = Tuple[str, str, Dict[str, Any]]

_WHERE_OPS = {"==", "!=", "array-contains"}


class StoreError(Exception):
    """Raised when a write cannot be applied."""


class DocumentNotFound(StoreError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"No document to update: {path}")


@dataclass(frozen=True)
class Increment:
    amount: int = 1


class ArrayUnion:
    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = values


class ArrayRemove:
    __slots__ = ("values",)

    def __init__(self, *values: Any) -> None:
        self.values = values


@dataclass(frozen=True)
class DocumentSnapshot:
    id: str
    path: str
    data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)


QuerySnapshot = List[DocumentSnapshot]


def split_path(path: str) -> tuple[str, str]:
    """Split a document path into ``(collection_path, doc_id)``."""

    parts = [part for part in path.split("/") if part]
    if not parts or len(parts) % 2 != 0:
        raise ValueError(f"not a document path: {path!r}")
    return "/".join(parts[:-1]), parts[-1]


def _transform(current: Any, value: Any) -> Any:
    if isinstance(value, Increment):
        base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
        return base + value.amount
    if isinstance(value, ArrayUnion):
        merged = list(current) if isinstance(current, list) else []
        for item in value.values:
            if item not in merged:
                merged.append(item)
        return merged
    if isinstance(value, ArrayRemove):
        existing = list(current) if isinstance(current, list) else []
        return [item for item in existing if item not in value.values]
    return copy.deepcopy(value)


def _apply_update(data: Dict[str, Any], fields: Dict[str, Any]) -> None:
    for key, value in fields.items():
        *parents, leaf = key.split(".")
        target = data
        for part in parents:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[leaf] = _transform(target.get(leaf), value)


def _apply_set(data: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in fields.items():
        data[key] = _transform(data.get(key), value)
    return data


def _matches(data: Dict[str, Any], where: Iterable[Where]) -> bool:
    for field_name, op, expected in where:
        actual = data.get(field_name)
        if op == "==" and actual != expected:
            return False
        if op == "!=" and actual == expected:
            return False
        if op == "array-contains" and (not isinstance(actual, list) or expected not in actual):
            return False
    return True


def _order_value(data: Dict[str, Any], field_name: str) -> Any:
    value = data.get(field_name)
    return 0 if value is None else value


class WriteBatch:
    """Collects writes and applies them atomically on ``commit``."""

    def __init__(self, store: "InMemoryDocumentStore") -> None:
        self._store = store
        self.operations: List[Operation] = []

    def update(self, path: str, fields: Dict[str, Any]) -> "WriteBatch":
        self.operations.append(("update", path, dict(fields)))
        return self

    def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> "WriteBatch":
        self.operations.append(("merge" if merge else "set", path, dict(data)))
        return self

    def delete(self, path: str) -> "WriteBatch":
        self.operations.append(("delete", path, {}))
        return self

    async def commit(self) -> None:
        await self._store.apply_batch(self.operations)


class InMemoryDocumentStore:
    def __init__(self, *, id_factory: Callable[[], str] | None = None) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._hub = SubscriptionHub()
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)

    def new_id(self) -> str:
        return self._id_factory()

    async def get(self, path: str) -> DocumentSnapshot:
        collection, doc_id = split_path(path)
        return self._snapshot(collection, doc_id)

    async def query(
        self,
        collection: str,
        *,
        where: Iterable[Where] = (),
        order_by: str | None = None,
        descending: bool = False,
    ) -> QuerySnapshot:
        return self._query(collection, tuple(where), order_by, descending)

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self.apply_batch([("set", f"{collection}/{doc_id}", dict(data))])
        return doc_id

    async def set(self, path: str, data: Dict[str, Any], *, merge: bool = False) -> None:
        await self.apply_batch([("merge" if merge else "set", path, dict(data))])

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        await self.apply_batch([("update", path, dict(fields))])

    async def delete(self, path: str) -> None:
        await self.apply_batch([("delete", path, {})])

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def apply_batch(self, operations: Iterable[Operation]) -> None:
        """Apply every operation or none of them.

        All targets are resolved and staged before anything is written, so a
        missing update target leaves the store untouched.
        """

        staged: Dict[str, Optional[Dict[str, Any]]] = {}
        for op, path, payload in operations:
            collection, doc_id = split_path(path)
            full_path = f"{collection}/{doc_id}"
            if full_path in staged:
                current = staged[full_path]
            else:
                current = self._collections.get(collection, {}).get(doc_id)
            if op == "update":
                if current is None:
                    raise DocumentNotFound(full_path)
                updated = copy.deepcopy(current)
                _apply_update(updated, payload)
            elif op == "set":
                updated = _apply_set({}, payload)
            elif op == "merge":
                updated = _apply_set(copy.deepcopy(current or {}), payload)
            elif op == "delete":
                updated = None
            else:
                raise ValueError(f"unsupported batch operation: {op}")
            staged[full_path] = updated

        touched_collections: List[str] = []
        for full_path, data in staged.items():
            collection, doc_id = split_path(full_path)
            docs = self._collections.setdefault(collection, {})
            if data is None:
                docs.pop(doc_id, None)
            else:
                docs[doc_id] = data
            if collection not in touched_collections:
                touched_collections.append(collection)

        for collection in touched_collections:
            self._hub.broadcast(collection)
        for full_path in staged:
            self._hub.broadcast(full_path)

    def subscribe_query(
        self,
        collection: str,
        callback: Callable[[QuerySnapshot], None],
        *,
        where: Iterable[Where] = (),
        order_by: str | None = None,
        descending: bool = False,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        clauses = tuple(where)
        for _, op, _ in clauses:
            if op not in _WHERE_OPS:
                raise ValueError(f"unsupported where operator: {op}")

        def render() -> QuerySnapshot:
            return self._query(collection, clauses, order_by, descending)

        return self._hub.subscribe(collection, callback, render, on_error)

    def subscribe_document(
        self,
        path: str,
        callback: Callable[[DocumentSnapshot], None],
        *,
        on_error: ErrorCallback | None = None,
    ) -> Subscription:
        collection, doc_id = split_path(path)
        return self._hub.subscribe(
            f"{collection}/{doc_id}",
            callback,
            lambda: self._snapshot(collection, doc_id),
            on_error,
        )

    def unsubscribe(self, subscription: Subscription) -> None:
        self._hub.unsubscribe(subscription)

    def fail_subscriptions(self, path: str, exc: Exception) -> None:
        """Push ``exc`` to the error callbacks of every listener on ``path``."""

        self._hub.fail(path, exc)

    def listener_count(self, path: str) -> int:
        return self._hub.count(path)

    def _snapshot(self, collection: str, doc_id: str) -> DocumentSnapshot:
        data = self._collections.get(collection, {}).get(doc_id)
        return DocumentSnapshot(
            id=doc_id,
            path=f"{collection}/{doc_id}",
            data=copy.deepcopy(data) if data is not None else None,
        )

    def _query(
        self,
        collection: str,
        where: Tuple[Where, ...],
        order_by: str | None,
        descending: bool,
    ) -> QuerySnapshot:
        docs = [
            DocumentSnapshot(id=doc_id, path=f"{collection}/{doc_id}", data=copy.deepcopy(data))
            for doc_id, data in self._collections.get(collection, {}).items()
            if _matches(data, where)
        ]
        if order_by is not None:
            docs.sort(key=lambda snap: _order_value(snap.data or {}, order_by), reverse=descending)
        return docs
