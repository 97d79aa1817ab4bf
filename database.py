"""
Document store access.

`DocumentStore` is the seam every live query and mutation goes through.
`MongoDocumentStore` implements it on MongoDB: live queries are change streams
that re-run the query after each change, and server timestamps are written with
`$currentDate`.

Connection settings come from DATABASE_URL and DATABASE_NAME. When they are not
set, `db` is None and a store must be given a database explicitly.
"""
import asyncio
import logging
import os
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel, ConfigDict
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import OperationFailure, PyMongoError

from errors import ConfigurationError, FailureKind, StoreError

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# MongoDB "Unauthorized"
UNAUTHORIZED_CODES = {13}

Snapshot = List[Dict[str, Any]]
SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[StoreError], None]
Release = Callable[[], None]


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


# Placeholder resolved by the store to its own clock at write time.
SERVER_TIMESTAMP = _ServerTimestamp()

_MONGO_OPS = {
    "==": "$eq",
    "!=": "$ne",
    "<": "$lt",
    "<=": "$lte",
    ">": "$gt",
    ">=": "$gte",
    "in": "$in",
}


class Filter(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    op: str = "=="
    value: Any = None

    def to_mongo(self) -> Dict[str, Any]:
        if self.op not in _MONGO_OPS:
            raise ValueError(f"Unsupported filter operator: {self.op}")
        return {self.field: {_MONGO_OPS[self.op]: self.value}}

    def matches(self, doc: Dict[str, Any]) -> bool:
        """Evaluate against a plain document; absent fields only match `!=`."""
        if self.field not in doc:
            return self.op == "!="
        actual = doc[self.field]
        try:
            if self.op == "==":
                return actual == self.value
            if self.op == "!=":
                return actual != self.value
            if self.op == "in":
                return actual in self.value
            if self.op == "<":
                return actual < self.value
            if self.op == "<=":
                return actual <= self.value
            if self.op == ">":
                return actual > self.value
            if self.op == ">=":
                return actual >= self.value
        except TypeError:
            return False
        raise ValueError(f"Unsupported filter operator: {self.op}")


class QuerySpec(BaseModel):
    """One collection query: filters are AND-combined, then sorted, then limited."""

    model_config = ConfigDict(frozen=True)

    collection: str
    filters: Tuple[Filter, ...] = ()
    order_by: Optional[str] = None
    descending: bool = True
    limit: Optional[int] = None

    def mongo_filter(self) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        for f in self.filters:
            for field, condition in f.to_mongo().items():
                merged.setdefault(field, {}).update(condition)
        return merged


class DocumentStore(ABC):
    """Live queries plus single-document writes against named collections."""

    @abstractmethod
    def subscribe(self, query: QuerySpec, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Release:
        """Deliver the full ordered result now and after every change; returns a release function."""

    @abstractmethod
    async def fetch(self, query: QuerySpec) -> Snapshot:
        ...

    @abstractmethod
    async def insert(self, collection: str, fields: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        ...


def _oid(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if doc.get("_id") is not None:
        doc["id"] = str(doc.pop("_id"))
    return doc


def _object_id(doc_id: str) -> ObjectId:
    try:
        return ObjectId(doc_id)
    except (InvalidId, TypeError):
        raise StoreError(FailureKind.NOT_FOUND, f"Invalid document id: {doc_id}")


def _split_stamps(fields: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    values = {k: v for k, v in fields.items() if v is not SERVER_TIMESTAMP}
    stamps = [k for k, v in fields.items() if v is SERVER_TIMESTAMP]
    return values, stamps


def _update_doc(fields: Dict[str, Any]) -> Dict[str, Any]:
    values, stamps = _split_stamps(fields)
    update: Dict[str, Any] = {}
    if values:
        update["$set"] = values
    if stamps:
        update["$currentDate"] = {k: True for k in stamps}
    return update


def _store_error(exc: PyMongoError) -> StoreError:
    if isinstance(exc, OperationFailure) and exc.code in UNAUTHORIZED_CODES:
        return StoreError(FailureKind.PERMISSION_DENIED, str(exc))
    return StoreError(FailureKind.UNKNOWN, str(exc))


def _connect():
    if not DATABASE_URL or not DATABASE_NAME:
        return None
    client = MongoClient(DATABASE_URL, tz_aware=True)
    return client[DATABASE_NAME]


db = _connect()


class MongoDocumentStore(DocumentStore):
    """
    MongoDB-backed store.

    Change streams need a replica set or sharded cluster. Each subscription runs its
    stream on a daemon thread and hands snapshots to the asyncio loop that was
    running when it subscribed.
    """

    def __init__(self, database=None, max_await_ms: int = 500):
        self._db = database if database is not None else db
        if self._db is None:
            raise ConfigurationError("DATABASE_URL and DATABASE_NAME must be set")
        self._max_await_ms = max_await_ms

    def _find(self, query: QuerySpec) -> Snapshot:
        cursor = self._db[query.collection].find(query.mongo_filter())
        if query.order_by:
            cursor = cursor.sort(query.order_by, DESCENDING if query.descending else ASCENDING)
        if query.limit:
            cursor = cursor.limit(query.limit)
        return [_oid(doc) for doc in cursor]

    def subscribe(self, query: QuerySpec, on_snapshot: SnapshotCallback, on_error: ErrorCallback) -> Release:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        stop = threading.Event()

        def call(fn, arg):
            if not stop.is_set():
                fn(arg)

        def deliver(fn, arg):
            if stop.is_set():
                return
            if loop is None:
                call(fn, arg)
            else:
                loop.call_soon_threadsafe(call, fn, arg)

        def run():
            try:
                with self._db[query.collection].watch(max_await_time_ms=self._max_await_ms) as stream:
                    deliver(on_snapshot, self._find(query))
                    while not stop.is_set() and stream.alive:
                        if stream.try_next() is None:
                            continue
                        deliver(on_snapshot, self._find(query))
            except PyMongoError as exc:
                logger.warning("Live query on %s failed: %s", query.collection, exc)
                deliver(on_error, _store_error(exc))

        thread = threading.Thread(target=run, name=f"watch-{query.collection}", daemon=True)
        thread.start()
        return stop.set

    async def fetch(self, query: QuerySpec) -> Snapshot:
        try:
            return await asyncio.to_thread(self._find, query)
        except PyMongoError as exc:
            raise _store_error(exc) from exc

    async def insert(self, collection: str, fields: Dict[str, Any]) -> str:
        return await asyncio.to_thread(self._insert, collection, fields)

    def _insert(self, collection: str, fields: Dict[str, Any]) -> str:
        doc_id = ObjectId()
        try:
            self._db[collection].update_one({"_id": doc_id}, _update_doc(fields), upsert=True)
        except PyMongoError as exc:
            raise _store_error(exc) from exc
        return str(doc_id)

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._update, collection, doc_id, fields)

    def _update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        _id = _object_id(doc_id)
        try:
            res = self._db[collection].update_one({"_id": _id}, _update_doc(fields))
        except PyMongoError as exc:
            raise _store_error(exc) from exc
        if res.matched_count == 0:
            raise StoreError(FailureKind.NOT_FOUND, f"{collection}/{doc_id} not found")

    async def delete(self, collection: str, doc_id: str) -> None:
        await asyncio.to_thread(self._delete, collection, doc_id)

    def _delete(self, collection: str, doc_id: str) -> None:
        _id = _object_id(doc_id)
        try:
            res = self._db[collection].delete_one({"_id": _id})
        except PyMongoError as exc:
            raise _store_error(exc) from exc
        if res.deleted_count == 0:
            raise StoreError(FailureKind.NOT_FOUND, f"{collection}/{doc_id} not found")
