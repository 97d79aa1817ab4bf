"""
Test doubles and fixtures for the console.

FakeDocumentStore keeps collections in memory and re-delivers every matching live
query synchronously after each write, which is the store behaviour the console
relies on. FakeIdentityProvider holds a fixed set of accounts.
"""
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from database import SERVER_TIMESTAMP, DocumentStore, QuerySpec
from errors import AuthenticationError, AuthFailure, FailureKind, StoreError
from mutations import MutationGateway
from schemas import Identity
from session import IdentityProvider, MemoryStorage, SessionStore


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 11, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class _Subscription:
    def __init__(self, query, on_snapshot, on_error):
        self.query = query
        self.on_snapshot = on_snapshot
        self.on_error = on_error
        self.active = True


class FakeDocumentStore(DocumentStore):
    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.subscriptions: List[_Subscription] = []
        self.calls: List[Tuple[str, str, Any]] = []
        self.denied: set = set()
        self._ids = count(1)

    # helpers for tests

    def seed(self, collection: str, doc_id: Optional[str] = None, **fields) -> str:
        doc_id = doc_id or f"{collection}-{next(self._ids)}"
        self.collections.setdefault(collection, {})[doc_id] = dict(fields)
        self._notify(collection)
        return doc_id

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.collections.get(collection, {}).get(doc_id)

    def active(self, collection: Optional[str] = None) -> List[_Subscription]:
        return [s for s in self.subscriptions if s.active and (collection is None or s.query.collection == collection)]

    def fail(self, collection: str, kind: FailureKind = FailureKind.UNKNOWN, message: str = "network down") -> None:
        for sub in self.active(collection):
            sub.active = False
            sub.on_error(StoreError(kind, message))

    # DocumentStore

    def _results(self, query: QuerySpec) -> List[Dict[str, Any]]:
        docs = [
            dict(doc, id=doc_id)
            for doc_id, doc in self.collections.get(query.collection, {}).items()
            if all(f.matches(doc) for f in query.filters)
        ]
        if query.order_by:
            docs.sort(
                key=lambda d: (d.get(query.order_by) is not None, d.get(query.order_by)),
                reverse=query.descending,
            )
        if query.limit:
            docs = docs[: query.limit]
        return docs

    def _notify(self, collection: str) -> None:
        for sub in self.active(collection):
            sub.on_snapshot(self._results(sub.query))

    def subscribe(self, query, on_snapshot, on_error):
        sub = _Subscription(query, on_snapshot, on_error)
        self.subscriptions.append(sub)
        on_snapshot(self._results(query))

        def release():
            sub.active = False

        return release

    async def fetch(self, query):
        self.calls.append(("fetch", query.collection, query))
        return self._results(query)

    def _check(self, collection: str) -> None:
        if collection in self.denied:
            raise StoreError(FailureKind.PERMISSION_DENIED, "Missing or insufficient permissions.")

    def _resolve(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        resolved = {}
        for key, value in fields.items():
            if value is SERVER_TIMESTAMP:
                value = self.clock.advance(seconds=1)
            resolved[key] = value
        return resolved

    async def insert(self, collection, fields):
        self.calls.append(("insert", collection, dict(fields)))
        self._check(collection)
        doc_id = f"{collection}-{next(self._ids)}"
        self.collections.setdefault(collection, {})[doc_id] = self._resolve(fields)
        self._notify(collection)
        return doc_id

    async def update(self, collection, doc_id, fields):
        self.calls.append(("update", collection, (doc_id, dict(fields))))
        self._check(collection)
        doc = self.get(collection, doc_id)
        if doc is None:
            raise StoreError(FailureKind.NOT_FOUND, f"No document to update: {collection}/{doc_id}")
        doc.update(self._resolve(fields))
        self._notify(collection)

    async def delete(self, collection, doc_id):
        self.calls.append(("delete", collection, doc_id))
        self._check(collection)
        if self.get(collection, doc_id) is None:
            raise StoreError(FailureKind.NOT_FOUND, f"No document to delete: {collection}/{doc_id}")
        del self.collections[collection][doc_id]
        self._notify(collection)

    def mutations(self) -> List[Tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] != "fetch"]


class FakeIdentityProvider(IdentityProvider):
    def __init__(self, accounts: Optional[Dict[str, Tuple[str, Identity, bool]]] = None):
        self.accounts = accounts or {}
        self.current: Optional[Identity] = None
        self.listeners: List[Callable] = []
        self.sign_out_calls = 0

    def add(self, identity: Identity, password: str = "secret123", disabled: bool = False) -> Identity:
        self.accounts[identity.email] = (password, identity, disabled)
        return identity

    def restore(self, identity: Optional[Identity]) -> None:
        """Simulate a persisted provider session appearing (or vanishing)."""
        self._set(identity)

    async def sign_in(self, email, password):
        if email not in self.accounts:
            raise AuthenticationError(AuthFailure.USER_NOT_FOUND)
        expected, identity, disabled = self.accounts[email]
        if password != expected:
            raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS)
        if disabled:
            raise AuthenticationError(AuthFailure.USER_DISABLED)
        self._set(identity)
        return identity

    async def sign_out(self):
        self.sign_out_calls += 1
        self._set(None)

    def on_auth_state_change(self, callback):
        self.listeners.append(callback)
        callback(self.current)

        def dispose():
            if callback in self.listeners:
                self.listeners.remove(callback)

        return dispose

    def _set(self, identity):
        self.current = identity
        for listener in list(self.listeners):
            listener(identity)


ALICE = Identity(uid="u-alice", email="alice@club.edu", token="t1", display_name="Alice Reyes", role="student")
OLIVER = Identity(uid="u-oliver", email="oliver@club.edu", token="t2", display_name="Oliver Santos", role="officer")
ADA = Identity(uid="u-ada", email="ada@club.edu", token="t3", display_name="Ada Cruz", role="admin")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return FakeDocumentStore(clock)


@pytest.fixture
def provider():
    p = FakeIdentityProvider()
    for identity in (ALICE, OLIVER, ADA):
        p.add(identity)
    return p


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def session(provider, storage, clock):
    s = SessionStore(provider, storage, clock=clock)
    s.start()
    yield s
    s.close()


@pytest.fixture
def gateway(store, session):
    return MutationGateway(store, session)


@pytest.fixture
def sign_in(session):
    async def _sign_in(identity: Identity) -> Identity:
        return await session.sign_in(identity.email, "secret123")

    return _sign_in
