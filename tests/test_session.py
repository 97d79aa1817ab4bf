"""
Unit tests for the session store
Tests for: sign-in errors, inactivity timeout, client-local storage
"""
import asyncio
import json
from datetime import timedelta

import pytest
from pydantic import ValidationError

from errors import AuthenticationError, AuthFailure
from session import LAST_ACTIVITY_KEY, LocalStorage, MemoryStorage, MongoIdentityProvider, SessionStore, _hash_password

from conftest import ADA, ALICE


class TestSignIn:
    async def test_sign_in_sets_identity_and_activity(self, session, storage, clock):
        changes = []
        session.on_change(changes.append)

        identity = await session.sign_in("alice@club.edu", "secret123")

        assert identity == ALICE
        assert session.current == ALICE
        assert changes == [ALICE]
        assert storage.get_item(LAST_ACTIVITY_KEY) == str(int(clock.now.timestamp() * 1000))

    async def test_wrong_password(self, session):
        with pytest.raises(AuthenticationError) as exc_info:
            await session.sign_in("alice@club.edu", "wrong")

        assert exc_info.value.kind is AuthFailure.INVALID_CREDENTIALS
        assert exc_info.value.user_message == "Invalid email or password"
        assert session.current is None

    async def test_unknown_account(self, session):
        with pytest.raises(AuthenticationError) as exc_info:
            await session.sign_in("nobody@club.edu", "secret123")
        assert exc_info.value.user_message == "No account found with this email"

    async def test_disabled_account(self, session, provider):
        provider.add(ADA.model_copy(update={"email": "gone@club.edu"}), disabled=True)
        with pytest.raises(AuthenticationError) as exc_info:
            await session.sign_in("gone@club.edu", "secret123")
        assert exc_info.value.user_message == "This account has been disabled"

    async def test_malformed_email_never_reaches_provider(self, session, provider):
        with pytest.raises(ValidationError):
            await session.sign_in("alice", "secret123")
        assert provider.current is None

    async def test_sign_out_clears_activity(self, session, storage):
        await session.sign_in("alice@club.edu", "secret123")
        await session.sign_out()

        assert session.current is None
        assert storage.get_item(LAST_ACTIVITY_KEY) is None

    async def test_new_sign_in_starts_fresh_window(self, session, storage, clock):
        storage.set_item(LAST_ACTIVITY_KEY, "0")
        await session.sign_in("alice@club.edu", "secret123")
        assert session.current == ALICE


class TestInactivity:
    async def test_expires_after_timeout(self, session, clock, provider):
        await session.sign_in("alice@club.edu", "secret123")
        clock.advance(days=3, seconds=1)

        assert await session.check_inactivity()
        assert session.current is None
        assert provider.current is None

    async def test_exact_timeout_is_not_expired(self, session, clock):
        await session.sign_in("alice@club.edu", "secret123")
        clock.advance(days=3)

        assert not await session.check_inactivity()
        assert session.current == ALICE

    async def test_tracked_interaction_extends_window(self, session, clock):
        await session.sign_in("alice@club.edu", "secret123")
        clock.advance(days=2)
        await session.record_interaction("click")
        clock.advance(days=2)

        assert not await session.check_inactivity()

    async def test_untracked_events_do_not_count(self, session, clock):
        await session.sign_in("alice@club.edu", "secret123")
        clock.advance(days=2)
        await session.record_interaction("mousemove")
        clock.advance(days=2)

        assert await session.check_inactivity()

    async def test_interaction_after_timeout_signs_out(self, session, clock):
        await session.sign_in("alice@club.edu", "secret123")
        clock.advance(days=4)
        await session.record_interaction("keydown")

        assert session.current is None

    async def test_restored_session_past_timeout_is_signed_out(self, provider, storage, clock):
        storage.set_item(LAST_ACTIVITY_KEY, str(int((clock.now - timedelta(days=5)).timestamp() * 1000)))
        session = SessionStore(provider, storage, clock=clock)
        session.start()
        changes = []
        session.on_change(changes.append)

        provider.restore(ALICE)
        await asyncio.sleep(0)

        assert session.current is None
        assert changes == []
        assert provider.sign_out_calls == 1
        session.close()

    async def test_initial_signed_out_event_keeps_stored_activity(self, provider, storage, clock):
        stamp = str(int((clock.now - timedelta(days=5)).timestamp() * 1000))
        storage.set_item(LAST_ACTIVITY_KEY, stamp)
        session = SessionStore(provider, storage, clock=clock)
        session.start()

        assert session.current is None
        assert storage.get_item(LAST_ACTIVITY_KEY) == stamp
        session.close()

    async def test_provider_sign_out_after_sign_in_clears_activity(self, session, provider, storage):
        await session.sign_in("alice@club.edu", "secret123")
        await provider.sign_out()

        assert storage.get_item(LAST_ACTIVITY_KEY) is None

    async def test_restored_session_within_timeout(self, provider, storage, clock):
        storage.set_item(LAST_ACTIVITY_KEY, str(int((clock.now - timedelta(days=1)).timestamp() * 1000)))
        session = SessionStore(provider, storage, clock=clock)
        session.start()

        provider.restore(ALICE)

        assert session.current == ALICE
        session.close()

    async def test_watch_loop_polls(self, provider, storage, clock):
        session = SessionStore(provider, storage, poll_interval=0.01, clock=clock)
        session.start()
        await session.sign_in("alice@club.edu", "secret123")
        session.start_inactivity_watch()
        clock.advance(days=3, minutes=1)

        for _ in range(50):
            if session.current is None:
                break
            await asyncio.sleep(0.01)

        assert session.current is None
        session.close()

    async def test_provider_sign_out_clears_session(self, session, provider):
        await session.sign_in("alice@club.edu", "secret123")
        await provider.sign_out()
        assert session.current is None


class TestStorage:
    def test_memory_storage(self):
        storage = MemoryStorage({"a": "1"})
        storage.set_item("b", "2")
        storage.remove_item("a")
        storage.remove_item("missing")

        assert storage.get_item("a") is None
        assert storage.get_item("b") == "2"

    def test_local_storage_persists(self, tmp_path):
        path = tmp_path / "console" / "state.json"
        LocalStorage(str(path)).set_item(LAST_ACTIVITY_KEY, "1700000000000")

        assert json.loads(path.read_text()) == {LAST_ACTIVITY_KEY: "1700000000000"}
        assert LocalStorage(str(path)).get_item(LAST_ACTIVITY_KEY) == "1700000000000"

    def test_local_storage_ignores_corrupt_file(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json")

        assert LocalStorage(str(path)).get_item(LAST_ACTIVITY_KEY) is None


def test_password_hash_is_sha256_hex():
    digest = _hash_password("secret123")
    assert len(digest) == 64
    assert digest == _hash_password("secret123")


class FakeCollection:
    def __init__(self, docs=None):
        self.docs = list(docs or [])
        self.inserted = []
        self.deleted = []

    def find_one(self, query):
        for doc in self.docs:
            if all(doc.get(k) == v for k, v in query.items()):
                return doc
        return None

    def insert_one(self, doc):
        self.inserted.append(doc)

    def delete_one(self, query):
        self.deleted.append(query)


class TestMongoIdentityProvider:
    def _db(self, **user):
        account = {"_id": "u-alice", "email": "alice@club.edu", "passwordHash": _hash_password("secret123"),
                   "firstName": "Alice", "lastName": "Reyes", "role": "officer"}
        account.update(user)
        return {"users": FakeCollection([account]), "session": FakeCollection()}

    async def test_login_creates_token_session(self):
        db = self._db()
        provider = MongoIdentityProvider(db)
        seen = []
        provider.on_auth_state_change(seen.append)

        identity = await provider.sign_in("Alice@club.edu", "secret123")

        assert identity.uid == "u-alice"
        assert identity.display_name == "Alice Reyes"
        assert identity.role == "officer"
        assert db["session"].inserted[0]["token"] == identity.token
        assert db["session"].inserted[0]["expiresAt"] - db["session"].inserted[0]["createdAt"] == timedelta(days=7)
        assert seen == [None, identity]

    async def test_login_failures(self):
        provider = MongoIdentityProvider(self._db(isActive=False))

        with pytest.raises(AuthenticationError) as exc_info:
            await provider.sign_in("alice@club.edu", "nope")
        assert exc_info.value.kind is AuthFailure.INVALID_CREDENTIALS

        with pytest.raises(AuthenticationError) as exc_info:
            await provider.sign_in("alice@club.edu", "secret123")
        assert exc_info.value.kind is AuthFailure.USER_DISABLED

        with pytest.raises(AuthenticationError) as exc_info:
            await provider.sign_in("bob@club.edu", "secret123")
        assert exc_info.value.kind is AuthFailure.USER_NOT_FOUND

    async def test_sign_out_removes_session(self):
        db = self._db()
        provider = MongoIdentityProvider(db)
        identity = await provider.sign_in("alice@club.edu", "secret123")

        await provider.sign_out()

        assert db["session"].deleted == [{"token": identity.token}]
