"""
Session store: the process-wide signed-in identity.

The identity provider owns credentials and tokens. On top of it the session store
enforces a local inactivity timeout: the time of the last tracked interaction is
kept in client-local storage and checked on a fixed interval and on every tracked
interaction. When it has elapsed the session is signed out regardless of the
provider's own token lifetime.
"""
import asyncio
import hashlib
import json
import logging
import os
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

from pymongo.errors import PyMongoError

from errors import AuthenticationError, AuthFailure, ConfigurationError
from schemas import USERS, Identity, SignInBody

logger = logging.getLogger(__name__)

SESSION_TIMEOUT = timedelta(days=int(os.getenv("SESSION_TIMEOUT_DAYS", "3")))
ACTIVITY_POLL_SECONDS = float(os.getenv("ACTIVITY_POLL_SECONDS", "60"))
CONSOLE_STATE_FILE = os.getenv("CONSOLE_STATE_FILE", str(Path.home() / ".club_console" / "state.json"))

LAST_ACTIVITY_KEY = "lastActivity"
TRACKED_EVENTS = frozenset({"pointerdown", "keydown", "scroll", "touchstart", "click"})

AuthListener = Callable[[Optional[Identity]], None]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _hash_password(password: str) -> str:
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


def _spawn(coro) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(coro)
        return
    task = loop.create_task(coro)
    _background.add(task)
    task.add_done_callback(_background.discard)


_background = set()


# Client-local storage

class MemoryStorage:
    def __init__(self, items: Optional[Dict[str, str]] = None):
        self._items: Dict[str, str] = dict(items or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class LocalStorage(MemoryStorage):
    """String key/value pairs persisted as a JSON file."""

    def __init__(self, path: str = CONSOLE_STATE_FILE):
        self.path = Path(path)
        items: Dict[str, str] = {}
        if self.path.exists():
            try:
                items = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
        super().__init__(items)

    def set_item(self, key: str, value: str) -> None:
        super().set_item(key, value)
        self._flush()

    def remove_item(self, key: str) -> None:
        super().remove_item(key)
        self._flush()

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self._items), encoding="utf-8")


# Identity provider

class IdentityProvider(ABC):
    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Identity:
        ...

    @abstractmethod
    async def sign_out(self) -> None:
        ...

    @abstractmethod
    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        """Deliver the current identity now and on every change; returns a disposer."""


class MongoIdentityProvider(IdentityProvider):
    """Email/password accounts on the users collection with token sessions."""

    def __init__(self, database=None, session_days: int = 7):
        if database is None:
            from database import db as database
        if database is None:
            raise ConfigurationError("DATABASE_URL and DATABASE_NAME must be set")
        self._db = database
        self._session_days = session_days
        self._current: Optional[Identity] = None
        self._listeners: List[AuthListener] = []

    def _login(self, email: str, password: str) -> Identity:
        try:
            user = self._db[USERS].find_one({"email": str(email).lower()})
            if not user:
                raise AuthenticationError(AuthFailure.USER_NOT_FOUND)
            if user.get("passwordHash") != _hash_password(password):
                raise AuthenticationError(AuthFailure.INVALID_CREDENTIALS)
            if not user.get("isActive", True):
                raise AuthenticationError(AuthFailure.USER_DISABLED)
            token = secrets.token_urlsafe(32)
            now = _now()
            self._db["session"].insert_one({
                "userId": user["_id"],
                "token": token,
                "createdAt": now,
                "expiresAt": now + timedelta(days=self._session_days),
            })
        except PyMongoError as exc:
            raise AuthenticationError(AuthFailure.UNKNOWN, str(exc)) from exc
        name = f"{user.get('firstName', '')} {user.get('lastName', '')}".strip()
        return Identity(
            uid=str(user["_id"]),
            email=user.get("email", email),
            token=token,
            display_name=name or user.get("email", email),
            role=user.get("role") or "student",
        )

    def _logout(self, token: str) -> None:
        try:
            self._db["session"].delete_one({"token": token})
        except PyMongoError as exc:
            logger.warning("Failed to remove session: %s", exc)

    async def sign_in(self, email: str, password: str) -> Identity:
        identity = await asyncio.to_thread(self._login, email, password)
        self._set(identity)
        return identity

    async def sign_out(self) -> None:
        if self._current is not None:
            await asyncio.to_thread(self._logout, self._current.token)
        self._set(None)

    def on_auth_state_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)
        callback(self._current)

        def dispose():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return dispose

    def _set(self, identity: Optional[Identity]) -> None:
        self._current = identity
        for listener in list(self._listeners):
            listener(identity)


class SessionStore:
    def __init__(
        self,
        provider: IdentityProvider,
        storage: Optional[MemoryStorage] = None,
        timeout: timedelta = SESSION_TIMEOUT,
        poll_interval: float = ACTIVITY_POLL_SECONDS,
        clock: Callable[[], datetime] = _now,
    ):
        self.provider = provider
        self.storage = storage if storage is not None else MemoryStorage()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._current: Optional[Identity] = None
        self._listeners: List[AuthListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._watch: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.provider.on_auth_state_change(self._on_auth_state)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.stop_inactivity_watch()

    def on_change(self, callback: AuthListener) -> Callable[[], None]:
        self._listeners.append(callback)

        def dispose():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return dispose

    async def sign_in(self, email: str, password: str) -> Identity:
        body = SignInBody(email=email, password=password)
        # a new session starts a new inactivity window
        self.storage.remove_item(LAST_ACTIVITY_KEY)
        identity = await self.provider.sign_in(str(body.email), body.password)
        self._touch()
        return identity

    async def sign_out(self) -> None:
        await self.provider.sign_out()
        self.storage.remove_item(LAST_ACTIVITY_KEY)
        self._replace(None)

    async def record_interaction(self, event: str) -> None:
        if event not in TRACKED_EVENTS or self._current is None:
            return
        if await self.check_inactivity():
            return
        self._touch()

    async def check_inactivity(self) -> bool:
        """Sign out if the inactivity window has elapsed. Returns True when it did."""
        if self._current is None or not self._expired():
            return False
        logger.info("Session for %s expired after inactivity", self._current.email)
        self.storage.remove_item(LAST_ACTIVITY_KEY)
        self._replace(None)
        await self.provider.sign_out()
        return True

    def start_inactivity_watch(self) -> asyncio.Task:
        if self._watch is None or self._watch.done():
            self._watch = asyncio.get_running_loop().create_task(self._watch_loop())
        return self._watch

    def stop_inactivity_watch(self) -> None:
        if self._watch is not None:
            self._watch.cancel()
            self._watch = None

    async def _watch_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.check_inactivity()

    def _expired(self) -> bool:
        raw = self.storage.get_item(LAST_ACTIVITY_KEY)
        if raw is None:
            return False
        try:
            last = int(raw)
        except ValueError:
            return False
        elapsed_ms = self._millis() - last
        return elapsed_ms > self.timeout.total_seconds() * 1000

    def _millis(self) -> int:
        return int(self._clock().timestamp() * 1000)

    def _touch(self) -> None:
        self.storage.set_item(LAST_ACTIVITY_KEY, str(self._millis()))

    def _on_auth_state(self, identity: Optional[Identity]) -> None:
        if identity is not None:
            if self._expired():
                logger.info("Stored session for %s is past the inactivity timeout", identity.email)
                self.storage.remove_item(LAST_ACTIVITY_KEY)
                self._replace(None)
                _spawn(self.provider.sign_out())
                return
            self._touch()
        elif self._current is not None:
            # a provider reports None before restoring a persisted session; keep the stamp until then
            self.storage.remove_item(LAST_ACTIVITY_KEY)
        self._replace(identity)

    def _replace(self, identity: Optional[Identity]) -> None:
        if identity == self._current:
            return
        self._current = identity
        for listener in list(self._listeners):
            listener(identity)
