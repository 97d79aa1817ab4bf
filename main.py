import asyncio
import logging
from typing import Optional, Union

from dashboard import DashboardScreen
from database import DocumentStore, MongoDocumentStore
from errors import NotAllowedError
from logging_config import setup_logging
from mutations import MutationGateway
from schemas import Identity
from screens import SCREENS, ListScreen
from session import IdentityProvider, LocalStorage, MemoryStorage, MongoIdentityProvider, SessionStore

logger = logging.getLogger(__name__)

Screen = Union[ListScreen, DashboardScreen]


class ConsoleApp:
    """
    Student Organization Console shell.

    Holds the one session store and mutation gateway, and at most one open screen.
    Every screen subscription is gated on the session: navigating requires an
    identity, and losing it (sign-out or inactivity) closes the open screen.
    """

    def __init__(self, store: DocumentStore, provider: IdentityProvider, storage: Optional[MemoryStorage] = None, **session_options):
        self.store = store
        self.session = SessionStore(provider, storage, **session_options)
        self.gateway = MutationGateway(store, self.session)
        self.screen: Optional[Screen] = None
        self.screen_name: Optional[str] = None
        self._unsubscribe = self.session.on_change(self._on_identity)

    async def start(self) -> None:
        self.session.start()
        self.session.start_inactivity_watch()
        logger.info("Console started")

    async def shutdown(self) -> None:
        self.close_screen()
        self._unsubscribe()
        self.session.close()
        logger.info("Console stopped")

    def navigate(self, name: str) -> Screen:
        if self.session.current is None:
            raise NotAllowedError("Sign in to open the console.")
        if name == self.screen_name and self.screen is not None:
            return self.screen
        if name != "dashboard" and name not in SCREENS:
            raise KeyError(f"Unknown screen: {name}")
        self.close_screen()
        if name == "dashboard":
            screen: Screen = DashboardScreen(self.store, self.session)
        else:
            screen = SCREENS[name](self.store, self.gateway, self.session)
        self.screen, self.screen_name = screen, name
        return screen.open()

    def close_screen(self) -> None:
        screen, self.screen, self.screen_name = self.screen, None, None
        if screen is not None:
            screen.close()

    def _on_identity(self, identity: Optional[Identity]) -> None:
        if identity is None:
            self.close_screen()
        else:
            logger.info("Signed in as %s (%s)", identity.email, identity.role)


def build_console() -> ConsoleApp:
    """MongoDB-backed console from DATABASE_URL / DATABASE_NAME."""
    store = MongoDocumentStore()
    provider = MongoIdentityProvider()
    return ConsoleApp(store, provider, LocalStorage())


async def _serve() -> None:
    app = build_console()
    await app.start()
    try:
        await asyncio.Event().wait()
    finally:
        await app.shutdown()


if __name__ == "__main__":
    setup_logging()
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        pass
