"""
Live query subscriptions.

A LiveQuery turns one collection query into a subscribe/dispose lifecycle that
hands the consumer the full ordered result set on attach and after every change.
Failures are terminal: the error callback fires once and the subscription is
released. Retrying means starting a new LiveQuery.
"""
import logging
from enum import Enum
from typing import Callable, Optional

from database import DocumentStore, QuerySpec, Snapshot
from errors import FailureKind, StoreError

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class LiveQuery:
    def __init__(
        self,
        store: DocumentStore,
        query: QuerySpec,
        on_snapshot: Callable[[Snapshot], None],
        on_error: Optional[Callable[[StoreError], None]] = None,
    ):
        self.store = store
        self.query = query
        self.state = SubscriptionState.LOADING
        self.snapshot: Snapshot = []
        self.error: Optional[StoreError] = None
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._release = None
        self._started = False
        self._disposed = False

    @property
    def active(self) -> bool:
        return self._started and not self._disposed and self.state is not SubscriptionState.ERROR

    def start(self) -> "LiveQuery":
        if self._started or self._disposed:
            return self
        self._started = True
        try:
            release = self.store.subscribe(self.query, self._deliver, self._fail)
        except StoreError as exc:
            self._fail(exc)
            return self
        # the store may have failed, or we may have been disposed, while subscribing
        if self._disposed or self.state is SubscriptionState.ERROR:
            release()
        else:
            self._release = release
        return self

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._detach()

    def _detach(self) -> None:
        release, self._release = self._release, None
        if release is not None:
            release()

    def _deliver(self, docs: Snapshot) -> None:
        if self._disposed or self.state is SubscriptionState.ERROR:
            return
        self.snapshot = list(docs)
        self.state = SubscriptionState.READY
        self._on_snapshot(list(self.snapshot))

    def _fail(self, exc: Exception) -> None:
        if self._disposed or self.state is SubscriptionState.ERROR:
            return
        if not isinstance(exc, StoreError):
            exc = StoreError(FailureKind.UNKNOWN, str(exc))
        self.state = SubscriptionState.ERROR
        self.error = exc
        logger.warning("Subscription to %s failed (%s): %s", self.query.collection, exc.kind.value, exc.message)
        self._detach()
        if self._on_error is not None:
            self._on_error(exc)


def subscribe(
    store: DocumentStore,
    query: QuerySpec,
    on_snapshot: Callable[[Snapshot], None],
    on_error: Optional[Callable[[StoreError], None]] = None,
) -> Callable[[], None]:
    """Start a live query and return its disposer."""
    return LiveQuery(store, query, on_snapshot, on_error).start().dispose


async def fetch_once(store: DocumentStore, query: QuerySpec) -> Snapshot:
    return await store.fetch(query)
