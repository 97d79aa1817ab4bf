"""
Dashboard: live counts of the main collections and a recent-activity feed.

The feed is a fixed two-stream aggregator (recent tasks and recent announcements)
set up front, so no subscription ever opens another one.
"""
import logging
import os
from typing import Callable, Dict, List, Optional, Tuple

from aggregator import ActivityEntry, MultiStreamAggregator, StreamSource
from database import DocumentStore, Filter, QuerySpec
from errors import StoreError
from live_query import LiveQuery, SubscriptionState
from schemas import ANNOUNCEMENTS, REPORTS, TASKS, USERS

logger = logging.getLogger(__name__)

RECENT_ACTIVITY_LIMIT = int(os.getenv("RECENT_ACTIVITY_LIMIT", "5"))

COUNT_QUERIES: Dict[str, QuerySpec] = {
    "tasks": QuerySpec(collection=TASKS),
    "announcements": QuerySpec(collection=ANNOUNCEMENTS),
    "reports": QuerySpec(collection=REPORTS, filters=(Filter(field="status", value="Pending"),)),
    "users": QuerySpec(collection=USERS),
}

STAT_TITLES = (
    ("tasks", "Active Tasks"),
    ("announcements", "Announcements"),
    ("reports", "Pending Reports"),
    ("users", "Total Users"),
)


def recent_activity_sources(limit: int = RECENT_ACTIVITY_LIMIT) -> List[StreamSource]:
    # each stream fetches `limit` so the merged cut is the true newest `limit`
    return [
        StreamSource("task", QuerySpec(collection=TASKS, order_by="createdAt", limit=limit)),
        StreamSource("announcement", QuerySpec(collection=ANNOUNCEMENTS, order_by="createdAt", limit=limit)),
    ]


class DashboardScreen:
    def __init__(self, store: DocumentStore, session=None, recent_limit: int = RECENT_ACTIVITY_LIMIT):
        self.store = store
        self.session = session
        self.recent_limit = recent_limit
        self.state = SubscriptionState.LOADING
        self.counts: Dict[str, Optional[int]] = {name: None for name in COUNT_QUERIES}
        self.recent: List[ActivityEntry] = []
        self.errors: Dict[str, StoreError] = {}
        self.error_message = ""
        self._counters: List[LiveQuery] = []
        self._activity: Optional[MultiStreamAggregator] = None
        self._listeners: List[Callable[["DashboardScreen"], None]] = []
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    def open(self) -> "DashboardScreen":
        if not self._closed:
            return self
        self._closed = False
        self._subscribe()
        return self

    def close(self) -> None:
        self._closed = True
        self._release()

    def retry(self) -> None:
        if self._closed:
            return
        self._release()
        self._subscribe()
        self._changed()

    def on_change(self, callback: Callable[["DashboardScreen"], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def dispose():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return dispose

    def stat_cards(self) -> List[Tuple[str, Optional[int]]]:
        return [(title, self.counts[name]) for name, title in STAT_TITLES]

    def _subscribe(self) -> None:
        self.state = SubscriptionState.LOADING
        self.counts = {name: None for name in COUNT_QUERIES}
        self.recent = []
        self.errors = {}
        self.error_message = ""
        if self.session is not None and self.session.current is None:
            self.state = SubscriptionState.ERROR
            self.error_message = "Not authenticated."
            return
        for name, query in COUNT_QUERIES.items():
            live = LiveQuery(
                self.store,
                query,
                lambda docs, name=name: self._count(name, docs),
                lambda exc, name=name: self._fail(name, exc),
            )
            self._counters.append(live)
            live.start()
        self._activity = MultiStreamAggregator(
            self.store,
            recent_activity_sources(self.recent_limit),
            self._recent,
            limit=self.recent_limit,
            on_error=lambda label, exc: self._fail(f"recent-{label}", exc),
        ).start()

    def _release(self) -> None:
        counters, self._counters = self._counters, []
        for live in counters:
            live.dispose()
        activity, self._activity = self._activity, None
        if activity is not None:
            activity.dispose()

    def _settle(self) -> None:
        # ready once every counter has either delivered or failed
        if self.state is SubscriptionState.LOADING and all(
            self.counts[name] is not None or name in self.errors for name in COUNT_QUERIES
        ):
            self.state = SubscriptionState.READY
            if all(name in self.errors for name in COUNT_QUERIES):
                self.state = SubscriptionState.ERROR
                self.error_message = "Failed to load dashboard."

    def _count(self, name: str, docs) -> None:
        self.counts[name] = len(docs)
        self._settle()
        self._changed()

    def _recent(self, entries: List[ActivityEntry]) -> None:
        self.recent = entries
        self._changed()

    def _fail(self, name: str, exc: StoreError) -> None:
        self.errors[name] = exc
        logger.warning("Dashboard stream %s failed: %s", name, exc.message)
        self._settle()
        self._changed()

    def _changed(self) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            listener(self)
