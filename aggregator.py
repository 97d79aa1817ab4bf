"""
Merging several live queries into one recent-activity feed.

Each source keeps its own LiveQuery and its own latest snapshot. Whenever any
source delivers, the latest snapshots are concatenated, sorted newest first by a
shared timestamp field and cut to the configured length. A source that has not
delivered yet counts as empty.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Sequence

from database import DocumentStore, QuerySpec, Snapshot
from errors import StoreError
from live_query import LiveQuery

logger = logging.getLogger(__name__)


class StreamSource(NamedTuple):
    label: str
    query: QuerySpec


class ActivityEntry(NamedTuple):
    source: str
    id: str
    document: Dict[str, Any]

    @property
    def title(self) -> str:
        return self.document.get("title") or ""


def _sort_key(value: Any):
    if isinstance(value, datetime):
        return (True, value.timestamp())
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (True, float(value))
    return (False, 0.0)


def merge_streams(
    latest: Dict[str, Snapshot],
    labels: Sequence[str],
    sort_field: str = "createdAt",
    limit: Optional[int] = None,
) -> List[ActivityEntry]:
    """Concatenate in `labels` order, sort descending by `sort_field`, truncate."""
    entries = [
        ActivityEntry(label, str(doc.get("id", "")), doc)
        for label in labels
        for doc in latest.get(label, ())
    ]
    # documents without a timestamp sort after every dated one
    entries.sort(key=lambda e: _sort_key(e.document.get(sort_field)), reverse=True)
    if limit is not None:
        entries = entries[:limit]
    return entries


class MultiStreamAggregator:
    def __init__(
        self,
        store: DocumentStore,
        sources: Sequence[StreamSource],
        on_update: Callable[[List[ActivityEntry]], None],
        sort_field: str = "createdAt",
        limit: Optional[int] = 5,
        on_error: Optional[Callable[[str, StoreError], None]] = None,
    ):
        labels = [s.label for s in sources]
        if len(set(labels)) != len(labels):
            raise ValueError(f"Stream labels must be unique: {labels}")
        self.store = store
        self.sources = list(sources)
        self.sort_field = sort_field
        self.limit = limit
        self.merged: List[ActivityEntry] = []
        self.errors: Dict[str, StoreError] = {}
        self._latest: Dict[str, Snapshot] = {}
        self._queries: List[LiveQuery] = []
        self._on_update = on_update
        self._on_error = on_error
        self._disposed = False

    def start(self) -> "MultiStreamAggregator":
        if self._queries or self._disposed:
            return self
        for source in self.sources:
            live = LiveQuery(
                self.store,
                source.query,
                lambda docs, label=source.label: self._receive(label, docs),
                lambda exc, label=source.label: self._fail(label, exc),
            )
            self._queries.append(live)
            live.start()
        return self

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for live in self._queries:
            live.dispose()

    def _receive(self, label: str, docs: Snapshot) -> None:
        if self._disposed:
            return
        self._latest[label] = docs
        self.merged = merge_streams(self._latest, [s.label for s in self.sources], self.sort_field, self.limit)
        self._on_update(list(self.merged))

    def _fail(self, label: str, exc: StoreError) -> None:
        if self._disposed:
            return
        self.errors[label] = exc
        logger.warning("Activity stream %r stopped: %s", label, exc.message)
        if self._on_error is not None:
            self._on_error(label, exc)
