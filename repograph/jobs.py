"""
Reconciliation jobs.

Batch processes that heal whatever the hook path missed (crashes, bulk
imports, documents written before a derived field existed):

- ensure_filterable_properties / ensure_sortable_properties: backfill
- decrease_popularity / decrease_popularity_timer: hourly hit-counter decay
- ensure_search_index: push every eligible document to the search service

Every job is idempotent and safe to run concurrently with live writes and
with each other: documents are recomputed from the store and only changed
fields are written.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .derived import compute_filterable, compute_sortable
from .errors import SearchServiceError
from .propagation import PUBLISHED_ENTITY_FILTER, index_document, write_changed
from .protocol import (
    DocumentStoreProtocol,
    SchedulerProtocol,
    SearchServiceProtocol,
    TaskQueueProtocol,
    TimerHandle,
)
from .resolver import DEFAULT_RESOLVE_DEPTH, Resolver
from .types import (
    DERIVED_KINDS,
    FILTERABLE_FIELDS,
    HITS,
    SORTABLE_FIELDS,
    DocumentKind,
    parse_document,
)

logger = logging.getLogger(__name__)

HOUR_SECONDS = 3600


@dataclass
class BackfillStats:
    """Counters for one backfill run."""
    scanned: int = 0
    updated: int = 0
    failed: int = 0

    def __add__(self, other: "BackfillStats") -> "BackfillStats":
        return BackfillStats(
            scanned=self.scanned + other.scanned,
            updated=self.updated + other.updated,
            failed=self.failed + other.failed,
        )


def missing_any(fields: tuple[str, ...]) -> dict:
    """Filter matching documents where any of the fields is missing or null."""
    return {"$or": [{name: None} for name in fields]}


def _backfill(
    store: DocumentStoreProtocol,
    label: str,
    fields: tuple[str, ...],
    compute: Callable[[DocumentKind, dict], dict[str, Any]],
    *,
    full: bool,
    batch_size: int,
) -> BackfillStats:
    total = BackfillStats()
    query = {} if full else missing_any(fields)
    for kind in DERIVED_KINDS:
        collection = store.collection(kind)
        stats = BackfillStats()
        for raw in collection.find(query, batch_size=batch_size):
            stats.scanned += 1
            try:
                if write_changed(collection, raw, compute(kind, raw)):
                    stats.updated += 1
            except Exception as e:
                stats.failed += 1
                logger.warning("Failed to compute %s properties of %s %s: %s",
                               label, kind.value, raw.get("_id"), e)
                logger.debug("Backfill failure", exc_info=True)
        if stats.updated or stats.failed:
            logger.info("Ensured %s properties of %d %s document(s) (%d updated, %d failed)",
                        label, stats.scanned, kind.value, stats.updated, stats.failed)
        total = total + stats
    return total


def ensure_filterable_properties(
    store: DocumentStoreProtocol,
    resolver: Resolver,
    *,
    full: bool = False,
    batch_size: int = 100,
) -> BackfillStats:
    """
    Compute licences, media types and downloadability where missing.

    Args:
        store: Document store
        resolver: Resolver over the same store
        full: Re-verify every document, not just those missing a field
        batch_size: Cursor page size

    Returns:
        Counts of scanned, updated and failed documents
    """
    def compute(kind: DocumentKind, raw: dict) -> dict[str, Any]:
        resolved = resolver.expand(raw, kind, DEFAULT_RESOLVE_DEPTH)
        return compute_filterable(parse_document(kind, resolved)).to_fields()

    return _backfill(store, "filterable", FILTERABLE_FIELDS, compute,
                     full=full, batch_size=batch_size)


def ensure_sortable_properties(
    store: DocumentStoreProtocol,
    *,
    full: bool = False,
    batch_size: int = 100,
) -> BackfillStats:
    """Compute creation time, hits, annotation count and name where missing."""
    def compute(kind: DocumentKind, raw: dict) -> dict[str, Any]:
        return compute_sortable(parse_document(kind, raw)).to_fields()

    return _backfill(store, "sortable", SORTABLE_FIELDS, compute,
                     full=full, batch_size=batch_size)


def backfill_status(store: DocumentStoreProtocol) -> dict[str, dict[str, int]]:
    """Per kind: document count and documents still missing derived fields."""
    missing = missing_any(FILTERABLE_FIELDS + SORTABLE_FIELDS)
    status = {}
    for kind in DERIVED_KINDS:
        collection = store.collection(kind)
        status[kind.value] = {
            "documents": collection.count(),
            "missing_derived": collection.count(missing),
        }
    return status


# ---------------------------------------------------------------------------
# Popularity decay
# ---------------------------------------------------------------------------


def decrease_popularity(store: DocumentStoreProtocol, amount: int = 1) -> int:
    """
    Decrement every positive hit counter by `amount`, never below zero.

    One bulk update per collection. Returns the number of documents touched.
    """
    if amount < 1:
        raise ValueError("amount must be >= 1")
    touched = 0
    for kind in DERIVED_KINDS:
        try:
            touched += store.collection(kind).update_many(
                {HITS: {"$gt": 0}},
                {"$inc": {HITS: -amount}, "$max": {HITS: 0}},
            )
        except Exception as e:
            logger.warning("Failed to decrease popularity of %s documents: %s", kind.value, e)
    if touched:
        logger.info("Decreased popularity of %d document(s)", touched)
    return touched


def seconds_until_next_hour(now: datetime) -> float:
    """Seconds from `now` to the next wall-clock hour boundary (in (0, 3600])."""
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return (next_hour - now).total_seconds()


class PopularityDecayTimer:
    """Handle for the scheduled decay: first run on the hour, then every interval."""

    def __init__(self, scheduler: SchedulerProtocol, run: Callable[[], Any], interval: float):
        self._scheduler = scheduler
        self._run = run
        self._interval = interval
        self._first: Optional[TimerHandle] = None
        self._repeating: Optional[TimerHandle] = None
        self._cancelled = False
        # Orders cancel() against arming the repeating timer
        self._lock = threading.Lock()

    def start(self, delay: float) -> "PopularityDecayTimer":
        self._first = self._scheduler.call_later(delay, self._fire_first)
        return self

    def _fire_first(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._repeating = self._scheduler.call_every(self._interval, self._run)
        self._run()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            handles = (self._first, self._repeating)
        for handle in handles:
            if handle is not None:
                handle.cancel()


def decrease_popularity_timer(
    store: DocumentStoreProtocol,
    scheduler: SchedulerProtocol,
    now: Optional[datetime] = None,
    *,
    amount: int = 1,
    interval: float = HOUR_SECONDS,
) -> PopularityDecayTimer:
    """
    Schedule popularity decay on wall-clock hour boundaries.

    The delay to the next hour is measured once; the first run fires there
    and repeats every `interval` seconds after, independent of when the
    process started.

    Args:
        store: Document store
        scheduler: Timer primitives
        now: Current local time (default: now)
        amount: Hits removed per run
        interval: Seconds between runs after the first
    """
    if now is None:
        now = datetime.now().astimezone()
    delay = seconds_until_next_hour(now)
    logger.info("Popularity decay starts in %.0fs, then every %.0fs", delay, interval)
    return PopularityDecayTimer(
        scheduler, lambda: decrease_popularity(store, amount), interval,
    ).start(delay)


# ---------------------------------------------------------------------------
# Search index
# ---------------------------------------------------------------------------


def build_search_index(
    store: DocumentStoreProtocol,
    resolver: Resolver,
    search: SearchServiceProtocol,
    *,
    batch_size: int = 100,
) -> int:
    """Push published Entities and all Compilations. Returns documents indexed."""
    indexed = 0
    start = time.monotonic()
    for raw in store.collection(DocumentKind.ENTITY).find(PUBLISHED_ENTITY_FILTER, batch_size=batch_size):
        if index_document(resolver, search, DocumentKind.ENTITY, raw):
            indexed += 1
    entities_duration = time.monotonic() - start

    start = time.monotonic()
    for raw in store.collection(DocumentKind.COMPILATION).find({}, batch_size=batch_size):
        if index_document(resolver, search, DocumentKind.COMPILATION, raw):
            indexed += 1
    compilations_duration = time.monotonic() - start

    logger.info(
        "Updated search index (%d documents), entities took %.2fs, compilations took %.2fs",
        indexed, entities_duration, compilations_duration,
    )
    return indexed


def ensure_search_index(
    store: DocumentStoreProtocol,
    resolver: Resolver,
    search: SearchServiceProtocol,
    tasks: Optional[TaskQueueProtocol] = None,
    *,
    batch_size: int = 100,
) -> Optional[int]:
    """
    Rebuild the search index.

    An index that already holds data keeps serving while it is refreshed on
    the task queue (returns None). An empty index, or no task queue, is
    built in the foreground (returns the number of documents indexed).
    """
    try:
        has_existing_data = search.has_existing_data()
    except SearchServiceError as e:
        logger.warning("Could not check search index: %s", e)
        has_existing_data = False

    if has_existing_data and tasks is not None:
        logger.info("Existing search index data found, updating index in the background")
        tasks.submit(
            lambda: build_search_index(store, resolver, search, batch_size=batch_size),
            key="search-index", description="build search index",
        )
        return None

    logger.info("Building search index")
    return build_search_index(store, resolver, search, batch_size=batch_size)
