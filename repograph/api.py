"""
Repository facade.

Wires the document store, resolver, hook registry, background task queue,
scheduler and search client together, and exposes the write path (save,
delete, popularity hits) plus the reconciliation job entry points the
surrounding application calls at start-up.

Example:
    repo = Repository()
    repo.startup()
    repo.save(DocumentKind.ENTITY, {"name": "Vase", ...}, actor="alice")
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Callable, Optional

from .config import StoreConfig, get_config_dir, load_or_create_config
from .hooks import AFTER_SAVE, ON_DELETE, HookManager
from .jobs import (
    BackfillStats,
    PopularityDecayTimer,
    backfill_status,
    decrease_popularity,
    decrease_popularity_timer,
    ensure_filterable_properties,
    ensure_search_index,
    ensure_sortable_properties,
)
from .propagation import (
    Propagator,
    SearchIndexer,
    register_propagation_hooks,
    register_search_hooks,
)
from .protocol import (
    DocumentStoreProtocol,
    SchedulerProtocol,
    SearchServiceProtocol,
    TaskQueueProtocol,
)
from .resolver import Resolver
from .search_client import NullSearchService
from .tasks import Scheduler, TaskQueue
from .types import HITS, DocumentKind, to_object_id

logger = logging.getLogger(__name__)


def _anonymize(client_address: str) -> str:
    return hashlib.md5(client_address.encode("utf-8")).hexdigest()


class Repository:
    """
    Content repository with derived-property propagation.

    Derived fields (``__licenses``, ``__hits``, ...) are maintained by hooks
    on every save and healed by the reconciliation jobs.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        doc_store: Optional[DocumentStoreProtocol] = None,
        search_service: Optional[SearchServiceProtocol] = None,
        scheduler: Optional[SchedulerProtocol] = None,
        task_queue: Optional[TaskQueueProtocol] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Open (or create) a repository store.

        Args:
            store_path: Store directory. Uses the default if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            doc_store: Injected document store (skips backend creation).
            search_service: Injected search client.
            scheduler: Injected timer scheduler.
            task_queue: Injected background task queue.
            clock: Monotonic clock for the popularity rate limit.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            config_dir = Path(store_path).resolve() if store_path is not None else get_config_dir()
            self._config = load_or_create_config(config_dir)
        self._store_path = self._config.path

        # --- Persistent operations log ---
        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Backends (injected or factory-created) ---
        if doc_store is not None:
            self._doc_store = doc_store
            self._search = search_service or NullSearchService()
        else:
            from .backend import create_stores
            bundle = create_stores(self._config)
            self._doc_store = bundle.doc_store
            self._search = search_service or bundle.search_service

        self._scheduler = scheduler or Scheduler()
        self._tasks = task_queue or TaskQueue()
        self._resolver = Resolver(self._doc_store, default_depth=self._config.resolve.depth)

        # --- Hooks ---
        self._hooks = HookManager()
        self._propagator = Propagator(self._doc_store, self._resolver, self._tasks)
        register_propagation_hooks(self._hooks, self._propagator)
        self._indexer: Optional[SearchIndexer] = None
        if self.search_enabled:
            self._indexer = SearchIndexer(self._doc_store, self._resolver, self._search, self._tasks)
            register_search_hooks(self._hooks, self._indexer)

        # Popularity rate limit: (kind, id, address hash) -> last counted time,
        # oldest first
        self._clock = clock
        self._last_hit: OrderedDict[tuple[str, str, str], float] = OrderedDict()
        self._hit_lock = threading.Lock()

        self._decay_timer: Optional[PopularityDecayTimer] = None
        self._closed = False

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store_path(self) -> Path:
        return self._store_path

    @property
    def hooks(self) -> HookManager:
        """The hook registry fired by the write path."""
        return self._hooks

    @property
    def resolver(self) -> Resolver:
        return self._resolver

    @property
    def doc_store(self) -> DocumentStoreProtocol:
        return self._doc_store

    @property
    def search_enabled(self) -> bool:
        return not isinstance(self._search, NullSearchService)

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def save(self, kind: DocumentKind, document: dict, actor: Optional[str] = None) -> dict:
        """
        Insert or replace a document, then fire its afterSave hooks.

        Derived (``__``) fields already stored are kept unless the document
        sets them. Hook failures never undo the save.

        Returns:
            The stored document (with ``_id``)
        """
        kind = DocumentKind(kind)
        collection = self._doc_store.collection(kind)
        body = dict(document)
        if "_id" in body:
            doc_id = to_object_id(body)
            body["_id"] = doc_id
            collection.replace_one({"_id": doc_id}, body, upsert=True, preserve_prefix="__")
        else:
            doc_id = collection.insert_one(body)
            body["_id"] = doc_id
        logger.debug("Saved %s %s", kind.value, doc_id)

        self._hooks.fire(kind, AFTER_SAVE, body, actor)
        return collection.find_one({"_id": doc_id}) or body

    def get(self, kind: DocumentKind, document_id: Any) -> Optional[dict]:
        """Stored document by id, references unresolved."""
        return self._doc_store.collection(DocumentKind(kind)).find_one(
            {"_id": to_object_id(document_id)}
        )

    def resolve(self, kind: DocumentKind, document_id: Any, depth: Optional[int] = None) -> Optional[dict]:
        """Stored document by id with references resolved."""
        return self._resolver.resolve(document_id, kind, depth)

    def delete(self, kind: DocumentKind, document_id: Any, actor: Optional[str] = None) -> bool:
        """
        Delete a document, then fire its onDelete hooks with the removed document.

        Returns:
            True if a document was deleted
        """
        kind = DocumentKind(kind)
        object_id = to_object_id(document_id)
        collection = self._doc_store.collection(kind)
        document = collection.find_one({"_id": object_id})
        if document is None:
            return False
        if not collection.delete_one({"_id": object_id}):
            return False
        logger.info("Deleted %s %s", kind.value, object_id)
        self._hooks.fire(kind, ON_DELETE, document, actor)
        return True

    def increase_popularity(self, kind: DocumentKind, document_id: Any, client_address: str) -> bool:
        """
        Count one hit for a document.

        At most one hit per client address per document within the
        configured rate-limit window. Addresses are only kept as md5 hashes.

        Returns:
            True if the hit was counted
        """
        kind = DocumentKind(kind)
        if not kind.has_derived_fields or not client_address:
            return False
        object_id = to_object_id(document_id)
        key = (kind.value, str(object_id), _anonymize(client_address))
        window = self._config.popularity.rate_limit_seconds
        with self._hit_lock:
            now = self._clock()
            self._forget_expired_hits(now, window)
            if key in self._last_hit:
                return False
            self._last_hit[key] = now
        counted = self._doc_store.collection(kind).update_one(
            {"_id": object_id}, {"$inc": {HITS: 1}},
        ) > 0
        if counted:
            logger.info("Increased popularity of %s %s", kind.value, object_id)
        return counted

    def _forget_expired_hits(self, now: float, window: float) -> None:
        while self._last_hit:
            last = next(iter(self._last_hit.values()))
            if now - last < window:
                break
            self._last_hit.popitem(last=False)

    # -------------------------------------------------------------------------
    # Reconciliation jobs
    # -------------------------------------------------------------------------

    def ensure_filterable_properties(self, *, full: bool = False) -> BackfillStats:
        """Backfill licences, media types and downloadability."""
        return ensure_filterable_properties(
            self._doc_store, self._resolver,
            full=full, batch_size=self._config.jobs.batch_size,
        )

    def ensure_sortable_properties(self, *, full: bool = False) -> BackfillStats:
        """Backfill creation time, hits, annotation count and normalized name."""
        return ensure_sortable_properties(
            self._doc_store, full=full, batch_size=self._config.jobs.batch_size,
        )

    def decrease_popularity(self) -> int:
        """Run one popularity decay pass now."""
        return decrease_popularity(self._doc_store, self._config.popularity.decay_amount)

    def decrease_popularity_timer(self) -> PopularityDecayTimer:
        """Start hourly popularity decay aligned to wall-clock hours (idempotent)."""
        if self._decay_timer is None:
            self._decay_timer = decrease_popularity_timer(
                self._doc_store,
                self._scheduler,
                amount=self._config.popularity.decay_amount,
                interval=self._config.popularity.interval_seconds,
            )
        return self._decay_timer

    def ensure_search_index(self) -> Optional[int]:
        """Rebuild the search index; a no-op when search is disabled."""
        if not self.search_enabled:
            logger.debug("Search disabled; skipping index build")
            return 0
        return ensure_search_index(
            self._doc_store, self._resolver, self._search, self._tasks,
            batch_size=self._config.jobs.batch_size,
        )

    def startup(self) -> None:
        """Run every start-up job. Each failure is logged and the rest still run."""
        jobs: list[tuple[str, Callable[[], Any]]] = [
            ("filterable properties", self.ensure_filterable_properties),
            ("sortable properties", self.ensure_sortable_properties),
            ("popularity decay timer", self.decrease_popularity_timer),
            ("search index", self.ensure_search_index),
        ]
        for name, job in jobs:
            try:
                job()
            except Exception as e:
                logger.warning("Start-up job %s failed: %s", name, e)
                logger.debug("Start-up job failure", exc_info=True)

    def status(self) -> dict[str, dict[str, int]]:
        """Document and missing-derived counts per kind."""
        return backfill_status(self._doc_store)

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Block until deferred propagation has drained. False on timeout."""
        return self._tasks.join(timeout)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop timers and workers, then close stores and the ops log."""
        if self._closed:
            return
        self._closed = True
        if self._decay_timer is not None:
            self._decay_timer.cancel()
        self._scheduler.cancel_all()
        self._tasks.close()
        self._search.close()
        self._doc_store.close()

        from .logging_config import remove_ops_log
        remove_ops_log(self._ops_log_handler)
        self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

