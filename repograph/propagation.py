"""
Event-driven recomputation of derived fields.

Registered as hooks on the write path:

- Entity afterSave: recompute the entity's own fields now, then (deferred)
  every Compilation/Profile containing it.
- Compilation/Profile afterSave: recompute their own fields now.
- DigitalEntity afterSave/onDelete: (deferred) recompute the Entities that
  point at it, then their containers.
- Entity onDelete: (deferred) drop the entity from its containers and
  recompute them.

Before any of these, every save or delete invalidates: the filterable
fields of dependent Entities and Compilations/Profiles are unset, and a
system save (actor is None) also unsets the saved document's own
recomputable fields. Invalidation is synchronous and never actor-gated, so
the missing-only backfill picks up whatever the recomputation skips.

Recomputation callbacks do nothing for system saves; the backfill jobs own
those documents.

Search hooks keep the external index in step: afterSave re-pushes the
document (and, for entities, the containers and entities depending on it),
onDelete removes it. All search work is deferred.

Deferred work goes to the TaskQueue under a per-document key, so a burst of
saves to one document recomputes its dependents once.
"""

import logging
from typing import Any, Optional

from bson import ObjectId

from .derived import changed_fields, compute_derived
from .hooks import AFTER_SAVE, ON_DELETE, HookManager
from .protocol import (
    DocumentCollectionProtocol,
    DocumentStoreProtocol,
    SearchServiceProtocol,
    TaskQueueProtocol,
)
from .resolver import (
    CONTAINER_KINDS,
    DEFAULT_RESOLVE_DEPTH,
    MAX_RESOLVE_DEPTH,
    Resolver,
    parent_containers_filter,
    parent_entities_filter,
)
from .types import (
    ANNOTATION_COUNT,
    FILTERABLE_FIELDS,
    NORMALIZED_NAME,
    DocumentKind,
    parse_document,
    to_object_id,
)

logger = logging.getLogger(__name__)

# Recomputable from the graph; __createdAt and __hits are write-once
RECOMPUTED_FIELDS = FILTERABLE_FIELDS + (ANNOTATION_COUNT, NORMALIZED_NAME)


def _unset(fields) -> dict:
    return {"$unset": {name: "" for name in fields}}


def write_changed(collection: DocumentCollectionProtocol, raw: dict, fields: dict) -> bool:
    """$set the fields that differ from the stored document. True if written."""
    changed = changed_fields(raw, fields)
    if not changed:
        return False
    collection.update_one({"_id": raw["_id"]}, {"$set": changed})
    return True


class Propagator:
    """Recomputes derived fields of documents and of their dependents."""

    def __init__(
        self,
        store: DocumentStoreProtocol,
        resolver: Resolver,
        tasks: TaskQueueProtocol,
    ):
        self._store = store
        self._resolver = resolver
        self._tasks = tasks

    def refresh(self, kind: DocumentKind, document_id: Any) -> bool:
        """
        Recompute and persist one document's derived fields.

        Returns:
            True if any field was written, False if unchanged or missing
        """
        kind = DocumentKind(kind)
        raw = self._resolver.resolve(document_id, kind, DEFAULT_RESOLVE_DEPTH)
        if raw is None:
            logger.debug("Skipping refresh of missing %s %s", kind.value, document_id)
            return False
        fields = compute_derived(parse_document(kind, raw))
        written = write_changed(self._store.collection(kind), raw, fields)
        if written:
            logger.debug("Refreshed derived fields of %s %s", kind.value, raw["_id"])
        return written

    def refresh_containers(self, entity_id: Any) -> int:
        """Recompute every Compilation/Profile containing the entity."""
        refreshed = 0
        for kind, container in list(self._resolver.find_parent_containers(entity_id)):
            try:
                if self.refresh(kind, container["_id"]):
                    refreshed += 1
            except Exception as e:
                logger.warning("Failed to refresh %s %s: %s", kind.value, container["_id"], e)
        if refreshed:
            logger.info("Updated %d container(s) of entity %s", refreshed, entity_id)
        return refreshed

    def refresh_entities_of(self, digital_entity_id: Any) -> int:
        """Recompute the Entities using a DigitalEntity, then their containers."""
        entity_ids = [raw["_id"] for raw in self._resolver.find_parent_entities(digital_entity_id)]
        for entity_id in entity_ids:
            try:
                self.refresh(DocumentKind.ENTITY, entity_id)
            except Exception as e:
                logger.warning("Failed to refresh entity %s: %s", entity_id, e)
                continue
            self.refresh_containers(entity_id)
        return len(entity_ids)

    def remove_from_containers(self, entity_id: Any) -> int:
        """Drop a deleted entity from the member mappings of its containers."""
        object_id = to_object_id(entity_id)
        path = f"entities.{object_id}"
        removed = 0
        for kind, container in list(self._resolver.find_parent_containers(object_id)):
            self._store.collection(kind).update_one(
                {"_id": container["_id"]}, {"$unset": {path: ""}},
            )
            removed += 1
            self.refresh(kind, container["_id"])
        return removed

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    def invalidate(self, kind: DocumentKind, document_id: Any) -> bool:
        """Unset a document's recomputable fields so the next backfill revisits it."""
        return self._store.collection(kind).update_one(
            {"_id": to_object_id(document_id)}, _unset(RECOMPUTED_FIELDS),
        ) > 0

    def invalidate_containers(self, entity_id: Any) -> int:
        """Unset the filterable fields of every Compilation/Profile holding the entity."""
        query = parent_containers_filter(entity_id)
        return sum(
            self._store.collection(kind).update_many(query, _unset(FILTERABLE_FIELDS))
            for kind in CONTAINER_KINDS
        )

    def invalidate_entities_of(self, digital_entity_id: Any) -> int:
        """Unset the filterable fields of the Entities using a DigitalEntity and of their containers."""
        entity_ids = [raw["_id"] for raw in self._resolver.find_parent_entities(digital_entity_id)]
        if not entity_ids:
            return 0
        self._store.collection(DocumentKind.ENTITY).update_many(
            parent_entities_filter(digital_entity_id), _unset(FILTERABLE_FIELDS),
        )
        for entity_id in entity_ids:
            self.invalidate_containers(entity_id)
        logger.debug("Invalidated %d entities of digital entity %s", len(entity_ids), digital_entity_id)
        return len(entity_ids)

    # -------------------------------------------------------------------------
    # Hook callbacks
    # -------------------------------------------------------------------------

    def _defer(self, func, document_id: ObjectId, key: str) -> None:
        self._tasks.submit(func, document_id, key=key, description=key)

    def _invalidate_dependents(self, kind: DocumentKind, document_id: ObjectId) -> None:
        if kind is DocumentKind.ENTITY:
            self.invalidate_containers(document_id)
        elif kind is DocumentKind.DIGITAL_ENTITY:
            self.invalidate_entities_of(document_id)

    def on_saved_invalidate(self, kind: DocumentKind):
        # Not actor-gated; a system save also leaves its own fields to backfill
        def callback(document: dict, actor: Optional[str]) -> None:
            document_id = to_object_id(document)
            if actor is None and kind.has_derived_fields:
                self.invalidate(kind, document_id)
            self._invalidate_dependents(kind, document_id)
            return None
        callback.__qualname__ = f"invalidate_{kind.value}"
        return callback

    def on_deleted_invalidate(self, kind: DocumentKind):
        def callback(document: dict, actor: Optional[str]) -> None:
            self._invalidate_dependents(kind, to_object_id(document))
            return None
        callback.__qualname__ = f"invalidate_deleted_{kind.value}"
        return callback

    def on_entity_saved(self, document: dict, actor: Optional[str]) -> None:
        if actor is None:
            return None
        entity_id = to_object_id(document)
        self.refresh(DocumentKind.ENTITY, entity_id)
        # Containers are updated whether or not anything relevant to them changed
        self._defer(self.refresh_containers, entity_id, f"containers:{entity_id}")
        return None

    def on_container_saved(self, kind: DocumentKind):
        def callback(document: dict, actor: Optional[str]) -> None:
            if actor is None:
                return None
            self.refresh(kind, to_object_id(document))
            return None
        callback.__qualname__ = f"on_{kind.value}_saved"
        return callback

    def on_digital_entity_changed(self, document: dict, actor: Optional[str]) -> None:
        if actor is None:
            return None
        de_id = to_object_id(document)
        self._defer(self.refresh_entities_of, de_id, f"entities-of:{de_id}")
        return None

    def on_entity_deleted(self, document: dict, actor: Optional[str]) -> None:
        # Not actor-gated: dangling members are removed for system deletes too
        entity_id = to_object_id(document)
        self._defer(self.remove_from_containers, entity_id, f"remove:{entity_id}")
        return None


def register_propagation_hooks(hooks: HookManager, propagator: Propagator) -> None:
    """Attach derived-field maintenance to the write path.

    Invalidation hooks are registered first, so recomputation hooks fire
    after dependents have been marked.
    """
    for kind in DocumentKind:
        hooks.add_hook(kind, AFTER_SAVE, propagator.on_saved_invalidate(kind))
    for kind in (DocumentKind.ENTITY, DocumentKind.DIGITAL_ENTITY):
        hooks.add_hook(kind, ON_DELETE, propagator.on_deleted_invalidate(kind))
    hooks.add_hook(DocumentKind.ENTITY, AFTER_SAVE, propagator.on_entity_saved)
    for kind in CONTAINER_KINDS:
        hooks.add_hook(kind, AFTER_SAVE, propagator.on_container_saved(kind))
    hooks.add_hook(DocumentKind.DIGITAL_ENTITY, AFTER_SAVE, propagator.on_digital_entity_changed)
    hooks.add_hook(DocumentKind.DIGITAL_ENTITY, ON_DELETE, propagator.on_digital_entity_changed)
    hooks.add_hook(DocumentKind.ENTITY, ON_DELETE, propagator.on_entity_deleted)


# ---------------------------------------------------------------------------
# Search index
# ---------------------------------------------------------------------------

PUBLISHED_ENTITY_FILTER = {"finished": True, "online": True}


def is_published(raw: dict) -> bool:
    """Entities are searchable once finished and online."""
    return raw.get("finished") is True and raw.get("online") is True


def index_document(
    resolver: Resolver,
    search: SearchServiceProtocol,
    kind: DocumentKind,
    raw: dict,
) -> bool:
    """
    Fully resolve a stored document and push it to the index.

    Failures are logged, never raised: the index is allowed to lag.
    """
    kind = DocumentKind(kind)
    try:
        resolved = resolver.expand(raw, kind, MAX_RESOLVE_DEPTH)
        search.update_document(kind, resolved)
    except Exception as e:
        logger.warning("Failed to index %s %s: %s", kind.value, raw.get("_id"), e)
        return False
    return True


class SearchIndexer:
    """Pushes resolved documents to the search service."""

    def __init__(
        self,
        store: DocumentStoreProtocol,
        resolver: Resolver,
        search: SearchServiceProtocol,
        tasks: TaskQueueProtocol,
    ):
        self._store = store
        self._resolver = resolver
        self._search = search
        self._tasks = tasks

    def index(self, kind: DocumentKind, raw: dict) -> bool:
        return index_document(self._resolver, self._search, kind, raw)

    def reindex(self, kind: DocumentKind, document_id: Any) -> None:
        """Re-push one document; unpublished entities are removed instead."""
        kind = DocumentKind(kind)
        raw = self._store.collection(kind).find_one({"_id": to_object_id(document_id)})
        if raw is None:
            return
        if kind is DocumentKind.ENTITY and not is_published(raw):
            self.unindex(kind, raw["_id"])
            return
        self.index(kind, raw)

    def unindex(self, kind: DocumentKind, document_id: Any) -> None:
        try:
            self._search.delete_document(DocumentKind(kind), str(document_id))
        except Exception as e:
            logger.warning("Failed to remove %s %s from index: %s", DocumentKind(kind).value, document_id, e)

    def reindex_entity(self, entity_id: ObjectId) -> None:
        self.reindex(DocumentKind.ENTITY, entity_id)
        for kind, container in list(self._resolver.find_parent_containers(entity_id)):
            if kind is DocumentKind.COMPILATION:
                self.index(kind, container)

    def reindex_entities_of(self, de_id: ObjectId) -> None:
        for raw in list(self._resolver.find_parent_entities(de_id)):
            self.reindex(DocumentKind.ENTITY, raw["_id"])

    # -------------------------------------------------------------------------
    # Hook callbacks
    # -------------------------------------------------------------------------

    def on_entity_saved(self, document: dict, actor: Optional[str]) -> None:
        entity_id = to_object_id(document)
        self._tasks.submit(self.reindex_entity, entity_id, key=f"index:entity:{entity_id}")

    def on_compilation_saved(self, document: dict, actor: Optional[str]) -> None:
        compilation_id = to_object_id(document)
        self._tasks.submit(
            self.reindex, DocumentKind.COMPILATION, compilation_id,
            key=f"index:compilation:{compilation_id}",
        )

    def on_digital_entity_saved(self, document: dict, actor: Optional[str]) -> None:
        de_id = to_object_id(document)
        self._tasks.submit(self.reindex_entities_of, de_id, key=f"index:entities-of:{de_id}")

    def on_deleted(self, kind: DocumentKind):
        def callback(document: dict, actor: Optional[str]) -> None:
            self._tasks.submit(self.unindex, kind, to_object_id(document))
        callback.__qualname__ = f"unindex_{kind.value}"
        return callback


def register_search_hooks(hooks: HookManager, indexer: SearchIndexer) -> None:
    """Attach search-index maintenance to the write path."""
    hooks.add_hook(DocumentKind.ENTITY, AFTER_SAVE, indexer.on_entity_saved)
    hooks.add_hook(DocumentKind.COMPILATION, AFTER_SAVE, indexer.on_compilation_saved)
    hooks.add_hook(DocumentKind.DIGITAL_ENTITY, AFTER_SAVE, indexer.on_digital_entity_saved)
    for kind in (DocumentKind.ENTITY, DocumentKind.COMPILATION):
        hooks.add_hook(kind, ON_DELETE, indexer.on_deleted(kind))
