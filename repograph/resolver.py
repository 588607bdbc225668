"""
Reference resolution across the document graph.

A reference is an ObjectId, its hex string, or an embedded stub/document
carrying ``_id``. Resolving it reads the target from its collection and,
while remaining depth allows, replaces the target's own outward references
with their resolved documents:

    Compilation/Profile --entities--> Entity --relatedDigitalEntity--> DigitalEntity

Depth counts hops below the requested document. At depth 0 the document is
returned with its references as raw id strings. Embedded copies are never
trusted; every hop re-reads the store.

Missing targets resolve to None and are dropped from member mappings.
Only a malformed reference passed by the caller raises.
"""

import logging
from typing import Any, Iterator, Optional

from bson import ObjectId

from .errors import MalformedReferenceError
from .protocol import DocumentStoreProtocol
from .types import Document, DocumentKind, parse_document, to_object_id

logger = logging.getLogger(__name__)

# Compilation -> Entity -> DigitalEntity
DEFAULT_RESOLVE_DEPTH = 2
MAX_RESOLVE_DEPTH = 3

CONTAINER_KINDS = (DocumentKind.COMPILATION, DocumentKind.PROFILE)


def parent_entities_filter(digital_entity_id: Any) -> dict:
    """Query matching Entities that reference a DigitalEntity (stub or bare id)."""
    object_id = to_object_id(digital_entity_id)
    return {
        "$or": [
            {"relatedDigitalEntity._id": str(object_id)},
            {"relatedDigitalEntity": str(object_id)},
        ],
    }


def parent_containers_filter(entity_id: Any) -> dict:
    """Query matching Compilations/Profiles whose member mapping holds an Entity."""
    return {f"entities.{to_object_id(entity_id)}": {"$exists": True}}



class Resolver:
    """Read-only, depth-bounded resolver over a document store."""

    def __init__(
        self,
        store: DocumentStoreProtocol,
        *,
        default_depth: int = DEFAULT_RESOLVE_DEPTH,
    ):
        self._store = store
        self._default_depth = self._clamp(default_depth)

    @staticmethod
    def _clamp(depth: int) -> int:
        return max(0, min(int(depth), MAX_RESOLVE_DEPTH))

    @property
    def default_depth(self) -> int:
        return self._default_depth

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    def resolve(
        self,
        reference: Any,
        kind: DocumentKind,
        depth: Optional[int] = None,
    ) -> Optional[dict]:
        """
        Resolve a reference to the full raw document of the given kind.

        Args:
            reference: ObjectId, hex string, or dict with an ``_id``
            kind: Kind (collection) of the referenced document
            depth: Hops of outward references to resolve; defaults to the
                resolver's default and is capped at MAX_RESOLVE_DEPTH

        Returns:
            The document with references resolved, or None if not found

        Raises:
            MalformedReferenceError: If reference is not an identifier
        """
        if reference is None:
            return None
        object_id = to_object_id(reference)
        remaining = self._default_depth if depth is None else self._clamp(depth)
        return self._resolve(object_id, DocumentKind(kind), remaining)

    def resolve_typed(
        self,
        reference: Any,
        kind: DocumentKind,
        depth: Optional[int] = None,
    ) -> Optional[Document]:
        """resolve(), parsed into the kind's dataclass variant."""
        raw = self.resolve(reference, kind, depth)
        if raw is None:
            return None
        return parse_document(DocumentKind(kind), raw)

    def expand(
        self,
        document: dict,
        kind: DocumentKind,
        depth: Optional[int] = None,
    ) -> dict:
        """
        Resolve the outward references of an already loaded document.

        Used by jobs iterating a cursor, to avoid reading each document twice.
        The input is not modified.
        """
        remaining = self._default_depth if depth is None else self._clamp(depth)
        return self._resolve_references(dict(document), DocumentKind(kind), remaining)

    # -------------------------------------------------------------------------
    # Reverse lookups
    # -------------------------------------------------------------------------

    def find_parent_entities(self, digital_entity_id: Any) -> Iterator[dict]:
        """Entities whose relatedDigitalEntity points at the given id."""
        return self._store.collection(DocumentKind.ENTITY).find(
            parent_entities_filter(digital_entity_id)
        )

    def find_parent_containers(self, entity_id: Any) -> Iterator[tuple[DocumentKind, dict]]:
        """Compilations and profiles whose member mapping contains the entity."""
        query = parent_containers_filter(entity_id)
        for kind in CONTAINER_KINDS:
            for document in self._store.collection(kind).find(query):
                yield kind, document

    # -------------------------------------------------------------------------
    # Recursion
    # -------------------------------------------------------------------------

    def _resolve(self, object_id: ObjectId, kind: DocumentKind, depth: int) -> Optional[dict]:
        document = self._store.collection(kind).find_one({"_id": object_id})
        if document is None:
            logger.debug("Unresolved %s reference %s", kind.value, object_id)
            return None
        return self._resolve_references(document, kind, depth)

    def _resolve_references(self, document: dict, kind: DocumentKind, depth: int) -> dict:
        if kind is DocumentKind.ENTITY:
            document["relatedDigitalEntity"] = self._resolve_reference(
                document.get("relatedDigitalEntity"), DocumentKind.DIGITAL_ENTITY, depth,
            )
        elif kind.is_container:
            document["entities"] = self._resolve_members(document.get("entities"), depth)
        return document

    def _resolve_reference(self, reference: Any, kind: DocumentKind, depth: int) -> Any:
        """One outward reference of a document that was fetched with `depth` remaining."""
        if reference is None or reference == "" or reference == {}:
            return None
        try:
            object_id = to_object_id(reference)
        except MalformedReferenceError:
            logger.warning("Ignoring malformed stored %s reference %r", kind.value, reference)
            return None
        if depth <= 0:
            return str(object_id)
        return self._resolve(object_id, kind, depth - 1)

    def _resolve_members(self, members: Any, depth: int) -> dict:
        if not isinstance(members, dict):
            return {}
        resolved: dict = {}
        for key, value in members.items():
            if not value:
                continue
            # Members stored as bare true/placeholder values are keyed by id
            reference = value if isinstance(value, (dict, str, ObjectId)) else key
            member = self._resolve_reference(reference, DocumentKind.ENTITY, depth)
            if member is not None:
                resolved[key] = member
        return resolved
