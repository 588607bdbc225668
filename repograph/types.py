"""
Data types for the document graph.

Raw documents are schemaless dicts as stored in the collections. The engine
parses them into one dataclass variant per kind, so derived-property code
dispatches on the variant type instead of probing for fields.

Reference fields of a parsed document hold either the resolved variant or
the raw id string (left unresolved by the depth bound).
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from bson import ObjectId
from bson.errors import InvalidId

from .errors import MalformedReferenceError

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    """Document kinds participating in the graph. Values are collection names."""
    DIGITAL_ENTITY = "digitalentity"
    ENTITY = "entity"
    COMPILATION = "compilation"
    PROFILE = "profile"

    @property
    def is_container(self) -> bool:
        return self in (DocumentKind.COMPILATION, DocumentKind.PROFILE)

    @property
    def has_derived_fields(self) -> bool:
        return self is not DocumentKind.DIGITAL_ENTITY


# Kinds carrying derived fields, in backfill order: leaves before containers
DERIVED_KINDS = (DocumentKind.ENTITY, DocumentKind.COMPILATION, DocumentKind.PROFILE)

# Derived field names, as stored
LICENSES = "__licenses"
MEDIA_TYPES = "__mediaTypes"
DOWNLOADABLE = "__downloadable"
CREATED_AT = "__createdAt"
HITS = "__hits"
ANNOTATION_COUNT = "__annotationCount"
NORMALIZED_NAME = "__normalizedName"

FILTERABLE_FIELDS = (LICENSES, MEDIA_TYPES, DOWNLOADABLE)
SORTABLE_FIELDS = (CREATED_AT, HITS, ANNOTATION_COUNT, NORMALIZED_NAME)


def to_object_id(reference: Any) -> ObjectId:
    """Interpret a reference (ObjectId, hex string or stub dict) as an ObjectId.

    Raises MalformedReferenceError if the reference is not an identifier.
    """
    value = reference.get("_id") if isinstance(reference, dict) else reference
    if isinstance(value, ObjectId):
        return value
    if isinstance(value, str):
        try:
            return ObjectId(value)
        except InvalidId:
            pass
    raise MalformedReferenceError(reference)


def reference_id(reference: Any) -> Optional[str]:
    """String id of a reference, or None for an empty reference."""
    if reference is None or reference == "" or reference == {}:
        return None
    return str(to_object_id(reference))


def created_at_millis(object_id: ObjectId) -> int:
    """Creation time embedded in an ObjectId, in epoch milliseconds."""
    return int(object_id.generation_time.timestamp()) * 1000


@dataclass
class DigitalEntity:
    """Metadata about a physical or digital object."""
    id: str
    licence: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    persons: list = field(default_factory=list)
    institutions: list = field(default_factory=list)


@dataclass
class Entity:
    """A renderable media item."""
    id: str
    name: Optional[str] = None
    media_type: Optional[str] = None
    related_digital_entity: Union[DigitalEntity, str, None] = None
    allow_download: bool = False
    annotations: dict = field(default_factory=dict)
    finished: bool = False
    online: bool = False
    creator: Optional[str] = None
    created_at: Optional[int] = None
    hits: Optional[int] = None

    @property
    def published(self) -> bool:
        return self.finished and self.online


@dataclass
class Compilation:
    """A named collection of Entities, keyed by entity id."""
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    entities: dict[str, Union[Entity, str]] = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    creator: Optional[str] = None
    created_at: Optional[int] = None
    hits: Optional[int] = None


@dataclass
class Profile:
    """A user-curated view over Entities."""
    id: str
    display_name: Optional[str] = None
    name: Optional[str] = None
    entities: dict[str, Union[Entity, str]] = field(default_factory=dict)
    annotations: dict = field(default_factory=dict)
    created_at: Optional[int] = None
    hits: Optional[int] = None


Document = Union[DigitalEntity, Entity, Compilation, Profile]


@dataclass(frozen=True)
class FilterableProperties:
    """Derived properties used for explore filtering."""
    licenses: frozenset[str] = frozenset()
    media_types: frozenset[str] = frozenset()
    downloadable: bool = False

    def to_fields(self) -> dict[str, Any]:
        return {
            LICENSES: sorted(self.licenses),
            MEDIA_TYPES: sorted(self.media_types),
            DOWNLOADABLE: self.downloadable,
        }


@dataclass(frozen=True)
class SortableProperties:
    """Derived properties used for explore sorting."""
    created_at: int
    hits: int = 0
    annotation_count: int = 0
    normalized_name: str = ""

    def to_fields(self) -> dict[str, Any]:
        return {
            CREATED_AT: self.created_at,
            HITS: self.hits,
            ANNOTATION_COUNT: self.annotation_count,
            NORMALIZED_NAME: self.normalized_name,
        }


# ---------------------------------------------------------------------------
# Parsing raw documents
# ---------------------------------------------------------------------------


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _optional_int(value: Any) -> Optional[int]:
    # bool is an int subclass; a stored true is not a count
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def _mapping(value: Any) -> dict:
    return dict(value) if isinstance(value, dict) else {}


def _creator_name(raw: dict) -> Optional[str]:
    creator = raw.get("creator")
    if isinstance(creator, dict):
        return _optional_str(creator.get("fullname"))
    return None


def _parse_reference(value: Any, kind: DocumentKind) -> Union[Document, str, None]:
    """A nested reference: resolved documents carry more than an _id.

    A malformed stored reference is logged and treated as missing.
    """
    if value is None:
        return None
    try:
        if isinstance(value, dict) and set(value) - {"_id"}:
            return parse_document(kind, value)
        return reference_id(value)
    except MalformedReferenceError as e:
        logger.warning("Ignoring malformed %s reference: %s", kind.value, e)
        return None


def _parse_members(raw: dict) -> dict[str, Union[Entity, str]]:
    """Member mapping of a container. Flag-style members ({id: true}) use the key."""
    members: dict[str, Union[Entity, str]] = {}
    for key, value in _mapping(raw.get("entities")).items():
        if not value:
            continue
        reference = value if isinstance(value, (dict, str, ObjectId)) else key
        member = _parse_reference(reference, DocumentKind.ENTITY)
        if member is not None:
            members[str(key)] = member
    return members




def parse_document(kind: DocumentKind, raw: dict) -> Document:
    """Parse a raw document of the given kind into its dataclass variant.

    Raises MalformedReferenceError if the document has no usable _id.
    """
    doc_id = str(to_object_id(raw))

    if kind is DocumentKind.DIGITAL_ENTITY:
        return DigitalEntity(
            id=doc_id,
            licence=_optional_str(raw.get("licence")) or None,
            title=_optional_str(raw.get("title")),
            description=_optional_str(raw.get("description")),
            persons=list(raw.get("persons") or []),
            institutions=list(raw.get("institutions") or []),
        )
    if kind is DocumentKind.ENTITY:
        options = _mapping(raw.get("options"))
        return Entity(
            id=doc_id,
            name=_optional_str(raw.get("name")),
            media_type=_optional_str(raw.get("mediaType")) or None,
            related_digital_entity=_parse_reference(
                raw.get("relatedDigitalEntity"), DocumentKind.DIGITAL_ENTITY,
            ),
            allow_download=options.get("allowDownload") is True,
            annotations=_mapping(raw.get("annotations")),
            finished=raw.get("finished") is True,
            online=raw.get("online") is True,
            creator=_creator_name(raw),
            created_at=_optional_int(raw.get(CREATED_AT)),
            hits=_optional_int(raw.get(HITS)),
        )
    if kind is DocumentKind.COMPILATION:
        return Compilation(
            id=doc_id,
            name=_optional_str(raw.get("name")),
            description=_optional_str(raw.get("description")),
            entities=_parse_members(raw),
            annotations=_mapping(raw.get("annotations")),
            creator=_creator_name(raw),
            created_at=_optional_int(raw.get(CREATED_AT)),
            hits=_optional_int(raw.get(HITS)),
        )
    if kind is DocumentKind.PROFILE:
        return Profile(
            id=doc_id,
            display_name=_optional_str(raw.get("displayName")),
            name=_optional_str(raw.get("name")),
            entities=_parse_members(raw),
            annotations=_mapping(raw.get("annotations")),
            created_at=_optional_int(raw.get(CREATED_AT)),
            hits=_optional_int(raw.get(HITS)),
        )
    raise ValueError(f"Unknown document kind: {kind!r}")
