"""
Derived property computation.

Pure functions from resolved documents to their denormalized "filterable"
and "sortable" property sets. No store access, no clocks: calling them twice
with the same input yields equal output, which is what makes the hook path
and the backfill jobs safe to run over each other.
"""

from typing import Any, Mapping, Optional

from bson import ObjectId

from .types import (
    CREATED_AT,
    HITS,
    Compilation,
    DigitalEntity,
    Document,
    Entity,
    FilterableProperties,
    Profile,
    SortableProperties,
    created_at_millis,
)

WRITE_ONCE_FIELDS = (CREATED_AT, HITS)


def collect_references(document: Document) -> dict[str, Document]:
    """Flatten the resolved documents reachable from a document, keyed by id."""
    references: dict[str, Document] = {}

    def visit(doc: Document) -> None:
        if isinstance(doc, Entity):
            if isinstance(doc.related_digital_entity, DigitalEntity):
                references[doc.related_digital_entity.id] = doc.related_digital_entity
        elif isinstance(doc, (Compilation, Profile)):
            for member in doc.entities.values():
                if isinstance(member, Entity):
                    references[member.id] = member
                    visit(member)

    visit(document)
    return references


def _entity_filterable(entity: Entity, references: Mapping[str, Document]) -> FilterableProperties:
    related = entity.related_digital_entity
    related_id = related.id if isinstance(related, DigitalEntity) else related
    digital_entity = references.get(related_id) if related_id else None

    licenses: frozenset[str] = frozenset()
    if isinstance(digital_entity, DigitalEntity) and digital_entity.licence:
        licenses = frozenset([digital_entity.licence])
    media_types = frozenset([entity.media_type]) if entity.media_type else frozenset()
    return FilterableProperties(
        licenses=licenses,
        media_types=media_types,
        downloadable=entity.allow_download,
    )


def compute_filterable(
    document: Document,
    references: Optional[Mapping[str, Document]] = None,
) -> FilterableProperties:
    """
    Compute licences, media types and downloadability.

    Entities take their licence from the resolved DigitalEntity. Compilations
    and profiles take the union (licences, media types) and the OR
    (downloadable) over their members. Members missing from `references`
    are skipped.

    Args:
        document: Parsed, resolved document
        references: Resolved documents by id; collected from `document`
            itself when omitted

    Raises:
        TypeError: For kinds without derived properties (DigitalEntity)
    """
    if references is None:
        references = collect_references(document)

    if isinstance(document, Entity):
        return _entity_filterable(document, references)

    if isinstance(document, (Compilation, Profile)):
        licenses: set[str] = set()
        media_types: set[str] = set()
        downloadable = False
        for member in document.entities.values():
            member_id = member.id if isinstance(member, Entity) else member
            entity = references.get(member_id)
            if not isinstance(entity, Entity):
                continue
            props = _entity_filterable(entity, references)
            licenses |= props.licenses
            media_types |= props.media_types
            downloadable = downloadable or props.downloadable
        return FilterableProperties(
            licenses=frozenset(licenses),
            media_types=frozenset(media_types),
            downloadable=downloadable,
        )

    raise TypeError(f"No filterable properties for {type(document).__name__}")


def normalize_name(document: Document) -> str:
    """Trimmed, lower-cased display name: name, else displayName, else ''."""
    if isinstance(document, Profile):
        candidates = (document.name, document.display_name)
    elif isinstance(document, (Entity, Compilation)):
        candidates = (document.name,)
    else:
        raise TypeError(f"No display name for {type(document).__name__}")
    for candidate in candidates:
        if candidate is not None:
            return candidate.strip().lower()
    return ""


def compute_sortable(document: Document) -> SortableProperties:
    """
    Compute creation time, hits, annotation count and normalized name.

    created_at keeps a stored value and otherwise comes from the ObjectId
    timestamp. hits is never recomputed: the stored count is kept (0 when
    missing, floored at 0).

    Raises:
        TypeError: For kinds without derived properties (DigitalEntity)
    """
    if not isinstance(document, (Entity, Compilation, Profile)):
        raise TypeError(f"No sortable properties for {type(document).__name__}")

    created_at = document.created_at
    if created_at is None:
        created_at = created_at_millis(ObjectId(document.id))
    return SortableProperties(
        created_at=created_at,
        hits=max(document.hits or 0, 0),
        annotation_count=len(document.annotations),
        normalized_name=normalize_name(document),
    )


def compute_derived(
    document: Document,
    references: Optional[Mapping[str, Document]] = None,
) -> dict[str, Any]:
    """All derived fields of a document, in storage form."""
    fields = compute_filterable(document, references).to_fields()
    fields.update(compute_sortable(document).to_fields())
    return fields


def changed_fields(raw_document: Mapping[str, Any], fields: Mapping[str, Any]) -> dict[str, Any]:
    """
    The subset of `fields` whose stored value is missing or different.

    Write-once fields (creation time, hit counter) are only returned when
    missing: the counter belongs to popularity events and the decay job.
    """
    changed = {}
    for key, value in fields.items():
        stored = raw_document.get(key)
        if stored is None:
            changed[key] = value
            continue
        if key in WRITE_ONCE_FIELDS:
            continue
        # True == 1 in Python; a stored 1 is not a stored true
        if type(stored) is not type(value) or stored != value:
            changed[key] = value
    return changed
