"""
HTTP client for the external full-text search service.

Pushes resolved Entities and Compilations to per-kind collections of the
search service, removes deleted ones, and reports whether the index already
holds data (which decides whether the start-up rebuild blocks).

Wire format:
    PUT    /v1/collections/{kind}/documents/{id}  {"text": ..., "document": ...}
    DELETE /v1/collections/{kind}/documents/{id}
    GET    /v1/collections/{kind}/stats           -> {"count": N}
"""

from __future__ import annotations

import logging
import time
from typing import Any
from urllib.parse import urlparse

import httpx
from bson import ObjectId

from .errors import SearchServiceError
from .types import DocumentKind

logger = logging.getLogger(__name__)

# Retry config for writes
MAX_RETRIES = 3
RETRY_BACKOFF_BASE = 1.0  # seconds

DEFAULT_TIMEOUT = 30.0

INDEXED_KINDS = (DocumentKind.ENTITY, DocumentKind.COMPILATION)


# ---------------------------------------------------------------------------
# Searchable text
# ---------------------------------------------------------------------------


def _extract_text(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        stripped = value.strip()
        return [stripped] if stripped else []
    if isinstance(value, bool):
        return [str(value).lower()]
    if isinstance(value, (int, float)):
        return [str(value)]
    if isinstance(value, (list, tuple)):
        return [text for item in value for text in _extract_text(item)]
    if isinstance(value, dict):
        return [text for item in value.values() for text in _extract_text(item)]
    return []


def _prepare_institution(institution: Any) -> dict | None:
    if not isinstance(institution, dict):
        return None
    return {"name": institution.get("name"), "university": institution.get("university")}


def _prepare_person(person: Any) -> dict | None:
    if not isinstance(person, dict):
        return None
    full_name = " ".join(p for p in (person.get("prename"), person.get("name")) if p)
    institutions = person.get("institutions")
    if isinstance(institutions, dict):
        # Keyed by entity id, each a list of institutions
        institutions = [i for group in institutions.values() for i in (group or [])]
    return {
        "name": full_name,
        "institutions": [_prepare_institution(i) for i in institutions or []],
    }


def _prepare_digital_entity(digital_entity: Any) -> dict | None:
    if not isinstance(digital_entity, dict) or set(digital_entity) <= {"_id"}:
        return None
    return {
        "title": digital_entity.get("title"),
        "description": digital_entity.get("description"),
        "persons": [_prepare_person(p) for p in digital_entity.get("persons") or []],
        "institutions": [_prepare_institution(i) for i in digital_entity.get("institutions") or []],
    }


def _creator_name(document: dict) -> str | None:
    creator = document.get("creator")
    return creator.get("fullname") if isinstance(creator, dict) else None


def _prepare_entity(entity: Any) -> dict | None:
    if not isinstance(entity, dict):
        return None
    return {
        "name": entity.get("name"),
        "creator": _creator_name(entity),
        "digitalEntity": _prepare_digital_entity(entity.get("relatedDigitalEntity")),
    }


def build_searchable_text(kind: DocumentKind, document: dict) -> str:
    """Flatten the searchable fields of a resolved document to lower-case text."""
    kind = DocumentKind(kind)
    if kind is DocumentKind.ENTITY:
        data: Any = _prepare_entity(document)
    elif kind is DocumentKind.COMPILATION:
        members = document.get("entities")
        data = {
            "name": document.get("name"),
            "description": document.get("description"),
            "creator": _creator_name(document),
            "entities": [
                _prepare_entity(e) for e in (members.values() if isinstance(members, dict) else [])
            ],
        }
    else:
        data = {k: v for k, v in document.items() if k != "_id" and not k.startswith("__")}
    return " ".join(_extract_text(data)).lower().strip()


def _jsonable(value: Any) -> Any:
    """ObjectIds (at any depth) to hex strings for the JSON body."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class HttpSearchService:
    """HTTP client for the search service."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._api_url = api_url.rstrip("/")
        self._api_key = api_key

        # Refuse non-HTTPS for remote APIs when a bearer token would be sent in cleartext
        if api_key and not self._api_url.startswith("https://"):
            host = urlparse(self._api_url).hostname or ""
            if host not in ("localhost", "127.0.0.1", "::1"):
                raise ValueError(
                    f"Search API URL must use HTTPS (got {self._api_url}). "
                    "Use HTTPS to protect API credentials, or use localhost for local development."
                )

        headers: dict[str, str] = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.Client(
            base_url=self._api_url,
            headers=headers,
            timeout=timeout,
        )

    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, retrying transient errors (5xx, timeouts, connection errors)."""
        last_error: Exception | None = None
        for attempt in range(MAX_RETRIES):
            try:
                resp = self._client.request(method, path, **kwargs)
                if resp.status_code == 404 and method == "DELETE":
                    # Already gone
                    return resp
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise SearchServiceError(
                        f"Search service rejected {method} {path}: "
                        f"{e.response.status_code} {e.response.text}"
                    ) from e
                last_error = e
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                last_error = e

            if attempt < MAX_RETRIES - 1:
                delay = RETRY_BACKOFF_BASE * (2 ** attempt)
                logger.info(
                    "Search %s attempt %d failed, retrying in %.1fs: %s",
                    method, attempt + 1, delay, last_error,
                )
                time.sleep(delay)

        raise SearchServiceError(
            f"Search {method} {path} failed after {MAX_RETRIES} attempts: {last_error}"
        ) from last_error

    def update_document(self, kind: DocumentKind, document: dict) -> None:
        """PUT one resolved document into the kind's collection."""
        kind = DocumentKind(kind)
        doc_id = str(document["_id"])
        self._send(
            "PUT",
            f"/v1/collections/{kind.value}/documents/{doc_id}",
            json={
                "text": build_searchable_text(kind, document),
                "document": _jsonable(document),
            },
        )
        logger.debug("Indexed %s %s", kind.value, doc_id)

    def delete_document(self, kind: DocumentKind, document_id: str) -> None:
        """DELETE one document from the kind's collection. Missing is fine."""
        kind = DocumentKind(kind)
        self._send("DELETE", f"/v1/collections/{kind.value}/documents/{document_id}")

    def has_existing_data(self) -> bool:
        """True if any indexed collection holds documents."""
        for kind in INDEXED_KINDS:
            try:
                resp = self._client.get(f"/v1/collections/{kind.value}/stats")
                if resp.status_code == 404:
                    continue
                resp.raise_for_status()
                count = resp.json().get("count", 0)
            except (httpx.HTTPError, ValueError) as e:
                raise SearchServiceError(f"Failed to read search stats: {e}") from e
            if count:
                return True
        return False

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()


class NullSearchService:
    """Search disabled: accepts and drops every update."""

    def update_document(self, kind: DocumentKind, document: dict) -> None:
        pass

    def delete_document(self, kind: DocumentKind, document_id: str) -> None:
        pass

    def has_existing_data(self) -> bool:
        return False

    def close(self) -> None:
        pass
