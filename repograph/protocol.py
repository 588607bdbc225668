"""
Protocol definitions for repograph's external collaborators.

The propagation engine only talks to these interfaces:
- DocumentCollectionProtocol / DocumentStoreProtocol: the document database
  (SQLite locally, any document database with the same semantics elsewhere)
- SearchServiceProtocol: the external full-text search index
- SchedulerProtocol: "run once after delay" and "run every N seconds"
- TaskQueueProtocol: fire-and-forget background work
"""

from typing import Any, Callable, Iterator, Optional, Protocol, runtime_checkable

from bson import ObjectId

from .types import DocumentKind


@runtime_checkable
class DocumentCollectionProtocol(Protocol):
    """
    A collection of schemaless documents of one kind.

    Implemented by:
    - DocumentCollection (local SQLite)
    """

    name: str

    # -- Read --

    def find_one(self, query: Optional[dict] = None) -> Optional[dict]: ...

    def find(
        self,
        query: Optional[dict] = None,
        *,
        batch_size: int = 100,
    ) -> Iterator[dict]: ...

    def count(self, query: Optional[dict] = None) -> int: ...

    # -- Write --

    def insert_one(self, document: dict) -> ObjectId: ...

    def replace_one(
        self,
        query: dict,
        document: dict,
        *,
        upsert: bool = False,
        preserve_prefix: Optional[str] = None,
    ) -> Optional[ObjectId]: ...

    def update_one(self, query: dict, update: dict) -> int: ...

    def update_many(self, query: dict, update: dict) -> int: ...

    def delete_one(self, query: dict) -> bool: ...


@runtime_checkable
class DocumentStoreProtocol(Protocol):
    """
    A document database holding one collection per document kind.

    Implemented by:
    - DocumentStore (local SQLite)
    """

    def collection(self, kind: DocumentKind | str) -> DocumentCollectionProtocol: ...

    def close(self) -> None: ...


@runtime_checkable
class SearchServiceProtocol(Protocol):
    """
    External full-text search index.

    Implemented by:
    - HttpSearchService (HTTP search service)
    - NullSearchService (indexing disabled)
    """

    def update_document(self, kind: DocumentKind, document: dict) -> None: ...

    def delete_document(self, kind: DocumentKind, document_id: str) -> None: ...

    def has_existing_data(self) -> bool: ...

    def close(self) -> None: ...


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


@runtime_checkable
class SchedulerProtocol(Protocol):
    """Timer primitives used by the popularity decay job."""

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle: ...

    def call_every(self, interval: float, callback: Callable[[], Any]) -> TimerHandle: ...

    def cancel_all(self) -> None: ...


@runtime_checkable
class TaskQueueProtocol(Protocol):
    """Background queue for deferred work the caller never waits on."""

    def submit(
        self,
        func: Callable[..., Any],
        *args: Any,
        key: Optional[str] = None,
        description: str = "",
    ) -> None: ...

    def join(self, timeout: Optional[float] = None) -> bool: ...

    def close(self) -> None: ...
