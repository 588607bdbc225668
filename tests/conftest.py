"""
Shared pytest fixtures for repograph tests.

Provides a temporary SQLite store, a recording search service, a manual
scheduler and clock, and a factory for graph documents, so tests never
touch the network or wait on real timers.
"""

from pathlib import Path
from typing import Any, Callable, Optional

import pytest
from bson import ObjectId

from repograph.api import Repository
from repograph.config import StoreConfig
from repograph.document_store import DocumentStore
from repograph.tasks import TaskQueue
from repograph.types import DocumentKind


class RecordingSearchService:
    """Search service that records calls instead of sending them."""

    def __init__(self, existing: bool = False):
        self.existing = existing
        self.updates: list[tuple[DocumentKind, dict]] = []
        self.deletes: list[tuple[DocumentKind, str]] = []
        self.fail_ids: set[str] = set()
        self.closed = False

    def update_document(self, kind: DocumentKind, document: dict) -> None:
        if str(document["_id"]) in self.fail_ids:
            raise RuntimeError("search service down")
        self.updates.append((DocumentKind(kind), document))

    def delete_document(self, kind: DocumentKind, document_id: str) -> None:
        self.deletes.append((DocumentKind(kind), str(document_id)))

    def has_existing_data(self) -> bool:
        return self.existing

    def close(self) -> None:
        self.closed = True

    def updated_ids(self, kind: DocumentKind) -> list[str]:
        return [str(doc["_id"]) for k, doc in self.updates if k is kind]


class ManualTimer:
    def __init__(self, due: float, callback: Callable[[], Any], interval: Optional[float]):
        self.due = due
        self.callback = callback
        self.interval = interval
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler driven by advance(); records every timer it hands out."""

    def __init__(self):
        self.now = 0.0
        self.timers: list[ManualTimer] = []
        self.fired: list[float] = []

    def call_later(self, delay: float, callback: Callable[[], Any]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, callback, None)
        self.timers.append(timer)
        return timer

    def call_every(self, interval: float, callback: Callable[[], Any]) -> ManualTimer:
        timer = ManualTimer(self.now + interval, callback, interval)
        self.timers.append(timer)
        return timer

    def cancel_all(self) -> None:
        for timer in self.timers:
            timer.cancel()

    def advance(self, seconds: float) -> None:
        """Move time forward, firing due timers in order."""
        target = self.now + seconds
        while True:
            due = [t for t in self.timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.now = timer.due
            self.fired.append(timer.due)
            if timer.interval is None:
                self.timers.remove(timer)
            else:
                timer.due += timer.interval
            timer.callback()
        self.now = target


class FakeClock:
    """Monotonic clock under test control."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class ImmediateTaskQueue:
    """Runs submitted tasks inline, recording their keys."""

    def __init__(self):
        self.submitted: list[Optional[str]] = []

    def submit(self, func, *args, key=None, description=""):
        self.submitted.append(key)
        func(*args)

    def join(self, timeout=None) -> bool:
        return True

    def close(self) -> None:
        pass


class DocumentFactory:
    """Inserts graph documents straight into a store (no hooks)."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def digital_entity(self, licence: Optional[str] = "CC0", **fields) -> ObjectId:
        doc = {"title": "Object", "description": "", "persons": [], "institutions": []}
        if licence is not None:
            doc["licence"] = licence
        doc.update(fields)
        return self.store.collection(DocumentKind.DIGITAL_ENTITY).insert_one(doc)

    def entity(
        self,
        digital_entity: Any = None,
        *,
        name: str = "Entity",
        media_type: Optional[str] = "model",
        allow_download: bool = False,
        **fields,
    ) -> ObjectId:
        doc: dict[str, Any] = {
            "name": name,
            "mediaType": media_type,
            "options": {"allowDownload": allow_download},
            "annotations": {},
            "finished": True,
            "online": True,
        }
        if digital_entity is not None:
            doc["relatedDigitalEntity"] = {"_id": str(digital_entity)}
        doc.update(fields)
        return self.store.collection(DocumentKind.ENTITY).insert_one(doc)

    def compilation(self, *entity_ids: ObjectId, name: str = "Compilation", **fields) -> ObjectId:
        doc: dict[str, Any] = {
            "name": name,
            "description": "",
            "entities": {str(e): {"_id": str(e)} for e in entity_ids},
            "annotations": {},
        }
        doc.update(fields)
        return self.store.collection(DocumentKind.COMPILATION).insert_one(doc)

    def profile(self, *entity_ids: ObjectId, display_name: str = "Profile", **fields) -> ObjectId:
        doc: dict[str, Any] = {
            "displayName": display_name,
            "entities": {str(e): {"_id": str(e)} for e in entity_ids},
            "annotations": {},
        }
        doc.update(fields)
        return self.store.collection(DocumentKind.PROFILE).insert_one(doc)

    def get(self, kind: DocumentKind, doc_id: ObjectId) -> dict:
        return self.store.collection(kind).find_one({"_id": doc_id})


@pytest.fixture
def store(tmp_path: Path):
    """A fresh SQLite document store."""
    doc_store = DocumentStore(tmp_path / "documents.db")
    yield doc_store
    doc_store.close()


@pytest.fixture
def docs(store) -> DocumentFactory:
    return DocumentFactory(store)


@pytest.fixture
def search() -> RecordingSearchService:
    return RecordingSearchService()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def immediate_tasks() -> ImmediateTaskQueue:
    return ImmediateTaskQueue()


@pytest.fixture
def repo(tmp_path: Path, store, search, scheduler, clock):
    """Repository over the temporary store with a real background task queue."""
    repository = Repository(
        config=StoreConfig(path=tmp_path),
        doc_store=store,
        search_service=search,
        scheduler=scheduler,
        task_queue=TaskQueue(),
        clock=clock,
    )
    yield repository
    repository.close()
