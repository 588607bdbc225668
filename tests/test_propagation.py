"""Tests for hook-driven recomputation and search index maintenance."""

import logging

import pytest
from bson import ObjectId

from repograph.hooks import AFTER_SAVE, ON_DELETE, HookManager
from repograph.propagation import (
    Propagator,
    SearchIndexer,
    index_document,
    is_published,
    register_propagation_hooks,
    register_search_hooks,
    write_changed,
)
from repograph.resolver import Resolver
from repograph.types import (
    CREATED_AT,
    DOWNLOADABLE,
    HITS,
    LICENSES,
    MEDIA_TYPES,
    NORMALIZED_NAME,
    DocumentKind,
)

ENTITY = DocumentKind.ENTITY
COMPILATION = DocumentKind.COMPILATION
PROFILE = DocumentKind.PROFILE
DIGITAL_ENTITY = DocumentKind.DIGITAL_ENTITY


@pytest.fixture
def resolver(store):
    return Resolver(store)


@pytest.fixture
def propagator(store, resolver, immediate_tasks):
    return Propagator(store, resolver, immediate_tasks)


@pytest.fixture
def hooks(propagator):
    manager = HookManager()
    register_propagation_hooks(manager, propagator)
    return manager


class TestWriteChanged:
    def test_writes_only_changed_fields(self, docs, store):
        e = docs.entity(**{LICENSES: ["A"]})
        raw = docs.get(ENTITY, e)

        assert write_changed(store.collection(ENTITY), raw, {LICENSES: ["A"], DOWNLOADABLE: True})

        stored = docs.get(ENTITY, e)
        assert stored[LICENSES] == ["A"]
        assert stored[DOWNLOADABLE] is True

    def test_nothing_to_write(self, docs, store):
        e = docs.entity(**{LICENSES: ["A"]})
        raw = docs.get(ENTITY, e)
        assert write_changed(store.collection(ENTITY), raw, {LICENSES: ["A"]}) is False


class TestRefresh:
    def test_entity_fields_computed(self, docs, propagator):
        de = docs.digital_entity("CC-BY")
        e = docs.entity(de, name="  Bronze Vase ", media_type="image", allow_download=True)

        assert propagator.refresh(ENTITY, e) is True

        stored = docs.get(ENTITY, e)
        assert stored[LICENSES] == ["CC-BY"]
        assert stored[MEDIA_TYPES] == ["image"]
        assert stored[DOWNLOADABLE] is True
        assert stored[NORMALIZED_NAME] == "bronze vase"
        assert stored[HITS] == 0
        assert isinstance(stored[CREATED_AT], int)

    def test_second_refresh_writes_nothing(self, docs, propagator):
        e = docs.entity(docs.digital_entity())
        propagator.refresh(ENTITY, e)
        assert propagator.refresh(ENTITY, e) is False

    def test_hits_are_never_reset(self, docs, propagator):
        e = docs.entity(docs.digital_entity(), **{HITS: 5})
        propagator.refresh(ENTITY, e)
        assert docs.get(ENTITY, e)[HITS] == 5

    def test_missing_document(self, propagator):
        assert propagator.refresh(ENTITY, ObjectId()) is False

    def test_compilation_aggregates_members(self, docs, propagator):
        a = docs.entity(docs.digital_entity("A"), media_type="audio")
        b = docs.entity(docs.digital_entity("B"), allow_download=True)
        c = docs.compilation(a, b)

        propagator.refresh(COMPILATION, c)

        stored = docs.get(COMPILATION, c)
        assert stored[LICENSES] == ["A", "B"]
        assert stored[MEDIA_TYPES] == ["audio", "model"]
        assert stored[DOWNLOADABLE] is True


class TestHooks:
    def test_entity_save_refreshes_entity_and_containers(self, docs, hooks, immediate_tasks):
        e = docs.entity(docs.digital_entity("CC0"), allow_download=True)
        c = docs.compilation(e)
        p = docs.profile(e)

        hooks.fire(ENTITY, AFTER_SAVE, docs.get(ENTITY, e), "alice")

        assert docs.get(ENTITY, e)[LICENSES] == ["CC0"]
        assert docs.get(COMPILATION, c)[LICENSES] == ["CC0"]
        assert docs.get(PROFILE, p)[DOWNLOADABLE] is True
        assert immediate_tasks.submitted == [f"containers:{e}"]

    def test_system_save_only_invalidates(self, docs, hooks, propagator, immediate_tasks):
        e = docs.entity(docs.digital_entity())
        c = docs.compilation(e)
        propagator.refresh(ENTITY, e)
        propagator.refresh(COMPILATION, c)

        hooks.fire(ENTITY, AFTER_SAVE, docs.get(ENTITY, e), None)

        entity = docs.get(ENTITY, e)
        assert LICENSES not in entity
        assert NORMALIZED_NAME not in entity
        assert HITS in entity
        assert LICENSES not in docs.get(COMPILATION, c)
        assert immediate_tasks.submitted == []

    def test_system_digital_entity_save_invalidates_dependents(self, docs, store, hooks, propagator):
        de = docs.digital_entity("CC0")
        e = docs.entity(de)
        other = docs.entity(docs.digital_entity("CC-BY"))
        c = docs.compilation(e)
        unrelated = docs.compilation(other)
        for kind, doc_id in ((ENTITY, e), (ENTITY, other), (COMPILATION, c), (COMPILATION, unrelated)):
            propagator.refresh(kind, doc_id)

        store.collection(DIGITAL_ENTITY).update_one({"_id": de}, {"$unset": {"licence": ""}})
        hooks.fire(DIGITAL_ENTITY, AFTER_SAVE, docs.get(DIGITAL_ENTITY, de), None)

        assert LICENSES not in docs.get(ENTITY, e)
        assert LICENSES not in docs.get(COMPILATION, c)
        assert docs.get(ENTITY, other)[LICENSES] == ["CC-BY"]
        assert docs.get(COMPILATION, unrelated)[LICENSES] == ["CC-BY"]

    def test_system_entity_delete_invalidates_containers(self, docs, store, hooks, propagator, monkeypatch):
        e = docs.entity(docs.digital_entity("CC0"))
        p = docs.profile(e)
        propagator.refresh(PROFILE, p)
        # Leave only the synchronous invalidation
        monkeypatch.setattr(propagator, "_defer", lambda *args: None)

        removed = docs.get(ENTITY, e)
        store.collection(ENTITY).delete_one({"_id": e})
        hooks.fire(ENTITY, ON_DELETE, removed, None)

        assert LICENSES not in docs.get(PROFILE, p)


    def test_container_save_refreshes_itself(self, docs, hooks):
        e = docs.entity(docs.digital_entity("CC0"))
        p = docs.profile(e)

        hooks.fire(PROFILE, AFTER_SAVE, docs.get(PROFILE, p), "alice")

        assert docs.get(PROFILE, p)[LICENSES] == ["CC0"]
        assert docs.get(PROFILE, p)[NORMALIZED_NAME] == "profile"

    def test_licence_change_reaches_entities_and_containers(self, docs, store, hooks, propagator):
        de = docs.digital_entity("CC0")
        e = docs.entity(de)
        c = docs.compilation(e, docs.entity(docs.digital_entity("CC-BY")))
        propagator.refresh(ENTITY, e)
        propagator.refresh(COMPILATION, c)

        store.collection(DIGITAL_ENTITY).update_one({"_id": de}, {"$set": {"licence": "CC-BY-SA"}})
        hooks.fire(DIGITAL_ENTITY, AFTER_SAVE, docs.get(DIGITAL_ENTITY, de), "alice")

        assert docs.get(ENTITY, e)[LICENSES] == ["CC-BY-SA"]
        assert docs.get(COMPILATION, c)[LICENSES] == ["CC-BY", "CC-BY-SA"]

    def test_licence_removed(self, docs, store, hooks, propagator):
        de = docs.digital_entity("CC0")
        e = docs.entity(de)
        c = docs.compilation(e)
        propagator.refresh(ENTITY, e)
        propagator.refresh(COMPILATION, c)

        store.collection(DIGITAL_ENTITY).update_one({"_id": de}, {"$unset": {"licence": ""}})
        hooks.fire(DIGITAL_ENTITY, AFTER_SAVE, docs.get(DIGITAL_ENTITY, de), "alice")

        assert docs.get(ENTITY, e)[LICENSES] == []
        assert docs.get(COMPILATION, c)[LICENSES] == []

    def test_digital_entity_delete(self, docs, store, hooks, propagator):
        de = docs.digital_entity("CC0")
        e = docs.entity(de)
        propagator.refresh(ENTITY, e)

        removed = docs.get(DIGITAL_ENTITY, de)
        store.collection(DIGITAL_ENTITY).delete_one({"_id": de})
        hooks.fire(DIGITAL_ENTITY, ON_DELETE, removed, "alice")

        assert docs.get(ENTITY, e)[LICENSES] == []

    def test_entity_delete_removes_membership(self, docs, store, hooks, propagator):
        gone = docs.entity(docs.digital_entity("A"))
        kept = docs.entity(docs.digital_entity("B"))
        c = docs.compilation(gone, kept)
        propagator.refresh(COMPILATION, c)

        removed = docs.get(ENTITY, gone)
        store.collection(ENTITY).delete_one({"_id": gone})
        # System deletes still cascade
        hooks.fire(ENTITY, ON_DELETE, removed, None)

        stored = docs.get(COMPILATION, c)
        assert list(stored["entities"]) == [str(kept)]
        assert stored[LICENSES] == ["B"]

    def test_failing_container_does_not_block_others(self, docs, hooks, propagator, monkeypatch, caplog):
        e = docs.entity(docs.digital_entity("CC0"))
        bad = docs.compilation(e)
        good = docs.compilation(e)
        original = propagator.refresh

        def refresh(kind, document_id):
            if document_id == bad:
                raise RuntimeError("store hiccup")
            return original(kind, document_id)

        monkeypatch.setattr(propagator, "refresh", refresh)

        with caplog.at_level(logging.WARNING, logger="repograph.propagation"):
            hooks.fire(ENTITY, AFTER_SAVE, docs.get(ENTITY, e), "alice")

        assert docs.get(COMPILATION, good)[LICENSES] == ["CC0"]
        assert LICENSES not in docs.get(COMPILATION, bad)
        assert "store hiccup" in caplog.text


class TestSearchIndexer:
    @pytest.fixture
    def indexer(self, store, resolver, search, immediate_tasks):
        return SearchIndexer(store, resolver, search, immediate_tasks)

    @pytest.fixture
    def search_hooks(self, indexer):
        manager = HookManager()
        register_search_hooks(manager, indexer)
        return manager

    def test_published_check(self):
        assert is_published({"finished": True, "online": True})
        assert not is_published({"finished": True, "online": False})
        assert not is_published({"finished": 1, "online": True})

    def test_index_document_pushes_resolved_document(self, docs, resolver, search):
        de = docs.digital_entity("CC0")
        e = docs.entity(de)

        assert index_document(resolver, search, ENTITY, docs.get(ENTITY, e))

        (kind, document), = search.updates
        assert kind is ENTITY
        assert document["relatedDigitalEntity"]["licence"] == "CC0"

    def test_index_failure_is_logged(self, docs, resolver, search, caplog):
        e = docs.entity(docs.digital_entity())
        search.fail_ids.add(str(e))

        with caplog.at_level(logging.WARNING, logger="repograph.propagation"):
            assert index_document(resolver, search, ENTITY, docs.get(ENTITY, e)) is False

        assert "Failed to index" in caplog.text

    def test_entity_save_reindexes_entity_and_compilations(self, docs, search, search_hooks):
        e = docs.entity(docs.digital_entity())
        c = docs.compilation(e)
        docs.profile(e)

        search_hooks.fire(ENTITY, AFTER_SAVE, docs.get(ENTITY, e), None)

        assert search.updated_ids(ENTITY) == [str(e)]
        assert search.updated_ids(COMPILATION) == [str(c)]
        assert search.updated_ids(PROFILE) == []

    def test_unpublished_entity_is_removed(self, docs, search, search_hooks):
        e = docs.entity(docs.digital_entity(), online=False)

        search_hooks.fire(ENTITY, AFTER_SAVE, docs.get(ENTITY, e), "alice")

        assert search.updated_ids(ENTITY) == []
        assert search.deletes == [(ENTITY, str(e))]

    def test_digital_entity_save_reindexes_entities(self, docs, search, search_hooks):
        de = docs.digital_entity()
        e = docs.entity(de)

        search_hooks.fire(DIGITAL_ENTITY, AFTER_SAVE, docs.get(DIGITAL_ENTITY, de), "alice")

        assert search.updated_ids(ENTITY) == [str(e)]

    def test_compilation_save_and_delete(self, docs, search, search_hooks):
        c = docs.compilation()
        raw = docs.get(COMPILATION, c)

        search_hooks.fire(COMPILATION, AFTER_SAVE, raw, "alice")
        search_hooks.fire(COMPILATION, ON_DELETE, raw, "alice")

        assert search.updated_ids(COMPILATION) == [str(c)]
        assert search.deletes == [(COMPILATION, str(c))]
