"""End-to-end tests for the Repository facade."""

import logging

import pytest
from bson import ObjectId

from repograph.api import Repository
from repograph.config import StoreConfig
from repograph.hooks import AFTER_SAVE
from repograph.types import (
    DOWNLOADABLE,
    HITS,
    LICENSES,
    NORMALIZED_NAME,
    DocumentKind,
)

ENTITY = DocumentKind.ENTITY
COMPILATION = DocumentKind.COMPILATION
PROFILE = DocumentKind.PROFILE
DIGITAL_ENTITY = DocumentKind.DIGITAL_ENTITY


def _save_graph(repo, licence="CC0"):
    """DigitalEntity -> Entity -> Compilation, saved through the write path."""
    de = repo.save(DIGITAL_ENTITY, {"title": "Vase", "licence": licence}, actor="alice")["_id"]
    e = repo.save(ENTITY, {
        "name": "Vase",
        "mediaType": "model",
        "options": {"allowDownload": True},
        "relatedDigitalEntity": {"_id": str(de)},
        "finished": True,
        "online": True,
    }, actor="alice")["_id"]
    c = repo.save(COMPILATION, {
        "name": "Pottery",
        "entities": {str(e): {"_id": str(e)}},
    }, actor="alice")["_id"]
    assert repo.wait_for_background(timeout=10)
    return de, e, c


class TestWritePath:
    def test_save_computes_derived_fields(self, repo):
        de, e, c = _save_graph(repo)

        entity = repo.get(ENTITY, e)
        compilation = repo.get(COMPILATION, c)
        assert entity[LICENSES] == ["CC0"]
        assert entity[NORMALIZED_NAME] == "vase"
        assert compilation[LICENSES] == ["CC0"]
        assert compilation[DOWNLOADABLE] is True

    def test_licence_removal_propagates(self, repo):
        de, e, c = _save_graph(repo)

        repo.save(DIGITAL_ENTITY, {"_id": de, "title": "Vase"}, actor="alice")
        assert repo.wait_for_background(timeout=10)

        assert repo.get(ENTITY, e)[LICENSES] == []
        assert repo.get(COMPILATION, c)[LICENSES] == []

    def test_entity_change_reaches_containers(self, repo):
        de, e, c = _save_graph(repo)
        other = repo.save(DIGITAL_ENTITY, {"title": "Other", "licence": "CC-BY"}, actor="alice")["_id"]

        stored = repo.get(ENTITY, e)
        stored["relatedDigitalEntity"] = {"_id": str(other)}
        repo.save(ENTITY, stored, actor="alice")
        assert repo.wait_for_background(timeout=10)

        assert repo.get(COMPILATION, c)[LICENSES] == ["CC-BY"]

    def test_system_save_leaves_derived_fields_to_backfill(self, repo):
        e = repo.save(ENTITY, {"name": "Imported"})["_id"]
        assert repo.wait_for_background(timeout=10)
        assert LICENSES not in repo.get(ENTITY, e)

        stats = repo.ensure_filterable_properties()

        assert stats.updated == 1
        assert repo.get(ENTITY, e)[LICENSES] == []

    def test_system_licence_removal_heals_on_backfill(self, repo, docs):
        de = docs.digital_entity("CC0")
        e = docs.entity(de, allow_download=True)
        c = docs.compilation(e)
        repo.ensure_filterable_properties()
        assert docs.get(COMPILATION, c)[LICENSES] == ["CC0"]
        assert docs.get(COMPILATION, c)[DOWNLOADABLE] is True

        repo.save(DIGITAL_ENTITY, {"_id": de, "title": "Vase"})
        assert repo.wait_for_background(timeout=10)
        stats = repo.ensure_filterable_properties()

        assert stats.failed == 0
        assert docs.get(ENTITY, e)[LICENSES] == []
        assert docs.get(COMPILATION, c)[LICENSES] == []

    def test_system_delete_of_digital_entity_heals_on_backfill(self, repo, docs):
        de = docs.digital_entity("CC0")
        c = docs.compilation(docs.entity(de))
        repo.ensure_filterable_properties()

        repo.delete(DIGITAL_ENTITY, de)
        assert repo.wait_for_background(timeout=10)
        repo.ensure_filterable_properties()

        assert docs.get(COMPILATION, c)[LICENSES] == []

    def test_resave_keeps_hit_counter(self, repo, store):
        de, e, c = _save_graph(repo)
        store.collection(ENTITY).update_one({"_id": e}, {"$inc": {HITS: 4}})

        stored = repo.get(ENTITY, e)
        del stored[HITS]
        stored["name"] = "Renamed"
        repo.save(ENTITY, stored, actor="alice")

        entity = repo.get(ENTITY, e)
        assert entity[HITS] == 4
        assert entity[NORMALIZED_NAME] == "renamed"

    def test_failing_hook_does_not_undo_save(self, repo, caplog):
        def broken(document, actor):
            raise RuntimeError("hook exploded")

        repo.hooks.add_hook(PROFILE, AFTER_SAVE, broken)

        with caplog.at_level(logging.WARNING, logger="repograph.hooks"):
            saved = repo.save(PROFILE, {"displayName": "Ada"}, actor="alice")

        assert repo.get(PROFILE, saved["_id"])["displayName"] == "Ada"
        assert "hook exploded" in caplog.text

    def test_resolve(self, repo):
        de, e, c = _save_graph(repo)
        compilation = repo.resolve(COMPILATION, c)
        assert compilation["entities"][str(e)]["relatedDigitalEntity"]["licence"] == "CC0"

    def test_search_index_follows_saves(self, repo, search):
        de, e, c = _save_graph(repo)
        assert str(e) in search.updated_ids(ENTITY)
        assert str(c) in search.updated_ids(COMPILATION)


class TestDelete:
    def test_delete_entity_cascades(self, repo, search):
        de, e, c = _save_graph(repo)

        assert repo.delete(ENTITY, e, actor="alice") is True
        assert repo.wait_for_background(timeout=10)

        assert repo.get(ENTITY, e) is None
        compilation = repo.get(COMPILATION, c)
        assert compilation["entities"] == {}
        assert compilation[LICENSES] == []
        assert (ENTITY, str(e)) in search.deletes

    def test_delete_digital_entity_clears_licences(self, repo):
        de, e, c = _save_graph(repo)

        repo.delete(DIGITAL_ENTITY, de, actor="alice")
        assert repo.wait_for_background(timeout=10)

        assert repo.get(ENTITY, e)[LICENSES] == []
        assert repo.get(COMPILATION, c)[LICENSES] == []

    def test_delete_missing(self, repo):
        assert repo.delete(ENTITY, ObjectId(), actor="alice") is False


class TestPopularity:
    def test_rate_limited_per_client(self, repo, clock):
        de, e, c = _save_graph(repo)

        assert repo.increase_popularity(ENTITY, e, "10.0.0.1") is True
        assert repo.increase_popularity(ENTITY, e, "10.0.0.1") is False
        assert repo.increase_popularity(ENTITY, e, "10.0.0.2") is True
        clock.advance(3600)
        assert repo.increase_popularity(ENTITY, e, "10.0.0.1") is True

        assert repo.get(ENTITY, e)[HITS] == 3

    def test_expired_clients_are_forgotten(self, repo, clock):
        de, e, c = _save_graph(repo)
        for n in range(5):
            repo.increase_popularity(ENTITY, e, f"10.0.0.{n}")
        assert len(repo._last_hit) == 5

        clock.advance(3600)
        assert repo.increase_popularity(COMPILATION, c, "10.0.0.9") is True

        assert len(repo._last_hit) == 1

    def test_limit_is_per_document(self, repo):
        de, e, c = _save_graph(repo)
        assert repo.increase_popularity(ENTITY, e, "10.0.0.1") is True
        assert repo.increase_popularity(COMPILATION, c, "10.0.0.1") is True

    def test_not_counted(self, repo):
        de, e, c = _save_graph(repo)
        assert repo.increase_popularity(DIGITAL_ENTITY, de, "10.0.0.1") is False
        assert repo.increase_popularity(ENTITY, ObjectId(), "10.0.0.1") is False
        assert repo.increase_popularity(ENTITY, e, "") is False

    def test_decay(self, repo):
        de, e, c = _save_graph(repo)
        repo.increase_popularity(ENTITY, e, "10.0.0.1")
        repo.increase_popularity(ENTITY, e, "10.0.0.2")

        assert repo.decrease_popularity() == 1
        assert repo.get(ENTITY, e)[HITS] == 1


class TestStartup:
    def test_startup_runs_all_jobs(self, repo, docs, search, scheduler):
        e = docs.entity(docs.digital_entity("CC0"))
        c = docs.compilation(e)

        repo.startup()

        assert docs.get(COMPILATION, c)[LICENSES] == ["CC0"]
        assert docs.get(ENTITY, e)[HITS] == 0
        assert len(scheduler.timers) == 1
        assert search.updated_ids(ENTITY) == [str(e)]
        assert search.updated_ids(COMPILATION) == [str(c)]
        assert repo.status()["compilation"]["missing_derived"] == 0

    def test_decay_timer_is_started_once(self, repo, scheduler):
        first = repo.decrease_popularity_timer()
        assert repo.decrease_popularity_timer() is first
        assert len(scheduler.timers) == 1

    def test_failing_job_does_not_stop_others(self, repo, scheduler, monkeypatch, caplog):
        def broken(**kwargs):
            raise RuntimeError("backfill exploded")

        monkeypatch.setattr(repo, "ensure_filterable_properties", broken)

        with caplog.at_level(logging.WARNING, logger="repograph.api"):
            repo.startup()

        assert "backfill exploded" in caplog.text
        assert len(scheduler.timers) == 1

    def test_close_stops_timers(self, repo, scheduler, search):
        repo.decrease_popularity_timer()
        repo.close()
        repo.close()
        assert all(t.cancelled for t in scheduler.timers)
        assert search.closed


def test_search_disabled(tmp_path, store, scheduler):
    with Repository(config=StoreConfig(path=tmp_path), doc_store=store, scheduler=scheduler) as repo:
        assert repo.search_enabled is False
        assert repo.ensure_search_index() == 0


def test_open_from_store_path(tmp_path, monkeypatch):
    monkeypatch.delenv("REPOGRAPH_SEARCH_URL", raising=False)
    store_path = tmp_path / "store"

    with Repository(store_path) as repo:
        saved = repo.save(PROFILE, {"displayName": "Ada"}, actor="alice")
        assert repo.wait_for_background(timeout=10)
        assert repo.store_path == store_path.resolve()

    with Repository(store_path) as repo:
        assert repo.get(PROFILE, saved["_id"])[NORMALIZED_NAME] == "ada"
        assert (store_path / "repograph-ops.log").exists()
