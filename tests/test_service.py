"""Tests for mudpuppy MemoryService — the operation set the agent calls."""
import asyncio
from datetime import datetime

import pytest

from mudpuppy.config import MemoryConfig
from mudpuppy.embeddings import HashEmbedding
from mudpuppy.indexer import FILE_INDEX_SOURCE
from mudpuppy.models import MemoryInput, SearchMode, SearchOptions
from mudpuppy.service import MemoryService


def _today_log(config):
    return config.daily_log_dir / f"{datetime.now().strftime('%Y-%m-%d')}.md"


class TestAdd:

    def test_add_string_with_fields(self, service):
        result = service.add("Bob's birthday is in May", entry_type="event", importance=7, tags=["bob"])
        entry = service.get(result.id)
        assert entry.entry_type.value == "event"
        assert entry.importance == 7
        assert entry.tags == ["bob"]

    def test_add_input_object(self, service):
        result = service.add(MemoryInput(content="plain input", source="agent"))
        assert service.get(result.id).source == "agent"

    @pytest.mark.parametrize("content", ["", "   \n"])
    def test_add_empty_rejected(self, service, content):
        with pytest.raises(ValueError):
            service.add(content)
        assert service.stats().total_entries == 0

    def test_add_duplicate(self, service):
        first = service.add("said twice")
        second = service.add("said twice")
        assert second.duplicate is True
        assert second.id == first.id

    def test_add_async(self, service):
        result = asyncio.run(service.add_async("stored from a coroutine", entry_type="insight"))
        assert result.created
        assert service.get(result.id).content == "stored from a coroutine"

    def test_add_with_other_provider(self, service, embedder):
        other = HashEmbedding(dimension=embedder.dimension)
        calls = embedder.calls
        service.add("embedded elsewhere", provider=other)
        assert embedder.calls == calls


class TestDailyLog:

    def test_new_entry_logged(self, service, config):
        service.add("Carol prefers tea", entry_type="preference")
        text = _today_log(config).read_text()
        assert "[preference] (manual) Carol prefers tea" in text

    def test_duplicate_not_logged_twice(self, service, config):
        service.add("only once")
        service.add("only once")
        assert _today_log(config).read_text().count("only once") == 1

    def test_file_index_entries_not_logged(self, service, config):
        service.add("came from a note", source=FILE_INDEX_SOURCE)
        assert not _today_log(config).exists()

    def test_log_failure_does_not_fail_add(self, service, config):
        config.daily_log_dir.parent.mkdir(parents=True, exist_ok=True)
        config.daily_log_dir.write_text("a file where the directory should be")
        result = service.add("still stored")
        assert result.created
        assert service.get(result.id) is not None


class TestGetAndDelete:

    def test_get_logs_access_when_asked(self, service):
        entry_id = service.add("look me up").id
        service.get(entry_id)
        assert service.get(entry_id).access_count == 0
        service.get(entry_id, log_access=True)
        assert service.get(entry_id).access_count == 1
        assert [a.access_type for a in service.store.get_access_log(entry_id)] == ["get"]

    def test_get_missing(self, service):
        assert service.get(404, log_access=True) is None

    def test_delete(self, service):
        entry_id = service.add("temporary").id
        assert service.delete(entry_id) is True
        assert service.delete(entry_id) is False
        assert service.search("temporary") == []


class TestSearch:

    def test_search_string(self, service):
        coffee = service.add("Alice drinks espresso at breakfast").id
        service.add("Quarterly taxes are due in April")
        results = service.search("caffeine", limit=1)
        assert [r.entry.id for r in results] == [coffee]

    def test_search_logs_access(self, service):
        entry_id = service.add("logged search hit").id
        results = service.search("logged", log_access=True)
        assert results
        log = service.store.get_access_log(entry_id)
        assert log[0].access_type == "search"
        assert log[0].query_text == "logged"
        assert log[0].relevance_score == pytest.approx(results[0].score)

    def test_search_without_logging(self, service):
        entry_id = service.add("quiet search hit").id
        service.search("quiet")
        assert service.store.get_access_log(entry_id) == []

    def test_config_mode_and_weights(self, store, embedder, config):
        config.search_mode = SearchMode.KEYWORD
        svc = MemoryService(store, None, config=config)
        entry_id = store.add_entry(MemoryInput(content="keyword only"), embedder.embed("keyword only")).id
        results = svc.search("keyword")
        assert [r.entry.id for r in results] == [entry_id]
        assert results[0].matched_by == ["keyword"]

    def test_config_weights_fill_options(self, service, config):
        config.vector_weight = 0.0
        config.keyword_weight = 1.0
        options = SearchOptions("anything")
        service.search(options)
        assert options.vector_weight == 0.0
        assert options.keyword_weight == 1.0

    def test_explicit_weights_kept(self, service):
        options = SearchOptions("anything", vector_weight=0.5, keyword_weight=0.5)
        service.search(options)
        assert options.vector_weight == 0.5

    def test_search_async(self, service):
        dog = service.add("the hound sleeps by the fire").id
        results = asyncio.run(service.search_async("puppy", mode="vector", log_access=True))
        assert results[0].entry.id == dog
        assert service.get(dog).access_count == 1

    def test_search_async_keyword_skips_embedding(self, service, embedder):
        service.add("async keyword")
        calls = embedder.calls
        results = asyncio.run(service.search_async("async", mode=SearchMode.KEYWORD))
        assert len(results) == 1
        assert embedder.calls == calls


class TestIndexerControl:

    def test_initial_scan(self, service, workspace):
        (workspace / "todo.md").write_text("buy milk")
        assert service.initial_scan() == 1
        hits = service.search("milk", mode="keyword")
        assert hits[0].entry.source == FILE_INDEX_SOURCE

    def test_start_and_stop(self, service, config, workspace):
        config.force_polling = True
        svc = MemoryService(service.store, service.provider, config=config)
        svc.start_indexer(interval=0.1)
        assert svc.is_indexer_running()
        svc.stop_indexer()
        svc.stop_indexer()
        assert not svc.is_indexer_running()

    def test_without_indexer(self, store):
        svc = MemoryService(store, None)
        assert svc.indexer is None
        with pytest.raises(ValueError):
            svc.start_indexer()
        with pytest.raises(ValueError):
            svc.initial_scan()
        svc.stop_indexer()
        assert not svc.is_indexer_running()


class TestMaintenance:

    def test_stats(self, service):
        service.add("one fact")
        service.add("one task", entry_type="task")
        stats = service.stats()
        assert stats.total_entries == 2
        assert stats.by_type == {"fact": 1, "task": 1}

    def test_reconcile_re_embeds(self, service):
        entry_id = service.add("vector went missing").id
        service.store._conn.execute("DELETE FROM memory_vec WHERE rowid = ?", (entry_id,))
        assert service.reconcile() == 1
        assert service.store.entries_missing_vectors() == []
        assert service.reconcile() == 0
        results = service.search("vector went missing", mode="vector")
        assert results[0].entry.id == entry_id

    def test_without_provider(self, store):
        svc = MemoryService(store, None)
        with pytest.raises(ValueError):
            svc.add("cannot embed")


class TestFromConfig:

    def test_hash_provider_from_env(self, tmp_home, monkeypatch):
        monkeypatch.setenv("MUDPUPPY_EMBEDDINGS", "hash")
        config = MemoryConfig.load()
        with MemoryService.from_config(config) as svc:
            assert isinstance(svc.provider, HashEmbedding)
            assert svc.store.dimension == svc.provider.dimension
            assert svc.indexer.root == (tmp_home / "workspace").resolve()
            svc.add("persisted via config")
        assert (tmp_home / "data" / "memory.db").exists()

    def test_explicit_provider(self, tmp_home, embedder):
        with MemoryService.from_config(MemoryConfig.load(), provider=embedder) as svc:
            assert svc.provider is embedder
            assert svc.store.dimension == embedder.dimension
