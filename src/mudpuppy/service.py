"""
mudpuppy memory service — one object owning the store, embeddings and indexer.

Construct it once at process start and close it at shutdown::

    with MemoryService.from_config(MemoryConfig.load()) as memory:
        memory.add("Alice likes coffee", entry_type="preference")
        hits = memory.search("morning caffeine")
        memory.start_indexer()

There are no module-level singletons; tests build as many services as
they need, each on its own database file.
"""

import logging
from typing import List, Optional, Union

from mudpuppy.config import MemoryConfig
from mudpuppy.daily_log import DailyLog
from mudpuppy.embeddings import EmbeddingProvider, create_embedding_provider
from mudpuppy.indexer import FILE_INDEX_SOURCE, FileIndexer
from mudpuppy.models import (
    AddResult,
    MemoryEntry,
    MemoryInput,
    MemoryStats,
    SearchMode,
    SearchOptions,
    SearchResult,
)
from mudpuppy.search import hybrid_search
from mudpuppy.sqlite_store import MemoryStore

logger = logging.getLogger("mudpuppy.service")


class MemoryService:
    """Operation set over a memory store: add/get/delete/search/stats and indexing."""

    def __init__(
        self,
        store: MemoryStore,
        provider: Optional[EmbeddingProvider],
        config: Optional[MemoryConfig] = None,
        indexer: Optional[FileIndexer] = None,
        daily_log: Optional[DailyLog] = None,
    ):
        self.store = store
        self.provider = provider
        self.config = config
        self.daily_log = daily_log
        if indexer is None and config is not None and provider is not None:
            indexer = FileIndexer(
                config.workspace,
                store,
                provider,
                extensions=config.index_extensions,
                max_file_size=config.max_file_size,
                debounce=config.debounce_s,
                poll_interval=config.poll_interval_s,
                force_polling=config.force_polling,
            )
        self.indexer = indexer

    @classmethod
    def from_config(cls, config: MemoryConfig, provider: Optional[EmbeddingProvider] = None) -> "MemoryService":
        if provider is None:
            kwargs = {}
            if config.embedding_provider == "local" and config.onnx_model_dir:
                kwargs["model_dir"] = config.onnx_model_dir
            provider = create_embedding_provider(config.embedding_provider, **kwargs)
        store = MemoryStore(config.db_path, dimension=provider.dimension)
        return cls(store, provider, config=config, daily_log=DailyLog(config.daily_log_dir))

    def _require_provider(self, provider: Optional[EmbeddingProvider]) -> EmbeddingProvider:
        provider = provider or self.provider
        if provider is None:
            raise ValueError("no embedding provider configured")
        return provider

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    def add(
        self,
        entry: Union[MemoryInput, str],
        provider: Optional[EmbeddingProvider] = None,
        **fields,
    ) -> AddResult:
        """Embed and store a memory. ``fields`` fill MemoryInput when *entry* is a string."""
        if isinstance(entry, str):
            entry = MemoryInput(content=entry, **fields)
        if not entry.content or not entry.content.strip():
            raise ValueError("content must be a non-empty string")
        embedding = self._require_provider(provider).embed(entry.content)
        result = self.store.add_entry(entry, embedding)
        self._after_add(entry, result)
        return result

    async def add_async(
        self,
        entry: Union[MemoryInput, str],
        provider: Optional[EmbeddingProvider] = None,
        **fields,
    ) -> AddResult:
        """Like :meth:`add`, embedding on a worker thread."""
        if isinstance(entry, str):
            entry = MemoryInput(content=entry, **fields)
        if not entry.content or not entry.content.strip():
            raise ValueError("content must be a non-empty string")
        embedding = await self._require_provider(provider).embed_async(entry.content)
        result = self.store.add_entry(entry, embedding)
        self._after_add(entry, result)
        return result

    def _after_add(self, entry: MemoryInput, result: AddResult) -> None:
        # file-index entries already live in the workspace; logging them would loop
        if not result.created or entry.source == FILE_INDEX_SOURCE or self.daily_log is None:
            return
        try:
            self.daily_log.append(entry.content, entry.entry_type.value, entry.source)
        except OSError as e:
            logger.warning("Daily log append failed: %s", e)

    def get(self, entry_id: int, log_access: bool = False) -> Optional[MemoryEntry]:
        entry = self.store.get_entry(entry_id)
        if entry is not None and log_access:
            self.store.log_access(entry_id, "get")
        return entry

    def delete(self, entry_id: int) -> bool:
        return self.store.delete_entry(entry_id)

    def log_access(
        self,
        entry_id: int,
        access_type: str,
        relevance_score: Optional[float] = None,
        query_text: Optional[str] = None,
    ) -> None:
        self.store.log_access(entry_id, access_type, relevance_score, query_text)

    def stats(self) -> MemoryStats:
        return self.store.get_stats()

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def _options(self, options: Union[SearchOptions, str], **kwargs) -> SearchOptions:
        if isinstance(options, str):
            if self.config is not None:
                kwargs.setdefault("mode", self.config.search_mode)
            options = SearchOptions(query=options, **kwargs)
        if self.config is not None:
            if options.vector_weight is None:
                options.vector_weight = self.config.vector_weight
            if options.keyword_weight is None:
                options.keyword_weight = self.config.keyword_weight
        return options

    def search(
        self,
        options: Union[SearchOptions, str],
        log_access: bool = False,
        **kwargs,
    ) -> List[SearchResult]:
        """Hybrid/vector/keyword search. Accepts SearchOptions or a query plus keyword options."""
        options = self._options(options, **kwargs)
        results = hybrid_search(self.store, self.provider, options)
        if log_access:
            self._log_results(results, options.query)
        return results

    async def search_async(
        self,
        options: Union[SearchOptions, str],
        log_access: bool = False,
        **kwargs,
    ) -> List[SearchResult]:
        options = self._options(options, **kwargs)
        query_embedding = None
        if options.mode != SearchMode.KEYWORD and options.limit > 0:
            query_embedding = await self._require_provider(None).embed_async(options.query)
        results = hybrid_search(self.store, self.provider, options, query_embedding=query_embedding)
        if log_access:
            self._log_results(results, options.query)
        return results

    def _log_results(self, results: List[SearchResult], query: str) -> None:
        for result in results:
            self.store.log_access(result.entry.id, "search", result.score, query)

    # ------------------------------------------------------------------
    # Indexer
    # ------------------------------------------------------------------

    def _require_indexer(self) -> FileIndexer:
        if self.indexer is None:
            raise ValueError("no file indexer configured")
        return self.indexer

    def start_indexer(self, interval: Optional[float] = None, skip_initial_scan: bool = False) -> None:
        self._require_indexer().start(interval=interval, skip_initial_scan=skip_initial_scan)

    def stop_indexer(self) -> None:
        if self.indexer is not None:
            self.indexer.stop()

    def is_indexer_running(self) -> bool:
        return self.indexer is not None and self.indexer.is_running()

    def initial_scan(self) -> int:
        return self._require_indexer().initial_scan()

    # ------------------------------------------------------------------
    # Maintenance and lifecycle
    # ------------------------------------------------------------------

    def reconcile(self) -> int:
        """Re-embed entries that lost their vector row. Returns how many were repaired."""
        missing = self.store.entries_missing_vectors()
        if not missing:
            return 0
        provider = self._require_provider(None)
        repaired = 0
        for entry_id in missing:
            entry = self.store.get_entry(entry_id)
            if entry is None:
                continue
            if self.store.set_embedding(entry_id, provider.embed(entry.content)):
                repaired += 1
        logger.info("Re-embedded %d entries missing vectors", repaired)
        return repaired

    def close(self) -> None:
        self.stop_indexer()
        self.store.close()
        if self.provider is not None:
            self.provider.close()

    def __enter__(self) -> "MemoryService":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
