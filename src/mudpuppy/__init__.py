"""mudpuppy — long-lived personal memory for an autonomous agent.

Direct Python API::

    from mudpuppy import MemoryConfig, MemoryService
    with MemoryService.from_config(MemoryConfig.load()) as memory:
        memory.add("Alice likes coffee", entry_type="preference")
        results = memory.search("morning caffeine")
"""

__version__ = "0.1.0"

from mudpuppy.config import MemoryConfig
from mudpuppy.embeddings import (
    EmbeddingProvider,
    EmbeddingUnavailableError,
    HashEmbedding,
    LocalEmbedding,
    create_embedding_provider,
)
from mudpuppy.indexer import FileIndexer
from mudpuppy.models import (
    AccessLogEntry,
    AddResult,
    EntryType,
    MemoryEntry,
    MemoryInput,
    MemoryStats,
    SearchMode,
    SearchOptions,
    SearchResult,
)
from mudpuppy.search import hybrid_search
from mudpuppy.service import MemoryService
from mudpuppy.sqlite_store import MemoryStore, content_hash

__all__ = [
    "MemoryService",
    "MemoryConfig",
    # Storage
    "MemoryStore",
    "content_hash",
    "hybrid_search",
    "FileIndexer",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingUnavailableError",
    "HashEmbedding",
    "LocalEmbedding",
    "create_embedding_provider",
    # Types
    "AccessLogEntry",
    "AddResult",
    "EntryType",
    "MemoryEntry",
    "MemoryInput",
    "MemoryStats",
    "SearchMode",
    "SearchOptions",
    "SearchResult",
    # Meta
    "__version__",
]
