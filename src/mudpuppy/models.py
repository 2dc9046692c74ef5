"""
Memory data model — entries, inputs, search options and results.

Timestamps are integer milliseconds since the epoch throughout.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger("mudpuppy.models")


class EntryType(str, Enum):
    """Kind of memory entry."""
    FACT = "fact"
    PREFERENCE = "preference"
    EVENT = "event"
    INSIGHT = "insight"
    TASK = "task"
    RELATIONSHIP = "relationship"


class SearchMode(str, Enum):
    """Which indices a search consults."""
    HYBRID = "hybrid"
    VECTOR = "vector"
    KEYWORD = "keyword"


def now_ms() -> int:
    """Current wall-clock time in milliseconds."""
    return int(time.time() * 1000)


def parse_tags(raw: Optional[str]) -> List[str]:
    """Decode the stored JSON tag list. Corrupt values read as no tags."""
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except (TypeError, ValueError):
        logger.debug("Unparsable tag list %r, treating as empty", raw)
        return []
    if not isinstance(tags, list):
        return []
    return [str(t) for t in tags]


@dataclass
class MemoryInput:
    """Caller-supplied fields for a new entry."""
    content: str
    entry_type: EntryType = EntryType.FACT
    source: str = "manual"
    context: Optional[str] = None
    confidence: float = 1.0
    importance: int = 5
    tags: List[str] = field(default_factory=list)
    expires_at: Optional[int] = None

    def __post_init__(self):
        self.entry_type = EntryType(self.entry_type)


@dataclass
class MemoryEntry:
    """A stored memory record."""
    id: int
    content: str
    content_hash: str
    entry_type: EntryType
    source: str
    context: Optional[str]
    confidence: float
    importance: int
    tags: List[str]
    created_at: int
    updated_at: int
    expires_at: Optional[int] = None
    access_count: int = 0
    last_accessed_at: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "MemoryEntry":
        """Build an entry from a ``memory_entries`` row (sqlite3.Row)."""
        try:
            entry_type = EntryType(row["entry_type"])
        except ValueError:
            entry_type = EntryType.FACT
        return cls(
            id=row["id"],
            content=row["content"],
            content_hash=row["content_hash"],
            entry_type=entry_type,
            source=row["source"] or "manual",
            context=row["context"],
            confidence=row["confidence"] if row["confidence"] is not None else 1.0,
            importance=row["importance"] if row["importance"] is not None else 5,
            tags=parse_tags(row["tags"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            expires_at=row["expires_at"],
            access_count=row["access_count"] or 0,
            last_accessed_at=row["last_accessed_at"],
        )

    def is_expired(self, now: Optional[int] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now if now is not None else now_ms()
        return self.expires_at < now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "contentHash": self.content_hash,
            "entryType": self.entry_type.value,
            "source": self.source,
            "context": self.context,
            "confidence": self.confidence,
            "importance": self.importance,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "expiresAt": self.expires_at,
            "accessCount": self.access_count,
            "lastAccessedAt": self.last_accessed_at,
        }


@dataclass(frozen=True)
class AddResult:
    id: int
    created: bool
    duplicate: bool


@dataclass(frozen=True)
class AccessLogEntry:
    memory_id: int
    accessed_at: int
    access_type: str
    relevance_score: Optional[float] = None
    query_text: Optional[str] = None


@dataclass
class SearchOptions:
    """Query plus optional filters and fusion weights.

    Filters are applied after fusion, in the order entry type, importance,
    confidence, tags (any match), expiry.
    """
    query: str
    mode: SearchMode = SearchMode.HYBRID
    limit: int = 10
    entry_types: Optional[List[EntryType]] = None
    min_importance: Optional[int] = None
    min_confidence: Optional[float] = None
    tags: Optional[List[str]] = None
    vector_weight: Optional[float] = None
    keyword_weight: Optional[float] = None

    def __post_init__(self):
        self.mode = SearchMode(self.mode)
        if self.entry_types:
            self.entry_types = [EntryType(t) for t in self.entry_types]


@dataclass
class SearchResult:
    entry: MemoryEntry
    score: float
    matched_by: List[str]

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data["score"] = round(self.score, 3)
        data["matchedBy"] = list(self.matched_by)
        return data


@dataclass
class MemoryStats:
    total_entries: int
    by_type: Dict[str, int]
    avg_importance: float
    avg_confidence: float
    total_accesses: int
    oldest_entry: Optional[int]
    newest_entry: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEntries": self.total_entries,
            "byType": dict(self.by_type),
            "avgImportance": self.avg_importance,
            "avgConfidence": self.avg_confidence,
            "totalAccesses": self.total_accesses,
            "oldestEntry": self.oldest_entry,
            "newestEntry": self.newest_entry,
        }
