"""
mudpuppy hybrid search — fuse vector similarity and BM25 keyword ranks.

Both score spaces are normalised per result batch before fusion:

    vector:  similarity = clamp01(1 - distance / max(maxDist * 2, 2))
    keyword: score      = clamp01((maxRank - rank) / (maxRank - minRank or 1))

so a score only means something relative to the other hits of the same
query. Hybrid mode combines them as ``vec * vector_weight + kw * keyword_weight``
(default 0.7 / 0.3), summing only the terms that are present.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from mudpuppy.config import DEFAULT_KEYWORD_WEIGHT, DEFAULT_VECTOR_WEIGHT
from mudpuppy.embeddings import EmbeddingProvider
from mudpuppy.models import SearchMode, SearchOptions, SearchResult, now_ms
from mudpuppy.sqlite_store import MemoryStore

logger = logging.getLogger("mudpuppy.search")

# Fetch more candidates than requested to leave room for post-filtering
SEARCH_POOL_MULTIPLIER = 3

_MIN_MAX_DISTANCE = 0.001


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def normalize_vector_hits(hits: Sequence[Tuple[int, float]]) -> Dict[int, float]:
    """Map (entry_id, distance) hits to batch-relative similarities in [0, 1]."""
    if not hits:
        return {}
    max_dist = max(max(d for _, d in hits), _MIN_MAX_DISTANCE)
    scale = max(max_dist * 2, 2)
    scores: Dict[int, float] = {}
    for entry_id, distance in hits:
        scores[entry_id] = _clamp01(1 - distance / scale)
    return scores


def normalize_keyword_hits(hits: Sequence[Tuple[int, float]]) -> Dict[int, float]:
    """Map (entry_id, bm25 rank) hits to [0, 1]; the best rank in the batch scores highest."""
    if not hits:
        return {}
    ranks = [r for _, r in hits]
    min_rank = min(ranks)  # most negative = best
    max_rank = max(ranks)
    spread = (max_rank - min_rank) or 1
    scores: Dict[int, float] = {}
    for entry_id, rank in hits:
        scores[entry_id] = _clamp01((max_rank - rank) / spread)
    return scores


def fuse_scores(
    vector_scores: Dict[int, float],
    keyword_scores: Dict[int, float],
    mode: SearchMode,
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
) -> List[Tuple[int, float, List[str]]]:
    """Combine both score maps into [(entry_id, score, matched_by)], best first.

    Candidates are discovered vector hits first, then keyword-only hits; the
    sort is stable, so equal scores keep that order.
    """
    candidate_ids = list(vector_scores)
    candidate_ids.extend(i for i in keyword_scores if i not in vector_scores)

    scored = []
    for entry_id in candidate_ids:
        vec = vector_scores.get(entry_id)
        kw = keyword_scores.get(entry_id)
        matched_by: List[str] = []
        score = 0.0
        if mode == SearchMode.HYBRID:
            if vec is not None:
                score += vec * vector_weight
                matched_by.append("vector")
            if kw is not None:
                score += kw * keyword_weight
                matched_by.append("keyword")
        elif mode == SearchMode.VECTOR:
            if vec is not None:
                score = vec
                matched_by.append("vector")
        else:
            if kw is not None:
                score = kw
                matched_by.append("keyword")
        scored.append((entry_id, score, matched_by))

    scored.sort(key=lambda item: item[1], reverse=True)
    return scored


def _passes_filters(entry, options: SearchOptions, now: int) -> bool:
    if options.entry_types and entry.entry_type not in options.entry_types:
        return False
    if options.min_importance is not None and entry.importance < options.min_importance:
        return False
    if options.min_confidence is not None and entry.confidence < options.min_confidence:
        return False
    if options.tags and not any(t in entry.tags for t in options.tags):
        return False
    if entry.is_expired(now):
        return False
    return True


def hybrid_search(
    store: MemoryStore,
    provider: Optional[EmbeddingProvider],
    options: SearchOptions,
    query_embedding: Optional[Sequence[float]] = None,
) -> List[SearchResult]:
    """Run a vector, keyword or hybrid search and return filtered, ranked results.

    *query_embedding* may be supplied by async callers that embedded the
    query off-thread; otherwise *provider* embeds it here.
    """
    mode = SearchMode(options.mode)
    limit = options.limit
    if limit <= 0:
        return []
    pool_size = limit * SEARCH_POOL_MULTIPLIER

    vector_scores: Dict[int, float] = {}
    keyword_scores: Dict[int, float] = {}

    if mode in (SearchMode.VECTOR, SearchMode.HYBRID):
        if query_embedding is None:
            if provider is None:
                raise ValueError(f"{mode.value} search needs an embedding provider")
            query_embedding = provider.embed(options.query)
        vector_scores = normalize_vector_hits(store.vector_search(query_embedding, pool_size))

    if mode in (SearchMode.KEYWORD, SearchMode.HYBRID) and options.query.strip():
        keyword_scores = normalize_keyword_hits(store.keyword_search(options.query, pool_size))

    scored = fuse_scores(
        vector_scores,
        keyword_scores,
        mode,
        vector_weight=DEFAULT_VECTOR_WEIGHT if options.vector_weight is None else options.vector_weight,
        keyword_weight=DEFAULT_KEYWORD_WEIGHT if options.keyword_weight is None else options.keyword_weight,
    )
    if not scored:
        return []

    entries = store.get_entries([entry_id for entry_id, _, _ in scored])
    now = now_ms()
    results: List[SearchResult] = []
    for entry_id, score, matched_by in scored:
        if len(results) >= limit:
            break
        entry = entries.get(entry_id)
        if entry is None:
            continue
        if not _passes_filters(entry, options, now):
            continue
        results.append(SearchResult(entry=entry, score=score, matched_by=matched_by))

    logger.debug(
        "search %r mode=%s: %d vector, %d keyword, %d returned",
        options.query, mode.value, len(vector_scores), len(keyword_scores), len(results),
    )
    return results
