"""
Composite ranking engine: hybrid vector + lexical retrieval with multi-factor scoring.
"""

import math
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..models.core import Memory, SearchResult
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.config import RankingConfig
from ..utils.errors import RankingTimeoutError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import days_between, utcnow

logger = get_logger(__name__)


def recency_score(days_since_created: float, decay_rate: float) -> float:
    return math.exp(-decay_rate * days_since_created)


def access_frequency_score(access_count: int, max_access_count: int, days_since_access: float, decay_rate: float) -> float:
    """log(1+count)/log(1+max) scaled by how recently the memory was touched."""
    denominator = math.log1p(max(max_access_count, 1))
    return math.log1p(max(access_count, 0)) / denominator * math.exp(-decay_rate * days_since_access)


def context_boost(context_entities: Optional[Sequence[str]], memory_entities: Sequence[str]) -> float:
    """Fraction of context entities that textually overlap one of the memory's tagged entities."""
    if not context_entities:
        return 0.0
    tagged = [entity.lower() for entity in memory_entities if entity]
    if not tagged:
        return 0.0
    hits = 0
    for entity in context_entities:
        needle = entity.strip().lower()
        if needle and any(needle in tag or tag in needle for tag in tagged):
            hits += 1
    return hits / len(context_entities)


def composite_score(similarity: float,
                    memory: Memory,
                    max_access_count: int,
                    now: datetime,
                    config: RankingConfig,
                    context_entities: Optional[Sequence[str]] = None) -> float:
    """
    Weighted blend of similarity, recency, access frequency, importance,
    confidence and contextual overlap.

    Args:
        similarity: Raw cosine similarity from the vector branch
        memory: Candidate memory
        max_access_count: Highest access_count among the candidate batch
        now: Reference time
        config: Ranking weights
        context_entities: Entities active in the caller's conversation

    Returns:
        Composite score
    """
    days_since_created = days_between(memory.created_at, now)
    days_since_access = days_between(memory.last_accessed_at, now)

    return (config.similarity_weight * similarity +
            config.recency_weight * recency_score(days_since_created, config.recency_decay_rate) +
            config.access_weight *
            access_frequency_score(memory.access_count, max_access_count, days_since_access, config.recency_decay_rate) +
            config.importance_weight * memory.metadata.importance_or(config.default_importance) +
            config.confidence_weight * memory.confidence_score +
            config.context_weight * context_boost(context_entities, memory.metadata.detected_entities))


def _sort_key(item: Tuple[float, Memory]):
    score, memory = item
    return (-score, -memory.created_at.timestamp(), memory.id)


class RankingEngine:
    """Ranks an owner's memories for a free-text query."""

    def __init__(self,
                 opensearch: OpenSearchClient,
                 embed: BedrockEmbed,
                 config: RankingConfig,
                 clock: Callable[[], datetime] = utcnow):
        self.opensearch = opensearch
        self.embed = embed
        self.config = config
        self.clock = clock

        logger.info('Initialized RankingEngine')

    def _vector_branch(self, user_id: str, query: str, top_k: int, now: datetime,
                       context_entities: Optional[Sequence[str]]) -> Dict[str, Tuple[float, Memory]]:
        query_vector = self.embed.embed_query(query)
        candidates = self.opensearch.vector_search(user_id, query_vector, top_k, self.config.min_confidence)
        if not candidates:
            return {}

        max_access = max(memory.access_count for memory, _ in candidates)
        scored = {}
        for memory, similarity in candidates:
            if memory.user_id != user_id or memory.deleted:
                continue
            scored[memory.id] = (composite_score(similarity, memory, max_access, now, self.config, context_entities), memory)
        return scored

    def _lexical_branch(self, user_id: str, query: str, top_k: int) -> Dict[str, Tuple[float, Memory]]:
        hits = [(memory, score)
                for memory, score in self.opensearch.keyword_search(user_id, query, top_k, self.config.min_confidence)
                if memory.user_id == user_id and not memory.deleted]
        if not hits:
            return {}
        top = max(score for _, score in hits)
        if top <= 0:
            return {}
        return {memory.id: (score / top, memory) for memory, score in hits}

    def merge(self, vector_hits: Dict[str, Tuple[float, Memory]], lexical_hits: Dict[str, Tuple[float, Memory]],
              limit: int) -> List[Tuple[float, Memory]]:
        """Blend the branches and return the top `limit` (score, memory) pairs."""
        merged = {}
        for memory_id in set(vector_hits) | set(lexical_hits):
            if memory_id in vector_hits and memory_id in lexical_hits:
                vector_score, memory = vector_hits[memory_id]
                lexical_score, _ = lexical_hits[memory_id]
                merged[memory_id] = (self.config.vector_merge_weight * vector_score +
                                     self.config.lexical_merge_weight * lexical_score, memory)
            else:
                merged[memory_id] = vector_hits.get(memory_id) or lexical_hits[memory_id]
        return sorted(merged.values(), key=_sort_key)[:limit]

    def search(self,
               user_id: str,
               query: str,
               limit: int = 10,
               context_entities: Optional[Sequence[str]] = None,
               timeout: Optional[float] = None) -> List[SearchResult]:
        """
        Find the most relevant memories for a query.

        Args:
            user_id: Owner whose memories are searched
            query: Free-text query
            limit: Maximum number of results
            context_entities: Entities from the surrounding conversation
            timeout: Seconds before all in-flight branches are abandoned

        Returns:
            Results ordered by descending score

        Raises:
            ValidationError: If limit is not positive
            ProviderError: If the query cannot be embedded
            RankingTimeoutError: If the branches do not finish in time
        """
        if limit <= 0:
            raise ValidationError(f'limit must be positive, got {limit}')
        if not query or not query.strip():
            logger.warning('Empty query provided for memory search')
            return []

        now = self.clock()
        top_k = limit * self.config.candidate_multiplier
        deadline = self.config.timeout_seconds if timeout is None else timeout

        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix='ranking')
        try:
            vector_future = executor.submit(self._vector_branch, user_id, query, top_k, now, context_entities)
            lexical_future = executor.submit(self._lexical_branch, user_id, query, top_k)
            done, pending = wait([vector_future, lexical_future], timeout=deadline, return_when=FIRST_EXCEPTION)
            for future in done:
                if future.exception() is not None:
                    raise future.exception()
            if pending:
                raise RankingTimeoutError(f'Search for user {user_id} exceeded {deadline}s')
            vector_hits = vector_future.result()
            lexical_hits = lexical_future.result()
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        ranked = self.merge(vector_hits, lexical_hits, limit)
        logger.debug(f'Ranked {len(ranked)} memories for user {user_id} '
                     f'(vector={len(vector_hits)}, lexical={len(lexical_hits)})')

        if ranked:
            self._track_access([memory.id for _, memory in ranked], now)

        return [SearchResult(id=memory.id, content=memory.content, score=score) for score, memory in ranked]

    def _track_access(self, memory_ids: List[str], now: datetime) -> None:
        try:
            self.opensearch.record_access(memory_ids, now)
        except Exception as e:
            logger.warning(f'Access tracking failed for {len(memory_ids)} memories: {e}')
