"""
Memory Management Service: the facade that wires stores, providers and engines together.
"""

import uuid
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from ..models.core import CachedInsight, Entity, Implication, KnowledgeGap, Memory, MemoryMetadata, SearchResult
from ..utils.bedrock_embed import BedrockEmbed
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import AppConfig
from ..utils.errors import MemcoreError, StoreError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient
from ..utils.redis_cache import RedisCache
from ..utils.timestamp_utils import utcnow
from .contradiction import ContradictionDetector
from .decay import ConfidenceDecayManager
from .graph_reasoner import KnowledgeGraphReasoner
from .insight_cache import InsightCache
from .precompute import InsightPrecomputeJob
from .query_intent import analyze_query
from .ranking import RankingEngine
from .reasoning_provider import ReasoningProvider
from .timeline import TimelineBuilder

logger = get_logger(__name__)


class MemoryManagementService:
    """Unified entry point for ingest, retrieval, reasoning and maintenance jobs."""

    def __init__(self,
                 opensearch: OpenSearchClient,
                 neptune: NeptuneClient,
                 cache: RedisCache,
                 embed: BedrockEmbed,
                 llm: BedrockLLM,
                 config: AppConfig,
                 clock: Callable[[], datetime] = utcnow):
        """
        Initialize the memory management service.

        Args:
            opensearch: Memory store
            neptune: Entity graph store
            cache: Key-value cache
            embed: Embedding provider
            llm: Completion provider
            config: Application configuration
            clock: Source of the current time
        """
        self.opensearch = opensearch
        self.neptune = neptune
        self.embed = embed
        self.config = config
        self.clock = clock

        self.provider = ReasoningProvider(llm)
        self.ranking = RankingEngine(opensearch, embed, config.ranking, clock)
        self.decay = ConfidenceDecayManager(opensearch, config.decay, clock)
        self.contradictions = ContradictionDetector(opensearch, self.provider, config.contradiction, clock)
        self.reasoner = KnowledgeGraphReasoner(neptune, opensearch, self.provider, config.graph, clock)
        self.timeline = TimelineBuilder(opensearch, self.provider)
        self.insights = InsightCache(cache, neptune, self.reasoner, self.timeline, config.cache, clock)
        self.precompute = InsightPrecomputeJob(self.insights)

        logger.info('Initialized MemoryManagementService')

    @classmethod
    def from_config(cls, app_config: AppConfig) -> 'MemoryManagementService':
        """Build the service and its AWS/Redis clients from configuration."""
        opensearch = OpenSearchClient(app_config.opensearch)
        try:
            opensearch.create_index_if_not_exists()
        except StoreError as e:
            logger.warning(f'Failed to create OpenSearch index: {e}')

        return cls(opensearch=opensearch,
                   neptune=NeptuneClient(app_config.neptune),
                   cache=RedisCache(app_config.redis),
                   embed=BedrockEmbed(app_config.bedrock_embed),
                   llm=BedrockLLM(app_config.bedrock_llm),
                   config=app_config)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def add_memory(self,
                   user_id: str,
                   content: str,
                   kind: str = 'note',
                   importance: Optional[float] = None,
                   entities: Optional[Sequence[str]] = None,
                   recorded_at: Optional[datetime] = None,
                   check_contradictions: bool = True) -> Memory:
        """
        Store a memory, reconcile it against recent memories and invalidate
        cached insights for the entities it mentions.

        Args:
            user_id: Owner of the memory
            content: Memory text
            kind: Tag such as 'note' or 'preference'
            importance: Importance in [0, 1]
            entities: Entity names detected in the content
            recorded_at: When the described event happened, if not now
            check_contradictions: Run contradiction detection after the write

        Returns:
            The stored Memory

        Raises:
            ValidationError: If content is empty or importance is out of range
            ProviderError: If the content cannot be embedded
        """
        if not user_id or not user_id.strip():
            raise ValidationError('User ID is required')
        if not content or not content.strip():
            raise ValidationError('Memory content is required')
        if importance is not None and not 0.0 <= importance <= 1.0:
            raise ValidationError(f'importance must be within [0, 1], got {importance}')

        now = self.clock()
        detected = [name.strip() for name in (entities or []) if name and name.strip()]
        memory = Memory(id=str(uuid.uuid4()),
                        user_id=user_id,
                        content=content.strip(),
                        kind=kind or 'note',
                        created_at=now,
                        last_accessed_at=now,
                        metadata=MemoryMetadata(importance=importance, detected_entities=detected),
                        recorded_at=recorded_at)

        embedding = self.embed.embed_document(memory.content)
        self.opensearch.index_memory(memory, embedding, refresh=True)
        logger.debug(f'Stored memory {memory.id} for user {user_id}')
        self._register_entities(user_id, detected, now)

        if check_contradictions:
            try:
                resolved = self.contradictions.check_and_resolve(user_id, memory)
                if resolved:
                    logger.info(f'Resolved {resolved} contradictions for new memory {memory.id}')
            except MemcoreError as e:
                logger.warning(f'Contradiction check failed for memory {memory.id}: {e}')

        self._invalidate(user_id, detected)
        return memory

    def _register_entities(self, user_id: str, entity_names: Sequence[str], now: datetime) -> None:
        """Create an Entity vertex for each name not yet in the owner's graph. Links come from extraction."""
        for name in entity_names:
            try:
                if self.neptune.find_entity_by_name(user_id, name) is None:
                    self.neptune.create_entity_vertex(
                        Entity(id=str(uuid.uuid4()), user_id=user_id, name=name, type='unknown', created_at=now))
                    logger.debug(f'Registered entity {name} for user {user_id}')
            except StoreError as e:
                logger.error(f'Failed to register entity {name}: {e}')

    def _invalidate(self, user_id: str, entity_names: Sequence[str]) -> None:
        for name in entity_names:
            try:
                self.insights.invalidate(user_id, name)
            except StoreError as e:
                logger.error(f'Failed to invalidate cached insights for {name}: {e}')

    def delete_memory(self, user_id: str, memory_id: str) -> bool:
        """
        Soft-delete a memory; its content is retained but it is never retrieved again.

        Returns:
            False if the memory does not exist for the owner
        """
        if not memory_id or not memory_id.strip():
            logger.warning('Empty memory ID provided for deletion')
            return False

        memory = self.opensearch.get_memory(memory_id, user_id=user_id)
        if memory is None or memory.deleted:
            logger.warning(f'No live memory {memory_id} for user {user_id}')
            return False

        self.opensearch.update_memory(memory_id, {'deleted': True})
        self._invalidate(user_id, memory.metadata.detected_entities)
        logger.debug(f'Deleted memory: {memory_id}')
        return True

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def search(self,
               user_id: str,
               query: str,
               limit: int = 10,
               context_entities: Optional[Sequence[str]] = None) -> List[SearchResult]:
        return self.ranking.search(user_id, query, limit, context_entities)

    def entity_insight(self,
                       user_id: str,
                       entity_name: str,
                       needs_graph: bool = True,
                       needs_timeline: bool = True) -> CachedInsight:
        """Cached insight if it covers the requested dimensions, otherwise a fresh one."""
        cached = self.insights.get(user_id, entity_name)
        if cached is not None and (not needs_graph or cached.graph is not None) and \
                (not needs_timeline or cached.timeline is not None):
            return cached
        return self.insights.compute_and_cache(user_id, entity_name, needs_graph, needs_timeline)

    def entity_insights(self, user_id: str, query: str) -> List[CachedInsight]:
        """
        Insights for the entities a query mentions, computing only the
        dimensions the query needs.
        """
        analysis = analyze_query(query)
        if not analysis.needs_graph and not analysis.needs_timeline:
            return []

        insights = []
        for name in analysis.entities:
            insight = self.entity_insight(user_id, name, analysis.needs_graph, analysis.needs_timeline)
            if insight.entity_id:
                insights.append(insight)
        return insights

    # ------------------------------------------------------------------
    # Proactive reasoning
    # ------------------------------------------------------------------

    def knowledge_gaps(self, user_id: str) -> List[KnowledgeGap]:
        return self.reasoner.knowledge_gaps(user_id)

    def implications(self, user_id: str, query: str, limit: int = 10) -> List[Implication]:
        """What the memories retrieved for a query imply beyond their literal content."""
        return self.reasoner.detect_implications(self.search(user_id, query, limit), query)
