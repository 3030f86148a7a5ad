"""
Insight cache: lazily computed, TTL-bound per-entity graph and timeline insights
with usage tracking for pre-warming.

Keys:
    insights:{user_id}:{lower(entity name)}   JSON CachedInsight, TTL 1 hour
    entity_usage:{user_id}:{entity_id}        hash {count, name, lastUsed}, TTL 7 days
"""

from datetime import datetime
from typing import Callable, List, Optional

from ..models.core import CachedInsight, PopularEntity
from ..utils.config import CacheConfig
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.redis_cache import RedisCache, RedisCacheError
from ..utils.timestamp_utils import to_epoch_ms, utcnow
from .graph_reasoner import KnowledgeGraphReasoner
from .timeline import TimelineBuilder

logger = get_logger(__name__)

INSIGHT_PREFIX = 'insights'
USAGE_PREFIX = 'entity_usage'
MS_PER_DAY = 24 * 60 * 60 * 1000
_GLOB_ESCAPES = str.maketrans({'*': '[*]', '?': '[?]', '[': '[[]', '\\': '[\\\\]'})


def insight_key(user_id: str, entity_name: str) -> str:
    return f'{INSIGHT_PREFIX}:{user_id}:{entity_name.strip().lower()}'


def usage_key(user_id: str, entity_id: str) -> str:
    return f'{USAGE_PREFIX}:{user_id}:{entity_id}'


def usage_pattern(user_id: Optional[str] = None) -> str:
    """SCAN pattern for usage counters, with the owner id matched literally."""
    if user_id is None:
        return f'{USAGE_PREFIX}:*'
    return f'{USAGE_PREFIX}:{user_id.translate(_GLOB_ESCAPES)}:*'


def usage_owner(key: str) -> str:
    """Owner segment of a usage key; entity ids never contain ':'."""
    return key[len(USAGE_PREFIX) + 1:key.rfind(':')]


class InsightCache:
    """Lazy per-entity insight cache backed by Redis."""

    def __init__(self,
                 cache: RedisCache,
                 neptune: NeptuneClient,
                 reasoner: KnowledgeGraphReasoner,
                 timeline: TimelineBuilder,
                 config: CacheConfig,
                 clock: Callable[[], datetime] = utcnow):
        self.cache = cache
        self.neptune = neptune
        self.reasoner = reasoner
        self.timeline = timeline
        self.config = config
        self.clock = clock

        logger.info('Initialized InsightCache')

    def get(self, user_id: str, entity_name: str) -> Optional[CachedInsight]:
        """
        Cached insight for an entity name (case-insensitive), or None on a miss.
        An unreadable cache entry or an unreachable cache counts as a miss.
        """
        key = insight_key(user_id, entity_name)
        try:
            payload = self.cache.get(key)
        except RedisCacheError as e:
            logger.error(f'Insight cache read failed for {entity_name}: {e}')
            return None

        if payload is None:
            logger.debug(f'Insight cache MISS for entity: {entity_name}')
            return None
        try:
            insight = CachedInsight.from_json(payload)
        except (ValueError, TypeError) as e:
            logger.warning(f'Discarding malformed cached insight {key}: {e}')
            return None
        logger.debug(f'Insight cache HIT for entity: {entity_name}')
        return insight

    def compute_and_cache(self,
                          user_id: str,
                          entity_name: str,
                          needs_graph: bool,
                          needs_timeline: bool,
                          track_usage: bool = True) -> CachedInsight:
        """
        Compute only the requested dimensions for an entity and cache the result.

        Args:
            user_id: Owner of the entity
            entity_name: Entity name, matched case-insensitively
            needs_graph: Include the entity's relationships
            needs_timeline: Include the entity's timeline and narrative
            track_usage: Count this computation towards the entity's popularity

        Returns:
            CachedInsight; an uncached empty shell (entity_id '') if the entity is unknown
        """
        now_ms = to_epoch_ms(self.clock())
        entity = self.neptune.find_entity_by_name(user_id, entity_name)
        if entity is None:
            logger.debug(f'Entity not found for insights: {entity_name}')
            return CachedInsight(entity_id='', entity_name=entity_name, cached_at=now_ms)

        insight = CachedInsight(entity_id=entity.id, entity_name=entity.name, cached_at=now_ms)

        if needs_graph:
            relationships = self.reasoner.relationships(user_id, entity.id)
            insight.graph = {'entity': entity.name, 'relationships': [r.as_triplet() for r in relationships]}
            logger.debug(f'Computed graph insight for {entity.name} ({len(relationships)} relationships)')

        if needs_timeline:
            # An empty timeline is still a computed dimension and is cached as such
            timeline = self.timeline.build(user_id, entity.name)
            insight.timeline = timeline.to_dict()
            logger.debug(f'Computed timeline insight for {entity.name} ({len(timeline.events)} events)')

        self.cache.setex(insight_key(user_id, entity_name), self.config.ttl_seconds, insight.to_json())
        if track_usage:
            self._track_usage(user_id, entity.id, entity.name, now_ms)

        logger.info(f'Cached insights for {entity.name}')
        return insight

    def _track_usage(self, user_id: str, entity_id: str, entity_name: str, now_ms: int) -> None:
        key = usage_key(user_id, entity_id)
        self.cache.hincrby(key, 'count', 1)
        self.cache.hset(key, {'name': entity_name, 'lastUsed': str(now_ms)})
        self.cache.expire(key, self.config.usage_ttl_seconds)

    def invalidate(self, user_id: str, entity_name: str) -> bool:
        """
        Drop the cached insight for an entity name.

        Returns:
            True if an entry was removed
        """
        removed = self.cache.delete(insight_key(user_id, entity_name)) > 0
        if removed:
            logger.debug(f'Invalidated cached insights for: {entity_name}')
        return removed

    def popular_entities(self, user_id: str, limit: int = 20) -> List[PopularEntity]:
        """Entities computed at least `popular_threshold` times, by count then recency."""
        popular = []
        for key in self.cache.scan_keys(usage_pattern(user_id)):
            if usage_owner(key) != user_id:
                continue
            data = self.cache.hgetall(key)
            if not data:
                continue
            try:
                count = int(data.get('count', '0'))
                last_used = int(data.get('lastUsed', '0'))
            except ValueError:
                logger.warning(f'Skipping malformed usage counter {key}')
                continue
            if count < self.config.popular_threshold:
                continue
            popular.append(
                PopularEntity(entity_id=key.rsplit(':', 1)[1],
                              entity_name=data.get('name', ''),
                              usage_count=count,
                              last_used=last_used))

        popular.sort(key=lambda e: (-e.usage_count, -e.last_used, e.entity_id))
        return popular[:limit]

    def cleanup_usage_tracking(self, user_id: Optional[str] = None) -> int:
        """
        Delete usage counters not touched within the retention window.

        Returns:
            Number of counters removed
        """
        cutoff = to_epoch_ms(self.clock()) - self.config.usage_retention_days * MS_PER_DAY
        stale = []
        for key in self.cache.scan_keys(usage_pattern(user_id or None)):
            if user_id and usage_owner(key) != user_id:
                continue
            last_used = self.cache.hgetall(key).get('lastUsed')
            if last_used is None:
                continue
            try:
                expired = int(last_used) < cutoff
            except ValueError:
                expired = True
            if expired:
                stale.append(key)

        removed = self.cache.delete(*stale) if stale else 0
        logger.info(f'Cleaned up {removed} stale usage counters')
        return removed

    def tracked_owner_ids(self) -> List[str]:
        """Owners with at least one live usage counter."""
        owners = set()
        for key in self.cache.scan_keys(usage_pattern()):
            owner = usage_owner(key)
            if owner:
                owners.add(owner)
        return sorted(owners)
