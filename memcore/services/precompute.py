"""
Pre-warm job: computes insights for entities owners keep asking about, before they ask again.
"""

from typing import Iterable, Optional

from ..models.core import BatchReport
from ..utils.logging_config import get_logger
from .insight_cache import InsightCache

logger = get_logger(__name__)


class InsightPrecomputeJob:
    """Fills the insight cache for each owner's popular entities."""

    def __init__(self, cache: InsightCache, per_owner_limit: int = 20):
        self.cache = cache
        self.per_owner_limit = per_owner_limit

    def run_for_owner(self, user_id: str, report: BatchReport) -> None:
        for popular in self.cache.popular_entities(user_id, self.per_owner_limit):
            report.processed += 1
            try:
                if self.cache.get(user_id, popular.entity_name) is not None:
                    continue
                insight = self.cache.compute_and_cache(user_id,
                                                       popular.entity_name,
                                                       needs_graph=True,
                                                       needs_timeline=True,
                                                       track_usage=False)
                if insight.entity_id:
                    report.updated += 1
            except Exception as e:
                logger.error(f'Pre-warm failed for entity {popular.entity_name} of user {user_id}: {e}')
                report.failures += 1

    def run(self, user_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """
        Pre-compute uncached insights for popular entities of every tracked owner.
        Pre-warming never counts as usage.

        Returns:
            BatchReport; `updated` counts insights written
        """
        owners = list(user_ids) if user_ids is not None else self.cache.tracked_owner_ids()
        logger.info(f'Starting insight pre-warm for {len(owners)} owners')

        report = BatchReport()
        for user_id in owners:
            try:
                self.run_for_owner(user_id, report)
            except Exception as e:
                logger.error(f'Pre-warm failed for user {user_id}: {e}')
                report.failures += 1

        logger.info(f'Insight pre-warm completed: {report}')
        return report
