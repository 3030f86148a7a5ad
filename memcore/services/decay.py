"""
Confidence decay manager: gradual forgetting of memories that are not accessed.
"""

import math
from datetime import datetime
from typing import Callable, Iterable, Optional

from ..models.core import BatchReport, Memory
from ..utils.config import DecayConfig
from ..utils.errors import OptimisticLockError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import days_between, to_iso, utcnow

logger = get_logger(__name__)

ARCHIVE_REASON = 'low_confidence'


def decay_confidence(confidence: float, days: float, importance: float, config: DecayConfig) -> float:
    """
    Exponentially decay a confidence score.

    Important memories are floored at `importance_floor`, but a score that was
    already below the floor is never raised.

    Args:
        confidence: Current confidence in [0, 1]
        days: Days elapsed without access
        importance: Memory importance in [0, 1]
        config: Decay parameters

    Returns:
        New confidence, never above `confidence`
    """
    decayed = confidence * math.exp(-config.decay_rate * max(days, 0.0))
    if importance > config.importance_threshold:
        decayed = max(decayed, min(config.importance_floor, confidence))
    return min(confidence, max(0.0, decayed))


class ConfidenceDecayManager:
    """Applies confidence decay and low-confidence archival across owners."""

    def __init__(self, opensearch: OpenSearchClient, config: DecayConfig, clock: Callable[[], datetime] = utcnow):
        self.opensearch = opensearch
        self.config = config
        self.clock = clock

        logger.info('Initialized ConfidenceDecayManager')

    def _decay_anchor(self, memory: Memory) -> datetime:
        if memory.decayed_at and memory.decayed_at > memory.last_accessed_at:
            return memory.decayed_at
        return memory.last_accessed_at

    def _apply(self, memory: Memory, now: datetime, report: BatchReport) -> None:
        current = memory.confidence_score
        new_confidence = current
        if current > self.config.process_floor:
            importance = memory.metadata.importance_or(0.5)
            new_confidence = decay_confidence(current, days_between(self._decay_anchor(memory), now), importance,
                                              self.config)

        changed = abs(new_confidence - current) > self.config.write_threshold
        score = new_confidence if changed else current
        archive = score < self.config.archive_threshold

        if not changed and not archive:
            return

        fields = {'confidence_score': score}
        if changed:
            fields['decayed_at'] = to_iso(now)
        if archive:
            memory.metadata.archived_reason = ARCHIVE_REASON
            memory.metadata.archived_at = to_iso(now)
            fields['deleted'] = True
            fields['metadata'] = memory.metadata.to_dict()

        try:
            self.opensearch.update_memory(memory.id, fields, revision=memory.revision)
        except OptimisticLockError:
            logger.debug(f'Memory {memory.id} changed during decay, leaving it for the next pass')
            return

        if changed:
            report.updated += 1
        if archive:
            report.archived += 1

    def decay_owner(self, user_id: str) -> BatchReport:
        """
        Decay every live memory of one owner and archive those that fall below
        the archive threshold.

        Returns:
            BatchReport for this owner
        """
        now = self.clock()
        report = BatchReport()
        for memory in self.opensearch.iter_memories(user_id):
            report.processed += 1
            self._apply(memory, now, report)

        if report.updated or report.archived:
            logger.info(f'Decay for user {user_id}: updated {report.updated}, archived {report.archived}')
        return report

    def decay_pass(self, user_ids: Optional[Iterable[str]] = None) -> BatchReport:
        """
        Run decay for all owners (or the given ones). A failing owner is logged
        and counted, never aborting the pass.

        Returns:
            Aggregate BatchReport
        """
        logger.info('Starting confidence decay pass')
        owners = list(user_ids) if user_ids is not None else self.opensearch.list_owner_ids()

        total = BatchReport()
        for user_id in owners:
            try:
                report = self.decay_owner(user_id)
            except Exception as e:
                logger.error(f'Decay failed for user {user_id}: {e}')
                total.failures += 1
                continue
            total.processed += report.processed
            total.updated += report.updated
            total.archived += report.archived

        logger.info(f'Confidence decay pass completed: {total}')
        return total
