"""
Contradiction detector: cross-checks new memories against recent ones and records resolutions.
"""

import re
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Set

from ..models.core import BatchReport, Contradiction, ContradictionReport, Memory
from ..utils.config import ContradictionConfig
from ..utils.errors import NotFoundError, OptimisticLockError, ValidationError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import to_iso, utcnow
from .reasoning_provider import ReasoningProvider

logger = get_logger(__name__)

TEMPORAL_UPDATE = 'temporal_update'
CONTRADICTION_NOTED = 'contradiction_noted'
RESOLUTION_MODES = (TEMPORAL_UPDATE, CONTRADICTION_NOTED)

_PROGRESSION_LANGUAGE = re.compile(r'\b(was|now|promoted|previously|used to|became)\b', re.IGNORECASE)


def choose_resolution_mode(new_content: str, existing_content: str, is_temporal_progression: bool = False) -> str:
    """Temporal update when either text reads as a change over time, otherwise a noted contradiction."""
    if is_temporal_progression:
        return TEMPORAL_UPDATE
    if _PROGRESSION_LANGUAGE.search(new_content or '') or _PROGRESSION_LANGUAGE.search(existing_content or ''):
        return TEMPORAL_UPDATE
    return CONTRADICTION_NOTED


class ContradictionDetector:
    """Finds and resolves conflicting memories of one owner."""

    def __init__(self,
                 opensearch: OpenSearchClient,
                 provider: ReasoningProvider,
                 config: ContradictionConfig,
                 clock: Callable[[], datetime] = utcnow):
        self.opensearch = opensearch
        self.provider = provider
        self.config = config
        self.clock = clock

        logger.info('Initialized ContradictionDetector')

    def detect(self, user_id: str, new_content: str, exclude_id: Optional[str] = None) -> ContradictionReport:
        """
        Compare new content against the owner's recent memories.

        Args:
            user_id: Owner of the memories
            new_content: Text of the incoming memory
            exclude_id: Id of the incoming memory if it is already stored

        Returns:
            ContradictionReport; empty when there is nothing to compare against

        Raises:
            ProviderError: If the completion call fails
        """
        since = self.clock() - timedelta(days=self.config.lookback_days)
        candidates = self.opensearch.recent_memories(user_id, since, self.config.max_candidates, exclude_id=exclude_id)
        if not candidates:
            logger.debug(f'No recent memories to check for user {user_id}')
            return ContradictionReport()

        findings = self.provider.find_contradictions(new_content, [memory.content for memory in candidates])
        contradictions = [
            Contradiction(existing_memory_id=candidates[finding.index].id,
                          existing_content=candidates[finding.index].content,
                          reason=finding.reason,
                          severity=finding.severity,
                          is_temporal_progression=finding.is_temporal_progression) for finding in findings
        ]
        if contradictions:
            logger.info(f'Found {len(contradictions)} contradictions for user {user_id}')
        return ContradictionReport(contradictions=contradictions)

    def _update_with_retry(self, user_id: str, memory_id: str, mutate: Callable[[Memory], Optional[Dict]]) -> None:
        """Read-modify-write one memory under optimistic versioning."""
        for attempt in range(1, self.config.write_retries + 1):
            memory = self.opensearch.get_memory(memory_id, user_id=user_id)
            if memory is None:
                raise NotFoundError(f'Memory {memory_id} not found for user {user_id}')
            fields = mutate(memory)
            if not fields:
                return
            try:
                self.opensearch.update_memory(memory_id, fields, revision=memory.revision)
                return
            except OptimisticLockError:
                logger.debug(f'Retrying resolution write for {memory_id} (attempt {attempt})')
        raise OptimisticLockError(f'Gave up updating memory {memory_id} after {self.config.write_retries} attempts')

    def resolve(self, user_id: str, new_id: str, existing_id: str, mode: str) -> None:
        """
        Record how a contradiction between two memories is resolved.

        `temporal_update` marks the existing memory as superseded and lowers its
        confidence; `contradiction_noted` cross-references both. Content is never
        deleted and repeated calls leave the same tags.

        Raises:
            ValidationError: If the mode is unknown or both ids are the same
            NotFoundError: If either memory does not exist for the owner
            OptimisticLockError: If concurrent writers keep winning
        """
        if mode not in RESOLUTION_MODES:
            raise ValidationError(f'Unknown resolution mode: {mode}')
        if new_id == existing_id:
            raise ValidationError('A memory cannot contradict itself')

        now = to_iso(self.clock())

        if mode == TEMPORAL_UPDATE:

            def supersede(memory: Memory) -> Optional[Dict]:
                if memory.metadata.superseded_by == new_id and memory.confidence_score == self.config.superseded_confidence:
                    return None
                if memory.metadata.superseded_by != new_id:
                    memory.metadata.superseded_by = new_id
                    memory.metadata.superseded_at = now
                return {'metadata': memory.metadata.to_dict(), 'confidence_score': self.config.superseded_confidence}

            def mark_successor(memory: Memory) -> Optional[Dict]:
                if memory.metadata.supersedes == existing_id:
                    return None
                memory.metadata.supersedes = existing_id
                return {'metadata': memory.metadata.to_dict()}

            self._update_with_retry(user_id, existing_id, supersede)
            self._update_with_retry(user_id, new_id, mark_successor)
        else:

            def mark_contradicted(memory: Memory) -> Optional[Dict]:
                if memory.metadata.contradicted_by == new_id:
                    return None
                memory.metadata.contradicted_by = new_id
                return {'metadata': memory.metadata.to_dict()}

            def mark_contradicting(memory: Memory) -> Optional[Dict]:
                if memory.metadata.contradicts == existing_id:
                    return None
                memory.metadata.contradicts = existing_id
                return {'metadata': memory.metadata.to_dict()}

            self._update_with_retry(user_id, existing_id, mark_contradicted)
            self._update_with_retry(user_id, new_id, mark_contradicting)

        logger.info(f'Resolved {new_id} vs {existing_id} as {mode}')

    def check_and_resolve(self, user_id: str, memory: Memory) -> int:
        """
        Detect contradictions for a stored memory and resolve each one.

        Returns:
            Number of resolutions written
        """
        report = self.detect(user_id, memory.content, exclude_id=memory.id)
        for contradiction in report.contradictions:
            mode = choose_resolution_mode(memory.content, contradiction.existing_content,
                                          contradiction.is_temporal_progression)
            self.resolve(user_id, memory.id, contradiction.existing_memory_id, mode)
        return len(report.contradictions)

    def _sweep_owner(self, user_id: str, since: datetime, report: BatchReport) -> None:
        window = sorted(self.opensearch.iter_memories(user_id, created_after=since),
                        key=lambda m: (m.created_at, m.id),
                        reverse=True)
        seen_pairs: Set[FrozenSet[str]] = set()

        for memory in window:
            report.processed += 1
            try:
                contradictions = self.detect(user_id, memory.content, exclude_id=memory.id).contradictions
                for contradiction in contradictions:
                    pair = frozenset((memory.id, contradiction.existing_memory_id))
                    if pair in seen_pairs:
                        continue
                    seen_pairs.add(pair)
                    mode = choose_resolution_mode(memory.content, contradiction.existing_content,
                                                  contradiction.is_temporal_progression)
                    self.resolve(user_id, memory.id, contradiction.existing_memory_id, mode)
                    report.updated += 1
            except Exception as e:
                logger.error(f'Contradiction check failed for memory {memory.id}: {e}')
                report.failures += 1

    def sweep(self, user_ids: Optional[Iterable[str]] = None, window_hours: Optional[int] = None) -> BatchReport:
        """
        Check memories created inside the sweep window against older ones,
        newest first, for every owner. Failures are isolated per memory and per owner.

        Returns:
            Aggregate BatchReport; `updated` counts resolutions written
        """
        hours = self.config.sweep_window_hours if window_hours is None else window_hours
        since = self.clock() - timedelta(hours=hours)
        owners = list(user_ids) if user_ids is not None else self.opensearch.list_owner_ids()

        logger.info(f'Starting contradiction sweep over {len(owners)} owners')
        report = BatchReport()
        for user_id in owners:
            try:
                self._sweep_owner(user_id, since, report)
            except Exception as e:
                logger.error(f'Contradiction sweep failed for user {user_id}: {e}')
                report.failures += 1

        logger.info(f'Contradiction sweep completed: {report}')
        return report
