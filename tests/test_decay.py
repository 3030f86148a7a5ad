"""Tests for confidence decay."""

import math

import pytest

from memcore.services.decay import ARCHIVE_REASON, ConfidenceDecayManager, decay_confidence
from memcore.utils.config import DecayConfig


@pytest.fixture
def manager(opensearch, app_config, clock):
    return ConfidenceDecayManager(opensearch, app_config.decay, clock)


class TestDecayConfidence:

    def test_exponential_decay(self):
        assert decay_confidence(1.0, 10, 0.5, DecayConfig()) == pytest.approx(math.exp(-0.1))

    def test_never_increases(self):
        config = DecayConfig()
        for days in (0, 1, 30, 365):
            assert decay_confidence(0.8, days, 0.5, config) <= 0.8

    def test_important_memories_are_floored(self):
        assert decay_confidence(1.0, 1000, 0.9, DecayConfig()) == pytest.approx(0.3)

    def test_floor_never_raises_a_lower_score(self):
        assert decay_confidence(0.2, 1000, 0.9, DecayConfig()) == pytest.approx(0.2)

    def test_unimportant_memories_are_not_floored(self):
        assert decay_confidence(1.0, 1000, 0.7, DecayConfig()) < 0.001


class TestDecayOwner:

    def test_updates_stale_memory(self, manager, remember, opensearch, clock):
        remember('m1', 'I like hiking', days_ago=10)

        report = manager.decay_owner('user-1')

        stored = opensearch.get_memory('m1')
        assert report.processed == 1
        assert report.updated == 1
        assert stored.confidence_score == pytest.approx(math.exp(-0.1))
        assert stored.decayed_at == clock()

    def test_is_idempotent_at_the_same_instant(self, manager, remember, opensearch):
        remember('m1', 'I like hiking', days_ago=10)

        manager.decay_owner('user-1')
        first = opensearch.get_memory('m1').confidence_score
        report = manager.decay_owner('user-1')

        assert report.updated == 0
        assert opensearch.get_memory('m1').confidence_score == first

    def test_repeated_passes_compose(self, manager, remember, opensearch, clock):
        remember('m1', 'I like hiking', days_ago=10)

        manager.decay_owner('user-1')
        clock.advance(days=10)
        manager.decay_owner('user-1')

        assert opensearch.get_memory('m1').confidence_score == pytest.approx(math.exp(-0.2))

    def test_small_changes_are_not_written(self, manager, remember, opensearch):
        remember('m1', 'I like hiking', days_ago=2)

        report = manager.decay_owner('user-1')

        assert report.updated == 0
        assert opensearch.updates == []

    def test_archives_low_confidence_memory(self, manager, remember, opensearch, clock):
        remember('m1', 'Parked on level 3', days_ago=100, confidence=0.3)

        report = manager.decay_owner('user-1')

        stored = opensearch.get_memory('m1')
        assert report.updated == 1
        assert report.archived == 1
        assert stored.deleted is True
        assert stored.content == 'Parked on level 3'
        assert stored.metadata.archived_reason == ARCHIVE_REASON
        assert stored.metadata.archived_at == clock().isoformat()

    def test_archives_without_decay_write(self, manager, remember, opensearch):
        remember('m1', 'Parked on level 3', days_ago=30, confidence=0.14)

        report = manager.decay_owner('user-1')

        stored = opensearch.get_memory('m1')
        assert report.updated == 0
        assert report.archived == 1
        assert stored.deleted is True
        assert stored.confidence_score == pytest.approx(0.14)

    def test_important_memory_survives(self, manager, remember, opensearch):
        remember('m1', 'My daughter was born on June 3', days_ago=1000, importance=0.9)

        manager.decay_owner('user-1')

        stored = opensearch.get_memory('m1')
        assert stored.confidence_score == pytest.approx(0.3)
        assert stored.deleted is False

    def test_concurrent_write_skips_row(self, manager, remember, opensearch):
        remember('m1', 'I like hiking', days_ago=10)
        opensearch.conflicts['m1'] = 1

        report = manager.decay_owner('user-1')

        assert report.updated == 0
        assert opensearch.get_memory('m1').confidence_score == 1.0


class TestDecayPass:

    def test_isolates_failing_owner(self, manager, remember, opensearch):
        remember('m1', 'I like hiking', days_ago=10)
        remember('m2', 'I like chess', days_ago=10, user_id='user-2')
        opensearch.fail_owners.add('user-2')

        report = manager.decay_pass()

        assert report.failures == 1
        assert report.updated == 1
        assert opensearch.get_memory('m2').confidence_score == 1.0

    def test_explicit_owners(self, manager, remember, opensearch):
        remember('m1', 'I like hiking', days_ago=10)
        remember('m2', 'I like chess', days_ago=10, user_id='user-2')

        report = manager.decay_pass(['user-2'])

        assert report.processed == 1
        assert opensearch.get_memory('m1').confidence_score == 1.0
