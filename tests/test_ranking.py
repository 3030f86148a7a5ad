"""Tests for composite ranking."""

import time
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from fakes import make_memory
from memcore.services.ranking import (RankingEngine, access_frequency_score, composite_score, context_boost,
                                      recency_score)
from memcore.utils.errors import ProviderError, RankingTimeoutError, ValidationError


@pytest.fixture
def engine(opensearch, embed, app_config, clock):
    return RankingEngine(opensearch, embed, app_config.ranking, clock)


class TestScoringFunctions:

    def test_recency_is_monotonic(self):
        scores = [recency_score(days, 0.05) for days in (0, 1, 10, 100)]
        assert scores[0] == 1.0
        assert scores == sorted(scores, reverse=True)

    def test_access_frequency(self):
        assert access_frequency_score(0, 0, 0, 0.05) == 0.0
        assert access_frequency_score(5, 5, 0, 0.05) == pytest.approx(1.0)
        assert access_frequency_score(5, 5, 10, 0.05) < 1.0

    def test_context_boost(self):
        assert context_boost(None, ['John']) == 0.0
        assert context_boost(['Project Alpha'], ['project alpha']) == 1.0
        assert context_boost(['Alice', 'Bob'], ['Alice Smith']) == 0.5
        assert context_boost(['Alice'], []) == 0.0

    def test_composite_weights_sum_to_one_for_perfect_memory(self, app_config, clock):
        memory = make_memory('m1', 'x', clock(), importance=1.0, entities=['Alpha'], access_count=4)

        score = composite_score(1.0, memory, 4, clock(), app_config.ranking, ['Alpha'])

        assert score == pytest.approx(1.0)

    def test_default_importance_applies(self, app_config, clock):
        unset = make_memory('m1', 'x', clock())
        explicit = make_memory('m2', 'x', clock(), importance=0.5)

        assert composite_score(0.5, unset, 0, clock(), app_config.ranking) == \
            composite_score(0.5, explicit, 0, clock(), app_config.ranking)


class TestSearch:

    def test_newer_preference_ranks_first(self, engine, remember):
        remember('old', 'My favorite color is blue', days_ago=30)
        remember('new', 'My favorite color is green', days_ago=1)

        results = engine.search('user-1', 'what is my favorite color?', limit=2)

        assert [r.id for r in results] == ['new', 'old']
        assert results[0].score > results[1].score

    def test_favorite_color_ranks_first(self, engine, remember):
        remember('color', 'My favorite color is blue', days_ago=3, importance=0.7)
        remember('gym', 'I went to the gym this morning', importance=0.9)
        remember('dinner', 'Dinner with Sam on Friday', days_ago=1, importance=0.8)
        remember('plant', 'Water the plants on the balcony', days_ago=2)

        results = engine.search('user-1', 'What is my favorite color?', limit=5)

        assert results[0].id == 'color'
        assert results[0].content == 'My favorite color is blue'

    def test_paraphrased_morning_coffee_beats_popular_memory(self, engine, remember, clock):
        remember('c1', 'I enjoy a cup of coffee every morning', days_ago=10)
        remember('c2', 'Coffee is the first thing I drink after waking up', days_ago=10)
        remember('standup', 'Team standup notes for Monday', days_ago=1, access_count=50, last_accessed_at=clock())

        for _ in range(2):
            results = engine.search('user-1', 'What do I enjoy drinking in the morning?', limit=3)
            assert results[0].id in ('c1', 'c2')

    def test_faded_memory_cannot_return_through_keywords(self, engine, remember):
        remember('both', 'Project Alpha launch is planned for next week')
        remember('faded', 'Project Alpha launch', confidence=0.18)

        results = engine.search('user-1', 'Project Alpha launch', limit=5)

        assert [r.id for r in results] == ['both']

    def test_relevant_memory_beats_unrelated(self, engine, remember):
        remember('coffee', 'I drink coffee every morning', days_ago=5, importance=0.9)
        remember('dentist', 'I went to the dentist on Tuesday', days_ago=1)

        results = engine.search('user-1', 'coffee', limit=5)

        assert results[0].id == 'coffee'
        assert results[0].content == 'I drink coffee every morning'

    def test_context_entities_break_ties(self, engine, remember):
        remember('a', 'Meeting notes from the review', entities=['Project Alpha'])
        remember('b', 'Meeting notes from the review', entities=['Project Beta'])

        results = engine.search('user-1', 'meeting notes', limit=2, context_entities=['Project Beta'])

        assert results[0].id == 'b'

    def test_deleted_and_foreign_memories_are_excluded(self, engine, remember, opensearch):
        remember('mine', 'I drink coffee')
        remember('gone', 'I drink coffee with milk')
        remember('theirs', 'I drink coffee black', user_id='user-2')
        opensearch.update_memory('gone', {'deleted': True})

        results = engine.search('user-1', 'coffee', limit=10)

        assert [r.id for r in results] == ['mine']

    def test_results_never_exceed_limit(self, engine, remember):
        for i in range(6):
            remember(f'm{i}', f'Coffee note number {i}', days_ago=i)

        assert len(engine.search('user-1', 'coffee', limit=3)) == 3

    def test_access_is_recorded_for_returned_memories(self, engine, remember, opensearch, clock):
        remember('coffee', 'I drink coffee every morning', days_ago=3)

        engine.search('user-1', 'coffee', limit=1)

        assert opensearch.access_calls == [['coffee']]
        stored = opensearch.get_memory('coffee')
        assert stored.access_count == 1
        assert stored.last_accessed_at == clock()

    def test_access_tracking_failure_does_not_fail_search(self, engine, remember, opensearch):
        remember('coffee', 'I drink coffee every morning')
        opensearch.fail_access = True

        results = engine.search('user-1', 'coffee', limit=1)

        assert [r.id for r in results] == ['coffee']

    def test_low_confidence_memories_are_not_vector_candidates(self, engine, remember):
        remember('faded', 'Gym membership renews in May', confidence=0.1)
        remember('fresh', 'Library card renews in June')

        results = engine.search('user-1', 'renews', limit=5)

        assert 'fresh' in [r.id for r in results]

    def test_invalid_limit(self, engine):
        with pytest.raises(ValidationError):
            engine.search('user-1', 'coffee', limit=0)

    def test_blank_query_returns_nothing(self, engine, opensearch):
        assert engine.search('user-1', '   ') == []
        assert opensearch.access_calls == []

    def test_embedding_failure_propagates(self, engine, remember, embed):
        remember('coffee', 'I drink coffee')
        embed.fail = True

        with pytest.raises(ProviderError):
            engine.search('user-1', 'coffee')

    def test_timeout(self, opensearch, app_config, clock):
        slow_embed = MagicMock()
        slow_embed.embed_query.side_effect = lambda text: time.sleep(0.5) or [1.0]
        engine = RankingEngine(opensearch, slow_embed, app_config.ranking, clock)

        with pytest.raises(RankingTimeoutError):
            engine.search('user-1', 'coffee', timeout=0.05)


class TestMerge:

    def test_tie_break_prefers_newer_then_id(self, engine, clock):
        older = make_memory('a', 'x', clock() - timedelta(days=2))
        newer = make_memory('b', 'x', clock())
        same_time = make_memory('c', 'x', clock())

        merged = engine.merge({'a': (0.5, older), 'b': (0.5, newer), 'c': (0.5, same_time)}, {}, 10)

        assert [memory.id for _, memory in merged] == ['b', 'c', 'a']

    def test_blends_branches(self, engine, clock):
        memory = make_memory('a', 'x', clock())

        merged = engine.merge({'a': (0.6, memory)}, {'a': (1.0, memory)}, 10)

        assert merged[0][0] == pytest.approx(0.7 * 0.6 + 0.3 * 1.0)
