"""Tests for the knowledge graph reasoner."""

import json
import math
from datetime import timedelta

import pytest

from memcore.models.core import Entity, EntityLink, SearchResult
from memcore.services.graph_reasoner import KnowledgeGraphReasoner
from memcore.services.query_intent import GENERAL, RELATIONSHIP_BETWEEN, WHO_CAN_HELP, WHO_KNOWS
from memcore.services.reasoning_provider import parse_implications
from memcore.utils.bedrock_llm import BedrockLLMError


@pytest.fixture
def reasoner(neptune, opensearch, provider, app_config, clock):
    return KnowledgeGraphReasoner(neptune, opensearch, provider, app_config.graph, clock)


@pytest.fixture
def graph(neptune, clock):
    """Add entities and links to the fake graph; returns a small builder."""

    class Builder:

        def entity(self, entity_id, name, user_id='user-1', entity_type='person'):
            return neptune.create_entity_vertex(Entity(id=entity_id, user_id=user_id, name=name, type=entity_type))

        def link(self, link_id, subject_id, role, object_id=None, user_id='user-1', days_ago=0.0, **kwargs):
            moment = clock() - timedelta(days=days_ago)
            return neptune.create_link_edge(
                EntityLink(id=link_id,
                           user_id=user_id,
                           subject_id=subject_id,
                           role=role,
                           object_id=object_id,
                           created_at=moment,
                           updated_at=moment,
                           **kwargs))

    return Builder()


@pytest.fixture
def team(graph):
    """Alice knows Bob, Bob works on Project Alpha; Carol and Dave are colleagues; Erin is alone."""
    graph.entity('e-alice', 'Alice')
    graph.entity('e-bob', 'Bob')
    graph.entity('e-alpha', 'Project Alpha', entity_type='project')
    graph.entity('e-carol', 'Carol')
    graph.entity('e-dave', 'Dave')
    graph.entity('e-erin', 'Erin')
    graph.link('l1', 'e-alice', 'knows', 'e-bob', days_ago=3)
    graph.link('l2', 'e-bob', 'works on', 'e-alpha', days_ago=2)
    graph.link('l3', 'e-carol', 'colleague of', 'e-dave', days_ago=1)
    return graph


class TestRelationships:

    def test_resolves_names_newest_first(self, reasoner, graph, remember):
        graph.entity('e-john', 'John')
        graph.entity('e-alpha', 'Project Alpha', entity_type='project')
        remember('m1', 'John is working on Project Alpha', days_ago=5)
        remember('m2', 'Project Alpha is behind schedule', days_ago=1)
        graph.link('l1', 'e-john', 'works on', 'e-alpha', days_ago=5, source_memory_id='m1')
        graph.link('l2', 'e-alpha', 'is behind schedule', days_ago=1, source_memory_id='m2')

        relationships = reasoner.relationships('user-1', 'e-alpha')

        assert [r.as_triplet() for r in relationships] == [
            {'subject': 'Project Alpha', 'predicate': 'is behind schedule', 'object': 'unknown'},
            {'subject': 'John', 'predicate': 'works on', 'object': 'Project Alpha'},
        ]

    def test_missing_entity(self, reasoner):
        assert reasoner.relationships('user-1', 'e-nobody') == []

    def test_links_from_deleted_memories_are_hidden(self, reasoner, graph, remember, opensearch):
        graph.entity('e-john', 'John')
        graph.entity('e-alpha', 'Project Alpha')
        remember('m1', 'John is working on Project Alpha')
        graph.link('l1', 'e-john', 'works on', 'e-alpha', source_memory_id='m1')
        opensearch.update_memory('m1', {'deleted': True})

        assert reasoner.relationships('user-1', 'e-alpha') == []
        assert reasoner.shortest_path('user-1', 'e-john', 'e-alpha') is None

    def test_filters(self, reasoner, team, clock):
        team.link('l4', 'e-alice', 'mentors', 'e-bob', days_ago=40)

        assert [r.link.id for r in reasoner.relationships('user-1', 'e-alice', roles=['mentors'])] == ['l4']
        since = clock() - timedelta(days=10)
        assert [r.link.id for r in reasoner.relationships('user-1', 'e-alice', since=since)] == ['l1']
        assert len(reasoner.relationships('user-1', 'e-bob', limit=1)) == 1

    def test_find_related_includes_source(self, reasoner, graph, remember):
        graph.entity('e-john', 'John')
        graph.entity('e-alpha', 'Project Alpha')
        remember('m1', 'John is working on Project Alpha', days_ago=5)
        graph.link('l1', 'e-john', 'works on', 'e-alpha', source_memory_id='m1')

        related = reasoner.find_related('user-1', 'john')

        assert related[0]['object'] == 'Project Alpha'
        assert related[0]['source'] == 'John is working on Project Alpha'
        assert reasoner.find_related('user-1', 'Project Alpha') == []


class TestOwnerIsolation:

    def test_other_owners_graph_is_invisible(self, reasoner, team, graph):
        graph.entity('x-alice', 'Alice', user_id='user-2')
        graph.entity('x-zed', 'Zed', user_id='user-2')
        graph.link('x1', 'x-alice', 'knows', 'x-zed', user_id='user-2')

        assert reasoner.relationships('user-1', 'x-alice') == []
        assert reasoner.shortest_path('user-1', 'x-alice', 'x-zed') is None
        names = {c.entity.name for c in reasoner.central_entities('user-1', limit=20)}
        assert 'Zed' not in names


class TestPaths:

    def test_direct_link(self, reasoner, team):
        path = reasoner.shortest_path('user-1', 'e-alice', 'e-bob')

        assert path.length == 1
        assert path.strength == 1.0

    def test_two_hops_with_direction(self, reasoner, team):
        path = reasoner.shortest_path('user-1', 'e-alpha', 'e-alice')

        assert path.entity_ids == ('e-alpha', 'e-bob', 'e-alice')
        assert path.strength == 0.5
        assert path.explanation == 'Bob works on Project Alpha, and Alice knows Bob'

    def test_no_path(self, reasoner, team):
        assert reasoner.shortest_path('user-1', 'e-alice', 'e-carol') is None
        assert reasoner.shortest_path('user-1', 'e-alice', 'e-alice') is None
        assert reasoner.shortest_path('user-1', 'e-alice', 'e-alpha', max_depth=1) is None

    def test_inactive_links_are_not_traversed(self, reasoner, team):
        team.link('l4', 'e-erin', 'knows', 'e-alice', status='ended')

        assert reasoner.shortest_path('user-1', 'e-erin', 'e-alice') is None

    def test_bfs_prefers_lowest_entity_id(self, reasoner, team):
        team.link('l5', 'e-alice', 'knows', 'e-carol')
        team.link('l6', 'e-carol', 'knows', 'e-alpha')

        path = reasoner.shortest_path('user-1', 'e-alice', 'e-alpha')

        assert path.entity_ids == ('e-alice', 'e-bob', 'e-alpha')

    def test_all_paths(self, reasoner, team):
        team.link('l4', 'e-alice', 'leads', 'e-alpha')

        paths = reasoner.all_paths('user-1', 'e-alice', 'e-alpha')

        assert [p.entity_ids for p in paths] == [('e-alice', 'e-alpha'), ('e-alice', 'e-bob', 'e-alpha')]
        assert [p.strength for p in paths] == [1.0, 0.5]

    def test_all_paths_respects_max_paths(self, reasoner, team):
        team.link('l4', 'e-alice', 'leads', 'e-alpha')

        assert len(reasoner.all_paths('user-1', 'e-alice', 'e-alpha', max_paths=1)) == 1


class TestAnalytics:

    def test_central_entities(self, reasoner, team):
        central = reasoner.central_entities('user-1', limit=2)

        assert central[0].entity.name == 'Bob'
        assert central[0].relationship_count == 2

    def test_link_without_object_counts_towards_degree(self, reasoner, team):
        team.link('l4', 'e-erin', 'is on vacation')

        counts = {c.entity.name: c.relationship_count for c in reasoner.central_entities('user-1', limit=10)}

        assert counts['Erin'] == 1

    def test_clusters(self, reasoner, team):
        clusters = reasoner.clusters('user-1')

        assert [c.size for c in clusters] == [3, 2, 1]
        assert {e.name for e in clusters[0].entities} == {'Alice', 'Bob', 'Project Alpha'}

    def test_isolated_entities_consider_inactive_links(self, reasoner, team, graph):
        graph.entity('e-frank', 'Frank')
        team.link('l4', 'e-frank', 'knows', 'e-alice', status='ended')

        assert [e.name for e in reasoner.isolated_entities('user-1')] == ['Erin']

    def test_strength(self, reasoner, team):
        assert reasoner.relationship_strength('user-1', 'e-alice', 'e-carol') == 0.0

        team.link('l4', 'e-carol', 'friend of', 'e-dave', days_ago=1)
        assert reasoner.relationship_strength('user-1', 'e-carol', 'e-dave') == pytest.approx(0.3 + 0.7 * math.exp(-1 / 30))

    def test_strength_decays_with_age(self, reasoner, graph):
        graph.entity('e-a', 'A')
        graph.entity('e-b', 'B')
        graph.link('l1', 'e-a', 'knows', 'e-b', days_ago=30)

        assert reasoner.relationship_strength('user-1', 'e-a', 'e-b') == pytest.approx(0.3 + 0.7 * math.exp(-1))

    def test_relationship_history(self, reasoner, team):
        team.link('l4', 'e-bob', 'mentors', 'e-alice', days_ago=10, status='ended')

        history = reasoner.relationship_history('user-1', 'e-alice', 'e-bob')

        assert [event['type'] for event in history] == ['mentors', 'knows']
        assert [event['direction'] for event in history] == ['backward', 'forward']
        assert history[0]['status'] == 'ended'


class TestReason:

    def test_who_can_help(self, reasoner, team, llm):
        llm.complete.return_value = 'Bob works on Project Alpha.'

        answer = reasoner.reason('user-1', 'Who can help with Project Alpha?')

        assert answer.intent == WHO_CAN_HELP
        assert answer.paths[0].entity_ids == ('e-alpha', 'e-bob')
        assert answer.paths[1].entity_ids == ('e-alpha', 'e-bob', 'e-alice')
        assert answer.paths[0].score > answer.paths[1].score
        assert answer.reasoning == 'Bob works on Project Alpha.'

    def test_relationship_between(self, reasoner, team):
        answer = reasoner.reason('user-1', 'What is the relationship between Alice and Project Alpha?', explain=False)

        assert answer.intent == RELATIONSHIP_BETWEEN
        assert [p.entity_ids for p in answer.paths] == [('e-alice', 'e-bob', 'e-alpha')]

    def test_relationship_between_needs_two_entities(self, reasoner, team):
        answer = reasoner.reason('user-1', 'What is the relationship between Alice and the moon?', explain=False)

        assert answer.intent == GENERAL
        assert [p.entity_ids for p in answer.paths] == [('e-alice', 'e-bob')]

    def test_who_knows(self, reasoner, team):
        team.link('l4', 'e-erin', 'sold a car to', 'e-bob')

        answer = reasoner.reason('user-1', 'Who knows Bob?', explain=False)

        assert answer.intent == WHO_KNOWS
        strengths = {p.entity_ids[-1]: p.strength for p in answer.paths}
        assert strengths['e-alice'] == 1.0
        assert strengths['e-erin'] == 0.6

    def test_no_known_entity(self, reasoner, team, llm):
        answer = reasoner.reason('user-1', 'Who can help with taxes?')

        assert answer.paths == []
        llm.complete.assert_not_called()

    def test_explanation_failure_keeps_paths(self, reasoner, team, llm):
        llm.complete.side_effect = BedrockLLMError('throttled')

        answer = reasoner.reason('user-1', 'Tell me about Carol')

        assert answer.reasoning == ''
        assert [p.entity_ids for p in answer.paths] == [('e-carol', 'e-dave')]

    def test_rank_paths_dedupes(self, reasoner, team):
        index = reasoner.load_index('user-1')
        paths = reasoner._general(index, [index.index_of('e-bob')] * 2)

        ranked = reasoner.rank_paths('Bob', paths)

        assert len(ranked) == 2


class TestKnowledgeGaps:

    def test_undefined_repeated_entities(self, reasoner, remember):
        for i in range(3):
            remember(f't{i}', f'Sync about Project Titan number {i}', entities=['Project Titan'])
        for i in range(4):
            remember(f'a{i}', f'Alpha standup {i}', entities=['Alpha'])
        remember('a-def', 'Alpha is our billing rewrite', entities=['Alpha'])
        remember('once', 'Lunch with Zoe', entities=['Zoe'])

        gaps = reasoner.knowledge_gaps('user-1')

        assert [(g.entity, g.mention_count) for g in gaps] == [('Project Titan', 3)]
        assert gaps[0].to_dict()['suggestion'].startswith('You\'ve mentioned "Project Titan" 3 times')

    def test_faded_deleted_and_foreign_memories_do_not_count(self, reasoner, remember, opensearch):
        remember('m1', 'Titan sync', entities=['Titan'])
        remember('m2', 'Titan review', entities=['titan'])
        remember('faded', 'Titan retro', entities=['Titan'], confidence=0.3)
        remember('gone', 'Titan notes', entities=['Titan'])
        remember('theirs', 'Titan budget', entities=['Titan'], user_id='user-2')
        opensearch.update_memory('gone', {'deleted': True})

        assert reasoner.knowledge_gaps('user-1') == []

        remember('m3', 'Titan demo', entities=['TITAN', 'Titan'])
        gaps = reasoner.knowledge_gaps('user-1')

        assert [(g.entity, g.mention_count) for g in gaps] == [('Titan', 3)]

    def test_ordered_and_limited(self, reasoner, remember, app_config):
        for n, name in enumerate(['A1', 'B2', 'C3', 'D4', 'E5', 'F6']):
            for i in range(3 + n):
                remember(f'{name}-{i}', f'Mentioned {name} again', entities=[name])

        gaps = reasoner.knowledge_gaps('user-1')

        assert len(gaps) == app_config.graph.gap_limit
        assert [g.entity for g in gaps] == ['F6', 'E5', 'D4', 'C3', 'B2']


class TestImplications:

    def test_maps_valid_indices_to_memory_ids(self, reasoner, llm):
        memories = [SearchResult(id='m1', content='John wants weekly AI updates', score=0.9),
                    SearchResult(id='m2', content='Sarah is the lead AI engineer', score=0.8)]
        llm.complete.return_value = json.dumps({
            'implications': [{
                'type': 'action_suggestion',
                'content': 'Coordinate with Sarah for John\'s AI updates',
                'relatedMemoryIndices': [0, 1, 7],
                'confidence': 0.9
            }, {
                'type': 'connection',
                'content': 'Unsupported claim',
                'relatedMemoryIndices': [5],
                'confidence': 0.95
            }]
        })

        implications = reasoner.detect_implications(memories, 'What should I do about AI updates?')

        assert len(implications) == 1
        assert implications[0].type == 'action_suggestion'
        assert implications[0].related_memory_ids == ['m1', 'm2']
        assert implications[0].confidence == 0.9

    def test_single_memory_implies_nothing(self, reasoner, llm):
        memories = [SearchResult(id='m1', content='John wants weekly AI updates', score=0.9)]

        assert reasoner.detect_implications(memories, 'anything') == []
        llm.complete.assert_not_called()


class TestParseImplications:

    def test_drops_low_confidence_and_unknown_types(self):
        response = json.dumps([
            {'type': 'gap', 'content': 'Titan is never explained', 'relatedMemoryIndices': [0], 'confidence': 0.6},
            {'type': 'prophecy', 'content': 'x', 'relatedMemoryIndices': [0], 'confidence': 0.9},
            {'type': 'connection', 'content': 'Both mention Titan', 'relatedMemoryIndices': ['1', 1], 'confidence': 0.7},
        ])

        findings = parse_implications(response, memory_count=2, min_confidence=0.6)

        assert [(f.type, f.indices) for f in findings] == [('connection', [1])]

    def test_garbage_is_empty(self):
        assert parse_implications('no idea', memory_count=2, min_confidence=0.6) == []
