"""Tests for core data models."""

from memcore.models.core import CachedInsight, EntityLink, MemoryMetadata, Path, PathNode, Relationship


class TestMemoryMetadata:

    def test_round_trip_keeps_unknown_keys(self):
        data = {'importance': 0.9, 'detected_entities': ['John'], 'superseded_by': 'm2', 'source': 'chat'}
        metadata = MemoryMetadata.from_dict(data)

        assert metadata.importance == 0.9
        assert metadata.extra == {'source': 'chat'}
        assert metadata.to_dict() == data

    def test_importance_is_clamped_and_defaulted(self):
        assert MemoryMetadata.from_dict({'importance': 3}).importance == 1.0
        assert MemoryMetadata.from_dict({'importance': 'high'}).importance is None
        assert MemoryMetadata().importance_or(0.5) == 0.5


class TestPath:

    def test_explanation_follows_edge_direction(self):
        path = Path(nodes=[
            PathNode('e-alpha', 'Project Alpha', 'works on', forward=False),
            PathNode('e-bob', 'Bob', 'knows', forward=True),
            PathNode('e-carol', 'Carol')
        ],
                    strength=0.5)

        assert path.length == 2
        assert path.explanation == 'Bob works on Project Alpha, and Bob knows Carol'
        assert path.to_dict()['path'] == ['Project Alpha', 'Bob', 'Carol']


class TestRelationship:

    def test_triplet_for_link_without_object(self):
        link = EntityLink(id='l1', user_id='user-1', subject_id='e1', role='is behind schedule')
        relationship = Relationship(link=link, subject_name='Project Alpha', object_name=None)

        assert relationship.as_triplet() == {
            'subject': 'Project Alpha',
            'predicate': 'is behind schedule',
            'object': 'unknown'
        }


class TestCachedInsight:

    def test_json_is_stable(self):
        insight = CachedInsight(entity_id='e1', entity_name='John', cached_at=1, graph={'entity': 'John', 'relationships': []})
        payload = insight.to_json()

        assert CachedInsight.from_json(payload).to_json() == payload
        assert 'timeline' not in insight.to_dict()
