"""
Core data models for the personal memory engine.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

# Keys owned by MemoryMetadata; everything else is carried through in `extra`
_METADATA_KEYS = ('importance', 'detected_entities', 'supersedes', 'superseded_by', 'superseded_at', 'contradicts',
                  'contradicted_by', 'archived_reason', 'archived_at')


@dataclass
class MemoryMetadata:
    """Typed extension fields stored alongside a memory."""
    importance: Optional[float] = None
    detected_entities: List[str] = field(default_factory=list)
    supersedes: Optional[str] = None
    superseded_by: Optional[str] = None
    superseded_at: Optional[str] = None
    contradicts: Optional[str] = None
    contradicted_by: Optional[str] = None
    archived_reason: Optional[str] = None
    archived_at: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def importance_or(self, default: float) -> float:
        return default if self.importance is None else float(self.importance)

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for key in _METADATA_KEYS:
            value = getattr(self, key)
            if value is None or value == []:
                continue
            data[key] = list(value) if isinstance(value, list) else value
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MemoryMetadata':
        data = dict(data or {})
        importance = data.pop('importance', None)
        try:
            importance = None if importance is None else min(1.0, max(0.0, float(importance)))
        except (TypeError, ValueError):
            importance = None
        entities = data.pop('detected_entities', None) or []
        return cls(importance=importance,
                   detected_entities=[str(e) for e in entities if e],
                   supersedes=data.pop('supersedes', None),
                   superseded_by=data.pop('superseded_by', None),
                   superseded_at=data.pop('superseded_at', None),
                   contradicts=data.pop('contradicts', None),
                   contradicted_by=data.pop('contradicted_by', None),
                   archived_reason=data.pop('archived_reason', None),
                   archived_at=data.pop('archived_at', None),
                   extra=data)


@dataclass
class Memory:
    """A single stored fact owned by one user.

    `revision` is the store's (seq_no, primary_term) pair observed when the
    memory was read; versioned writes are rejected if it has moved on.
    `decayed_at` is when confidence decay last wrote a new score.
    """
    id: str
    user_id: str
    content: str
    kind: str
    created_at: datetime
    last_accessed_at: datetime
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    confidence_score: float = 1.0
    access_count: int = 0
    recorded_at: Optional[datetime] = None
    deleted: bool = False
    decayed_at: Optional[datetime] = None
    revision: Optional[Tuple[int, int]] = None

    @property
    def event_time(self) -> datetime:
        return self.recorded_at or self.created_at


@dataclass
class Entity:
    """A named thing extracted from memories, scoped per user."""
    id: str
    user_id: str
    name: str
    type: str
    created_at: Optional[datetime] = None


@dataclass
class EntityLink:
    """Directed, labelled edge between two entities of the same user."""
    id: str
    user_id: str
    subject_id: str
    role: str
    object_id: Optional[str] = None
    source_memory_id: Optional[str] = None
    source_message_id: Optional[str] = None
    status: str = 'active'
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def other_end(self, entity_id: str) -> Optional[str]:
        if self.subject_id == entity_id:
            return self.object_id
        if self.object_id == entity_id:
            return self.subject_id
        return None


@dataclass
class Relationship:
    """An EntityLink with both entity names resolved."""
    link: EntityLink
    subject_name: str
    object_name: Optional[str]

    @property
    def predicate(self) -> str:
        return self.link.role or 'related to'

    def as_triplet(self) -> Dict[str, str]:
        return {'subject': self.subject_name, 'predicate': self.predicate, 'object': self.object_name or 'unknown'}


@dataclass
class SearchResult:
    """A ranked memory returned by search."""
    id: str
    content: str
    score: float


@dataclass
class Contradiction:
    """A conflict between new content and an existing memory."""
    existing_memory_id: str
    existing_content: str
    reason: str
    severity: str = 'medium'
    is_temporal_progression: bool = False


@dataclass
class ContradictionReport:
    contradictions: List[Contradiction] = field(default_factory=list)

    @property
    def has_contradictions(self) -> bool:
        return len(self.contradictions) > 0


@dataclass
class PathNode:
    """`relationship` names the edge to the next node; `forward` is False when that edge points back at this node."""
    entity_id: str
    entity_name: str
    relationship: Optional[str] = None
    forward: bool = True


@dataclass
class Path:
    """A chain of entities. `strength` is in [0, 1]; `score` is the query-specific rank."""
    nodes: List[PathNode]
    strength: float
    score: float = 0.0

    @property
    def length(self) -> int:
        return max(0, len(self.nodes) - 1)

    @property
    def entity_ids(self) -> Tuple[str, ...]:
        return tuple(node.entity_id for node in self.nodes)

    @property
    def explanation(self) -> str:
        parts = []
        for current, following in zip(self.nodes, self.nodes[1:]):
            relationship = current.relationship or 'connects to'
            if current.forward:
                parts.append(f'{current.entity_name} {relationship} {following.entity_name}')
            else:
                parts.append(f'{following.entity_name} {relationship} {current.entity_name}')
        return ', and '.join(parts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'path': [node.entity_name for node in self.nodes],
            'length': self.length,
            'strength': round(self.strength, 4),
            'score': round(self.score, 4),
            'explanation': self.explanation
        }


@dataclass
class CentralEntity:
    entity: Entity
    relationship_count: int

    @property
    def score(self) -> int:
        return self.relationship_count


@dataclass
class Cluster:
    entities: List[Entity]

    @property
    def size(self) -> int:
        return len(self.entities)


@dataclass
class GraphAnswer:
    """Ranked paths for a natural-language graph query."""
    intent: str
    paths: List[Path] = field(default_factory=list)
    reasoning: str = ''


@dataclass
class KnowledgeGap:
    """An entity mentioned repeatedly that no memory explains."""
    entity: str
    mention_count: int

    @property
    def suggestion(self) -> str:
        return (f'You\'ve mentioned "{self.entity}" {self.mention_count} times but I don\'t have details '
                f'about what it is. Would you like to tell me more?')

    def to_dict(self) -> Dict[str, Any]:
        return {'entity': self.entity, 'mentionCount': self.mention_count, 'suggestion': self.suggestion}


@dataclass
class Implication:
    """An action suggestion, connection or gap inferred from several memories."""
    type: str
    content: str
    related_memory_ids: List[str]
    confidence: float


@dataclass
class TimelineEvent:
    date: datetime
    event: str
    memory_id: str
    type: str


@dataclass
class Timeline:
    entity: str
    events: List[TimelineEvent]
    narrative: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity': self.entity,
            'timeline': [{
                'date': e.date.isoformat(),
                'event': e.event,
                'memoryId': e.memory_id,
                'type': e.type
            } for e in self.events],
            'narrative': self.narrative
        }


@dataclass
class CachedInsight:
    """Per-entity graph/timeline bundle as stored in the key-value cache."""
    entity_id: str
    entity_name: str
    cached_at: int
    graph: Optional[Dict[str, Any]] = None
    timeline: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {'entityId': self.entity_id, 'entityName': self.entity_name, 'cachedAt': self.cached_at}
        if self.graph is not None:
            data['graph'] = self.graph
        if self.timeline is not None:
            data['timeline'] = self.timeline
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(',', ':'))

    @classmethod
    def from_json(cls, payload: str) -> 'CachedInsight':
        data = json.loads(payload)
        return cls(entity_id=data.get('entityId', ''),
                   entity_name=data.get('entityName', ''),
                   cached_at=int(data.get('cachedAt', 0)),
                   graph=data.get('graph'),
                   timeline=data.get('timeline'))


@dataclass
class PopularEntity:
    entity_id: str
    entity_name: str
    usage_count: int
    last_used: int


@dataclass
class BatchReport:
    """Aggregate outcome of a batch job; individual failures are only counted."""
    processed: int = 0
    updated: int = 0
    archived: int = 0
    failures: int = 0
