"""
Knowledge graph reasoner: relationships, path search, strength, centrality,
clustering and query-driven graph reasoning over one owner's entity links.

Traversal-heavy operations load the owner's graph once into an AdjacencyIndex
instead of issuing one relationship query per visited node.
"""

import math
import re
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..models.core import (CentralEntity, Cluster, Entity, EntityLink, GraphAnswer, Implication, KnowledgeGap, Path,
                           PathNode, Relationship, SearchResult)
from ..utils.config import GraphConfig
from ..utils.errors import ProviderError
from ..utils.logging_config import get_logger
from ..utils.neptune_client import NeptuneClient
from ..utils.opensearch_client import OpenSearchClient
from ..utils.timestamp_utils import days_between, utcnow
from .graph_index import AdjacencyIndex
from .query_intent import GENERAL, RELATIONSHIP_BETWEEN, WHO_CAN_HELP, WHO_KNOWS, classify_intent
from .reasoning_provider import ReasoningProvider

logger = get_logger(__name__)

EXPERTISE_ROLES = ('expert', 'expertise', 'skilled', 'speciali', 'experienced', 'knows', 'works on', 'works_on',
                   'leads', 'teaches', 'mentors', 'built', 'develops', 'helps', 'help')
ACQUAINTANCE_ROLES = ('knows', 'friend', 'colleague', 'works with', 'works_with', 'met', 'contact', 'manages',
                      'reports to', 'collaborat', 'introduc', 'married', 'sibling', 'partner')

DEFINITION_PATTERNS = ('{name} is', '{name} was', '{name}:', 'what is {name}', '{name} refers to')

_QUERY_STOP_WORDS = {
    'who', 'what', 'when', 'where', 'why', 'how', 'can', 'could', 'should', 'might', 'help', 'the', 'and', 'with',
    'about', 'between', 'related', 'connected', 'knows', 'know', 'is', 'are', 'me', 'my', 'for', 'to', 'of', 'relationship'
}


def _role_matches(role: Optional[str], keywords: Sequence[str]) -> bool:
    role = (role or '').lower()
    return any(keyword in role for keyword in keywords)


def _link_time(link: EntityLink) -> float:
    moment = link.updated_at or link.created_at
    return moment.timestamp() if moment else 0.0


def _query_terms(query: str) -> Set[str]:
    return {term for term in re.findall(r'[a-z0-9]+', query.lower()) if len(term) > 2 and term not in _QUERY_STOP_WORDS}


def keyword_overlap(terms: Set[str], path: Path) -> float:
    """Fraction of query terms found in the path's entity names or relationships."""
    if not terms:
        return 0.0
    text = ' '.join(f'{node.entity_name} {node.relationship or ""}' for node in path.nodes).lower()
    path_terms = set(re.findall(r'[a-z0-9]+', text))
    return len(terms & path_terms) / len(terms)


class KnowledgeGraphReasoner:
    """Owner-scoped reasoning over Entities and EntityLinks."""

    def __init__(self,
                 neptune: NeptuneClient,
                 opensearch: OpenSearchClient,
                 provider: ReasoningProvider,
                 config: GraphConfig,
                 clock: Callable[[], datetime] = utcnow):
        self.neptune = neptune
        self.opensearch = opensearch
        self.provider = provider
        self.config = config
        self.clock = clock

        logger.info('Initialized KnowledgeGraphReasoner')

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _visible_links(self, user_id: str, links: List[EntityLink]) -> List[EntityLink]:
        """Drop links of other owners and links whose source memory is deleted or foreign."""
        links = [link for link in links if link.user_id == user_id]
        sources = [link.source_memory_id for link in links if link.source_memory_id]
        hidden = self.opensearch.hidden_memory_ids(user_id, sources) if sources else set()
        return [link for link in links if not link.source_memory_id or link.source_memory_id not in hidden]

    def load_index(self, user_id: str, only_active: bool = True) -> AdjacencyIndex:
        entities = [entity for entity in self.neptune.list_entities(user_id) if entity.user_id == user_id]
        links = self._visible_links(user_id, self.neptune.list_links(user_id, only_active=only_active))
        index = AdjacencyIndex(entities, links)
        logger.debug(f'Loaded graph for user {user_id}: {len(index)} entities, {len(index.links)} links')
        return index

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _resolve(self, user_id: str, links: List[EntityLink]) -> List[Relationship]:
        ids = {link.subject_id for link in links} | {link.object_id for link in links if link.object_id}
        entities = self.neptune.get_entities(user_id, ids)
        relationships = []
        for link in links:
            subject = entities.get(link.subject_id)
            if subject is None:
                continue
            target = entities.get(link.object_id) if link.object_id else None
            if link.object_id and target is None:
                continue
            relationships.append(Relationship(link=link, subject_name=subject.name, object_name=target.name if target else None))
        return relationships

    def relationships(self,
                      user_id: str,
                      entity_id: str,
                      roles: Optional[List[str]] = None,
                      since: Optional[datetime] = None,
                      only_active: bool = False,
                      limit: Optional[int] = None) -> List[Relationship]:
        """
        Links where the entity is subject or object, with both names resolved.

        Args:
            user_id: Owner of the graph
            entity_id: Entity to inspect
            roles: Only links with one of these roles
            since: Only links updated at or after this time
            only_active: Only links with status 'active'
            limit: Maximum number of relationships

        Returns:
            Relationships; empty if the entity does not exist for the owner
        """
        if self.neptune.get_entity(user_id, entity_id) is None:
            logger.debug(f'Entity {entity_id} not found for user {user_id}')
            return []
        links = self.neptune.get_entity_links(user_id,
                                              entity_id,
                                              roles=roles,
                                              since=int(since.timestamp()) if since else None,
                                              only_active=only_active)
        relationships = self._resolve(user_id, self._visible_links(user_id, links))
        relationships.sort(key=lambda r: (-_link_time(r.link), r.link.id))
        return relationships[:limit] if limit else relationships

    def find_related(self, user_id: str, entity_name: str, role: Optional[str] = None) -> List[Dict[str, Any]]:
        """Outgoing relationships of a named entity as triplets with their source text."""
        entity = self.neptune.find_entity_by_name(user_id, entity_name)
        if entity is None:
            return []
        links = [link for link in self.neptune.get_entity_links(user_id, entity.id, roles=[role] if role else None)
                 if link.subject_id == entity.id]
        related = []
        for relationship in self._resolve(user_id, self._visible_links(user_id, links)):
            source = self._source_memory(user_id, relationship.link)
            triplet = relationship.as_triplet()
            triplet['source'] = source.content if source else ''
            triplet['sourceDate'] = source.event_time.isoformat() if source else None
            related.append(triplet)
        return related

    def _source_memory(self, user_id: str, link: EntityLink):
        if not link.source_memory_id:
            return None
        return self.opensearch.get_memory(link.source_memory_id, user_id=user_id)

    def relationship_history(self, user_id: str, entity_a: str, entity_b: str) -> List[Dict[str, Any]]:
        """Every link between two entities, oldest first, with direction relative to `entity_a`."""
        links = self._visible_links(user_id, self.neptune.get_links_between(user_id, entity_a, entity_b))
        history = []
        for link in links:
            source = self._source_memory(user_id, link)
            date = source.event_time if source else link.created_at
            history.append({
                'type': link.role or 'related to',
                'date': date,
                'source': source.content if source else '',
                'status': link.status,
                'direction': 'forward' if link.subject_id == entity_a else 'backward'
            })
        history.sort(key=lambda event: event['date'].timestamp() if event['date'] else 0.0)
        for event in history:
            event['date'] = event['date'].isoformat() if event['date'] else None
        return history

    def relationship_strength(self, user_id: str, entity_a: str, entity_b: str) -> float:
        """
        Distinct relationship types (weight 0.3) plus recency-decayed link count
        (weight 0.7), averaged over the links and capped at 1.0.

        Returns:
            Strength in [0, 1]; 0 when the entities are not linked
        """
        links = self._visible_links(user_id, self.neptune.get_links_between(user_id, entity_a, entity_b))
        if not links:
            return 0.0
        now = self.clock()
        unique_roles = len({link.role for link in links})
        recency = sum(
            math.exp(-days_between(link.updated_at or link.created_at, now) / self.config.strength_recency_days)
            for link in links)
        return min(1.0, (unique_roles * 0.3 + recency * 0.7) / len(links))

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _build_path(self, index: AdjacencyIndex, steps: List[Tuple[int, Optional[int]]]) -> Path:
        """`steps` is [(node, link to next node)], the last link being None."""
        nodes = []
        for node, link_index in steps:
            entity = index.entity(node)
            if link_index is None:
                nodes.append(PathNode(entity_id=entity.id, entity_name=entity.name))
            else:
                link = index.link(link_index)
                nodes.append(
                    PathNode(entity_id=entity.id,
                             entity_name=entity.name,
                             relationship=link.role or 'related to',
                             forward=index.is_forward(node, link_index)))
        length = max(1, len(nodes) - 1)
        return Path(nodes=nodes, strength=1.0 / length)

    def shortest_path(self, user_id: str, start_id: str, end_id: str, max_depth: Optional[int] = None,
                      index: Optional[AdjacencyIndex] = None) -> Optional[Path]:
        """
        Breadth-first search over active links; neighbours are expanded in
        entity-id order, so the first path found at the minimal depth is returned.

        Returns:
            Path, or None when either entity is missing, they are the same, or
            no path exists within `max_depth` links
        """
        depth_limit = self.config.max_depth if max_depth is None else max_depth
        index = index or self.load_index(user_id)
        start, end = index.index_of(start_id), index.index_of(end_id)
        if start is None or end is None or start == end or depth_limit < 1:
            return None

        parents: Dict[int, Tuple[int, int]] = {}
        depth = {start: 0}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            if depth[current] >= depth_limit:
                continue
            for neighbour, link_index in index.neighbours(current):
                if neighbour in depth:
                    continue
                depth[neighbour] = depth[current] + 1
                parents[neighbour] = (current, link_index)
                if neighbour == end:
                    steps = [(end, None)]
                    node = end
                    while node != start:
                        previous, via = parents[node]
                        steps.append((previous, via))
                        node = previous
                    return self._build_path(index, list(reversed(steps)))
                queue.append(neighbour)
        return None

    def all_paths(self,
                  user_id: str,
                  start_id: str,
                  end_id: str,
                  max_depth: Optional[int] = None,
                  max_paths: Optional[int] = None,
                  index: Optional[AdjacencyIndex] = None) -> List[Path]:
        """
        Depth-first enumeration of simple paths of at most `max_depth` links,
        stopping after `max_paths`. Each path has strength 1/length.

        Returns:
            Paths sorted by descending strength
        """
        depth_limit = self.config.max_depth if max_depth is None else max_depth
        path_limit = self.config.max_paths if max_paths is None else max_paths
        index = index or self.load_index(user_id)
        start, end = index.index_of(start_id), index.index_of(end_id)
        if start is None or end is None or start == end:
            return []

        paths: List[Path] = []
        on_path = {start}
        steps: List[Tuple[int, Optional[int]]] = []

        def dfs(current: int) -> None:
            if len(paths) >= path_limit or len(steps) >= depth_limit:
                return
            for neighbour, link_index in index.neighbours(current):
                if len(paths) >= path_limit:
                    return
                if neighbour in on_path:
                    continue
                steps.append((current, link_index))
                if neighbour == end:
                    paths.append(self._build_path(index, steps + [(end, None)]))
                else:
                    on_path.add(neighbour)
                    dfs(neighbour)
                    on_path.discard(neighbour)
                steps.pop()

        dfs(start)
        paths.sort(key=lambda p: -p.strength)
        return paths

    # ------------------------------------------------------------------
    # Whole-graph analytics
    # ------------------------------------------------------------------

    def central_entities(self, user_id: str, limit: int = 10) -> List[CentralEntity]:
        """Degree centrality over active links, highest first."""
        index = self.load_index(user_id)
        ranked = sorted(range(len(index)), key=lambda i: (-index.degree[i], index.entity(i).name.lower(), index.entity(i).id))
        return [CentralEntity(entity=index.entity(i), relationship_count=index.degree[i]) for i in ranked[:limit]]

    def clusters(self, user_id: str) -> List[Cluster]:
        """Connected components over active links, largest first."""
        index = self.load_index(user_id)
        visited: Set[int] = set()
        components = []
        for root in range(len(index)):
            if root in visited:
                continue
            visited.add(root)
            component = []
            queue = deque([root])
            while queue:
                node = queue.popleft()
                component.append(index.entity(node))
                for neighbour, _ in index.neighbours(node):
                    if neighbour not in visited:
                        visited.add(neighbour)
                        queue.append(neighbour)
            components.append(Cluster(entities=component))
        components.sort(key=lambda c: -c.size)
        return components

    def isolated_entities(self, user_id: str) -> List[Entity]:
        """Entities with no visible links at all."""
        index = self.load_index(user_id, only_active=False)
        return [index.entity(i) for i in range(len(index)) if index.degree[i] == 0]

    # ------------------------------------------------------------------
    # Query-driven reasoning
    # ------------------------------------------------------------------

    def _mentioned(self, index: AdjacencyIndex, query: str) -> List[int]:
        lowered = query.lower()
        found = []
        for i, entity in enumerate(index.entities):
            name = entity.name.strip().lower()
            if not name:
                continue
            match = re.search(r'(?<!\w)' + re.escape(name) + r'(?!\w)', lowered)
            if match:
                found.append((match.start(), -len(name), i))
        return [i for _, _, i in sorted(found)]

    def _edge_paths(self, index: AdjacencyIndex, origin: int, weigh: Callable[[EntityLink], float]) -> List[Path]:
        paths = []
        for neighbour, link_index in index.neighbours(origin):
            path = self._build_path(index, [(origin, link_index), (neighbour, None)])
            path.strength = weigh(index.link(link_index))
            paths.append(path)
        return paths

    def _who_can_help(self, index: AdjacencyIndex, origins: List[int]) -> List[Path]:

        def weigh(link: EntityLink) -> float:
            return 1.0 if _role_matches(link.role, EXPERTISE_ROLES) else 0.5

        paths = []
        for origin in origins:
            for neighbour, link_index in index.neighbours(origin):
                first = weigh(index.link(link_index))
                direct = self._build_path(index, [(origin, link_index), (neighbour, None)])
                direct.strength = first
                paths.append(direct)
                for second, second_link in index.neighbours(neighbour):
                    if second in (origin, neighbour):
                        continue
                    extended = self._build_path(index, [(origin, link_index), (neighbour, second_link), (second, None)])
                    extended.strength = first * self.config.hop_decay * weigh(index.link(second_link))
                    paths.append(extended)
        return paths

    def _who_knows(self, index: AdjacencyIndex, origins: List[int]) -> List[Path]:
        paths = []
        for origin in origins:
            paths.extend(
                self._edge_paths(index, origin, lambda link: 1.0 if _role_matches(link.role, ACQUAINTANCE_ROLES) else 0.6))
        return paths

    def _general(self, index: AdjacencyIndex, origins: List[int]) -> List[Path]:
        paths = []
        for origin in origins:
            paths.extend(self._edge_paths(index, origin, lambda link: 1.0))
        return paths

    def rank_paths(self, query: str, paths: List[Path]) -> List[Path]:
        """Score = strength x (1 + keyword overlap) x exp(-length / scale); duplicates keep their best score."""
        terms = _query_terms(query)
        best: Dict[Tuple[str, ...], Path] = {}
        for path in paths:
            path.score = (path.strength * (1 + keyword_overlap(terms, path)) *
                          math.exp(-path.length / self.config.path_length_scale))
            key = path.entity_ids
            if key not in best or path.score > best[key].score:
                best[key] = path
        return sorted(best.values(), key=lambda p: (-p.score, p.length, p.entity_ids))[:self.config.max_paths]

    def reason(self, user_id: str, query: str, explain: bool = True) -> GraphAnswer:
        """
        Answer a natural-language question from the owner's graph.

        The query's intent picks the path-building strategy; the resulting paths
        are re-ranked against the query and optionally explained by the model.
        A failed explanation leaves `reasoning` empty.

        Returns:
            GraphAnswer; empty when no known entity is mentioned
        """
        intent = classify_intent(query)
        index = self.load_index(user_id)
        mentioned = self._mentioned(index, query)
        if not mentioned:
            logger.debug(f'No known entities mentioned in graph query for user {user_id}')
            return GraphAnswer(intent=intent)

        if intent == RELATIONSHIP_BETWEEN and len(mentioned) < 2:
            intent = GENERAL

        if intent == WHO_CAN_HELP:
            paths = self._who_can_help(index, mentioned)
        elif intent == RELATIONSHIP_BETWEEN:
            first, second = index.entity(mentioned[0]).id, index.entity(mentioned[1]).id
            paths = self.all_paths(user_id, first, second, index=index)
        elif intent == WHO_KNOWS:
            paths = self._who_knows(index, mentioned)
        else:
            paths = self._general(index, mentioned)

        answer = GraphAnswer(intent=intent, paths=self.rank_paths(query, paths))
        ranked = answer.paths
        if explain and ranked:
            try:
                answer.reasoning = self.provider.explain_paths(query, ranked)
            except ProviderError as e:
                logger.warning(f'Graph reasoning explanation failed: {e}')
        return answer

    # ------------------------------------------------------------------
    # Gaps and implications
    # ------------------------------------------------------------------

    def knowledge_gaps(self, user_id: str) -> List[KnowledgeGap]:
        """
        Entities tagged in at least `gap_min_mentions` live, confident memories
        that no memory defines ("X is ...", "X refers to ...").

        Returns:
            Up to `gap_limit` gaps, most mentioned first
        """
        mentions: Dict[str, int] = {}
        names: Dict[str, str] = {}
        defined: Set[str] = set()
        for memory in self.opensearch.iter_memories(user_id, min_confidence=self.config.gap_min_confidence):
            content = memory.content.lower()
            seen: Set[str] = set()
            for entity in (name.strip() for name in memory.metadata.detected_entities if name and name.strip()):
                key = entity.lower()
                if key in seen:
                    continue
                seen.add(key)
                names.setdefault(key, entity)
                mentions[key] = mentions.get(key, 0) + 1
                if any(pattern.format(name=key) in content for pattern in DEFINITION_PATTERNS):
                    defined.add(key)

        gaps = [KnowledgeGap(entity=names[key], mention_count=count)
                for key, count in mentions.items()
                if count >= self.config.gap_min_mentions and key not in defined]
        gaps.sort(key=lambda gap: (-gap.mention_count, gap.entity.lower()))
        logger.debug(f'Found {len(gaps)} knowledge gaps for user {user_id}')
        return gaps[:self.config.gap_limit]

    def detect_implications(self, memories: Sequence[SearchResult], query: str) -> List[Implication]:
        """
        Action suggestions, connections and gaps implied by a set of retrieved
        memories. Fewer than two memories imply nothing.

        Raises:
            ProviderError: If the completion call fails
        """
        if len(memories) < 2:
            return []
        findings = self.provider.find_implications([memory.content for memory in memories], query,
                                                   self.config.implication_min_confidence)
        return [
            Implication(type=finding.type,
                        content=finding.content,
                        related_memory_ids=[memories[i].id for i in finding.indices],
                        confidence=finding.confidence) for finding in findings
        ]
