"""
In-memory adjacency index over one owner's entity graph.

Entities are held in an arena ordered by id; edges are stored as
(neighbour index, link index) pairs per node, also ordered by neighbour id, so
every traversal visits neighbours in lexicographic entity-id order.
"""

from typing import Dict, Iterable, List, Optional, Tuple

from ..models.core import Entity, EntityLink


class AdjacencyIndex:
    """Undirected view of an owner's EntityLinks for traversal-heavy operations."""

    def __init__(self, entities: Iterable[Entity], links: Iterable[EntityLink]):
        self.entities: List[Entity] = sorted(entities, key=lambda e: e.id)
        self.position: Dict[str, int] = {entity.id: i for i, entity in enumerate(self.entities)}
        self.links: List[EntityLink] = []
        self.adjacency: List[List[Tuple[int, int]]] = [[] for _ in self.entities]
        self.degree: List[int] = [0] * len(self.entities)

        for link in links:
            subject = self.position.get(link.subject_id)
            if subject is None:
                continue
            if link.object_id is None or link.object_id == link.subject_id:
                self.links.append(link)
                self.degree[subject] += 1
                continue
            target = self.position.get(link.object_id)
            if target is None:
                continue
            link_index = len(self.links)
            self.links.append(link)
            self.adjacency[subject].append((target, link_index))
            self.adjacency[target].append((subject, link_index))
            self.degree[subject] += 1
            self.degree[target] += 1

        for edges in self.adjacency:
            edges.sort(key=lambda edge: (self.entities[edge[0]].id, self.links[edge[1]].id))

    def __len__(self) -> int:
        return len(self.entities)

    def index_of(self, entity_id: str) -> Optional[int]:
        return self.position.get(entity_id)

    def entity(self, index: int) -> Entity:
        return self.entities[index]

    def link(self, link_index: int) -> EntityLink:
        return self.links[link_index]

    def neighbours(self, index: int) -> List[Tuple[int, int]]:
        return self.adjacency[index]

    def is_forward(self, from_index: int, link_index: int) -> bool:
        """True when the link's subject is the node being left."""
        return self.links[link_index].subject_id == self.entities[from_index].id
