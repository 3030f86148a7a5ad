"""
MCP Interface Layer using fastmcp for agent orchestration.
"""

from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .services.memory_management import MemoryManagementService
from .utils.config import config
from .utils.errors import MemcoreError
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)


def _require_user(user_id: str) -> None:
    if not user_id or not user_id.strip():
        raise ValueError('User ID is required')


def _entity_id(service: MemoryManagementService, user_id: str, entity_name: str) -> Optional[str]:
    entity = service.neptune.find_entity_by_name(user_id, entity_name)
    return entity.id if entity else None


def create_app(service: MemoryManagementService) -> FastMCP:
    """Register the memory tools against a service instance."""
    mcp = FastMCP('Personal Memory')

    @mcp.tool()
    def search_memories(user_id: str, query: str, limit: int = 10, context_entities: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """Search the user's memories.

        Args:
            user_id: User ID
            query: Natural language query
            limit: Maximum number of results to return (default: 10)
            context_entities: Entities active in the current conversation

        Returns:
            List of {id, content, score} ordered by relevance
        """
        _require_user(user_id)
        if not query or not query.strip():
            return []
        try:
            results = service.search(user_id, query, limit, context_entities)
            logger.debug(f'MCP search returned {len(results)} memories for user {user_id}')
            return [{'id': r.id, 'content': r.content, 'score': round(r.score, 4)} for r in results]
        except MemcoreError as e:
            logger.error(f'Error in MCP search: {e}')
            raise Exception(f'Memory search failed: {e}')

    @mcp.tool()
    def add_memory(user_id: str,
                   content: str,
                   kind: str = 'note',
                   importance: Optional[float] = None,
                   entities: Optional[List[str]] = None) -> Dict[str, Any]:
        """Store a new memory.

        Args:
            user_id: User ID
            content: Memory text
            kind: Memory tag (default: note)
            importance: Importance between 0 and 1
            entities: Entity names mentioned in the memory

        Returns:
            {id, confidenceScore}
        """
        _require_user(user_id)
        try:
            memory = service.add_memory(user_id, content, kind=kind, importance=importance, entities=entities)
            return {'id': memory.id, 'confidenceScore': memory.confidence_score}
        except MemcoreError as e:
            logger.error(f'Error in MCP add: {e}')
            raise Exception(f'Memory add failed: {e}')

    @mcp.tool()
    def delete_memory(user_id: str, memory_id: str) -> bool:
        """Soft-delete a memory. Returns False if it does not exist."""
        _require_user(user_id)
        try:
            return service.delete_memory(user_id, memory_id)
        except MemcoreError as e:
            logger.error(f'Error in MCP delete: {e}')
            raise Exception(f'Memory deletion failed: {e}')

    @mcp.tool()
    def get_relationships(user_id: str, entity_name: str, only_active: bool = False, limit: int = 50) -> List[Dict[str, str]]:
        """Relationships of an entity as subject/predicate/object triplets."""
        _require_user(user_id)
        try:
            entity_id = _entity_id(service, user_id, entity_name)
            if entity_id is None:
                return []
            relationships = service.reasoner.relationships(user_id, entity_id, only_active=only_active, limit=limit)
            return [r.as_triplet() for r in relationships]
        except MemcoreError as e:
            logger.error(f'Error in MCP relationships: {e}')
            raise Exception(f'Relationship lookup failed: {e}')

    @mcp.tool()
    def find_path(user_id: str, from_entity: str, to_entity: str, max_depth: int = 4) -> Optional[Dict[str, Any]]:
        """Shortest chain of relationships between two entities, or None."""
        _require_user(user_id)
        try:
            start = _entity_id(service, user_id, from_entity)
            end = _entity_id(service, user_id, to_entity)
            if start is None or end is None:
                return None
            path = service.reasoner.shortest_path(user_id, start, end, max_depth)
            return path.to_dict() if path else None
        except MemcoreError as e:
            logger.error(f'Error in MCP path search: {e}')
            raise Exception(f'Path search failed: {e}')

    @mcp.tool()
    def central_entities(user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Most connected entities."""
        _require_user(user_id)
        try:
            return [{
                'id': c.entity.id,
                'name': c.entity.name,
                'type': c.entity.type,
                'relationshipCount': c.relationship_count
            } for c in service.reasoner.central_entities(user_id, limit)]
        except MemcoreError as e:
            logger.error(f'Error in MCP centrality: {e}')
            raise Exception(f'Centrality failed: {e}')

    @mcp.tool()
    def entity_clusters(user_id: str) -> List[List[str]]:
        """Groups of connected entities, largest first."""
        _require_user(user_id)
        try:
            return [[entity.name for entity in cluster.entities] for cluster in service.reasoner.clusters(user_id)]
        except MemcoreError as e:
            logger.error(f'Error in MCP clustering: {e}')
            raise Exception(f'Clustering failed: {e}')

    @mcp.tool()
    def entity_insights(user_id: str, entity_name: str, needs_graph: bool = True, needs_timeline: bool = True) -> Dict[str, Any]:
        """Cached or freshly computed graph/timeline insight for an entity."""
        _require_user(user_id)
        try:
            return service.entity_insight(user_id, entity_name, needs_graph, needs_timeline).to_dict()
        except MemcoreError as e:
            logger.error(f'Error in MCP insights: {e}')
            raise Exception(f'Insight computation failed: {e}')

    @mcp.tool()
    def graph_reasoning(user_id: str, query: str) -> Dict[str, Any]:
        """Answer a relationship question (e.g. who can help with X) from the knowledge graph."""
        _require_user(user_id)
        try:
            answer = service.reasoner.reason(user_id, query)
            return {'intent': answer.intent, 'reasoning': answer.reasoning, 'paths': [p.to_dict() for p in answer.paths]}
        except MemcoreError as e:
            logger.error(f'Error in MCP graph reasoning: {e}')
            raise Exception(f'Graph reasoning failed: {e}')

    @mcp.tool()
    def knowledge_gaps(user_id: str) -> List[Dict[str, Any]]:
        """Entities the user mentions often but has never explained."""
        _require_user(user_id)
        try:
            return [gap.to_dict() for gap in service.knowledge_gaps(user_id)]
        except MemcoreError as e:
            logger.error(f'Error in MCP knowledge gaps: {e}')
            raise Exception(f'Knowledge gap detection failed: {e}')

    @mcp.tool()
    def memory_implications(user_id: str, query: str, limit: int = 10) -> List[Dict[str, Any]]:
        """Action suggestions and connections implied by the memories relevant to a query."""
        _require_user(user_id)
        try:
            return [{'type': i.type, 'content': i.content, 'relatedMemories': i.related_memory_ids,
                     'confidence': i.confidence} for i in service.implications(user_id, query, limit)]
        except MemcoreError as e:
            logger.error(f'Error in MCP implications: {e}')
            raise Exception(f'Implication detection failed: {e}')

    @mcp.tool()
    def run_decay_pass(user_id: Optional[str] = None) -> Dict[str, int]:
        """Apply confidence decay for one user, or all users when omitted."""
        try:
            report = service.decay.decay_pass([user_id] if user_id else None)
            return {'processed': report.processed, 'updated': report.updated, 'archived': report.archived,
                    'failures': report.failures}
        except MemcoreError as e:
            logger.error(f'Error in MCP decay pass: {e}')
            raise Exception(f'Decay pass failed: {e}')

    @mcp.tool()
    def system_health() -> Dict[str, Any]:
        """Configuration summary and health of every backing service."""
        return get_system_info(service.config)

    return mcp


if __name__ == '__main__':
    mcp = create_app(MemoryManagementService.from_config(config))
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)
