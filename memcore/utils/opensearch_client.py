"""
OpenSearch client wrapper: the memory side of the fact store.

Memories live in one k-NN enabled index. Document `_id` is the memory id so
that field updates and optimistic concurrency (`_seq_no`/`_primary_term`)
address the row directly.
"""

from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import ConflictError, NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import Memory, MemoryMetadata
from .config import OpenSearchConfig
from .errors import OptimisticLockError, StoreError
from .logging_config import get_logger
from .timestamp_utils import parse_iso, to_iso

logger = get_logger(__name__)

_SOURCE_EXCLUDES = ['embedding']


class OpenSearchError(StoreError):
    """Custom exception for OpenSearch errors."""
    pass


def cosine_from_knn_score(score: float) -> float:
    """Recover raw cosine similarity from a `cosinesimil` k-NN score.

    OpenSearch reports cosinesimil hits as 1 / (2 - cos).
    """
    if score <= 0:
        return -1.0
    return max(-1.0, min(1.0, 2.0 - 1.0 / score))


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Optional pre-built OpenSearch client
        """
        self.config = config
        self.index_name = f'{config.index_name}_memory'

        if client is None:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
            endpoint = config.endpoint
            if '://' in endpoint:
                endpoint = endpoint.split('://', 1)[1]

            client = OpenSearch(hosts=[{
                'host': endpoint,
                'port': config.port
            }],
                                http_auth=auth,
                                use_ssl=True,
                                verify_certs=True,
                                connection_class=RequestsHttpConnection)
        self.client = client

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    # ------------------------------------------------------------------
    # Index management
    # ------------------------------------------------------------------

    def create_index_if_not_exists(self) -> str:
        """
        Create the memory index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            index_body = {
                'mappings': {
                    'properties': {
                        'id': {'type': 'keyword'},
                        'user_id': {'type': 'keyword'},
                        'content': {'type': 'text', 'analyzer': 'english'},
                        'kind': {'type': 'keyword'},
                        'metadata': {'type': 'object', 'enabled': False},
                        'confidence_score': {'type': 'float'},
                        'access_count': {'type': 'integer'},
                        'last_accessed_at': {'type': 'date'},
                        'created_at': {'type': 'date'},
                        'recorded_at': {'type': 'date'},
                        'deleted': {'type': 'boolean'},
                        'decayed_at': {'type': 'date'},
                        'embedding': {
                            'type': 'knn_vector',
                            'dimension': self.config.dimension,
                            'method': {
                                'name': 'hnsw',
                                'space_type': 'cosinesimil',
                                'engine': 'nmslib'
                            }
                        }
                    }
                },
                'settings': {
                    'index': {
                        'knn': True,
                        'knn.algo_param.ef_search': 100
                    }
                }
            }

            response = self.client.indices.create(index=self.index_name, body=index_body)
            if response.get('acknowledged', False):
                logger.info(f'Created index {self.index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    # ------------------------------------------------------------------
    # Document mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _to_document(memory: Memory, embedding: List[float]) -> Dict[str, Any]:
        return {
            'id': memory.id,
            'user_id': memory.user_id,
            'content': memory.content,
            'kind': memory.kind,
            'metadata': memory.metadata.to_dict(),
            'confidence_score': memory.confidence_score,
            'access_count': memory.access_count,
            'last_accessed_at': to_iso(memory.last_accessed_at),
            'created_at': to_iso(memory.created_at),
            'recorded_at': to_iso(memory.recorded_at),
            'deleted': memory.deleted,
            'decayed_at': to_iso(memory.decayed_at),
            'embedding': embedding
        }

    @staticmethod
    def _to_memory(hit: Dict[str, Any]) -> Memory:
        doc = hit['_source']
        revision = None
        if '_seq_no' in hit and '_primary_term' in hit:
            revision = (hit['_seq_no'], hit['_primary_term'])
        created_at = parse_iso(doc.get('created_at'))
        return Memory(id=doc.get('id') or hit['_id'],
                      user_id=doc.get('user_id', ''),
                      content=doc.get('content', ''),
                      kind=doc.get('kind') or 'note',
                      created_at=created_at,
                      last_accessed_at=parse_iso(doc.get('last_accessed_at')) or created_at,
                      metadata=MemoryMetadata.from_dict(doc.get('metadata')),
                      confidence_score=float(doc.get('confidence_score', 1.0)),
                      access_count=int(doc.get('access_count', 0)),
                      recorded_at=parse_iso(doc.get('recorded_at')),
                      deleted=bool(doc.get('deleted', False)),
                      decayed_at=parse_iso(doc.get('decayed_at')),
                      revision=revision)

    @staticmethod
    def _owner_filters(user_id: str, include_deleted: bool = False) -> List[Dict[str, Any]]:
        filters = [{'term': {'user_id': user_id}}]
        if not include_deleted:
            filters.append({'term': {'deleted': False}})
        return filters

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def index_memory(self, memory: Memory, embedding: List[float], refresh: bool = False) -> Memory:
        """
        Store a memory with its embedding.

        Returns:
            The memory with its initial revision set
        """
        try:
            response = self.client.index(index=self.index_name,
                                         id=memory.id,
                                         body=self._to_document(memory, embedding),
                                         refresh=refresh)
            if response.get('result') not in ('created', 'updated'):
                logger.warning(f'Unexpected result indexing memory {memory.id}: {response}')
            memory.revision = (response.get('_seq_no'), response.get('_primary_term'))
            logger.debug(f'Indexed memory {memory.id}')
            return memory
        except OpenSearchException as e:
            logger.error(f'Error indexing memory {memory.id}: {e}')
            raise OpenSearchError(f'Failed to index memory: {e}')

    def update_memory(self,
                      memory_id: str,
                      fields: Dict[str, Any],
                      revision: Optional[Tuple[int, int]] = None) -> Tuple[int, int]:
        """
        Partially update a memory document.

        Args:
            memory_id: Memory to update
            fields: Document fields to overwrite
            revision: Expected (seq_no, primary_term); the write is rejected if it moved

        Returns:
            New (seq_no, primary_term)

        Raises:
            OptimisticLockError: If `revision` is stale
        """
        kwargs = {}
        if revision is not None:
            kwargs = {'if_seq_no': revision[0], 'if_primary_term': revision[1]}
        try:
            response = self.client.update(index=self.index_name, id=memory_id, body={'doc': fields}, **kwargs)
            return response.get('_seq_no'), response.get('_primary_term')
        except ConflictError as e:
            logger.warning(f'Revision conflict updating memory {memory_id}')
            raise OptimisticLockError(f'Memory {memory_id} was modified concurrently: {e}')
        except OpenSearchException as e:
            logger.error(f'Error updating memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to update memory: {e}')

    def record_access(self, memory_ids: List[str], accessed_at: datetime) -> int:
        """
        Atomically increment access_count and stamp last_accessed_at.

        Returns:
            Number of documents updated
        """
        if not memory_ids:
            return 0
        actions = [{
            '_op_type': 'update',
            '_index': self.index_name,
            '_id': memory_id,
            'script': {
                'source': 'ctx._source.access_count += 1; ctx._source.last_accessed_at = params.now',
                'lang': 'painless',
                'params': {
                    'now': to_iso(accessed_at)
                }
            }
        } for memory_id in memory_ids]
        try:
            success, errors = helpers.bulk(self.client, actions, raise_on_error=False)
            if errors:
                logger.warning(f'Access tracking failed for {len(errors)} memories')
            return success
        except OpenSearchException as e:
            logger.error(f'Error recording memory access: {e}')
            raise OpenSearchError(f'Failed to record access: {e}')

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_memory(self, memory_id: str, user_id: Optional[str] = None) -> Optional[Memory]:
        """
        Fetch one memory with its current revision.

        Returns:
            Memory, or None if missing or owned by a different user
        """
        try:
            response = self.client.get(index=self.index_name, id=memory_id, _source_excludes=_SOURCE_EXCLUDES)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting memory {memory_id}: {e}')
            raise OpenSearchError(f'Failed to get memory: {e}')

        if not response.get('found', False):
            return None
        memory = self._to_memory(response)
        if user_id is not None and memory.user_id != user_id:
            return None
        return memory

    def vector_search(self, user_id: str, query_vector: List[float], top_k: int,
                      min_confidence: float) -> List[Tuple[Memory, float]]:
        """
        Owner-scoped k-NN search over live memories.

        Returns:
            (memory, cosine similarity) pairs ordered by similarity
        """
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': top_k
                            }
                        }
                    }],
                    'filter': self._owner_filters(user_id) + [{
                        'range': {
                            'confidence_score': {
                                'gt': min_confidence
                            }
                        }
                    }]
                }
            },
            '_source': {
                'excludes': _SOURCE_EXCLUDES
            }
        }
        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = [(self._to_memory(hit), cosine_from_knn_score(hit['_score'])) for hit in response['hits']['hits']]
        logger.debug(f'Vector search returned {len(results)} results for user {user_id}')
        return results

    def keyword_search(self, user_id: str, query_text: str, top_k: int,
                       min_confidence: float) -> List[Tuple[Memory, float]]:
        """
        Owner-scoped BM25 search over the same live, confident memories
        that vector_search considers.

        Returns:
            (memory, raw relevance score) pairs ordered by relevance
        """
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'match': {
                            'content': query_text
                        }
                    }],
                    'filter': self._owner_filters(user_id) + [{
                        'range': {
                            'confidence_score': {
                                'gt': min_confidence
                            }
                        }
                    }]
                }
            },
            '_source': {
                'excludes': _SOURCE_EXCLUDES
            }
        }
        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing keyword search: {e}')
            raise OpenSearchError(f'Keyword search failed: {e}')

        results = [(self._to_memory(hit), float(hit['_score'])) for hit in response['hits']['hits']]
        logger.debug(f'Keyword search returned {len(results)} results for user {user_id}')
        return results

    def iter_memories(self,
                      user_id: str,
                      min_confidence: Optional[float] = None,
                      max_confidence: Optional[float] = None,
                      created_after: Optional[datetime] = None) -> Iterator[Memory]:
        """
        Scroll through an owner's live memories with optional exclusive
        confidence bounds and creation lower bound.
        """
        filters = self._owner_filters(user_id)
        confidence_range = {}
        if min_confidence is not None:
            confidence_range['gt'] = min_confidence
        if max_confidence is not None:
            confidence_range['lt'] = max_confidence
        if confidence_range:
            filters.append({'range': {'confidence_score': confidence_range}})
        if created_after is not None:
            filters.append({'range': {'created_at': {'gte': to_iso(created_after)}}})

        query = {'query': {'bool': {'filter': filters}}, '_source': {'excludes': _SOURCE_EXCLUDES}}
        try:
            for hit in helpers.scan(self.client, index=self.index_name, query=query, seq_no_primary_term=True):
                yield self._to_memory(hit)
        except OpenSearchException as e:
            logger.error(f'Error scanning memories for user {user_id}: {e}')
            raise OpenSearchError(f'Memory scan failed: {e}')

    def recent_memories(self, user_id: str, since: datetime, limit: int, exclude_id: Optional[str] = None) -> List[Memory]:
        """Newest-first live memories created at or after `since`."""
        query: Dict[str, Any] = {
            'bool': {
                'filter': self._owner_filters(user_id) + [{
                    'range': {
                        'created_at': {
                            'gte': to_iso(since)
                        }
                    }
                }]
            }
        }
        if exclude_id:
            query['bool']['must_not'] = [{'ids': {'values': [exclude_id]}}]
        search_body = {
            'size': limit,
            'query': query,
            'sort': [{'created_at': {'order': 'desc'}}],
            '_source': {'excludes': _SOURCE_EXCLUDES}
        }
        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error fetching recent memories: {e}')
            raise OpenSearchError(f'Recent memory query failed: {e}')
        return [self._to_memory(hit) for hit in response['hits']['hits']]

    def memories_mentioning(self, user_id: str, text: str, limit: int = 50) -> List[Memory]:
        """Live memories whose content contains `text` as a phrase, oldest event first."""
        search_body = {
            'size': limit,
            'query': {
                'bool': {
                    'must': [{'match_phrase': {'content': text}}],
                    'filter': self._owner_filters(user_id)
                }
            },
            'sort': [{'created_at': {'order': 'desc'}}],
            '_source': {'excludes': _SOURCE_EXCLUDES}
        }
        try:
            response = self.client.search(index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error searching memories mentioning {text}: {e}')
            raise OpenSearchError(f'Mention query failed: {e}')
        memories = [self._to_memory(hit) for hit in response['hits']['hits']]
        return sorted(memories, key=lambda m: m.event_time)

    def hidden_memory_ids(self, user_id: str, memory_ids: List[str]) -> Set[str]:
        """
        Ids among `memory_ids` that must not be surfaced for this owner:
        deleted, missing, or owned by someone else.
        """
        if not memory_ids:
            return set()
        unique_ids = list(dict.fromkeys(memory_ids))
        try:
            response = self.client.mget(index=self.index_name,
                                        body={'ids': unique_ids},
                                        _source_includes=['user_id', 'deleted'])
        except OpenSearchException as e:
            logger.error(f'Error checking memory visibility: {e}')
            raise OpenSearchError(f'Visibility check failed: {e}')

        visible = set()
        for doc in response.get('docs', []):
            source = doc.get('_source') or {}
            if doc.get('found') and source.get('user_id') == user_id and not source.get('deleted', False):
                visible.add(doc['_id'])
        return set(unique_ids) - visible

    def list_owner_ids(self, page_size: int = 500) -> List[str]:
        """All user ids with at least one live memory."""
        owners: List[str] = []
        after_key = None
        while True:
            composite: Dict[str, Any] = {'size': page_size, 'sources': [{'user_id': {'terms': {'field': 'user_id'}}}]}
            if after_key:
                composite['after'] = after_key
            body = {'size': 0, 'query': {'term': {'deleted': False}}, 'aggs': {'owners': {'composite': composite}}}
            try:
                response = self.client.search(index=self.index_name, body=body)
            except OpenSearchException as e:
                logger.error(f'Error listing owners: {e}')
                raise OpenSearchError(f'Owner listing failed: {e}')
            agg = response['aggregations']['owners']
            owners.extend(bucket['key']['user_id'] for bucket in agg['buckets'])
            after_key = agg.get('after_key')
            if not after_key or not agg['buckets']:
                return owners

    def health_check(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
