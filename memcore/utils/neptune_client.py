"""
Amazon Neptune graph database client with Gremlin Python driver and AWS SigV4 authentication.

Entities are `Entity` vertices; EntityLinks are `EntityLink` edges from the
subject vertex to the object vertex. A link without an object is stored as a
self-loop on its subject with no `object_id` property.
"""

from functools import wraps
from typing import Any, Dict, Iterable, List, Optional

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __
from gremlin_python.process.traversal import P

from ..models.core import Entity, EntityLink
from .config import NeptuneConfig
from .errors import StoreError
from .logging_config import get_logger
from .timestamp_utils import from_seconds_str, to_seconds_str

logger = get_logger(__name__)

ENTITY_LABEL = 'Entity'
LINK_LABEL = 'EntityLink'


class NeptuneError(StoreError):
    """Custom exception for Neptune errors."""
    pass


def retry_on_connection_error(func):
    """Decorator to retry Neptune operations once after a dropped connection."""

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except NeptuneError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
                try:
                    return func(self, *args, **kwargs)
                except Exception as retry_e:
                    logger.error(f'Error in {func.__name__}: {retry_e}')
                    raise NeptuneError(f'Failed to {func.__name__}: {retry_e}')
            logger.error(f'Error in {func.__name__}: {e}')
            raise NeptuneError(f'Failed to {func.__name__}: {e}')

    return wrapper


def _value(data: Dict[Any, Any], key: str, default: Any = None) -> Any:
    """Read a property from a value_map result, which wraps vertex properties in lists."""
    value = data.get(key, default)
    if isinstance(value, list):
        return value[0] if value else default
    return value


def entity_from_value_map(data: Dict[Any, Any]) -> Entity:
    return Entity(id=_value(data, 'id', ''),
                  user_id=_value(data, 'user_id', ''),
                  name=_value(data, 'name', ''),
                  type=_value(data, 'type', '') or 'unknown',
                  created_at=from_seconds_str(_value(data, 'created_at')))


def link_from_value_map(data: Dict[Any, Any]) -> EntityLink:
    return EntityLink(id=_value(data, 'id', ''),
                      user_id=_value(data, 'user_id', ''),
                      subject_id=_value(data, 'subject_id', ''),
                      object_id=_value(data, 'object_id') or None,
                      role=_value(data, 'role', '') or '',
                      source_memory_id=_value(data, 'source_memory_id') or None,
                      source_message_id=_value(data, 'source_message_id') or None,
                      status=_value(data, 'status', 'active') or 'active',
                      created_at=from_seconds_str(_value(data, 'created_at')),
                      updated_at=from_seconds_str(_value(data, 'updated_at') or _value(data, 'created_at')))


class NeptuneClient:
    """Amazon Neptune client using Gremlin Python driver with AWS authentication."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish a SigV4-signed WebSocket connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise NeptuneError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = self.config.region or Session().region_name or 'us-east-1'

        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=request.headers.items(),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    @retry_on_connection_error
    def create_entity_vertex(self, entity: Entity) -> Entity:
        """
        Create an entity vertex, or return the existing one with the same
        case-insensitive name for this user.
        """
        existing = self.find_entity_by_name(entity.user_id, entity.name)
        if existing is not None:
            logger.debug(f'Entity vertex already exists: {existing.id}')
            return existing

        self.g.addV(ENTITY_LABEL).property('id', entity.id)\
            .property('user_id', entity.user_id)\
            .property('name', entity.name)\
            .property('name_lower', entity.name.lower())\
            .property('type', entity.type)\
            .property('created_at', to_seconds_str(entity.created_at))\
            .next()
        logger.debug(f'Created entity vertex: {entity.id}')
        return entity

    @retry_on_connection_error
    def get_entity(self, user_id: str, entity_id: str) -> Optional[Entity]:
        rows = self.g.V().has_label(ENTITY_LABEL).has('id', entity_id).has('user_id', user_id)\
            .value_map(True).limit(1).to_list()
        return entity_from_value_map(rows[0]) if rows else None

    @retry_on_connection_error
    def get_entities(self, user_id: str, entity_ids: Iterable[str]) -> Dict[str, Entity]:
        ids = list(set(entity_ids))
        if not ids:
            return {}
        rows = self.g.V().has_label(ENTITY_LABEL).has('user_id', user_id).has('id', P.within(ids))\
            .value_map(True).to_list()
        entities = [entity_from_value_map(row) for row in rows]
        return {entity.id: entity for entity in entities}

    @retry_on_connection_error
    def find_entity_by_name(self, user_id: str, name: str) -> Optional[Entity]:
        rows = self.g.V().has_label(ENTITY_LABEL).has('user_id', user_id).has('name_lower', name.strip().lower())\
            .value_map(True).limit(1).to_list()
        return entity_from_value_map(rows[0]) if rows else None

    @retry_on_connection_error
    def list_entities(self, user_id: str) -> List[Entity]:
        rows = self.g.V().has_label(ENTITY_LABEL).has('user_id', user_id).value_map(True).to_list()
        return [entity_from_value_map(row) for row in rows]

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    @retry_on_connection_error
    def create_link_edge(self, link: EntityLink) -> EntityLink:
        """
        Create an EntityLink edge. Both ends must be vertices of the link's user.

        Raises:
            NeptuneError: If an endpoint is missing or belongs to another user
        """
        subject = self.g.V().has_label(ENTITY_LABEL).has('id', link.subject_id).has('user_id', link.user_id).to_list()
        if not subject:
            raise NeptuneError(f'Subject entity {link.subject_id} not found for user {link.user_id}')
        target = subject[0]
        if link.object_id:
            objects = self.g.V().has_label(ENTITY_LABEL).has('id', link.object_id).has('user_id', link.user_id).to_list()
            if not objects:
                raise NeptuneError(f'Object entity {link.object_id} not found for user {link.user_id}')
            target = objects[0]

        created_at = to_seconds_str(link.created_at)
        t = self.g.V(subject[0]).addE(LINK_LABEL).to(target)\
            .property('id', link.id)\
            .property('user_id', link.user_id)\
            .property('subject_id', link.subject_id)\
            .property('role', link.role)\
            .property('status', link.status)\
            .property('created_at', created_at)\
            .property('updated_at', to_seconds_str(link.updated_at) if link.updated_at else created_at)

        if link.object_id:
            t = t.property('object_id', link.object_id)
        if link.source_memory_id:
            t = t.property('source_memory_id', link.source_memory_id)
        if link.source_message_id:
            t = t.property('source_message_id', link.source_message_id)

        t.next()
        logger.debug(f'Created link edge: {link.id}')
        return link

    @retry_on_connection_error
    def get_entity_links(self,
                         user_id: str,
                         entity_id: str,
                         roles: Optional[List[str]] = None,
                         since: Optional[int] = None,
                         only_active: bool = False,
                         limit: Optional[int] = None) -> List[EntityLink]:
        """
        Links where the entity is subject or object.

        Args:
            since: Unix seconds lower bound on the link's updated_at
        """
        t = self.g.V().has_label(ENTITY_LABEL).has('id', entity_id).has('user_id', user_id)\
            .both_e(LINK_LABEL).has('user_id', user_id)
        if roles:
            t = t.has('role', P.within(roles))
        if since is not None:
            t = t.has('updated_at', P.gte(to_seconds_str(since)))
        if only_active:
            t = t.has('status', 'active')
        t = t.dedup()
        if limit:
            t = t.limit(limit)
        return [link_from_value_map(row) for row in t.value_map(True).to_list()]

    @retry_on_connection_error
    def list_links(self, user_id: str, only_active: bool = False) -> List[EntityLink]:
        t = self.g.E().has_label(LINK_LABEL).has('user_id', user_id)
        if only_active:
            t = t.has('status', 'active')
        return [link_from_value_map(row) for row in t.value_map(True).to_list()]

    @retry_on_connection_error
    def get_links_between(self, user_id: str, entity_a: str, entity_b: str) -> List[EntityLink]:
        rows = self.g.E().has_label(LINK_LABEL).has('user_id', user_id)\
            .or_(__.has('subject_id', entity_a).has('object_id', entity_b),
                 __.has('subject_id', entity_b).has('object_id', entity_a))\
            .value_map(True).to_list()
        return [link_from_value_map(row) for row in rows]

    @retry_on_connection_error
    def health_check(self) -> bool:
        self.g.V().limit(1).count().next()
        return True
