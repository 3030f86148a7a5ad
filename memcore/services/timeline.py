"""
Timeline builder: chronological view of the memories that mention an entity.
"""

from ..models.core import Timeline, TimelineEvent
from ..utils.errors import ProviderError
from ..utils.logging_config import get_logger
from ..utils.opensearch_client import OpenSearchClient
from .reasoning_provider import ReasoningProvider

logger = get_logger(__name__)


class TimelineBuilder:
    """Builds an entity timeline with a model-written narrative."""

    def __init__(self, opensearch: OpenSearchClient, provider: ReasoningProvider, max_events: int = 100):
        self.opensearch = opensearch
        self.provider = provider
        self.max_events = max_events

    def build(self, user_id: str, entity_name: str) -> Timeline:
        """
        Collect the owner's live memories mentioning `entity_name`, ordered by
        event time, and summarise them. If the model call fails the narrative
        falls back to a plain event count.
        """
        memories = self.opensearch.memories_mentioning(user_id, entity_name, limit=self.max_events)
        if not memories:
            return Timeline(entity=entity_name, events=[], narrative=f'No memories found about {entity_name}.')

        events = [
            TimelineEvent(date=memory.event_time, event=memory.content, memory_id=memory.id, type=memory.kind or 'unknown')
            for memory in sorted(memories, key=lambda m: (m.event_time, m.id))
        ]

        try:
            narrative = self.provider.timeline_narrative(entity_name, events)
        except ProviderError as e:
            logger.warning(f'Timeline narrative failed for {entity_name}: {e}')
            narrative = ''
        if not narrative:
            narrative = f'Timeline of {len(events)} events related to {entity_name}.'

        return Timeline(entity=entity_name, events=events, narrative=narrative)
