"""Shared fixtures: in-memory stores, a frozen clock and a mocked completion model."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from fakes import FakeEmbed, FakeNeptuneClient, FakeOpenSearchClient, FakeRedisCache, FrozenClock, make_memory
from memcore.services.memory_management import MemoryManagementService
from memcore.services.reasoning_provider import ReasoningProvider
from memcore.utils.config import load_config

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(NOW)


@pytest.fixture
def app_config():
    return load_config()


@pytest.fixture
def opensearch():
    return FakeOpenSearchClient()


@pytest.fixture
def neptune():
    return FakeNeptuneClient()


@pytest.fixture
def redis_cache():
    return FakeRedisCache()


@pytest.fixture
def embed():
    return FakeEmbed()


@pytest.fixture
def llm():
    mock_llm = MagicMock()
    mock_llm.complete.return_value = '{"contradictions": []}'
    return mock_llm


@pytest.fixture
def provider(llm):
    return ReasoningProvider(llm)


@pytest.fixture
def remember(opensearch, embed, clock):
    """Index a memory created `days_ago` days before the frozen clock."""

    def _remember(memory_id, content, days_ago=0.0, **kwargs):
        created_at = clock() - timedelta(days=days_ago)
        memory = make_memory(memory_id, content, created_at, **kwargs)
        opensearch.index_memory(memory, embed.embed_document(content))
        return memory

    return _remember


@pytest.fixture
def service(opensearch, neptune, redis_cache, embed, llm, app_config, clock):
    return MemoryManagementService(opensearch=opensearch,
                                   neptune=neptune,
                                   cache=redis_cache,
                                   embed=embed,
                                   llm=llm,
                                   config=app_config,
                                   clock=clock)
