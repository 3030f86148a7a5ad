"""
Health check utilities for the application.
"""

from typing import Any, Callable, Dict, Optional

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient
from .redis_cache import RedisCache

logger = get_logger(__name__)


def _probe(service: str, build: Callable[[], Any], **details) -> Dict[str, Any]:
    try:
        healthy = build().health_check()
        return {'healthy': healthy, 'service': service, **details}
    except Exception as e:
        logger.error(f'{service} health check failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def get_health_status(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        app_config: AppConfig instance, uses the process configuration if None

    Returns:
        Dictionary with health status of each component
    """
    if app_config is None:
        from .config import config as app_config

    return {
        'bedrock_llm':
            _probe('Amazon Bedrock LLM', lambda: BedrockLLM(app_config.bedrock_llm), model=app_config.bedrock_llm.model_id),
        'bedrock_embed':
            _probe('Amazon Bedrock Embed',
                   lambda: BedrockEmbed(app_config.bedrock_embed),
                   model=app_config.bedrock_embed.model_id),
        'neptune':
            _probe('Amazon Neptune', lambda: NeptuneClient(app_config.neptune), endpoint=app_config.neptune.endpoint),
        'opensearch':
            _probe('Amazon OpenSearch', lambda: OpenSearchClient(app_config.opensearch),
                   endpoint=app_config.opensearch.endpoint),
        'redis':
            _probe('Redis', lambda: RedisCache(app_config.redis))
    }


def check_health(app_config: Optional[AppConfig] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    health_status = get_health_status(app_config)
    all_healthy = all(status.get('healthy', False) for status in health_status.values())

    if all_healthy:
        logger.info('All system components are healthy')
    else:
        unhealthy = [name for name, status in health_status.items() if not status.get('healthy', False)]
        logger.warning(f'Unhealthy components: {", ".join(unhealthy)}')

    return all_healthy


def get_system_info(app_config: Optional[AppConfig] = None) -> Dict[str, Any]:
    """Get system information and configuration.

    Returns:
        Dictionary with system information
    """
    if app_config is None:
        from .config import config as app_config

    return {
        'service_name': 'memcore',
        'version': '0.1.0',
        'configuration': {
            'bedrock_llm_model': app_config.bedrock_llm.model_id,
            'bedrock_embed_model': app_config.bedrock_embed.model_id,
            'embedding_dimension': app_config.bedrock_embed.dimension,
            'insight_cache_ttl_seconds': app_config.cache.ttl_seconds,
            'aws_region': app_config.bedrock_llm.region
        },
        'health_status': get_health_status(app_config)
    }
