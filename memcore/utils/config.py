"""
Configuration management for AWS services, stores and engine tuning.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    service: str = 'es'


@dataclass
class RedisConfig:
    """Configuration for the Redis key-value cache."""
    url: str
    socket_timeout: float = 5.0


@dataclass
class RankingConfig:
    """Weights and limits for composite ranking."""
    similarity_weight: float = 0.35
    recency_weight: float = 0.20
    access_weight: float = 0.15
    importance_weight: float = 0.15
    confidence_weight: float = 0.10
    context_weight: float = 0.05
    recency_decay_rate: float = 0.05
    default_importance: float = 0.5
    candidate_multiplier: int = 3
    min_confidence: float = 0.2
    vector_merge_weight: float = 0.7
    lexical_merge_weight: float = 0.3
    timeout_seconds: float = 10.0


@dataclass
class DecayConfig:
    """Forgetting model parameters."""
    decay_rate: float = 0.01
    process_floor: float = 0.1
    importance_threshold: float = 0.7
    importance_floor: float = 0.3
    write_threshold: float = 0.05
    archive_threshold: float = 0.15


@dataclass
class ContradictionConfig:
    """Contradiction detection parameters."""
    lookback_days: int = 90
    max_candidates: int = 50
    superseded_confidence: float = 0.3
    write_retries: int = 3
    sweep_window_hours: int = 24


@dataclass
class GraphConfig:
    """Graph reasoning parameters."""
    max_depth: int = 4
    max_paths: int = 10
    strength_recency_days: float = 30.0
    hop_decay: float = 0.7
    path_length_scale: float = 5.0
    gap_min_mentions: int = 3
    gap_min_confidence: float = 0.3
    gap_limit: int = 5
    implication_min_confidence: float = 0.6


@dataclass
class CacheConfig:
    """Insight cache parameters."""
    ttl_seconds: int = 3600
    usage_ttl_seconds: int = 7 * 24 * 3600
    popular_threshold: int = 2
    usage_retention_days: int = 30


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    neptune: NeptuneConfig
    opensearch: OpenSearchConfig
    redis: RedisConfig
    ranking: RankingConfig
    decay: DecayConfig
    contradiction: ContradictionConfig
    graph: GraphConfig
    cache: CacheConfig
    mcp: MCPConfig


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-haiku-20240307-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '4096')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '768')))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', 'localhost'),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Fact store configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memories'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '768')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'es'))

    redis_config = RedisConfig(url=os.getenv('REDIS_URL', 'redis://localhost:6379/0'),
                               socket_timeout=float(os.getenv('REDIS_SOCKET_TIMEOUT', '5.0')))

    ranking_config = RankingConfig(timeout_seconds=float(os.getenv('RANKING_TIMEOUT_SECONDS', '10.0')))

    decay_config = DecayConfig(decay_rate=float(os.getenv('DECAY_RATE', '0.01')))

    contradiction_config = ContradictionConfig(
        lookback_days=int(os.getenv('CONTRADICTION_LOOKBACK_DAYS', '90')),
        max_candidates=int(os.getenv('CONTRADICTION_MAX_CANDIDATES', '50')),
        sweep_window_hours=int(os.getenv('CONTRADICTION_SWEEP_WINDOW_HOURS', '24')))

    graph_config = GraphConfig(max_depth=int(os.getenv('GRAPH_MAX_DEPTH', '4')),
                               max_paths=int(os.getenv('GRAPH_MAX_PATHS', '10')))

    cache_config = CacheConfig(ttl_seconds=int(os.getenv('INSIGHT_CACHE_TTL_SECONDS', '3600')),
                               popular_threshold=int(os.getenv('INSIGHT_POPULAR_THRESHOLD', '2')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     neptune=neptune_config,
                     opensearch=opensearch_config,
                     redis=redis_config,
                     ranking=ranking_config,
                     decay=decay_config,
                     contradiction=contradiction_config,
                     graph=graph_config,
                     cache=cache_config,
                     mcp=mcp_config)


# Process-wide configuration for the MCP entry point
config = load_config()
