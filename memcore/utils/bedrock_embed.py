"""
Amazon Bedrock embedding client wrapper.

Retries are left to the caller; a failed call raises BedrockEmbedError.
"""

import json
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .errors import ProviderError
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(ProviderError):
    """Custom exception for Bedrock embedding errors."""
    pass


class BedrockEmbed:
    """Amazon Bedrock embedding client."""

    def __init__(self, config: BedrockEmbedConfig, client=None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        self.bedrock = client or boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _invoke(self, data: dict) -> dict:
        """
        Make a single Bedrock invoke_model call.

        Raises:
            BedrockEmbedError: If the call fails
        """
        try:
            response = self.bedrock.invoke_model(body=json.dumps(data),
                                                 modelId=self.model_id,
                                                 accept='application/json',
                                                 contentType='application/json')
            return json.loads(response.get('body').read())
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock Embed call failed: {e}')
            raise BedrockEmbedError(f'Bedrock Embed call failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in Bedrock Embed: {e}')
            raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

    def _embed(self, text: str, input_type: str) -> List[float]:
        model = self.model_id.lower()
        if 'titan' in model:
            response = self._invoke({'inputText': text, 'dimensions': self.dimension, 'normalize': True})
            embedding = response.get('embedding')
        elif 'cohere' in model:
            response = self._invoke({'input_type': input_type, 'texts': [text]})
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else None
        else:
            raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

        if not embedding:
            raise BedrockEmbedError('Bedrock Embed returned no embedding')
        if len(embedding) != self.dimension:
            raise BedrockEmbedError(f'Expected {self.dimension} dimensions, got {len(embedding)}')
        return embedding

    def embed_document(self, text: str) -> List[float]:
        """
        Generate embeddings for memory content.

        Raises:
            BedrockEmbedError: If text is empty or embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty document text')
        return self._embed(text, 'search_document')

    def embed_query(self, text: str) -> List[float]:
        """
        Generate embeddings for query text.

        Raises:
            BedrockEmbedError: If text is empty or embedding generation fails
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot embed empty query text')
        return self._embed(text, 'search_query')

    def health_check(self) -> bool:
        try:
            return len(self.embed_document('health check')) == self.dimension
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
