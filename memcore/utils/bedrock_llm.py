"""
Amazon Bedrock LLM client wrapper used as the completion provider.
"""

from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .errors import ProviderError
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(ProviderError):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client. One attempt per call; callers own retry policy."""

    def __init__(self, config: BedrockLLMConfig, client=None):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
            client: Optional pre-built bedrock-runtime client
        """
        self.config = config
        self.model_id = config.model_id

        self.bedrock_runtime = client or boto3.client('bedrock-runtime',
                                                      region_name=config.region,
                                                      config=BotoConfig(connect_timeout=60,
                                                                        read_timeout=300,
                                                                        retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a response with the Converse streaming API.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If the call fails
        """
        inf_params = {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

        try:
            stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                          messages=messages,
                                                          system=[{'text': system_prompt}],
                                                          inferenceConfig=inf_params).get('stream')

            msg = ''
            invoke_metrics = None
            if stream:
                for event in stream:
                    if 'contentBlockDelta' in event:
                        msg += event['contentBlockDelta']['delta'].get('text', '')
                    if 'metadata' in event:
                        invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}

            logger.debug(f'Bedrock LLM response generated (length: {len(msg)})')
            return msg, invoke_metrics

        except (ClientError, BotoCoreError) as e:
            logger.error(f'Bedrock LLM call failed: {e}')
            raise BedrockLLMError(f'Bedrock LLM call failed: {e}')
        except Exception as e:
            logger.error(f'Unexpected error in Bedrock LLM: {e}')
            raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

    def complete(self, prompt: str, system_prompt: str = 'You are a precise assistant.', prefill: Optional[str] = None) -> str:
        """
        Single-turn completion.

        Args:
            prompt: User prompt
            system_prompt: System prompt
            prefill: Optional assistant prefix (e.g. an opening code fence)

        Returns:
            Completion text (without the prefill)
        """
        messages = [{'role': 'user', 'content': [{'text': prompt}]}]
        stop_sequences = None
        if prefill:
            messages.append({'role': 'assistant', 'content': [{'text': prefill}]})
            if prefill.startswith('```'):
                stop_sequences = ['```']
        response, _ = self.generate_response(messages=messages, system_prompt=system_prompt, stop_sequences=stop_sequences)
        return response

    def health_check(self) -> bool:
        try:
            response = self.complete('Hi', system_prompt="Respond with just 'OK'.")
            return len(response.strip()) > 0
        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
