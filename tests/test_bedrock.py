"""Tests for the Bedrock completion and embedding wrappers."""

import io
import json
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from memcore.utils.bedrock_embed import BedrockEmbed, BedrockEmbedError
from memcore.utils.bedrock_llm import BedrockLLM, BedrockLLMError
from memcore.utils.config import BedrockEmbedConfig, BedrockLLMConfig
from memcore.utils.errors import ProviderError


@pytest.fixture
def runtime():
    return MagicMock()


@pytest.fixture
def llm_client(runtime):
    config = BedrockLLMConfig(region='us-east-1', model_id='test-model', max_tokens=256, temperature=0.0)
    return BedrockLLM(config, client=runtime)


class TestBedrockLLM:

    def test_complete_concatenates_stream(self, llm_client, runtime):
        runtime.converse_stream.return_value = {
            'stream': [
                {'contentBlockDelta': {'delta': {'text': '{"contradictions": '}}},
                {'contentBlockDelta': {'delta': {'text': '[]}'}}},
                {'metadata': {'usage': {'inputTokens': 10}, 'metrics': {'latencyMs': 5}}},
            ]
        }

        assert llm_client.complete('compare these') == '{"contradictions": []}'

    def test_code_fence_prefill_adds_stop_sequence(self, llm_client, runtime):
        runtime.converse_stream.return_value = {'stream': []}

        llm_client.complete('compare these', prefill='```json')

        kwargs = runtime.converse_stream.call_args.kwargs
        assert kwargs['messages'][-1] == {'role': 'assistant', 'content': [{'text': '```json'}]}
        assert kwargs['inferenceConfig']['stopSequences'] == ['```']

    def test_client_error_is_provider_error(self, llm_client, runtime):
        runtime.converse_stream.side_effect = ClientError({'Error': {'Code': 'ThrottlingException'}}, 'ConverseStream')

        with pytest.raises(BedrockLLMError):
            llm_client.complete('hello')
        assert issubclass(BedrockLLMError, ProviderError)


def _embed_client(runtime, model_id='amazon.titan-embed-text-v2:0', dimension=3):
    return BedrockEmbed(BedrockEmbedConfig(region='us-east-1', model_id=model_id, dimension=dimension), client=runtime)


def _body(payload):
    return {'body': io.BytesIO(json.dumps(payload).encode())}


class TestBedrockEmbed:

    def test_titan_request(self, runtime):
        runtime.invoke_model.return_value = _body({'embedding': [0.1, 0.2, 0.3]})

        assert _embed_client(runtime).embed_query('coffee') == [0.1, 0.2, 0.3]
        body = json.loads(runtime.invoke_model.call_args.kwargs['body'])
        assert body == {'inputText': 'coffee', 'dimensions': 3, 'normalize': True}

    def test_cohere_input_type(self, runtime):
        runtime.invoke_model.return_value = _body({'embeddings': [[0.1, 0.2, 0.3]]})

        _embed_client(runtime, model_id='cohere.embed-english-v3').embed_document('coffee')

        body = json.loads(runtime.invoke_model.call_args.kwargs['body'])
        assert body['input_type'] == 'search_document'

    def test_dimension_mismatch(self, runtime):
        runtime.invoke_model.return_value = _body({'embedding': [0.1, 0.2]})

        with pytest.raises(BedrockEmbedError):
            _embed_client(runtime).embed_query('coffee')

    def test_empty_text(self, runtime):
        with pytest.raises(BedrockEmbedError):
            _embed_client(runtime).embed_document('  ')
        runtime.invoke_model.assert_not_called()
