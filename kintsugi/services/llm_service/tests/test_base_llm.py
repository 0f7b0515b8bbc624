"""Tests for the LLM providers and error categorisation."""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from kintsugi.services.llm_service.base_llm import (
    HuggingFaceLLM,
    LLMConfig,
    LLMError,
    LLMErrorCategory,
    LLMProvider,
    OpenAILLM,
    categorize_llm_error,
    create_llm,
)


def openai_config(**kwargs):
    values = dict(provider=LLMProvider.OPENAI, model_name="gpt-4o-mini", api_key="sk-test")
    values.update(kwargs)
    return LLMConfig(**values)


def http_error(status):
    return aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=status)


class TestCategorizeLLMError:
    """Tests for categorize_llm_error."""

    def test_llm_error_keeps_category(self):
        assert categorize_llm_error(LLMError("x", LLMErrorCategory.QUOTA)) == LLMErrorCategory.QUOTA

    def test_timeouts(self):
        assert categorize_llm_error(asyncio.TimeoutError()) == LLMErrorCategory.TIMEOUT
        assert categorize_llm_error(aiohttp.ServerTimeoutError()) == LLMErrorCategory.TIMEOUT

    @pytest.mark.parametrize("status,expected", [
        (401, LLMErrorCategory.AUTH),
        (403, LLMErrorCategory.AUTH),
        (429, LLMErrorCategory.QUOTA),
        (500, LLMErrorCategory.OTHER),
    ])
    def test_http_status(self, status, expected):
        assert categorize_llm_error(http_error(status)) == expected

    @pytest.mark.parametrize("message,expected", [
        ("API_KEY_INVALID: check your key", LLMErrorCategory.AUTH),
        ("You exceeded your current quota", LLMErrorCategory.QUOTA),
        ("Rate limit reached", LLMErrorCategory.QUOTA),
        ("Request timed out", LLMErrorCategory.TIMEOUT),
        ("connection reset by peer", LLMErrorCategory.OTHER),
    ])
    def test_message_fallback(self, message, expected):
        assert categorize_llm_error(RuntimeError(message)) == expected


class TestCreateLLM:
    """Tests for the provider factory."""

    def test_openai(self):
        with patch("kintsugi.services.llm_service.base_llm.openai.AsyncOpenAI"):
            assert isinstance(create_llm(openai_config()), OpenAILLM)

    def test_openai_requires_key(self):
        with pytest.raises(ValueError):
            create_llm(openai_config(api_key=None))

    def test_huggingface(self):
        llm = create_llm(LLMConfig(
            provider=LLMProvider.HUGGINGFACE,
            model_name="mistral",
            endpoint="https://example.test/model",
            api_key="hf_test",
        ))

        assert isinstance(llm, HuggingFaceLLM)
        assert llm.headers["Authorization"] == "Bearer hf_test"

    def test_huggingface_requires_endpoint(self):
        with pytest.raises(ValueError):
            create_llm(LLMConfig(provider=LLMProvider.HUGGINGFACE, model_name="mistral"))


class TestValidatePrompt:
    """Tests for BaseLLM.validate_prompt."""

    @pytest.fixture
    def llm(self):
        with patch("kintsugi.services.llm_service.base_llm.openai.AsyncOpenAI"):
            return OpenAILLM(openai_config(max_prompt_chars=10))

    def test_accepts_normal_prompt(self, llm):
        assert llm.validate_prompt("hello") is True

    def test_rejects_blank_and_oversized(self, llm):
        assert llm.validate_prompt("   ") is False
        assert llm.validate_prompt("x" * 11) is False


class TestOpenAILLM:
    """Tests for OpenAILLM.generate."""

    @pytest.fixture
    def client(self):
        with patch("kintsugi.services.llm_service.base_llm.openai.AsyncOpenAI") as mock_cls:
            client = mock_cls.return_value
            completion = MagicMock()
            completion.choices[0].message.content = "I'm here for you."
            completion.usage.total_tokens = 42
            client.chat.completions.create = AsyncMock(return_value=completion)
            yield client

    @pytest.mark.asyncio
    async def test_builds_messages_with_history(self, client):
        llm = OpenAILLM(openai_config())

        response = await llm.generate(
            "I feel sad",
            system_prompt="Be kind",
            history=[{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        )

        assert response.text == "I'm here for you."
        assert response.tokens_used == 42
        assert response.provider == "openai"
        messages = client.chat.completions.create.call_args.kwargs["messages"]
        assert messages == [
            {"role": "system", "content": "Be kind"},
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "I feel sad"},
        ]

    @pytest.mark.asyncio
    async def test_invalid_prompt(self, client):
        llm = OpenAILLM(openai_config())

        with pytest.raises(ValueError):
            await llm.generate("")

        client.chat.completions.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self, client):
        client.chat.completions.create.side_effect = RuntimeError("Rate limit reached")
        llm = OpenAILLM(openai_config())

        with pytest.raises(RuntimeError):
            await llm.generate("hello")


class TestHuggingFacePrompt:
    """Tests for flattening chat history into one prompt."""

    def test_without_history(self):
        assert HuggingFaceLLM._format_prompt("hello", None, None) == "hello"

    def test_with_system_and_history(self):
        text = HuggingFaceLLM._format_prompt(
            "how are you",
            "Be kind",
            [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}],
        )

        assert text == "Be kind\n\nUser: hi\n\nAssistant: hello\n\nUser: how are you"


class TestHuggingFaceLLM:
    """Tests for HuggingFaceLLM.generate."""

    @pytest.fixture
    def response(self):
        with patch("kintsugi.services.llm_service.base_llm.aiohttp.ClientSession") as session_cls:
            session = session_cls.return_value.__aenter__.return_value
            session.post = MagicMock()
            response = session.post.return_value.__aenter__.return_value
            response.raise_for_status = MagicMock()
            response.json = AsyncMock(return_value=[{"generated_text": "Take a breath."}])
            yield response

    @pytest.mark.asyncio
    async def test_reads_list_payload(self, response):
        llm = HuggingFaceLLM(LLMConfig(
            provider=LLMProvider.HUGGINGFACE,
            model_name="mistral",
            endpoint="https://hf.example/models/mistral",
        ))

        result = await llm.generate("I can't sleep")

        assert result.text == "Take a breath."
        assert result.provider == "huggingface"
        assert result.metadata == {"endpoint": "https://hf.example/models/mistral"}
        assert result.latency_ms is not None

    @pytest.mark.asyncio
    async def test_http_error_propagates(self, response):
        response.raise_for_status.side_effect = http_error(429)
        llm = HuggingFaceLLM(LLMConfig(
            provider=LLMProvider.HUGGINGFACE,
            model_name="mistral",
            endpoint="https://hf.example/models/mistral",
        ))

        with pytest.raises(aiohttp.ClientResponseError) as excinfo:
            await llm.generate("hello")
        assert categorize_llm_error(excinfo.value) == LLMErrorCategory.QUOTA
