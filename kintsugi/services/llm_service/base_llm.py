"""Base LLM interface and implementations.

Provides the abstract base class used by the Responder and the safety
critic, concrete OpenAI and HuggingFace implementations, and the error
categorisation the HTTP layer relies on (auth, quota, timeout, other).
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Tuple

import aiohttp
import openai

logger = logging.getLogger(__name__)


class LLMProvider(Enum):
    """Supported LLM providers."""
    HUGGINGFACE = "huggingface"
    OPENAI = "openai"


class LLMErrorCategory(Enum):
    """Distinguishable failure classes of an LLM call."""
    AUTH = "auth"
    QUOTA = "quota"
    TIMEOUT = "timeout"
    OTHER = "other"


class LLMError(Exception):
    """LLM call failure carrying its category."""

    def __init__(self, message: str, category: LLMErrorCategory = LLMErrorCategory.OTHER):
        super().__init__(message)
        self.category = category


@dataclass
class LLMConfig:
    """Configuration for LLM inference."""
    provider: LLMProvider
    model_name: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    timeout_seconds: int = 30
    max_prompt_chars: int = 20000


@dataclass
class LLMResponse:
    """Response from LLM inference."""
    text: str
    model: str
    provider: str
    tokens_used: Optional[int] = None
    latency_ms: Optional[float] = None
    metadata: Optional[Dict] = None


def categorize_llm_error(error: BaseException) -> LLMErrorCategory:
    """Map a provider exception to an error category.

    Typed provider errors are checked first; anything else falls back to
    inspecting the message text.
    """
    if isinstance(error, LLMError):
        return error.category
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, openai.APITimeoutError)):
        return LLMErrorCategory.TIMEOUT
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return LLMErrorCategory.AUTH
    if isinstance(error, openai.RateLimitError):
        return LLMErrorCategory.QUOTA
    if isinstance(error, aiohttp.ServerTimeoutError):
        return LLMErrorCategory.TIMEOUT
    if isinstance(error, aiohttp.ClientResponseError):
        if error.status in (401, 403):
            return LLMErrorCategory.AUTH
        if error.status == 429:
            return LLMErrorCategory.QUOTA

    message = str(error).lower()
    if "api_key_invalid" in message or "invalid api key" in message or "401" in message:
        return LLMErrorCategory.AUTH
    if "quota" in message or "429" in message or "rate limit" in message:
        return LLMErrorCategory.QUOTA
    if "timeout" in message or "timed out" in message:
        return LLMErrorCategory.TIMEOUT
    return LLMErrorCategory.OTHER


class BaseLLM(ABC):
    """One chat-capable model behind a provider API.

    ``generate`` validates the prompt, times the call and logs the
    outcome; providers only implement ``_complete``. Provider
    exceptions propagate unchanged so callers can categorise them with
    ``categorize_llm_error``.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        logger.info(
            "LLM_INITIALIZED",
            extra={"provider": config.provider.value, "model": config.model_name}
        )

    async def generate(
        self,
        prompt: str,
        system_prompt: Optional[str] = None,
        history: Optional[List[Dict[str, str]]] = None,
        **kwargs
    ) -> LLMResponse:
        """Complete ``prompt`` after the optional system prompt and history.

        Args:
            prompt: Latest user turn
            system_prompt: Instructions placed before everything else
            history: Prior turns as {"role": "user"|"assistant", "content": ...}

        Raises:
            ValueError: If the prompt is blank or too long
        """
        if not self.validate_prompt(prompt):
            raise ValueError("Invalid prompt")

        started = time.monotonic()
        try:
            text, tokens_used, metadata = await self._complete(
                prompt, system_prompt, history or [], **kwargs
            )
        except Exception as e:
            logger.error(
                "LLM_GENERATION_FAILED",
                extra={
                    "provider": self.config.provider.value,
                    "model": self.config.model_name,
                    "error_type": type(e).__name__,
                    "category": categorize_llm_error(e).value,
                }
            )
            raise

        latency_ms = (time.monotonic() - started) * 1000
        logger.info(
            "LLM_GENERATION_SUCCEEDED",
            extra={
                "provider": self.config.provider.value,
                "model": self.config.model_name,
                "latency_ms": round(latency_ms, 1),
                "tokens_used": tokens_used,
            }
        )
        return LLMResponse(
            text=text,
            model=self.config.model_name,
            provider=self.config.provider.value,
            tokens_used=tokens_used,
            latency_ms=latency_ms,
            metadata=metadata,
        )

    @abstractmethod
    async def _complete(
        self,
        prompt: str,
        system_prompt: Optional[str],
        history: List[Dict[str, str]],
        **kwargs
    ) -> Tuple[str, Optional[int], Optional[Dict]]:
        """Call the provider; returns (text, tokens_used, metadata)."""

    def validate_prompt(self, prompt: str) -> bool:
        """False for a blank prompt or one over ``max_prompt_chars``."""
        if not prompt or not prompt.strip():
            logger.warning("LLM_PROMPT_EMPTY")
            return False

        if len(prompt) > self.config.max_prompt_chars:
            logger.warning(
                "LLM_PROMPT_TOO_LONG",
                extra={"length": len(prompt), "limit": self.config.max_prompt_chars}
            )
            return False

        return True


class HuggingFaceLLM(BaseLLM):
    """Text-generation model on a HuggingFace Inference endpoint."""

    def __init__(self, config: LLMConfig):
        super().__init__(config)

        if not config.endpoint:
            raise ValueError("HuggingFace endpoint required")

        self.endpoint = config.endpoint
        self.headers = {}
        if config.api_key:
            self.headers["Authorization"] = f"Bearer {config.api_key}"

    @staticmethod
    def _format_prompt(
        prompt: str,
        system_prompt: Optional[str],
        history: Optional[List[Dict[str, str]]],
    ) -> str:
        # Text-generation endpoints take a single string
        parts = []
        if system_prompt:
            parts.append(system_prompt)
        for turn in history or []:
            speaker = "User" if turn.get("role") == "user" else "Assistant"
            parts.append(f"{speaker}: {turn.get('content', '')}")
        parts.append(f"User: {prompt}" if history else prompt)
        return "\n\n".join(parts)

    async def _complete(self, prompt, system_prompt, history, **kwargs):
        payload = {
            "inputs": self._format_prompt(prompt, system_prompt, history),
            "parameters": {
                "max_new_tokens": self.config.max_tokens,
                "temperature": self.config.temperature,
                "top_p": self.config.top_p,
                "return_full_text": False,
            },
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(self.endpoint, headers=self.headers, json=payload) as response:
                response.raise_for_status()
                result = await response.json()

        # The endpoint answers with either one object or a list of them
        if isinstance(result, list):
            result = result[0] if result else {}
        return result.get("generated_text", ""), None, {"endpoint": self.endpoint}


class OpenAILLM(BaseLLM):
    """OpenAI chat completions model."""

    def __init__(self, config: LLMConfig):
        super().__init__(config)

        if not config.api_key:
            raise ValueError("OpenAI API key required")

        # base_url None falls back to OPENAI_BASE_URL or the public API
        self.client = openai.AsyncOpenAI(api_key=config.api_key, base_url=config.endpoint)

    async def _complete(self, prompt, system_prompt, history, **kwargs):
        messages = [{"role": "system", "content": system_prompt}] if system_prompt else []
        messages.extend({"role": turn["role"], "content": turn["content"]} for turn in history)
        messages.append({"role": "user", "content": prompt})

        completion = await self.client.chat.completions.create(
            model=self.config.model_name,
            messages=messages,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            timeout=self.config.timeout_seconds,
        )

        usage = completion.usage
        return (
            completion.choices[0].message.content or "",
            usage.total_tokens if usage else None,
            None,
        )


_PROVIDERS = {
    LLMProvider.HUGGINGFACE: HuggingFaceLLM,
    LLMProvider.OPENAI: OpenAILLM,
}


def create_llm(config: LLMConfig) -> BaseLLM:
    """Build the provider implementation named by ``config.provider``.

    Raises:
        ValueError: If the provider is not supported
    """
    llm_cls = _PROVIDERS.get(config.provider)
    if llm_cls is None:
        raise ValueError(f"Unsupported provider: {config.provider}")
    return llm_cls(config)
