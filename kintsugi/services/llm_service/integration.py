"""LLM wiring for Kintsugi services.

Builds the Responder and the critic LLM from environment variables. A
capability whose credentials are missing is returned as None: the chat
endpoint then reports the responder as unavailable, and the critic
adapter degrades to its cautious default verdict.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .base_llm import BaseLLM, LLMConfig, LLMProvider, create_llm
from .responder import DEFAULT_RESPONDER_TIMEOUT_SECONDS, Responder

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KintsugiLLMConfig:
    """Configuration for the responder and critic LLMs."""
    provider: str = "openai"            # or "huggingface"
    responder_model: str = "gpt-4o-mini"
    critic_model: str = "gpt-4o-mini"
    endpoint: Optional[str] = None      # HuggingFace endpoint, or OpenAI-compatible base URL
    responder_api_key: Optional[str] = None
    critic_api_key: Optional[str] = None

    max_tokens: int = 512
    temperature: float = 0.7
    critic_temperature: float = 0.0
    responder_timeout_seconds: float = DEFAULT_RESPONDER_TIMEOUT_SECONDS
    feedback_memory_limit: int = 10

    @classmethod
    def from_env(cls) -> "KintsugiLLMConfig":
        """Create configuration from environment variables.

        Environment variables:
            LLM_PROVIDER: openai | huggingface (default openai)
            RESPONDER_MODEL / CRITIC_MODEL: Model names
            LLM_ENDPOINT: HuggingFace endpoint URL, or an OpenAI-compatible
                base URL for the openai provider
            RESPONDER_API_KEY / CRITIC_API_KEY: Per-role keys, falling
                back to OPENAI_API_KEY
            RESPONDER_TIMEOUT_SECONDS: Responder bounded wait (default 25)
            FEEDBACK_MEMORY_LIMIT: Feedback entries in the digest (default 10)
        """
        shared_key = os.environ.get("OPENAI_API_KEY")
        return cls(
            provider=os.environ.get("LLM_PROVIDER", "openai").lower(),
            responder_model=os.environ.get("RESPONDER_MODEL", "gpt-4o-mini"),
            critic_model=os.environ.get("CRITIC_MODEL", "gpt-4o-mini"),
            endpoint=os.environ.get("LLM_ENDPOINT"),
            responder_api_key=os.environ.get("RESPONDER_API_KEY") or shared_key,
            critic_api_key=os.environ.get("CRITIC_API_KEY") or shared_key,
            responder_timeout_seconds=float(os.environ.get("RESPONDER_TIMEOUT_SECONDS", "25")),
            feedback_memory_limit=int(os.environ.get("FEEDBACK_MEMORY_LIMIT", "10")),
        )

    def _llm_config(self, model: str, api_key: Optional[str], temperature: float) -> Optional[LLMConfig]:
        provider = LLMProvider(self.provider)
        if provider == LLMProvider.OPENAI and not api_key:
            return None
        if provider == LLMProvider.HUGGINGFACE and not self.endpoint:
            return None
        return LLMConfig(
            provider=provider,
            model_name=model,
            endpoint=self.endpoint,
            api_key=api_key,
            max_tokens=self.max_tokens,
            temperature=temperature,
        )

    def responder_llm_config(self) -> Optional[LLMConfig]:
        return self._llm_config(self.responder_model, self.responder_api_key, self.temperature)

    def critic_llm_config(self) -> Optional[LLMConfig]:
        return self._llm_config(self.critic_model, self.critic_api_key, self.critic_temperature)


def build_responder(config: KintsugiLLMConfig) -> Optional[Responder]:
    """Responder for ``config``, or None when it is not configured."""
    llm_config = config.responder_llm_config()
    if llm_config is None:
        logger.warning("RESPONDER_NOT_CONFIGURED", extra={"provider": config.provider})
        return None
    return Responder(create_llm(llm_config), timeout_seconds=config.responder_timeout_seconds)


def build_critic_llm(config: KintsugiLLMConfig) -> Optional[BaseLLM]:
    """Critic LLM for ``config``, or None when it is not configured."""
    llm_config = config.critic_llm_config()
    if llm_config is None:
        logger.warning("CRITIC_NOT_CONFIGURED", extra={"provider": config.provider})
        return None
    return create_llm(llm_config)
