"""LLM Service: responder and critic capabilities.

Components:
- base_llm.py: BaseLLM interface, OpenAI and HuggingFace providers,
  error categorisation
- responder.py: Responder with bounded wait and the assistant's system prompt
- integration.py: Builds responder and critic LLMs from the environment
"""

from .base_llm import (
    BaseLLM,
    LLMConfig,
    LLMError,
    LLMErrorCategory,
    LLMProvider,
    LLMResponse,
    categorize_llm_error,
    create_llm,
)
from .responder import CHATBOT_PROMPT, Responder, ResponderError
from .integration import KintsugiLLMConfig, build_critic_llm, build_responder

__all__ = [
    "BaseLLM",
    "LLMConfig",
    "LLMError",
    "LLMErrorCategory",
    "LLMProvider",
    "LLMResponse",
    "categorize_llm_error",
    "create_llm",
    "CHATBOT_PROMPT",
    "Responder",
    "ResponderError",
    "KintsugiLLMConfig",
    "build_critic_llm",
    "build_responder",
]
