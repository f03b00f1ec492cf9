"""Decision model initialisation: single place to swap providers.

The detector only needs "prompt in, text out", expressed by the
:class:`TextGenerator` protocol. :class:`ChatModelGenerator` adapts any
LangChain chat model to it; tests plug in a scripted generator instead.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from rag_docstore.config import DecisionConfig
from rag_docstore.exceptions import UnsupportedProviderError

if TYPE_CHECKING:
    from langchain_core.language_models.chat_models import BaseChatModel

logger = logging.getLogger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "google": "gemini-1.5-flash",
}


class TextGenerator(Protocol):
    async def generate(self, prompt: str) -> str: ...


def get_chat_model(config: DecisionConfig) -> BaseChatModel:
    """Return the chat model used for duplicate-resolution decisions.

    When ``config.base_url`` is set the OpenAI client is pointed at an
    OpenAI-compatible endpoint (e.g. a self-hosted vLLM server). Providers
    without a decision model are rejected, not silently swapped.
    """
    model = config.model or DEFAULT_MODELS.get(config.provider)

    if config.provider == "openai":
        from langchain_openai import ChatOpenAI

        kwargs: dict = {"model": model, "temperature": config.temperature}
        if config.base_url:
            logger.info("Using OpenAI-compatible decision endpoint: %s", config.base_url)
            kwargs["base_url"] = config.base_url
            # Self-hosted endpoints don't need a real key; LangChain requires a non-empty value.
            kwargs["api_key"] = config.api_key or "EMPTY"
        elif config.api_key:
            kwargs["api_key"] = config.api_key
        return ChatOpenAI(**kwargs)

    if config.provider == "google":
        from langchain_google_genai import ChatGoogleGenerativeAI

        kwargs = {"model": model, "temperature": config.temperature}
        if config.api_key:
            kwargs["google_api_key"] = config.api_key
        return ChatGoogleGenerativeAI(**kwargs)

    raise UnsupportedProviderError(
        f"Unsupported provider for AI decision: {config.provider}",
        details={"provider": config.provider, "supported": sorted(DEFAULT_MODELS)},
        code="UNSUPPORTED_DECISION_PROVIDER",
    )


class ChatModelGenerator:
    """:class:`TextGenerator` backed by a LangChain chat model."""

    def __init__(self, llm: BaseChatModel) -> None:
        self._llm = llm

    async def generate(self, prompt: str) -> str:
        response = await self._llm.ainvoke(prompt)
        content = response.content
        if isinstance(content, list):
            # Multi-part responses (Gemini) carry text blocks.
            content = "".join(part if isinstance(part, str) else part.get("text", "") for part in content)
        return content
