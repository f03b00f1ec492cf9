"""Embedding client: text → fixed-length vectors via a LangChain provider."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from rag_docstore.config import EmbeddingConfig
from rag_docstore.exceptions import EmbeddingError, UnsupportedProviderError

if TYPE_CHECKING:
    from langchain_core.embeddings import Embeddings

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "google", "huggingface")

DEFAULT_MODELS = {
    "openai": "text-embedding-3-small",
    "google": "models/text-embedding-004",
    "huggingface": "sentence-transformers/all-MiniLM-L6-v2",
}


def resolve_model(config: EmbeddingConfig) -> str:
    """The configured model, or the provider's default when none is set."""
    return config.model or DEFAULT_MODELS.get(config.provider, "")


def default_dimension(config: EmbeddingConfig) -> int:
    """Vector size produced by *config*'s provider/model pair."""
    if config.dimensions:
        return config.dimensions

    model = resolve_model(config)
    if config.provider == "openai":
        if "text-embedding-3-large" in model:
            return 3072
        return 1536
    if config.provider == "google":
        return 768
    if config.provider == "huggingface":
        if "MiniLM-L6" in model or "MiniLM-L12" in model:
            return 384
        return 768
    raise UnsupportedProviderError(
        f"Unsupported embedding provider: {config.provider}",
        details={"provider": config.provider, "model": model},
    )


def get_embeddings(config: EmbeddingConfig) -> Embeddings:
    """Return the LangChain embeddings implementation for *config*.

    Providers without an embedding endpoint (``anthropic``) are rejected
    instead of being swapped for another provider, whose vectors would not
    match the index dimensionality.
    """
    if config.provider == "openai":
        from langchain_openai import OpenAIEmbeddings

        kwargs: dict = {"model": resolve_model(config)}
        if config.api_key:
            kwargs["api_key"] = config.api_key
        if config.base_url:
            kwargs["base_url"] = config.base_url
        if config.dimensions:
            kwargs["dimensions"] = config.dimensions
        return OpenAIEmbeddings(**kwargs)

    if config.provider == "google":
        from langchain_google_genai import GoogleGenerativeAIEmbeddings

        kwargs = {"model": resolve_model(config)}
        if config.api_key:
            kwargs["google_api_key"] = config.api_key
        return GoogleGenerativeAIEmbeddings(**kwargs)

    if config.provider == "huggingface":
        from langchain_huggingface import HuggingFaceEmbeddings

        return HuggingFaceEmbeddings(model_name=resolve_model(config))

    raise UnsupportedProviderError(
        f"Unsupported embedding provider: {config.provider}",
        details={"provider": config.provider, "model": config.model, "supported": list(SUPPORTED_PROVIDERS)},
    )


class EmbeddingClient:
    """Embed chunks and queries with one configured provider.

    Parameters
    ----------
    config:
        Provider, model and credentials.
    embeddings:
        Pre-built LangChain ``Embeddings``; built from *config* when omitted.
    """

    def __init__(self, config: EmbeddingConfig, embeddings: Embeddings | None = None) -> None:
        self.config = config
        self.model = resolve_model(config)
        self.dimension = default_dimension(config)
        self._embeddings = embeddings if embeddings is not None else get_embeddings(config)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in a single provider call, preserving order."""
        if not texts:
            return []
        try:
            vectors = await self._embeddings.aembed_documents(list(texts))
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding request failed: {exc}",
                details={"provider": self.config.provider, "model": self.model, "count": len(texts)},
            ) from exc
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Provider returned {len(vectors)} embedding(s) for {len(texts)} text(s)",
                details={"provider": self.config.provider, "model": self.model},
            )
        return [list(v) for v in vectors]

    async def embed_one(self, text: str) -> list[float]:
        try:
            return list(await self._embeddings.aembed_query(text))
        except Exception as exc:
            raise EmbeddingError(
                f"Embedding request failed: {exc}",
                details={"provider": self.config.provider, "model": self.model},
            ) from exc
