"""
Model provider handles.

Chat models and embedding models are built here from environment variables
and passed into the assembler / pipeline / journal constructors. Nothing in
the engine holds a module-level client.
"""

import asyncio
import logging
import os
from typing import Awaitable, Optional, TypeVar

from langchain.chat_models import init_chat_model
from langchain_core.embeddings import Embeddings
from langchain_core.language_models import BaseChatModel

from .errors import EmbeddingError, ExternalProviderError
from .memory.config import MemoryConfig
from .memory.token_budget import estimate_tokens

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    """
    API credentials for the chat provider.

    - API key: API_KEY > FIREWORKS_API_KEY
    - Base URL: API_BASE_URL > the Fireworks inference endpoint
    """
    api_key = os.getenv("API_KEY") or os.getenv("FIREWORKS_API_KEY")
    base_url = os.getenv("API_BASE_URL") or "https://api.fireworks.ai/inference/v1"
    return api_key, base_url


def create_chat_model(config: MemoryConfig) -> BaseChatModel:
    """Chat model used for compression draft / verify calls."""
    api_key, base_url = get_credentials()
    init_kwargs = {
        "temperature": config.compression_temperature,
        "max_tokens": config.compression_max_tokens,
        "timeout": config.provider_timeout,
    }
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url
    model_provider = os.getenv("MODEL_PROVIDER", "openai")
    return init_chat_model(
        config.compression_model,
        model_provider=model_provider,
        **init_kwargs,
    )


def create_embeddings(config: MemoryConfig) -> Embeddings:
    """OpenAI-compatible embeddings (Voyage, OpenAI, local gateways)."""
    from langchain_openai import OpenAIEmbeddings

    embed_api_key = (
        config.embedding_api_key
        or os.getenv("VOYAGE_API_KEY")
        or os.getenv("API_KEY")
    )
    embed_base_url = (
        config.embedding_base_url
        or os.getenv("EMBEDDING_BASE_URL")
        or "https://api.voyageai.com/v1"
    )
    embed_kwargs = {"check_embedding_ctx_length": False}
    if embed_api_key:
        embed_kwargs["api_key"] = embed_api_key
    if embed_base_url:
        embed_kwargs["base_url"] = embed_base_url
    return OpenAIEmbeddings(model=config.embedding_model, **embed_kwargs)


def classify_provider_failure(error: Exception) -> tuple[str, bool]:
    """Map a client exception to (code, transient)."""
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    text = str(error).lower()
    if status in (401, 403) or "unauthorized" in text or "api key" in text:
        return "INVALID_API_KEY", False
    if status == 429 or "rate limit" in text:
        return "RATE_LIMITED", True
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)) or "timed out" in text:
        return "TIMEOUT", True
    if isinstance(status, int) and status >= 500:
        return "PROVIDER_ERROR", True
    return "PROVIDER_ERROR", False


async def with_timeout(call: Awaitable[T], timeout: Optional[float], what: str) -> T:
    """Await a provider call with a deadline."""
    if not timeout:
        return await call
    try:
        return await asyncio.wait_for(call, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ExternalProviderError(
            f"{what} timed out after {timeout:.0f}s", code="TIMEOUT", transient=True
        ) from e


class EmbeddingProvider:
    """
    Validating wrapper around a LangChain ``Embeddings`` model.

    Rejects empty and oversized input before calling out, enforces the
    configured dimension, and maps client failures to EmbeddingError codes.
    """

    def __init__(
        self,
        model: Embeddings,
        dimensions: int = 1024,
        max_tokens: int = 32_000,
        timeout: Optional[float] = 60.0,
    ):
        self._model = model
        self.dimensions = dimensions
        self.max_tokens = max_tokens
        self.timeout = timeout

    @classmethod
    def from_config(cls, config: MemoryConfig, model: Optional[Embeddings] = None) -> "EmbeddingProvider":
        return cls(
            model or create_embeddings(config),
            dimensions=config.embedding_dimensions,
            max_tokens=config.embedding_max_tokens,
            timeout=config.provider_timeout,
        )

    async def embed(self, text: str, as_query: bool = False) -> list[float]:
        if not text or not text.strip():
            raise EmbeddingError("Cannot generate embedding for empty text", code="EMPTY_TEXT")
        tokens = estimate_tokens(text)
        if tokens > self.max_tokens:
            raise EmbeddingError(
                f"Text is too long (~{tokens} tokens, max {self.max_tokens})",
                code="TEXT_TOO_LONG",
                details={"estimated_tokens": tokens, "max_tokens": self.max_tokens},
            )

        call = (
            self._model.aembed_query(text)
            if as_query
            else self._model.aembed_documents([text])
        )
        try:
            result = await with_timeout(call, self.timeout, "Embedding")
        except ExternalProviderError as e:
            raise EmbeddingError(str(e), code=e.code, transient=e.transient) from e
        except Exception as e:
            code, transient = classify_provider_failure(e)
            raise EmbeddingError(f"Embedding provider error: {e}", code=code, transient=transient) from e

        vector = result if as_query else (result[0] if result else None)
        if not isinstance(vector, list) or len(vector) != self.dimensions:
            got = len(vector) if isinstance(vector, list) else 0
            raise EmbeddingError(
                f"Expected {self.dimensions}-dimensional embedding, got {got}",
                code="DIMENSION_MISMATCH",
                details={"expected": self.dimensions, "actual": got},
            )
        logger.debug("Embedded %d chars into %d dims", len(text), len(vector))
        return [float(v) for v in vector]

    async def embed_query(self, text: str) -> list[float]:
        return await self.embed(text, as_query=True)
