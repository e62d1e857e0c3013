import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

import structlog
from ddtrace.trace import tracer

from ..entities import EMBEDDING_DIMENSIONS, EmbeddingVector

logger = structlog.get_logger()


class EmbeddingProviderError(Exception):
    """
    Raised when an embedding provider API request fails.
    """

    msg = "embedding provider failed"


@dataclass
class Usage:
    """The number of tokens used in an embedding request"""

    prompt_tokens: int
    total_tokens: int


@dataclass
class EmbeddingResponse:
    """A generic embedding response"""

    embedding: EmbeddingVector
    usage: Usage


class Embedder(ABC):
    """
    Abstract base class for an Embedder.

    This class defines the interface for embedding a single text into a
    vector of EMBEDDING_DIMENSIONS components.
    """

    async def setup(self) -> None:  # noqa: B027 empty on purpose
        """
        Setup the embedder
        """

    @abstractmethod
    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        """
        Call the embed API
        :param text:
        :return:
        """

    async def embed(self, text: str) -> EmbeddingVector:
        """
        Embeds a text into a vector.

        Args:
            text (str): The canonical text of an entity.

        Returns:
            EmbeddingVector: A vector with EMBEDDING_DIMENSIONS components.

        Raises:
            EmbeddingProviderError: If the provider call fails or returns a
            vector of the wrong size.
        """
        if not text.strip():
            raise ValueError("Text cannot be empty")

        with tracer.trace("embeddings.do.embedder.create"):
            current_span = tracer.current_span()
            start_time = time.perf_counter()
            try:
                response = await self.call_embed_api(text)
            except EmbeddingProviderError:
                raise
            except Exception as e:
                raise EmbeddingProviderError() from e
            request_duration = time.perf_counter() - start_time
            if current_span:
                current_span.set_metric(
                    "embeddings.embedder.create_request.time.seconds",
                    request_duration,
                )

        await logger.adebug(
            f"Embedding request ended after: {request_duration} seconds. "
            f"Tokens usage: {response.usage}",
            text_length=len(text),
        )

        if len(response.embedding) != EMBEDDING_DIMENSIONS:
            raise EmbeddingProviderError(
                f"Expected {EMBEDDING_DIMENSIONS} dimensions, got {len(response.embedding)}"  # noqa: E501
            )
        return response.embedding


class BaseURLMixin:
    """
    A mixin class that provides functionality for managing base URLs.

    Attributes:
        base_url (str | None): The base URL for the API.
    """

    base_url: str | None = None


class ApiKeyMixin:
    """
    A mixin class that provides functionality for managing API keys.

    Attributes:
        api_key_name (str): The name of the API key attribute.
    """

    api_key_name: str | None = None
    _api_key_: str | None = None

    @property
    def _api_key(self) -> str:
        """
        Retrieves the stored API key.

        Raises:
            ValueError: If the API key has not been set.

        Returns:
            str: The API key.
        """
        if self._api_key_ is None:
            raise ValueError("API key not set")
        return self._api_key_

    def set_api_key(self, secrets: dict[str, str | None]):
        """
        Sets the API key from the provided secrets.

        Args:
            secrets (Any): An object containing the API key as an attribute.

        Raises:
            ValueError: If the API key is missing from the secrets.
        """

        api_key = (
            secrets.get(self.api_key_name, None)
            if self.api_key_name is not None
            else None
        )
        if api_key is None:
            raise ValueError(f"missing API key: {self.api_key_name}")
        self._api_key_ = api_key
