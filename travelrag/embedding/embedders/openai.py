from functools import cached_property
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel
from typing_extensions import override

if TYPE_CHECKING:
    from openai import resources

from ...entities import EMBEDDING_DIMENSIONS
from ..embeddings import (
    ApiKeyMixin,
    BaseURLMixin,
    Embedder,
    EmbeddingResponse,
    Usage,
)


class OpenAI(ApiKeyMixin, BaseURLMixin, BaseModel, Embedder):
    """
    Embedder that uses OpenAI's API to embed text into vector representations.

    Attributes:
        implementation (Literal["openai"]): The literal identifier for this
            implementation.
        model (str): The name of the OpenAI model used for embeddings. Must
            support shortening to EMBEDDING_DIMENSIONS.
        user (str | None): Optional user identifier for OpenAI API usage.
    """

    implementation: Literal["openai"]
    model: str = "text-embedding-3-small"
    user: str | None = None
    api_key_name: str | None = "OPENAI_API_KEY"
    base_url: str | None = None

    @cached_property
    def _embedder(self) -> "resources.AsyncEmbeddings":
        # Note: deferred import to avoid import overhead
        import openai

        return openai.AsyncOpenAI(
            base_url=self.base_url, api_key=self._api_key, max_retries=3
        ).embeddings

    @override
    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        import openai

        response = await self._embedder.create(
            input=[text],
            model=self.model,
            dimensions=EMBEDDING_DIMENSIONS,
            user=self.user if self.user is not None else openai.NOT_GIVEN,
            encoding_format="float",
        )
        return EmbeddingResponse(
            embedding=response.data[0].embedding,
            usage=Usage(
                prompt_tokens=response.usage.prompt_tokens,
                total_tokens=response.usage.total_tokens,
            ),
        )
