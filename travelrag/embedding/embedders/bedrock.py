import asyncio
import json
from functools import cached_property
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel
from typing_extensions import override

if TYPE_CHECKING:
    from mypy_boto3_bedrock_runtime.client import BedrockRuntimeClient

from ...entities import EMBEDDING_DIMENSIONS
from ..embeddings import (
    Embedder,
    EmbeddingProviderError,
    EmbeddingResponse,
    Usage,
    logger,
)

TITAN_MODEL_ID = "amazon.titan-embed-text-v2:0"


class BedrockTitan(BaseModel, Embedder):
    """
    Embedder that uses Amazon Titan text embeddings on AWS Bedrock.

    Credentials are resolved by boto3 from the environment.

    Attributes:
        implementation (Literal["bedrock_titan"]): The literal identifier for
            this implementation.
        model (str): The Bedrock model id.
        region_name (str | None): The AWS region hosting the model.
        normalize (bool): Ask Titan for unit-length vectors.
    """

    implementation: Literal["bedrock_titan"]
    model: str = TITAN_MODEL_ID
    region_name: str | None = None
    normalize: bool = True

    @cached_property
    def _client(self) -> "BedrockRuntimeClient":
        # Note: deferred import to avoid import overhead
        import boto3

        return boto3.client("bedrock-runtime", region_name=self.region_name)  # type: ignore

    def _invoke(self, text: str) -> dict[str, Any]:
        result = self._client.invoke_model(
            modelId=self.model,
            body=json.dumps(
                {
                    "inputText": text,
                    "dimensions": EMBEDDING_DIMENSIONS,
                    "normalize": self.normalize,
                }
            ),
            contentType="application/json",
            accept="application/json",
        )
        return json.loads(result["body"].read())

    @override
    async def call_embed_api(self, text: str) -> EmbeddingResponse:
        await logger.adebug(
            "Calling Titan embeddings model",
            model=self.model,
            text_length=len(text),
            dimensions=EMBEDDING_DIMENSIONS,
        )
        # boto3 is blocking
        body = await asyncio.to_thread(self._invoke, text)
        if "embedding" not in body:
            raise EmbeddingProviderError("No embedding found in Titan response")
        tokens = int(body.get("inputTextTokenCount") or 0)
        return EmbeddingResponse(
            embedding=[float(v) for v in body["embedding"]],
            usage=Usage(prompt_tokens=tokens, total_tokens=tokens),
        )
