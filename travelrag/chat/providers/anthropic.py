from collections.abc import AsyncIterator, Sequence
from functools import cached_property
from typing import TYPE_CHECKING, Literal

import structlog
from pydantic import BaseModel

if TYPE_CHECKING:
    from anthropic import AsyncAnthropic, AsyncAnthropicBedrock
    from anthropic.types import MessageParam

from ...embedding.embeddings import ApiKeyMixin, BaseURLMixin
from ..chunks import (
    Chunk,
    ContentChunk,
    ErrorChunk,
    GenerationUsage,
    MetadataChunk,
    StopChunk,
)
from ..models import HistoryEntry, Role

logger = structlog.get_logger()

DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_FAST_MODEL = "claude-3-5-haiku-20241022"
DEFAULT_SYSTEM_PROMPT = (
    "You are TravelBot, an expert travel advisor AI assistant specialized in "
    "personalized destination recommendations. Be conversational, friendly "
    "and practical, and keep responses engaging but not overly long."
)


def to_messages(query: str, history: Sequence[HistoryEntry]) -> list["MessageParam"]:
    """
    The conversation as Messages API turns: the history followed by the
    query. The API requires the first turn to come from the user, so leading
    assistant turns are dropped.
    """
    messages: list[MessageParam] = []
    for entry in history:
        if not messages and entry.role is not Role.USER:
            continue
        messages.append({"role": entry.role.value, "content": entry.content})  # type: ignore[typeddict-item]
    messages.append({"role": "user", "content": query})
    return messages


class Anthropic(ApiKeyMixin, BaseURLMixin, BaseModel):
    """
    Generation provider that streams replies from Claude, either through the
    Anthropic API or through AWS Bedrock.

    Attributes:
        implementation (Literal["anthropic"]): The literal identifier for this
            implementation.
        model (str): The model used by default.
        fast_model (str): The model used when a fast reply is preferred.
        max_tokens (int): Upper bound on the reply length.
        temperature (float): Sampling temperature.
        bedrock (bool): Call Claude on AWS Bedrock instead of the Anthropic
            API. Credentials are then resolved from the AWS environment.
        aws_region (str | None): The AWS region when bedrock is set.
        system (str): System prompt used when the caller passes none.
    """

    implementation: Literal["anthropic"] = "anthropic"
    model: str = DEFAULT_MODEL
    fast_model: str = DEFAULT_FAST_MODEL
    max_tokens: int = 4000
    temperature: float = 0.7
    bedrock: bool = False
    aws_region: str | None = None
    system: str = DEFAULT_SYSTEM_PROMPT
    api_key_name: str | None = "ANTHROPIC_API_KEY"
    base_url: str | None = None

    @cached_property
    def _client(self) -> "AsyncAnthropic | AsyncAnthropicBedrock":
        # Note: deferred import to avoid import overhead
        import anthropic

        if self.bedrock:
            return anthropic.AsyncAnthropicBedrock(aws_region=self.aws_region)
        return anthropic.AsyncAnthropic(
            api_key=self._api_key, base_url=self.base_url, max_retries=3
        )

    def model_for(self, prefer_fast: bool) -> str:
        return self.fast_model if prefer_fast else self.model

    async def generate(
        self,
        query: str,
        history: Sequence[HistoryEntry],
        prefer_fast: bool,
        system: str | None = None,
    ) -> AsyncIterator[Chunk]:
        """
        Streams a reply as chunks. Provider failures are reported as an
        ErrorChunk instead of being raised.
        """
        model = self.model_for(prefer_fast)
        input_tokens: int | None = None
        stop_reason: str | None = None
        try:
            stream = await self._client.messages.create(
                model=model,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                system=system if system is not None else self.system,
                messages=to_messages(query, history),
                stream=True,
            )
            async for event in stream:
                match event.type:
                    case "message_start":
                        model = event.message.model or model
                        input_tokens = event.message.usage.input_tokens
                    case "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield ContentChunk(text=event.delta.text, model=model)
                    case "message_delta":
                        stop_reason = event.delta.stop_reason
                        yield MetadataChunk(
                            usage=GenerationUsage(
                                input_tokens=input_tokens,
                                output_tokens=event.usage.output_tokens,
                            )
                        )
                    case "message_stop":
                        yield StopChunk(stop_reason=stop_reason or "end_turn")
                        return
        except Exception as e:
            logger.error("Claude streaming error", model=model, error=str(e))
            yield ErrorChunk(message=f"Failed to stream Claude response: {e}")

