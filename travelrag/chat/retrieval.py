from collections import defaultdict
from collections.abc import AsyncIterator, Sequence
from typing import Protocol

import structlog

from ..embedding.embeddings import Embedder
from ..embedding.similarity import ScoredEntity
from ..embedding.store import EntitySearch
from ..embedding.text import build_text
from ..entities import Amenity, Entity, EntityKind
from .chunks import Chunk
from .models import HistoryEntry
from .providers.anthropic import DEFAULT_SYSTEM_PROMPT
from .ranking import DEFAULT_WEIGHTS, RankedEntity, rank

logger = structlog.get_logger()

MAX_CONTEXT_LENGTH = 8000
MAX_DESTINATIONS = 8
MAX_RESORTS = 6
MAX_AMENITIES_PER_TYPE = 4

SEARCH_THRESHOLD = 0.6
SEARCH_LIMITS: dict[EntityKind, int] = {
    EntityKind.DESTINATION: 12,
    EntityKind.RESORT: 20,
    EntityKind.AMENITY: 15,
}

# used when the query matches no destination or resort closely enough
BROAD_SEARCH_QUERY = "travel destination"
BROAD_SEARCH_THRESHOLD = 0.5
BROAD_SEARCH_LIMITS: dict[EntityKind, int] = {
    EntityKind.DESTINATION: 10,
    EntityKind.RESORT: 15,
    EntityKind.AMENITY: 10,
}

GUIDELINES = """GUIDELINES:
- Provide specific recommendations from the listed destinations and resorts when relevant
- Include practical information like best times to visit and activities
- Match amenities to stated requirements
- If asked about destinations not listed, use your general travel knowledge
- Always prioritize user safety and provide responsible travel advice
"""

SearchResults = dict[EntityKind, list[ScoredEntity[Entity]]]


class PromptedGenerator(Protocol):
    def generate(
        self,
        query: str,
        history: Sequence[HistoryEntry],
        prefer_fast: bool,
        system: str | None = None,
    ) -> AsyncIterator[Chunk]: ...


def _section(title: str, results: Sequence[RankedEntity], limit: int) -> str:
    if not results:
        return ""
    lines = [f"{title} (ranked by relevance):"]
    for result in results[:limit]:
        lines.append(f"- {build_text(result.entity)} (match: {result.similarity:.2f})")
    return "\n".join(lines) + "\n\n"


def _amenity_section(results: Sequence[RankedEntity]) -> str:
    by_type: dict[str, list[str]] = defaultdict(list)
    for result in results:
        if isinstance(result.entity, Amenity):
            by_type[result.entity.type or "General"].append(result.entity.name or "")
    if not by_type:
        return ""
    lines = ["RELEVANT AMENITIES (by type):"]
    for amenity_type, names in by_type.items():
        line = f"- {amenity_type}: " + ", ".join(names[:MAX_AMENITIES_PER_TYPE])
        if len(names) > MAX_AMENITIES_PER_TYPE:
            line += f" and {len(names) - MAX_AMENITIES_PER_TYPE} more"
        lines.append(line)
    return "\n".join(lines) + "\n\n"


def build_context(
    destinations: Sequence[RankedEntity],
    resorts: Sequence[RankedEntity],
    amenities: Sequence[RankedEntity] = (),
    base_prompt: str = DEFAULT_SYSTEM_PROMPT,
) -> str:
    """
    The system prompt grounding a reply in the retrieved entities, best
    ranked first. Entity sections are cut to keep the prompt within
    MAX_CONTEXT_LENGTH characters.
    """
    head = base_prompt.rstrip() + "\n\n"
    tail = GUIDELINES
    body = (
        _section("RELEVANT DESTINATIONS", destinations, MAX_DESTINATIONS)
        + _section("RELEVANT RESORTS", resorts, MAX_RESORTS)
        + _amenity_section(amenities)
    )
    room = MAX_CONTEXT_LENGTH - len(head) - len(tail)
    if len(body) > room:
        body = body[: max(room - 2, 0)].rsplit("\n", 1)[0] + "\n\n"
    return head + body + tail


class RetrievalAugmentedGenerator:
    """
    Wraps a generation provider so that replies are grounded in the
    destinations, resorts and amenities most similar to the query.

    Results are ordered by a composite of similarity, popularity and seasonal
    fit. When nothing matches closely, a broader search at a lower threshold
    supplies general suggestions. Retrieval failures are logged and the reply
    is generated without grounding.
    """

    def __init__(
        self,
        generator: PromptedGenerator,
        embedder: Embedder,
        search: EntitySearch,
        threshold: float = SEARCH_THRESHOLD,
        base_prompt: str = DEFAULT_SYSTEM_PROMPT,
        weights: dict[str, float] = DEFAULT_WEIGHTS,
    ):
        self.generator = generator
        self.embedder = embedder
        self.search = search
        self.threshold = threshold
        self.base_prompt = base_prompt
        self.weights = weights

    async def _search(
        self, text: str, limits: dict[EntityKind, int], threshold: float
    ) -> SearchResults:
        query_vector = await self.embedder.embed(text)
        results: SearchResults = {}
        for kind, limit in limits.items():
            results[kind] = await self.search.search(
                kind, query_vector, limit, threshold
            )
        return results

    async def retrieve(self, query: str) -> SearchResults:
        results = await self._search(query, SEARCH_LIMITS, self.threshold)
        if not results[EntityKind.DESTINATION] and not results[EntityKind.RESORT]:
            await logger.adebug("no close matches, broadening search")
            results = await self._search(
                BROAD_SEARCH_QUERY, BROAD_SEARCH_LIMITS, BROAD_SEARCH_THRESHOLD
            )
        return results

    async def context_for(self, query: str) -> str:
        try:
            results = await self.retrieve(query)
        except Exception as e:
            logger.warning("retrieval failed, answering without context", error=str(e))
            return self.base_prompt
        ranked = {kind: rank(found, self.weights) for kind, found in results.items()}
        await logger.adebug(
            "retrieved context",
            **{kind.value: len(found) for kind, found in ranked.items()},
        )
        return build_context(
            ranked[EntityKind.DESTINATION],
            ranked[EntityKind.RESORT],
            ranked[EntityKind.AMENITY],
            self.base_prompt,
        )

    async def generate(
        self,
        query: str,
        history: Sequence[HistoryEntry],
        prefer_fast: bool,
    ) -> AsyncIterator[Chunk]:
        system = await self.context_for(query)
        async for chunk in self.generator.generate(
            query, history, prefer_fast, system=system
        ):
            yield chunk
