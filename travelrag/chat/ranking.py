import datetime
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from ..embedding.similarity import ScoredEntity
from ..entities import Amenity, Destination, Entity, Resort

# Share of each criterion in the composite score. Without a signed-in user or
# a parsed budget and travel date, the criteria other than similarity and
# popularity contribute their neutral value.
DEFAULT_WEIGHTS: dict[str, float] = {
    "semantic_similarity": 0.40,
    "user_preferences": 0.25,
    "popularity": 0.15,
    "budget_match": 0.10,
    "temporal_relevance": 0.05,
    "availability": 0.05,
}

NEUTRAL_PREFERENCE = 0.5
NEUTRAL_BUDGET = 0.7
NEUTRAL_TEMPORAL = 0.7

MID_RANGE_AMENITY_TYPES = ("pool", "gym", "restaurant", "bar")

SEASONAL_AMENITIES: dict[str, tuple[str, ...]] = {
    "summer": ("pool", "beach", "water sport", "outdoor"),
    "winter": ("spa", "indoor", "fireplace", "heated"),
    "spring": ("garden", "outdoor", "terrace"),
    "fall": ("spa", "indoor", "wellness"),
}


@dataclass
class RankedEntity:
    entity: Entity
    similarity: float
    score: float
    scores: dict[str, float] = field(default_factory=dict)


def season_of(month: int) -> str:
    if month in (12, 1, 2):
        return "winter"
    if month in (3, 4, 5):
        return "spring"
    if month in (6, 7, 8):
        return "summer"
    return "fall"


def destination_popularity(destination: Destination) -> float:
    """Popularity scores run from 0 to 100."""
    return min((destination.popularity_score or 0) / 100.0, 1.0)


def resort_popularity(resort: Resort) -> float:
    score = 0.5
    if resort.star_rating:
        score += resort.star_rating / 5.0 * 0.3
    if resort.total_rooms:
        score += min(resort.total_rooms / 500.0, 1.0) * 0.2
    return min(score, 1.0)


def _mentions(value: str | None, terms: Iterable[str]) -> bool:
    text = (value or "").lower()
    return any(term in text for term in terms)


def criteria(entity: Entity, similarity: float, month: int) -> dict[str, float]:
    """Scores between 0 and 1 for each ranking criterion."""
    scores = {
        "semantic_similarity": similarity,
        "user_preferences": NEUTRAL_PREFERENCE,
        "popularity": 0.5,
        "budget_match": NEUTRAL_BUDGET,
        "temporal_relevance": NEUTRAL_TEMPORAL,
        "availability": 0.8,
    }
    match entity:
        case Destination():
            scores["popularity"] = destination_popularity(entity)
        case Resort():
            scores["popularity"] = resort_popularity(entity)
        case Amenity():
            scores["popularity"] = 0.7
            scores["availability"] = 0.9
            scores["budget_match"] = (
                0.8 if _mentions(entity.type, MID_RANGE_AMENITY_TYPES) else 0.6
            )
            seasonal = SEASONAL_AMENITIES[season_of(month)]
            scores["temporal_relevance"] = (
                0.8 if _mentions(entity.name, seasonal) else 0.6
            )
    return scores


def composite_score(
    scores: dict[str, float], weights: dict[str, float] = DEFAULT_WEIGHTS
) -> float:
    return round(
        sum(score * weights.get(name, 0.0) for name, score in scores.items()), 3
    )


def rank(
    results: Sequence[ScoredEntity[Entity]],
    weights: dict[str, float] = DEFAULT_WEIGHTS,
    today: datetime.date | None = None,
) -> list[RankedEntity]:
    """
    Orders search results by a weighted blend of similarity, popularity and
    seasonal fit, best first. Ties keep the search order.
    """
    month = (today or datetime.date.today()).month
    ranked: list[RankedEntity] = []
    for result in results:
        scores = criteria(result.entity, result.similarity, month)
        ranked.append(
            RankedEntity(
                result.entity,
                result.similarity,
                composite_score(scores, weights),
                scores,
            )
        )
    ranked.sort(key=lambda r: r.score, reverse=True)
    return ranked
