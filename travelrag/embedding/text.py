"""Canonical text for entity embeddings.

The strings produced here are the only input to the embedding provider, so
they must be a pure function of the entity's attributes: the same attributes
always give the same string.
"""

from typing_extensions import assert_never

from ..entities import Amenity, Destination, Entity, Resort, ResortCategory

CLAUSE_SEPARATOR = ". "

STAR_RATING_LABELS = {
    1: "budget-friendly accommodation",
    2: "comfortable hotel",
    3: "quality resort",
    4: "luxury resort",
    5: "ultra-luxury resort",
}
DEFAULT_STAR_RATING_LABEL = "accommodation"


def star_rating_label(star_rating: int) -> str:
    return STAR_RATING_LABELS.get(star_rating, DEFAULT_STAR_RATING_LABEL)


def room_count_label(total_rooms: int) -> str:
    if total_rooms < 50:
        return "intimate boutique property"
    if total_rooms < 150:
        return "medium-sized resort"
    if total_rooms < 300:
        return "large resort"
    return "expansive resort complex"


def _join(clauses: list[str | None]) -> str:
    return CLAUSE_SEPARATOR.join(clause for clause in clauses if clause)


def amenity_text(amenity: Amenity) -> str:
    return _join(
        [
            amenity.name,
            f"Type: {amenity.type}" if amenity.type else None,
            amenity.description,
        ]
    )


def category_text(category: ResortCategory) -> str:
    return _join([category.name, category.description])


def destination_text(destination: Destination) -> str:
    return _join(
        [
            destination.name,
            f"Country: {destination.country}" if destination.country else None,
            f"City: {destination.city}" if destination.city else None,
            destination.description,
            f"Activities: {', '.join(destination.activities)}"
            if destination.activities
            else None,
            f"Tags: {', '.join(destination.tags)}" if destination.tags else None,
        ]
    )


def resort_text(resort: Resort) -> str:
    clauses: list[str | None] = [resort.name]
    if resort.star_rating:
        clauses.append(f"A {star_rating_label(resort.star_rating)}")
    if resort.category is not None and resort.category.name:
        clauses.append(f"Category: {resort.category.name}")
    if resort.destination is not None and resort.destination.name:
        location = resort.destination.name
        if resort.destination.country:
            location += f", {resort.destination.country}"
        clauses.append(f"Located in {location}")
    if resort.total_rooms:
        clauses.append(
            f"A {room_count_label(resort.total_rooms)} with {resort.total_rooms} rooms"
        )
    clauses.append(resort.description)
    return _join(clauses)


def build_text(entity: Entity) -> str:
    """
    Builds the descriptive string embedded for an entity.

    Args:
        entity: Any embeddable entity.

    Returns:
        str: The non-empty clauses joined with ". ", or "" when the entity
        has nothing to describe.
    """
    match entity:
        case Amenity():
            return amenity_text(entity)
        case ResortCategory():
            return category_text(entity)
        case Destination():
            return destination_text(entity)
        case Resort():
            return resort_text(entity)
        case _:  # pyright: ignore[reportUnnecessaryComparison]
            assert_never(entity)
