from collections.abc import Sequence
from enum import Enum
from typing import Any, ClassVar, TypeAlias

from pydantic import BaseModel, Field, field_validator

EMBEDDING_DIMENSIONS = 1024

EmbeddingVector: TypeAlias = list[float]


class UnknownEntityKindError(Exception):
    """
    Raised when a job or lookup names an entity kind outside the closed set.
    Redelivering the same job can never succeed.
    """

    msg = "unknown entity kind"

    def __init__(self, kind: str):
        super().__init__(f"Unknown entity type: {kind}")
        self.kind = kind


class EntityNotFoundError(Exception):
    """
    Raised when an entity referenced by id no longer exists.
    """

    msg = "entity not found"

    def __init__(self, kind: "EntityKind", entity_id: str):
        super().__init__(f"{kind.value} {entity_id} not found")
        self.kind = kind
        self.entity_id = entity_id


class EntityKind(str, Enum):
    AMENITY = "amenity"
    CATEGORY = "category"
    DESTINATION = "destination"
    RESORT = "resort"

    @classmethod
    def parse(cls, value: str) -> "EntityKind":
        try:
            return cls(value)
        except ValueError as e:
            raise UnknownEntityKindError(value) from e


class EmbeddableEntity(BaseModel):
    """
    Base for every entity that carries a vector embedding.

    The embedding is either absent or has exactly EMBEDDING_DIMENSIONS
    components. An empty sequence is treated as absent.
    """

    kind: ClassVar[EntityKind]

    id: str
    embedding: EmbeddingVector | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, value: Any) -> str:
        return str(value)

    @field_validator("embedding", mode="before")
    @classmethod
    def _full_vector(cls, value: Any) -> EmbeddingVector | None:
        if value is None:
            return None
        # pgvector hands back numpy arrays
        components = [float(c) for c in value]
        if not components:
            return None
        if len(components) != EMBEDDING_DIMENSIONS:
            raise ValueError(
                f"embedding must have {EMBEDDING_DIMENSIONS} dimensions, got {len(components)}"  # noqa: E501
            )
        return components

    @property
    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0


class Amenity(EmbeddableEntity):
    kind: ClassVar[EntityKind] = EntityKind.AMENITY

    name: str | None = None
    type: str | None = None
    description: str | None = None


class ResortCategory(EmbeddableEntity):
    kind: ClassVar[EntityKind] = EntityKind.CATEGORY

    name: str | None = None
    description: str | None = None


class Destination(EmbeddableEntity):
    kind: ClassVar[EntityKind] = EntityKind.DESTINATION

    name: str | None = None
    country: str | None = None
    city: str | None = None
    description: str | None = None
    activities: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    popularity_score: int | None = None

    @field_validator("activities", "tags", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Sequence[str] | None) -> Sequence[str]:
        return value if value is not None else []


class Resort(EmbeddableEntity):
    kind: ClassVar[EntityKind] = EntityKind.RESORT

    name: str | None = None
    star_rating: int | None = None
    total_rooms: int | None = None
    description: str | None = None
    category: ResortCategory | None = None
    destination: Destination | None = None


Entity: TypeAlias = Amenity | ResortCategory | Destination | Resort

ENTITY_TYPES: dict[EntityKind, type[Entity]] = {
    EntityKind.AMENITY: Amenity,
    EntityKind.CATEGORY: ResortCategory,
    EntityKind.DESTINATION: Destination,
    EntityKind.RESORT: Resort,
}
