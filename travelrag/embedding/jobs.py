from dataclasses import dataclass
from typing import Literal, TypeAlias

from pydantic import BaseModel, ConfigDict, Field


class EmbeddingJob(BaseModel):
    """
    A request to (re)compute the embedding of one entity.

    The kind is kept as the raw string received from the queue so that an
    unrecognized kind reaches the worker and can be rejected there.

    Attributes:
        kind: The entity kind, e.g. "destination".
        entity_id: The id of the entity.
        force: Recompute even if the entity already has an embedding.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: str = Field(alias="entityKind")
    entity_id: str = Field(alias="entityId")
    force: bool = False


@dataclass(frozen=True)
class Success:
    dimensions: int
    status: Literal["success"] = "success"


@dataclass(frozen=True)
class Skip:
    reason: str
    status: Literal["skip"] = "skip"


@dataclass(frozen=True)
class RetryableFailure:
    error: str
    status: Literal["retry"] = "retry"


@dataclass(frozen=True)
class FatalFailure:
    error: str
    status: Literal["fatal"] = "fatal"


Outcome: TypeAlias = Success | Skip | RetryableFailure | FatalFailure
