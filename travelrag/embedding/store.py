from functools import cache
from typing import Any, Protocol

import numpy as np
import psycopg
import structlog
from psycopg import AsyncConnection, sql
from psycopg.rows import dict_row

from ..db import PersistenceError
from ..entities import (
    ENTITY_TYPES,
    EmbeddingVector,
    Entity,
    EntityKind,
    EntityNotFoundError,
)
from .similarity import ScoredEntity

logger = structlog.get_logger()

ENTITY_TABLES: dict[EntityKind, str] = {
    EntityKind.AMENITY: "amenity",
    EntityKind.CATEGORY: "resort_category",
    EntityKind.DESTINATION: "destination",
    EntityKind.RESORT: "resort",
}

DEFAULT_SEARCH_THRESHOLD = 0.7


class EntityStore(Protocol):
    async def load(self, kind: EntityKind, entity_id: str) -> Entity | None: ...

    async def save_embedding(
        self, kind: EntityKind, entity_id: str, embedding: EmbeddingVector
    ) -> None: ...


class EntitySearch(Protocol):
    async def search(
        self,
        kind: EntityKind,
        query_vector: EmbeddingVector,
        limit: int = 10,
        threshold: float = DEFAULT_SEARCH_THRESHOLD,
    ) -> list[ScoredEntity[Entity]]: ...


class EntityQueryBuilder:
    """
    Generates the SQL used to read and write entities of one kind.

    Resorts are read together with their category and destination, without
    the related rows' embeddings.
    """

    def __init__(self, kind: EntityKind):
        self.kind = kind

    @property
    def table_ident(self) -> sql.Identifier:
        return sql.Identifier(ENTITY_TABLES[self.kind])

    @property
    def select_sql(self) -> sql.Composed:
        if self.kind is EntityKind.RESORT:
            return sql.SQL("""
                SELECT
                    e.id, e.name, e.star_rating, e.total_rooms, e.description,
                    e.embedding,
                    (
                        SELECT to_jsonb(c) - 'embedding'
                        FROM {category_table} c
                        WHERE c.id = e.category_id
                    ) AS category,
                    (
                        SELECT to_jsonb(d) - 'embedding'
                        FROM {destination_table} d
                        WHERE d.id = e.destination_id
                    ) AS destination
                FROM {table} e
            """).format(
                category_table=sql.Identifier(ENTITY_TABLES[EntityKind.CATEGORY]),
                destination_table=sql.Identifier(
                    ENTITY_TABLES[EntityKind.DESTINATION]
                ),
                table=self.table_ident,
            )
        return sql.SQL("SELECT e.* FROM {table} e").format(table=self.table_ident)

    @property
    def load_query(self) -> sql.Composed:
        return sql.SQL("{select} WHERE e.id = %s").format(select=self.select_sql)

    @property
    def update_embedding_query(self) -> sql.Composed:
        return sql.SQL("UPDATE {table} SET embedding = %s WHERE id = %s").format(
            table=self.table_ident
        )

    def ids_query(self, force: bool) -> sql.Composed:
        """Ids of the entities that need an embedding job. With force, every
        entity qualifies."""
        return sql.SQL("SELECT id FROM {table} {where} ORDER BY id").format(
            table=self.table_ident,
            where=sql.SQL("") if force else sql.SQL("WHERE embedding IS NULL"),
        )

    @property
    def search_query(self) -> sql.Composed:
        """
        Nearest neighbours by cosine distance. The ORDER BY on the distance
        operator lets the store use its HNSW index; similarity is
        1 - cosine distance.
        """
        return sql.SQL("""
            SELECT * FROM (
                {select}
            ) s
            CROSS JOIN LATERAL (
                SELECT 1 - (s.embedding <=> %(query_vector)s) AS similarity
            ) sim
            WHERE s.embedding IS NOT NULL
              AND sim.similarity >= %(threshold)s
            ORDER BY s.embedding <=> %(query_vector)s
            LIMIT %(limit)s
        """).format(select=self.select_sql)


@cache
def queries_for(kind: EntityKind) -> EntityQueryBuilder:
    return EntityQueryBuilder(kind)


def _to_entity(kind: EntityKind, row: dict[str, Any]) -> Entity:
    return ENTITY_TYPES[kind].model_validate(row)


class PostgresEntityStore:
    """
    Reads entities and writes their embeddings in PostgreSQL with pgvector.

    The connection must have the pgvector types registered (see
    travelrag.db.connect).
    """

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def load(self, kind: EntityKind, entity_id: str) -> Entity | None:
        try:
            # a savepoint, so a rejected id doesn't abort the batch transaction
            async with (
                self.conn.transaction(),
                self.conn.cursor(row_factory=dict_row) as cursor,
            ):
                await cursor.execute(queries_for(kind).load_query, (entity_id,))
                row = await cursor.fetchone()
        except psycopg.Error as e:
            raise PersistenceError(
                f"failed to load {kind.value} {entity_id}", e=e
            ) from e
        if row is None:
            return None
        return _to_entity(kind, row)

    async def save_embedding(
        self, kind: EntityKind, entity_id: str, embedding: EmbeddingVector
    ) -> None:
        try:
            # a savepoint when called inside a batch transaction, so a failed
            # write leaves the batch usable
            async with self.conn.transaction(), self.conn.cursor() as cursor:
                await cursor.execute(
                    queries_for(kind).update_embedding_query,
                    (np.array(embedding), entity_id),
                )
                if cursor.rowcount == 0:
                    raise EntityNotFoundError(kind, entity_id)
        except psycopg.Error as e:
            raise PersistenceError(
                f"failed to save embedding for {kind.value} {entity_id}", e=e
            ) from e

    async def ids_needing_embedding(
        self, kind: EntityKind, force: bool = False
    ) -> list[str]:
        async with self.conn.cursor() as cursor:
            await cursor.execute(queries_for(kind).ids_query(force))
            return [str(row[0]) for row in await cursor.fetchall()]

    async def search(
        self,
        kind: EntityKind,
        query_vector: EmbeddingVector,
        limit: int = 10,
        threshold: float = DEFAULT_SEARCH_THRESHOLD,
    ) -> list[ScoredEntity[Entity]]:
        async with self.conn.cursor(row_factory=dict_row) as cursor:
            await cursor.execute(
                queries_for(kind).search_query,
                {
                    "query_vector": np.array(query_vector),
                    "threshold": threshold,
                    "limit": limit,
                },
            )
            rows = await cursor.fetchall()
        results: list[ScoredEntity[Entity]] = []
        for row in rows:
            similarity = float(row.pop("similarity"))
            results.append(ScoredEntity(_to_entity(kind, row), similarity))
        await logger.adebug(
            "vector search", kind=kind.value, limit=limit, results=len(results)
        )
        return results
