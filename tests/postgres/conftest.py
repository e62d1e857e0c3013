from collections.abc import AsyncIterator, Iterator
from typing import Any
from uuid import uuid4

import numpy as np
import pytest
from docker.errors import DockerException  # type: ignore
from psycopg import AsyncConnection
from psycopg.types.json import Jsonb
from testcontainers.postgres import PostgresContainer  # type: ignore

from travelrag import install
from travelrag.db import connect
from travelrag.entities import EmbeddingVector

PGVECTOR_IMAGE = "pgvector/pgvector:pg17"

TABLES = [
    "resort_amenity",
    "resort",
    "amenity",
    "resort_category",
    "destination",
    "message",
    "conversation",
    "travelrag.embedding_queue",
    "travelrag.embedding_queue_failed",
]


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    try:
        container = PostgresContainer(
            image=PGVECTOR_IMAGE,
            username="travelrag",
            password="my-password",
            dbname="travelrag",
            driver=None,
        )
        container.start()
    except DockerException as e:
        pytest.skip(f"docker is not available: {e}")
    yield container
    container.stop()


@pytest.fixture(scope="session")
def db_url(postgres_container: PostgresContainer) -> str:
    url = postgres_container.get_connection_url()
    install(url)
    return url


@pytest.fixture
async def conn(db_url: str) -> AsyncIterator[AsyncConnection]:
    async with await connect(db_url, application_name="travelrag-tests") as conn:
        await conn.execute(f"TRUNCATE {', '.join(TABLES)} RESTART IDENTITY CASCADE")
        yield conn


class Seeder:
    """Inserts entity rows and returns their ids."""

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    @staticmethod
    def _vector(embedding: EmbeddingVector | None) -> Any:
        return np.array(embedding) if embedding is not None else None

    async def destination(
        self,
        name: str,
        country: str = "Japan",
        embedding: EmbeddingVector | None = None,
        popularity_score: int | None = None,
        activities: list[str] | None = None,
    ) -> str:
        entity_id = uuid4()
        await self.conn.execute(
            """
            INSERT INTO destination
                (id, name, country, activities, popularity_score, embedding)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                entity_id,
                name,
                country,
                Jsonb(activities) if activities is not None else None,
                popularity_score,
                self._vector(embedding),
            ),
        )
        return str(entity_id)

    async def category(self, name: str) -> str:
        entity_id = uuid4()
        await self.conn.execute(
            "INSERT INTO resort_category (id, name) VALUES (%s, %s)",
            (entity_id, name),
        )
        return str(entity_id)

    async def resort(
        self,
        name: str,
        destination_id: str,
        category_id: str,
        star_rating: int = 4,
        total_rooms: int = 120,
        embedding: EmbeddingVector | None = None,
    ) -> str:
        entity_id = uuid4()
        await self.conn.execute(
            """
            INSERT INTO resort
                (id, destination_id, category_id, name, star_rating, total_rooms,
                embedding)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (
                entity_id,
                destination_id,
                category_id,
                name,
                star_rating,
                total_rooms,
                self._vector(embedding),
            ),
        )
        return str(entity_id)

    async def amenity(self, name: str, type: str = "Recreation") -> str:
        entity_id = uuid4()
        await self.conn.execute(
            "INSERT INTO amenity (id, name, type) VALUES (%s, %s, %s)",
            (entity_id, name, type),
        )
        return str(entity_id)

    async def count(self, table: str) -> int:
        cursor = await self.conn.execute(f"SELECT count(*) FROM {table}")
        row = await cursor.fetchone()
        return int(row[0]) if row is not None else 0


@pytest.fixture
def seed(conn: AsyncConnection) -> Seeder:
    return Seeder(conn)
