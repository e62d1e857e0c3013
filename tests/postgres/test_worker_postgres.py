import pytest
from psycopg import AsyncConnection

from travelrag.embedding.jobs import EmbeddingJob
from travelrag.embedding.queue import PostgresJobQueue, QueueConfig
from travelrag.embedding.worker import Worker

pytestmark = pytest.mark.postgres


async def make_due(conn: AsyncConnection) -> None:
    await conn.execute("UPDATE travelrag.embedding_queue SET retry_after = NULL")


async def test_malformed_id_does_not_block_the_batch(
    conn: AsyncConnection, db_url: str, seed, embedder
):
    kyoto = await seed.destination("Kyoto")
    await PostgresJobQueue(conn).enqueue_many(
        [
            EmbeddingJob(kind="destination", entity_id="not-a-uuid"),
            EmbeddingJob(kind="destination", entity_id=kyoto),
        ]
    )
    worker = Worker(db_url, embedder, once=True, config=QueueConfig(max_attempts=2))

    assert await worker.drain() == 2

    cursor = await conn.execute(
        "SELECT embedding IS NOT NULL FROM destination WHERE id = %s", (kyoto,)
    )
    assert await cursor.fetchone() == (True,)
    cursor = await conn.execute(
        "SELECT entity_id, attempts, last_error FROM travelrag.embedding_queue"
    )
    [(entity_id, attempts, last_error)] = await cursor.fetchall()
    assert (entity_id, attempts) == ("not-a-uuid", 1)
    assert last_error.startswith("PersistenceError")

    await make_due(conn)
    assert await worker.drain() == 1

    assert await seed.count("travelrag.embedding_queue") == 0
    cursor = await conn.execute(
        """
        SELECT entity_id, attempts, failure_step
        FROM travelrag.embedding_queue_failed
        """
    )
    assert await cursor.fetchall() == [("not-a-uuid", 1, "retries_exhausted")]


async def test_unknown_kind_is_dead_lettered_at_once(
    conn: AsyncConnection, db_url: str, seed, embedder
):
    await PostgresJobQueue(conn).enqueue_many(
        [EmbeddingJob(kind="spaceship", entity_id="x")]
    )

    assert await Worker(db_url, embedder, once=True).drain() == 1

    cursor = await conn.execute(
        "SELECT entity_kind, failure_step FROM travelrag.embedding_queue_failed"
    )
    assert await cursor.fetchall() == [("spaceship", "fatal")]
    assert await seed.count("travelrag.embedding_queue") == 0


async def test_concurrent_consumers_embed_each_entity_once(
    conn: AsyncConnection, db_url: str, seed, embedder
):
    ids = [await seed.destination(f"Town {i}") for i in range(7)]
    await PostgresJobQueue(conn).enqueue_many(
        EmbeddingJob(kind="destination", entity_id=entity_id) for entity_id in ids
    )
    config = QueueConfig(batch_size=2, concurrency=3)

    assert await Worker(db_url, embedder, once=True, config=config).drain() == 7

    assert len(embedder.texts) == 7
    cursor = await conn.execute(
        "SELECT count(*) FROM destination WHERE embedding IS NOT NULL"
    )
    assert await cursor.fetchone() == (7,)
