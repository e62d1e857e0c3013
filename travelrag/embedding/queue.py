from collections.abc import Iterable
from functools import cached_property
from typing import Annotated, Protocol

import structlog
from annotated_types import Gt, Le
from psycopg import AsyncConnection, sql
from psycopg.rows import dict_row
from pydantic import BaseModel

from ..entities import EntityKind
from .jobs import EmbeddingJob
from .store import PostgresEntityStore

logger = structlog.get_logger()

DEFAULT_QUEUE_SCHEMA = "travelrag"
DEFAULT_QUEUE_TABLE = "embedding_queue"
DEFAULT_QUEUE_FAILED_TABLE = "embedding_queue_failed"


class QueueConfig(BaseModel):
    """
    Settings for draining the embedding queue.

    Attributes:
        batch_size: Jobs claimed per transaction, greater than 0 and at most
            2048. Default is 50.
        concurrency: Independent consumers, greater than 0 and at most 10.
            Default is 1.
        max_attempts: Deliveries of a job that failed with a retryable error
            before it is dead-lettered. Default is 6.
        queue_schema: Schema of the queue tables.
        queue_table: The queue table.
        queue_failed_table: The dead-letter table.
    """

    batch_size: Annotated[int, Gt(gt=0), Le(le=2048)] = 50
    concurrency: Annotated[int, Gt(gt=0), Le(le=10)] = 1
    max_attempts: Annotated[int, Gt(gt=0)] = 6
    queue_schema: str = DEFAULT_QUEUE_SCHEMA
    queue_table: str = DEFAULT_QUEUE_TABLE
    queue_failed_table: str = DEFAULT_QUEUE_FAILED_TABLE


class QueuedJob(BaseModel):
    """A job claimed from the queue, with how many times it was delivered
    before."""

    id: int
    job: EmbeddingJob
    attempts: int = 0


class JobQueue(Protocol):
    async def claim(self, batch_size: int) -> list[QueuedJob]: ...

    async def retry(self, queued: QueuedJob, error: str) -> None: ...

    async def dead_letter(
        self, queued: QueuedJob, failure_step: str, error: str
    ) -> None: ...


class QueueQueryBuilder:
    """
    Generates the SQL queries for the embedding queue tables.
    """

    def __init__(self, config: QueueConfig):
        self.config = config

    @property
    def queue_table_ident(self) -> sql.Identifier:
        return sql.Identifier(self.config.queue_schema, self.config.queue_table)

    @property
    def queue_failed_table_ident(self) -> sql.Identifier:
        return sql.Identifier(self.config.queue_schema, self.config.queue_failed_table)

    @cached_property
    def enqueue_query(self) -> sql.Composed:
        return sql.SQL(
            "INSERT INTO {} (entity_kind, entity_id, force) VALUES (%s, %s, %s)"
        ).format(self.queue_table_ident)

    @cached_property
    def claim_query(self) -> sql.Composed:
        """
        Claims a batch of due jobs. Safe to run concurrently from multiple
        consumers: FOR UPDATE SKIP LOCKED makes each consumer skip rows
        another consumer holds instead of waiting on them.

        The rows are deleted in the caller's transaction, so a consumer that
        dies before committing puts its jobs back in the queue.
        """
        return sql.SQL("""
            WITH selected_rows AS (
                SELECT id
                FROM {queue_table}
                WHERE retry_after IS NULL OR retry_after < now()
                ORDER BY id
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            DELETE FROM {queue_table} AS q
            USING selected_rows AS s
            WHERE q.id = s.id
            RETURNING q.id, q.entity_kind, q.entity_id, q.force, q.attempts
        """).format(queue_table=self.queue_table_ident)

    @cached_property
    def reinsert_job_to_retry_query(self) -> sql.Composed:
        return sql.SQL("""
            INSERT INTO {queue_table}
                (entity_kind, entity_id, force, attempts, retry_after, last_error)
            VALUES
                (%(entity_kind)s, %(entity_id)s, %(force)s, (%(attempts)s + 1),
                now() + INTERVAL '3 minutes' * (%(attempts)s + 1), %(error)s)
        """).format(queue_table=self.queue_table_ident)

    @cached_property
    def insert_queue_failed_query(self) -> sql.Composed:
        return sql.SQL("""
            INSERT INTO {queue_failed_table}
                (entity_kind, entity_id, force, attempts, failure_step, error)
            VALUES
                (%(entity_kind)s, %(entity_id)s, %(force)s, %(attempts)s,
                %(failure_step)s, %(error)s)
        """).format(queue_failed_table=self.queue_failed_table_ident)


class PostgresJobQueue:
    """
    A durable job queue in PostgreSQL with at-least-once delivery.

    claim, retry and dead_letter are meant to run inside one transaction per
    batch on the same connection.
    """

    def __init__(self, conn: AsyncConnection, config: QueueConfig | None = None):
        self.conn = conn
        self.config = config or QueueConfig()
        self.queries = QueueQueryBuilder(self.config)

    async def enqueue_many(self, jobs: Iterable[EmbeddingJob]) -> int:
        params = [(job.kind, job.entity_id, job.force) for job in jobs]
        if not params:
            return 0
        async with self.conn.cursor() as cursor:
            await cursor.executemany(self.queries.enqueue_query, params)
        await logger.adebug("jobs enqueued", count=len(params))
        return len(params)

    async def claim(self, batch_size: int) -> list[QueuedJob]:
        async with self.conn.cursor(row_factory=dict_row) as cursor:
            await cursor.execute(self.queries.claim_query, (batch_size,))
            rows = await cursor.fetchall()
        return [
            QueuedJob(
                id=row["id"],
                job=EmbeddingJob(
                    kind=row["entity_kind"],
                    entity_id=row["entity_id"],
                    force=row["force"],
                ),
                attempts=row["attempts"],
            )
            for row in rows
        ]

    def _params(self, queued: QueuedJob) -> dict[str, object]:
        return {
            "entity_kind": queued.job.kind,
            "entity_id": queued.job.entity_id,
            "force": queued.job.force,
            "attempts": queued.attempts,
        }

    async def retry(self, queued: QueuedJob, error: str) -> None:
        async with self.conn.cursor() as cursor:
            await cursor.execute(
                self.queries.reinsert_job_to_retry_query,
                {**self._params(queued), "error": error},
            )

    async def dead_letter(
        self, queued: QueuedJob, failure_step: str, error: str
    ) -> None:
        async with self.conn.cursor() as cursor:
            await cursor.execute(
                self.queries.insert_queue_failed_query,
                {
                    **self._params(queued),
                    "failure_step": failure_step,
                    "error": error,
                },
            )


async def enqueue_missing(
    conn: AsyncConnection,
    kinds: Iterable[EntityKind],
    force: bool = False,
    config: QueueConfig | None = None,
) -> dict[EntityKind, int]:
    """
    Queues a job for every entity of the given kinds that has no embedding,
    or for every entity when force is set.

    Returns:
        dict[EntityKind, int]: The number of jobs queued per kind.
    """
    store = PostgresEntityStore(conn)
    queue = PostgresJobQueue(conn, config)
    counts: dict[EntityKind, int] = {}
    async with conn.transaction():
        for kind in kinds:
            ids = await store.ids_needing_embedding(kind, force)
            counts[kind] = await queue.enqueue_many(
                EmbeddingJob(kind=kind.value, entity_id=entity_id, force=force)
                for entity_id in ids
            )
            logger.info("queued embedding jobs", kind=kind.value, count=counts[kind])
    return counts
