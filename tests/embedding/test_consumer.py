import pytest
from psycopg import sql

from travelrag.embedding.jobs import (
    EmbeddingJob,
    FatalFailure,
    RetryableFailure,
    Skip,
    Success,
)
from travelrag.embedding.queue import QueueConfig, QueuedJob, QueueQueryBuilder
from travelrag.embedding.store import EntityQueryBuilder
from travelrag.embedding.worker import Consumer, EmbeddingProcessor
from travelrag.entities import Destination, EntityKind


def queued(attempts: int = 0, kind: str = "destination") -> QueuedJob:
    return QueuedJob(
        id=1, job=EmbeddingJob(kind=kind, entity_id="kyoto"), attempts=attempts
    )


@pytest.fixture
def consumer(job_queue, entity_store, embedder) -> Consumer:
    return Consumer(
        job_queue, EmbeddingProcessor(entity_store, embedder), QueueConfig()
    )


@pytest.mark.parametrize("outcome", [Success(dimensions=1024), Skip(reason="x")])
async def test_done_outcomes_are_acknowledged(consumer, job_queue, outcome):
    await consumer.settle(queued(), outcome)
    assert job_queue.retried == []
    assert job_queue.dead == []


async def test_fatal_is_dead_lettered_immediately(consumer, job_queue):
    job = queued()
    await consumer.settle(job, FatalFailure("Unknown entity type: hotel"))
    assert job_queue.retried == []
    assert job_queue.dead == [(job, "fatal", "Unknown entity type: hotel")]


async def test_retryable_is_redelivered(consumer, job_queue):
    job = queued(attempts=2)
    await consumer.settle(job, RetryableFailure("timeout"))
    assert job_queue.retried == [(job, "timeout")]
    assert job_queue.dead == []


async def test_retryable_dead_lettered_after_max_attempts(consumer, job_queue):
    job = queued(attempts=5)
    await consumer.settle(job, RetryableFailure("timeout"))
    assert job_queue.retried == []
    assert job_queue.dead == [(job, "retries_exhausted", "timeout")]


async def test_process_batch(consumer, job_queue, entity_store, embedder):
    entity_store.add(Destination(id="kyoto", name="Kyoto"))
    ok = queued()
    poison = queued(kind="hotel")

    processed = await consumer.process_batch([ok, poison])

    assert processed == 2
    assert len(embedder.texts) == 1
    assert [dead[0] for dead in job_queue.dead] == [poison]


def test_queue_config_bounds():
    with pytest.raises(ValueError):
        QueueConfig(batch_size=0)
    with pytest.raises(ValueError):
        QueueConfig(concurrency=11)


def test_claim_query_skips_locked_rows():
    query = QueueQueryBuilder(QueueConfig()).claim_query.as_string(None)
    assert "FOR UPDATE SKIP LOCKED" in query
    assert '"travelrag"."embedding_queue"' in query
    assert "retry_after IS NULL OR retry_after < now()" in query


def test_retry_query_backs_off_linearly():
    query = QueueQueryBuilder(
        QueueConfig(queue_schema="q", queue_table="jobs")
    ).reinsert_job_to_retry_query.as_string(None)
    assert '"q"."jobs"' in query
    assert "now() + INTERVAL '3 minutes' * (%(attempts)s + 1)" in query


def test_dead_letter_query_targets_failed_table():
    query = QueueQueryBuilder(QueueConfig()).insert_queue_failed_query.as_string(None)
    assert '"travelrag"."embedding_queue_failed"' in query
    assert "failure_step" in query


def test_entity_search_query_uses_cosine_distance():
    query = EntityQueryBuilder(EntityKind.DESTINATION).search_query.as_string(None)
    assert "<=>" in query
    assert '"destination"' in query
    assert "ORDER BY s.embedding <=> %(query_vector)s" in query


def test_resort_query_omits_related_embeddings():
    query = EntityQueryBuilder(EntityKind.RESORT).load_query.as_string(None)
    assert "- 'embedding'" in query
    assert '"resort_category"' in query


@pytest.mark.parametrize("force,expected", [(False, True), (True, False)])
def test_ids_query(force: bool, expected: bool):
    query = EntityQueryBuilder(EntityKind.AMENITY).ids_query(force)
    assert isinstance(query, sql.Composed)
    assert ("embedding IS NULL" in query.as_string(None)) is expected
