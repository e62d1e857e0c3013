import asyncio
import datetime
import sys
import traceback
from collections.abc import Callable
from typing import Any

import psycopg
import structlog
from ddtrace.trace import tracer

from ..db import connect
from ..entities import EntityKind, EntityNotFoundError, UnknownEntityKindError
from .embeddings import Embedder
from .jobs import (
    EmbeddingJob,
    FatalFailure,
    Outcome,
    RetryableFailure,
    Skip,
    Success,
)
from .queue import JobQueue, PostgresJobQueue, QueueConfig, QueuedJob
from .store import EntityStore, PostgresEntityStore
from .text import build_text

if sys.version_info >= (3, 11):
    from builtins import BaseExceptionGroup
else:
    # For Python 3.10 and below, use the backport
    from exceptiongroup import BaseExceptionGroup

logger = structlog.get_logger()


class RetryableEmbeddingError(Exception):
    """
    Raised by EmbeddingProcessor.handle when the job should be redelivered.
    """

    msg = "embedding job failed, retry"


class EmbeddingProcessor:
    """
    Computes and stores the embedding for one job.

    The outcome is returned as a value so the delivery layer decides on
    redelivery without catching exceptions: Success and Skip are done,
    RetryableFailure should be redelivered, FatalFailure must not be.
    """

    def __init__(
        self,
        store: EntityStore,
        embedder: Embedder,
        log: Any = None,
    ):
        self.store = store
        self.embedder = embedder
        self.log = log or logger

    @tracer.wrap()
    async def process(self, job: EmbeddingJob) -> Outcome:
        log = self.log.bind(
            entity_type=job.kind, entity_id=job.entity_id, force=job.force
        )
        log.info("Processing embedding generation")

        try:
            kind = EntityKind.parse(job.kind)
        except UnknownEntityKindError as e:
            log.error("Unknown entity kind, job can not succeed", error=str(e))
            return FatalFailure(str(e))

        try:
            entity = await self.store.load(kind, job.entity_id)
            if entity is None:
                log.warning("Entity not found")
                return Skip("entity not found")

            if not job.force and entity.has_embedding:
                log.debug("Embedding already exists, skipping")
                return Skip("embedding exists")

            text = build_text(entity)
            if not text:
                log.warning("No text to embed")
                return Skip("no text to embed")

            embedding = await self.embedder.embed(text)
            await self.store.save_embedding(kind, entity.id, embedding)
        except EntityNotFoundError:
            log.warning("Entity not found")
            return Skip("entity not found")
        except Exception as e:
            log.error("Failed to generate embedding", error=str(e))
            return RetryableFailure(f"{type(e).__name__}: {e}")

        log.info("Successfully generated embedding", embedding_size=len(embedding))
        return Success(dimensions=len(embedding))

    async def handle(self, job: EmbeddingJob) -> None:
        """
        Exception based variant of process for delivery layers that redeliver
        on any raised exception.

        Raises:
            UnknownEntityKindError: The job can never succeed; it must be
                dead-lettered, not redelivered.
            RetryableEmbeddingError: The job should be redelivered.
        """
        outcome = await self.process(job)
        match outcome:
            case FatalFailure():
                raise UnknownEntityKindError(job.kind)
            case RetryableFailure(error=error):
                raise RetryableEmbeddingError(error)
            case Success() | Skip():
                return


class Consumer:
    """
    One consumer of the embedding queue. Claims a batch of jobs per
    transaction and settles each one according to its outcome.
    """

    def __init__(
        self,
        queue: JobQueue,
        processor: EmbeddingProcessor,
        config: QueueConfig,
    ):
        self.queue = queue
        self.processor = processor
        self.config = config

    async def settle(self, queued: QueuedJob, outcome: Outcome) -> None:
        match outcome:
            case Success() | Skip():
                # claiming already removed the job
                return
            case FatalFailure(error=error):
                await logger.awarning(
                    "dead-lettering job", job_id=queued.id, error=error
                )
                await self.queue.dead_letter(queued, "fatal", error)
            case RetryableFailure(error=error):
                if queued.attempts + 1 >= self.config.max_attempts:
                    await logger.awarning(
                        "job exhausted its attempts, dead-lettering",
                        job_id=queued.id,
                        attempts=queued.attempts + 1,
                        error=error,
                    )
                    await self.queue.dead_letter(queued, "retries_exhausted", error)
                else:
                    await self.queue.retry(queued, error)

    async def process_batch(self, jobs: list[QueuedJob]) -> int:
        for queued in jobs:
            outcome = await self.processor.process(queued.job)
            await self.settle(queued, outcome)
        return len(jobs)


class Worker:
    def __init__(
        self,
        db_url: str,
        embedder: Embedder,
        poll_interval: datetime.timedelta = datetime.timedelta(minutes=1),
        once: bool = False,
        exit_on_error: bool | None = None,
        config: QueueConfig | None = None,
    ):
        self.db_url = db_url
        self.embedder = embedder
        self.poll_interval = int(poll_interval.total_seconds())
        self.once = once
        self.exit_on_error = exit_on_error
        self.config = config or QueueConfig()
        self.shutdown_requested = asyncio.Event()

        if once and exit_on_error is None:
            # once implies exit-on-error
            self.exit_on_error = True

    async def request_graceful_shutdown(self):
        """
        Request a graceful shutdown of the worker.
        """
        self.shutdown_requested.set()

    async def _run_consumer(
        self, should_continue: Callable[[], bool]
    ) -> int:
        """
        Drains the queue until it is empty or shutdown is requested.

        Returns:
            int: The number of jobs processed.
        """
        processed = 0
        async with await connect(
            self.db_url, application_name="travelrag-embedding-worker"
        ) as conn:
            queue = PostgresJobQueue(conn, self.config)
            consumer = Consumer(
                queue,
                EmbeddingProcessor(PostgresEntityStore(conn), self.embedder),
                self.config,
            )
            while should_continue():
                async with conn.transaction():
                    jobs = await queue.claim(self.config.batch_size)
                    await logger.adebug(f"Jobs pulled from queue: {len(jobs)}")
                    if not jobs:
                        return processed
                    processed += await consumer.process_batch(jobs)
        return processed

    async def drain(self) -> int:
        """Runs the configured number of consumers concurrently until the
        queue is empty."""
        tasks = [
            asyncio.create_task(
                self._run_consumer(lambda: not self.shutdown_requested.is_set())
            )
            for _ in range(self.config.concurrency)
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        # raise any exceptions, but only after all tasks have completed
        items = 0
        exceptions: list[Exception] = []
        for result in results:
            if isinstance(result, Exception):
                exceptions.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                items += result

        logger.info("finished draining embedding queue", items=items)
        if exceptions:
            raise BaseExceptionGroup("embedding queue drained with errors", exceptions)
        return items

    async def run(self) -> Exception | None:
        logger.debug("starting embedding worker")

        while not self.shutdown_requested.is_set():
            try:
                await self.drain()
            except psycopg.OperationalError as e:
                if "connection failed" in str(e):
                    err_msg = f"unable to connect to database: {str(e)}"
                else:
                    err_msg = f"unexpected error: {str(e)}"
                logger.error(err_msg)
                if self.exit_on_error:
                    return Exception(err_msg)
            except BaseExceptionGroup as e:  # type: ignore
                for exception_line in traceback.format_exception(e):  # type: ignore
                    for line in exception_line.rstrip().split("\n"):
                        logger.debug(line)
                err_msg = "unexpected error: " + "; ".join(
                    str(exception) for exception in e.exceptions  # type: ignore
                )
                logger.error(err_msg)
                if self.exit_on_error:
                    return Exception(err_msg)
            except Exception as e:
                # catch any exceptions, log them, and keep on going
                for exception_line in traceback.format_exception(e):
                    for line in exception_line.rstrip().split("\n"):
                        logger.debug(line)
                err_msg = f"unexpected error: {str(e)}"
                logger.error(err_msg)
                if self.exit_on_error:
                    return Exception(err_msg)

            if self.once:
                logger.info("once mode, exiting...")
                return None

            poll_interval_str = datetime.timedelta(seconds=self.poll_interval)
            logger.info(f"sleeping for {poll_interval_str} before polling for new work")
            try:
                await asyncio.wait_for(
                    self.shutdown_requested.wait(), timeout=self.poll_interval
                )
                # shutdown event was set, the loop should exit
                logger.info("got a graceful shutdown request")
            except asyncio.TimeoutError:
                # timeout means the sleep completed
                pass

        logger.info("exiting worker.run()")
        return None
