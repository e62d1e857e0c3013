import asyncio
import datetime
import logging
import os
import signal
import sys
from typing import Any
from uuid import UUID

import click
import structlog
from dotenv import find_dotenv, load_dotenv
from pytimeparse import parse  # type: ignore

from .__init__ import __version__
from .tracing import configure_tracing

load_dotenv(dotenv_path=find_dotenv(usecwd=True))
# the environment may only now carry DD_TRACE_ENABLED
configure_tracing()

structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(logging.INFO))
log = structlog.get_logger()

DEFAULT_DB_URL = "postgres://postgres@localhost:5432/postgres"
ENTITY_CHOICES = ["amenity", "category", "destination", "resort", "all"]


class TimeDurationParamType(click.ParamType):
    name = "time duration"

    def convert(self, value, param, ctx) -> int:  # type: ignore
        if isinstance(value, int):
            return value
        val: int | None = parse(value)  # type: ignore
        if val is not None:
            return val  # type: ignore
        try:
            val = int(value, 10)
            if val < 0:
                self.fail(
                    "time duration can't be negative",
                    param,
                    ctx,
                )
            return val
        except ValueError:
            self.fail(
                f"{value!r} is not a valid duration string or integer",
                param,
                ctx,
            )


def get_log_level(level: str) -> int:
    level_upper = level.upper()
    # We are targeting python 3.10 that's why we need to use getLevelName which
    # is deprecated, but still there for backwards compatibility.
    level_name = logging.getLevelName(level_upper)  # type: ignore
    if level_upper != "INFO" and isinstance(level_name, int):
        return level_name
    return logging.getLevelName("INFO")  # type: ignore


def configure_logging(log_level: str, file: Any = None) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(get_log_level(log_level)),
        logger_factory=structlog.PrintLoggerFactory(file),
    )


def shutdown_handler(signum: int, _frame: Any):
    signame = signal.Signals(signum).name
    log.info(f"received {signame}, exiting")
    exit(0)


def make_embedder(implementation: str, aws_region: str | None = None):
    from .embedding.embedders import BedrockTitan, OpenAI

    if implementation == "openai":
        embedder = OpenAI(implementation="openai")
        embedder.set_api_key(dict(os.environ))
        return embedder
    return BedrockTitan(implementation="bedrock_titan", region_name=aws_region)


def entity_kinds(entity: str):
    from .entities import EntityKind

    if entity == "all":
        return list(EntityKind)
    return [EntityKind.parse(entity)]


db_url_option = click.option(
    "-d",
    "--db-url",
    type=click.STRING,
    default=DEFAULT_DB_URL,
    envvar="DATABASE_URL",
    show_default=True,
    help="The database URL to connect to",
)
log_level_option = click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARN", "ERROR", "FATAL", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
)
embedding_option = click.option(
    "--embedding",
    type=click.Choice(["bedrock_titan", "openai"]),
    default="bedrock_titan",
    envvar="TRAVELRAG_EMBEDDING",
    show_default=True,
    help="The embedding provider.",
)
aws_region_option = click.option(
    "--aws-region",
    type=click.STRING,
    default=None,
    envvar="AWS_REGION",
    help="The AWS region of the Bedrock models.",
)


@click.group()
@click.version_option(version=__version__)
def cli():
    pass


@cli.command()
@db_url_option
@click.option(
    "--vector-extension-schema",
    type=click.STRING,
    default=None,
    help="Schema to create the vector extension in, if it doesn't exist.",
)
def install(db_url: str, vector_extension_schema: str | None) -> None:
    """Create the travelrag tables, vector indexes and queue tables."""
    import travelrag

    travelrag.install(db_url, vector_extension_schema=vector_extension_schema)
    log.info(f"travelrag {__version__} installed")


@click.group()
@click.version_option(version=__version__)
def embeddings():
    """Generate entity embeddings."""


@embeddings.command(name="enqueue")
@db_url_option
@click.option(
    "-e",
    "--entity",
    type=click.Choice(ENTITY_CHOICES),
    default="all",
    show_default=True,
    help="The kind of entity to queue jobs for.",
)
@click.option(
    "--id",
    "entity_ids",
    type=click.STRING,
    multiple=True,
    help="Only queue jobs for these ids (requires a single --entity kind).",
)
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Recompute embeddings that already exist.",
)
@log_level_option
def embeddings_enqueue(
    db_url: str,
    entity: str,
    entity_ids: tuple[str, ...],
    force: bool,
    log_level: str,
) -> None:
    """Queue embedding jobs for entities without an embedding."""
    if entity_ids and entity == "all":
        raise click.UsageError("--id requires a single --entity kind")
    configure_logging(log_level)
    total = asyncio.run(async_enqueue(db_url, entity, entity_ids, force))
    click.echo(f"queued {total} embedding jobs")


async def async_enqueue(
    db_url: str, entity: str, entity_ids: tuple[str, ...], force: bool
) -> int:
    from .db import connect
    from .embedding.jobs import EmbeddingJob
    from .embedding.queue import PostgresJobQueue, enqueue_missing

    async with await connect(db_url, application_name="travelrag-cli") as conn:
        if entity_ids:
            return await PostgresJobQueue(conn).enqueue_many(
                EmbeddingJob(kind=entity, entity_id=entity_id, force=force)
                for entity_id in entity_ids
            )
        counts = await enqueue_missing(conn, entity_kinds(entity), force)
        return sum(counts.values())


@embeddings.command(name="worker")
@db_url_option
@log_level_option
@click.option(
    "--poll-interval",
    type=TimeDurationParamType(),
    default="1m",
    show_default=True,
    help="The interval, in duration string or integer (seconds), "
    "to wait before checking for new work after processing "
    "all available work in the queue.",
)
@click.option(
    "--once",
    type=click.BOOL,
    is_flag=True,
    default=False,
    show_default=True,
    help="Exit after processing all available work (implies --exit-on-error).",
)
@click.option(
    "-c",
    "--concurrency",
    type=click.IntRange(1, 10),
    default=1,
    show_default=True,
)
@click.option(
    "--batch-size",
    type=click.IntRange(1, 2048),
    default=50,
    show_default=True,
    help="Jobs claimed per transaction.",
)
@click.option(
    "--max-attempts",
    type=click.IntRange(1),
    default=6,
    show_default=True,
    help="Deliveries of a failing job before it is dead-lettered.",
)
@click.option(
    "--exit-on-error",
    type=click.BOOL,
    default=None,
    show_default=True,
    help="Exit immediately when an error occurs.",
)
@embedding_option
@aws_region_option
def embeddings_worker(
    db_url: str,
    log_level: str,
    poll_interval: int,
    once: bool,
    concurrency: int,
    batch_size: int,
    max_attempts: int,
    exit_on_error: bool | None,
    embedding: str,
    aws_region: str | None,
) -> None:
    """Process queued embedding jobs."""
    asyncio.run(
        async_run_embedding_worker(
            db_url,
            log_level,
            poll_interval,
            once,
            concurrency,
            batch_size,
            max_attempts,
            exit_on_error,
            embedding,
            aws_region,
        )
    )


async def async_run_embedding_worker(
    db_url: str,
    log_level: str,
    poll_interval: int,
    once: bool,
    concurrency: int,
    batch_size: int,
    max_attempts: int,
    exit_on_error: bool | None,
    embedding: str,
    aws_region: str | None,
) -> None:
    from .embedding.queue import QueueConfig
    from .embedding.worker import Worker

    # gracefully handle being asked to shut down
    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    configure_logging(log_level)

    embedder = make_embedder(embedding, aws_region)
    await embedder.setup()
    worker = Worker(
        db_url,
        embedder,
        datetime.timedelta(seconds=poll_interval),
        once,
        exit_on_error,
        QueueConfig(
            batch_size=batch_size,
            concurrency=concurrency,
            max_attempts=max_attempts,
        ),
    )
    exception = await worker.run()
    if exception is not None:
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def chat():
    """Talk to the travel assistant."""


@chat.command(name="ask")
@click.argument("query", type=click.STRING)
@db_url_option
@click.option(
    "--conversation-id",
    type=click.UUID,
    default=None,
    help="Continue an existing conversation. A new one is started otherwise.",
)
@click.option("--model", type=click.STRING, default=None, help="The default model.")
@click.option(
    "--fast-model",
    type=click.STRING,
    default=None,
    help="The model used for short, simple queries.",
)
@click.option(
    "--bedrock",
    is_flag=True,
    default=False,
    envvar="TRAVELRAG_USE_BEDROCK",
    help="Call Claude through AWS Bedrock.",
)
@aws_region_option
@click.option(
    "--retrieval/--no-retrieval",
    default=True,
    show_default=True,
    help="Ground the reply in similar destinations and resorts.",
)
@embedding_option
@click.option(
    "--checkpoint-interval",
    type=click.IntRange(1),
    default=50,
    show_default=True,
    help="Characters of new reply text between checkpoint writes.",
)
@log_level_option
def chat_ask(
    query: str,
    db_url: str,
    conversation_id: UUID | None,
    model: str | None,
    fast_model: str | None,
    bedrock: bool,
    aws_region: str | None,
    retrieval: bool,
    embedding: str,
    checkpoint_interval: int,
    log_level: str,
) -> None:
    """Ask a question and stream the reply as server-sent events."""
    # stdout carries the event stream
    configure_logging(log_level, file=sys.stderr)
    ok = asyncio.run(
        async_chat_ask(
            query,
            db_url,
            conversation_id,
            model,
            fast_model,
            bedrock,
            aws_region,
            retrieval,
            embedding,
            checkpoint_interval,
        )
    )
    if not ok:
        sys.exit(1)


async def async_chat_ask(
    query: str,
    db_url: str,
    conversation_id: UUID | None,
    model: str | None,
    fast_model: str | None,
    bedrock: bool,
    aws_region: str | None,
    retrieval: bool,
    embedding: str,
    checkpoint_interval: int,
) -> bool:
    from .chat import SessionConfig, SessionState, StreamingSession
    from .chat.events import SseEventSink
    from .chat.models import Conversation, Message, Role
    from .chat.providers import Anthropic
    from .chat.retrieval import RetrievalAugmentedGenerator
    from .chat.store import PostgresMessageStore
    from .db import connect
    from .embedding.store import PostgresEntityStore

    settings: dict[str, Any] = {"bedrock": bedrock, "aws_region": aws_region}
    if model is not None:
        settings["model"] = model
    if fast_model is not None:
        settings["fast_model"] = fast_model
    claude = Anthropic(**settings)
    if not bedrock:
        claude.set_api_key(dict(os.environ))

    async def write(frame: str) -> None:
        sys.stdout.write(frame)
        sys.stdout.flush()

    async with await connect(db_url, application_name="travelrag-chat") as conn:
        store = PostgresMessageStore(conn)
        if conversation_id is None:
            conversation = Conversation(title=query[:50])
            await store.create_conversation(conversation)
            conversation_id = conversation.id
            log.info("started conversation", conversation_id=str(conversation_id))

        question = Message(conversation_id=conversation_id, role=Role.USER, content=query)
        await store.create(question)

        generator: Any = claude
        if retrieval:
            embedder = make_embedder(embedding, aws_region)
            await embedder.setup()
            generator = RetrievalAugmentedGenerator(
                claude, embedder, PostgresEntityStore(conn)
            )

        session = StreamingSession(
            conversation_id,
            query,
            generator,
            store,
            SessionConfig(checkpoint_interval=checkpoint_interval),
            query_message_id=question.id,
        )
        result = await session.run(SseEventSink(write))
    return result.state is SessionState.COMPLETE


cli.add_command(embeddings)
cli.add_command(chat)
