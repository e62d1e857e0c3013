import json
from functools import partial
from typing import Any
from uuid import UUID

from pgvector.psycopg import register_vector_async  # type: ignore
from psycopg import AsyncConnection
from psycopg.types.json import set_json_dumps
from typing_extensions import override


class PersistenceError(Exception):
    """
    Raised when a write to the store fails.
    """

    msg = "persistence failed"

    def __init__(self, *args: str, e: Exception | None = None):
        super().__init__(*args)
        if e is not None:
            self.__cause__ = e


class UUIDEncoder(json.JSONEncoder):
    """A JSON encoder which can dump UUID."""

    @override
    def default(self, o: Any):
        if isinstance(o, UUID):
            return str(o)
        return json.JSONEncoder.default(self, o)


async def connect(db_url: str, application_name: str) -> AsyncConnection:
    """Open an autocommit connection with pgvector and UUID-aware JSON
    registered on it."""
    conn = await AsyncConnection.connect(
        db_url, autocommit=True, application_name=application_name
    )
    set_json_dumps(partial(json.dumps, cls=UUIDEncoder), context=conn)
    await register_vector_async(conn)
    return conn
