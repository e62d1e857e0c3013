from importlib.resources import files

import psycopg
import structlog
from psycopg import sql as sql_lib

from .. import __version__

log = structlog.get_logger()

MIN_PG_VERSION = 15


def _get_sql(vector_extension_schema: str) -> str:
    with files("travelrag.data").joinpath("schema.sql").open(mode="r") as f:
        sql = f.read()
    sql = sql.replace("@extschema:vector@", vector_extension_schema)
    sql = sql.replace("__version__", __version__)
    return sql


def _get_vector_extension_schema_sql() -> sql_lib.SQL:
    return sql_lib.SQL("""
        select n.nspname
        from pg_extension e
        join pg_namespace n on n.oid = e.extnamespace
        where e.extname = 'vector'
    """)


def _get_server_version_sql() -> sql_lib.SQL:
    return sql_lib.SQL(
        "select current_setting('server_version_num', true)::int / 10000"
    )


def _create_extension_sql(vector_extension_schema: str | None) -> sql_lib.Composable:
    if vector_extension_schema is None:
        return sql_lib.SQL("CREATE EXTENSION IF NOT EXISTS vector")
    return sql_lib.SQL("CREATE EXTENSION IF NOT EXISTS vector WITH SCHEMA {}").format(
        sql_lib.Identifier(vector_extension_schema)
    )


def _check_server_version(pg_version: int | None) -> None:
    if pg_version and pg_version < MIN_PG_VERSION:
        raise RuntimeError(
            f"postgres {pg_version} is unsupported, travelrag requires postgres version {MIN_PG_VERSION} or greater"  # noqa
        )


async def ainstall(db_url: str, vector_extension_schema: str | None = None) -> None:
    """Asynchronously install the travelrag tables into a PostgreSQL database.

    Installing is idempotent: existing tables and indexes are left alone.

    Args:
        db_url: Database connection URL
        vector_extension_schema: Schema where the vector extension is installed if it
            doesn't exist. If None, then the vector extension will be installed in the
            default schema (default: None)
    """
    async with (
        await psycopg.AsyncConnection.connect(db_url, autocommit=True) as conn,
        conn.cursor() as cur,
        conn.transaction(),
    ):
        await cur.execute(_get_server_version_sql())
        result = await cur.fetchone()
        _check_server_version(int(result[0]) if result is not None else None)

        await conn.execute(_create_extension_sql(vector_extension_schema))

        await cur.execute(_get_vector_extension_schema_sql())
        result = await cur.fetchone()
        if result is None or result[0] is None:
            raise Exception("vector extension not installed")

        await conn.execute(_get_sql(result[0]))  # type: ignore
    log.info("travelrag installed", version=__version__)


def install(db_url: str, vector_extension_schema: str | None = None) -> None:
    """Install the travelrag tables into a PostgreSQL database.

    Args:
        db_url: Database connection URL
        vector_extension_schema: Schema where the vector extension is installed if it
            doesn't exist. If None, then the vector extension will be installed in the
            default schema (default: None)
    """
    with (
        psycopg.connect(db_url, autocommit=True) as conn,
        conn.cursor() as cur,
        conn.transaction(),
    ):
        cur.execute(_get_server_version_sql())
        result = cur.fetchone()
        _check_server_version(int(result[0]) if result is not None else None)

        conn.execute(_create_extension_sql(vector_extension_schema))

        cur.execute(_get_vector_extension_schema_sql())
        result = cur.fetchone()
        if result is None or result[0] is None:
            raise Exception("vector extension not installed")

        conn.execute(_get_sql(result[0]))  # type: ignore
    log.info("travelrag installed", version=__version__)
