from typing import Protocol
from uuid import UUID

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import class_row
from psycopg.types.json import Jsonb

from ..db import PersistenceError
from .models import Conversation, Message


class MessageStore(Protocol):
    async def create(self, message: Message) -> None: ...

    async def update(self, message: Message) -> None: ...

    async def delete(self, message_id: UUID) -> None: ...

    async def list_messages(self, conversation_id: UUID) -> list[Message]: ...


class PostgresMessageStore:
    """
    Conversations and messages in PostgreSQL. Every write is its own
    statement on an autocommit connection, so a checkpoint is durable once
    the call returns.
    """

    def __init__(self, conn: AsyncConnection):
        self.conn = conn

    async def create_conversation(self, conversation: Conversation) -> None:
        try:
            async with self.conn.cursor() as cursor:
                await cursor.execute(
                    """
                    INSERT INTO conversation (id, title, is_active, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (
                        conversation.id,
                        conversation.title,
                        conversation.is_active,
                        conversation.created_at,
                    ),
                )
        except psycopg.Error as e:
            raise PersistenceError("failed to create conversation", e=e) from e

    async def create(self, message: Message) -> None:
        try:
            async with self.conn.cursor() as cursor:
                await cursor.execute(
                    """
                    INSERT INTO message
                        (id, conversation_id, role, content, model_used,
                        token_count, metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        message.id,
                        message.conversation_id,
                        message.role.value,
                        message.content,
                        message.model_used,
                        message.token_count,
                        Jsonb(message.metadata) if message.metadata is not None else None,
                        message.created_at,
                    ),
                )
        except psycopg.Error as e:
            raise PersistenceError(f"failed to create message {message.id}", e=e) from e

    async def update(self, message: Message) -> None:
        try:
            async with self.conn.cursor() as cursor:
                await cursor.execute(
                    """
                    UPDATE message
                    SET content = %s, model_used = %s, token_count = %s, metadata = %s
                    WHERE id = %s
                    """,
                    (
                        message.content,
                        message.model_used,
                        message.token_count,
                        Jsonb(message.metadata) if message.metadata is not None else None,
                        message.id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise PersistenceError(f"message {message.id} does not exist")
        except psycopg.Error as e:
            raise PersistenceError(f"failed to update message {message.id}", e=e) from e

    async def delete(self, message_id: UUID) -> None:
        try:
            async with self.conn.cursor() as cursor:
                await cursor.execute("DELETE FROM message WHERE id = %s", (message_id,))
        except psycopg.Error as e:
            raise PersistenceError(f"failed to delete message {message_id}", e=e) from e

    async def list_messages(self, conversation_id: UUID) -> list[Message]:
        async with self.conn.cursor(row_factory=class_row(Message)) as cursor:
            await cursor.execute(
                """
                SELECT id, conversation_id, role, content, model_used,
                    token_count, metadata, created_at
                FROM message
                WHERE conversation_id = %s
                ORDER BY created_at, id
                """,
                (conversation_id,),
            )
            return await cursor.fetchall()
