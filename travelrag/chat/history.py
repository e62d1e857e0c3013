from collections.abc import Iterable
from uuid import UUID

from .models import HistoryEntry, Message, Role

DEFAULT_HISTORY_LIMIT = 10


def build_history(
    messages: Iterable[Message],
    limit: int = DEFAULT_HISTORY_LIMIT,
    exclude_id: UUID | None = None,
) -> list[HistoryEntry]:
    """
    The last `limit` usable turns of a conversation, oldest first.

    System messages, empty messages and the message identified by
    `exclude_id` (normally the query that opened the session) are left out.
    """
    usable = [
        message
        for message in sorted(messages, key=lambda m: m.created_at)
        if message.role in (Role.USER, Role.ASSISTANT)
        and message.content.strip()
        and message.id != exclude_id
    ]
    if limit <= 0:
        return []
    return [
        HistoryEntry(role=message.role, content=message.content)
        for message in usable[-limit:]
    ]
