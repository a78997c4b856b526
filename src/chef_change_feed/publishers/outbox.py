"""Outbox handlers turning inserted event rows into downstream messages."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol, Sequence

from ..db import pooled_connection, sql
from ..feed.types import ChangeEvent, Clock, utc_now

logger = logging.getLogger(__name__)


class PublishError(RuntimeError):
    """Raised when a message could not be handed to the downstream system."""


@dataclass(frozen=True)
class OutboxMessage:
    """Message handed to a publisher.

    ``deduplication_id`` is stable across redeliveries of the same row so
    downstream consumers can drop duplicates; ``key`` groups messages that
    must stay ordered.
    """

    deduplication_id: str
    key: str
    body: str

    @classmethod
    def from_document(
        cls,
        document: Mapping[str, Any],
        *,
        id_field: str = "id",
        key_field: str = "key",
    ) -> "OutboxMessage":
        identifier = document.get(id_field)
        if identifier is None or identifier == "":
            raise ValueError(f"outbox document missing '{id_field}'")
        key = document.get(key_field) or document.get("type") or "default"
        return cls(
            deduplication_id=str(identifier),
            key=str(key),
            body=json.dumps(dict(document), default=str, sort_keys=True),
        )


class Publisher(Protocol):
    def publish(self, message: OutboxMessage) -> None: ...


def _is_outbox_insert(event: ChangeEvent, collection: str) -> bool:
    return event.operation_type == "insert" and event.in_collection(collection)


class OutboxEventHandler:
    """Publishes newly inserted outbox rows that have not been processed yet.

    Every publisher receives the message in order. ``on_published`` runs
    only after all of them succeeded, so a failed delivery leaves the row
    unprocessed.
    """

    name = "outbox-publish"

    def __init__(
        self,
        publishers: Sequence[Publisher],
        *,
        collection: str = "events",
        id_field: str = "id",
        key_field: str = "key",
        on_published: Optional[Callable[[ChangeEvent], None]] = None,
    ) -> None:
        self._publishers = tuple(publishers)
        self._collection = collection
        self._id_field = id_field
        self._key_field = key_field
        self._on_published = on_published

    def __call__(self, event: ChangeEvent) -> None:
        if not _is_outbox_insert(event, self._collection):
            return
        document = event.full_document
        if not document:
            logger.warning(
                "insert on %s carried no document; nothing to publish",
                event.qualified_name,
            )
            return
        if document.get("processed_at"):
            logger.info(
                "event %s already processed. skipping", document.get(self._id_field)
            )
            return
        message = OutboxMessage.from_document(
            document, id_field=self._id_field, key_field=self._key_field
        )
        for publisher in self._publishers:
            publisher.publish(message)
        logger.info(
            "published event %s to %d publisher(s)",
            message.deduplication_id,
            len(self._publishers),
        )
        if self._on_published is not None:
            self._on_published(event)


class MarkProcessedHandler:
    """Stamps ``processed_at`` on outbox rows once they have been handled.

    Usable as a registered handler of its own or as the ``on_published``
    hook of :class:`OutboxEventHandler`. The resulting update is a change on
    the feed as well, but only inserts are published, so it does not loop.
    """

    name = "outbox-mark-processed"

    def __init__(
        self,
        pool,
        *,
        table: str = "events",
        schema: Optional[str] = None,
        id_field: str = "id",
        clock: Clock = utc_now,
    ) -> None:
        self._pool = pool
        self._collection = f"{schema}.{table}" if schema else table
        self._table = sql.Identifier(
            *[part for part in self._collection.split(".") if part]
        )
        self._id_field = id_field
        self._clock = clock

    def __call__(self, event: ChangeEvent) -> None:
        if not _is_outbox_insert(event, self._collection):
            return
        document = event.full_document or {}
        identifier = document.get(self._id_field)
        if identifier is None or document.get("processed_at"):
            return
        processed_at = self._clock()
        query = sql.SQL(
            "UPDATE {} SET processed_at = %s WHERE {} = %s AND processed_at IS NULL"
        ).format(self._table, sql.Identifier(self._id_field))
        with pooled_connection(self._pool) as conn:
            conn.execute(query, (processed_at, identifier))
        logger.info(
            "processed event %s at %s", identifier, processed_at.isoformat()
        )


__all__ = [
    "MarkProcessedHandler",
    "OutboxEventHandler",
    "OutboxMessage",
    "PublishError",
    "Publisher",
]
