"""Periodic heartbeat writes that keep an idle change feed reporting activity."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

from ..db import Error, pooled_connection, sql
from .errors import StorageError
from .metrics import ChangeFeedMetrics
from .types import ChangeEvent, Clock, HeartbeatRecord, utc_now

logger = logging.getLogger(__name__)

HEARTBEAT_OPERATIONS = frozenset({"insert", "update", "replace"})


class HeartbeatWriter(Protocol):
    """Upserts the single heartbeat record of a feed."""

    @property
    def collection(self) -> Optional[str]: ...

    def write(self, record: HeartbeatRecord) -> None: ...


class PostgresHeartbeatWriter:
    """Heartbeat writer backed by a table in the watched database."""

    def __init__(
        self,
        pool,
        *,
        table: str = "change_stream_heartbeats",
        schema: Optional[str] = None,
    ) -> None:
        self._pool = pool
        self._collection = f"{schema}.{table}" if schema else table
        self._table = sql.Identifier(
            *[part for part in self._collection.split(".") if part]
        )

    @property
    def collection(self) -> Optional[str]:
        return self._collection

    def write(self, record: HeartbeatRecord) -> None:
        query = sql.SQL(
            """
            INSERT INTO {} (feed_id, heartbeat_at)
            VALUES (%s, %s)
            ON CONFLICT (feed_id) DO UPDATE
               SET heartbeat_at = EXCLUDED.heartbeat_at
            """
        ).format(self._table)
        try:
            with pooled_connection(self._pool) as conn:
                conn.execute(query, (record.feed_id, record.heartbeat_at))
        except Error as exc:
            raise StorageError(
                f"failed to write heartbeat for {record.feed_id}"
            ) from exc


class HeartbeatEmitter:
    """Runs heartbeat writes on a background timer independent of the feed loop."""

    def __init__(
        self,
        writer: HeartbeatWriter,
        *,
        clock: Clock = utc_now,
        metrics: Optional[ChangeFeedMetrics] = None,
    ) -> None:
        self._writer = writer
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def collection(self) -> Optional[str]:
        return self._writer.collection

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    def start(self, feed_id: str, interval: float) -> None:
        if interval <= 0:
            raise ValueError("heartbeat interval must be positive")
        self.stop()
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(feed_id, interval, stop_event),
            name=f"heartbeat-{feed_id}",
            daemon=True,
        )
        with self._lock:
            self._stop_event = stop_event
            self._thread = thread
        thread.start()
        logger.info(
            "heartbeat started for %s every %.1fs on %s",
            feed_id,
            interval,
            self.collection or "<external store>",
        )

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        if stop_event is not None:
            stop_event.set()
        if (
            thread is not None
            and thread.is_alive()
            and thread is not threading.current_thread()
        ):
            thread.join(timeout=timeout)

    def beat(self, feed_id: str) -> bool:
        """Write one heartbeat; failures are logged and left to the next tick."""
        record = HeartbeatRecord(feed_id=feed_id, heartbeat_at=self._clock())
        try:
            self._writer.write(record)
        except Exception:  # noqa: BLE001 - a missed heartbeat is not fatal
            logger.warning("failed to update heartbeat for %s", feed_id, exc_info=True)
            if self._metrics is not None:
                self._metrics.inc("heartbeat_errors")
            return False
        logger.info("updated heartbeat for %s", feed_id)
        if self._metrics is not None:
            self._metrics.inc("heartbeats_written")
        return True

    def _run(self, feed_id: str, interval: float, stop_event: threading.Event) -> None:
        while not stop_event.wait(interval):
            self.beat(feed_id)

    def __enter__(self) -> "HeartbeatEmitter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


class HeartbeatLogHandler:
    """Internal handler acknowledging heartbeat changes with a log line only."""

    name = "heartbeat-log"

    def __init__(self, collection: str, feed_id: str) -> None:
        self._collection = collection
        self._feed_id = feed_id

    def __call__(self, event: ChangeEvent) -> None:
        if event.operation_type not in HEARTBEAT_OPERATIONS:
            return
        if not event.in_collection(self._collection):
            return
        owner = (event.full_document or {}).get("feed_id")
        if owner is not None and owner != self._feed_id:
            logger.debug("heartbeat change for foreign feed %s", owner)
            return
        logger.info("handling heartbeat change for %s", self._feed_id)


__all__ = [
    "HeartbeatEmitter",
    "HeartbeatLogHandler",
    "HeartbeatWriter",
    "PostgresHeartbeatWriter",
]
