"""Checkpoint store implementations for change-feed resume positions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from threading import Lock, RLock
from typing import Dict, Optional, Protocol

from ..db import Error, pooled_connection, sql
from .errors import CheckpointWriteError, StorageError
from .types import Clock, ResumePosition, ResumeToken, utc_now

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence backend mapping a feed identifier to its resume position."""

    @property
    def collection(self) -> Optional[str]:
        """Qualified name of the backing table inside the watched database."""
        ...

    def get(self, feed_id: str) -> Optional[ResumePosition]: ...

    def set(self, feed_id: str, token: ResumeToken) -> None: ...


def _split_qualified(name: str) -> sql.Identifier:
    return sql.Identifier(*[part for part in name.split(".") if part])


class InMemoryCheckpointStore:
    """Volatile checkpoint store keeping resume positions in-memory."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._lock = Lock()
        self._clock = clock
        self._positions: Dict[str, ResumePosition] = {}

    @property
    def collection(self) -> Optional[str]:
        return None

    def get(self, feed_id: str) -> Optional[ResumePosition]:
        with self._lock:
            return self._positions.get(feed_id)

    def set(self, feed_id: str, token: ResumeToken) -> None:
        with self._lock:
            current = self._positions.get(feed_id)
            if current is not None and current.token == token:
                return
            self._positions[feed_id] = ResumePosition(
                feed_id=feed_id, token=token, updated_at=self._clock()
            )


class FileCheckpointStore:
    """Durable checkpoint store that persists resume positions to disk atomically."""

    def __init__(
        self, path: Path | str, *, fsync: bool = False, clock: Clock = utc_now
    ) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._clock = clock
        self._lock = RLock()
        self._positions: Dict[str, ResumePosition] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create checkpoint directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()

    @property
    def collection(self) -> Optional[str]:
        return None

    def get(self, feed_id: str) -> Optional[ResumePosition]:
        with self._lock:
            return self._positions.get(feed_id)

    def set(self, feed_id: str, token: ResumeToken) -> None:
        with self._lock:
            current = self._positions.get(feed_id)
            if current is not None and current.token == token:
                return
            self._positions[feed_id] = ResumePosition(
                feed_id=feed_id, token=token, updated_at=self._clock()
            )
            try:
                self._write_locked()
            except OSError as exc:
                if current is None:
                    self._positions.pop(feed_id, None)
                else:
                    self._positions[feed_id] = current
                raise CheckpointWriteError(
                    f"failed to persist resume position for {feed_id}"
                ) from exc

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning(
                "failed to load checkpoint file %s: %s", self._path, exc, exc_info=False
            )
            return
        if not isinstance(data, dict):
            logger.warning(
                "checkpoint file %s has invalid format; ignoring", self._path
            )
            return
        filtered: Dict[str, ResumePosition] = {}
        for feed_id, entry in data.items():
            if not isinstance(feed_id, str) or not isinstance(entry, dict):
                continue
            token = entry.get("token")
            updated_at = entry.get("updated_at")
            if not isinstance(token, str) or not isinstance(updated_at, str):
                continue
            try:
                parsed_at = datetime.fromisoformat(updated_at)
            except ValueError:
                continue
            filtered[feed_id] = ResumePosition(
                feed_id=feed_id, token=ResumeToken(token), updated_at=parsed_at
            )
        with self._lock:
            self._positions = filtered

    def _serialise(self) -> Dict[str, Dict[str, str]]:
        return {
            feed_id: {
                "token": position.token.value,
                "updated_at": position.updated_at.isoformat(),
            }
            for feed_id, position in self._positions.items()
        }

    def _write_locked(self) -> None:
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(self._serialise(), tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
            if self._fsync:
                try:
                    dir_fd = os.open(self._path.parent, os.O_RDONLY)
                except OSError:  # pragma: no cover - platform dependent
                    dir_fd = None
                if dir_fd is not None:
                    try:
                        os.fsync(dir_fd)
                    finally:
                        os.close(dir_fd)
        except OSError as exc:
            logger.error("failed to persist checkpoint file %s: %s", self._path, exc)
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass


class PostgresCheckpointStore:
    """Checkpoint store backed by a table in the watched database.

    Every write to this table is itself a change on the feed, so the
    processor must filter ``collection`` out before dispatch.
    """

    def __init__(
        self,
        pool,
        *,
        table: str = "resume_tokens",
        schema: Optional[str] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._pool = pool
        self._collection = f"{schema}.{table}" if schema else table
        self._table = _split_qualified(self._collection)
        self._clock = clock

    @property
    def collection(self) -> Optional[str]:
        return self._collection

    def get(self, feed_id: str) -> Optional[ResumePosition]:
        query = sql.SQL(
            "SELECT token, updated_at FROM {} WHERE feed_id = %s"
        ).format(self._table)
        try:
            with pooled_connection(self._pool) as conn:
                row = conn.execute(query, (feed_id,)).fetchone()
        except Error as exc:
            raise StorageError(
                f"failed to load resume position for {feed_id}"
            ) from exc
        if row is None:
            return None
        token, updated_at = row[0], row[1]
        return ResumePosition(
            feed_id=feed_id, token=ResumeToken(token), updated_at=updated_at
        )

    def set(self, feed_id: str, token: ResumeToken) -> None:
        query = sql.SQL(
            """
            INSERT INTO {} AS existing (feed_id, token, updated_at)
            VALUES (%s, %s, %s)
            ON CONFLICT (feed_id) DO UPDATE
               SET token = EXCLUDED.token,
                   updated_at = EXCLUDED.updated_at
             WHERE existing.token IS DISTINCT FROM EXCLUDED.token
            """
        ).format(self._table)
        try:
            with pooled_connection(self._pool) as conn:
                conn.execute(query, (feed_id, token.value, self._clock()))
        except Error as exc:
            logger.error("failed to persist resume position for %s: %s", feed_id, exc)
            raise CheckpointWriteError(
                f"failed to persist resume position for {feed_id}"
            ) from exc


__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "PostgresCheckpointStore",
]
