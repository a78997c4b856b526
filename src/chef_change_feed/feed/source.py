"""Change feed sources backed by PostgreSQL logical replication (wal2json).

The processor only sees :class:`ChangeCursor` objects yielding
:class:`ChangeEvent` values. Tests provide simple in-memory cursors while the
runtime wires in :class:`PostgresChangeFeedSource`.
"""

from __future__ import annotations

import json
import logging
import select
import threading
from typing import (
    Any,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from ..db import Error, LogicalReplicationConnection, errors
from .errors import FeedError
from .types import ChangeEvent, ResumeToken

logger = logging.getLogger(__name__)

DEFAULT_WAL2JSON_OPTIONS = {
    "format-version": "2",
    "include-transaction": "0",
    "include-types": "1",
}

_V2_ACTIONS = {"I": "insert", "U": "update", "D": "delete", "T": "truncate"}
_JSON_TYPES = {"json", "jsonb"}


class ChangeCursor(Protocol):
    """Open position on a change feed."""

    def __iter__(self) -> Iterator[ChangeEvent]: ...

    def close(self) -> None: ...


class ChangeFeedSource(Protocol):
    """Opens a cursor at a resume token, or at the live tail when it is None."""

    def open(self, resume_token: Optional[ResumeToken]) -> ChangeCursor: ...


def int_to_lsn(value: int) -> str:
    upper = value >> 32
    lower = value & 0xFFFFFFFF
    return f"{upper:X}/{lower:X}"


def lsn_to_int(value: str) -> int:
    upper, sep, lower = value.partition("/")
    if not sep or not upper or not lower:
        raise ValueError(f"invalid LSN {value!r}")
    return (int(upper, 16) << 32) + int(lower, 16)


def _column_value(column: Mapping[str, Any], type_name: Optional[str]) -> Any:
    value = column.get("value")
    if type_name in _JSON_TYPES and isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return value


def _columns_to_mapping(raw: object) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, list):
        return None
    document: Dict[str, Any] = {}
    for column in raw:
        if not isinstance(column, dict) or "name" not in column:
            continue
        document[str(column["name"])] = _column_value(column, column.get("type"))
    return document


def _parallel_to_mapping(
    names: Sequence[object], values: Sequence[object], types: Sequence[object]
) -> Dict[str, Any]:
    document: Dict[str, Any] = {}
    for index, name in enumerate(names):
        value = values[index] if index < len(values) else None
        type_name = types[index] if index < len(types) else None
        document[str(name)] = _column_value({"value": value}, type_name)
    return document


class Wal2JsonDecoder:
    """Decodes wal2json payloads (format versions 1 and 2) into change events."""

    def decode(
        self,
        payload: bytes,
        position: ResumeToken,
        *,
        commit_timestamp: Optional[float] = None,
    ) -> List[ChangeEvent]:
        try:
            data = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValueError("replication payload is not valid JSON") from exc
        if not isinstance(data, dict):
            return []
        if "action" in data:
            event = self._decode_v2(data, position, commit_timestamp)
            return [event] if event is not None else []
        changes = data.get("change")
        if not isinstance(changes, list):
            return []
        return [
            self._decode_v1(item, position, commit_timestamp)
            for item in changes
            if isinstance(item, dict) and item.get("table")
        ]

    @staticmethod
    def _decode_v2(
        item: Dict[str, Any], position: ResumeToken, commit_timestamp: Optional[float]
    ) -> Optional[ChangeEvent]:
        operation = _V2_ACTIONS.get(str(item.get("action")))
        table = item.get("table")
        if operation is None or not table:
            # begin/commit/message records carry no row change
            return None
        return ChangeEvent(
            operation_type=operation,
            collection=str(table),
            namespace=item.get("schema"),
            full_document=_columns_to_mapping(item.get("columns")),
            document_key=_columns_to_mapping(item.get("identity")),
            position=position,
            commit_timestamp=commit_timestamp,
        )

    @staticmethod
    def _decode_v1(
        item: Dict[str, Any], position: ResumeToken, commit_timestamp: Optional[float]
    ) -> ChangeEvent:
        full_document: Optional[Dict[str, Any]] = None
        names = item.get("columnnames")
        if isinstance(names, list):
            full_document = _parallel_to_mapping(
                names, item.get("columnvalues") or [], item.get("columntypes") or []
            )
        document_key: Optional[Dict[str, Any]] = None
        keys = item.get("oldkeys")
        if isinstance(keys, dict):
            document_key = _parallel_to_mapping(
                keys.get("keynames") or [],
                keys.get("keyvalues") or [],
                keys.get("keytypes") or [],
            )
        return ChangeEvent(
            operation_type=str(item.get("kind", "update")),
            collection=str(item["table"]),
            namespace=item.get("schema"),
            full_document=full_document,
            document_key=document_key,
            position=position,
            commit_timestamp=commit_timestamp,
        )


class PostgresChangeCursor:
    """Iterates a started replication cursor until closed.

    Flush feedback for a message is sent only when the next message is
    requested, i.e. after the consumer has finished with every change it
    carried.
    """

    def __init__(
        self,
        connection,
        cursor,
        *,
        decoder: Wal2JsonDecoder,
        poll_seconds: float = 0.5,
        select_fn: Callable = select.select,
    ) -> None:
        self._connection = connection
        self._cursor = cursor
        self._decoder = decoder
        self._poll_seconds = poll_seconds
        self._select = select_fn
        self._closed = threading.Event()
        self._lock = threading.Lock()
        self._started = False
        self._released = False

    def close(self) -> None:
        self._closed.set()
        if not self._started:
            self._release()

    def __iter__(self) -> Iterator[ChangeEvent]:
        self._started = True
        pending_flush: Optional[int] = None
        try:
            while not self._closed.is_set():
                try:
                    if pending_flush is not None:
                        self._cursor.send_feedback(flush_lsn=pending_flush)
                        pending_flush = None
                    message = self._cursor.read_message()
                    if message is None:
                        self._select([self._cursor], [], [], self._poll_seconds)
                        continue
                except Error as exc:
                    if self._closed.is_set():
                        break
                    raise FeedError("logical replication stream failed") from exc
                token = ResumeToken(int_to_lsn(int(message.data_start)))
                send_time = getattr(message, "send_time", None)
                commit_ts = send_time.timestamp() if send_time is not None else None
                try:
                    events = self._decoder.decode(
                        bytes(message.payload), token, commit_timestamp=commit_ts
                    )
                except ValueError:
                    logger.error("skipping undecodable replication message at %s", token)
                    pending_flush = int(message.data_start)
                    continue
                for event in events:
                    yield event
                pending_flush = int(message.data_start)
        finally:
            self._release()

    def _release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        try:
            self._cursor.close()
        except Error:
            logger.debug("replication cursor close failed", exc_info=True)
        finally:
            self._connection.close()


class PostgresChangeFeedSource:
    """Opens wal2json logical replication streams on a named slot."""

    def __init__(
        self,
        dsn: str,
        slot_name: str,
        *,
        decoder: Optional[Wal2JsonDecoder] = None,
        options: Optional[Dict[str, str]] = None,
        poll_seconds: float = 0.5,
        create_slot: bool = True,
        connect: Callable[[str], Any] = LogicalReplicationConnection.connect,
    ) -> None:
        self._dsn = dsn
        self._slot_name = slot_name
        self._decoder = decoder or Wal2JsonDecoder()
        self._options = dict(options or DEFAULT_WAL2JSON_OPTIONS)
        self._poll_seconds = poll_seconds
        self._create_slot = create_slot
        self._connect = connect

    def open(self, resume_token: Optional[ResumeToken]) -> PostgresChangeCursor:
        start_kwargs: Dict[str, Any] = {
            "slot_name": self._slot_name,
            "decode": False,
            "options": self._options,
        }
        if resume_token is not None:
            try:
                start_kwargs["start_lsn"] = lsn_to_int(resume_token.value)
            except ValueError as exc:
                raise FeedError(f"unusable resume token {resume_token}") from exc
        conn = None
        try:
            conn = self._connect(self._dsn)
            cur = conn.cursor()
            if self._create_slot:
                self._ensure_slot(cur)
            cur.start_replication(**start_kwargs)
        except Error as exc:
            if conn is not None:
                conn.close()
            raise FeedError(
                f"failed to start logical replication on slot {self._slot_name}"
            ) from exc
        logger.info(
            "logical replication started on slot %s from %s",
            self._slot_name,
            resume_token or "live tail",
        )
        return PostgresChangeCursor(
            conn, cur, decoder=self._decoder, poll_seconds=self._poll_seconds
        )

    def _ensure_slot(self, cur) -> None:
        try:
            cur.create_replication_slot(self._slot_name, output_plugin="wal2json")
        except errors.DuplicateObject:
            return
        logger.info("created replication slot %s", self._slot_name)


__all__ = [
    "ChangeCursor",
    "ChangeFeedSource",
    "DEFAULT_WAL2JSON_OPTIONS",
    "PostgresChangeCursor",
    "PostgresChangeFeedSource",
    "Wal2JsonDecoder",
    "int_to_lsn",
    "lsn_to_int",
]
