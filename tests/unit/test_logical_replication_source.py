import json
from datetime import datetime, timezone

import pytest

from chef_change_feed.db import OperationalError, errors
from chef_change_feed.feed import (
    FeedError,
    PostgresChangeFeedSource,
    ResumeToken,
    Wal2JsonDecoder,
    int_to_lsn,
    lsn_to_int,
)
from chef_change_feed.feed.source import DEFAULT_WAL2JSON_OPTIONS, PostgresChangeCursor


class FakeMessage:
    def __init__(self, data_start: int, payload) -> None:
        self.data_start = data_start
        if isinstance(payload, dict):
            payload = json.dumps(payload)
        self.payload = payload.encode("utf-8") if isinstance(payload, str) else payload
        self.send_time = datetime(2024, 5, 1, tzinfo=timezone.utc)


class FakeReplicationCursor:
    def __init__(self, messages=(), *, read_error=None) -> None:
        self.messages = list(messages)
        self.read_error = read_error
        self.log = []
        self.closed = False
        self.slot_error = None
        self.start_error = None
        self.started_with = None

    def read_message(self):
        if self.read_error is not None:
            raise self.read_error
        if self.messages:
            message = self.messages.pop(0)
            self.log.append(("read", message.data_start))
            return message
        self.log.append(("read", None))
        return None

    def send_feedback(self, flush_lsn=0, **_kwargs):
        self.log.append(("flush", flush_lsn))

    def create_replication_slot(self, slot_name, output_plugin=None):
        self.log.append(("create_slot", slot_name, output_plugin))
        if self.slot_error is not None:
            raise self.slot_error

    def start_replication(self, **kwargs):
        self.started_with = kwargs
        if self.start_error is not None:
            raise self.start_error

    def close(self):
        self.closed = True


class FakeReplicationConnection:
    def __init__(self, cursor: FakeReplicationCursor) -> None:
        self._cursor = cursor
        self.closed = False

    def cursor(self):
        return self._cursor

    def close(self):
        self.closed = True


def _v2_insert(table="orders", **columns):
    return {
        "action": "I",
        "schema": "public",
        "table": table,
        "columns": [
            {"name": name, "type": "text", "value": value}
            for name, value in columns.items()
        ],
    }


@pytest.mark.unit
def test_lsn_helpers_round_trip_and_validate():
    assert int_to_lsn(lsn_to_int("16/B374D848")) == "16/B374D848"
    assert lsn_to_int("0/10") == 16
    with pytest.raises(ValueError):
        lsn_to_int("garbage")


@pytest.mark.unit
def test_decoder_maps_format_v2_actions():
    decoder = Wal2JsonDecoder()
    token = ResumeToken("0/1")
    payload = {
        "action": "U",
        "schema": "public",
        "table": "events",
        "columns": [
            {"name": "id", "type": "integer", "value": 7},
            {"name": "payload", "type": "jsonb", "value": '{"amount": 3}'},
        ],
        "identity": [{"name": "id", "type": "integer", "value": 7}],
    }

    (event,) = decoder.decode(json.dumps(payload).encode(), token, commit_timestamp=1.5)

    assert event.operation_type == "update"
    assert event.qualified_name == "public.events"
    assert event.full_document == {"id": 7, "payload": {"amount": 3}}
    assert event.document_key == {"id": 7}
    assert event.position == token
    assert event.commit_timestamp == 1.5


@pytest.mark.unit
def test_decoder_skips_transaction_markers():
    decoder = Wal2JsonDecoder()
    for action in ("B", "C", "M"):
        assert decoder.decode(json.dumps({"action": action}).encode(), ResumeToken("0/1")) == []


@pytest.mark.unit
def test_decoder_handles_format_v1_transactions():
    payload = {
        "change": [
            {
                "kind": "insert",
                "schema": "public",
                "table": "orders",
                "columnnames": ["id", "status"],
                "columntypes": ["integer", "text"],
                "columnvalues": [1, "new"],
            },
            {
                "kind": "delete",
                "schema": "public",
                "table": "orders",
                "oldkeys": {"keynames": ["id"], "keytypes": ["integer"], "keyvalues": [2]},
            },
        ]
    }

    events = Wal2JsonDecoder().decode(json.dumps(payload).encode(), ResumeToken("0/9"))

    assert [e.operation_type for e in events] == ["insert", "delete"]
    assert events[0].full_document == {"id": 1, "status": "new"}
    assert events[1].full_document is None
    assert events[1].document_key == {"id": 2}


@pytest.mark.unit
def test_decoder_rejects_invalid_json():
    with pytest.raises(ValueError):
        Wal2JsonDecoder().decode(b"{oops", ResumeToken("0/1"))


@pytest.mark.unit
def test_cursor_acknowledges_message_only_after_consumer_moves_on():
    replication = FakeReplicationCursor(
        [FakeMessage(0x10, _v2_insert(id="a")), FakeMessage(0x20, _v2_insert(id="b"))]
    )
    connection = FakeReplicationConnection(replication)
    cursor = PostgresChangeCursor(
        connection,
        replication,
        decoder=Wal2JsonDecoder(),
        select_fn=lambda *args: cursor.close(),
    )

    iterator = iter(cursor)
    first = next(iterator)
    assert first.position == ResumeToken("0/10")
    assert ("flush", 0x10) not in replication.log

    second = next(iterator)
    assert second.position == ResumeToken("0/20")
    assert replication.log.index(("flush", 0x10)) < replication.log.index(("read", 0x20))

    assert list(iterator) == []
    assert ("flush", 0x20) in replication.log
    assert replication.closed is True
    assert connection.closed is True


@pytest.mark.unit
def test_cursor_skips_undecodable_messages(caplog):
    replication = FakeReplicationCursor(
        [FakeMessage(0x30, b"\xff not json"), FakeMessage(0x40, _v2_insert(id="c"))]
    )
    cursor = PostgresChangeCursor(
        FakeReplicationConnection(replication),
        replication,
        decoder=Wal2JsonDecoder(),
        select_fn=lambda *args: cursor.close(),
    )

    events = list(cursor)

    assert [e.position.value for e in events] == ["0/40"]
    assert ("flush", 0x30) in replication.log
    assert "undecodable replication message at 0/30" in caplog.text


@pytest.mark.unit
def test_cursor_read_failure_raises_feed_error():
    replication = FakeReplicationCursor(read_error=OperationalError("connection reset"))
    connection = FakeReplicationConnection(replication)
    cursor = PostgresChangeCursor(connection, replication, decoder=Wal2JsonDecoder())

    with pytest.raises(FeedError):
        list(cursor)
    assert connection.closed is True


@pytest.mark.unit
def test_close_before_iteration_releases_connection():
    replication = FakeReplicationCursor()
    connection = FakeReplicationConnection(replication)
    cursor = PostgresChangeCursor(connection, replication, decoder=Wal2JsonDecoder())

    cursor.close()
    cursor.close()

    assert replication.closed is True
    assert connection.closed is True
    assert list(cursor) == []


@pytest.mark.unit
def test_source_creates_slot_and_starts_at_live_tail():
    replication = FakeReplicationCursor()
    dsns = []

    def connect(dsn):
        dsns.append(dsn)
        return FakeReplicationConnection(replication)

    source = PostgresChangeFeedSource("dbname=chef", "chef_slot", connect=connect)
    cursor = source.open(None)

    assert isinstance(cursor, PostgresChangeCursor)
    assert dsns == ["dbname=chef"]
    assert ("create_slot", "chef_slot", "wal2json") in replication.log
    assert replication.started_with == {
        "slot_name": "chef_slot",
        "decode": False,
        "options": DEFAULT_WAL2JSON_OPTIONS,
    }


@pytest.mark.unit
def test_source_resumes_from_token_with_existing_slot():
    replication = FakeReplicationCursor()
    replication.slot_error = errors.DuplicateObject("replication slot already exists")
    source = PostgresChangeFeedSource(
        "dbname=chef",
        "chef_slot",
        connect=lambda dsn: FakeReplicationConnection(replication),
    )

    source.open(ResumeToken("1/A0"))

    assert replication.started_with["start_lsn"] == lsn_to_int("1/A0")


@pytest.mark.unit
def test_source_rejects_unusable_token_without_connecting():
    calls = []
    source = PostgresChangeFeedSource(
        "dbname=chef", "chef_slot", connect=lambda dsn: calls.append(dsn)
    )
    with pytest.raises(FeedError):
        source.open(ResumeToken("not-an-lsn"))
    assert calls == []


@pytest.mark.unit
def test_source_start_failure_closes_connection():
    replication = FakeReplicationCursor()
    replication.start_error = OperationalError("slot in use")
    connection = FakeReplicationConnection(replication)
    source = PostgresChangeFeedSource(
        "dbname=chef", "chef_slot", create_slot=False, connect=lambda dsn: connection
    )

    with pytest.raises(FeedError):
        source.open(None)
    assert connection.closed is True
    assert not any(entry[0] == "create_slot" for entry in replication.log)
