import signal
from pathlib import Path

import pytest

from chef_change_feed import service
from chef_change_feed.config import Settings
from chef_change_feed.feed import (
    ChangeEvent,
    FeedError,
    FileCheckpointStore,
    HeartbeatLogHandler,
    InMemoryCheckpointStore,
    PostgresCheckpointStore,
    ResumeToken,
)
from chef_change_feed.publishers import MqttPublisher, OutboxEventHandler, WebhookPublisher
from chef_change_feed.service import ServiceRuntime, build_checkpoint_store, build_publishers


def _settings(**overrides) -> Settings:
    values = dict(
        db_host="localhost",
        db_port=5432,
        db_name="chef",
        db_user="postgres",
        db_password="",
        db_schema="public",
        db_pool_min=1,
        db_pool_max=2,
        pg_replication_user="postgres",
        pg_replication_password="",
        pg_replication_host="localhost",
        pg_replication_port=5432,
        pg_replication_database="chef",
        pg_replication_sslmode="prefer",
        feed_id="chef",
        feed_slot="chef_change_feed",
        feed_poll_seconds=0.1,
        feed_ignore_tables=(),
        checkpoint_backend="memory",
        checkpoint_table="resume_tokens",
        resume_path=Path("resume.json"),
        resume_fsync=False,
        heartbeat_table="change_stream_heartbeats",
        heartbeat_seconds=3600.0,
    )
    values.update(overrides)
    return Settings(**values)


def _outbox_insert(position="0/1", identifier=1):
    return ChangeEvent(
        operation_type="insert",
        collection="events",
        namespace="public",
        position=ResumeToken(position),
        full_document={"id": identifier, "type": "recipe_version.created"},
    )


class FakeConnection:
    def __init__(self) -> None:
        self.calls = []

    def execute(self, query, params=None):
        self.calls.append(params)


class FakePool:
    def __init__(self) -> None:
        self.connection = FakeConnection()
        self.closed = False

    def getconn(self):
        return self.connection

    def putconn(self, conn, close=False):
        pass

    def closeall(self):
        self.closed = True


class ListCursor:
    def __init__(self, events) -> None:
        self._events = list(events)
        self.closed = False

    def __iter__(self):
        yield from self._events

    def close(self):
        self.closed = True


class StaticSource:
    def __init__(self, events=(), *, error=None, cursor=None) -> None:
        self._events = events
        self._error = error
        self._cursor = cursor

    def open(self, resume_token):
        if self._error is not None:
            raise self._error
        return self._cursor or ListCursor(self._events)


class RecordingPublisher:
    def __init__(self) -> None:
        self.messages = []
        self.connected = False
        self.closed = False

    def connect(self):
        self.connected = True

    def publish(self, message):
        self.messages.append(message)

    def close(self):
        self.closed = True


class SignallingCursor:
    """Delivers SIGTERM through the installed handler before yielding."""

    def __init__(self) -> None:
        self.seen_handler = None
        self.closed = False

    def __iter__(self):
        self.seen_handler = signal.getsignal(signal.SIGTERM)
        self.seen_handler(signal.SIGTERM, None)
        yield _outbox_insert()

    def close(self):
        self.closed = True


@pytest.mark.unit
def test_run_publishes_outbox_inserts_and_shuts_down_cleanly():
    pool = FakePool()
    publisher = RecordingPublisher()
    store = InMemoryCheckpointStore()
    runtime = ServiceRuntime(
        _settings(),
        pool=pool,
        source=StaticSource([_outbox_insert("0/5", 5)]),
        checkpoint_store=store,
        publishers=[publisher],
    )

    assert runtime.run() == 0

    assert [m.deduplication_id for m in publisher.messages] == ["5"]
    assert publisher.connected is True
    assert publisher.closed is True
    assert store.get("chef").token == ResumeToken("0/5")
    # processed_at stamped through the pool
    assert pool.connection.calls[0][1] == 5
    assert pool.closed is True
    handler_types = {type(h) for h in runtime.processor.handlers}
    assert {OutboxEventHandler, HeartbeatLogHandler} <= handler_types


@pytest.mark.unit
def test_run_returns_non_zero_after_fatal_error():
    pool = FakePool()
    publisher = RecordingPublisher()
    runtime = ServiceRuntime(
        _settings(),
        pool=pool,
        source=StaticSource(error=FeedError("replication slot is active")),
        checkpoint_store=InMemoryCheckpointStore(),
        publishers=[publisher],
    )

    assert runtime.run() == 1
    assert publisher.closed is True
    assert pool.closed is True


@pytest.mark.unit
def test_sigterm_stops_processor_gracefully():
    previous = signal.getsignal(signal.SIGTERM)
    cursor = SignallingCursor()
    store = InMemoryCheckpointStore()
    runtime = ServiceRuntime(
        _settings(),
        pool=FakePool(),
        source=StaticSource(cursor=cursor),
        checkpoint_store=store,
        publishers=[RecordingPublisher()],
    )

    assert runtime.run() == 0

    assert cursor.seen_handler == runtime._handle_signal
    assert store.get("chef") is None
    assert signal.getsignal(signal.SIGTERM) == previous


@pytest.mark.unit
def test_without_publishers_no_outbox_handler_is_registered(caplog):
    runtime = ServiceRuntime(
        _settings(),
        pool=FakePool(),
        source=StaticSource(),
        checkpoint_store=InMemoryCheckpointStore(),
        publishers=[],
    )
    assert runtime.processor.handlers == ()
    assert "no downstream publisher configured" in caplog.text


@pytest.mark.unit
def test_build_checkpoint_store_by_backend(tmp_path):
    pool = FakePool()
    assert isinstance(
        build_checkpoint_store(_settings(checkpoint_backend="memory"), pool),
        InMemoryCheckpointStore,
    )
    assert isinstance(
        build_checkpoint_store(
            _settings(checkpoint_backend="file", resume_path=tmp_path / "t.json"), pool
        ),
        FileCheckpointStore,
    )
    store = build_checkpoint_store(_settings(checkpoint_backend="postgres"), pool)
    assert isinstance(store, PostgresCheckpointStore)
    assert store.collection == "public.resume_tokens"


@pytest.mark.unit
def test_build_publishers_from_settings():
    assert build_publishers(_settings()) == []

    publishers = build_publishers(
        _settings(mqtt_host="broker.local", webhook_url="https://hooks.example/e")
    )
    try:
        assert [type(p) for p in publishers] == [MqttPublisher, WebhookPublisher]
    finally:
        publishers[1].close()


@pytest.mark.unit
def test_postgres_checkpoint_table_is_ignored_by_processor():
    runtime = ServiceRuntime(
        _settings(checkpoint_backend="postgres", feed_ignore_tables=("audit.logs",)),
        pool=FakePool(),
        source=StaticSource(),
        publishers=[],
    )
    assert runtime.processor.ignored_collections == (
        "audit.logs",
        "public.resume_tokens",
    )


@pytest.mark.unit
def test_main_exits_with_runtime_code(monkeypatch):
    class StubRuntime:
        def __init__(self, settings):
            self.settings = settings

        def run(self):
            return 1

    monkeypatch.setattr(service, "load_settings", lambda: _settings())
    monkeypatch.setattr(service, "ServiceRuntime", StubRuntime)

    with pytest.raises(SystemExit) as excinfo:
        service.main()
    assert excinfo.value.code == 1


@pytest.mark.unit
def test_main_exits_non_zero_when_initialisation_fails(monkeypatch):
    def broken_runtime(settings):
        raise RuntimeError("could not connect to server")

    monkeypatch.setattr(service, "load_settings", lambda: _settings())
    monkeypatch.setattr(service, "ServiceRuntime", broken_runtime)

    with pytest.raises(SystemExit) as excinfo:
        service.main()
    assert excinfo.value.code == 1


@pytest.mark.unit
def test_schema_qualified_state_tables_are_not_prefixed_again():
    runtime = ServiceRuntime(
        _settings(
            checkpoint_backend="postgres",
            checkpoint_table="feed_state.resume_tokens",
            heartbeat_table="feed_state.change_stream_heartbeats",
            db_schema="app",
        ),
        pool=FakePool(),
        source=StaticSource(),
        publishers=[],
    )

    assert runtime.checkpoint_store.collection == "feed_state.resume_tokens"
    assert runtime.heartbeat.collection == "feed_state.change_stream_heartbeats"
    assert runtime.processor.ignored_collections == ("feed_state.resume_tokens",)
    unqualified = build_checkpoint_store(
        _settings(checkpoint_backend="postgres", db_schema="app"), FakePool()
    )
    assert unqualified.collection == "app.resume_tokens"
