from __future__ import annotations

import os
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Dict, Iterator, List

import pytest

from chef_change_feed.config import Settings, load_settings
from chef_change_feed.db import (
    Error,
    OperationalError,
    connect,
    create_pool,
    errors,
    sql,
)
from chef_change_feed.feed import (
    ChangeEvent,
    ChangeFeedProcessor,
    PostgresChangeFeedSource,
    PostgresCheckpointStore,
    ProcessorState,
)
from chef_change_feed.migrations.runner import apply_migrations

pytestmark = pytest.mark.integration


@dataclass
class _FeedEnv:
    settings: Settings
    conn_params: Dict[str, object]
    slot_name: str


@pytest.fixture()
def feed_environment() -> Iterator[_FeedEnv]:
    host = os.getenv("PGHOST", "localhost")
    port = int(os.getenv("PGPORT", "5432"))
    admin_user = os.getenv("PGUSER")
    admin_password = os.getenv("PGPASSWORD")
    if not admin_user or admin_password is None:
        pytest.skip("PGUSER and PGPASSWORD must be configured for the feed integration test")

    base_conn_kwargs = {
        "host": host,
        "port": port,
        "user": admin_user,
        "password": admin_password,
    }
    db_name = f"chef_feed_{uuid.uuid4().hex[:8]}"
    slot_name = f"chef_slot_{uuid.uuid4().hex[:8]}"

    try:
        admin_conn = connect(dbname="postgres", **base_conn_kwargs)
    except OperationalError as exc:  # pragma: no cover - depends on env
        pytest.skip(f"Postgres unavailable: {exc}")
    try:
        admin_conn.execute(
            sql.SQL("CREATE DATABASE {} OWNER {}").format(
                sql.Identifier(db_name), sql.Identifier(admin_user)
            )
        )
    finally:
        admin_conn.close()

    conn_params = {**base_conn_kwargs, "dbname": db_name}
    try:
        with connect(**conn_params) as conn:
            apply_migrations(conn=conn)
            conn.execute(
                """
                CREATE TABLE events (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    key TEXT,
                    processed_at TIMESTAMPTZ
                )
                """
            )
        probe_slot = f"{slot_name}_probe"
        with connect(**conn_params) as probe:
            try:
                probe.execute(
                    "SELECT pg_create_logical_replication_slot(%s, 'wal2json')",
                    (probe_slot,),
                )
                probe.execute("SELECT pg_drop_replication_slot(%s)", (probe_slot,))
            except errors.UndefinedFile:
                pytest.skip("wal2json output plugin is not installed")
            except Error as exc:
                pytest.skip(f"unable to create wal2json replication slot: {exc}")

        settings = replace(
            load_settings(),
            db_host=host,
            db_port=port,
            db_name=db_name,
            db_user=admin_user,
            db_password=admin_password,
            db_schema="public",
            pg_replication_host=host,
            pg_replication_port=port,
            pg_replication_database=db_name,
            pg_replication_user=admin_user,
            pg_replication_password=admin_password,
            feed_id=db_name,
            feed_slot=slot_name,
            feed_poll_seconds=0.1,
        )
        yield _FeedEnv(settings=settings, conn_params=conn_params, slot_name=slot_name)
    finally:
        with connect(**conn_params) as conn:
            try:
                conn.execute(
                    "SELECT pg_drop_replication_slot(slot_name) FROM pg_replication_slots "
                    "WHERE slot_name = %s",
                    (slot_name,),
                )
            except Error:
                pass
        with connect(dbname="postgres", **base_conn_kwargs) as cleanup:
            cleanup.execute(
                "SELECT pg_terminate_backend(pid) FROM pg_stat_activity WHERE datname = %s",
                (db_name,),
            )
            cleanup.execute(
                sql.SQL("DROP DATABASE IF EXISTS {}").format(sql.Identifier(db_name))
            )


def _wait_for(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return False


def _processor(env: _FeedEnv, pool, seen: List[ChangeEvent]) -> ChangeFeedProcessor:
    processor = ChangeFeedProcessor(
        feed_id=env.settings.feed_id,
        source=PostgresChangeFeedSource(
            env.settings.replication_dsn,
            env.settings.feed_slot,
            poll_seconds=env.settings.feed_poll_seconds,
        ),
        checkpoint_store=PostgresCheckpointStore(pool, schema="public"),
    )
    processor.register_handler(seen.append)
    return processor


def test_processor_checkpoints_changes_and_resumes(feed_environment):
    env = feed_environment
    pool = create_pool(env.settings)
    store = PostgresCheckpointStore(pool, schema="public")
    seen: List[ChangeEvent] = []
    try:
        processor = _processor(env, pool, seen)
        processor.start()
        worker = threading.Thread(target=processor.run, daemon=True)
        worker.start()

        with connect(**env.conn_params) as conn:
            conn.execute(
                "INSERT INTO events (id, type, key) VALUES (%s, %s, %s)",
                ("evt-1", "recipe_version.created", "user-1"),
            )

        assert _wait_for(lambda: any(e.collection == "events" for e in seen))
        assert _wait_for(lambda: store.get(env.settings.feed_id) is not None)
        first = store.get(env.settings.feed_id)
        processor.stop()
        worker.join(5)
        assert processor.state is ProcessorState.STOPPED

        insert = next(e for e in seen if e.collection == "events")
        assert insert.operation_type == "insert"
        assert insert.full_document["id"] == "evt-1"
        assert all(e.collection != "resume_tokens" for e in seen)

        resumed: List[ChangeEvent] = []
        restarted = _processor(env, pool, resumed)
        restarted.start()
        worker = threading.Thread(target=restarted.run, daemon=True)
        worker.start()
        with connect(**env.conn_params) as conn:
            conn.execute(
                "INSERT INTO events (id, type) VALUES (%s, %s)",
                ("evt-2", "subscription.renewal"),
            )
        assert _wait_for(
            lambda: any(
                e.collection == "events" and e.full_document["id"] == "evt-2"
                for e in resumed
            )
        )
        restarted.stop()
        worker.join(5)
        latest = store.get(env.settings.feed_id)
        assert latest.token != first.token
    finally:
        pool.closeall()
