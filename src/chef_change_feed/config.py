"""Runtime configuration helpers for the change-feed service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

CHECKPOINT_BACKENDS = ("postgres", "file", "memory")


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_schema: str
    db_pool_min: int
    db_pool_max: int
    pg_replication_user: str
    pg_replication_password: str
    pg_replication_host: str
    pg_replication_port: int
    pg_replication_database: str
    pg_replication_sslmode: str
    feed_id: str
    feed_slot: str
    feed_poll_seconds: float
    feed_ignore_tables: Tuple[str, ...]
    checkpoint_backend: str
    checkpoint_table: str
    resume_path: Path
    resume_fsync: bool
    heartbeat_table: str
    heartbeat_seconds: float
    outbox_table: str = "events"
    outbox_mark_processed: bool = True
    mqtt_host: str = ""
    mqtt_port: int = 1883
    mqtt_username: str = ""
    mqtt_password: str = ""
    mqtt_client_id: str = "chef-change-feed"
    mqtt_topic_prefix: str = "chef/events"
    mqtt_tls: bool = False
    mqtt_tls_insecure: bool = False
    mqtt_publish_timeout_seconds: float = 10.0
    webhook_url: str = ""
    webhook_token: str = ""
    webhook_timeout_seconds: float = 10.0
    webhook_retry_attempts: int = 3
    webhook_retry_base_delay_seconds: float = 0.2
    webhook_retry_max_delay_seconds: float = 5.0
    log_level: str = "INFO"
    metrics_port: int = 0

    @property
    def replication_dsn(self) -> str:
        """libpq conninfo string for the replication connection."""
        return (
            f"host={self.pg_replication_host} "
            f"port={self.pg_replication_port} "
            f"dbname={self.pg_replication_database} "
            f"user={self.pg_replication_user} "
            f"password={self.pg_replication_password} "
            f"sslmode={self.pg_replication_sslmode}"
        )


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_checkpoint_backend(value: Optional[str]) -> str:
    if value is None:
        return "postgres"
    normalized = value.strip().lower()
    if normalized in CHECKPOINT_BACKENDS:
        return normalized
    return "postgres"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    db_host = os.getenv("PGHOST", "localhost")
    db_port = int(os.getenv("PGPORT", "5432"))
    db_name = os.getenv("PGDATABASE", "chef")
    db_user = os.getenv("PGUSER", "postgres")
    db_password = os.getenv("PGPASSWORD", "")
    db_schema = os.getenv("PGSCHEMA", "public").strip() or "public"
    db_pool_min = int(os.getenv("DB_POOL_MIN", "1"))
    db_pool_max = int(os.getenv("DB_POOL_MAX", "4"))

    pg_replication_user = os.getenv("PGREPLUSER", db_user)
    pg_replication_password = os.getenv("PGREPLPASSWORD", db_password)
    pg_replication_host = os.getenv("PGREPLHOST", db_host)
    pg_replication_port = int(os.getenv("PGREPLPORT", str(db_port)))
    pg_replication_database = os.getenv("PGREPLDATABASE", db_name)
    pg_replication_sslmode = os.getenv(
        "PGREPLSSLMODE", os.getenv("PGSSLMODE", "prefer")
    )

    feed_id = os.getenv("CHANGE_FEED_ID", "").strip() or pg_replication_database
    feed_slot = os.getenv("CHANGE_FEED_SLOT", "chef_change_feed")
    feed_poll_seconds = float(os.getenv("CHANGE_FEED_POLL_SECONDS", "0.5"))
    feed_ignore_tables = _split_csv(os.getenv("CHANGE_FEED_IGNORE_TABLES"))
    checkpoint_backend = _coerce_checkpoint_backend(
        os.getenv("CHANGE_FEED_CHECKPOINT_BACKEND")
    )
    # Table names may be schema-qualified; 001_change_feed_state only creates the defaults.
    checkpoint_table = os.getenv("CHANGE_FEED_CHECKPOINT_TABLE", "resume_tokens")
    resume_path = Path(
        os.getenv("CHANGE_FEED_RESUME_PATH", "change_feed_resume_tokens.json")
    )
    resume_fsync = _as_bool(os.getenv("CHANGE_FEED_RESUME_FSYNC"), False)
    heartbeat_table = os.getenv(
        "CHANGE_FEED_HEARTBEAT_TABLE", "change_stream_heartbeats"
    )
    heartbeat_seconds = float(os.getenv("CHANGE_FEED_HEARTBEAT_SECONDS", "60"))

    outbox_table = os.getenv("OUTBOX_TABLE", "events").strip() or "events"
    outbox_mark_processed = _as_bool(os.getenv("OUTBOX_MARK_PROCESSED"), True)

    mqtt_host = os.getenv("MQTT_HOST", "").strip()
    mqtt_port = int(os.getenv("MQTT_PORT", "1883"))
    mqtt_username = os.getenv("MQTT_USER", "")
    mqtt_password = os.getenv("MQTT_PASSWORD", "")
    mqtt_client_id = os.getenv("MQTT_CLIENT_ID", "chef-change-feed")
    mqtt_topic_prefix = os.getenv("MQTT_TOPIC_PREFIX", "chef/events")
    mqtt_tls = _as_bool(os.getenv("MQTT_TLS"), False)
    mqtt_tls_insecure = _as_bool(os.getenv("MQTT_TLS_INSECURE"), False)
    mqtt_publish_timeout_seconds = float(
        os.getenv("MQTT_PUBLISH_TIMEOUT_SECONDS", "10.0")
    )

    webhook_url = os.getenv("WEBHOOK_URL", "").strip()
    webhook_token = os.getenv("WEBHOOK_TOKEN", "").strip()
    webhook_timeout_seconds = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10.0"))
    webhook_retry_attempts = int(os.getenv("WEBHOOK_RETRY_ATTEMPTS", "3"))
    webhook_retry_base_delay_seconds = float(
        os.getenv("WEBHOOK_RETRY_BASE_DELAY_SECONDS", "0.2")
    )
    webhook_retry_max_delay_seconds = float(
        os.getenv("WEBHOOK_RETRY_MAX_DELAY_SECONDS", "5.0")
    )

    log_level = os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO"
    metrics_port = int(os.getenv("METRICS_PORT", "0"))

    return Settings(
        db_host=db_host,
        db_port=db_port,
        db_name=db_name,
        db_user=db_user,
        db_password=db_password,
        db_schema=db_schema,
        db_pool_min=db_pool_min,
        db_pool_max=db_pool_max,
        pg_replication_user=pg_replication_user,
        pg_replication_password=pg_replication_password,
        pg_replication_host=pg_replication_host,
        pg_replication_port=pg_replication_port,
        pg_replication_database=pg_replication_database,
        pg_replication_sslmode=pg_replication_sslmode,
        feed_id=feed_id,
        feed_slot=feed_slot,
        feed_poll_seconds=feed_poll_seconds,
        feed_ignore_tables=feed_ignore_tables,
        checkpoint_backend=checkpoint_backend,
        checkpoint_table=checkpoint_table,
        resume_path=resume_path,
        resume_fsync=resume_fsync,
        heartbeat_table=heartbeat_table,
        heartbeat_seconds=heartbeat_seconds,
        outbox_table=outbox_table,
        outbox_mark_processed=outbox_mark_processed,
        mqtt_host=mqtt_host,
        mqtt_port=mqtt_port,
        mqtt_username=mqtt_username,
        mqtt_password=mqtt_password,
        mqtt_client_id=mqtt_client_id,
        mqtt_topic_prefix=mqtt_topic_prefix,
        mqtt_tls=mqtt_tls,
        mqtt_tls_insecure=mqtt_tls_insecure,
        mqtt_publish_timeout_seconds=mqtt_publish_timeout_seconds,
        webhook_url=webhook_url,
        webhook_token=webhook_token,
        webhook_timeout_seconds=webhook_timeout_seconds,
        webhook_retry_attempts=webhook_retry_attempts,
        webhook_retry_base_delay_seconds=webhook_retry_base_delay_seconds,
        webhook_retry_max_delay_seconds=webhook_retry_max_delay_seconds,
        log_level=log_level,
        metrics_port=metrics_port,
    )


__all__ = ["CHECKPOINT_BACKENDS", "Settings", "load_settings"]
