"""Process runtime wiring the change-feed processor to Postgres and publishers."""

from __future__ import annotations

import logging
import signal
import sys
import threading
from typing import Dict, List, Optional, Sequence

from prometheus_client import start_http_server

from .config import Settings, load_settings
from .db import Error, create_pool
from .feed import (
    ChangeFeedMetrics,
    ChangeFeedProcessor,
    ChangeFeedSource,
    CheckpointStore,
    FileCheckpointStore,
    HeartbeatEmitter,
    InMemoryCheckpointStore,
    PostgresChangeFeedSource,
    PostgresCheckpointStore,
    PostgresHeartbeatWriter,
)
from .publishers import (
    MarkProcessedHandler,
    MqttPublisher,
    OutboxEventHandler,
    Publisher,
    WebhookPublisher,
)

logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _schema_for(settings: Settings, table: str) -> Optional[str]:
    """Schema to prefix onto ``table``; None when it is already qualified."""
    return None if "." in table else settings.db_schema


def build_checkpoint_store(settings: Settings, pool) -> CheckpointStore:
    """Return the checkpoint store selected by ``settings.checkpoint_backend``."""
    backend = settings.checkpoint_backend
    if backend == "memory":
        logger.warning(
            "using in-memory checkpoints; the feed restarts from the live tail after a restart"
        )
        return InMemoryCheckpointStore()
    if backend == "file":
        return FileCheckpointStore(settings.resume_path, fsync=settings.resume_fsync)
    return PostgresCheckpointStore(
        pool,
        table=settings.checkpoint_table,
        schema=_schema_for(settings, settings.checkpoint_table),
    )


def build_publishers(settings: Settings) -> List[Publisher]:
    publishers: List[Publisher] = []
    if settings.mqtt_host:
        publishers.append(
            MqttPublisher(
                host=settings.mqtt_host,
                port=settings.mqtt_port,
                topic_prefix=settings.mqtt_topic_prefix,
                client_id=settings.mqtt_client_id,
                username=settings.mqtt_username,
                password=settings.mqtt_password,
                tls=settings.mqtt_tls,
                tls_insecure=settings.mqtt_tls_insecure,
                publish_timeout_seconds=settings.mqtt_publish_timeout_seconds,
            )
        )
    if settings.webhook_url:
        publishers.append(
            WebhookPublisher(
                settings.webhook_url,
                token=settings.webhook_token,
                timeout_seconds=settings.webhook_timeout_seconds,
                retry_attempts=settings.webhook_retry_attempts,
                retry_base_delay_seconds=settings.webhook_retry_base_delay_seconds,
                retry_max_delay_seconds=settings.webhook_retry_max_delay_seconds,
            )
        )
    return publishers


class ServiceRuntime:
    """Builds the processor from settings and owns the process lifecycle.

    Collaborators may be injected; anything not supplied is built from
    ``settings``. The database pool is closed when :meth:`run` returns.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        pool=None,
        source: Optional[ChangeFeedSource] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        publishers: Optional[Sequence[Publisher]] = None,
        metrics: Optional[ChangeFeedMetrics] = None,
    ) -> None:
        self.settings = settings
        self.metrics = metrics or ChangeFeedMetrics()
        self.pool = pool if pool is not None else create_pool(settings)
        self.checkpoint_store = checkpoint_store or build_checkpoint_store(
            settings, self.pool
        )
        self.heartbeat = HeartbeatEmitter(
            PostgresHeartbeatWriter(
                self.pool,
                table=settings.heartbeat_table,
                schema=_schema_for(settings, settings.heartbeat_table),
            ),
            metrics=self.metrics,
        )
        self.source = source or PostgresChangeFeedSource(
            settings.replication_dsn,
            settings.feed_slot,
            poll_seconds=settings.feed_poll_seconds,
        )
        self.publishers: List[Publisher] = (
            list(publishers) if publishers is not None else build_publishers(settings)
        )
        self.processor = ChangeFeedProcessor(
            feed_id=settings.feed_id,
            source=self.source,
            checkpoint_store=self.checkpoint_store,
            heartbeat=self.heartbeat,
            heartbeat_interval=settings.heartbeat_seconds,
            ignore_collections=settings.feed_ignore_tables,
            metrics=self.metrics,
        )
        self._register_handlers()

    def _register_handlers(self) -> None:
        if not self.publishers:
            logger.warning(
                "no downstream publisher configured (set MQTT_HOST or WEBHOOK_URL); "
                "outbox events on %s will not be published",
                self.settings.outbox_table,
            )
            return
        mark_processed = None
        if self.settings.outbox_mark_processed:
            mark_processed = MarkProcessedHandler(
                self.pool,
                table=self.settings.outbox_table,
                schema=_schema_for(self.settings, self.settings.outbox_table),
            )
        self.processor.register_handler(
            OutboxEventHandler(
                self.publishers,
                collection=self.settings.outbox_table,
                on_published=mark_processed,
            )
        )

    def run(self) -> int:
        """Run until stopped; return the process exit code."""
        previous = self._install_signal_handlers()
        exit_code = 0
        try:
            self._connect_publishers()
            self._start_metrics_server()
            logger.info("starting change feed %s", self.settings.feed_id)
            self.processor.run_forever()
        except Exception:  # noqa: BLE001 - reported through the exit code
            logger.exception(
                "change feed %s stopped after a fatal error", self.settings.feed_id
            )
            exit_code = 1
        finally:
            self.processor.stop()
            self._close_publishers()
            self._restore_signal_handlers(previous)
            self._close_pool()
        if exit_code == 0:
            logger.info("change feed %s stopped", self.settings.feed_id)
        return exit_code

    def stop(self) -> None:
        self.processor.stop()

    def _handle_signal(self, signum, frame) -> None:
        logger.info(
            "received %s, shutting down gracefully", signal.Signals(signum).name
        )
        self.processor.stop()

    def _install_signal_handlers(self) -> Dict[int, object]:
        if threading.current_thread() is not threading.main_thread():
            logger.debug("not on the main thread; signal handlers not installed")
            return {}
        previous: Dict[int, object] = {}
        for signum in _SHUTDOWN_SIGNALS:
            previous[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, object]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    def _connect_publishers(self) -> None:
        for publisher in self.publishers:
            connect = getattr(publisher, "connect", None)
            if callable(connect):
                connect()

    def _start_metrics_server(self) -> None:
        port = self.settings.metrics_port
        if port <= 0:
            return
        start_http_server(port, registry=self.metrics.registry)
        logger.info("metrics exposed on port %d", port)

    def _close_publishers(self) -> None:
        for publisher in self.publishers:
            close = getattr(publisher, "close", None)
            if not callable(close):
                continue
            try:
                close()
            except Exception:  # noqa: BLE001 - best effort
                logger.exception("failed to close publisher %s cleanly", publisher)

    def _close_pool(self) -> None:
        try:
            self.pool.closeall()
        except Error as exc:
            logger.warning("failed to close database pool: %s", exc)


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    try:
        runtime = ServiceRuntime(settings)
    except Exception:  # noqa: BLE001
        logger.exception("failed to initialise change feed %s", settings.feed_id)
        sys.exit(1)
    sys.exit(runtime.run())


__all__ = ["ServiceRuntime", "build_checkpoint_store", "build_publishers", "main"]
