"""Resumable change-feed processor.

The processor tails a change feed, hands every change to the registered
handlers in order and persists the change's resume token once all of them
have been attempted. Exactly one change is in flight at a time, so the
checkpoint for change N is always written before change N+1 is read.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Iterable, Iterator, Optional, Tuple

from .checkpoint import CheckpointStore
from .errors import (
    ChangeFeedError,
    CheckpointWriteError,
    FeedError,
    ProcessorStateError,
    StorageError,
)
from .handlers import HandlerRegistry
from .heartbeat import HeartbeatEmitter, HeartbeatLogHandler
from .metrics import ChangeFeedMetrics
from .source import ChangeCursor, ChangeFeedSource
from .types import ChangeEvent, ChangeHandler

logger = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERRORED = "errored"


class ChangeFeedProcessor:
    """Single-consumer change-feed processor with durable checkpoints."""

    def __init__(
        self,
        *,
        feed_id: str,
        source: ChangeFeedSource,
        checkpoint_store: CheckpointStore,
        heartbeat: Optional[HeartbeatEmitter] = None,
        heartbeat_collection: Optional[str] = None,
        heartbeat_interval: float = 60.0,
        ignore_collections: Iterable[str] = (),
        registry: Optional[HandlerRegistry] = None,
        metrics: Optional[ChangeFeedMetrics] = None,
    ) -> None:
        if not feed_id:
            raise ValueError("feed_id must be provided")
        if heartbeat is not None and heartbeat_interval <= 0:
            raise ValueError("heartbeat_interval must be positive")
        self._feed_id = feed_id
        self._source = source
        self._checkpoint_store = checkpoint_store
        self._heartbeat = heartbeat
        self._heartbeat_interval = heartbeat_interval
        if heartbeat_collection is None and heartbeat is not None:
            heartbeat_collection = heartbeat.collection
        self._heartbeat_collection = heartbeat_collection
        ignored = [name for name in ignore_collections if name]
        if checkpoint_store.collection:
            ignored.append(checkpoint_store.collection)
        self._ignored: Tuple[str, ...] = tuple(dict.fromkeys(ignored))
        self._registry = registry or HandlerRegistry()
        self._metrics = metrics or ChangeFeedMetrics()

        self._lock = threading.RLock()
        self._state = ProcessorState.STOPPED
        self._stop_event = threading.Event()
        self._loop_done = threading.Event()
        self._loop_done.set()
        self._loop_thread_id: Optional[int] = None
        self._cursor: Optional[ChangeCursor] = None
        self._iterator: Optional[Iterator[ChangeEvent]] = None
        self._heartbeat_handler_registered = False
        self._metrics.set_state(self._state.value)

    # ------------------------------------------------------------------ Properties
    @property
    def feed_id(self) -> str:
        return self._feed_id

    @property
    def state(self) -> ProcessorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ProcessorState.RUNNING

    @property
    def metrics(self) -> ChangeFeedMetrics:
        return self._metrics

    @property
    def ignored_collections(self) -> Tuple[str, ...]:
        return self._ignored

    @property
    def handlers(self) -> Tuple[ChangeHandler, ...]:
        return self._registry.handlers

    # ------------------------------------------------------------------ Lifecycle
    def register_handler(self, handler: ChangeHandler) -> None:
        with self._lock:
            if self._state is not ProcessorState.STOPPED:
                raise ProcessorStateError(
                    f"handlers must be registered before start (state={self._state.value})"
                )
            self._registry.register(handler)

    def start(self) -> None:
        with self._lock:
            if self._state is not ProcessorState.STOPPED:
                logger.warning(
                    "change feed %s is already %s", self._feed_id, self._state.value
                )
                return
            self._stop_event.clear()
            self._set_state(ProcessorState.STARTING)

        try:
            position = self._checkpoint_store.get(self._feed_id)
            token = position.token if position is not None else None
            if token is None:
                logger.info(
                    "no resume position for %s; starting at the live tail",
                    self._feed_id,
                )
            else:
                logger.info("resuming %s from token %s", self._feed_id, token)
            cursor = self._source.open(token)
        except ChangeFeedError as exc:
            self._fail(exc)
            raise
        except Exception as exc:  # noqa: BLE001 - surfaced as a feed failure
            self._fail(exc)
            raise FeedError(f"failed to open change feed for {self._feed_id}") from exc

        with self._lock:
            self._cursor = cursor
            stop_requested = self._stop_event.is_set()
        if stop_requested:
            self._finish_stop()
            return
        if self._heartbeat is not None:
            self._heartbeat.start(self._feed_id, self._heartbeat_interval)
        if self._heartbeat_collection and not self._heartbeat_handler_registered:
            self._registry.register(
                HeartbeatLogHandler(self._heartbeat_collection, self._feed_id)
            )
            self._heartbeat_handler_registered = True

        with self._lock:
            if self._stop_event.is_set():
                stop_requested = True
            else:
                stop_requested = False
                self._set_state(ProcessorState.RUNNING)
        if stop_requested:
            self._finish_stop()
            return
        logger.info("started change feed for %s", self._feed_id)

    def run(self) -> None:
        """Consume changes until stopped; raises on checkpoint or feed failures."""
        with self._lock:
            if self._stop_event.is_set() and self._state in (
                ProcessorState.STOPPING,
                ProcessorState.STOPPED,
            ):
                logger.info(
                    "change feed %s stopped before consumption began", self._feed_id
                )
                return
            if self._state is not ProcessorState.RUNNING or self._cursor is None:
                raise ProcessorStateError(
                    f"cannot run change feed in state {self._state.value}"
                )
            self._iterator = iter(self._cursor)
            iterator = self._iterator
            self._loop_thread_id = threading.get_ident()
            self._loop_done.clear()

        try:
            try:
                for event in iterator:
                    if self._stop_event.is_set():
                        break
                    self._process(event)
                    if self._stop_event.is_set():
                        break
                else:
                    if not self._stop_event.is_set():
                        logger.warning("change feed for %s ended", self._feed_id)
            except ChangeFeedError as exc:
                self._fail(exc)
                raise
            except Exception as exc:  # noqa: BLE001 - cursor failures end the loop
                if not self._stop_event.is_set():
                    self._fail(exc)
                    raise FeedError(
                        f"change feed for {self._feed_id} failed"
                    ) from exc
                logger.debug("feed cursor raised during shutdown", exc_info=True)

            with self._lock:
                if self._state is ProcessorState.RUNNING:
                    self._set_state(ProcessorState.STOPPING)
            self._finish_stop()
        finally:
            self._loop_exit()

    def run_forever(self) -> None:
        self.start()
        if self.is_running:
            self.run()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop consuming; idempotent and safe to call from any thread."""
        with self._lock:
            if self._state in (
                ProcessorState.STOPPED,
                ProcessorState.ERRORED,
                ProcessorState.STOPPING,
            ):
                return
            starting = self._state is ProcessorState.STARTING
            self._set_state(ProcessorState.STOPPING)
            self._stop_event.set()
            if starting:
                # start() still owns the cursor and heartbeat and releases them
                return
            cursor = self._cursor
            on_loop_thread = self._loop_thread_id == threading.get_ident()
            loop_active = not self._loop_done.is_set()

        if cursor is not None:
            cursor.close()
        if self._heartbeat is not None:
            self._heartbeat.stop()
        if on_loop_thread:
            return
        if loop_active:
            if not self._loop_done.wait(timeout):
                logger.warning(
                    "change feed loop for %s did not exit within %.1fs",
                    self._feed_id,
                    timeout,
                )
            return
        self._finish_stop()

    # ------------------------------------------------------------------ Processing
    def _process(self, event: ChangeEvent) -> None:
        self._metrics.inc("events_received")
        if self._is_ignored(event):
            logger.debug("skipping change for collection %s", event.qualified_name)
            self._metrics.inc("events_skipped")
            return

        logger.debug(
            "received %s change on %s for %s",
            event.operation_type,
            event.qualified_name,
            self._feed_id,
        )
        result = self._registry.dispatch_all(
            event, should_continue=lambda: not self._stop_event.is_set()
        )
        self._metrics.inc("handler_errors", len(result.failures))
        if not result.completed:
            logger.info(
                "stop requested mid-dispatch; %s change at %s will be replayed",
                event.operation_type,
                event.position,
            )
            return
        self._metrics.inc("events_dispatched")

        try:
            self._checkpoint_store.set(self._feed_id, event.position)
        except CheckpointWriteError:
            raise
        except Exception as exc:  # noqa: BLE001 - any store failure is fatal here
            raise CheckpointWriteError(
                f"failed to persist resume position for {self._feed_id}"
            ) from exc
        self._metrics.inc("checkpoints_written")
        logger.info(
            "processed %s change on %s for %s",
            event.operation_type,
            event.qualified_name,
            self._feed_id,
        )

    def _is_ignored(self, event: ChangeEvent) -> bool:
        return any(event.in_collection(name) for name in self._ignored)

    # ------------------------------------------------------------------ Internal helpers
    def _set_state(self, state: ProcessorState) -> None:
        self._state = state
        self._metrics.set_state(state.value)

    def _loop_exit(self) -> None:
        with self._lock:
            self._loop_thread_id = None
        self._loop_done.set()

    def _release(self) -> None:
        with self._lock:
            iterator, cursor = self._iterator, self._cursor
            self._iterator = None
            self._cursor = None
        if self._heartbeat is not None:
            self._heartbeat.stop()
        close_iterator = getattr(iterator, "close", None)
        if callable(close_iterator):
            try:
                close_iterator()
            except Exception:  # noqa: BLE001 - best effort
                logger.debug("feed iterator close failed", exc_info=True)
        if cursor is not None:
            try:
                cursor.close()
            except Exception:  # noqa: BLE001 - best effort
                logger.warning("failed to close feed cursor", exc_info=True)

    def _finish_stop(self) -> None:
        self._release()
        with self._lock:
            self._set_state(ProcessorState.STOPPED)
        logger.info("change feed stopped for %s", self._feed_id)

    def _fail(self, exc: BaseException) -> None:
        self._release()
        with self._lock:
            self._set_state(ProcessorState.ERRORED)
        if isinstance(exc, StorageError):
            logger.error("checkpoint store failure for %s: %s", self._feed_id, exc)
        else:
            logger.error("change feed failure for %s: %s", self._feed_id, exc)


__all__ = ["ChangeFeedProcessor", "ProcessorState"]
