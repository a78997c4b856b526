"""Resumable change-feed processing: checkpoints, heartbeats, and dispatch."""

from .checkpoint import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    PostgresCheckpointStore,
)
from .errors import (
    ChangeFeedError,
    CheckpointWriteError,
    FeedError,
    ProcessorStateError,
    StorageError,
)
from .handlers import HandlerRegistry
from .heartbeat import (
    HeartbeatEmitter,
    HeartbeatLogHandler,
    HeartbeatWriter,
    PostgresHeartbeatWriter,
)
from .metrics import ChangeFeedMetrics
from .processor import ChangeFeedProcessor, ProcessorState
from .source import (
    ChangeCursor,
    ChangeFeedSource,
    PostgresChangeFeedSource,
    Wal2JsonDecoder,
    int_to_lsn,
    lsn_to_int,
)
from .types import (
    ChangeEvent,
    ChangeHandler,
    DispatchResult,
    HandlerOutcome,
    HeartbeatRecord,
    ResumePosition,
    ResumeToken,
)

__all__ = [
    "ChangeCursor",
    "ChangeEvent",
    "ChangeFeedError",
    "ChangeFeedMetrics",
    "ChangeFeedProcessor",
    "ChangeFeedSource",
    "ChangeHandler",
    "CheckpointStore",
    "CheckpointWriteError",
    "DispatchResult",
    "FeedError",
    "FileCheckpointStore",
    "HandlerOutcome",
    "HandlerRegistry",
    "HeartbeatEmitter",
    "HeartbeatLogHandler",
    "HeartbeatRecord",
    "HeartbeatWriter",
    "InMemoryCheckpointStore",
    "PostgresChangeFeedSource",
    "PostgresCheckpointStore",
    "PostgresHeartbeatWriter",
    "ProcessorState",
    "ProcessorStateError",
    "ResumePosition",
    "ResumeToken",
    "StorageError",
    "Wal2JsonDecoder",
    "int_to_lsn",
    "lsn_to_int",
]
