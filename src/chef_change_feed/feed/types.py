"""Value objects shared by the change-feed components."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional, Protocol


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResumeToken:
    """Opaque feed-native position marker.

    Only the feed source that produced a token may interpret ``value``;
    everything else stores and forwards it untouched.
    """

    value: str

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class ResumePosition:
    """Last successfully processed position of a feed."""

    feed_id: str
    token: ResumeToken
    updated_at: datetime


@dataclass(frozen=True)
class HeartbeatRecord:
    """Synthetic record rewritten on a fixed interval to keep the feed active."""

    feed_id: str
    heartbeat_at: datetime


@dataclass(frozen=True)
class ChangeEvent:
    """Single change read from the feed."""

    operation_type: str  # insert, update, delete, truncate
    collection: str
    position: ResumeToken
    namespace: Optional[str] = None
    full_document: Optional[Mapping[str, Any]] = None
    document_key: Optional[Mapping[str, Any]] = None
    commit_timestamp: Optional[float] = None

    @property
    def qualified_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}.{self.collection}"
        return self.collection

    def in_collection(self, name: str) -> bool:
        """Return True when ``name`` (``table`` or ``schema.table``) refers to this change's table."""
        schema, _, table = name.rpartition(".")
        if table != self.collection:
            return False
        if not schema or self.namespace is None:
            return True
        return schema == self.namespace


class ChangeHandler(Protocol):
    """Callback invoked with every dispatched change."""

    def __call__(self, event: ChangeEvent) -> object: ...


Clock = Callable[[], datetime]


@dataclass(frozen=True)
class HandlerOutcome:
    """Result of invoking a single handler for one event."""

    name: str
    ok: bool
    error: Optional[BaseException] = None


@dataclass(frozen=True)
class DispatchResult:
    """Ordered per-handler outcomes for one event."""

    outcomes: tuple = field(default_factory=tuple)
    completed: bool = True

    @property
    def failures(self) -> tuple:
        return tuple(outcome for outcome in self.outcomes if not outcome.ok)


__all__ = [
    "ChangeEvent",
    "ChangeHandler",
    "Clock",
    "DispatchResult",
    "HandlerOutcome",
    "HeartbeatRecord",
    "ResumePosition",
    "ResumeToken",
    "utc_now",
]
