"""Prometheus counters for the change-feed processor."""

from __future__ import annotations

from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge

_COUNTERS = {
    "events_received": "Changes read from the feed",
    "events_skipped": "Changes dropped by the self-noise filter",
    "events_dispatched": "Changes dispatched to every registered handler",
    "handler_errors": "Handler invocations that raised",
    "checkpoints_written": "Resume positions persisted",
    "heartbeats_written": "Heartbeat records upserted",
    "heartbeat_errors": "Heartbeat writes that failed",
}

STATE_CODES = {
    "stopped": 0,
    "starting": 1,
    "running": 2,
    "stopping": 3,
    "errored": 4,
}


class ChangeFeedMetrics:
    """Wraps Prometheus counters in a private registry so instances never clash."""

    def __init__(
        self,
        namespace: str = "chef_change_feed",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self._namespace = namespace
        self.registry = registry or CollectorRegistry()
        self._counters: Dict[str, Counter] = {
            name: Counter(
                f"{namespace}_{name}", documentation, registry=self.registry
            )
            for name, documentation in _COUNTERS.items()
        }
        self._state = Gauge(
            f"{namespace}_state",
            "Processor state (0=stopped 1=starting 2=running 3=stopping 4=errored)",
            registry=self.registry,
        )

    def inc(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._counters[name].inc(amount)

    def set_state(self, state: str) -> None:
        self._state.set(STATE_CODES.get(state, -1))

    def snapshot(self) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for name in _COUNTERS:
            sample = self.registry.get_sample_value(
                f"{self._namespace}_{name}_total"
            )
            values[f"{name}_total"] = sample or 0.0
        values["state"] = (
            self.registry.get_sample_value(f"{self._namespace}_state") or 0.0
        )
        return values


__all__ = ["ChangeFeedMetrics", "STATE_CODES"]
