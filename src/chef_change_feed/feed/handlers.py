"""Ordered handler registry with failure-contained sequential dispatch."""

from __future__ import annotations

import logging
from typing import Callable, Iterator, List, Optional, Tuple

from .types import ChangeEvent, ChangeHandler, DispatchResult, HandlerOutcome

logger = logging.getLogger(__name__)


def handler_name(handler: ChangeHandler) -> str:
    for attr in ("name", "__qualname__", "__name__"):
        value = getattr(handler, attr, None)
        if isinstance(value, str) and value:
            return value
    return type(handler).__name__


class HandlerRegistry:
    """Keeps handlers in registration order; that order is the dispatch order."""

    def __init__(self) -> None:
        self._handlers: List[ChangeHandler] = []

    def register(self, handler: ChangeHandler) -> None:
        if not callable(handler):
            raise TypeError("handler must be callable")
        self._handlers.append(handler)

    @property
    def handlers(self) -> Tuple[ChangeHandler, ...]:
        return tuple(self._handlers)

    def __len__(self) -> int:
        return len(self._handlers)

    def __iter__(self) -> Iterator[ChangeHandler]:
        return iter(tuple(self._handlers))

    def dispatch_all(
        self,
        event: ChangeEvent,
        *,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> DispatchResult:
        """Invoke every handler once, in order, containing individual failures.

        ``should_continue`` is consulted before each handler; when it returns
        False the remaining handlers are abandoned and the result is marked
        incomplete.
        """
        outcomes: List[HandlerOutcome] = []
        for handler in tuple(self._handlers):
            if should_continue is not None and not should_continue():
                logger.info(
                    "dispatch of %s change on %s abandoned after %d/%d handlers",
                    event.operation_type,
                    event.qualified_name,
                    len(outcomes),
                    len(self._handlers),
                )
                return DispatchResult(outcomes=tuple(outcomes), completed=False)
            name = handler_name(handler)
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001 - one handler must not stop the others
                logger.exception(
                    "handler %s failed for %s change on %s",
                    name,
                    event.operation_type,
                    event.qualified_name,
                )
                outcomes.append(HandlerOutcome(name=name, ok=False, error=exc))
                continue
            outcomes.append(HandlerOutcome(name=name, ok=True))
        return DispatchResult(outcomes=tuple(outcomes), completed=True)


__all__ = ["HandlerRegistry", "handler_name"]
