"""Resumable change-feed processor publishing outbox events downstream."""

from .feed import ChangeEvent, ChangeFeedProcessor, ResumeToken


def main() -> None:
    """Entrypoint proxy that defers importing the service until needed."""

    from .service import main as _service_main

    _service_main()


__all__ = ["main", "ChangeEvent", "ChangeFeedProcessor", "ResumeToken"]
