"""Downstream publishers fed by outbox handlers."""

from .mqtt import MqttPublisher
from .outbox import (
    MarkProcessedHandler,
    OutboxEventHandler,
    OutboxMessage,
    PublishError,
    Publisher,
)
from .webhook import RetryPolicy, WebhookPublisher

__all__ = [
    "MarkProcessedHandler",
    "MqttPublisher",
    "OutboxEventHandler",
    "OutboxMessage",
    "PublishError",
    "Publisher",
    "RetryPolicy",
    "WebhookPublisher",
]
