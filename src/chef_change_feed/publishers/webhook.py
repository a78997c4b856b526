"""HTTP webhook publisher with retries and idempotency headers."""

from __future__ import annotations

import logging
import random
import time
from typing import Callable, List, Optional

import httpx

from .outbox import OutboxMessage, PublishError

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Exponential backoff with jitter helper."""

    def __init__(
        self,
        *,
        attempts: int,
        base_delay: float,
        max_delay: float,
        jitter: Optional[Callable[[float], float]] = None,
    ) -> None:
        if attempts < 0:
            raise ValueError("attempts must be >= 0")
        if base_delay <= 0 or max_delay <= 0:
            raise ValueError("delays must be positive")
        self._retries = attempts
        self._jitter_fn = jitter or (lambda limit: random.uniform(0, limit))
        self._limits: List[float] = []
        delay = base_delay
        for _ in range(self._retries):
            self._limits.append(min(delay, max_delay))
            delay = min(delay * 2, max_delay)

    @property
    def max_attempts(self) -> int:
        """Return the total attempts (first try + retries)."""
        return self._retries + 1

    def next_delay(self, attempt: int) -> float:
        """Return the backoff delay (seconds) before ``attempt``."""
        if attempt <= 1:
            return 0.0
        index = min(attempt - 2, len(self._limits) - 1)
        if index < 0:
            return 0.0
        return max(0.0, self._jitter_fn(self._limits[index]))

    def all_delays(self) -> List[float]:
        """Return the theoretical upper bounds for each retry attempt."""
        return list(self._limits)


class WebhookPublisher:
    """POSTs outbox messages to an HTTP endpoint."""

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        timeout_seconds: float = 10.0,
        retry_attempts: int = 3,
        retry_base_delay_seconds: float = 0.2,
        retry_max_delay_seconds: float = 5.0,
        jitter: Optional[Callable[[float], float]] = None,
        http_client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not url:
            raise ValueError("url must be provided")
        self._url = url
        self._token = token
        self._retry_policy = RetryPolicy(
            attempts=retry_attempts,
            base_delay=retry_base_delay_seconds,
            max_delay=retry_max_delay_seconds,
            jitter=jitter,
        )
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep

    def publish(self, message: OutboxMessage) -> None:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": message.deduplication_id,
            "X-Message-Group": message.key,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        attempt = 1
        while True:
            try:
                response = self._client.post(
                    self._url, content=message.body, headers=headers
                )
                response.raise_for_status()
                return
            except httpx.HTTPError as exc:
                if attempt >= self._retry_policy.max_attempts or not self._is_retriable(
                    exc
                ):
                    raise PublishError(
                        f"webhook delivery of {message.deduplication_id} failed"
                    ) from exc
                delay = self._retry_policy.next_delay(attempt + 1)
                logger.warning(
                    "webhook delivery of %s failed (attempt %d): %s; retrying in %.2fs",
                    message.deduplication_id,
                    attempt,
                    exc,
                    delay,
                )
                if delay > 0:
                    self._sleep(delay)
                attempt += 1

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    @staticmethod
    def _is_retriable(error: Exception) -> bool:
        if isinstance(error, httpx.HTTPStatusError):
            status = error.response.status_code
            return status >= 500 or status == 429
        return isinstance(error, httpx.RequestError)


__all__ = ["RetryPolicy", "WebhookPublisher"]
