"""
Ops External Service Integrations
==================================

Outbound notifications for ops events, posted as JSON to a webhook.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from src.core.exceptions import ConfigurationException
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


class CircuitState:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Stops calling a failing webhook for a while.

    The breaker opens after ``failure_threshold`` consecutive failed sends
    and lets a probe through once ``recovery_timeout`` seconds have passed.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state != CircuitState.OPEN

    def record_success(self) -> None:
        self._consecutive_failures = 0
        self._opened_at = None
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures < self.failure_threshold:
            return

        self._opened_at = time.monotonic()
        self._state = CircuitState.OPEN
        logger.warning(
            "Notification circuit opened",
            extra={
                "failure_count": self._consecutive_failures,
                "recovery_timeout": self.recovery_timeout
            }
        )


@dataclass
class OpsNotification:
    """Notification about an ops event that needs staff attention."""
    event_type: str
    quote_id: str
    correlation_id: str
    summary: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class INotificationSender(ABC):
    """Interface for notification delivery."""

    @abstractmethod
    async def send(self, notification: OpsNotification) -> bool:
        """Deliver a notification; True on success."""


class WebhookNotificationSender(INotificationSender):
    """
    Posts notifications as JSON to one webhook URL.

    Each send makes up to ``max_retries`` attempts with doubling backoff.
    A send that exhausts its attempts counts as one breaker failure.
    Without a URL every send is a no-op returning False.
    """

    def __init__(
        self,
        webhook_url: Optional[str],
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        backoff_base: float = 1.0
    ):
        if webhook_url and not webhook_url.startswith(("http://", "https://")):
            raise ConfigurationException(
                "Webhook URL must be http(s)",
                details={"setting": "notification_webhook_url"},
            )
        self._webhook_url = webhook_url
        self._timeout = timeout_seconds
        self._max_retries = max(1, max_retries)
        self._backoff_base = backoff_base
        self._breaker = circuit_breaker or CircuitBreaker()
        self._client = http_client
        self._owns_client = http_client is None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def _attempt(self, body: Dict[str, Any], attempt: int, quote_id: str) -> bool:
        try:
            response = await self._http().post(self._webhook_url, json=body)
        except httpx.HTTPError as exc:
            logger.error(
                "Notification request failed",
                extra={"error_type": type(exc).__name__, "attempt": attempt, "quote_id": quote_id}
            )
            return False

        if response.is_success:
            return True
        logger.warning(
            "Notification webhook returned non-2xx",
            extra={"status_code": response.status_code, "attempt": attempt, "quote_id": quote_id}
        )
        return False

    async def send(self, notification: OpsNotification) -> bool:
        """True once the webhook answers 2xx; never raises."""
        if not self._webhook_url:
            logger.debug("No notification webhook configured")
            return False

        if not self._breaker.allow_request():
            logger.warning(
                "Notification circuit open, skipping send",
                extra={"quote_id": notification.quote_id, "event_type": notification.event_type}
            )
            return False

        body = asdict(notification)
        for attempt in range(1, self._max_retries + 1):
            if await self._attempt(body, attempt, notification.quote_id):
                self._breaker.record_success()
                logger.info(
                    "Notification sent",
                    extra={"quote_id": notification.quote_id, "event_type": notification.event_type}
                )
                return True
            if attempt < self._max_retries:
                await asyncio.sleep(self._backoff_base * 2 ** (attempt - 1))

        self._breaker.record_failure()
        return False

    async def close(self) -> None:
        """Close the HTTP client unless it was injected."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
