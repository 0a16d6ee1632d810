"""
Ops Event Ledger
=================

Derives pending state from the append-only `ops_events` log and writes
new facts to it.

Two derivations share the log:
- pending customer intro requests per (quote, provider)
- "already notified" markers per (quote, correlation id)

Neither is a locking mechanism. The notification check-then-write is
best-effort; two concurrent callers may both deliver.
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from pydantic import ValidationError

from src.config import OpsEventType, INTRO_EVENT_TYPES, settings
from src.core.exceptions import SchemaUnavailableException
from src.ops.application.dto import NotificationOutcome
from src.ops.domain import (
    IntroRequestState,
    OpsEvent,
    OpsEventPayload,
    coerce_datetime,
    parse_payload,
    payload_references,
)
from src.shared.infrastructure.logging import get_logger, warn_once

logger = get_logger(__name__)


class IOpsEventRepository(ABC):
    """Interface for ops event log access."""

    @abstractmethod
    async def append(
        self,
        quote_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
        destination_id: Optional[str] = None
    ) -> None:
        """Append one event."""

    @abstractmethod
    async def list_events(
        self,
        quote_ids: Sequence[str],
        event_types: Sequence[str],
        limit: int
    ) -> List[OpsEvent]:
        """
        List events for the quotes and types, newest first.

        `limit` bounds the events returned per quote, not in total.
        """


# ========== Pure derivations ==========

def derive_intro_request_states(events: Iterable[OpsEvent]) -> Dict[str, IntroRequestState]:
    """
    Fold intro request/handled events into pending state per quote.

    A (quote, provider) pair is pending when its latest request is newer
    than its latest handled event, or was never handled. A handled event
    at the same instant as the request clears it.
    """
    requested: Dict[Tuple[str, str], datetime] = {}
    handled: Dict[Tuple[str, str], datetime] = {}

    for event in events:
        if not event.quote_id:
            continue
        provider_id = event.provider_id
        at = coerce_datetime(event.created_at)
        if not provider_id or at is None:
            continue

        key = (event.quote_id, provider_id)
        if event.event_type == OpsEventType.CUSTOMER_INTRO_REQUESTED:
            bucket = requested
        elif event.event_type == OpsEventType.CUSTOMER_INTRO_HANDLED:
            bucket = handled
        else:
            continue

        previous = bucket.get(key)
        if previous is None or at > previous:
            bucket[key] = at

    pending: Dict[str, Dict[str, datetime]] = {}
    for (quote_id, provider_id), requested_at in requested.items():
        handled_at = handled.get((quote_id, provider_id))
        if handled_at is not None and handled_at >= requested_at:
            continue
        pending.setdefault(quote_id, {})[provider_id] = requested_at

    return {
        quote_id: IntroRequestState(
            quote_id=quote_id,
            intro_requests_count=len(providers),
            intro_request_provider_ids=tuple(sorted(providers)),
            last_intro_requested_at=max(providers.values()),
        )
        for quote_id, providers in pending.items()
    }


# ========== Telemetry dedupe ==========

class TelemetryDedupeCache:
    """
    Bounded LRU set with TTL for suppressing duplicate telemetry writes.

    Process-local and best-effort: it forgets on restart and is not shared
    between instances. Never consulted by SLA or inbox logic.
    """

    def __init__(
        self,
        capacity: int = 10_000,
        ttl_seconds: float = 6 * 60 * 60,
        clock: Callable[[], float] = time.monotonic
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._capacity = capacity
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def add(self, key: str) -> bool:
        """
        Remember a key.

        Returns:
            True if the key was not already remembered (first sighting)
        """
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(key)
            if expires_at is not None and expires_at > now:
                self._entries.move_to_end(key)
                return False

            self._entries[key] = now + self._ttl
            self._entries.move_to_end(key)
            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)
            return True

    def __contains__(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            expires_at = self._entries.get(key)
            return expires_at is not None and expires_at > now

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def discard(self, key: str) -> None:
        """Forget a key so its next sighting counts as the first."""
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# ========== Ledger service ==========

SendCallable = Callable[[], Awaitable[bool]]


class EventLedgerService:
    """
    Reads and appends ops events.

    Every entry point degrades instead of raising: reads return empty
    state and writes return False.
    """

    def __init__(
        self,
        event_repository: IOpsEventRepository,
        telemetry_cache: Optional[TelemetryDedupeCache] = None,
        scan_limit: int = settings.ops_ledger_scan_limit,
        dedup_window: int = settings.ops_dedup_window
    ):
        self._repo = event_repository
        self._telemetry_cache = telemetry_cache or TelemetryDedupeCache()
        self._scan_limit = scan_limit
        self._dedup_window = dedup_window

    async def load_intro_request_states(
        self,
        quote_ids: Sequence[str]
    ) -> Dict[str, IntroRequestState]:
        """Pending intro request state keyed by quote id."""
        ids = [q.strip() for q in quote_ids if isinstance(q, str) and q.strip()]
        if not ids:
            return {}

        try:
            events = await self._repo.list_events(ids, INTRO_EVENT_TYPES, self._scan_limit)
        except Exception as e:
            logger.warning(
                "Intro request scan failed",
                extra={
                    "relation": "ops_events",
                    "operation": "list_intro_events",
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return {}

        return derive_intro_request_states(events)

    async def record_event(
        self,
        quote_id: Optional[str],
        event_type: str,
        payload: Union[Dict[str, Any], OpsEventPayload, None] = None,
        destination_id: Optional[str] = None
    ) -> bool:
        """
        Validate and append one event.

        Returns:
            True if the event was written
        """
        if not isinstance(event_type, str) or not event_type.strip():
            return False
        event_type = event_type.strip().lower()

        try:
            if isinstance(payload, OpsEventPayload):
                raw = payload.to_json()
            else:
                raw = payload or {}
            body = parse_payload(event_type, raw).to_json()
        except ValidationError as e:
            logger.warning(
                "Rejected ops event with invalid payload",
                extra={"event_type": event_type, "error_count": e.error_count()}
            )
            return False

        try:
            await self._repo.append(quote_id, event_type, body, destination_id=destination_id)
        except SchemaUnavailableException as e:
            warn_once(
                logger,
                "ops_events:missing_schema",
                "Ops events relation unavailable; skipping writes",
                relation=e.relation,
            )
            return False
        except Exception as e:
            logger.warning(
                "Ops event insert failed",
                extra={
                    "quote_id": quote_id,
                    "event_type": event_type,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return False

        return True

    async def record_intro_requested(
        self,
        quote_id: str,
        provider_id: str,
        **fields: Any
    ) -> bool:
        """Append a customer intro request for a provider."""
        return await self.record_event(
            quote_id,
            OpsEventType.CUSTOMER_INTRO_REQUESTED,
            {"provider_id": provider_id, **fields},
        )

    async def mark_intro_handled(
        self,
        quote_id: str,
        provider_id: str,
        notes: Optional[str] = None,
        handled_by: Optional[str] = None
    ) -> bool:
        """Append a handled marker that clears earlier intro requests."""
        return await self.record_event(
            quote_id,
            OpsEventType.CUSTOMER_INTRO_HANDLED,
            {
                "provider_id": provider_id,
                "notes": notes,
                "handled_by": handled_by,
                "source": "ops_inbox",
            },
        )

    async def was_notified(
        self,
        quote_id: str,
        correlation_id: str,
        marker_event_type: str = OpsEventType.CHANGE_REQUEST_NOTIFIED
    ) -> bool:
        """Scan the most recent markers for the correlation id."""
        try:
            markers = await self._repo.list_events(
                [quote_id], [marker_event_type], self._dedup_window
            )
        except Exception as e:
            logger.warning(
                "Notification marker scan failed; assuming not notified",
                extra={
                    "quote_id": quote_id,
                    "event_type": marker_event_type,
                    "error_type": type(e).__name__,
                }
            )
            return False

        return any(payload_references(m.payload, correlation_id) for m in markers)

    async def maybe_notify(
        self,
        quote_id: str,
        correlation_id: str,
        send: SendCallable,
        marker_event_type: str = OpsEventType.CHANGE_REQUEST_NOTIFIED,
        marker_payload: Optional[Dict[str, Any]] = None
    ) -> NotificationOutcome:
        """
        Deliver a notification at most once per (quote, correlation id).

        Best-effort: the marker is written only after `send` reports
        success, so a failed delivery is retried by the next call.

        Args:
            quote_id: Quote the notification is about
            correlation_id: Stable id of the triggering fact (e.g. a change request id)
            send: Coroutine factory performing the delivery; returns True on success
            marker_event_type: Event type used for the dedup markers
            marker_payload: Extra marker payload fields

        Returns:
            SENT, SKIPPED when a marker already exists, or FAILED
        """
        quote_id = quote_id.strip() if isinstance(quote_id, str) else ""
        correlation_id = correlation_id.strip() if isinstance(correlation_id, str) else ""
        if not quote_id or not correlation_id:
            return NotificationOutcome.FAILED

        if await self.was_notified(quote_id, correlation_id, marker_event_type):
            logger.info(
                "Notification already sent; skipping",
                extra={"quote_id": quote_id, "correlation_id": correlation_id}
            )
            return NotificationOutcome.SKIPPED

        try:
            delivered = await send()
        except Exception as e:
            logger.warning(
                "Notification delivery failed",
                extra={
                    "quote_id": quote_id,
                    "correlation_id": correlation_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            return NotificationOutcome.FAILED

        if not delivered:
            return NotificationOutcome.FAILED

        correlation_key = (
            "change_request_id"
            if marker_event_type == OpsEventType.CHANGE_REQUEST_NOTIFIED
            else "correlation_id"
        )
        await self.record_event(
            quote_id,
            marker_event_type,
            {**(marker_payload or {}), correlation_key: correlation_id},
        )
        return NotificationOutcome.SENT

    async def record_telemetry_once(
        self,
        key: str,
        quote_id: Optional[str],
        event_type: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Append a telemetry event on the first sighting of `key`.

        Returns:
            True if the event was written
        """
        if not isinstance(key, str) or not key.strip():
            return False
        key = key.strip()
        if not self._telemetry_cache.add(key):
            return False

        written = await self.record_event(quote_id, event_type, payload)
        if not written:
            # Unwritten sightings must not suppress the retry
            self._telemetry_cache.discard(key)
        return written
