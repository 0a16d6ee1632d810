"""Tests for the ops event ledger.

Covers:
- Intro request derivation from requested/handled events
- Payload parsing for known and unknown event types
- At-most-once notification markers
- Telemetry dedupe cache
"""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from src.ops.application import NotificationOutcome, TelemetryDedupeCache, derive_intro_request_states
from src.ops.domain import GenericEventPayload, OpsEvent, parse_payload, payload_references
from src.ops.domain.events import ChangeRequestNotifiedPayload, CustomerIntroRequestedPayload

from tests.ops.fakes import NOW


def _event(event_type, payload, minutes, quote_id="q1"):
    return OpsEvent.from_row(event_type, payload, NOW + timedelta(minutes=minutes), quote_id=quote_id)


class TestIntroDerivation:

    def test_request_then_handled_then_request_again(self) -> None:
        requested_1 = _event("customer_intro_requested", {"provider_id": "A"}, 1)
        handled = _event("customer_intro_handled", {"provider_id": "A"}, 2)
        requested_2 = _event("customer_intro_requested", {"provider_id": "A"}, 3)

        assert derive_intro_request_states([requested_1])["q1"].intro_requests_count == 1
        assert derive_intro_request_states([requested_1, handled]) == {}

        states = derive_intro_request_states([requested_2, handled, requested_1])
        assert states["q1"].intro_requests_count == 1
        assert states["q1"].intro_request_provider_ids == ("A",)
        assert states["q1"].last_intro_requested_at == NOW + timedelta(minutes=3)

    def test_handled_at_same_instant_clears_request(self) -> None:
        events = [
            _event("customer_intro_requested", {"provider_id": "A"}, 1),
            _event("customer_intro_handled", {"provider_id": "A"}, 1),
        ]

        assert derive_intro_request_states(events) == {}

    def test_pairs_are_per_provider(self) -> None:
        events = [
            _event("customer_intro_requested", {"provider_id": "B"}, 1),
            _event("customer_intro_requested", {"provider_id": "A"}, 2),
            _event("customer_intro_handled", {"provider_id": "B"}, 3),
            _event("customer_intro_requested", {"provider_id": "C"}, 4),
        ]

        state = derive_intro_request_states(events)["q1"]

        assert state.intro_requests_count == 2
        assert state.intro_request_provider_ids == ("A", "C")
        assert state.last_intro_requested_at == NOW + timedelta(minutes=4)
        assert state.is_pending

    def test_pairs_are_per_quote(self) -> None:
        events = [
            _event("customer_intro_requested", {"provider_id": "A"}, 1, quote_id="q1"),
            _event("customer_intro_handled", {"provider_id": "A"}, 2, quote_id="q2"),
        ]

        states = derive_intro_request_states(events)

        assert set(states) == {"q1"}

    def test_ignores_other_event_types_and_missing_fields(self) -> None:
        events = [
            _event("offer_upserted", {"provider_id": "A"}, 1),
            _event("customer_intro_requested", {"provider_id": "A"}, 2, quote_id=None),
            OpsEvent.from_row("customer_intro_requested", {"provider_id": "A"}, None, quote_id="q1"),
        ]

        assert derive_intro_request_states(events) == {}


class TestPayloads:

    def test_known_type_is_typed(self) -> None:
        payload = parse_payload("customer_intro_requested", {"provider_id": " A ", "unknown": 1})

        assert isinstance(payload, CustomerIntroRequestedPayload)
        assert payload.to_json() == {"provider_id": "A"}

    def test_known_type_rejects_invalid_payload(self) -> None:
        with pytest.raises(ValidationError):
            parse_payload("customer_intro_requested", {"notes": "no provider"})

    def test_unknown_type_keeps_raw_payload(self) -> None:
        payload = parse_payload("vendor_pinged", {"anything": [1, 2]})

        assert isinstance(payload, GenericEventPayload)
        assert payload.to_json() == {"anything": [1, 2]}

    def test_from_row_skips_invalid_rows(self) -> None:
        assert OpsEvent.from_row("customer_intro_handled", {}, NOW) is None
        assert OpsEvent.from_row("  ", {"provider_id": "A"}, NOW) is None
        assert OpsEvent.from_row(None, {}, NOW) is None

    def test_from_row_normalizes_type(self) -> None:
        event = OpsEvent.from_row(" Customer_Intro_Requested ", {"provider_id": "A"}, NOW)

        assert event.event_type == "customer_intro_requested"
        assert event.provider_id == "A"

    def test_non_dict_payload_is_treated_as_empty(self) -> None:
        event = OpsEvent.from_row("vendor_pinged", "not a dict", NOW)

        assert event.payload.to_json() == {}
        assert event.provider_id is None

    @pytest.mark.parametrize(
        "payload",
        [
            {"change_request_id": "cr1"},
            {"changeRequestId": "cr1"},
            {"correlation_id": " cr1 "},
            {"correlationId": "cr1"},
            {"meta": {"change_request_id": "cr1"}},
            {"meta": {"source": {"changeRequestId": "cr1"}}},
        ],
    )
    def test_payload_references(self, payload) -> None:
        assert payload_references(payload, "cr1") is True

    def test_payload_references_misses(self) -> None:
        assert payload_references({"change_request_id": "cr2"}, "cr1") is False
        assert payload_references({"id": "cr1"}, "cr1") is False
        assert payload_references(None, "cr1") is False
        assert payload_references({"change_request_id": "cr1"}, "") is False

    def test_payload_references_on_model(self) -> None:
        assert payload_references(ChangeRequestNotifiedPayload(change_request_id="cr1"), "cr1") is True


class TestRecordEvent:

    @pytest.mark.asyncio
    async def test_appends_validated_payload(self, ledger, event_repo) -> None:
        written = await ledger.record_event("q1", "Offer_Upserted", {"provider_id": "p1", "extra": "x"})

        assert written is True
        assert event_repo.events[0].event_type == "offer_upserted"
        assert event_repo.events[0].payload.to_json() == {"provider_id": "p1"}

    @pytest.mark.asyncio
    async def test_invalid_payload_is_not_written(self, ledger, event_repo) -> None:
        assert await ledger.record_event("q1", "offer_selected", {}) is False
        assert await ledger.record_event("q1", "  ", {"offer_id": "o1"}) is False
        assert event_repo.events == []

    @pytest.mark.asyncio
    async def test_write_failure_returns_false(self, ledger, event_repo) -> None:
        event_repo.fail_writes = True

        assert await ledger.record_event("q1", "offer_selected", {"offer_id": "o1"}) is False

    @pytest.mark.asyncio
    async def test_mark_intro_handled_clears_pending(self, ledger) -> None:
        await ledger.record_intro_requested("q1", "A", customer_email="ada@example.com")
        before = await ledger.load_intro_request_states(["q1"])

        assert await ledger.mark_intro_handled("q1", "A", notes="called them", handled_by="ops@x") is True
        after = await ledger.load_intro_request_states(["q1"])

        assert before["q1"].intro_requests_count == 1
        assert after == {}

    @pytest.mark.asyncio
    async def test_mark_intro_handled_records_source(self, ledger, event_repo) -> None:
        await ledger.mark_intro_handled("q1", "A")

        assert event_repo.events[0].payload.to_json() == {"provider_id": "A", "source": "ops_inbox"}

    @pytest.mark.asyncio
    async def test_mark_intro_handled_requires_provider(self, ledger, event_repo) -> None:
        assert await ledger.mark_intro_handled("q1", "  ") is False
        assert event_repo.events == []

    @pytest.mark.asyncio
    async def test_intro_scan_uses_limit_and_types(self, ledger, event_repo) -> None:
        await ledger.load_intro_request_states(["q1", " ", "q2"])

        call = event_repo.list_calls[0]
        assert call["quote_ids"] == ["q1", "q2"]
        assert set(call["event_types"]) == {"customer_intro_requested", "customer_intro_handled"}
        assert call["limit"] == 1000

    @pytest.mark.asyncio
    async def test_intro_scan_failure_is_empty(self, ledger, event_repo) -> None:
        event_repo.fail_reads = True

        assert await ledger.load_intro_request_states(["q1"]) == {}

    @pytest.mark.asyncio
    async def test_no_quote_ids_skips_scan(self, ledger, event_repo) -> None:
        assert await ledger.load_intro_request_states([]) == {}
        assert event_repo.list_calls == []


class TestMaybeNotify:

    @staticmethod
    def _sender(result=True):
        calls = []

        async def send():
            calls.append(1)
            if isinstance(result, Exception):
                raise result
            return result

        return send, calls

    @pytest.mark.asyncio
    async def test_sends_once(self, ledger, event_repo) -> None:
        send, calls = self._sender()

        first = await ledger.maybe_notify("q1", "cr1", send)
        second = await ledger.maybe_notify("q1", "cr1", send)

        assert first == NotificationOutcome.SENT
        assert second == NotificationOutcome.SKIPPED
        assert len(calls) == 1
        assert event_repo.events[0].payload.to_json() == {"change_request_id": "cr1"}

    @pytest.mark.asyncio
    async def test_failed_delivery_writes_no_marker(self, ledger, event_repo) -> None:
        failing, _ = self._sender(result=False)
        working, calls = self._sender()

        assert await ledger.maybe_notify("q1", "cr1", failing) == NotificationOutcome.FAILED
        assert event_repo.events == []
        assert await ledger.maybe_notify("q1", "cr1", working) == NotificationOutcome.SENT
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_send_exception_is_failed(self, ledger, event_repo) -> None:
        send, _ = self._sender(result=RuntimeError("boom"))

        assert await ledger.maybe_notify("q1", "cr1", send) == NotificationOutcome.FAILED
        assert event_repo.events == []

    @pytest.mark.asyncio
    async def test_distinct_correlation_ids_both_send(self, ledger) -> None:
        send, calls = self._sender()

        await ledger.maybe_notify("q1", "cr1", send)
        await ledger.maybe_notify("q1", "cr2", send)
        await ledger.maybe_notify("q2", "cr1", send)

        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_marker_outside_window_is_forgotten(self, ledger, event_repo) -> None:
        event_repo.seed("q1", "change_request_notified", {"change_request_id": "old"}, NOW - timedelta(days=1))
        for i in range(25):
            event_repo.seed("q1", "change_request_notified", {"change_request_id": f"cr{i}"}, NOW + timedelta(minutes=i))
        send, calls = self._sender()

        outcome = await ledger.maybe_notify("q1", "old", send)

        assert outcome == NotificationOutcome.SENT
        assert len(calls) == 1
        assert event_repo.list_calls[0]["limit"] == 25

    @pytest.mark.asyncio
    async def test_marker_from_legacy_key_is_honoured(self, ledger, event_repo) -> None:
        event_repo.seed("q1", "change_request_notified", {"change_request_id": "x", "meta": {"correlationId": "cr1"}}, NOW)
        send, calls = self._sender()

        assert await ledger.maybe_notify("q1", "cr1", send) == NotificationOutcome.SKIPPED
        assert calls == []

    @pytest.mark.asyncio
    async def test_custom_marker_type(self, ledger, event_repo) -> None:
        send, calls = self._sender()

        await ledger.maybe_notify("q1", "job-7", send, marker_event_type="quote_reminder_sent")
        outcome = await ledger.maybe_notify("q1", "job-7", send, marker_event_type="quote_reminder_sent")

        assert outcome == NotificationOutcome.SKIPPED
        assert event_repo.events[0].payload.to_json() == {"correlation_id": "job-7"}
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_marker_scan_failure_still_sends(self, ledger, event_repo) -> None:
        event_repo.fail_reads = True
        send, calls = self._sender()

        assert await ledger.maybe_notify("q1", "cr1", send) == NotificationOutcome.SENT
        assert len(calls) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quote_id,correlation_id", [("", "cr1"), ("q1", "  "), (None, "cr1")])
    async def test_blank_ids_fail(self, ledger, quote_id, correlation_id) -> None:
        send, calls = self._sender()

        assert await ledger.maybe_notify(quote_id, correlation_id, send) == NotificationOutcome.FAILED
        assert calls == []


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTelemetryDedupe:

    def test_first_sighting_only(self) -> None:
        cache = TelemetryDedupeCache(capacity=10, ttl_seconds=60)

        assert cache.add("k") is True
        assert cache.add("k") is False
        assert "k" in cache
        assert len(cache) == 1

    def test_expires_after_ttl(self) -> None:
        clock = FakeClock()
        cache = TelemetryDedupeCache(capacity=10, ttl_seconds=60, clock=clock)

        cache.add("k")
        clock.now = 59
        assert cache.add("k") is False
        clock.now = 61
        assert "k" not in cache
        assert cache.add("k") is True

    def test_evicts_least_recently_seen(self) -> None:
        cache = TelemetryDedupeCache(capacity=2, ttl_seconds=60)

        cache.add("a")
        cache.add("b")
        cache.add("a")
        cache.add("c")

        assert "a" in cache
        assert "b" not in cache
        assert len(cache) == 2

    def test_clear(self) -> None:
        cache = TelemetryDedupeCache(capacity=2, ttl_seconds=60)
        cache.add("a")

        cache.clear()

        assert len(cache) == 0

    @pytest.mark.parametrize("capacity,ttl", [(0, 60), (10, 0), (10, -1)])
    def test_rejects_bad_bounds(self, capacity, ttl) -> None:
        with pytest.raises(ValueError):
            TelemetryDedupeCache(capacity=capacity, ttl_seconds=ttl)

    @pytest.mark.asyncio
    async def test_record_telemetry_once(self, ledger, event_repo) -> None:
        payload = {"session_key": "s1", "process": "cnc", "quantity": 10}

        first = await ledger.record_telemetry_once("estimate_shown:q1:s1", "q1", "estimate_shown", payload)
        second = await ledger.record_telemetry_once("estimate_shown:q1:s1", "q1", "estimate_shown", payload)

        assert first is True
        assert second is False
        assert len(event_repo.events) == 1

    @pytest.mark.asyncio
    async def test_record_telemetry_blank_key(self, ledger, event_repo) -> None:
        assert await ledger.record_telemetry_once(" ", "q1", "estimate_shown", {"session_key": "s1"}) is False
        assert event_repo.events == []

    @pytest.mark.asyncio
    async def test_failed_telemetry_write_is_retried(self, ledger, event_repo, telemetry_cache) -> None:
        payload = {"session_key": "s1"}
        event_repo.fail_writes = True

        failed = await ledger.record_telemetry_once("estimate_shown:q1:s1", "q1", "estimate_shown", payload)

        assert failed is False
        assert "estimate_shown:q1:s1" not in telemetry_cache

        event_repo.fail_writes = False
        retried = await ledger.record_telemetry_once("estimate_shown:q1:s1", "q1", "estimate_shown", payload)

        assert retried is True
        assert len(event_repo.events) == 1

    def test_discard_forgets_key(self) -> None:
        cache = TelemetryDedupeCache(capacity=10, ttl_seconds=60)
        cache.add("k")

        cache.discard("k")
        cache.discard("missing")

        assert cache.add("k") is True
