"""Tests for destination SLA evaluation.

Covers:
- Priority order of the rules (error, queued, awaiting reply)
- Reference time fallback chain
- Terminal, replied and unknown statuses
- Timestamp coercion and threshold rounding
"""

from datetime import datetime, timedelta, timezone

import pytest

from src.ops.domain import (
    DEFAULT_SLA_CONFIG,
    DestinationSnapshot,
    SlaConfig,
    SlaEvaluator,
    coerce_datetime,
    resolve_reference_time,
    round_hours,
)

from tests.ops.fakes import NOW, make_destination


class TestDefaults:

    def test_default_thresholds(self) -> None:
        assert DEFAULT_SLA_CONFIG.queued_max_hours == 4
        assert DEFAULT_SLA_CONFIG.sent_no_reply_max_hours == 48
        assert DEFAULT_SLA_CONFIG.error_always_needs_action is True

    def test_config_is_immutable(self) -> None:
        with pytest.raises(Exception):
            DEFAULT_SLA_CONFIG.queued_max_hours = 10


class TestQueued:

    def test_queued_six_hours_is_stale(self) -> None:
        destination = make_destination("q1", "p1", "queued", created_hours_ago=6)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW, DEFAULT_SLA_CONFIG, has_offer=False)

        assert verdict.needs_action is True
        assert verdict.reason == "queued_stale"
        assert verdict.age_hours == pytest.approx(6)

    def test_queued_within_threshold_is_fine(self) -> None:
        destination = make_destination("q1", "p1", "queued", created_hours_ago=3)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.needs_action is False
        assert verdict.reason is None

    def test_queued_exactly_at_threshold_is_not_stale(self) -> None:
        destination = make_destination("q1", "p1", "queued", created_hours_ago=4)

        assert SlaEvaluator.evaluate_destination(destination, NOW).needs_action is False

    def test_queued_without_created_at_falls_back_to_last_status_at(self) -> None:
        destination = DestinationSnapshot(
            id="d1", quote_id="q1", provider_id="p1", status="queued",
            created_at=None, last_status_at=NOW - timedelta(hours=10),
        )

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.needs_action is True
        assert verdict.reason == "queued_stale"

    def test_queued_without_any_timestamp_is_never_stale(self) -> None:
        destination = DestinationSnapshot(
            id="d1", quote_id="q1", provider_id="p1", status="queued", created_at=None,
        )

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.needs_action is False
        assert verdict.age_hours == 0

    def test_queued_with_offer_still_follows_queued_rule(self) -> None:
        destination = make_destination("q1", "p1", "queued", created_hours_ago=6)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW, has_offer=True)

        assert verdict.needs_action is True


class TestNoReply:

    def test_viewed_falls_back_to_last_status_at(self) -> None:
        destination = make_destination(
            "q1", "p1", "viewed",
            created_hours_ago=100,
            sent_at=None,
            last_status_at=NOW - timedelta(hours=30),
        )

        at_30h = SlaEvaluator.evaluate_destination(destination, NOW, DEFAULT_SLA_CONFIG, has_offer=False)
        at_80h = SlaEvaluator.evaluate_destination(
            destination, NOW + timedelta(hours=50), DEFAULT_SLA_CONFIG, has_offer=False
        )

        assert at_30h.needs_action is False
        assert at_80h.needs_action is True
        assert at_80h.reason == "no_reply"

    def test_sent_at_takes_priority_over_other_timestamps(self) -> None:
        destination = make_destination(
            "q1", "p1", "sent",
            created_hours_ago=100,
            sent_at=NOW - timedelta(hours=10),
            last_status_at=NOW - timedelta(hours=90),
        )

        assert SlaEvaluator.evaluate_destination(destination, NOW).needs_action is False

    def test_falls_back_to_created_at(self) -> None:
        destination = make_destination("q1", "p1", "submitted", created_hours_ago=49)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.needs_action is True
        assert verdict.reason == "no_reply"

    @pytest.mark.parametrize("status", ["sent", "submitted", "viewed"])
    def test_offer_suppresses_no_reply(self, status: str) -> None:
        destination = make_destination("q1", "p1", status, created_hours_ago=500)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW, has_offer=True)

        assert verdict.needs_action is False

    def test_custom_threshold(self) -> None:
        destination = make_destination("q1", "p1", "sent", created_hours_ago=13)
        config = SlaConfig(queued_max_hours=1, sent_no_reply_max_hours=12)

        assert SlaEvaluator.evaluate_destination(destination, NOW, config).needs_action is True


class TestErrorAndTerminal:

    def test_error_flags_by_default(self) -> None:
        destination = make_destination("q1", "p1", "error", created_hours_ago=0)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.needs_action is True
        assert verdict.reason == "error"

    def test_error_not_flagged_when_disabled(self) -> None:
        destination = make_destination("q1", "p1", "error")
        config = SlaConfig(error_always_needs_action=False)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW, config)

        assert verdict.needs_action is False

    def test_error_wins_even_with_offer(self) -> None:
        destination = make_destination("q1", "p1", "error")

        assert SlaEvaluator.evaluate_destination(destination, NOW, has_offer=True).reason == "error"

    @pytest.mark.parametrize("status", ["quoted", "declined"])
    @pytest.mark.parametrize("hours", [0, 5, 1000])
    def test_terminal_statuses_never_flag(self, status: str, hours: int) -> None:
        destination = make_destination("q1", "p1", status, created_hours_ago=hours)

        assert SlaEvaluator.evaluate_destination(destination, NOW).needs_action is False

    @pytest.mark.parametrize("status", ["draft", "", None, "cancelled"])
    def test_unknown_status_fails_open(self, status) -> None:
        destination = make_destination("q1", "p1", status, created_hours_ago=1000)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.needs_action is False
        assert verdict.reason is None

    def test_status_is_trimmed_and_lowercased(self) -> None:
        destination = make_destination("q1", "p1", "  QUEUED ", created_hours_ago=6)

        assert SlaEvaluator.evaluate_destination(destination, NOW).reason == "queued_stale"


class TestTimestamps:

    def test_future_reference_clamps_age_to_zero(self) -> None:
        destination = make_destination("q1", "p1", "queued", created_hours_ago=-5)

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.age_hours == 0
        assert verdict.needs_action is False

    def test_naive_timestamps_are_utc(self) -> None:
        naive = datetime(2025, 1, 1, 6, 0, 0)
        destination = DestinationSnapshot(
            id="d1", quote_id="q1", provider_id="p1", status="queued", created_at=naive,
        )

        verdict = SlaEvaluator.evaluate_destination(destination, NOW)

        assert verdict.age_hours == pytest.approx(6)

    def test_resolve_reference_time_returns_first_usable(self) -> None:
        first = datetime(2025, 1, 1, tzinfo=timezone.utc)
        second = datetime(2024, 1, 1, tzinfo=timezone.utc)

        assert resolve_reference_time([None, "not a date", first, second]) == first
        assert resolve_reference_time([None, None]) is None
        assert resolve_reference_time([]) is None

    def test_resolve_reference_time_parses_iso_strings(self) -> None:
        resolved = resolve_reference_time([None, "2025-01-01T10:00:00Z"])

        assert resolved == datetime(2025, 1, 1, 10, tzinfo=timezone.utc)

    def test_coerce_datetime_rejects_other_types(self) -> None:
        assert coerce_datetime(12345) is None
        assert coerce_datetime("   ") is None


class TestRoundHours:

    @pytest.mark.parametrize(
        "value,expected",
        [(4, 4), (4.4, 4), (4.5, 5), (0.5, 1), (0, 0), ("12", 12), ("2.5", 3)],
    )
    def test_rounds_half_up(self, value, expected) -> None:
        assert round_hours(value) == expected

    @pytest.mark.parametrize("value", [-1, -0.4, float("nan"), float("inf"), "abc", None, True])
    def test_rejects_invalid(self, value) -> None:
        assert round_hours(value) is None
