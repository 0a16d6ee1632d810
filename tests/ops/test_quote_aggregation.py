"""Tests for the per-quote SLA rollup and health summary."""

from datetime import timedelta
from itertools import permutations

import pytest

from src.ops.domain import (
    CustomerInfo,
    IntroRequestState,
    MessageReplyState,
    OfferSnapshot,
    QuoteHealthRow,
    QuoteHealthSummary,
    QuoteNeedsAction,
    SlaEvaluator,
    build_top_reasons,
)

from tests.ops.fakes import NOW, make_destination, make_quote


def _mixed_destinations():
    return [
        make_destination("q1", "p1", "queued", created_hours_ago=6),
        make_destination("q1", "p2", "queued", created_hours_ago=1),
        make_destination("q1", "p3", "sent", created_hours_ago=60),
        make_destination("q1", "p4", "sent", created_hours_ago=60),
        make_destination("q1", "p5", "error"),
        make_destination("q1", "p6", "quoted", created_hours_ago=300),
    ]


class TestAggregateQuote:

    def test_counts_every_known_status(self) -> None:
        needs = SlaEvaluator.aggregate_quote(_mixed_destinations(), [], NOW)

        assert needs.counts == {
            "queued": 2,
            "sent": 2,
            "submitted": 0,
            "viewed": 0,
            "quoted": 1,
            "declined": 0,
            "error": 1,
        }

    def test_reason_counters(self) -> None:
        needs = SlaEvaluator.aggregate_quote(_mixed_destinations(), [], NOW)

        assert needs.needs_action_count == 4
        assert needs.needs_reply_count == 2
        assert needs.errors_count == 1
        assert needs.queued_stale_count == 1
        assert needs.top_reasons == ["no_reply", "error"]

    def test_offer_matches_by_provider(self) -> None:
        offers = [OfferSnapshot(quote_id="q1", provider_id="p3")]

        needs = SlaEvaluator.aggregate_quote(_mixed_destinations(), offers, NOW)

        assert needs.needs_reply_count == 1
        assert needs.needs_action_count == 3

    def test_unknown_status_is_not_counted(self) -> None:
        destinations = [make_destination("q1", "p1", "draft"), make_destination("q1", "p2", "SENT")]

        needs = SlaEvaluator.aggregate_quote(destinations, [], NOW)

        assert sum(needs.counts.values()) == 1
        assert needs.counts["sent"] == 1
        assert "draft" not in needs.counts

    def test_empty_quote(self) -> None:
        needs = SlaEvaluator.aggregate_quote([], [], NOW)

        assert needs.needs_action_count == 0
        assert needs.top_reasons == []
        assert set(needs.counts.values()) == {0}

    def test_order_independent(self) -> None:
        destinations = _mixed_destinations()[:5]
        offers = [
            OfferSnapshot(quote_id="q1", provider_id="p4"),
            OfferSnapshot(quote_id="q1", provider_id="p9"),
        ]
        expected = SlaEvaluator.aggregate_quote(destinations, offers, NOW)

        for ordering in permutations(destinations):
            for offer_ordering in permutations(offers):
                assert SlaEvaluator.aggregate_quote(list(ordering), list(offer_ordering), NOW) == expected


class TestTopReasons:

    def test_ties_break_alphabetically(self) -> None:
        assert build_top_reasons(["queued_stale", "error", "no_reply"]) == ["error", "no_reply"]

    def test_frequency_first(self) -> None:
        reasons = ["error", "queued_stale", "queued_stale", "no_reply", "no_reply", "no_reply"]

        assert build_top_reasons(reasons) == ["no_reply", "queued_stale"]

    def test_skips_empty_labels(self) -> None:
        assert build_top_reasons(["", None, "error"]) == ["error"]

    @pytest.mark.parametrize("limit", [1, 2, 3])
    def test_limit(self, limit: int) -> None:
        assert len(build_top_reasons(["error", "no_reply", "queued_stale"], limit=limit)) == limit


class TestHealthSummary:

    def _needs(self) -> QuoteNeedsAction:
        return QuoteNeedsAction(
            counts={"queued": 1},
            needs_action_count=1,
            queued_stale_count=1,
            top_reasons=["queued_stale"],
        )

    def test_plain_rollup(self) -> None:
        summary = QuoteHealthSummary.from_rollups(self._needs(), None, None)

        assert summary.needs_action_count == 1
        assert summary.message_needs_reply_count == 0
        assert summary.intro_requests_count == 0
        assert summary.intro_request_provider_ids == []
        assert summary.last_message_at is None

    def test_owed_reply_adds_one(self) -> None:
        reply = MessageReplyState(
            quote_id="q1", last_message_at=NOW, last_message_role="customer", needs_reply_from_staff=True
        )

        summary = QuoteHealthSummary.from_rollups(self._needs(), reply, None)

        assert summary.needs_action_count == 2
        assert summary.message_needs_reply_count == 1
        assert summary.last_message_at == NOW

    def test_answered_thread_adds_nothing(self) -> None:
        reply = MessageReplyState(quote_id="q1", last_message_at=NOW, last_message_role="admin")

        summary = QuoteHealthSummary.from_rollups(self._needs(), reply, None)

        assert summary.needs_action_count == 1
        assert summary.last_message_at == NOW

    def test_pending_intros_add_one_regardless_of_count(self) -> None:
        intro = IntroRequestState(
            quote_id="q1",
            intro_requests_count=3,
            intro_request_provider_ids=("a", "b", "c"),
            last_intro_requested_at=NOW,
        )

        summary = QuoteHealthSummary.from_rollups(self._needs(), None, intro)

        assert summary.needs_action_count == 2
        assert summary.intro_requests_count == 3
        assert summary.intro_request_provider_ids == ["a", "b", "c"]
        assert summary.last_intro_requested_at == NOW

    def test_row_serializes_timestamps(self) -> None:
        quote = make_quote("q1", created_hours_ago=2, title="Brackets")
        destination = make_destination("q1", "p1", "sent", sent_at=NOW - timedelta(hours=1))
        summary = QuoteHealthSummary.from_rollups(self._needs(), None, None)

        row = QuoteHealthRow(
            quote=quote,
            customer=CustomerInfo(name="Ada"),
            destinations=[destination],
            offers=[],
            summary=summary,
        ).to_dict()

        assert row["quote"]["created_at"] == (NOW - timedelta(hours=2)).isoformat()
        assert row["customer"]["name"] == "Ada"
        assert row["destinations"][0]["sent_at"] == (NOW - timedelta(hours=1)).isoformat()
        assert row["destinations"][0]["last_status_at"] is None
        assert row["summary"]["top_reasons"] == ["queued_stale"]
