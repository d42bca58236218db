"""Tests for the Meridian reputation ledger: scoring, events, reversal, failures."""

import sqlite3
from decimal import Decimal

import pytest

from conftest import fresh_db
from errors import (
    EventAlreadyReversed,
    NotFound,
    ReputationUpdateFailed,
    ReversalNotAllowed,
    ValidationError,
)
from events import EventBus, EventStore
from fees import no_fees
from jobs import Job
from ledger import TransactionLedger, TransactionType
from reputation import (
    BASE_SCORE,
    PENALTY_POINTS,
    Availability,
    EventStatus,
    PenaltyType,
    ReputationEventType,
    ReputationLedger,
    ReputationTier,
    SubjectType,
    score_to_tier,
)
from settlement import LocalSettlementClient


def _ledger() -> ReputationLedger:
    db = fresh_db("rep")
    return ReputationLedger(db, TransactionLedger(db), EventBus(EventStore(db)),
                            LocalSettlementClient(db))


def _job(job_id="j1", provider="p1", client="c1") -> Job:
    return Job(job_id=job_id, client_id=client, provider_id=provider)


# ── Scoring ───────────────────────────────────────────────────────────


class TestScoring:
    """score = base + rating + success + volume + adjustments, clamped."""

    def test_new_provider_starts_at_base(self):
        rep = _ledger()
        agg = rep.register_provider("p1", "0xabc")
        assert agg.score == BASE_SCORE
        assert agg.tier == ReputationTier.NEW
        assert agg.availability_status == Availability.AVAILABLE.value

    def test_successful_job(self):
        rep = _ledger()
        rep.register_provider("p1")
        event = rep.record_job_outcome(_job(), success=True, earnings=Decimal("97"))
        agg = rep.get("p1")
        # base 1000 + success 100% × 300 + volume 5
        assert agg.score == 1305
        assert agg.success_rate == 100
        assert agg.total_earnings == Decimal("97")
        assert event.score_delta == 305
        assert event.action == "increase"
        assert rep.get_event(event.event_id).status == EventStatus.PROCESSED.value

    def test_provider_fault_failure(self):
        rep = _ledger()
        rep.register_provider("p1")
        event = rep.record_job_outcome(_job(), success=False, reason="OOM")
        agg = rep.get("p1")
        assert agg.failed_jobs == 1
        assert agg.score == BASE_SCORE + PENALTY_POINTS[PenaltyType.JOB_FAILURE]
        assert event.action == "decrease"

    def test_neutral_outcome_keeps_score(self):
        rep = _ledger()
        rep.register_provider("p1")
        rep.record_job_outcome(_job("j0"), success=True)
        before = rep.get("p1").score
        event = rep.record_job_outcome(_job(), success=False, neutral=True, reason="client cancelled")
        assert event.score_delta == 0
        assert rep.get("p1").score == before

    def test_weighted_rating_mean(self):
        rep = _ledger()
        rep.register_provider("p1")
        rep.record_rating(_job("j1"), 5)
        rep.record_rating(_job("j2"), 3)
        rep.record_rating(_job("j3"), 2, weight=2.0)
        agg = rep.get("p1")
        assert agg.rating_count == 4.0
        assert agg.average_rating == pytest.approx(3.0)

    def test_rating_must_be_integer_1_to_5(self):
        rep = _ledger()
        for bad in (0, 6, 4.5, True, "5"):
            with pytest.raises(ValidationError):
                rep.record_rating(_job(), bad)

    def test_weight_bounds(self):
        rep = _ledger()
        with pytest.raises(ValidationError):
            rep.record_job_outcome(_job(), success=True, weight=0.05)
        with pytest.raises(ValidationError):
            rep.record_job_outcome(_job(), success=True, weight=6)

    def test_score_clamped(self):
        rep = _ledger()
        rep.register_provider("p1")
        rep.adjust("p1", ReputationEventType.PENALTY, 5000, reason="fraud")
        assert rep.get("p1").score == 0
        rep.adjust("p1", ReputationEventType.BONUS, 50000, reason="audit")
        assert rep.get("p1").score == 10000

    def test_delta_equals_after_minus_before(self):
        rep = _ledger()
        rep.register_provider("p1")
        events = [
            rep.record_job_outcome(_job("a"), success=True),
            rep.record_rating(_job("a"), 4),
            rep.record_job_outcome(_job("b"), success=False),
            rep.adjust("p1", ReputationEventType.BONUS, 25, reason="uptime"),
        ]
        for e in events:
            assert e.score_delta == pytest.approx(e.score_after - e.score_before)

    @pytest.mark.parametrize("score,tier", [
        (1000, ReputationTier.NEW), (1100, ReputationTier.BRONZE),
        (1500, ReputationTier.SILVER), (1900, ReputationTier.GOLD),
        (2300, ReputationTier.PLATINUM), (2600, ReputationTier.DIAMOND),
    ])
    def test_tiers(self, score, tier):
        assert score_to_tier(score) == tier


# ── Adjustments ───────────────────────────────────────────────────────


class TestAdjustments:
    def test_penalty_is_always_negative(self):
        rep = _ledger()
        rep.register_provider("p1")
        rep.adjust("p1", ReputationEventType.PENALTY, 100, reason="terms")
        assert rep.get("p1").adjustment_points == -100

    def test_negative_bonus_rejected(self):
        rep = _ledger()
        with pytest.raises(ValidationError):
            rep.adjust("p1", ReputationEventType.BONUS, -5)

    def test_reset_clears_and_reversal_restores(self):
        rep = _ledger()
        rep.register_provider("p1")
        rep.adjust("p1", ReputationEventType.PENALTY, 100, reason="terms")
        reset = rep.adjust("p1", ReputationEventType.MANUAL, reason="clean slate", reset=True)
        assert reset.action == "reset"
        assert rep.get("p1").adjustment_points == 0
        rep.reverse(reset.event_id, "reset issued in error")
        assert rep.get("p1").adjustment_points == -100


# ── Reversal ──────────────────────────────────────────────────────────


class TestReversal:
    def test_reversal_restores_aggregate(self):
        rep = _ledger()
        rep.register_provider("p1")
        rep.record_rating(_job("j0"), 4)
        before = rep.get("p1")
        event = rep.record_job_outcome(_job(), success=True, earnings=Decimal("97"))
        reversal = rep.reverse(event.event_id, "fraudulent job", actor="operator:o1")

        after = rep.get("p1")
        assert after.score == before.score
        assert after.successful_jobs == before.successful_jobs
        assert after.total_earnings == before.total_earnings
        assert reversal.score_delta == pytest.approx(-event.score_delta)

        original = rep.get_event(event.event_id)
        assert original.status == EventStatus.REVERSED.value
        assert original.related_events == [reversal.event_id]
        assert reversal.related_events == [event.event_id]
        assert reversal.is_reversible is False
        assert "reversal" in reversal.context["tags"]

    def test_second_reversal_rejected(self):
        rep = _ledger()
        rep.register_provider("p1")
        event = rep.record_job_outcome(_job(), success=True)
        rep.reverse(event.event_id, "first")
        score = rep.get("p1").score
        with pytest.raises(EventAlreadyReversed):
            rep.reverse(event.event_id, "second")
        assert rep.get("p1").score == score

    def test_reversal_event_not_reversible(self):
        rep = _ledger()
        rep.register_provider("p1")
        event = rep.record_job_outcome(_job(), success=True)
        reversal = rep.reverse(event.event_id, "oops")
        with pytest.raises(ReversalNotAllowed):
            rep.reverse(reversal.event_id, "undo the undo")

    def test_reason_required(self):
        rep = _ledger()
        with pytest.raises(ValidationError):
            rep.reverse("rep_x", "")

    def test_unknown_event(self):
        rep = _ledger()
        with pytest.raises(NotFound):
            rep.reverse("rep_missing", "why")


# ── Failure path ──────────────────────────────────────────────────────


class TestFailedEvents:
    def test_apply_failure_parks_event(self, monkeypatch):
        rep = _ledger()
        rep.register_provider("p1")
        failures = []
        rep.bus.subscribe(failures.append, prefix="reputation.failed")

        def boom(conn, event, reset=False):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(rep, "_apply", boom)
        with pytest.raises(ReputationUpdateFailed):
            rep.record_job_outcome(_job(), success=True)

        parked = rep.failed_events()
        assert len(parked) == 1
        assert parked[0].status == EventStatus.FAILED.value
        assert "disk I/O error" in parked[0].system_notes
        assert rep.get("p1").score == BASE_SCORE
        assert len(failures) == 1

    def test_failed_event_cannot_be_reversed(self, monkeypatch):
        rep = _ledger()
        rep.register_provider("p1")

        def boom(conn, event, reset=False):
            raise ValueError("bad components")

        monkeypatch.setattr(rep, "_apply", boom)
        with pytest.raises(ReputationUpdateFailed):
            rep.record_job_outcome(_job(), success=True)
        monkeypatch.undo()
        with pytest.raises(ReversalNotAllowed):
            rep.reverse(rep.failed_events()[0].event_id, "cleanup")

    def test_reversal_apply_failure_leaves_original_processed(self, monkeypatch):
        rep = _ledger()
        rep.register_provider("p1")
        event = rep.adjust("p1", ReputationEventType.BONUS, 50, reason="uptime")
        failures = []
        rep.bus.subscribe(failures.append, prefix="reputation.failed")

        def boom(conn, event, reset=False):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(rep, "_apply", boom)
        with pytest.raises(ReputationUpdateFailed) as exc:
            rep.reverse(event.event_id, "duplicate bonus")
        monkeypatch.undo()

        assert rep.get_event(event.event_id).status == EventStatus.PROCESSED.value
        assert rep.get_event(event.event_id).related_events == []
        assert rep.get("p1").adjustment_points == 50

        parked = rep.failed_events()
        assert [p.event_id for p in parked] == [exc.value.details["reversal_event_id"]]
        assert parked[0].context["reverse_of"] == event.event_id
        assert "database is locked" in parked[0].system_notes
        assert len(failures) == 1

        rep.reverse(event.event_id, "duplicate bonus")
        assert rep.get("p1").adjustment_points == 0


# ── Subjects & hooks ──────────────────────────────────────────────────


class TestSubjects:
    def test_unknown_subject(self):
        with pytest.raises(NotFound):
            _ledger().get("nobody")

    def test_register_is_idempotent(self):
        rep = _ledger()
        rep.register_provider("p1", "0xabc")
        rep.record_job_outcome(_job(), success=True)
        again = rep.register_provider("p1", "0xdef")
        assert again.successful_jobs == 1
        assert again.wallet_address == "0xabc"

    def test_availability(self):
        rep = _ledger()
        rep.register_provider("p1")
        assert rep.set_availability("p1", "offline").availability_status == "offline"
        with pytest.raises(ValueError):
            rep.set_availability("p1", "sleeping")

    def test_client_activity(self):
        rep = _ledger()
        rep.record_client_activity(_job(), Decimal("100"))
        agg = rep.get("c1")
        assert agg.subject_type == SubjectType.CLIENT.value
        assert agg.total_spent == Decimal("100")

    def test_leaderboard_ordering(self):
        rep = _ledger()
        for pid in ("p1", "p2", "p3"):
            rep.register_provider(pid)
        rep.record_job_outcome(_job("a", provider="p2"), success=True)
        rep.record_job_outcome(_job("b", provider="p3"), success=False)
        board = rep.leaderboard(limit=3)
        assert [b["subject_id"] for b in board] == ["p2", "p1", "p3"]

    def test_transaction_timeline_hook(self):
        rep = _ledger()
        rep.register_provider("p1")
        tx = rep.ledger.record(TransactionType.RELEASE, no_fees("10"), job_id="j1")
        event = rep.record_job_outcome(_job(), success=True, tx_id=tx.tx_id)
        entry = rep.ledger.get(tx.tx_id).events[-1]
        assert entry["type"] == "reputation_update"
        assert entry["data"]["reputation_event_id"] == event.event_id

    def test_add_note(self):
        rep = _ledger()
        rep.register_provider("p1")
        event = rep.record_rating(_job(), 5)
        rep.add_note(event.event_id, "mirror failed")
        noted = rep.add_note(event.event_id, "retried")
        assert noted.system_notes == "mirror failed\nretried"
        assert noted.status == EventStatus.PROCESSED.value

    async def test_chain_reputation(self):
        rep = _ledger()
        await rep.settlement.submit_rating("0xabc", "j1", 5)
        chain = await rep.chain_reputation("0xabc")
        assert chain["available"] is True
        assert chain["total_ratings"] == 1
