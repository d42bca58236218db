# Meridian Reputation Ledger: append-only reputation events
#
# Every reputation change is a ReputationEvent. The event is written as
# pending, then applied to the subject's aggregate and flipped to processed in
# one SQLite transaction. Processed events are immutable; a reversal is a new
# event carrying the inverted component deltas, linked both ways through
# related_events.
#
# Score (reliability score, 0–10000):
#   base        1000
#   rating      averageRating × 200            (0–1000)
#   success     successRate / 100 × 300        (0–300)
#   volume      min(successfulJobs × 5, 500)
#   adjustments penalty / bonus / manual points
#
# Display tiers:
#   New:      < 1100
#   Bronze:   1100–1499
#   Silver:   1500–1899
#   Gold:     1900–2299
#   Platinum: 2300–2599
#   Diamond:  2600+

import logging
import sqlite3
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from db import decode_json, encode_json, next_updated_at, sqlite_connection, sqlite_transaction
from errors import (
    EventAlreadyReversed,
    NotFound,
    ReputationUpdateFailed,
    ReversalNotAllowed,
    ValidationError,
)
from events import EventBus, EventType, get_event_bus
from ledger import TransactionLedger, get_transaction_ledger
from settlement import SettlementClient, get_settlement_client

log = logging.getLogger("meridian.reputation")

# What an aggregate write can fail with; the event is parked, never retried
APPLY_ERRORS = (sqlite3.Error, ArithmeticError, ValueError, TypeError)


class _ReversalApplyFailed(Exception):
    """Raised inside the reversal transaction so it rolls back."""


# ── Scoring constants ─────────────────────────────────────────────────

BASE_SCORE = 1000.0
RATING_WEIGHT = 200.0
SUCCESS_WEIGHT = 300.0
VOLUME_PER_JOB = 5.0
VOLUME_CAP = 500.0
SCORE_CEILING = 10000.0

MIN_WEIGHT = 0.1
MAX_WEIGHT = 5.0


class ReputationTier(str, Enum):
    NEW = "new"
    BRONZE = "bronze"
    SILVER = "silver"
    GOLD = "gold"
    PLATINUM = "platinum"
    DIAMOND = "diamond"


def score_to_tier(score: float) -> ReputationTier:
    if score >= 2600:
        return ReputationTier.DIAMOND
    elif score >= 2300:
        return ReputationTier.PLATINUM
    elif score >= 1900:
        return ReputationTier.GOLD
    elif score >= 1500:
        return ReputationTier.SILVER
    elif score >= 1100:
        return ReputationTier.BRONZE
    return ReputationTier.NEW


# ── Penalty / bonus points ────────────────────────────────────────────

class PenaltyType(str, Enum):
    JOB_FAILURE = "job_failure"                    # Provider-caused failure
    PROVIDER_CANCELLATION = "provider_cancellation"
    DISPUTE_LOST = "dispute_lost"                  # Client-favor resolution
    DISPUTE_PARTIAL = "dispute_partial"            # Partial refund ordered
    TERMS_VIOLATION = "terms_violation"
    FRAUD_FLAG = "fraud_flag"


PENALTY_POINTS = {
    PenaltyType.JOB_FAILURE: -50,
    PenaltyType.PROVIDER_CANCELLATION: -50,
    PenaltyType.DISPUTE_LOST: -150,
    PenaltyType.DISPUTE_PARTIAL: -50,
    PenaltyType.TERMS_VIOLATION: -100,
    PenaltyType.FRAUD_FLAG: -250,
}


# ── Enums ─────────────────────────────────────────────────────────────

class SubjectType(str, Enum):
    PROVIDER = "provider"
    CLIENT = "client"


class Availability(str, Enum):
    AVAILABLE = "available"
    BUSY = "busy"
    OFFLINE = "offline"


class ReputationEventType(str, Enum):
    JOB_COMPLETION = "job_completion"
    RATING = "rating"
    DISPUTE = "dispute"
    PENALTY = "penalty"
    BONUS = "bonus"
    MANUAL = "manual"


class ReputationAction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"
    RESET = "reset"


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    REVERSED = "reversed"


# Aggregate fields an event may move. Money fields are Decimal strings.
COUNT_COMPONENTS = ("successful_jobs", "failed_jobs", "rating_sum", "rating_count",
                    "adjustment_points")
MONEY_COMPONENTS = ("total_earnings", "total_spent")


# ── Records ───────────────────────────────────────────────────────────

@dataclass
class ReputationAggregate:
    """Reputation state for one provider or client."""
    subject_id: str = ""
    subject_type: str = SubjectType.PROVIDER.value
    wallet_address: str = ""
    availability_status: str = Availability.AVAILABLE.value

    score: float = BASE_SCORE
    successful_jobs: int = 0
    failed_jobs: int = 0
    rating_sum: float = 0.0
    rating_count: float = 0.0
    average_rating: float = 0.0
    success_rate: float = 0.0
    total_earnings: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    adjustment_points: float = 0.0

    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def total_jobs(self) -> int:
        return self.successful_jobs + self.failed_jobs

    @property
    def tier(self) -> ReputationTier:
        return score_to_tier(self.score)

    def recompute(self):
        """Derive rates and score from the counters, clamped to their bounds."""
        self.successful_jobs = max(0, int(self.successful_jobs))
        self.failed_jobs = max(0, int(self.failed_jobs))
        self.rating_sum = max(0.0, self.rating_sum)
        self.rating_count = max(0.0, self.rating_count)

        total = self.successful_jobs + self.failed_jobs
        self.success_rate = _clamp(self.successful_jobs / total * 100 if total else 0.0, 0, 100)
        self.average_rating = _clamp(
            self.rating_sum / self.rating_count if self.rating_count > 1e-9 else 0.0, 0, 5
        )
        raw = (
            BASE_SCORE
            + self.average_rating * RATING_WEIGHT
            + self.success_rate / 100 * SUCCESS_WEIGHT
            + min(self.successful_jobs * VOLUME_PER_JOB, VOLUME_CAP)
            + self.adjustment_points
        )
        self.score = round(_clamp(raw, 0, SCORE_CEILING), 4)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["total_earnings"] = str(self.total_earnings)
        d["total_spent"] = str(self.total_spent)
        d["reliability_score"] = self.score
        d["tier"] = self.tier.value
        d["total_jobs"] = self.total_jobs
        return d


@dataclass
class ReputationEvent:
    event_id: str = field(default_factory=lambda: f"rep_{uuid.uuid4().hex[:16]}")
    subject_id: str = ""
    event_type: str = ReputationEventType.MANUAL.value
    action: str = ReputationAction.INCREASE.value
    score_before: Optional[float] = None
    score_after: Optional[float] = None
    score_delta: Optional[float] = None
    weight: float = 1.0
    is_reversible: bool = True
    status: str = EventStatus.PENDING.value
    components: dict = field(default_factory=dict)
    context: dict = field(default_factory=dict)     # job_id, tx_id, rating, tags ...
    description: str = ""
    related_events: list = field(default_factory=list)
    system_notes: str = ""
    reverse_reason: str = ""
    created_at: float = 0.0
    processed_at: Optional[float] = None
    reversed_at: Optional[float] = None
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _row_to_aggregate(row) -> ReputationAggregate:
    return ReputationAggregate(
        subject_id=row["subject_id"],
        subject_type=row["subject_type"],
        wallet_address=row["wallet_address"] or "",
        availability_status=row["availability_status"] or Availability.AVAILABLE.value,
        score=row["score"],
        successful_jobs=row["successful_jobs"],
        failed_jobs=row["failed_jobs"],
        rating_sum=row["rating_sum"],
        rating_count=row["rating_count"],
        average_rating=row["average_rating"],
        success_rate=row["success_rate"],
        total_earnings=Decimal(row["total_earnings"] or "0"),
        total_spent=Decimal(row["total_spent"] or "0"),
        adjustment_points=row["adjustment_points"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_event(row) -> ReputationEvent:
    return ReputationEvent(
        event_id=row["event_id"],
        subject_id=row["subject_id"],
        event_type=row["event_type"],
        action=row["action"],
        score_before=row["score_before"],
        score_after=row["score_after"],
        score_delta=row["score_delta"],
        weight=row["weight"],
        is_reversible=bool(row["is_reversible"]),
        status=row["status"],
        components=decode_json(row["components"], {}),
        context=decode_json(row["context"], {}),
        description=row["description"] or "",
        related_events=decode_json(row["related_events"], []),
        system_notes=row["system_notes"] or "",
        reverse_reason=row["reverse_reason"] or "",
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        reversed_at=row["reversed_at"],
        updated_at=row["updated_at"],
    )


def _apply_components(agg: ReputationAggregate, components: dict):
    for name in COUNT_COMPONENTS:
        if name in components:
            setattr(agg, name, getattr(agg, name) + components[name])
    for name in MONEY_COMPONENTS:
        if name in components:
            setattr(agg, name, getattr(agg, name) + Decimal(str(components[name])))
    agg.recompute()


def _invert(components: dict) -> dict:
    inverted = {}
    for name, value in components.items():
        if name in MONEY_COMPONENTS:
            inverted[name] = str(-Decimal(str(value)))
        else:
            inverted[name] = -value
    return inverted


# ── Ledger ────────────────────────────────────────────────────────────

class ReputationLedger:
    """Single entry point for every reputation write.

    Job outcomes, ratings, disputes and operator adjustments all become
    ReputationEvents here; nothing else touches the aggregates.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        ledger: Optional[TransactionLedger] = None,
        bus: Optional[EventBus] = None,
        settlement: Optional[SettlementClient] = None,
    ):
        self.db_path = db_path
        self.ledger = ledger or get_transaction_ledger()
        self.bus = bus or get_event_bus()
        self._settlement = settlement

    @property
    def settlement(self) -> SettlementClient:
        if self._settlement is None:
            self._settlement = get_settlement_client()
        return self._settlement

    # ── Subjects ──────────────────────────────────────────────────────

    def register(self, subject_id: str, subject_type: SubjectType = SubjectType.PROVIDER,
                 wallet_address: str = "") -> ReputationAggregate:
        """Create a subject at the base score. Existing subjects are returned as is."""
        if not subject_id:
            raise ValidationError("subject_id is required")
        subject_type = SubjectType(subject_type)
        with sqlite_transaction(self.db_path) as conn:
            created = self._ensure_subject(conn, subject_id, subject_type, wallet_address)
            if not created and wallet_address:
                conn.execute(
                    """UPDATE reputation_subjects SET wallet_address = ?, updated_at = ?
                       WHERE subject_id = ? AND wallet_address = ''""",
                    (wallet_address, time.time(), subject_id),
                )
        agg = self.get(subject_id)
        if created and subject_type == SubjectType.PROVIDER:
            self.bus.publish(
                EventType.PROVIDER_REGISTERED, "provider", subject_id,
                data={"wallet_address": wallet_address, "score": agg.score},
            )
            log.info("REPUTATION %s registered (%s) score=%.0f",
                     subject_id, subject_type.value, agg.score)
        return agg

    def register_provider(self, provider_id: str, wallet_address: str = "") -> ReputationAggregate:
        return self.register(provider_id, SubjectType.PROVIDER, wallet_address)

    def _ensure_subject(self, conn, subject_id: str, subject_type: SubjectType,
                        wallet_address: str = "") -> bool:
        agg = ReputationAggregate(subject_id=subject_id, subject_type=subject_type.value,
                                  wallet_address=wallet_address)
        agg.recompute()
        ts = time.time()
        cur = conn.execute(
            """INSERT OR IGNORE INTO reputation_subjects
               (subject_id, subject_type, wallet_address, availability_status, score,
                successful_jobs, failed_jobs, rating_sum, rating_count, average_rating,
                success_rate, total_earnings, total_spent, adjustment_points,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, 0, 0, 0, 0, 0, 0, '0', '0', 0, ?, ?)""",
            (subject_id, subject_type.value, wallet_address,
             Availability.AVAILABLE.value, agg.score, ts, ts),
        )
        return cur.rowcount > 0

    def get(self, subject_id: str) -> ReputationAggregate:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM reputation_subjects WHERE subject_id = ?", (subject_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"Reputation subject {subject_id} not found")
        return _row_to_aggregate(row)

    def set_availability(self, subject_id: str, status: Availability) -> ReputationAggregate:
        status = Availability(status)
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT updated_at FROM reputation_subjects WHERE subject_id = ?",
                (subject_id,),
            ).fetchone()
            if not row:
                raise NotFound(f"Reputation subject {subject_id} not found")
            conn.execute(
                """UPDATE reputation_subjects SET availability_status = ?, updated_at = ?
                   WHERE subject_id = ?""",
                (status.value, next_updated_at(row["updated_at"]), subject_id),
            )
        self.bus.publish(EventType.PROVIDER_AVAILABILITY, "provider", subject_id,
                         data={"availability_status": status.value})
        return self.get(subject_id)

    def leaderboard(self, subject_type: SubjectType = SubjectType.PROVIDER,
                    limit: int = 20) -> list[dict]:
        """Top-N subjects by score."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM reputation_subjects WHERE subject_type = ?
                   ORDER BY score DESC LIMIT ?""",
                (SubjectType(subject_type).value, limit),
            ).fetchall()
        return [_row_to_aggregate(r).to_dict() for r in rows]

    # ── Events ────────────────────────────────────────────────────────

    def get_event(self, event_id: str) -> ReputationEvent:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM reputation_events WHERE event_id = ?", (event_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"Reputation event {event_id} not found")
        return _row_to_event(row)

    def events_for(self, subject_id: str, limit: int = 100) -> list[ReputationEvent]:
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM reputation_events WHERE subject_id = ?
                   ORDER BY created_at DESC, rowid DESC LIMIT ?""",
                (subject_id, limit),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def failed_events(self, limit: int = 100) -> list[ReputationEvent]:
        """Events parked as failed, awaiting an operator."""
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                """SELECT * FROM reputation_events WHERE status = ?
                   ORDER BY created_at ASC LIMIT ?""",
                (EventStatus.FAILED.value, limit),
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def record(
        self,
        subject_id: str,
        event_type: ReputationEventType,
        components: dict,
        description: str = "",
        context: Optional[dict] = None,
        weight: float = 1.0,
        is_reversible: bool = True,
        subject_type: SubjectType = SubjectType.PROVIDER,
        action: Optional[ReputationAction] = None,
        tx_id: Optional[str] = None,
    ) -> ReputationEvent:
        """Write a pending event, then apply it and mark it processed.

        If applying fails the event is parked as failed and
        ReputationUpdateFailed is raised. Failed events are never retried
        automatically.
        """
        weight = float(weight)
        if not MIN_WEIGHT <= weight <= MAX_WEIGHT:
            raise ValidationError(f"weight must be within [{MIN_WEIGHT}, {MAX_WEIGHT}], got {weight}")

        ts = time.time()
        event = ReputationEvent(
            subject_id=subject_id,
            event_type=ReputationEventType(event_type).value,
            action=(ReputationAction(action).value if action else ReputationAction.INCREASE.value),
            weight=weight,
            is_reversible=is_reversible,
            components=components,
            context={**(context or {}), **({"tx_id": tx_id} if tx_id else {})},
            description=description,
            created_at=ts,
            updated_at=ts,
        )

        with sqlite_transaction(self.db_path) as conn:
            self._ensure_subject(conn, subject_id, SubjectType(subject_type))
            self._insert_event(conn, event)

        try:
            with sqlite_transaction(self.db_path) as conn:
                self._apply(conn, event, reset=action == ReputationAction.RESET)
        except APPLY_ERRORS as e:
            self._mark_failed(event, f"{type(e).__name__}: {e}")
            raise ReputationUpdateFailed(
                f"Reputation event {event.event_id} for {subject_id} failed to apply",
                {"event_id": event.event_id, "subject_id": subject_id, "error": str(e)},
            ) from e

        self._after_processed(event, tx_id)
        return event

    def _insert_event(self, conn, event: ReputationEvent):
        conn.execute(
            """INSERT INTO reputation_events
               (event_id, subject_id, event_type, action, score_before, score_after,
                score_delta, weight, is_reversible, status, components, context,
                description, related_events, system_notes, reverse_reason,
                created_at, processed_at, reversed_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                event.event_id, event.subject_id, event.event_type, event.action,
                event.score_before, event.score_after, event.score_delta,
                event.weight, int(event.is_reversible), event.status,
                encode_json(event.components), encode_json(event.context),
                event.description, encode_json(event.related_events),
                event.system_notes, event.reverse_reason, event.created_at,
                event.processed_at, event.reversed_at, event.updated_at,
            ),
        )

    def _apply(self, conn, event: ReputationEvent, reset: bool = False):
        """Apply an event's components to its subject and mark it processed."""
        row = conn.execute(
            "SELECT * FROM reputation_subjects WHERE subject_id = ?", (event.subject_id,)
        ).fetchone()
        if not row:
            raise ValueError(f"subject {event.subject_id} missing")
        agg = _row_to_aggregate(row)
        before = agg.score

        if reset:
            # Reset clears operator adjustments; record what was cleared so a
            # reversal restores it
            event.components = {"adjustment_points": -agg.adjustment_points}
        _apply_components(agg, event.components)

        ts = time.time()
        event.score_before = before
        event.score_after = agg.score
        event.score_delta = agg.score - before
        if not reset:
            event.action = (ReputationAction.DECREASE.value if event.score_delta < 0
                            else ReputationAction.INCREASE.value)
        event.status = EventStatus.PROCESSED.value
        event.processed_at = ts
        event.updated_at = next_updated_at(event.updated_at)

        self._save_aggregate(conn, agg)
        cur = conn.execute(
            """UPDATE reputation_events
               SET status = ?, action = ?, score_before = ?, score_after = ?,
                   score_delta = ?, components = ?, processed_at = ?, updated_at = ?
               WHERE event_id = ? AND status = ?""",
            (event.status, event.action, event.score_before, event.score_after,
             event.score_delta, encode_json(event.components), event.processed_at,
             event.updated_at, event.event_id, EventStatus.PENDING.value),
        )
        if cur.rowcount != 1:
            raise ValueError(f"event {event.event_id} is no longer pending")
        return agg

    def _save_aggregate(self, conn, agg: ReputationAggregate):
        agg.updated_at = next_updated_at(agg.updated_at)
        conn.execute(
            """UPDATE reputation_subjects
               SET score = ?, successful_jobs = ?, failed_jobs = ?, rating_sum = ?,
                   rating_count = ?, average_rating = ?, success_rate = ?,
                   total_earnings = ?, total_spent = ?, adjustment_points = ?,
                   updated_at = ?
               WHERE subject_id = ?""",
            (agg.score, agg.successful_jobs, agg.failed_jobs, agg.rating_sum,
             agg.rating_count, agg.average_rating, agg.success_rate,
             str(agg.total_earnings), str(agg.total_spent), agg.adjustment_points,
             agg.updated_at, agg.subject_id),
        )

    def _mark_failed(self, event: ReputationEvent, note: str):
        event.status = EventStatus.FAILED.value
        event.system_notes = note
        with sqlite_transaction(self.db_path) as conn:
            conn.execute(
                """UPDATE reputation_events SET status = ?, system_notes = ?, updated_at = ?
                   WHERE event_id = ? AND status = ?""",
                (event.status, note, next_updated_at(event.updated_at),
                 event.event_id, EventStatus.PENDING.value),
            )
        self.bus.publish(
            EventType.REPUTATION_FAILED, "provider", event.subject_id,
            data={"reputation_event_id": event.event_id, "error": note},
        )
        log.error("REPUTATION EVENT FAILED %s subject=%s: %s",
                  event.event_id, event.subject_id, note)

    def _park_failed_reversal(self, reversal: ReputationEvent, note: str):
        # _apply may have half-filled the event before failing
        reversal.status = EventStatus.PENDING.value
        reversal.score_before = reversal.score_after = reversal.score_delta = None
        reversal.processed_at = None
        with sqlite_transaction(self.db_path) as conn:
            self._insert_event(conn, reversal)
        self._mark_failed(reversal, note)

    def _after_processed(self, event: ReputationEvent, tx_id: Optional[str] = None):
        self.bus.publish(
            EventType.REPUTATION_UPDATED, "provider", event.subject_id,
            data={"reputation_event_id": event.event_id, "event_type": event.event_type,
                  "score_before": event.score_before, "score_after": event.score_after,
                  "score_delta": event.score_delta, "job_id": event.context.get("job_id")},
        )
        if tx_id:
            self.ledger.add_event(
                tx_id, "reputation_update",
                {"reputation_event_id": event.event_id, "subject_id": event.subject_id,
                 "score_delta": event.score_delta},
            )
        log.info("REPUTATION %s %s %+.2f (%.2f → %.2f) event=%s",
                 event.subject_id, event.event_type, event.score_delta,
                 event.score_before, event.score_after, event.event_id)

    # ── Job outcomes ──────────────────────────────────────────────────

    def record_job_outcome(
        self,
        job,
        success: bool,
        neutral: bool = False,
        earnings: Optional[Decimal] = None,
        reason: str = "",
        penalty: PenaltyType = PenaltyType.JOB_FAILURE,
        event_type: ReputationEventType = ReputationEventType.JOB_COMPLETION,
        weight: float = 1.0,
        tx_id: Optional[str] = None,
    ) -> ReputationEvent:
        """Provider-side event for a job's outcome.

        success: successful job (+ earnings). failure: failed job + penalty
        points. neutral: recorded with no effect on the score.
        """
        event_type = ReputationEventType(event_type)
        penalty = PenaltyType(penalty)
        if neutral:
            components = {}
            description = f"Job {job.job_id} ended without fault ({reason or 'neutral'})"
        elif success:
            components = {"successful_jobs": 1}
            if earnings is not None:
                components["total_earnings"] = str(earnings)
            description = f"Job {job.job_id} completed successfully"
        else:
            components = {
                "failed_jobs": 1,
                "adjustment_points": PENALTY_POINTS[penalty] * float(weight),
            }
            description = f"Job {job.job_id} failed ({reason or penalty.value})"

        return self.record(
            job.provider_id,
            event_type,
            components,
            description=description,
            context={"job_id": job.job_id, "success": success, "neutral": neutral,
                     "reason": reason, "tags": [event_type.value]},
            weight=weight,
            tx_id=tx_id,
        )

    def record_client_activity(self, job, spent: Decimal,
                               tx_id: Optional[str] = None) -> ReputationEvent:
        """Client-side event for a completed job."""
        return self.record(
            job.client_id,
            ReputationEventType.JOB_COMPLETION,
            {"successful_jobs": 1, "total_spent": str(spent)},
            description=f"Job {job.job_id} completed as client",
            context={"job_id": job.job_id, "role": "client"},
            subject_type=SubjectType.CLIENT,
            tx_id=tx_id,
        )

    def record_rating(self, job, rating: int, review: str = "",
                      weight: float = 1.0) -> ReputationEvent:
        """Weighted rating: adds rating × weight to the sum and weight to the count."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError(f"rating must be an integer 1–5, got {rating!r}")
        weight = float(weight)
        return self.record(
            job.provider_id,
            ReputationEventType.RATING,
            {"rating_sum": rating * weight, "rating_count": weight},
            description=f"Rated {rating}/5 for job {job.job_id}",
            context={"job_id": job.job_id, "rating": rating, "review": review,
                     "rated_by": job.client_id},
            weight=weight,
        )

    def adjust(
        self,
        subject_id: str,
        event_type: ReputationEventType,
        points: float = 0.0,
        reason: str = "",
        weight: float = 1.0,
        reset: bool = False,
        job_id: str = "",
    ) -> ReputationEvent:
        """Operator or dispute adjustment: penalty, bonus, manual, or reset."""
        event_type = ReputationEventType(event_type)
        points = float(points)
        if event_type == ReputationEventType.PENALTY and points > 0:
            points = -points
        if event_type == ReputationEventType.BONUS and points < 0:
            raise ValidationError("bonus points must be positive")
        return self.record(
            subject_id,
            event_type,
            {} if reset else {"adjustment_points": points * weight},
            description=reason or f"{event_type.value} adjustment",
            context={"reason": reason, "points": points, "job_id": job_id or None},
            weight=weight,
            action=ReputationAction.RESET if reset else None,
        )

    # ── Reversal ──────────────────────────────────────────────────────

    def reverse(self, event_id: str, reason: str, actor: str = "system") -> ReputationEvent:
        """Compensate a processed event with a new, inverted one.

        Both the compensating event and the original's reversed marking are
        written in the same SQLite transaction, guarded by the original still
        being processed. If the compensating event cannot be applied, nothing
        is written: the original stays processed and the attempt is parked as
        a failed event.
        """
        if not reason:
            raise ValidationError("a reversal reason is required")

        try:
            return self._reverse(event_id, reason, actor)
        except _ReversalApplyFailed as failed:
            reversal, error = failed.args
            self._park_failed_reversal(reversal, f"{type(error).__name__}: {error}")
            raise ReputationUpdateFailed(
                f"Reversal of {event_id} failed to apply; the original stays processed",
                {"event_id": event_id, "reversal_event_id": reversal.event_id,
                 "subject_id": reversal.subject_id, "error": str(error)},
            ) from error

    def _reverse(self, event_id: str, reason: str, actor: str) -> ReputationEvent:
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM reputation_events WHERE event_id = ?", (event_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"Reputation event {event_id} not found")
            original = _row_to_event(row)

            if original.status == EventStatus.REVERSED.value:
                raise EventAlreadyReversed(
                    f"Reputation event {event_id} is already reversed",
                    {"event_id": event_id, "related_events": original.related_events},
                )
            if not original.is_reversible:
                raise ReversalNotAllowed(
                    f"Reputation event {event_id} is not reversible", {"event_id": event_id},
                )
            if original.status != EventStatus.PROCESSED.value:
                raise ReversalNotAllowed(
                    f"Reputation event {event_id} is {original.status}, not processed",
                    {"event_id": event_id, "status": original.status},
                )

            ts = time.time()
            reversal = ReputationEvent(
                subject_id=original.subject_id,
                event_type=original.event_type,
                weight=original.weight,
                is_reversible=False,
                components=_invert(original.components),
                context={**original.context, "tags": ["reversal"],
                         "reverse_of": event_id, "actor": actor},
                description=f"Reversal of {event_id}: {reason}",
                related_events=[event_id],
                reverse_reason=reason,
                created_at=ts,
                updated_at=ts,
            )
            self._insert_event(conn, reversal)
            try:
                self._apply(conn, reversal)
            except APPLY_ERRORS as e:
                # Rolls back the whole reversal
                raise _ReversalApplyFailed(reversal, e) from e

            cur = conn.execute(
                """UPDATE reputation_events
                   SET status = ?, related_events = ?, reverse_reason = ?,
                       reversed_at = ?, updated_at = ?
                   WHERE event_id = ? AND status = ?""",
                (EventStatus.REVERSED.value,
                 encode_json(original.related_events + [reversal.event_id]),
                 reason, ts, next_updated_at(original.updated_at),
                 event_id, EventStatus.PROCESSED.value),
            )
            if cur.rowcount != 1:
                raise EventAlreadyReversed(f"Reputation event {event_id} was reversed concurrently")

        self.bus.publish(
            EventType.REPUTATION_REVERSED, "provider", reversal.subject_id,
            data={"reputation_event_id": reversal.event_id, "reverse_of": event_id,
                  "reason": reason, "score_delta": reversal.score_delta},
        )
        log.info("REPUTATION REVERSED %s by %s (%+.2f) subject=%s: %s",
                 event_id, reversal.event_id, reversal.score_delta,
                 reversal.subject_id, reason)
        return reversal

    def add_note(self, event_id: str, note: str) -> ReputationEvent:
        """Append an operator-facing note. Notes never change the event's effect."""
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT system_notes, updated_at FROM reputation_events WHERE event_id = ?",
                (event_id,),
            ).fetchone()
            if not row:
                raise NotFound(f"Reputation event {event_id} not found")
            notes = "\n".join(n for n in (row["system_notes"], note) if n)
            conn.execute(
                "UPDATE reputation_events SET system_notes = ?, updated_at = ? WHERE event_id = ?",
                (notes, next_updated_at(row["updated_at"]), event_id),
            )
        return self.get_event(event_id)

    # ── On-chain mirror ───────────────────────────────────────────────

    async def chain_reputation(self, wallet_address: str) -> dict:
        """Reputation as the settlement layer's reputation contract sees it."""
        result = await self.settlement.get_reputation(wallet_address)
        if not result.success or result.reputation is None:
            return {"available": False, "error": result.error}
        return {"available": True, **result.reputation.to_dict()}


# ── Singleton ─────────────────────────────────────────────────────────

_reputation_ledger: Optional[ReputationLedger] = None


def get_reputation_ledger() -> ReputationLedger:
    global _reputation_ledger
    if _reputation_ledger is None:
        _reputation_ledger = ReputationLedger()
    return _reputation_ledger
