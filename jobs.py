# Meridian Job State Machine
# Owns the canonical status of every job and is the only writer of it.
#
# Job lifecycle:
#   draft → posted → accepted → running ⇄ paused → completed | failed | cancelled
#
# A dispute is an orthogonal flag, raised from accepted / running / paused, or
# from completed within the dispute window. While it is open, complete, fail
# and cancel are frozen until an operator resolves it.
#
# Money first: a transition that moves funds parks the job in a *_pending
# sub-status, calls the EscrowCoordinator (no lock held while waiting), and
# only then moves the status. If settlement cannot finish the job stays where
# it was, in settlement_failed, until retry_settlement.
#
# Every job write is a compare-and-swap on (job_id, version). Per-job
# operations never interleave; different jobs never contend.

import asyncio
import logging
import os
import time
import uuid
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Optional

from db import decode_json, encode_json, next_updated_at, sqlite_connection, sqlite_transaction
from errors import (
    ConcurrencyConflict,
    InvalidTransition,
    JobAlreadyAccepted,
    LedgerInvariantViolation,
    NotFound,
    ReputationUpdateFailed,
    ReversalNotAllowed,
    SettlementUnavailable,
    SettlementUnknownOutcome,
    Unauthorized,
    ValidationError,
)
from escrow import EscrowCoordinator, EscrowOutcome, ReconcileReport, escrow_amount_for
from events import EventBus, EventType, get_event_bus
from fees import quantize, to_decimal
from ledger import TransactionType
from reputation import (
    PENALTY_POINTS,
    Availability,
    PenaltyType,
    ReputationEventType,
    ReputationLedger,
)

log = logging.getLogger("meridian.jobs")

DISPUTE_WINDOW_SEC = float(os.environ.get("MERIDIAN_DISPUTE_WINDOW_SEC", str(72 * 3600)))
CAS_ATTEMPTS = 5


# ── States ────────────────────────────────────────────────────────────

class JobState(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"
    ACCEPTED = "accepted"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"     # Terminal: escrow released
    FAILED = "failed"           # Terminal: escrow refunded
    CANCELLED = "cancelled"     # Terminal: refunded if it was ever funded


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})

# Valid state transitions. Anything not here is rejected.
# Dispute resolutions may close a job from any active state.
VALID_TRANSITIONS = {
    JobState.DRAFT:     {JobState.POSTED, JobState.CANCELLED},
    JobState.POSTED:    {JobState.ACCEPTED, JobState.CANCELLED},
    JobState.ACCEPTED:  {JobState.RUNNING, JobState.FAILED, JobState.CANCELLED},
    JobState.RUNNING:   {JobState.PAUSED, JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED},
    JobState.PAUSED:    {JobState.RUNNING, JobState.FAILED, JobState.CANCELLED},
    JobState.COMPLETED: set(),
    JobState.FAILED:    set(),
    JobState.CANCELLED: set(),
}

DISPUTABLE_STATES = frozenset({
    JobState.ACCEPTED, JobState.RUNNING, JobState.PAUSED, JobState.COMPLETED,
})


class SubStatus(str, Enum):
    ESCROW_PENDING = "escrow_pending"
    RELEASE_PENDING = "release_pending"
    REFUND_PENDING = "refund_pending"
    SETTLEMENT_FAILED = "settlement_failed"


class PendingAction(str, Enum):
    CREATE = "create"
    RELEASE = "release"
    REFUND = "refund"


_PENDING_SUB_STATUS = {
    PendingAction.CREATE: SubStatus.ESCROW_PENDING,
    PendingAction.RELEASE: SubStatus.RELEASE_PENDING,
    PendingAction.REFUND: SubStatus.REFUND_PENDING,
}

# Sub-statuses that mean a worker is (or was) mid-call
_STALE_CANDIDATES = tuple(s.value for s in _PENDING_SUB_STATUS.values())


class PaymentType(str, Enum):
    FIXED = "fixed"
    HOURLY = "hourly"


class DisputeOutcome(str, Enum):
    CLIENT_FAVOR = "client-favor"
    PROVIDER_FAVOR = "provider-favor"
    PARTIAL_REFUND = "partial-refund"


class Fault(str, Enum):
    PROVIDER = "provider"
    CLIENT = "client"
    NONE = "none"


class Role(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    OPERATOR = "operator"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuthContext:
    """An already-authenticated caller."""
    user_id: str
    wallet_address: str = ""
    role: str = Role.CLIENT.value

    @property
    def label(self) -> str:
        return f"{self.role}:{self.user_id}"

    @property
    def is_operator(self) -> bool:
        return self.role in (Role.OPERATOR.value, Role.SYSTEM.value)


SYSTEM = AuthContext(user_id="meridian", role=Role.SYSTEM.value)


# ── Records ───────────────────────────────────────────────────────────

@dataclass
class Dispute:
    raised_by: str
    reason: str
    opened_at: float
    phase: str = "pre_completion"       # pre_completion | post_completion
    status: str = "open"                # open | resolved
    outcome: Optional[str] = None
    refund_amount: Optional[str] = None
    resolution_notes: str = ""
    resolved_by: str = ""
    resolved_at: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Job:
    job_id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}")
    title: str = ""
    client_id: str = ""
    client_wallet: str = ""
    provider_id: Optional[str] = None
    provider_wallet: str = ""
    status: str = JobState.DRAFT.value
    sub_status: Optional[str] = None
    pending_action: Optional[str] = None
    pending_target: Optional[str] = None
    pending_context: dict = field(default_factory=dict)
    payment_type: str = PaymentType.FIXED.value
    budget: Decimal = Decimal("0")
    max_hourly_rate: Decimal = Decimal("0")
    estimated_duration_hours: float = 0.0
    escrow_amount: Decimal = Decimal("0")
    escrow_id: Optional[str] = None
    escrow_reference: Optional[str] = None
    progress: float = 0.0
    metrics: dict = field(default_factory=dict)
    results: dict = field(default_factory=dict)
    lifecycle: dict = field(default_factory=dict)
    dispute: Optional[Dispute] = None
    rating: Optional[int] = None
    failure_reason: str = ""
    completion_event_id: Optional[str] = None
    version: int = 0
    updated_at: float = 0.0

    @property
    def state(self) -> JobState:
        return JobState(self.status)

    @property
    def disputed(self) -> bool:
        return self.dispute is not None and self.dispute.is_open

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("budget", "max_hourly_rate", "escrow_amount"):
            d[key] = str(d[key])
        d["disputed"] = self.disputed
        return d


_DECIMAL_COLUMNS = ("budget", "max_hourly_rate", "escrow_amount")
_JSON_COLUMNS = ("pending_context", "metrics", "results", "lifecycle")
JOB_COLUMNS = (
    "job_id", "title", "client_id", "client_wallet", "provider_id", "provider_wallet",
    "status", "sub_status", "pending_action", "pending_target", "pending_context",
    "payment_type", "budget", "max_hourly_rate", "estimated_duration_hours",
    "escrow_amount", "escrow_id", "escrow_reference", "progress", "metrics",
    "results", "lifecycle", "dispute", "rating", "failure_reason",
    "completion_event_id", "version", "updated_at",
)


def _to_column(name: str, value):
    if value is None:
        return None
    if name in _DECIMAL_COLUMNS:
        return str(value)
    if name in _JSON_COLUMNS:
        return encode_json(value)
    if name == "dispute":
        return encode_json(value.to_dict() if isinstance(value, Dispute) else value)
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_job(row) -> Job:
    dispute = decode_json(row["dispute"])
    return Job(
        job_id=row["job_id"],
        title=row["title"] or "",
        client_id=row["client_id"],
        client_wallet=row["client_wallet"] or "",
        provider_id=row["provider_id"],
        provider_wallet=row["provider_wallet"] or "",
        status=row["status"],
        sub_status=row["sub_status"],
        pending_action=row["pending_action"],
        pending_target=row["pending_target"],
        pending_context=decode_json(row["pending_context"], {}),
        payment_type=row["payment_type"],
        budget=Decimal(row["budget"]),
        max_hourly_rate=Decimal(row["max_hourly_rate"] or "0"),
        estimated_duration_hours=row["estimated_duration_hours"] or 0.0,
        escrow_amount=Decimal(row["escrow_amount"] or "0"),
        escrow_id=row["escrow_id"],
        escrow_reference=row["escrow_reference"],
        progress=row["progress"] or 0.0,
        metrics=decode_json(row["metrics"], {}),
        results=decode_json(row["results"], {}),
        lifecycle=decode_json(row["lifecycle"], {}),
        dispute=Dispute(**dispute) if dispute else None,
        rating=row["rating"],
        failure_reason=row["failure_reason"] or "",
        completion_event_id=row["completion_event_id"],
        version=row["version"],
        updated_at=row["updated_at"],
    )


# ── Job Store ─────────────────────────────────────────────────────────

class JobStore:
    """Job persistence. Every update is a compare-and-swap."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def create(self, job: Job) -> Job:
        job.updated_at = time.time()
        cols = ", ".join(JOB_COLUMNS)
        marks = ", ".join("?" for _ in JOB_COLUMNS)
        with sqlite_transaction(self.db_path) as conn:
            conn.execute(
                f"INSERT INTO jobs ({cols}) VALUES ({marks})",
                tuple(_to_column(c, getattr(job, c)) for c in JOB_COLUMNS),
            )
        return job

    def get(self, job_id: str) -> Job:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if not row:
            raise NotFound(f"Job {job_id} not found")
        return _row_to_job(row)

    def list(self, status: Optional[str] = None, client_id: Optional[str] = None,
             provider_id: Optional[str] = None, sub_status: Optional[str] = None,
             limit: int = 100) -> list[Job]:
        clauses, params = [], []
        for col, val in (("status", status), ("client_id", client_id),
                         ("provider_id", provider_id), ("sub_status", sub_status)):
            if val:
                clauses.append(f"{col} = ?")
                params.append(val.value if isinstance(val, Enum) else val)
        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM jobs WHERE {where} ORDER BY updated_at DESC LIMIT ?", params,
            ).fetchall()
        return [_row_to_job(r) for r in rows]

    def compare_and_set(self, job_id: str, changes: dict, expect: dict) -> Optional[Job]:
        """Apply ``changes`` only if every ``expect`` column still matches.

        None in ``expect`` means IS NULL. Returns the updated job, or None
        when the precondition no longer holds.
        """
        for col in list(changes) + list(expect):
            if col not in JOB_COLUMNS or col in ("job_id", "updated_at"):
                raise ValueError(f"Unknown job column: {col}")

        sets, params = [], []
        for col, val in changes.items():
            sets.append(f"{col} = ?")
            params.append(_to_column(col, val))
        where, where_params = ["job_id = ?"], [job_id]
        for col, val in expect.items():
            if val is None:
                where.append(f"{col} IS NULL")
            else:
                where.append(f"{col} = ?")
                where_params.append(_to_column(col, val))

        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT updated_at FROM jobs WHERE job_id = ?", (job_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"Job {job_id} not found")
            sets.append("version = version + 1")
            sets.append("updated_at = ?")
            params.append(next_updated_at(row["updated_at"]))
            cur = conn.execute(
                f"UPDATE jobs SET {', '.join(sets)} WHERE {' AND '.join(where)}",
                params + where_params,
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row)


# ── State Machine ─────────────────────────────────────────────────────

class JobStateMachine:
    """Validates job transitions and drives their money and reputation effects."""

    def __init__(
        self,
        store: JobStore,
        escrow: EscrowCoordinator,
        reputation: ReputationLedger,
        bus: Optional[EventBus] = None,
        dispute_window: float = DISPUTE_WINDOW_SEC,
        stale_after: Optional[float] = None,
    ):
        self.store = store
        self.escrow = escrow
        self.reputation = reputation
        self.bus = bus or get_event_bus()
        self.dispute_window = dispute_window
        # A *_pending job untouched for this long lost its worker
        self.stale_after = escrow.settlement_deadline if stale_after is None else stale_after

    # ── Guards ────────────────────────────────────────────────────────

    @staticmethod
    def _check_transition(job: Job, target: JobState):
        if target not in VALID_TRANSITIONS[job.state]:
            allowed = sorted(s.value for s in VALID_TRANSITIONS[job.state])
            raise InvalidTransition(job.status, target.value, f"allowed: {allowed}")

    @staticmethod
    def _check_settled(job: Job, attempted: str):
        if job.sub_status:
            raise InvalidTransition(
                f"{job.status}/{job.sub_status}", attempted,
                "settlement in progress or awaiting reconciliation",
            )

    @staticmethod
    def _check_no_dispute(job: Job, attempted: str):
        if job.disputed:
            raise InvalidTransition(job.status, attempted, "job has an open dispute")

    @staticmethod
    def _check_party(job: Job, actor: AuthContext, *parties: str):
        if actor.is_operator:
            return
        if "client" in parties and actor.user_id == job.client_id:
            return
        if "provider" in parties and job.provider_id and actor.user_id == job.provider_id:
            return
        raise Unauthorized(
            f"{actor.label} may not act on job {job.job_id} (requires {'/'.join(parties)})",
            {"job_id": job.job_id, "actor": actor.label},
        )

    # ── Write helpers ─────────────────────────────────────────────────

    def _mutate(self, job_id: str, plan: Callable[[Job], dict]) -> tuple[Job, Job]:
        """Read, validate and CAS on version, re-validating after a lost race.

        ``plan`` raises when the operation is not allowed on the job as read,
        otherwise returns the column changes.
        """
        for _ in range(CAS_ATTEMPTS):
            job = self.store.get(job_id)
            changes = plan(job)
            updated = self.store.compare_and_set(job_id, changes, {"version": job.version})
            if updated is not None:
                return job, updated
        raise ConcurrencyConflict(f"Job {job_id} is being modified concurrently",
                                  {"job_id": job_id})

    def _emit(self, before: Job, after: Job, actor: AuthContext, **data):
        if before.status == after.status:
            return
        self.bus.publish(
            EventType.JOB_STATUS_CHANGED, "job", after.job_id, actor=actor.label,
            data={"previous_state": before.status, "new_state": after.status, **data},
        )
        log.info("STATE %s → %s | job=%s | actor=%s",
                 before.status, after.status, after.job_id, actor.label)

    @staticmethod
    def _stamp(job: Job, **stamps) -> dict:
        ts = time.time()
        return {**job.lifecycle, **{k: ts for k in stamps}}

    def _set_availability(self, provider_id: Optional[str], status: Availability):
        if not provider_id:
            return
        try:
            self.reputation.set_availability(provider_id, status)
        except NotFound:
            log.warning("Provider %s has no reputation record", provider_id)

    # ── Creation ──────────────────────────────────────────────────────

    def create_job(
        self,
        actor: AuthContext,
        budget=None,
        payment_type: PaymentType = PaymentType.FIXED,
        max_hourly_rate=0,
        estimated_duration_hours: float = 0.0,
        title: str = "",
    ) -> Job:
        """Create a draft job owned by ``actor``."""
        payment_type = PaymentType(payment_type)
        rate = quantize(to_decimal(max_hourly_rate or 0, "max hourly rate"))
        hours = float(estimated_duration_hours or 0)
        if payment_type == PaymentType.HOURLY:
            if rate <= 0 or hours <= 0:
                raise ValidationError("hourly jobs need max_hourly_rate > 0 and estimated_duration_hours > 0")
            budget = quantize(to_decimal(budget, "budget")) if budget is not None \
                else quantize(rate * to_decimal(hours, "estimated duration"))
        else:
            if budget is None:
                raise ValidationError("budget is required for fixed-price jobs")
            budget = quantize(to_decimal(budget, "budget"))
        if budget <= 0:
            raise ValidationError(f"budget must be > 0, got {budget}")
        if rate < 0 or hours < 0:
            raise ValidationError("rates and durations must be >= 0")

        job = Job(
            title=title,
            client_id=actor.user_id,
            client_wallet=actor.wallet_address,
            payment_type=payment_type.value,
            budget=budget,
            max_hourly_rate=rate,
            estimated_duration_hours=hours,
            lifecycle={"created_at": time.time()},
        )
        self.store.create(job)
        self.bus.publish(EventType.JOB_CREATED, "job", job.job_id, actor=actor.label,
                         data={"budget": str(budget), "payment_type": payment_type.value})
        log.info("JOB CREATED %s client=%s budget=%s (%s)",
                 job.job_id, actor.user_id, budget, payment_type.value)
        return job

    def get_job(self, job_id: str) -> Job:
        return self.store.get(job_id)

    # ── Posting / acceptance ──────────────────────────────────────────

    def post(self, job_id: str, actor: AuthContext) -> Job:
        def plan(job):
            self._check_party(job, actor, "client")
            self._check_transition(job, JobState.POSTED)
            return {"status": JobState.POSTED, "lifecycle": self._stamp(job, posted_at=1)}

        before, after = self._mutate(job_id, plan)
        self._emit(before, after, actor)
        return after

    async def accept(self, job_id: str, actor: AuthContext) -> Job:
        """At most one provider wins. The loser gets JobAlreadyAccepted.

        The accept only stands once the escrow exists; a definite escrow
        failure puts the job back to posted with no provider.
        """
        provider = self.reputation.get(actor.user_id)
        if provider.availability_status == Availability.OFFLINE.value:
            raise ValidationError(f"Provider {actor.user_id} is offline")
        wallet = actor.wallet_address or provider.wallet_address
        if not wallet:
            raise ValidationError(f"Provider {actor.user_id} has no wallet address")

        job = self.store.get(job_id)
        if job.client_id == actor.user_id:
            raise ValidationError("A client cannot accept their own job")
        if job.state == JobState.POSTED:
            amount = escrow_amount_for(job)
        else:
            amount = job.escrow_amount

        accepted = self.store.compare_and_set(
            job_id,
            {
                "status": JobState.ACCEPTED,
                "provider_id": actor.user_id,
                "provider_wallet": wallet,
                "escrow_amount": amount,
                "sub_status": SubStatus.ESCROW_PENDING,
                "pending_action": PendingAction.CREATE,
                "pending_target": JobState.ACCEPTED,
                "lifecycle": self._stamp(job, accepted_at=1),
            },
            {"status": JobState.POSTED, "provider_id": None},
        )
        if accepted is None:
            current = self.store.get(job_id)
            if current.provider_id:
                raise JobAlreadyAccepted(
                    f"Job {job_id} was already accepted",
                    {"job_id": job_id, "status": current.status},
                )
            raise InvalidTransition(current.status, JobState.ACCEPTED.value)

        self._emit(job, accepted, actor, provider_id=actor.user_id,
                   escrow_amount=str(amount))

        try:
            outcome = await self.escrow.create_escrow(accepted)
        except SettlementUnavailable:
            self._rollback_accept(accepted, actor)
            raise
        except SettlementUnknownOutcome:
            self._park(accepted, actor)
            raise
        except BaseException as e:
            self._park(accepted, actor, f"interrupted: {type(e).__name__}: {e}")
            raise

        return self._escrow_funded(accepted, outcome, actor)

    def _escrow_funded(self, job: Job, outcome: EscrowOutcome, actor: AuthContext) -> Job:
        updated = self.store.compare_and_set(
            job.job_id,
            {
                "escrow_id": outcome.escrow_id,
                "escrow_reference": outcome.escrow_id if outcome.confirmed else None,
                "sub_status": None,
                "pending_action": None,
                "pending_target": None,
            },
            {"status": JobState.ACCEPTED, "provider_id": job.provider_id,
             "pending_action": PendingAction.CREATE},
        )
        if updated is None:
            # The escrow exists; never lose track of it
            log.critical("LEDGER INVARIANT job=%s escrow=%s created but job changed underneath",
                         job.job_id, outcome.escrow_id)
            raise LedgerInvariantViolation(
                f"Job {job.job_id} changed while its escrow was being created",
                {"job_id": job.job_id, "escrow_id": outcome.escrow_id},
            )
        self._set_availability(job.provider_id, Availability.BUSY)
        log.info("JOB FUNDED %s escrow=%s confirmed=%s", job.job_id,
                 outcome.escrow_id, outcome.confirmed)
        return updated

    def _rollback_accept(self, job: Job, actor: AuthContext):
        lifecycle = {k: v for k, v in job.lifecycle.items() if k != "accepted_at"}
        rolled = self.store.compare_and_set(
            job.job_id,
            {
                "status": JobState.POSTED,
                "provider_id": None,
                "provider_wallet": "",
                "escrow_amount": Decimal("0"),
                "sub_status": None,
                "pending_action": None,
                "pending_target": None,
                "lifecycle": lifecycle,
            },
            {"status": JobState.ACCEPTED, "provider_id": job.provider_id,
             "pending_action": PendingAction.CREATE},
        )
        if rolled is not None:
            self._emit(job, rolled, actor, rollback=True, reason="escrow creation failed")
            log.warning("ACCEPT ROLLED BACK job=%s provider=%s", job.job_id, job.provider_id)

    def _park(self, job: Job, actor: AuthContext, error: str = ""):
        """Park a job whose money movement could not finish."""
        parked = self.store.compare_and_set(
            job.job_id,
            {"sub_status": SubStatus.SETTLEMENT_FAILED},
            {"version": job.version},
        )
        if parked is None:
            parked = self.store.get(job.job_id)
            if parked.pending_action:
                parked = self.store.compare_and_set(
                    job.job_id, {"sub_status": SubStatus.SETTLEMENT_FAILED},
                    {"pending_action": parked.pending_action},
                ) or parked
        log.error("JOB PARKED %s in settlement_failed (pending %s → %s) actor=%s %s",
                  job.job_id, job.pending_action, job.pending_target, actor.label, error)
        return parked

    # ── Execution ─────────────────────────────────────────────────────

    def start(self, job_id: str, actor: AuthContext) -> Job:
        def plan(job):
            self._check_party(job, actor, "provider")
            self._check_settled(job, JobState.RUNNING.value)
            if job.state != JobState.ACCEPTED:
                raise InvalidTransition(job.status, JobState.RUNNING.value, "start requires accepted")
            return {"status": JobState.RUNNING, "progress": 0.0,
                    "lifecycle": self._stamp(job, started_at=1)}

        before, after = self._mutate(job_id, plan)
        self._emit(before, after, actor)
        return after

    def update_progress(self, job_id: str, actor: AuthContext, percentage: float,
                        metrics: Optional[dict] = None) -> Job:
        """Heartbeat. Progress never goes backwards; a regression is clamped."""
        try:
            percentage = float(percentage)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid progress: {percentage!r}")
        if not 0 <= percentage <= 100:
            raise ValidationError(f"progress must be within [0, 100], got {percentage}")

        def plan(job):
            self._check_party(job, actor, "provider")
            if job.state != JobState.RUNNING:
                raise InvalidTransition(job.status, "progress", "job is not running")
            self._check_settled(job, "progress")
            return {
                "progress": max(job.progress, percentage),
                "metrics": {**job.metrics, **(metrics or {})},
                "lifecycle": self._stamp(job, last_heartbeat=1),
            }

        before, after = self._mutate(job_id, plan)
        if after.progress != before.progress:
            self.bus.publish(EventType.JOB_PROGRESS, "job", job_id, actor=actor.label,
                             data={"progress": after.progress})
        return after

    def pause(self, job_id: str, actor: AuthContext) -> Job:
        def plan(job):
            self._check_party(job, actor, "provider")
            self._check_settled(job, JobState.PAUSED.value)
            if job.state != JobState.RUNNING:
                raise InvalidTransition(job.status, JobState.PAUSED.value)
            return {"status": JobState.PAUSED, "lifecycle": self._stamp(job, paused_at=1)}

        before, after = self._mutate(job_id, plan)
        self._emit(before, after, actor)
        return after

    def resume(self, job_id: str, actor: AuthContext) -> Job:
        def plan(job):
            self._check_party(job, actor, "provider")
            self._check_settled(job, JobState.RUNNING.value)
            if job.state != JobState.PAUSED:
                raise InvalidTransition(job.status, JobState.RUNNING.value, "resume requires paused")
            return {"status": JobState.RUNNING, "lifecycle": self._stamp(job, resumed_at=1)}

        before, after = self._mutate(job_id, plan)
        self._emit(before, after, actor)
        return after

    # ── Terminal outcomes ─────────────────────────────────────────────

    async def complete(self, job_id: str, actor: AuthContext,
                       results: Optional[dict] = None) -> Job:
        """Release the escrow to the provider, then close the job as completed."""
        def plan(job):
            self._check_party(job, actor, "provider")
            self._check_settled(job, JobState.COMPLETED.value)
            self._check_no_dispute(job, JobState.COMPLETED.value)
            if job.state != JobState.RUNNING:
                raise InvalidTransition(job.status, JobState.COMPLETED.value,
                                        "complete requires running")
            return {
                "results": {**job.results, **(results or {})},
                **self._pending(PendingAction.RELEASE, JobState.COMPLETED,
                                {"kind": "complete", "actor": actor.label}),
            }

        _, job = self._mutate(job_id, plan)
        return await self._settle_pending(job, actor)

    async def fail(self, job_id: str, actor: AuthContext, reason: str,
                   fault: Fault = Fault.PROVIDER) -> Job:
        """Refund the escrow and close the job as failed.

        Provider fault penalizes the provider; client or no fault is neutral.
        """
        fault = Fault(fault)
        if not reason:
            raise ValidationError("a failure reason is required")

        def plan(job):
            self._check_party(job, actor, "provider", "client")
            self._check_settled(job, JobState.FAILED.value)
            self._check_no_dispute(job, JobState.FAILED.value)
            self._check_transition(job, JobState.FAILED)
            effective = fault
            if not actor.is_operator and actor.user_id == job.client_id:
                # Clients cannot attribute fault; an operator decides that
                effective = Fault.NONE
            return {
                "failure_reason": reason,
                **self._pending(PendingAction.REFUND, JobState.FAILED,
                                {"kind": "fail", "fault": effective.value,
                                 "reason": reason, "actor": actor.label}),
            }

        _, job = self._mutate(job_id, plan)
        return await self._settle_pending(job, actor)

    async def cancel(self, job_id: str, actor: AuthContext, reason: str = "") -> Job:
        """Cancel from any state before completion.

        Unfunded jobs close immediately. Funded jobs are refunded first; a
        provider walking away is penalized, a client or operator cancel is
        neutral for the provider.
        """
        def plan(job):
            self._check_settled(job, JobState.CANCELLED.value)
            self._check_no_dispute(job, JobState.CANCELLED.value)
            self._check_transition(job, JobState.CANCELLED)
            if job.state in (JobState.DRAFT, JobState.POSTED):
                self._check_party(job, actor, "client")
                return {"status": JobState.CANCELLED, "failure_reason": reason,
                        "lifecycle": self._stamp(job, cancelled_at=1)}
            self._check_party(job, actor, "client", "provider")
            by_provider = not actor.is_operator and actor.user_id == job.provider_id
            return {
                "failure_reason": reason,
                **self._pending(PendingAction.REFUND, JobState.CANCELLED,
                                {"kind": "cancel", "by_provider": by_provider,
                                 "reason": reason, "actor": actor.label}),
            }

        before, job = self._mutate(job_id, plan)
        if job.state == JobState.CANCELLED:
            self._emit(before, job, actor, reason=reason)
            return job
        return await self._settle_pending(job, actor)

    @staticmethod
    def _pending(action: PendingAction, target: JobState, context: dict) -> dict:
        return {
            "sub_status": _PENDING_SUB_STATUS[action],
            "pending_action": action,
            "pending_target": target,
            "pending_context": context,
        }

    async def _settle_pending(self, job: Job, actor: AuthContext) -> Job:
        """Run the job's pending money movement, then finish its transition."""
        action = PendingAction(job.pending_action)
        try:
            if not job.escrow_reference:
                job = await self._confirm_escrow_reference(job)
            if action == PendingAction.RELEASE:
                outcome = await self.escrow.release_escrow(job)
            else:
                outcome = await self.escrow.refund_escrow(job)
        except (SettlementUnavailable, SettlementUnknownOutcome, LedgerInvariantViolation) as e:
            self._park(job, actor, e.message)
            raise
        except BaseException as e:
            # Cancelled, shut down or crashed mid-call: the outcome is unknown
            self._park(job, actor, f"interrupted: {type(e).__name__}: {e}")
            raise
        return self._finalize(job, outcome, actor)

    async def _confirm_escrow_reference(self, job: Job) -> Job:
        """Stamp escrow_reference once the deposit is confirmed on the settlement layer."""
        deposit = self.escrow.ledger.find_active(job.job_id, TransactionType.DEPOSIT)
        if deposit is None:
            raise LedgerInvariantViolation(
                f"Job {job.job_id} has escrow {job.escrow_id} but no deposit transaction",
                {"job_id": job.job_id, "escrow_id": job.escrow_id},
            )
        await self.escrow.confirm_deposit(deposit)
        return self.store.compare_and_set(
            job.job_id, {"escrow_reference": job.escrow_id}, {"version": job.version},
        ) or self.store.get(job.job_id)

    def _finalize(self, job: Job, outcome: EscrowOutcome, actor: AuthContext) -> Job:
        ctx = dict(job.pending_context)
        target = JobState(job.pending_target)
        stamp_key = {JobState.COMPLETED: "completed_at", JobState.FAILED: "failed_at",
                     JobState.CANCELLED: "cancelled_at"}[target]
        changes = {
            "status": target,
            "sub_status": None,
            "pending_action": None,
            "pending_target": None,
            "pending_context": {},
            "lifecycle": self._stamp(job, **{stamp_key: 1}),
        }
        if target == JobState.COMPLETED:
            changes["progress"] = 100.0
        if ctx.get("kind") == "dispute" and job.dispute is not None:
            changes["dispute"] = self._resolved_dispute(job.dispute, ctx)

        done = self.store.compare_and_set(
            job.job_id, changes, {"status": job.status, "pending_action": job.pending_action},
        )
        if done is None:
            current = self.store.get(job.job_id)
            if current.state == target and not current.sub_status:
                # Finished by a concurrent retry
                return current
            log.critical("LEDGER INVARIANT job=%s settled (%s) but status write lost",
                         job.job_id, job.pending_action)
            raise LedgerInvariantViolation(
                f"Job {job.job_id} settled but could not record its new status",
                {"job_id": job.job_id, "escrow_id": job.escrow_id},
            )

        self._emit(job, done, actor, escrow_id=outcome.escrow_id,
                   tx_id=outcome.transaction.tx_id if outcome.transaction else None,
                   already_settled=outcome.already_settled)
        self._set_availability(done.provider_id, Availability.AVAILABLE)
        return self._apply_outcome_reputation(done, ctx, outcome)

    def _apply_outcome_reputation(self, job: Job, ctx: dict, outcome: EscrowOutcome) -> Job:
        """Reputation side effects of a closed job. Failures never undo the money."""
        tx_id = outcome.transaction.tx_id if outcome.transaction else None
        kind = ctx.get("kind")
        outcome_name = ctx.get("outcome")
        try:
            if job.state == JobState.COMPLETED:
                event = self.reputation.record_job_outcome(
                    job, success=True, earnings=outcome.transaction.net_amount
                    if outcome.transaction else None, tx_id=tx_id,
                )
                job = self.store.compare_and_set(
                    job.job_id, {"completion_event_id": event.event_id}, {"version": job.version},
                ) or self.store.get(job.job_id)
                self.reputation.record_client_activity(job, job.escrow_amount, tx_id=tx_id)
                if kind == "dispute" and outcome_name == DisputeOutcome.PARTIAL_REFUND.value:
                    self._partial_refund(job, Decimal(ctx["refund_amount"]))
            elif kind == "dispute":
                self.reputation.record_job_outcome(
                    job, success=False, reason="dispute resolved in client's favor",
                    penalty=PenaltyType.DISPUTE_LOST,
                    event_type=ReputationEventType.DISPUTE, tx_id=tx_id,
                )
            elif kind == "fail":
                self.reputation.record_job_outcome(
                    job, success=False, neutral=ctx.get("fault") != Fault.PROVIDER.value,
                    reason=ctx.get("reason", ""), tx_id=tx_id,
                )
            elif kind == "cancel":
                self.reputation.record_job_outcome(
                    job, success=False, neutral=not ctx.get("by_provider"),
                    reason=ctx.get("reason") or "cancelled",
                    penalty=PenaltyType.PROVIDER_CANCELLATION, tx_id=tx_id,
                )
        except ReputationUpdateFailed as e:
            log.error("Reputation update for job %s parked: %s", job.job_id, e.message)
        return job

    # ── Disputes ──────────────────────────────────────────────────────

    def open_dispute(self, job_id: str, actor: AuthContext, reason: str) -> Job:
        if not reason:
            raise ValidationError("a dispute reason is required")

        def plan(job):
            self._check_party(job, actor, "client", "provider")
            self._check_settled(job, "disputed")
            if job.state not in DISPUTABLE_STATES:
                raise InvalidTransition(job.status, "disputed",
                                        "disputes need an accepted, running or completed job")
            if job.dispute is not None:
                raise InvalidTransition(job.status, "disputed",
                                        f"dispute already {job.dispute.status}")
            phase = "pre_completion"
            if job.state == JobState.COMPLETED:
                completed_at = job.lifecycle.get("completed_at") or 0
                if time.time() - completed_at > self.dispute_window:
                    raise InvalidTransition(job.status, "disputed", "dispute window has closed")
                phase = "post_completion"
            return {"dispute": Dispute(raised_by=actor.user_id, reason=reason,
                                       opened_at=time.time(), phase=phase)}

        _, job = self._mutate(job_id, plan)
        self.bus.publish(EventType.DISPUTE_OPENED, "job", job_id, actor=actor.label,
                         data={"reason": reason, "phase": job.dispute.phase})
        log.warning("DISPUTE OPENED job=%s by=%s phase=%s: %s",
                    job_id, actor.label, job.dispute.phase, reason)
        return job

    async def resolve_dispute(self, job_id: str, actor: AuthContext, outcome: DisputeOutcome,
                              refund_amount=None, notes: str = "") -> Job:
        """Operator decision on an open dispute."""
        outcome = DisputeOutcome(outcome)
        if not actor.is_operator:
            raise Unauthorized("Only an operator can resolve disputes")

        def plan(job):
            if not job.disputed:
                raise InvalidTransition(job.status, "dispute_resolved", "no open dispute")
            self._check_settled(job, "dispute_resolved")
            ctx = {"kind": "dispute", "outcome": outcome.value, "notes": notes,
                   "actor": actor.label}
            if outcome == DisputeOutcome.PARTIAL_REFUND:
                ctx["refund_amount"] = str(self._check_refund_amount(job, refund_amount))
            if job.state == JobState.COMPLETED:
                return {"dispute": self._resolved_dispute(job.dispute, ctx)}
            if outcome == DisputeOutcome.CLIENT_FAVOR:
                return self._pending(PendingAction.REFUND, JobState.FAILED, ctx)
            return self._pending(PendingAction.RELEASE, JobState.COMPLETED, ctx)

        before, job = self._mutate(job_id, plan)
        if job.state == JobState.COMPLETED and not job.sub_status:
            self._post_completion_resolution(job, outcome, before.dispute, actor)
        else:
            job = await self._settle_pending(job, actor)

        self.bus.publish(EventType.DISPUTE_RESOLVED, "job", job_id, actor=actor.label,
                         data={"outcome": outcome.value, "notes": notes,
                               "refund_amount": job.dispute.refund_amount if job.dispute else None})
        log.info("DISPUTE RESOLVED job=%s outcome=%s by=%s", job_id, outcome.value, actor.label)
        return job

    @staticmethod
    def _check_refund_amount(job: Job, refund_amount) -> Decimal:
        if refund_amount is None:
            raise ValidationError("partial-refund needs a refund_amount")
        amount = quantize(to_decimal(refund_amount, "refund amount"))
        if amount <= 0 or amount > job.escrow_amount:
            raise ValidationError(
                f"refund_amount must be within (0, {job.escrow_amount}], got {amount}"
            )
        return amount

    @staticmethod
    def _resolved_dispute(dispute: Dispute, ctx: dict) -> Dispute:
        return Dispute(
            raised_by=dispute.raised_by,
            reason=dispute.reason,
            opened_at=dispute.opened_at,
            phase=dispute.phase,
            status="resolved",
            outcome=ctx.get("outcome"),
            refund_amount=ctx.get("refund_amount"),
            resolution_notes=ctx.get("notes", ""),
            resolved_by=ctx.get("actor", ""),
            resolved_at=time.time(),
        )

    def _post_completion_resolution(self, job: Job, outcome: DisputeOutcome,
                                    dispute: Dispute, actor: AuthContext):
        """The escrow is already released; only ledgers can move."""
        if outcome == DisputeOutcome.PROVIDER_FAVOR:
            return
        try:
            if outcome == DisputeOutcome.CLIENT_FAVOR:
                self.escrow.record_manual_refund(
                    job, job.escrow_amount, job.provider_id, job.client_id,
                    reason=f"post-completion dispute resolved for client on {job.job_id}",
                )
                if job.completion_event_id:
                    try:
                        self.reputation.reverse(job.completion_event_id,
                                                f"dispute resolved for client: {dispute.reason}",
                                                actor=actor.label)
                    except ReversalNotAllowed as e:
                        log.warning("Completion event of job %s not reversed: %s",
                                    job.job_id, e.message)
                self.reputation.adjust(
                    job.provider_id, ReputationEventType.DISPUTE,
                    PENALTY_POINTS[PenaltyType.DISPUTE_LOST],
                    reason=f"Lost dispute on job {job.job_id}", job_id=job.job_id,
                )
            else:
                self._partial_refund(job, Decimal(job.dispute.refund_amount))
        except ReputationUpdateFailed as e:
            log.error("Dispute reputation update for job %s parked: %s", job.job_id, e.message)

    def _partial_refund(self, job: Job, amount: Decimal):
        self.escrow.record_manual_refund(
            job, amount, job.provider_id, job.client_id,
            reason=f"partial refund ordered by dispute on {job.job_id}",
        )
        self.reputation.adjust(
            job.provider_id, ReputationEventType.DISPUTE,
            PENALTY_POINTS[PenaltyType.DISPUTE_PARTIAL],
            reason=f"Partial refund ordered on job {job.job_id}", job_id=job.job_id,
        )

    # ── Ratings ───────────────────────────────────────────────────────

    async def rate(self, job_id: str, actor: AuthContext, rating: int, review: str = "") -> Job:
        """Client rates a completed job once; mirrored to the reputation contract."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError(f"rating must be an integer 1–5, got {rating!r}")

        job = self.store.get(job_id)
        self._check_party(job, actor, "client")
        if job.state != JobState.COMPLETED:
            raise InvalidTransition(job.status, "rated", "only completed jobs can be rated")
        rated = self.store.compare_and_set(job_id, {"rating": rating},
                                           {"status": JobState.COMPLETED, "rating": None})
        if rated is None:
            raise InvalidTransition(job.status, "rated", "job already rated")

        try:
            event = self.reputation.record_rating(rated, rating, review)
        except ReputationUpdateFailed as e:
            # No processed rating event, so the job must not read as rated
            self.store.compare_and_set(job_id, {"rating": None},
                                       {"version": rated.version, "rating": rating})
            log.error("Rating for job %s withdrawn, reputation write failed: %s",
                      job_id, e.message)
            if e.details.get("event_id"):
                self.reputation.add_note(e.details["event_id"],
                                         f"job {job_id} rating withdrawn; client may rate again")
            raise
        self.bus.publish(EventType.JOB_RATED, "job", job_id, actor=actor.label,
                         data={"rating": rating, "reputation_event_id": event.event_id})

        try:
            mirrored = await asyncio.wait_for(
                self.escrow.client.submit_rating(rated.provider_wallet, job_id, rating, review),
                timeout=self.escrow.timeout,
            )
            error = "" if mirrored.success else mirrored.error
        except (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError) as e:
            error = f"{type(e).__name__}: {e}"
        if error:
            log.error("Rating for job %s not mirrored to settlement layer: %s", job_id, error)
            self.reputation.add_note(event.event_id, f"settlement mirror failed: {error}")
        return rated

    # ── Operator actions ──────────────────────────────────────────────

    async def retry_settlement(self, job_id: str, actor: AuthContext) -> Job:
        """Finish the money movement of a parked job.

        Jobs in settlement_failed qualify, and so do *_pending jobs whose
        worker vanished (untouched for longer than ``stale_after``).
        """
        if not actor.is_operator:
            raise Unauthorized("Only an operator can retry settlement")

        def plan(job):
            if job.sub_status != SubStatus.SETTLEMENT_FAILED.value and not self._is_stale(job):
                raise InvalidTransition(f"{job.status}/{job.sub_status}", "retry_settlement",
                                        "job is not awaiting reconciliation")
            action = PendingAction(job.pending_action)
            return {"sub_status": _PENDING_SUB_STATUS[action]}

        _, job = self._mutate(job_id, plan)
        log.info("SETTLEMENT RETRY job=%s action=%s by=%s",
                 job_id, job.pending_action, actor.label)

        if job.pending_action != PendingAction.CREATE.value:
            return await self._settle_pending(job, actor)

        try:
            outcome = await self.escrow.recover_escrow(job)
        except SettlementUnavailable:
            self._rollback_accept(job, actor)
            raise
        except SettlementUnknownOutcome as e:
            self._park(job, actor, e.message)
            raise
        except BaseException as e:
            self._park(job, actor, f"interrupted: {type(e).__name__}: {e}")
            raise
        return self._escrow_funded(job, outcome, actor)

    def _is_stale(self, job: Job, now: Optional[float] = None) -> bool:
        if job.sub_status not in _STALE_CANDIDATES:
            return False
        return (now or time.time()) - job.updated_at >= self.stale_after

    def park_stale_jobs(self, actor: Optional[AuthContext] = None) -> list[str]:
        """Move abandoned *_pending jobs to settlement_failed and flag them."""
        actor = actor or SYSTEM
        now = time.time()
        parked = []
        for sub_status in _STALE_CANDIDATES:
            for job in self.store.list(sub_status=sub_status, limit=1000):
                if not self._is_stale(job, now):
                    continue
                if self.store.compare_and_set(
                    job.job_id, {"sub_status": SubStatus.SETTLEMENT_FAILED},
                    {"version": job.version},
                ) is None:
                    continue
                log.warning("STALE SETTLEMENT job=%s %s for %.0fs, parked for manual review",
                            job.job_id, sub_status, now - job.updated_at)
                self.bus.publish(EventType.SETTLEMENT_FAILED, "job", job.job_id,
                                 actor=actor.label,
                                 data={"action": job.pending_action, "stale_sub_status": sub_status,
                                       "needs_review": True})
                parked.append(job.job_id)
        return parked

    async def reconcile(self) -> ReconcileReport:
        """One reconciliation pass.

        Stamps escrow references of confirmed deposits and parks jobs whose
        settlement was abandoned mid-flight.
        """
        report = await self.escrow.reconcile()
        for job_id, escrow_id in report.confirmed_deposits:
            stamped = self.store.compare_and_set(
                job_id, {"escrow_reference": escrow_id},
                {"escrow_id": escrow_id, "escrow_reference": None},
            )
            if stamped is not None:
                log.info("ESCROW CONFIRMED job=%s escrow=%s", job_id, escrow_id)
        report.stale_jobs.extend(self.park_stale_jobs())
        return report

    def get_job_timeline(self, job_id: str) -> list[dict]:
        """The job's full audit trail: every transition, money movement and dispute."""
        self.store.get(job_id)
        events = self.bus.store.get_entity_history("job", job_id)
        return [e.to_dict() for e in events]

    def transactions(self, job_id: str) -> list[dict]:
        self.store.get(job_id)
        return [tx.to_receipt() for tx in self.escrow.ledger.find(job_id=job_id)]


# ── Singleton ─────────────────────────────────────────────────────────

_state_machine: Optional[JobStateMachine] = None


def get_state_machine() -> JobStateMachine:
    global _state_machine
    if _state_machine is None:
        from reputation import get_reputation_ledger

        escrow = EscrowCoordinator()
        _state_machine = JobStateMachine(JobStore(), escrow, get_reputation_ledger())
    return _state_machine
