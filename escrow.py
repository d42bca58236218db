# Meridian Escrow Coordinator
# Translates job-level money intents into settlement calls and keeps the
# TransactionLedger in step with what the settlement layer reports.
#
#   create  → deposit  (client → escrow)    zero fees, processing until confirmed
#   release → release  (escrow → provider)  platform + processing + gas fees,
#                                           plus a separate fee record
#   refund  → refund   (escrow → client)    zero fees
#
# Rules:
# - Escrow state is always re-queried from the settlement layer before a
#   release/refund, never trusted from local state.
# - A timed-out call is an unknown outcome. State is re-queried before any
#   retry, so an escrow is never created twice and never released twice.
# - "Already released" while releasing is success; the existing release
#   Transaction is reused.
# - Exhausted retries surface SettlementUnavailable; an outcome that cannot
#   be resolved surfaces SettlementUnknownOutcome. Funds stay where they are.

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Optional

from errors import (
    LedgerInvariantViolation,
    SettlementUnavailable,
    SettlementUnknownOutcome,
    ValidationError,
)
from events import EventBus, EventType, get_event_bus
from fees import FeeCalculator, get_fee_calculator, no_fees, quantize, to_decimal
from ledger import (
    PLATFORM_PARTY,
    Transaction,
    TransactionLedger,
    TransactionStatus,
    TransactionType,
    get_transaction_ledger,
)
from settlement import EscrowInfo, EscrowStatus, SettlementClient, SettlementResult, get_settlement_client

log = logging.getLogger("meridian.escrow")

# ── Configuration ─────────────────────────────────────────────────────

SETTLEMENT_TIMEOUT_SEC = float(os.environ.get("MERIDIAN_SETTLEMENT_TIMEOUT_SEC", "30"))
SETTLEMENT_MAX_ATTEMPTS = int(os.environ.get("MERIDIAN_SETTLEMENT_MAX_ATTEMPTS", "4"))
SETTLEMENT_BACKOFF_SEC = float(os.environ.get("MERIDIAN_SETTLEMENT_BACKOFF_SEC", "0.5"))
SETTLEMENT_BACKOFF_MAX_SEC = float(os.environ.get("MERIDIAN_SETTLEMENT_BACKOFF_MAX_SEC", "8"))
RECONCILE_INTERVAL_SEC = float(os.environ.get("MERIDIAN_RECONCILE_INTERVAL_SEC", "30"))
STUCK_TX_TIMEOUT_SEC = float(os.environ.get("MERIDIAN_STUCK_TX_TIMEOUT_SEC", "3600"))

ESCROW_PARTY = "escrow"

# Transport-level failures a retry can help with
TRANSIENT_ERRORS = (ConnectionError, OSError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff."""
    max_attempts: int = SETTLEMENT_MAX_ATTEMPTS
    base_delay: float = SETTLEMENT_BACKOFF_SEC
    max_delay: float = SETTLEMENT_BACKOFF_MAX_SEC
    multiplier: float = 2.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValidationError("max_attempts must be >= 1")

    def delay(self, attempt: int) -> float:
        """Sleep before attempt ``attempt + 1`` (attempt counts from 1)."""
        return min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)


@dataclass
class EscrowOutcome:
    """What a coordinator call did."""
    escrow_id: str
    transaction: Optional[Transaction] = None
    fee_transaction: Optional[Transaction] = None
    already_settled: bool = False
    confirmed: bool = False
    tx_hash: str = ""
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "escrow_id": self.escrow_id,
            "transaction": self.transaction.to_receipt() if self.transaction else None,
            "fee_transaction": self.fee_transaction.to_receipt() if self.fee_transaction else None,
            "already_settled": self.already_settled,
            "confirmed": self.confirmed,
            "tx_hash": self.tx_hash,
            "attempts": self.attempts,
        }


@dataclass
class ReconcileReport:
    checked: int = 0
    completed: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    flagged: list = field(default_factory=list)
    errors: list = field(default_factory=list)
    # (job_id, escrow_id) pairs whose deposit is now confirmed
    confirmed_deposits: list = field(default_factory=list)
    # jobs whose settlement was abandoned mid-flight, now settlement_failed
    stale_jobs: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "completed": self.completed,
            "failed": self.failed,
            "flagged": self.flagged,
            "errors": self.errors,
            "confirmed_deposits": [list(p) for p in self.confirmed_deposits],
            "stale_jobs": self.stale_jobs,
        }


def escrow_amount_for(job) -> Decimal:
    """budget for fixed-price jobs, estimated hours × max hourly rate for hourly."""
    if job.payment_type == "hourly":
        hours = to_decimal(job.estimated_duration_hours, "estimated duration")
        rate = to_decimal(job.max_hourly_rate, "max hourly rate")
        amount = quantize(hours * rate)
    else:
        amount = quantize(to_decimal(job.budget, "budget"))
    if amount <= 0:
        raise ValidationError(f"Escrow amount must be > 0, got {amount}")
    return amount


class EscrowCoordinator:
    """Drives a job's escrow through pending → released | refunded."""

    def __init__(
        self,
        client: Optional[SettlementClient] = None,
        ledger: Optional[TransactionLedger] = None,
        fee_calculator: Optional[FeeCalculator] = None,
        bus: Optional[EventBus] = None,
        retry: Optional[RetryPolicy] = None,
        timeout: float = SETTLEMENT_TIMEOUT_SEC,
        stuck_timeout: float = STUCK_TX_TIMEOUT_SEC,
    ):
        self.client = client or get_settlement_client()
        self.ledger = ledger or get_transaction_ledger()
        self.fees = fee_calculator or get_fee_calculator()
        self.bus = bus or get_event_bus()
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        self.stuck_timeout = stuck_timeout

    @property
    def settlement_deadline(self) -> float:
        """Longest a single coordinator operation can run, retries included.

        Each attempt may make a re-query and a settlement call.
        """
        attempts = self.retry.max_attempts
        backoff = sum(self.retry.delay(a) for a in range(1, attempts))
        return attempts * 2 * self.timeout + backoff

    # ── Settlement call helpers ───────────────────────────────────────

    async def _call(self, coro: Awaitable[SettlementResult]) -> SettlementResult:
        return await asyncio.wait_for(coro, timeout=self.timeout)

    async def _backoff(self, label: str, job_id: str, attempt: int, reason: str):
        if attempt >= self.retry.max_attempts:
            return
        delay = self.retry.delay(attempt)
        log.warning("SETTLEMENT RETRY %s job=%s attempt=%d/%d in %.2fs: %s",
                    label, job_id, attempt, self.retry.max_attempts, delay, reason)
        await asyncio.sleep(delay)

    async def query_escrow(self, escrow_id: str) -> EscrowInfo:
        """Fresh escrow state from the settlement layer.

        Raises SettlementUnavailable when the layer cannot answer.
        """
        try:
            result = await self._call(self.client.get_escrow(escrow_id))
        except (asyncio.TimeoutError, TimeoutError):
            raise SettlementUnavailable(f"getEscrow({escrow_id}) timed out")
        except TRANSIENT_ERRORS as e:
            raise SettlementUnavailable(f"getEscrow({escrow_id}) failed: {e}")
        if not result.success or result.escrow is None:
            raise SettlementUnavailable(
                f"getEscrow({escrow_id}) failed: {result.error or 'no escrow'}"
            )
        return result.escrow

    async def _find_created(self, job_id: str) -> Optional[SettlementResult]:
        """Resolve an unknown createEscrow outcome.

        Returns the escrow if it exists, None if the settlement layer says it
        does not. Raises SettlementUnknownOutcome when it cannot tell.
        """
        try:
            found = await self._call(self.client.find_escrow_by_job(job_id))
        except (asyncio.TimeoutError, TimeoutError, *TRANSIENT_ERRORS) as e:
            raise SettlementUnknownOutcome(
                f"createEscrow for job {job_id} timed out and could not be re-queried: {e}",
                {"job_id": job_id},
            )
        if not found.success:
            raise SettlementUnknownOutcome(
                f"createEscrow for job {job_id} timed out; settlement layer cannot "
                f"look it up ({found.error})",
                {"job_id": job_id},
            )
        if found.escrow and found.escrow.status == EscrowStatus.PENDING.value:
            return found
        return None

    def _settlement_failed(self, job, action: str, error: str, unknown: bool = False):
        self.bus.publish(
            EventType.SETTLEMENT_FAILED, "job", job.job_id,
            data={"action": action, "error": error, "unknown_outcome": unknown},
        )
        log.error("SETTLEMENT FAILED %s job=%s unknown=%s: %s",
                  action, job.job_id, unknown, error)

    # ── Create ────────────────────────────────────────────────────────

    async def create_escrow(self, job, amount: Optional[Decimal] = None) -> EscrowOutcome:
        """Lock the job's escrow amount on the settlement layer.

        On failure no Transaction exists. On success a deposit Transaction is
        recorded as processing and, if the layer already reports the escrow,
        completed straight away.
        """
        amount = quantize(to_decimal(amount, "escrow amount")) if amount is not None \
            else escrow_amount_for(job)
        if not job.provider_wallet:
            raise ValidationError(f"Job {job.job_id} has no provider wallet")

        result = None
        last_error = ""
        attempts = 0
        for attempt in range(1, self.retry.max_attempts + 1):
            attempts = attempt
            try:
                result = await self._call(
                    self.client.create_escrow(job.job_id, job.provider_wallet, amount)
                )
            except (asyncio.TimeoutError, TimeoutError):
                log.warning("createEscrow job=%s timed out, re-querying", job.job_id)
                try:
                    result = await self._find_created(job.job_id)
                except SettlementUnknownOutcome as e:
                    self._settlement_failed(job, "create", e.message, unknown=True)
                    raise
                if result is None:
                    last_error = "timed out, no escrow on settlement layer"
                    await self._backoff("create", job.job_id, attempt, last_error)
                    continue
                log.info("createEscrow job=%s landed despite timeout: %s",
                         job.job_id, result.escrow_id)
            except TRANSIENT_ERRORS as e:
                last_error = f"transport error: {e}"
                result = None
                await self._backoff("create", job.job_id, attempt, last_error)
                continue

            if result.success:
                break
            last_error = result.error
            result = None
            await self._backoff("create", job.job_id, attempt, last_error)

        if result is None:
            self._settlement_failed(job, "create", last_error)
            raise SettlementUnavailable(
                f"createEscrow for job {job.job_id} failed after {attempts} attempts: {last_error}",
                {"job_id": job.job_id, "attempts": attempts},
            )

        tx = self.ledger.record(
            TransactionType.DEPOSIT,
            no_fees(amount),
            job_id=job.job_id,
            from_party=job.client_id,
            to_party=ESCROW_PARTY,
            status=TransactionStatus.PROCESSING,
            settlement_reference=result.escrow_id,
            settlement_tx_hash=result.tx_hash,
            description=f"Escrow deposit for job {job.job_id}",
        )
        self.bus.publish(
            EventType.ESCROW_CREATED, "job", job.job_id,
            data={"escrow_id": result.escrow_id, "amount": str(amount),
                  "tx_id": tx.tx_id, "tx_hash": result.tx_hash},
        )
        log.info("ESCROW CREATED job=%s escrow=%s amount=%s attempts=%d",
                 job.job_id, result.escrow_id, amount, attempts)

        outcome = EscrowOutcome(escrow_id=result.escrow_id, transaction=tx,
                                tx_hash=result.tx_hash, attempts=attempts)
        try:
            outcome.confirmed = await self.confirm_deposit(tx)
            outcome.transaction = self.ledger.get(tx.tx_id)
        except SettlementUnavailable as e:
            log.warning("Deposit %s not confirmed yet (%s); reconciliation will retry",
                        tx.tx_id, e.message)
        return outcome

    async def recover_escrow(self, job) -> EscrowOutcome:
        """Finish an escrow creation whose outcome was unknown.

        Adopts the escrow if the settlement layer has one for the job,
        otherwise creates it.
        """
        existing = self.ledger.find_active(job.job_id, TransactionType.DEPOSIT)
        if existing is not None:
            outcome = EscrowOutcome(escrow_id=existing.settlement_reference, transaction=existing,
                                    already_settled=True)
        else:
            try:
                found = await self._find_created(job.job_id)
            except SettlementUnknownOutcome as e:
                self._settlement_failed(job, "create", e.message, unknown=True)
                raise
            if found is None:
                log.info("No escrow found for job %s, creating it", job.job_id)
                return await self.create_escrow(job, job.escrow_amount or None)

            amount = quantize(to_decimal(job.escrow_amount or found.escrow.amount, "escrow amount"))
            tx = self.ledger.record(
                TransactionType.DEPOSIT,
                no_fees(amount),
                job_id=job.job_id,
                from_party=job.client_id,
                to_party=ESCROW_PARTY,
                status=TransactionStatus.PROCESSING,
                settlement_reference=found.escrow_id,
                settlement_tx_hash=found.tx_hash,
                description=f"Escrow deposit for job {job.job_id}",
                event_data={"note": "recovered from settlement state"},
            )
            self.bus.publish(
                EventType.ESCROW_CREATED, "job", job.job_id,
                data={"escrow_id": found.escrow_id, "amount": str(amount),
                      "tx_id": tx.tx_id, "recovered": True},
            )
            log.info("ESCROW RECOVERED job=%s escrow=%s", job.job_id, found.escrow_id)
            outcome = EscrowOutcome(escrow_id=found.escrow_id, transaction=tx,
                                    already_settled=True, tx_hash=found.tx_hash)

        try:
            outcome.confirmed = await self.confirm_deposit(outcome.transaction)
            outcome.transaction = self.ledger.get(outcome.transaction.tx_id)
        except SettlementUnavailable as e:
            log.warning("Deposit %s not confirmed yet (%s); reconciliation will retry",
                        outcome.transaction.tx_id, e.message)
        return outcome

    async def confirm_deposit(self, tx: Transaction) -> bool:
        """Complete a deposit once the settlement layer reports its escrow."""
        if tx.status == TransactionStatus.COMPLETED.value:
            return True
        escrow = await self.query_escrow(tx.settlement_reference)
        self.ledger.update_status(
            tx.tx_id, TransactionStatus.COMPLETED,
            message="Escrow confirmed by settlement layer",
            data={"escrow_status": escrow.status},
        )
        self.bus.publish(
            EventType.ESCROW_CONFIRMED, "job", tx.job_id,
            data={"escrow_id": tx.settlement_reference, "tx_id": tx.tx_id},
        )
        return True

    # ── Release / refund ──────────────────────────────────────────────

    async def release_escrow(self, job) -> EscrowOutcome:
        """Pay the escrow out to the provider."""
        return await self._settle(job, release=True)

    async def refund_escrow(self, job) -> EscrowOutcome:
        """Return the escrow to the client."""
        return await self._settle(job, release=False)

    async def _settle(self, job, release: bool) -> EscrowOutcome:
        action = "release" if release else "refund"
        target = EscrowStatus.RELEASED if release else EscrowStatus.REFUNDED
        opposite = EscrowStatus.REFUNDED if release else EscrowStatus.RELEASED
        escrow_id = job.escrow_id
        if not escrow_id:
            raise ValidationError(f"Job {job.job_id} has no escrow to {action}")
        call = self.client.release_escrow if release else self.client.refund_escrow

        last_error = ""
        timed_out = False
        attempts = 0
        for attempt in range(1, self.retry.max_attempts + 1):
            attempts = attempt
            # Fresh state every attempt; this is also the unknown-outcome requery
            try:
                escrow = await self.query_escrow(escrow_id)
            except SettlementUnavailable as e:
                last_error = e.message
                await self._backoff(action, job.job_id, attempt, last_error)
                continue

            if escrow.status == target.value:
                return self._record_settled(job, escrow, release, already=True,
                                            attempts=attempts)
            if escrow.status == opposite.value:
                log.critical("LEDGER INVARIANT job=%s escrow=%s is %s while %sing",
                             job.job_id, escrow_id, escrow.status, action)
                raise LedgerInvariantViolation(
                    f"Escrow {escrow_id} is already {escrow.status}; cannot {action}",
                    {"job_id": job.job_id, "escrow_id": escrow_id, "status": escrow.status},
                )

            timed_out = False
            try:
                result = await self._call(call(escrow_id))
            except (asyncio.TimeoutError, TimeoutError):
                timed_out = True
                last_error = f"{action}Escrow timed out"
                log.warning("%sEscrow job=%s timed out, re-querying before retry",
                            action, job.job_id)
                continue
            except TRANSIENT_ERRORS as e:
                last_error = f"transport error: {e}"
                await self._backoff(action, job.job_id, attempt, last_error)
                continue

            if result.success:
                return self._record_settled(job, escrow, release, tx_hash=result.tx_hash,
                                            attempts=attempts)
            # "already released" and friends are resolved by the next requery
            last_error = result.error
            await self._backoff(action, job.job_id, attempt, last_error)

        if timed_out:
            # One last look before giving up on an unknown outcome
            try:
                escrow = await self.query_escrow(escrow_id)
            except SettlementUnavailable:
                escrow = None
            if escrow is not None and escrow.status == target.value:
                return self._record_settled(job, escrow, release, already=True,
                                            attempts=attempts)
            if escrow is None or escrow.status != EscrowStatus.PENDING.value:
                self._settlement_failed(job, action, last_error, unknown=True)
                raise SettlementUnknownOutcome(
                    f"{action}Escrow for job {job.job_id} has an unknown outcome",
                    {"job_id": job.job_id, "escrow_id": escrow_id},
                )

        self._settlement_failed(job, action, last_error)
        raise SettlementUnavailable(
            f"{action}Escrow for job {job.job_id} failed after {attempts} attempts: {last_error}",
            {"job_id": job.job_id, "escrow_id": escrow_id, "attempts": attempts},
        )

    def _record_settled(self, job, escrow: EscrowInfo, release: bool, tx_hash: str = "",
                        already: bool = False, attempts: int = 0) -> EscrowOutcome:
        """Record (or reuse) the Transaction for a settled escrow."""
        tx_type = TransactionType.RELEASE if release else TransactionType.REFUND
        amount = quantize(to_decimal(job.escrow_amount or escrow.amount, "escrow amount"))
        outcome = EscrowOutcome(escrow_id=escrow.escrow_id, already_settled=already,
                                confirmed=True, tx_hash=tx_hash, attempts=attempts)

        existing = self.ledger.find_active(job.job_id, tx_type)
        if existing is not None:
            if existing.status != TransactionStatus.COMPLETED.value:
                existing = self.ledger.update_status(
                    existing.tx_id, TransactionStatus.COMPLETED,
                    message="Confirmed by settlement layer",
                    settlement_tx_hash=tx_hash or None,
                )
            outcome.transaction = existing
            if release:
                outcome.fee_transaction = self.ledger.find_active(job.job_id, TransactionType.FEE)
            log.info("ESCROW %s already recorded job=%s tx=%s", tx_type.value.upper(),
                     job.job_id, existing.tx_id)
            return outcome

        note = "recovered from settlement state" if already else ""
        if release:
            fees = self.fees.calculate(amount)
            to_party = job.provider_id
        else:
            fees = no_fees(amount)
            to_party = job.client_id

        tx = self.ledger.record(
            tx_type,
            fees,
            job_id=job.job_id,
            from_party=ESCROW_PARTY,
            to_party=to_party,
            status=TransactionStatus.PROCESSING,
            settlement_reference=escrow.escrow_id,
            settlement_tx_hash=tx_hash,
            description=f"Escrow {tx_type.value} for job {job.job_id}",
            event_data={"note": note} if note else None,
        )
        outcome.transaction = self.ledger.update_status(
            tx.tx_id, TransactionStatus.COMPLETED,
            message="Confirmed by settlement layer",
        )
        if release and fees.total > 0:
            fee_tx = self.ledger.record(
                TransactionType.FEE,
                no_fees(fees.total),
                job_id=job.job_id,
                from_party=ESCROW_PARTY,
                to_party=PLATFORM_PARTY,
                status=TransactionStatus.COMPLETED,
                settlement_reference=escrow.escrow_id,
                description=f"Platform fees for job {job.job_id}",
                event_data={"release_tx": tx.tx_id, "fees": fees.to_dict()},
            )
            outcome.fee_transaction = fee_tx

        event_type = EventType.ESCROW_RELEASED if release else EventType.ESCROW_REFUNDED
        self.bus.publish(
            event_type, "job", job.job_id,
            data={"escrow_id": escrow.escrow_id, "tx_id": tx.tx_id,
                  "gross": str(fees.gross), "net": str(fees.net),
                  "fees": fees.to_dict(), "already_settled": already},
        )
        log.info("ESCROW %s job=%s escrow=%s gross=%s net=%s to=%s",
                 tx_type.value.upper(), job.job_id, escrow.escrow_id,
                 fees.gross, fees.net, to_party)
        return outcome

    # ── Manual movements ──────────────────────────────────────────────

    def record_manual_refund(self, job, amount: Decimal, from_party: str, to_party: str,
                             reason: str) -> Transaction:
        """A refund the escrow contract cannot express (partial, post-release).

        Recorded as pending and flagged for manual review.
        """
        amount = quantize(to_decimal(amount, "refund amount"))
        tx = self.ledger.record(
            TransactionType.REFUND,
            no_fees(amount),
            job_id=job.job_id,
            from_party=from_party,
            to_party=to_party,
            status=TransactionStatus.PENDING,
            description=f"Manual refund for job {job.job_id}",
            needs_review=True,
            review_reason=reason,
        )
        self.bus.publish(
            EventType.TRANSACTION_FLAGGED, "job", job.job_id,
            data={"tx_id": tx.tx_id, "amount": str(amount), "reason": reason},
        )
        log.warning("MANUAL REFUND job=%s tx=%s amount=%s %s → %s: %s",
                    job.job_id, tx.tx_id, amount, from_party, to_party, reason)
        return tx

    # ── Reconciliation ────────────────────────────────────────────────

    async def reconcile(self) -> ReconcileReport:
        """Advance pending Transactions against settlement state.

        Stuck ones are flagged for manual review, never abandoned.
        """
        report = ReconcileReport()
        now = time.time()
        for tx in self.ledger.pending():
            report.checked += 1
            if tx.settlement_reference:
                try:
                    advanced = await self._reconcile_one(tx, report)
                except SettlementUnavailable as e:
                    report.errors.append({"tx_id": tx.tx_id, "error": e.message})
                    log.warning("Reconcile tx=%s: %s", tx.tx_id, e.message)
                    advanced = False
                if advanced:
                    continue

            if not tx.needs_review and now - tx.created_at > self.stuck_timeout:
                reason = f"pending for more than {int(self.stuck_timeout)}s"
                self.ledger.flag_for_review(tx.tx_id, reason)
                self.bus.publish(
                    EventType.TRANSACTION_FLAGGED, "job", tx.job_id,
                    data={"tx_id": tx.tx_id, "reason": reason},
                )
                report.flagged.append(tx.tx_id)

        if report.completed or report.failed or report.flagged:
            log.info("RECONCILE checked=%d completed=%d failed=%d flagged=%d",
                     report.checked, len(report.completed), len(report.failed),
                     len(report.flagged))
        return report

    async def _reconcile_one(self, tx: Transaction, report: ReconcileReport) -> bool:
        escrow = await self.query_escrow(tx.settlement_reference)

        if tx.tx_type == TransactionType.DEPOSIT.value:
            self.ledger.update_status(tx.tx_id, TransactionStatus.COMPLETED,
                                      message="Escrow confirmed by reconciliation",
                                      data={"escrow_status": escrow.status})
            report.completed.append(tx.tx_id)
            report.confirmed_deposits.append((tx.job_id, tx.settlement_reference))
            return True

        expected = {
            TransactionType.RELEASE.value: EscrowStatus.RELEASED.value,
            TransactionType.REFUND.value: EscrowStatus.REFUNDED.value,
        }.get(tx.tx_type)
        if expected is None or escrow.status == EscrowStatus.PENDING.value:
            return False
        if escrow.status == expected:
            self.ledger.update_status(tx.tx_id, TransactionStatus.COMPLETED,
                                      message="Confirmed by reconciliation")
            report.completed.append(tx.tx_id)
            return True

        # Settled the other way: this movement never happened
        self.ledger.update_status(tx.tx_id, TransactionStatus.FAILED,
                                  message=f"Escrow settled as {escrow.status}")
        self.ledger.flag_for_review(tx.tx_id, f"escrow settled as {escrow.status}")
        report.failed.append(tx.tx_id)
        return True


async def run_reconciliation_loop(
    reconcile: Callable[[], Awaitable[ReconcileReport]],
    interval: float = RECONCILE_INTERVAL_SEC,
    stop: Optional[asyncio.Event] = None,
):
    """Call ``reconcile`` every ``interval`` seconds until ``stop`` is set."""
    stop = stop or asyncio.Event()
    log.info("Reconciliation loop started (every %.0fs)", interval)
    while not stop.is_set():
        try:
            await reconcile()
        except Exception:
            log.exception("Reconciliation pass failed")
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    log.info("Reconciliation loop stopped")
