# Meridian Transaction Ledger
# Append-only record of money movements with an embedded event timeline.
#
# Transactions are never deleted. Corrections are new records. Status only
# moves forward:
#
#   pending → processing → completed | failed | cancelled
#   pending ─────────────→ completed | failed | cancelled
#
# netAmount + fees.total == grossAmount is enforced on every write.

import logging
import os
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from db import decode_json, encode_json, next_updated_at, sqlite_connection, sqlite_transaction
from errors import LedgerInvariantViolation, NotFound
from fees import Fees

log = logging.getLogger("meridian.ledger")


class TransactionType(str, Enum):
    DEPOSIT = "deposit"          # client → escrow
    RELEASE = "release"          # escrow → provider
    REFUND = "refund"            # escrow → client (or provider → client after a dispute)
    PAYMENT = "payment"
    FEE = "fee"                  # platform take on a release
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_TX_STATUSES = frozenset({
    TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED,
})

# Rank used to keep status transitions monotonic
_STATUS_RANK = {
    TransactionStatus.PENDING: 0,
    TransactionStatus.PROCESSING: 1,
    TransactionStatus.COMPLETED: 2,
    TransactionStatus.FAILED: 2,
    TransactionStatus.CANCELLED: 2,
}

PLATFORM_PARTY = os.environ.get("MERIDIAN_PLATFORM_PARTY", "platform")


@dataclass
class Transaction:
    """One money movement."""
    tx_id: str = ""
    tx_type: str = TransactionType.DEPOSIT.value
    status: str = TransactionStatus.PENDING.value
    job_id: str = ""
    from_party: str = ""
    to_party: str = ""
    gross_amount: Decimal = Decimal("0")
    fee_platform: Decimal = Decimal("0")
    fee_processing: Decimal = Decimal("0")
    fee_gas: Decimal = Decimal("0")
    fee_total: Decimal = Decimal("0")
    net_amount: Decimal = Decimal("0")
    settlement_reference: str = ""   # escrow id on the settlement layer
    settlement_tx_hash: str = ""     # receipt / tx hash of the settlement call
    description: str = ""
    needs_review: bool = False
    review_reason: str = ""
    events: list = field(default_factory=list)
    created_at: float = 0.0
    processed_at: Optional[float] = None
    completed_at: Optional[float] = None
    updated_at: float = 0.0

    @property
    def fees(self) -> dict:
        return {
            "platform": self.fee_platform,
            "processing": self.fee_processing,
            "gas": self.fee_gas,
            "total": self.fee_total,
        }

    @property
    def is_pending(self) -> bool:
        return self.status in (TransactionStatus.PENDING.value, TransactionStatus.PROCESSING.value)

    def to_dict(self) -> dict:
        d = asdict(self)
        for key in ("gross_amount", "fee_platform", "fee_processing",
                    "fee_gas", "fee_total", "net_amount"):
            d[key] = str(d[key])
        return d

    def to_receipt(self) -> dict:
        """Public projection of the transaction."""
        return {
            "tx_id": self.tx_id,
            "type": self.tx_type,
            "status": self.status,
            "job_id": self.job_id,
            "from": self.from_party,
            "to": self.to_party,
            "gross_amount": str(self.gross_amount),
            "fees": {k: str(v) for k, v in self.fees.items()},
            "net_amount": str(self.net_amount),
            "settlement_reference": self.settlement_reference,
            "settlement_tx_hash": self.settlement_tx_hash,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }


def _new_tx_id() -> str:
    return f"tx_{int(time.time() * 1000):x}_{os.urandom(4).hex()}"


def _row_to_tx(row) -> Transaction:
    return Transaction(
        tx_id=row["tx_id"],
        tx_type=row["tx_type"],
        status=row["status"],
        job_id=row["job_id"],
        from_party=row["from_party"],
        to_party=row["to_party"],
        gross_amount=Decimal(row["gross_amount"]),
        fee_platform=Decimal(row["fee_platform"]),
        fee_processing=Decimal(row["fee_processing"]),
        fee_gas=Decimal(row["fee_gas"]),
        fee_total=Decimal(row["fee_total"]),
        net_amount=Decimal(row["net_amount"]),
        settlement_reference=row["settlement_reference"] or "",
        settlement_tx_hash=row["settlement_tx_hash"] or "",
        description=row["description"] or "",
        needs_review=bool(row["needs_review"]),
        review_reason=row["review_reason"] or "",
        events=decode_json(row["events"], []),
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        completed_at=row["completed_at"],
        updated_at=row["updated_at"],
    )


class TransactionLedger:
    """SQLite-backed append-only transaction ledger.

    The only writer of the transactions table. EscrowCoordinator records
    money movements here; ReputationLedger appends audit entries to the
    timeline of the transaction that triggered a reputation change.
    """

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def record(
        self,
        tx_type: TransactionType,
        fees: Fees,
        job_id: str = "",
        from_party: str = "",
        to_party: str = "",
        status: TransactionStatus = TransactionStatus.PENDING,
        settlement_reference: str = "",
        settlement_tx_hash: str = "",
        description: str = "",
        needs_review: bool = False,
        review_reason: str = "",
        event_data: Optional[dict] = None,
    ) -> Transaction:
        """Create a transaction. Fees come from FeeCalculator, never ad hoc."""
        if fees.net + fees.total != fees.gross:
            raise LedgerInvariantViolation(
                "net + fees.total != gross",
                {"gross": str(fees.gross), "total": str(fees.total), "net": str(fees.net)},
            )

        ts = time.time()
        status = TransactionStatus(status)
        tx = Transaction(
            tx_id=_new_tx_id(),
            tx_type=TransactionType(tx_type).value,
            status=status.value,
            job_id=job_id,
            from_party=from_party,
            to_party=to_party,
            gross_amount=fees.gross,
            fee_platform=fees.platform,
            fee_processing=fees.processing,
            fee_gas=fees.gas,
            fee_total=fees.total,
            net_amount=fees.net,
            settlement_reference=settlement_reference,
            settlement_tx_hash=settlement_tx_hash,
            description=description,
            needs_review=needs_review,
            review_reason=review_reason,
            events=[{"type": "created", "timestamp": ts,
                     "data": {"status": status.value, **(event_data or {})}}],
            created_at=ts,
            processed_at=ts if status == TransactionStatus.PROCESSING else None,
            completed_at=ts if status == TransactionStatus.COMPLETED else None,
            updated_at=ts,
        )

        with sqlite_transaction(self.db_path) as conn:
            conn.execute(
                """INSERT INTO transactions
                   (tx_id, tx_type, status, job_id, from_party, to_party,
                    gross_amount, fee_platform, fee_processing, fee_gas,
                    fee_total, net_amount, settlement_reference,
                    settlement_tx_hash, description, needs_review,
                    review_reason, events, created_at, processed_at,
                    completed_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    tx.tx_id, tx.tx_type, tx.status, tx.job_id,
                    tx.from_party, tx.to_party,
                    str(tx.gross_amount), str(tx.fee_platform),
                    str(tx.fee_processing), str(tx.fee_gas),
                    str(tx.fee_total), str(tx.net_amount),
                    tx.settlement_reference, tx.settlement_tx_hash,
                    tx.description, int(tx.needs_review), tx.review_reason,
                    encode_json(tx.events), tx.created_at, tx.processed_at,
                    tx.completed_at, tx.updated_at,
                ),
            )

        log.info("TX %s %s %s job=%s gross=%s net=%s ref=%s",
                 tx.tx_id, tx.tx_type, tx.status, job_id,
                 tx.gross_amount, tx.net_amount, settlement_reference or "-")
        return tx

    def get(self, tx_id: str) -> Transaction:
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)
            ).fetchone()
        if not row:
            raise NotFound(f"Transaction {tx_id} not found")
        return _row_to_tx(row)

    def find(
        self,
        job_id: Optional[str] = None,
        tx_type: Optional[TransactionType] = None,
        statuses: Optional[list] = None,
        needs_review: Optional[bool] = None,
        limit: int = 1000,
    ) -> list[Transaction]:
        clauses, params = [], []
        if job_id is not None:
            clauses.append("job_id = ?")
            params.append(job_id)
        if tx_type is not None:
            clauses.append("tx_type = ?")
            params.append(TransactionType(tx_type).value)
        if statuses:
            clauses.append(f"status IN ({','.join('?' for _ in statuses)})")
            params.extend(TransactionStatus(s).value for s in statuses)
        if needs_review is not None:
            clauses.append("needs_review = ?")
            params.append(int(needs_review))
        where = " AND ".join(clauses) if clauses else "1=1"
        params.append(limit)

        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM transactions WHERE {where} "
                "ORDER BY created_at ASC, rowid ASC LIMIT ?",
                params,
            ).fetchall()
        return [_row_to_tx(r) for r in rows]

    def find_active(self, job_id: str, tx_type: TransactionType) -> Optional[Transaction]:
        """The live (not failed/cancelled) transaction of a type for a job."""
        txs = self.find(
            job_id=job_id, tx_type=tx_type,
            statuses=[TransactionStatus.PENDING, TransactionStatus.PROCESSING,
                      TransactionStatus.COMPLETED],
        )
        return txs[-1] if txs else None

    def pending(self) -> list[Transaction]:
        return self.find(statuses=[TransactionStatus.PENDING, TransactionStatus.PROCESSING])

    def update_status(
        self,
        tx_id: str,
        new_status: TransactionStatus,
        message: str = "",
        data: Optional[dict] = None,
        settlement_tx_hash: Optional[str] = None,
    ) -> Transaction:
        """Advance a transaction's status. Same status is a no-op.

        Moving backwards (or out of a terminal status) is a ledger invariant
        violation: it is logged and raised, never silently corrected.
        """
        new_status = TransactionStatus(new_status)
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"Transaction {tx_id} not found")
            tx = _row_to_tx(row)
            old_status = TransactionStatus(tx.status)
            if old_status == new_status:
                return tx

            if (old_status in TERMINAL_TX_STATUSES
                    or _STATUS_RANK[new_status] < _STATUS_RANK[old_status]):
                log.critical("LEDGER INVARIANT tx=%s status %s → %s rejected",
                             tx_id, old_status.value, new_status.value)
                raise LedgerInvariantViolation(
                    f"Transaction {tx_id} cannot move {old_status.value} → {new_status.value}",
                    {"tx_id": tx_id, "from": old_status.value, "to": new_status.value},
                )

            ts = time.time()
            tx.events.append({
                "type": "status_change",
                "timestamp": ts,
                "data": {"old_status": old_status.value, "new_status": new_status.value,
                         **(data or {})},
                "message": message or f"Status changed from {old_status.value} to {new_status.value}",
            })
            tx.status = new_status.value
            if new_status == TransactionStatus.PROCESSING and not tx.processed_at:
                tx.processed_at = ts
            if new_status == TransactionStatus.COMPLETED and not tx.completed_at:
                tx.completed_at = ts
            if settlement_tx_hash:
                tx.settlement_tx_hash = settlement_tx_hash
            tx.updated_at = next_updated_at(tx.updated_at)

            conn.execute(
                """UPDATE transactions
                   SET status = ?, events = ?, processed_at = ?, completed_at = ?,
                       settlement_tx_hash = ?, updated_at = ?
                   WHERE tx_id = ?""",
                (tx.status, encode_json(tx.events), tx.processed_at,
                 tx.completed_at, tx.settlement_tx_hash, tx.updated_at, tx_id),
            )

        log.info("TX %s %s → %s", tx_id, old_status.value, new_status.value)
        return tx

    def add_event(self, tx_id: str, event_type: str, data: Optional[dict] = None,
                  message: str = "") -> Transaction:
        """Append an entry to a transaction's timeline."""
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"Transaction {tx_id} not found")
            tx = _row_to_tx(row)
            entry = {"type": event_type, "timestamp": time.time(), "data": data or {}}
            if message:
                entry["message"] = message
            tx.events.append(entry)
            tx.updated_at = next_updated_at(tx.updated_at)
            conn.execute(
                "UPDATE transactions SET events = ?, updated_at = ? WHERE tx_id = ?",
                (encode_json(tx.events), tx.updated_at, tx_id),
            )
        return tx

    def flag_for_review(self, tx_id: str, reason: str) -> Transaction:
        """Mark a transaction for manual reconciliation. Never abandons it."""
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM transactions WHERE tx_id = ?", (tx_id,)
            ).fetchone()
            if not row:
                raise NotFound(f"Transaction {tx_id} not found")
            tx = _row_to_tx(row)
            if tx.needs_review and tx.review_reason == reason:
                return tx
            tx.needs_review = True
            tx.review_reason = reason
            tx.events.append({"type": "flagged_for_review", "timestamp": time.time(),
                              "data": {"reason": reason}})
            tx.updated_at = next_updated_at(tx.updated_at)
            conn.execute(
                """UPDATE transactions SET needs_review = 1, review_reason = ?,
                   events = ?, updated_at = ? WHERE tx_id = ?""",
                (reason, encode_json(tx.events), tx.updated_at, tx_id),
            )
        log.warning("TX %s flagged for manual review: %s", tx_id, reason)
        return tx

    def totals_for_job(self, job_id: str) -> dict:
        """Completed money movement per type for one job."""
        totals: dict = {}
        for tx in self.find(job_id=job_id, statuses=[TransactionStatus.COMPLETED]):
            totals[tx.tx_type] = totals.get(tx.tx_type, Decimal("0")) + tx.net_amount
        return totals


# ── Singleton ─────────────────────────────────────────────────────────

_ledger: Optional[TransactionLedger] = None


def get_transaction_ledger() -> TransactionLedger:
    global _ledger
    if _ledger is None:
        _ledger = TransactionLedger()
    return _ledger
