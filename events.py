# Meridian Domain Events & Audit Log
# Every job transition, money movement and reputation write is published as
# an immutable event. The EventBus appends it to the audit log and fans it out
# to whoever subscribed (push notifications, webhooks, metrics). The core does
# not know who is listening.
#
# The audit log is hash-chained: each row stores the SHA-256 of its
# predecessor, so verify_chain() can replay it and find the first edited row.

import hashlib
import json
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

from db import decode_json, encode_json, sqlite_connection, sqlite_transaction

log = logging.getLogger("meridian.events")


# ── Event Types ───────────────────────────────────────────────────────

class EventType(str, Enum):
    # Job lifecycle
    JOB_CREATED = "job.created"
    JOB_STATUS_CHANGED = "job.status_changed"
    JOB_PROGRESS = "job.progress"
    JOB_RATED = "job.rated"

    # Escrow
    ESCROW_CREATED = "escrow.created"
    ESCROW_CONFIRMED = "escrow.confirmed"
    ESCROW_RELEASED = "escrow.released"
    ESCROW_REFUNDED = "escrow.refunded"
    SETTLEMENT_FAILED = "settlement.failed"
    TRANSACTION_FLAGGED = "transaction.flagged"

    # Reputation
    REPUTATION_UPDATED = "reputation.updated"
    REPUTATION_REVERSED = "reputation.reversed"
    REPUTATION_FAILED = "reputation.failed"

    # Disputes
    DISPUTE_OPENED = "dispute.opened"
    DISPUTE_RESOLVED = "dispute.resolved"

    # Providers
    PROVIDER_REGISTERED = "provider.registered"
    PROVIDER_AVAILABILITY = "provider.availability"


@dataclass
class Event:
    """Immutable event record.

    Tamper-evident: each event carries prev_hash (SHA-256 of the preceding
    event's canonical JSON) and event_hash (SHA-256 of this event).
    """
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str = ""
    entity_type: str = ""      # "job", "provider", "client", "transaction"
    entity_id: str = ""
    timestamp: float = field(default_factory=time.time)
    actor: str = ""            # "system", "client:<id>", "provider:<id>", "operator:<id>"
    data: dict = field(default_factory=dict)
    prev_hash: str = ""
    event_hash: str = ""

    def compute_hash(self) -> str:
        """SHA-256 of the canonical payload (excludes event_hash)."""
        canonical = json.dumps({
            "event_id": self.event_id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp,
            "actor": self.actor,
            "data": self.data,
            "prev_hash": self.prev_hash,
        }, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> dict:
        return asdict(self)


def _row_to_event(r) -> Event:
    return Event(
        event_id=r["event_id"],
        event_type=r["event_type"],
        entity_type=r["entity_type"],
        entity_id=r["entity_id"],
        timestamp=r["timestamp"],
        actor=r["actor"] or "",
        data=decode_json(r["data"], {}),
        prev_hash=r["prev_hash"] or "",
        event_hash=r["event_hash"] or "",
    )


# ── Event Store ───────────────────────────────────────────────────────

class EventStore:
    """Append-only, hash-chained audit log in the shared SQLite database."""

    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    def append(self, event: Event) -> Event:
        """Append an event, linking it to the most recent one.

        The read of the chain head and the insert share one write
        transaction, so concurrent appends never fork the chain.
        """
        # Round-trip through JSON so the stored payload hashes identically
        event.data = json.loads(encode_json(event.data))
        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT event_hash FROM events ORDER BY rowid DESC LIMIT 1"
            ).fetchone()
            event.prev_hash = row["event_hash"] if row and row["event_hash"] else ""
            event.event_hash = event.compute_hash()
            conn.execute(
                """INSERT INTO events
                   (event_id, event_type, entity_type, entity_id,
                    timestamp, actor, data, prev_hash, event_hash)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    event.event_id, event.event_type, event.entity_type,
                    event.entity_id, event.timestamp, event.actor,
                    encode_json(event.data), event.prev_hash, event.event_hash,
                ),
            )
        return event

    def verify_chain(self, limit: int = 0) -> dict:
        """Replay the hash chain.

        Returns {"valid": bool, "events_checked": int, "broken_at": event_id or None}.
        """
        query = "SELECT * FROM events ORDER BY rowid ASC"
        params: tuple = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)
        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()

        prev_hash = ""
        for i, row in enumerate(rows):
            evt = _row_to_event(row)
            if evt.prev_hash != prev_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"prev_hash mismatch at event {evt.event_id}",
                }
            if evt.compute_hash() != evt.event_hash:
                return {
                    "valid": False,
                    "events_checked": i + 1,
                    "broken_at": evt.event_id,
                    "reason": f"event_hash tampered at event {evt.event_id}",
                }
            prev_hash = evt.event_hash

        return {"valid": True, "events_checked": len(rows), "broken_at": None}

    def get_events(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None,
                   event_type: Optional[str] = None, since: Optional[float] = None,
                   limit: int = 1000) -> list[Event]:
        """Events in append order, optionally narrowed by entity, type or time."""
        if isinstance(event_type, EventType):
            event_type = event_type.value
        filters = (
            ("entity_type = ?", entity_type),
            ("entity_id = ?", entity_id),
            ("event_type = ?", event_type),
            ("timestamp >= ?", since),
        )
        active = [(sql, value) for sql, value in filters if value]
        where = " AND ".join(sql for sql, _ in active) or "1=1"
        params = [value for _, value in active] + [limit]

        with sqlite_connection(self.db_path) as conn:
            rows = conn.execute(
                f"SELECT * FROM events WHERE {where} ORDER BY rowid ASC LIMIT ?", params
            ).fetchall()
        return [_row_to_event(r) for r in rows]

    def get_entity_history(self, entity_type: str, entity_id: str) -> list[Event]:
        """Full audit timeline of one job, transaction or subject."""
        return self.get_events(entity_type, entity_id, limit=100_000)


# ── Event Bus ─────────────────────────────────────────────────────────

Listener = Callable[[Event], None]


class EventBus:
    """Records domain events and dispatches them to subscribers.

    Subscribers are called synchronously after the event is durable. A
    failing subscriber is logged and does not affect the publisher or the
    other subscribers.
    """

    def __init__(self, store: Optional[EventStore] = None):
        self.store = store or EventStore()
        self._listeners: list[tuple[str, Listener]] = []

    def subscribe(self, listener: Listener, prefix: str = ""):
        """Receive every event whose type starts with ``prefix``."""
        self._listeners.append((prefix, listener))

    def unsubscribe(self, listener: Listener):
        self._listeners = [(p, l) for p, l in self._listeners if l is not listener]

    def publish(
        self,
        event_type: EventType,
        entity_type: str,
        entity_id: str,
        actor: str = "system",
        data: Optional[dict] = None,
    ) -> Event:
        event = self.store.append(Event(
            event_type=EventType(event_type).value,
            entity_type=entity_type,
            entity_id=entity_id,
            actor=actor,
            data=data or {},
        ))
        for prefix, listener in list(self._listeners):
            if not event.event_type.startswith(prefix):
                continue
            try:
                listener(event)
            except Exception:
                log.exception("Event listener %r failed on %s (%s)",
                              listener, event.event_type, event.event_id)
        return event


# ── Singleton ─────────────────────────────────────────────────────────

_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
