"""Shared pytest configuration for the Meridian test suite.

Ensures the project root is on sys.path so test files can import source
modules (jobs, escrow, reputation, etc.) directly, and keeps every database
and log file in a temporary directory.
"""

import os
import sys
import tempfile
from pathlib import Path

# Add project root to sys.path so `import jobs`, `from api import app`, etc. work
PROJECT_ROOT = str(Path(__file__).resolve().parent.parent)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

_tmp_ctx = tempfile.TemporaryDirectory(prefix="meridian_test_")
TMPDIR = _tmp_ctx.name
os.environ["MERIDIAN_ENV"] = "test"
os.environ["MERIDIAN_API_TOKEN"] = ""
os.environ["MERIDIAN_DB_PATH"] = os.path.join(TMPDIR, "meridian.db")
os.environ["MERIDIAN_LOG_FILE"] = os.path.join(TMPDIR, "meridian.log")
os.environ["MERIDIAN_RATE_LIMIT_REQUESTS"] = "5000"  # Prevent 429s in tests
os.environ["MERIDIAN_SETTLEMENT_BACKEND"] = "local"

import pytest


def fresh_db(prefix: str = "core") -> str:
    """Path of an isolated database file."""
    return os.path.join(TMPDIR, f"{prefix}_{os.urandom(4).hex()}.db")


class Core:
    """One fully wired, isolated core: settlement, ledgers, bus, state machine."""

    def __init__(self, timeout: float = 0.5, max_attempts: int = 3, dispute_window: float = 3600):
        from escrow import EscrowCoordinator, RetryPolicy
        from events import EventBus, EventStore
        from fees import FeeCalculator
        from jobs import JobStateMachine, JobStore
        from ledger import TransactionLedger
        from reputation import ReputationLedger
        from settlement import LocalSettlementClient

        self.db = fresh_db()
        self.bus = EventBus(EventStore(self.db))
        self.settlement = LocalSettlementClient(self.db)
        self.ledger = TransactionLedger(self.db)
        self.escrow = EscrowCoordinator(
            self.settlement, self.ledger, FeeCalculator(), self.bus,
            retry=RetryPolicy(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0),
            timeout=timeout,
        )
        self.reputation = ReputationLedger(self.db, self.ledger, self.bus, self.settlement)
        self.store = JobStore(self.db)
        self.sm = JobStateMachine(self.store, self.escrow, self.reputation, self.bus,
                                  dispute_window=dispute_window)


@pytest.fixture
def core() -> Core:
    return Core()
