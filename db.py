# Meridian Database & Configuration Layer
# SQLite (WAL) persistence shared by every store in the core.
#
# One database file holds jobs, reputation, transactions, the audit log and
# (for the local settlement backend) simulated escrows. Writes that must be
# atomic go through sqlite_transaction(), which takes the write lock up front
# (BEGIN IMMEDIATE) so compare-and-swap updates are never interleaved.

# Auto-load .env file (must be before any os.environ reads)
from dotenv import load_dotenv
load_dotenv()

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager

log = logging.getLogger("meridian")

# ── Configuration ─────────────────────────────────────────────────────

DEFAULT_DB_FILE = os.path.join(os.path.dirname(__file__), "meridian.db")
LOG_FILE = os.environ.get(
    "MERIDIAN_LOG_FILE", os.path.join(os.path.dirname(__file__), "meridian.log")
)
LOG_LEVEL = os.environ.get("MERIDIAN_LOG_LEVEL", "INFO").upper()
MERIDIAN_ENV = os.environ.get("MERIDIAN_ENV", "dev").lower()

SQLITE_BUSY_TIMEOUT_SEC = float(os.environ.get("MERIDIAN_SQLITE_TIMEOUT_SEC", "30"))
RATE_LIMIT_REQUESTS = int(os.environ.get("MERIDIAN_RATE_LIMIT_REQUESTS", "120"))
RATE_LIMIT_WINDOW_SEC = float(os.environ.get("MERIDIAN_RATE_LIMIT_WINDOW_SEC", "60"))


def db_path() -> str:
    return os.environ.get("MERIDIAN_DB_PATH", DEFAULT_DB_FILE)


# ── Logging ───────────────────────────────────────────────────────────


def setup_logging(log_file=None, level=None):
    """Configure the ``meridian`` logger once: console + file.

    Child loggers (meridian.escrow, meridian.settlement, ...) propagate here.
    """
    logger = logging.getLogger("meridian")
    if logger.handlers:
        return logger

    level = level or getattr(logging, LOG_LEVEL, logging.INFO)
    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file or LOG_FILE)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


# ── Schema ────────────────────────────────────────────────────────────

SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id TEXT PRIMARY KEY,
    title TEXT DEFAULT '',
    client_id TEXT NOT NULL,
    client_wallet TEXT DEFAULT '',
    provider_id TEXT,
    provider_wallet TEXT DEFAULT '',
    status TEXT NOT NULL,
    sub_status TEXT,
    pending_action TEXT,
    pending_target TEXT,
    pending_context TEXT DEFAULT '{}',
    payment_type TEXT DEFAULT 'fixed',
    budget TEXT NOT NULL,
    max_hourly_rate TEXT DEFAULT '0',
    estimated_duration_hours REAL DEFAULT 0,
    escrow_amount TEXT DEFAULT '0',
    escrow_id TEXT,
    escrow_reference TEXT,
    progress REAL DEFAULT 0,
    metrics TEXT DEFAULT '{}',
    results TEXT DEFAULT '{}',
    lifecycle TEXT DEFAULT '{}',
    dispute TEXT,
    rating INTEGER,
    failure_reason TEXT DEFAULT '',
    completion_event_id TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, sub_status);
CREATE INDEX IF NOT EXISTS idx_jobs_provider ON jobs(provider_id);

CREATE TABLE IF NOT EXISTS reputation_subjects (
    subject_id TEXT PRIMARY KEY,
    subject_type TEXT NOT NULL DEFAULT 'provider',
    wallet_address TEXT DEFAULT '',
    availability_status TEXT DEFAULT 'available',
    score REAL DEFAULT 0,
    successful_jobs INTEGER DEFAULT 0,
    failed_jobs INTEGER DEFAULT 0,
    rating_sum REAL DEFAULT 0,
    rating_count REAL DEFAULT 0,
    average_rating REAL DEFAULT 0,
    success_rate REAL DEFAULT 0,
    total_earnings TEXT DEFAULT '0',
    total_spent TEXT DEFAULT '0',
    adjustment_points REAL DEFAULT 0,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_subjects_type ON reputation_subjects(subject_type, score DESC);

CREATE TABLE IF NOT EXISTS reputation_events (
    event_id TEXT PRIMARY KEY,
    subject_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    action TEXT NOT NULL,
    score_before REAL,
    score_after REAL,
    score_delta REAL,
    weight REAL DEFAULT 1.0,
    is_reversible INTEGER DEFAULT 1,
    status TEXT NOT NULL DEFAULT 'pending',
    components TEXT DEFAULT '{}',
    context TEXT DEFAULT '{}',
    description TEXT DEFAULT '',
    related_events TEXT DEFAULT '[]',
    system_notes TEXT DEFAULT '',
    reverse_reason TEXT DEFAULT '',
    created_at REAL NOT NULL,
    processed_at REAL,
    reversed_at REAL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rep_events_subject ON reputation_events(subject_id, created_at);
CREATE INDEX IF NOT EXISTS idx_rep_events_status ON reputation_events(status);

CREATE TABLE IF NOT EXISTS transactions (
    tx_id TEXT PRIMARY KEY,
    tx_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    job_id TEXT DEFAULT '',
    from_party TEXT DEFAULT '',
    to_party TEXT DEFAULT '',
    gross_amount TEXT NOT NULL,
    fee_platform TEXT DEFAULT '0',
    fee_processing TEXT DEFAULT '0',
    fee_gas TEXT DEFAULT '0',
    fee_total TEXT DEFAULT '0',
    net_amount TEXT NOT NULL,
    settlement_reference TEXT DEFAULT '',
    settlement_tx_hash TEXT DEFAULT '',
    description TEXT DEFAULT '',
    needs_review INTEGER DEFAULT 0,
    review_reason TEXT DEFAULT '',
    events TEXT DEFAULT '[]',
    created_at REAL NOT NULL,
    processed_at REAL,
    completed_at REAL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tx_job ON transactions(job_id, tx_type);
CREATE INDEX IF NOT EXISTS idx_tx_status ON transactions(status);

CREATE TABLE IF NOT EXISTS events (
    event_id TEXT PRIMARY KEY,
    event_type TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    timestamp REAL NOT NULL,
    actor TEXT DEFAULT '',
    data TEXT DEFAULT '{}',
    prev_hash TEXT DEFAULT '',
    event_hash TEXT DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_events_entity ON events(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);

CREATE TABLE IF NOT EXISTS escrows (
    escrow_id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    client TEXT DEFAULT '',
    provider TEXT NOT NULL,
    amount TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_escrows_job ON escrows(job_id);

CREATE TABLE IF NOT EXISTS chain_ratings (
    rating_id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider TEXT NOT NULL,
    job_id TEXT NOT NULL,
    rating INTEGER NOT NULL,
    review TEXT DEFAULT '',
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS rate_limit_hits (
    bucket TEXT NOT NULL,
    ts REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rate_limit_bucket ON rate_limit_hits(bucket, ts);
CREATE INDEX IF NOT EXISTS idx_rate_limit_ts ON rate_limit_hits(ts);
"""

_initialized: set[str] = set()


def init_db(path: str):
    """Create every table and index. Idempotent."""
    conn = sqlite3.connect(path, timeout=SQLITE_BUSY_TIMEOUT_SEC)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()
    _initialized.add(path)


# ── Connections ───────────────────────────────────────────────────────


@contextmanager
def sqlite_connection(path: str = None):
    """Autocommit SQLite connection with WAL mode and Row access."""
    path = path or db_path()
    if path not in _initialized:
        init_db(path)
    conn = sqlite3.connect(path, timeout=SQLITE_BUSY_TIMEOUT_SEC, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def sqlite_transaction(path: str = None):
    """Execute a mutation in a single SQLite write transaction."""
    with sqlite_connection(path) as conn:
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise


# ── Payload helpers ───────────────────────────────────────────────────


def decode_json(payload, default=None):
    """Decode a JSON column, tolerating NULL and malformed values."""
    if payload is None or payload == "":
        return default
    if isinstance(payload, (dict, list)):
        return payload
    try:
        return json.loads(payload)
    except (TypeError, json.JSONDecodeError):
        log.warning("Undecodable JSON column value: %.80r", payload)
        return default


def encode_json(data) -> str:
    return json.dumps(data, sort_keys=True, default=str)


def next_updated_at(previous: float) -> float:
    """Monotonic updated_at: never equal to or behind the previous write."""
    ts = time.time()
    if previous is not None and ts <= previous:
        ts = previous + 1e-6
    return ts


# ── Rate limiting ─────────────────────────────────────────────────────


class RateLimitStore:
    """Sliding-window request counter kept in SQLite.

    Shared by every API worker on the same database. Hits older than the
    window are deleted on each check, so idle buckets disappear.
    """

    def __init__(self, path: str = None, limit: int = RATE_LIMIT_REQUESTS,
                 window: float = RATE_LIMIT_WINDOW_SEC):
        self.path = path
        self.limit = limit
        self.window = window

    def hit(self, bucket: str, now: float = None) -> bool:
        """Count one request for ``bucket``; False when it is over the limit."""
        now = time.time() if now is None else now
        with sqlite_transaction(self.path) as conn:
            conn.execute("DELETE FROM rate_limit_hits WHERE ts <= ?", (now - self.window,))
            used = conn.execute(
                "SELECT COUNT(*) FROM rate_limit_hits WHERE bucket = ?", (bucket,)
            ).fetchone()[0]
            if used >= self.limit:
                return False
            conn.execute("INSERT INTO rate_limit_hits (bucket, ts) VALUES (?, ?)", (bucket, now))
        return True

    def buckets(self) -> dict:
        """Live hit counts per bucket."""
        with sqlite_connection(self.path) as conn:
            rows = conn.execute(
                "SELECT bucket, COUNT(*) AS hits FROM rate_limit_hits GROUP BY bucket"
            ).fetchall()
        return {r["bucket"]: r["hits"] for r in rows}
