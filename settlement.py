# Meridian Settlement Clients
# Async wrapper around the escrow and reputation contracts.
#
# Every call is fallible and may take seconds to confirm. A call returns a
# SettlementResult (success + receipt, or an error string for a rejection);
# transport failures raise ConnectionError/OSError and timeouts raise
# TimeoutError. The coordinator decides what to retry.
#
# Backends:
#   local  SQLite-backed simulated contract (dev, tests, single-node setups)
#   web3   EVM escrow + reputation contracts over JSON-RPC
#
# NOTE: MERIDIAN_SETTLEMENT_BACKEND defaults to "local". Set it to "web3" and
# fill in MERIDIAN_RPC_URL / MERIDIAN_*_CONTRACT / MERIDIAN_BACKEND_PRIVATE_KEY
# to settle on chain.

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional

from db import sqlite_connection, sqlite_transaction

log = logging.getLogger("meridian.settlement")

# ── Configuration ─────────────────────────────────────────────────────

SETTLEMENT_BACKEND = os.environ.get("MERIDIAN_SETTLEMENT_BACKEND", "local").lower()
RPC_URL = os.environ.get("MERIDIAN_RPC_URL", "")
ESCROW_CONTRACT = os.environ.get("MERIDIAN_ESCROW_CONTRACT", "")
REPUTATION_CONTRACT = os.environ.get("MERIDIAN_REPUTATION_CONTRACT", "")
BACKEND_PRIVATE_KEY = os.environ.get("MERIDIAN_BACKEND_PRIVATE_KEY", "")
CHAIN_ID = int(os.environ.get("MERIDIAN_CHAIN_ID", "80002"))
RECEIPT_TIMEOUT_SEC = float(os.environ.get("MERIDIAN_RECEIPT_TIMEOUT_SEC", "120"))
# First block worth scanning for EscrowCreated logs (the contract deployment)
ESCROW_FROM_BLOCK = int(os.environ.get("MERIDIAN_ESCROW_FROM_BLOCK", "0"))
LOCAL_OPERATOR = os.environ.get("MERIDIAN_LOCAL_OPERATOR", "platform")


# ── Data Models ───────────────────────────────────────────────────────


class EscrowStatus(str, Enum):
    PENDING = "pending"
    RELEASED = "released"
    REFUNDED = "refunded"


# Contract encodes status as uint8
_CHAIN_STATUS = {0: EscrowStatus.PENDING, 1: EscrowStatus.RELEASED, 2: EscrowStatus.REFUNDED}


@dataclass
class EscrowInfo:
    escrow_id: str
    job_id: str
    client: str
    provider: str
    amount: Decimal
    status: str = EscrowStatus.PENDING.value
    created_at: float = 0.0

    def to_dict(self) -> dict:
        d = asdict(self)
        d["amount"] = str(self.amount)
        return d


@dataclass
class ChainReputation:
    provider: str
    total_ratings: int = 0
    average_rating: float = 0.0
    level: int = 0
    experience: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SettlementResult:
    """(success, receipt | error) from one settlement call."""
    success: bool
    escrow_id: str = ""
    tx_hash: str = ""
    escrow: Optional[EscrowInfo] = None
    reputation: Optional[ChainReputation] = None
    receipt: dict = field(default_factory=dict)
    error: str = ""

    @classmethod
    def failed(cls, error: str) -> "SettlementResult":
        return cls(success=False, error=error)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "escrow_id": self.escrow_id,
            "tx_hash": self.tx_hash,
            "escrow": self.escrow.to_dict() if self.escrow else None,
            "reputation": self.reputation.to_dict() if self.reputation else None,
            "receipt": self.receipt,
            "error": self.error,
        }


# ── Interface ─────────────────────────────────────────────────────────


class SettlementClient(ABC):
    """What the core requires of the settlement layer."""

    name = "abstract"

    @abstractmethod
    async def create_escrow(self, job_id: str, provider_address: str,
                            amount: Decimal) -> SettlementResult:
        ...

    @abstractmethod
    async def release_escrow(self, escrow_id: str) -> SettlementResult:
        ...

    @abstractmethod
    async def refund_escrow(self, escrow_id: str) -> SettlementResult:
        ...

    @abstractmethod
    async def get_escrow(self, escrow_id: str) -> SettlementResult:
        ...

    async def find_escrow_by_job(self, job_id: str) -> SettlementResult:
        """Locate the escrow created for a job, if the backend can index by job.

        success with escrow=None means the backend knows no escrow exists;
        a failed result means it cannot tell.
        """
        return SettlementResult.failed("lookup by job not supported")

    @abstractmethod
    async def submit_rating(self, provider_address: str, job_id: str,
                            rating: int, review: str = "") -> SettlementResult:
        ...

    @abstractmethod
    async def get_reputation(self, provider_address: str) -> SettlementResult:
        ...


# ── Local backend ─────────────────────────────────────────────────────


def _fake_tx_hash() -> str:
    return "0x" + os.urandom(32).hex()


def _row_to_escrow(row) -> EscrowInfo:
    return EscrowInfo(
        escrow_id=row["escrow_id"],
        job_id=row["job_id"],
        client=row["client"],
        provider=row["provider"],
        amount=Decimal(row["amount"]),
        status=row["status"],
        created_at=row["created_at"],
    )


class LocalSettlementClient(SettlementClient):
    """Simulated escrow contract persisted in SQLite.

    Mirrors contract semantics: release/refund only succeed from pending, and
    a second release is rejected with "already released". Fault injection
    hooks make retry and unknown-outcome paths testable:

        client.fail_next(2)                    # next 2 mutating calls rejected
        client.fail_next(1, transport=True)    # next call raises ConnectionError
        client.hang_next()                     # next call applies, then never returns
        client.latency = 0.05                  # every call sleeps first
    """

    name = "local"

    def __init__(self, db_path: Optional[str] = None, latency: float = 0.0,
                 operator: str = LOCAL_OPERATOR):
        self.db_path = db_path
        self.latency = latency
        self.operator = operator
        self.calls: list[tuple] = []
        self._failures: list[tuple[str, bool]] = []
        self._hangs: list[bool] = []
        self.hang_seconds = 3600.0

    # ── Fault injection ──

    def fail_next(self, count: int = 1, error: str = "injected failure",
                  transport: bool = False):
        self._failures.extend([(error, transport)] * count)

    def hang_next(self, count: int = 1, apply: bool = True):
        """Next calls never return. With apply=True the effect lands first."""
        self._hangs.extend([apply] * count)

    def reset_faults(self):
        self._failures.clear()
        self._hangs.clear()
        self.latency = 0.0

    async def _enter(self, method: str, *args) -> Optional[SettlementResult]:
        self.calls.append((method,) + args)
        if self.latency:
            await asyncio.sleep(self.latency)
        if self._failures:
            error, transport = self._failures.pop(0)
            log.debug("Injected %s failure on %s", "transport" if transport else "call", method)
            if transport:
                raise ConnectionError(error)
            return SettlementResult.failed(error)
        return None

    async def _maybe_hang(self):
        if self._hangs:
            self._hangs.pop(0)
            await asyncio.sleep(self.hang_seconds)

    def _hang_skips_effect(self) -> bool:
        return bool(self._hangs) and not self._hangs[0]

    def count_calls(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    # ── Escrow contract ──

    async def create_escrow(self, job_id, provider_address, amount):
        rejected = await self._enter("create_escrow", job_id, provider_address, str(amount))
        if rejected:
            return rejected
        amount = Decimal(str(amount))
        if amount <= 0:
            return SettlementResult.failed("amount must be positive")
        if not provider_address:
            return SettlementResult.failed("invalid provider address")

        if self._hang_skips_effect():
            await self._maybe_hang()

        escrow_id = f"esc_{os.urandom(6).hex()}"
        ts = time.time()
        with sqlite_transaction(self.db_path) as conn:
            conn.execute(
                """INSERT INTO escrows (escrow_id, job_id, client, provider, amount,
                   status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (escrow_id, job_id, self.operator, provider_address, str(amount),
                 EscrowStatus.PENDING.value, ts, ts),
            )
        await self._maybe_hang()

        tx_hash = _fake_tx_hash()
        log.info("LOCAL ESCROW CREATED %s job=%s provider=%s amount=%s",
                 escrow_id, job_id, provider_address, amount)
        return SettlementResult(
            success=True, escrow_id=escrow_id, tx_hash=tx_hash,
            receipt={"event": "EscrowCreated", "escrow_id": escrow_id,
                     "job_id": job_id, "amount": str(amount), "tx_hash": tx_hash},
        )

    async def _settle(self, method: str, escrow_id: str, target: EscrowStatus):
        rejected = await self._enter(method, escrow_id)
        if rejected:
            return rejected
        if self._hang_skips_effect():
            await self._maybe_hang()

        with sqlite_transaction(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,)
            ).fetchone()
            if not row:
                return SettlementResult.failed(f"escrow {escrow_id} does not exist")
            if row["status"] != EscrowStatus.PENDING.value:
                return SettlementResult.failed(f"escrow already {row['status']}")
            conn.execute(
                "UPDATE escrows SET status = ?, updated_at = ? WHERE escrow_id = ?",
                (target.value, time.time(), escrow_id),
            )
        await self._maybe_hang()

        tx_hash = _fake_tx_hash()
        log.info("LOCAL ESCROW %s %s", target.value.upper(), escrow_id)
        return SettlementResult(
            success=True, escrow_id=escrow_id, tx_hash=tx_hash,
            receipt={"event": f"Escrow{target.value.capitalize()}",
                     "escrow_id": escrow_id, "tx_hash": tx_hash},
        )

    async def release_escrow(self, escrow_id):
        return await self._settle("release_escrow", escrow_id, EscrowStatus.RELEASED)

    async def refund_escrow(self, escrow_id):
        return await self._settle("refund_escrow", escrow_id, EscrowStatus.REFUNDED)

    async def get_escrow(self, escrow_id):
        self.calls.append(("get_escrow", escrow_id))
        if self.latency:
            await asyncio.sleep(self.latency)
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM escrows WHERE escrow_id = ?", (escrow_id,)
            ).fetchone()
        if not row:
            return SettlementResult.failed(f"escrow {escrow_id} does not exist")
        escrow = _row_to_escrow(row)
        return SettlementResult(success=True, escrow_id=escrow_id, escrow=escrow)

    async def find_escrow_by_job(self, job_id):
        self.calls.append(("find_escrow_by_job", job_id))
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM escrows WHERE job_id = ? ORDER BY created_at DESC LIMIT 1",
                (job_id,),
            ).fetchone()
        if not row:
            # Authoritative "none": success with no escrow attached
            return SettlementResult(success=True)
        escrow = _row_to_escrow(row)
        return SettlementResult(success=True, escrow_id=escrow.escrow_id, escrow=escrow)

    # ── Reputation contract ──

    async def submit_rating(self, provider_address, job_id, rating, review=""):
        rejected = await self._enter("submit_rating", provider_address, job_id, rating)
        if rejected:
            return rejected
        if not 1 <= int(rating) <= 5:
            return SettlementResult.failed("rating must be between 1 and 5")
        with sqlite_transaction(self.db_path) as conn:
            dup = conn.execute(
                "SELECT 1 FROM chain_ratings WHERE provider = ? AND job_id = ?",
                (provider_address, job_id),
            ).fetchone()
            if dup:
                return SettlementResult.failed("job already rated")
            conn.execute(
                """INSERT INTO chain_ratings (provider, job_id, rating, review, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (provider_address, job_id, int(rating), review, time.time()),
            )
        tx_hash = _fake_tx_hash()
        return SettlementResult(success=True, tx_hash=tx_hash,
                                receipt={"event": "RatingSubmitted", "tx_hash": tx_hash})

    async def get_reputation(self, provider_address):
        self.calls.append(("get_reputation", provider_address))
        with sqlite_connection(self.db_path) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(rating), 0) AS total "
                "FROM chain_ratings WHERE provider = ?",
                (provider_address,),
            ).fetchone()
        n, total = row["n"], row["total"]
        experience = int(total) * 20
        return SettlementResult(success=True, reputation=ChainReputation(
            provider=provider_address,
            total_ratings=n,
            average_rating=round(total / n, 2) if n else 0.0,
            level=1 + experience // 500,
            experience=experience,
        ))


# ── Web3 backend ──────────────────────────────────────────────────────

ESCROW_ABI = [
    {
        "inputs": [
            {"name": "jobId", "type": "string"},
            {"name": "provider", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "createEscrow",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [{"name": "escrowId", "type": "uint256"}],
        "name": "releaseEscrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "escrowId", "type": "uint256"}],
        "name": "refundEscrow",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "escrowId", "type": "uint256"}],
        "name": "getEscrow",
        "outputs": [{
            "components": [
                {"name": "id", "type": "uint256"},
                {"name": "jobId", "type": "string"},
                {"name": "client", "type": "address"},
                {"name": "provider", "type": "address"},
                {"name": "amount", "type": "uint256"},
                {"name": "status", "type": "uint8"},
                {"name": "createdAt", "type": "uint256"},
            ],
            "name": "",
            "type": "tuple",
        }],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "uint256"},
            {"indexed": True, "name": "jobId", "type": "string"},
            {"indexed": True, "name": "client", "type": "address"},
            {"indexed": False, "name": "provider", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
        ],
        "name": "EscrowCreated",
        "type": "event",
    },
]

ESCROW_CREATED_SIGNATURE = "EscrowCreated(uint256,string,address,address,uint256)"

REPUTATION_ABI = [
    {
        "inputs": [
            {"name": "provider", "type": "address"},
            {"name": "jobId", "type": "string"},
            {"name": "rating", "type": "uint8"},
            {"name": "review", "type": "string"},
        ],
        "name": "submitRating",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "provider", "type": "address"}],
        "name": "getProviderReputation",
        "outputs": [{
            "components": [
                {"name": "totalRatings", "type": "uint256"},
                {"name": "averageRating", "type": "uint256"},
                {"name": "level", "type": "uint256"},
                {"name": "experience", "type": "uint256"},
            ],
            "name": "",
            "type": "tuple",
        }],
        "stateMutability": "view",
        "type": "function",
    },
]


class Web3SettlementClient(SettlementClient):
    """Escrow and reputation contracts on an EVM chain.

    web3's HTTP provider is synchronous; each call runs in a worker thread so
    the event loop is never blocked while a transaction confirms.
    """

    name = "web3"

    def __init__(self, rpc_url: str = RPC_URL, escrow_address: str = ESCROW_CONTRACT,
                 reputation_address: str = REPUTATION_CONTRACT,
                 private_key: str = BACKEND_PRIVATE_KEY, chain_id: int = CHAIN_ID,
                 receipt_timeout: float = RECEIPT_TIMEOUT_SEC,
                 from_block: int = ESCROW_FROM_BLOCK):
        from eth_account import Account
        from web3 import Web3

        if not (rpc_url and escrow_address and private_key):
            raise ValueError("web3 settlement needs RPC URL, escrow contract and private key")

        self.Web3 = Web3
        self.w3 = Web3(Web3.HTTPProvider(rpc_url))
        self.account = Account.from_key(private_key)
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.from_block = from_block
        self.escrow = self.w3.eth.contract(
            address=Web3.to_checksum_address(escrow_address), abi=ESCROW_ABI,
        )
        self.reputation = None
        if reputation_address:
            self.reputation = self.w3.eth.contract(
                address=Web3.to_checksum_address(reputation_address), abi=REPUTATION_ABI,
            )
        log.info("Web3 settlement ENABLED rpc=%s escrow=%s signer=%s",
                 rpc_url, escrow_address, self.account.address)

    def _send(self, fn, value: int = 0):
        """Build, sign, broadcast and wait for one contract call."""
        from web3.exceptions import TimeExhausted

        nonce = self.w3.eth.get_transaction_count(self.account.address, "pending")
        tx = fn.build_transaction({
            "from": self.account.address,
            "chainId": self.chain_id,
            "nonce": nonce,
            "value": value,
        })
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        try:
            receipt = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout,
            )
        except TimeExhausted as e:
            raise TimeoutError(f"receipt for {tx_hash.hex()} not seen: {e}")
        return tx_hash.hex(), receipt

    async def _call(self, label: str, func, *args) -> SettlementResult:
        from web3.exceptions import Web3Exception

        try:
            return await asyncio.to_thread(func, *args)
        except (Web3Exception, ValueError) as e:
            # Reverts and RPC-level rejections; transport errors propagate
            log.warning("web3 %s rejected: %s", label, e)
            return SettlementResult.failed(str(e))

    def _escrow_info(self, escrow_id: str) -> EscrowInfo:
        raw = self.escrow.functions.getEscrow(int(escrow_id)).call()
        return EscrowInfo(
            escrow_id=str(raw[0]),
            job_id=raw[1],
            client=raw[2],
            provider=raw[3],
            amount=Decimal(str(self.Web3.from_wei(raw[4], "ether"))),
            status=_CHAIN_STATUS.get(raw[5], EscrowStatus.PENDING).value,
            created_at=float(raw[6]),
        )

    async def create_escrow(self, job_id, provider_address, amount):
        def run():
            value = self.Web3.to_wei(Decimal(str(amount)), "ether")
            fn = self.escrow.functions.createEscrow(
                job_id, self.Web3.to_checksum_address(provider_address), value,
            )
            tx_hash, receipt = self._send(fn, value=value)
            if receipt["status"] != 1:
                return SettlementResult.failed(f"createEscrow reverted ({tx_hash})")
            events = self.escrow.events.EscrowCreated().process_receipt(receipt)
            if not events:
                return SettlementResult.failed(f"no EscrowCreated event in {tx_hash}")
            escrow_id = str(events[0]["args"]["escrowId"])
            return SettlementResult(
                success=True, escrow_id=escrow_id, tx_hash=tx_hash,
                receipt={"block": receipt["blockNumber"], "escrow_id": escrow_id},
            )
        return await self._call("createEscrow", run)

    async def _settle(self, label: str, fn_name: str, escrow_id: str):
        def run():
            fn = getattr(self.escrow.functions, fn_name)(int(escrow_id))
            tx_hash, receipt = self._send(fn)
            if receipt["status"] != 1:
                return SettlementResult.failed(f"{fn_name} reverted ({tx_hash})")
            return SettlementResult(success=True, escrow_id=escrow_id, tx_hash=tx_hash,
                                    receipt={"block": receipt["blockNumber"]})
        return await self._call(label, run)

    async def release_escrow(self, escrow_id):
        return await self._settle("releaseEscrow", "releaseEscrow", escrow_id)

    async def refund_escrow(self, escrow_id):
        return await self._settle("refundEscrow", "refundEscrow", escrow_id)

    async def get_escrow(self, escrow_id):
        def run():
            escrow = self._escrow_info(escrow_id)
            return SettlementResult(success=True, escrow_id=escrow_id, escrow=escrow)
        return await self._call("getEscrow", run)

    async def find_escrow_by_job(self, job_id):
        """Scan EscrowCreated logs for the job's (hashed, indexed) jobId topic.

        No log is only authoritative once none of the signer's transactions
        are still waiting to be mined.
        """
        def run():
            topics = [
                self.Web3.to_hex(self.Web3.keccak(text=ESCROW_CREATED_SIGNATURE)),
                None,
                self.Web3.to_hex(self.Web3.keccak(text=job_id)),
            ]
            logs = self.w3.eth.get_logs({
                "address": self.escrow.address,
                "fromBlock": self.from_block,
                "toBlock": "latest",
                "topics": topics,
            })
            if logs:
                decoded = self.escrow.events.EscrowCreated().process_log(logs[-1])
                escrow = self._escrow_info(str(decoded["args"]["escrowId"]))
                return SettlementResult(success=True, escrow_id=escrow.escrow_id, escrow=escrow)

            address = self.account.address
            in_flight = (self.w3.eth.get_transaction_count(address, "pending")
                         - self.w3.eth.get_transaction_count(address, "latest"))
            if in_flight > 0:
                return SettlementResult.failed(
                    f"no EscrowCreated log for {job_id} yet; {in_flight} tx(s) still pending"
                )
            return SettlementResult(success=True)
        return await self._call("findEscrowByJob", run)

    async def submit_rating(self, provider_address, job_id, rating, review=""):
        if self.reputation is None:
            return SettlementResult.failed("reputation contract not configured")

        def run():
            fn = self.reputation.functions.submitRating(
                self.Web3.to_checksum_address(provider_address), job_id, int(rating), review,
            )
            tx_hash, receipt = self._send(fn)
            if receipt["status"] != 1:
                return SettlementResult.failed(f"submitRating reverted ({tx_hash})")
            return SettlementResult(success=True, tx_hash=tx_hash)
        return await self._call("submitRating", run)

    async def get_reputation(self, provider_address):
        if self.reputation is None:
            return SettlementResult.failed("reputation contract not configured")

        def run():
            raw = self.reputation.functions.getProviderReputation(
                self.Web3.to_checksum_address(provider_address),
            ).call()
            return SettlementResult(success=True, reputation=ChainReputation(
                provider=provider_address,
                total_ratings=int(raw[0]),
                average_rating=float(raw[1]),
                level=int(raw[2]),
                experience=int(raw[3]),
            ))
        return await self._call("getProviderReputation", run)


# ── Factory ───────────────────────────────────────────────────────────

_client: Optional[SettlementClient] = None


def get_settlement_client() -> SettlementClient:
    global _client
    if _client is None:
        if SETTLEMENT_BACKEND == "web3":
            _client = Web3SettlementClient()
        else:
            if SETTLEMENT_BACKEND != "local":
                log.warning("Unknown settlement backend %r, using local", SETTLEMENT_BACKEND)
            _client = LocalSettlementClient()
    return _client
