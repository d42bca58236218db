"""Tests for the settlement clients: simulated escrow contract semantics."""

import asyncio
from decimal import Decimal
from types import SimpleNamespace

import pytest

from conftest import fresh_db
from settlement import (
    EscrowInfo,
    EscrowStatus,
    LocalSettlementClient,
    SettlementClient,
    SettlementResult,
    Web3SettlementClient,
)

WALLET = "0x" + "ab" * 20


def _client() -> LocalSettlementClient:
    return LocalSettlementClient(fresh_db("settle"))


class TestLocalEscrow:
    """Release/refund only from pending, exactly once."""

    async def test_create_and_get(self):
        c = _client()
        created = await c.create_escrow("j1", WALLET, Decimal("100"))
        assert created.success
        assert created.escrow_id.startswith("esc_")
        assert created.tx_hash.startswith("0x")

        got = await c.get_escrow(created.escrow_id)
        assert got.success
        assert got.escrow.status == EscrowStatus.PENDING.value
        assert got.escrow.amount == Decimal("100")
        assert got.escrow.provider == WALLET

    async def test_create_rejects_bad_input(self):
        c = _client()
        assert not (await c.create_escrow("j1", WALLET, Decimal("0"))).success
        assert not (await c.create_escrow("j1", "", Decimal("5"))).success

    async def test_release_once(self):
        c = _client()
        created = await c.create_escrow("j1", WALLET, Decimal("10"))
        first = await c.release_escrow(created.escrow_id)
        second = await c.release_escrow(created.escrow_id)
        assert first.success
        assert not second.success
        assert "already released" in second.error

    async def test_refund_after_release_rejected(self):
        c = _client()
        created = await c.create_escrow("j1", WALLET, Decimal("10"))
        await c.release_escrow(created.escrow_id)
        refund = await c.refund_escrow(created.escrow_id)
        assert not refund.success
        escrow = (await c.get_escrow(created.escrow_id)).escrow
        assert escrow.status == EscrowStatus.RELEASED.value

    async def test_unknown_escrow(self):
        c = _client()
        assert not (await c.get_escrow("esc_missing")).success
        assert not (await c.release_escrow("esc_missing")).success

    async def test_find_by_job(self):
        c = _client()
        none = await c.find_escrow_by_job("j1")
        assert none.success and none.escrow is None
        created = await c.create_escrow("j1", WALLET, Decimal("10"))
        found = await c.find_escrow_by_job("j1")
        assert found.escrow_id == created.escrow_id


class TestFaultInjection:
    async def test_fail_next_returns_rejection(self):
        c = _client()
        c.fail_next(2, error="rpc down")
        assert (await c.create_escrow("j1", WALLET, 5)).error == "rpc down"
        assert not (await c.create_escrow("j1", WALLET, 5)).success
        assert (await c.create_escrow("j1", WALLET, 5)).success
        assert c.count_calls("create_escrow") == 3

    async def test_transport_failure_raises(self):
        c = _client()
        c.fail_next(transport=True)
        with pytest.raises(ConnectionError):
            await c.create_escrow("j1", WALLET, 5)

    async def test_hang_after_effect(self):
        c = _client()
        created = await c.create_escrow("j1", WALLET, 5)
        c.hang_next()
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(c.release_escrow(created.escrow_id), timeout=0.2)
        # The release landed even though the caller never heard back
        escrow = (await c.get_escrow(created.escrow_id)).escrow
        assert escrow.status == EscrowStatus.RELEASED.value

    async def test_hang_before_effect(self):
        c = _client()
        created = await c.create_escrow("j1", WALLET, 5)
        c.hang_next(apply=False)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(c.refund_escrow(created.escrow_id), timeout=0.2)
        escrow = (await c.get_escrow(created.escrow_id)).escrow
        assert escrow.status == EscrowStatus.PENDING.value


class TestChainReputation:
    async def test_submit_and_read(self):
        c = _client()
        assert (await c.submit_rating(WALLET, "j1", 5)).success
        assert (await c.submit_rating(WALLET, "j2", 3)).success
        rep = (await c.get_reputation(WALLET)).reputation
        assert rep.total_ratings == 2
        assert rep.average_rating == 4.0
        assert rep.experience == 160
        assert rep.level == 1

    async def test_duplicate_rating_rejected(self):
        c = _client()
        await c.submit_rating(WALLET, "j1", 4)
        dup = await c.submit_rating(WALLET, "j1", 5)
        assert not dup.success


class TestInterface:
    async def test_default_lookup_reports_unsupported(self):
        class Minimal(SettlementClient):
            async def create_escrow(self, job_id, provider_address, amount):
                return SettlementResult.failed("n/a")

            async def release_escrow(self, escrow_id):
                return SettlementResult.failed("n/a")

            async def refund_escrow(self, escrow_id):
                return SettlementResult.failed("n/a")

            async def get_escrow(self, escrow_id):
                return SettlementResult.failed("n/a")

            async def submit_rating(self, provider_address, job_id, rating, review=""):
                return SettlementResult.failed("n/a")

            async def get_reputation(self, provider_address):
                return SettlementResult.failed("n/a")

        result = await Minimal().find_escrow_by_job("j1")
        assert not result.success

    def test_web3_requires_configuration(self):
        with pytest.raises(ValueError):
            Web3SettlementClient(rpc_url="", escrow_address="", private_key="")


class _FakeEth:
    """Just enough of web3's eth module for the escrow lookup."""

    def __init__(self, logs=(), pending=0):
        self.logs = list(logs)
        self.pending = pending
        self.filters = []

    def get_logs(self, params):
        self.filters.append(params)
        return self.logs

    def get_transaction_count(self, address, block):
        return 7 + self.pending if block == "pending" else 7


def _web3_client(eth: _FakeEth) -> Web3SettlementClient:
    from web3 import Web3

    client = Web3SettlementClient.__new__(Web3SettlementClient)
    client.Web3 = Web3
    client.w3 = SimpleNamespace(eth=eth)
    client.account = SimpleNamespace(address="0x" + "aa" * 20)
    client.from_block = 1200
    client.escrow = SimpleNamespace(
        address="0x" + "ee" * 20,
        events=SimpleNamespace(EscrowCreated=lambda: SimpleNamespace(
            process_log=lambda entry: {"args": {"escrowId": entry["escrow_id"]}},
        )),
    )
    client._escrow_info = lambda escrow_id: EscrowInfo(
        escrow_id=escrow_id, job_id="j1", client="0xc", provider=WALLET,
        amount=Decimal("100"),
    )
    return client


class TestWeb3EscrowLookup:
    """find_escrow_by_job filters EscrowCreated logs by the hashed jobId topic."""

    async def test_found_by_job_topic(self):
        from web3 import Web3

        eth = _FakeEth(logs=[{"escrow_id": 41}, {"escrow_id": 42}])
        result = await _web3_client(eth).find_escrow_by_job("j1")
        assert result.success
        assert result.escrow_id == "42"
        assert result.escrow.job_id == "j1"

        params = eth.filters[0]
        assert params["fromBlock"] == 1200
        assert params["topics"][1] is None
        assert params["topics"][2] == Web3.to_hex(Web3.keccak(text="j1"))

    async def test_no_log_and_nothing_in_flight_means_none(self):
        result = await _web3_client(_FakeEth()).find_escrow_by_job("j1")
        assert result.success
        assert result.escrow is None

    async def test_no_log_while_txs_pending_is_unknown(self):
        result = await _web3_client(_FakeEth(pending=1)).find_escrow_by_job("j1")
        assert not result.success
        assert "still pending" in result.error
