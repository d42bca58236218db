"""Tests for Meridian API endpoints.

FastAPI TestClient against a freshly wired core per test.
Covers: job lifecycle, error mapping, disputes, ratings, providers,
        reputation admin, reconciliation, auth, rate limiting, SSE fan-out.
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

import api
from api import app
from conftest import Core
from db import RateLimitStore
from jobs import AuthContext

client = TestClient(app)

WALLET = "0x" + "77" * 20


def _as(user: str, role: str = "client", wallet: str = "") -> dict:
    headers = {"X-User-Id": user, "X-Role": role}
    if wallet:
        headers["X-Wallet-Address"] = wallet
    return headers


CLIENT = _as("c1")
PROVIDER = _as("p1", "provider", WALLET)
OPERATOR = _as("ops", "operator")


@pytest.fixture(autouse=True)
def core():
    """Each test gets its own database and state machine."""
    c = Core()
    api.configure(c.sm)
    yield c


def _register_provider(provider_id="p1", wallet=WALLET):
    resp = client.post("/providers", json={"provider_id": provider_id, "wallet_address": wallet})
    assert resp.status_code == 200, resp.text
    return resp.json()["provider"]


def _posted_job(budget="100") -> str:
    _register_provider()
    resp = client.post("/jobs", json={"title": "fine-tune", "budget": budget}, headers=CLIENT)
    assert resp.status_code == 200, resp.text
    job_id = resp.json()["job"]["job_id"]
    assert client.post(f"/jobs/{job_id}/post", headers=CLIENT).status_code == 200
    return job_id


def _running_job() -> str:
    job_id = _posted_job()
    assert client.post(f"/jobs/{job_id}/accept", headers=PROVIDER).status_code == 200
    assert client.post(f"/jobs/{job_id}/start", headers=PROVIDER).status_code == 200
    return job_id


def _completed_job() -> str:
    job_id = _running_job()
    resp = client.post(f"/jobs/{job_id}/complete", json={"results": {"loss": 0.12}},
                       headers=PROVIDER)
    assert resp.status_code == 200, resp.text
    return job_id


class TestHealthEndpoint:
    def test_healthz(self):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["ok"] is True
        assert resp.json()["env"] == "test"

    def test_root(self):
        assert client.get("/").json()["name"] == "Meridian"


class TestJobEndpoints:
    def test_create_job(self):
        resp = client.post("/jobs", json={"budget": "100", "title": "sd-xl"}, headers=CLIENT)
        assert resp.status_code == 200
        job = resp.json()["job"]
        assert job["status"] == "draft"
        assert job["client_id"] == "c1"
        assert job["budget"] == "100.000000"

    def test_create_rejects_negative_budget(self):
        resp = client.post("/jobs", json={"budget": "-5"}, headers=CLIENT)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_fixed_job_needs_budget(self):
        resp = client.post("/jobs", json={"title": "no money"}, headers=CLIENT)
        assert resp.status_code == 400
        assert resp.json()["ok"] is False

    def test_full_lifecycle(self):
        job_id = _running_job()
        resp = client.post(f"/jobs/{job_id}/progress",
                           json={"percentage": 40, "metrics": {"epoch": 2}}, headers=PROVIDER)
        assert resp.json()["job"]["progress"] == 40
        resp = client.post(f"/jobs/{job_id}/complete", headers=PROVIDER)
        assert resp.status_code == 200
        assert resp.json()["job"]["status"] == "completed"

        txs = client.get(f"/jobs/{job_id}/transactions").json()
        assert txs["totals"]["release"] == "97.000000"
        assert txs["totals"]["deposit"] == "100.000000"
        assert {t["type"] for t in txs["transactions"]} == {"deposit", "release", "fee"}

        timeline = client.get(f"/jobs/{job_id}/timeline").json()["events"]
        assert timeline[0]["event_type"] == "job.created"

    def test_pause_resume(self):
        job_id = _running_job()
        assert client.post(f"/jobs/{job_id}/pause", headers=PROVIDER).json()["job"]["status"] == "paused"
        assert client.post(f"/jobs/{job_id}/resume", headers=PROVIDER).json()["job"]["status"] == "running"

    def test_list_jobs(self):
        job_id = _posted_job()
        jobs = client.get("/jobs", params={"status": "posted"}).json()["jobs"]
        assert [j["job_id"] for j in jobs] == [job_id]

    def test_cancel_refunds(self):
        job_id = _posted_job()
        client.post(f"/jobs/{job_id}/accept", headers=PROVIDER)
        resp = client.post(f"/jobs/{job_id}/cancel", json={"reason": "budget cut"}, headers=CLIENT)
        assert resp.json()["job"]["status"] == "cancelled"
        totals = client.get(f"/jobs/{job_id}/transactions").json()["totals"]
        assert totals["refund"] == "100.000000"

    def test_fail(self):
        job_id = _running_job()
        resp = client.post(f"/jobs/{job_id}/fail", json={"reason": "driver crash"}, headers=PROVIDER)
        assert resp.json()["job"]["status"] == "failed"
        assert client.post(f"/jobs/{job_id}/fail", json={"reason": ""},
                           headers=PROVIDER).status_code == 422


class TestErrorMapping:
    def test_missing_job_is_404(self):
        resp = client.get("/jobs/job_nope")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_second_accept_is_409(self):
        job_id = _posted_job()
        _register_provider("p2", "0x" + "88" * 20)
        assert client.post(f"/jobs/{job_id}/accept", headers=PROVIDER).status_code == 200
        resp = client.post(f"/jobs/{job_id}/accept", headers=_as("p2", "provider"))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "job_already_accepted"

    def test_wrong_party_is_403(self):
        job_id = _posted_job()
        client.post(f"/jobs/{job_id}/accept", headers=PROVIDER)
        resp = client.post(f"/jobs/{job_id}/start", headers=CLIENT)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_invalid_transition_is_409(self):
        job_id = _posted_job()
        resp = client.post(f"/jobs/{job_id}/post", headers=CLIENT)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "invalid_transition"

    def test_unknown_role_is_400(self):
        resp = client.post("/jobs", json={"budget": "1"}, headers=_as("c1", "admin"))
        assert resp.status_code == 400

    def test_settlement_outage_is_503_then_retry(self, core):
        job_id = _running_job()
        core.settlement.fail_next(3, error="rpc down")
        resp = client.post(f"/jobs/{job_id}/complete", headers=PROVIDER)
        assert resp.status_code == 503
        assert resp.json()["error"]["retryable"] is True

        parked = client.get("/jobs", params={"sub_status": "settlement_failed"}).json()["jobs"]
        assert [j["job_id"] for j in parked] == [job_id]

        assert client.post(f"/jobs/{job_id}/settlement/retry", headers=CLIENT).status_code == 403
        resp = client.post(f"/jobs/{job_id}/settlement/retry", headers=OPERATOR)
        assert resp.status_code == 200
        assert resp.json()["job"]["status"] == "completed"


class TestDisputeEndpoints:
    def test_dispute_and_resolve(self):
        job_id = _running_job()
        resp = client.post(f"/jobs/{job_id}/dispute", json={"reason": "stalled"}, headers=CLIENT)
        assert resp.json()["job"]["disputed"] is True

        body = {"outcome": "client-favor", "notes": "no checkpoints"}
        assert client.post(f"/jobs/{job_id}/dispute/resolve", json=body,
                           headers=CLIENT).status_code == 403
        resp = client.post(f"/jobs/{job_id}/dispute/resolve", json=body, headers=OPERATOR)
        assert resp.status_code == 200
        job = resp.json()["job"]
        assert job["status"] == "failed"
        assert job["dispute"]["outcome"] == "client-favor"

    def test_bad_outcome_is_422(self):
        job_id = _running_job()
        client.post(f"/jobs/{job_id}/dispute", json={"reason": "stalled"}, headers=CLIENT)
        resp = client.post(f"/jobs/{job_id}/dispute/resolve", json={"outcome": "coin-flip"},
                           headers=OPERATOR)
        assert resp.status_code == 422


class TestRatingEndpoints:
    def test_rate_and_read_chain(self):
        job_id = _completed_job()
        resp = client.post(f"/jobs/{job_id}/rate", json={"rating": 5}, headers=CLIENT)
        assert resp.status_code == 200
        assert resp.json()["job"]["rating"] == 5

        provider = client.get("/providers/p1", params={"chain": "true"}).json()
        assert provider["provider"]["average_rating"] == 5.0
        assert provider["chain"]["total_ratings"] == 1

    def test_rating_out_of_range_is_422(self):
        job_id = _completed_job()
        resp = client.post(f"/jobs/{job_id}/rate", json={"rating": 6}, headers=CLIENT)
        assert resp.status_code == 422


class TestProviderEndpoints:
    def test_register_and_leaderboard(self):
        _register_provider("p1")
        _register_provider("p2", "0x" + "88" * 20)
        board = client.get("/providers").json()["leaderboard"]
        assert {p["subject_id"] for p in board} == {"p1", "p2"}
        assert board[0]["tier"] == "new"

    def test_unknown_provider(self):
        assert client.get("/providers/ghost").status_code == 404

    def test_availability(self):
        _register_provider()
        resp = client.put("/providers/p1/availability", json={"status": "offline"},
                          headers=PROVIDER)
        assert resp.json()["provider"]["availability_status"] == "offline"
        resp = client.put("/providers/p1/availability", json={"status": "available"},
                          headers=CLIENT)
        assert resp.status_code == 403
        resp = client.put("/providers/p1/availability", json={"status": "asleep"},
                          headers=PROVIDER)
        assert resp.status_code == 422


class TestReputationEndpoints:
    def test_events_and_reversal(self):
        job_id = _completed_job()
        events = client.get("/reputation/p1/events").json()["events"]
        completion = next(e for e in events if e["context"].get("job_id") == job_id)

        path = f"/reputation/events/{completion['event_id']}/reverse"
        assert client.post(path, json={"reason": "fraud"}, headers=CLIENT).status_code == 403
        resp = client.post(path, json={"reason": "fraud"}, headers=OPERATOR)
        assert resp.status_code == 200
        assert resp.json()["reversal"]["related_events"] == [completion["event_id"]]

        again = client.post(path, json={"reason": "fraud"}, headers=OPERATOR)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "event_already_reversed"

    def test_adjust(self):
        _register_provider()
        body = {"event_type": "penalty", "points": 100, "reason": "terms violation"}
        resp = client.post("/reputation/p1/adjust", json=body, headers=OPERATOR)
        assert resp.status_code == 200
        assert resp.json()["subject"]["reliability_score"] == 900

    def test_failed_events_operator_only(self):
        assert client.get("/reputation/failed", headers=CLIENT).status_code == 403
        assert client.get("/reputation/failed", headers=OPERATOR).json()["events"] == []


class TestAdminEndpoints:
    def test_reconcile(self):
        resp = client.post("/admin/reconcile", headers=OPERATOR)
        assert resp.status_code == 200
        assert resp.json()["report"]["checked"] == 0

    def test_verify_chain(self):
        _completed_job()
        result = client.get("/admin/verify-chain", headers=OPERATOR).json()
        assert result["valid"] is True
        assert result["events_checked"] > 5


class TestAuth:
    def test_token_required_outside_dev(self, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setattr(api, "API_TOKEN", "s3cret")
        assert client.get("/jobs").status_code == 401
        assert client.get("/jobs", headers={"Authorization": "Bearer wrong",
                                            "X-User-Id": "c1"}).status_code == 401
        assert client.get("/jobs", headers={"Authorization": "Bearer s3cret"}).status_code == 401
        ok = client.get("/jobs", headers={"Authorization": "Bearer s3cret", "X-User-Id": "c1"})
        assert ok.status_code == 200
        assert client.get("/healthz").status_code == 200

    def test_missing_token_config(self, monkeypatch):
        monkeypatch.setattr(api, "AUTH_REQUIRED", True)
        monkeypatch.setattr(api, "API_TOKEN", "")
        resp = client.get("/jobs")
        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "auth_config_error"


class TestRateLimit:
    def test_window_limit(self, core):
        api.configure(core.sm, rate_limits=RateLimitStore(core.db, limit=2, window=60))
        assert client.get("/jobs").status_code == 200
        assert client.get("/jobs").status_code == 200
        resp = client.get("/jobs")
        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert client.get("/healthz").status_code == 200

    def test_default_store_uses_machine_database(self, core):
        assert app.state.rate_limits.path == core.db
        client.get("/jobs")
        assert sum(app.state.rate_limits.buckets().values()) == 1


class TestStream:
    async def test_published_events_reach_subscribers(self, core):
        queue: asyncio.Queue = asyncio.Queue()
        entry = (asyncio.get_running_loop(), queue)
        api._sse_subscribers.append(entry)
        try:
            core.sm.create_job(AuthContext("c1"), budget="5")
            await asyncio.sleep(0)
            msg = queue.get_nowait()
            assert msg["event"] == "job.created"
            assert msg["data"]["entity_type"] == "job"
        finally:
            api._sse_subscribers.remove(entry)
