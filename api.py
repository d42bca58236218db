# Meridian API
# FastAPI surface over the job / escrow / reputation core. Every write goes
# through the JobStateMachine or the ReputationLedger; nothing here touches
# the database directly.

import asyncio
import hmac
import json
import os
import threading
import time
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field
from starlette.middleware.base import BaseHTTPMiddleware

from db import MERIDIAN_ENV, RateLimitStore, setup_logging
from errors import MeridianError, Unauthorized, ValidationError
from events import Event
from jobs import (
    AuthContext,
    DisputeOutcome,
    Fault,
    JobStateMachine,
    PaymentType,
    Role,
    get_state_machine,
)
from reputation import Availability, ReputationEventType, SubjectType

log = setup_logging().getChild("api")

AUTH_REQUIRED = MERIDIAN_ENV not in {"dev", "development", "test"}
API_TOKEN = os.environ.get("MERIDIAN_API_TOKEN", "")

# Public routes (no token required)
PUBLIC_PATHS = {"/", "/docs", "/openapi.json", "/healthz"}

app = FastAPI(title="Meridian", version="0.1.0")

_machine: Optional[JobStateMachine] = None


def configure(machine: JobStateMachine, rate_limits: Optional[RateLimitStore] = None):
    """Serve a specific state machine (tests, embedded use).

    Request counts live in ``rate_limits``, by default on the machine's own
    database so every worker process shares one window.
    """
    global _machine
    _machine = machine
    app.state.rate_limits = rate_limits or RateLimitStore(machine.store.db_path)
    _attach_stream(machine)


def sm() -> JobStateMachine:
    global _machine
    if _machine is None:
        configure(get_state_machine())
    return _machine


# ── SSE Infrastructure ───────────────────────────────────────────────
# Every published domain event is fanned out to connected stream clients.
# Publishers may run on worker threads, so queues are fed through their loop.

_sse_subscribers: list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]] = []
_sse_lock = threading.Lock()
_attached_buses: set[int] = set()


def broadcast_sse(event: Event):
    message = {"event": event.event_type, "data": event.to_dict(), "timestamp": event.timestamp}
    with _sse_lock:
        subscribers = list(_sse_subscribers)
    for loop, queue in subscribers:
        loop.call_soon_threadsafe(_offer, queue, message)


def _offer(queue: asyncio.Queue, message: dict):
    try:
        queue.put_nowait(message)
    except asyncio.QueueFull:
        log.warning("SSE subscriber queue full, dropping %s", message["event"])


def _attach_stream(machine: JobStateMachine):
    if id(machine.bus) in _attached_buses:
        return
    machine.bus.subscribe(broadcast_sse)
    _attached_buses.add(id(machine.bus))


# ── Middleware ────────────────────────────────────────────────────────


class TokenAuthMiddleware(BaseHTTPMiddleware):
    """
    Bearer token + caller identity. In dev/test the token is not checked and
    a missing X-User-Id falls back to an anonymous client.
    """

    async def dispatch(self, request: Request, call_next):
        if not AUTH_REQUIRED or request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        if not API_TOKEN:
            return JSONResponse(
                status_code=500,
                content={
                    "ok": False,
                    "error": {
                        "code": "auth_config_error",
                        "message": "MERIDIAN_API_TOKEN must be set in non-dev environments",
                    },
                },
            )

        auth = request.headers.get("Authorization", "")
        token = auth[7:] if auth.startswith("Bearer ") else ""
        if not token or not hmac.compare_digest(token, API_TOKEN) \
                or not request.headers.get("X-User-Id"):
            return JSONResponse(
                status_code=401,
                content={"ok": False, "error": {"code": "unauthenticated",
                                                "message": "Unauthenticated"}},
            )
        return await call_next(request)


class RequestLogMiddleware(BaseHTTPMiddleware):
    """Emit structured access logs."""

    async def dispatch(self, request: Request, call_next):
        started = time.time()
        response = await call_next(request)
        entry = {
            "event": "api_request",
            "path": request.url.path,
            "method": request.method,
            "status": response.status_code,
            "duration_ms": round((time.time() - started) * 1000, 2),
            "client_ip": request.client.host if request.client else "unknown",
            "user": request.headers.get("X-User-Id", ""),
        }
        log.info(json.dumps(entry, sort_keys=True))
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding window, counted in the configured RateLimitStore."""

    async def dispatch(self, request: Request, call_next):
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)

        sm()  # ensures app.state.rate_limits is configured
        client_ip = request.client.host if request.client else "unknown"
        if not request.app.state.rate_limits.hit(client_ip):
            return JSONResponse(
                status_code=429,
                content={"ok": False, "error": {"code": "rate_limited",
                                                "message": "Too many requests"}},
            )
        return await call_next(request)


app.add_middleware(TokenAuthMiddleware)
app.add_middleware(RequestLogMiddleware)
app.add_middleware(RateLimitMiddleware)


@app.exception_handler(MeridianError)
async def meridian_error_handler(_: Request, exc: MeridianError):
    return JSONResponse(status_code=exc.http_status, content={"ok": False, "error": exc.to_dict()})


@app.exception_handler(HTTPException)
async def http_exception_handler(_: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": {"code": "http_error", "message": str(exc.detail)}},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(_: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "error": {
                "code": "validation_error",
                "message": "Request validation failed",
                "details": json.loads(json.dumps(exc.errors(), default=str)),
            },
        },
    )


def actor(request: Request) -> AuthContext:
    """The caller, as asserted by the authenticating gateway."""
    role = request.headers.get("X-Role", Role.CLIENT.value).lower()
    if role not in (Role.CLIENT.value, Role.PROVIDER.value, Role.OPERATOR.value):
        raise ValidationError(f"Unknown role: {role}")
    return AuthContext(
        user_id=request.headers.get("X-User-Id", "anonymous"),
        wallet_address=request.headers.get("X-Wallet-Address", ""),
        role=role,
    )


# ── Request models ────────────────────────────────────────────────────


class JobIn(BaseModel):
    title: str = Field(default="", max_length=256)
    payment_type: PaymentType = PaymentType.FIXED
    budget: Optional[Decimal] = Field(default=None, gt=0)
    max_hourly_rate: Decimal = Field(default=Decimal("0"), ge=0)
    estimated_duration_hours: float = Field(default=0.0, ge=0)


class ProgressIn(BaseModel):
    percentage: float
    metrics: dict = Field(default_factory=dict)


class CompleteIn(BaseModel):
    results: dict = Field(default_factory=dict)


class FailIn(BaseModel):
    reason: str = Field(min_length=1)
    fault: Fault = Fault.PROVIDER


class CancelIn(BaseModel):
    reason: str = ""


class DisputeIn(BaseModel):
    reason: str = Field(min_length=1)


class ResolveIn(BaseModel):
    outcome: DisputeOutcome
    refund_amount: Optional[Decimal] = Field(default=None, gt=0)
    notes: str = ""


class RatingIn(BaseModel):
    rating: int = Field(ge=1, le=5)
    review: str = Field(default="", max_length=2000)


class ProviderIn(BaseModel):
    provider_id: str = Field(min_length=1, max_length=128)
    wallet_address: str = ""


class AvailabilityIn(BaseModel):
    status: Availability


class ReverseIn(BaseModel):
    reason: str = Field(min_length=1)


class AdjustIn(BaseModel):
    event_type: ReputationEventType = ReputationEventType.MANUAL
    points: float = 0.0
    reason: str = Field(min_length=1)
    weight: float = Field(default=1.0, ge=0.1, le=5.0)
    reset: bool = False


def _operator(request: Request) -> AuthContext:
    caller = actor(request)
    if not caller.is_operator:
        raise Unauthorized("Operator role required", {"actor": caller.label})
    return caller


# ── Job endpoints ─────────────────────────────────────────────────────


@app.post("/jobs")
def api_create_job(j: JobIn, request: Request):
    """Create a draft job owned by the caller."""
    job = sm().create_job(
        actor(request),
        budget=j.budget,
        payment_type=j.payment_type,
        max_hourly_rate=j.max_hourly_rate,
        estimated_duration_hours=j.estimated_duration_hours,
        title=j.title,
    )
    return {"ok": True, "job": job.to_dict()}


@app.get("/jobs")
def api_list_jobs(status: Optional[str] = None, client_id: Optional[str] = None,
                  provider_id: Optional[str] = None, sub_status: Optional[str] = None,
                  limit: int = 100):
    jobs = sm().store.list(status=status, client_id=client_id, provider_id=provider_id,
                           sub_status=sub_status, limit=limit)
    return {"jobs": [j.to_dict() for j in jobs]}


@app.get("/jobs/{job_id}")
def api_get_job(job_id: str):
    return {"job": sm().get_job(job_id).to_dict()}


@app.post("/jobs/{job_id}/post")
def api_post_job(job_id: str, request: Request):
    return {"ok": True, "job": sm().post(job_id, actor(request)).to_dict()}


@app.post("/jobs/{job_id}/accept")
async def api_accept_job(job_id: str, request: Request):
    """Accept as the calling provider. Returns once the escrow exists."""
    job = await sm().accept(job_id, actor(request))
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/start")
def api_start_job(job_id: str, request: Request):
    return {"ok": True, "job": sm().start(job_id, actor(request)).to_dict()}


@app.post("/jobs/{job_id}/progress")
def api_update_progress(job_id: str, p: ProgressIn, request: Request):
    """Provider heartbeat with progress and training metrics."""
    job = sm().update_progress(job_id, actor(request), p.percentage, p.metrics)
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/pause")
def api_pause_job(job_id: str, request: Request):
    return {"ok": True, "job": sm().pause(job_id, actor(request)).to_dict()}


@app.post("/jobs/{job_id}/resume")
def api_resume_job(job_id: str, request: Request):
    return {"ok": True, "job": sm().resume(job_id, actor(request)).to_dict()}


@app.post("/jobs/{job_id}/complete")
async def api_complete_job(job_id: str, request: Request, c: Optional[CompleteIn] = None):
    job = await sm().complete(job_id, actor(request), results=c.results if c else None)
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/fail")
async def api_fail_job(job_id: str, f: FailIn, request: Request):
    job = await sm().fail(job_id, actor(request), f.reason, fault=f.fault)
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/cancel")
async def api_cancel_job(job_id: str, request: Request, c: Optional[CancelIn] = None):
    job = await sm().cancel(job_id, actor(request), reason=c.reason if c else "")
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/dispute")
def api_open_dispute(job_id: str, d: DisputeIn, request: Request):
    job = sm().open_dispute(job_id, actor(request), d.reason)
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/dispute/resolve")
async def api_resolve_dispute(job_id: str, r: ResolveIn, request: Request):
    """Operator decision on an open dispute."""
    job = await sm().resolve_dispute(job_id, _operator(request), r.outcome,
                                     refund_amount=r.refund_amount, notes=r.notes)
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/rate")
async def api_rate_job(job_id: str, r: RatingIn, request: Request):
    job = await sm().rate(job_id, actor(request), r.rating, r.review)
    return {"ok": True, "job": job.to_dict()}


@app.post("/jobs/{job_id}/settlement/retry")
async def api_retry_settlement(job_id: str, request: Request):
    job = await sm().retry_settlement(job_id, _operator(request))
    return {"ok": True, "job": job.to_dict()}


@app.get("/jobs/{job_id}/timeline")
def api_job_timeline(job_id: str):
    return {"job_id": job_id, "events": sm().get_job_timeline(job_id)}


@app.get("/jobs/{job_id}/transactions")
def api_job_transactions(job_id: str):
    machine = sm()
    totals = machine.escrow.ledger.totals_for_job(job_id)
    return {
        "job_id": job_id,
        "transactions": machine.transactions(job_id),
        "totals": {k: str(v) for k, v in totals.items()},
    }


# ── Provider endpoints ────────────────────────────────────────────────


@app.post("/providers")
def api_register_provider(p: ProviderIn):
    agg = sm().reputation.register_provider(p.provider_id, p.wallet_address)
    return {"ok": True, "provider": agg.to_dict()}


@app.get("/providers")
def api_leaderboard(limit: int = 20, subject_type: SubjectType = SubjectType.PROVIDER):
    """Top subjects by reliability score."""
    return {"leaderboard": sm().reputation.leaderboard(subject_type, limit=limit)}


@app.get("/providers/{provider_id}")
async def api_get_provider(provider_id: str, chain: bool = False):
    reputation = sm().reputation
    agg = reputation.get(provider_id)
    body = {"provider": agg.to_dict()}
    if chain and agg.wallet_address:
        body["chain"] = await reputation.chain_reputation(agg.wallet_address)
    return body


@app.put("/providers/{provider_id}/availability")
def api_set_availability(provider_id: str, a: AvailabilityIn, request: Request):
    caller = actor(request)
    if caller.user_id != provider_id and not caller.is_operator:
        raise Unauthorized("Only the provider or an operator may change availability")
    agg = sm().reputation.set_availability(provider_id, a.status)
    return {"ok": True, "provider": agg.to_dict()}


# ── Reputation endpoints ──────────────────────────────────────────────


@app.get("/reputation/failed")
def api_failed_events(request: Request, limit: int = 100):
    """Reputation events parked as failed, awaiting an operator."""
    _operator(request)
    return {"events": [e.to_dict() for e in sm().reputation.failed_events(limit=limit)]}


@app.get("/reputation/{subject_id}/events")
def api_reputation_events(subject_id: str, limit: int = 100):
    reputation = sm().reputation
    reputation.get(subject_id)
    return {"subject_id": subject_id,
            "events": [e.to_dict() for e in reputation.events_for(subject_id, limit=limit)]}


@app.post("/reputation/events/{event_id}/reverse")
def api_reverse_event(event_id: str, r: ReverseIn, request: Request):
    caller = _operator(request)
    reversal = sm().reputation.reverse(event_id, r.reason, actor=caller.label)
    return {"ok": True, "reversal": reversal.to_dict()}


@app.post("/reputation/{subject_id}/adjust")
def api_adjust_reputation(subject_id: str, a: AdjustIn, request: Request):
    """Operator penalty, bonus, manual adjustment or reset."""
    _operator(request)
    reputation = sm().reputation
    reputation.get(subject_id)
    event = reputation.adjust(subject_id, a.event_type, a.points, reason=a.reason,
                              weight=a.weight, reset=a.reset)
    return {"ok": True, "event": event.to_dict(), "subject": reputation.get(subject_id).to_dict()}


# ── Admin ─────────────────────────────────────────────────────────────


@app.post("/admin/reconcile")
async def api_reconcile(request: Request):
    _operator(request)
    report = await sm().reconcile()
    return {"ok": True, "report": report.to_dict()}


@app.get("/admin/verify-chain")
def api_verify_chain(request: Request, limit: int = 0):
    _operator(request)
    return sm().bus.store.verify_chain(limit=limit)


# ── SSE Streaming ─────────────────────────────────────────────────────


async def _sse_generator(request: Request):
    """Yield SSE events until the client disconnects."""
    queue: asyncio.Queue = asyncio.Queue(maxsize=256)
    entry = (asyncio.get_running_loop(), queue)
    with _sse_lock:
        _sse_subscribers.append(entry)
    try:
        yield f"event: connected\ndata: {json.dumps({'status': 'connected'})}\n\n"
        while True:
            if await request.is_disconnected():
                break
            try:
                msg = await asyncio.wait_for(queue.get(), timeout=30)
                yield f"event: {msg['event']}\ndata: {json.dumps(msg['data'], default=str)}\n\n"
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
    finally:
        with _sse_lock:
            if entry in _sse_subscribers:
                _sse_subscribers.remove(entry)


@app.get("/api/stream")
async def sse_stream(request: Request):
    """Server-Sent Events stream of every domain event."""
    sm()
    return StreamingResponse(
        _sse_generator(request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive",
                 "X-Accel-Buffering": "no"},
    )


@app.get("/healthz")
def healthz():
    return {"ok": True, "env": MERIDIAN_ENV, "ts": time.time()}


@app.get("/")
def root():
    return {"name": "Meridian", "status": "running"}


if __name__ == "__main__":
    import uvicorn

    log.info("API STARTING on port 8000")
    uvicorn.run(app, host="0.0.0.0", port=8000)
