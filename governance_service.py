#!/usr/bin/env python3
"""
Governance Ledger Service v1.0
==============================
HTTP host for the governance ledger.

Authenticates callers into identities and exposes the ledger's
operations as endpoints. State lives in memory for the life of the
process.

  - Bearer API keys (hashed, timing-safe comparison)
  - Rate limiting (slowapi)
  - Configurable CORS allowlist
  - Structured logging (structlog)
  - Prometheus /metrics endpoint
  - Input sanitization
"""

import os
import re
import time
import hmac
import hashlib
import secrets
import threading
from typing import Dict, List, Optional

import structlog
from fastapi import FastAPI, HTTPException, Header, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

from governance_ledger import (
    GovernanceLedger, GovernanceError, NotFound, AlreadyExists, InvalidState,
    InvalidArgument, Unauthorized, NotificationSink, RecordingSink, LogSink,
    FanoutSink, Member, Proposal, Ballot, MIN_VOTING_POWER, VOTING_DURATION,
)

# ============================================
# Configuration
# ============================================
API_VERSION = "1.0.0"
OWNER_ID = os.environ.get("LEDGER_OWNER", "0xowner")
OWNER_KEY = os.environ.get("LEDGER_OWNER_KEY") or f"ledger_{secrets.token_hex(24)}"
LEDGER_VOTING_DURATION = int(os.environ.get("LEDGER_VOTING_DURATION", str(VOTING_DURATION)))
RATE_LIMITS_ENABLED = os.environ.get("LEDGER_RATE_LIMITS", "1") != "0"
MAX_DESCRIPTION_LENGTH = 4096
EVENT_BUFFER = int(os.environ.get("LEDGER_EVENT_BUFFER", "10000"))  # notifications kept for /events

# CORS: comma-separated list of allowed origins, or "*" for open (dev only)
_CORS_RAW = os.environ.get("LEDGER_CORS_ORIGINS", "http://localhost:3000,http://localhost:8000")
ALLOWED_ORIGINS: List[str] = (
    ["*"] if _CORS_RAW == "*"
    else [o.strip() for o in _CORS_RAW.split(",") if o.strip()]
)

# ============================================
# Logging
# ============================================
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.add_log_level,
        structlog.processors.JSONRenderer(),
    ]
)
log = structlog.get_logger()

# ============================================
# Prometheus Metrics
# ============================================
REQUEST_COUNT = Counter("ledger_requests_total", "Total HTTP requests", ["method", "endpoint", "status"])
REQUEST_LATENCY = Histogram("ledger_request_duration_seconds", "Request latency", ["endpoint"])
EVENT_COUNT = Counter("ledger_events_total", "Ledger notifications emitted", ["event"])
ACTIVE_MEMBERS_GAUGE = Gauge("ledger_active_members", "Active members")
PROPOSALS_GAUGE = Gauge("ledger_proposals_total", "Proposals created")


class MetricsSink(NotificationSink):
    """Counts notifications per event name."""

    def emit(self, event: str, **fields) -> None:
        EVENT_COUNT.labels(event).inc()

# ============================================
# Input Sanitization
# ============================================
# Strip HTML tags and null bytes from free-text fields
_HTML_RE = re.compile(r"<[^>]+>")
_NULL_RE = re.compile(r"\x00")

def sanitize(text: str) -> str:
    text = _NULL_RE.sub("", text)
    text = _HTML_RE.sub("", text)
    return text.strip()

# ============================================
# Ledger construction
# ============================================
def build_ledger(clock=None, voting_duration: int = LEDGER_VOTING_DURATION) -> GovernanceLedger:
    """Fresh ledger wired to the service sinks. The recorder backs GET /events."""
    recorder = RecordingSink(maxlen=EVENT_BUFFER)
    ledger = GovernanceLedger.initialize(
        OWNER_ID,
        clock=clock,
        sink=FanoutSink(recorder, LogSink(log), MetricsSink()),
        voting_duration=voting_duration,
    )
    ledger.recorder = recorder
    return ledger

def get_ledger(request: Request) -> GovernanceLedger:
    return request.app.state.ledger

# ============================================
# Auth
# ============================================
def _hash_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()

def _safe_compare(a: str, b: str) -> bool:
    """Timing-safe string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())


class KeyStore:
    """API key hash -> identity. Keys are never stored in the clear."""

    def __init__(self):
        self._keys: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, api_key: str, identity: str):
        with self._lock:
            self._keys[_hash_key(api_key)] = identity

    def issue(self, identity: str) -> str:
        api_key = f"ledger_{secrets.token_hex(24)}"
        self.add(api_key, identity)
        return api_key

    def identify(self, api_key: str) -> Optional[str]:
        key_hash = _hash_key(api_key)
        with self._lock:
            for stored_hash, identity in self._keys.items():
                if _safe_compare(stored_hash, key_hash):
                    return identity
        return None


def _identify(request: Request, authorization: str) -> str:
    if not authorization.startswith("Bearer "):
        raise HTTPException(401, "Invalid authorization. Use: Bearer <api_key>")
    identity = request.app.state.keys.identify(authorization[7:])
    if identity is None:
        raise HTTPException(401, "Invalid API key.")
    return identity

def verify_caller(request: Request, authorization: str = Header(...)) -> str:
    return _identify(request, authorization)

def optional_caller(request: Request, authorization: Optional[str] = Header(None)) -> Optional[str]:
    return _identify(request, authorization) if authorization else None

# ============================================
# Rate Limiter
# ============================================
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMITS_ENABLED)

# ============================================
# Models
# ============================================
class MemberAdd(BaseModel):
    identity: str = Field(..., min_length=1, max_length=256)
    voting_power: int = Field(..., ge=MIN_VOTING_POWER)

    @field_validator("identity")
    @classmethod
    def clean_identity(cls, v):
        return sanitize(v)

class ProposalCreate(BaseModel):
    description: str = Field(..., min_length=1, max_length=MAX_DESCRIPTION_LENGTH)

    @field_validator("description")
    @classmethod
    def clean_description(cls, v):
        return sanitize(v)

class VoteCast(BaseModel):
    support: bool

def member_out(m: Member) -> dict:
    return {
        "identity": m.identity,
        "is_active": m.is_active,
        "voting_power": m.voting_power,
        "joined_at": m.joined_at,
    }

def ballot_out(b: Ballot) -> dict:
    return {"voter": b.voter, "support": b.support, "power": b.power, "cast_at": b.cast_at}

def proposal_out(p: Proposal, now: int) -> dict:
    return {
        "id": p.id,
        "description": p.description,
        "proposer": p.proposer,
        "created_at": p.created_at,
        "end_time": p.end_time,
        "votes_for": p.votes_for,
        "votes_against": p.votes_against,
        "executed": p.executed,
        "state": p.state(now).value,
        "voters": sorted(p.ballots),
    }

def _refresh_gauges(ledger: GovernanceLedger):
    ACTIVE_MEMBERS_GAUGE.set(ledger.total_active_members)
    PROPOSALS_GAUGE.set(ledger.proposal_count)

# ============================================
# App
# ============================================
app = FastAPI(
    title="Governance Ledger Service",
    description="""
# Governance Ledger Service v1

**Weighted, membership-gated proposals and votes.**

## Quick Start
1. `POST /members` (owner) → admit a member, get their API key
2. `POST /proposals` → submit a proposal
3. `POST /proposals/{id}/votes` → vote for or against
4. `POST /proposals/{id}/execute` → finalize once voting closes with a majority
5. `GET /events` → notification feed
""",
    version=API_VERSION,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

app.state.ledger = build_ledger()
app.state.keys = KeyStore()
app.state.keys.add(OWNER_KEY, OWNER_ID)
_refresh_gauges(app.state.ledger)

# ============================================
# Errors
# ============================================
ERROR_STATUS = {
    Unauthorized: 403,
    NotFound: 404,
    AlreadyExists: 409,
    InvalidState: 409,
    InvalidArgument: 422,
}

@app.exception_handler(GovernanceError)
async def governance_error_handler(request: Request, exc: GovernanceError):
    status = next((code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls)), 400)
    return JSONResponse(
        status_code=status,
        content={"success": False, "error": exc.kind, "detail": str(exc)},
    )

# ============================================
# Middleware: metrics + logging
# ============================================
@app.middleware("http")
async def instrument(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    latency = time.perf_counter() - start
    endpoint = request.url.path
    REQUEST_COUNT.labels(request.method, endpoint, response.status_code).inc()
    REQUEST_LATENCY.labels(endpoint).observe(latency)
    log.info("request", method=request.method, path=endpoint,
             status=response.status_code, latency_ms=round(latency * 1000, 1))
    return response

# ============================================
# Routes
# ============================================

@app.get("/")
@limiter.limit("60/minute")
async def root(request: Request, ledger: GovernanceLedger = Depends(get_ledger)):
    return {
        "service": "Governance Ledger Service",
        "version": API_VERSION,
        "status": "operational",
        "owner": ledger.owner,
        "active_members": ledger.total_active_members,
        "proposals": ledger.proposal_count,
        "voting_duration": ledger.voting_duration,
        "docs": "/docs",
    }

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/health")
async def health(ledger: GovernanceLedger = Depends(get_ledger)):
    return {"status": "healthy", "version": API_VERSION,
            "active_members": ledger.total_active_members, "proposals": ledger.proposal_count}

# --- Membership ---
@app.post("/members", status_code=201)
@limiter.limit("30/minute")
async def add_member(
    data: MemberAdd, request: Request,
    caller: str = Depends(verify_caller), ledger: GovernanceLedger = Depends(get_ledger),
):
    """Admit a member (owner only). Returns the member's api_key. Save it."""
    member = ledger.add_member(caller, data.identity, data.voting_power)
    api_key = request.app.state.keys.issue(member.identity)
    _refresh_gauges(ledger)
    log.info("member_key_issued", member=member.identity)
    return {"success": True, "member": member_out(member), "api_key": api_key}

@app.delete("/members/{identity}")
@limiter.limit("30/minute")
async def remove_member(
    identity: str, request: Request,
    caller: str = Depends(verify_caller), ledger: GovernanceLedger = Depends(get_ledger),
):
    member = ledger.remove_member(caller, identity)
    _refresh_gauges(ledger)
    return {"success": True, "member": member_out(member)}

@app.get("/members")
@limiter.limit("120/minute")
async def list_members(
    request: Request, active_only: bool = False, ledger: GovernanceLedger = Depends(get_ledger),
):
    members = ledger.list_members(active_only=active_only)
    return {
        "success": True,
        "members": [member_out(m) for m in members],
        "total_active": ledger.total_active_members,
    }

@app.get("/members/{identity}")
@limiter.limit("120/minute")
async def get_member(identity: str, request: Request, ledger: GovernanceLedger = Depends(get_ledger)):
    return {"success": True, "member": member_out(ledger.get_member(identity))}

# --- Proposals ---
@app.post("/proposals", status_code=201)
@limiter.limit("30/minute")
async def create_proposal(
    data: ProposalCreate, request: Request,
    caller: str = Depends(verify_caller), ledger: GovernanceLedger = Depends(get_ledger),
):
    pid = ledger.create_proposal(caller, data.description)
    _refresh_gauges(ledger)
    return {"success": True, "proposal_id": pid,
            "proposal": proposal_out(ledger.get_proposal(pid), ledger.clock.now())}

@app.get("/proposals")
@limiter.limit("120/minute")
async def list_proposals(request: Request, ledger: GovernanceLedger = Depends(get_ledger)):
    now = ledger.clock.now()
    return {"success": True, "proposals": [proposal_out(p, now) for p in ledger.list_proposals()]}

@app.get("/proposals/{proposal_id}")
@limiter.limit("120/minute")
async def get_proposal(proposal_id: int, request: Request, ledger: GovernanceLedger = Depends(get_ledger)):
    proposal = ledger.get_proposal(proposal_id)
    return {"success": True, "proposal": proposal_out(proposal, ledger.clock.now())}

@app.post("/proposals/{proposal_id}/votes", status_code=201)
@limiter.limit("60/minute")
async def vote(
    proposal_id: int, data: VoteCast, request: Request,
    caller: str = Depends(verify_caller), ledger: GovernanceLedger = Depends(get_ledger),
):
    ballot = ledger.vote(caller, proposal_id, data.support)
    proposal = ledger.get_proposal(proposal_id)
    return {
        "success": True,
        "ballot": ballot_out(ballot),
        "votes_for": proposal.votes_for,
        "votes_against": proposal.votes_against,
    }

@app.get("/proposals/{proposal_id}/votes/{identity}")
@limiter.limit("120/minute")
async def get_vote(
    proposal_id: int, identity: str, request: Request, ledger: GovernanceLedger = Depends(get_ledger),
):
    ballot = ledger.get_ballot(proposal_id, identity)
    return {
        "success": True,
        "has_voted": ballot is not None,
        "ballot": ballot_out(ballot) if ballot else None,
    }

@app.post("/proposals/{proposal_id}/execute")
@limiter.limit("30/minute")
async def execute_proposal(
    proposal_id: int, request: Request,
    caller: Optional[str] = Depends(optional_caller), ledger: GovernanceLedger = Depends(get_ledger),
):
    """Finalize a passed proposal. Any caller may trigger this, authenticated or not."""
    proposal = ledger.execute_proposal(caller, proposal_id)
    return {"success": True, "proposal": proposal_out(proposal, ledger.clock.now())}

# --- Notification feed ---
@app.get("/events")
@limiter.limit("60/minute")
async def events(request: Request, ledger: GovernanceLedger = Depends(get_ledger)):
    recorder: RecordingSink = ledger.recorder
    return {
        "success": True,
        "events": [{"event": n.event, **n.fields} for n in recorder.snapshot()],
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"""
Governance Ledger Service v{API_VERSION}

Owner:     {OWNER_ID}
Owner key: {OWNER_KEY}

Docs:     http://localhost:{port}/docs
Health:   http://localhost:{port}/health
Metrics:  http://localhost:{port}/metrics
""")
    uvicorn.run(app, host="0.0.0.0", port=port)
