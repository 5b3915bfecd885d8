#!/usr/bin/env python3
"""
Governance Ledger Service v1.0
==============================
HTTP API over a single GovernanceLedger.

  - Stakeholder registration (optionally gated by a registrar key)
  - Proposal creation, voting and read-back
  - Consensus status per proposal
  - Notification feed with cursor pagination (for UIs / indexers)
  - Rate limiting (slowapi)
  - Structured logging (structlog)
  - Prometheus /metrics endpoint
  - Optional JSON snapshot persistence
"""

import os
import re
import hmac
import time
import threading
from collections import deque
from typing import Optional, List

import structlog
from fastapi import FastAPI, HTTPException, Header, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field, field_validator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

from governance_ledger import (
    GovernanceLedger,
    LedgerError,
    DuplicateStakeholderError,
    NotAStakeholderError,
    DuplicateVoteError,
    AlreadyPassedError,
    UnknownProposalError,
    ShareCapExceededError,
    ProposalCreated,
    Voted,
    ProposalPassed,
    event_to_dict,
)

# ============================================
# Configuration
# ============================================
API_VERSION = "1.0.0"
STATE_FILE = os.environ.get("LEDGER_STATE_FILE") or None
MAX_TOTAL_SHARES = int(os.environ.get("LEDGER_MAX_TOTAL_SHARES", "0"))  # 0 = unbounded
REGISTRAR_KEY = os.environ.get("LEDGER_REGISTRAR_KEY") or None          # unset = open registration
EVENT_BUFFER = int(os.environ.get("LEDGER_EVENT_BUFFER", "1000"))
RATE_LIMIT_ENABLED = os.environ.get("LEDGER_RATE_LIMIT_ENABLED", "1") not in ("0", "false", "no")
MAX_DESCRIPTION_SIZE = 8192
MAX_EVENT_RESULTS = 200

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
PROPOSALS_CREATED = Counter("ledger_proposals_created_total", "Proposals created")
VOTES_CAST = Counter("ledger_votes_cast_total", "Votes cast")
PROPOSALS_PASSED = Counter("ledger_proposals_passed_total", "Proposals that reached dual majority")
STAKEHOLDER_GAUGE = Gauge("ledger_stakeholders_total", "Registered stakeholders")
TOTAL_SHARES_GAUGE = Gauge("ledger_total_shares", "Sum of all registered shares")

# ============================================
# Input Sanitization
# ============================================
_NULL_RE = re.compile(r"\x00")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")

def sanitize(text: str) -> str:
    """Drop null bytes from free text. Everything else is kept verbatim."""
    return _NULL_RE.sub("", text)

def check_identity(value: str) -> str:
    """Identities are opaque keys: validated, never rewritten."""
    if not value.strip():
        raise ValueError("identity must not be blank")
    if _CONTROL_RE.search(value):
        raise ValueError("identity must not contain control characters")
    return value

# ============================================
# Notification feed
# ============================================
class EventFeed:
    """Bounded, sequence-numbered buffer of ledger notifications."""

    def __init__(self, maxlen: int = EVENT_BUFFER):
        self._events: deque = deque(maxlen=maxlen)
        self._seq = 0
        self._lock = threading.Lock()

    def __call__(self, event) -> None:
        with self._lock:
            self._seq += 1
            self._events.append({"seq": self._seq, **event_to_dict(event)})

    def since(self, after: int, limit: int) -> List[dict]:
        with self._lock:
            return [e for e in self._events if e["seq"] > after][:limit]

    @property
    def last_seq(self) -> int:
        return self._seq


def _count_event(event) -> None:
    if isinstance(event, ProposalCreated):
        PROPOSALS_CREATED.inc()
    elif isinstance(event, Voted):
        VOTES_CAST.inc()
    elif isinstance(event, ProposalPassed):
        PROPOSALS_PASSED.inc()


def attach_ledger(application: FastAPI, ledger: GovernanceLedger) -> GovernanceLedger:
    """Install a ledger (and a fresh notification feed) on the app."""
    feed = EventFeed()
    ledger.subscribe(feed)
    ledger.subscribe(_count_event)
    application.state.ledger = ledger
    application.state.events = feed
    STAKEHOLDER_GAUGE.set(ledger.count())
    TOTAL_SHARES_GAUGE.set(ledger.total_share())
    return ledger


def build_ledger() -> GovernanceLedger:
    return GovernanceLedger(state_file=STATE_FILE, max_total_shares=MAX_TOTAL_SHARES or None)


def get_ledger(request: Request) -> GovernanceLedger:
    return request.app.state.ledger

# ============================================
# Auth
# ============================================
def _safe_compare(a: str, b: str) -> bool:
    """Timing-safe string comparison."""
    return hmac.compare_digest(a.encode(), b.encode())

def verify_registrar(authorization: Optional[str] = Header(None)) -> None:
    if REGISTRAR_KEY is None:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(401, "Registrar key required. Use: Bearer <registrar_key>")
    if not _safe_compare(authorization[7:], REGISTRAR_KEY):
        raise HTTPException(401, "Invalid registrar key.")

# ============================================
# Rate Limiter
# ============================================
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)

# ============================================
# Models
# ============================================
class StakeholderRegister(BaseModel):
    identity: str = Field(..., min_length=1, max_length=200)
    share: int = Field(..., ge=0)

    @field_validator("identity")
    @classmethod
    def clean_identity(cls, v):
        return check_identity(v)

class ProposalCreate(BaseModel):
    proposer: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=MAX_DESCRIPTION_SIZE)

    @field_validator("proposer")
    @classmethod
    def clean_proposer(cls, v):
        return check_identity(v)

    @field_validator("description")
    @classmethod
    def clean_description(cls, v):
        return sanitize(v)

class VoteCast(BaseModel):
    voter: str = Field(..., min_length=1, max_length=200)

    @field_validator("voter")
    @classmethod
    def clean_voter(cls, v):
        return check_identity(v)

# ============================================
# App
# ============================================
app = FastAPI(
    title="Governance Ledger Service",
    description="""
# Governance Ledger Service v1

**Ownership-weighted proposals that pass on a strict dual majority.**

## Quick Start
1. `POST /stakeholders` → register an identity with its share
2. `POST /proposals` → a stakeholder opens a proposal
3. `POST /proposals/{id}/votes` → stakeholders vote yes, once each
4. `GET /proposals/{id}` → tallies and passed flag
5. `GET /events` → ProposalCreated / Voted / ProposalPassed feed
""",
    version=API_VERSION,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type"],
)

attach_ledger(app, build_ledger())

# ============================================
# Errors
# ============================================
ERROR_STATUS = {
    DuplicateStakeholderError: 409,
    ShareCapExceededError: 409,
    NotAStakeholderError: 403,
    UnknownProposalError: 404,
    DuplicateVoteError: 409,
    AlreadyPassedError: 409,
}

@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status = ERROR_STATUS.get(type(exc), 400)
    return JSONResponse(status_code=status,
                        content={"detail": str(exc), "error": type(exc).__name__,
                                 "context": vars(exc)})

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
async def root(request: Request):
    ledger = get_ledger(request)
    return {
        "service": "Governance Ledger Service",
        "version": API_VERSION,
        "status": "operational",
        "stakeholders": ledger.count(),
        "total_shares": ledger.total_share(),
        "proposals": ledger.proposal_count(),
        "docs": "/docs",
    }

@app.get("/metrics", include_in_schema=False)
async def metrics():
    """Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)

@app.get("/health")
async def health(request: Request):
    ledger = get_ledger(request)
    return {"status": "healthy", "version": API_VERSION,
            "stakeholders": ledger.count(), "proposals": ledger.proposal_count()}

# --- Stakeholder Registry ---
@app.post("/stakeholders", status_code=201, dependencies=[Depends(verify_registrar)])
@limiter.limit("30/minute")
async def register_stakeholder(data: StakeholderRegister, request: Request):
    """Register an identity with its share. Each identity can be registered once."""
    ledger = get_ledger(request)
    stakeholder = ledger.register(data.identity, data.share)
    STAKEHOLDER_GAUGE.set(ledger.count())
    TOTAL_SHARES_GAUGE.set(ledger.total_share())
    return {
        "success": True,
        "identity": stakeholder.identity,
        "share": stakeholder.share,
        "total_owners": ledger.count(),
        "total_shares": ledger.total_share(),
    }

@app.get("/stakeholders")
@limiter.limit("120/minute")
async def list_stakeholders(request: Request):
    ledger = get_ledger(request)
    return {
        "success": True,
        "stakeholders": [{"identity": s.identity, "share": s.share} for s in ledger.stakeholders()],
        "count": ledger.count(),
        "total_shares": ledger.total_share(),
    }

@app.get("/stakeholders/{identity:path}")
@limiter.limit("120/minute")
async def get_stakeholder(identity: str, request: Request):
    ledger = get_ledger(request)
    if not ledger.is_stakeholder(identity):
        raise HTTPException(404, f"'{identity}' is not a registered stakeholder.")
    return {"success": True, "identity": identity, "share": ledger.share_of(identity)}

# --- Proposals ---
@app.post("/proposals", status_code=201)
@limiter.limit("60/minute")
async def create_proposal(data: ProposalCreate, request: Request):
    ledger = get_ledger(request)
    proposal_id = ledger.create_proposal(data.proposer, data.description)
    return {"success": True, "proposal_id": proposal_id,
            "proposal": ledger.get_proposal(proposal_id).to_dict()}

@app.get("/proposals")
@limiter.limit("120/minute")
async def list_proposals(request: Request):
    ledger = get_ledger(request)
    proposals = ledger.list_proposals()
    return {"success": True, "proposals": proposals, "total": len(proposals)}

@app.get("/proposals/{proposal_id}")
@limiter.limit("120/minute")
async def get_proposal(proposal_id: int, request: Request):
    """Ids that were never created return the empty record, not 404."""
    ledger = get_ledger(request)
    return {"success": True, "proposal_id": proposal_id,
            "proposal": ledger.get_proposal(proposal_id).to_dict()}

@app.get("/proposals/{proposal_id}/consensus")
@limiter.limit("120/minute")
async def get_consensus(proposal_id: int, request: Request):
    return {"success": True, **get_ledger(request).consensus_status(proposal_id)}

# --- Voting ---
@app.post("/proposals/{proposal_id}/votes", status_code=201)
@limiter.limit("120/minute")
async def cast_vote(proposal_id: int, data: VoteCast, request: Request):
    ledger = get_ledger(request)
    snapshot = ledger.cast_vote(data.voter, proposal_id)
    return {"success": True, "proposal_id": proposal_id, "voter": data.voter,
            "proposal": snapshot.to_dict()}

# --- Notification feed ---
@app.get("/events")
@limiter.limit("120/minute")
async def list_events(
    request: Request,
    after: int = Query(0, ge=0, description="Return notifications with seq greater than this"),
    limit: int = Query(50, ge=1, le=MAX_EVENT_RESULTS),
):
    feed: EventFeed = request.app.state.events
    events = feed.since(after, limit)
    return {
        "success": True,
        "events": events,
        "next_cursor": events[-1]["seq"] if events else after,
        "last_seq": feed.last_seq,
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", 8000))
    print(f"""
Governance Ledger Service v{API_VERSION}

Docs:     http://localhost:{port}/docs
Health:   http://localhost:{port}/health
Metrics:  http://localhost:{port}/metrics
""")
    uvicorn.run(app, host="0.0.0.0", port=port)
