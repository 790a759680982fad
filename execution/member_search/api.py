"""
FastAPI Backend for Member Search

Inbound channel webhook, tenant cache invalidation for the ingestion
layer, health and metrics.

Run with: uvicorn execution.member_search.api:app --host 0.0.0.0 --port 8000
"""

import os
import logging

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    MessageRequest, MessageResponse, MemberInfo,
    ErrorResponse, InvalidateResponse, HealthResponse,
)
from .config import MemberSearchConfig
from .errors import (
    CacheUnavailable,
    DataStoreError,
    RateLimitExceeded,
    SessionUnavailable,
    ValidationError,
)
from .metrics import get_metrics_collector

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Member Search API",
    description="Natural-language member directory search for community messaging channels",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# Service Container
# =============================================================================

class ServiceContainer:
    """Lazily builds and caches the orchestrator and its stores."""

    def __init__(self):
        self._config = None
        self._orchestrator = None

    def get_config(self) -> MemberSearchConfig:
        if self._config is None:
            self._config = MemberSearchConfig.from_env()
        return self._config

    def get_orchestrator(self):
        if self._orchestrator is None:
            from .orchestrator import build_orchestrator
            self._orchestrator = build_orchestrator(self.get_config())
            store = self._orchestrator.ranker.store
            try:
                store.connect()
                store.initialize_schema()
            except DataStoreError as e:
                logger.warning(f"Member store not ready at startup: {e}")
        return self._orchestrator


_container = ServiceContainer()


def _error(status_code: int, error, text: str, headers: dict = None) -> JSONResponse:
    body = ErrorResponse(
        code=error.code,
        message=error.message,
        retryable=error.retryable,
        text=text,
        retry_after=getattr(error, "retry_after", None),
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(), headers=headers)


def _member_info(ranked: dict) -> MemberInfo:
    member = ranked["member"]
    return MemberInfo(
        rank=ranked["rank"],
        score=ranked["score"],
        member_id=member["member_id"],
        name=member["name"],
        member_type=member.get("member_type") or "generic",
        city=member.get("city"),
        organization=member.get("organization"),
        designation=member.get("designation"),
        degree=member.get("degree"),
        graduation_year=member.get("graduation_year"),
        skills=member.get("skills") or [],
        services=member.get("services") or [],
        email=member.get("email"),
        phone=member.get("phone"),
    )


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
def health_check():
    """Health check endpoint."""
    db_status = "unknown"
    kv_backend = "unknown"
    try:
        orchestrator = _container.get_orchestrator()
        kv_backend = orchestrator.sessions.kv.backend_name
        db_status = "connected" if orchestrator.ranker.store.health_check() else "disconnected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(
        status="ok",
        version=__version__,
        database=db_status,
        kv_backend=kv_backend,
    )


@app.post(
    "/api/v1/messages",
    response_model=MessageResponse,
    responses={400: {"model": ErrorResponse}, 429: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
def receive_message(request: MessageRequest):
    """Answer one inbound channel message."""
    orchestrator = _container.get_orchestrator()
    formatter = orchestrator.formatter

    try:
        response = orchestrator.search(
            request.sender_id,
            request.text,
            request.tenant_id,
            max_results=request.max_results,
            turn_id=request.message_id,
        )
    except RateLimitExceeded as e:
        return _error(429, e, formatter.rate_limited(e), headers={"Retry-After": str(e.retry_after)})
    except ValidationError as e:
        return _error(400, e, formatter.validation_error(e))
    except SessionUnavailable as e:
        return _error(503, e, formatter.session_unavailable())
    except DataStoreError as e:
        logger.error(f"Search failed for tenant {request.tenant_id}: {e}")
        return _error(503, e, formatter.data_store_error())

    return MessageResponse(
        text=response.text,
        intent=response.intent,
        route=response.route,
        members=[_member_info(m) for m in response.members],
        extraction=response.extraction,
        broadened=response.broadened,
        degraded=response.degraded,
        cache_hit=response.cache_hit,
        notes=response.notes,
        suggestions=response.suggestions,
        latency_ms=round(response.latency_ms, 2),
        turn_id=response.turn_id,
    )


@app.post(
    "/api/v1/tenants/{tenant_id}/invalidate",
    response_model=InvalidateResponse,
    responses={503: {"model": ErrorResponse}},
)
def invalidate_tenant(tenant_id: str):
    """Drop cached responses for a tenant after member or embedding changes."""
    orchestrator = _container.get_orchestrator()
    try:
        generation = orchestrator.invalidate_tenant(tenant_id)
    except CacheUnavailable as e:
        return _error(503, e, "Cache invalidation failed; retry shortly.")
    return InvalidateResponse(tenant_id=tenant_id, generation=generation)


@app.get("/api/v1/metrics")
async def get_metrics():
    """Metrics snapshot."""
    return get_metrics_collector().get_metrics_dict()
