"""
Pydantic models for the Member Search FastAPI backend.
"""

from typing import Optional
from pydantic import BaseModel, Field


class MessageRequest(BaseModel):
    """Inbound channel message."""
    sender_id: str = Field(..., min_length=1, max_length=128)
    text: str  # Length limit enforced by the orchestrator
    tenant_id: str = Field(..., min_length=1, max_length=128)
    max_results: Optional[int] = None  # Clamped, never rejected
    message_id: Optional[str] = Field(None, max_length=128)


class MemberInfo(BaseModel):
    """One ranked member in a response."""
    rank: int
    score: float
    member_id: str
    name: str
    member_type: str = "generic"
    city: Optional[str] = None
    organization: Optional[str] = None
    designation: Optional[str] = None
    degree: Optional[str] = None
    graduation_year: Optional[int] = None
    skills: list[str] = []
    services: list[str] = []
    email: Optional[str] = None
    phone: Optional[str] = None


class MessageResponse(BaseModel):
    """Response to an inbound channel message."""
    text: str
    intent: str
    route: str
    members: list[MemberInfo] = []
    extraction: dict = {}
    broadened: bool = False
    degraded: bool = False
    cache_hit: bool = False
    notes: list[str] = []
    suggestions: list[str] = []
    latency_ms: float = 0.0
    turn_id: Optional[str] = None


class ErrorResponse(BaseModel):
    """Error body for 400/429/503 responses."""
    code: str
    message: str
    retryable: bool
    text: str
    retry_after: Optional[int] = None


class InvalidateResponse(BaseModel):
    """Response for tenant cache invalidation."""
    tenant_id: str
    generation: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    database: str
    kv_backend: str
