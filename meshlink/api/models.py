"""Pydantic models for request/response validation."""
from pydantic import BaseModel, Field


class AuthorizeRequest(BaseModel):
    tier: str
    # Only honoured from a trusted portal proxy; otherwise the caller's own address is used
    client_address: str | None = None
    client_mac: str | None = None
    allow_supersede: bool = True


class SessionOut(BaseModel):
    session_id: str
    client_address: str
    client_mac: str | None = None
    tier: str
    status: str
    end_reason: str | None = None
    created_at: float
    expires_at: float
    ended_at: float | None = None
    data_used_bytes: int = 0


class TierOut(BaseModel):
    name: str
    duration_seconds: int
    download_kbit: int
    upload_kbit: int
    data_quota_bytes: int | None = None
    price: float = Field(0.0, ge=0)
