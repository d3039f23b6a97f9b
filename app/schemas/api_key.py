"""Schemas for API key management."""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field, field_validator


class APIKeyCreateRequest(BaseModel):
    """Request schema for creating a new API key."""
    name: str = Field(..., max_length=255, description="Name for the API key, unique per owner")
    monthly_limit: Optional[int] = Field(
        None,
        description="Monthly request allowance. Falls back to the default when missing or not positive.",
    )

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Reject names that are blank after trimming."""
        if not v.strip():
            raise ValueError("Key name is required")
        return v.strip()

    @field_validator("monthly_limit", mode="before")
    @classmethod
    def lenient_limit(cls, v):
        """Non-numeric limits fall back to the default instead of failing."""
        if v is None or isinstance(v, bool):
            return None
        try:
            return int(v)
        except (TypeError, ValueError):
            return None


class APIKeyUpdateRequest(BaseModel):
    """Request schema for updating an API key."""
    name: Optional[str] = Field(None, max_length=255)
    is_active: Optional[bool] = None
    usage: Optional[int] = Field(None, ge=0)
    monthly_limit: Optional[int] = Field(None, gt=0)


class APIKeyResponse(BaseModel):
    """Response schema for an API key owned by the caller."""
    id: str
    name: str
    key: str
    key_masked: str
    is_active: bool
    usage: int
    monthly_limit: int
    remaining: int
    created_at: datetime
    last_used: Optional[datetime] = None


class APIKeyListResponse(BaseModel):
    """Response schema for listing API keys."""
    items: list[APIKeyResponse]
    total: int


class APIKeyUsageResponse(BaseModel):
    """Combined usage of the caller's keys."""
    total_usage: int
    plan_limit: int
    percent_used: float
    key_count: int
    active_key_count: int
