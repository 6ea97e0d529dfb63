"""
Pydantic models shared by the HTTP layer, the upstream client and the worker.
Wire format is camelCase to stay compatible with existing JobMaster clients.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


# ─── Upstream Payloads ───────────────────────────────────────────────────────

class Holding(BaseModel):
    """One portfolio entry as returned by the portfolio API."""
    model_config = ConfigDict(str_strip_whitespace=True)

    symbol: str = Field(min_length=1)
    quantity: float = Field(ge=0, allow_inf_nan=False)


class PriceSample(BaseModel):
    """A (timestamp, price) point of a price history. Naive timestamps are UTC."""
    timestamp: datetime
    price: float = Field(allow_inf_nan=False)

    @field_validator("timestamp", mode="after")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None or v.utcoffset() is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


# ─── API Models ──────────────────────────────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobCreateRequest(BaseModel):
    # Both optional on purpose: missing fields are reported as 400 by the service.
    type: Optional[Any] = None
    data: Optional[Any] = None


class JobCreatedResponse(CamelModel):
    job_id: str
    status: str
    message: str = "Job created successfully"


class JobView(CamelModel):
    job_id: str
    status: str
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: str
    completed_at: Optional[str] = None
