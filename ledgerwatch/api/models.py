"""
Pydantic models for API responses.
The request side of POST / is raw newline-delimited JSON (see ingestion.schema).
"""
from pydantic import BaseModel, Field
from typing import Dict, Optional


class IngestResponse(BaseModel):
    accepted: int = Field(..., description="Events dispatched to the fraud pipeline")
    skipped: int = Field(0, description="Malformed lines skipped (skip mode only)")


class IngestErrorResponse(BaseModel):
    error: str = "MalformedEvent"
    message: str
    line: int = Field(..., description="1-based line number of the malformed record")
    accepted: int = Field(..., description="Events dispatched before the malformed line")


class HealthCheckResponse(BaseModel):
    status: str = Field(..., description="healthy | degraded | down")
    store_ok: bool
    accounts: int
    workload_running: bool
    in_flight_events: int
    uptime_seconds: Optional[float] = None


class MetricsResponse(BaseModel):
    transfers: Dict[str, int]
    pipeline: Dict[str, float]
    changefeed: Optional[Dict[str, int]] = None
