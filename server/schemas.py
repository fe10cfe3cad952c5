"""Pydantic response schemas for the Quizbench API."""

from typing import Dict, List, Optional
from pydantic import BaseModel, Field


# ---- Run control ----

class ControlResponse(BaseModel):
    status: str
    run_id: Optional[str] = None


class RunStatusResponse(BaseModel):
    state: str
    paused: bool = False
    run_id: Optional[str] = None
    kind: Optional[str] = None
    domains: List[str] = Field(default_factory=list)
    counts: Dict[str, int] = Field(default_factory=dict)
    processed: int = 0
    skipped: int = 0
    errors: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    observers: int = 0


# ---- Analysis ----

class DomainAnalysis(BaseModel):
    domain: str
    count: int
    evaluated: int
    accuracy: float
    avgResponseTime: float
