from __future__ import annotations
from typing import Literal
from pydantic import BaseModel


# ---------------------------------------------------------------------------
# GET /arrivals
# ---------------------------------------------------------------------------

class ArrivalResult(BaseModel):
    route_name: str
    headsign: str
    when: str        # ISO-8601, agency-local offset
    realtime: bool


class ArrivalsResponse(BaseModel):
    agency: str
    stop: str
    arrivals: list[ArrivalResult]


# ---------------------------------------------------------------------------
# GET /lines
# ---------------------------------------------------------------------------

class LinesResponse(BaseModel):
    agency: str
    stop: str
    window_minutes: int
    lines: list[str]


# ---------------------------------------------------------------------------
# GET /stops/resolve
# ---------------------------------------------------------------------------

class StopCandidate(BaseModel):
    id: str
    name: str


# ---------------------------------------------------------------------------
# GET /alerts
# ---------------------------------------------------------------------------

class AlertResult(BaseModel):
    alert_id: str
    header: str
    description: str
    route_ids: list[str]
    stop_ids: list[str]
    start: str | None
    end: str | None
    cause: str
    effect: str


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------

class ScheduleStats(BaseModel):
    snapshot_ready: bool
    configured: bool
    next_refresh_at: str | None


class HealthResponse(BaseModel):
    status: Literal["ok"]
    timestamp: str
    agency: str
    schedule: ScheduleStats
