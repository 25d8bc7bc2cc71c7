"""
FastAPI application entry point.

On startup:
  1. Wire the arrival engine (downloads, schedule index, resolver,
     realtime adapter, assembler) into app.state.
  2. Start snapshot priming in the background; requests are served from
     the streaming archive until it finishes.
  3. Start the APScheduler job that refreshes both static artifacts
     every GTFS_REFRESH_HOURS.

Endpoints:
  GET  /arrivals?agency=<key>&stop=<ref>&limit=<n>&route=<ref>&from_time=<iso>
  GET  /lines?agency=<key>&stop=<ref>&window=<minutes>
  GET  /stops/resolve?agency=<key>&q=<ref>
  GET  /alerts?route=<ref>
  GET  /health
"""

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.schemas import (
    AlertResult,
    ArrivalsResponse,
    HealthResponse,
    LinesResponse,
    StopCandidate,
)
from arrivals.assembler import ArrivalAssembler
from cache.downloader import ArtifactKind, DownloadManager
from config import AGENCY_KEY, AGENCY_TIMEZONE, CORS_ORIGINS, GTFS_REFRESH_HOURS, LOG_LEVEL
from db.session import make_store_sessionmaker
from errors import NotFoundError, TransitError
from ingestion.gtfs_realtime import RealtimeAdapter
from schedule.archive import ArchiveIndex
from schedule.index import ScheduleIndex
from schedule.snapshot import SnapshotHandle, SnapshotIndex
from stops.resolver import StopResolver

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger(__name__)


@dataclass
class Components:
    downloads: DownloadManager
    snapshot: SnapshotHandle
    schedule: ScheduleIndex
    resolver: StopResolver
    realtime: RealtimeAdapter
    assembler: ArrivalAssembler


def build_components() -> Components:
    downloads = DownloadManager()
    snapshot = SnapshotHandle(downloads)
    schedule = ScheduleIndex(SnapshotIndex(snapshot), ArchiveIndex(downloads), ZoneInfo(AGENCY_TIMEZONE))
    resolver = StopResolver(make_store_sessionmaker(), schedule)
    realtime = RealtimeAdapter(schedule)
    return Components(
        downloads=downloads,
        snapshot=snapshot,
        schedule=schedule,
        resolver=resolver,
        realtime=realtime,
        assembler=ArrivalAssembler(resolver, schedule, realtime),
    )


async def _refresh_static_artifacts(components: Components) -> None:
    """
    Scheduled job: re-download whichever static artifacts have gone stale.

    Runs every GTFS_REFRESH_HOURS hours.  Failures are logged by the
    download manager and never reach the scheduler.
    """
    sources = (
        (components.snapshot.url, ArtifactKind.SNAPSHOT),
        (components.schedule.archive.url, ArtifactKind.ARCHIVE),
    )
    for url, kind in sources:
        if url:
            await components.downloads.refresh_in_background(url, kind)
    logger.info("Static artifact refresh complete.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    components = build_components()
    app.state.components = components
    components.snapshot.start_priming()
    logger.info("Arrival engine wired for agency %s.", AGENCY_KEY)

    scheduler = AsyncIOScheduler()
    app.state.scheduler = scheduler
    scheduler.add_job(
        _refresh_static_artifacts,
        "interval",
        hours=GTFS_REFRESH_HOURS,
        args=[components],
        id="static_refresh",
    )
    scheduler.start()
    logger.info("Scheduler started. Static refresh every %dh.", GTFS_REFRESH_HOURS)

    yield

    # Shutdown
    if scheduler.running:
        scheduler.shutdown()
    await components.snapshot.close()


app = FastAPI(
    title="Transit Arrivals",
    description="Next arrivals at a stop from GTFS-Realtime, with the static schedule as fallback.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["GET"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(TransitError)
async def _unavailable(request: Request, exc: TransitError) -> JSONResponse:
    # ConfigurationError, NetworkError and anything else the engine gives up on
    logger.warning("Request failed: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def get_components(request: Request) -> Components:
    return request.app.state.components


@app.get("/health", response_model=HealthResponse)
async def health(request: Request, components: Components = Depends(get_components)) -> HealthResponse:
    """Liveness plus whether the indexed snapshot has finished priming."""
    next_refresh_at: str | None = None
    job = request.app.state.scheduler.get_job("static_refresh")
    if job and job.next_run_time:
        next_refresh_at = job.next_run_time.isoformat()

    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "agency": AGENCY_KEY,
        "schedule": {
            "snapshot_ready": components.schedule.is_ready(),
            "configured": components.schedule.is_configured(),
            "next_refresh_at": next_refresh_at,
        },
    }


@app.get("/arrivals", response_model=ArrivalsResponse)
async def get_arrivals(
    stop: str = Query(..., min_length=1, description="Stop code, stop id or stop name"),
    agency: str = Query(AGENCY_KEY, description="Agency key"),
    limit: int = Query(10, ge=1, le=50),
    route: str | None = Query(None, description="Route name prefix, e.g. 83 matches 83A"),
    from_time: datetime | None = Query(None, description="ISO-8601 instant to look forward from"),
    components: Components = Depends(get_components),
) -> ArrivalsResponse:
    """Next arrivals at a stop, realtime first and scheduled otherwise."""
    records = await components.assembler.get_next_arrivals(
        agency, stop, limit=limit, route_ref=route, from_time=from_time,
    )
    return {"agency": agency, "stop": stop, "arrivals": [r.to_dict() for r in records]}


@app.get("/lines", response_model=LinesResponse)
async def get_lines(
    stop: str = Query(..., min_length=1),
    agency: str = Query(AGENCY_KEY),
    window: int = Query(60, ge=1, le=720, description="Minutes ahead to look"),
    components: Components = Depends(get_components),
) -> LinesResponse:
    """Routes scheduled to serve the stop in the next window minutes."""
    lines = await components.assembler.get_active_lines(agency, stop, window_minutes=window)
    return {"agency": agency, "stop": stop, "window_minutes": max(5, window), "lines": lines}


@app.get("/stops/resolve", response_model=list[StopCandidate])
async def resolve_stop(
    q: str = Query(..., min_length=1, description="Stop code, stop id or stop name"),
    agency: str = Query(AGENCY_KEY),
    components: Components = Depends(get_components),
) -> list[StopCandidate]:
    candidates = await components.resolver.resolve(agency, q)
    return [{"id": c.id, "name": c.name} for c in candidates]


@app.get("/alerts", response_model=list[AlertResult])
async def get_alerts(
    route: str | None = Query(None, description="Only alerts for route ids starting with this"),
    components: Components = Depends(get_components),
) -> list[AlertResult]:
    alerts = await components.realtime.service_alerts(route)
    return [
        {
            "alert_id": a.alert_id,
            "header": a.header,
            "description": a.description,
            "route_ids": a.affected_route_ids,
            "stop_ids": a.affected_stop_ids,
            "start": a.active_start.isoformat() if a.active_start else None,
            "end": a.active_end.isoformat() if a.active_end else None,
            "cause": a.cause,
            "effect": a.effect,
        }
        for a in alerts
    ]


if __name__ == "__main__":
    import uvicorn
    from config import API_HOST, API_PORT

    uvicorn.run("api.main:app", host=API_HOST, port=API_PORT)
