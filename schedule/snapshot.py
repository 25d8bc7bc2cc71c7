"""
Indexed-snapshot schedule backend.

The snapshot is a prebuilt SQLite file (see ingestion.gtfs_static) fetched
through the DownloadManager and opened read-only once per process.  Until
it is open, is_ready() is False and callers use the streaming-archive
backend instead; nothing on the request path ever waits for priming.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Iterable, Iterator

from sqlalchemy import func, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from cache.downloader import ArtifactKind, DownloadManager
from config import SNAPSHOT_RETRY_SECONDS, SNAPSHOT_URL
from db.models import Route, ServiceCalendar, ServiceCalendarDate, Stop, StopTime, Trip
from db.session import open_snapshot_engine, snapshot_session
from errors import DataFormatError
from schedule.common import (
    WEEKDAY_COLUMNS,
    CalendarException,
    CalendarRow,
    ScheduledDeparture,
    StopRow,
    TripSummary,
    active_service_ids,
    earliest_per_trip,
    route_display_name,
    seconds_of_day,
    service_date_key,
    sorted_departures,
)

logger = logging.getLogger(__name__)

REQUIRED_TABLES = {"stops", "routes", "trips", "stop_times", "calendar"}

# Stay well under SQLite's bound-parameter limit
_IN_BATCH = 500


def _batches(ids: Iterable[str]) -> Iterator[list[str]]:
    ids = list(ids)
    for i in range(0, len(ids), _IN_BATCH):
        yield ids[i:i + _IN_BATCH]


def _open_validated(path) -> Engine:
    engine = open_snapshot_engine(path)
    try:
        with engine.connect() as conn:
            tables = set(inspect(conn).get_table_names())
    except SQLAlchemyError as exc:
        engine.dispose()
        raise DataFormatError(f"Snapshot {path} is not a readable SQLite database: {exc}") from exc
    missing = REQUIRED_TABLES - tables
    if missing:
        engine.dispose()
        raise DataFormatError(f"Snapshot {path} is missing tables: {sorted(missing)}")
    return engine


class SnapshotHandle:
    """Process-lifetime, lazily opened, read-only snapshot engine."""

    def __init__(
        self,
        downloads: DownloadManager,
        url: str = SNAPSHOT_URL,
        *,
        retry_seconds: float = SNAPSHOT_RETRY_SECONDS,
    ) -> None:
        self._downloads = downloads
        self.url = url
        self.retry_seconds = retry_seconds
        self._engine: Engine | None = None
        self._lock = asyncio.Lock()
        self._prime_task: asyncio.Task | None = None

    def is_ready(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        """Return the open engine. Raises if not yet opened."""
        if self._engine is None:
            raise RuntimeError("Snapshot has not been opened yet. Call open() first.")
        return self._engine

    async def open(self) -> Engine:
        if self._engine is not None:
            return self._engine
        async with self._lock:
            if self._engine is None:
                path = await self._downloads.ensure_local(self.url, ArtifactKind.SNAPSHOT)
                self._engine = await asyncio.to_thread(_open_validated, path)
                logger.info("Snapshot opened: %s", path)
        return self._engine

    async def prime_forever(self) -> None:
        """Keep trying to open the snapshot until it succeeds. Never raises."""
        while True:
            try:
                await self.open()
                return
            except Exception as exc:
                logger.warning(
                    "Snapshot prime failed, retrying in %ds: %s", self.retry_seconds, exc,
                )
                await asyncio.sleep(self.retry_seconds)

    def start_priming(self) -> asyncio.Task:
        """Spawn the priming task once; later calls return the same task."""
        if self._prime_task is None:
            self._prime_task = asyncio.create_task(self.prime_forever(), name="snapshot-prime")
        return self._prime_task

    async def close(self) -> None:
        if self._prime_task is not None and not self._prime_task.done():
            self._prime_task.cancel()
            try:
                await self._prime_task
            except asyncio.CancelledError:
                pass
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


class SnapshotIndex:
    """Schedule queries against the open snapshot. All methods block."""

    def __init__(self, handle: SnapshotHandle) -> None:
        self.handle = handle

    def is_ready(self) -> bool:
        return self.handle.is_ready()

    def expand_station(self, stop_id: str) -> list[str]:
        with snapshot_session(self.handle.engine) as session:
            location_type = (
                session.query(Stop.location_type).filter(Stop.stop_id == stop_id).scalar()
            )
            if location_type is not None and int(location_type) == 1:
                kids = [
                    r.stop_id
                    for r in session.query(Stop.stop_id)
                    .filter(Stop.parent_station == stop_id)
                    .order_by(Stop.stop_id)
                ]
                if kids:
                    return kids
        return [stop_id]

    def active_services(self, service_date: date) -> set[str]:
        iso = service_date_key(service_date)
        with snapshot_session(self.handle.engine) as session:
            calendar = [
                CalendarRow.from_record({
                    "service_id": r.service_id,
                    "start_date": r.start_date,
                    "end_date": r.end_date,
                    **{col: getattr(r, col) for col in WEEKDAY_COLUMNS},
                })
                for r in session.query(ServiceCalendar)
            ]
            exceptions = [
                CalendarException(str(r.service_id), str(r.date), int(r.exception_type or 0))
                for r in session.query(ServiceCalendarDate)
                .filter(ServiceCalendarDate.date == iso)
                .order_by(ServiceCalendarDate.id)
            ]
        return active_service_ids(calendar, exceptions, service_date)

    def upcoming_departures(
        self,
        stop_ids: list[str],
        now_local: datetime,
        horizon_minutes: int,
    ) -> list[ScheduledDeparture]:
        if not stop_ids:
            return []
        now_sec = seconds_of_day(now_local)
        horizon_sec = now_sec + horizon_minutes * 60
        active = self.active_services(now_local.date())

        with snapshot_session(self.handle.engine) as session:
            rows = (
                session.query(StopTime.trip_id, StopTime.departure_time)
                .filter(StopTime.stop_id.in_(stop_ids), StopTime.departure_time.isnot(None))
                .all()
            )
            earliest = earliest_per_trip(rows, now_sec, horizon_sec)
            if not earliest:
                return []

            out: list[ScheduledDeparture] = []
            for batch in _batches(earliest):
                for t in (
                    session.query(Trip.trip_id, Trip.route_id, Trip.trip_headsign, Trip.service_id)
                    .filter(Trip.trip_id.in_(batch))
                ):
                    if t.service_id not in active:
                        continue
                    out.append(ScheduledDeparture(
                        trip_id=t.trip_id,
                        departure_seconds=earliest[t.trip_id],
                        route_id=t.route_id or "",
                        headsign=t.trip_headsign or "",
                    ))
        return sorted_departures(out)

    def route_names_for(self, route_ids: Iterable[str]) -> dict[str, str]:
        names: dict[str, str] = {}
        with snapshot_session(self.handle.engine) as session:
            for batch in _batches(set(route_ids)):
                for r in (
                    session.query(Route.route_id, Route.route_short_name, Route.route_long_name)
                    .filter(Route.route_id.in_(batch))
                ):
                    names[r.route_id] = route_display_name(r.route_short_name, r.route_long_name)
        return names

    def trip_summaries(self, trip_ids: Iterable[str]) -> dict[str, TripSummary]:
        out: dict[str, TripSummary] = {}
        with snapshot_session(self.handle.engine) as session:
            for batch in _batches(set(trip_ids)):
                rows = (
                    session.query(
                        Trip.trip_id, Trip.route_id, Trip.trip_headsign,
                        Route.route_short_name, Route.route_long_name,
                    )
                    .outerjoin(Route, Route.route_id == Trip.route_id)
                    .filter(Trip.trip_id.in_(batch))
                )
                for r in rows:
                    out[r.trip_id] = TripSummary(
                        trip_id=r.trip_id,
                        route_id=r.route_id or "",
                        route_name=route_display_name(r.route_short_name, r.route_long_name),
                        headsign=r.trip_headsign or "",
                    )
        return out

    def route_names_for_trips(self, trip_ids: Iterable[str]) -> dict[str, str]:
        return {tid: s.route_name for tid, s in self.trip_summaries(trip_ids).items()}

    def find_stops(self, tokens: list[str], limit: int = 200) -> list[StopRow]:
        """Stops whose name contains every token (case-insensitive)."""
        with snapshot_session(self.handle.engine) as session:
            q = session.query(Stop.stop_id, Stop.stop_name, Stop.location_type)
            for token in tokens:
                q = q.filter(func.lower(Stop.stop_name).contains(token.lower(), autoescape=True))
            return [
                StopRow(r.stop_id, r.stop_name or "", int(r.location_type or 0))
                for r in q.limit(limit)
            ]

    def stop_id_for_code(self, code: str) -> str | None:
        with snapshot_session(self.handle.engine) as session:
            return (
                session.query(Stop.stop_id)
                .filter(Stop.stop_code == code)
                .order_by(Stop.stop_id)
                .limit(1)
                .scalar()
            )
