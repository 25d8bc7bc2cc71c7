"""
Schedule index facade.

Two backends answer the same queries:

  SnapshotIndex: SQLite snapshot, fast, available once priming finishes
  ArchiveIndex : streams the GTFS zip, always available once downloaded

The facade picks one per call (snapshot if ready, else archive), runs the
blocking query in a worker thread, and turns "no artifact yet" into an
empty answer.  Empty therefore means "unknown / not ready", never
"no service".
"""

import asyncio
import logging
from datetime import date, datetime, tzinfo
from typing import Callable, Iterable, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from config import SCHEDULE_HORIZON_MINUTES
from errors import ConfigurationError, DataFormatError, NetworkError, NotReadyError
from schedule.archive import ArchiveIndex
from schedule.common import (
    ArrivalRecord,
    ScheduledDeparture,
    StopRow,
    TripSummary,
    departure_datetime,
    local_midnight,
    natural_key,
    route_ref_matches,
    to_local,
)
from schedule.snapshot import SnapshotIndex

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScheduleBackend(Protocol):
    def expand_station(self, stop_id: str) -> list[str]: ...
    def active_services(self, service_date: date) -> set[str]: ...
    def upcoming_departures(
        self, stop_ids: list[str], now_local: datetime, horizon_minutes: int,
    ) -> list[ScheduledDeparture]: ...
    def route_names_for(self, route_ids: Iterable[str]) -> dict[str, str]: ...
    def route_names_for_trips(self, trip_ids: Iterable[str]) -> dict[str, str]: ...
    def trip_summaries(self, trip_ids: Iterable[str]) -> dict[str, TripSummary]: ...
    def find_stops(self, tokens: list[str], limit: int = 200) -> list[StopRow]: ...
    def stop_id_for_code(self, code: str) -> str | None: ...


class ScheduleIndex:

    def __init__(self, snapshot: SnapshotIndex, archive: ArchiveIndex, tz: tzinfo) -> None:
        self.snapshot = snapshot
        self.archive = archive
        self.tz = tz

    def is_ready(self) -> bool:
        """True once the indexed snapshot is open."""
        return self.snapshot.is_ready()

    def is_configured(self) -> bool:
        """False only when no static source could ever answer."""
        return self.snapshot.is_ready() or bool(self.snapshot.handle.url) or self.archive.is_configured()

    def backend(self) -> ScheduleBackend:
        return self.snapshot if self.snapshot.is_ready() else self.archive

    async def run(
        self,
        label: str,
        fn: Callable[[ScheduleBackend], T],
        default: T,
        backend: ScheduleBackend | None = None,
    ) -> T:
        """Run fn(backend) in a worker thread; degrade to default if not ready."""
        if backend is None:
            backend = self.backend()
        try:
            if backend is self.archive:
                await self.archive.prepare()
            return await asyncio.to_thread(fn, backend)
        except NotReadyError as exc:
            logger.info("Static schedule not ready for %s: %s", label, exc)
        except (ConfigurationError, NetworkError, SQLAlchemyError) as exc:
            logger.warning("Static schedule not available for %s: %s", label, exc)
        except DataFormatError as exc:
            logger.error("Static schedule unusable for %s: %s", label, exc)
        return default

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def expand_station(self, stop_id: str) -> list[str]:
        return await self.run("expand_station", lambda b: b.expand_station(stop_id), [stop_id])

    async def active_services(self, service_date: date) -> set[str]:
        return await self.run("active_services", lambda b: b.active_services(service_date), set())

    async def upcoming_departures(
        self,
        stop_ids: list[str],
        now: datetime,
        horizon_minutes: int = SCHEDULE_HORIZON_MINUTES,
    ) -> list[ScheduledDeparture]:
        now_local = to_local(now, self.tz)
        return await self.run(
            "upcoming_departures",
            lambda b: b.upcoming_departures(stop_ids, now_local, horizon_minutes),
            [],
        )

    async def route_names_for(self, route_ids: Iterable[str]) -> dict[str, str]:
        route_ids = list(route_ids)
        return await self.run("route_names_for", lambda b: b.route_names_for(route_ids), {})

    async def route_names_for_trips(self, trip_ids: Iterable[str]) -> dict[str, str]:
        trip_ids = list(trip_ids)
        return await self.run("route_names_for_trips", lambda b: b.route_names_for_trips(trip_ids), {})

    async def find_stops(self, tokens: list[str], limit: int = 200) -> list[StopRow]:
        return await self.run("find_stops", lambda b: b.find_stops(tokens, limit), [])

    async def stop_id_for_code(self, code: str) -> str | None:
        return await self.run("stop_id_for_code", lambda b: b.stop_id_for_code(code), None)

    # ------------------------------------------------------------------
    # Route-name tiers used by the realtime adapter
    # ------------------------------------------------------------------

    async def snapshot_trip_summaries(self, trip_ids: Iterable[str]) -> dict[str, TripSummary] | None:
        """Trip → route/headsign from the snapshot; None while it is not ready."""
        if not self.snapshot.is_ready():
            return None
        trip_ids = list(trip_ids)
        return await self.run(
            "trip_summaries", lambda b: b.trip_summaries(trip_ids), {}, backend=self.snapshot,
        )

    async def archive_route_names(self, route_ids: Iterable[str]) -> dict[str, str]:
        """Route-only scan of routes.txt, the cheapest archive lookup."""
        route_ids = list(route_ids)
        return await self.run(
            "route_names_for", lambda b: b.route_names_for(route_ids), {}, backend=self.archive,
        )

    # ------------------------------------------------------------------
    # Schedule-derived answers
    # ------------------------------------------------------------------

    async def next_arrivals(
        self,
        stop_ids: list[str],
        *,
        limit: int = 10,
        route_ref: str | None = None,
        now: datetime | None = None,
        horizon_minutes: int = SCHEDULE_HORIZON_MINUTES,
    ) -> list[ArrivalRecord]:
        """Scheduled arrivals at any of stop_ids, soonest first."""
        now_local = to_local(now or datetime.now(self.tz), self.tz)
        day_start = local_midnight(now_local)

        def build(backend: ScheduleBackend) -> list[ArrivalRecord]:
            departures = backend.upcoming_departures(stop_ids, now_local, horizon_minutes)
            if not departures:
                return []
            names = backend.route_names_for({d.route_id for d in departures})
            out = []
            for d in departures:
                name = names.get(d.route_id, "")
                if not route_ref_matches(name, route_ref):
                    continue
                out.append(ArrivalRecord(
                    route_name=name,
                    headsign=d.headsign,
                    when=departure_datetime(day_start, d.departure_seconds),
                    realtime=False,
                ))
                if len(out) >= max(1, limit):
                    break
            return out

        return await self.run("next_arrivals", build, [])

    async def active_lines(
        self,
        stop_ids: list[str],
        *,
        window_minutes: int = 60,
        now: datetime | None = None,
    ) -> list[str]:
        """Distinct route names serving stop_ids within the window."""
        now_local = to_local(now or datetime.now(self.tz), self.tz)
        window = max(5, int(window_minutes or 60))

        def build(backend: ScheduleBackend) -> list[str]:
            departures = backend.upcoming_departures(stop_ids, now_local, window)
            names = backend.route_names_for({d.route_id for d in departures})
            return sorted({n for n in names.values() if n}, key=natural_key)

        return await self.run("active_lines", build, [])
