"""
Arrival assembler.

Per request:

  resolve stop → expand station → realtime → (nothing? → static schedule)

Realtime always wins when it yields at least one record.  A live-feed
outage is logged and the static schedule is used instead; the request only
fails when the stop can't be resolved, or when realtime failed and no
static source is configured at all.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from config import AGENCY_KEY
from errors import ConfigurationError, NetworkError, NotFoundError, TransitError
from ingestion.gtfs_realtime import RealtimeAdapter
from schedule.common import ArrivalRecord, to_local
from schedule.index import ScheduleIndex
from stops.resolver import StopResolver

logger = logging.getLogger(__name__)

# Returned by a strategy that could not produce an answer
INCONCLUSIVE = None


@dataclass
class ArrivalQuery:
    platforms: list[str]
    limit: int
    route_ref: str | None
    now: datetime
    failures: list[TransitError] = field(default_factory=list)


class ArrivalAssembler:

    def __init__(
        self,
        resolver: StopResolver,
        schedule: ScheduleIndex,
        realtime: RealtimeAdapter,
        agency_key: str = AGENCY_KEY,
    ) -> None:
        self.resolver = resolver
        self.schedule = schedule
        self.realtime = realtime
        self.agency_key = agency_key
        self._strategies = (self._from_realtime, self._from_schedule)

    async def platforms_for(self, agency_key: str, stop_ref: str) -> list[str]:
        """Resolve stop_ref and expand a parent station to its platforms.

        Raises:
            ConfigurationError: agency_key is not the configured agency.
            NotFoundError: stop_ref matches no stop.
        """
        if (agency_key or "").strip().lower() != self.agency_key.lower():
            raise ConfigurationError(f"Agency '{agency_key}' is not configured.")
        stop_id = await self.resolver.best_match(agency_key, stop_ref)
        if not stop_id:
            raise NotFoundError(f"No stop matches '{stop_ref}'.")
        return await self.schedule.expand_station(stop_id)

    async def get_next_arrivals(
        self,
        agency_key: str,
        stop_ref: str,
        *,
        limit: int = 10,
        route_ref: str | None = None,
        from_time: datetime | None = None,
    ) -> list[ArrivalRecord]:
        platforms = await self.platforms_for(agency_key, stop_ref)
        query = ArrivalQuery(
            platforms=platforms,
            limit=max(1, int(limit)),
            route_ref=route_ref or None,
            now=to_local(from_time or datetime.now(self.schedule.tz), self.schedule.tz),
        )

        for strategy in self._strategies:
            records = await strategy(query)
            if records is not INCONCLUSIVE:
                return records

        if query.failures and not self.schedule.is_configured():
            raise NetworkError(
                f"Realtime unavailable and no static schedule configured: {query.failures[0]}"
            ) from query.failures[0]
        return []

    async def get_active_lines(
        self,
        agency_key: str,
        stop_ref: str,
        *,
        window_minutes: int = 60,
    ) -> list[str]:
        """Route names scheduled at the stop within the next window_minutes."""
        platforms = await self.platforms_for(agency_key, stop_ref)
        return await self.schedule.active_lines(platforms, window_minutes=window_minutes)

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    async def _from_realtime(self, query: ArrivalQuery) -> list[ArrivalRecord] | None:
        since_epoch = int(query.now.timestamp())
        results = await asyncio.gather(
            *(
                self.realtime.next_arrivals_at_stop(
                    stop_id, limit=query.limit, route_ref=query.route_ref, since_epoch=since_epoch,
                )
                for stop_id in query.platforms
            ),
            return_exceptions=True,
        )

        records: list[ArrivalRecord] = []
        for stop_id, result in zip(query.platforms, results):
            if isinstance(result, TransitError):
                logger.warning("Realtime failed for stop %s: %s", stop_id, result)
                query.failures.append(result)
                continue
            if isinstance(result, BaseException):
                raise result
            records.extend(result)

        if not records:
            return INCONCLUSIVE
        records.sort(key=lambda r: r.when)
        return records[:query.limit]

    async def _from_schedule(self, query: ArrivalQuery) -> list[ArrivalRecord] | None:
        if not self.schedule.is_configured():
            return INCONCLUSIVE
        return await self.schedule.next_arrivals(
            query.platforms, limit=query.limit, route_ref=query.route_ref, now=query.now,
        )
