"""
GTFS-Realtime feed adapter.

Feeds used:
  - Trip Updates   (predicted arrival/departure per stop)
  - Service Alerts (human-readable disruption notices)

Decoded feed messages are kept in a small per-URL cache for a few seconds
so that a burst of requests for different stops costs one fetch.

Unlike the static side, a failed fetch is not turned into an empty answer
here: NetworkError propagates and the arrival assembler decides whether to
fall back to the schedule.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import NamedTuple

import httpx
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from config import (
    GTFS_RT_ALERTS_URL,
    GTFS_RT_API_KEY,
    GTFS_RT_TRIP_UPDATES_URL,
    RT_CACHE_MAX_ENTRIES,
    RT_CACHE_TTL_SECONDS,
    RT_TIMEOUT_SECONDS,
)
from errors import ConfigurationError, DataFormatError, NetworkError
from schedule.common import ArrivalRecord, route_ref_matches
from schedule.index import ScheduleIndex

logger = logging.getLogger(__name__)

# GTFS-RT enum values
_TRIP_CANCELED = gtfs_realtime_pb2.TripDescriptor.CANCELED
_STOP_SKIPPED = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.SKIPPED


@dataclass
class ServiceAlertState:
    alert_id: str
    header: str
    description: str
    affected_route_ids: list[str] = field(default_factory=list)
    affected_stop_ids: list[str] = field(default_factory=list)
    active_start: datetime | None = None
    active_end: datetime | None = None
    cause: str = ""
    effect: str = ""


class Prediction(NamedTuple):
    trip_id: str
    route_id: str
    epoch: int


class FeedCache:
    """
    url → decoded FeedMessage for ttl_seconds.  Bounded to max_entries;
    the oldest-inserted entry is evicted first.
    """

    def __init__(
        self,
        ttl_seconds: float = RT_CACHE_TTL_SECONDS,
        max_entries: int = RT_CACHE_MAX_ENTRIES,
        clock=time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: OrderedDict[str, tuple[float, gtfs_realtime_pb2.FeedMessage]] = OrderedDict()

    def get(self, url: str) -> gtfs_realtime_pb2.FeedMessage | None:
        entry = self._entries.get(url)
        if entry is None:
            return None
        fetched_at, feed = entry
        if self._clock() - fetched_at >= self.ttl_seconds:
            return None
        return feed

    def put(self, url: str, feed: gtfs_realtime_pb2.FeedMessage) -> None:
        self._entries.pop(url, None)
        self._entries[url] = (self._clock(), feed)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def __len__(self) -> int:
        return len(self._entries)


async def fetch_feed(
    url: str,
    *,
    cache: FeedCache | None = None,
    timeout_seconds: float = RT_TIMEOUT_SECONDS,
    api_key: str = GTFS_RT_API_KEY,
) -> gtfs_realtime_pb2.FeedMessage:
    """Fetch and decode a GTFS-RT protobuf feed.

    Appends the API key as a ?key= query parameter when one is set.

    Raises:
        ConfigurationError: url is empty.
        NetworkError: timeout, transport failure or non-2xx status.
        DataFormatError: the body is not a FeedMessage.
    """
    if not url:
        raise ConfigurationError("GTFS-RT feed URL is not configured.")
    if cache is not None:
        hit = cache.get(url)
        if hit is not None:
            return hit

    params = {"key": api_key} if api_key else {}
    try:
        async with httpx.AsyncClient(timeout=timeout_seconds, follow_redirects=True) as client:
            response = await client.get(url, params=params, headers={"Accept": "application/x-protobuf"})
            response.raise_for_status()
    except httpx.HTTPError as exc:
        raise NetworkError(f"GTFS-RT fetch failed for {url}: {exc}") from exc

    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(response.content)
    except DecodeError as exc:
        raise DataFormatError(f"GTFS-RT payload from {url} could not be decoded: {exc}") from exc

    if cache is not None:
        cache.put(url, feed)
    logger.debug("Fetched GTFS-RT feed %s (%d entities).", url, len(feed.entity))
    return feed


def predictions_at_stop(
    feed: gtfs_realtime_pb2.FeedMessage,
    stop_id: str,
    min_epoch: int,
) -> list[Prediction]:
    """Every non-skipped prediction for stop_id at or after min_epoch."""
    out: list[Prediction] = []
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        tu = entity.trip_update
        if tu.trip.schedule_relationship == _TRIP_CANCELED:
            continue
        trip_id = tu.trip.trip_id.strip()
        route_id = tu.trip.route_id.strip()
        for stu in tu.stop_time_update:
            if stu.stop_id != stop_id or stu.schedule_relationship == _STOP_SKIPPED:
                continue
            if stu.HasField("arrival") and stu.arrival.time:
                t = stu.arrival.time
            elif stu.HasField("departure"):
                t = stu.departure.time
            else:
                continue
            if t and t >= min_epoch:
                out.append(Prediction(trip_id, route_id, int(t)))
    return out


def _translated(text: gtfs_realtime_pb2.TranslatedString) -> str:
    return text.translation[0].text if text.translation else ""


class RealtimeAdapter:
    """Realtime arrivals at a single platform stop_id."""

    def __init__(
        self,
        schedule: ScheduleIndex,
        *,
        trip_updates_url: str = GTFS_RT_TRIP_UPDATES_URL,
        alerts_url: str = GTFS_RT_ALERTS_URL,
        cache: FeedCache | None = None,
        timeout_seconds: float = RT_TIMEOUT_SECONDS,
        api_key: str = GTFS_RT_API_KEY,
    ) -> None:
        self.schedule = schedule
        self.trip_updates_url = trip_updates_url
        self.alerts_url = alerts_url
        self.cache = cache if cache is not None else FeedCache()
        self.timeout_seconds = timeout_seconds
        self.api_key = api_key
        # Tried in order until one resolves at least one name
        self._name_strategies = (self._names_from_snapshot, self._names_from_archive_routes)

    async def _fetch(self, url: str) -> gtfs_realtime_pb2.FeedMessage:
        return await fetch_feed(
            url, cache=self.cache, timeout_seconds=self.timeout_seconds, api_key=self.api_key,
        )

    async def next_arrivals_at_stop(
        self,
        stop_id: str,
        limit: int = 10,
        route_ref: str | None = None,
        since_epoch: int | None = None,
    ) -> list[ArrivalRecord]:
        """
        Predicted arrivals at stop_id, soonest first, capped at limit.

        Parent-station expansion happens upstream; stop_id must be the
        exact identifier used in the feed.
        """
        feed = await self._fetch(self.trip_updates_url)
        min_epoch = int(time.time()) if since_epoch is None else int(since_epoch)
        predictions = predictions_at_stop(feed, stop_id, min_epoch)
        if not predictions:
            return []

        labels: dict[Prediction, tuple[str, str]] = {}
        for strategy in self._name_strategies:
            resolved = await strategy(predictions)
            if resolved:
                labels = resolved
                break

        records: list[ArrivalRecord] = []
        for p in predictions:
            name, headsign = labels.get(p, ("", ""))
            if not route_ref_matches(name, route_ref):
                continue
            records.append(ArrivalRecord(
                route_name=name,
                headsign=headsign,
                when=datetime.fromtimestamp(p.epoch, tz=timezone.utc).astimezone(self.schedule.tz),
                realtime=True,
            ))
        records.sort(key=lambda r: r.when)
        return records[:max(1, limit)]

    async def _names_from_snapshot(
        self, predictions: list[Prediction],
    ) -> dict[Prediction, tuple[str, str]] | None:
        summaries = await self.schedule.snapshot_trip_summaries(
            {p.trip_id for p in predictions if p.trip_id}
        )
        if not summaries:
            return None
        return {
            p: (summaries[p.trip_id].route_name, summaries[p.trip_id].headsign)
            for p in predictions
            if p.trip_id in summaries and summaries[p.trip_id].route_name
        } or None

    async def _names_from_archive_routes(
        self, predictions: list[Prediction],
    ) -> dict[Prediction, tuple[str, str]] | None:
        route_ids = {p.route_id for p in predictions if p.route_id}
        if not route_ids:
            return None
        names = await self.schedule.archive_route_names(route_ids)
        if not names:
            return None
        return {p: (names[p.route_id], "") for p in predictions if p.route_id in names}

    async def service_alerts(self, route_ref: str | None = None) -> list[ServiceAlertState]:
        """Active alerts, optionally limited to routes whose id starts with route_ref."""
        feed = await self._fetch(self.alerts_url)
        ref = (route_ref or "").strip().lower()

        alerts: list[ServiceAlertState] = []
        for entity in feed.entity:
            if not entity.HasField("alert"):
                continue
            a = entity.alert
            route_ids = [ie.route_id for ie in a.informed_entity if ie.route_id]
            if ref and not any(rid.lower().startswith(ref) for rid in route_ids):
                continue
            start = end = None
            if a.active_period:
                period = a.active_period[0]
                if period.start:
                    start = datetime.fromtimestamp(period.start, tz=timezone.utc)
                if period.end:
                    end = datetime.fromtimestamp(period.end, tz=timezone.utc)
            alerts.append(ServiceAlertState(
                alert_id=entity.id,
                header=_translated(a.header_text),
                description=_translated(a.description_text),
                affected_route_ids=route_ids,
                affected_stop_ids=[ie.stop_id for ie in a.informed_entity if ie.stop_id],
                active_start=start,
                active_end=end,
                cause=gtfs_realtime_pb2.Alert.Cause.Name(a.cause),
                effect=gtfs_realtime_pb2.Alert.Effect.Name(a.effect),
            ))
        logger.debug("Fetched %d service alerts.", len(alerts))
        return alerts
