"""
Streaming-archive schedule backend.

Used while the indexed snapshot is not ready.  Answers the same queries by
reading the GTFS zip's tables forward, chunk by chunk, straight out of the
archive. Nothing is extracted to disk and no table is ever held whole.

Each query narrows the next table scan by the ids the previous stage
produced:

  stop_times.txt  → departures at the wanted stops → trip ids
  trips.txt       → only those trips, on active services → route ids
  routes.txt      → only those routes → display names

so peak memory tracks the size of the answer, not the size of the feed.
A small LRU/TTL result cache absorbs repeated identical queries.
"""

import logging
import threading
import time
import zipfile
from collections import OrderedDict
from datetime import date, datetime
from pathlib import Path
from typing import Any, Hashable, Iterable, Iterator

import pandas as pd

from cache.downloader import ArtifactKind, DownloadManager
from config import GTFS_STATIC_URL, RESULT_CACHE_SIZE, RESULT_CACHE_TTL_SECONDS
from errors import ConfigurationError, DataFormatError, NotReadyError
from schedule.common import (
    CalendarException,
    CalendarRow,
    ScheduledDeparture,
    StopRow,
    TripSummary,
    WEEKDAY_COLUMNS,
    active_service_ids,
    earliest_per_trip,
    hms_to_seconds,
    route_display_name,
    seconds_of_day,
    service_date_key,
    sorted_departures,
)

logger = logging.getLogger(__name__)


class ResultCache:
    """Bounded LRU with per-entry TTL.  Safe to share across worker threads."""

    def __init__(
        self,
        max_entries: int = RESULT_CACHE_SIZE,
        ttl_seconds: float = RESULT_CACHE_TTL_SECONDS,
        clock=time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[float, Any]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return value

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def find_member(zf: zipfile.ZipFile, filename: str) -> str | None:
    """Case-insensitive lookup; tolerates feeds zipped inside a folder."""
    wanted = filename.lower()
    for name in zf.namelist():
        if name.lower().rsplit("/", 1)[-1] == wanted:
            return name
    return None


class ArchiveIndex:
    """Schedule queries over the raw GTFS zip.  Query methods block."""

    def __init__(
        self,
        downloads: DownloadManager,
        url: str = GTFS_STATIC_URL,
        *,
        cache: ResultCache | None = None,
        chunk_size: int = 100_000,
    ) -> None:
        self._downloads = downloads
        self.url = url
        self.cache = cache if cache is not None else ResultCache()
        self.chunk_size = chunk_size
        self._path: Path | None = None

    def is_configured(self) -> bool:
        return bool(self.url) or self._path is not None

    async def prepare(self) -> Path:
        """
        Make the archive available locally without waiting on the network.

        A stale local copy is used right away while a refresh runs in the
        background.  With no local copy at all, the first download is started
        in the background and NotReadyError is raised, so callers answer
        "not ready" instead of waiting for it.
        """
        kind = ArtifactKind.ARCHIVE
        if not self.url:
            if self._path is not None:
                return self._path
            raise ConfigurationError("No source URL configured for the archive artifact.")
        path = self._downloads.local_path(self.url, kind)
        if self._downloads.is_fresh(path, kind):
            self._path = path
            return path
        self._downloads.refresh_in_background(self.url, kind)
        if self._downloads.has_copy(self.url, kind):
            self._path = path
            return path
        raise NotReadyError(f"GTFS archive {self.url} is still downloading.")

    # ------------------------------------------------------------------
    # Table scanning
    # ------------------------------------------------------------------

    def _require_path(self) -> Path:
        if self._path is None:
            raise RuntimeError("GTFS archive has not been prepared yet. Call prepare() first.")
        return self._path

    def _key(self, *parts: Hashable) -> tuple:
        path = self._require_path()
        return (str(path), path.stat().st_mtime_ns, *parts)

    def has_table(self, table: str) -> bool:
        with self._open_zip() as zf:
            return find_member(zf, f"{table}.txt") is not None

    def _open_zip(self) -> zipfile.ZipFile:
        path = self._require_path()
        try:
            return zipfile.ZipFile(path)
        except zipfile.BadZipFile as exc:
            raise DataFormatError(f"{path} is not a valid GTFS zip: {exc}") from exc

    def _scan(
        self,
        table: str,
        columns: list[str],
        optional: Iterable[str] = (),
        *,
        required: bool = True,
    ) -> Iterator[pd.DataFrame]:
        """
        Yield chunks of table with only the wanted columns, as stripped
        strings.  Optional columns absent from the file come back as "".
        """
        optional = list(optional)
        wanted = set(columns) | set(optional)
        with self._open_zip() as zf:
            member = find_member(zf, f"{table}.txt")
            if member is None:
                if required:
                    raise DataFormatError(f"{table}.txt not found in GTFS archive")
                return
            with zf.open(member) as fh:
                try:
                    reader = pd.read_csv(
                        fh,
                        dtype=str,
                        keep_default_na=False,
                        encoding="utf-8-sig",
                        usecols=lambda c: c.strip() in wanted,
                        chunksize=self.chunk_size,
                    )
                    for chunk in reader:
                        chunk.columns = [c.strip() for c in chunk.columns]
                        missing = [c for c in columns if c not in chunk.columns]
                        if missing:
                            raise DataFormatError(f"{table}.txt is missing columns {missing}")
                        for col in wanted:
                            if col in chunk.columns:
                                chunk[col] = chunk[col].str.strip()
                            else:
                                chunk[col] = ""
                        yield chunk
                except pd.errors.ParserError as exc:
                    raise DataFormatError(f"{table}.txt could not be parsed: {exc}") from exc

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    def expand_station(self, stop_id: str) -> list[str]:
        key = self._key("expand", stop_id)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        is_station = False
        kids: list[str] = []
        for chunk in self._scan("stops", ["stop_id"], ["location_type", "parent_station"]):
            me = chunk[chunk["stop_id"] == stop_id]
            if not me.empty and (me["location_type"] == "1").any():
                is_station = True
            kids.extend(chunk.loc[chunk["parent_station"] == stop_id, "stop_id"].tolist())

        result = sorted(kids) if is_station and kids else [stop_id]
        self.cache.put(key, tuple(result))
        return result

    def active_services(self, service_date: date) -> set[str]:
        key = self._key("services", service_date)
        cached = self.cache.get(key)
        if cached is not None:
            return set(cached)

        if not (self.has_table("calendar") or self.has_table("calendar_dates")):
            raise DataFormatError("GTFS archive has neither calendar.txt nor calendar_dates.txt")

        iso = service_date_key(service_date)
        calendar: list[CalendarRow] = []
        for chunk in self._scan(
            "calendar", ["service_id", "start_date", "end_date"], WEEKDAY_COLUMNS, required=False,
        ):
            in_range = chunk[(chunk["start_date"] <= iso) & (chunk["end_date"] >= iso)]
            calendar.extend(CalendarRow.from_record(r) for r in in_range.to_dict("records"))

        # calendar_dates.txt is optional: absent means no exceptions
        exceptions: list[CalendarException] = []
        for chunk in self._scan(
            "calendar_dates", ["service_id", "date", "exception_type"], required=False,
        ):
            for r in chunk[chunk["date"] == iso].itertuples(index=False):
                exceptions.append(CalendarException(
                    r.service_id, r.date, int(r.exception_type) if r.exception_type.isdigit() else 0,
                ))

        active = active_service_ids(calendar, exceptions, service_date)
        self.cache.put(key, frozenset(active))
        return active

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

        # Scan at minute resolution so nearby requests share a cache entry,
        # then cut down to the exact window.
        floor = now_sec - now_sec % 60
        key = self._key(
            "departures", tuple(sorted(set(stop_ids))), now_local.date(), floor, horizon_minutes,
        )
        candidates = self.cache.get(key)
        if candidates is None:
            candidates = self._scan_departures(
                set(stop_ids), now_local.date(), floor, floor + 60 + horizon_minutes * 60,
            )
            self.cache.put(key, candidates)

        earliest = earliest_per_trip(
            ((d.trip_id, d.departure_seconds) for d in candidates), now_sec, horizon_sec,
        )
        info = {d.trip_id: d for d in candidates}
        return sorted_departures(
            info[tid]._replace(departure_seconds=sec) for tid, sec in earliest.items()
        )

    def _scan_departures(
        self,
        stop_ids: set[str],
        service_date: date,
        lo: int,
        hi: int,
    ) -> tuple[ScheduledDeparture, ...]:
        """Every in-window visit of an active trip to the stops, unsorted."""
        active = self.active_services(service_date)

        # Stage 1: stop_times → (trip, seconds) pairs at the wanted stops
        pairs: list[tuple[str, int]] = []
        for chunk in self._scan("stop_times", ["trip_id", "stop_id", "departure_time"]):
            hits = chunk[chunk["stop_id"].isin(stop_ids)]
            for trip_id, departure_time in zip(hits["trip_id"], hits["departure_time"]):
                sec = hms_to_seconds(departure_time)
                if sec is not None and lo <= sec <= hi and trip_id:
                    pairs.append((trip_id, sec))
        if not pairs:
            return ()

        # Stage 2: trips, narrowed to the trip ids from stage 1
        wanted = {tid for tid, _ in pairs}
        trips: dict[str, tuple[str, str]] = {}
        for chunk in self._scan(
            "trips", ["trip_id", "route_id", "service_id"], ["trip_headsign"],
        ):
            hits = chunk[chunk["trip_id"].isin(wanted) & chunk["service_id"].isin(active)]
            for r in hits.itertuples(index=False):
                trips[r.trip_id] = (r.route_id, r.trip_headsign)

        return tuple(
            ScheduledDeparture(tid, sec, *trips[tid]) for tid, sec in pairs if tid in trips
        )

    def route_names_for(self, route_ids: Iterable[str]) -> dict[str, str]:
        wanted = frozenset(r for r in route_ids if r)
        if not wanted:
            return {}
        key = self._key("routes", wanted)
        cached = self.cache.get(key)
        if cached is not None:
            return dict(cached)

        names: dict[str, str] = {}
        for chunk in self._scan("routes", ["route_id"], ["route_short_name", "route_long_name"]):
            hits = chunk[chunk["route_id"].isin(wanted)]
            for r in hits.itertuples(index=False):
                names[r.route_id] = route_display_name(r.route_short_name, r.route_long_name)

        self.cache.put(key, tuple(names.items()))
        return names

    def trip_summaries(self, trip_ids: Iterable[str]) -> dict[str, TripSummary]:
        wanted = frozenset(t for t in trip_ids if t)
        if not wanted:
            return {}
        trips: dict[str, tuple[str, str]] = {}
        for chunk in self._scan("trips", ["trip_id", "route_id"], ["trip_headsign"]):
            hits = chunk[chunk["trip_id"].isin(wanted)]
            for r in hits.itertuples(index=False):
                trips[r.trip_id] = (r.route_id, r.trip_headsign)

        names = self.route_names_for(route_id for route_id, _ in trips.values())
        return {
            tid: TripSummary(tid, route_id, names.get(route_id, ""), headsign)
            for tid, (route_id, headsign) in trips.items()
        }

    def route_names_for_trips(self, trip_ids: Iterable[str]) -> dict[str, str]:
        return {tid: s.route_name for tid, s in self.trip_summaries(trip_ids).items()}

    def find_stops(self, tokens: list[str], limit: int = 200) -> list[StopRow]:
        """Stops whose name contains every token (case-insensitive)."""
        key = self._key("find", tuple(tokens), limit)
        cached = self.cache.get(key)
        if cached is not None:
            return list(cached)

        found: list[StopRow] = []
        for chunk in self._scan("stops", ["stop_id", "stop_name"], ["location_type"]):
            lowered = chunk["stop_name"].str.lower()
            mask = pd.Series(True, index=chunk.index)
            for token in tokens:
                mask &= lowered.str.contains(token.lower(), regex=False)
            for r in chunk[mask].itertuples(index=False):
                lt = int(r.location_type) if r.location_type.isdigit() else 0
                found.append(StopRow(r.stop_id, r.stop_name, lt))
                if len(found) >= limit:
                    break
            if len(found) >= limit:
                break

        self.cache.put(key, tuple(found))
        return found

    def stop_id_for_code(self, code: str) -> str | None:
        for chunk in self._scan("stops", ["stop_id"], ["stop_code"]):
            hits = chunk.loc[chunk["stop_code"] == code, "stop_id"]
            if not hits.empty:
                return hits.iloc[0]
        return None
