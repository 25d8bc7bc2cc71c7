"""
Algorithms shared by both schedule backends.

GTFS times are HH:MM:SS strings that may exceed 24:00:00: a departure at
25:30:00 belongs to the service day that started the previous midnight.
They are handled as integer seconds past local midnight and never folded
back into a 0–24h clock.
"""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Iterable, NamedTuple

_HMS = re.compile(r"^(\d+):(\d{2})(?::(\d{2}))?$")

# date.weekday() order
WEEKDAY_COLUMNS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class ScheduledDeparture(NamedTuple):
    trip_id: str
    departure_seconds: int
    route_id: str = ""
    headsign: str = ""


class TripSummary(NamedTuple):
    trip_id: str
    route_id: str
    route_name: str
    headsign: str


class StopRow(NamedTuple):
    stop_id: str
    stop_name: str
    location_type: int = 0


@dataclass(frozen=True)
class CalendarRow:
    service_id: str
    start_date: str  # YYYYMMDD
    end_date: str    # YYYYMMDD
    weekdays: tuple[bool, bool, bool, bool, bool, bool, bool]  # Monday first

    @classmethod
    def from_record(cls, rec: dict) -> "CalendarRow":
        return cls(
            service_id=str(rec.get("service_id") or "").strip(),
            start_date=str(rec.get("start_date") or "").strip(),
            end_date=str(rec.get("end_date") or "").strip(),
            weekdays=tuple(_truthy(rec.get(col)) for col in WEEKDAY_COLUMNS),
        )


@dataclass(frozen=True)
class CalendarException:
    service_id: str
    date: str            # YYYYMMDD
    exception_type: int  # 1 = service added, 2 = service removed


def _truthy(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value if value is not None else "0").strip() == "1"


def hms_to_seconds(hms: str | None) -> int | None:
    """Convert "08:05:30" → 29130.  Values past 24h are kept; invalid → None."""
    m = _HMS.match(str(hms or "").strip())
    if not m:
        return None
    h, mi, s = m.groups()
    return int(h) * 3600 + int(mi) * 60 + int(s or 0)


def to_local(dt: datetime, tz: tzinfo) -> datetime:
    """Aware datetime in tz.  Naive input is taken to be UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(tz)


def local_midnight(dt_local: datetime) -> datetime:
    return dt_local.replace(hour=0, minute=0, second=0, microsecond=0)


def seconds_of_day(dt_local: datetime) -> int:
    return dt_local.hour * 3600 + dt_local.minute * 60 + dt_local.second


def departure_datetime(day_start: datetime, seconds: int) -> datetime:
    """
    Wall-clock time of a service-day offset.  day_start is local midnight;
    25:30:00 lands on 01:30 of the following calendar day.
    """
    days, rem = divmod(seconds, 86400)
    d = day_start.date() + timedelta(days=days)
    h, rem = divmod(rem, 3600)
    m, s = divmod(rem, 60)
    return datetime(d.year, d.month, d.day, h, m, s, tzinfo=day_start.tzinfo)


def service_date_key(service_date: date) -> str:
    return service_date.strftime("%Y%m%d")


def active_service_ids(
    calendar_rows: Iterable[CalendarRow],
    exceptions: Iterable[CalendarException],
    service_date: date,
) -> set[str]:
    """
    Service ids running on service_date.

    The weekday pattern applies inside [start_date, end_date] (inclusive).
    Exceptions for that date are then applied in table order: type 1 adds,
    type 2 removes, so the last row for a (service, date) pair wins.
    """
    iso = service_date_key(service_date)
    dow = service_date.weekday()
    active: set[str] = set()
    for row in calendar_rows:
        if row.start_date <= iso <= row.end_date and row.weekdays[dow]:
            active.add(row.service_id)
    for exc in exceptions:
        if exc.date != iso:
            continue
        if exc.exception_type == 1:
            active.add(exc.service_id)
        elif exc.exception_type == 2:
            active.discard(exc.service_id)
    return active


def earliest_per_trip(
    rows: Iterable[tuple[str, str | int | None]],
    lo: int,
    hi: int,
) -> dict[str, int]:
    """
    Fold (trip_id, departure) rows into trip_id → earliest departure
    seconds, keeping only departures inside [lo, hi].  departure may be an
    HH:MM:SS string or already in seconds.
    """
    best: dict[str, int] = {}
    for trip_id, departure in rows:
        sec = departure if isinstance(departure, int) else hms_to_seconds(departure)
        if sec is None or sec < lo or sec > hi or not trip_id:
            continue
        prev = best.get(trip_id)
        if prev is None or sec < prev:
            best[trip_id] = sec
    return best


def sorted_departures(departures: Iterable[ScheduledDeparture]) -> list[ScheduledDeparture]:
    return sorted(departures, key=lambda d: (d.departure_seconds, d.trip_id))


def route_display_name(short_name: str | None, long_name: str | None) -> str:
    return ((short_name or "").strip() or (long_name or "").strip())


def natural_key(name: str) -> list:
    """Sort key that orders "7" < "29" < "83" < "83A" < "501"."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


@dataclass(frozen=True)
class ArrivalRecord:
    """One predicted or scheduled arrival, as handed to callers."""

    route_name: str
    headsign: str
    when: datetime  # aware
    realtime: bool

    def to_dict(self) -> dict:
        return {
            "route_name": self.route_name,
            "headsign": self.headsign,
            "when": self.when.isoformat(),
            "realtime": self.realtime,
        }


def route_ref_matches(route_name: str | None, route_ref: str | None) -> bool:
    """
    Case-insensitive prefix match: "83" matches "83" and "83A" but not
    "183".  Branch letters are encoded as suffixes on the route number.
    """
    if not route_ref:
        return True
    name = (route_name or "").strip().lower()
    ref = route_ref.strip().lower()
    return name == ref or name.startswith(ref)
