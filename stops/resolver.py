"""
Stop resolver: user-supplied stop reference → canonical stop ids.

A reference is one of
  - a short number ("14523")  → stop_code lookup, else the number itself
  - an identifier ("BLOOR_1") → returned unchanged, no search
  - free text ("Bloor Stn")   → fuzzy name search

Name search uses the external stop store when one is configured and
reachable, and the schedule index's stops table otherwise.
"""

import asyncio
import logging
import re
from typing import NamedTuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from db.store import AgencyStop
from schedule.common import StopRow
from schedule.index import ScheduleIndex

logger = logging.getLogger(__name__)

_STOP_CODE = re.compile(r"^\d{3,6}$")
_IDENTIFIER = re.compile(r"^[A-Za-z0-9_-]+$")
_DASHES = re.compile(r"[–—-]")
_STN = re.compile(r"\bstn\b")
_STATION = re.compile(r"\bstation\b")
_PLATFORM = re.compile(r"\bplatform\b")
_DIRECTION = re.compile(r"\b(east|west|north|south)bound\b")

# Rows fetched per name search before token filtering and ranking
_SEARCH_POOL = 200


class Candidate(NamedTuple):
    id: str
    name: str


def normalize_query(query: str) -> str:
    """Lowercase, dashes → spaces, "stn" → "station", whitespace collapsed."""
    q = _DASHES.sub(" ", query.lower())
    q = _STN.sub("station", q)
    return " ".join(q.split())


def station_score(row: StopRow) -> int:
    name = row.stop_name.lower()
    score = 0
    if _PLATFORM.search(name):
        score += 10
    if _DIRECTION.search(name):
        score += 3
    if row.location_type != 1:
        score += 1
    return score


def default_score(row: StopRow, query: str) -> float:
    name = row.stop_name
    score = 0.0
    if name.lower().startswith(query.lower()):
        score += 2
    score += max(0, 40 - abs(len(name) - len(query))) / 40
    return score


def rank_candidates(rows: list[StopRow], query: str, max_results: int = 12) -> list[Candidate]:
    """
    Filter rows to those containing every query token, then rank.

    When the query asks for a station and any row is a platform, only
    platforms are kept.  Ties go to the lexicographically smaller name.
    """
    normalized = normalize_query(query)
    tokens = normalized.split()
    matched = [r for r in rows if all(t in r.stop_name.lower() for t in tokens)]

    wants_station = bool(_STATION.search(normalized))
    pool = matched
    if wants_station:
        platforms = [r for r in matched if _PLATFORM.search(r.stop_name.lower())]
        if platforms:
            pool = platforms

    def score(r: StopRow) -> float:
        return station_score(r) if wants_station else default_score(r, query.strip())

    ranked = sorted(pool, key=lambda r: (-score(r), r.stop_name))
    return [Candidate(r.stop_id, r.stop_name) for r in ranked[:max_results]]


class StopResolver:

    def __init__(self, session_factory: sessionmaker | None, schedule: ScheduleIndex) -> None:
        self.session_factory = session_factory
        self.schedule = schedule

    async def resolve(self, agency_key: str, stop_ref: str, max_results: int = 12) -> list[Candidate]:
        ref = str(stop_ref or "").strip()
        if not ref:
            return []

        if _STOP_CODE.match(ref):
            stop_id = await self._stop_id_for_code(agency_key, ref)
            if stop_id:
                return [Candidate(stop_id, ref)]
            return [Candidate(ref, ref)]

        if _IDENTIFIER.match(ref):
            return [Candidate(ref, ref)]

        rows = await self._search(agency_key, normalize_query(ref).split())
        return rank_candidates(rows, ref, max_results)

    async def best_match(self, agency_key: str, stop_ref: str) -> str | None:
        candidates = await self.resolve(agency_key, stop_ref)
        return candidates[0].id if candidates else None

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def _stop_id_for_code(self, agency_key: str, code: str) -> str | None:
        if self.session_factory is not None:
            try:
                stop_id = await asyncio.to_thread(self._store_stop_id_for_code, agency_key, code)
            except SQLAlchemyError as exc:
                logger.warning("Stop store lookup failed for code %s: %s", code, exc)
            else:
                if stop_id:
                    return stop_id
        return await self.schedule.stop_id_for_code(code)

    async def _search(self, agency_key: str, tokens: list[str]) -> list[StopRow]:
        if not tokens:
            return []
        if self.session_factory is not None:
            try:
                return await asyncio.to_thread(self._store_search, agency_key, tokens)
            except SQLAlchemyError as exc:
                logger.warning("Stop store search failed, using schedule stops: %s", exc)
        return await self.schedule.find_stops(tokens, _SEARCH_POOL)

    def _store_stop_id_for_code(self, agency_key: str, code: str) -> str | None:
        with self.session_factory() as session:
            return (
                session.query(AgencyStop.id)
                .filter(AgencyStop.agency == agency_key.upper(), AgencyStop.stop_code == code)
                .limit(1)
                .scalar()
            )

    def _store_search(self, agency_key: str, tokens: list[str]) -> list[StopRow]:
        with self.session_factory() as session:
            q = session.query(AgencyStop.id, AgencyStop.name, AgencyStop.location_type).filter(
                AgencyStop.agency == agency_key.upper()
            )
            for token in tokens:
                q = q.filter(func.lower(AgencyStop.name).contains(token, autoescape=True))
            return [
                StopRow(str(r.id), r.name or "", int(r.location_type or 0))
                for r in q.limit(_SEARCH_POOL)
            ]
