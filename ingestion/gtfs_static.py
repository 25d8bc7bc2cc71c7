"""
Builds the indexed GTFS snapshot and loads the external stop store.

Feed contents used:
  stops.txt          → Stop (and AgencyStop in the stop store)
  routes.txt         → Route
  trips.txt          → Trip
  stop_times.txt     → StopTime
  calendar.txt       → ServiceCalendar
  calendar_dates.txt → ServiceCalendarDate

Both the zip and the snapshot can be hundreds of megabytes, so every table
is streamed through pandas in chunks and appended with to_sql; no table is
ever held in memory whole.

Usage:
    python -m ingestion.gtfs_static --out snapshot.sqlite
    python -m ingestion.gtfs_static --zip-path gtfs.zip --import-stops --agency ttc
"""

import argparse
import asyncio
import logging
import os
import zipfile
from pathlib import Path
from typing import Iterator

import pandas as pd
from sqlalchemy import Boolean, Float, Integer, create_engine
from sqlalchemy.orm import Session

from cache.downloader import ArtifactKind, DownloadManager
from config import AGENCY_KEY, DATABASE_URL, GTFS_STATIC_URL
from db.models import Base, Route, ServiceCalendar, ServiceCalendarDate, Stop, StopTime, Trip
from db.session import init_store, make_store_sessionmaker
from db.store import AgencyStop
from errors import DataFormatError
from schedule.archive import find_member

logger = logging.getLogger(__name__)

# table → model; the model's first column listed is required in the file
SNAPSHOT_TABLES = {
    "stops": Stop,
    "routes": Route,
    "trips": Trip,
    "stop_times": StopTime,
    "calendar": ServiceCalendar,
    "calendar_dates": ServiceCalendarDate,
}
OPTIONAL_TABLES = {"calendar", "calendar_dates"}

CHUNK_SIZE = 100_000


def _model_columns(model) -> list[str]:
    return [c.name for c in model.__table__.columns if c.autoincrement is not True]


def read_table(zf: zipfile.ZipFile, table: str, columns: list[str], chunk_size: int = CHUNK_SIZE) -> Iterator[pd.DataFrame]:
    """Yield chunks of table.txt restricted to the columns present in both."""
    member = find_member(zf, f"{table}.txt")
    if member is None:
        if table in OPTIONAL_TABLES:
            logger.info("%s.txt not in archive, skipping.", table)
            return
        raise DataFormatError(f"{table}.txt not found in GTFS archive")

    wanted = set(columns)
    with zf.open(member) as fh:
        try:
            for chunk in pd.read_csv(
                fh,
                dtype=str,
                keep_default_na=False,
                encoding="utf-8-sig",
                usecols=lambda c: c.strip() in wanted,
                chunksize=chunk_size,
            ):
                chunk.columns = [c.strip() for c in chunk.columns]
                if columns[0] not in chunk.columns:
                    raise DataFormatError(f"{table}.txt has no {columns[0]} column")
                yield chunk
        except pd.errors.ParserError as exc:
            raise DataFormatError(f"{table}.txt could not be parsed: {exc}") from exc


def _coerce(chunk: pd.DataFrame, model) -> pd.DataFrame:
    """GTFS strings → the column types declared on the model."""
    columns = model.__table__.columns
    for col in chunk.columns:
        kind = columns[col].type
        if isinstance(kind, Boolean):
            chunk[col] = chunk[col].str.strip() == "1"
        elif isinstance(kind, Integer):
            chunk[col] = pd.to_numeric(chunk[col], errors="coerce").astype("Int64")
        elif isinstance(kind, Float):
            chunk[col] = pd.to_numeric(chunk[col], errors="coerce")
        else:
            chunk[col] = chunk[col].str.strip()
    return chunk


def build_snapshot(zip_path: Path, out_path: Path, chunk_size: int = CHUNK_SIZE) -> Path:
    """
    Write a SQLite snapshot of the feed at zip_path to out_path.

    The file is built next to out_path and renamed into place, so a reader
    never sees a half-built snapshot.
    """
    out_path = Path(out_path)
    building = out_path.with_name(out_path.name + ".building")
    building.unlink(missing_ok=True)

    engine = create_engine(f"sqlite:///{building}")
    try:
        Base.metadata.create_all(bind=engine)
        with zipfile.ZipFile(zip_path) as zf:
            tables = {t for t in SNAPSHOT_TABLES if find_member(zf, f"{t}.txt")}
            if not tables & OPTIONAL_TABLES:
                raise DataFormatError("GTFS archive has neither calendar.txt nor calendar_dates.txt")
            for table, model in SNAPSHOT_TABLES.items():
                columns = _model_columns(model)
                key = model.__table__.primary_key.columns.values()[0].name
                loaded = 0
                for chunk in read_table(zf, table, columns, chunk_size):
                    chunk = _coerce(chunk, model)
                    if key in chunk.columns:
                        chunk = chunk.drop_duplicates(subset=[key])
                    with engine.begin() as conn:
                        chunk.to_sql(table, conn, if_exists="append", index=False)
                    loaded += len(chunk)
                logger.info("Loaded %d %s rows.", loaded, table)
    except zipfile.BadZipFile as exc:
        raise DataFormatError(f"{zip_path} is not a valid GTFS zip: {exc}") from exc
    finally:
        engine.dispose()

    os.replace(building, out_path)
    logger.info("Snapshot written to %s", out_path)
    return out_path


def import_stops(zip_path: Path, agency: str, session: Session, chunk_size: int = CHUNK_SIZE) -> int:
    """
    Upsert every stop in the feed into the stop store under agency.
    Rows without usable coordinates are skipped.  Returns rows written.
    """
    columns = ["stop_id", "stop_name", "stop_lat", "stop_lon", "location_type", "parent_station", "stop_code"]
    agency = agency.upper()
    written = skipped = 0
    with zipfile.ZipFile(zip_path) as zf:
        for chunk in read_table(zf, "stops", columns, chunk_size):
            for col in columns:
                if col not in chunk.columns:
                    chunk[col] = ""
            lat = pd.to_numeric(chunk["stop_lat"], errors="coerce")
            lon = pd.to_numeric(chunk["stop_lon"], errors="coerce")
            location_type = pd.to_numeric(chunk["location_type"], errors="coerce")
            for i, row in enumerate(chunk.itertuples(index=False)):
                if pd.isna(lat.iat[i]) or pd.isna(lon.iat[i]) or not row.stop_id.strip():
                    skipped += 1
                    continue
                session.merge(AgencyStop(
                    id=row.stop_id.strip(),
                    name=row.stop_name.strip(),
                    lat=float(lat.iat[i]),
                    lon=float(lon.iat[i]),
                    agency=agency,
                    location_type=0 if pd.isna(location_type.iat[i]) else int(location_type.iat[i]),
                    parent_station=row.parent_station.strip() or None,
                    stop_code=row.stop_code.strip() or None,
                ))
                written += 1
            session.commit()
    if skipped:
        logger.warning("Skipped %d stops without coordinates.", skipped)
    logger.info("Imported %d %s stops into the stop store.", written, agency)
    return written


async def fetch_static_zip(url: str = GTFS_STATIC_URL, downloads: DownloadManager | None = None) -> Path:
    """Local path of the GTFS zip, downloading (or resuming) it if needed."""
    downloads = downloads or DownloadManager()
    return await downloads.ensure_local(url, ArtifactKind.ARCHIVE)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Build the GTFS schedule snapshot and/or load the stop store.",
    )
    parser.add_argument("--zip-path", help="GTFS zip to read (downloaded from --zip-url when omitted).")
    parser.add_argument("--zip-url", default=GTFS_STATIC_URL, help="GTFS zip URL (defaults to GTFS_STATIC_URL).")
    parser.add_argument("--out", help="Write the SQLite snapshot to this path.")
    parser.add_argument("--import-stops", action="store_true", help="Upsert stops.txt into the stop store.")
    parser.add_argument("--agency", default=AGENCY_KEY, help="Agency key for imported stops.")
    parser.add_argument(
        "--database-url",
        default=DATABASE_URL,
        help="Stop store connection string (defaults to DATABASE_URL).",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    if not args.out and not args.import_stops:
        raise SystemExit("Nothing to do: pass --out and/or --import-stops.")

    zip_path = Path(args.zip_path) if args.zip_path else asyncio.run(fetch_static_zip(args.zip_url))

    if args.out:
        build_snapshot(zip_path, Path(args.out))

    if args.import_stops:
        factory = make_store_sessionmaker(args.database_url)
        if factory is None:
            raise SystemExit("--import-stops needs --database-url or DATABASE_URL.")
        init_store(factory.kw["bind"])
        with factory() as session:
            import_stops(zip_path, args.agency, session)


if __name__ == "__main__":
    main()
