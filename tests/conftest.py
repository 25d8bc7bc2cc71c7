"""
Shared fixtures: a small TTC-shaped GTFS feed, the two schedule backends
built from it, and GTFS-RT feed builders.

Service day under test is Monday 2025-06-02 in America/Toronto.  At 08:00
the feed has, at station 14523 (platforms 14523A / 14523B):

  T1  83A   08:05 at 14523A, 08:12 at 14523B   (same trip, both platforms)
  T2  84    08:10 at 14523B
  T3  183   08:20 at 14523A
  T7  84    08:25 at 14523B   (EXTRA service, added by calendar_dates)
  T4  510   07:55 at 14523A   (already gone)
  T5  84    08:15 at 14523A   (weekend service, inactive Monday)
  T6  83A   25:30 at 14523A   (after-midnight, belongs to Monday)
"""

import zipfile
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
from google.transit import gtfs_realtime_pb2

from cache.downloader import ArtifactKind, DownloadManager
from ingestion.gtfs_static import build_snapshot
from schedule.archive import ArchiveIndex
from schedule.index import ScheduleIndex
from schedule.snapshot import SnapshotHandle, SnapshotIndex

TZ = ZoneInfo("America/Toronto")
NOW = datetime(2025, 6, 2, 8, 0, tzinfo=TZ)

ARCHIVE_URL = "https://static.example.test/gtfs.zip"
SNAPSHOT_URL = "https://static.example.test/snapshot.sqlite"

GTFS_TABLES = {
    "stops": (
        "stop_id,stop_code,stop_name,stop_lat,stop_lon,location_type,parent_station\n"
        "14523,14523,Spadina Station,43.667,-79.403,1,\n"
        "14523A,,Spadina Station - Platform 1 Northbound,43.667,-79.403,0,14523\n"
        "14523B,,Spadina Station - Platform 2 Southbound,43.667,-79.403,0,14523\n"
        "7001,,Bloor Station,43.671,-79.385,1,\n"
        "7002,,Bloor Station - Platform 1,43.671,-79.385,0,7001\n"
        "7003,,Bloor Station - Platform 2,43.671,-79.385,0,7001\n"
        "STN_EMPTY,,Lonely Station,43.700,-79.400,1,\n"
        "9000,9000,Queen St West at Spadina Ave,43.648,-79.396,0,\n"
    ),
    "routes": (
        "route_id,route_short_name,route_long_name,route_type\n"
        "R83A,83A,Jones,3\n"
        "R84,84,Sheppard West,3\n"
        "R183,183,Islington,3\n"
        "R510,,Spadina Streetcar,0\n"
    ),
    "trips": (
        "route_id,service_id,trip_id,trip_headsign,direction_id\n"
        "R83A,WKDY,T1,North - 83A Jones,0\n"
        "R84,WKDY,T2,West - 84 Sheppard West,0\n"
        "R183,WKDY,T3,South - 183 Islington,1\n"
        "R510,WKDY,T4,South - 510 Spadina,1\n"
        "R84,WKND,T5,Weekend only,0\n"
        "R83A,WKDY,T6,North - 83A Jones (late),0\n"
        "R84,EXTRA,T7,West - 84 Special,0\n"
    ),
    "stop_times": (
        "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
        "T1,08:05:00,08:05:00,14523A,1\n"
        "T1,08:12:00,08:12:00,14523B,2\n"
        "T2,08:10:00,08:10:00,14523B,1\n"
        "T3,08:20:00,08:20:00,14523A,1\n"
        "T4,07:55:00,07:55:00,14523A,1\n"
        "T4,08:30:00,08:30:00,9000,2\n"
        "T5,08:15:00,08:15:00,14523A,1\n"
        "T6,25:30:00,25:30:00,14523A,1\n"
        "T7,08:25:00,08:25:00,14523B,1\n"
    ),
    "calendar": (
        "service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date\n"
        "WKDY,1,1,1,1,1,0,0,20250101,20251231\n"
        "WKND,0,0,0,0,0,1,1,20250101,20251231\n"
    ),
    "calendar_dates": (
        "service_id,date,exception_type\n"
        "EXTRA,20250602,1\n"
        "WKDY,20250603,2\n"
        "WKDY,20250604,2\n"
        "WKDY,20250604,1\n"
        "WKND,20250605,1\n"
        "WKND,20250605,2\n"
    ),
}


def write_gtfs_zip(path: Path, tables: dict[str, str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, text in tables.items():
            zf.writestr(f"{name}.txt", text)
    return path


# ---------------------------------------------------------------------------
# Static fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def gtfs_zip(tmp_path) -> Path:
    return write_gtfs_zip(tmp_path / "feed" / "gtfs.zip", GTFS_TABLES)


@pytest.fixture
def downloads(tmp_path) -> DownloadManager:
    """DownloadManager over a tmp cache; tests pre-place artifacts in it."""
    return DownloadManager(tmp_path / "cache", max_attempts=2, backoff_base=0, backoff_max=0)


@pytest.fixture
def gtfs_tables() -> dict[str, str]:
    return dict(GTFS_TABLES)


@pytest.fixture
def zip_writer(tmp_path):
    """Factory: write tables to tmp_path/<name> and return the path."""
    def factory(name: str, tables: dict[str, str]) -> Path:
        return write_gtfs_zip(tmp_path / name, tables)
    return factory


@pytest.fixture
def make_archive(downloads):
    """Factory: ArchiveIndex whose zip (or raw bytes) is already cached and fresh."""
    def factory(tables: dict[str, str] | None = None, *, raw: bytes | None = None) -> ArchiveIndex:
        local = downloads.local_path(ARCHIVE_URL, ArtifactKind.ARCHIVE)
        local.parent.mkdir(parents=True, exist_ok=True)
        if raw is not None:
            local.write_bytes(raw)
        else:
            write_gtfs_zip(local, GTFS_TABLES if tables is None else tables)
        return ArchiveIndex(downloads, ARCHIVE_URL)
    return factory


@pytest.fixture
def archive(make_archive) -> ArchiveIndex:
    return make_archive()


@pytest.fixture
async def prepared_archive(archive) -> ArchiveIndex:
    await archive.prepare()
    return archive


@pytest.fixture
async def snapshot_handle(downloads, gtfs_zip):
    """Snapshot built from the test feed, cached fresh and opened."""
    local = downloads.local_path(SNAPSHOT_URL, ArtifactKind.SNAPSHOT)
    local.parent.mkdir(parents=True, exist_ok=True)
    build_snapshot(gtfs_zip, local)
    handle = SnapshotHandle(downloads, SNAPSHOT_URL, retry_seconds=0)
    await handle.open()
    yield handle
    await handle.close()


@pytest.fixture
def unopened_handle(downloads) -> SnapshotHandle:
    """Snapshot handle that never became ready."""
    return SnapshotHandle(downloads, SNAPSHOT_URL, retry_seconds=0)


@pytest.fixture
def archive_schedule(unopened_handle, archive) -> ScheduleIndex:
    """Facade with the snapshot not ready, so every call uses the archive."""
    return ScheduleIndex(SnapshotIndex(unopened_handle), archive, TZ)


@pytest.fixture
def snapshot_schedule(snapshot_handle, archive) -> ScheduleIndex:
    return ScheduleIndex(SnapshotIndex(snapshot_handle), archive, TZ)


@pytest.fixture(params=["snapshot", "archive"])
async def backend(request, snapshot_handle, prepared_archive):
    """Each contract test runs against both backends."""
    if request.param == "snapshot":
        return SnapshotIndex(snapshot_handle)
    return prepared_archive


# ---------------------------------------------------------------------------
# GTFS-RT builders
# ---------------------------------------------------------------------------

def make_trip_update_feed(updates) -> gtfs_realtime_pb2.FeedMessage:
    """updates: iterable of (trip_id, route_id, stop_id, arrival_epoch)."""
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    feed.header.timestamp = int(NOW.timestamp())
    for i, (trip_id, route_id, stop_id, epoch) in enumerate(updates):
        entity = feed.entity.add()
        entity.id = f"tu-{i}"
        entity.trip_update.trip.trip_id = trip_id
        if route_id:
            entity.trip_update.trip.route_id = route_id
        stu = entity.trip_update.stop_time_update.add()
        stu.stop_id = stop_id
        stu.arrival.time = epoch
    return feed


@pytest.fixture
def trip_update_feed():
    return make_trip_update_feed


@pytest.fixture
def sample_alert_feed() -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    feed.header.gtfs_realtime_version = "2.0"
    feed.header.timestamp = int(NOW.timestamp())

    alert = feed.entity.add()
    alert.id = "alert-83"
    alert.alert.informed_entity.add().route_id = "83"
    alert.alert.informed_entity.add().stop_id = "14523A"
    period = alert.alert.active_period.add()
    period.start = 1748865600  # 2025-06-02 12:00:00 UTC
    period.end = 1748880000
    alert.alert.header_text.translation.add().text = "83 Jones detour"
    alert.alert.description_text.translation.add().text = "Buses diverting via Pape Ave."
    alert.alert.cause = gtfs_realtime_pb2.Alert.CONSTRUCTION
    alert.alert.effect = gtfs_realtime_pb2.Alert.DETOUR

    other = feed.entity.add()
    other.id = "alert-504"
    other.alert.informed_entity.add().route_id = "504"
    other.alert.header_text.translation.add().text = "504 King short turns"

    return feed
