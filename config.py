from pathlib import Path
from dotenv import load_dotenv
import os
import tempfile

load_dotenv()

BASE_DIR = Path(__file__).parent

# Scratch directory for downloaded static artifacts (snapshot + GTFS zip)
CACHE_DIR = Path(os.getenv("CACHE_DIR", str(Path(tempfile.gettempdir()) / "transit-arrivals")))

# Agency served by this process; the caller picks the agency, we only check it
AGENCY_KEY: str = os.getenv("AGENCY_KEY", "ttc")
# Schedule-day boundaries are civil-calendar dates in the agency's home zone
AGENCY_TIMEZONE: str = os.getenv("AGENCY_TIMEZONE", "America/Toronto")

# External stop store (stops table imported per agency). Optional.
DATABASE_URL: str = os.getenv("DATABASE_URL", "")

# Static schedule sources
# Prebuilt SQLite snapshot of the GTFS feed (see ingestion/gtfs_static.py)
SNAPSHOT_URL: str = os.getenv("SNAPSHOT_URL", "")
# Raw GTFS zip, streamed when the snapshot is not ready yet
GTFS_STATIC_URL: str = os.getenv("GTFS_STATIC_URL", "")
GTFS_REFRESH_HOURS: int = int(os.getenv("GTFS_REFRESH_HOURS", "6"))

SNAPSHOT_TTL_HOURS: float = float(os.getenv("SNAPSHOT_TTL_HOURS", "24"))
ARCHIVE_TTL_HOURS: float = float(os.getenv("ARCHIVE_TTL_HOURS", "6"))

# Download behaviour
DOWNLOAD_MAX_ATTEMPTS: int = int(os.getenv("DOWNLOAD_MAX_ATTEMPTS", "8"))
DOWNLOAD_BACKOFF_BASE_SECONDS: float = float(os.getenv("DOWNLOAD_BACKOFF_BASE_SECONDS", "30"))
DOWNLOAD_BACKOFF_MAX_SECONDS: float = float(os.getenv("DOWNLOAD_BACKOFF_MAX_SECONDS", "180"))
DOWNLOAD_TIMEOUT_SECONDS: float = float(os.getenv("DOWNLOAD_TIMEOUT_SECONDS", "120"))
SNAPSHOT_RETRY_SECONDS: int = int(os.getenv("SNAPSHOT_RETRY_SECONDS", "60"))

# Streaming-archive result cache
RESULT_CACHE_SIZE: int = int(os.getenv("RESULT_CACHE_SIZE", "64"))
RESULT_CACHE_TTL_SECONDS: float = float(os.getenv("RESULT_CACHE_TTL_SECONDS", "30"))

# Static fallback horizon
SCHEDULE_HORIZON_MINUTES: int = int(os.getenv("SCHEDULE_HORIZON_MINUTES", "360"))

# GTFS-Realtime
GTFS_RT_TRIP_UPDATES_URL: str = os.getenv("GTFS_RT_TRIP_UPDATES_URL", "https://bustime.ttc.ca/gtfsrt/trips")
GTFS_RT_ALERTS_URL: str = os.getenv("GTFS_RT_ALERTS_URL", "https://bustime.ttc.ca/gtfsrt/alerts")
GTFS_RT_API_KEY: str = os.getenv("GTFS_RT_API_KEY", "")  # appended as ?key= when set
RT_CACHE_TTL_SECONDS: float = float(os.getenv("RT_CACHE_TTL_SECONDS", "5"))
RT_CACHE_MAX_ENTRIES: int = int(os.getenv("RT_CACHE_MAX_ENTRIES", "4"))
RT_TIMEOUT_SECONDS: float = float(os.getenv("RT_TIMEOUT_SECONDS", "8"))

# API
API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
API_PORT: int = int(os.getenv("API_PORT", "4000"))
CORS_ORIGINS: list[str] = [
    o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()
]
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
