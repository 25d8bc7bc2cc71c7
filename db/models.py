"""
SQLAlchemy ORM models for the indexed GTFS snapshot.

The snapshot is a SQLite file produced once by ingestion.gtfs_static and
opened read-only by the schedule index.  Table names follow the GTFS file
names so the snapshot can be inspected with plain SQL.

GTFS time fields (arrival_time, departure_time) are stored as HH:MM:SS strings
because GTFS allows values >= 24:00:00 for trips crossing midnight.
Application code converts to integer seconds-past-midnight when needed.
"""

from sqlalchemy import Boolean, Column, Float, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class Stop(Base):
    __tablename__ = "stops"

    stop_id = Column(String, primary_key=True)
    stop_code = Column(String, nullable=True, index=True)
    stop_name = Column(String, nullable=False, default="")
    stop_lat = Column(Float, nullable=True)
    stop_lon = Column(Float, nullable=True)
    location_type = Column(Integer, default=0)  # 0 = platform/stop, 1 = station
    parent_station = Column(String, nullable=True, index=True)


class Route(Base):
    __tablename__ = "routes"

    route_id = Column(String, primary_key=True)
    route_short_name = Column(String)
    route_long_name = Column(String)
    route_type = Column(Integer)


class Trip(Base):
    __tablename__ = "trips"

    trip_id = Column(String, primary_key=True)
    route_id = Column(String, index=True)
    service_id = Column(String, index=True)
    trip_headsign = Column(String)
    direction_id = Column(Integer)


class StopTime(Base):
    __tablename__ = "stop_times"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trip_id = Column(String, index=True)
    arrival_time = Column(String)    # HH:MM:SS (may exceed 24:00:00)
    departure_time = Column(String)  # HH:MM:SS (may exceed 24:00:00)
    stop_id = Column(String, index=True)
    stop_sequence = Column(Integer)


class ServiceCalendar(Base):
    __tablename__ = "calendar"

    service_id = Column(String, primary_key=True)
    monday = Column(Boolean)
    tuesday = Column(Boolean)
    wednesday = Column(Boolean)
    thursday = Column(Boolean)
    friday = Column(Boolean)
    saturday = Column(Boolean)
    sunday = Column(Boolean)
    start_date = Column(String)  # YYYYMMDD
    end_date = Column(String)    # YYYYMMDD


class ServiceCalendarDate(Base):
    __tablename__ = "calendar_dates"

    # autoincrement id preserves feed row order; later rows win on conflicts
    id = Column(Integer, primary_key=True, autoincrement=True)
    service_id = Column(String, index=True)
    date = Column(String, index=True)  # YYYYMMDD
    exception_type = Column(Integer)   # 1 = service added, 2 = service removed
