"""
ORM model for the external stop store.

The store is a shared relational database (PostgreSQL in production) with
one `stops` table holding the stops of every agency, imported from each
agency's GTFS stops.txt by ingestion.gtfs_static.import_stops().  The stop
resolver queries it by agency + name pattern or agency + stop_code.
"""

from sqlalchemy import Column, Float, Integer, String
from sqlalchemy.orm import declarative_base

StoreBase = declarative_base()


class AgencyStop(StoreBase):
    __tablename__ = "stops"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, index=True)
    lat = Column(Float, nullable=False)
    lon = Column(Float, nullable=False)
    agency = Column(String, nullable=False, index=True)  # upper-case agency key, e.g. "TTC"
    location_type = Column(Integer, nullable=True)
    parent_station = Column(String, nullable=True)
    stop_code = Column(String, nullable=True, index=True)
