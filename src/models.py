from sqlalchemy import (
    create_engine, Column, Integer, BigInteger, String, Float, DateTime, Text, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship
from datetime import datetime, timezone
import logging
import os

logger = logging.getLogger(__name__)

Base = declarative_base()

# Processing status values for processed_files.processing_status
STATUS_PROCESSING = 'processing'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
TERMINAL_STATUSES = (STATUS_COMPLETED, STATUS_FAILED)

# SQLite only autoincrements INTEGER PRIMARY KEY
BigIntegerPK = BigInteger().with_variant(Integer, 'sqlite')


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Station(Base):
    """Station registry keyed by WBANNO. Name and coordinates are filled in lazily."""
    __tablename__ = 'stations'

    station_id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255))
    state = Column(String(2), nullable=False)
    latitude = Column(Float)
    longitude = Column(Float)
    first_seen = Column(DateTime, nullable=False, default=utcnow)

    observations = relationship("Observation", back_populates="station")


class ProcessedFile(Base):
    """Provenance of one source file; overwritten by every processing attempt."""
    __tablename__ = 'processed_files'

    id = Column(Integer, primary_key=True, autoincrement=True)
    file_name = Column(String(255), nullable=False, unique=True)
    file_url = Column(Text, nullable=False)
    year = Column(Integer, nullable=False)
    state = Column(String(2), nullable=False)
    station_name = Column(String(100), nullable=False)
    last_modified = Column(DateTime)
    rows_processed = Column(Integer, nullable=False, default=0)
    file_hash = Column(String(64))
    # Detailed processing statistics
    observations_inserted = Column(Integer, default=0)
    observations_updated = Column(Integer, default=0)
    parse_failures = Column(Integer, default=0)
    processing_status = Column(String(20), default=STATUS_COMPLETED)
    processed_at = Column(DateTime, nullable=False, default=utcnow)

    observations = relationship("Observation", back_populates="source_file")

    __table_args__ = (
        Index('idx_processed_files_year', 'year'),
        Index('idx_processed_files_status', 'processing_status'),
    )


class Observation(Base):
    """Hourly observation: one row per station and UTC hour."""
    __tablename__ = 'observations'

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    station_id = Column(Integer, ForeignKey('stations.station_id'), nullable=False)
    utc_datetime = Column(DateTime, nullable=False)
    lst_datetime = Column(DateTime, nullable=False)
    crx_version = Column(String(10))

    # Temperature (Celsius)
    t_calc = Column(Float)
    t_hr_avg = Column(Float)
    t_max = Column(Float)
    t_min = Column(Float)

    # Precipitation (mm)
    p_calc = Column(Float)

    # Solar radiation (W/m^2)
    solarad = Column(Float)
    solarad_flag = Column(Integer)
    solarad_max = Column(Float)
    solarad_max_flag = Column(Integer)
    solarad_min = Column(Float)
    solarad_min_flag = Column(Integer)

    # Surface temperature
    sur_temp_type = Column(String(1))
    sur_temp = Column(Float)
    sur_temp_flag = Column(Integer)
    sur_temp_max = Column(Float)
    sur_temp_max_flag = Column(Integer)
    sur_temp_min = Column(Float)
    sur_temp_min_flag = Column(Integer)

    # Humidity
    rh_hr_avg = Column(Float)
    rh_hr_avg_flag = Column(Integer)

    # Soil moisture (fractional water content)
    soil_moisture_5 = Column(Float)
    soil_moisture_10 = Column(Float)
    soil_moisture_20 = Column(Float)
    soil_moisture_50 = Column(Float)
    soil_moisture_100 = Column(Float)

    # Soil temperature (Celsius)
    soil_temp_5 = Column(Float)
    soil_temp_10 = Column(Float)
    soil_temp_20 = Column(Float)
    soil_temp_50 = Column(Float)
    soil_temp_100 = Column(Float)

    # Lineage
    source_file_id = Column(Integer, ForeignKey('processed_files.id'))
    created_at = Column(DateTime, nullable=False, default=utcnow)

    station = relationship("Station", back_populates="observations")
    source_file = relationship("ProcessedFile", back_populates="observations")

    __table_args__ = (
        UniqueConstraint('station_id', 'utc_datetime', name='uq_observations_station_datetime'),
        Index('idx_observations_datetime', 'utc_datetime'),
        Index('idx_observations_station', 'station_id'),
    )


# Columns written by the observation upsert, in table order
OBSERVATION_FIELDS = [
    'station_id', 'utc_datetime', 'lst_datetime', 'crx_version',
    't_calc', 't_hr_avg', 't_max', 't_min',
    'p_calc',
    'solarad', 'solarad_flag', 'solarad_max', 'solarad_max_flag', 'solarad_min', 'solarad_min_flag',
    'sur_temp_type', 'sur_temp', 'sur_temp_flag', 'sur_temp_max', 'sur_temp_max_flag',
    'sur_temp_min', 'sur_temp_min_flag',
    'rh_hr_avg', 'rh_hr_avg_flag',
    'soil_moisture_5', 'soil_moisture_10', 'soil_moisture_20', 'soil_moisture_50', 'soil_moisture_100',
    'soil_temp_5', 'soil_temp_10', 'soil_temp_20', 'soil_temp_50', 'soil_temp_100',
]

# Database setup

def get_database_url():
    return os.getenv('DATABASE_URL', 'sqlite:///crn_ingest.db')

def create_engine_and_session(database_url=None, **engine_kwargs):
    engine = create_engine(database_url or get_database_url(), **engine_kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal

def create_tables(engine):
    """Create any missing tables. Safe to call on every startup."""
    logger.info("Applying database schema...")
    Base.metadata.create_all(bind=engine)
    logger.info("Database schema is up to date")
