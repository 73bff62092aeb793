"""
Persistence for stations, file provenance and observations.

All writes are natural-key upserts (``INSERT ... ON CONFLICT DO UPDATE``), so
running the pipeline twice over the same data leaves one row per key. Both
PostgreSQL and SQLite are supported through their dialect-specific inserts.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_upsert
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from errors import StorageError
from models import (
    Observation, ProcessedFile, Station, OBSERVATION_FIELDS, STATUS_COMPLETED, TERMINAL_STATUSES, utcnow
)

logger = logging.getLogger(__name__)

# Rows per statement, to stay under backend statement-size limits
BATCH_SIZE = 1000

# Keys per existence-count query; below the 999-variable limit of older SQLite builds
EXISTENCE_CHUNK = 500

STATION_FIELDS = ['station_id', 'name', 'state', 'latitude', 'longitude']

PROCESSED_FILE_FIELDS = [
    'file_name', 'file_url', 'year', 'state', 'station_name', 'last_modified',
    'rows_processed', 'file_hash', 'observations_inserted', 'observations_updated',
    'parse_failures', 'processing_status',
]

# Columns refreshed when a file is processed again
PROCESSED_FILE_MUTABLE_FIELDS = [
    'rows_processed', 'observations_inserted', 'observations_updated',
    'parse_failures', 'processing_status', 'file_hash',
]


@dataclass
class InsertResult:
    """
    Outcome of an observation upsert.

    ``inserted``/``updated`` are derived from how many natural keys already
    existed before the transaction, not from per-row reporting, since the
    upsert statement does not say which rows were new.
    """

    inserted: int = 0
    updated: int = 0
    total_affected: int = 0


def _insert_for(session):
    dialect = session.bind.dialect.name
    if dialect == 'sqlite':
        return sqlite_upsert
    if dialect == 'postgresql':
        return pg_upsert
    raise StorageError(f"Unsupported database dialect for upserts: {dialect}")


def _chunks(items, size):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _pick(record, fields):
    return {name: record.get(name) for name in fields}


class Repository:
    """Owns all database access. The engine is shared with the rest of the process."""

    def __init__(self, engine, batch_size=BATCH_SIZE):
        self.engine = engine
        self.batch_size = batch_size
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    def _run(self, description, work):
        """Run ``work(session)`` in one transaction; any database error rolls it back."""
        session = self.SessionLocal()
        try:
            result = work(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database error while {description}: {e}")
            raise StorageError(f"Database error while {description}: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Provenance

    def is_file_processed(self, file_name):
        """True once the file has reached a terminal status."""
        def work(session):
            count = session.execute(
                select(func.count()).select_from(ProcessedFile).where(
                    ProcessedFile.file_name == file_name,
                    ProcessedFile.processing_status.in_(TERMINAL_STATUSES),
                )
            ).scalar_one()
            return count > 0
        return self._run(f"checking file {file_name}", work)

    def get_processed_files_for_year(self, year):
        """Names of the files of ``year`` that reached a terminal status."""
        def work(session):
            return set(session.execute(
                select(ProcessedFile.file_name).where(
                    ProcessedFile.year == year,
                    ProcessedFile.processing_status.in_(TERMINAL_STATUSES),
                )
            ).scalars())
        return self._run(f"listing processed files for {year}", work)

    def get_processed_file(self, file_name):
        def work(session):
            row = session.execute(
                select(ProcessedFile).where(ProcessedFile.file_name == file_name)
            ).scalar_one_or_none()
            if row is not None:
                session.expunge(row)
            return row
        return self._run(f"fetching file {file_name}", work)

    def record_file_processed(self, file_record):
        """
        Insert or update the provenance row for a file and return its id.

        On conflict the counters, status, hash and timestamp are overwritten,
        so the row always describes the latest attempt.
        """
        values = _pick(file_record, PROCESSED_FILE_FIELDS)
        if values['processing_status'] is None:
            values['processing_status'] = STATUS_COMPLETED
        for counter in ('rows_processed', 'observations_inserted', 'observations_updated', 'parse_failures'):
            values[counter] = values[counter] or 0
        values['processed_at'] = utcnow()

        def work(session):
            insert = _insert_for(session)
            stmt = insert(ProcessedFile.__table__).values(**values)
            update = {name: stmt.excluded[name] for name in PROCESSED_FILE_MUTABLE_FIELDS}
            update['processed_at'] = stmt.excluded.processed_at
            stmt = stmt.on_conflict_do_update(index_elements=['file_name'], set_=update)
            session.execute(stmt)
            return session.execute(
                select(ProcessedFile.id).where(ProcessedFile.file_name == values['file_name'])
            ).scalar_one()

        file_id = self._run(f"recording file {values['file_name']}", work)
        logger.debug(f"Recorded {values['file_name']} as {values['processing_status']} (id={file_id})")
        return file_id

    def list_processed_files(self, year=None, status=None, offset=0, limit=50):
        """Page of provenance rows, newest first, plus the total match count."""
        def work(session):
            query = select(ProcessedFile)
            if year is not None:
                query = query.where(ProcessedFile.year == year)
            if status:
                query = query.where(ProcessedFile.processing_status == status)
            total = session.execute(
                select(func.count()).select_from(query.subquery())
            ).scalar_one()
            rows = session.execute(
                query.order_by(ProcessedFile.processed_at.desc(), ProcessedFile.file_name)
                .offset(offset).limit(limit)
            ).scalars().all()
            session.expunge_all()
            return total, rows
        return self._run("listing processed files", work)

    def ping(self):
        """Round-trip a trivial query; raises StorageError when the database is unreachable."""
        return self._run("checking database connection", lambda session: session.execute(select(1)).scalar_one())

    # Stations

    def upsert_station(self, station):
        """Insert a station, or fill in its missing name/coordinates.

        For more than one station use ``batch_upsert_stations``.
        """
        self.batch_upsert_stations([station])

    def batch_upsert_stations(self, stations):
        """Upsert many stations in one statement; known values are never replaced by nulls."""
        if not stations:
            return

        # One row per station id; later entries fill gaps left by earlier ones
        merged = {}
        for station in stations:
            values = _pick(station, STATION_FIELDS)
            existing = merged.get(values['station_id'])
            if existing is None:
                merged[values['station_id']] = values
            else:
                for name in ('name', 'latitude', 'longitude'):
                    if values[name] is not None:
                        existing[name] = values[name]
        rows = list(merged.values())

        def work(session):
            insert = _insert_for(session)
            stmt = insert(Station.__table__).values(rows)
            table = Station.__table__
            stmt = stmt.on_conflict_do_update(
                index_elements=['station_id'],
                set_={
                    'name': func.coalesce(stmt.excluded.name, table.c.name),
                    'latitude': func.coalesce(stmt.excluded.latitude, table.c.latitude),
                    'longitude': func.coalesce(stmt.excluded.longitude, table.c.longitude),
                },
            )
            session.execute(stmt)

        self._run(f"upserting {len(rows)} stations", work)

    def list_stations(self, state=None, offset=0, limit=50):
        def work(session):
            query = select(Station)
            if state:
                query = query.where(Station.state == state.upper())
            total = session.execute(
                select(func.count()).select_from(query.subquery())
            ).scalar_one()
            rows = session.execute(
                query.order_by(Station.station_id).offset(offset).limit(limit)
            ).scalars().all()
            session.expunge_all()
            return total, rows
        return self._run("listing stations", work)

    # Observations

    def count_observations(self, station_id=None):
        def work(session):
            query = select(func.count()).select_from(Observation)
            if station_id is not None:
                query = query.where(Observation.station_id == station_id)
            return session.execute(query).scalar_one()
        return self._run("counting observations", work)

    def _count_existing(self, session, keys):
        table = Observation.__table__
        timestamps_by_station = {}
        for station_id, utc_datetime in keys:
            timestamps_by_station.setdefault(station_id, []).append(utc_datetime)

        existing = 0
        for station_id, timestamps in timestamps_by_station.items():
            for chunk in _chunks(timestamps, EXISTENCE_CHUNK):
                existing += session.execute(
                    select(func.count()).select_from(table).where(
                        table.c.station_id == station_id,
                        table.c.utc_datetime.in_(chunk),
                    )
                ).scalar_one()
        return existing

    def upsert_observations(self, records, source_file_id):
        """
        Insert or update observations by (station_id, utc_datetime).

        Records are written in chunks of ``batch_size`` inside a single
        transaction: either every chunk commits or none does. Existing rows
        have all measurement columns replaced and point at ``source_file_id``.
        Duplicate keys within ``records`` collapse to the last one.
        """
        if not records:
            return InsertResult()

        deduped = {}
        for record in records:
            values = _pick(record, OBSERVATION_FIELDS)
            values['source_file_id'] = source_file_id
            deduped[(values['station_id'], values['utc_datetime'])] = values
        rows = list(deduped.values())
        if len(rows) < len(records):
            logger.warning(f"Dropped {len(records) - len(rows)} duplicate observations before upsert")

        total_batches = (len(rows) + self.batch_size - 1) // self.batch_size
        update_fields = [name for name in OBSERVATION_FIELDS if name not in ('station_id', 'utc_datetime')]
        update_fields.append('source_file_id')

        def work(session):
            existing_before = self._count_existing(session, list(deduped.keys()))

            insert = _insert_for(session)
            stmt = insert(Observation.__table__)
            stmt = stmt.on_conflict_do_update(
                index_elements=['station_id', 'utc_datetime'],
                set_={name: stmt.excluded[name] for name in update_fields},
            )

            total_affected = 0
            for batch_idx, chunk in enumerate(_chunks(rows, self.batch_size), start=1):
                logger.debug(f"Upserting batch {batch_idx}/{total_batches} ({len(chunk)} observations)")
                session.execute(stmt, chunk)
                # Every distinct key is either inserted or updated exactly once
                total_affected += len(chunk)
            return existing_before, total_affected

        existing_before, total_affected = self._run(
            f"upserting {len(rows)} observations", work
        )

        return InsertResult(
            inserted=max(total_affected - existing_before, 0),
            updated=min(existing_before, total_affected),
            total_affected=total_affected,
        )
