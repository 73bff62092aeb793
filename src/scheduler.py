"""
Periodic ingestion driver.

One thread does everything: years, files and the download/parse/upsert steps
for each file run strictly one after another, so the request delay always
holds and no two files write the same rows at once. Shutdown is cooperative:
``shutdown`` is a ``threading.Event`` checked at every wait.
"""

import hashlib
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from errors import IngestError, ParseError, StorageError
from models import STATUS_COMPLETED, STATUS_FAILED, STATUS_PROCESSING
from record_parser import parse_content

logger = logging.getLogger(__name__)


@dataclass
class YearSummary:
    new: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


def _utc_now():
    return datetime.now(timezone.utc)


class Scheduler:
    """Runs ingestion cycles until shutdown is requested."""

    def __init__(self, config, fetcher, repository, shutdown=None, clock=None, monotonic=time.monotonic):
        self.config = config
        self.fetcher = fetcher
        self.repository = repository
        self.shutdown = shutdown or threading.Event()
        self.clock = clock or _utc_now
        self._monotonic = monotonic

    def current_year(self):
        return self.clock().year

    def run(self):
        """Initial delay, one cycle right away, then one cycle per interval."""
        initial_delay = self.config.scheduler.initial_delay_seconds
        interval = self.config.scheduler.interval_minutes * 60

        logger.info(
            f"Scheduler starting with {initial_delay}s initial delay, "
            f"{self.config.scheduler.interval_minutes}m interval"
        )

        if self.shutdown.wait(initial_delay):
            logger.info("Shutdown received during initial delay")
            return

        while True:
            started = self._monotonic()
            try:
                self.run_cycle()
            except Exception as e:
                logger.error(f"Ingestion error: {e}", exc_info=True)

            if self.shutdown.is_set():
                break
            remaining = max(0.0, interval - (self._monotonic() - started))
            if self.shutdown.wait(remaining):
                break

        logger.info("Shutdown signal received, stopping scheduler")

    def run_cycle(self):
        """Process every configured year once. Returns {year: YearSummary}."""
        logger.info("Starting ingestion run")
        years = self.config.source.years_to_fetch.resolve(self.current_year())
        logger.info(f"Processing years: {years}")

        try:
            available = set(self.fetcher.list_years())
        except Exception as e:
            logger.warning(f"Could not list available years: {e}")
        else:
            missing = [year for year in years if year not in available]
            if missing:
                logger.warning(f"Years not present in the archive index: {missing}")

        summaries = {}
        for year in years:
            if self.shutdown.is_set():
                logger.info("Shutdown requested, stopping before next year")
                break
            try:
                summaries[year] = self.process_year(year)
            except Exception as e:
                logger.error(f"Error processing year {year}: {e}")

        logger.info("Ingestion run completed")
        return summaries

    def process_year(self, year):
        is_current_year = year == self.current_year()
        if is_current_year:
            logger.info(f"Processing year {year} (current year - will re-process all files for updates)")
        else:
            logger.info(f"Processing year {year} (historical - will skip processed files)")

        files = self.fetcher.list_files_for_year(year, self.config.locations)
        processed_files = self.repository.get_processed_files_for_year(year)

        summary = YearSummary()
        delay_seconds = self.config.source.request_delay_ms / 1000.0

        for file_info in files:
            if self.shutdown.is_set():
                logger.info("Shutdown requested, stopping before next file")
                break

            already_processed = file_info.name in processed_files

            # Past-year files never change once published; the current year's
            # files gain new hourly rows all year long.
            if already_processed and not is_current_year:
                summary.skipped += 1
                continue

            if already_processed:
                logger.info(f"Re-processing file (current year): {file_info.name}")
            else:
                logger.info(f"Processing file: {file_info.name}")

            try:
                rows = self.process_file(file_info)
            except ParseError as e:
                # process_file already recorded the failure with its parse stats
                summary.failed += 1
                logger.error(f"Error processing {file_info.name}: {e}")
            except IngestError as e:
                summary.failed += 1
                logger.error(f"Error processing {file_info.name}: {e}")
                self._record_failure(file_info)
            except Exception as e:
                summary.failed += 1
                logger.error(f"Unexpected error processing {file_info.name}: {e}", exc_info=True)
                self._record_failure(file_info)
            else:
                logger.info(f"Processed {rows} observations from {file_info.name}")
                if already_processed:
                    summary.updated += 1
                else:
                    summary.new += 1

            # Rate limiting between downloads
            if delay_seconds > 0 and self.shutdown.wait(delay_seconds):
                logger.info("Shutdown requested, stopping before next file")
                break

        if is_current_year:
            logger.info(
                f"Year {year} complete: {summary.new} new files, {summary.updated} updated files, "
                f"{summary.skipped} skipped, {summary.failed} failed"
            )
        else:
            logger.info(
                f"Year {year} complete: {summary.new} files processed, {summary.skipped} skipped, "
                f"{summary.failed} failed"
            )
        return summary

    def _file_record(self, file_info, **fields):
        record = {
            'file_name': file_info.name,
            'file_url': file_info.url,
            'year': file_info.year,
            'state': file_info.state,
            'station_name': file_info.station_label,
            'last_modified': None,
            'rows_processed': 0,
            'file_hash': None,
            'observations_inserted': 0,
            'observations_updated': 0,
            'parse_failures': 0,
            'processing_status': STATUS_PROCESSING,
        }
        record.update(fields)
        return record

    def _record_failure(self, file_info):
        """Mark a file failed after a download or storage error, if the database allows it."""
        try:
            self.repository.record_file_processed(
                self._file_record(file_info, processing_status=STATUS_FAILED)
            )
        except StorageError as e:
            logger.error(f"Could not record failure for {file_info.name}: {e}")

    def process_file(self, file_info):
        """
        Download, parse and store one file. Returns the number of observation rows written.

        Content problems (quality gate, nothing left after the station filter)
        are recorded here as ``failed`` with their parse counts. Network and
        storage errors propagate; ``process_year`` records those as ``failed``.
        """
        content = self.fetcher.download_file(file_info.url)
        file_hash = hashlib.sha256(content.encode('utf-8')).hexdigest()

        try:
            observations, parse_stats = parse_content(
                content, self.config.source.parse_failure_threshold
            )
        except ParseError as e:
            stats = e.stats
            self.repository.record_file_processed(self._file_record(
                file_info,
                file_hash=file_hash,
                parse_failures=stats.parse_failures if stats else 0,
                processing_status=STATUS_FAILED,
            ))
            raise

        if parse_stats.non_empty_lines:
            success_rate = parse_stats.parsed_successfully / parse_stats.non_empty_lines * 100.0
        else:
            success_rate = 100.0
        logger.info(
            f"Parsed {file_info.name}: {parse_stats.total_lines} lines, "
            f"{parse_stats.parsed_successfully} successful, {parse_stats.parse_failures} failures "
            f"({success_rate:.1f}% success rate)"
        )

        # Station ids are only known after parsing
        before_filter = len(observations)
        observations = [
            obs for obs in observations
            if self.config.locations.matches_station(obs['station_id'])
        ]
        if before_filter > len(observations):
            logger.info(
                f"Station filter: kept {len(observations)}/{before_filter} observations "
                f"matching configured stations"
            )

        if not observations:
            logger.warning(f"No observations remaining after filtering for {file_info.name}")
            self.repository.record_file_processed(self._file_record(
                file_info,
                file_hash=file_hash,
                parse_failures=parse_stats.parse_failures,
                processing_status=STATUS_FAILED,
            ))
            return 0

        stations = {}
        for obs in observations:
            station = stations.setdefault(obs['station_id'], {
                'station_id': obs['station_id'],
                'name': file_info.station_label,
                'state': file_info.state,
                'latitude': None,
                'longitude': None,
            })
            if station['latitude'] is None and obs.get('latitude') is not None:
                station['latitude'] = obs['latitude']
            if station['longitude'] is None and obs.get('longitude') is not None:
                station['longitude'] = obs['longitude']
        self.repository.batch_upsert_stations(list(stations.values()))

        # Preliminary row gives the observations a file id; it stays
        # "processing" if the upsert below fails.
        file_id = self.repository.record_file_processed(self._file_record(
            file_info,
            rows_processed=len(observations),
            file_hash=file_hash,
            parse_failures=parse_stats.parse_failures,
            processing_status=STATUS_PROCESSING,
        ))

        result = self.repository.upsert_observations(observations, file_id)
        logger.info(
            f"Inserted observations for {file_info.name}: {result.inserted} inserted, "
            f"{result.updated} updated, {result.total_affected} total affected"
        )

        self.repository.record_file_processed(self._file_record(
            file_info,
            rows_processed=len(observations),
            file_hash=file_hash,
            observations_inserted=result.inserted,
            observations_updated=result.updated,
            parse_failures=parse_stats.parse_failures,
            processing_status=STATUS_COMPLETED,
        ))

        return result.total_affected
