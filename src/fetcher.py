"""
HTTP client for the USCRN hourly02 archive.

The archive is a plain Apache-style directory index: one sub-directory per
year, one text file per station inside it.
"""

import logging
import time
from dataclasses import dataclass
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from config import LocationFilter
from errors import InvalidInputError, NetworkError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_HOSTS = ("www.ncei.noaa.gov",)
FILENAME_PREFIX = "CRNH0203"
FILENAME_EXTENSION = ".txt"

MAX_ATTEMPTS = 3
REQUEST_TIMEOUT = 60
USER_AGENT = "crn-ingest/0.1.0"

MIN_YEAR = 2000
MAX_YEAR = 2100


@dataclass
class DiscoveredFile:
    """A station file listed in the archive for a given year."""

    name: str
    url: str
    year: int
    state: str
    station_label: str


def exponential_backoff(attempt):
    """Seconds to wait after failed attempt number ``attempt`` (1-based): 1, 2, 4, ..."""
    return float(2 ** (attempt - 1))


def is_retryable(error):
    return isinstance(error, NetworkError) and error.retryable


def retry_with_backoff(
    operation,
    is_retryable=is_retryable,
    max_attempts=MAX_ATTEMPTS,
    backoff=exponential_backoff,
    sleep=time.sleep,
    description="Request",
):
    """
    Call ``operation`` until it succeeds, at most ``max_attempts`` times.

    Only errors accepted by ``is_retryable`` are retried; anything else, and
    the last retryable error once attempts run out, propagates unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except Exception as e:
            if attempt >= max_attempts or not is_retryable(e):
                raise
            delay = backoff(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{max_attempts}): {e}. "
                f"Retrying in {delay:.0f}s..."
            )
            sleep(delay)


def parse_filename(filename, base_url):
    """
    Split ``PREFIX-{YEAR}-{STATE}_{LOCATION...}.EXT`` into its parts.

    Returns None when the name does not follow the convention.
    """
    parts = filename.split("-", 2)
    if len(parts) < 3:
        return None

    year_part, location_part = parts[1], parts[2]
    if not year_part.isdigit():
        return None
    year = int(year_part)

    stem = location_part.rsplit(".", 1)[0] if "." in location_part else location_part
    location_parts = stem.split("_")
    state = location_parts[0]
    if len(state) != 2:
        return None

    # Build station label from remaining parts
    station_label = "_".join(location_parts[1:]) or "Unknown"

    return DiscoveredFile(
        name=filename,
        url=f"{base_url.rstrip('/')}/{year}/{filename}",
        year=year,
        state=state,
        station_label=station_label,
    )


class DirectoryClient:
    """
    Lists years and station files in the archive and downloads them.

    Every request goes through ``retry_with_backoff``: timeouts, connection
    failures and 5xx responses are retried, everything else fails at once.
    """

    def __init__(
        self,
        base_url,
        filename_prefix=FILENAME_PREFIX,
        extension=FILENAME_EXTENSION,
        allowed_hosts=None,
        timeout=REQUEST_TIMEOUT,
        session=None,
        sleep=time.sleep,
        max_attempts=MAX_ATTEMPTS,
    ):
        self.base_url = base_url.rstrip("/")
        self.filename_prefix = filename_prefix
        self.extension = extension
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._sleep = sleep

        hosts = set(DEFAULT_ALLOWED_HOSTS if allowed_hosts is None else allowed_hosts)
        base_host = urlparse(self.base_url).hostname
        if base_host:
            hosts.add(base_host)
        self.allowed_hosts = {h.lower() for h in hosts}

        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": USER_AGENT})

    def close(self):
        """Close the HTTP session."""
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _get_text(self, url):
        """Single GET, with requests errors translated to NetworkError."""
        logger.debug(f"GET {url}")
        try:
            response = self._session.get(url, timeout=self.timeout)
            response.raise_for_status()
            return response.text
        except requests.Timeout as e:
            raise NetworkError(
                f"Request to {url} timed out after {self.timeout}s", retryable=True
            ) from e
        except requests.ConnectionError as e:
            raise NetworkError(f"Connection error for {url}: {e}", retryable=True) from e
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise NetworkError(
                f"HTTP error {status} for {url}",
                retryable=status is not None and status >= 500,
                status_code=status,
            ) from e
        except requests.RequestException as e:
            raise NetworkError(f"Request to {url} failed: {e}") from e

    def _retrying(self, operation, description):
        return retry_with_backoff(
            operation,
            max_attempts=self.max_attempts,
            sleep=self._sleep,
            description=description,
        )

    @staticmethod
    def _hrefs(html):
        soup = BeautifulSoup(html, "html.parser")
        return [a["href"] for a in soup.find_all("a", href=True)]

    def validate_url(self, url):
        """Reject anything that is not HTTPS on an allowed host."""
        parsed = urlparse(url)
        if parsed.scheme != "https":
            raise InvalidInputError(f"URL must use HTTPS: {url}")
        host = (parsed.hostname or "").lower()
        if host not in self.allowed_hosts:
            raise InvalidInputError(f"Host '{host}' is not in allowed list")

    def list_years(self):
        """Years with a directory in the archive index, ascending."""
        url = f"{self.base_url}/"

        def fetch():
            html = self._get_text(url)
            years = set()
            for href in self._hrefs(html):
                token = href.strip().rstrip("/").rsplit("/", 1)[-1]
                if token.isdigit() and MIN_YEAR <= int(token) <= MAX_YEAR:
                    years.add(int(token))
            return sorted(years)

        years = self._retrying(fetch, f"Listing years at {url}")
        logger.info(f"Found {len(years)} years available")
        return years

    def list_files_for_year(self, year, location_filter=None):
        """Station files for ``year`` whose names pass the file-level location filter."""
        location_filter = location_filter or LocationFilter()
        url = f"{self.base_url}/{year}/"

        def fetch():
            html = self._get_text(url)
            files = []
            seen = set()
            for href in self._hrefs(html):
                name = href.strip().rsplit("/", 1)[-1]
                if not (name.startswith(self.filename_prefix) and name.endswith(self.extension)):
                    continue
                if name in seen or not location_filter.matches_file(name):
                    continue
                file_info = parse_filename(name, self.base_url)
                if file_info is None:
                    logger.debug(f"Skipping unrecognised file name {name}")
                    continue
                seen.add(name)
                files.append(file_info)
            return files

        files = self._retrying(fetch, f"Listing files for {year}")
        logger.info(f"Found {len(files)} files for year {year} (after filtering)")
        return files

    def download_file(self, url):
        """Download a data file as text. Disallowed URLs fail before any request."""
        self.validate_url(url)
        logger.debug(f"Downloading file from {url}")
        return self._retrying(lambda: self._get_text(url), f"Downloading {url}")
