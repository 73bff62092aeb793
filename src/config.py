"""
Configuration loading for the ingestion service.

The YAML file may reference environment variables as ``${NAME}``; all of them
must be set. Values are validated once at startup so the pipeline can trust
them afterwards.
"""

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

import yaml
from sqlalchemy.engine import URL

from errors import ConfigError

logger = logging.getLogger(__name__)

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")

FIRST_ARCHIVE_YEAR = 2000


@dataclass
class DatabaseConfig:
    host: str = ""
    port: int = 5432
    name: str = ""
    user: str = ""
    password: str = ""
    max_connections: int = 5
    url: Optional[str] = None

    def connection_url(self):
        """SQLAlchemy URL; an explicit ``url`` wins over the assembled one."""
        if self.url:
            return self.url
        return URL.create(
            "postgresql+psycopg2",
            username=self.user,
            password=self.password,
            host=self.host,
            port=self.port,
            database=self.name,
        ).render_as_string(hide_password=False)


@dataclass
class SchedulerConfig:
    interval_minutes: int = 60
    initial_delay_seconds: int = 10


@dataclass
class YearSelection:
    """Either a keyword (``current`` / ``all``) or an explicit list of years."""

    kind: str
    years: List[int] = field(default_factory=list)

    CURRENT = "current"
    ALL = "all"
    EXPLICIT = "explicit"

    @classmethod
    def from_value(cls, value):
        if isinstance(value, str):
            keyword = value.strip().lower()
            if keyword not in (cls.CURRENT, cls.ALL):
                raise ConfigError(
                    f"years_to_fetch must be 'current', 'all' or a list of years, got '{value}'"
                )
            return cls(kind=keyword)
        if isinstance(value, int) and not isinstance(value, bool):
            return cls(kind=cls.EXPLICIT, years=[value])
        if isinstance(value, (list, tuple)):
            years = []
            for item in value:
                try:
                    years.append(int(item))
                except (TypeError, ValueError):
                    raise ConfigError(f"Invalid year in years_to_fetch: {item!r}")
            return cls(kind=cls.EXPLICIT, years=years)
        raise ConfigError(f"Unsupported years_to_fetch value: {value!r}")

    def resolve(self, current_year=None):
        """Concrete list of years to process."""
        if current_year is None:
            current_year = datetime.now(timezone.utc).year
        if self.kind == self.CURRENT:
            return [current_year]
        if self.kind == self.ALL:
            return list(range(FIRST_ARCHIVE_YEAR, current_year + 1))
        return list(self.years)


@dataclass
class SourceConfig:
    base_url: str = ""
    years_to_fetch: YearSelection = field(
        default_factory=lambda: YearSelection(kind=YearSelection.CURRENT)
    )
    request_delay_ms: int = 500
    parse_failure_threshold: float = 0.10


def extract_state_from_filename(filename):
    # Format: CRNH0203-{YEAR}-{STATE}_{LOCATION}_{DISTANCE}_{DIRECTION}.txt
    parts = filename.split("-", 2)
    if len(parts) < 3:
        return None
    state = parts[2].split("_", 1)[0]
    if len(state) == 2:
        return state
    return None


@dataclass
class LocationFilter:
    """
    Which stations to ingest.

    Files are narrowed by state and glob pattern before download; station ids
    live inside the file, so they can only be checked after parsing.
    """

    states: List[str] = field(default_factory=list)
    stations: List[int] = field(default_factory=list)
    patterns: List[str] = field(default_factory=list)

    def is_empty(self):
        return not self.states and not self.stations and not self.patterns

    def matches_file(self, filename):
        if self.is_empty():
            return True

        # Station-only filter: every file has to be downloaded to find out
        if not self.states and not self.patterns:
            return True

        state = extract_state_from_filename(filename)
        if state and state.upper() in {s.upper() for s in self.states}:
            return True

        return any(fnmatch.fnmatchcase(filename, pattern) for pattern in self.patterns)

    def matches_station(self, station_id):
        if not self.stations:
            return True
        return station_id in self.stations


@dataclass
class Config:
    database: DatabaseConfig
    scheduler: SchedulerConfig
    source: SourceConfig
    locations: LocationFilter = field(default_factory=LocationFilter)

    def validate(self):
        """Raise ConfigError on the first invalid value."""
        db = self.database
        if not db.url:
            for env_name, value in (
                ("DB_HOST", db.host),
                ("DB_NAME", db.name),
                ("DB_USER", db.user),
                ("DB_PASSWORD", db.password),
            ):
                if "${" in str(value):
                    raise ConfigError(
                        f"{env_name} environment variable is not set. "
                        "Please set it or create a .env file."
                    )
            if not db.host:
                raise ConfigError("Database host cannot be empty")
            if not db.name:
                raise ConfigError("Database name cannot be empty")
            if not db.user:
                raise ConfigError("Database user cannot be empty")
            if not 0 < db.port <= 65535:
                raise ConfigError(f"Database port {db.port} out of range (1-65535)")
        if db.max_connections < 1:
            raise ConfigError("Database max_connections must be at least 1")
        if db.max_connections > 100:
            raise ConfigError(
                f"Database max_connections {db.max_connections} seems too high, "
                "maximum recommended is 100"
            )

        if self.scheduler.interval_minutes <= 0:
            raise ConfigError("Scheduler interval_minutes must be greater than 0")
        if self.scheduler.interval_minutes < 5:
            logger.warning(
                f"Scheduler interval of {self.scheduler.interval_minutes} minutes is very short, "
                "consider using at least 5 minutes"
            )
        if self.scheduler.initial_delay_seconds < 0:
            raise ConfigError("Scheduler initial_delay_seconds cannot be negative")

        parsed = urlparse(self.source.base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ConfigError(f"Invalid source base_url '{self.source.base_url}'")
        if parsed.scheme != "https":
            raise ConfigError(f"Source base_url must use HTTPS, got: {parsed.scheme}")
        if self.source.request_delay_ms < 0:
            raise ConfigError("Source request_delay_ms cannot be negative")
        if not 0.0 <= self.source.parse_failure_threshold <= 1.0:
            raise ConfigError(
                f"Source parse_failure_threshold must be between 0 and 1, "
                f"got {self.source.parse_failure_threshold}"
            )

        for state in self.locations.states:
            if len(state) != 2:
                raise ConfigError(
                    f"State code '{state}' must be exactly 2 characters (e.g., 'CA', 'TX')"
                )


def expand_env_vars(content, environ=None):
    """Substitute ``${NAME}`` placeholders; every referenced variable must exist."""
    environ = os.environ if environ is None else environ
    missing = []

    def replace(match):
        name = match.group(1)
        if name not in environ:
            missing.append(name)
            return match.group(0)
        return environ[name]

    expanded = ENV_VAR_PATTERN.sub(replace, content)
    if missing:
        names = ", ".join(dict.fromkeys(missing))
        plural = "s" if len(set(missing)) > 1 else ""
        raise ConfigError(f"Missing required environment variable{plural}: {names}")
    return expanded


def _as_int(value, name):
    # Ports and counts may arrive as strings after env substitution
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: '{value}'")


def _as_float(value, name):
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid {name}: '{value}'")


def _section(raw, name, required=True):
    value = raw.get(name)
    if value is None:
        if required:
            raise ConfigError(f"Missing required config section: {name}")
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Config section '{name}' must be a mapping")
    return value


def config_from_dict(raw):
    """Build and validate a Config from already-parsed YAML data."""
    if not isinstance(raw, dict):
        raise ConfigError("Config file must contain a mapping at the top level")

    db = _section(raw, "database")
    sched = _section(raw, "scheduler")
    source = _section(raw, "source")
    locations = _section(raw, "locations", required=False)

    if "base_url" not in source:
        raise ConfigError("Missing required config value: source.base_url")
    if "interval_minutes" not in sched:
        raise ConfigError("Missing required config value: scheduler.interval_minutes")

    config = Config(
        database=DatabaseConfig(
            host=str(db.get("host", "")),
            port=_as_int(db.get("port", 5432), "port number"),
            name=str(db.get("name", "")),
            user=str(db.get("user", "")),
            password=str(db.get("password", "")),
            max_connections=_as_int(db.get("max_connections", 5), "max_connections"),
            url=db.get("url"),
        ),
        scheduler=SchedulerConfig(
            interval_minutes=_as_int(sched["interval_minutes"], "interval_minutes"),
            initial_delay_seconds=_as_int(
                sched.get("initial_delay_seconds", 10), "initial_delay_seconds"
            ),
        ),
        source=SourceConfig(
            base_url=str(source["base_url"]).rstrip("/"),
            years_to_fetch=YearSelection.from_value(source.get("years_to_fetch", "current")),
            request_delay_ms=_as_int(source.get("request_delay_ms", 500), "request_delay_ms"),
            parse_failure_threshold=_as_float(
                source.get("parse_failure_threshold", 0.10), "parse_failure_threshold"
            ),
        ),
        locations=LocationFilter(
            states=[str(s).upper() for s in locations.get("states") or []],
            stations=[_as_int(s, "station id") for s in locations.get("stations") or []],
            patterns=[str(p) for p in locations.get("patterns") or []],
        ),
    )
    config.validate()
    return config


def load_config(path):
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}") from e

    expanded = expand_env_vars(content)

    try:
        raw = yaml.safe_load(expanded)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config: {e}") from e

    return config_from_dict(raw)
