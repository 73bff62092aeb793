"""
Parser for USCRN hourly02 data files.

Each non-blank line is one hourly observation: whitespace-separated tokens in
fixed positions. Missing measurements are written as -9999 / -9999.0.
"""

import logging
from datetime import datetime

from errors import ParseError

logger = logging.getLogger(__name__)

MISSING_VALUE = -9999.0
MISSING_VALUE_INT = -9999
MISSING_TOLERANCE = 0.1

MIN_FIELDS = 28

# Fail the whole file if more than 10% of non-blank lines fail to parse
DEFAULT_FAILURE_THRESHOLD = 0.10

# Positional layout after the six required tokens: (index, field name, kind)
OPTIONAL_FIELDS = [
    (6, 'longitude', 'float'),
    (7, 'latitude', 'float'),
    (8, 't_calc', 'float'),
    (9, 't_hr_avg', 'float'),
    (10, 't_max', 'float'),
    (11, 't_min', 'float'),
    (12, 'p_calc', 'float'),
    (13, 'solarad', 'float'),
    (14, 'solarad_flag', 'int'),
    (15, 'solarad_max', 'float'),
    (16, 'solarad_max_flag', 'int'),
    (17, 'solarad_min', 'float'),
    (18, 'solarad_min_flag', 'int'),
    (19, 'sur_temp_type', 'str'),
    (20, 'sur_temp', 'float'),
    (21, 'sur_temp_flag', 'int'),
    (22, 'sur_temp_max', 'float'),
    (23, 'sur_temp_max_flag', 'int'),
    (24, 'sur_temp_min', 'float'),
    (25, 'sur_temp_min_flag', 'int'),
    (26, 'rh_hr_avg', 'float'),
    (27, 'rh_hr_avg_flag', 'int'),
    (28, 'soil_moisture_5', 'float'),
    (29, 'soil_moisture_10', 'float'),
    (30, 'soil_moisture_20', 'float'),
    (31, 'soil_moisture_50', 'float'),
    (32, 'soil_moisture_100', 'float'),
    (33, 'soil_temp_5', 'float'),
    (34, 'soil_temp_10', 'float'),
    (35, 'soil_temp_20', 'float'),
    (36, 'soil_temp_50', 'float'),
    (37, 'soil_temp_100', 'float'),
]


class ParseStats:
    """Line counts for one parsed file."""

    def __init__(self):
        self.total_lines = 0
        self.parsed_successfully = 0
        self.parse_failures = 0
        self.empty_lines = 0
        self.failure_rate = 0.0

    @property
    def non_empty_lines(self):
        return self.total_lines - self.empty_lines

    def finalize(self):
        non_empty = self.non_empty_lines
        self.failure_rate = self.parse_failures / non_empty if non_empty > 0 else 0.0

    def exceeds_threshold(self, threshold):
        return self.failure_rate > threshold

    def __repr__(self):
        return (f"ParseStats(total_lines={self.total_lines}, parsed_successfully={self.parsed_successfully}, "
                f"parse_failures={self.parse_failures}, empty_lines={self.empty_lines}, "
                f"failure_rate={self.failure_rate:.3f})")


def parse_int(token):
    try:
        return int(token)
    except ValueError:
        raise ParseError(f"Failed to parse int '{token}'")


def parse_optional_int(token):
    """Integer value, or None for the missing sentinel or an unreadable token."""
    if token is None:
        return None
    try:
        value = int(token)
    except ValueError:
        return None
    return None if value == MISSING_VALUE_INT else value


def parse_optional_float(token):
    """Float value, or None for anything within 0.1 of -9999.0 or an unreadable token."""
    if token is None:
        return None
    try:
        value = float(token)
    except ValueError:
        return None
    return None if abs(value - MISSING_VALUE) < MISSING_TOLERANCE else value


def parse_optional_str(token):
    if token is None or token == str(MISSING_VALUE_INT):
        return None
    return token


_OPTIONAL_PARSERS = {
    'float': parse_optional_float,
    'int': parse_optional_int,
    'str': parse_optional_str,
}


def parse_datetime(date, time):
    """Combine YYYYMMDD and HHMM integers into a naive datetime, validating each part."""
    year = date // 10000
    month = (date % 10000) // 100
    day = date % 100

    hour = time // 100
    minute = time % 100

    # Validate ranges before creating date/time
    if year < 1900 or year > 2100:
        raise ParseError(f"Year {year} out of valid range (1900-2100) from date {date}")
    if month < 1 or month > 12:
        raise ParseError(f"Month {month} out of valid range (1-12) from date {date}")
    if day < 1 or day > 31:
        raise ParseError(f"Day {day} out of valid range (1-31) from date {date}")
    if time < 0 or hour > 23:
        raise ParseError(f"Hour {hour} out of valid range (0-23) from time {time}")
    if minute > 59:
        raise ParseError(f"Minute {minute} out of valid range (0-59) from time {time}")

    try:
        return datetime(year, month, day, hour, minute)
    except ValueError:
        raise ParseError(
            f"Invalid date combination: year={year}, month={month}, day={day} from {date}"
        )


def parse_line(line):
    """Parse one data line into an observation record dict."""
    fields = line.split()

    if len(fields) < MIN_FIELDS:
        raise ParseError(f"Expected at least {MIN_FIELDS} fields, got {len(fields)}")

    station_id = parse_int(fields[0])
    utc_date = parse_int(fields[1])
    utc_time = parse_int(fields[2])
    lst_date = parse_int(fields[3])
    lst_time = parse_int(fields[4])

    record = {
        'station_id': station_id,
        'utc_datetime': parse_datetime(utc_date, utc_time),
        'lst_datetime': parse_datetime(lst_date, lst_time),
        'crx_version': fields[5],
    }

    for index, name, kind in OPTIONAL_FIELDS:
        token = fields[index] if index < len(fields) else None
        record[name] = _OPTIONAL_PARSERS[kind](token)

    return record


def parse_content(content, failure_threshold=DEFAULT_FAILURE_THRESHOLD):
    """
    Parse a whole data file.

    Returns (records, stats). Lines that fail are logged and skipped, but if
    the failure rate among non-blank lines exceeds ``failure_threshold`` the
    file is rejected with a ParseError carrying the stats.
    """
    records = []
    stats = ParseStats()

    for line_num, raw_line in enumerate(content.splitlines(), start=1):
        stats.total_lines += 1

        line = raw_line.strip()
        if not line:
            stats.empty_lines += 1
            continue

        try:
            records.append(parse_line(line))
            stats.parsed_successfully += 1
        except ParseError as e:
            stats.parse_failures += 1
            logger.warning(
                f"Failed to parse line {line_num} (failure {stats.parse_failures}/{stats.non_empty_lines}): "
                f"{e} - {line}"
            )

    stats.finalize()

    if stats.exceeds_threshold(failure_threshold):
        raise ParseError(
            f"Parse failure rate {stats.failure_rate * 100:.1f}% exceeds threshold "
            f"{failure_threshold * 100:.1f}%: {stats.parse_failures} failures out of "
            f"{stats.non_empty_lines} non-empty lines",
            stats=stats,
        )

    if not records and stats.non_empty_lines > 0:
        raise ParseError("No observations successfully parsed from non-empty file", stats=stats)

    return records, stats
