import unittest
import os
import sys
from datetime import datetime

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from errors import ParseError
from record_parser import (
    parse_line, parse_content, parse_datetime, parse_optional_float, parse_optional_int, ParseStats
)


def make_line(station_id='3761', utc_date='20240101', utc_time='0100', t_calc='2.1'):
    """One full-width hourly02 line for Avondale, PA."""
    return (
        f"{station_id} {utc_date} {utc_time} 20231231 2000 3 -75.68 39.69 "
        f"{t_calc} 2.3 2.6 1.9 0.0 0 0 0 0 0 0 C 1.5 0 2.0 0 1.0 0 85.0 0 "
        f"0.321 0.330 -99.000 -99.000 -99.000 3.5 4.1 -9999.0 -9999.0 -9999.0"
    )


class TestOptionalValues(unittest.TestCase):
    """Missing-value sentinels."""

    def test_float_sentinel_becomes_none(self):
        self.assertIsNone(parse_optional_float('-9999.0'))
        self.assertIsNone(parse_optional_float('-9999'))
        self.assertIsNone(parse_optional_float('-9999.05'))

    def test_float_near_sentinel_is_kept(self):
        self.assertEqual(parse_optional_float('-9998.8'), -9998.8)
        self.assertEqual(parse_optional_float('-99.000'), -99.0)

    def test_int_sentinel_is_exact(self):
        self.assertIsNone(parse_optional_int('-9999'))
        self.assertEqual(parse_optional_int('-9998'), -9998)
        self.assertEqual(parse_optional_int('3'), 3)

    def test_unreadable_tokens_are_absent(self):
        self.assertIsNone(parse_optional_float('abc'))
        self.assertIsNone(parse_optional_int('1.5'))


class TestParseDatetime(unittest.TestCase):

    def test_valid(self):
        self.assertEqual(parse_datetime(20240229, 2359), datetime(2024, 2, 29, 23, 59))

    def test_impossible_calendar_date(self):
        with self.assertRaises(ParseError) as ctx:
            parse_datetime(20230230, 0)
        self.assertIn('Invalid date combination', str(ctx.exception))

    def test_month_out_of_range(self):
        with self.assertRaises(ParseError) as ctx:
            parse_datetime(20241301, 0)
        self.assertIn('Month 13', str(ctx.exception))

    def test_hour_and_minute_out_of_range(self):
        with self.assertRaises(ParseError):
            parse_datetime(20240101, 2400)
        with self.assertRaises(ParseError):
            parse_datetime(20240101, 60)

    def test_year_out_of_range(self):
        with self.assertRaises(ParseError):
            parse_datetime(18991231, 0)


class TestParseLine(unittest.TestCase):

    def test_full_line(self):
        record = parse_line(make_line())
        self.assertEqual(record['station_id'], 3761)
        self.assertEqual(record['utc_datetime'], datetime(2024, 1, 1, 1, 0))
        self.assertEqual(record['lst_datetime'], datetime(2023, 12, 31, 20, 0))
        self.assertEqual(record['crx_version'], '3')
        self.assertEqual(record['longitude'], -75.68)
        self.assertEqual(record['latitude'], 39.69)
        self.assertEqual(record['t_calc'], 2.1)
        self.assertEqual(record['sur_temp_type'], 'C')
        self.assertEqual(record['rh_hr_avg'], 85.0)
        self.assertEqual(record['soil_moisture_5'], 0.321)
        self.assertEqual(record['soil_temp_10'], 4.1)
        self.assertIsNone(record['soil_temp_20'])
        self.assertIsNone(record['soil_temp_100'])

    def test_sentinel_measurement(self):
        record = parse_line(make_line(t_calc='-9999.0'))
        self.assertIsNone(record['t_calc'])

    def test_short_row_keeps_trailing_fields_absent(self):
        tokens = make_line().split()[:28]
        record = parse_line(' '.join(tokens))
        self.assertEqual(record['rh_hr_avg_flag'], 0)
        self.assertIsNone(record['soil_moisture_5'])
        self.assertIsNone(record['soil_temp_100'])

    def test_too_few_fields(self):
        tokens = make_line().split()[:27]
        with self.assertRaises(ParseError) as ctx:
            parse_line(' '.join(tokens))
        self.assertIn('at least 28 fields', str(ctx.exception))

    def test_bad_station_id(self):
        with self.assertRaises(ParseError):
            parse_line(make_line(station_id='ABC'))


class TestParseContent(unittest.TestCase):

    def test_two_line_file_with_blank_line(self):
        content = make_line(utc_time='0100') + "\n\n" + make_line(utc_time='0200') + "\n"
        records, stats = parse_content(content)
        self.assertEqual(len(records), 2)
        self.assertEqual(stats.total_lines, 3)
        self.assertEqual(stats.empty_lines, 1)
        self.assertEqual(stats.parsed_successfully, 2)
        self.assertEqual(stats.parse_failures, 0)
        self.assertEqual(records[1]['utc_datetime'], datetime(2024, 1, 1, 2, 0))

    def test_empty_content(self):
        records, stats = parse_content("")
        self.assertEqual(records, [])
        self.assertEqual(stats.non_empty_lines, 0)
        self.assertEqual(stats.failure_rate, 0.0)

    def test_failure_rate_at_threshold_is_accepted(self):
        lines = [make_line(utc_time=f"{hour:02d}00") for hour in range(9)]
        lines.append("garbage line")
        records, stats = parse_content("\n".join(lines), failure_threshold=0.10)
        self.assertEqual(len(records), 9)
        self.assertEqual(stats.parse_failures, 1)
        self.assertAlmostEqual(stats.failure_rate, 0.10)

    def test_failure_rate_above_threshold_is_rejected(self):
        lines = [make_line(utc_time=f"{hour:02d}00") for hour in range(8)]
        lines.extend(["garbage line", "more garbage"])
        with self.assertRaises(ParseError) as ctx:
            parse_content("\n".join(lines), failure_threshold=0.10)
        message = str(ctx.exception)
        self.assertIn('20.0%', message)
        self.assertIn('10.0%', message)
        self.assertEqual(ctx.exception.stats.parse_failures, 2)
        self.assertEqual(ctx.exception.stats.non_empty_lines, 10)

    def test_nothing_parsed(self):
        with self.assertRaises(ParseError) as ctx:
            parse_content("bad\nworse\n", failure_threshold=1.0)
        self.assertIn('No observations successfully parsed', str(ctx.exception))


class TestParseStats(unittest.TestCase):

    def test_finalize(self):
        stats = ParseStats()
        stats.total_lines = 5
        stats.empty_lines = 1
        stats.parse_failures = 1
        stats.finalize()
        self.assertEqual(stats.failure_rate, 0.25)
        self.assertTrue(stats.exceeds_threshold(0.2))
        self.assertFalse(stats.exceeds_threshold(0.25))


if __name__ == '__main__':
    unittest.main()
