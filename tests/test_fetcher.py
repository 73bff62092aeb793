import unittest
import os
import sys
from unittest.mock import MagicMock

import requests

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import LocationFilter
from errors import InvalidInputError, NetworkError
from fetcher import DirectoryClient, parse_filename, retry_with_backoff, exponential_backoff

BASE_URL = 'https://www.ncei.noaa.gov/pub/data/uscrn/products/hourly02'

YEAR_INDEX = """
<html><body><pre>
<a href="../">Parent Directory</a>
<a href="1999/">1999/</a>
<a href="2023/">2023/</a>
<a href="2024/">2024/</a>
<a href="2024/">2024/</a>
<a href="snapshots/">snapshots/</a>
<a href="readme.txt">readme.txt</a>
</pre></body></html>
"""

FILE_INDEX = """
<html><body><pre>
<a href="../">Parent Directory</a>
<a href="CRNH0203-2024-PA_Avondale_2_N.txt">CRNH0203-2024-PA_Avondale_2_N.txt</a>
<a href="CRNH0203-2024-CA_Bodega_6_WSW.txt">CRNH0203-2024-CA_Bodega_6_WSW.txt</a>
<a href="CRNH0203-2024-ABC_Nowhere.txt">CRNH0203-2024-ABC_Nowhere.txt</a>
<a href="CRNH0203-2024-PA_Avondale_2_N.txt">duplicate</a>
<a href="headers.txt">headers.txt</a>
<a href="CRNH0203-2024-TX_Austin_33_NW.csv">CRNH0203-2024-TX_Austin_33_NW.csv</a>
</pre></body></html>
"""


def make_response(text='', status_code=200):
    response = MagicMock()
    response.text = text
    response.status_code = status_code
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(
            f"{status_code} Error", response=response
        )
    return response


class TestParseFilename(unittest.TestCase):

    def test_full_name(self):
        info = parse_filename('CRNH0203-2024-PA_Avondale_2_N.txt', BASE_URL + '/')
        self.assertEqual(info.year, 2024)
        self.assertEqual(info.state, 'PA')
        self.assertEqual(info.station_label, 'Avondale_2_N')
        self.assertEqual(info.url, f'{BASE_URL}/2024/CRNH0203-2024-PA_Avondale_2_N.txt')

    def test_texas_name(self):
        info = parse_filename('CRNH0203-2024-TX_Austin_33_NW.txt', BASE_URL)
        self.assertEqual((info.year, info.state, info.station_label), (2024, 'TX', 'Austin_33_NW'))

    def test_missing_location_is_unknown(self):
        info = parse_filename('CRNH0203-2024-PA.txt', BASE_URL)
        self.assertEqual(info.state, 'PA')
        self.assertEqual(info.station_label, 'Unknown')

    def test_rejects_bad_names(self):
        self.assertIsNone(parse_filename('CRNH0203-PA_Avondale.txt', BASE_URL))
        self.assertIsNone(parse_filename('CRNH0203-abcd-PA_Avondale.txt', BASE_URL))
        self.assertIsNone(parse_filename('CRNH0203-2024-PENN_Avondale.txt', BASE_URL))


class TestRetryWithBackoff(unittest.TestCase):

    def test_backoff_doubles(self):
        self.assertEqual([exponential_backoff(n) for n in (1, 2, 3)], [1.0, 2.0, 4.0])

    def test_gives_up_after_max_attempts(self):
        sleeps = []
        operation = MagicMock(side_effect=NetworkError("boom", retryable=True))
        with self.assertRaises(NetworkError):
            retry_with_backoff(operation, max_attempts=3, sleep=sleeps.append)
        self.assertEqual(operation.call_count, 3)
        self.assertEqual(sleeps, [1.0, 2.0])

    def test_non_retryable_propagates_immediately(self):
        sleeps = []
        operation = MagicMock(side_effect=ValueError("local"))
        with self.assertRaises(ValueError):
            retry_with_backoff(operation, sleep=sleeps.append)
        self.assertEqual(operation.call_count, 1)
        self.assertEqual(sleeps, [])


class TestDirectoryClient(unittest.TestCase):
    """HTTP is mocked at the requests.Session level."""

    def setUp(self):
        self.session = MagicMock()
        self.sleeps = []
        self.client = DirectoryClient(BASE_URL, session=self.session, sleep=self.sleeps.append)

    def test_list_years(self):
        self.session.get.return_value = make_response(YEAR_INDEX)
        self.assertEqual(self.client.list_years(), [2023, 2024])
        self.session.get.assert_called_once_with(f'{BASE_URL}/', timeout=60)

    def test_list_files_for_year(self):
        self.session.get.return_value = make_response(FILE_INDEX)
        files = self.client.list_files_for_year(2024)
        self.assertEqual(
            [f.name for f in files],
            ['CRNH0203-2024-PA_Avondale_2_N.txt', 'CRNH0203-2024-CA_Bodega_6_WSW.txt'],
        )
        self.assertEqual(files[1].station_label, 'Bodega_6_WSW')
        self.session.get.assert_called_once_with(f'{BASE_URL}/2024/', timeout=60)

    def test_list_files_with_state_filter(self):
        self.session.get.return_value = make_response(FILE_INDEX)
        files = self.client.list_files_for_year(2024, LocationFilter(states=['CA']))
        self.assertEqual([f.state for f in files], ['CA'])

    def test_list_files_with_pattern_filter(self):
        self.session.get.return_value = make_response(FILE_INDEX)
        files = self.client.list_files_for_year(2024, LocationFilter(patterns=['*PA_Avondale*']))
        self.assertEqual([f.name for f in files], ['CRNH0203-2024-PA_Avondale_2_N.txt'])

    def test_station_only_filter_keeps_every_file(self):
        self.session.get.return_value = make_response(FILE_INDEX)
        files = self.client.list_files_for_year(2024, LocationFilter(stations=[3761, 12345]))
        self.assertEqual(len(files), 2)

    def test_download_retries_server_errors(self):
        self.session.get.side_effect = [
            make_response(status_code=503),
            make_response(status_code=502),
            make_response('data'),
        ]
        url = f'{BASE_URL}/2024/CRNH0203-2024-PA_Avondale_2_N.txt'
        self.assertEqual(self.client.download_file(url), 'data')
        self.assertEqual(self.session.get.call_count, 3)
        self.assertEqual(self.sleeps, [1.0, 2.0])

    def test_download_retries_timeouts(self):
        self.session.get.side_effect = [requests.Timeout("slow"), make_response('data')]
        url = f'{BASE_URL}/2024/CRNH0203-2024-PA_Avondale_2_N.txt'
        self.assertEqual(self.client.download_file(url), 'data')
        self.assertEqual(self.sleeps, [1.0])

    def test_download_gives_up_after_three_attempts(self):
        self.session.get.side_effect = requests.ConnectionError("refused")
        url = f'{BASE_URL}/2024/CRNH0203-2024-PA_Avondale_2_N.txt'
        with self.assertRaises(NetworkError) as ctx:
            self.client.download_file(url)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(self.session.get.call_count, 3)

    def test_client_error_is_not_retried(self):
        self.session.get.return_value = make_response(status_code=404)
        url = f'{BASE_URL}/2024/CRNH0203-2024-PA_Missing.txt'
        with self.assertRaises(NetworkError) as ctx:
            self.client.download_file(url)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(self.session.get.call_count, 1)
        self.assertEqual(self.sleeps, [])

    def test_plain_http_is_rejected_without_request(self):
        with self.assertRaises(InvalidInputError) as ctx:
            self.client.download_file('http://www.ncei.noaa.gov/pub/data/file.txt')
        self.assertIn('must use HTTPS', str(ctx.exception))
        self.session.get.assert_not_called()

    def test_unknown_host_is_rejected_without_request(self):
        with self.assertRaises(InvalidInputError) as ctx:
            self.client.download_file('https://evil.example.com/file.txt')
        self.assertIn('not in allowed list', str(ctx.exception))
        self.session.get.assert_not_called()

    def test_base_url_host_is_allowed(self):
        session = MagicMock()
        session.get.return_value = make_response('mirror data')
        client = DirectoryClient('https://mirror.example.org/hourly02', session=session)
        self.assertEqual(client.download_file('https://mirror.example.org/hourly02/2024/a.txt'), 'mirror data')


if __name__ == '__main__':
    unittest.main()
