"""Unit tests for RaplaFetcher."""
from datetime import date
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
import responses
from requests.exceptions import ConnectionError, Timeout

from processor.errors import FetchError, FetchReason
from processor.models import RequestDescriptor
from scraper.rapla_fetcher import RaplaFetcher, date_window, shift_years

UPSTREAM_URL = "https://rapla.dhbw.de/rapla/calendar"


@pytest.fixture
def descriptor():
    """Create a calendar request descriptor."""
    return RequestDescriptor(
        host='rapla.dhbw.de',
        page='calendar',
        params=(('key', 'abc'), ('salt', 'def'))
    )


def query_of(call):
    return {name: values[0] for name, values in parse_qs(urlsplit(call.request.url).query).items()}


class TestDateWindow:
    """Test cases for the fetch window."""

    def test_default_window(self):
        """Test one year either side of today."""
        assert date_window(date(2024, 6, 1)) == (date(2023, 6, 1), date(2025, 6, 1))

    def test_cutoff_replaces_lower_bound(self):
        """Test that a cutoff date moves the start outright."""
        assert date_window(date(2024, 6, 1), date(2024, 1, 1)) == (date(2024, 1, 1), date(2025, 6, 1))

    def test_cutoff_older_than_a_year(self):
        """Test that an old cutoff is not clamped to the default start."""
        assert date_window(date(2024, 6, 1), date(2020, 9, 1))[0] == date(2020, 9, 1)

    def test_leap_day(self):
        """Test that Feb 29 maps to Feb 28 in non-leap years."""
        assert shift_years(date(2024, 2, 29), 1) == date(2025, 2, 28)
        assert date_window(date(2024, 2, 29)) == (date(2023, 2, 28), date(2025, 2, 28))


class TestPagePlan:
    """Test cases for splitting a window into pages."""

    def test_plan_covers_window(self):
        """Test that pages are consecutive and the last one is shortened."""
        fetcher = RaplaFetcher(page_weeks=26)
        plan = list(fetcher.page_plan((date(2024, 1, 1), date(2025, 6, 1))))

        assert plan == [
            (date(2024, 1, 1), 26),
            (date(2024, 7, 1), 26),
            (date(2024, 12, 30), 22),
        ]

    def test_default_window_page_count(self):
        """Test the number of requests for a default two-year window."""
        fetcher = RaplaFetcher(page_weeks=26)
        plan = list(fetcher.page_plan(date_window(date(2024, 6, 1))))

        assert len(plan) == 5
        assert sum(weeks for _, weeks in plan) == 105

    def test_single_week_pages(self):
        """Test one request per calendar week."""
        fetcher = RaplaFetcher(page_weeks=1)
        plan = list(fetcher.page_plan((date(2024, 1, 1), date(2024, 1, 22))))

        assert plan == [(date(2024, 1, 1), 1), (date(2024, 1, 8), 1), (date(2024, 1, 15), 1)]

    def test_inverted_window_yields_no_pages(self):
        """Test that a cutoff after the window end plans no requests."""
        fetcher = RaplaFetcher(page_weeks=26)

        assert list(fetcher.page_plan((date(2026, 1, 1), date(2025, 6, 1)))) == []

    def test_invalid_page_weeks(self):
        """Test that a non-positive page size is rejected."""
        with pytest.raises(ValueError):
            RaplaFetcher(page_weeks=0)


class TestRaplaFetcher:
    """Test cases for fetching pages."""

    @responses.activate
    def test_fetch_pages_in_order(self, descriptor):
        """Test one request per page with the page's start date."""
        for body in ('<html>one</html>', '<html>two</html>', '<html>three</html>'):
            responses.add(responses.GET, UPSTREAM_URL, body=body, status=200)

        fetcher = RaplaFetcher(timeout=10, page_weeks=26)
        pages = fetcher.fetch(descriptor, (date(2024, 1, 1), date(2025, 6, 1)))

        assert [page.html for page in pages] == ['<html>one</html>', '<html>two</html>', '<html>three</html>']
        assert [page.start_date for page in pages] == [date(2024, 1, 1), date(2024, 7, 1), date(2024, 12, 30)]
        assert len(responses.calls) == 3

        first = query_of(responses.calls[0])
        assert first == {
            'day': '1', 'month': '1', 'year': '2024', 'pages': '26',
            'key': 'abc', 'salt': 'def'
        }
        last = query_of(responses.calls[2])
        assert (last['day'], last['month'], last['year'], last['pages']) == ('30', '12', '2024', '22')

    @responses.activate
    def test_http_error_aborts_fetch(self, descriptor):
        """Test that a 500 on one of three pages fails the whole fetch."""
        responses.add(responses.GET, UPSTREAM_URL, body='<html>one</html>', status=200)
        responses.add(responses.GET, UPSTREAM_URL, body='Server Error', status=500)
        responses.add(responses.GET, UPSTREAM_URL, body='<html>three</html>', status=200)

        fetcher = RaplaFetcher(page_weeks=26)

        with pytest.raises(FetchError) as exc_info:
            fetcher.fetch(descriptor, (date(2024, 1, 1), date(2025, 6, 1)))

        assert exc_info.value.reason == FetchReason.HTTP_STATUS
        assert exc_info.value.status_code == 500
        assert exc_info.value.url == UPSTREAM_URL
        assert len(responses.calls) == 2

    @responses.activate
    def test_not_found(self, descriptor):
        """Test that a 404 is reported with its status code."""
        responses.add(responses.GET, UPSTREAM_URL, body='Not Found', status=404)

        with pytest.raises(FetchError) as exc_info:
            RaplaFetcher().fetch(descriptor, (date(2024, 1, 1), date(2024, 2, 1)))

        assert exc_info.value.status_code == 404

    @responses.activate
    def test_timeout(self, descriptor):
        """Test timeout handling without retries."""
        responses.add(responses.GET, UPSTREAM_URL, body=Timeout("Request timed out"))

        with pytest.raises(FetchError) as exc_info:
            RaplaFetcher(timeout=1).fetch(descriptor, (date(2024, 1, 1), date(2024, 2, 1)))

        assert exc_info.value.reason == FetchReason.TIMEOUT
        assert len(responses.calls) == 1

    @responses.activate
    def test_transport_error(self, descriptor):
        """Test connection failures."""
        responses.add(responses.GET, UPSTREAM_URL, body=ConnectionError("Connection refused"))

        with pytest.raises(FetchError) as exc_info:
            RaplaFetcher().fetch(descriptor, (date(2024, 1, 1), date(2024, 2, 1)))

        assert exc_info.value.reason == FetchReason.TRANSPORT
        assert 'Connection refused' in exc_info.value.details

    @responses.activate
    def test_inverted_window_fetches_nothing(self, descriptor):
        """Test that an empty page plan issues no upstream requests."""
        pages = RaplaFetcher().fetch(descriptor, (date(2026, 1, 1), date(2025, 6, 1)))

        assert pages == []
        assert len(responses.calls) == 0

    @responses.activate
    def test_page_name_lower_cased_in_url(self):
        """Test that the fetch URL uses the same page spelling as the cache key."""
        responses.add(responses.GET, UPSTREAM_URL, body='<html></html>', status=200)
        descriptor = RequestDescriptor(
            host='rapla.dhbw.de',
            page='Calendar',
            params=(('key', 'abc'), ('salt', 'def'))
        )

        pages = RaplaFetcher().fetch(descriptor, (date(2024, 1, 1), date(2024, 1, 8)))

        assert pages[0].url == UPSTREAM_URL
        assert urlsplit(responses.calls[0].request.url).path == '/rapla/calendar'

    @responses.activate
    def test_user_agent(self, descriptor):
        """Test that the fetcher identifies itself to the upstream."""
        responses.add(responses.GET, UPSTREAM_URL, body='<html></html>', status=200)

        RaplaFetcher().fetch(descriptor, (date(2024, 1, 1), date(2024, 1, 8)))

        assert responses.calls[0].request.headers['User-Agent'] == RaplaFetcher.USER_AGENT

    @responses.activate
    def test_injected_session_keeps_its_headers(self, descriptor):
        """Test that a caller-provided session is used as configured."""
        responses.add(responses.GET, UPSTREAM_URL, body='<html></html>', status=200)
        session = requests.Session()
        session.headers['User-Agent'] = 'custom-agent/1.0'

        RaplaFetcher(session=session).fetch(descriptor, (date(2024, 1, 1), date(2024, 1, 8)))

        assert responses.calls[0].request.headers['User-Agent'] == 'custom-agent/1.0'
