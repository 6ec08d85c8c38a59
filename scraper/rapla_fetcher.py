"""Upstream fetcher for Rapla week-view calendar pages."""
import logging
import math
from datetime import date, timedelta
from typing import Iterator, List, Optional, Tuple

import requests

from processor.errors import FetchError, FetchReason
from processor.models import RawPage, RequestDescriptor
from processor.request_normalizer import canonical_page

logger = logging.getLogger(__name__)

DateWindow = Tuple[date, date]


def shift_years(day: date, years: int) -> date:
    """Move a date by whole calendar years, mapping Feb 29 to Feb 28."""
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        return day.replace(year=day.year + years, day=28)


def date_window(today: date, cutoff_date: Optional[date] = None) -> DateWindow:
    """
    Compute the range of dates a calendar covers.

    Args:
        today: Current date
        cutoff_date: Optional lower bound that replaces the default start

    Returns:
        Tuple of (start, end); one year either side of today unless a
        cutoff date moves the start
    """
    start = cutoff_date if cutoff_date is not None else shift_years(today, -1)
    return start, shift_years(today, 1)


class RaplaFetcher:
    """Fetches the week view of a Rapla calendar page by page."""

    USER_AGENT = 'rapla-ics-feed/0.1'

    def __init__(
        self,
        timeout: int = 30,
        page_weeks: int = 26,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize the fetcher.

        Args:
            timeout: HTTP request timeout per page in seconds (default: 30)
            page_weeks: Number of weeks requested per page (default: 26)
            session: Optional requests session to reuse connections
        """
        if page_weeks < 1:
            raise ValueError(f"page_weeks must be positive, got {page_weeks}")
        self.timeout = timeout
        self.page_weeks = page_weeks
        if session is None:
            session = requests.Session()
            session.headers['User-Agent'] = self.USER_AGENT
        self.session = session

    def page_plan(self, window: DateWindow) -> Iterator[Tuple[date, int]]:
        """
        Split a date window into upstream pages.

        Args:
            window: Tuple of (start, end) dates

        Yields:
            Tuples of (page start date, number of weeks on the page); nothing
            when the window ends before it starts
        """
        start, end = window
        if end < start:
            return
        total_weeks = max(1, math.ceil((end - start).days / 7))
        for offset in range(0, total_weeks, self.page_weeks):
            yield start + timedelta(weeks=offset), min(self.page_weeks, total_weeks - offset)

    def fetch(self, descriptor: RequestDescriptor, window: DateWindow) -> List[RawPage]:
        """
        Fetch every page covering the window, in chronological order.

        Args:
            descriptor: Calendar to fetch
            window: Tuple of (start, end) dates

        Returns:
            List of RawPage objects

        Raises:
            FetchError: If any single page fails
        """
        plan = list(self.page_plan(window))
        logger.info(
            f"Fetching {descriptor.host}/rapla/{descriptor.page} from {window[0]} "
            f"to {window[1]} in {len(plan)} page(s)"
        )

        pages = []
        for index, (page_start, weeks) in enumerate(plan, 1):
            logger.debug(f"Fetching page {index}/{len(plan)} starting {page_start}")
            pages.append(self._fetch_page(descriptor, page_start, weeks))

        return pages

    def _fetch_page(self, descriptor: RequestDescriptor, page_start: date, weeks: int) -> RawPage:
        url = f"https://{descriptor.host}/rapla/{canonical_page(descriptor.page)}"
        params = {
            'day': page_start.day,
            'month': page_start.month,
            'year': page_start.year,
            'pages': weeks,
        }
        params.update(descriptor.params)

        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            logger.warning(f"Upstream request timed out after {self.timeout}s: {url}")
            raise FetchError(FetchReason.TIMEOUT, str(e), url=url)
        except requests.RequestException as e:
            logger.warning(f"Couldn't connect to upstream {url}: {e}")
            raise FetchError(FetchReason.TRANSPORT, str(e), url=url)

        if not 200 <= response.status_code < 300:
            logger.warning(f"Upstream returned status {response.status_code}: {url}")
            raise FetchError(
                FetchReason.HTTP_STATUS,
                f"upstream returned bad status code {response.status_code}",
                status_code=response.status_code,
                url=url
            )

        return RawPage(html=response.text, start_date=page_start, url=url)
