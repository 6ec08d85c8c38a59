"""Pipeline turning a calendar request into a cached ICS document."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence

from processor.calendar_encoder import CalendarEncoder
from processor.models import CalendarDocument, RequestDescriptor
from processor.request_normalizer import DEFAULT_HOST, normalize, parse_request
from scraper.rapla_fetcher import RaplaFetcher, date_window
from scraper.rapla_parser import RaplaScheduleParser
from storage.calendar_cache import CalendarCache

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CalendarService:
    """Serves calendars from the cache, building them from upstream on a miss."""

    def __init__(
        self,
        fetcher: RaplaFetcher,
        cache: CalendarCache,
        parser: Optional[RaplaScheduleParser] = None,
        encoder: Optional[CalendarEncoder] = None,
        allowed_hosts: Sequence[str] = (DEFAULT_HOST,),
        clock: Callable[[], datetime] = utc_now
    ):
        self.fetcher = fetcher
        self.cache = cache
        self.parser = parser or RaplaScheduleParser()
        self.encoder = encoder or CalendarEncoder()
        self.allowed_hosts = tuple(allowed_hosts)
        self._clock = clock

    def get_calendar(self, path: str, query: str = '') -> CalendarDocument:
        """
        Resolve a request to a calendar document.

        Args:
            path: Request path
            query: Raw query string

        Returns:
            CalendarDocument, possibly served from the cache

        Raises:
            InvalidRequest: If the request does not describe a calendar
            FetchError: If the upstream failed
            ParseError: If the upstream markup could not be parsed
        """
        descriptor = parse_request(path, query, self.allowed_hosts)
        key = normalize(descriptor)
        return self.cache.get_or_compute(key, lambda: self.build_calendar(descriptor))

    def build_calendar(self, descriptor: RequestDescriptor) -> CalendarDocument:
        """Fetch, parse and encode a calendar without consulting the cache."""
        started = time.monotonic()
        now = self._clock()
        window = date_window(now.date(), descriptor.cutoff_date)

        pages = self.fetcher.fetch(descriptor, window)
        name, events = self.parser.parse_pages(pages)
        document = self.encoder.encode(events, name=name, generated_at=now)

        logger.info(
            f"Built calendar '{name}' with {len(document.events)} event(s) "
            f"from {len(pages)} page(s) in {time.monotonic() - started:.2f}s"
        )
        return document
