"""Parser for the Rapla week view."""
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, List, Tuple
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup, NavigableString, Tag

from processor.errors import ParseError, ParseReason
from processor.models import RawPage, ScrapedEvent

logger = logging.getLogger(__name__)

UPSTREAM_TIMEZONE = ZoneInfo('Europe/Berlin')

# Blocks without an end time last until 18:00, blocks starting at 00:00
# are displayed as starting at 08:00.
FULL_DAY_END = time(18, 0)
FULL_DAY_START = time(8, 0)

_TIME_RANGE = re.compile(r'^(\d{1,2}:\d{2})\s*-\s*(\d{1,2}:\d{2})?$')
_DAY_MONTH = re.compile(r'(\d{1,2})\.(\d{1,2})\.?')
_WHITESPACE = re.compile(r'\s+')


class MalformedBlock(ValueError):
    """A single calendar block could not be decoded."""


def to_utc(day: date, local_time: time) -> datetime:
    """Interpret a wall-clock time on a day in the upstream time zone as UTC."""
    local = datetime.combine(day, local_time, tzinfo=UPSTREAM_TIMEZONE)
    return local.astimezone(timezone.utc)


def _clean(text: str) -> str:
    return _WHITESPACE.sub(' ', text.replace('\xa0', ' ')).strip()


class RaplaScheduleParser:
    """Extracts events from Rapla week-view markup."""

    def parse(self, page: RawPage) -> List[ScrapedEvent]:
        """
        Parse events from a single page.

        Args:
            page: Fetched upstream page

        Returns:
            List of ScrapedEvent objects in page order

        Raises:
            ParseError: If the page does not have the expected layout
        """
        _, events = self._parse_page(page)
        return events

    def parse_pages(self, pages: Iterable[RawPage]) -> Tuple[str, List[ScrapedEvent]]:
        """
        Parse consecutive pages and collapse duplicate events.

        Weeks at page boundaries can be rendered on both neighbouring pages,
        so the first occurrence of each event identity wins.

        Args:
            pages: Fetched pages in chronological order

        Returns:
            Tuple of (calendar name, deduplicated events)
        """
        name = ''
        events = []
        seen = set()
        duplicates = 0

        for page in pages:
            page_name, page_events = self._parse_page(page)
            name = name or page_name
            for event in page_events:
                if event.identity in seen:
                    duplicates += 1
                    continue
                seen.add(event.identity)
                events.append(event)

        if duplicates:
            logger.debug(f"Collapsed {duplicates} duplicate event(s)")
        return name, events

    def _parse_page(self, page: RawPage) -> Tuple[str, List[ScrapedEvent]]:
        if not page.html.strip():
            return '', []

        soup = BeautifulSoup(page.html, 'html.parser')
        name = _clean(soup.title.get_text()) if soup.title else ''

        weeks = []
        for table in soup.select('div.calendar table.week_table'):
            weeks.extend(table.find_all('tbody', recursive=False) or [table])

        if not weeks:
            raise ParseError(
                ParseReason.STRUCTURE_CHANGED,
                'no week tables found in calendar page',
                url=page.url
            )

        events = []
        blocks = 0
        skipped = 0
        reference = page.start_date

        for index, week in enumerate(weeks, 1):
            week_blocks = week.select('td.week_block')
            blocks += len(week_blocks)

            try:
                monday = self._parse_week_start(week, reference)
            except MalformedBlock as e:
                logger.warning(f"Skipping week #{index} of {page.url}: {e}")
                skipped += len(week_blocks)
                continue
            reference = monday

            week_events, week_skipped = self._parse_week(week, monday)
            events.extend(week_events)
            skipped += week_skipped

        if skipped:
            logger.warning(f"Skipped {skipped} of {blocks} calendar block(s) on {page.url}")

        if blocks and not events:
            raise ParseError(
                ParseReason.STRUCTURE_CHANGED,
                f"none of the {blocks} calendar block(s) could be decoded",
                url=page.url
            )

        return name, events

    def _parse_week_start(self, week: Tag, reference: date) -> date:
        """
        Determine the date of the first day of a week table.

        The header only carries day and month; the year is the first one that
        puts the date no earlier than a week before the reference date.

        Args:
            week: Week table element
            reference: Page start date or previous week's first day

        Returns:
            Date of the first day in the week
        """
        header = week.select_one('td.week_header')
        if header is None:
            raise MalformedBlock('missing week header')

        header_text = _clean(header.get_text())
        match = _DAY_MONTH.search(header_text)
        if not match:
            raise MalformedBlock(f"no day and month in week header {header_text!r}")

        day, month = int(match.group(1)), int(match.group(2))
        earliest = reference - timedelta(days=7)
        for year in (reference.year - 1, reference.year, reference.year + 1):
            try:
                candidate = date(year, month, day)
            except ValueError:
                continue
            if candidate >= earliest:
                return candidate

        raise MalformedBlock(f"invalid date in week header {header_text!r}")

    def _parse_week(self, week: Tag, monday: date) -> Tuple[List[ScrapedEvent], int]:
        events = []
        skipped = 0

        for row in week.find_all('tr')[1:]:
            day_index = 0
            for column in row.find_all('td', recursive=False):
                classes = column.get('class') or []
                css_class = classes[0] if classes else ''

                if css_class.startswith('week_separatorcell'):
                    day_index += 1
                if css_class != 'week_block':
                    continue

                try:
                    events.append(
                        self._parse_block(column, monday + timedelta(days=day_index))
                    )
                except MalformedBlock as e:
                    logger.warning(f"Skipping calendar block on {monday + timedelta(days=day_index)}: {e}")
                    skipped += 1

        return events, skipped

    def _parse_block(self, block: Tag, day: date) -> ScrapedEvent:
        """
        Parse a single calendar block.

        Args:
            block: ``td.week_block`` element
            day: Date the block's column stands for

        Returns:
            ScrapedEvent object
        """
        # Some blocks wrap their content in an extra span.link; the innermost
        # match holds the details.
        candidates = block.select('a, span.link')
        details = candidates[-1] if candidates else None
        if details is None:
            raise MalformedBlock('no details element')

        lines = self._split_lines(details)
        if not lines:
            raise MalformedBlock('empty details')

        start_time, end_time = self._parse_time_range(lines[0])
        if end_time < start_time:
            raise MalformedBlock(f"end time before start time in {lines[0]!r}")

        title = lines[1] if len(lines) > 1 else ''
        if not title:
            raise MalformedBlock('missing title')

        resources = self._texts(block, 'span.resource')
        persons = self._texts(block, 'span.person')

        return ScrapedEvent(
            title=title,
            location=resources[-1] if resources else '',
            start=to_utc(day, start_time),
            end=to_utc(day, end_time),
            organizer=', '.join(persons),
            description=', '.join(resources)
        )

    def _split_lines(self, element: Tag) -> List[str]:
        """Split an element's text on <br> tags, leaving out person/resource spans."""
        lines = []
        current = []
        for child in element.children:
            if isinstance(child, Tag):
                if child.name == 'br':
                    lines.append(_clean(''.join(current)))
                    current = []
                elif not {'person', 'resource'} & set(child.get('class') or []):
                    current.append(child.get_text())
            elif isinstance(child, NavigableString):
                current.append(str(child))
        lines.append(_clean(''.join(current)))

        while lines and not lines[-1]:
            lines.pop()
        return lines

    def _parse_time_range(self, text: str) -> Tuple[time, time]:
        """
        Parse a time range from text.

        Args:
            text: Time text (e.g., "08:00 -09:30" or "08:00 -")

        Returns:
            Tuple of (start_time, end_time)
        """
        match = _TIME_RANGE.match(text)
        if not match:
            raise MalformedBlock(f"no time range in {text!r}")

        try:
            start = datetime.strptime(match.group(1), '%H:%M').time()
            end = (
                datetime.strptime(match.group(2), '%H:%M').time()
                if match.group(2) else FULL_DAY_END
            )
        except ValueError as e:
            raise MalformedBlock(f"invalid time in {text!r}: {e}")

        if start == time(0, 0):
            start = FULL_DAY_START
        return start, end

    def _texts(self, element: Tag, selector: str) -> List[str]:
        return [
            text for text in (_clean(match.get_text()) for match in element.select(selector))
            if text
        ]
