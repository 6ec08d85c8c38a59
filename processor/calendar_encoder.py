"""Calendar encoder rendering scraped events as an iCalendar document."""
import logging
import re
from datetime import datetime, timezone
from typing import Iterable, Optional

from ics import Calendar, Event
from ics.grammar.parse import ContentLine

from processor.models import CalendarDocument, ScrapedEvent

logger = logging.getLogger(__name__)

MAX_LINE_OCTETS = 75

_LINE_BREAK = re.compile(r'\r?\n')
_CONTINUATION = re.compile(r'\r?\n[ \t]')


def fold_line(line: str, limit: int = MAX_LINE_OCTETS) -> str:
    """
    Fold a content line so no physical line exceeds the octet limit.

    Continuation lines start with a single space (RFC 5545 section 3.1).
    Multi-byte characters are never split.
    """
    if len(line.encode('utf-8')) <= limit:
        return line

    parts = []
    current = ''
    size = 0
    width = limit
    for char in line:
        char_size = len(char.encode('utf-8'))
        if size + char_size > width:
            parts.append(current)
            current = ''
            size = 0
            width = limit - 1
        current += char
        size += char_size
    parts.append(current)
    return '\r\n '.join(parts)


def fold_lines(ics_text: str) -> str:
    """Fold every line of serialized ICS text and terminate lines with CRLF."""
    lines = [line for line in _LINE_BREAK.split(_CONTINUATION.sub('', ics_text)) if line]
    return ''.join(f"{fold_line(line)}\r\n" for line in lines)


def escape_text(value: str) -> str:
    """Escape a TEXT property value (RFC 5545 section 3.3.11)."""
    return (
        value.replace('\\', '\\\\')
        .replace(';', '\\;')
        .replace(',', '\\,')
        .replace('\n', '\\n')
    )


class CalendarEncoder:
    """Encoder for turning scraped events into ICS text."""

    PRODUCT_ID = '-//rapla-ics-feed//Rapla schedule feed//EN'
    UID_DOMAIN = 'rapla-ics-feed'

    def __init__(self, product_id: str = PRODUCT_ID, uid_domain: str = UID_DOMAIN):
        self.product_id = product_id
        self.uid_domain = uid_domain

    def encode(
        self,
        events: Iterable[ScrapedEvent],
        name: str = '',
        generated_at: Optional[datetime] = None
    ) -> CalendarDocument:
        """
        Render events into a calendar document.

        Args:
            events: Events in the order they should be kept
            name: Calendar display name, omitted when empty
            generated_at: Generation timestamp (default: now, UTC)

        Returns:
            CalendarDocument holding the ICS text and its byte size
        """
        generated_at = (generated_at or datetime.now(timezone.utc)).astimezone(timezone.utc)

        calendar = Calendar(creator=self.product_id)
        calendar.extra.append(
            ContentLine(name='LAST-MODIFIED', value=generated_at.strftime('%Y%m%dT%H%M%SZ'))
        )
        if name:
            calendar.extra.append(ContentLine(name='NAME', value=escape_text(name)))
            calendar.extra.append(ContentLine(name='X-WR-CALNAME', value=escape_text(name)))

        kept = []
        seen = set()
        for event in events:
            if event.identity in seen:
                continue
            seen.add(event.identity)
            kept.append(event)
            calendar.events.add(self.to_ics_event(event, generated_at))

        ics_text = fold_lines(calendar.serialize())
        logger.debug(f"Encoded {len(kept)} event(s) into {len(ics_text)} characters")

        return CalendarDocument(
            name=name,
            events=tuple(kept),
            ics=ics_text,
            generated_at=generated_at,
            size=len(ics_text.encode('utf-8'))
        )

    def event_uid(self, event: ScrapedEvent) -> str:
        """Stable UID for an event, unchanged between re-encodings."""
        return f"{event.identity}@{self.uid_domain}"

    def to_ics_event(self, event: ScrapedEvent, generated_at: datetime) -> Event:
        """
        Convert a ScrapedEvent to an ics Event.

        Args:
            event: Event with timezone-aware start and end
            generated_at: Timestamp recorded as the event's creation time

        Returns:
            ics Event object

        Raises:
            ValueError: If a datetime is naive or the event ends before it starts
        """
        if event.start.tzinfo is None or event.end.tzinfo is None:
            raise ValueError(f"Event '{event.title}' has naive start or end")
        if event.end < event.start:
            raise ValueError(f"Event '{event.title}' ends before it starts")

        description_parts = [part for part in (event.description, event.organizer) if part]

        return Event(
            name=event.title,
            begin=event.start.astimezone(timezone.utc),
            end=event.end.astimezone(timezone.utc),
            uid=self.event_uid(event),
            location=event.location or None,
            description='\n'.join(description_parts) or None,
            created=generated_at
        )
