"""Data models for the schedule-to-calendar pipeline."""
import hashlib
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional, Tuple


@dataclass(frozen=True)
class RequestDescriptor:
    """Parsed inbound calendar request."""
    host: str
    page: str
    params: Tuple[Tuple[str, str], ...]
    cutoff_date: Optional[date] = None


@dataclass(frozen=True, order=True)
class CacheKey:
    """Canonical lookup key for a calendar request."""
    host: str
    page: str
    params: Tuple[Tuple[str, str], ...]
    cutoff: str

    def __str__(self) -> str:
        query = '&'.join(f"{name}={value}" for name, value in self.params)
        return f"{self.host}/{self.page}?{query}#{self.cutoff}"


@dataclass(frozen=True)
class RawPage:
    """One fetched upstream page."""
    html: str
    start_date: date
    url: str


@dataclass(frozen=True)
class ScrapedEvent:
    """Single schedule occurrence, with start and end in UTC."""
    title: str
    location: str
    start: datetime
    end: datetime
    organizer: str = ''
    description: str = ''
    identity: str = field(init=False, compare=False)

    def __post_init__(self):
        object.__setattr__(
            self,
            'identity',
            generate_event_id(self.title, self.location, self.start, self.end)
        )


@dataclass(frozen=True)
class CalendarDocument:
    """Rendered ICS calendar and the events it was built from."""
    name: str
    events: Tuple[ScrapedEvent, ...]
    ics: str
    generated_at: datetime
    size: int


def generate_event_id(title: str, location: str, start: datetime, end: datetime) -> str:
    """
    Generate a stable identifier for an event using a hash of its fields.

    Args:
        title: Event title
        location: Event location (may be empty)
        start: Start instant
        end: End instant

    Returns:
        SHA256 hex digest
    """
    composite = f"{title}|{location}|{start.isoformat()}|{end.isoformat()}"
    return hashlib.sha256(composite.encode('utf-8')).hexdigest()
