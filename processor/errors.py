"""Error types raised by the calendar pipeline."""
from enum import Enum
from typing import Optional


class FetchReason(str, Enum):
    """Why an upstream request failed."""
    TIMEOUT = 'timeout'
    HTTP_STATUS = 'http_status'
    TRANSPORT = 'transport'


class ParseReason(str, Enum):
    """Why upstream markup could not be parsed."""
    STRUCTURE_CHANGED = 'structure_changed'


class ComputeError(Exception):
    """Base class for every failure of a calendar computation."""

    message = 'calendar computation failed'

    def __init__(self, details: str = ''):
        super().__init__(details or self.message)
        self.details = details


class InvalidRequest(ComputeError):
    """The request URL does not describe a calendar this service can serve."""

    message = 'bad request: your URL is not a valid calendar URL'


class FetchError(ComputeError):
    """The upstream could not be reached or returned a non-success status."""

    message = 'upstream request failed'

    def __init__(
        self,
        reason: FetchReason,
        details: str = '',
        status_code: Optional[int] = None,
        url: Optional[str] = None
    ):
        super().__init__(details)
        self.reason = reason
        self.status_code = status_code
        self.url = url

    def __str__(self) -> str:
        if self.reason == FetchReason.HTTP_STATUS:
            return f"upstream returned status {self.status_code}"
        return f"upstream {self.reason.value}: {self.details}"


class ParseError(ComputeError):
    """The upstream markup could not be turned into events."""

    message = "couldn't parse HTML returned by upstream"

    def __init__(self, reason: ParseReason, details: str = '', url: Optional[str] = None):
        super().__init__(details)
        self.reason = reason
        self.url = url
