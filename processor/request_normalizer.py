"""Request parsing and cache key normalization."""
import logging
import re
from datetime import datetime
from typing import Optional, Sequence
from urllib.parse import parse_qs, urlsplit

from processor.errors import InvalidRequest
from processor.models import CacheKey, RequestDescriptor

logger = logging.getLogger(__name__)

DEFAULT_HOST = 'rapla.dhbw.de'
CREDENTIAL_PARAMS = ('file', 'key', 'salt', 'user')
NO_CUTOFF = '-'

_PAGE_PATTERN = re.compile(r'[\w\-]+(?:/[\w\-]+)*')
# Proxies tend to collapse the double slash of an embedded URL.
_COLLAPSED_SCHEME = re.compile(r'^(https?):/+', re.IGNORECASE)


def parse_request(
    path: str,
    query: str = '',
    allowed_hosts: Sequence[str] = (DEFAULT_HOST,)
) -> RequestDescriptor:
    """
    Build a RequestDescriptor from an inbound request path and query string.

    The path may carry a complete upstream URL
    (``/https://rapla.dhbw.de/rapla/calendar?key=...``); that form is tried
    before the request's own path and query.

    Args:
        path: Request path
        query: Raw query string without the leading '?'
        allowed_hosts: Upstream hosts that may be proxied, the first is the default

    Returns:
        RequestDescriptor

    Raises:
        InvalidRequest: If neither form describes a calendar
    """
    embedded = _COLLAPSED_SCHEME.sub(r'\1://', path.lstrip('/'))
    candidates = [embedded, path]
    if query:
        candidates = [f"{candidate}?{query}" for candidate in candidates]

    for candidate in candidates:
        descriptor = _descriptor_from_url(candidate, allowed_hosts)
        if descriptor:
            return descriptor

    logger.debug(f"No calendar found in request path={path!r} query={query!r}")
    raise InvalidRequest(
        "your URL needs to point at an allowed calendar host and have either "
        "the 'key' and 'salt' parameters or the 'user' and 'file' parameters"
    )


def _descriptor_from_url(url: str, allowed_hosts: Sequence[str]) -> Optional[RequestDescriptor]:
    parts = urlsplit(url)
    host = (parts.hostname or allowed_hosts[0]).lower()
    if host not in allowed_hosts:
        return None

    query = {
        name: values[0]
        for name, values in parse_qs(parts.query).items()
    }

    page = query.get('page')
    if not page and parts.path.startswith('/rapla/'):
        page = parts.path[len('/rapla/'):]
    page = canonical_page(page or '')
    if not page or not _PAGE_PATTERN.fullmatch(page):
        return None
    # Old subscription links point at the ical export, which serves the same data.
    if page == 'ical':
        page = 'calendar'

    if query.get('key') and query.get('salt'):
        params = (('key', query['key']), ('salt', query['salt']))
    elif query.get('user') and query.get('file'):
        params = (('user', query['user']), ('file', query['file']))
    else:
        return None

    cutoff_date = None
    if 'cutoff_date' in query:
        try:
            cutoff_date = datetime.strptime(query['cutoff_date'], '%Y-%m-%d').date()
        except ValueError:
            raise InvalidRequest(
                f"cutoff_date must be formatted as YYYY-MM-DD, got {query['cutoff_date']!r}"
            )

    return RequestDescriptor(host=host, page=page, params=params, cutoff_date=cutoff_date)


def canonical_page(page: str) -> str:
    """Upstream page name as used in both the cache key and the fetch URL."""
    return page.strip('/').lower()


def normalize(descriptor: RequestDescriptor) -> CacheKey:
    """
    Derive the canonical cache key for a request.

    Credential values are kept verbatim since upstream treats them
    case-sensitively; everything else is case-folded.

    Args:
        descriptor: Parsed request

    Returns:
        CacheKey equal for every spelling of the same logical request
    """
    params = tuple(sorted(
        (name.lower(), value)
        for name, value in descriptor.params
        if name.lower() in CREDENTIAL_PARAMS
    ))
    cutoff = descriptor.cutoff_date.isoformat() if descriptor.cutoff_date else NO_CUTOFF

    return CacheKey(
        host=descriptor.host.strip().lower(),
        page=canonical_page(descriptor.page),
        params=params,
        cutoff=cutoff
    )
