"""Shared fixtures for building synthetic Rapla week-view pages."""
from datetime import date, datetime, timezone
from typing import Dict, List, Sequence

import pytest

from processor.models import CacheKey, CalendarDocument


class RaplaPageBuilder:
    """Renders markup shaped like the Rapla week view."""

    @staticmethod
    def block(
        times: str,
        title: str,
        persons: Sequence[str] = (),
        resources: Sequence[str] = (),
        wrap_link: bool = False
    ) -> str:
        spans = ''.join(f'<span class="person">{person}</span>' for person in persons)
        spans += ''.join(f'<span class="resource">{resource}</span>' for resource in resources)
        details = f'<a href="#">{times}<br>{title}<br>{spans}</a>'
        if wrap_link:
            details = f'<span class="link">{times}<br>{title}<br>{spans}</span>'
            details = f'<a href="#">{details}</a>'
        return f'<td class="week_block" rowspan="4">{details}</td>'

    @staticmethod
    def week(monday: date, days: Dict[int, List[str]]) -> str:
        headers = f'<td class="week_header"><nobr>Mo {monday.day:02d}.{monday.month:02d}.</nobr></td>'
        header_row = (
            f'<tr><th class="week_number">KW {monday.isocalendar()[1]}</th>{headers}</tr>'
        )

        rows = []
        height = max((len(blocks) for blocks in days.values()), default=0)
        for row_index in range(height):
            cells = ['<td class="week_times">08:00</td>']
            for day_index in range(7):
                blocks = days.get(day_index, [])
                if row_index < len(blocks):
                    cells.append(blocks[row_index])
                else:
                    cells.append('<td class="week_cell"></td>')
                cells.append('<td class="week_separatorcell"></td>')
            rows.append(f"<tr>{''.join(cells)}</tr>")

        return f'<tbody>{header_row}{"".join(rows)}</tbody>'

    @staticmethod
    def page(weeks: Sequence[str], title: str = 'TINF22B') -> str:
        return (
            f'<html><head><title>{title}</title></head><body>'
            f'<div class="calendar"><table class="week_table">{"".join(weeks)}</table></div>'
            f'</body></html>'
        )


@pytest.fixture
def rapla():
    """Builder for synthetic Rapla pages."""
    return RaplaPageBuilder


def _make_key(page: str = 'calendar', key: str = 'abc', cutoff: str = '-') -> CacheKey:
    return CacheKey(
        host='rapla.dhbw.de',
        page=page,
        params=(('key', key), ('salt', 'def')),
        cutoff=cutoff
    )


def _make_document(size: int = 100, name: str = '') -> CalendarDocument:
    return CalendarDocument(
        name=name,
        events=(),
        ics='x' * size,
        generated_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
        size=size
    )


@pytest.fixture
def make_key():
    """Factory for cache keys differing by page or credential."""
    return _make_key


@pytest.fixture
def make_document():
    """Factory for calendar documents of a given byte size."""
    return _make_document
