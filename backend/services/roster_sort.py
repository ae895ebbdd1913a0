"""
Roster sort, search and pagination for the family listing.

Sorting is single-key and tri-state: choosing a column sorts it ascending,
choosing it again sorts descending, and a third time restores insertion
order.
"""

import locale
import math
import unicodedata
from datetime import datetime
from typing import Iterable, List, Optional

from models.schemas import RosterEntry, RosterPage, SortDirection, SortKey, SortState

NUMERIC_KEYS = {SortKey.TOTAL_INDIVIDUALS}
TIMESTAMP_KEYS = {SortKey.DECAMPMENT_TIMESTAMP}


def toggle_sort(state: Optional[SortState], key: SortKey) -> Optional[SortState]:
    """Cycle asc -> desc -> unsorted on the same key; a new key starts at asc."""
    if state is None or state.key != key:
        return SortState(key=key, direction=SortDirection.ASC)
    if state.direction == SortDirection.ASC:
        return SortState(key=key, direction=SortDirection.DESC)
    return None


def text_sort_key(value: Optional[str]) -> str:
    """Case- and accent-insensitive collation key."""
    folded = unicodedata.normalize("NFKD", str(value or "")).casefold()
    stripped = "".join(ch for ch in folded if not unicodedata.combining(ch))
    return locale.strxfrm(stripped)


def _timestamp_value(value: datetime) -> float:
    # Naive timestamps are local wall time; timestamp() treats them the same way.
    return value.timestamp()


def apply_sort(rows: Iterable[RosterEntry], state: Optional[SortState]) -> List[RosterEntry]:
    """Return a new, stably sorted list; the input is never mutated."""
    rows = list(rows)
    if state is None:
        return rows

    descending = state.direction == SortDirection.DESC
    key = state.key.value

    if state.key in TIMESTAMP_KEYS:
        present = [r for r in rows if getattr(r, key) is not None]
        missing = [r for r in rows if getattr(r, key) is None]
        present = sorted(present, key=lambda r: _timestamp_value(getattr(r, key)), reverse=descending)
        return present + missing

    if state.key in NUMERIC_KEYS:
        return sorted(rows, key=lambda r: getattr(r, key) or 0, reverse=descending)

    return sorted(rows, key=lambda r: text_sort_key(getattr(r, key)), reverse=descending)


def filter_rows(rows: Iterable[RosterEntry], search: Optional[str]) -> List[RosterEntry]:
    """Keep rows whose family-head name contains the search text (case-insensitive)."""
    needle = (search or "").strip().casefold()
    if not needle:
        return list(rows)
    return [r for r in rows if needle in r.family_head_full_name.casefold()]


def paginate(
    rows: List[RosterEntry],
    page: int,
    rows_per_page: int,
    sort: Optional[SortState] = None,
    search: str = ""
) -> RosterPage:
    """Slice one page; out-of-range pages clamp to the nearest valid page."""
    if rows_per_page < 1:
        raise ValueError("rows_per_page must be at least 1")

    total_rows = len(rows)
    total_pages = math.ceil(total_rows / rows_per_page)
    page = max(1, min(page, total_pages or 1))
    start = (page - 1) * rows_per_page

    return RosterPage(
        rows=rows[start:start + rows_per_page],
        page=page,
        rows_per_page=rows_per_page,
        total_rows=total_rows,
        total_pages=total_pages,
        sort=sort,
        search=search or ""
    )


def roster_slice(
    rows: Iterable[RosterEntry],
    state: Optional[SortState],
    page: int,
    rows_per_page: int,
    search: Optional[str] = None
) -> RosterPage:
    """Filter, sort and paginate in the order the table displays them."""
    filtered = filter_rows(rows, search)
    return paginate(apply_sort(filtered, state), page, rows_per_page, sort=state, search=search or "")
