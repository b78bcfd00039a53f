"""
Pagination and date helpers shared by the repositories.
"""

import math
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Sequence, Union

DateLike = Union[str, date, datetime, None]


def total_pages(total: int, limit: int) -> int:
    return max(1, math.ceil(total / limit)) if limit > 0 else 1


def page_slice(items: Sequence[Any], page: int, limit: int) -> List[Any]:
    start = (max(page, 1) - 1) * limit
    return list(items[start:start + limit])


def paginate(items: Sequence[Any], page: int, limit: int) -> Dict[str, Any]:
    """Standard listing payload for an already ordered sequence."""
    return {
        "page": page,
        "limit": limit,
        "total": len(items),
        "total_pages": total_pages(len(items), limit),
        "data": page_slice(items, page, limit),
    }


def to_datetime(value: DateLike, end_of_day: bool = False) -> Optional[datetime]:
    """Parse an ISO string, date or datetime into an aware UTC datetime.

    Bare dates cover the whole day when ``end_of_day`` is set so that a
    ``date_to`` filter is inclusive.
    """
    if value is None or value == "":
        return None
    if isinstance(value, str):
        if len(value) == 10:
            return to_datetime(date.fromisoformat(value), end_of_day)
        return to_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
    if not isinstance(value, datetime):
        return datetime.combine(value, time.max if end_of_day else time.min, tzinfo=timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def within(value: DateLike, date_from: DateLike = None, date_to: DateLike = None) -> bool:
    moment = to_datetime(value)
    if moment is None:
        return date_from is None and date_to is None
    lower = to_datetime(date_from)
    upper = to_datetime(date_to, end_of_day=True)
    if lower is not None and moment < lower:
        return False
    if upper is not None and moment > upper:
        return False
    return True


def newest_first(records: List[Dict[str, Any]], field: str) -> List[Dict[str, Any]]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(records, key=lambda r: to_datetime(r.get(field)) or epoch, reverse=True)


def isoformat(value: DateLike) -> Optional[str]:
    moment = to_datetime(value)
    return moment.isoformat() if moment is not None else None
