"""Filter, sort and paginate sleep records.

Used by both the personal record list and the followed-users feed. The
caller supplies the base statement (which records are in scope) and a
normalized SleepRecordQuery; `execute` returns a Page with metadata.
"""

import math
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Generic, TypeVar

from sqlalchemy import ColumnElement, Select, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import InstrumentedAttribute

from sleep.domain.orm import SleepRecordModel

T = TypeVar("T")

DEFAULT_PER_PAGE = 10


class SortField(StrEnum):
    START_TIME = "start_time"
    END_TIME = "end_time"
    CREATED_AT = "created_at"
    DURATION = "duration"


class SortDirection(StrEnum):
    ASC = "asc"
    DESC = "desc"


_SORT_COLUMNS: dict[SortField, InstrumentedAttribute] = {
    SortField.START_TIME: SleepRecordModel.start_time,
    SortField.END_TIME: SleepRecordModel.end_time,
    SortField.CREATED_AT: SleepRecordModel.created_at,
    SortField.DURATION: SleepRecordModel.duration_minutes,
}

_NULLABLE_SORTS = {SortField.END_TIME, SortField.DURATION}


@dataclass(frozen=True)
class Pagination:
    current_page: int
    total_pages: int
    total_count: int
    per_page: int

    @classmethod
    def paginated(cls, total_count: int, page: int, per_page: int) -> "Pagination":
        return cls(
            current_page=page,
            total_pages=max(1, math.ceil(total_count / per_page)),
            total_count=total_count,
            per_page=per_page,
        )

    @classmethod
    def single_page(cls, total_count: int, returned: int) -> "Pagination":
        """Metadata for an unpaginated response: everything is page 1 of 1."""
        return cls(current_page=1, total_pages=1, total_count=total_count, per_page=returned)

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    pagination: Pagination

    @classmethod
    def empty(cls, query: "SleepRecordQuery | None" = None) -> "Page[T]":
        if query is not None and query.paginated:
            return cls([], Pagination.paginated(0, query.page, query.per_page))
        return cls([], Pagination.single_page(0, 0))


def _flag(value: Any) -> bool:
    """A filter flag is on when supplied with any value except an explicit negative."""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ("", "false", "0", "no", "off")


def positive_int(value: Any) -> int | None:
    """Coerce to an int >= 1, or None when the value is absent or unusable."""
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        return 1
    return max(number, 1)


def last_week_cutoff(now: datetime) -> datetime:
    """Midnight UTC at the start of the day seven days before `now`."""
    day = (now - timedelta(days=7)).astimezone(UTC)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


@dataclass(frozen=True)
class SleepRecordQuery:
    completed_only: bool = False
    in_progress_only: bool = False
    from_last_week: bool = False
    start_date: datetime | None = None
    end_date: datetime | None = None
    sort_by: SortField = SortField.CREATED_AT
    sort_direction: SortDirection = SortDirection.DESC
    page: int | None = None
    per_page: int = DEFAULT_PER_PAGE
    limit: int | None = None

    @classmethod
    def build(
        cls,
        *,
        completed_only: Any = None,
        in_progress_only: Any = None,
        from_last_week: Any = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        sort_by: str | None = None,
        sort_direction: str | None = None,
        page: Any = None,
        per_page: Any = None,
        limit: Any = None,
        default_per_page: int = DEFAULT_PER_PAGE,
        max_per_page: int | None = None,
    ) -> "SleepRecordQuery":
        """Normalize raw request values. Unknown or malformed values fall back to defaults."""
        try:
            field = SortField(sort_by)
        except ValueError:
            field = SortField.CREATED_AT
        try:
            direction = SortDirection(sort_direction)
        except ValueError:
            direction = SortDirection.DESC

        size = positive_int(per_page) or default_per_page
        if max_per_page is not None:
            size = min(size, max_per_page)

        return cls(
            completed_only=_flag(completed_only),
            in_progress_only=_flag(in_progress_only),
            from_last_week=_flag(from_last_week),
            start_date=start_date,
            end_date=end_date,
            sort_by=field,
            sort_direction=direction,
            page=positive_int(page),
            per_page=size,
            limit=positive_int(limit),
        )

    @property
    def paginated(self) -> bool:
        return self.page is not None

    def filters(self, now: datetime) -> list[ColumnElement[bool]]:
        criteria: list[ColumnElement[bool]] = []

        # completed_only wins when both flags are set
        if self.completed_only:
            criteria.append(SleepRecordModel.end_time.is_not(None))
        elif self.in_progress_only:
            criteria.append(SleepRecordModel.end_time.is_(None))

        if self.from_last_week:
            criteria.append(SleepRecordModel.start_time > last_week_cutoff(now))
        else:
            if self.start_date is not None:
                criteria.append(SleepRecordModel.start_time >= self.start_date)
            if self.end_date is not None:
                criteria.append(SleepRecordModel.start_time <= self.end_date)
        return criteria

    def order_by(self) -> list[ColumnElement[Any]]:
        column = _SORT_COLUMNS[self.sort_by]
        ascending = self.sort_direction is SortDirection.ASC
        clauses: list[ColumnElement[Any]] = []

        if self.sort_by in _NULLABLE_SORTS:
            # NULLs last when ascending, first when descending, on every backend
            null_rank = case((column.is_(None), 1), else_=0)
            clauses.append(null_rank.asc() if ascending else null_rank.desc())

        clauses.append(column.asc() if ascending else column.desc())
        clauses.append(SleepRecordModel.id.asc() if ascending else SleepRecordModel.id.desc())
        return clauses

    def cache_params(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "per_page": self.per_page if self.paginated else None,
            "sort_by": self.sort_by.value,
            "sort_direction": self.sort_direction.value,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "from_last_week": self.from_last_week or None,
            "completed_only": self.completed_only or None,
            "in_progress_only": self.in_progress_only or None,
            "limit": self.limit,
        }


async def execute(
    session: AsyncSession,
    base_statement: Select,
    query: SleepRecordQuery,
    now: datetime,
    *,
    options: tuple = (),
) -> Page[SleepRecordModel]:
    """Run `query` over the records selected by `base_statement`."""
    filtered = base_statement.where(*query.filters(now))

    count_stmt = select(func.count()).select_from(filtered.order_by(None).subquery())
    total_count = (await session.execute(count_stmt)).scalar_one()

    stmt = filtered.order_by(*query.order_by())
    if options:
        stmt = stmt.options(*options)

    if query.paginated:
        stmt = stmt.offset((query.page - 1) * query.per_page).limit(query.per_page)
    elif query.limit is not None:
        stmt = stmt.limit(query.limit)

    rows = list((await session.execute(stmt)).scalars().all())

    if query.paginated:
        pagination = Pagination.paginated(total_count, query.page, query.per_page)
    else:
        pagination = Pagination.single_page(total_count, len(rows))
    return Page(rows, pagination)
