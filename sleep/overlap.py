"""Overlap detection between a candidate sleep interval and a user's stored records.

Intervals are closed on both ends, so records that merely touch
(one ends at the exact instant the next starts) count as overlapping.
An open record (end_time IS NULL) extends to infinity.
"""

from datetime import datetime

from sqlalchemy import ColumnElement, and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from sleep.domain.orm import SleepRecordModel


def overlap_condition(
    candidate_start: datetime, candidate_end: datetime | None
) -> ColumnElement[bool]:
    """SQL predicate: a stored record intersects [candidate_start, candidate_end]."""
    reaches_start = or_(
        SleepRecordModel.end_time.is_(None),
        SleepRecordModel.end_time >= candidate_start,
    )
    if candidate_end is None:
        return reaches_start
    return and_(reaches_start, SleepRecordModel.start_time <= candidate_end)


class OverlapChecker:
    def __init__(self, session: AsyncSession, enabled: bool = True):
        self.session = session
        self.enabled = enabled

    async def conflicts(
        self,
        user_id: int,
        candidate_start: datetime,
        candidate_end: datetime | None = None,
        exclude_record_id: int | None = None,
    ) -> bool:
        if not self.enabled:
            return False

        criteria = [
            SleepRecordModel.user_id == user_id,
            overlap_condition(candidate_start, candidate_end),
        ]
        if exclude_record_id is not None:
            criteria.append(SleepRecordModel.id != exclude_record_id)

        stmt = select(exists().where(*criteria))
        return bool(await self.session.scalar(stmt))
