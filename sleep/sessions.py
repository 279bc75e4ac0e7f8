"""Sleep session state machine.

    NONE --start--> IN_PROGRESS --end--> COMPLETED

COMPLETED is terminal. A user has at most one IN_PROGRESS record and no
two records of one user overlap (touching endpoints included). Every
successful write commits, then invalidates the owner's record cache and
the feed cache of each of the owner's followers.
"""

from datetime import datetime, timedelta
from enum import StrEnum

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.cache import CollectionCache
from shared.clock import Clock
from shared.metrics import sleep_session_transitions_total
from shared.result import Err, Ok, Result, bad_request, unprocessable
from shared.temporal import ensure_not_future
from sleep.domain.orm import SleepRecordModel, UserModel
from sleep.overlap import OverlapChecker
from sleep.repository import SleepRecordRepository
from social.repository import FollowingRepository

logger = structlog.get_logger()

OPEN_RECORD_INDEX = "uq_sleep_records_open_per_user"
OVERLAP_CONSTRAINT = "excl_sleep_records_no_overlap"
ORDERING_CONSTRAINT = "chk_sleep_records_end_after_start"

# SQLite names CHECK constraints in its message but reports the column for unique indexes
_SQLITE_MARKERS = (
    (ORDERING_CONSTRAINT, ORDERING_CONSTRAINT),
    ("sleep_records.user_id", OPEN_RECORD_INDEX),
)


class SleepState(StrEnum):
    NONE = "none"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def of(cls, record: SleepRecordModel | None) -> "SleepState":
        if record is None:
            return cls.NONE
        return cls.COMPLETED if record.end_time is not None else cls.IN_PROGRESS


def duration_minutes(start: datetime | None, end: datetime | None) -> int | None:
    """Whole minutes between start and end, truncated. None unless end > start."""
    if start is None or end is None or end <= start:
        return None
    return (end - start) // timedelta(minutes=1)


def _already_in_progress() -> Err:
    return unprocessable(
        "already_in_progress", "You already have an in-progress sleep record", "start_time"
    )


def _overlap() -> Err:
    return unprocessable(
        "overlap", "Start time overlaps with another sleep record", "start_time"
    )


def _end_before_start() -> Err:
    return unprocessable("end_before_start", "End time must be after start time", "end_time")


def violated_constraint(exc: IntegrityError) -> str | None:
    """Name of the constraint behind an IntegrityError, or None when unknown.

    asyncpg reports it as `constraint_name` on the driver error wrapped by the
    DBAPI adapter. SQLite only mentions it in the message text.
    """
    driver_error = getattr(exc.orig, "__cause__", None)
    name = getattr(driver_error, "constraint_name", None) or getattr(
        exc.orig, "constraint_name", None
    )
    if name:
        return name
    message = str(exc.orig)
    for marker, constraint in _SQLITE_MARKERS:
        if marker in message:
            return constraint
    return None


class SleepSessionService:
    """Start, end and import sleep records.

    `check_overlaps=False` is for trusted bulk loads only. The single open
    record rule and the datastore constraints still apply.
    """

    def __init__(
        self,
        session: AsyncSession,
        clock: Clock,
        cache: CollectionCache,
        *,
        check_overlaps: bool = True,
    ):
        self.session = session
        self.clock = clock
        self.cache = cache
        self.records = SleepRecordRepository(session)
        self.followings = FollowingRepository(session)
        self.overlaps = OverlapChecker(session, enabled=check_overlaps)

    async def start(
        self, user: UserModel | None, start_time: datetime | None = None
    ) -> Result[SleepRecordModel]:
        if user is None:
            return self._rejected("start", bad_request("user_required", "User is required", "user_id"))

        now = self.clock.now()
        start = start_time or now
        checked = ensure_not_future(start, now, "start_time")
        if isinstance(checked, Err):
            return self._rejected("start", checked)

        if await self.records.open_record(user.id) is not None:
            return self._rejected("start", _already_in_progress())
        if await self.overlaps.conflicts(user.id, start):
            return self._rejected("start", _overlap())

        record = SleepRecordModel(user_id=user.id, start_time=start)
        result = await self._commit("start", record)
        if result.ok:
            logger.info("sleep_session_started", user_id=record.user_id, record_id=record.id)
        return result

    async def end(
        self, record: SleepRecordModel | None, end_time: datetime | None = None
    ) -> Result[SleepRecordModel]:
        if record is None:
            return self._rejected("end", bad_request("record_required", "Sleep record is required", "id"))
        if SleepState.of(record) is SleepState.COMPLETED:
            return self._rejected(
                "end", unprocessable("already_completed", "Sleep record is already completed", "id")
            )

        now = self.clock.now()
        end = end_time or now
        if end <= record.start_time:
            return self._rejected("end", _end_before_start())
        checked = ensure_not_future(end, now, "end_time")
        if isinstance(checked, Err):
            return self._rejected("end", checked)
        if await self.overlaps.conflicts(
            record.user_id, record.start_time, end, exclude_record_id=record.id
        ):
            return self._rejected("end", _overlap())

        record.end_time = end
        record.duration_minutes = duration_minutes(record.start_time, end)
        result = await self._commit("end", record)
        if result.ok:
            logger.info(
                "sleep_session_ended",
                user_id=record.user_id,
                record_id=record.id,
                duration_minutes=record.duration_minutes,
            )
        return result

    async def record(
        self,
        user: UserModel | None,
        start_time: datetime,
        end_time: datetime | None = None,
    ) -> Result[SleepRecordModel]:
        """Create an open or completed record in one step."""
        if user is None:
            return self._rejected("import", bad_request("user_required", "User is required", "user_id"))

        now = self.clock.now()
        checked = ensure_not_future(start_time, now, "start_time")
        if isinstance(checked, Err):
            return self._rejected("import", checked)

        if end_time is not None:
            if end_time <= start_time:
                return self._rejected("import", _end_before_start())
            checked = ensure_not_future(end_time, now, "end_time")
            if isinstance(checked, Err):
                return self._rejected("import", checked)
        elif await self.records.open_record(user.id) is not None:
            return self._rejected("import", _already_in_progress())

        if await self.overlaps.conflicts(user.id, start_time, end_time):
            return self._rejected("import", _overlap())

        record = SleepRecordModel(
            user_id=user.id,
            start_time=start_time,
            end_time=end_time,
            duration_minutes=duration_minutes(start_time, end_time),
        )
        result = await self._commit("import", record)
        if result.ok:
            logger.debug("sleep_record_imported", user_id=record.user_id, record_id=record.id)
        return result

    async def _commit(self, transition: str, record: SleepRecordModel) -> Result[SleepRecordModel]:
        user_id = record.user_id
        self.records.add(record)
        try:
            await self.session.commit()
        except IntegrityError as exc:
            await self.session.rollback()
            constraint = violated_constraint(exc)
            if constraint == OVERLAP_CONSTRAINT:
                return self._rejected(transition, _overlap())
            if constraint == ORDERING_CONSTRAINT:
                return self._rejected(transition, _end_before_start())
            if transition != "end" and constraint == OPEN_RECORD_INDEX:
                return self._rejected(transition, _already_in_progress())
            raise

        followers = await self.followings.follower_ids(user_id)
        await self.cache.invalidate_sleep_records(user_id, followers)
        sleep_session_transitions_total.labels(transition=transition, outcome="ok").inc()
        return Ok(record)

    def _rejected(self, transition: str, error: Err) -> Err:
        sleep_session_transitions_total.labels(
            transition=transition, outcome=error.error.reason
        ).inc()
        logger.info(
            "sleep_session_rejected",
            transition=transition,
            reason=error.error.reason,
            detail=error.error.detail,
        )
        return error
