"""Tests for the sleep session state machine against SQLite."""

import sqlite3
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from shared.result import Err, ErrorKind
from sleep.domain.orm import FollowingModel, SleepRecordModel
from sleep.sessions import (
    OPEN_RECORD_INDEX,
    ORDERING_CONSTRAINT,
    OVERLAP_CONSTRAINT,
    SleepSessionService,
    SleepState,
    duration_minutes,
    violated_constraint,
)
from tests.conftest import NOW, hours_ago


def transitions(transition: str, outcome: str) -> float:
    value = REGISTRY.get_sample_value(
        "sleep_session_transitions_total", {"transition": transition, "outcome": outcome}
    )
    return value or 0.0


@pytest.fixture
def service(db_session, clock, cache):
    return SleepSessionService(db_session, clock, cache)


@pytest.fixture
async def alice(make_user):
    return await make_user("Alice")


class TestDurationMinutes:
    def test_floors_partial_minutes(self):
        assert duration_minutes(NOW, NOW + timedelta(minutes=450, seconds=59)) == 450

    def test_under_a_minute_is_zero(self):
        assert duration_minutes(NOW, NOW + timedelta(seconds=30)) == 0

    def test_missing_or_inverted_is_none(self):
        assert duration_minutes(NOW, None) is None
        assert duration_minutes(NOW, NOW) is None
        assert duration_minutes(NOW, NOW - timedelta(minutes=5)) is None


class TestSleepState:
    def test_states(self):
        assert SleepState.of(None) is SleepState.NONE
        assert SleepState.of(SleepRecordModel(start_time=NOW)) is SleepState.IN_PROGRESS
        record = SleepRecordModel(start_time=NOW, end_time=NOW + timedelta(hours=1))
        assert SleepState.of(record) is SleepState.COMPLETED


class DriverError(Exception):
    def __init__(self, message: str, constraint_name: str | None = None):
        super().__init__(message)
        self.constraint_name = constraint_name


def integrity_error(message: str, constraint_name: str | None = None) -> IntegrityError:
    """An IntegrityError shaped like SQLAlchemy's asyncpg adapter raises it."""
    adapted = Exception(f"<class 'asyncpg.exceptions.UniqueViolationError'>: {message}")
    adapted.__cause__ = DriverError(message, constraint_name)
    return IntegrityError("INSERT INTO sleep_records ...", {}, adapted)


class TestViolatedConstraint:
    @pytest.mark.parametrize(
        "name", [OVERLAP_CONSTRAINT, ORDERING_CONSTRAINT, OPEN_RECORD_INDEX]
    )
    def test_reads_driver_constraint_name(self, name):
        exc = integrity_error("constraint violated", constraint_name=name)
        assert violated_constraint(exc) == name

    def test_driver_name_wins_over_message_text(self):
        exc = integrity_error(
            f'violates check constraint "{ORDERING_CONSTRAINT}"',
            constraint_name=OVERLAP_CONSTRAINT,
        )
        assert violated_constraint(exc) == OVERLAP_CONSTRAINT

    @pytest.mark.parametrize(
        "message, expected",
        [
            ("UNIQUE constraint failed: sleep_records.user_id", OPEN_RECORD_INDEX),
            (f"CHECK constraint failed: {ORDERING_CONSTRAINT}", ORDERING_CONSTRAINT),
            ("FOREIGN KEY constraint failed", None),
        ],
    )
    def test_sqlite_message_fallback(self, message, expected):
        exc = IntegrityError("INSERT", {}, sqlite3.IntegrityError(message))
        assert violated_constraint(exc) == expected

    def test_unknown_driver_constraint_is_reported_as_is(self):
        exc = integrity_error("duplicate key", constraint_name="users_pkey")
        assert violated_constraint(exc) == "users_pkey"


class TestStart:
    async def test_defaults_to_now(self, service, alice):
        result = await service.start(alice)
        assert result.ok
        record = result.value
        assert record.id is not None
        assert record.start_time == NOW
        assert record.end_time is None
        assert record.duration_minutes is None
        assert SleepState.of(record) is SleepState.IN_PROGRESS

    async def test_explicit_past_start(self, service, alice):
        result = await service.start(alice, hours_ago(8))
        assert result.value.start_time == hours_ago(8)

    async def test_future_start_is_rejected(self, service, alice):
        result = await service.start(alice, NOW + timedelta(seconds=1))
        assert result.error.kind is ErrorKind.UNPROCESSABLE_STATE
        assert result.error.detail == "Start time cannot be in the future"

    async def test_missing_user(self, service):
        result = await service.start(None)
        assert result.error.kind is ErrorKind.BAD_REQUEST
        assert result.error.detail == "User is required"

    async def test_second_open_record_is_rejected(self, service, alice):
        assert (await service.start(alice, hours_ago(3))).ok
        before = transitions("start", "already_in_progress")

        result = await service.start(alice)
        assert result.error.reason == "already_in_progress"
        assert result.error.detail == "You already have an in-progress sleep record"
        assert transitions("start", "already_in_progress") == before + 1

    async def test_start_inside_completed_record_overlaps(self, service, alice):
        await service.record(alice, hours_ago(10), hours_ago(2))
        result = await service.start(alice, hours_ago(5))
        assert result.error.reason == "overlap"
        assert result.error.detail == "Start time overlaps with another sleep record"

    async def test_start_touching_previous_end_overlaps(self, service, alice):
        await service.record(alice, hours_ago(10), hours_ago(2))
        result = await service.start(alice, hours_ago(2))
        assert result.error.reason == "overlap"

    async def test_start_after_previous_end(self, service, alice):
        await service.record(alice, hours_ago(10), hours_ago(2))
        result = await service.start(alice, hours_ago(2) + timedelta(microseconds=1))
        assert result.ok

    async def test_start_before_completed_record_overlaps_open_interval(self, service, alice):
        # The open record would run to infinity and swallow the later record
        await service.record(alice, hours_ago(10), hours_ago(2))
        result = await service.start(alice, hours_ago(20))
        assert result.error.reason == "overlap"

    async def test_concurrent_open_record_maps_to_already_in_progress(
        self, db_session, clock, cache, alice
    ):
        user_id = alice.id
        first = SleepSessionService(db_session, clock, cache)
        assert (await first.start(alice)).ok

        racing = SleepSessionService(db_session, clock, cache, check_overlaps=False)
        racing.records.open_record = AsyncMock(return_value=None)
        result = await racing.start(alice, hours_ago(1))

        assert isinstance(result, Err)
        assert result.error.reason == "already_in_progress"
        count = await db_session.scalar(
            select(func.count()).select_from(SleepRecordModel).where(
                SleepRecordModel.user_id == user_id
            )
        )
        assert count == 1


class TestEnd:
    async def test_completes_record(self, service, alice, clock):
        record = (await service.start(alice, hours_ago(8))).value
        clock.advance(timedelta(seconds=30))

        result = await service.end(record)
        assert result.ok
        assert result.value.end_time == NOW + timedelta(seconds=30)
        assert result.value.duration_minutes == 480
        assert SleepState.of(result.value) is SleepState.COMPLETED

    async def test_explicit_end_time(self, service, alice):
        record = (await service.start(alice, hours_ago(8))).value
        result = await service.end(record, hours_ago(1) + timedelta(seconds=59))
        assert result.value.duration_minutes == 420

    async def test_completed_is_terminal(self, service, alice):
        record = (await service.start(alice, hours_ago(8))).value
        await service.end(record, hours_ago(1))

        result = await service.end(record, hours_ago(0.5))
        assert result.error.reason == "already_completed"
        assert result.error.detail == "Sleep record is already completed"
        assert record.end_time == hours_ago(1)

    @pytest.mark.parametrize("end_offset", [8, 9])
    async def test_end_not_after_start(self, service, alice, end_offset):
        record = (await service.start(alice, hours_ago(8))).value
        result = await service.end(record, hours_ago(end_offset))
        assert result.error.reason == "end_before_start"
        assert result.error.detail == "End time must be after start time"

    async def test_future_end_is_rejected(self, service, alice):
        record = (await service.start(alice, hours_ago(8))).value
        result = await service.end(record, NOW + timedelta(minutes=1))
        assert result.error.detail == "End time cannot be in the future"
        assert record.end_time is None

    async def test_missing_record(self, service):
        result = await service.end(None)
        assert result.error.detail == "Sleep record is required"

    async def test_end_over_later_record_overlaps(self, db_session, clock, cache, alice):
        loader = SleepSessionService(db_session, clock, cache, check_overlaps=False)
        open_record = (await loader.record(alice, hours_ago(10))).value
        await loader.record(alice, hours_ago(6), hours_ago(5))

        service = SleepSessionService(db_session, clock, cache)
        result = await service.end(open_record, hours_ago(4))
        assert result.error.reason == "overlap"

        result = await service.end(open_record, hours_ago(7))
        assert result.ok


class TestRecord:
    async def test_imports_completed_record(self, service, alice):
        result = await service.record(alice, hours_ago(30), hours_ago(22) - timedelta(seconds=1))
        assert result.value.duration_minutes == 479
        assert result.value.end_time is not None

    async def test_imports_open_record(self, service, alice):
        result = await service.record(alice, hours_ago(3))
        assert result.value.end_time is None
        assert (await service.record(alice, hours_ago(1))).error.reason == "already_in_progress"

    async def test_rejects_inverted_interval(self, service, alice):
        result = await service.record(alice, hours_ago(3), hours_ago(4))
        assert result.error.reason == "end_before_start"

    async def test_rejects_future_end(self, service, alice):
        result = await service.record(alice, hours_ago(3), NOW + timedelta(hours=1))
        assert result.error.reason == "temporal_constraint_violation"

    async def test_completed_imports_may_not_overlap(self, service, alice):
        await service.record(alice, hours_ago(30), hours_ago(22))
        result = await service.record(alice, hours_ago(23), hours_ago(20))
        assert result.error.reason == "overlap"


class TestCacheInvalidation:
    async def test_write_clears_owner_list_and_follower_feeds(
        self, db_session, service, cache_backend, make_user, alice
    ):
        bob = await make_user("Bob")
        carol = await make_user("Carol")
        db_session.add(FollowingModel(follower_id=bob.id, followed_id=alice.id))
        await db_session.commit()

        stale = [
            f"sleep_records/user_{alice.id}/params_a/1",
            f"sleep_record_followings/user_{bob.id}/params_a/1",
        ]
        untouched = [
            f"sleep_records/user_{bob.id}/params_a/1",
            f"sleep_record_followings/user_{carol.id}/params_a/1",
            f"followings/user_{bob.id}/params_a/1",
        ]
        for key in stale + untouched:
            await cache_backend.set(key, "[]", 60)

        assert (await service.start(alice, hours_ago(1))).ok
        assert sorted(cache_backend.keys()) == sorted(untouched)

    async def test_rejected_write_leaves_cache_alone(self, service, cache_backend, alice):
        key = f"sleep_records/user_{alice.id}/params_a/1"
        await cache_backend.set(key, "[]", 60)
        await service.start(alice, NOW + timedelta(hours=1))
        assert cache_backend.keys() == [key]
