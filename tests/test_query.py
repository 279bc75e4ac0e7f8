"""Tests for record query normalization, filtering, ordering and pagination."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from sleep import query as record_query
from sleep.domain.orm import SleepRecordModel
from sleep.query import (
    Page,
    Pagination,
    SleepRecordQuery,
    SortDirection,
    SortField,
    last_week_cutoff,
    positive_int,
)
from sleep.repository import SleepRecordRepository
from tests.conftest import NOW, hours_ago


class TestBuild:
    def test_defaults(self):
        query = SleepRecordQuery.build()
        assert query.sort_by is SortField.CREATED_AT
        assert query.sort_direction is SortDirection.DESC
        assert query.page is None
        assert query.per_page == 10
        assert not query.paginated

    def test_unknown_sort_values_fall_back(self):
        query = SleepRecordQuery.build(sort_by="name", sort_direction="sideways")
        assert query.sort_by is SortField.CREATED_AT
        assert query.sort_direction is SortDirection.DESC

    @pytest.mark.parametrize(
        "raw, expected",
        [(None, None), ("", None), ("3", 3), ("0", 1), ("-4", 1), ("abc", 1), (7, 7)],
    )
    def test_positive_int(self, raw, expected):
        assert positive_int(raw) == expected

    def test_per_page_is_capped(self):
        query = SleepRecordQuery.build(page="1", per_page="500", max_per_page=100)
        assert query.per_page == 100

    @pytest.mark.parametrize("raw", ["true", "1", "yes", "anything"])
    def test_present_flag_is_on(self, raw):
        assert SleepRecordQuery.build(completed_only=raw).completed_only

    @pytest.mark.parametrize("raw", [None, "", "false", "0", "no", "off", "FALSE"])
    def test_negative_flag_is_off(self, raw):
        assert not SleepRecordQuery.build(completed_only=raw).completed_only

    def test_cache_params_omit_per_page_when_unpaginated(self):
        params = SleepRecordQuery.build(per_page="20").cache_params()
        assert params["per_page"] is None
        assert params["page"] is None


class TestPagination:
    def test_total_pages_rounds_up(self):
        assert Pagination.paginated(21, 1, 10).total_pages == 3

    def test_empty_collection_has_one_page(self):
        assert Pagination.paginated(0, 1, 10).total_pages == 1

    def test_page_past_end_keeps_requested_page(self):
        pagination = Pagination.paginated(5, 4, 10)
        assert pagination.as_dict() == {
            "current_page": 4,
            "total_pages": 1,
            "total_count": 5,
            "per_page": 10,
        }

    def test_empty_page_for_unpaginated_query(self):
        page = Page.empty(SleepRecordQuery.build())
        assert page.items == []
        assert page.pagination.as_dict() == {
            "current_page": 1,
            "total_pages": 1,
            "total_count": 0,
            "per_page": 0,
        }


class TestLastWeekCutoff:
    def test_truncates_to_midnight_seven_days_back(self):
        assert last_week_cutoff(NOW) == datetime(2024, 3, 8, tzinfo=UTC)

    def test_converts_offsets_to_utc_first(self):
        local = datetime(2024, 3, 15, 1, 0, tzinfo=timezone(timedelta(hours=5)))
        assert last_week_cutoff(local) == datetime(2024, 3, 7, tzinfo=UTC)


@pytest.fixture
async def records(db_session, make_user):
    """Alice: three completed nights and one open record."""
    alice = await make_user("Alice")
    rows = [
        # (start, end) relative to NOW
        (hours_ago(24 * 10), hours_ago(24 * 10 - 8)),  # 480 min, 10 days ago
        (hours_ago(24 * 3), hours_ago(24 * 3 - 6)),  # 360 min
        (hours_ago(24 * 2), hours_ago(24 * 2 - 7)),  # 420 min
        (hours_ago(2), None),
    ]
    for offset, (start, end) in enumerate(rows):
        db_session.add(
            SleepRecordModel(
                user_id=alice.id,
                start_time=start,
                end_time=end,
                duration_minutes=int((end - start).total_seconds() // 60) if end else None,
                created_at=NOW - timedelta(minutes=len(rows) - offset),
            )
        )
    await db_session.commit()
    return alice


@pytest.fixture
async def tied_records(db_session, make_user):
    """Alice: six nights with repeated durations and created_at ties, plus one open record."""
    alice = await make_user("Alice")
    durations = [420, 420, 360, 480, 360, 420]
    for day, minutes in enumerate(durations, start=1):
        start = hours_ago(24 * day)
        db_session.add(
            SleepRecordModel(
                user_id=alice.id,
                start_time=start,
                end_time=start + timedelta(minutes=minutes),
                duration_minutes=minutes,
                created_at=NOW - timedelta(minutes=day // 2),
            )
        )
    db_session.add(
        SleepRecordModel(
            user_id=alice.id, start_time=hours_ago(2), created_at=NOW - timedelta(minutes=1)
        )
    )
    await db_session.commit()
    return alice


async def _run(session, user, **raw):
    query = SleepRecordQuery.build(**raw)
    return await record_query.execute(session, SleepRecordRepository.for_user(user.id), query, NOW)


class TestExecute:
    async def test_default_is_newest_created_first(self, db_session, records):
        page = await _run(db_session, records)
        assert [r.start_time for r in page.items] == [
            hours_ago(2),
            hours_ago(48),
            hours_ago(72),
            hours_ago(240),
        ]
        assert page.pagination.total_count == 4
        assert page.pagination.per_page == 4

    async def test_completed_only(self, db_session, records):
        page = await _run(db_session, records, completed_only="true")
        assert all(r.end_time is not None for r in page.items)
        assert page.pagination.total_count == 3

    async def test_completed_only_wins_over_in_progress_only(self, db_session, records):
        page = await _run(db_session, records, completed_only="1", in_progress_only="1")
        assert page.pagination.total_count == 3

    async def test_in_progress_only(self, db_session, records):
        page = await _run(db_session, records, in_progress_only="true")
        assert [r.end_time for r in page.items] == [None]

    async def test_from_last_week_overrides_date_range(self, db_session, records):
        page = await _run(
            db_session,
            records,
            from_last_week="true",
            start_date=hours_ago(24 * 30),
            end_date=hours_ago(24 * 20),
        )
        assert page.pagination.total_count == 3

    async def test_date_range_is_inclusive_on_start_time(self, db_session, records):
        page = await _run(db_session, records, start_date=hours_ago(72), end_date=hours_ago(48))
        assert sorted(r.start_time for r in page.items) == [hours_ago(72), hours_ago(48)]

    async def test_duration_desc_puts_open_record_first(self, db_session, records):
        page = await _run(db_session, records, sort_by="duration", sort_direction="desc")
        assert [r.duration_minutes for r in page.items] == [None, 480, 420, 360]

    async def test_duration_asc_puts_open_record_last(self, db_session, records):
        page = await _run(db_session, records, sort_by="duration", sort_direction="asc")
        assert [r.duration_minutes for r in page.items] == [360, 420, 480, None]

    async def test_pagination(self, db_session, records):
        page = await _run(
            db_session, records, sort_by="start_time", sort_direction="asc", page="2", per_page="3"
        )
        assert [r.start_time for r in page.items] == [hours_ago(2)]
        assert page.pagination.as_dict() == {
            "current_page": 2,
            "total_pages": 2,
            "total_count": 4,
            "per_page": 3,
        }

    @pytest.mark.parametrize("sort_by", [field.value for field in SortField])
    @pytest.mark.parametrize("sort_direction", ["asc", "desc"])
    async def test_pages_concatenate_to_the_full_result(
        self, db_session, tied_records, sort_by, sort_direction
    ):
        order = {"sort_by": sort_by, "sort_direction": sort_direction}
        full = await _run(db_session, tied_records, **order)

        walked = []
        first = await _run(db_session, tied_records, page="1", per_page="3", **order)
        assert first.pagination.total_pages == 3
        for number in range(1, first.pagination.total_pages + 1):
            page = await _run(db_session, tied_records, page=str(number), per_page="3", **order)
            walked.extend(r.id for r in page.items)

        assert walked == [r.id for r in full.items]
        assert len(set(walked)) == first.pagination.total_count == 7

    async def test_limit_applies_without_page(self, db_session, records):
        page = await _run(db_session, records, limit="2")
        assert len(page.items) == 2
        assert page.pagination.total_count == 4
        assert page.pagination.per_page == 2

    async def test_page_ignores_limit(self, db_session, records):
        page = await _run(db_session, records, page="1", per_page="3", limit="1")
        assert len(page.items) == 3
