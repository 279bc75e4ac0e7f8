"""FastAPI router for users and their own sleep records.

Endpoints:
- POST   /api/v1/users
- GET    /api/v1/users/{id}
- DELETE /api/v1/users/{id}
- GET    /api/v1/sleep_records?user_id=
- POST   /api/v1/sleep_records/start
- PATCH  /api/v1/sleep_records/{id}/end

Request checks run in a fixed order: user_id presence (400), user exists
(404), timestamp format (400), then the temporal and state rules enforced
by the services (422).
"""

import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel, StringConstraints
from sqlalchemy.ext.asyncio import AsyncSession

from shared.cache import SLEEP_RECORDS, CacheBackend, CollectionCache, get_cache_backend
from shared.clock import Clock, get_clock
from shared.config import settings
from shared.database import get_session
from shared.exceptions import BadRequestError, ForbiddenError, NotFoundError, unwrap
from shared.responses import observe_request, response_meta
from shared.temporal import TemporalValidator
from sleep import query as record_query
from sleep.domain.orm import UserModel
from sleep.query import SleepRecordQuery
from sleep.repository import CollectionFreshness, SleepRecordRepository, UserRepository
from sleep.serializers import sleep_record_to_dict, user_to_dict
from sleep.sessions import SleepSessionService
from social.repository import FollowingRepository

router = APIRouter(prefix="/api/v1")


# --- Dependencies ---


def get_collection_cache(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
    backend: CacheBackend = Depends(get_cache_backend),
) -> CollectionCache:
    return CollectionCache(
        backend,
        CollectionFreshness(session),
        clock,
        enabled=settings.cache_enabled,
        ttl_seconds=settings.cache_ttl_seconds,
    )


async def require_user(
    session: AsyncSession,
    raw_id: Any,
    field: str = "user_id",
    not_found_detail: str = "User not found",
) -> UserModel:
    """Resolve a user id parameter: missing is 400, unknown is 404."""
    if raw_id is None or raw_id == "":
        raise BadRequestError(f"{field} parameter is required", reason="missing_parameter")
    try:
        user_id = int(raw_id)
    except (TypeError, ValueError):
        raise NotFoundError(not_found_detail, reason="user_not_found") from None
    user = await UserRepository(session).get(user_id)
    if user is None:
        raise NotFoundError(not_found_detail, reason="user_not_found")
    return user


# --- Request models ---


class CreateUserRequest(BaseModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)]


class StartSleepRequest(BaseModel):
    user_id: int | None = None
    start_time: str | None = None


class EndSleepRequest(BaseModel):
    user_id: int | None = None
    end_time: str | None = None


# --- Users ---


@router.post("/users", status_code=201)
async def create_user(body: CreateUserRequest, session: AsyncSession = Depends(get_session)):
    started = time.monotonic()
    user = await UserRepository(session).create(body.name)
    await session.commit()
    observe_request("users_create", "POST", 201, started)
    return {"data": {"user": user_to_dict(user)}, "meta": response_meta()}


@router.get("/users/{user_id}")
async def get_user(user_id: int, session: AsyncSession = Depends(get_session)):
    started = time.monotonic()
    user = await require_user(session, user_id)
    observe_request("users_show", "GET", 200, started)
    return {"data": {"user": user_to_dict(user)}, "meta": response_meta()}


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: int,
    session: AsyncSession = Depends(get_session),
    cache: CollectionCache = Depends(get_collection_cache),
):
    """Delete a user along with their records and edges in both directions."""
    started = time.monotonic()
    user = await require_user(session, user_id)
    followers = await FollowingRepository(session).follower_ids(user.id)
    await UserRepository(session).delete(user.id)
    await session.commit()
    await cache.invalidate_user(user_id, followers)
    observe_request("users_delete", "DELETE", 204, started)
    return Response(status_code=204)


# --- Sleep records ---


@router.get("/sleep_records")
async def list_sleep_records(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
    cache: CollectionCache = Depends(get_collection_cache),
    user_id: str | None = Query(None),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    from_last_week: str | None = Query(None),
    completed_only: str | None = Query(None),
    in_progress_only: str | None = Query(None),
    sort_by: str | None = Query(None),
    sort_direction: str | None = Query(None),
    page: str | None = Query(None),
    per_page: str | None = Query(None),
    limit: str | None = Query(None),
):
    """The user's own sleep records, filtered, sorted and optionally paginated."""
    started = time.monotonic()
    user = await require_user(session, user_id)
    start, end = unwrap(TemporalValidator(clock).parse_range(start_date, end_date))

    query = SleepRecordQuery.build(
        completed_only=completed_only,
        in_progress_only=in_progress_only,
        from_last_week=from_last_week,
        start_date=start,
        end_date=end,
        sort_by=sort_by,
        sort_direction=sort_direction,
        page=page,
        per_page=per_page,
        limit=limit,
        default_per_page=settings.default_per_page,
        max_per_page=settings.max_per_page,
    )

    async def compute() -> dict[str, Any]:
        result = await record_query.execute(
            session, SleepRecordRepository.for_user(user.id), query, clock.now()
        )
        return {
            "sleep_records": [sleep_record_to_dict(r) for r in result.items],
            "pagination": result.pagination.as_dict(),
        }

    key = await cache.key(SLEEP_RECORDS, user.id, query.cache_params())
    data = await cache.fetch_or_compute(key, compute)

    observe_request("sleep_records_index", "GET", 200, started)
    return {"data": data, "meta": response_meta()}


@router.post("/sleep_records/start", status_code=201)
async def start_sleep(
    body: StartSleepRequest,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
    cache: CollectionCache = Depends(get_collection_cache),
):
    """Open a new sleep session. start_time defaults to now."""
    started = time.monotonic()
    user = await require_user(session, body.user_id)
    start_time = unwrap(TemporalValidator(clock).parse(body.start_time, "start_time"))

    service = SleepSessionService(session, clock, cache)
    record = unwrap(await service.start(user, start_time))

    observe_request("sleep_records_start", "POST", 201, started)
    return {"data": {"sleep_record": sleep_record_to_dict(record)}, "meta": response_meta()}


@router.patch("/sleep_records/{record_id}/end")
async def end_sleep(
    record_id: int,
    body: EndSleepRequest,
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
    cache: CollectionCache = Depends(get_collection_cache),
):
    """Close an open sleep session owned by `user_id`. end_time defaults to now."""
    started = time.monotonic()
    user = await require_user(session, body.user_id)

    record = await SleepRecordRepository(session).get(record_id)
    if record is None:
        raise NotFoundError("Sleep record not found", reason="sleep_record_not_found")
    if record.user_id != user.id:
        raise ForbiddenError(
            "You are not authorized to end this sleep record", reason="not_owner"
        )

    end_time = unwrap(TemporalValidator(clock).parse(body.end_time, "end_time"))
    service = SleepSessionService(session, clock, cache)
    record = unwrap(await service.end(record, end_time))

    observe_request("sleep_records_end", "PATCH", 200, started)
    return {"data": {"sleep_record": sleep_record_to_dict(record)}, "meta": response_meta()}
