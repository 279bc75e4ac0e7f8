"""FastAPI router for followings and the followed-users sleep feed.

Endpoints:
- GET    /api/v1/followings?user_id=
- POST   /api/v1/followings
- DELETE /api/v1/followings/{id}
- DELETE /api/v1/followings?follower_id=&followed_id=
- GET    /api/v1/followings/sleep_records?user_id=
"""

import time
from typing import Any

from fastapi import APIRouter, Depends, Query, Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from shared.cache import FOLLOWED_SLEEP_RECORDS, FOLLOWINGS, CollectionCache
from shared.clock import Clock, get_clock
from shared.config import settings
from shared.database import get_session
from shared.exceptions import unwrap
from shared.responses import observe_request, response_meta
from shared.temporal import TemporalValidator
from sleep.api import get_collection_cache, require_user
from sleep.query import SleepRecordQuery
from sleep.serializers import following_to_dict, sleep_record_to_dict, user_to_dict
from social.feed import FeedService
from social.graph import SocialGraph

router = APIRouter(prefix="/api/v1")


class FollowRequest(BaseModel):
    follower_id: int | None = None
    followed_id: int | None = None


@router.get("/followings")
async def list_followings(
    session: AsyncSession = Depends(get_session),
    cache: CollectionCache = Depends(get_collection_cache),
    user_id: str | None = Query(None),
    sort_by: str | None = Query(None),
    sort_direction: str | None = Query(None),
    page: str | None = Query(None),
    per_page: str | None = Query(None),
):
    """Users followed by `user_id`, by name (default) or most recently followed."""
    started = time.monotonic()
    user = await require_user(session, user_id)
    graph = SocialGraph(session, cache)

    async def compute() -> dict[str, Any]:
        result = unwrap(
            await graph.list_followed(
                user,
                sort_by=sort_by,
                sort_direction=sort_direction,
                page=page,
                per_page=per_page,
                default_per_page=settings.default_per_page,
                max_per_page=settings.max_per_page,
            )
        )
        return {
            "followed_users": [user_to_dict(u) for u in result.items],
            "pagination": result.pagination.as_dict(),
        }

    params = {"sort_by": sort_by, "sort_direction": sort_direction, "page": page, "per_page": per_page}
    key = await cache.key(FOLLOWINGS, user.id, params)
    data = await cache.fetch_or_compute(key, compute)

    observe_request("followings_index", "GET", 200, started)
    return {"data": data, "meta": response_meta()}


@router.post("/followings", status_code=201)
async def follow(
    body: FollowRequest,
    session: AsyncSession = Depends(get_session),
    cache: CollectionCache = Depends(get_collection_cache),
):
    started = time.monotonic()
    follower = await require_user(
        session, body.follower_id, "follower_id", "Follower user not found"
    )
    followed = await require_user(
        session, body.followed_id, "followed_id", "Followed user not found"
    )

    edge = unwrap(await SocialGraph(session, cache).follow(follower, followed))

    observe_request("followings_create", "POST", 201, started)
    return {
        "data": {"following": following_to_dict(edge, follower=follower, followed=followed)},
        "meta": response_meta(),
    }


@router.get("/followings/sleep_records")
async def followed_sleep_records(
    session: AsyncSession = Depends(get_session),
    clock: Clock = Depends(get_clock),
    cache: CollectionCache = Depends(get_collection_cache),
    user_id: str | None = Query(None),
    followed_user_ids: list[int] | None = Query(None),
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
    """Sleep records of the users `user_id` follows, each with its owner."""
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
        result = unwrap(
            await FeedService(session).list(user, query, clock.now(), followed_user_ids)
        )
        return {
            "sleep_records": [sleep_record_to_dict(r, include_user=True) for r in result.items],
            "pagination": result.pagination.as_dict(),
        }

    params = {**query.cache_params(), "followed_user_ids": followed_user_ids}
    key = await cache.key(FOLLOWED_SLEEP_RECORDS, user.id, params)
    data = await cache.fetch_or_compute(key, compute)

    observe_request("followings_sleep_records_index", "GET", 200, started)
    return {"data": data, "meta": response_meta()}


@router.delete("/followings/{following_id}", status_code=204)
async def unfollow_by_id(
    following_id: int,
    session: AsyncSession = Depends(get_session),
    cache: CollectionCache = Depends(get_collection_cache),
):
    started = time.monotonic()
    unwrap(await SocialGraph(session, cache).unfollow(following_id=following_id))
    observe_request("followings_destroy", "DELETE", 204, started)
    return Response(status_code=204)


@router.delete("/followings", status_code=204)
async def unfollow_by_pair(
    session: AsyncSession = Depends(get_session),
    cache: CollectionCache = Depends(get_collection_cache),
    follower_id: int | None = Query(None),
    followed_id: int | None = Query(None),
):
    """Remove the edge identified by (follower_id, followed_id)."""
    started = time.monotonic()
    follower = followed = None
    if follower_id is not None:
        follower = await require_user(session, follower_id, "follower_id", "Follower user not found")
    if followed_id is not None:
        followed = await require_user(session, followed_id, "followed_id", "Followed user not found")

    unwrap(await SocialGraph(session, cache).unfollow(follower=follower, followed=followed))
    observe_request("followings_destroy", "DELETE", 204, started)
    return Response(status_code=204)
