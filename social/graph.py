"""Social graph: directed follower -> followed edges between users."""

from dataclasses import dataclass
from enum import StrEnum

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.cache import CollectionCache
from shared.metrics import following_changes_total
from shared.result import Err, Ok, Result, bad_request, not_found, unprocessable
from sleep.domain.orm import FollowingModel, UserModel
from sleep.query import Page, Pagination, SortDirection, positive_int
from social.repository import FollowingRepository

logger = structlog.get_logger()


class FollowSort(StrEnum):
    NAME = "name"
    RECENT = "recent"


@dataclass(frozen=True)
class Unfollowed:
    message: str
    following: FollowingModel


class SocialGraph:
    def __init__(self, session: AsyncSession, cache: CollectionCache):
        self.session = session
        self.cache = cache
        self.edges = FollowingRepository(session)

    async def follow(
        self, follower: UserModel | None, followed: UserModel | None
    ) -> Result[FollowingModel]:
        if follower is None or followed is None:
            return self._rejected(
                "follow",
                bad_request("user_required", "Both follower and followed users are required"),
            )
        if follower.id == followed.id:
            return self._rejected(
                "follow", unprocessable("self_follow", "You cannot follow yourself", "followed_id")
            )
        if await self.edges.find_pair(follower.id, followed.id) is not None:
            return self._rejected("follow", _already_following())

        follower_id = follower.id
        edge = FollowingModel(follower_id=follower.id, followed_id=followed.id)
        self.edges.add(edge)
        try:
            await self.session.commit()
        except IntegrityError:
            # A concurrent follow won the race on uq_followings_pair
            await self.session.rollback()
            return self._rejected("follow", _already_following())

        await self.cache.invalidate_followings(follower_id)
        following_changes_total.labels(operation="follow", outcome="ok").inc()
        logger.info(
            "user_followed",
            following_id=edge.id,
            follower_id=edge.follower_id,
            followed_id=edge.followed_id,
        )
        return Ok(edge)

    async def unfollow(
        self,
        following_id: int | None = None,
        follower: UserModel | None = None,
        followed: UserModel | None = None,
    ) -> Result[Unfollowed]:
        if following_id is not None:
            edge = await self.edges.get(following_id)
        elif follower is not None and followed is not None:
            edge = await self.edges.find_pair(follower.id, followed.id)
        elif follower is None and followed is None:
            return self._rejected(
                "unfollow",
                bad_request(
                    "missing_identifier",
                    "Must provide either following ID or both follower and followed users",
                ),
            )
        else:
            return self._rejected(
                "unfollow",
                bad_request("missing_identifier", "Must provide both follower and followed users"),
            )

        if edge is None:
            return self._rejected(
                "unfollow", not_found("following_not_found", "Following relationship not found")
            )

        follower_id = edge.follower_id
        message = f"Successfully unfollowed {edge.followed.name}"
        await self.edges.remove(edge.id)
        await self.session.commit()

        await self.cache.invalidate_followings(follower_id)
        following_changes_total.labels(operation="unfollow", outcome="ok").inc()
        logger.info("user_unfollowed", following_id=edge.id, follower_id=follower_id)
        return Ok(Unfollowed(message=message, following=edge))

    async def list_followed(
        self,
        user: UserModel | None,
        sort_by: str | None = None,
        sort_direction: str | None = None,
        page: int | str | None = None,
        per_page: int | str | None = None,
        *,
        default_per_page: int = 10,
        max_per_page: int | None = None,
    ) -> Result[Page[UserModel]]:
        """Users followed by `user`.

        name (default) sorts alphabetically and honours sort_direction;
        recent sorts by when the edge was created, newest first.
        """
        if user is None:
            return bad_request("user_required", "User is required", "user_id")

        stmt = FollowingRepository.followed_users(user.id)
        if sort_by == FollowSort.RECENT:
            stmt = stmt.order_by(FollowingModel.created_at.desc(), FollowingModel.id.desc())
        elif sort_by in (None, FollowSort.NAME) and sort_direction == SortDirection.DESC:
            stmt = stmt.order_by(UserModel.name.desc(), UserModel.id.desc())
        else:
            stmt = stmt.order_by(UserModel.name.asc(), UserModel.id.asc())

        total_count = (
            await self.session.execute(
                select(func.count()).select_from(stmt.order_by(None).subquery())
            )
        ).scalar_one()

        current_page = positive_int(page)
        if current_page is None:
            users = list((await self.session.execute(stmt)).scalars().all())
            return Ok(Page(users, Pagination.single_page(total_count, len(users))))

        size = positive_int(per_page) or default_per_page
        if max_per_page is not None:
            size = min(size, max_per_page)
        stmt = stmt.offset((current_page - 1) * size).limit(size)
        users = list((await self.session.execute(stmt)).scalars().all())
        return Ok(Page(users, Pagination.paginated(total_count, current_page, size)))

    async def followed_user_ids(self, user: UserModel) -> set[int]:
        return await self.edges.followed_ids(user.id)

    async def follower_ids(self, user: UserModel) -> set[int]:
        return await self.edges.follower_ids(user.id)

    def _rejected(self, operation: str, error: Err) -> Err:
        following_changes_total.labels(operation=operation, outcome=error.error.reason).inc()
        logger.info("following_rejected", operation=operation, reason=error.error.reason)
        return error


def _already_following() -> Err:
    return unprocessable("already_following", "You are already following this user", "followed_id")
