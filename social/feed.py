"""Feed of sleep records belonging to the users someone follows."""

from collections.abc import Iterable
from datetime import datetime

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from shared.result import Ok, Result, bad_request
from sleep import query as record_query
from sleep.domain.orm import SleepRecordModel, UserModel
from sleep.query import Page, SleepRecordQuery
from sleep.repository import SleepRecordRepository
from social.repository import FollowingRepository

logger = structlog.get_logger()


class FeedService:
    def __init__(self, session: AsyncSession):
        self.session = session
        self.edges = FollowingRepository(session)

    async def list(
        self,
        user: UserModel | None,
        query: SleepRecordQuery,
        now: datetime,
        followed_user_ids: Iterable[int] | None = None,
    ) -> Result[Page[SleepRecordModel]]:
        """Records of followed users, optionally narrowed to `followed_user_ids`.

        Requested ids the user does not follow are dropped silently; an empty
        set yields an empty page rather than an error.
        """
        if user is None:
            return bad_request("user_required", "User is required", "user_id")

        scope = await self.edges.followed_ids(user.id)
        if followed_user_ids is not None:
            scope &= set(followed_user_ids)
        if not scope:
            logger.debug("feed_empty", user_id=user.id)
            return Ok(Page.empty(query))

        page = await record_query.execute(
            self.session,
            SleepRecordRepository.for_users(scope),
            query,
            now,
            options=(selectinload(SleepRecordModel.user),),
        )
        return Ok(page)
