"""Repositories for users and sleep records, plus cache freshness lookups.

All DB access for the sleep domain goes through here. Repositories never
commit; the owning service decides transaction boundaries.
"""

from collections.abc import Collection
from datetime import UTC, datetime

from sqlalchemy import Select, delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.cache import FOLLOWED_SLEEP_RECORDS, FOLLOWINGS, SLEEP_RECORDS
from sleep.domain.orm import FollowingModel, SleepRecordModel, UserModel


class UserRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: int) -> UserModel | None:
        return await self.session.get(UserModel, user_id)

    async def create(self, name: str) -> UserModel:
        user = UserModel(name=name)
        self.session.add(user)
        await self.session.flush()
        return user

    async def delete(self, user_id: int) -> int:
        """Delete a user. Records and edges go with it via ON DELETE CASCADE."""
        result = await self.session.execute(delete(UserModel).where(UserModel.id == user_id))
        return result.rowcount


class SleepRecordRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, record_id: int) -> SleepRecordModel | None:
        return await self.session.get(SleepRecordModel, record_id)

    async def open_record(self, user_id: int) -> SleepRecordModel | None:
        stmt = select(SleepRecordModel).where(
            SleepRecordModel.user_id == user_id,
            SleepRecordModel.end_time.is_(None),
        )
        return (await self.session.execute(stmt)).scalars().first()

    def add(self, record: SleepRecordModel) -> None:
        self.session.add(record)

    @staticmethod
    def for_user(user_id: int) -> Select:
        return select(SleepRecordModel).where(SleepRecordModel.user_id == user_id)

    @staticmethod
    def for_users(user_ids: Collection[int]) -> Select:
        return select(SleepRecordModel).where(SleepRecordModel.user_id.in_(sorted(user_ids)))


class CollectionFreshness:
    """Latest `updated_at` for each cached collection scope.

    - sleep_record: the owner's records
    - following: the owner's outgoing edges
    - sleep_record_following: the later of the owner's edges and the
      followed users' records
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def latest_update(self, collection: str, owner_id: int) -> datetime | None:
        if collection == SLEEP_RECORDS:
            return await self._max(
                select(func.max(SleepRecordModel.updated_at)).where(
                    SleepRecordModel.user_id == owner_id
                )
            )
        if collection == FOLLOWINGS:
            return await self._edges(owner_id)
        if collection == FOLLOWED_SLEEP_RECORDS:
            followed = select(FollowingModel.followed_id).where(
                FollowingModel.follower_id == owner_id
            )
            records = await self._max(
                select(func.max(SleepRecordModel.updated_at)).where(
                    SleepRecordModel.user_id.in_(followed)
                )
            )
            edges = await self._edges(owner_id)
            candidates = [value for value in (records, edges) if value is not None]
            return max(candidates) if candidates else None
        raise ValueError(f"unknown cache collection: {collection}")

    async def _edges(self, follower_id: int) -> datetime | None:
        return await self._max(
            select(func.max(FollowingModel.updated_at)).where(
                FollowingModel.follower_id == follower_id
            )
        )

    async def _max(self, stmt: Select) -> datetime | None:
        value = (await self.session.execute(stmt)).scalar_one_or_none()
        return _as_utc(value)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite stores naive UTC text
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value
