"""Following repository: edge lookups and followed/follower id sets."""

from sqlalchemy import Select, delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from sleep.domain.orm import FollowingModel, UserModel


class FollowingRepository:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, following_id: int) -> FollowingModel | None:
        stmt = (
            select(FollowingModel)
            .where(FollowingModel.id == following_id)
            .options(selectinload(FollowingModel.followed))
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def find_pair(self, follower_id: int, followed_id: int) -> FollowingModel | None:
        stmt = (
            select(FollowingModel)
            .where(
                FollowingModel.follower_id == follower_id,
                FollowingModel.followed_id == followed_id,
            )
            .options(selectinload(FollowingModel.followed))
        )
        return (await self.session.execute(stmt)).scalar_one_or_none()

    def add(self, edge: FollowingModel) -> None:
        self.session.add(edge)

    async def remove(self, following_id: int) -> None:
        await self.session.execute(delete(FollowingModel).where(FollowingModel.id == following_id))

    async def followed_ids(self, follower_id: int) -> set[int]:
        stmt = select(FollowingModel.followed_id).where(FollowingModel.follower_id == follower_id)
        return set((await self.session.execute(stmt)).scalars().all())

    async def follower_ids(self, followed_id: int) -> set[int]:
        stmt = select(FollowingModel.follower_id).where(FollowingModel.followed_id == followed_id)
        return set((await self.session.execute(stmt)).scalars().all())

    @staticmethod
    def followed_users(follower_id: int) -> Select:
        """Users followed by `follower_id`, joined to the edge for edge-based ordering."""
        return (
            select(UserModel)
            .join(FollowingModel, FollowingModel.followed_id == UserModel.id)
            .where(FollowingModel.follower_id == follower_id)
        )
