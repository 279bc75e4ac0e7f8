"""SQLAlchemy ORM models for all three tables.

Tables:
- users: people who track sleep and follow each other
- sleep_records: one tracked sleep interval per row, open or completed
- followings: directed follower -> followed edges

Datastore-level guarantees:
- at most one open (end_time IS NULL) record per user, via a partial unique index
- end_time strictly after start_time
- one edge per (follower, followed) pair, never a self-edge
- deleting a user cascades to their records and edges
- on PostgreSQL, no two records of one user overlap (exclusion constraint)
"""

from datetime import UTC, datetime

from sqlalchemy import (
    DDL,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.engine import Dialect
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator


def utcnow() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend.

    PostgreSQL stores timestamptz natively. SQLite has no timezone support,
    so values are stored as naive UTC and tagged with UTC again on load.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetimes are not accepted; attach a timezone")
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )


class UserModel(TimestampMixin, Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    sleep_records: Mapped[list["SleepRecordModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan", passive_deletes=True
    )
    followings: Mapped[list["FollowingModel"]] = relationship(
        foreign_keys="FollowingModel.follower_id",
        back_populates="follower",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    reverse_followings: Mapped[list["FollowingModel"]] = relationship(
        foreign_keys="FollowingModel.followed_id",
        back_populates="followed",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (Index("idx_users_name", "name"),)


class SleepRecordModel(TimestampMixin, Base):
    __tablename__ = "sleep_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_time: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)

    user: Mapped[UserModel] = relationship(back_populates="sleep_records")

    @property
    def completed(self) -> bool:
        return self.end_time is not None

    __table_args__ = (
        CheckConstraint(
            "end_time IS NULL OR end_time > start_time",
            name="chk_sleep_records_end_after_start",
        ),
        CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes >= 0",
            name="chk_sleep_records_duration",
        ),
        Index(
            "uq_sleep_records_open_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("end_time IS NULL"),
            sqlite_where=text("end_time IS NULL"),
        ),
        Index("idx_sleep_records_user_created", "user_id", "created_at"),
        Index("idx_sleep_records_user_start", "user_id", "start_time"),
        Index("idx_sleep_records_start_end", "start_time", "end_time"),
    )


class FollowingModel(TimestampMixin, Base):
    __tablename__ = "followings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    follower_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    followed_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    follower: Mapped[UserModel] = relationship(
        foreign_keys=[follower_id], back_populates="followings"
    )
    followed: Mapped[UserModel] = relationship(
        foreign_keys=[followed_id], back_populates="reverse_followings"
    )

    __table_args__ = (
        UniqueConstraint("follower_id", "followed_id", name="uq_followings_pair"),
        CheckConstraint("follower_id <> followed_id", name="chk_followings_not_self"),
        Index("idx_followings_follower_created", "follower_id", "created_at"),
        Index("idx_followings_followed", "followed_id"),
    )


# PostgreSQL-only overlap guard: closed ranges per user may not intersect,
# an open record extends to infinity. Mirrors migration 001.
POSTGRES_OVERLAP_GUARD = (
    "CREATE EXTENSION IF NOT EXISTS btree_gist",
    "ALTER TABLE sleep_records ADD CONSTRAINT excl_sleep_records_no_overlap "
    "EXCLUDE USING gist (user_id WITH =, "
    "tstzrange(start_time, COALESCE(end_time, 'infinity'::timestamptz), '[]') WITH &&)",
)

for _statement in POSTGRES_OVERLAP_GUARD:
    event.listen(
        SleepRecordModel.__table__,
        "after_create",
        DDL(_statement).execute_if(dialect="postgresql"),
    )
