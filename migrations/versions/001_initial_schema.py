"""Initial schema: users, sleep_records, followings

Revision ID: 001
Revises: None
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # btree_gist lets the exclusion constraint mix = on user_id with && on ranges
    op.execute("CREATE EXTENSION IF NOT EXISTS btree_gist")

    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False),
        *_timestamps(),
    )
    op.create_index("idx_users_name", "users", ["name"])

    # --- sleep_records ---
    op.create_table(
        "sleep_records",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "user_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_minutes", sa.Integer, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "end_time IS NULL OR end_time > start_time",
            name="chk_sleep_records_end_after_start",
        ),
        sa.CheckConstraint(
            "duration_minutes IS NULL OR duration_minutes >= 0",
            name="chk_sleep_records_duration",
        ),
    )
    # At most one open record per user, race-safe
    op.create_index(
        "uq_sleep_records_open_per_user",
        "sleep_records",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("end_time IS NULL"),
    )
    op.create_index("idx_sleep_records_user_created", "sleep_records", ["user_id", "created_at"])
    op.create_index("idx_sleep_records_user_start", "sleep_records", ["user_id", "start_time"])
    op.create_index("idx_sleep_records_start_end", "sleep_records", ["start_time", "end_time"])
    op.execute("""
        ALTER TABLE sleep_records
            ADD CONSTRAINT excl_sleep_records_no_overlap
            EXCLUDE USING gist (
                user_id WITH =,
                tstzrange(start_time, COALESCE(end_time, 'infinity'::timestamptz), '[]') WITH &&
            )
    """)

    # --- followings ---
    op.create_table(
        "followings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "follower_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "followed_id",
            sa.Integer,
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        *_timestamps(),
        sa.UniqueConstraint("follower_id", "followed_id", name="uq_followings_pair"),
        sa.CheckConstraint("follower_id <> followed_id", name="chk_followings_not_self"),
    )
    op.create_index(
        "idx_followings_follower_created", "followings", ["follower_id", "created_at"]
    )
    op.create_index("idx_followings_followed", "followings", ["followed_id"])

    # updated_at trigger
    op.execute("""
        CREATE OR REPLACE FUNCTION update_updated_at_column()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = now();
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """)
    for table in ("users", "sleep_records", "followings"):
        op.execute(f"""
            CREATE TRIGGER trg_{table}_updated_at
                BEFORE UPDATE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION update_updated_at_column();
        """)


def downgrade() -> None:
    for table in ("followings", "sleep_records", "users"):
        op.execute(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table}")
    op.execute("DROP FUNCTION IF EXISTS update_updated_at_column")
    op.drop_table("followings")
    op.drop_table("sleep_records")
    op.drop_table("users")
