"""ORM row -> JSON-ready dict conversion for API responses and cache values."""

from datetime import datetime
from typing import Any

from sleep.domain.orm import FollowingModel, SleepRecordModel, UserModel


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def user_to_dict(user: UserModel) -> dict[str, Any]:
    return {
        "id": user.id,
        "name": user.name,
        "created_at": _iso(user.created_at),
        "updated_at": _iso(user.updated_at),
    }


def sleep_record_to_dict(record: SleepRecordModel, include_user: bool = False) -> dict[str, Any]:
    """`include_user` requires the `user` relationship to be loaded already."""
    data = {
        "id": record.id,
        "user_id": record.user_id,
        "start_time": _iso(record.start_time),
        "end_time": _iso(record.end_time),
        "duration_minutes": record.duration_minutes,
        "completed": record.completed,
        "created_at": _iso(record.created_at),
        "updated_at": _iso(record.updated_at),
    }
    if include_user:
        data["user"] = {"id": record.user.id, "name": record.user.name}
    return data


def following_to_dict(
    edge: FollowingModel,
    follower: UserModel | None = None,
    followed: UserModel | None = None,
) -> dict[str, Any]:
    data = {
        "id": edge.id,
        "follower_id": edge.follower_id,
        "followed_id": edge.followed_id,
        "created_at": _iso(edge.created_at),
        "updated_at": _iso(edge.updated_at),
    }
    if follower is not None:
        data["follower"] = user_to_dict(follower)
    if followed is not None:
        data["followed"] = user_to_dict(followed)
    return data
