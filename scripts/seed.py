#!/usr/bin/env python3
"""Load demo users, followings and sleep history into the configured database.

Sleep records go through SleepSessionService.record with overlap checks off,
so history can be loaded in bulk. The generated intervals never overlap, so
the PostgreSQL exclusion constraint is still satisfied.

Usage:
    python scripts/seed.py                 # wipe and reseed
    python scripts/seed.py --random-seed 7 # reproducible data
"""

from __future__ import annotations

import argparse
import asyncio
import random
from datetime import datetime, timedelta

from sqlalchemy import delete

from shared.cache import CollectionCache, close_cache_backend, get_cache_backend
from shared.clock import system_clock
from shared.config import settings
from shared.database import async_session_factory, engine
from shared.exceptions import unwrap
from shared.logging import configure_logging
from sleep.domain.orm import UserModel
from sleep.repository import CollectionFreshness, UserRepository
from sleep.sessions import SleepSessionService
from social.graph import SocialGraph

DEMO_USERS = [
    "Alice Johnson",
    "Bob Smith",
    "Charlie Davis",
    "Diana Miller",
    "Ethan Brown",
    "Fiona Wilson",
    "George Thompson",
    "Hannah Moore",
    "Ian Wright",
    "Julia Taylor",
]


def _midnight(now: datetime, days_ago: int) -> datetime:
    day = now - timedelta(days=days_ago)
    return day.replace(hour=0, minute=0, second=0, microsecond=0)


async def seed(rng: random.Random, reset: bool) -> None:
    now = system_clock.now()

    async with async_session_factory() as session:
        if reset:
            print("Cleaning database...")
            await session.execute(delete(UserModel))
            await session.commit()

        cache = CollectionCache(
            get_cache_backend(),
            CollectionFreshness(session),
            system_clock,
            enabled=settings.cache_enabled,
            ttl_seconds=settings.cache_ttl_seconds,
        )
        users_repo = UserRepository(session)
        graph = SocialGraph(session, cache)
        importer = SleepSessionService(session, system_clock, cache, check_overlaps=False)

        print("Creating users...")
        users = [await users_repo.create(name) for name in DEMO_USERS]
        await session.commit()
        by_name = {user.name: user for user in users}

        print("Creating following relationships...")
        follow_count = 0
        for user in users:
            others = [u for u in users if u.id != user.id]
            for followed in rng.sample(others, rng.randint(2, 5)):
                unwrap(await graph.follow(user, followed))
                follow_count += 1

        # Alice, Bob and Charlie all follow each other
        trio = [by_name["Alice Johnson"], by_name["Bob Smith"], by_name["Charlie Davis"]]
        for follower in trio:
            for followed in trio:
                if follower.id == followed.id:
                    continue
                result = await graph.follow(follower, followed)
                if result.ok:
                    follow_count += 1
        print(f"Created {follow_count} following relationships")

        print("Creating sleep history...")
        record_count = 0
        # Each user gets a separate block of older days, clear of the last two weeks
        for index, user in enumerate(users):
            base_day = 70 - index * 6
            for offset in range(rng.randint(3, 6)):
                night = _midnight(now, base_day - offset)
                start = night.replace(hour=rng.randint(21, 23), minute=rng.randint(0, 59))
                end = start + timedelta(hours=rng.randint(5, 9))
                unwrap(await importer.record(user, start, end))
                record_count += 1

        print("Creating last-week records for Alice, Bob and Charlie...")
        alice, bob, charlie = trio
        for days_ago in range(7, 0, -1):
            night = _midnight(now, days_ago)
            start = night.replace(hour=22, minute=rng.randint(0, 30))
            end = (night + timedelta(days=1)).replace(hour=6, minute=rng.randint(0, 30))
            if end < now:
                unwrap(await importer.record(alice, start, end))
                record_count += 1

            start = night.replace(hour=rng.randint(21, 23), minute=rng.randint(0, 59))
            end = (night + timedelta(days=1)).replace(
                hour=rng.randint(5, 7), minute=rng.randint(0, 59)
            )
            if end < now:
                unwrap(await importer.record(bob, start, end))
                record_count += 1

        for days_ago in (2, 3, 4, 6):
            night = _midnight(now, days_ago)
            start = night.replace(hour=23, minute=rng.randint(0, 59))
            end = (night + timedelta(days=1)).replace(hour=7, minute=rng.randint(0, 59))
            unwrap(await importer.record(charlie, start, end))
            record_count += 1

        # Charlie is asleep right now
        unwrap(await importer.record(charlie, now - timedelta(hours=1)))
        record_count += 1
        print(f"Created {record_count} sleep records")

    await close_cache_backend()
    await engine.dispose()
    print("Seeding completed")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed demo data for Good Night API")
    parser.add_argument("--random-seed", type=int, default=None, help="Seed for reproducible data")
    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Keep existing rows instead of wiping all users first",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    configure_logging(json_output=False, level="WARNING")
    asyncio.run(seed(random.Random(args.random_seed), reset=not args.no_reset))


if __name__ == "__main__":
    main()
