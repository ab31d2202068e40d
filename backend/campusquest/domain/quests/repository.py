"""Persistence collaborator for visits, balances and active zones."""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Set

from campusquest.domain.quests.calendar import CalendarEvent, zones_from_events
from campusquest.domain.quests.models import InviteStatus, QuestZone, VisitResult, ZoneSource
from campusquest.infra.postgres import get_pool

logger = logging.getLogger(__name__)

CUSTOM_RADIUS_KM = 0.05


class QuestRepository(Protocol):
    """Boundary operations the engine consumes from the datastore."""

    async def get_visited_zone_ids(self, user_id: str) -> Set[str]: ...

    async def record_visit_and_reward(self, user_id: str, zone_id: str, reward_points: int) -> VisitResult: ...

    async def get_active_zones(self, user_id: str) -> List[QuestZone]: ...

    async def get_balance(self, user_id: str) -> int: ...


def _invite_status(raw: Optional[str]) -> Optional[InviteStatus]:
    if raw is None:
        return None
    try:
        return InviteStatus(str(raw).lower())
    except ValueError:
        # Declined or unknown invitations must never become completable.
        return InviteStatus.PENDING


class PostgresQuestRepository:
    """asyncpg-backed implementation of `QuestRepository`."""

    async def get_visited_zone_ids(self, user_id: str) -> Set[str]:
        pool = await get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT zone_id FROM visited_zones WHERE user_id = $1",
                user_id,
            )
        return {str(row["zone_id"]) for row in rows}

    async def record_visit_and_reward(self, user_id: str, zone_id: str, reward_points: int) -> VisitResult:
        """Insert the visit and credit the reward atomically, at most once per pair."""
        pool = await get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                inserted = await conn.fetchval(
                    """
                    INSERT INTO visited_zones (user_id, zone_id, created_at)
                    VALUES ($1, $2, NOW())
                    ON CONFLICT (user_id, zone_id) DO NOTHING
                    RETURNING zone_id
                    """,
                    user_id,
                    zone_id,
                )
                if inserted is None:
                    balance = await conn.fetchval(
                        "SELECT COALESCE(balance, 0) FROM users WHERE id = $1",
                        user_id,
                    )
                    return VisitResult(created=False, new_balance=int(balance or 0))

                balance = await conn.fetchval(
                    """
                    UPDATE users
                    SET balance = COALESCE(balance, 0) + $2
                    WHERE id = $1
                    RETURNING balance
                    """,
                    user_id,
                    int(reward_points),
                )
                if balance is None:
                    # No user row: abort so the visit is not recorded without its reward.
                    raise LookupError(f"user_not_found:{user_id}")
                await conn.execute(
                    """
                    INSERT INTO transactions (user_id, amount, kind, reference)
                    VALUES ($1, $2, 'quest_reward', $3)
                    """,
                    user_id,
                    int(reward_points),
                    zone_id,
                )
                return VisitResult(created=True, new_balance=int(balance))

    async def get_balance(self, user_id: str) -> int:
        pool = await get_pool()
        async with pool.acquire() as conn:
            balance = await conn.fetchval(
                "SELECT COALESCE(balance, 0) FROM users WHERE id = $1",
                user_id,
            )
        return int(balance or 0)

    async def get_active_zones(self, user_id: str) -> List[QuestZone]:
        pool = await get_pool()
        zones: List[QuestZone] = []
        async with pool.acquire() as conn:
            static_rows = await conn.fetch(
                """
                SELECT id, name, latitude, longitude, radius_km, reward, scheduled_time
                FROM quest_zones
                WHERE active = TRUE
                """
            )
            created_rows = await conn.fetch(
                """
                SELECT id, name, latitude, longitude, points, start_time
                FROM custom_quests
                WHERE creator_id = $1
                """,
                user_id,
            )
            invited_rows = await conn.fetch(
                """
                SELECT q.id, q.name, q.latitude, q.longitude, q.points, q.start_time, p.status
                FROM quest_participants p
                JOIN custom_quests q ON q.id = p.quest_id
                WHERE p.user_id = $1
                """,
                user_id,
            )
            calendar_rows = await conn.fetch(
                """
                SELECT event_id, summary, location, start_time
                FROM calendar_events
                WHERE user_id = $1 AND (start_time IS NULL OR start_time >= NOW() - INTERVAL '2 hours')
                ORDER BY start_time
                """,
                user_id,
            )

        for row in static_rows:
            zones.append(
                QuestZone(
                    id=f"static:{row['id']}",
                    name=row["name"] or "",
                    latitude=float(row["latitude"]),
                    longitude=float(row["longitude"]),
                    radius_km=float(row["radius_km"]),
                    reward_points=int(row["reward"]),
                    source=ZoneSource.STATIC,
                    scheduled_time=row["scheduled_time"],
                )
            )
        for row in created_rows:
            zones.append(
                QuestZone(
                    id=f"custom:{row['id']}",
                    name=row["name"] or "",
                    latitude=float(row["latitude"]),
                    longitude=float(row["longitude"]),
                    radius_km=CUSTOM_RADIUS_KM,
                    reward_points=int(row["points"] or 0),
                    source=ZoneSource.CUSTOM_CREATED,
                    scheduled_time=row["start_time"],
                )
            )
        for row in invited_rows:
            zones.append(
                QuestZone(
                    id=f"custom:{row['id']}",
                    name=row["name"] or "",
                    latitude=float(row["latitude"]),
                    longitude=float(row["longitude"]),
                    radius_km=CUSTOM_RADIUS_KM,
                    reward_points=int(row["points"] or 0),
                    source=ZoneSource.CUSTOM_INVITED,
                    scheduled_time=row["start_time"],
                    invite_status=_invite_status(row["status"]),
                )
            )
        zones.extend(
            zones_from_events(
                CalendarEvent(
                    id=str(row["event_id"]),
                    summary=row["summary"] or "",
                    location=row["location"],
                    start=row["start_time"],
                )
                for row in calendar_rows
            )
        )
        logger.debug(
            "active zones loaded user=%s static=%s created=%s invited=%s calendar=%s",
            user_id,
            len(static_rows),
            len(created_rows),
            len(invited_rows),
            len(calendar_rows),
        )
        return zones
