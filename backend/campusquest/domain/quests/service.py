"""Application service tying zone snapshots to the completion coordinator."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional, Tuple

from campusquest.domain.quests import proximity
from campusquest.domain.quests.catalog import ZoneCatalog
from campusquest.domain.quests.coordinator import QuestCompletionCoordinator
from campusquest.domain.quests.exceptions import ZoneTimeWindowViolation
from campusquest.domain.quests.models import CompletionOutcome, QuestZone
from campusquest.domain.quests.repository import PostgresQuestRepository, QuestRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PositionReport:
    """What a single position update produced for the reporting user."""

    entered: List[QuestZone] = field(default_factory=list)
    outcomes: List[CompletionOutcome] = field(default_factory=list)
    outside_window: List[Tuple[QuestZone, ZoneTimeWindowViolation]] = field(default_factory=list)


class QuestService:
    """Per-user quest state for live sessions."""

    def __init__(
        self,
        repository: QuestRepository,
        *,
        catalog: Optional[ZoneCatalog] = None,
        coordinator: Optional[QuestCompletionCoordinator] = None,
    ) -> None:
        self.repository = repository
        self.catalog = catalog or ZoneCatalog(repository)
        self.coordinator = coordinator or QuestCompletionCoordinator(repository)

    async def session_started(self, user_id: str) -> List[QuestZone]:
        """Reload zones and seed the visited set for a freshly identified user."""
        index = await self.catalog.refresh(user_id)
        await self.coordinator.seed_visited(user_id)
        return list(index.snapshot.zones)

    def session_ended(self, user_id: str) -> None:
        """Drop cached state once the user's last connection is gone."""
        self.catalog.drop(user_id)
        self.coordinator.forget(user_id)
        logger.debug("quest session released user=%s", user_id)

    async def zones_for(self, user_id: str) -> List[QuestZone]:
        return await self.catalog.current_zones(user_id)

    async def visited_for(self, user_id: str) -> FrozenSet[str]:
        """Visited zone ids; users without a live session are read straight from storage."""
        if self.coordinator.is_seeded(user_id):
            return await self.coordinator.visited_for(user_id)
        return frozenset(str(zone_id) for zone_id in await self.repository.get_visited_zone_ids(user_id))

    async def refresh(self, user_id: str) -> List[QuestZone]:
        """Explicit invalidation, e.g. after a quest was created or accepted."""
        if self.catalog.get(user_id) is None:
            return await self.catalog.current_zones(user_id)
        index = await self.catalog.refresh(user_id)
        if self.coordinator.is_seeded(user_id):
            await self.coordinator.seed_visited(user_id)
        return list(index.snapshot.zones)

    async def balance(self, user_id: str) -> int:
        return int(await self.repository.get_balance(user_id))

    async def evaluate_position(
        self,
        user_id: str,
        lat: float,
        lon: float,
        at: Optional[datetime] = None,
    ) -> PositionReport:
        """Find newly entered zones and zones closed by their schedule, without completing anything."""
        moment = at or datetime.now(timezone.utc)
        index = await self.catalog.ensure_loaded(user_id)
        visited = await self.coordinator.visited_for(user_id)
        entered = proximity.evaluate(index, user_id, lat, lon, moment, visited)
        outside = [
            (zone, violation)
            for zone, violation in index.find_outside_window(lat, lon, moment)
            if zone.id not in visited
        ]
        return PositionReport(entered=entered, outside_window=outside)

    async def position_reported(
        self,
        user_id: str,
        lat: float,
        lon: float,
        at: Optional[datetime] = None,
    ) -> PositionReport:
        report = await self.evaluate_position(user_id, lat, lon, at)
        report.outcomes = await self.coordinator.process(user_id, report.entered)
        return report


_service: Optional[QuestService] = None


def set_service(service: Optional[QuestService]) -> None:
    global _service
    _service = service


def get_service() -> QuestService:
    global _service
    if _service is None:
        _service = QuestService(PostgresQuestRepository())
    return _service
