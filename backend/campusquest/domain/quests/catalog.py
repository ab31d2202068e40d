"""Per-user cache of geofence indexes fed by the quest registry."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional

from campusquest.domain.quests.geofence import GeofenceIndex
from campusquest.domain.quests.models import QuestZone, ZoneSource
from campusquest.domain.quests.repository import QuestRepository
from campusquest.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

STATIC_ZONES: tuple[QuestZone, ...] = (
	QuestZone(
		id="static:1",
		name="The Fence",
		latitude=40.4432,
		longitude=-79.9428,
		radius_km=0.03,
		reward_points=50,
		source=ZoneSource.STATIC,
	),
	QuestZone(
		id="static:2",
		name="Pausch Bridge",
		latitude=40.4423,
		longitude=-79.9465,
		radius_km=0.03,
		reward_points=100,
		source=ZoneSource.STATIC,
	),
)


def merge_zones(*groups: Iterable[QuestZone]) -> List[QuestZone]:
	"""Concatenate zone groups keeping the last definition of each id."""
	merged: Dict[str, QuestZone] = {}
	for group in groups:
		for zone in group:
			merged[zone.id] = zone
	return list(merged.values())


class ZoneCatalog:
	"""Holds one `GeofenceIndex` per identified user.

	Calendar-derived and invited zones differ per user, so each user's snapshot
	is loaded separately and replaced wholesale on refresh.
	"""

	def __init__(self, repository: QuestRepository, *, static_zones: Iterable[QuestZone] = STATIC_ZONES) -> None:
		self._repository = repository
		self._static_zones = tuple(static_zones)
		self._indexes: Dict[str, GeofenceIndex] = {}
		self._refresh_locks: Dict[str, asyncio.Lock] = {}

	def get(self, user_id: str) -> Optional[GeofenceIndex]:
		return self._indexes.get(user_id)

	def users(self) -> List[str]:
		return list(self._indexes)

	async def ensure_loaded(self, user_id: str) -> GeofenceIndex:
		index = self._indexes.get(user_id)
		if index is not None:
			return index
		return await self.refresh(user_id)

	async def current_zones(self, user_id: str) -> List[QuestZone]:
		"""Zones for `user_id` without creating a cached index for it."""
		index = self._indexes.get(user_id)
		if index is not None:
			return list(index.snapshot.zones)
		try:
			zones = await self._repository.get_active_zones(user_id)
		except Exception:
			obs_metrics.inc_zone_snapshot("error")
			logger.warning("zone lookup failed user=%s", user_id, exc_info=True)
			return list(self._static_zones)
		return merge_zones(self._static_zones, zones)

	async def refresh(self, user_id: str) -> GeofenceIndex:
		"""Reload the user's zones from the registry.

		On registry failure the previous snapshot stays active; a user with no
		snapshot yet falls back to the static zones only.
		"""
		lock = self._refresh_locks.setdefault(user_id, asyncio.Lock())
		async with lock:
			index = self._indexes.get(user_id)
			try:
				zones = await self._repository.get_active_zones(user_id)
			except Exception:
				obs_metrics.inc_zone_snapshot("error")
				logger.warning("zone refresh failed user=%s", user_id, exc_info=True)
				if index is None:
					index = GeofenceIndex(self._static_zones)
					self._indexes[user_id] = index
					obs_metrics.set_zone_indexes(len(self._indexes))
				return index
			if index is None:
				index = GeofenceIndex()
				self._indexes[user_id] = index
				obs_metrics.set_zone_indexes(len(self._indexes))
			snapshot = index.load_zones(merge_zones(self._static_zones, zones))
			obs_metrics.inc_zone_snapshot("ok")
			logger.info("zone snapshot loaded user=%s version=%s zones=%s", user_id, snapshot.version, len(snapshot.zones))
			return index

	async def refresh_all(self) -> int:
		refreshed = 0
		for user_id in self.users():
			await self.refresh(user_id)
			refreshed += 1
		return refreshed

	def drop(self, user_id: str) -> None:
		self._indexes.pop(user_id, None)
		self._refresh_locks.pop(user_id, None)
		obs_metrics.set_zone_indexes(len(self._indexes))

	def clear(self) -> None:
		self._indexes.clear()
		self._refresh_locks.clear()
		obs_metrics.set_zone_indexes(0)


async def run_zone_refresher(catalog: ZoneCatalog, interval_s: float) -> None:
	"""Periodically reload zone snapshots for users with live sessions."""
	interval = max(1.0, float(interval_s))
	try:
		while True:
			await asyncio.sleep(interval)
			try:
				count = await catalog.refresh_all()
			except Exception:  # pragma: no cover - defensive logging
				logger.exception("zone refresher iteration failed")
				continue
			if count:
				logger.info("zone refresher reloaded %s snapshots", count)
	except asyncio.CancelledError:
		raise
