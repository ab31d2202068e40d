"""Spatial and time containment queries over a quest zone snapshot."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Tuple

from campusquest.domain.quests.exceptions import ZoneTimeWindowViolation
from campusquest.domain.quests.models import QuestZone
from campusquest.settings import settings

EARTH_RADIUS_KM = 6371.0


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
	"""Return the great-circle distance between two points in kilometres."""

	phi1, phi2 = math.radians(lat1), math.radians(lat2)
	dphi = math.radians(lat2 - lat1)
	dlambda = math.radians(lon2 - lon1)
	a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
	return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def as_utc(value: datetime) -> datetime:
	"""Treat naive datetimes as UTC so window comparisons never mix offsets."""
	if value.tzinfo is None:
		return value.replace(tzinfo=timezone.utc)
	return value.astimezone(timezone.utc)


def completion_window(zone: QuestZone) -> Optional[Tuple[datetime, datetime]]:
	"""Return the inclusive [start, end] completion window, or None when unscheduled."""
	if zone.scheduled_time is None:
		return None
	scheduled = as_utc(zone.scheduled_time)
	return (
		scheduled - timedelta(minutes=settings.quest_window_before_minutes),
		scheduled + timedelta(minutes=settings.quest_window_after_minutes),
	)


def check_window(zone: QuestZone, at_time: datetime) -> Optional[ZoneTimeWindowViolation]:
	"""Return a violation describing why `at_time` is outside the zone window, if it is."""
	window = completion_window(zone)
	if window is None:
		return None
	start, end = window
	moment = as_utc(at_time)
	if moment < start:
		return ZoneTimeWindowViolation(zone.id, "too_early", window_start=start, window_end=end)
	if moment > end:
		return ZoneTimeWindowViolation(zone.id, "too_late", window_start=start, window_end=end)
	return None


def contains(zone: QuestZone, lat: float, lon: float) -> bool:
	return haversine_km(lat, lon, zone.latitude, zone.longitude) < zone.radius_km


@dataclass(frozen=True, slots=True)
class ZoneSnapshot:
	version: int
	zones: Tuple[QuestZone, ...]


class GeofenceIndex:
	"""Read-mostly holder of the active zone snapshot.

	`load_zones` swaps the whole snapshot with a single reference assignment, so
	concurrent readers always see either the previous or the new snapshot.
	"""

	def __init__(self, zones: Iterable[QuestZone] = ()) -> None:
		self._snapshot = ZoneSnapshot(version=0, zones=tuple(zones))

	@property
	def snapshot(self) -> ZoneSnapshot:
		return self._snapshot

	@property
	def version(self) -> int:
		return self._snapshot.version

	def load_zones(self, zones: Iterable[QuestZone]) -> ZoneSnapshot:
		snapshot = ZoneSnapshot(version=self._snapshot.version + 1, zones=tuple(zones))
		self._snapshot = snapshot
		return snapshot

	def get(self, zone_id: str) -> Optional[QuestZone]:
		for zone in self._snapshot.zones:
			if zone.id == zone_id:
				return zone
		return None

	def find_containing(self, lat: float, lon: float, at_time: datetime) -> List[QuestZone]:
		"""Zones strictly containing the point, eligible, and open at `at_time`."""
		snapshot = self._snapshot
		return [
			zone
			for zone in snapshot.zones
			if zone.is_eligible and contains(zone, lat, lon) and check_window(zone, at_time) is None
		]

	def find_outside_window(
		self, lat: float, lon: float, at_time: datetime
	) -> List[Tuple[QuestZone, ZoneTimeWindowViolation]]:
		"""Eligible zones containing the point that are excluded only by their schedule."""
		snapshot = self._snapshot
		results: List[Tuple[QuestZone, ZoneTimeWindowViolation]] = []
		for zone in snapshot.zones:
			if not zone.is_eligible or not contains(zone, lat, lon):
				continue
			violation = check_window(zone, at_time)
			if violation is not None:
				results.append((zone, violation))
		return results
