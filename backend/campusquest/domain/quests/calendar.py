"""Map calendar events onto campus quest zones."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from campusquest.domain.quests.models import QuestZone, ZoneSource

CALENDAR_REWARD = 50
CALENDAR_RADIUS_KM = 0.05
JITTER_STEP_DEG = 0.00005

VIRTUAL_MARKERS = ("zoom", "meet.google", "online", "virtual", "teams", "discord", "webex")

# Building codes and names as they appear in course locations ("HBH- 1202").
CAMPUS_BUILDINGS: Tuple[Tuple[str, float, float], ...] = (
	("HBH", 40.4455, -79.9479),
	("HAMBURG", 40.4455, -79.9479),
	("GHC", 40.4435, -79.9444),
	("GATES", 40.4435, -79.9444),
	("POS", 40.4409, -79.9424),
	("POSNER", 40.4409, -79.9424),
	("TEP", 40.4454, -79.9427),
	("TEPPER", 40.4454, -79.9427),
	("UC", 40.4433, -79.9421),
	("CUC", 40.4433, -79.9421),
	("DH", 40.4423, -79.9443),
	("DOHERTY", 40.4423, -79.9443),
	("WEH", 40.4426, -79.9458),
	("WEAN", 40.4426, -79.9458),
	("CFA", 40.4418, -79.9431),
	("MM", 40.4415, -79.9436),
	("BH", 40.4414, -79.9446),
	("BAKER", 40.4414, -79.9446),
	("PH", 40.4416, -79.9463),
	("PORTER", 40.4416, -79.9463),
	("NSH", 40.4440, -79.9450),
)


@dataclass(frozen=True, slots=True)
class CalendarEvent:
	id: str
	summary: str
	location: Optional[str]
	start: Optional[datetime]


def is_physical_location(location: Optional[str]) -> bool:
	if not location:
		return False
	lowered = location.lower()
	return not any(marker in lowered for marker in VIRTUAL_MARKERS)


def geocode_building(location: str) -> Optional[Tuple[float, float]]:
	"""Loose substring match against known building codes, first hit wins."""
	upper = location.upper()
	for code, lat, lon in CAMPUS_BUILDINGS:
		if code in upper:
			return lat, lon
	return None


def _jitter(event_id: str) -> float:
	# Deterministic so the same event always lands on the same spot.
	return (sum(ord(char) for char in event_id) % 10) * JITTER_STEP_DEG


def zone_from_event(event: CalendarEvent) -> Optional[QuestZone]:
	if not is_physical_location(event.location):
		return None
	coords = geocode_building(event.location or "")
	if coords is None:
		return None
	lat, lon = coords
	offset = _jitter(event.id)
	return QuestZone(
		id=f"calendar:{event.id}",
		name=event.summary,
		latitude=lat + offset,
		longitude=lon + offset,
		radius_km=CALENDAR_RADIUS_KM,
		reward_points=CALENDAR_REWARD,
		source=ZoneSource.CALENDAR,
		scheduled_time=event.start,
	)


def zones_from_events(events: Iterable[CalendarEvent]) -> List[QuestZone]:
	zones: List[QuestZone] = []
	for event in events:
		zone = zone_from_event(event)
		if zone is not None:
			zones.append(zone)
	return zones
