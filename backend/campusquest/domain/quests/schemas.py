"""Pydantic response models for quest endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from campusquest.domain.quests.geofence import completion_window
from campusquest.domain.quests.models import QuestZone


class ZoneOut(BaseModel):
	id: str
	name: str
	latitude: float
	longitude: float
	radius_km: float
	reward: int
	source: str
	scheduled_time: Optional[datetime] = None
	invite_status: Optional[str] = None
	window_start: Optional[datetime] = None
	window_end: Optional[datetime] = None
	visited: bool = False

	@classmethod
	def from_zone(cls, zone: QuestZone, *, visited: bool) -> "ZoneOut":
		window = completion_window(zone)
		return cls(
			id=zone.id,
			name=zone.name,
			latitude=zone.latitude,
			longitude=zone.longitude,
			radius_km=zone.radius_km,
			reward=zone.reward_points,
			source=zone.source.value,
			scheduled_time=zone.scheduled_time,
			invite_status=zone.invite_status.value if zone.invite_status else None,
			window_start=window[0] if window else None,
			window_end=window[1] if window else None,
			visited=visited,
		)


class QuestListResponse(BaseModel):
	zones: List[ZoneOut] = Field(default_factory=list)


class VisitedResponse(BaseModel):
	zone_ids: List[str] = Field(default_factory=list)


class WalletResponse(BaseModel):
	user_id: str
	balance: int
