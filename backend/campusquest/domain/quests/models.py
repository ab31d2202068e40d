"""Domain models for quest zones and completions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ZoneSource(str, Enum):
	STATIC = "static"
	CALENDAR = "calendar"
	CUSTOM_CREATED = "custom_created"
	CUSTOM_INVITED = "custom_invited"


class InviteStatus(str, Enum):
	PENDING = "pending"
	ACCEPTED = "accepted"


class CompletionState(str, Enum):
	NOT_VISITED = "not_visited"
	PENDING = "pending"
	VISITED = "visited"
	FAILED = "failed"


@dataclass(frozen=True, slots=True)
class QuestZone:
	"""A rewarded circular geofence, optionally scheduled and invite-gated."""

	id: str
	latitude: float
	longitude: float
	radius_km: float
	reward_points: int
	source: ZoneSource = ZoneSource.STATIC
	name: str = ""
	scheduled_time: Optional[datetime] = None
	invite_status: Optional[InviteStatus] = None

	@property
	def is_eligible(self) -> bool:
		return self.invite_status is not InviteStatus.PENDING


@dataclass(frozen=True, slots=True)
class VisitResult:
	"""Answer of the persistence collaborator to a visit+reward request."""

	created: bool
	new_balance: int


@dataclass(frozen=True, slots=True)
class CompletionOutcome:
	"""Final state of one completion attempt for a (user, zone) pair."""

	user_id: str
	zone_id: str
	state: CompletionState
	reward_points: int = 0
	new_balance: Optional[int] = None
	created: bool = False
	reason: Optional[str] = None

	@property
	def succeeded(self) -> bool:
		return self.state is CompletionState.VISITED
