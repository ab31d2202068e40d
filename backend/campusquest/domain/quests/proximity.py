"""Turn a position report into the zones a user has newly entered."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import AbstractSet, List

from campusquest.domain.quests.geofence import GeofenceIndex
from campusquest.domain.quests.models import QuestZone

logger = logging.getLogger(__name__)


def evaluate(
	index: GeofenceIndex,
	user_id: str,
	lat: float,
	lon: float,
	at_time: datetime,
	already_visited: AbstractSet[str],
) -> List[QuestZone]:
	"""Return containing zones not yet visited by `user_id`, sorted by zone id.

	Pure: reads the current snapshot only, so it is safe to call repeatedly.
	"""
	entered = [zone for zone in index.find_containing(lat, lon, at_time) if zone.id not in already_visited]
	entered.sort(key=lambda zone: zone.id)
	if entered and logger.isEnabledFor(logging.DEBUG):
		logger.debug(
			"zones entered user=%s snapshot=%s zones=%s",
			user_id,
			index.version,
			[zone.id for zone in entered],
		)
	return entered
