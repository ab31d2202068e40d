"""Outbox helpers for quest-domain events."""

from __future__ import annotations

import logging
from typing import Any

from campusquest.domain.quests.models import CompletionOutcome
from campusquest.infra.redis import redis_client

logger = logging.getLogger(__name__)

QUEST_COMPLETION_STREAM = "x:quests.completions"


async def append_completion(outcome: CompletionOutcome) -> None:
	"""Publish a created completion; failures are logged and never raised."""
	fields: dict[str, Any] = {
		"event": "quest.completed",
		"user_id": outcome.user_id,
		"zone_id": outcome.zone_id,
		"reward": str(outcome.reward_points),
	}
	if outcome.new_balance is not None:
		fields["balance"] = str(outcome.new_balance)
	try:
		await redis_client.xadd_capped(QUEST_COMPLETION_STREAM, fields)
	except Exception:
		logger.warning("quest completion outbox append failed zone=%s", outcome.zone_id, exc_info=True)
