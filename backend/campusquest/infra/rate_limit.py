"""Fixed-window counters in Redis for per-connection event budgets."""

from __future__ import annotations

import time
from typing import Optional

from campusquest.infra.redis import redis_client


def window_key(kind: str, actor_id: str, window_seconds: int, now: float) -> str:
	"""Counter key for the window containing `now`; windows align to the epoch."""
	window = max(1, int(window_seconds))
	return f"rl:{kind}:{actor_id}:{int(now // window)}:{window}"


async def allow(
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Count one event for `actor_id` and report whether it fits in `limit`."""
	if limit <= 0:
		return False
	if now is None:
		now = time.time()
	key = window_key(kind, actor_id, window_seconds, now)
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, max(1, int(window_seconds)))
		count, _ = await pipe.execute()
	return int(count) <= limit
