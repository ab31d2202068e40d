"""Liveness and readiness probes for the map service."""

from __future__ import annotations

import asyncio
import logging
from time import perf_counter
from typing import Any, Awaitable, Callable, Dict, Tuple

from campusquest.infra import postgres
from campusquest.infra.redis import redis_client
from campusquest.obs import metrics

LOGGER = logging.getLogger(__name__)

REDIS_TIMEOUT_S = 0.2
POSTGRES_TIMEOUT_S = 0.3


async def _probe(
	name: str,
	check: Callable[[], Awaitable[Any]],
	timeout: float,
	mark: Callable[[bool], None],
) -> Dict[str, Any]:
	start = perf_counter()
	try:
		await asyncio.wait_for(check(), timeout=timeout)
	except Exception as exc:
		mark(False)
		LOGGER.warning("%s readiness check failed", name, exc_info=True)
		return {"ok": False, "error": str(exc) or exc.__class__.__name__}
	mark(True)
	return {"ok": True, "latency_ms": round((perf_counter() - start) * 1000, 2)}


async def _select_one() -> None:
	pool = await postgres.get_pool()
	async with pool.acquire() as conn:
		await conn.execute("SELECT 1")


async def liveness() -> Dict[str, Any]:
	return {"status": "ok"}


async def readiness() -> Tuple[int, Dict[str, Any]]:
	"""Redis backs rate limits and the completion outbox; Postgres holds visits and balances."""
	checks = {
		"redis": await _probe("redis", redis_client.ping, REDIS_TIMEOUT_S, metrics.mark_redis),
		"postgres": await _probe("postgres", _select_one, POSTGRES_TIMEOUT_S, metrics.mark_postgres),
	}
	ok = all(check["ok"] for check in checks.values())
	return (200 if ok else 503), {"status": "ok" if ok else "degraded", "checks": checks}
