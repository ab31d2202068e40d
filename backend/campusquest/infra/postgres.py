"""Shared asyncpg pool for visits, balances and the quest registry."""

from __future__ import annotations

from typing import Optional

import asyncpg

from campusquest.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		# asyncpg may try ::1 first for "localhost"; local Postgres often listens on IPv4 only.
		dsn = settings.postgres_url.replace("@localhost", "@127.0.0.1")
		_pool = await asyncpg.create_pool(
			dsn=dsn,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			command_timeout=settings.quest_completion_timeout_seconds,
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		return await init_pool()
	return _pool


async def close_pool() -> None:
	global _pool
	pool, _pool = _pool, None
	if pool is not None:
		await pool.close()
