"""AsyncPG pool management for the backend."""

from __future__ import annotations

import asyncio
from typing import Optional

import asyncpg

from docdesk.settings import settings

_pool: Optional[asyncpg.pool.Pool] = None


async def init_pool() -> asyncpg.pool.Pool:
	global _pool
	if _pool is None:
		_pool = await asyncpg.create_pool(
			dsn=settings.postgres_url,
			min_size=settings.postgres_min_pool_size,
			max_size=settings.postgres_max_pool_size,
			ssl="require" if settings.postgres_ssl else "disable",
		)
	return _pool


def set_pool(pool: Optional[asyncpg.pool.Pool]) -> None:
	global _pool
	_pool = pool


async def get_pool() -> asyncpg.pool.Pool:
	if _pool is None:
		await init_pool()
	assert _pool is not None
	return _pool


async def close_pool() -> None:
	global _pool
	if _pool is not None:
		await _pool.close()
		_pool = None


class PoolAccessor:
	"""Lazily resolve the shared pool once; ``None`` means use in-memory storage."""

	def __init__(self) -> None:
		self._pool_checked = False
		self._pool_instance: Optional[asyncpg.Pool] = None

	async def get(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool_instance
		self._pool_checked = True
		try:
			pool = await get_pool()
		except AssertionError:
			pool = None
		except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError):
			pool = None
		self._pool_instance = pool
		return pool


# Failures of the store layer that callers report as upstream errors.
STORE_ERRORS: tuple[type[BaseException], ...] = (
	asyncpg.PostgresError,
	asyncpg.InterfaceError,
	OSError,
	asyncio.TimeoutError,
)
