"""Persistence for user and subadmin records."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import asyncpg
import ulid

from docdesk.domain.accounts import models
from docdesk.infra.postgres import PoolAccessor


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.users: Dict[str, models.User] = {}
		self.subadmins: Dict[str, models.SubAdmin] = {}

	async def put_user(self, user: models.User) -> models.User:
		async with self._lock:
			self.users[user.id] = user
			return user

	async def put_subadmin(self, subadmin: models.SubAdmin) -> models.SubAdmin:
		async with self._lock:
			self.subadmins[subadmin.id] = subadmin
			return subadmin

	async def get_user(self, user_id: str) -> Optional[models.User]:
		async with self._lock:
			return self.users.get(user_id)

	async def get_subadmin(self, subadmin_id: str) -> Optional[models.SubAdmin]:
		async with self._lock:
			return self.subadmins.get(subadmin_id)

	async def get_subadmin_by_user(self, user_id: str) -> Optional[models.SubAdmin]:
		async with self._lock:
			for subadmin in self.subadmins.values():
				if subadmin.user_id == user_id:
					return subadmin
			return None

	async def find_user_by_email(self, email: str) -> Optional[models.User]:
		async with self._lock:
			lowered = email.lower()
			for user in self.users.values():
				if user.email.lower() == lowered:
					return user
			return None

	async def list_users(self, roles: Sequence[str]) -> List[models.User]:
		async with self._lock:
			return sorted(
				(user for user in self.users.values() if user.role in roles),
				key=lambda u: u.created_at,
			)

	async def list_subadmins(self) -> List[models.SubAdmin]:
		async with self._lock:
			return sorted(self.subadmins.values(), key=lambda s: s.created_at, reverse=True)

	async def delete_subadmin(self, subadmin_id: str, *, user_id: Optional[str]) -> None:
		async with self._lock:
			self.subadmins.pop(subadmin_id, None)
			if user_id:
				self.users.pop(user_id, None)


_MEMORY = _MemoryStore()


def _row_to_user(row: asyncpg.Record) -> models.User:
	return models.User(
		id=str(row["id"]),
		name=row["name"],
		email=row["email"],
		role=row["role"],
		created_at=row["created_at"],
	)


def _row_to_subadmin(row: asyncpg.Record) -> models.SubAdmin:
	return models.SubAdmin(
		id=str(row["id"]),
		user_id=str(row["user_id"]),
		permissions=row["permissions"],
		created_by=str(row["created_by"]) if row["created_by"] else None,
		created_at=row["created_at"],
		assigned_groups=list(row["assigned_groups"] or []),
	)


class AccountRepository:
	def __init__(self) -> None:
		self._pool = PoolAccessor()

	async def create_user(self, *, name: str, email: str, role: str) -> models.User:
		user = models.User(
			id=str(ulid.new()),
			name=name,
			email=email,
			role=role,
			created_at=datetime.now(timezone.utc),
		)
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.put_user(user)
		async with pool.acquire() as conn:
			await conn.execute(
				"INSERT INTO users (id, name, email, role, created_at) VALUES ($1,$2,$3,$4,$5)",
				user.id,
				user.name,
				user.email,
				user.role,
				user.created_at,
			)
		return user

	async def create_subadmin(
		self,
		*,
		user_id: str,
		permissions: str,
		assigned_groups: Sequence[str],
		created_by: Optional[str],
	) -> models.SubAdmin:
		subadmin = models.SubAdmin(
			id=str(ulid.new()),
			user_id=user_id,
			permissions=permissions,
			created_by=created_by,
			created_at=datetime.now(timezone.utc),
			assigned_groups=list(assigned_groups),
		)
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.put_subadmin(subadmin)
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO sub_admins (id, user_id, permissions, assigned_groups, created_by, created_at)
				VALUES ($1,$2,$3,$4,$5,$6)
				""",
				subadmin.id,
				subadmin.user_id,
				subadmin.permissions,
				subadmin.assigned_groups,
				subadmin.created_by,
				subadmin.created_at,
			)
		return subadmin

	async def get_user(self, user_id: str) -> Optional[models.User]:
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.get_user(user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM users WHERE id=$1", user_id)
			return _row_to_user(row) if row else None

	async def find_user_by_email(self, email: str) -> Optional[models.User]:
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.find_user_by_email(email)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM users WHERE lower(email)=lower($1)", email)
			return _row_to_user(row) if row else None

	async def get_subadmin(self, subadmin_id: str) -> Optional[models.SubAdmin]:
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.get_subadmin(subadmin_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM sub_admins WHERE id=$1", subadmin_id)
			return _row_to_subadmin(row) if row else None

	async def get_subadmin_by_user(self, user_id: str) -> Optional[models.SubAdmin]:
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.get_subadmin_by_user(user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM sub_admins WHERE user_id=$1", user_id)
			return _row_to_subadmin(row) if row else None

	async def list_users(self, roles: Sequence[str]) -> List[models.User]:
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.list_users(roles)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM users WHERE role = ANY($1::text[]) ORDER BY created_at",
				list(roles),
			)
			return [_row_to_user(row) for row in rows]

	async def list_subadmins(self) -> List[models.SubAdmin]:
		pool = await self._pool.get()
		if pool is None:
			return await _MEMORY.list_subadmins()
		async with pool.acquire() as conn:
			rows = await conn.fetch("SELECT * FROM sub_admins ORDER BY created_at DESC")
			return [_row_to_subadmin(row) for row in rows]

	async def delete_subadmin(self, subadmin_id: str, *, user_id: Optional[str]) -> None:
		"""Delete the subadmin row and, when given, its backing user in one transaction."""
		pool = await self._pool.get()
		if pool is None:
			await _MEMORY.delete_subadmin(subadmin_id, user_id=user_id)
			return
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute("DELETE FROM sub_admins WHERE id=$1", subadmin_id)
				if user_id:
					await conn.execute("DELETE FROM users WHERE id=$1", user_id)


async def reset_memory_state() -> None:
	"""Test helper to clear in-memory account state."""
	async with _MEMORY._lock:  # type: ignore[attr-defined]
		_MEMORY.users.clear()
		_MEMORY.subadmins.clear()
