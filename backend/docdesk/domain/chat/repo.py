"""Persistence for chat groups and messages.

Both repositories talk to Postgres when a pool is available and fall back to a
process-local store otherwise. Every method is a single atomic step against
the store; callers compose them without a surrounding transaction.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import asyncpg
import ulid

from docdesk.domain.chat import models
from docdesk.domain.chat.exceptions import UpstreamFailureError
from docdesk.infra.postgres import PoolAccessor


def _clone(value):
	return copy.deepcopy(value)


class _ChatStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.groups: Dict[str, models.ChatGroup] = {}
		self.messages: Dict[str, models.Message] = {}
		self.group_messages: Dict[str, List[str]] = {}
		self.default_group_id: Optional[str] = None

	async def put_group(self, group: models.ChatGroup) -> models.ChatGroup:
		async with self._lock:
			self.groups[group.id] = _clone(group)
			return group

	async def create_default_group(self, group: models.ChatGroup) -> Tuple[models.ChatGroup, bool]:
		async with self._lock:
			if self.default_group_id is not None:
				return _clone(self.groups[self.default_group_id]), False
			self.groups[group.id] = _clone(group)
			self.default_group_id = group.id
			return group, True

	async def get_group(self, group_id: str) -> Optional[models.ChatGroup]:
		async with self._lock:
			group = self.groups.get(group_id)
			return _clone(group) if group else None

	async def get_default_group(self) -> Optional[models.ChatGroup]:
		async with self._lock:
			if self.default_group_id is None:
				return None
			return _clone(self.groups[self.default_group_id])

	async def list_groups(self, principal: Optional[models.PrincipalRef]) -> List[models.ChatGroup]:
		async with self._lock:
			groups = [
				_clone(group)
				for group in self.groups.values()
				if group.is_active and (principal is None or group.member_for(principal) is not None)
			]
		groups.sort(key=lambda g: g.last_activity_at, reverse=True)
		return groups

	async def append_members(
		self,
		group_id: str,
		members: Sequence[models.GroupMember],
		activity_at: datetime,
	) -> List[models.GroupMember]:
		async with self._lock:
			group = self.groups.get(group_id)
			if group is None:
				return []
			added: List[models.GroupMember] = []
			for member in members:
				if group.member_for(member.principal) is None:
					group.members.append(_clone(member))
					added.append(member)
			group.last_activity_at = max(group.last_activity_at, activity_at)
			return added

	async def remove_member_id(self, group_id: str, principal_id: str, activity_at: datetime) -> int:
		async with self._lock:
			group = self.groups.get(group_id)
			if group is None:
				return 0
			before = len(group.members)
			group.members = [m for m in group.members if m.principal.id != principal_id]
			group.last_activity_at = max(group.last_activity_at, activity_at)
			return before - len(group.members)

	async def update_group(self, group_id: str, **fields) -> Optional[models.ChatGroup]:
		async with self._lock:
			group = self.groups.get(group_id)
			if group is None:
				return None
			for key, value in fields.items():
				setattr(group, key, value)
			return _clone(group)

	async def touch_last_message(self, group_id: str, message_id: str, at: datetime) -> None:
		async with self._lock:
			group = self.groups.get(group_id)
			if group is None:
				return
			group.last_message_id = message_id
			group.last_activity_at = max(group.last_activity_at, at)

	async def insert_message(self, message: models.Message) -> models.Message:
		async with self._lock:
			self.messages[message.id] = _clone(message)
			self.group_messages.setdefault(message.group_id, []).append(message.id)
			return message

	async def get_message(self, message_id: str) -> Optional[models.Message]:
		async with self._lock:
			message = self.messages.get(message_id)
			return _clone(message) if message else None

	async def visible_messages(self, group_id: str) -> List[models.Message]:
		"""Non-deleted messages of a group, newest first."""
		async with self._lock:
			ids = self.group_messages.get(group_id, [])
			visible = [self.messages[mid] for mid in reversed(ids) if not self.messages[mid].is_deleted]
			return [_clone(message) for message in visible]

	async def toggle_reaction(
		self,
		message_id: str,
		principal: models.PrincipalRef,
		emoji: str,
		at: datetime,
	) -> Optional[bool]:
		async with self._lock:
			message = self.messages.get(message_id)
			if message is None:
				return None
			if message.has_reaction(principal.id, emoji):
				message.reactions = [
					r for r in message.reactions if not (r.principal.id == principal.id and r.emoji == emoji)
				]
				return False
			message.reactions.append(models.Reaction(principal=principal, emoji=emoji, created_at=at))
			return True

	async def soft_delete(self, message_id: str, at: datetime) -> bool:
		async with self._lock:
			message = self.messages.get(message_id)
			if message is None or message.is_deleted:
				return False
			message.is_deleted = True
			message.deleted_at = at
			return True

	async def add_read(self, message_id: str, principal: models.PrincipalRef, at: datetime) -> bool:
		async with self._lock:
			message = self.messages.get(message_id)
			if message is None:
				return False
			if any(receipt.principal == principal for receipt in message.read_by):
				return False
			message.read_by.append(models.ReadReceipt(principal=principal, read_at=at))
			return True


_STORE = _ChatStore()


def _ref(value: str, kind: str) -> models.PrincipalRef:
	return models.PrincipalRef(id=str(value), kind=models.PrincipalKind(kind))


def _row_to_member(row: asyncpg.Record) -> models.GroupMember:
	return models.GroupMember(
		principal=_ref(row["principal_ref"], row["principal_kind"]),
		role=row["role"],
		joined_at=row["joined_at"],
	)


def _row_to_group(row: asyncpg.Record, members: List[models.GroupMember]) -> models.ChatGroup:
	return models.ChatGroup(
		id=str(row["id"]),
		name=row["name"],
		description=row["description"],
		kind=row["kind"],
		members=members,
		created_by=_ref(row["created_by_ref"], row["created_by_kind"]),
		is_active=bool(row["is_active"]),
		is_muted=bool(row["is_muted"]),
		last_message_id=str(row["last_message_id"]) if row["last_message_id"] else None,
		last_activity_at=row["last_activity_at"],
		created_at=row["created_at"],
	)


def _row_to_message(
	row: asyncpg.Record,
	reactions: List[models.Reaction],
	reads: List[models.ReadReceipt],
) -> models.Message:
	return models.Message(
		id=str(row["id"]),
		group_id=str(row["group_id"]),
		sender=_ref(row["sender_ref"], row["sender_kind"]),
		kind=row["kind"],
		content=row["content"],
		created_at=row["created_at"],
		file_url=row["file_url"],
		file_name=row["file_name"],
		file_size=row["file_size"],
		reactions=reactions,
		read_by=reads,
		is_edited=bool(row["is_edited"]),
		edited_at=row["edited_at"],
		is_deleted=bool(row["is_deleted"]),
		deleted_at=row["deleted_at"],
	)


_INSERT_MEMBER_SQL = """
	INSERT INTO chat_group_members (group_id, principal_ref, principal_kind, role, joined_at)
	VALUES ($1,$2,$3,$4,$5)
	ON CONFLICT (group_id, principal_ref, principal_kind) DO NOTHING
	RETURNING principal_ref, principal_kind, role, joined_at
"""


class GroupRepository:
	def __init__(self) -> None:
		self._pool = PoolAccessor()

	async def _hydrate(self, conn: asyncpg.Connection, rows: Sequence[asyncpg.Record]) -> List[models.ChatGroup]:
		if not rows:
			return []
		ids = [row["id"] for row in rows]
		member_rows = await conn.fetch(
			"SELECT * FROM chat_group_members WHERE group_id = ANY($1::text[]) ORDER BY position",
			ids,
		)
		members: Dict[str, List[models.GroupMember]] = {}
		for member_row in member_rows:
			members.setdefault(str(member_row["group_id"]), []).append(_row_to_member(member_row))
		return [_row_to_group(row, members.get(str(row["id"]), [])) for row in rows]

	async def create_group(
		self,
		*,
		name: str,
		description: Optional[str],
		kind: str,
		created_by: models.PrincipalRef,
		members: Sequence[models.GroupMember],
		now: datetime,
	) -> models.ChatGroup:
		group = models.ChatGroup(
			id=str(ulid.new()),
			name=name,
			description=description,
			kind=kind,
			members=list(members),
			created_by=created_by,
			is_active=True,
			is_muted=False,
			last_message_id=None,
			last_activity_at=now,
			created_at=now,
		)
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.put_group(group)
		async with pool.acquire() as conn:
			async with conn.transaction():
				await self._insert_group(conn, group)
		return group

	async def _insert_group(self, conn: asyncpg.Connection, group: models.ChatGroup) -> bool:
		row = await conn.fetchrow(
			"""
			INSERT INTO chat_groups (
				id, name, description, kind, created_by_ref, created_by_kind,
				is_active, is_muted, last_activity_at, created_at
			)
			VALUES ($1,$2,$3,$4,$5,$6,TRUE,FALSE,$7,$8)
			ON CONFLICT DO NOTHING
			RETURNING id
			""",
			group.id,
			group.name,
			group.description,
			group.kind,
			group.created_by.id,
			group.created_by.kind.value,
			group.last_activity_at,
			group.created_at,
		)
		if row is None:
			return False
		for member in group.members:
			await conn.execute(
				_INSERT_MEMBER_SQL,
				group.id,
				member.principal.id,
				member.principal.kind.value,
				member.role,
				member.joined_at,
			)
		return True

	async def create_default_group(
		self,
		*,
		name: str,
		description: Optional[str],
		created_by: models.PrincipalRef,
		first_member: models.GroupMember,
		now: datetime,
	) -> Tuple[models.ChatGroup, bool]:
		"""Create the singleton default group, or return the one that won the race."""
		group = models.ChatGroup(
			id=str(ulid.new()),
			name=name,
			description=description,
			kind="default",
			members=[first_member],
			created_by=created_by,
			is_active=True,
			is_muted=False,
			last_message_id=None,
			last_activity_at=now,
			created_at=now,
		)
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.create_default_group(group)
		async with pool.acquire() as conn:
			async with conn.transaction():
				created = await self._insert_group(conn, group)
		if created:
			return group, True
		existing = await self.get_default_group()
		if existing is None:
			raise UpstreamFailureError("default_group_missing")
		return existing, False

	async def get_group(self, group_id: str) -> Optional[models.ChatGroup]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.get_group(group_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM chat_groups WHERE id=$1", group_id)
			if row is None:
				return None
			groups = await self._hydrate(conn, [row])
			return groups[0]

	async def get_default_group(self) -> Optional[models.ChatGroup]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.get_default_group()
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM chat_groups WHERE kind='default' LIMIT 1")
			if row is None:
				return None
			groups = await self._hydrate(conn, [row])
			return groups[0]

	async def list_active_groups(self) -> List[models.ChatGroup]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.list_groups(None)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM chat_groups WHERE is_active ORDER BY last_activity_at DESC, id DESC"
			)
			return await self._hydrate(conn, rows)

	async def list_groups_for(self, principal: models.PrincipalRef) -> List[models.ChatGroup]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.list_groups(principal)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT g.* FROM chat_groups g
				JOIN chat_group_members m ON m.group_id = g.id
				WHERE g.is_active AND m.principal_ref=$1 AND m.principal_kind=$2
				ORDER BY g.last_activity_at DESC, g.id DESC
				""",
				principal.id,
				principal.kind.value,
			)
			return await self._hydrate(conn, rows)

	async def append_members(
		self,
		group_id: str,
		members: Sequence[models.GroupMember],
		*,
		activity_at: datetime,
	) -> List[models.GroupMember]:
		"""Append members not yet present and bump activity; returns the ones added."""
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.append_members(group_id, members, activity_at)
		added: List[models.GroupMember] = []
		async with pool.acquire() as conn:
			async with conn.transaction():
				for member in members:
					row = await conn.fetchrow(
						_INSERT_MEMBER_SQL,
						group_id,
						member.principal.id,
						member.principal.kind.value,
						member.role,
						member.joined_at,
					)
					if row is not None:
						added.append(_row_to_member(row))
				await conn.execute(
					"UPDATE chat_groups SET last_activity_at = GREATEST(last_activity_at, $2) WHERE id=$1",
					group_id,
					activity_at,
				)
		return added

	async def remove_member_id(self, group_id: str, principal_id: str, *, activity_at: datetime) -> int:
		"""Pull every membership carrying ``principal_id`` regardless of its kind."""
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.remove_member_id(group_id, principal_id, activity_at)
		async with pool.acquire() as conn:
			async with conn.transaction():
				rows = await conn.fetch(
					"DELETE FROM chat_group_members WHERE group_id=$1 AND principal_ref=$2 RETURNING principal_ref",
					group_id,
					principal_id,
				)
				await conn.execute(
					"UPDATE chat_groups SET last_activity_at = GREATEST(last_activity_at, $2) WHERE id=$1",
					group_id,
					activity_at,
				)
		return len(rows)

	async def set_muted(self, group_id: str, muted: bool) -> Optional[models.ChatGroup]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.update_group(group_id, is_muted=muted)
		async with pool.acquire() as conn:
			await conn.execute("UPDATE chat_groups SET is_muted=$2 WHERE id=$1", group_id, muted)
		return await self.get_group(group_id)

	async def deactivate(self, group_id: str) -> Optional[models.ChatGroup]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.update_group(group_id, is_active=False)
		async with pool.acquire() as conn:
			await conn.execute("UPDATE chat_groups SET is_active=FALSE WHERE id=$1", group_id)
		return await self.get_group(group_id)

	async def touch_last_message(self, group_id: str, message_id: str, *, at: datetime) -> None:
		"""Repoint the group at its newest message; activity never moves backwards."""
		pool = await self._pool.get()
		if pool is None:
			await _STORE.touch_last_message(group_id, message_id, at)
			return
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				UPDATE chat_groups
				SET last_message_id=$2, last_activity_at=GREATEST(last_activity_at, $3)
				WHERE id=$1
				""",
				group_id,
				message_id,
				at,
			)


class MessageRepository:
	def __init__(self) -> None:
		self._pool = PoolAccessor()

	async def _hydrate(self, conn: asyncpg.Connection, rows: Sequence[asyncpg.Record]) -> List[models.Message]:
		if not rows:
			return []
		ids = [row["id"] for row in rows]
		reaction_rows = await conn.fetch(
			"SELECT * FROM chat_message_reactions WHERE message_id = ANY($1::text[]) ORDER BY created_at, emoji",
			ids,
		)
		read_rows = await conn.fetch(
			"SELECT * FROM chat_message_reads WHERE message_id = ANY($1::text[]) ORDER BY read_at",
			ids,
		)
		reactions: Dict[str, List[models.Reaction]] = {}
		for row in reaction_rows:
			reactions.setdefault(str(row["message_id"]), []).append(
				models.Reaction(
					principal=_ref(row["principal_ref"], row["principal_kind"]),
					emoji=row["emoji"],
					created_at=row["created_at"],
				)
			)
		reads: Dict[str, List[models.ReadReceipt]] = {}
		for row in read_rows:
			reads.setdefault(str(row["message_id"]), []).append(
				models.ReadReceipt(
					principal=_ref(row["principal_ref"], row["principal_kind"]),
					read_at=row["read_at"],
				)
			)
		return [
			_row_to_message(row, reactions.get(str(row["id"]), []), reads.get(str(row["id"]), []))
			for row in rows
		]

	async def insert_message(
		self,
		*,
		group_id: str,
		sender: models.PrincipalRef,
		kind: str,
		content: Optional[str],
		now: datetime,
		file_url: Optional[str] = None,
		file_name: Optional[str] = None,
		file_size: Optional[int] = None,
	) -> models.Message:
		message = models.Message(
			id=str(ulid.new()),
			group_id=group_id,
			sender=sender,
			kind=kind,
			content=content,
			created_at=now,
			file_url=file_url,
			file_name=file_name,
			file_size=file_size,
		)
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.insert_message(message)
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO chat_messages (
					id, group_id, sender_ref, sender_kind, kind, content,
					file_url, file_name, file_size, created_at
				)
				VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10)
				""",
				message.id,
				message.group_id,
				sender.id,
				sender.kind.value,
				message.kind,
				message.content,
				message.file_url,
				message.file_name,
				message.file_size,
				message.created_at,
			)
		return message

	async def get_message(self, message_id: str) -> Optional[models.Message]:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.get_message(message_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM chat_messages WHERE id=$1", message_id)
			if row is None:
				return None
			messages = await self._hydrate(conn, [row])
			return messages[0]

	async def list_page(self, group_id: str, *, offset: int, limit: int) -> List[models.Message]:
		"""One page of non-deleted messages, newest first."""
		pool = await self._pool.get()
		if pool is None:
			visible = await _STORE.visible_messages(group_id)
			return visible[offset : offset + limit]
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM chat_messages
				WHERE group_id=$1 AND NOT is_deleted
				ORDER BY created_at DESC, id DESC
				OFFSET $2 LIMIT $3
				""",
				group_id,
				offset,
				limit,
			)
			return await self._hydrate(conn, rows)

	async def count_visible(self, group_id: str) -> int:
		pool = await self._pool.get()
		if pool is None:
			return len(await _STORE.visible_messages(group_id))
		async with pool.acquire() as conn:
			value = await conn.fetchval(
				"SELECT COUNT(*) FROM chat_messages WHERE group_id=$1 AND NOT is_deleted",
				group_id,
			)
			return int(value or 0)

	async def toggle_reaction(
		self,
		message_id: str,
		principal: models.PrincipalRef,
		emoji: str,
		*,
		at: datetime,
	) -> Optional[bool]:
		"""Remove the principal's reaction if present, else add it.

		Returns ``True`` when added, ``False`` when removed, ``None`` when the
		message does not exist.
		"""
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.toggle_reaction(message_id, principal, emoji, at)
		async with pool.acquire() as conn:
			removed = await conn.fetchval(
				"""
				DELETE FROM chat_message_reactions
				WHERE message_id=$1 AND principal_ref=$2 AND emoji=$3
				RETURNING 1
				""",
				message_id,
				principal.id,
				emoji,
			)
			if removed:
				return False
			exists = await conn.fetchval("SELECT 1 FROM chat_messages WHERE id=$1", message_id)
			if not exists:
				return None
			await conn.execute(
				"""
				INSERT INTO chat_message_reactions (message_id, principal_ref, principal_kind, emoji, created_at)
				VALUES ($1,$2,$3,$4,$5)
				ON CONFLICT (message_id, principal_ref, emoji) DO NOTHING
				""",
				message_id,
				principal.id,
				principal.kind.value,
				emoji,
				at,
			)
			return True

	async def soft_delete(self, message_id: str, *, at: datetime) -> bool:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.soft_delete(message_id, at)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				UPDATE chat_messages SET is_deleted=TRUE, deleted_at=$2
				WHERE id=$1 AND NOT is_deleted
				RETURNING id
				""",
				message_id,
				at,
			)
			return row is not None

	async def add_read(self, message_id: str, principal: models.PrincipalRef, *, at: datetime) -> bool:
		pool = await self._pool.get()
		if pool is None:
			return await _STORE.add_read(message_id, principal, at)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				INSERT INTO chat_message_reads (message_id, principal_ref, principal_kind, read_at)
				VALUES ($1,$2,$3,$4)
				ON CONFLICT (message_id, principal_ref, principal_kind) DO NOTHING
				RETURNING message_id
				""",
				message_id,
				principal.id,
				principal.kind.value,
				at,
			)
			return row is not None


async def reset_chat_state() -> None:
	"""Test helper to clear in-memory chat state."""
	async with _STORE._lock:  # type: ignore[attr-defined]
		_STORE.groups.clear()
		_STORE.messages.clear()
		_STORE.group_messages.clear()
		_STORE.default_group_id = None
