"""Group lifecycle: creation, listing, membership, mute and deactivation."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence

from docdesk.domain.chat import models, outbox, policy, schemas
from docdesk.domain.chat.delivery import LiveDelivery, NullDelivery
from docdesk.domain.chat.exceptions import InvalidArgumentError, NotFoundError, UpstreamFailureError
from docdesk.domain.chat.principals import PrincipalDirectory, resolve_principal
from docdesk.domain.chat.repo import GroupRepository, MessageRepository
from docdesk.infra.auth import AuthenticatedUser
from docdesk.infra.postgres import STORE_ERRORS
from docdesk.obs import metrics as obs_metrics
from docdesk.settings import settings

logger = logging.getLogger(__name__)

CREATABLE_KINDS = ("private", "admin")


def _now() -> datetime:
	return datetime.now(timezone.utc)


class GroupService:
	def __init__(
		self,
		*,
		groups: GroupRepository | None = None,
		messages: MessageRepository | None = None,
		directory: PrincipalDirectory | None = None,
		delivery: LiveDelivery | None = None,
	) -> None:
		self._groups = groups or GroupRepository()
		self._messages = messages or MessageRepository()
		self._directory = directory or PrincipalDirectory()
		self._delivery: LiveDelivery = delivery or NullDelivery()

	def bind_delivery(self, delivery: LiveDelivery) -> None:
		self._delivery = delivery

	async def require_group(self, group_id: str) -> models.ChatGroup:
		group = await self._groups.get_group(group_id)
		if group is None or not group.is_active:
			raise NotFoundError("group_not_found")
		return group

	async def _resolve_new_members(
		self,
		candidate_ids: Sequence[str],
		existing: Sequence[models.GroupMember],
		joined_at: datetime,
	) -> List[models.GroupMember]:
		taken = {member.principal.id for member in existing}
		resolved: List[models.GroupMember] = []
		for candidate_id in candidate_ids:
			ref = await self._directory.resolve_candidate(candidate_id)
			if ref is None or ref.id in taken:
				continue
			taken.add(ref.id)
			resolved.append(models.GroupMember(principal=ref, role="member", joined_at=joined_at))
		return resolved

	async def _post_system_message(
		self,
		group_id: str,
		sender: models.PrincipalRef,
		content: str,
	) -> models.Message:
		now = _now()
		message = await self._messages.insert_message(
			group_id=group_id,
			sender=sender,
			kind="system",
			content=content,
			now=now,
		)
		obs_metrics.inc_chat_message("system")
		try:
			await self._groups.touch_last_message(group_id, message.id, at=now)
		except STORE_ERRORS as exc:
			logger.warning(
				"group pointer update failed",
				extra={"group_id": group_id, "message_id": message.id, "error": str(exc)},
			)
			raise UpstreamFailureError("group_pointer_stale") from exc
		view = await self._directory.message_view(message)
		await self._delivery.broadcast(group_id, "new_message", view.model_dump(mode="json"))
		return message

	async def _announce(self, group: models.ChatGroup, action: str) -> schemas.GroupView:
		view = await self._directory.group_view(group)
		await self._delivery.broadcast(
			group.id,
			"group_update",
			{"group_id": group.id, "action": action, "group": view.model_dump(mode="json")},
		)
		return view

	async def create_group(
		self,
		user: AuthenticatedUser,
		*,
		name: str,
		description: Optional[str] = None,
		kind: str = "private",
		member_ids: Sequence[str] = (),
	) -> schemas.GroupView:
		principal = resolve_principal(user)
		name = (name or "").strip()
		if not name:
			raise InvalidArgumentError("name_required")
		if len(name) > models.NAME_MAX_LEN:
			raise InvalidArgumentError("name_too_long")
		description = description.strip() if description else None
		if description and len(description) > models.DESCRIPTION_MAX_LEN:
			raise InvalidArgumentError("description_too_long")
		if kind not in CREATABLE_KINDS:
			raise InvalidArgumentError("invalid_kind")
		now = _now()
		creator = models.GroupMember(principal=principal, role="admin", joined_at=now)
		members = [creator] + await self._resolve_new_members(member_ids, [creator], now)
		group = await self._groups.create_group(
			name=name,
			description=description,
			kind=kind,
			created_by=principal,
			members=members,
			now=now,
		)
		obs_metrics.inc_chat_group_created(kind)
		view = await self._directory.group_view(group)
		payload = {"group_id": group.id, "action": "created", "group": view.model_dump(mode="json")}
		for member in members[1:]:
			await self._delivery.send_to(member.principal, "group_update", payload)
		await outbox.append_chat_event("group_created", group_id=group.id, principal=principal)
		return view

	async def list_groups(self, user: AuthenticatedUser) -> List[schemas.GroupView]:
		principal = resolve_principal(user)
		if user.is_admin:
			groups = await self._groups.list_active_groups()
		else:
			groups = await self._groups.list_groups_for(principal)
		return [await self._directory.group_view(group) for group in groups]

	async def list_group_ids(self, user: AuthenticatedUser) -> List[str]:
		"""Ids of every active group the session may read, for room joins."""
		principal = resolve_principal(user)
		if user.is_admin:
			groups = await self._groups.list_active_groups()
		else:
			groups = await self._groups.list_groups_for(principal)
		return [group.id for group in groups]

	async def get_group(self, user: AuthenticatedUser, group_id: str) -> schemas.GroupView:
		principal = resolve_principal(user)
		group = await self.require_group(group_id)
		policy.ensure_can_read(user, principal, group)
		return await self._directory.group_view(group)

	async def list_available_members(self, user: AuthenticatedUser) -> List[schemas.AvailableMember]:
		resolve_principal(user)
		return await self._directory.list_available(user)

	async def ensure_default_group(
		self,
		sub_admin_id: str,
		*,
		actor: AuthenticatedUser | None = None,
	) -> models.ChatGroup:
		"""Make sure the singleton default group exists and includes the subadmin.

		Safe to call repeatedly: an existing membership is left untouched and no
		system message is written for it.
		"""
		subadmin = models.PrincipalRef(id=sub_admin_id, kind=models.PrincipalKind.SUBADMIN)
		author = resolve_principal(actor) if actor is not None else subadmin
		now = _now()
		entry = models.GroupMember(principal=subadmin, role="member", joined_at=now)
		group = await self._groups.get_default_group()
		if group is None:
			group, created = await self._groups.create_default_group(
				name=settings.chat_default_group_name,
				description=settings.chat_default_group_description,
				created_by=author,
				first_member=entry,
				now=now,
			)
			if created:
				obs_metrics.inc_chat_group_created("default")
				logger.info("default group created", extra={"group_id": group.id, "sub_admin_id": sub_admin_id})
				await self._post_system_message(
					group.id,
					group.created_by,
					f"Welcome to {group.name}. {group.description}",
				)
				await outbox.append_chat_event("group_created", group_id=group.id, principal=subadmin)
				return await self.require_group(group.id)
		if group.member_for(subadmin) is not None:
			return group
		added = await self._groups.append_members(group.id, [entry], activity_at=now)
		if not added:
			return group
		obs_metrics.inc_chat_membership("added", len(added))
		summary = await self._directory.describe(subadmin)
		await self._post_system_message(
			group.id,
			group.created_by,
			f"{summary.name or 'A sub-admin'} joined the group",
		)
		group = await self.require_group(group.id)
		await self._announce(group, "members_added")
		await outbox.append_chat_event("members_added", group_id=group.id, principal=subadmin, meta={"count": 1})
		return group

	async def set_muted(self, user: AuthenticatedUser, group_id: str, muted: bool) -> schemas.GroupView:
		policy.ensure_global_admin(user)
		principal = resolve_principal(user)
		await self.require_group(group_id)
		group = await self._groups.set_muted(group_id, muted)
		if group is None:
			raise NotFoundError("group_not_found")
		view = await self._announce(group, "muted" if muted else "unmuted")
		await outbox.append_chat_event(
			"group_muted" if muted else "group_unmuted",
			group_id=group_id,
			principal=principal,
		)
		return view

	async def deactivate(self, user: AuthenticatedUser, group_id: str) -> schemas.GroupView:
		policy.ensure_global_admin(user)
		principal = resolve_principal(user)
		await self.require_group(group_id)
		group = await self._groups.deactivate(group_id)
		if group is None:
			raise NotFoundError("group_not_found")
		view = await self._announce(group, "deactivated")
		await outbox.append_chat_event("group_deactivated", group_id=group_id, principal=principal)
		return view

	async def add_members(
		self,
		user: AuthenticatedUser,
		group_id: str,
		member_ids: Sequence[str],
	) -> schemas.MembersAddedResponse:
		principal = resolve_principal(user)
		group = await self.require_group(group_id)
		policy.ensure_can_administer(principal, group)
		now = _now()
		candidates = await self._resolve_new_members(member_ids, group.members, now)
		added = await self._groups.append_members(group_id, candidates, activity_at=now) if candidates else []
		if added:
			obs_metrics.inc_chat_membership("added", len(added))
			await self._post_system_message(group_id, principal, f"{len(added)} member(s) added to the group")
			view = await self._announce(await self.require_group(group_id), "members_added")
			payload = {"group_id": group_id, "action": "added", "group": view.model_dump(mode="json")}
			for member in added:
				await self._delivery.send_to(member.principal, "group_update", payload)
			await outbox.append_chat_event(
				"members_added",
				group_id=group_id,
				principal=principal,
				meta={"count": len(added)},
			)
		return schemas.MembersAddedResponse(added_count=len(added))

	async def remove_member(self, user: AuthenticatedUser, group_id: str, member_id: str) -> None:
		principal = resolve_principal(user)
		group = await self.require_group(group_id)
		policy.ensure_can_administer(principal, group)
		removed_refs = [member.principal for member in group.members if member.principal.id == member_id]
		removed = await self._groups.remove_member_id(group_id, member_id, activity_at=_now())
		obs_metrics.inc_chat_membership("removed", removed)
		await self._post_system_message(group_id, principal, "A member was removed from the group")
		for ref in removed_refs:
			await self._delivery.evict(ref, group_id)
		await self._announce(await self.require_group(group_id), "member_removed")
		await outbox.append_chat_event(
			"member_removed",
			group_id=group_id,
			principal=principal,
			meta={"member_id": member_id, "count": removed},
		)
