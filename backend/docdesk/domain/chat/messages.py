"""Message lifecycle: send, attachments, reactions, listing, soft delete.

Sending is two separate store writes: the message row first, then the group's
``last_message_id``/``last_activity_at`` pointer. No transaction spans them.
If the pointer write fails the message stays persisted, the caller gets
``UpstreamFailureError`` and the group pointer stays stale until the next
successful write to that group repoints it. Readers must treat the pointer as
eventually consistent; message listing never depends on it.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from typing import Optional

from docdesk.domain.chat import models, outbox, policy, schemas
from docdesk.domain.chat.delivery import LiveDelivery, NullDelivery
from docdesk.domain.chat.exceptions import (
	CapabilityDeniedError,
	InvalidArgumentError,
	NotFoundError,
	UpstreamFailureError,
)
from docdesk.domain.chat.groups import GroupService
from docdesk.domain.chat.principals import PrincipalDirectory, resolve_principal
from docdesk.domain.chat.repo import GroupRepository, MessageRepository
from docdesk.infra.auth import AuthenticatedUser
from docdesk.infra.postgres import STORE_ERRORS
from docdesk.infra.storage import HttpObjectStorage, ObjectStorage, UploadedFile, UploadError
from docdesk.obs import metrics as obs_metrics
from docdesk.settings import settings

logger = logging.getLogger(__name__)

FILE_KINDS = ("image", "file")
MAX_PAGE_SIZE = 100


def _now() -> datetime:
	return datetime.now(timezone.utc)


class MessageService:
	def __init__(
		self,
		*,
		group_service: GroupService | None = None,
		groups: GroupRepository | None = None,
		messages: MessageRepository | None = None,
		directory: PrincipalDirectory | None = None,
		storage: ObjectStorage | None = None,
		delivery: LiveDelivery | None = None,
	) -> None:
		self._groups = groups or GroupRepository()
		self._messages = messages or MessageRepository()
		self._directory = directory or PrincipalDirectory()
		self._group_service = group_service or GroupService(
			groups=self._groups,
			messages=self._messages,
			directory=self._directory,
		)
		self._storage: ObjectStorage = storage or HttpObjectStorage()
		self._delivery: LiveDelivery = delivery or NullDelivery()

	def bind_delivery(self, delivery: LiveDelivery) -> None:
		self._delivery = delivery

	async def _require_message(self, message_id: str) -> models.Message:
		message = await self._messages.get_message(message_id)
		if message is None or message.is_deleted:
			raise NotFoundError("message_not_found")
		return message

	async def _persist(
		self,
		principal: models.PrincipalRef,
		group_id: str,
		*,
		kind: str,
		content: Optional[str],
		file_url: Optional[str] = None,
		file_name: Optional[str] = None,
		file_size: Optional[int] = None,
	) -> schemas.MessageView:
		now = _now()
		message = await self._messages.insert_message(
			group_id=group_id,
			sender=principal,
			kind=kind,
			content=content,
			now=now,
			file_url=file_url,
			file_name=file_name,
			file_size=file_size,
		)
		obs_metrics.inc_chat_message(kind)
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
		await outbox.append_chat_event("message_new", group_id=group_id, message_id=message.id, principal=principal)
		return view

	async def send_message(
		self,
		user: AuthenticatedUser,
		group_id: str,
		content: Optional[str],
		kind: str = "text",
	) -> schemas.MessageView:
		principal = resolve_principal(user)
		if kind != "text":
			raise InvalidArgumentError("unsupported_message_kind")
		group = await self._group_service.require_group(group_id)
		policy.ensure_can_write(user, principal, group)
		content = (content or "").strip()
		if not content:
			raise InvalidArgumentError("content_required")
		if len(content) > models.CONTENT_MAX_LEN:
			raise InvalidArgumentError("content_too_long")
		await policy.enforce_send_limit(principal)
		return await self._persist(principal, group_id, kind="text", content=content)

	async def send_file_message(
		self,
		user: AuthenticatedUser,
		group_id: str,
		upload: Optional[UploadedFile],
		kind: str = "image",
	) -> schemas.MessageView:
		principal = resolve_principal(user)
		if kind not in FILE_KINDS:
			raise InvalidArgumentError("unsupported_message_kind")
		group = await self._group_service.require_group(group_id)
		policy.ensure_can_write(user, principal, group)
		if upload is None or upload.size == 0:
			raise InvalidArgumentError("file_required")
		if upload.size > settings.upload_max_bytes:
			raise InvalidArgumentError("file_too_large")
		await policy.enforce_send_limit(principal)
		try:
			stored = await self._storage.upload(upload, prefix=f"chat/{group_id}")
		except UploadError as exc:
			raise UpstreamFailureError("upload_failed") from exc
		return await self._persist(
			principal,
			group_id,
			kind=kind,
			content=None,
			file_url=stored.url,
			file_name=upload.filename,
			file_size=upload.size,
		)

	async def toggle_reaction(self, user: AuthenticatedUser, message_id: str, emoji: str) -> schemas.MessageView:
		principal = resolve_principal(user)
		emoji = (emoji or "").strip()
		if not emoji:
			raise InvalidArgumentError("emoji_required")
		message = await self._require_message(message_id)
		group = await self._group_service.require_group(message.group_id)
		policy.ensure_can_read(user, principal, group)
		added = await self._messages.toggle_reaction(message_id, principal, emoji, at=_now())
		if added is None:
			raise NotFoundError("message_not_found")
		obs_metrics.inc_chat_reaction("added" if added else "removed")
		view = await self._publish_update(message_id)
		await outbox.append_chat_event(
			"reaction_added" if added else "reaction_removed",
			group_id=message.group_id,
			message_id=message_id,
			principal=principal,
			meta={"emoji": emoji},
		)
		return view

	async def _publish_update(self, message_id: str) -> schemas.MessageView:
		updated = await self._messages.get_message(message_id)
		if updated is None:
			raise NotFoundError("message_not_found")
		view = await self._directory.message_view(updated)
		await self._delivery.broadcast(updated.group_id, "message_updated", view.model_dump(mode="json"))
		return view

	async def list_messages(
		self,
		user: AuthenticatedUser,
		group_id: str,
		*,
		page: int = 1,
		limit: int = 50,
	) -> schemas.MessagePage:
		"""Newest-first pagination; each page is returned oldest-first."""
		principal = resolve_principal(user)
		group = await self._group_service.require_group(group_id)
		policy.ensure_can_read(user, principal, group)
		page = max(1, page)
		limit = max(1, min(limit, MAX_PAGE_SIZE))
		newest_first = await self._messages.list_page(group_id, offset=(page - 1) * limit, limit=limit)
		total = await self._messages.count_visible(group_id)
		views = await self._directory.message_views(reversed(newest_first))
		return schemas.MessagePage(
			messages=views,
			total_messages=total,
			current_page=page,
			total_pages=math.ceil(total / limit),
		)

	async def delete_message(self, user: AuthenticatedUser, message_id: str) -> schemas.MessageView:
		principal = resolve_principal(user)
		message = await self._require_message(message_id)
		group = await self._group_service.require_group(message.group_id)
		policy.ensure_can_read(user, principal, group)
		if message.sender != principal and not user.is_admin and not policy.can_administer(principal, group):
			raise CapabilityDeniedError("not_message_owner")
		if not await self._messages.soft_delete(message_id, at=_now()):
			raise NotFoundError("message_not_found")
		view = await self._publish_update(message_id)
		await outbox.append_chat_event("message_deleted", group_id=group.id, message_id=message_id, principal=principal)
		return view

	async def mark_read(self, user: AuthenticatedUser, message_id: str) -> schemas.MessageView:
		principal = resolve_principal(user)
		message = await self._require_message(message_id)
		group = await self._group_service.require_group(message.group_id)
		policy.ensure_can_read(user, principal, group)
		if await self._messages.add_read(message_id, principal, at=_now()):
			return await self._publish_update(message_id)
		return await self._directory.message_view(message)
