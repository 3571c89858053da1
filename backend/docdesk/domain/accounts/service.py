"""Subadmin management and the chat side effects it triggers."""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from docdesk.domain.accounts import models, schemas
from docdesk.domain.accounts.repo import AccountRepository
from docdesk.domain.chat import policy
from docdesk.domain.chat.exceptions import InvalidArgumentError, NotFoundError
from docdesk.domain.chat.groups import GroupService
from docdesk.infra.auth import AuthenticatedUser
from docdesk.infra.detached import DetachedRunner
from docdesk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)


def _view(subadmin: models.SubAdmin, user: Optional[models.User]) -> schemas.SubAdminView:
	return schemas.SubAdminView(
		id=subadmin.id,
		user_id=subadmin.user_id,
		name=user.name if user else None,
		email=user.email if user else None,
		permissions=subadmin.permissions,
		assigned_groups=list(subadmin.assigned_groups),
		created_by=subadmin.created_by,
		created_at=subadmin.created_at,
	)


class SubAdminService:
	def __init__(
		self,
		*,
		accounts: AccountRepository | None = None,
		groups: GroupService | None = None,
		runner: DetachedRunner | None = None,
	) -> None:
		self._accounts = accounts or AccountRepository()
		self._groups = groups or GroupService()
		self.runner = runner or DetachedRunner(on_failure=lambda name, _exc: obs_metrics.inc_detached_failure(name))

	async def create_subadmin(
		self,
		actor: AuthenticatedUser,
		*,
		name: str,
		email: str,
		permissions: str = "view-only",
		assigned_groups: Sequence[str] = (),
	) -> schemas.SubAdminView:
		policy.ensure_global_admin(actor)
		name = (name or "").strip()
		email = (email or "").strip().lower()
		if not name or not email:
			raise InvalidArgumentError("name_and_email_required")
		if permissions not in models.SUBADMIN_PERMISSIONS:
			raise InvalidArgumentError("invalid_permissions")
		if await self._accounts.find_user_by_email(email) is not None:
			raise InvalidArgumentError("email_taken")
		user = await self._accounts.create_user(name=name, email=email, role="subadmin")
		subadmin = await self._accounts.create_subadmin(
			user_id=user.id,
			permissions=permissions,
			assigned_groups=assigned_groups,
			created_by=actor.id,
		)
		logger.info("subadmin created", extra={"sub_admin_id": subadmin.id, "user_id": user.id})
		# The subadmin exists whether or not the default group join succeeds.
		self.runner.spawn(
			self._groups.ensure_default_group(subadmin.id, actor=actor),
			name="ensure_default_group",
		)
		return _view(subadmin, user)

	async def list_subadmins(self, actor: AuthenticatedUser) -> List[schemas.SubAdminView]:
		policy.ensure_global_admin(actor)
		views: List[schemas.SubAdminView] = []
		for subadmin in await self._accounts.list_subadmins():
			views.append(_view(subadmin, await self._accounts.get_user(subadmin.user_id)))
		return views

	async def delete_subadmin(self, actor: AuthenticatedUser, subadmin_id: str) -> None:
		"""Delete the subadmin and its backing user; an orphaned record is removed alone."""
		policy.ensure_global_admin(actor)
		subadmin = await self._accounts.get_subadmin(subadmin_id)
		if subadmin is None:
			raise NotFoundError("subadmin_not_found")
		backing = await self._accounts.get_user(subadmin.user_id)
		if backing is None:
			logger.warning("removing orphaned subadmin", extra={"sub_admin_id": subadmin_id})
		await self._accounts.delete_subadmin(subadmin_id, user_id=backing.id if backing else None)
