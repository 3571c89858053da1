"""Principal resolution and sender-view population for chat.

Chat identities come from two tables: plain users (which includes admins) and
subadmin records. A subadmin participates in chat under its *subadmin record
id*, never under the id of its backing user, and every view built here
presents that same id so clients can address members consistently.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from docdesk.domain.accounts.repo import AccountRepository
from docdesk.domain.chat import models, schemas
from docdesk.domain.chat.exceptions import PreconditionFailedError
from docdesk.infra.auth import AuthenticatedUser


def resolve_principal(user: AuthenticatedUser) -> models.PrincipalRef:
	"""Map an authenticated session onto its chat identity."""
	if user.role == "subadmin":
		if not user.sub_admin_id:
			raise PreconditionFailedError("subadmin_record_missing")
		return models.PrincipalRef(id=user.sub_admin_id, kind=models.PrincipalKind.SUBADMIN)
	return models.PrincipalRef(id=user.id, kind=models.PrincipalKind.USER)


class PrincipalDirectory:
	"""Looks principals up in the account store and renders chat views."""

	def __init__(self, accounts: AccountRepository | None = None) -> None:
		self._accounts = accounts or AccountRepository()

	async def describe(self, ref: models.PrincipalRef) -> models.PrincipalSummary:
		if ref.kind is models.PrincipalKind.SUBADMIN:
			subadmin = await self._accounts.get_subadmin(ref.id)
			backing = await self._accounts.get_user(subadmin.user_id) if subadmin else None
		else:
			backing = await self._accounts.get_user(ref.id)
		if backing is None:
			return models.PrincipalSummary(id=ref.id, kind=ref.kind)
		return models.PrincipalSummary(id=ref.id, kind=ref.kind, name=backing.name, email=backing.email)

	async def describe_all(
		self, refs: Iterable[models.PrincipalRef]
	) -> Dict[models.PrincipalRef, models.PrincipalSummary]:
		resolved: Dict[models.PrincipalRef, models.PrincipalSummary] = {}
		for ref in refs:
			if ref not in resolved:
				resolved[ref] = await self.describe(ref)
		return resolved

	async def resolve_candidate(self, candidate_id: str) -> Optional[models.PrincipalRef]:
		"""Subadmin records win over users when an id exists in both tables."""
		candidate_id = (candidate_id or "").strip()
		if not candidate_id:
			return None
		if await self._accounts.get_subadmin(candidate_id) is not None:
			return models.PrincipalRef(id=candidate_id, kind=models.PrincipalKind.SUBADMIN)
		if await self._accounts.get_user(candidate_id) is not None:
			return models.PrincipalRef(id=candidate_id, kind=models.PrincipalKind.USER)
		return None

	async def list_available(self, user: AuthenticatedUser) -> List[schemas.AvailableMember]:
		members: List[schemas.AvailableMember] = []
		for subadmin in await self._accounts.list_subadmins():
			backing = await self._accounts.get_user(subadmin.user_id)
			if backing is None:
				continue
			members.append(
				schemas.AvailableMember(
					id=subadmin.id,
					kind=models.PrincipalKind.SUBADMIN.value,
					name=backing.name,
					email=backing.email,
					role="subadmin",
				)
			)
		if user.is_admin:
			for account in await self._accounts.list_users(("user", "admin")):
				members.append(
					schemas.AvailableMember(
						id=account.id,
						kind=models.PrincipalKind.USER.value,
						name=account.name,
						email=account.email,
						role=account.role,
					)
				)
		return members

	async def group_view(self, group: models.ChatGroup) -> schemas.GroupView:
		refs = [member.principal for member in group.members] + [group.created_by]
		names = await self.describe_all(refs)
		return schemas.GroupView(
			id=group.id,
			name=group.name,
			description=group.description,
			kind=group.kind,
			members=[
				schemas.MemberView(
					user=_principal_view(names[member.principal]),
					kind=member.principal.kind.value,
					role=member.role,
					joined_at=member.joined_at,
				)
				for member in group.members
			],
			created_by=_principal_view(names[group.created_by]),
			is_active=group.is_active,
			is_muted=group.is_muted,
			last_message_id=group.last_message_id,
			last_activity_at=group.last_activity_at,
			created_at=group.created_at,
		)

	async def message_view(self, message: models.Message) -> schemas.MessageView:
		sender = await self.describe(message.sender)
		return _message_view(message, sender)

	async def message_views(self, messages: Iterable[models.Message]) -> List[schemas.MessageView]:
		messages = list(messages)
		names = await self.describe_all(message.sender for message in messages)
		return [_message_view(message, names[message.sender]) for message in messages]


def _principal_view(summary: models.PrincipalSummary) -> schemas.PrincipalView:
	return schemas.PrincipalView(
		id=summary.id,
		kind=summary.kind.value,
		name=summary.name,
		email=summary.email,
	)


def _message_view(message: models.Message, sender: models.PrincipalSummary) -> schemas.MessageView:
	return schemas.MessageView(
		id=message.id,
		group_id=message.group_id,
		sender=schemas.SenderView(kind=message.sender.kind.value, user=_principal_view(sender)),
		kind=message.kind,
		content=message.content,
		file_url=message.file_url,
		file_name=message.file_name,
		file_size=message.file_size,
		reactions=[
			schemas.ReactionView(
				principal_id=reaction.principal.id,
				principal_kind=reaction.principal.kind.value,
				emoji=reaction.emoji,
				created_at=reaction.created_at,
			)
			for reaction in message.reactions
		],
		reaction_count=len(message.reactions),
		reaction_summary=message.reaction_summary(),
		read_by=[
			schemas.ReadReceiptView(
				principal_id=receipt.principal.id,
				principal_kind=receipt.principal.kind.value,
				read_at=receipt.read_at,
			)
			for receipt in message.read_by
		],
		is_edited=message.is_edited,
		edited_at=message.edited_at,
		is_deleted=message.is_deleted,
		created_at=message.created_at,
	)
