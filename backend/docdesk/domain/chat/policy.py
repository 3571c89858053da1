"""Access rules and rate limits for chat groups."""

from __future__ import annotations

from datetime import datetime, timezone

from docdesk.domain.chat import models
from docdesk.domain.chat.exceptions import CapabilityDeniedError, RateLimitedError
from docdesk.infra.auth import AuthenticatedUser
from docdesk.infra.redis import redis_client
from docdesk.settings import settings


def can_read(user: AuthenticatedUser, principal: models.PrincipalRef, group: models.ChatGroup) -> bool:
	if user.is_admin:
		return True
	return group.is_active and group.member_for(principal) is not None


def can_write(user: AuthenticatedUser, principal: models.PrincipalRef, group: models.ChatGroup) -> bool:
	return can_read(user, principal, group) and not group.is_muted


def can_administer(principal: models.PrincipalRef, group: models.ChatGroup) -> bool:
	"""Group-level administration: an admin-role membership or the creator.

	This tier is distinct from the global admin role, which alone may mute or
	deactivate a group.
	"""
	member = group.member_for(principal)
	if member is not None and member.is_admin():
		return True
	return group.created_by == principal


def ensure_can_read(user: AuthenticatedUser, principal: models.PrincipalRef, group: models.ChatGroup) -> None:
	if not can_read(user, principal, group):
		raise CapabilityDeniedError("not_member")


def ensure_can_write(user: AuthenticatedUser, principal: models.PrincipalRef, group: models.ChatGroup) -> None:
	ensure_can_read(user, principal, group)
	if group.is_muted:
		raise CapabilityDeniedError("group_muted")


def ensure_can_administer(principal: models.PrincipalRef, group: models.ChatGroup) -> None:
	if not can_administer(principal, group):
		raise CapabilityDeniedError("not_group_admin")


def ensure_global_admin(user: AuthenticatedUser) -> None:
	if not user.is_admin:
		raise CapabilityDeniedError("admin_only")


async def _touch_limit(key: str, ttl_seconds: int) -> int:
	async with redis_client.pipeline(transaction=True) as pipe:
		pipe.incr(key)
		pipe.expire(key, ttl_seconds)
		count, _ = await pipe.execute()
	return int(count)


def _minute_bucket() -> str:
	return datetime.now(timezone.utc).strftime("%Y%m%d%H%M")


async def enforce_send_limit(principal: models.PrincipalRef) -> None:
	key = f"rl:chat:send:{principal.kind.value}:{principal.id}:{_minute_bucket()}"
	if await _touch_limit(key, 120) > settings.chat_send_limit_per_minute:
		raise RateLimitedError("rate_limited:send")


async def enforce_typing_limit(principal: models.PrincipalRef) -> None:
	key = f"rl:chat:typing:{principal.kind.value}:{principal.id}:{_minute_bucket()}"
	if await _touch_limit(key, 120) > settings.chat_typing_limit_per_minute:
		raise RateLimitedError("rate_limited:typing")
