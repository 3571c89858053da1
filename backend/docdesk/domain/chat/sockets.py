"""Socket.IO namespace for live chat delivery."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import socketio
from redis.exceptions import RedisError

from docdesk.domain.accounts.repo import AccountRepository
from docdesk.domain.chat import models, policy
from docdesk.domain.chat.exceptions import (
	CapabilityDeniedError,
	ChatError,
	InternalError,
	InvalidArgumentError,
	UpstreamFailureError,
)
from docdesk.domain.chat.groups import GroupService
from docdesk.domain.chat.messages import MessageService
from docdesk.domain.chat.principals import resolve_principal
from docdesk.infra.auth import AuthenticatedUser, authenticate_token
from docdesk.infra.postgres import STORE_ERRORS
from docdesk.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_HANDSHAKE_ERRORS = (ValueError, ChatError) + STORE_ERRORS


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def group_room(group_id: str) -> str:
	return f"group:{group_id}"


class SessionRegistry:
	"""Maps each connected principal to its most recent socket id.

	Last write wins: a reconnect replaces the previous sid, and a late
	disconnect of the replaced sid leaves the newer entry in place.
	"""

	def __init__(self) -> None:
		self._sids: Dict[models.PrincipalRef, str] = {}

	def register(self, principal: models.PrincipalRef, sid: str) -> Optional[str]:
		previous = self._sids.get(principal)
		self._sids[principal] = sid
		return previous

	def lookup(self, principal: models.PrincipalRef) -> Optional[str]:
		return self._sids.get(principal)

	def discard(self, principal: models.PrincipalRef, sid: str) -> bool:
		if self._sids.get(principal) != sid:
			return False
		del self._sids[principal]
		return True

	def __len__(self) -> int:
		return len(self._sids)

	def __contains__(self, principal: object) -> bool:
		return principal in self._sids


@dataclass(slots=True)
class _Session:
	user: AuthenticatedUser
	principal: models.PrincipalRef
	groups: Set[str] = field(default_factory=set)


def _group_id(payload: Any) -> str:
	group_id = str((payload or {}).get("group_id") or "").strip() if isinstance(payload, dict) else ""
	if not group_id:
		raise InvalidArgumentError("group_id_required")
	return group_id


class ChatNamespace(socketio.AsyncNamespace):
	"""Authenticated chat namespace; also the services' live delivery target."""

	def __init__(
		self,
		*,
		registry: SessionRegistry,
		groups: GroupService,
		messages: MessageService,
		accounts: AccountRepository | None = None,
		namespace: str = "/chat",
	) -> None:
		super().__init__(namespace)
		self.registry = registry
		self._groups = groups
		self._messages = messages
		self._accounts = accounts
		self._sessions: Dict[str, _Session] = {}

	# Connection lifecycle

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		try:
			user = await self._authorise(environ, auth)
			principal = resolve_principal(user)
		except _HANDSHAKE_ERRORS as exc:
			obs_metrics.socket_auth_reject(self.namespace, type(exc).__name__)
			logger.info("chat handshake refused", extra={"sid": sid, "reason": str(exc)})
			raise ConnectionRefusedError("unauthorized") from None
		obs_metrics.socket_connected(self.namespace)
		self._sessions[sid] = _Session(user=user, principal=principal)
		self.registry.register(principal, sid)

	async def on_disconnect(self, sid: str, reason: Any = None) -> None:
		session = self._sessions.pop(sid, None)
		if session is None:
			return
		obs_metrics.socket_disconnected(self.namespace)
		self.registry.discard(session.principal, sid)

	async def _authorise(self, environ: dict, auth: Optional[dict]) -> AuthenticatedUser:
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth if isinstance(auth, dict) else {}
		token = auth_payload.get("token")
		if not token:
			auth_header = _header(scope, "authorization") or environ.get("HTTP_AUTHORIZATION")
			if auth_header and auth_header.lower().startswith("bearer "):
				token = auth_header.split(" ", 1)[1]
		if not token:
			raise ValueError("missing_token")
		return await authenticate_token(str(token), accounts=self._accounts)

	def session(self, sid: str) -> _Session:
		session = self._sessions.get(sid)
		if session is None:
			raise ConnectionRefusedError("unauthenticated")
		return session

	async def _run(self, sid: str, event: str, handler: Callable[[_Session], Awaitable[None]]) -> None:
		"""Run a command; failures go back to the originating socket only."""
		obs_metrics.socket_event(self.namespace, event)
		session = self.session(sid)
		try:
			await handler(session)
		except ChatError as exc:
			await self.emit("error", {"event": event, **exc.to_payload()}, to=sid)
		except STORE_ERRORS as exc:
			logger.warning("chat command store failure", extra={"event": event, "error": str(exc)})
			await self.emit("error", {"event": event, **UpstreamFailureError().to_payload()}, to=sid)
		except RedisError as exc:
			logger.warning("chat command cache failure", extra={"event": event, "error": str(exc)})
			await self.emit("error", {"event": event, **UpstreamFailureError().to_payload()}, to=sid)
		except Exception:
			logger.error("chat command failed", extra={"event": event}, exc_info=True)
			await self.emit("error", {"event": event, **InternalError().to_payload()}, to=sid)

	# Commands

	async def on_join_groups(self, sid: str, payload: Any = None) -> None:
		async def handle(session: _Session) -> None:
			group_ids = await self._groups.list_group_ids(session.user)
			for group_id in group_ids:
				await self.enter_room(sid, group_room(group_id))
			session.groups.update(group_ids)
			await self.emit("groups_joined", {"count": len(group_ids), "group_ids": group_ids}, to=sid)

		await self._run(sid, "join_groups", handle)

	async def on_join_group(self, sid: str, payload: Any = None) -> None:
		async def handle(session: _Session) -> None:
			group_id = _group_id(payload)
			await self.enter_room(sid, group_room(group_id))
			session.groups.add(group_id)
			await self.emit("joined_group", {"group_id": group_id}, to=sid)

		await self._run(sid, "join_group", handle)

	async def on_leave_group(self, sid: str, payload: Any = None) -> None:
		async def handle(session: _Session) -> None:
			group_id = _group_id(payload)
			await self.leave_room(sid, group_room(group_id))
			session.groups.discard(group_id)
			await self.emit("left_group", {"group_id": group_id}, to=sid)

		await self._run(sid, "leave_group", handle)

	async def on_send_message(self, sid: str, payload: Any = None) -> None:
		async def handle(session: _Session) -> None:
			group_id = _group_id(payload)
			await self._messages.send_message(
				session.user,
				group_id,
				payload.get("content"),
				kind=str(payload.get("kind") or "text"),
			)

		await self._run(sid, "send_message", handle)

	async def on_add_reaction(self, sid: str, payload: Any = None) -> None:
		async def handle(session: _Session) -> None:
			data = payload if isinstance(payload, dict) else {}
			message_id = str(data.get("message_id") or "").strip()
			if not message_id:
				raise InvalidArgumentError("message_id_required")
			await self._messages.toggle_reaction(session.user, message_id, str(data.get("emoji") or ""))

		await self._run(sid, "add_reaction", handle)

	async def on_typing_start(self, sid: str, payload: Any = None) -> None:
		await self._run(sid, "typing_start", lambda session: self._typing(sid, session, payload, True))

	async def on_typing_stop(self, sid: str, payload: Any = None) -> None:
		await self._run(sid, "typing_stop", lambda session: self._typing(sid, session, payload, False))

	async def _typing(self, sid: str, session: _Session, payload: Any, is_typing: bool) -> None:
		group_id = _group_id(payload)
		if group_id not in session.groups:
			raise CapabilityDeniedError("not_joined")
		await policy.enforce_typing_limit(session.principal)
		await self.emit(
			"user_typing",
			{
				"group_id": group_id,
				"user_id": session.principal.id,
				"kind": session.principal.kind.value,
				"user_name": session.user.name,
				"is_typing": is_typing,
			},
			room=group_room(group_id),
			skip_sid=sid,
		)

	# Live delivery used by the services after durable writes

	async def broadcast(self, group_id: str, event: str, payload: Any) -> None:
		obs_metrics.socket_event(self.namespace, event)
		await self.emit(event, payload, room=group_room(group_id))

	async def send_to(self, principal: models.PrincipalRef, event: str, payload: Any) -> None:
		sid = self.registry.lookup(principal)
		if sid is None:
			return
		obs_metrics.socket_event(self.namespace, event)
		await self.emit(event, payload, to=sid)

	async def evict(self, principal: models.PrincipalRef, group_id: str) -> None:
		"""Drop every live session of the principal from the group room."""
		matching = [sid for sid, session in self._sessions.items() if session.principal == principal]
		for sid in matching:
			await self.leave_room(sid, group_room(group_id))
			session = self._sessions.get(sid)
			if session is not None:
				session.groups.discard(group_id)
