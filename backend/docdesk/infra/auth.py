"""Authentication helpers for FastAPI endpoints and socket handshakes.

Access tokens are HS256 JWTs whose ``sub`` claim is a user id. The user record
is re-read on every request so that role changes and deletions take effect
immediately; subadmins additionally get their subadmin record id attached.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jwt import InvalidTokenError

from docdesk.domain.accounts.repo import AccountRepository
from docdesk.infra import jwt as jwt_helper
from docdesk.settings import settings


@dataclass(slots=True)
class AuthenticatedUser:
	id: str
	role: str
	sub_admin_id: Optional[str] = None
	name: Optional[str] = None
	email: Optional[str] = None
	session_id: Optional[str] = None

	def has_role(self, role: str) -> bool:
		return self.role == role

	@property
	def is_admin(self) -> bool:
		return self.role == "admin"


class AuthError(ValueError):
	"""Raised when a credential cannot be turned into a session."""


_bearer_scheme = HTTPBearer(auto_error=False)
_accounts = AccountRepository()


async def hydrate_session(
	user_id: str,
	*,
	session_id: Optional[str] = None,
	accounts: AccountRepository | None = None,
) -> AuthenticatedUser:
	"""Load the live user record and attach subadmin data when applicable."""
	repo = accounts or _accounts
	user = await repo.get_user(user_id)
	if user is None:
		raise AuthError("user_not_found")
	sub_admin_id: Optional[str] = None
	if user.role == "subadmin":
		subadmin = await repo.get_subadmin_by_user(user.id)
		if subadmin is not None:
			sub_admin_id = subadmin.id
	return AuthenticatedUser(
		id=user.id,
		role=user.role,
		sub_admin_id=sub_admin_id,
		name=user.name,
		email=user.email,
		session_id=session_id,
	)


async def authenticate_token(token: str, *, accounts: AccountRepository | None = None) -> AuthenticatedUser:
	"""Decode an access JWT and hydrate the session it names."""
	token = (token or "").strip()
	if not token:
		raise AuthError("missing_token")
	try:
		payload = jwt_helper.decode_access(token)
	except InvalidTokenError as exc:
		raise AuthError("invalid_token") from exc
	session_id = payload.get("sid")
	return await hydrate_session(
		str(payload["sub"]),
		session_id=str(session_id) if session_id else None,
		accounts=accounts,
	)


async def get_current_user(
	x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
	x_user_role: Optional[str] = Header(default=None, alias="X-User-Role"),
	x_subadmin_id: Optional[str] = Header(default=None, alias="X-SubAdmin-Id"),
	credentials: Optional[HTTPAuthorizationCredentials] = Depends(_bearer_scheme),
) -> AuthenticatedUser:
	"""Resolve the authenticated user.

	In development we allow simple headers. In all other environments, headers are
	ignored and a valid Bearer JWT is required.
	"""
	if credentials and credentials.scheme.lower() == "bearer":
		try:
			return await authenticate_token(credentials.credentials)
		except AuthError:
			raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from None

	if settings.is_dev() and x_user_id:
		return AuthenticatedUser(
			id=x_user_id,
			role=(x_user_role or "user").strip().lower(),
			sub_admin_id=x_subadmin_id or None,
		)

	raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")


async def get_admin_user(user: AuthenticatedUser = Depends(get_current_user)) -> AuthenticatedUser:
	if user.is_admin:
		return user
	raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="insufficient_role")
