"""Error taxonomy shared by the chat and account services."""

from __future__ import annotations

from fastapi import status


class ChatError(Exception):
	"""Base class for chat domain errors.

	``detail`` is a short machine-readable code, ``kind`` the taxonomy bucket
	reported to clients alongside the HTTP status.
	"""

	status_code: int = status.HTTP_400_BAD_REQUEST
	detail: str = "chat_error"
	kind: str = "internal"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail

	def to_payload(self) -> dict[str, str]:
		return {"code": self.detail, "kind": self.kind}


class InvalidArgumentError(ChatError):
	"""Malformed or missing input the caller can correct."""

	status_code = status.HTTP_400_BAD_REQUEST
	detail = "invalid_argument"
	kind = "invalid_argument"


class UnauthenticatedError(ChatError):
	status_code = status.HTTP_401_UNAUTHORIZED
	detail = "unauthenticated"
	kind = "unauthenticated"


class CapabilityDeniedError(ChatError):
	"""Authenticated but not permitted."""

	status_code = status.HTTP_403_FORBIDDEN
	detail = "forbidden"
	kind = "capability_denied"


class NotFoundError(ChatError):
	"""Missing, soft-deleted or inactive entity."""

	status_code = status.HTTP_404_NOT_FOUND
	detail = "not_found"
	kind = "not_found"


class PreconditionFailedError(ChatError):
	"""The authenticated session lacks state the operation depends on."""

	status_code = status.HTTP_412_PRECONDITION_FAILED
	detail = "precondition_failed"
	kind = "precondition_failed"


class RateLimitedError(ChatError):
	status_code = status.HTTP_429_TOO_MANY_REQUESTS
	detail = "rate_limited"
	kind = "rate_limited"


class UpstreamFailureError(ChatError):
	"""Object store or database failure."""

	status_code = status.HTTP_502_BAD_GATEWAY
	detail = "upstream_failure"
	kind = "upstream_failure"


class InternalError(ChatError):
	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	detail = "internal"
	kind = "internal"
