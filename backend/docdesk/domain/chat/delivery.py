"""Live delivery seam between the chat services and the socket layer."""

from __future__ import annotations

from typing import Any, Protocol

from docdesk.domain.chat import models


class LiveDelivery(Protocol):
	async def broadcast(self, group_id: str, event: str, payload: Any) -> None:
		...

	async def send_to(self, principal: models.PrincipalRef, event: str, payload: Any) -> None:
		...

	async def evict(self, principal: models.PrincipalRef, group_id: str) -> None:
		...


class NullDelivery:
	"""Used until a socket namespace is bound, and by service tests."""

	async def broadcast(self, group_id: str, event: str, payload: Any) -> None:
		return None

	async def send_to(self, principal: models.PrincipalRef, event: str, payload: Any) -> None:
		return None

	async def evict(self, principal: models.PrincipalRef, group_id: str) -> None:
		return None
