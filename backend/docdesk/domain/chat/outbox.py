"""Outbox helpers for chat-domain events.

The stream is an audit trail written after the durable store write and the
live fan-out. Appends are best effort: a Redis failure is logged and dropped
and never fails the operation that produced the event.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from redis.exceptions import RedisError

from docdesk.domain.chat import models
from docdesk.infra.redis import redis_client

logger = logging.getLogger(__name__)

CHAT_EVENT_STREAM = "x:chat.events"


async def append_chat_event(
	event: str,
	*,
	group_id: str,
	message_id: Optional[str] = None,
	principal: models.PrincipalRef | None = None,
	meta: Mapping[str, Any] | None = None,
) -> bool:
	fields: dict[str, Any] = {
		"event": event,
		"group_id": group_id,
	}
	if message_id:
		fields["message_id"] = message_id
	if principal is not None:
		fields["principal_id"] = principal.id
		fields["principal_kind"] = principal.kind.value
	if meta:
		for key, value in meta.items():
			fields[f"meta_{key}"] = str(value)
	try:
		await redis_client.xadd_capped(CHAT_EVENT_STREAM, fields)
	except (RedisError, OSError):
		logger.warning("chat outbox append failed", extra={"event": event, "group_id": group_id}, exc_info=True)
		return False
	return True
