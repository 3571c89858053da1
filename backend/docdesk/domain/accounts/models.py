"""Account records consumed by the chat subsystem."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

USER_ROLES = ("user", "admin", "subadmin")
SUBADMIN_PERMISSIONS = ("view-only", "full-access")


@dataclass(slots=True)
class User:
	id: str
	name: str
	email: str
	role: str
	created_at: datetime


@dataclass(slots=True)
class SubAdmin:
	"""Delegated subadmin profile; ``user_id`` is the 1:1 backing user."""

	id: str
	user_id: str
	permissions: str
	created_by: Optional[str]
	created_at: datetime
	assigned_groups: List[str] = field(default_factory=list)
