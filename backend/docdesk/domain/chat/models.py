"""Domain models for chat groups and messages."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class PrincipalKind(str, Enum):
	"""Which collection a principal id points into."""

	USER = "user"
	SUBADMIN = "subadmin"


GROUP_KINDS = ("default", "private", "admin")
GROUP_ROLES = ("member", "admin")
MESSAGE_KINDS = ("text", "image", "file", "system")

NAME_MAX_LEN = 50
DESCRIPTION_MAX_LEN = 200
CONTENT_MAX_LEN = 1000


@dataclass(frozen=True, slots=True)
class PrincipalRef:
	"""Tagged reference to either a user record or a subadmin record.

	Ids are only unique within their own kind, so equality always compares both.
	"""

	id: str
	kind: PrincipalKind


@dataclass(slots=True)
class GroupMember:
	principal: PrincipalRef
	role: str
	joined_at: datetime

	def is_admin(self) -> bool:
		return self.role == "admin"


@dataclass(slots=True)
class ChatGroup:
	"""Persisted representation of a chat group."""

	id: str
	name: str
	description: Optional[str]
	kind: str
	members: List[GroupMember]
	created_by: PrincipalRef
	is_active: bool
	is_muted: bool
	last_message_id: Optional[str]
	last_activity_at: datetime
	created_at: datetime

	def member_for(self, principal: PrincipalRef) -> Optional[GroupMember]:
		for member in self.members:
			if member.principal == principal:
				return member
		return None


@dataclass(slots=True)
class Reaction:
	principal: PrincipalRef
	emoji: str
	created_at: datetime


@dataclass(slots=True)
class ReadReceipt:
	principal: PrincipalRef
	read_at: datetime


@dataclass(slots=True)
class Message:
	id: str
	group_id: str
	sender: PrincipalRef
	kind: str
	content: Optional[str]
	created_at: datetime
	file_url: Optional[str] = None
	file_name: Optional[str] = None
	file_size: Optional[int] = None
	reactions: List[Reaction] = field(default_factory=list)
	read_by: List[ReadReceipt] = field(default_factory=list)
	is_edited: bool = False
	edited_at: Optional[datetime] = None
	is_deleted: bool = False
	deleted_at: Optional[datetime] = None

	def has_reaction(self, principal_id: str, emoji: str) -> bool:
		return any(r.principal.id == principal_id and r.emoji == emoji for r in self.reactions)

	def reaction_summary(self) -> dict[str, int]:
		summary: dict[str, int] = {}
		for reaction in self.reactions:
			summary[reaction.emoji] = summary.get(reaction.emoji, 0) + 1
		return summary


@dataclass(slots=True)
class PrincipalSummary:
	"""Display identity attached to senders, members and creators."""

	id: str
	kind: PrincipalKind
	name: Optional[str] = None
	email: Optional[str] = None
