"""Pydantic schemas for the chat API and socket payloads."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from docdesk.domain.chat.models import CONTENT_MAX_LEN, DESCRIPTION_MAX_LEN, NAME_MAX_LEN


class GroupCreateRequest(BaseModel):
    name: str = Field(..., max_length=NAME_MAX_LEN)
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LEN)
    kind: str = Field(default="private", pattern="^(default|private|admin)$")
    member_ids: List[str] = Field(default_factory=list)


class MessageSendRequest(BaseModel):
    content: str = Field(..., max_length=CONTENT_MAX_LEN)
    kind: str = Field(default="text", pattern="^(text|image|file|system)$")


class MembersAddRequest(BaseModel):
    member_ids: List[str] = Field(..., min_length=1)


class GroupManageRequest(BaseModel):
    action: str = Field(..., pattern="^(delete|mute)$")
    is_muted: Optional[bool] = None


class ReactionRequest(BaseModel):
    emoji: str = Field(..., max_length=32)


class PrincipalView(BaseModel):
    id: str
    kind: str
    name: Optional[str] = None
    email: Optional[str] = None


class MemberView(BaseModel):
    user: PrincipalView
    kind: str
    role: str
    joined_at: datetime


class GroupView(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    kind: str
    members: List[MemberView]
    created_by: PrincipalView
    is_active: bool
    is_muted: bool
    last_message_id: Optional[str] = None
    last_activity_at: datetime
    created_at: datetime


class SenderView(BaseModel):
    kind: str
    user: PrincipalView


class ReactionView(BaseModel):
    principal_id: str
    principal_kind: str
    emoji: str
    created_at: datetime


class ReadReceiptView(BaseModel):
    principal_id: str
    principal_kind: str
    read_at: datetime


class MessageView(BaseModel):
    id: str
    group_id: str
    sender: SenderView
    kind: str
    content: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    reactions: List[ReactionView] = Field(default_factory=list)
    reaction_count: int = 0
    reaction_summary: Dict[str, int] = Field(default_factory=dict)
    read_by: List[ReadReceiptView] = Field(default_factory=list)
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    created_at: datetime


class MessagePage(BaseModel):
    messages: List[MessageView]
    total_messages: int
    current_page: int
    total_pages: int


class MembersAddedResponse(BaseModel):
    added_count: int


class AvailableMember(BaseModel):
    id: str
    kind: str
    name: str
    email: str
    role: str
