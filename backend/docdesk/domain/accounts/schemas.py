"""Pydantic schemas for subadmin management."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class SubAdminCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254)
    permissions: str = Field(default="view-only", pattern="^(view-only|full-access)$")
    assigned_groups: List[str] = Field(default_factory=list)


class SubAdminView(BaseModel):
    id: str
    user_id: str
    name: Optional[str] = None
    email: Optional[str] = None
    permissions: str
    assigned_groups: List[str] = Field(default_factory=list)
    created_by: Optional[str] = None
    created_at: datetime
