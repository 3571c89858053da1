"""FastAPI routes for subadmin management (admin only)."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from docdesk.api import chat as chat_api
from docdesk.domain.accounts import schemas
from docdesk.domain.accounts.service import SubAdminService
from docdesk.infra.auth import AuthenticatedUser, get_admin_user

router = APIRouter(prefix="/subadmins", tags=["subadmins"])

subadmin_service = SubAdminService(groups=chat_api.group_service)


@router.post("", response_model=schemas.SubAdminView, status_code=status.HTTP_201_CREATED)
async def create_subadmin_endpoint(
	payload: schemas.SubAdminCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_admin_user),
) -> schemas.SubAdminView:
	return await subadmin_service.create_subadmin(
		auth_user,
		name=payload.name,
		email=payload.email,
		permissions=payload.permissions,
		assigned_groups=payload.assigned_groups,
	)


@router.get("", response_model=List[schemas.SubAdminView])
async def list_subadmins_endpoint(
	auth_user: AuthenticatedUser = Depends(get_admin_user),
) -> List[schemas.SubAdminView]:
	return await subadmin_service.list_subadmins(auth_user)


@router.delete("/{subadmin_id}")
async def delete_subadmin_endpoint(
	subadmin_id: str,
	auth_user: AuthenticatedUser = Depends(get_admin_user),
) -> dict:
	await subadmin_service.delete_subadmin(auth_user, subadmin_id)
	return {"ok": True}
