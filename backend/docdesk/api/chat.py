"""FastAPI routes for chat groups and messages."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status

from docdesk.domain.chat import GroupService, MessageService, schemas
from docdesk.infra.auth import AuthenticatedUser, get_current_user
from docdesk.infra.storage import UploadedFile

router = APIRouter(prefix="/chat", tags=["chat"])

group_service = GroupService()
message_service = MessageService(group_service=group_service)


@router.post("/groups", response_model=schemas.GroupView, status_code=status.HTTP_201_CREATED)
async def create_group_endpoint(
	payload: schemas.GroupCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.GroupView:
	return await group_service.create_group(
		auth_user,
		name=payload.name,
		description=payload.description,
		kind=payload.kind,
		member_ids=payload.member_ids,
	)


@router.get("/groups", response_model=List[schemas.GroupView])
async def list_groups_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.GroupView]:
	return await group_service.list_groups(auth_user)


@router.get("/groups/{group_id}", response_model=schemas.GroupView)
async def get_group_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.GroupView:
	return await group_service.get_group(auth_user, group_id)


@router.get("/groups/{group_id}/messages", response_model=schemas.MessagePage)
async def list_messages_endpoint(
	group_id: str,
	page: int = Query(default=1, ge=1),
	limit: int = Query(default=50, ge=1, le=100),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessagePage:
	return await message_service.list_messages(auth_user, group_id, page=page, limit=limit)


@router.post(
	"/groups/{group_id}/messages",
	response_model=schemas.MessageView,
	status_code=status.HTTP_201_CREATED,
)
async def send_message_endpoint(
	group_id: str,
	payload: schemas.MessageSendRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageView:
	return await message_service.send_message(auth_user, group_id, payload.content, kind=payload.kind)


@router.post(
	"/groups/{group_id}/messages/file",
	response_model=schemas.MessageView,
	status_code=status.HTTP_201_CREATED,
)
async def send_file_message_endpoint(
	group_id: str,
	file: Optional[UploadFile] = File(default=None),
	kind: str = Form(default="image"),
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageView:
	upload: Optional[UploadedFile] = None
	if file is not None:
		upload = UploadedFile(
			filename=file.filename or "upload",
			content_type=file.content_type,
			data=await file.read(),
		)
	return await message_service.send_file_message(auth_user, group_id, upload, kind=kind)


@router.post("/groups/{group_id}/members", response_model=schemas.MembersAddedResponse)
async def add_members_endpoint(
	group_id: str,
	payload: schemas.MembersAddRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MembersAddedResponse:
	return await group_service.add_members(auth_user, group_id, payload.member_ids)


@router.delete("/groups/{group_id}/members/{member_id}")
async def remove_member_endpoint(
	group_id: str,
	member_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> dict:
	await group_service.remove_member(auth_user, group_id, member_id)
	return {"ok": True}


@router.patch("/groups/{group_id}/manage", response_model=schemas.GroupView)
async def manage_group_endpoint(
	group_id: str,
	payload: schemas.GroupManageRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.GroupView:
	if payload.action == "delete":
		return await group_service.deactivate(auth_user, group_id)
	return await group_service.set_muted(auth_user, group_id, bool(payload.is_muted))


@router.post("/messages/{message_id}/reactions", response_model=schemas.MessageView)
async def toggle_reaction_endpoint(
	message_id: str,
	payload: schemas.ReactionRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageView:
	return await message_service.toggle_reaction(auth_user, message_id, payload.emoji)


@router.delete("/messages/{message_id}", response_model=schemas.MessageView)
async def delete_message_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageView:
	return await message_service.delete_message(auth_user, message_id)


@router.post("/messages/{message_id}/read", response_model=schemas.MessageView)
async def mark_read_endpoint(
	message_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MessageView:
	return await message_service.mark_read(auth_user, message_id)


@router.get("/members/available", response_model=List[schemas.AvailableMember])
async def available_members_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.AvailableMember]:
	return await group_service.list_available_members(auth_user)
