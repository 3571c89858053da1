"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path

import socketio
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.staticfiles import StaticFiles

from docdesk.api import chat, ops, subadmins
from docdesk.api.errors import install_error_handlers
from docdesk.domain.chat.sockets import ChatNamespace, SessionRegistry
from docdesk.infra import postgres
from docdesk.obs import init as obs_init
from docdesk.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
	try:
		await postgres.init_pool()
	except postgres.STORE_ERRORS:
		logger.warning("postgres unavailable, using in-memory stores", exc_info=True)
	try:
		yield
	finally:
		await subadmins.subadmin_service.runner.shutdown()
		await postgres.close_pool()


app = FastAPI(title="Docdesk API", lifespan=lifespan)
install_error_handlers(app)

allow_origins = list(settings.cors_allow_origins)
if not allow_origins:
	allow_origins = ["http://localhost:3000", "http://localhost:5173"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

# Object store sink for attachments in dev
if settings.is_dev():
	upload_root = Path(os.environ.get("DOCDESK_UPLOAD_ROOT", Path(__file__).parent / "uploads")).resolve()
	upload_root.mkdir(parents=True, exist_ok=True)

	@app.put("/uploads/{path:path}")
	async def _put_upload(path: str, request: Request):
		target = (upload_root / Path(path)).resolve()
		if not target.is_relative_to(upload_root):
			raise HTTPException(status_code=400, detail="invalid_path")
		target.parent.mkdir(parents=True, exist_ok=True)
		data = await request.body()
		with open(target, "wb") as fh:
			fh.write(data)
		return {"ok": True, "bytes": len(data)}

	app.mount("/uploads", StaticFiles(directory=str(upload_root), check_dir=True), name="uploads")

sio = socketio.AsyncServer(async_mode="asgi", cors_allowed_origins=allow_origins)
session_registry = SessionRegistry()
chat_namespace = ChatNamespace(
	registry=session_registry,
	groups=chat.group_service,
	messages=chat.message_service,
)
sio.register_namespace(chat_namespace)
chat.group_service.bind_delivery(chat_namespace)
chat.message_service.bind_delivery(chat_namespace)
socket_app = socketio.ASGIApp(sio, other_asgi_app=app)
obs_init(app)

app.include_router(ops.router)
app.include_router(chat.router)
app.include_router(subadmins.router)
