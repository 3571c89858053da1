import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

os.environ.setdefault("SECRET_KEY", "test-secret-key-with-enough-length-for-hs256")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DOCDESK_UPLOAD_ROOT", tempfile.mkdtemp(prefix="docdesk-uploads-"))

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from docdesk.domain.accounts.repo import AccountRepository, reset_memory_state
from docdesk.domain.chat.repo import reset_chat_state
from docdesk.infra import postgres
from docdesk.infra.auth import AuthenticatedUser
from docdesk.infra.storage import StoredObject, UploadedFile, UploadError
from docdesk.main import app
from docdesk.settings import settings


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from docdesk.infra.redis import redis_client, set_redis_client

	original = redis_client._client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Dev mode enables the X-User-Id header shortcut used by API tests."""
	original_env = settings.environment
	settings.environment = "dev"
	try:
		yield
	finally:
		settings.environment = original_env


@pytest_asyncio.fixture(autouse=True)
async def reset_state():
	await reset_memory_state()
	await reset_chat_state()
	yield


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client


@dataclass
class Cast:
	"""Seeded accounts: one admin, two plain users and two subadmins."""

	admin: AuthenticatedUser
	alice: AuthenticatedUser
	bob: AuthenticatedUser
	sam: AuthenticatedUser
	sue: AuthenticatedUser


async def _user(accounts: AccountRepository, name: str, role: str) -> AuthenticatedUser:
	record = await accounts.create_user(name=name, email=f"{name.lower()}@example.com", role=role)
	return AuthenticatedUser(id=record.id, role=role, name=record.name, email=record.email)


async def _subadmin(accounts: AccountRepository, name: str, created_by: str) -> AuthenticatedUser:
	record = await accounts.create_user(name=name, email=f"{name.lower()}@example.com", role="subadmin")
	subadmin = await accounts.create_subadmin(
		user_id=record.id,
		permissions="full-access",
		assigned_groups=[],
		created_by=created_by,
	)
	return AuthenticatedUser(
		id=record.id,
		role="subadmin",
		sub_admin_id=subadmin.id,
		name=record.name,
		email=record.email,
	)


@pytest_asyncio.fixture
async def cast() -> Cast:
	accounts = AccountRepository()
	admin = await _user(accounts, "Ada", "admin")
	return Cast(
		admin=admin,
		alice=await _user(accounts, "Alice", "user"),
		bob=await _user(accounts, "Bob", "user"),
		sam=await _subadmin(accounts, "Sam", admin.id),
		sue=await _subadmin(accounts, "Sue", admin.id),
	)


@pytest.fixture
def headers_for():
	def _headers(user: AuthenticatedUser) -> dict:
		headers = {"X-User-Id": user.id, "X-User-Role": user.role}
		if user.sub_admin_id:
			headers["X-SubAdmin-Id"] = user.sub_admin_id
		return headers

	return _headers


class RecordingDelivery:
	def __init__(self) -> None:
		self.broadcasts: list[tuple[str, str, dict]] = []
		self.direct: list[tuple[str, str, dict]] = []
		self.evicted: list[tuple[str, str]] = []

	async def broadcast(self, group_id, event, payload) -> None:
		self.broadcasts.append((group_id, event, payload))

	async def send_to(self, principal, event, payload) -> None:
		self.direct.append((principal.id, event, payload))

	async def evict(self, principal, group_id) -> None:
		self.evicted.append((principal.id, group_id))

	def events(self, group_id: str | None = None) -> list[str]:
		return [event for gid, event, _ in self.broadcasts if group_id is None or gid == group_id]


class MemoryStorage:
	def __init__(self, *, fail: bool = False) -> None:
		self.fail = fail
		self.uploads: list[UploadedFile] = []

	async def upload(self, file: UploadedFile, *, prefix: str) -> StoredObject:
		if self.fail:
			raise UploadError("store unavailable")
		self.uploads.append(file)
		key = f"{prefix}/{len(self.uploads)}-{file.filename}"
		return StoredObject(key=key, url=f"https://files.test/{key}")


@pytest.fixture
def delivery() -> RecordingDelivery:
	return RecordingDelivery()


@pytest.fixture
def storage() -> MemoryStorage:
	return MemoryStorage()


@pytest.fixture
def group_service(delivery):
	from docdesk.domain.chat.groups import GroupService

	return GroupService(delivery=delivery)


@pytest.fixture
def message_service(group_service, delivery, storage):
	from docdesk.domain.chat.messages import MessageService

	return MessageService(group_service=group_service, storage=storage, delivery=delivery)
