from unittest.mock import AsyncMock

import pytest
import socketio
from redis.exceptions import ConnectionError as RedisConnectionError

from docdesk.domain.chat.groups import GroupService
from docdesk.domain.chat.messages import MessageService
from docdesk.domain.chat.models import PrincipalKind, PrincipalRef
from docdesk.domain.chat.sockets import ChatNamespace, SessionRegistry, group_room
from docdesk.infra import jwt as jwt_helper
from docdesk.infra.redis import RedisProxy
from docdesk.settings import settings


def _scope_with_authorization(token: str) -> dict:
	return {
		"headers": [(b"authorization", f"Bearer {token}".encode())],
	}


def _environ_for(user) -> dict:
	return {"asgi.scope": _scope_with_authorization(jwt_helper.encode_access({"sub": user.id}))}


def _emitted(namespace, event: str) -> list:
	return [call for call in namespace.emit.await_args_list if call.args[0] == event]


@pytest.fixture
def chat():
	server = socketio.AsyncServer(async_mode="asgi")
	groups = GroupService()
	messages = MessageService(group_service=groups)
	namespace = ChatNamespace(registry=SessionRegistry(), groups=groups, messages=messages)
	server.register_namespace(namespace)
	namespace.emit = AsyncMock()
	namespace.enter_room = AsyncMock()
	namespace.leave_room = AsyncMock()
	groups.bind_delivery(namespace)
	messages.bind_delivery(namespace)
	return namespace


@pytest.mark.asyncio
async def test_connect_requires_token(chat):
	with pytest.raises(ConnectionRefusedError):
		await chat.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}})
	assert len(chat.registry) == 0


@pytest.mark.asyncio
async def test_connect_rejects_bad_token(chat):
	with pytest.raises(ConnectionRefusedError):
		await chat.trigger_event("connect", "sid-1", {"asgi.scope": _scope_with_authorization("not-a-jwt")})


@pytest.mark.asyncio
async def test_connect_accepts_token_in_auth_payload(chat, cast):
	token = jwt_helper.encode_access({"sub": cast.sam.id})
	await chat.trigger_event("connect", "sid-1", {"asgi.scope": {"headers": []}}, {"token": token})

	ref = PrincipalRef(id=cast.sam.sub_admin_id, kind=PrincipalKind.SUBADMIN)
	assert chat.registry.lookup(ref) == "sid-1"
	assert chat.session("sid-1").user.sub_admin_id == cast.sam.sub_admin_id


@pytest.mark.asyncio
async def test_reconnect_wins_over_stale_disconnect(chat, cast):
	ref = PrincipalRef(id=cast.alice.id, kind=PrincipalKind.USER)
	await chat.trigger_event("connect", "sid-old", _environ_for(cast.alice))
	await chat.trigger_event("connect", "sid-new", _environ_for(cast.alice))
	assert chat.registry.lookup(ref) == "sid-new"

	await chat.trigger_event("disconnect", "sid-old")
	assert chat.registry.lookup(ref) == "sid-new"

	await chat.trigger_event("disconnect", "sid-new")
	assert ref not in chat.registry


@pytest.mark.asyncio
async def test_join_groups_enters_every_readable_room(chat, cast):
	first = await chat._groups.create_group(cast.alice, name="One", member_ids=[cast.bob.id])
	await chat._groups.create_group(cast.alice, name="Two")
	await chat.trigger_event("connect", "sid-bob", _environ_for(cast.bob))

	await chat.trigger_event("join_groups", "sid-bob", {})

	chat.enter_room.assert_awaited_once_with("sid-bob", group_room(first.id))
	joined = _emitted(chat, "groups_joined")
	assert joined[0].args[1] == {"count": 1, "group_ids": [first.id]}
	assert joined[0].kwargs["to"] == "sid-bob"


@pytest.mark.asyncio
async def test_send_message_fans_out_to_room(chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Room", member_ids=[cast.bob.id])
	await chat.trigger_event("connect", "sid-alice", _environ_for(cast.alice))

	await chat.trigger_event("send_message", "sid-alice", {"group_id": group.id, "content": "hi all"})

	sent = _emitted(chat, "new_message")
	assert len(sent) == 1
	assert sent[0].kwargs["room"] == group_room(group.id)
	assert sent[0].args[1]["content"] == "hi all"
	assert sent[0].args[1]["sender"]["user"]["id"] == cast.alice.id
	assert _emitted(chat, "error") == []


@pytest.mark.asyncio
async def test_command_errors_only_reach_the_caller(chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Closed")
	await chat.trigger_event("connect", "sid-bob", _environ_for(cast.bob))

	await chat.trigger_event("send_message", "sid-bob", {"group_id": group.id, "content": "knock"})
	await chat.trigger_event("send_message", "sid-bob", {"content": "no group"})
	await chat.trigger_event("add_reaction", "sid-bob", {"emoji": "👍"})

	errors = _emitted(chat, "error")
	assert [call.args[1]["code"] for call in errors] == ["not_member", "group_id_required", "message_id_required"]
	assert errors[0].args[1] == {"event": "send_message", "code": "not_member", "kind": "capability_denied"}
	assert all(call.kwargs == {"to": "sid-bob"} for call in errors)
	assert _emitted(chat, "new_message") == []


@pytest.mark.asyncio
async def test_reaction_broadcasts_update(chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Reacts", member_ids=[cast.bob.id])
	sent = await chat._messages.send_message(cast.alice, group.id, "vote")
	await chat.trigger_event("connect", "sid-bob", _environ_for(cast.bob))

	await chat.trigger_event("add_reaction", "sid-bob", {"message_id": sent.id, "emoji": "🎉"})

	updated = _emitted(chat, "message_updated")
	assert updated[0].kwargs["room"] == group_room(group.id)
	assert updated[0].args[1]["reaction_summary"] == {"🎉": 1}


@pytest.mark.asyncio
async def test_typing_requires_join_and_skips_sender(chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Typing", member_ids=[cast.bob.id])
	await chat.trigger_event("connect", "sid-alice", _environ_for(cast.alice))

	await chat.trigger_event("typing_start", "sid-alice", {"group_id": group.id})
	assert _emitted(chat, "error")[0].args[1]["code"] == "not_joined"

	await chat.trigger_event("join_group", "sid-alice", {"group_id": group.id})
	await chat.trigger_event("typing_start", "sid-alice", {"group_id": group.id})
	await chat.trigger_event("typing_stop", "sid-alice", {"group_id": group.id})

	typing = _emitted(chat, "user_typing")
	assert [call.args[1]["is_typing"] for call in typing] == [True, False]
	assert typing[0].args[1]["user_id"] == cast.alice.id
	assert typing[0].args[1]["user_name"] == "Alice"
	assert typing[0].kwargs == {"room": group_room(group.id), "skip_sid": "sid-alice"}


@pytest.mark.asyncio
async def test_typing_is_rate_limited(monkeypatch, chat, cast):
	monkeypatch.setattr(settings, "chat_typing_limit_per_minute", 1)
	group = await chat._groups.create_group(cast.alice, name="Chatty")
	await chat.trigger_event("connect", "sid-alice", _environ_for(cast.alice))
	await chat.trigger_event("join_group", "sid-alice", {"group_id": group.id})

	await chat.trigger_event("typing_start", "sid-alice", {"group_id": group.id})
	await chat.trigger_event("typing_start", "sid-alice", {"group_id": group.id})

	assert len(_emitted(chat, "user_typing")) == 1
	assert _emitted(chat, "error")[0].args[1] == {
		"event": "typing_start",
		"code": "rate_limited:typing",
		"kind": "rate_limited",
	}


@pytest.mark.asyncio
async def test_member_removal_evicts_live_session(chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Evict", member_ids=[cast.bob.id])
	await chat.trigger_event("connect", "sid-bob", _environ_for(cast.bob))
	await chat.trigger_event("join_group", "sid-bob", {"group_id": group.id})

	await chat._groups.remove_member(cast.alice, group.id, cast.bob.id)

	chat.leave_room.assert_awaited_with("sid-bob", group_room(group.id))
	assert group.id not in chat.session("sid-bob").groups


@pytest.mark.asyncio
async def test_new_member_is_notified_directly(chat, cast):
	await chat.trigger_event("connect", "sid-sam", _environ_for(cast.sam))
	group = await chat._groups.create_group(cast.alice, name="Invite", member_ids=[cast.sam.sub_admin_id])

	direct = [call for call in _emitted(chat, "group_update") if call.kwargs.get("to") == "sid-sam"]
	assert direct[0].args[1]["group_id"] == group.id
	assert direct[0].args[1]["action"] == "created"


@pytest.mark.asyncio
async def test_member_removal_evicts_every_live_session(chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Tabs", member_ids=[cast.bob.id])
	for sid in ("sid-bob-a", "sid-bob-b"):
		await chat.trigger_event("connect", sid, _environ_for(cast.bob))
		await chat.trigger_event("join_group", sid, {"group_id": group.id})

	await chat._groups.remove_member(cast.alice, group.id, cast.bob.id)

	left = {call.args for call in chat.leave_room.await_args_list}
	assert left == {("sid-bob-a", group_room(group.id)), ("sid-bob-b", group_room(group.id))}
	assert group.id not in chat.session("sid-bob-a").groups
	assert group.id not in chat.session("sid-bob-b").groups


@pytest.mark.asyncio
async def test_send_survives_outbox_outage(monkeypatch, chat, cast):
	async def unavailable(self, name, fields, *, maxlen=10_000):
		raise RedisConnectionError("redis down")

	group = await chat._groups.create_group(cast.alice, name="Audit", member_ids=[cast.bob.id])
	monkeypatch.setattr(RedisProxy, "xadd_capped", unavailable)
	await chat.trigger_event("connect", "sid-alice", _environ_for(cast.alice))

	await chat.trigger_event("send_message", "sid-alice", {"group_id": group.id, "content": "kept"})

	sent = _emitted(chat, "new_message")
	assert len(sent) == 1
	assert sent[0].kwargs["room"] == group_room(group.id)
	assert _emitted(chat, "error") == []


@pytest.mark.asyncio
async def test_unexpected_failures_are_reported_to_the_caller(monkeypatch, chat, cast):
	group = await chat._groups.create_group(cast.alice, name="Faults")
	await chat.trigger_event("connect", "sid-alice", _environ_for(cast.alice))

	async def broken(*args, **kwargs):
		raise RuntimeError("boom")

	async def cache_down(*args, **kwargs):
		raise RedisConnectionError("redis down")

	monkeypatch.setattr(chat._messages, "send_message", broken)
	await chat.trigger_event("send_message", "sid-alice", {"group_id": group.id, "content": "a"})
	monkeypatch.setattr(chat._messages, "send_message", cache_down)
	await chat.trigger_event("send_message", "sid-alice", {"group_id": group.id, "content": "b"})

	errors = _emitted(chat, "error")
	assert [call.args[1] for call in errors] == [
		{"event": "send_message", "code": "internal", "kind": "internal"},
		{"event": "send_message", "code": "upstream_failure", "kind": "upstream_failure"},
	]
	assert all(call.kwargs == {"to": "sid-alice"} for call in errors)
