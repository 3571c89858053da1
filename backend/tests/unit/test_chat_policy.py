from datetime import datetime, timezone

import pytest

from docdesk.domain.chat import policy
from docdesk.domain.chat.exceptions import CapabilityDeniedError, RateLimitedError
from docdesk.domain.chat.models import ChatGroup, GroupMember, PrincipalKind, PrincipalRef
from docdesk.infra.auth import AuthenticatedUser
from docdesk.settings import settings

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

USER = AuthenticatedUser(id="u-1", role="user")
ADMIN = AuthenticatedUser(id="a-1", role="admin")
SUBADMIN = AuthenticatedUser(id="u-2", role="subadmin", sub_admin_id="s-1")

USER_REF = PrincipalRef(id="u-1", kind=PrincipalKind.USER)
ADMIN_REF = PrincipalRef(id="a-1", kind=PrincipalKind.USER)
SUBADMIN_REF = PrincipalRef(id="s-1", kind=PrincipalKind.SUBADMIN)


def _group(*members: GroupMember, creator: PrincipalRef = ADMIN_REF, **overrides) -> ChatGroup:
    fields = dict(
        id="g-1",
        name="Reviewers",
        description=None,
        kind="private",
        members=list(members),
        created_by=creator,
        is_active=True,
        is_muted=False,
        last_message_id=None,
        last_activity_at=NOW,
        created_at=NOW,
    )
    fields.update(overrides)
    return ChatGroup(**fields)


def _member(ref: PrincipalRef, role: str = "member") -> GroupMember:
    return GroupMember(principal=ref, role=role, joined_at=NOW)


def test_member_can_read_and_write():
    group = _group(_member(USER_REF))
    assert policy.can_read(USER, USER_REF, group)
    assert policy.can_write(USER, USER_REF, group)


def test_non_member_cannot_read():
    group = _group(_member(SUBADMIN_REF))
    assert not policy.can_read(USER, USER_REF, group)
    with pytest.raises(CapabilityDeniedError) as excinfo:
        policy.ensure_can_read(USER, USER_REF, group)
    assert excinfo.value.detail == "not_member"


def test_membership_compares_kind_as_well_as_id():
    # A user whose id collides with a subadmin record id is still a different principal.
    colliding = PrincipalRef(id="s-1", kind=PrincipalKind.USER)
    group = _group(_member(SUBADMIN_REF))
    assert not policy.can_read(AuthenticatedUser(id="s-1", role="user"), colliding, group)


def test_admin_reads_any_group_without_membership():
    group = _group(_member(USER_REF), is_active=False)
    assert policy.can_read(ADMIN, ADMIN_REF, group)


def test_muted_group_blocks_writes_for_members():
    group = _group(_member(USER_REF), is_muted=True)
    assert policy.can_read(USER, USER_REF, group)
    assert not policy.can_write(USER, USER_REF, group)
    with pytest.raises(CapabilityDeniedError) as excinfo:
        policy.ensure_can_write(USER, USER_REF, group)
    assert excinfo.value.detail == "group_muted"


def test_group_admin_role_or_creator_can_administer():
    group = _group(_member(USER_REF), _member(SUBADMIN_REF, role="admin"), creator=ADMIN_REF)
    assert policy.can_administer(SUBADMIN_REF, group)
    assert policy.can_administer(ADMIN_REF, group)
    assert not policy.can_administer(USER_REF, group)
    with pytest.raises(CapabilityDeniedError) as excinfo:
        policy.ensure_can_administer(USER_REF, group)
    assert excinfo.value.detail == "not_group_admin"


def test_global_admin_check():
    policy.ensure_global_admin(ADMIN)
    with pytest.raises(CapabilityDeniedError) as excinfo:
        policy.ensure_global_admin(SUBADMIN)
    assert excinfo.value.detail == "admin_only"


@pytest.mark.asyncio
async def test_send_limit_trips_after_budget(monkeypatch):
    monkeypatch.setattr(settings, "chat_send_limit_per_minute", 2)
    await policy.enforce_send_limit(USER_REF)
    await policy.enforce_send_limit(USER_REF)
    with pytest.raises(RateLimitedError) as excinfo:
        await policy.enforce_send_limit(USER_REF)
    assert excinfo.value.detail == "rate_limited:send"
    # Budgets are per principal.
    await policy.enforce_send_limit(SUBADMIN_REF)


@pytest.mark.asyncio
async def test_typing_limit_uses_its_own_bucket(monkeypatch, fake_redis):
    monkeypatch.setattr(settings, "chat_typing_limit_per_minute", 1)
    await policy.enforce_typing_limit(USER_REF)
    await policy.enforce_send_limit(USER_REF)
    with pytest.raises(RateLimitedError) as excinfo:
        await policy.enforce_typing_limit(USER_REF)
    assert excinfo.value.detail == "rate_limited:typing"
    keys = await fake_redis.keys("rl:chat:typing:user:u-1:*")
    assert len(keys) == 1
    assert await fake_redis.ttl(keys[0]) > 0
