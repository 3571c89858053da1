import pytest

from docdesk.domain.accounts.repo import AccountRepository
from docdesk.domain.accounts.service import SubAdminService
from docdesk.domain.chat.exceptions import CapabilityDeniedError, InvalidArgumentError, NotFoundError
from docdesk.domain.chat.models import PrincipalKind, PrincipalRef
from docdesk.domain.chat.repo import GroupRepository
from docdesk.infra.detached import DetachedRunner


@pytest.fixture
def failures():
    return []


@pytest.fixture
def service(group_service, failures):
    runner = DetachedRunner(on_failure=lambda name, exc: failures.append((name, exc)))
    return SubAdminService(groups=group_service, runner=runner)


@pytest.mark.asyncio
async def test_create_subadmin_joins_default_group_in_background(service, cast):
    first = await service.create_subadmin(cast.admin, name="Dana", email="Dana@Example.com")
    await service.runner.drain()
    second = await service.create_subadmin(cast.admin, name="Eli", email="eli@example.com", permissions="full-access")
    await service.runner.drain()

    assert first.email == "dana@example.com"
    assert first.permissions == "view-only"
    assert second.permissions == "full-access"
    group = await GroupRepository().get_default_group()
    assert [m.principal for m in group.members] == [
        PrincipalRef(id=first.id, kind=PrincipalKind.SUBADMIN),
        PrincipalRef(id=second.id, kind=PrincipalKind.SUBADMIN),
    ]


@pytest.mark.asyncio
async def test_default_group_failure_does_not_fail_creation(monkeypatch, service, group_service, failures, cast):
    async def broken(*_args, **_kwargs):
        raise OSError("database went away")

    monkeypatch.setattr(group_service, "ensure_default_group", broken)

    view = await service.create_subadmin(cast.admin, name="Fay", email="fay@example.com")
    await service.runner.drain()

    assert await AccountRepository().get_subadmin(view.id) is not None
    assert [name for name, _ in failures] == ["ensure_default_group"]
    assert await GroupRepository().get_default_group() is None
    assert service.runner.pending == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("kwargs", "code"),
    [
        ({"name": " ", "email": "x@example.com"}, "name_and_email_required"),
        ({"name": "X", "email": ""}, "name_and_email_required"),
        ({"name": "X", "email": "x@example.com", "permissions": "root"}, "invalid_permissions"),
        ({"name": "X", "email": "ALICE@example.com"}, "email_taken"),
    ],
)
async def test_create_subadmin_validation(service, cast, kwargs, code):
    with pytest.raises(InvalidArgumentError) as excinfo:
        await service.create_subadmin(cast.admin, **kwargs)
    assert excinfo.value.detail == code


@pytest.mark.asyncio
async def test_only_admins_manage_subadmins(service, cast):
    with pytest.raises(CapabilityDeniedError):
        await service.create_subadmin(cast.sam, name="Gus", email="gus@example.com")
    with pytest.raises(CapabilityDeniedError):
        await service.list_subadmins(cast.alice)


@pytest.mark.asyncio
async def test_list_subadmins_includes_backing_identity(service, cast):
    views = await service.list_subadmins(cast.admin)
    by_id = {view.id: view for view in views}
    assert by_id[cast.sam.sub_admin_id].name == "Sam"
    assert by_id[cast.sue.sub_admin_id].user_id == cast.sue.id


@pytest.mark.asyncio
async def test_delete_subadmin_removes_backing_user(service, cast):
    accounts = AccountRepository()
    await service.delete_subadmin(cast.admin, cast.sam.sub_admin_id)
    assert await accounts.get_subadmin(cast.sam.sub_admin_id) is None
    assert await accounts.get_user(cast.sam.id) is None

    with pytest.raises(NotFoundError) as excinfo:
        await service.delete_subadmin(cast.admin, cast.sam.sub_admin_id)
    assert excinfo.value.detail == "subadmin_not_found"


@pytest.mark.asyncio
async def test_delete_orphaned_subadmin(service, cast):
    accounts = AccountRepository()
    orphan = await accounts.create_subadmin(user_id="gone", permissions="view-only", assigned_groups=[], created_by=None)
    await service.delete_subadmin(cast.admin, orphan.id)
    assert await accounts.get_subadmin(orphan.id) is None
    assert await accounts.get_user(cast.alice.id) is not None
