import pytest

from docdesk.domain.accounts.repo import AccountRepository
from docdesk.domain.chat.exceptions import PreconditionFailedError
from docdesk.domain.chat.models import PrincipalKind, PrincipalRef
from docdesk.domain.chat.principals import PrincipalDirectory, resolve_principal
from docdesk.infra.auth import AuthenticatedUser


def test_resolve_principal_for_plain_user():
    ref = resolve_principal(AuthenticatedUser(id="u-1", role="user"))
    assert ref == PrincipalRef(id="u-1", kind=PrincipalKind.USER)


def test_resolve_principal_uses_subadmin_record_id():
    ref = resolve_principal(AuthenticatedUser(id="u-9", role="subadmin", sub_admin_id="s-9"))
    assert ref == PrincipalRef(id="s-9", kind=PrincipalKind.SUBADMIN)


def test_resolve_principal_requires_subadmin_record():
    with pytest.raises(PreconditionFailedError) as excinfo:
        resolve_principal(AuthenticatedUser(id="u-9", role="subadmin"))
    assert excinfo.value.detail == "subadmin_record_missing"
    assert excinfo.value.status_code == 412


@pytest.mark.asyncio
async def test_describe_subadmin_shows_record_id_with_backing_name(cast):
    directory = PrincipalDirectory()
    ref = resolve_principal(cast.sam)
    summary = await directory.describe(ref)
    assert summary.id == cast.sam.sub_admin_id
    assert summary.kind is PrincipalKind.SUBADMIN
    assert summary.name == "Sam"
    assert summary.email == "sam@example.com"


@pytest.mark.asyncio
async def test_describe_unknown_principal_has_no_name():
    summary = await PrincipalDirectory().describe(PrincipalRef(id="ghost", kind=PrincipalKind.USER))
    assert summary.id == "ghost"
    assert summary.name is None


@pytest.mark.asyncio
async def test_resolve_candidate_prefers_subadmin_records(cast):
    directory = PrincipalDirectory()
    assert await directory.resolve_candidate(cast.sam.sub_admin_id) == PrincipalRef(
        id=cast.sam.sub_admin_id, kind=PrincipalKind.SUBADMIN
    )
    assert await directory.resolve_candidate(cast.alice.id) == PrincipalRef(
        id=cast.alice.id, kind=PrincipalKind.USER
    )
    assert await directory.resolve_candidate("missing") is None
    assert await directory.resolve_candidate("  ") is None


@pytest.mark.asyncio
async def test_list_available_scopes_by_role(cast):
    accounts = AccountRepository()
    # An orphaned subadmin record is never offered.
    await accounts.create_subadmin(user_id="gone", permissions="view-only", assigned_groups=[], created_by=None)
    directory = PrincipalDirectory(accounts)

    for_subadmin = await directory.list_available(cast.sam)
    assert {m.id for m in for_subadmin} == {cast.sam.sub_admin_id, cast.sue.sub_admin_id}
    assert all(m.kind == "subadmin" for m in for_subadmin)

    for_admin = await directory.list_available(cast.admin)
    ids = {m.id for m in for_admin}
    assert {cast.alice.id, cast.bob.id, cast.admin.id} <= ids
    # Subadmins appear once, under their record id, never under the backing user id.
    assert cast.sam.id not in ids
    assert cast.sam.sub_admin_id in ids
