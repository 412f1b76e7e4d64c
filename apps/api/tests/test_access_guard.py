from __future__ import annotations

import pytest

from dealflow.pipeline.access import Action, Identity, ResourceKind, Role, authorize, is_allowed
from dealflow.pipeline.errors import Forbidden, Unauthenticated


ADMIN = Identity(user_id="admin-1", role=Role.ADMIN)
MEMBER = Identity(user_id="member-1", role=Role.MEMBER)


@pytest.mark.parametrize("action", [Action.CREATE, Action.UPDATE, Action.DELETE, Action.REORDER])
def test_stage_mutations_are_admin_only(action: Action) -> None:
    assert is_allowed(ADMIN, action, ResourceKind.STAGE)
    assert not is_allowed(MEMBER, action, ResourceKind.STAGE)


def test_any_authenticated_identity_reads_and_creates() -> None:
    assert is_allowed(MEMBER, Action.READ, ResourceKind.STAGE)
    assert is_allowed(MEMBER, Action.READ, ResourceKind.DEAL)
    assert is_allowed(MEMBER, Action.CREATE, ResourceKind.DEAL)


@pytest.mark.parametrize("action", [Action.UPDATE, Action.DELETE])
def test_deal_writes_need_owner_or_admin(action: Action) -> None:
    assert is_allowed(MEMBER, action, ResourceKind.DEAL, owner_user_id="member-1")
    assert not is_allowed(MEMBER, action, ResourceKind.DEAL, owner_user_id="member-2")
    assert not is_allowed(MEMBER, action, ResourceKind.DEAL)
    assert is_allowed(ADMIN, action, ResourceKind.DEAL, owner_user_id="member-2")


def test_missing_identity_is_never_allowed() -> None:
    assert not is_allowed(None, Action.READ, ResourceKind.STAGE)
    with pytest.raises(Unauthenticated):
        authorize(None, Action.READ, ResourceKind.DEAL)


def test_unknown_combination_is_denied() -> None:
    assert not is_allowed(ADMIN, Action.REORDER, ResourceKind.DEAL)


def test_authorize_raises_forbidden_with_context() -> None:
    with pytest.raises(Forbidden) as excinfo:
        authorize(MEMBER, Action.UPDATE, ResourceKind.DEAL, owner_user_id="someone-else")
    assert excinfo.value.status_code == 403
    assert "update deal" in excinfo.value.message

    assert authorize(MEMBER, Action.UPDATE, ResourceKind.DEAL, owner_user_id="member-1") is True
