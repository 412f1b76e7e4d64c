from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from dealflow.metrics import observe_access_denied
from dealflow.pipeline.errors import Forbidden, Unauthenticated


logger = logging.getLogger("dealflow.pipeline.access")


class Role(StrEnum):
    ADMIN = "admin"
    MEMBER = "member"


class Action(StrEnum):
    READ = "read"
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    REORDER = "reorder"


class ResourceKind(StrEnum):
    STAGE = "stage"
    DEAL = "deal"


@dataclass(frozen=True, slots=True)
class Identity:
    """An already-validated request actor. The core never mutates it."""

    user_id: str
    role: Role
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


# Who may perform an action. "any" admits every authenticated identity,
# "owner" admits admins plus the owner of the target record.
_RULES: dict[tuple[ResourceKind, Action], str] = {
    (ResourceKind.STAGE, Action.READ): "any",
    (ResourceKind.STAGE, Action.CREATE): "admin",
    (ResourceKind.STAGE, Action.UPDATE): "admin",
    (ResourceKind.STAGE, Action.DELETE): "admin",
    (ResourceKind.STAGE, Action.REORDER): "admin",
    (ResourceKind.DEAL, Action.READ): "any",
    (ResourceKind.DEAL, Action.CREATE): "any",
    (ResourceKind.DEAL, Action.UPDATE): "owner",
    (ResourceKind.DEAL, Action.DELETE): "owner",
}


def is_allowed(
    identity: Identity | None,
    action: Action,
    resource: ResourceKind,
    owner_user_id: str | None = None,
) -> bool:
    if identity is None:
        return False
    rule = _RULES.get((resource, action))
    if rule is None:
        return False
    if rule == "any":
        return True
    if identity.is_admin:
        return True
    if rule == "owner":
        return owner_user_id is not None and owner_user_id == identity.user_id
    return False


def authorize(
    identity: Identity | None,
    action: Action,
    resource: ResourceKind,
    owner_user_id: str | None = None,
) -> bool:
    if identity is None:
        observe_access_denied(action.value, resource.value, "unauthenticated")
        raise Unauthenticated()
    if not is_allowed(identity, action, resource, owner_user_id):
        observe_access_denied(action.value, resource.value, "forbidden")
        logger.info(
            "access.denied",
            extra={"actor_user_id": identity.user_id, "action": action.value, "resource": resource.value},
        )
        raise Forbidden(f"not permitted to {action.value} {resource.value}")
    return True
