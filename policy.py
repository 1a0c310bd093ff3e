"""Role to capability mapping.

Every service asks this module before touching a resource; no other module
compares role strings.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from errors import Forbidden
from models import Role


class Resource(str, Enum):
    transaction = "transaction"
    category = "category"
    user = "user"
    analytics = "analytics"


class Action(str, Enum):
    create = "create"
    read = "read"
    update = "update"
    delete = "delete"


@dataclass(frozen=True)
class Identity:
    id: int
    email: str
    role: Role
    name: str

    @property
    def is_admin(self) -> bool:
        return self.role == Role.admin


# Capabilities of non-admin roles. Resources marked as owned additionally
# require owner_user_id to match the caller.
_GRANTS: dict[Role, dict[Resource, frozenset[Action]]] = {
    Role.user: {
        Resource.transaction: frozenset(Action),
        Resource.category: frozenset({Action.read}),
        Resource.analytics: frozenset({Action.read}),
    },
    Role.read_only: {
        Resource.transaction: frozenset({Action.read}),
        Resource.category: frozenset({Action.read}),
        Resource.analytics: frozenset({Action.read}),
    },
}

_OWNED = frozenset({Resource.transaction, Resource.analytics})


def can_act(
    identity: Optional[Identity],
    resource: Resource,
    action: Action,
    owner_user_id: Optional[int] = None,
) -> bool:
    if identity is None:
        return False
    if identity.role == Role.admin:
        return True

    allowed = _GRANTS.get(identity.role, {}).get(resource, frozenset())
    if action not in allowed:
        return False
    if resource in _OWNED and owner_user_id is not None:
        return owner_user_id == identity.id
    return True


def require(
    identity: Optional[Identity],
    resource: Resource,
    action: Action,
    owner_user_id: Optional[int] = None,
    message: Optional[str] = None,
) -> None:
    if not can_act(identity, resource, action, owner_user_id):
        raise Forbidden(
            message or f"Not authorized to {action.value} this {resource.value}."
        )
