from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, Set, Union

from gatehouse.service.errors import InsufficientPermissions
from gatehouse.storage.models import Principal


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"
    GUEST = "GUEST"


# Each role implies itself plus every role listed here
ROLE_HIERARCHY: Dict[Role, FrozenSet[Role]] = {
    Role.ADMIN: frozenset({Role.ADMIN, Role.USER, Role.GUEST}),
    Role.USER: frozenset({Role.USER, Role.GUEST}),
    Role.GUEST: frozenset({Role.GUEST}),
}

RoleLike = Union[Role, str]


def _coerce(role: RoleLike) -> Role | None:
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).upper())
    except ValueError:
        return None


def get_effective_permissions(
    roles: Iterable[RoleLike], hierarchical: bool = True
) -> Set[Role]:
    """Expand held roles into every role they grant. Unknown names grant nothing."""
    effective: Set[Role] = set()
    for raw in roles:
        role = _coerce(raw)
        if role is None:
            continue
        if hierarchical:
            effective.update(ROLE_HIERARCHY[role])
        else:
            effective.add(role)
    return effective


def has_role_permission(
    roles: Iterable[RoleLike], required: RoleLike, hierarchical: bool = True
) -> bool:
    wanted = _coerce(required)
    if wanted is None:
        return False
    return wanted in get_effective_permissions(roles, hierarchical)


def is_authorized(
    roles: Iterable[RoleLike],
    required_roles: Iterable[RoleLike],
    hierarchical: bool = True,
) -> bool:
    """True when the held roles satisfy at least one of ``required_roles``."""
    effective = get_effective_permissions(roles, hierarchical)
    wanted = {role for role in (_coerce(r) for r in required_roles) if role is not None}
    return bool(effective & wanted)


def require_roles(
    principal: Principal,
    required_roles: Iterable[RoleLike],
    hierarchical: bool = True,
) -> Principal:
    required = list(required_roles)
    if not is_authorized(principal.roles, required, hierarchical):
        raise InsufficientPermissions(
            detail={
                "required_roles": [
                    r.value if isinstance(r, Role) else str(r) for r in required
                ]
            }
        )
    return principal
