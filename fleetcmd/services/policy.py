"""Role capability checks.

All authorization decisions go through these functions so the role matrix
lives in one place.
"""

from __future__ import annotations

from fleetcmd.errors import AuthorizationError
from fleetcmd.models.identity import Principal, Role

_SUBMIT_ROLES = frozenset({Role.admin, Role.devops})
_MANAGE_ROLES = frozenset({Role.admin, Role.devops})


def can_submit(role: Role) -> bool:
    return role in _SUBMIT_ROLES


def can_manage(role: Role) -> bool:
    """Register/remove servers and store credentials."""
    return role in _MANAGE_ROLES


def require_submit(principal: Principal) -> None:
    if not can_submit(principal.role):
        raise AuthorizationError(
            f"role '{principal.role.value}' may not submit commands",
        )


def require_manage(principal: Principal) -> None:
    if not can_manage(principal.role):
        raise AuthorizationError(
            f"role '{principal.role.value}' may not manage servers or credentials",
        )
