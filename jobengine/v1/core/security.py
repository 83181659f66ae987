from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from fastapi import Depends, Header, HTTPException, status

from jobengine.config.settings import AuthMode, settings
from jobengine.v1.core.exceptions import ForbiddenError


class Action(str, Enum):
    READ = "read"
    UPDATE = "update"
    CREATE = "create"


class ResourceType(str, Enum):
    JOBS = "jobs"
    OUTBOX = "outbox"
    ORGANIZATION_SETTINGS = "organization_settings"


@dataclass
class Principal:
    """Represents the caller of an administrative endpoint."""

    user_id: str
    roles: list[str] = field(default_factory=list)
    email: str | None = None


async def get_principal(
    x_user_id: str | None = Header(None, alias="X-User-ID"),
    x_roles: str | None = Header(None, alias="X-Roles"),
) -> Principal:
    """
    Dependency injection function to get the current principal.

    Identity is established upstream; this only reads what the proxy forwards.
    - none: Returns dev defaults with admin role
    - dev: Extract user and comma separated roles from headers
    """
    if settings.auth_mode == AuthMode.NONE:
        return Principal(user_id=settings.dev_user_id, roles=["admin"])
    elif settings.auth_mode == AuthMode.DEV:
        if not x_user_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-User-ID header is required in dev auth mode",
            )

        roles = [r.strip() for r in (x_roles or "").split(",") if r.strip()]
        return Principal(user_id=x_user_id, roles=roles)
    else:
        raise ValueError(f"Unknown auth mode: {settings.auth_mode}")


# Convenience type alias for dependency injection
PrincipalDep = Depends(get_principal)


class PolicyChecker(Protocol):
    """Decides whether a principal may perform an action on a resource."""

    def is_allowed(
        self, principal: Principal, action: Action, resource: ResourceType
    ) -> bool: ...


class RolePolicy:
    """Role table policy: admins may do anything, operators may read."""

    def __init__(self, grants: dict[str, set[Action]] | None = None):
        self.grants = grants or {
            "admin": {Action.READ, Action.UPDATE, Action.CREATE},
            "operator": {Action.READ},
        }

    def is_allowed(
        self, principal: Principal, action: Action, resource: ResourceType
    ) -> bool:
        return any(action in self.grants.get(role, set()) for role in principal.roles)


_policy: PolicyChecker = RolePolicy()


def get_policy() -> PolicyChecker:
    """Dependency injection function for the policy checker."""
    return _policy


PolicyDep = Depends(get_policy)


def authorize(
    policy: PolicyChecker,
    principal: Principal,
    action: Action,
    resource: ResourceType,
) -> None:
    """Raise ForbiddenError unless the policy allows the action."""
    if not policy.is_allowed(principal, action, resource):
        raise ForbiddenError(
            f"{action.value} on {resource.value} is not permitted",
            details={"user_id": principal.user_id},
        )
