"""
Administrative endpoints for organization-wide configuration.
"""

import logging
from typing import Any

from fastapi import APIRouter

from jobengine.v1.core.cache import CacheDep, CacheService
from jobengine.v1.core.exceptions import create_success_response
from jobengine.v1.core.security import (
    Action,
    PolicyChecker,
    PolicyDep,
    Principal,
    PrincipalDep,
    ResourceType,
    authorize,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/global-parameters", tags=["admin"])

IGNORE_PATHS_CACHE_KEY = "global:ignore_paths"


@router.post("/ignore-paths/invalidate-cache", response_model=dict)
async def invalidate_ignore_paths_cache(
    principal: Principal = PrincipalDep,
    policy: PolicyChecker = PolicyDep,
    cache: CacheService = CacheDep,
) -> dict[str, Any]:
    """Drop the cached global ignore paths so the next read reloads them."""
    authorize(policy, principal, Action.UPDATE, ResourceType.ORGANIZATION_SETTINGS)

    was_cached = await cache.remove_from_cache(IGNORE_PATHS_CACHE_KEY)

    logger.info(
        "Global ignore paths cache invalidated",
        extra={"user_id": principal.user_id, "was_cached": was_cached},
    )

    return create_success_response(
        data={
            "success": True,
            "message": "Global ignore paths cache invalidated",
        }
    )
