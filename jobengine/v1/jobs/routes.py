"""
Job management API endpoints.

Provides admin endpoints for job submission, ledger inspection and outbox
maintenance. Every endpoint runs an explicit authorization check first.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from jobengine.config.settings import Settings, SettingsDep
from jobengine.infra.broker import Broker, BrokerDep
from jobengine.infra.database import get_session
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
from jobengine.v1.jobs.schemas import (
    JobEnqueueRequest,
    LedgerEntryResponse,
)
from jobengine.v1.jobs.service import JobService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])
outbox_router = APIRouter(prefix="/outbox", tags=["outbox"])


@router.post("", response_model=dict, status_code=202)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    principal: Principal = PrincipalDep,
    policy: PolicyChecker = PolicyDep,
    broker: Broker = BrokerDep,
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue a new background job."""
    authorize(policy, principal, Action.CREATE, ResourceType.JOBS)

    job_service = JobService(settings)
    result = await job_service.enqueue_job(broker, job_request)

    logger.info(
        "Job enqueued via API",
        extra={
            "job_id": result.job_id,
            "type": job_request.type,
            "user_id": principal.user_id,
        },
    )

    return create_success_response(data=result.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    principal: Principal = PrincipalDep,
    policy: PolicyChecker = PolicyDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get ledger statistics."""
    authorize(policy, principal, Action.READ, ResourceType.JOBS)

    job_service = JobService(settings)
    stats = await job_service.get_job_stats(session)

    return create_success_response(data=stats.model_dump())


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: str,
    principal: Principal = PrincipalDep,
    policy: PolicyChecker = PolicyDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get the ledger entry of a job."""
    authorize(policy, principal, Action.READ, ResourceType.JOBS)

    job_service = JobService(settings)
    entry = await job_service.get_job(session, job_id)

    job_data = LedgerEntryResponse.model_validate(entry)
    return create_success_response(data=job_data.model_dump(mode="json"))


@outbox_router.get("/stats", response_model=dict)
async def get_outbox_stats(
    principal: Principal = PrincipalDep,
    policy: PolicyChecker = PolicyDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get outbox counts by status."""
    authorize(policy, principal, Action.READ, ResourceType.OUTBOX)

    job_service = JobService(settings)
    stats = await job_service.get_outbox_stats(session)

    return create_success_response(data=stats.model_dump(mode="json"))


@outbox_router.post("/{outbox_id}/requeue", response_model=dict)
async def requeue_outbox_event(
    outbox_id: int,
    principal: Principal = PrincipalDep,
    policy: PolicyChecker = PolicyDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """
    Move a failed outbox event back to pending.

    The event is published after any later events of its aggregate that
    were relayed while it was failed.
    """
    authorize(policy, principal, Action.UPDATE, ResourceType.OUTBOX)

    job_service = JobService(settings)
    success = await job_service.requeue_outbox_event(session, outbox_id)

    if not success:
        raise HTTPException(
            status_code=404, detail="Outbox event not found or not failed"
        )

    logger.info(
        "Outbox event requeued via API",
        extra={"outbox_id": outbox_id, "user_id": principal.user_id},
    )

    return create_success_response(data={"success": True, "outbox_id": outbox_id})
