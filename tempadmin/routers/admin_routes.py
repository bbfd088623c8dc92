from __future__ import annotations

"""Dashboard endpoints for approvers.

All routes require the approver key (see :mod:`tempadmin.utils.auth`). Besides
approve/deny, approvers can revoke an active grant early, which is also the
manual remediation path when a scheduled revocation keeps failing.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Path, status

from tempadmin.models import (
    ApprovalAction,
    ApproverContext,
    DecisionResponse,
    DenyRequest,
    MessageResponse,
    PrivilegeRequest,
    RevokeRequest,
    ScheduledRevocation,
    SchedulerStatusResponse,
    TokenStatsResponse,
)
from tempadmin.utils.auth import require_approver
from tempadmin.utils.dependencies import Services, get_services

router = APIRouter(prefix="/v1/admin", tags=["admin"])


@router.get("/requests", response_model=List[PrivilegeRequest])
async def list_all_requests(
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> List[PrivilegeRequest]:
    return await services.lifecycle.list_requests()


@router.get("/requests/pending", response_model=List[PrivilegeRequest])
async def list_pending_requests(
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> List[PrivilegeRequest]:
    return await services.lifecycle.list_pending()


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


@router.post("/requests/{request_id}/approve", response_model=DecisionResponse)
async def approve_request(
    request_id: str = Path(...),
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> DecisionResponse:
    updated = await services.lifecycle.decide(request_id, ApprovalAction.approve, approver.identity)
    return DecisionResponse(id=updated.id, status=updated.status, decided_at=updated.decided_at)


@router.post("/requests/{request_id}/deny", response_model=DecisionResponse)
async def deny_request(
    body: DenyRequest,
    request_id: str = Path(...),
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> DecisionResponse:
    updated = await services.lifecycle.decide(request_id, ApprovalAction.deny, approver.identity, body.reason)
    return DecisionResponse(id=updated.id, status=updated.status, decided_at=updated.decided_at)


@router.post("/requests/{request_id}/revoke", response_model=MessageResponse)
async def revoke_request(
    body: RevokeRequest,
    request_id: str = Path(...),
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> MessageResponse:
    """Revoke an active grant now. A request that is not active is left alone."""
    updated = await services.lifecycle.revoke(request_id, reason=f"{body.reason} by {approver.identity}")
    if updated is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="request_not_active")
    return MessageResponse(message="revoked", details={"id": updated.id, "status": updated.status.value})


# ---------------------------------------------------------------------------
# Operational views
# ---------------------------------------------------------------------------


@router.get("/tokens/stats", response_model=TokenStatsResponse)
async def token_stats(
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> TokenStatsResponse:
    return TokenStatsResponse(**services.issuer.stats())


@router.get("/scheduler", response_model=SchedulerStatusResponse)
async def scheduler_status(
    approver: ApproverContext = Depends(require_approver),
    services: Services = Depends(get_services),
) -> SchedulerStatusResponse:
    timers = [
        ScheduledRevocation(request_id=rid, expires_at=expires_at)
        for rid, expires_at in sorted(services.scheduler.pending().items(), key=lambda item: item[1])
    ]
    return SchedulerStatusResponse(timers=timers)
