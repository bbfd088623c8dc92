from __future__ import annotations

"""Requester-facing endpoints: submit a request, follow it, start the session.

The service binds to loopback; the requester identity in the body is the OS
account of the person at the machine. Approval tokens are never returned here,
only sent to approvers.
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, status

from tempadmin.models import (
    ActivationResponse,
    ElevationStatusResponse,
    PrivilegeRequest,
    PrivilegeRequestCreate,
    RequestStatus,
    SubmitResponse,
)
from tempadmin.errors import ValidationError
from tempadmin.utils.backend import is_valid_identity
from tempadmin.utils.dependencies import get_lifecycle
from tempadmin.utils.lifecycle import PrivilegeLifecycle

router = APIRouter(prefix="/v1", tags=["requests"])


# ---------------------------------------------------------------------------
# Submit
# ---------------------------------------------------------------------------


@router.post("/requests", response_model=SubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_request(
    body: PrivilegeRequestCreate,
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> SubmitResponse:
    result = await lifecycle.submit(
        body.requester_identity,
        body.display_name,
        body.duration_minutes,
        body.reason,
    )
    return SubmitResponse(request=result.request, tokens_expire_at=result.approve_token.expires_at)


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------


@router.get("/requests", response_model=List[PrivilegeRequest])
async def list_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    start: Optional[datetime] = Query(None, description="Created at or after (ISO-8601)"),
    end: Optional[datetime] = Query(None, description="Created at or before (ISO-8601)"),
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> List[PrivilegeRequest]:
    return await lifecycle.list_requests(status=status_filter, start=start, end=end)


@router.get("/requests/pending", response_model=List[PrivilegeRequest])
async def list_pending_requests(lifecycle: PrivilegeLifecycle = Depends(get_lifecycle)) -> List[PrivilegeRequest]:
    return await lifecycle.list_pending()


@router.get("/requests/{request_id}", response_model=PrivilegeRequest)
async def get_request(
    request_id: str = Path(...),
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> PrivilegeRequest:
    return await lifecycle.get(request_id)


# ---------------------------------------------------------------------------
# Activate
# ---------------------------------------------------------------------------


@router.post("/requests/{request_id}/activate", response_model=ActivationResponse)
async def activate_request(
    request_id: str = Path(...),
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> ActivationResponse:
    request = await lifecycle.activate(request_id)
    return ActivationResponse(
        id=request.id,
        status=request.status,
        activated_at=request.activated_at,
        expires_at=request.expires_at,
    )


@router.get("/elevation/{identity}", response_model=ElevationStatusResponse)
async def elevation_status(
    identity: str = Path(...),
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> ElevationStatusResponse:
    if not is_valid_identity(identity):
        raise ValidationError([{"field": "identity", "message": "may only contain letters, digits, dashes and underscores"}])
    return ElevationStatusResponse(identity=identity, elevated=await lifecycle.is_elevated(identity))
