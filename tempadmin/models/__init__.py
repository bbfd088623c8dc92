from __future__ import annotations

"""Unified models namespace: persisted records, API request/response models
and the enums shared between them.

Call-sites import directly from the package::

    from tempadmin.models import PrivilegeRequest, RequestStatus, AuditAction

Outbound channel messages live in :mod:`tempadmin.models.events`.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# ---------------------------------------------------------------------------
# Approver context
# ---------------------------------------------------------------------------


@dataclass
class ApproverContext:
    """Identity of an authenticated dashboard approver."""

    identity: str
    via: str = "api_key"

    def is_dev_bypass(self) -> bool:
        return self.via == "dev_bypass"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RequestStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    denied = "denied"
    active = "active"
    expired = "expired"


class ApprovalAction(str, Enum):
    approve = "approve"
    deny = "deny"


class AuditAction(str, Enum):
    """Standardized audit action types."""

    request_submit = "request.submit"
    request_approve = "request.approve"
    request_deny = "request.deny"

    privilege_grant = "privilege.grant"
    privilege_revoke = "privilege.revoke"
    privilege_expiring = "privilege.expiring"

    token_rejected = "token.rejected"

    auth_success = "auth.success"
    auth_failure = "auth.failure"


class AuditStatus(str, Enum):
    success = "success"
    failure = "failure"
    denied = "denied"


# ---------------------------------------------------------------------------
# Persisted record
# ---------------------------------------------------------------------------


class PrivilegeRequest(BaseModel):
    """A request for temporary admin rights, persisted in the request store.

    ``expires_at`` is only set once the request becomes ``active`` and is kept
    after expiry. ``decided_at`` is set by the approve/deny decision. Optional
    fields default to ``None`` so snapshots written by older builds load.
    """

    id: str
    requester_identity: str
    display_name: str
    reason: str
    requested_duration_minutes: int
    status: RequestStatus = RequestStatus.pending
    created_at: datetime

    decided_at: Optional[datetime] = None
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    approver_identity: Optional[str] = None
    decision_reason: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None

    @property
    def duration(self) -> timedelta:
        return timedelta(minutes=self.requested_duration_minutes)


# ---------------------------------------------------------------------------
# API request models
# ---------------------------------------------------------------------------


class PrivilegeRequestCreate(BaseModel):
    """Submission body. Field rules are enforced by the lifecycle so every
    violation is reported together."""

    requester_identity: str = Field(..., description="OS account to elevate")
    display_name: str = Field(..., description="Requester's full name for approvers")
    duration_minutes: int = Field(..., description="One of the allowed durations")
    reason: str = Field(..., description="Why admin rights are needed")


class DenyRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000, description="Optional note for the requester")


class RevokeRequest(BaseModel):
    reason: str = Field("manual", max_length=200, description="Why the grant is revoked early")


class TokenDecisionRequest(BaseModel):
    token: str = Field(..., description="Approve or deny token from a notification")


# ---------------------------------------------------------------------------
# API response models
# ---------------------------------------------------------------------------


class SubmitResponse(BaseModel):
    request: PrivilegeRequest
    tokens_expire_at: datetime = Field(..., description="When the approval links stop working")


class ActivationResponse(BaseModel):
    id: str
    status: RequestStatus
    activated_at: Optional[datetime] = None
    expires_at: datetime


class ElevationStatusResponse(BaseModel):
    identity: str
    elevated: bool


class DecisionResponse(BaseModel):
    id: str
    status: RequestStatus
    decided_at: Optional[datetime] = None


class TokenStatsResponse(BaseModel):
    total: int
    active: int
    expired: int
    used: int


class ScheduledRevocation(BaseModel):
    request_id: str
    expires_at: datetime


class SchedulerStatusResponse(BaseModel):
    timers: List[ScheduledRevocation]


class MessageResponse(BaseModel):
    message: str
    details: Optional[Dict[str, Any]] = None
