"""Outbound lifecycle messages published through approval channels.

Each event serializes to a flat JSON object with a ``type`` discriminator and
camelCase keys, so the same payload can be sent as a WebSocket frame, an HTTP
POST body or a webhook.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from tempadmin.models import ApprovalAction, PrivilegeRequest


class ChannelEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    id: str

    def to_message(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class NewRequestEvent(ChannelEvent):
    type: Literal["new_request"] = "new_request"
    requester_identity: str
    display_name: str
    duration_minutes: int
    reason: str
    created_at: datetime
    approve_token: str
    deny_token: str

    @classmethod
    def from_request(cls, request: PrivilegeRequest, approve_token: str, deny_token: str) -> "NewRequestEvent":
        return cls(
            id=request.id,
            requester_identity=request.requester_identity,
            display_name=request.display_name,
            duration_minutes=request.requested_duration_minutes,
            reason=request.reason,
            created_at=request.created_at,
            approve_token=approve_token,
            deny_token=deny_token,
        )


class RequestDecidedEvent(ChannelEvent):
    type: Literal["request_decided"] = "request_decided"
    decision: ApprovalAction
    approver_identity: Optional[str] = None
    decided_at: datetime


class RequestActivatedEvent(ChannelEvent):
    type: Literal["request_activated"] = "request_activated"
    expires_at: datetime


class RequestExpiredEvent(ChannelEvent):
    type: Literal["request_expired"] = "request_expired"


class PrivilegesExpiringEvent(ChannelEvent):
    """Advisory heads-up before a grant is revoked."""

    type: Literal["privileges_expiring"] = "privileges_expiring"
    expires_at: datetime
