"""Privilege request state machine.

    pending ──approve──▶ approved ──activate──▶ active ──revoke──▶ expired
        └────deny─────▶ denied

Every transition re-reads the stored record inside ``RequestStore.update`` and
checks the current status there, so duplicate or racing calls (two approvers,
a restart racing a timer, a replayed WebSocket frame) are either idempotent or
rejected without side effects. Approval and activation are separate steps: the
requester decides when the clock starts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional

from tempadmin.errors import (
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    TokenError,
    ValidationError,
)
from tempadmin.models import (
    ApprovalAction,
    AuditAction,
    AuditStatus,
    PrivilegeRequest,
    RequestStatus,
)
from tempadmin.models.events import (
    NewRequestEvent,
    PrivilegesExpiringEvent,
    RequestActivatedEvent,
    RequestDecidedEvent,
    RequestExpiredEvent,
)
from tempadmin.settings import DEFAULT_DURATIONS
from tempadmin.utils.audit import log_audit_event
from tempadmin.utils.backend import IDENTITY_PATTERN, PrivilegeBackend
from tempadmin.utils.channels import ApprovalChannel
from tempadmin.utils.store import RequestStore
from tempadmin.utils.tokens import IssuedToken, SecureTokenIssuer
from tempadmin.utils.utils import generate_request_id, utcnow

if TYPE_CHECKING:  # pragma: no cover
    from tempadmin.utils.scheduler import ExpirationScheduler

logger = logging.getLogger(__name__)

MAX_DISPLAY_NAME_LENGTH = 100
MAX_REASON_LENGTH = 1000

PENDING_VIEW = (RequestStatus.pending, RequestStatus.approved)


@dataclass(frozen=True)
class SubmitResult:
    request: PrivilegeRequest
    approve_token: IssuedToken
    deny_token: IssuedToken


# ---------------------------------------------------------------------------
# Submission validation
# ---------------------------------------------------------------------------


def _has_control_chars(value: str) -> bool:
    return any(ord(ch) < 32 and ch not in "\t\n\r" for ch in value)


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Offset-less bounds from query strings are taken as UTC."""
    if moment is None or moment.tzinfo is not None:
        return moment
    return moment.replace(tzinfo=timezone.utc)


def validate_submission(
    requester_identity: object,
    display_name: object,
    duration_minutes: object,
    reason: object,
    allowed_durations: Iterable[int] = DEFAULT_DURATIONS,
) -> List[Dict[str, str]]:
    """Return every violated constraint (empty list when the submission is valid)."""
    violations: List[Dict[str, str]] = []

    def fail(field: str, message: str) -> None:
        violations.append({"field": field, "message": message})

    if not isinstance(requester_identity, str) or not requester_identity:
        fail("requester_identity", "is required")
    elif not IDENTITY_PATTERN.fullmatch(requester_identity):
        fail("requester_identity", "may only contain letters, digits, dashes and underscores")
    elif requester_identity.startswith("-"):
        fail("requester_identity", "must not start with a dash")

    if not isinstance(display_name, str) or not display_name.strip():
        fail("display_name", "is required")
    else:
        if len(display_name.strip()) > MAX_DISPLAY_NAME_LENGTH:
            fail("display_name", f"must be at most {MAX_DISPLAY_NAME_LENGTH} characters")
        if _has_control_chars(display_name):
            fail("display_name", "must not contain control characters")

    allowed = sorted(set(allowed_durations))
    # bool is an int subclass; True must not pass as 1 minute
    if isinstance(duration_minutes, bool) or not isinstance(duration_minutes, int):
        fail("duration_minutes", "must be an integer number of minutes")
    elif duration_minutes not in allowed:
        fail("duration_minutes", f"must be one of {allowed}")

    if not isinstance(reason, str) or not reason.strip():
        fail("reason", "is required")
    else:
        if len(reason.strip()) > MAX_REASON_LENGTH:
            fail("reason", f"must be at most {MAX_REASON_LENGTH} characters")
        if _has_control_chars(reason):
            fail("reason", "must not contain control characters")

    return violations


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class PrivilegeLifecycle:
    def __init__(
        self,
        store: RequestStore,
        issuer: SecureTokenIssuer,
        backend: PrivilegeBackend,
        channel: ApprovalChannel,
        *,
        allowed_durations: Iterable[int] = DEFAULT_DURATIONS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.issuer = issuer
        self.backend = backend
        self.channel = channel
        self.allowed_durations = list(allowed_durations)
        self.clock = clock
        self.scheduler: Optional["ExpirationScheduler"] = None

    def attach_scheduler(self, scheduler: "ExpirationScheduler") -> None:
        self.scheduler = scheduler

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------

    async def get(self, request_id: str) -> PrivilegeRequest:
        request = await self.store.find_by_id(request_id)
        if request is None:
            raise NotFoundError(request_id)
        return request

    async def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[PrivilegeRequest]:
        """All requests, newest first, optionally filtered by status and creation window."""
        start, end = _as_utc(start), _as_utc(end)
        requests = await self.store.list_all()
        if status is not None:
            requests = [r for r in requests if r.status == status]
        if start is not None:
            requests = [r for r in requests if r.created_at >= start]
        if end is not None:
            requests = [r for r in requests if r.created_at <= end]
        return sorted(requests, key=lambda r: r.created_at, reverse=True)

    async def list_pending(self) -> List[PrivilegeRequest]:
        """Requests still needing attention: undecided or approved but not started."""
        requests = await self.store.list_all()
        return sorted(
            (r for r in requests if r.status in PENDING_VIEW),
            key=lambda r: r.created_at,
            reverse=True,
        )

    async def is_elevated(self, identity: str) -> bool:
        return await self.backend.is_elevated(identity)

    # -------------------------------------------------------------------
    # submit
    # -------------------------------------------------------------------

    async def submit(
        self,
        requester_identity: str,
        display_name: str,
        duration_minutes: int,
        reason: str,
    ) -> SubmitResult:
        violations = validate_submission(
            requester_identity,
            display_name,
            duration_minutes,
            reason,
            self.allowed_durations,
        )
        if violations:
            logger.info("request.rejected", extra={"extra": {"violations": violations}})
            raise ValidationError(violations)

        request = PrivilegeRequest(
            id=generate_request_id(),
            requester_identity=requester_identity,
            display_name=display_name.strip(),
            reason=reason.strip(),
            requested_duration_minutes=duration_minutes,
            status=RequestStatus.pending,
            created_at=self.clock(),
        )
        await self.store.create(request)

        approve = self.issuer.issue(request.id, ApprovalAction.approve)
        deny = self.issuer.issue(request.id, ApprovalAction.deny)

        log_audit_event(
            AuditAction.request_submit,
            requester_identity,
            request_id=request.id,
            metadata={"duration_minutes": duration_minutes},
        )
        await self.channel.publish(NewRequestEvent.from_request(request, approve.token, deny.token))
        return SubmitResult(request=request, approve_token=approve, deny_token=deny)

    # -------------------------------------------------------------------
    # decide
    # -------------------------------------------------------------------

    async def decide(
        self,
        request_id: str,
        decision: ApprovalAction | str,
        approver_identity: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> PrivilegeRequest:
        decision = ApprovalAction(decision)
        decided_at = self.clock()

        def _apply(request: PrivilegeRequest) -> PrivilegeRequest:
            if request.status != RequestStatus.pending:
                raise InvalidTransitionError(request_id, request.status.value, decision.value)
            request.status = RequestStatus.approved if decision is ApprovalAction.approve else RequestStatus.denied
            request.decided_at = decided_at
            request.approver_identity = approver_identity
            request.decision_reason = reason
            return request

        try:
            updated = await self.store.update(request_id, _apply)
        except (InvalidTransitionError, NotFoundError) as exc:
            logger.warning(
                "request.decide_rejected",
                extra={"extra": {"request_id": request_id, "decision": decision.value, "error": exc.message}},
            )
            raise

        log_audit_event(
            AuditAction.request_approve if decision is ApprovalAction.approve else AuditAction.request_deny,
            approver_identity or "unknown",
            request_id=request_id,
            metadata={"reason": reason} if reason else None,
        )
        await self.channel.publish(
            RequestDecidedEvent(
                id=request_id,
                decision=decision,
                approver_identity=approver_identity,
                decided_at=decided_at,
            )
        )
        return updated

    async def decide_by_token(
        self,
        token: Optional[str],
        approver_identity: str = "approval-link",
        *,
        request_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> PrivilegeRequest:
        """Consume an approve/deny token and apply the decision it carries."""
        try:
            claims = self.issuer.validate(token, request_id=request_id)
        except TokenError as exc:
            log_audit_event(
                AuditAction.token_rejected,
                approver_identity,
                AuditStatus.denied,
                request_id=request_id,
                metadata={"code": exc.code},
            )
            raise
        return await self.decide(claims.request_id, claims.action, approver_identity, reason)

    # -------------------------------------------------------------------
    # activate
    # -------------------------------------------------------------------

    async def activate(self, request_id: str) -> PrivilegeRequest:
        """Grant the approved privilege and arm its revocation.

        Calling this again on an ``active`` request returns it unchanged.
        """
        request = await self.get(request_id)
        if request.status == RequestStatus.active:
            logger.info(f"Request {request_id} already active; activation is a no-op")
            return request
        if request.status != RequestStatus.approved:
            logger.warning(
                "request.activate_rejected",
                extra={"extra": {"request_id": request_id, "status": request.status.value}},
            )
            raise InvalidTransitionError(request_id, request.status.value, "activate")

        # BackendError propagates here and the request stays approved
        await self.backend.grant(request.requester_identity)

        activated_at = self.clock()
        transitioned = False

        def _apply(current: PrivilegeRequest) -> PrivilegeRequest:
            nonlocal transitioned
            if current.status == RequestStatus.active:
                return current
            if current.status != RequestStatus.approved:
                raise InvalidTransitionError(request_id, current.status.value, "activate")
            current.status = RequestStatus.active
            current.activated_at = activated_at
            current.expires_at = activated_at + current.duration
            transitioned = True
            return current

        try:
            updated = await self.store.update(request_id, _apply)
        except StoreError:
            logger.error(
                "request.activate_persist_failed",
                extra={"extra": {"request_id": request_id, "identity": request.requester_identity}},
            )
            await self._rollback_grant(request)
            raise

        if not transitioned:
            return updated

        log_audit_event(
            AuditAction.privilege_grant,
            updated.requester_identity,
            request_id=request_id,
            metadata={"expires_at": updated.expires_at.isoformat(), "duration_minutes": updated.requested_duration_minutes},
        )
        if self.scheduler is not None:
            self.scheduler.schedule(request_id, updated.expires_at)
        await self.channel.publish(RequestActivatedEvent(id=request_id, expires_at=updated.expires_at))
        return updated

    async def _rollback_grant(self, request: PrivilegeRequest) -> None:
        try:
            await self.backend.revoke(request.requester_identity)
        except Exception:
            logger.critical(
                "request.grant_rollback_failed",
                exc_info=True,
                extra={"extra": {"request_id": request.id, "identity": request.requester_identity}},
            )

    # -------------------------------------------------------------------
    # revoke
    # -------------------------------------------------------------------

    async def revoke(self, request_id: str, reason: str = "expired") -> Optional[PrivilegeRequest]:
        """Remove the privilege and mark the request expired.

        Returns ``None`` (and logs) when the request is not active, which is
        the normal outcome of a second, concurrent revoke. ``BackendError``
        propagates and the request stays active.
        """
        request = await self.get(request_id)
        if request.status != RequestStatus.active:
            logger.info(f"Request {request_id} is {request.status.value}; nothing to revoke")
            return None

        try:
            await self.backend.revoke(request.requester_identity)
        except Exception as exc:
            log_audit_event(
                AuditAction.privilege_revoke,
                "system",
                AuditStatus.failure,
                request_id=request_id,
                metadata={"reason": reason, "error": str(exc)},
            )
            raise

        revoked_at = self.clock()
        transitioned = False

        def _apply(current: PrivilegeRequest) -> PrivilegeRequest:
            nonlocal transitioned
            if current.status != RequestStatus.active:
                return current
            current.status = RequestStatus.expired
            current.revoked_at = revoked_at
            current.revoke_reason = reason
            transitioned = True
            return current

        updated = await self.store.update(request_id, _apply)
        if not transitioned:
            logger.info(f"Request {request_id} was revoked concurrently")
            return None

        if self.scheduler is not None:
            self.scheduler.cancel(request_id)
        log_audit_event(
            AuditAction.privilege_revoke,
            "system",
            request_id=request_id,
            metadata={"reason": reason, "identity": updated.requester_identity},
        )
        await self.channel.publish(RequestExpiredEvent(id=request_id))
        return updated

    async def warn_expiring(self, request_id: str, expires_at: datetime) -> None:
        """Advisory only: tell the requester their rights end soon."""
        log_audit_event(
            AuditAction.privilege_expiring,
            "system",
            request_id=request_id,
            metadata={"expires_at": expires_at.isoformat()},
        )
        await self.channel.publish(PrivilegesExpiringEvent(id=request_id, expires_at=expires_at))
