from __future__ import annotations

"""Dashboard WebSocket at ``/ws``.

Frames are JSON objects ``{"type": ..., "data": {...}}``. A client must send
``authenticate`` with the approver key before anything else except ``ping``;
once authenticated it also receives every lifecycle event broadcast by the
:class:`~tempadmin.utils.channels.WebSocketHub`.
"""

import json
import logging
from typing import Any, Dict
from uuid import uuid4

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tempadmin.errors import InvalidTransitionError, NotFoundError, TempAdminError, TokenError
from tempadmin.models import ApprovalAction, AuditAction, AuditStatus
from tempadmin.utils.audit import log_audit_event
from tempadmin.utils.auth import DEFAULT_APPROVER, dev_bypass_allowed, verify_admin_key
from tempadmin.utils.backend import is_valid_identity
from tempadmin.utils.dependencies import Services

logger = logging.getLogger(__name__)

router = APIRouter(tags=["dashboard"])


class _Session:
    def __init__(self, websocket: WebSocket, services: Services):
        self.websocket = websocket
        self.services = services
        self.client_id = uuid4().hex[:8]
        self.authenticated = False
        self.approver = DEFAULT_APPROVER
        self.ip_address = websocket.client.host if websocket.client else None

    async def send(self, message: Dict[str, Any]) -> None:
        await self.services.hub.send(self.websocket, message)

    async def error(self, message: str) -> None:
        await self.send({"type": "error", "message": message})

    # -------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------

    async def handle(self, message: Dict[str, Any]) -> None:
        msg_type = message.get("type")
        data = message.get("data") or {}
        if not isinstance(data, dict):
            await self.error("Invalid message data")
            return

        if msg_type == "ping":
            await self.send({"type": "pong"})
            return
        if msg_type == "authenticate":
            await self.authenticate(data)
            return
        if msg_type not in {"get_pending_requests", "approve_request", "deny_request"}:
            await self.error(f"Unknown message type: {msg_type}")
            return
        if not self.authenticated:
            await self.error("Authentication required")
            return

        if msg_type == "get_pending_requests":
            pending = await self.services.lifecycle.list_pending()
            await self.send({"type": "pending_requests", "data": [r.model_dump(mode="json") for r in pending]})
        elif msg_type == "approve_request":
            await self.decide(ApprovalAction.approve, data)
        else:
            await self.decide(ApprovalAction.deny, data)

    async def authenticate(self, data: Dict[str, Any]) -> None:
        settings = self.services.settings
        identity = data.get("approver")
        if isinstance(identity, str) and is_valid_identity(identity):
            self.approver = identity

        if verify_admin_key(settings, data.get("key")) or dev_bypass_allowed(settings):
            self.authenticated = True
            self.services.hub.register(self.websocket)
            log_audit_event(AuditAction.auth_success, self.approver, ip_address=self.ip_address)
            await self.send({"type": "authenticated", "message": "Authentication successful"})
            logger.info(f"Dashboard client {self.client_id} authenticated")
            return

        log_audit_event(AuditAction.auth_failure, self.approver, AuditStatus.denied, ip_address=self.ip_address)
        await self.error("Authentication failed")

    async def decide(self, decision: ApprovalAction, data: Dict[str, Any]) -> None:
        request_id = data.get("requestId")
        if not isinstance(request_id, str) or not request_id:
            await self.error("requestId is required")
            return

        lifecycle = self.services.lifecycle
        token = data.get("token")
        reason = data.get("reason") if isinstance(data.get("reason"), str) else None
        try:
            if token:
                updated = await lifecycle.decide_by_token(
                    token,
                    self.approver,
                    request_id=request_id,
                    reason=reason,
                )
            else:
                updated = await lifecycle.decide(request_id, decision, self.approver, reason)
        except TokenError as exc:
            await self.error(exc.message)
            return
        except (NotFoundError, InvalidTransitionError) as exc:
            logger.warning("dashboard.decide_failed", extra={"extra": {"code": exc.code, "details": exc.details}})
            await self.error("Request failed")
            return

        reply = "request_approved" if updated.status.value == "approved" else "request_denied"
        await self.send({"type": reply, "data": {"requestId": updated.id, "success": True}})


@router.websocket("/ws")
async def dashboard_socket(websocket: WebSocket) -> None:
    services: Services = websocket.app.state.services
    await websocket.accept()
    session = _Session(websocket, services)
    await session.send({"type": "connected", "clientId": session.client_id})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await session.error("Invalid message format")
                continue
            if not isinstance(message, dict):
                await session.error("Invalid message format")
                continue
            try:
                await session.handle(message)
            except TempAdminError as exc:
                logger.error("dashboard.message_failed", extra={"extra": {"code": exc.code, "client_id": session.client_id}})
                await session.error("Request failed")
    except WebSocketDisconnect:
        logger.info(f"Dashboard client {session.client_id} disconnected")
    finally:
        services.hub.unregister(websocket)
