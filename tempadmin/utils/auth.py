"""Approver authentication for the dashboard surfaces.

The dashboard's own login flow (password, 2FA) lives outside this service; it
hands the approver a shared key whose bcrypt hash is configured as
``ADMIN_KEY_HASH``. HTTP routes send it as ``Authorization: Bearer <key>``,
WebSocket clients in an ``authenticate`` message.
"""

from __future__ import annotations

from hashlib import sha256
from typing import Optional

import bcrypt
from fastapi import Depends, Header, HTTPException, Request, status

from tempadmin.models import ApproverContext, AuditAction, AuditStatus
from tempadmin.settings import Settings
from tempadmin.utils.audit import log_audit_event
from tempadmin.utils.backend import is_valid_identity
from tempadmin.utils.dependencies import Services, get_services

DEFAULT_APPROVER = "admin"


def hash_admin_key(key: str) -> str:
    """Return bcrypt(sha256(key)); bcrypt alone truncates keys at 72 bytes."""
    digest = sha256(key.encode()).digest()
    return bcrypt.hashpw(digest, bcrypt.gensalt()).decode()


def verify_admin_key(settings: Settings, key: Optional[str]) -> bool:
    if not key or not settings.admin_key_hash:
        return False
    digest = sha256(key.encode()).digest()
    try:
        return bcrypt.checkpw(digest, settings.admin_key_hash.encode())
    except ValueError:
        # Malformed hash in configuration
        return False


def dev_bypass_allowed(settings: Settings) -> bool:
    return settings.app_env == "development" and not settings.admin_key_hash


def _approver_identity(raw: Optional[str]) -> str:
    if raw and is_valid_identity(raw):
        return raw
    return DEFAULT_APPROVER


async def require_approver(
    request: Request,
    authorization: str | None = Header(None),
    x_approver_identity: str | None = Header(None),
    services: Services = Depends(get_services),
) -> ApproverContext:
    settings = services.settings
    identity = _approver_identity(x_approver_identity)
    client_ip = request.client.host if request.client else None

    # Development bypass
    if authorization is None and dev_bypass_allowed(settings):
        return ApproverContext(identity=identity, via="dev_bypass")

    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")

    key = authorization.split(" ")[-1]
    if not verify_admin_key(settings, key):
        log_audit_event(AuditAction.auth_failure, identity, AuditStatus.denied, ip_address=client_ip)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_credentials")

    return ApproverContext(identity=identity)
