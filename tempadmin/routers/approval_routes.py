"""Approval-link endpoints used by approvers outside the dashboard.

``GET /approve?token=…`` is the link embedded in notifications and renders a
small HTML page. ``POST /v1/webhooks/decision`` accepts the same token from an
automation callback and answers in JSON. Neither leaks token contents or
internal state: each failure maps to a fixed, terse message.
"""

from datetime import datetime, timezone
from html import escape
from typing import Dict, Tuple

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import HTMLResponse

from tempadmin.errors import InvalidTransitionError, NotFoundError, TokenError
from tempadmin.main import limiter
from tempadmin.models import DecisionResponse, RequestStatus, TokenDecisionRequest
from tempadmin.settings import APPROVAL_RATE_LIMIT
from tempadmin.utils.dependencies import get_lifecycle
from tempadmin.utils.lifecycle import PrivilegeLifecycle
from tempadmin.utils.logger import logger

router = APIRouter(tags=["approval"])

# code → (HTTP status, page message)
TOKEN_ERROR_PAGES: Dict[str, Tuple[int, str]] = {
    "TOKEN_MISSING": (status.HTTP_400_BAD_REQUEST, "No approval token was provided."),
    "TOKEN_MALFORMED": (status.HTTP_400_BAD_REQUEST, "This approval link is malformed."),
    "TOKEN_SIGNATURE_INVALID": (status.HTTP_400_BAD_REQUEST, "This approval link is not valid."),
    "TOKEN_UNKNOWN": (status.HTTP_400_BAD_REQUEST, "This approval link is not recognised. It may predate a service restart."),
    "TOKEN_MISMATCH": (status.HTTP_400_BAD_REQUEST, "This approval link does not belong to that request."),
    "TOKEN_EXPIRED": (status.HTTP_410_GONE, "This approval link has expired."),
    "TOKEN_ALREADY_USED": (status.HTTP_410_GONE, "This approval link has already been used."),
}
GENERIC_FAILURE = (status.HTTP_409_CONFLICT, "The request could not be processed. It may already have been decided.")

_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>{title}</title>
<style>
body {{ font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", sans-serif; background: #f4f5f7; margin: 0; }}
main {{ max-width: 480px; margin: 15vh auto; background: #fff; border-radius: 8px; padding: 32px; box-shadow: 0 2px 8px rgba(0,0,0,.08); }}
h1 {{ font-size: 1.4rem; color: {colour}; margin-top: 0; }}
p {{ color: #333; line-height: 1.5; }}
</style>
</head>
<body><main><h1>{title}</h1><p>{message}</p></main></body>
</html>
"""


def render_page(title: str, message: str, *, ok: bool, status_code: int = status.HTTP_200_OK) -> HTMLResponse:
    body = _PAGE.format(
        title=escape(title),
        message=escape(message),
        colour="#1a7f37" if ok else "#b42318",
    )
    return HTMLResponse(
        content=body,
        status_code=status_code,
        headers={"Cache-Control": "no-store", "Referrer-Policy": "no-referrer"},
    )


def token_error_status(exc: TokenError) -> Tuple[int, str]:
    return TOKEN_ERROR_PAGES.get(exc.code, (status.HTTP_400_BAD_REQUEST, "This approval link is not valid."))


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@router.get("/health")
async def health() -> Dict[str, str]:
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


# ---------------------------------------------------------------------------
# Approval link
# ---------------------------------------------------------------------------


@router.get("/approve", response_class=HTMLResponse)
@limiter.limit(APPROVAL_RATE_LIMIT)
async def approve_via_link(
    request: Request,
    token: str | None = None,
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> HTMLResponse:
    ip_address = _client_ip(request)
    try:
        updated = await lifecycle.decide_by_token(token, approver_identity="approval-link")
    except TokenError as exc:
        logger.warning("approval_link.token_rejected", extra={"extra": {"code": exc.code, "ip_address": ip_address}})
        status_code, message = token_error_status(exc)
        return render_page("Link not accepted", message, ok=False, status_code=status_code)
    except (NotFoundError, InvalidTransitionError) as exc:
        logger.warning(
            "approval_link.request_failed",
            extra={"extra": {"code": exc.code, "details": exc.details, "ip_address": ip_address}},
        )
        status_code, message = GENERIC_FAILURE
        return render_page("Request failed", message, ok=False, status_code=status_code)

    logger.info(
        "approval_link.decided",
        extra={"extra": {"request_id": updated.id, "status": updated.status.value, "ip_address": ip_address}},
    )
    if updated.status == RequestStatus.approved:
        return render_page(
            "Request approved",
            f"Admin rights for {updated.display_name} have been approved. "
            "They can now start their session.",
            ok=True,
        )
    return render_page(
        "Request denied",
        f"The admin rights request from {updated.display_name} has been denied.",
        ok=True,
    )


# ---------------------------------------------------------------------------
# Webhook callback
# ---------------------------------------------------------------------------


@router.post("/v1/webhooks/decision", response_model=DecisionResponse)
@limiter.limit(APPROVAL_RATE_LIMIT)
async def decide_via_webhook(
    request: Request,
    body: TokenDecisionRequest,
    lifecycle: PrivilegeLifecycle = Depends(get_lifecycle),
) -> DecisionResponse:
    try:
        updated = await lifecycle.decide_by_token(body.token, approver_identity="webhook")
    except TokenError as exc:
        status_code, _ = token_error_status(exc)
        raise HTTPException(status_code=status_code, detail=exc.code.lower())
    return DecisionResponse(id=updated.id, status=updated.status, decided_at=updated.decided_at)
