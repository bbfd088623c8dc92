"""Error taxonomy for the privilege lifecycle.

Every error carries a human message, a stable machine ``code`` and an optional
``details`` dict. Routers translate these into HTTP responses in
``tempadmin.main``; the message and details are for logs, never for clients.
"""

from __future__ import annotations

from typing import Any, Optional


class TempAdminError(Exception):
    """Base class for all service errors."""

    def __init__(
        self,
        message: str,
        code: str = "TEMPADMIN_ERROR",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigError(TempAdminError):
    """Raised when configuration is missing or unsafe."""

    def __init__(self, problems: list[str]):
        super().__init__(
            "Configuration invalid: " + "; ".join(problems),
            "CONFIG_INVALID",
            {"problems": problems},
        )
        self.problems = problems


class ValidationError(TempAdminError):
    """Raised when a submission violates one or more field constraints.

    ``violations`` lists *every* failed constraint as ``{"field", "message"}``
    dicts so the caller can fix them all in one go.
    """

    def __init__(self, violations: list[dict[str, str]]):
        super().__init__(
            f"{len(violations)} validation error(s)",
            "VALIDATION_FAILED",
            {"violations": violations},
        )
        self.violations = violations


class NotFoundError(TempAdminError):
    def __init__(self, request_id: str):
        super().__init__(f"Request {request_id} not found", "REQUEST_NOT_FOUND", {"request_id": request_id})
        self.request_id = request_id


class InvalidTransitionError(TempAdminError):
    """Raised when a transition is attempted from a state that does not allow it."""

    def __init__(self, request_id: str, current: str, attempted: str):
        super().__init__(
            f"Cannot {attempted} request {request_id} in status {current}",
            "INVALID_TRANSITION",
            {"request_id": request_id, "current": current, "attempted": attempted},
        )
        self.request_id = request_id
        self.current = current
        self.attempted = attempted


class BackendError(TempAdminError):
    """Raised when the OS privilege backend fails to grant or revoke."""

    def __init__(self, message: str, operation: str, identity: str, details: Optional[dict[str, Any]] = None):
        merged = {"operation": operation, "identity": identity}
        merged.update(details or {})
        super().__init__(message, "BACKEND_FAILED", merged)
        self.operation = operation
        self.identity = identity


class StoreError(TempAdminError):
    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message, "STORE_FAILED", details)


# ---------------------------------------------------------------------------
# Approval-token errors
# ---------------------------------------------------------------------------


class TokenError(TempAdminError):
    """Base class for approval-token failures. ``code`` identifies the subtype."""

    code_value = "TOKEN_INVALID"
    default_message = "Invalid token"

    def __init__(self, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        super().__init__(message or self.default_message, self.code_value, details)


class TokenMissingError(TokenError):
    code_value = "TOKEN_MISSING"
    default_message = "Token is required"


class TokenMalformedError(TokenError):
    code_value = "TOKEN_MALFORMED"
    default_message = "Token is malformed"


class TokenSignatureError(TokenError):
    code_value = "TOKEN_SIGNATURE_INVALID"
    default_message = "Token signature is invalid"


class TokenUnknownError(TokenError):
    code_value = "TOKEN_UNKNOWN"
    default_message = "Token is not recognised"


class TokenExpiredError(TokenError):
    code_value = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenAlreadyUsedError(TokenError):
    code_value = "TOKEN_ALREADY_USED"
    default_message = "Token has already been used"


class TokenMismatchError(TokenError):
    code_value = "TOKEN_MISMATCH"
    default_message = "Token does not belong to this request"
