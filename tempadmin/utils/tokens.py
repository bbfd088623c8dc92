"""Single-use signed approval tokens.

A token is the URL-safe base64 encoding (padding stripped) of::

    <request_id>:<action>:<expires_at_ms>:<hmac_sha256_hex>

where the HMAC is computed over ``<request_id>:<action>:<expires_at_ms>`` with
the server-held secret. Consumption and expiry state lives in process memory
only, so tokens minted before a restart come back as ``TOKEN_UNKNOWN``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import heapq
import hmac
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from tempadmin.errors import (
    ConfigError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenMalformedError,
    TokenMismatchError,
    TokenMissingError,
    TokenSignatureError,
    TokenUnknownError,
)
from tempadmin.models import ApprovalAction
from tempadmin.settings import MIN_SECRET_LENGTH
from tempadmin.utils.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL = timedelta(minutes=15)


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenClaims:
    request_id: str
    action: ApprovalAction


@dataclass
class _TokenRecord:
    request_id: str
    action: ApprovalAction
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False
    consumed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------


def _b64encode(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")


def _b64decode(token: str) -> str:
    padding = "=" * (-len(token) % 4)
    return base64.urlsafe_b64decode(token + padding).decode("utf-8")


def _to_ms(moment: datetime) -> int:
    return int(moment.timestamp() * 1000)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


class SecureTokenIssuer:
    """Mints and validates approve/deny tokens bound to a request id."""

    def __init__(
        self,
        secret: str,
        *,
        ttl: timedelta = DEFAULT_TOKEN_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ConfigError([f"TOKEN_SECRET must be at least {MIN_SECRET_LENGTH} characters"])
        self._secret = secret.encode()
        self._ttl = ttl
        self._clock = clock
        self._tokens: Dict[str, _TokenRecord] = {}
        # (expires_at, token) min-heap so the sweep only touches expired entries
        self._expiry_heap: List[Tuple[datetime, str]] = []

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def _sign(self, payload: str) -> str:
        return hmac.new(self._secret, payload.encode(), hashlib.sha256).hexdigest()

    # -------------------------------------------------------------------
    # Issue
    # -------------------------------------------------------------------

    def issue(self, request_id: str, action: ApprovalAction | str) -> IssuedToken:
        action = ApprovalAction(action)
        now = self._clock()
        expires_ms = _to_ms(now + self._ttl)
        payload = f"{request_id}:{action.value}:{expires_ms}"
        token = _b64encode(f"{payload}:{self._sign(payload)}")
        expires_at = _from_ms(expires_ms)

        self._tokens[token] = _TokenRecord(
            request_id=request_id,
            action=action,
            issued_at=now,
            expires_at=expires_at,
        )
        heapq.heappush(self._expiry_heap, (expires_at, token))
        return IssuedToken(token=token, expires_at=expires_at)

    # -------------------------------------------------------------------
    # Validate
    # -------------------------------------------------------------------

    def _decode(self, token: str) -> Tuple[str, str, int, str]:
        try:
            decoded = _b64decode(token)
        except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
            raise TokenMalformedError() from exc

        parts = decoded.split(":")
        if len(parts) != 4:
            raise TokenMalformedError()
        request_id, action, expires_raw, signature = parts
        # str.isdigit also accepts non-ASCII digits that int() rejects
        if not (expires_raw.isascii() and expires_raw.isdigit()):
            raise TokenMalformedError()
        if not request_id or action not in {a.value for a in ApprovalAction}:
            raise TokenMalformedError()
        return request_id, action, int(expires_raw), signature

    def validate(self, token: Optional[str], *, request_id: Optional[str] = None) -> TokenClaims:
        """Validate ``token`` and mark it consumed.

        Raises a :class:`~tempadmin.errors.TokenError` subtype. When
        ``request_id`` is given, a token bound to another request is rejected
        with ``TOKEN_MISMATCH`` and is *not* consumed.
        """
        if not token:
            raise TokenMissingError()

        token_request_id, action, expires_ms, signature = self._decode(token)

        payload = f"{token_request_id}:{action}:{expires_ms}"
        if not hmac.compare_digest(signature, self._sign(payload)):
            logger.warning("token.signature_invalid", extra={"extra": {"request_id": token_request_id}})
            raise TokenSignatureError()

        now = self._clock()
        if _from_ms(expires_ms) <= now:
            self._tokens.pop(token, None)
            raise TokenExpiredError()

        record = self._tokens.get(token)
        if record is None:
            raise TokenUnknownError()
        if record.consumed:
            raise TokenAlreadyUsedError()
        if record.request_id != token_request_id or record.action.value != action:
            # Signed payload and tracked metadata disagree
            raise TokenMalformedError()
        if request_id is not None and request_id != record.request_id:
            raise TokenMismatchError()

        record.consumed = True
        record.consumed_at = now
        return TokenClaims(request_id=record.request_id, action=record.action)

    # -------------------------------------------------------------------
    # Housekeeping
    # -------------------------------------------------------------------

    def sweep(self) -> int:
        """Drop every tracked token whose expiry has passed. Returns the count."""
        now = self._clock()
        removed = 0
        while self._expiry_heap and self._expiry_heap[0][0] <= now:
            _, token = heapq.heappop(self._expiry_heap)
            if self._tokens.pop(token, None) is not None:
                removed += 1
        if removed:
            logger.info(f"Swept {removed} expired approval token(s)")
        return removed

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep forever on a fixed interval; cancel the task to stop."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                self.sweep()
            except Exception:  # pragma: no cover
                logger.exception("token.sweep_failed")

    def stats(self) -> Dict[str, int]:
        now = self._clock()
        total = len(self._tokens)
        expired = sum(1 for r in self._tokens.values() if r.expires_at <= now)
        used = sum(1 for r in self._tokens.values() if r.consumed)
        active = sum(1 for r in self._tokens.values() if not r.consumed and r.expires_at > now)
        return {"total": total, "active": active, "expired": expired, "used": used}
