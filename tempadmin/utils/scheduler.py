"""Revocation timers for active grants.

Only the deadline (``expires_at`` on the stored request) is durable; the
timers themselves are plain asyncio tasks rebuilt from the store by
:meth:`ExpirationScheduler.recover_all` at start-up. Sleeps are chunked and
re-check the wall clock so a host that was suspended past a deadline revokes
as soon as it wakes rather than when the monotonic clock catches up.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Tuple

from tempadmin.errors import BackendError, NotFoundError, StoreError
from tempadmin.models import RequestStatus
from tempadmin.utils.lifecycle import PrivilegeLifecycle
from tempadmin.utils.store import RequestStore
from tempadmin.utils.utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RecoverySummary:
    revoked: List[str] = field(default_factory=list)
    scheduled: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ExpirationScheduler:
    def __init__(
        self,
        lifecycle: PrivilegeLifecycle,
        store: RequestStore,
        *,
        warning_lead: timedelta = timedelta(minutes=5),
        retry_initial: float = 30.0,
        retry_max: float = 300.0,
        max_sleep: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lifecycle = lifecycle
        self.store = store
        self.warning_lead = warning_lead
        self.retry_initial = retry_initial
        self.retry_max = retry_max
        self.max_sleep = max_sleep
        self.clock = clock
        self._timers: Dict[str, Tuple[datetime, asyncio.Task]] = {}
        lifecycle.attach_scheduler(self)

    # -------------------------------------------------------------------
    # Timer management
    # -------------------------------------------------------------------

    def schedule(self, request_id: str, expires_at: datetime) -> bool:
        """Arm revocation of ``request_id`` at ``expires_at``.

        Returns ``False`` when an identical timer is already armed.
        """
        existing = self._timers.get(request_id)
        if existing is not None and not existing[1].done():
            if existing[0] == expires_at:
                return False
            existing[1].cancel()

        task = asyncio.create_task(self._run_timer(request_id, expires_at), name=f"revoke:{request_id}")
        self._timers[request_id] = (expires_at, task)
        task.add_done_callback(lambda t, rid=request_id: self._forget(rid, t))
        logger.info(
            "scheduler.armed",
            extra={"extra": {"request_id": request_id, "expires_at": expires_at.isoformat()}},
        )
        return True

    def _forget(self, request_id: str, task: asyncio.Task) -> None:
        current = self._timers.get(request_id)
        if current is not None and current[1] is task:
            del self._timers[request_id]

    def cancel(self, request_id: str) -> bool:
        entry = self._timers.pop(request_id, None)
        if entry is None:
            return False
        # A timer revoking its own request must be allowed to finish
        if entry[1] is not asyncio.current_task():
            entry[1].cancel()
        return True

    def pending(self) -> Dict[str, datetime]:
        return {rid: expires_at for rid, (expires_at, task) in self._timers.items() if not task.done()}

    def is_scheduled(self, request_id: str) -> bool:
        return request_id in self.pending()

    async def shutdown(self) -> None:
        tasks = [task for _, task in self._timers.values()]
        self._timers.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # -------------------------------------------------------------------
    # Timer body
    # -------------------------------------------------------------------

    async def _sleep_until(self, deadline: datetime) -> None:
        while True:
            remaining = (deadline - self.clock()).total_seconds()
            if remaining <= 0:
                return
            await asyncio.sleep(min(remaining, self.max_sleep))

    async def _run_timer(self, request_id: str, expires_at: datetime) -> None:
        warn_at = expires_at - self.warning_lead
        if self.warning_lead > timedelta(0) and warn_at > self.clock():
            await self._sleep_until(warn_at)
            try:
                await self.lifecycle.warn_expiring(request_id, expires_at)
            except Exception:
                logger.warning("scheduler.warning_failed", exc_info=True, extra={"extra": {"request_id": request_id}})

        await self._sleep_until(expires_at)
        await self._revoke_with_retry(request_id)

    async def _revoke_with_retry(self, request_id: str) -> bool:
        delay = self.retry_initial
        attempt = 0
        while True:
            attempt += 1
            try:
                await self.lifecycle.revoke(request_id, reason="expired")
                return True
            except NotFoundError:
                logger.error(f"Request {request_id} disappeared before revocation")
                return False
            except (BackendError, StoreError) as exc:
                # Still active: privileges remain on the host until this succeeds
                logger.error(
                    "scheduler.revoke_failed",
                    extra={
                        "extra": {
                            "request_id": request_id,
                            "attempt": attempt,
                            "code": exc.code,
                            "error": exc.message,
                            "retry_in_seconds": delay,
                            "security_relevant": True,
                        }
                    },
                )
            except Exception:
                logger.exception("scheduler.revoke_crashed", extra={"extra": {"request_id": request_id, "attempt": attempt}})
            await asyncio.sleep(delay)
            delay = min(self.retry_max, delay * 2)

    # -------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------

    async def revoke_overdue(self) -> RecoverySummary:
        """Revoke every active request whose deadline has passed, right now."""
        summary = RecoverySummary()
        now = self.clock()
        for request in await self.store.list_all():
            if request.status != RequestStatus.active:
                continue
            if request.expires_at is not None and request.expires_at > now:
                continue
            if request.expires_at is None:
                logger.error(f"Active request {request.id} has no expiry; revoking")
            try:
                if await self.lifecycle.revoke(request.id, reason="expired_on_recovery") is not None:
                    summary.revoked.append(request.id)
            except (BackendError, StoreError) as exc:
                logger.error(
                    "scheduler.recovery_revoke_failed",
                    extra={
                        "extra": {
                            "request_id": request.id,
                            "code": exc.code,
                            "error": exc.message,
                            "security_relevant": True,
                        }
                    },
                )
                summary.failed.append(request.id)
        return summary

    async def recover_all(self) -> RecoverySummary:
        """Rebuild timers from the store. Run once before serving traffic.

        Overdue grants are revoked synchronously; failures get a retrying
        timer. Future deadlines are armed as normal timers.
        """
        summary = await self.revoke_overdue()
        for request_id in summary.failed:
            # Deadline already passed, so this fires and retries immediately
            self.schedule(request_id, self.clock())

        for request in await self.store.list_all():
            if request.status != RequestStatus.active or request.expires_at is None:
                continue
            if request.id in summary.failed:
                continue
            if self.schedule(request.id, request.expires_at):
                summary.scheduled.append(request.id)

        logger.info(
            "scheduler.recovered",
            extra={
                "extra": {
                    "revoked": len(summary.revoked),
                    "scheduled": len(summary.scheduled),
                    "failed": len(summary.failed),
                }
            },
        )
        return summary
