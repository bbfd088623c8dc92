from __future__ import annotations

"""Cron job: revoke every active grant whose ``expires_at`` has passed.

   The running service already does this on its own timers; this one-shot pass
   is the remediation path when the service is down or a revocation kept
   failing. It is *idempotent* and safe to run every minute, e.g. from launchd
   or cron::

       python -m tempadmin.cron.revoke_enforcer

   It exits with status-code 0 when nothing is left overdue, 1 otherwise.
"""

import asyncio
import sys

from tempadmin.settings import Settings
from tempadmin.utils.dependencies import build_services
from tempadmin.utils.logger import configure_logging, logger
from tempadmin.utils.scheduler import RecoverySummary


async def _run(settings: Settings | None = None) -> RecoverySummary:
    services = build_services(settings or Settings.from_env())
    summary = await services.scheduler.revoke_overdue()
    logger.info(
        "cron.revoke_enforcer",
        extra={"extra": {"revoked": summary.revoked, "failed": summary.failed}},
    )
    return summary


if __name__ == "__main__":
    configure_logging()
    result = asyncio.run(_run())
    sys.exit(1 if result.failed else 0)
