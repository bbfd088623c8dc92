"""Service container and FastAPI dependency providers.

All long-lived services are built once by :func:`build_services` (called from
``create_app`` or a cron entry-point) and reached through ``app.state`` so no
module holds mutable singletons.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from fastapi import Request
from starlette.requests import HTTPConnection

from tempadmin.settings import Settings
from tempadmin.utils.backend import PrivilegeBackend, build_backend
from tempadmin.utils.channels import (
    ApprovalChannel,
    BroadcastChannel,
    LoggingChannel,
    WebhookChannel,
    WebSocketHub,
)
from tempadmin.utils.lifecycle import PrivilegeLifecycle
from tempadmin.utils.scheduler import ExpirationScheduler
from tempadmin.utils.store import RequestStore
from tempadmin.utils.tokens import SecureTokenIssuer


@dataclass
class Services:
    settings: Settings
    store: RequestStore
    issuer: SecureTokenIssuer
    backend: PrivilegeBackend
    hub: WebSocketHub
    channel: BroadcastChannel
    lifecycle: PrivilegeLifecycle
    scheduler: ExpirationScheduler


def build_services(
    settings: Settings,
    *,
    backend: Optional[PrivilegeBackend] = None,
    channels: Iterable[ApprovalChannel] = (),
) -> Services:
    settings.validate()

    store = RequestStore(settings.requests_file)
    issuer = SecureTokenIssuer(
        settings.token_secret,
        ttl=timedelta(minutes=settings.token_expiration_minutes),
    )
    backend = backend or build_backend(settings)

    hub = WebSocketHub()
    channel = BroadcastChannel([LoggingChannel(), hub, *channels])
    if settings.webhook_url:
        channel.add(
            WebhookChannel(
                settings.webhook_url,
                app_server_url=settings.app_server_url,
                timeout=settings.webhook_timeout_seconds,
            )
        )

    lifecycle = PrivilegeLifecycle(
        store,
        issuer,
        backend,
        channel,
        allowed_durations=settings.allowed_durations,
    )
    scheduler = ExpirationScheduler(
        lifecycle,
        store,
        warning_lead=timedelta(minutes=settings.expiry_warning_minutes),
    )
    return Services(
        settings=settings,
        store=store,
        issuer=issuer,
        backend=backend,
        hub=hub,
        channel=channel,
        lifecycle=lifecycle,
        scheduler=scheduler,
    )


def _services_from(connection: HTTPConnection) -> Services:
    return connection.app.state.services


def get_services(request: Request) -> Services:
    return _services_from(request)


def get_lifecycle(request: Request) -> PrivilegeLifecycle:
    return _services_from(request).lifecycle
