import json
from datetime import datetime, timezone

import httpx
import pytest

from tempadmin.models import ApprovalAction
from tempadmin.models.events import NewRequestEvent, RequestDecidedEvent, RequestExpiredEvent
from tempadmin.utils.channels import BroadcastChannel, WebhookChannel
from tests.stubs import ExplodingChannel, RecordingChannel

NOW = datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)


def _new_request_event() -> NewRequestEvent:
    return NewRequestEvent(
        id="req1",
        requester_identity="alice",
        display_name="Alice Example",
        duration_minutes=10,
        reason="driver install",
        created_at=NOW,
        approve_token="tok+approve/1",
        deny_token="tok-deny",
    )


def test_events_serialize_camel_case():
    message = RequestDecidedEvent(
        id="req1",
        decision=ApprovalAction.approve,
        approver_identity="bob",
        decided_at=NOW,
    ).to_message()
    assert message["type"] == "request_decided"
    assert message["approverIdentity"] == "bob"
    assert message["decidedAt"].startswith("2026-01-05T09:30:00")


@pytest.mark.asyncio
async def test_webhook_posts_payload_with_links():
    received = []

    def _handler(request: httpx.Request) -> httpx.Response:
        received.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"ok": True})

    channel = WebhookChannel(
        "https://hook.example.com/abc",
        app_server_url="https://admin.example.com/",
        transport=httpx.MockTransport(_handler),
    )
    await channel.publish(_new_request_event())

    url, body = received[0]
    assert url == "https://hook.example.com/abc"
    assert body["type"] == "new_request"
    assert body["displayName"] == "Alice Example"
    assert body["approveUrl"] == "https://admin.example.com/approve?token=tok%2Bapprove%2F1"
    assert body["denyUrl"] == "https://admin.example.com/approve?token=tok-deny"


@pytest.mark.asyncio
async def test_webhook_error_status_raises():
    channel = WebhookChannel(
        "https://hook.example.com/abc",
        app_server_url="http://localhost:3000",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    with pytest.raises(httpx.HTTPStatusError):
        await channel.publish(RequestExpiredEvent(id="req1"))


@pytest.mark.asyncio
async def test_broadcast_isolates_failing_channel():
    recorder = RecordingChannel()
    broadcast = BroadcastChannel([ExplodingChannel()])
    broadcast.add(recorder)

    await broadcast.publish(RequestExpiredEvent(id="req1"))
    assert recorder.types() == ["request_expired"]
