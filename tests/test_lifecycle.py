from datetime import datetime, timedelta, timezone

import pytest

from tempadmin.errors import (
    BackendError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    TokenAlreadyUsedError,
    TokenMismatchError,
    ValidationError,
)
from tempadmin.models import ApprovalAction, RequestStatus
from tempadmin.utils.lifecycle import PrivilegeLifecycle, validate_submission
from tests.stubs import ExplodingChannel, FlakyBackend


async def _submit(lifecycle, identity="alice", duration=10):
    return await lifecycle.submit(identity, "Alice Example", duration, "Install the printer driver")


async def _active(lifecycle, identity="alice", duration=10):
    result = await _submit(lifecycle, identity, duration)
    await lifecycle.decide(result.request.id, ApprovalAction.approve, "bob")
    return await lifecycle.activate(result.request.id)


# ---------------------------------------------------------------------------
# Submission validation
# ---------------------------------------------------------------------------


def test_validation_reports_every_violation():
    violations = validate_submission("", "", 7, "")
    fields = {v["field"] for v in violations}
    assert fields == {"requester_identity", "display_name", "duration_minutes", "reason"}


@pytest.mark.parametrize("identity", ["alice; rm -rf /", "../etc", "al ice", "$(id)"])
def test_unsafe_identity_rejected(identity):
    violations = validate_submission(identity, "Alice", 10, "why")
    assert [v["field"] for v in violations] == ["requester_identity"]


def test_duration_must_be_allowed_integer():
    assert validate_submission("alice", "Alice", True, "why")[0]["field"] == "duration_minutes"
    assert validate_submission("alice", "Alice", "10", "why")[0]["field"] == "duration_minutes"
    assert validate_submission("alice", "Alice", 10, "why") == []


def test_display_name_limits():
    assert validate_submission("alice", "A" * 101, 10, "why")[0]["field"] == "display_name"
    assert validate_submission("alice", "Al\x00ice", 10, "why")[0]["field"] == "display_name"
    assert validate_submission("alice", "José Ñúñez-O'Brien", 10, "why") == []


# ---------------------------------------------------------------------------
# submit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_submit_persists_pending_and_publishes(lifecycle, channel, store):
    result = await _submit(lifecycle)

    stored = await store.find_by_id(result.request.id)
    assert stored.status == RequestStatus.pending
    assert stored.requested_duration_minutes == 10
    assert result.approve_token.token != result.deny_token.token
    assert channel.types() == ["new_request"]

    event = channel.events[0]
    assert event.approve_token == result.approve_token.token
    assert event.deny_token == result.deny_token.token


@pytest.mark.asyncio
async def test_invalid_submit_persists_nothing(lifecycle, channel, store):
    with pytest.raises(ValidationError) as excinfo:
        await lifecycle.submit("alice; rm -rf /", "", 3, "why")
    assert len(excinfo.value.violations) == 3
    assert await store.list_all() == []
    assert channel.events == []


@pytest.mark.asyncio
async def test_channel_failure_does_not_fail_submit(store, issuer, backend, clock):
    from tempadmin.utils.channels import BroadcastChannel

    lifecycle = PrivilegeLifecycle(store, issuer, backend, BroadcastChannel([ExplodingChannel()]), clock=clock)
    result = await _submit(lifecycle)
    assert (await store.find_by_id(result.request.id)) is not None


# ---------------------------------------------------------------------------
# decide
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_approve_then_second_decision_rejected(lifecycle, channel, clock):
    result = await _submit(lifecycle)
    approved = await lifecycle.decide(result.request.id, "approve", "bob")
    assert approved.status == RequestStatus.approved
    assert approved.decided_at == clock.now
    assert approved.approver_identity == "bob"

    with pytest.raises(InvalidTransitionError):
        await lifecycle.decide(result.request.id, "deny", "carol")
    assert channel.types() == ["new_request", "request_decided"]


@pytest.mark.asyncio
async def test_deny_records_reason(lifecycle):
    result = await _submit(lifecycle)
    denied = await lifecycle.decide(result.request.id, ApprovalAction.deny, "bob", "not today")
    assert denied.status == RequestStatus.denied
    assert denied.decision_reason == "not today"


@pytest.mark.asyncio
async def test_decide_unknown_request(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.decide("ghost", "approve", "bob")


@pytest.mark.asyncio
async def test_token_decision_consumes_token(lifecycle):
    result = await _submit(lifecycle)
    updated = await lifecycle.decide_by_token(result.deny_token.token)
    assert updated.status == RequestStatus.denied
    assert updated.approver_identity == "approval-link"

    with pytest.raises(TokenAlreadyUsedError):
        await lifecycle.decide_by_token(result.deny_token.token)


@pytest.mark.asyncio
async def test_sibling_token_after_decision(lifecycle):
    result = await _submit(lifecycle)
    await lifecycle.decide_by_token(result.approve_token.token)
    with pytest.raises(InvalidTransitionError):
        await lifecycle.decide_by_token(result.deny_token.token)


@pytest.mark.asyncio
async def test_token_for_other_request(lifecycle):
    first = await _submit(lifecycle)
    second = await _submit(lifecycle, identity="bob")
    with pytest.raises(TokenMismatchError):
        await lifecycle.decide_by_token(first.approve_token.token, request_id=second.request.id)
    assert (await lifecycle.get(second.request.id)).status == RequestStatus.pending


# ---------------------------------------------------------------------------
# activate
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_activate_grants_and_sets_expiry(lifecycle, backend, channel, clock):
    active = await _active(lifecycle, duration=20)
    assert active.status == RequestStatus.active
    assert active.activated_at == clock.now
    assert active.expires_at == clock.now + timedelta(minutes=20)
    assert backend.elevated == {"alice"}
    assert channel.types()[-1] == "request_activated"


@pytest.mark.asyncio
async def test_activate_twice_is_noop(lifecycle, backend):
    active = await _active(lifecycle)
    again = await lifecycle.activate(active.id)
    assert again.expires_at == active.expires_at
    assert backend.calls == [("grant", "alice")]


@pytest.mark.asyncio
@pytest.mark.parametrize("decision", [None, ApprovalAction.deny])
async def test_activate_requires_approval(lifecycle, backend, decision):
    result = await _submit(lifecycle)
    if decision is not None:
        await lifecycle.decide(result.request.id, decision, "bob")
    with pytest.raises(InvalidTransitionError):
        await lifecycle.activate(result.request.id)
    assert backend.calls == []


@pytest.mark.asyncio
async def test_grant_failure_leaves_request_approved(store, issuer, channel, clock):
    backend = FlakyBackend(grant_failures=1)
    lifecycle = PrivilegeLifecycle(store, issuer, backend, channel, clock=clock)
    result = await _submit(lifecycle)
    await lifecycle.decide(result.request.id, "approve", "bob")

    with pytest.raises(BackendError):
        await lifecycle.activate(result.request.id)
    assert (await lifecycle.get(result.request.id)).status == RequestStatus.approved

    assert (await lifecycle.activate(result.request.id)).status == RequestStatus.active


@pytest.mark.asyncio
async def test_persist_failure_rolls_back_grant(lifecycle, backend, monkeypatch):
    result = await _submit(lifecycle)
    await lifecycle.decide(result.request.id, "approve", "bob")

    async def _broken_update(*_, **__):
        raise StoreError("disk full")

    monkeypatch.setattr(lifecycle.store, "update", _broken_update)
    with pytest.raises(StoreError):
        await lifecycle.activate(result.request.id)
    assert backend.elevated == set()
    assert backend.calls == [("grant", "alice"), ("revoke", "alice")]


# ---------------------------------------------------------------------------
# revoke
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_revoke_expires_request(lifecycle, backend, channel, clock):
    active = await _active(lifecycle)
    clock.advance(minutes=10)
    revoked = await lifecycle.revoke(active.id)
    assert revoked.status == RequestStatus.expired
    assert revoked.revoked_at == clock.now
    assert revoked.revoke_reason == "expired"
    assert revoked.expires_at == active.expires_at
    assert backend.elevated == set()
    assert channel.types()[-1] == "request_expired"


@pytest.mark.asyncio
async def test_second_revoke_is_noop(lifecycle, backend):
    active = await _active(lifecycle)
    await lifecycle.revoke(active.id)
    assert await lifecycle.revoke(active.id) is None
    assert backend.calls.count(("revoke", "alice")) == 1


@pytest.mark.asyncio
async def test_revoke_failure_keeps_request_active(store, issuer, channel, clock):
    backend = FlakyBackend(revoke_failures=1)
    lifecycle = PrivilegeLifecycle(store, issuer, backend, channel, clock=clock)
    active = await _active(lifecycle)

    with pytest.raises(BackendError):
        await lifecycle.revoke(active.id)
    assert (await lifecycle.get(active.id)).status == RequestStatus.active
    assert backend.elevated == {"alice"}

    assert (await lifecycle.revoke(active.id)).status == RequestStatus.expired


@pytest.mark.asyncio
async def test_revoke_unknown_request(lifecycle):
    with pytest.raises(NotFoundError):
        await lifecycle.revoke("ghost")


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_listing_filters_and_orders(lifecycle, clock):
    first = await _submit(lifecycle)
    clock.advance(minutes=1)
    second = await _submit(lifecycle, identity="bob")
    clock.advance(minutes=1)
    third = await _submit(lifecycle, identity="carol")
    await lifecycle.decide(first.request.id, "approve", "dave")
    await lifecycle.decide(third.request.id, "deny", "dave")

    assert [r.id for r in await lifecycle.list_requests()] == [
        third.request.id,
        second.request.id,
        first.request.id,
    ]
    denied = await lifecycle.list_requests(status=RequestStatus.denied)
    assert [r.id for r in denied] == [third.request.id]
    pending = await lifecycle.list_pending()
    assert [r.id for r in pending] == [second.request.id, first.request.id]


@pytest.mark.asyncio
async def test_listing_window_accepts_naive_and_aware_bounds(lifecycle, clock):
    morning = await _submit(lifecycle)
    clock.advance(hours=2)
    noon = await _submit(lifecycle, identity="bob")

    naive_start = datetime(2026, 1, 5, 10, 0)
    assert [r.id for r in await lifecycle.list_requests(start=naive_start)] == [noon.request.id]

    aware_end = datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert [r.id for r in await lifecycle.list_requests(end=aware_end)] == [morning.request.id]


def test_identity_with_leading_dash_rejected():
    violations = validate_submission("--help", "Alice", 10, "why")
    assert violations == [{"field": "requester_identity", "message": "must not start with a dash"}]
