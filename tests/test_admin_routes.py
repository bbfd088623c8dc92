import pytest
from fastapi import status
from starlette.testclient import TestClient

from tempadmin.main import create_app
from tempadmin.settings import Settings
from tempadmin.utils.auth import hash_admin_key, verify_admin_key
from tests.conftest import SECRET, VALID_SUBMISSION

ADMIN_KEY = "approver-key-for-tests"


@pytest.fixture(scope="module")
def admin_key_hash() -> str:
    return hash_admin_key(ADMIN_KEY)


@pytest.fixture()
def secured_client(tmp_path, backend, channel, admin_key_hash):
    settings = Settings(
        token_secret=SECRET,
        app_env="development",
        data_dir=tmp_path,
        privilege_backend="memory",
        admin_key_hash=admin_key_hash,
    )
    with TestClient(create_app(settings, backend=backend, channels=[channel])) as client:
        yield client


def _headers(identity: str = "bob", key: str = ADMIN_KEY) -> dict:
    return {"Authorization": f"Bearer {key}", "X-Approver-Identity": identity}


def _submit(client) -> str:
    return client.post("/v1/requests", json=VALID_SUBMISSION).json()["request"]["id"]


def test_verify_admin_key(admin_key_hash):
    settings = Settings(token_secret=SECRET, admin_key_hash=admin_key_hash)
    assert verify_admin_key(settings, ADMIN_KEY)
    assert not verify_admin_key(settings, "wrong")
    assert not verify_admin_key(settings, None)
    assert not verify_admin_key(Settings(token_secret=SECRET, admin_key_hash="not-a-hash"), ADMIN_KEY)


def test_requires_authorization(secured_client):
    resp = secured_client.get("/v1/admin/requests")
    assert resp.status_code == status.HTTP_401_UNAUTHORIZED
    assert resp.json() == {"detail": "missing_authorization"}


def test_rejects_wrong_key(secured_client):
    resp = secured_client.get("/v1/admin/requests", headers=_headers(key="nope"))
    assert resp.status_code == status.HTTP_401_UNAUTHORIZED
    assert resp.json() == {"detail": "invalid_credentials"}


def test_dev_bypass_without_hash(api_client):
    assert api_client.get("/v1/admin/requests/pending").status_code == 200


def test_approve_records_approver(secured_client):
    request_id = _submit(secured_client)
    resp = secured_client.post(f"/v1/admin/requests/{request_id}/approve", headers=_headers("bob"))
    assert resp.status_code == 200
    assert resp.json()["status"] == "approved"

    stored = secured_client.get(f"/v1/requests/{request_id}").json()
    assert stored["approver_identity"] == "bob"

    again = secured_client.post(f"/v1/admin/requests/{request_id}/approve", headers=_headers("carol"))
    assert again.status_code == status.HTTP_409_CONFLICT


def test_deny_with_reason(secured_client):
    request_id = _submit(secured_client)
    resp = secured_client.post(
        f"/v1/admin/requests/{request_id}/deny",
        json={"reason": "use the shared laptop"},
        headers=_headers(),
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "denied"
    assert secured_client.get(f"/v1/requests/{request_id}").json()["decision_reason"] == "use the shared laptop"


def test_early_revoke(secured_client, backend):
    request_id = _submit(secured_client)
    secured_client.post(f"/v1/admin/requests/{request_id}/approve", headers=_headers())
    secured_client.post(f"/v1/requests/{request_id}/activate")

    scheduler = secured_client.get("/v1/admin/scheduler", headers=_headers()).json()
    assert [t["request_id"] for t in scheduler["timers"]] == [request_id]

    resp = secured_client.post(f"/v1/admin/requests/{request_id}/revoke", json={}, headers=_headers())
    assert resp.status_code == 200
    assert resp.json()["details"]["status"] == "expired"
    assert backend.elevated == set()
    assert secured_client.get("/v1/admin/scheduler", headers=_headers()).json()["timers"] == []

    again = secured_client.post(f"/v1/admin/requests/{request_id}/revoke", json={}, headers=_headers())
    assert again.status_code == status.HTTP_409_CONFLICT
    assert again.json() == {"detail": "request_not_active"}


def test_token_stats(secured_client):
    _submit(secured_client)
    stats = secured_client.get("/v1/admin/tokens/stats", headers=_headers()).json()
    assert stats == {"total": 2, "active": 2, "expired": 0, "used": 0}
