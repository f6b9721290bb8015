# tests/v1/test_allowed_ips_api.py
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from aegis_gateway.models import AllowedIp
from aegis_gateway.services.allowed_ip import AllowedIpStore
from aegis_gateway.services.audit_log import AuditEventType, AuditLog
from tests.conftest import PRINCIPAL_ID, PUBLIC_IP

BASE = "/api/v1/admin/allowed-ips"


@pytest.fixture()
def bootstrap_entry(db_session: Session) -> AllowedIp:
    """Allow the test client's own address so the admin routes are reachable."""
    return AllowedIpStore(db_session).add(PRINCIPAL_ID, PUBLIC_IP, "bootstrap")


def test_list_returns_callers_entries(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    response = public_client.get(BASE, headers=auth_headers)
    assert response.status_code == 200
    body = response.json()
    assert len(body) == 1
    assert body[0]["id"] == bootstrap_entry.id
    assert body[0]["description"] == "bootstrap"
    assert body[0]["is_active"] is True
    assert body[0]["last_used_at"] is not None


def test_add_entry(
    public_client: TestClient,
    auth_headers: dict[str, str],
    bootstrap_entry: AllowedIp,
    audit_log: AuditLog,
    mocker,
) -> None:
    record = mocker.patch.object(audit_log, "record")
    response = public_client.post(
        BASE, json={"ip_address": "2001:DB8::5", "description": "vpn"}, headers=auth_headers
    )
    assert response.status_code == 201
    body = response.json()
    assert body["ip_address"] == "2001:db8::5"
    assert body["description"] == "vpn"

    event_type, metadata, context = record.call_args.args
    assert event_type is AuditEventType.ALLOWLIST_CHANGED
    assert metadata["action"] == "add"
    assert context.principal_id == PRINCIPAL_ID
    assert context.actor_ip == PUBLIC_IP


@pytest.mark.parametrize("address", ["127.0.0.1", "256.0.0.1", "not-an-ip", "::1"])
def test_add_rejects_invalid_address(
    public_client: TestClient,
    auth_headers: dict[str, str],
    bootstrap_entry: AllowedIp,
    address: str,
) -> None:
    response = public_client.post(BASE, json={"ip_address": address}, headers=auth_headers)
    assert response.status_code == 400


def test_add_rejects_duplicate(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    response = public_client.post(BASE, json={"ip_address": PUBLIC_IP}, headers=auth_headers)
    assert response.status_code == 409


def test_add_rejects_malicious_description(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    response = public_client.post(
        BASE,
        json={"ip_address": "8.8.8.8", "description": "<script>alert(1)</script>"},
        headers=auth_headers,
    )
    assert response.status_code == 403
    assert response.json() == {"detail": "Request blocked by security policy"}


def test_update_entry(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    created = public_client.post(BASE, json={"ip_address": "8.8.8.8"}, headers=auth_headers)
    entry_id = created.json()["id"]

    response = public_client.patch(
        f"{BASE}/{entry_id}",
        json={"description": "dns", "ip_address": "8.8.4.4"},
        headers=auth_headers,
    )
    assert response.status_code == 200
    assert response.json()["ip_address"] == "8.8.4.4"
    assert response.json()["description"] == "dns"


def test_update_errors(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    created = public_client.post(BASE, json={"ip_address": "8.8.8.8"}, headers=auth_headers)
    entry_id = created.json()["id"]

    missing = public_client.patch(f"{BASE}/nope", json={"description": "x"}, headers=auth_headers)
    assert missing.status_code == 404
    invalid = public_client.patch(
        f"{BASE}/{entry_id}", json={"ip_address": "0.0.0.0"}, headers=auth_headers
    )
    assert invalid.status_code == 400
    duplicate = public_client.patch(
        f"{BASE}/{entry_id}", json={"ip_address": PUBLIC_IP}, headers=auth_headers
    )
    assert duplicate.status_code == 409


def test_delete_entry(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    created = public_client.post(BASE, json={"ip_address": "8.8.8.8"}, headers=auth_headers)
    entry_id = created.json()["id"]

    response = public_client.delete(f"{BASE}/{entry_id}", headers=auth_headers)
    assert response.status_code == 204
    again = public_client.delete(f"{BASE}/{entry_id}", headers=auth_headers)
    assert again.status_code == 404

    remaining = public_client.get(BASE, headers=auth_headers).json()
    assert [entry["ip_address"] for entry in remaining] == [PUBLIC_IP]


def test_stats(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    public_client.post(BASE, json={"ip_address": "8.8.8.8"}, headers=auth_headers)
    response = public_client.get(f"{BASE}/stats", headers=auth_headers)
    assert response.status_code == 200
    # The bootstrap entry was used by this very request.
    assert response.json() == {"total": 2, "active": 2, "recently_used": 1}


def test_removing_own_address_locks_out_further_requests(
    public_client: TestClient, auth_headers: dict[str, str], bootstrap_entry: AllowedIp
) -> None:
    response = public_client.delete(f"{BASE}/{bootstrap_entry.id}", headers=auth_headers)
    assert response.status_code == 204
    assert public_client.get(BASE, headers=auth_headers).status_code == 403
