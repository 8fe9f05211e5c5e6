"""API tests for the record, counter and audit log routes."""

import pytest
from fastapi.testclient import TestClient

from auth import create_access_token
from server import app
from services import build_services, get_services


@pytest.fixture
def services(fake_client, fake_db):
    return build_services(fake_client, fake_db)


@pytest.fixture
def client(services):
    app.dependency_overrides[get_services] = lambda: services
    yield TestClient(app)
    app.dependency_overrides.clear()


def _headers(user):
    token = create_access_token({"user_id": str(user["_id"]), "username": user["username"]})
    return {"Authorization": f"Bearer {token}"}


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_requests_without_token_are_rejected(client):
    response = client.get("/api/banks")

    assert response.status_code in (401, 403)


def test_create_bank_returns_code(client, fake_db, admin_user):
    response = client.post(
        "/api/banks",
        json={"name": "Bank Central", "branch": "Jakarta"},
        headers={**_headers(admin_user), "sec-ch-ua-platform": '"Windows"', "sec-ch-ua-mobile": "?0"}
    )

    assert response.status_code == 201
    assert response.json()["code"] == "BANK/001"
    log = fake_db.audit_logs.documents[0]
    assert log["metadata"]["os"] == "Windows"
    assert log["metadata"]["device"] == "desktop"


def test_create_rejects_unknown_fields(client, admin_user):
    response = client.post("/api/banks", json={"name": "Bank Central", "rating": 5}, headers=_headers(admin_user))

    assert response.status_code == 422


def test_duplicate_name_returns_field_errors(client, admin_user):
    client.post("/api/owners", json={"name": "Family Trust"}, headers=_headers(admin_user))

    response = client.post("/api/owners", json={"name": "Family Trust"}, headers=_headers(admin_user))

    assert response.status_code == 422
    assert response.json()["detail"]["errors"] == {"name": ["The name has already been taken."]}


def test_list_and_detail(client, admin_user):
    created = client.post(
        "/api/bonds", json={"transaction_date": "2024-03-01", "series": "FR0091"}, headers=_headers(admin_user)
    ).json()

    listing = client.get("/api/bonds", headers=_headers(admin_user))
    detail = client.get(f"/api/bonds/{created['inserted_id']}", headers=_headers(admin_user))

    assert [record["form_number"] for record in listing.json()["data"]] == ["BOND/00001/202403"]
    assert detail.json()["_id"] == created["inserted_id"]
    assert detail.json()["status"] == "active"


def test_update_without_changes_returns_400(client, admin_user):
    created = client.post("/api/brokers", json={"name": "Mirae"}, headers=_headers(admin_user)).json()

    response = client.patch(
        f"/api/brokers/{created['inserted_id']}", json={"name": "Mirae"}, headers=_headers(admin_user)
    )

    assert response.status_code == 400
    assert response.json()["detail"].startswith("No changes detected")


def test_forbidden_action_returns_403(client, clerk_user):
    response = client.post("/api/bonds", json={"transaction_date": "2024-03-01"}, headers=_headers(clerk_user))

    assert response.status_code == 403


def test_workflows_a_module_lacks_are_not_routed(client, admin_user):
    response = client.post("/api/banks/draft", json={"name": "Bank Central"}, headers=_headers(admin_user))

    assert response.status_code in (404, 405)


def test_counter_preview(client, admin_user):
    response = client.get("/api/counters/stocks/preview", params={"date": "2024-07-09"}, headers=_headers(admin_user))

    assert response.status_code == 200
    assert response.json() == {"name": "stocks", "code": "STOCK/00001/202407"}


def test_counter_preview_errors(client, admin_user):
    missing = client.get("/api/counters/unknown/preview", headers=_headers(admin_user))
    bad_date = client.get("/api/counters/stocks/preview", params={"date": "July"}, headers=_headers(admin_user))

    assert missing.status_code == 404
    assert bad_date.status_code == 400


def test_audit_logs_by_operation(client, admin_user):
    created = client.post("/api/banks", json={"name": "Bank Central"}, headers=_headers(admin_user)).json()

    response = client.get(
        "/api/audit-logs", params={"entity_id": created["inserted_id"]}, headers=_headers(admin_user)
    )

    [log] = response.json()["data"]
    assert log["action"] == "create"
    assert log["entity_ref"] == "[BANK/001] Bank Central"
    assert "audit_id" in log


def test_audit_logs_require_permission(client, clerk_user):
    response = client.get("/api/audit-logs", headers=_headers(clerk_user))

    assert response.status_code == 403


def test_malformed_date_returns_422(client, fake_db, admin_user):
    response = client.post("/api/stocks", json={"transaction_date": "15/03/2024"}, headers=_headers(admin_user))

    assert response.status_code == 422
    assert fake_db.stocks.documents == []


def test_receive_interest_then_list_interests(client, fake_db, admin_user):
    created = client.post("/api/deposits", json={
        "placement": {"bank_id": "b1", "date": "2024-03-15", "term": 1, "amount": 1000000},
        "interest": {"net_amount": 1000.0, "is_rollover": False},
        "interest_schedule": [{"term": 1, "payment_date": "2024-04-15", "amount": 1000.0}],
    }, headers=_headers(admin_user)).json()
    item_uuid = fake_db.deposits.documents[0]["interest_schedule"][0]["uuid"]

    received = client.post(f"/api/deposits/{created['inserted_id']}/receive-interest", json={
        "uuid": item_uuid,
        "received_date": "2024-04-15",
        "received_amount": 990.0,
        "bank_id": "b1",
        "bank_account_uuid": "acc-1",
    }, headers=_headers(admin_user))
    listing = client.get("/api/deposits/interests", headers=_headers(admin_user))

    assert received.status_code == 200
    [row] = listing.json()["data"]
    assert row["record_id"] == created["inserted_id"]
    assert row["remaining_amount"] == 10.0
    assert client.get("/api/deposits/cashbacks", headers=_headers(admin_user)).json()["data"] == []


def test_receipt_requires_bank_fields(client, admin_user):
    response = client.post(
        "/api/deposits/000000000000000000000000/receive-cashback",
        json={"uuid": "x", "received_date": "2024-04-15", "received_amount": 10.0},
        headers=_headers(admin_user)
    )

    assert response.status_code == 422


def test_bond_coupons(client, fake_db, admin_user):
    created = client.post("/api/bonds", json={"transaction_date": "2024-03-01"}, headers=_headers(admin_user)).json()

    response = client.post(f"/api/bonds/{created['inserted_id']}/coupons", json={
        "received_coupons": [{"date": "2024-09-01", "amount": 250.0, "received_amount": 250.0}],
    }, headers=_headers(admin_user))
    listing = client.get("/api/bonds/coupons", headers=_headers(admin_user))

    assert response.status_code == 200
    assert fake_db.bonds.documents[0]["received_coupons"][0]["remaining_amount"] == 0.0
    assert listing.json()["data"][0]["form_number"] == "BOND/00001/202403"


def test_issuers_and_users(client, admin_user):
    issuer = client.post("/api/issuers", json={"name": "Bank Rakyat"}, headers=_headers(admin_user))
    user = client.post(
        "/api/users", json={"username": "ops", "email": "ops@example.com"}, headers=_headers(admin_user)
    )
    duplicate = client.post("/api/users", json={"username": "admin"}, headers=_headers(admin_user))

    assert issuer.json()["code"] == "ISSUER/001"
    assert user.json()["code"] == "USER/001"
    assert duplicate.status_code == 422
