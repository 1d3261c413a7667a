from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from circulation.api import create_app
from circulation.config import settings

STAFF = {"X-API-Key": settings.staff_api_key, "X-Actor-Id": "900"}


def as_patron(patron_id):
    return {"X-API-Key": settings.api_key, "X-Actor-Id": str(patron_id)}


@pytest.fixture
def client(desk):
    return TestClient(create_app(desk))


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["db"] is True


def test_missing_and_invalid_keys(client, library):
    payload = {"patron_id": library["alice"].id, "copy_id": library["dune1"].id}
    assert client.post("/circulation/checkout", json=payload).status_code in (401, 403)
    response = client.post("/circulation/checkout", json=payload, headers={"X-API-Key": "nope"})
    assert response.status_code == 403
    response = client.post("/circulation/checkout", json=payload, headers={"X-API-Key": settings.api_key})
    assert response.status_code == 401


def test_checkout_return_with_fine(client, library, clock):
    alice = library["alice"]
    response = client.post(
        "/circulation/checkout",
        json={"patron_id": alice.id, "barcode": "D-001"},
        headers=as_patron(alice.id),
    )
    assert response.status_code == 201
    loan = response.json()
    assert loan["return_date"] is None

    clock.advance(days=26)
    response = client.post("/circulation/return", json={"loan_id": loan["id"]}, headers=STAFF)
    assert response.status_code == 200
    body = response.json()
    assert body["loan"]["return_date"] is not None
    assert body["fine"]["charged"] == "1.25"
    assert body["fine"]["status"] == "open"
    assert body["promoted_hold"] is None


def test_error_mapping(client, library):
    alice, bob = library["alice"], library["bob"]
    client.post("/circulation/checkout", json={"patron_id": alice.id, "copy_id": library["dune1"].id}, headers=STAFF)

    response = client.post(
        "/circulation/checkout", json={"patron_id": bob.id, "copy_id": library["dune1"].id}, headers=STAFF
    )
    assert response.status_code == 409
    assert response.json()["code"] == "conflict"

    response = client.post(
        "/circulation/checkout", json={"patron_id": bob.id, "copy_id": library["dune2"].id}, headers=as_patron(alice.id)
    )
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"

    response = client.post("/circulation/renew", json={"loan_id": 999}, headers=STAFF)
    assert response.status_code == 404
    assert response.json() == {"detail": "Loan 999 not found", "code": "not_found"}


def test_renew_and_closed_loan(client, library):
    alice = library["alice"]
    loan = client.post(
        "/circulation/checkout", json={"patron_id": alice.id, "copy_id": library["dune1"].id}, headers=STAFF
    ).json()
    response = client.post("/circulation/renew", json={"loan_id": loan["id"]}, headers=as_patron(alice.id))
    assert response.status_code == 200
    assert response.json()["renewal_count"] == 1

    client.post("/circulation/return", json={"copy_id": library["dune1"].id}, headers=STAFF)
    response = client.post("/circulation/renew", json={"loan_id": loan["id"]}, headers=STAFF)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_state"


def test_holds_endpoints(client, library):
    alice, bob = library["alice"], library["bob"]
    work_id = library["emma"].id
    response = client.post("/holds", json={"patron_id": alice.id, "work_id": work_id}, headers=as_patron(alice.id))
    assert response.status_code == 201
    hold = response.json()
    assert hold["priority"] == 1
    assert hold["status"] == "pending"

    response = client.post("/holds", json={"patron_id": alice.id, "work_id": work_id}, headers=STAFF)
    assert response.status_code == 409

    client.post("/holds", json={"patron_id": bob.id, "work_id": work_id}, headers=STAFF)
    mine = client.get("/holds", headers=as_patron(alice.id)).json()
    assert [h["id"] for h in mine] == [hold["id"]]
    assert len(client.get("/holds", params={"work_id": work_id}, headers=STAFF).json()) == 2

    response = client.patch(f"/holds/{hold['id']}/cancel", headers=as_patron(bob.id))
    assert response.status_code == 403
    response = client.patch(f"/holds/{hold['id']}/cancel", headers=as_patron(alice.id))
    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"


def test_expire_endpoint_is_staff_only(client, library):
    assert client.post("/holds/expire", headers=as_patron(library["alice"].id)).status_code == 403
    response = client.post("/holds/expire", headers=STAFF)
    assert response.status_code == 200
    assert response.json() == []


def test_accounts_flow(client, desk, library, staff, clock):
    alice = library["alice"]
    loan = desk.checkout(alice.id, staff, copy_id=library["dune1"].id)
    clock.now = loan.due_date + timedelta(days=5)
    desk.return_copy(staff, loan_id=loan.id)

    entries = client.get("/accounts", params={"patron_id": alice.id}, headers=as_patron(alice.id)).json()
    assert len(entries) == 1
    entry_id = entries[0]["id"]
    assert client.get("/accounts", params={"patron_id": alice.id}, headers=as_patron(library["bob"].id)).status_code == 403

    response = client.post(f"/accounts/{entry_id}/pay", json={"amount": "2.00"}, headers=STAFF)
    assert response.status_code == 400
    assert response.json()["code"] == "invalid_input"

    response = client.post(f"/accounts/{entry_id}/pay", json={"amount": "1.25"}, headers=as_patron(alice.id))
    assert response.status_code == 403

    response = client.post(
        f"/accounts/{entry_id}/pay", json={"amount": "1.00", "payment_type": "cash"}, headers=STAFF
    )
    assert response.status_code == 200
    assert response.json()["status"] == "partial"
    assert response.json()["outstanding"] == "0.25"

    response = client.post(f"/accounts/{entry_id}/waive", json={"note": "Goodwill"}, headers=STAFF)
    assert response.status_code == 200
    assert response.json()["status"] == "waived"

    summary = client.get("/accounts/summary", params={"patron_id": alice.id}, headers=STAFF).json()
    assert summary["outstanding"] == "0.00"
    assert summary["open_loans"] == 0


def test_history_endpoint(client, library):
    alice = library["alice"]
    client.post("/circulation/checkout", json={"patron_id": alice.id, "copy_id": library["dune1"].id}, headers=STAFF)
    response = client.get("/circulation/history", params={"patron_id": alice.id}, headers=STAFF)
    assert response.status_code == 200
    assert len(response.json()) == 1

    response = client.get(
        "/circulation/history",
        params={"issued_from": "2024-03-05", "issued_to": "2024-03-01"},
        headers=STAFF,
    )
    assert response.status_code == 400


def test_preferences_endpoints(client, library):
    assert client.get("/preferences", headers=as_patron(library["alice"].id)).status_code == 403
    response = client.put("/preferences/fine_per_day", json={"value": "0.50"}, headers=STAFF)
    assert response.status_code == 200
    assert response.json()["effective_value"] == "0.50"
    assert client.put("/preferences/unknown", json={"value": "1"}, headers=STAFF).status_code == 404
    rows = {row["variable"]: row for row in client.get("/preferences", headers=STAFF).json()}
    assert rows["fine_per_day"]["value"] == "0.50"


def test_single_record_endpoints(client, desk, library, staff, clock):
    alice, bob = library["alice"], library["bob"]
    loan = desk.checkout(alice.id, staff, copy_id=library["dune1"].id)
    hold = desk.place_hold(bob.id, library["dune"].id, staff, copy_id=library["dune1"].id)

    response = client.get(f"/circulation/loans/{loan.id}", headers=as_patron(alice.id))
    assert response.status_code == 200
    assert response.json()["copy_id"] == library["dune1"].id
    assert client.get(f"/circulation/loans/{loan.id}", headers=as_patron(bob.id)).status_code == 403

    clock.now = loan.due_date + timedelta(days=1)
    desk.return_copy(staff, loan_id=loan.id)
    response = client.get(f"/holds/{hold.id}", headers=as_patron(bob.id))
    assert response.status_code == 200
    assert response.json()["status"] == "ready-for-pickup"
    assert response.json()["ready_copy_id"] == library["dune1"].id
    assert client.get("/holds/999", headers=STAFF).status_code == 404

    (entry,) = desk.list_for_patron(alice.id, staff)
    response = client.get(f"/accounts/{entry.id}", headers=as_patron(alice.id))
    assert response.status_code == 200
    assert response.json()["charged"] == "0.25"
    assert client.get(f"/accounts/{entry.id}", headers=as_patron(bob.id)).status_code == 403
