"""Tests for the FastAPI surface."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

import api_server
from escrow_service import EscrowService
from memory_store import MemoryEscrowStore
from notification_service import NotificationDispatcher, StoreNotifier

from tests.conftest import ADMIN, BUYER, OUTSIDER, SELLER


@pytest.fixture
def client(config):
    store = MemoryEscrowStore()
    service = EscrowService(
        store, dispatcher=NotificationDispatcher(StoreNotifier(store)), config=config
    )
    api_server.set_escrow_service(service)
    with TestClient(api_server.app) as test_client:
        yield test_client
    api_server.set_escrow_service(None)


def as_user(user_id: str) -> dict:
    return {"X-User-Id": user_id}


def create_deal(client, amount="100") -> str:
    response = client.post(
        "/transactions",
        json={"title": "Website", "role": "buyer", "counterparty_id": SELLER, "amount": amount},
        headers=as_user(BUYER),
    )
    assert response.status_code == 201
    return response.json()["transaction"]["id"]


def act(client, transaction_id, action, user_id, reason=None):
    body = {"reason": reason} if reason is not None else None
    return client.post(
        f"/transactions/{transaction_id}/actions/{action}", json=body, headers=as_user(user_id)
    )


def test_root_and_health(client):
    assert client.get("/").json()["status"] == "running"
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_health_without_service():
    api_server.set_escrow_service(None)
    response = TestClient(api_server.app).get("/health")
    assert response.status_code == 503


def test_identity_header_required(client):
    assert client.get("/transactions").status_code == 422


def test_create_as_seller(client):
    response = client.post(
        "/transactions",
        json={"title": "Copywriting", "role": "seller", "counterparty_id": BUYER, "amount": "40"},
        headers=as_user(SELLER),
    )
    transaction = response.json()["transaction"]
    assert transaction["buyer_id"] == BUYER
    assert transaction["seller_id"] == SELLER
    assert transaction["initiated_by"] == SELLER


def test_create_with_self_as_counterparty(client):
    response = client.post(
        "/transactions",
        json={"title": "Loop", "role": "buyer", "counterparty_id": BUYER, "amount": "40"},
        headers=as_user(BUYER),
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation"


def test_full_lifecycle(client):
    transaction_id = create_deal(client)
    client.post("/wallet/deposit", json={"amount": "150"}, headers=as_user(BUYER))

    assert act(client, transaction_id, "submit", BUYER).status_code == 200
    assert act(client, transaction_id, "accept", SELLER).status_code == 200
    assert act(client, transaction_id, "fund", BUYER).status_code == 200
    assert act(client, transaction_id, "start_work", SELLER).status_code == 200
    assert act(client, transaction_id, "deliver", SELLER, reason="Zip attached").status_code == 200
    response = act(client, transaction_id, "complete", BUYER)
    assert response.json()["transaction"]["status"] == "completed"

    buyer_wallet = client.get("/wallet", headers=as_user(BUYER)).json()["wallet"]
    seller_wallet = client.get("/wallet", headers=as_user(SELLER)).json()["wallet"]
    assert Decimal(buyer_wallet["balance"]) == Decimal("50")
    assert Decimal(seller_wallet["balance"]) == Decimal("100")

    history = client.get(f"/transactions/{transaction_id}/history", headers=as_user(SELLER)).json()["history"]
    assert [e["type"] for e in history].count("escrow_release") == 1


@pytest.mark.parametrize("action,user_id,reason,status_code,error", [
    ("accept", BUYER, None, 403, "forbidden"),
    ("fund", BUYER, None, 409, "invalid_transition"),
    ("dispute", BUYER, None, 409, "invalid_transition"),
])
def test_error_mapping(client, action, user_id, reason, status_code, error):
    transaction_id = create_deal(client)
    act(client, transaction_id, "submit", BUYER)

    response = act(client, transaction_id, action, user_id, reason)
    assert response.status_code == status_code
    assert response.json()["error"] == error


def test_insufficient_funds_is_payment_required(client):
    transaction_id = create_deal(client)
    client.post("/wallet/deposit", json={"amount": "40"}, headers=as_user(BUYER))
    act(client, transaction_id, "submit", BUYER)
    act(client, transaction_id, "accept", SELLER)

    response = act(client, transaction_id, "fund", BUYER)
    assert response.status_code == 402
    assert response.json()["message"] == "Please add funds before paying."


def test_funding_without_wallet_is_not_found(client):
    transaction_id = create_deal(client)
    act(client, transaction_id, "submit", BUYER)
    act(client, transaction_id, "accept", SELLER)

    response = act(client, transaction_id, "fund", BUYER)
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"
    assert "Transaction" not in response.json()["message"]

    view = client.get(f"/transactions/{transaction_id}", headers=as_user(BUYER)).json()["transaction"]
    assert view["status"] == "accepted"


def test_forbidden_does_not_leak_details(client):
    transaction_id = create_deal(client)
    response = act(client, transaction_id, "submit", OUTSIDER)
    assert response.status_code == 403
    assert response.json()["detail"] == "You cannot perform this action."


def test_transaction_view(client):
    transaction_id = create_deal(client)
    view = client.get(f"/transactions/{transaction_id}", headers=as_user(BUYER)).json()["transaction"]
    assert view["state_info"]["available_actions"][0]["action"] == "submit"
    assert view["fees"]["buyer_total"] == "101.50"

    assert client.get(f"/transactions/{transaction_id}", headers=as_user(OUTSIDER)).status_code == 404
    listed = client.get("/transactions", params={"status": "draft"}, headers=as_user(SELLER)).json()
    assert [t["id"] for t in listed["transactions"]] == [transaction_id]


def test_admin_resolution(client):
    transaction_id = create_deal(client)
    client.post("/wallet/deposit", json={"amount": "100"}, headers=as_user(BUYER))
    for action, user_id in [("submit", BUYER), ("accept", SELLER), ("fund", BUYER),
                            ("start_work", SELLER), ("deliver", SELLER)]:
        assert act(client, transaction_id, action, user_id).status_code == 200
    assert act(client, transaction_id, "dispute", BUYER, reason="Broken link").status_code == 200

    body = {"decision": "refund_buyer", "notes": "Seller unresponsive"}
    path = f"/admin/transactions/{transaction_id}/resolve"
    assert client.post(path, json=body, headers=as_user(BUYER)).status_code == 403

    response = client.post(path, json=body, headers=as_user(ADMIN))
    assert response.status_code == 200
    assert response.json()["transaction"]["status"] == "cancelled"
    wallet = client.get("/wallet", headers=as_user(BUYER)).json()["wallet"]
    assert Decimal(wallet["balance"]) == Decimal("100")


def test_withdraw_more_than_balance(client):
    client.post("/wallet/deposit", json={"amount": "10"}, headers=as_user(OUTSIDER))
    response = client.post("/wallet/withdraw", json={"amount": "20"}, headers=as_user(OUTSIDER))
    assert response.status_code == 402

    history = client.get("/history", headers=as_user(OUTSIDER)).json()["history"]
    assert [e["type"] for e in history] == ["deposit"]


def test_notification_endpoints(client):
    transaction_id = create_deal(client)
    act(client, transaction_id, "submit", BUYER)

    inbox = client.get("/notifications", headers=as_user(SELLER)).json()["notifications"]
    assert len(inbox) == 1 and inbox[0]["transaction_id"] == transaction_id

    notification_id = inbox[0]["id"]
    assert client.post(f"/notifications/{notification_id}/read", headers=as_user(BUYER)).status_code == 404
    assert client.post(f"/notifications/{notification_id}/read", headers=as_user(SELLER)).status_code == 200

    unread = client.get("/notifications", params={"unread_only": True}, headers=as_user(SELLER)).json()
    assert unread["notifications"] == []
    assert client.post("/notifications/read-all", headers=as_user(SELLER)).json()["marked"] == 0
