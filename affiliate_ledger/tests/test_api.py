"""
HTTP Tests for the Affiliate Ledger API

Tests cover:
1. Registration, referrals and purchases
2. Balances and the withdrawal lifecycle
3. Admin authentication and admin views
4. Error status codes
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from affiliate_ledger.api import create_app

ADMIN = {"X-Admin-Token": "test-admin-token"}


@pytest.fixture
def client(settings):
    return TestClient(create_app(settings))


def register(client, referral_code=None):
    resp = client.post("/users", json={"referral_code": referral_code})
    assert resp.status_code == status.HTTP_201_CREATED
    return resp.json()


def purchase(client, buyer_id, package="pro", amount=None, purchase_id=None):
    body = {"purchase_id": purchase_id or f"order-{uuid4().hex}", "buyer_id": buyer_id, "package": package}
    if amount is not None:
        body["amount"] = amount
    return client.post("/purchases", json=body)


class TestPurchaseRoutes:
    """Registration, referral links and purchases over HTTP."""

    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_purchase_flow(self, client):
        c = register(client)
        assert purchase(client, c["id"], "pro").status_code == status.HTTP_201_CREATED
        b = register(client, c["referral_code"])
        assert purchase(client, b["id"], "basic").status_code == status.HTTP_201_CREATED
        a = register(client, b["referral_code"])

        resp = purchase(client, a["id"], "pro", amount="2999", purchase_id="order-a")

        assert resp.status_code == status.HTTP_201_CREATED
        earnings = {e["beneficiary_id"]: e for e in resp.json()["earnings"]}
        assert Decimal(earnings[b["id"]]["commission_amount"]) == Decimal("1739.42")
        assert Decimal(earnings[c["id"]]["commission_amount"]) == Decimal("509.83")

        dup = purchase(client, a["id"], "pro", amount="2999", purchase_id="order-a")
        assert dup.status_code == status.HTTP_409_CONFLICT

        ancestors = client.get(f"/users/{a['id']}/ancestors", params={"max_depth": 5})
        assert ancestors.json() == [b["id"], c["id"]]

    def test_referral_cycle_conflict(self, client):
        x = register(client)
        y = register(client)

        assert client.post("/referrals", json={"child_id": x["id"], "parent_id": y["id"]}).status_code == 204
        resp = client.post("/referrals", json={"child_id": y["id"], "parent_id": x["id"]})

        assert resp.status_code == status.HTTP_409_CONFLICT


class TestWithdrawalRoutes:
    """Balances and the withdrawal lifecycle over HTTP."""

    def test_withdrawal_flow(self, client):
        referrer = register(client)
        buyer = register(client, referrer["referral_code"])
        earned = purchase(client, buyer["id"], "basic").json()["earnings"]

        # pending earnings are not withdrawable yet
        resp = client.post("/withdrawals", json={"user_id": referrer["id"], "amount": "500"})
        assert resp.status_code == status.HTTP_400_BAD_REQUEST

        paid = client.post(
            "/admin/earnings/mark-paid", json={"earning_ids": [e["id"] for e in earned]}, headers=ADMIN
        )
        assert paid.status_code == 200
        assert paid.json()[0]["status"] == "paid"

        balance = client.get(f"/users/{referrer['id']}/balance").json()
        assert Decimal(balance["available"]) == Decimal("869.42")

        too_small = client.post("/withdrawals", json={"user_id": referrer["id"], "amount": "150"})
        assert too_small.status_code == status.HTTP_400_BAD_REQUEST

        created = client.post("/withdrawals", json={"user_id": referrer["id"], "amount": "500"})
        assert created.status_code == status.HTTP_201_CREATED
        assert created.json()["status"] == "pending"

        pending = client.get("/admin/withdrawals", params={"status": "pending"}, headers=ADMIN).json()
        assert pending["total_count"] == 1

        decided = client.post(
            f"/admin/withdrawals/{created.json()['id']}/decision",
            json={"outcome": "approve", "decided_by": "admin"},
            headers=ADMIN,
        )
        assert decided.status_code == 200
        assert decided.json()["status"] == "completed"

        again = client.post(
            f"/admin/withdrawals/{created.json()['id']}/decision", json={"outcome": "reject"}, headers=ADMIN
        )
        assert again.status_code == status.HTTP_409_CONFLICT

        history = client.get(f"/users/{referrer['id']}/withdrawals").json()
        assert history["total_count"] == 1

    def test_sub_cent_amount_is_rejected(self, client):
        user = register(client)
        resp = client.post("/withdrawals", json={"user_id": user["id"], "amount": "199.995"})
        assert resp.status_code == status.HTTP_400_BAD_REQUEST


class TestAdminRoutes:
    """Admin authentication and admin views."""

    def test_admin_routes_require_token(self, client):
        assert client.get("/admin/stats").status_code == status.HTTP_401_UNAUTHORIZED
        assert client.get("/admin/stats", headers={"X-Admin-Token": "wrong"}).status_code == 401
        assert client.get("/admin/stats", headers=ADMIN).status_code == 200

    def test_admin_users_and_deactivation(self, client):
        user = register(client)

        resp = client.post(f"/admin/users/{user['id']}/deactivate", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False

        users = client.get("/admin/users", headers=ADMIN).json()
        assert users["total_count"] == 1
        assert purchase(client, user["id"]).status_code == status.HTTP_400_BAD_REQUEST


class TestErrors:
    """Status codes for unknown resources."""

    def test_unknown_user_is_404(self, client):
        missing = uuid4()
        assert client.get(f"/users/{missing}").status_code == 404
        assert client.get(f"/users/{missing}/balance").status_code == 404
        assert client.get(f"/users/{missing}/earnings").status_code == 404

    def test_unknown_user_withdrawal_is_404(self, client):
        resp = client.post("/withdrawals", json={"user_id": str(uuid4()), "amount": "500"})
        assert resp.status_code == 404
