"""
HTTP API tests.
"""
from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

import pytest

from shared.database import utcnow


def rental_body(subject_id="cust-1", sku="PS5-0001", days=3, start_in_days=1, **extra):
    start = utcnow() + timedelta(days=start_in_days)
    body = {
        "kind": "RENTAL",
        "subject_id": subject_id,
        "items": [{"sku": sku, "quantity": 1}],
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=days)).isoformat(),
    }
    body.update(extra)
    return body


async def create_paid_rental(client, flow, subject_id="cust-1", start_in_days=1):
    await flow.profile(subject_id)
    response = await client.post("/transactions", json=rental_body(subject_id, start_in_days=start_in_days))
    transaction_id = UUID(response.json()["transaction_id"])
    await client.post(f"/transactions/{transaction_id}/payment-intent")
    transaction = await flow.engine.get_transaction(transaction_id)
    response = await client.post("/webhooks/payments", json=flow.webhook(transaction))
    assert response.status_code == 200
    return transaction_id


@pytest.mark.asyncio
async def test_health_check(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


class TestTransactions:
    @pytest.mark.asyncio
    async def test_create_ignores_client_amounts(self, client):
        response = await client.post("/transactions", json=rental_body(total_amount="1.00"))

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "PENDING"
        assert Decimal(data["computed_total"]) == Decimal("6770")
        assert Decimal(data["deposit_amount"]) == Decimal("5000")
        assert data["currency"] == "INR"

    @pytest.mark.asyncio
    async def test_create_validation_errors(self, client):
        response = await client.post("/transactions", json=rental_body(sku="NOPE"))
        assert response.status_code == 422
        assert response.json()["error"] == "validation_error"

        response = await client.post("/transactions", json={"kind": "RENTAL", "subject_id": "cust-1", "items": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_payment_intent(self, client):
        created = (await client.post("/transactions", json=rental_body())).json()

        response = await client.post(f"/transactions/{created['transaction_id']}/payment-intent")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "PAYMENT_PROCESSING"
        assert data["provider_order_id"].startswith("order_")
        assert data["amount_minor"] == 677000

        again = await client.post(f"/transactions/{created['transaction_id']}/payment-intent")
        assert again.status_code == 409
        assert again.json()["error"] == "invalid_transition"

    @pytest.mark.asyncio
    async def test_risk_factors_are_admin_only(self, client, flow, admin_headers):
        transaction_id = await create_paid_rental(client, flow)

        public = (await client.get(f"/transactions/{transaction_id}")).json()
        assert public["status"] == "APPROVED"
        assert public["risk_decision"] is None
        assert public["risk_factors"] is None

        private = (await client.get(f"/transactions/{transaction_id}", headers=admin_headers)).json()
        assert private["risk_factors"] == ["New subject (<3 orders)"]
        assert private["risk_decision"] == "APPROVE"

    @pytest.mark.asyncio
    async def test_booking_by_category_and_calendar_views(self, client, flow):
        await flow.add_unit("PS5-0002")
        body = {
            "kind": "RENTAL",
            "subject_id": "cust-1",
            "items": [{"category": "console", "quantity": 1}],
            "start_date": "2031-05-10T00:00:00",
            "end_date": "2031-05-13T00:00:00",
        }

        first = await client.post("/transactions", json=body)
        assert first.status_code == 201
        assert first.json()["items"] == [{"sku": "PS5-0001", "quantity": 1}]
        second = await client.post("/transactions", json=body)
        assert second.json()["items"] == [{"sku": "PS5-0002", "quantity": 1}]

        third = await client.post("/transactions", json=body)
        assert third.status_code == 409
        assert third.json()["error"] == "insufficient_stock"

        window = await client.get(
            "/inventory/categories/console/free-units",
            params={"start_date": "2031-05-12T00:00:00", "end_date": "2031-05-14T00:00:00"},
        )
        assert window.status_code == 200
        assert window.json()["total_units"] == 2
        assert window.json()["free_units"] == []

        calendar = await client.get("/inventory/categories/console/calendar", params={"year": 2031, "month": 5})
        assert calendar.status_code == 200
        status = {day["date"]: day["status"] for day in calendar.json()}
        assert status["2031-05-11"] == "FULL"
        assert status["2031-05-13"] == "AVAILABLE"

        bad_month = await client.get("/inventory/categories/console/calendar", params={"year": 2031, "month": 13})
        assert bad_month.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, client):
        response = await client.get(f"/transactions/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    @pytest.mark.asyncio
    async def test_subject_cancel(self, client):
        created = (await client.post("/transactions", json=rental_body())).json()
        url = f"/transactions/{created['transaction_id']}/cancel"

        assert (await client.post(url, json={"subject_id": "someone-else"})).status_code == 404

        response = await client.post(url, json={"subject_id": "cust-1"})
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"
        assert response.json()["cancellation_reason"] == "CANCELLED_BY_SUBJECT"


class TestWebhooks:
    @pytest.mark.asyncio
    async def test_duplicate_delivery_returns_200(self, client, flow):
        transaction = await flow.rental()
        await flow.engine.create_payment_intent(transaction.id)
        payload = flow.webhook(transaction)

        first = await client.post("/webhooks/payments", json=payload)
        second = await client.post("/webhooks/payments", json=payload)

        assert (first.status_code, first.json()["result"]) == (200, "accepted")
        assert (second.status_code, second.json()["result"]) == (200, "duplicate")

    @pytest.mark.asyncio
    async def test_signature_header(self, client, flow):
        transaction = await flow.rental()
        await flow.engine.create_payment_intent(transaction.id)
        payload = flow.webhook(transaction)
        signature = payload.pop("signature")

        response = await client.post(
            "/webhooks/payments", json=payload, headers={"X-Webhook-Signature": signature}
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_invalid_signature_is_400(self, client, flow):
        transaction = await flow.rental()
        payload = flow.webhook(transaction)
        payload["signature"] = "deadbeef"

        response = await client.post("/webhooks/payments", json=payload)

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_malformed_body_is_422(self, client):
        response = await client.post(
            "/webhooks/payments", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 422

        response = await client.post("/webhooks/payments", json={"event_type": "payment.captured"})
        assert response.status_code == 422


class TestAdmin:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,path",
        [
            ("post", "/admin/inventory"),
            ("put", "/admin/rate-cards"),
            ("get", "/admin/subjects/cust-1"),
            ("get", f"/admin/transactions/{uuid4()}/audit"),
        ],
    )
    async def test_admin_routes_need_token(self, client, method, path):
        response = await getattr(client, method)(path, headers={"X-Admin-Token": "wrong"})
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_fulfilment_steps_and_out_of_stock(self, client, flow, admin_headers):
        first = await create_paid_rental(client, flow, "cust-a")
        second = await create_paid_rental(client, flow, "cust-b", start_in_days=10)

        for transaction_id in (first, second):
            for step in ("ASSIGNED", "OUT_FOR_DELIVERY"):
                response = await client.post(
                    f"/admin/transactions/{transaction_id}/transitions",
                    json={"to_status": step},
                    headers=admin_headers,
                )
                assert response.status_code == 200

        activated = await client.post(
            f"/admin/transactions/{first}/transitions", json={"to_status": "ACTIVE"}, headers=admin_headers
        )
        assert activated.json()["status"] == "ACTIVE"

        refused = await client.post(
            f"/admin/transactions/{second}/transitions", json={"to_status": "ACTIVE"}, headers=admin_headers
        )
        assert refused.status_code == 409
        assert refused.json()["error"] == "insufficient_stock"

        view = (await client.get(f"/transactions/{second}", headers=admin_headers)).json()
        assert view["status"] == "CANCELLED"
        assert view["cancellation_reason"] == "OUT_OF_STOCK"
        assert view["refund_required"] is True

        audit = await client.get(f"/admin/transactions/{second}/audit", headers=admin_headers)
        assert audit.status_code == 200
        assert audit.json()[0]["note"] == "Transaction created"
        assert audit.json()[-1]["to_status"] == "CANCELLED"

    @pytest.mark.asyncio
    async def test_manual_review(self, client, flow, admin_headers):
        await flow.profile("cust-2", age_days=2)
        transaction = await flow.paid(await flow.sale("cust-2", sku="VR-PRO"))
        assert transaction.status == "UNDER_REVIEW"

        response = await client.post(
            f"/admin/transactions/{transaction.id}/review",
            json={"approve": True, "reviewer": "ops-1"},
            headers=admin_headers,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "CONFIRMED"

    @pytest.mark.asyncio
    async def test_inventory_management(self, client, admin_headers):
        created = await client.post(
            "/admin/inventory",
            json={"sku": "CAM-4K", "name": "Action camera", "category": "camera", "quantity": 2},
            headers=admin_headers,
        )
        assert created.status_code == 201
        assert created.json()["available_count"] == 2

        received = await client.post("/admin/inventory/CAM-4K/stock", json={"quantity": 3}, headers=admin_headers)
        assert received.json()["total_count"] == 5

        status = await client.put(
            "/admin/inventory/PS5-0001/status", json={"status": "UNDER_REPAIR"}, headers=admin_headers
        )
        assert status.json()["status"] == "UNDER_REPAIR"

        availability = (await client.get("/inventory/categories/console/availability")).json()
        assert availability == {"category": "console", "total": 0, "available": 0, "out_of_service": 1}

        item = (await client.get("/inventory/CAM-4K")).json()
        assert item["available_count"] == 5
        assert (await client.get("/inventory/NOPE")).status_code == 404

        movements = (await client.get("/admin/inventory/CAM-4K/movements", headers=admin_headers)).json()
        assert [m["operation"] for m in movements] == ["receive", "receive"]

    @pytest.mark.asyncio
    async def test_rate_cards_and_subjects(self, client, admin_headers):
        rate = await client.put(
            "/admin/rate-cards",
            json={"category": "console", "min_days": 30, "daily_rate": "300"},
            headers=admin_headers,
        )
        assert rate.status_code == 200
        assert Decimal(rate.json()["daily_rate"]) == Decimal("300")

        missing = await client.get("/admin/subjects/cust-9", headers=admin_headers)
        assert missing.status_code == 404

        profile = await client.put(
            "/admin/subjects/cust-9",
            json={"account_created_at": utcnow().isoformat(), "is_blacklisted": True, "blacklist_reason": "fraud"},
            headers=admin_headers,
        )
        assert profile.status_code == 200
        assert profile.json()["is_blacklisted"] is True

        cleared = await client.put("/admin/subjects/cust-9", json={"is_blacklisted": False}, headers=admin_headers)
        assert cleared.json()["is_blacklisted"] is False
        assert cleared.json()["blacklist_reason"] is None
