"""HTTP tests for the order service API."""

import pytest

from order_service.app.errors import GatewayCallError, GatewayRequestError
from order_service.app.orders import OrderCreationTransaction

from .conftest import as_user, sign_webhook

PAY_BODY = {
    "token": "tok_approved",
    "payment_method_id": "visa",
    "installments": 1,
    "payer": {"email": "buyer@example.com"},
}


def pay_body(token):
    return dict(PAY_BODY, token=token)


def post_webhook(client, payment_id, headers=None, body=None):
    if headers is None:
        headers = {"x-signature": sign_webhook(payment_id)}
    if body is None:
        body = {"type": "payment", "action": "payment.updated", "data": {"id": payment_id}}
    return client.post(
        "/api/v1/webhooks/payments",
        params={"data.id": payment_id, "type": "payment"},
        json=body,
        headers=headers,
    )


@pytest.fixture
def checkout(shop, catalog):
    """User-1's address with 2 keyboards and 1 monitor in the cart."""
    address_id = shop.add_address("user-1")
    shop.fill_cart("user-1", [(catalog["keyboard"], 2), (catalog["monitor"], 1)])
    return address_id


def create_order(client, address_id, user_id="user-1"):
    return client.post(
        "/api/v1/orders",
        json={"shipping_address_id": address_id, "payment_method": "credit_card"},
        headers=as_user(user_id),
    )


class TestEndToEnd:
    def test_create_pay_and_duplicate_webhook(self, client, checkout, shop, catalog, gateway):
        response = create_order(client, checkout)
        assert response.status_code == 201
        order = response.json()["data"]["order"]
        assert order["status"] == "pending_payment"
        assert order["items_price"] == 150.0
        assert order["shipping_price"] == 0.0
        assert order["total_price"] == 150.0
        assert shop.stock(catalog["keyboard"]) == 13
        assert shop.stock(catalog["monitor"]) == 2
        assert shop.cart_size("user-1") == 0

        response = client.post(f"/api/v1/orders/{order['order_id']}/pay", json=PAY_BODY, headers=as_user())
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Payment processed with status: approved"
        paid = body["data"]["order"]
        assert paid["status"] == "processing"
        assert paid["paid_at"] is not None
        assert shop.stock(catalog["keyboard"]) == 13
        assert shop.stock(catalog["monitor"]) == 2

        version = shop.order(order["order_id"]).version
        response = post_webhook(client, paid["gateway_payment_id"])
        assert response.status_code == 200
        assert response.json()["received"] is True
        assert response.json()["processed"] is False
        stored = shop.order(order["order_id"])
        assert stored.status == "processing"
        assert stored.version == version

    def test_create_and_rejected_payment(self, client, checkout, shop, catalog):
        order_id = create_order(client, checkout).json()["data"]["order"]["order_id"]

        response = client.post(
            f"/api/v1/orders/{order_id}/pay", json=pay_body("tok_rejected"), headers=as_user()
        )

        assert response.status_code == 200
        order = response.json()["data"]["order"]
        assert order["status"] == "failed"
        assert order["paid_at"] is None
        assert shop.stock(catalog["keyboard"]) == 15
        assert shop.stock(catalog["monitor"]) == 3

    def test_pending_payment_settled_by_webhook(self, client, checkout, shop, gateway):
        order_id = create_order(client, checkout).json()["data"]["order"]["order_id"]
        response = client.post(
            f"/api/v1/orders/{order_id}/pay", json=pay_body("tok_in_process"), headers=as_user()
        )
        payment_id = response.json()["data"]["order"]["gateway_payment_id"]
        assert response.json()["data"]["order"]["status"] == "pending_payment"

        gateway.set_status(payment_id, "approved")
        response = post_webhook(client, payment_id)

        assert response.json() == {"received": True, "processed": True, "message": "Order status: processing."}
        assert shop.order(order_id).status == "processing"


class TestCreateOrderApi:
    def test_requires_identity(self, client, checkout):
        response = client.post(
            "/api/v1/orders", json={"shipping_address_id": checkout, "payment_method": "credit_card"}
        )
        assert response.status_code == 401
        assert response.json()["status"] == "fail"

    def test_invalid_body(self, client):
        response = client.post("/api/v1/orders", json={"payment_method": ""}, headers=as_user())
        assert response.status_code == 400
        assert response.json()["message"].startswith("Invalid input")

    def test_empty_cart(self, client, shop):
        address_id = shop.add_address("user-1")
        shop.fill_cart("user-1", [])
        response = create_order(client, address_id)
        assert response.status_code == 400
        assert response.json() == {"status": "fail", "message": "Your cart is empty."}

    def test_missing_cart(self, client, shop):
        response = create_order(client, shop.add_address("user-1"))
        assert response.status_code == 404

    def test_insufficient_stock(self, client, shop, catalog):
        address_id = shop.add_address("user-1")
        shop.fill_cart("user-1", [(catalog["monitor"], 4)])

        response = create_order(client, address_id)

        assert response.status_code == 409
        assert "27in Monitor (available: 3, requested: 4)" in response.json()["message"]
        assert shop.stock(catalog["monitor"]) == 3


class TestPayApi:
    def test_other_users_order_is_not_found(self, client, placed_order):
        response = client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user("user-2"))
        assert response.status_code == 404

    def test_invalid_payer_email(self, client, placed_order):
        body = dict(PAY_BODY, payer={"email": "not-an-email"})
        response = client.post(f"/api/v1/orders/{placed_order}/pay", json=body, headers=as_user())
        assert response.status_code == 400

    def test_paying_twice(self, client, placed_order):
        client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user())
        response = client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user())
        assert response.status_code == 409

    def test_gateway_not_configured(self, client, gateway, placed_order):
        gateway.configured = False
        response = client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user())
        assert response.status_code == 503
        assert response.json()["status"] == "error"

    def test_gateway_rejects_request(self, client, gateway, placed_order, shop):
        gateway.create_error = GatewayRequestError("invalid token", gateway_status=400)
        response = client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user())
        assert response.status_code == 400
        assert response.json()["message"] == "Payment gateway error: invalid token"
        assert shop.order(placed_order).status == "pending_payment"

    def test_gateway_call_fails(self, client, gateway, placed_order, shop):
        gateway.create_error = GatewayCallError("HTTP 503")
        response = client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user())
        assert response.status_code == 500
        assert response.json()["status"] == "error"
        assert shop.order(placed_order).gateway_payment_id is None


class TestWebhookApi:
    def test_missing_signature(self, client, gateway, placed_order):
        payment_id = gateway.add_payment("approved", placed_order)
        response = post_webhook(client, payment_id, headers={})
        assert response.status_code == 400
        assert response.json()["message"].startswith("Webhook Error")

    def test_bad_signature(self, client, gateway, placed_order, shop):
        payment_id = gateway.add_payment("approved", placed_order)
        response = post_webhook(client, payment_id, headers={"x-signature": sign_webhook(payment_id, secret="wrong")})
        assert response.status_code == 400
        assert shop.order(placed_order).status == "pending_payment"
        assert gateway.get_calls == []

    def test_signature_with_request_id(self, client, gateway, placed_order, shop):
        payment_id = gateway.add_payment("approved", placed_order)
        headers = {
            "x-signature": sign_webhook(payment_id, request_id="req-42"),
            "x-request-id": "req-42",
        }
        response = post_webhook(client, payment_id, headers=headers)
        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert shop.order(placed_order).status == "processing"

    def test_webhook_secret_not_configured(self, client, settings, gateway, placed_order):
        settings.mp_webhook_secret = None
        payment_id = gateway.add_payment("approved", placed_order)
        response = post_webhook(client, payment_id)
        assert response.status_code == 400

    def test_approved_webhook(self, client, gateway, placed_order, shop, catalog):
        payment_id = gateway.add_payment("approved", placed_order)
        response = post_webhook(client, payment_id)
        assert response.status_code == 200
        assert response.json()["processed"] is True
        assert shop.order(placed_order).status == "processing"
        assert shop.stock(catalog["keyboard"]) == 13

    def test_ignored_event_is_acknowledged(self, client):
        response = post_webhook(
            client, "123", body={"type": "merchant_order", "data": {"id": "123"}}
        )
        assert response.status_code == 200
        assert response.json()["processed"] is False

    def test_unsigned_body_id_is_not_trusted(self, client, gateway, placed_order, shop):
        signed = gateway.add_payment("in_process", placed_order)
        unsigned = gateway.add_payment("approved", placed_order)

        response = post_webhook(
            client, signed, body={"type": "payment", "data": {"id": unsigned}}
        )

        assert response.status_code == 200
        assert gateway.get_calls == [signed]
        order = shop.order(placed_order)
        assert order.status == "pending_payment"
        assert order.gateway_payment_id == signed

    def test_processing_error_is_acknowledged(self, client, gateway):
        gateway.get_error = GatewayCallError("HTTP 500")
        response = post_webhook(client, "123")
        assert response.status_code == 200
        assert response.json()["processed"] is False
        assert "HTTP 500" in response.json()["error"]


class TestOrderQueries:
    def test_owner_reads_order(self, client, placed_order):
        response = client.get(f"/api/v1/orders/{placed_order}", headers=as_user())
        assert response.status_code == 200
        order = response.json()["data"]["order"]
        assert order["order_id"] == placed_order
        assert len(order["items"]) == 2
        assert order["shipping_address"]["city"] == "São Paulo"

    def test_other_user_gets_not_found(self, client, placed_order):
        response = client.get(f"/api/v1/orders/{placed_order}", headers=as_user("user-2"))
        assert response.status_code == 404

    def test_admin_reads_any_order(self, client, placed_order):
        response = client.get(f"/api/v1/orders/{placed_order}", headers=as_user("ops", role="admin"))
        assert response.status_code == 200

    def test_my_orders(self, client, placed_order):
        response = client.get("/api/v1/orders/mine", headers=as_user())
        assert response.json()["results"] == 1
        assert client.get("/api/v1/orders/mine", headers=as_user("user-2")).json()["results"] == 0

    def test_admin_listing(self, client, shop, catalog, session_factory, settings, producer):
        for _ in range(3):
            address_id = shop.add_address("user-1")
            shop.fill_cart("user-1", [(catalog["keyboard"], 1)])
            with session_factory() as session:
                OrderCreationTransaction(session, settings, producer).create("user-1", address_id, "pix")

        response = client.get(
            "/api/v1/orders", params={"page": 2, "limit": 2}, headers=as_user("ops", role="admin")
        )

        body = response.json()
        assert response.status_code == 200
        assert body["total"] == 3
        assert body["pages"] == 2
        assert body["results"] == 1

    def test_listing_requires_admin(self, client):
        response = client.get("/api/v1/orders", headers=as_user())
        assert response.status_code == 403

    def test_listing_rejects_unknown_sort(self, client):
        response = client.get("/api/v1/orders", params={"sort": "-password"}, headers=as_user("ops", role="admin"))
        assert response.status_code == 400


class TestFulfillmentApi:
    def test_ship_and_deliver(self, client, placed_order, producer):
        client.post(f"/api/v1/orders/{placed_order}/pay", json=PAY_BODY, headers=as_user())
        admin = as_user("ops", role="admin")

        response = client.put(f"/api/v1/orders/{placed_order}/ship", headers=admin)
        assert response.json()["data"]["order"]["status"] == "shipped"

        response = client.put(f"/api/v1/orders/{placed_order}/deliver", headers=admin)
        order = response.json()["data"]["order"]
        assert order["status"] == "delivered"
        assert order["delivered_at"] is not None
        assert producer.routing_keys[-2:] == ["order.shipped", "order.delivered"]

    def test_cannot_ship_unpaid_order(self, client, placed_order):
        response = client.put(f"/api/v1/orders/{placed_order}/ship", headers=as_user("ops", role="admin"))
        assert response.status_code == 409

    def test_ship_requires_admin(self, client, placed_order):
        response = client.put(f"/api/v1/orders/{placed_order}/ship", headers=as_user())
        assert response.status_code == 403

    def test_ship_unknown_order(self, client):
        response = client.put("/api/v1/orders/nope/ship", headers=as_user("ops", role="admin"))
        assert response.status_code == 404


class TestStockApi:
    def test_read_stock(self, client, catalog):
        response = client.get(f"/api/v1/stock/{catalog['monitor']}", headers=as_user())
        assert response.json() == {"product_id": catalog["monitor"], "stock": 3}

    def test_unknown_product(self, client):
        assert client.get("/api/v1/stock/999", headers=as_user()).status_code == 404

    def test_restock(self, client, catalog, shop):
        response = client.post(
            "/api/v1/stock/items",
            json={"product_id": catalog["monitor"], "quantity": 5},
            headers=as_user("ops", role="admin"),
        )
        assert response.json()["stock"] == 8
        assert shop.stock(catalog["monitor"]) == 8

    def test_restock_requires_admin(self, client, catalog):
        response = client.post(
            "/api/v1/stock/items", json={"product_id": catalog["monitor"], "quantity": 5}, headers=as_user()
        )
        assert response.status_code == 403


class TestConfigApi:
    def test_public_key(self, client, settings):
        settings.mp_public_key = "TEST-PUB-12345-KEY"
        response = client.get("/api/v1/config/mp-public-key")
        assert response.status_code == 200
        assert response.json() == {"public_key": "TEST-PUB-12345-KEY"}

    def test_public_key_not_configured(self, client, settings):
        settings.mp_public_key = None
        response = client.get("/api/v1/config/mp-public-key")
        assert response.status_code == 500
        assert response.json() == {"status": "error", "message": "Payment configuration unavailable."}


def test_health_check(client):
    assert client.get("/").json() == {"message": "Order service is running"}
