"""Checkout, order listing and the order status lifecycle."""

import pytest

import zyra_store.app as app_module
from conftest import SHIPPING_ADDRESS
from zyra_store import inventory


def stock_of(mongo_db, product):
    return mongo_db.products.find_one({"_id": product["_id"]})["stock"]


def order_payload(*lines, **extra):
    return {
        "items": [{"product_id": str(product["_id"]), "quantity": quantity} for product, quantity in lines],
        "shipping_address": SHIPPING_ADDRESS,
        **extra,
    }


class TestCreateOrder:
    def test_prices_come_from_catalog(self, client, customer, make_product, mongo_db):
        serum = make_product(price=19.99, stock=5)
        mask = make_product(name="Clay Mask", sku="MSK-001", price=7.25, stock=5)
        body = order_payload((serum, 2), (mask, 1))
        body["items"][0]["price"] = 0.01

        response = client.post("/api/orders", json=body, headers=customer.headers)
        assert response.status_code == 201
        order = response.get_json()["order"]
        assert order["status"] == "PENDING"
        assert order["payment_status"] == "PENDING"
        assert [item["price"] for item in order["items"]] == [19.99, 7.25]
        assert order["subtotal"] == 47.23
        assert order["total"] == round(sum(item["line_total"] for item in order["items"]), 2)
        assert order["total_items"] == 3
        assert order["order_number"].startswith("ZS-")
        assert order["billing_address"] == SHIPPING_ADDRESS
        assert stock_of(mongo_db, serum) == 3
        assert stock_of(mongo_db, mask) == 4

    def test_duplicate_lines_are_merged(self, client, customer, product, mongo_db):
        body = order_payload((product, 1), (product, 2))
        order = client.post("/api/orders", json=body, headers=customer.headers).get_json()["order"]
        assert len(order["items"]) == 1
        assert order["items"][0]["quantity"] == 3
        assert stock_of(mongo_db, product) == 7

    def test_second_buyer_cannot_oversell(self, client, customer, make_user, make_product, mongo_db):
        last_one = make_product(stock=1)
        first = client.post("/api/orders", json=order_payload((last_one, 1)), headers=customer.headers)
        assert first.status_code == 201

        second = client.post(
            "/api/orders", json=order_payload((last_one, 1)), headers=make_user().headers
        )
        assert second.status_code == 400
        assert second.get_json()["details"]["available"] == 0
        assert stock_of(mongo_db, last_one) == 0

    def test_failed_line_releases_earlier_lines(self, client, customer, make_product, mongo_db):
        plenty = make_product(stock=5)
        scarce = make_product(name="Clay Mask", sku="MSK-001", stock=1)
        response = client.post(
            "/api/orders", json=order_payload((plenty, 2), (scarce, 2)), headers=customer.headers
        )
        assert response.status_code == 400
        assert stock_of(mongo_db, plenty) == 5
        assert stock_of(mongo_db, scarce) == 1
        assert mongo_db.orders.count_documents({}) == 0

    def test_failed_insert_gives_stock_back(self, client, customer, product, monkeypatch, mongo_db):
        monkeypatch.setattr(app_module.secrets, "token_hex", lambda nbytes: "abc123")
        first = client.post("/api/orders", json=order_payload((product, 2)), headers=customer.headers)
        assert first.status_code == 201

        # Same order number again, so the insert hits the unique index.
        second = client.post("/api/orders", json=order_payload((product, 3)), headers=customer.headers)
        assert second.status_code == 500
        assert stock_of(mongo_db, product) == 8
        assert mongo_db.orders.count_documents({}) == 1

    def test_inactive_product_is_not_found(self, client, customer, make_product):
        hidden = make_product(is_active=False)
        response = client.post("/api/orders", json=order_payload((hidden, 1)), headers=customer.headers)
        assert response.status_code == 404

    def test_incomplete_shipping_address(self, client, customer, product):
        body = order_payload((product, 1))
        body["shipping_address"] = {"street": "1 Main St"}
        response = client.post("/api/orders", json=body, headers=customer.headers)
        assert response.status_code == 400
        assert "city" in response.get_json()["details"]["missing_fields"]

    def test_order_from_cart_clears_cart(self, client, customer, product, mongo_db):
        client.post(
            "/api/cart", json={"product_id": str(product["_id"]), "quantity": 2}, headers=customer.headers
        )
        response = client.post(
            "/api/orders", json={"shipping_address": SHIPPING_ADDRESS}, headers=customer.headers
        )
        assert response.status_code == 201
        assert response.get_json()["order"]["items"][0]["quantity"] == 2
        cart = client.get("/api/cart", headers=customer.headers).get_json()["cart"]
        assert cart["items"] == []

    def test_empty_cart_cannot_check_out(self, client, customer):
        response = client.post(
            "/api/orders", json={"shipping_address": SHIPPING_ADDRESS}, headers=customer.headers
        )
        assert response.status_code == 400
        assert response.get_json()["error"] == "Your cart is empty."


class TestReadingOrders:
    def test_customers_only_see_their_orders(self, client, customer, make_user, moderator, product, place_order):
        place_order(customer, [{"product_id": product["_id"]}])
        other = make_user()
        place_order(other, [{"product_id": product["_id"], "quantity": 2}])

        own = client.get("/api/orders", headers=customer.headers).get_json()
        assert own["pagination"]["total"] == 1
        assert own["meta"]["total_value"] == 25.0

        everything = client.get("/api/orders", headers=moderator.headers).get_json()
        assert everything["pagination"]["total"] == 2
        assert everything["meta"]["status_counts"]["PENDING"] == 2
        assert everything["meta"]["average_order_value"] == 37.5

    def test_listing_cache_is_invalidated_by_new_orders(self, client, customer, product, place_order):
        assert client.get("/api/orders", headers=customer.headers).get_json()["orders"] == []
        place_order(customer, [{"product_id": product["_id"]}])
        assert len(client.get("/api/orders", headers=customer.headers).get_json()["orders"]) == 1

    def test_status_filter(self, client, customer, product, place_order):
        place_order(customer, [{"product_id": product["_id"]}])
        response = client.get("/api/orders?status=shipped", headers=customer.headers)
        assert response.get_json()["orders"] == []
        assert client.get("/api/orders?status=bogus", headers=customer.headers).status_code == 400

    def test_detail_access(self, client, customer, make_user, moderator, product, place_order):
        order = place_order(customer, [{"product_id": product["_id"]}])

        by_number = client.get(f"/api/orders/{order['order_number']}", headers=customer.headers)
        assert by_number.status_code == 200
        assert by_number.get_json()["order"]["payments"] == []

        assert client.get(f"/api/orders/{order['id']}", headers=moderator.headers).status_code == 200
        assert client.get(f"/api/orders/{order['id']}", headers=make_user().headers).status_code == 403

    def test_unknown_order(self, client, customer):
        assert client.get("/api/orders/ZS-00000000-000000", headers=customer.headers).status_code == 404


class TestStatusUpdates:
    def test_customer_cannot_update_status(self, client, customer, product, place_order):
        order = place_order(customer, [{"product_id": product["_id"]}])
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "PROCESSING"}, headers=customer.headers
        )
        assert response.status_code == 403

    def test_lifecycle_with_status_emails(self, client, customer, moderator, product, place_order, outbox):
        order = place_order(customer, [{"product_id": product["_id"]}])
        url = f"/api/orders/{order['id']}"

        processing = client.put(url, json={"status": "processing"}, headers=moderator.headers)
        assert processing.get_json()["order"]["status"] == "PROCESSING"

        shipped = client.put(
            url, json={"status": "SHIPPED", "tracking_number": "1Z999"}, headers=moderator.headers
        )
        assert shipped.status_code == 200
        assert shipped.get_json()["order"]["tracking_number"] == "1Z999"
        assert outbox[-1]["subject"] == f"Order {order['order_number']} update: Shipped"
        assert "1Z999" in outbox[-1]["text"]

        delivered = client.put(url, json={"status": "DELIVERED"}, headers=moderator.headers)
        history = [entry["status"] for entry in delivered.get_json()["order"]["status_history"]]
        assert history == ["PENDING", "PROCESSING", "SHIPPED", "DELIVERED"]

        terminal = client.put(url, json={"status": "CANCELLED"}, headers=moderator.headers)
        assert terminal.status_code == 400

    @pytest.mark.parametrize("target", ["SHIPPED", "DELIVERED", "REFUNDED"])
    def test_skipping_steps_is_rejected(self, client, customer, moderator, product, place_order, target):
        order = place_order(customer, [{"product_id": product["_id"]}])
        response = client.put(
            f"/api/orders/{order['id']}", json={"status": target}, headers=moderator.headers
        )
        assert response.status_code == 400
        assert "Invalid status transition" in response.get_json()["error"]

    def test_cancel_via_update_restores_stock(self, client, customer, admin, product, place_order, mongo_db):
        order = place_order(customer, [{"product_id": product["_id"], "quantity": 4}])
        assert stock_of(mongo_db, product) == 6

        response = client.put(
            f"/api/orders/{order['id']}", json={"status": "CANCELLED"}, headers=admin.headers
        )
        assert response.status_code == 200
        assert stock_of(mongo_db, product) == 10

    def test_cancelling_shipped_order_keeps_stock(self, client, customer, admin, product, place_order, mongo_db):
        order = place_order(customer, [{"product_id": product["_id"], "quantity": 2}])
        url = f"/api/orders/{order['id']}"
        client.put(url, json={"status": "PROCESSING"}, headers=admin.headers)
        client.put(url, json={"status": "SHIPPED"}, headers=admin.headers)

        response = client.put(url, json={"status": "CANCELLED"}, headers=admin.headers)
        assert response.status_code == 200
        assert stock_of(mongo_db, product) == 8

    def test_notes_only_update(self, client, customer, moderator, product, place_order):
        order = place_order(customer, [{"product_id": product["_id"]}])
        response = client.put(
            f"/api/orders/{order['id']}", json={"notes": "Gift wrap"}, headers=moderator.headers
        )
        assert response.status_code == 200
        assert response.get_json()["order"]["notes"] == "Gift wrap"
        assert response.get_json()["order"]["status"] == "PENDING"


class TestCustomerCancellation:
    def test_cancel_restores_stock_once(self, client, customer, product, place_order, mongo_db):
        order = place_order(customer, [{"product_id": product["_id"], "quantity": 3}])
        url = f"/api/orders/{order['id']}"

        response = client.delete(url, headers=customer.headers)
        assert response.status_code == 200
        assert response.get_json()["order"]["status"] == "CANCELLED"
        assert stock_of(mongo_db, product) == 10

        assert client.delete(url, headers=customer.headers).status_code == 400
        assert stock_of(mongo_db, product) == 10

    def test_stale_cancel_cannot_restore_twice(self, client, customer, product, place_order, mongo_db):
        order = place_order(customer, [{"product_id": product["_id"], "quantity": 3}])
        client.delete(f"/api/orders/{order['id']}", headers=customer.headers)

        # A second request that still saw the order as pending.
        mongo_db.orders.update_one({"order_number": order["order_number"]}, {"$set": {"status": "PENDING"}})
        response = client.delete(f"/api/orders/{order['id']}", headers=customer.headers)
        assert response.status_code == 200
        assert stock_of(mongo_db, product) == 10

    def test_interrupted_restock_is_finished_on_retry(
        self, client, customer, product, make_product, place_order, monkeypatch, mongo_db
    ):
        mask = make_product(name="Clay Mask", sku="MSK-001", stock=5)
        order = place_order(
            customer,
            [{"product_id": product["_id"], "quantity": 3}, {"product_id": mask["_id"], "quantity": 2}],
        )
        url = f"/api/orders/{order['id']}"
        calls = []

        def flaky_release(db, items):
            calls.append(items)
            if len(calls) == 2:
                raise RuntimeError("connection reset")
            return inventory.release_stock(db, items)

        monkeypatch.setattr(app_module, "release_stock", flaky_release)
        assert client.delete(url, headers=customer.headers).status_code == 500

        stored = mongo_db.orders.find_one({"order_number": order["order_number"]})
        assert stored["status"] == "CANCELLED"
        assert stored["stock_reserved"] is True
        assert stored["restocked_lines"] == [0]
        assert stock_of(mongo_db, product) == 10
        assert stock_of(mongo_db, mask) == 3

        response = client.delete(url, headers=customer.headers)
        assert response.status_code == 200
        assert stock_of(mongo_db, product) == 10
        assert stock_of(mongo_db, mask) == 5
        assert mongo_db.orders.find_one({"order_number": order["order_number"]})["stock_reserved"] is False

        assert client.delete(url, headers=customer.headers).status_code == 400
        assert stock_of(mongo_db, mask) == 5

    def test_cancel_cancels_pending_payment(self, client, customer, product, place_order, gateway, mongo_db):
        order = place_order(customer, [{"product_id": product["_id"]}])
        client.post("/api/payments", json={"order_id": order["id"]}, headers=customer.headers)

        response = client.delete(f"/api/orders/{order['id']}", headers=customer.headers)
        assert response.get_json()["order"]["payment_status"] == "CANCELLED"
        assert gateway.cancelled == ["pi_test_0001"]
        assert mongo_db.payments.find_one({})["status"] == "CANCELLED"

    def test_shipped_order_cannot_be_cancelled_by_customer(self, client, customer, admin, product, place_order):
        order = place_order(customer, [{"product_id": product["_id"]}])
        url = f"/api/orders/{order['id']}"
        client.put(url, json={"status": "PROCESSING"}, headers=admin.headers)
        client.put(url, json={"status": "SHIPPED"}, headers=admin.headers)

        response = client.delete(url, headers=customer.headers)
        assert response.status_code == 400

    def test_only_owner_or_admin_can_cancel(self, client, customer, moderator, admin, product, place_order):
        order = place_order(customer, [{"product_id": product["_id"]}])
        url = f"/api/orders/{order['id']}"
        assert client.delete(url, headers=moderator.headers).status_code == 403
        assert client.delete(url, headers=admin.headers).status_code == 200
