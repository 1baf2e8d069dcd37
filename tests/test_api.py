from app import app as flask_app
from database import db, AuditLog, Order


def place(client, menu, **overrides):
    body = {
        "items": [{"menu_item_id": menu["margherita"], "quantity": 2, "price": "0.01"}],
        "order_type": "delivery",
        "delivery_address": "1 Main St",
    }
    body.update(overrides)
    return client.post("/api/orders", json=body)


def test_health():
    r = flask_app.test_client().get("/api/health")
    assert r.status_code == 200
    assert r.get_json()["success"] is True


def test_api_requires_login():
    r = flask_app.test_client().get("/api/orders")
    assert r.status_code == 401
    assert r.get_json() == {"success": False, "error": "Authentication required", "kind": "unauthorized"}


def test_bad_credentials(customer):
    r = flask_app.test_client().post("/api/auth/login", json={"email": "alice@example.com", "password": "nope"})
    assert r.status_code == 401


def test_me_reports_resolved_role(staff, client_for):
    body = client_for("wendy@example.com").get("/api/auth/me").get_json()
    assert body["user"]["role"] == "Waiter"
    assert body["user"]["access"] == "staff"


def test_system_init_seeds_admin_once():
    client = flask_app.test_client()
    first = client.post("/api/system/init").get_json()
    second = client.post("/api/system/init").get_json()

    assert "admin@local" in first["message"]
    assert second["message"] == "Already initialized"


class TestCreate:
    def test_created_with_server_prices(self, customer, menu, client_for):
        r = place(client_for("alice@example.com"), menu)

        assert r.status_code == 201
        body = r.get_json()
        assert body["success"] is True
        assert body["subtotal"] == "29.98"
        assert body["tax_amount"] == "0.00"
        assert body["delivery_fee"] == "5.00"
        assert body["total"] == "34.98"
        assert body["status"] == "pending"
        assert len(body["order_number"]) == 32
        assert body["order"]["items"][0]["unit_price"] == "14.99"

    def test_validation_envelope(self, customer, menu, client_for):
        r = place(client_for("alice@example.com"), menu, delivery_address=None)

        assert r.status_code == 422
        body = r.get_json()
        assert body["success"] is False
        assert body["kind"] == "validation_error"
        assert body["errors"] == [{"field": "delivery_address", "message": "Delivery address is required for delivery orders"}]

    def test_unknown_item(self, customer, menu, client_for):
        r = place(client_for("alice@example.com"), menu, items=[{"menu_item_id": 999, "quantity": 1}])
        assert r.status_code == 404
        assert r.get_json()["kind"] == "item_not_found"

    def test_unavailable_item(self, customer, menu, client_for):
        r = place(client_for("alice@example.com"), menu, items=[{"menu_item_id": menu["soup"], "quantity": 1}])
        assert r.status_code == 422
        assert r.get_json()["kind"] == "item_unavailable"

    def test_requires_json(self, customer, client_for):
        r = client_for("alice@example.com").post("/api/orders", data="items=1")
        assert r.status_code == 400


class TestLifecycle:
    def test_staff_drives_order_and_customer_cannot(self, customer, staff, menu, client_for):
        alice = client_for("alice@example.com")
        wendy = client_for("wendy@example.com")
        order_id = place(alice, menu).get_json()["order_id"]

        r = alice.put(f"/api/orders/{order_id}/status", json={"status": "confirmed"})
        assert r.status_code == 403
        assert r.get_json()["kind"] == "forbidden"

        r = wendy.put(f"/api/orders/{order_id}/status", json={"status": "confirmed"})
        assert r.status_code == 200
        assert r.get_json()["order"]["status"] == "confirmed"

        r = wendy.post(f"/api/orders/{order_id}/status", json={"status": "delivered"})
        assert r.status_code == 409
        assert r.get_json()["kind"] == "illegal_transition"

        r = alice.post(f"/api/orders/{order_id}/cancel")
        assert r.status_code == 403

        r = wendy.put(f"/api/orders/{order_id}/status", json={"status": "teleported"})
        assert r.status_code == 422

    def test_customer_cancels_pending(self, customer, menu, client_for):
        alice = client_for("alice@example.com")
        order_id = place(alice, menu).get_json()["order_id"]

        r = alice.post(f"/api/orders/{order_id}/cancel")
        assert r.status_code == 200
        assert r.get_json()["order"]["status"] == "cancelled"

    def test_reads_are_scoped(self, customer, other_customer, admin, menu, client_for):
        alice = client_for("alice@example.com")
        bob = client_for("bob@example.com")
        root = client_for("root@example.com")
        order_id = place(alice, menu).get_json()["order_id"]

        assert alice.get(f"/api/orders/{order_id}").status_code == 200
        assert bob.get(f"/api/orders/{order_id}").status_code == 403
        assert root.get(f"/api/orders/{order_id}").status_code == 200
        assert alice.get("/api/orders/9999").status_code == 404

        assert len(alice.get("/api/orders").get_json()["orders"]) == 1
        assert bob.get("/api/orders").get_json()["orders"] == []
        assert len(root.get("/api/orders?status=pending").get_json()["orders"]) == 1
        assert root.get("/api/orders?status=nope").status_code == 422

    def test_admin_delete(self, customer, staff, admin, menu, client_for):
        alice = client_for("alice@example.com")
        order_id = place(alice, menu).get_json()["order_id"]

        assert client_for("wendy@example.com").delete(f"/api/orders/{order_id}").status_code == 403
        assert client_for("root@example.com").delete(f"/api/orders/{order_id}").status_code == 200
        assert alice.get(f"/api/orders/{order_id}").status_code == 404


class TestPayments:
    def _pay(self, client, order_id, tx="ch_1", status="completed"):
        return client.post("/api/payments", json={
            "order_id": order_id,
            "payment_gateway": "stripe",
            "transaction_id": tx,
            "amount": "34.98",
            "status": status,
            "payment_method": "card",
        })

    def test_record_list_and_reconcile(self, customer, staff, menu, client_for):
        alice = client_for("alice@example.com")
        wendy = client_for("wendy@example.com")
        order_id = place(alice, menu).get_json()["order_id"]

        r = self._pay(alice, order_id)
        assert r.status_code == 201
        assert r.get_json()["payment"]["amount"] == "34.98"

        dup = self._pay(alice, order_id)
        assert dup.status_code == 409
        assert dup.get_json()["kind"] == "duplicate_transaction"

        listed = alice.get(f"/api/orders/{order_id}/payments").get_json()["payments"]
        assert [p["transaction_id"] for p in listed] == ["ch_1"]
        assert alice.get(f"/api/orders/{order_id}").get_json()["order"]["payment_status"] == "pending"

        assert alice.post("/api/payments/ch_1/reconcile").status_code == 403
        r = wendy.post("/api/payments/ch_1/reconcile")
        assert r.status_code == 200
        assert r.get_json()["changed"] is True
        assert r.get_json()["order"]["payment_status"] == "paid"
        assert wendy.post("/api/payments/ch_1/reconcile").get_json()["changed"] is False

    def test_payment_lookup_and_errors(self, customer, other_customer, menu, client_for):
        alice = client_for("alice@example.com")
        bob = client_for("bob@example.com")
        order_id = place(alice, menu).get_json()["order_id"]
        self._pay(alice, order_id)

        assert alice.get("/api/payments/ch_1").get_json()["payment"]["gateway"] == "stripe"
        assert bob.get("/api/payments/ch_1").status_code == 403
        assert alice.get("/api/payments/missing").status_code == 404
        assert self._pay(bob, order_id, tx="ch_2").status_code == 403
        assert self._pay(alice, 9999, tx="ch_3").status_code == 404

        r = alice.post("/api/payments", json={"order_id": order_id})
        assert r.status_code == 422
        assert {e["field"] for e in r.get_json()["errors"]} >= {"transaction_id", "amount"}


class TestDashboard:
    def test_role_specific(self, customer, staff, admin, menu, client_for):
        alice = client_for("alice@example.com")
        place(alice, menu)
        place(alice, menu, order_type="takeaway", delivery_address=None)

        mine = alice.get("/api/dashboard").get_json()
        assert mine["role"] == "customer"
        assert mine["my_orders"] == 2
        assert mine["my_active_orders"] == 2
        assert len(mine["recent_orders"]) == 2

        desk = client_for("wendy@example.com").get("/api/dashboard").get_json()
        assert desk["active_orders"] == 2
        assert len(desk["new_orders"]) == 2

        overview = client_for("root@example.com").get("/api/dashboard").get_json()
        assert overview["total_orders"] == 2
        assert overview["today_orders"] == 2
        assert overview["total_revenue"] == "0.00"


def test_voucher_pdf(customer, other_customer, menu, client_for):
    alice = client_for("alice@example.com")
    order_id = place(alice, menu).get_json()["order_id"]

    r = alice.get(f"/api/orders/{order_id}/voucher.pdf")
    assert r.status_code == 200
    assert r.mimetype == "application/pdf"
    assert r.data.startswith(b"%PDF")

    assert client_for("bob@example.com").get(f"/api/orders/{order_id}/voucher.pdf").status_code == 403


def test_audit_trail(customer, admin, menu, client_for):
    alice = client_for("alice@example.com")
    order_id = place(alice, menu).get_json()["order_id"]

    assert alice.get("/api/audit-logs").status_code == 403

    logs = client_for("root@example.com").get("/api/audit-logs").get_json()["logs"]
    assert any(l["action"] == "create" and l["entity_id"] == order_id for l in logs)

    with flask_app.app_context():
        assert db.session.query(AuditLog).filter_by(action="login").count() == 2
        assert db.session.get(Order, order_id).order_number
