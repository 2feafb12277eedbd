from conftest import auth_headers
from sqlmodel import select

from posengine import models


def _csrf(client):
    response = client.get("/api/v1/public/csrf-token")
    assert response.status_code == 200
    return response.json()["csrf_token"]


def _customer_order(client, menu, token, **overrides):
    payload = {
        "table_id": menu["table"].id,
        "customer_name": "Sari",
        "items": [{"product_id": menu["nasi"].id, "quantity": 2}, {"product_id": menu["teh"].id, "quantity": 1}],
    }
    payload.update(overrides)
    return client.post("/api/v1/public/orders", json=payload, headers={"X-CSRF-Token": token})


def test_qr_lookup(client, menu):
    table = menu["table"]
    response = client.get(f"/api/v1/public/tables/{table.qr_code}")
    assert response.status_code == 200
    assert response.json() == {
        "id": table.id,
        "table_number": "T05",
        "seating_capacity": 4,
        "location": "Main hall",
    }

    response = client.get("/api/v1/public/tables/not-a-code")
    assert response.status_code == 404
    assert response.json()["error"] == "table_not_found"


def test_qr_lookup_is_rate_limited_per_ip(client, menu, clock):
    headers = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    for _ in range(30):
        client.get(f"/api/v1/public/tables/{menu['table'].qr_code}", headers=headers)

    response = client.get(f"/api/v1/public/tables/{menu['table'].qr_code}", headers=headers)
    assert response.status_code == 429
    assert "Retry-After" in response.headers

    # Someone else is unaffected
    response = client.get(
        f"/api/v1/public/tables/{menu['table'].qr_code}", headers={"X-Forwarded-For": "198.51.100.2"}
    )
    assert response.status_code == 200

    clock.advance(60)
    response = client.get(f"/api/v1/public/tables/{menu['table'].qr_code}", headers=headers)
    assert response.status_code == 200


def test_customer_order_is_priced_and_numbered(client, session, menu):
    response = _customer_order(client, menu, _csrf(client))
    assert response.status_code == 201, response.text
    order = response.json()
    assert order["order_number"].startswith("QR")
    assert order["total_amount"] == 849_150
    assert "user" not in order
    assert "payments" not in order

    history = session.exec(
        select(models.OrderStatusHistory).where(models.OrderStatusHistory.order_id == order["id"])
    ).one()
    assert history.changed_by is None
    assert history.notes == "Order placed by customer"

    stored = session.get(models.Order, order["id"])
    assert stored.order_type == models.OrderType.dine_in
    assert stored.user_id is None


def test_customer_text_is_stripped_of_html(client, session, menu):
    response = _customer_order(
        client,
        menu,
        _csrf(client),
        customer_name="<b>Sari</b><script>alert(1)</script>",
        notes="  no <i>ice</i> ",
        items=[{"product_id": menu["teh"].id, "quantity": 1, "special_instructions": "<p>less sugar</p>"}],
    )
    assert response.status_code == 201
    order = response.json()
    assert order["customer_name"] == "Sari"
    assert order["notes"] == "no ice"
    assert order["items"][0]["special_instructions"] == "less sugar"


def test_customer_order_requires_a_valid_csrf_token(client, menu, clock):
    response = _customer_order(client, menu, "forged")
    assert response.status_code == 403
    assert response.json()["error"] == "invalid_csrf_token"

    response = client.post("/api/v1/public/orders", json={"table_id": menu["table"].id, "items": []})
    assert response.status_code == 403

    token = _csrf(client)
    clock.advance(30 * 60 + 1)
    response = _customer_order(client, menu, token)
    assert response.status_code == 403


def test_customer_order_input_limits(client, menu):
    token = _csrf(client)

    response = _customer_order(client, menu, token, table_id=None)
    assert response.status_code == 400
    assert response.json()["error"] == "table_id_required"

    response = _customer_order(client, menu, token, items=[])
    assert response.json()["error"] == "items_required"

    response = _customer_order(client, menu, token, customer_name="x" * 101)
    assert response.json()["error"] == "customer_name_too_long"

    response = _customer_order(client, menu, token, notes="x" * 501)
    assert response.json()["error"] == "notes_too_long"


def test_sixth_customer_order_in_a_minute_is_rate_limited(client, menu):
    token = _csrf(client)
    for _ in range(5):
        assert _customer_order(client, menu, token).status_code == 201

    response = _customer_order(client, menu, token)
    assert response.status_code == 429
    assert response.json()["error"] == "rate_limit_exceeded"


# ============ CUSTOMER PAYMENTS ============

def _customer_pay(client, order_id, amount, token, table_id):
    headers = {"X-CSRF-Token": token}
    if table_id is not None:
        headers["X-Table-ID"] = str(table_id)
    return client.post(
        f"/api/v1/public/orders/{order_id}/payments",
        json={"payment_method": "digital_wallet", "amount": amount},
        headers=headers,
    )


def test_customer_pays_exact_balance(client, session, menu):
    token = _csrf(client)
    order = _customer_order(client, menu, token).json()

    response = _customer_pay(client, order["id"], 849_150, token, menu["table"].id)
    assert response.status_code == 201, response.text
    assert response.json()["order_status"] == "completed"
    assert response.json()["processed_by"] is None

    polled = client.get(
        f"/api/v1/public/orders/{order['id']}", headers={"X-Table-ID": str(menu["table"].id)}
    ).json()
    assert polled["status"] == "completed"
    assert polled["remaining_amount"] == 0


def test_customer_amount_must_match_balance(client, session, menu):
    token = _csrf(client)
    order = _customer_order(client, menu, token).json()

    for amount in (849_149, 849_151):
        response = _customer_pay(client, order["id"], amount, token, menu["table"].id)
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "amount_mismatch"
        assert body["kind"] == "policy"
        assert body["details"] == {"required_amount": 849_150, "provided_amount": amount}

    assert session.exec(select(models.Payment)).all() == []
    assert session.get(models.Order, order["id"]).status == models.OrderStatus.pending


def test_customer_cannot_pay_for_another_table(client, menu):
    token = _csrf(client)
    order = _customer_order(client, menu, token).json()

    response = _customer_pay(client, order["id"], 849_150, token, menu["table"].id + 1)
    assert response.status_code == 403
    assert response.json()["error"] == "table_mismatch"

    response = _customer_pay(client, order["id"], 849_150, token, None)
    assert response.status_code == 400
    assert response.json()["error"] == "table_id_required"


def test_customer_polls_notifications(client, admin, menu):
    token = _csrf(client)
    order = _customer_order(client, menu, token).json()
    client.patch(
        f"/api/v1/orders/{order['id']}/status",
        json={"status": "preparing"},
        headers=auth_headers(admin),
    )

    table_headers = {"X-Table-ID": str(menu["table"].id)}
    notifications = client.get(
        f"/api/v1/public/orders/{order['id']}/notifications", headers=table_headers
    ).json()
    assert len(notifications) == 1
    assert notifications[0]["status"] == "preparing"
    assert notifications[0]["is_read"] is False

    response = client.put(
        f"/api/v1/public/notifications/{notifications[0]['id']}/read", headers=table_headers
    )
    assert response.status_code == 200
    assert response.json()["is_read"] is True

    response = client.put("/api/v1/public/notifications/999/read", headers=table_headers)
    assert response.status_code == 404


def test_other_tables_cannot_read_an_order(client, session, admin, menu):
    token = _csrf(client)
    order = _customer_order(client, menu, token).json()
    client.patch(
        f"/api/v1/orders/{order['id']}/status",
        json={"status": "preparing"},
        headers=auth_headers(admin),
    )
    notification = session.exec(
        select(models.OrderNotification).where(models.OrderNotification.order_id == order["id"])
    ).one()
    elsewhere = {"X-Table-ID": str(menu["table"].id + 1)}

    for response in (
        client.get(f"/api/v1/public/orders/{order['id']}", headers=elsewhere),
        client.get(f"/api/v1/public/orders/{order['id']}/notifications", headers=elsewhere),
        client.put(f"/api/v1/public/notifications/{notification.id}/read", headers=elsewhere),
    ):
        assert response.status_code == 403
        assert response.json()["error"] == "table_mismatch"

    response = client.get(f"/api/v1/public/orders/{order['id']}")
    assert response.status_code == 400
    assert response.json()["error"] == "table_id_required"

    session.refresh(notification)
    assert notification.is_read is False


def test_staff_orders_are_not_reachable_from_the_public_gateway(client, session, admin, menu):
    response = client.post(
        "/api/v1/orders",
        json={"order_type": "takeaway", "items": [{"product_id": menu["nasi"].id, "quantity": 1}]},
        headers=auth_headers(admin),
    )
    assert response.status_code == 201, response.text
    order = response.json()
    assert order["table_id"] is None

    response = _customer_pay(client, order["id"], order["total_amount"], _csrf(client), menu["table"].id)
    assert response.status_code == 403
    assert response.json()["error"] == "table_mismatch"
    assert session.exec(select(models.Payment)).all() == []

    response = client.get(
        f"/api/v1/public/orders/{order['id']}", headers={"X-Table-ID": str(menu["table"].id)}
    )
    assert response.status_code == 403
    assert response.json()["error"] == "table_mismatch"


def test_api_responses_are_not_cached(client, menu):
    response = client.get(f"/api/v1/public/tables/{menu['table'].qr_code}")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert "no-store" in response.headers["Cache-Control"]

    response = client.get("/health")
    assert "Cache-Control" not in response.headers
