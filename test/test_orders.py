from datetime import datetime, timezone

from conftest import auth_headers, make_product, make_table, make_user
from sqlmodel import select

from posengine import models


def _order_payload(menu, **overrides):
    payload = {
        "order_type": "dine_in",
        "table_id": menu["table"].id,
        "customer_name": "Budi",
        "items": [
            # Client prices are ignored
            {"product_id": menu["nasi"].id, "quantity": 2, "unit_price": 1},
            {"product_id": menu["teh"].id, "quantity": 1},
        ],
    }
    payload.update(overrides)
    return payload


def _create_order(client, user, menu, **overrides):
    response = client.post("/api/v1/orders", json=_order_payload(menu, **overrides), headers=auth_headers(user))
    assert response.status_code == 201, response.text
    return response.json()


def test_create_order_prices_from_catalog_and_occupies_table(client, session, admin, menu):
    order = _create_order(client, admin, menu)

    assert order["subtotal"] == 765_000
    assert order["tax_amount"] == 84_150
    assert order["total_amount"] == 849_150
    assert order["status"] == "pending"
    assert order["order_number"].startswith("ORD")
    assert [item["unit_price"] for item in order["items"]] == [285_000, 195_000]
    assert order["items"][0]["total_price"] == 570_000
    assert order["user"]["username"] == "admin"

    session.refresh(menu["table"])
    assert menu["table"].is_occupied is True


def test_order_numbers_increase_within_the_day(client, admin, menu):
    first = _create_order(client, admin, menu)
    second = _create_order(client, admin, menu)
    assert int(second["order_number"][-4:]) == int(first["order_number"][-4:]) + 1


def test_order_numbers_keep_counting_past_9999(client, session, admin, menu):
    prefix = f"ORD{datetime.now(timezone.utc).strftime('%Y%m%d')}"
    session.add(models.Order(order_number=f"{prefix}9999", order_type=models.OrderType.takeaway))
    session.add(models.Order(order_number=f"{prefix}10000", order_type=models.OrderType.takeaway))
    session.commit()

    order = _create_order(client, admin, menu)
    assert order["order_number"] == f"{prefix}10001"


def test_create_order_writes_initial_history(client, admin, menu):
    order = _create_order(client, admin, menu)
    response = client.get(f"/api/v1/orders/{order['id']}/status-history", headers=auth_headers(admin))
    assert response.status_code == 200
    history = response.json()
    assert len(history) == 1
    assert history[0]["previous_status"] is None
    assert history[0]["new_status"] == "pending"
    assert history[0]["notes"] == "Order created"


def test_create_order_rejections(client, session, admin, menu):
    headers = auth_headers(admin)

    response = client.post("/api/v1/orders", json=_order_payload(menu, items=[]), headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "empty_order"

    response = client.post("/api/v1/orders", json=_order_payload(menu, table_id=None), headers=headers)
    assert response.json()["error"] == "table_required_for_dine_in"

    response = client.post("/api/v1/orders", json=_order_payload(menu, table_id=999), headers=headers)
    assert response.json()["error"] == "table_not_found"

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(menu, items=[{"product_id": 999, "quantity": 1}]),
        headers=headers,
    )
    assert response.json()["error"] == "product_not_found"

    response = client.post(
        "/api/v1/orders",
        json=_order_payload(menu, items=[{"product_id": menu["nasi"].id, "quantity": 0}]),
        headers=headers,
    )
    assert response.json()["error"] == "invalid_quantity"

    sold_out = make_product(session, "Rendang", 300_000, is_available=False)
    response = client.post(
        "/api/v1/orders",
        json=_order_payload(menu, items=[{"product_id": sold_out.id, "quantity": 1}]),
        headers=headers,
    )
    assert response.status_code == 400
    assert response.json()["error"] == "product_not_available"

    # Nothing was written
    assert session.exec(select(models.Order)).all() == []


def test_takeaway_needs_no_table(client, admin, menu):
    order = _create_order(client, admin, menu, order_type="takeaway", table_id=None)
    assert order["table_id"] is None
    assert order["order_type"] == "takeaway"


def test_server_orders_are_always_dine_in(client, session, menu):
    server = make_user(session, models.UserRole.server)
    response = client.post(
        "/api/v1/orders",
        json=_order_payload(menu, order_type="takeaway", table_id=None),
        headers=auth_headers(server),
    )
    assert response.status_code == 400
    assert response.json()["error"] == "table_required_for_dine_in"


def test_tax_rate_setting_is_used(client, session, admin, menu):
    session.add(models.SystemSetting(setting_key="tax_rate", setting_value="10"))
    session.commit()
    order = _create_order(client, admin, menu)
    assert order["tax_amount"] == 76_500
    assert order["total_amount"] == 841_500


def test_unparseable_tax_rate_falls_back_to_default(client, session, admin, menu):
    session.add(models.SystemSetting(setting_key="tax_rate", setting_value="abc"))
    session.commit()
    order = _create_order(client, admin, menu)
    assert order["tax_amount"] == 84_150


def test_requires_authentication(client, menu):
    response = client.post("/api/v1/orders", json=_order_payload(menu))
    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "message": "Not authenticated",
        "error": "not_authenticated",
        "kind": "policy",
    }


def test_kitchen_role_cannot_create_orders(client, session, menu):
    cook = make_user(session, models.UserRole.kitchen)
    response = client.post("/api/v1/orders", json=_order_payload(menu), headers=auth_headers(cook))
    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "forbidden"
    assert body["message"] == "Missing permission: orders:create"


def test_malformed_bodies_get_a_reason_code(client, admin, menu):
    payload = _order_payload(menu)
    del payload["items"]
    response = client.post("/api/v1/orders", json=payload, headers=auth_headers(admin))
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "invalid_request"
    assert body["kind"] == "validation"
    assert body["details"]["errors"][0]["loc"] == ["body", "items"]


# ============ STATUS TRANSITIONS ============

def _set_status(client, user, order_id, status, notes=None):
    return client.patch(
        f"/api/v1/orders/{order_id}/status",
        json={"status": status, "notes": notes},
        headers=auth_headers(user),
    )


def test_forward_transitions_and_skips(client, admin, menu):
    order = _create_order(client, admin, menu)

    response = _set_status(client, admin, order["id"], "preparing")
    assert response.status_code == 200
    assert response.json()["status"] == "preparing"

    response = _set_status(client, admin, order["id"], "served")
    assert response.status_code == 200
    assert response.json()["served_at"] is not None


def test_backward_and_same_state_moves_are_rejected(client, admin, menu):
    order = _create_order(client, admin, menu)
    assert _set_status(client, admin, order["id"], "ready").status_code == 200

    response = _set_status(client, admin, order["id"], "confirmed")
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"

    response = _set_status(client, admin, order["id"], "ready")
    assert response.status_code == 409


def test_terminal_orders_do_not_move(client, admin, menu):
    order = _create_order(client, admin, menu)
    assert _set_status(client, admin, order["id"], "cancelled").status_code == 200

    response = _set_status(client, admin, order["id"], "preparing")
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_transition"


def test_unknown_status_is_rejected(client, admin, menu):
    order = _create_order(client, admin, menu)
    response = _set_status(client, admin, order["id"], "eaten")
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_status"


def test_missing_order(client, admin):
    response = _set_status(client, admin, 999, "preparing")
    assert response.status_code == 404
    assert response.json()["error"] == "order_not_found"


def test_cancel_releases_table_and_needs_cancel_permission(client, session, admin, menu):
    order = _create_order(client, admin, menu)
    server = make_user(session, models.UserRole.server)

    response = _set_status(client, server, order["id"], "cancelled")
    assert response.status_code == 403
    assert response.json()["message"] == "Missing permission: orders:cancel"

    response = _set_status(client, admin, order["id"], "cancelled", notes="Customer left")
    assert response.status_code == 200
    session.refresh(menu["table"])
    assert menu["table"].is_occupied is False


def test_table_stays_occupied_while_another_order_is_open(client, session, admin, menu):
    first = _create_order(client, admin, menu)
    _create_order(client, admin, menu)

    assert _set_status(client, admin, first["id"], "cancelled").status_code == 200
    session.refresh(menu["table"])
    assert menu["table"].is_occupied is True


def test_status_history_records_actor_and_notes(client, admin, menu):
    order = _create_order(client, admin, menu)
    _set_status(client, admin, order["id"], "confirmed", notes="Checked with guest")

    history = client.get(
        f"/api/v1/orders/{order['id']}/status-history", headers=auth_headers(admin)
    ).json()
    assert [h["new_status"] for h in history] == ["pending", "confirmed"]
    assert history[1]["previous_status"] == "pending"
    assert history[1]["notes"] == "Checked with guest"
    assert history[1]["changed_by_name"] != "System"


def test_customer_facing_statuses_enqueue_notifications(client, session, admin, menu):
    order = _create_order(client, admin, menu)
    _set_status(client, admin, order["id"], "confirmed")
    _set_status(client, admin, order["id"], "preparing")
    _set_status(client, admin, order["id"], "ready")

    notifications = session.exec(
        select(models.OrderNotification).where(models.OrderNotification.order_id == order["id"])
    ).all()
    assert sorted(n.status.value for n in notifications) == ["preparing", "ready"]


def test_notification_failure_does_not_fail_the_status_change(client, session, admin, menu):
    from posengine.notifications import OutboxNotificationSink, get_notification_sink
    from posengine.main import app

    def broken_session():
        raise RuntimeError("outbox down")

    broken = OutboxNotificationSink(session_factory=broken_session, publisher=None)
    app.dependency_overrides[get_notification_sink] = lambda: broken

    order = _create_order(client, admin, menu)
    response = _set_status(client, admin, order["id"], "preparing")

    assert response.status_code == 200
    assert response.json()["status"] == "preparing"
    assert broken.failure_count == 1


# ============ QUERIES ============

def test_list_orders_paginates_and_filters(client, admin, menu):
    for _ in range(3):
        _create_order(client, admin, menu)
    last = _create_order(client, admin, menu, order_type="takeaway", table_id=None)
    headers = auth_headers(admin)

    response = client.get("/api/v1/orders", params={"page": 1, "per_page": 2}, headers=headers)
    body = response.json()
    assert body["meta"] == {"page": 1, "per_page": 2, "total": 4, "total_pages": 2}
    assert body["data"][0]["id"] == last["id"]

    response = client.get("/api/v1/orders", params={"order_type": "takeaway"}, headers=headers)
    assert [o["id"] for o in response.json()["data"]] == [last["id"]]

    response = client.get("/api/v1/orders", params={"order_type": "drive_thru"}, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_order_type"


def test_kitchen_queue_lists_open_orders_with_items(client, session, admin, menu):
    open_order = _create_order(client, admin, menu)
    done = _create_order(client, admin, menu)
    _set_status(client, admin, done["id"], "served")

    cook = make_user(session, models.UserRole.kitchen)
    response = client.get("/api/v1/orders/kitchen", headers=auth_headers(cook))
    assert response.status_code == 200
    queue = response.json()
    assert [o["id"] for o in queue] == [open_order["id"]]
    assert {i["product_name"] for i in queue[0]["items"]} == {"Nasi Goreng", "Es Teh Manis"}


def test_kitchen_updates_item_status(client, session, admin, menu):
    order = _create_order(client, admin, menu)
    item_id = order["items"][0]["id"]
    cook = make_user(session, models.UserRole.kitchen)

    response = client.patch(
        f"/api/v1/orders/{order['id']}/items/{item_id}/status",
        json={"status": "ready"},
        headers=auth_headers(cook),
    )
    assert response.status_code == 200
    item = session.get(models.OrderItem, item_id)
    session.refresh(item)
    assert item.status == models.OrderItemStatus.ready

    response = client.patch(
        f"/api/v1/orders/{order['id']}/items/999/status",
        json={"status": "ready"},
        headers=auth_headers(cook),
    )
    assert response.status_code == 404
    assert response.json()["error"] == "order_item_not_found"


def test_servers_cannot_update_item_status(client, session, admin, menu):
    order = _create_order(client, admin, menu)
    server = make_user(session, models.UserRole.server)
    response = client.patch(
        f"/api/v1/orders/{order['id']}/items/{order['items'][0]['id']}/status",
        json={"status": "ready"},
        headers=auth_headers(server),
    )
    assert response.status_code == 403


def test_second_table_can_be_used_independently(client, session, admin, menu):
    other = make_table(session, "T06")
    order = _create_order(client, admin, menu, table_id=other.id)
    assert order["table_number"] == "T06"
    session.refresh(menu["table"])
    assert menu["table"].is_occupied is False
