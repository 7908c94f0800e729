import re
from datetime import timedelta

import pytest
from conftest import ADDRESS, bearer

from database import create_document, utcnow
from envelope import InvalidTransitionError
from orders import ORDER_TRANSITIONS, Order, OrderItem, generate_order_id, price_breakdown


def make_order(**overrides):
    fields = dict(
        customer_id="c1",
        seller_id="s1",
        items=[OrderItem(
            product_id="p1",
            product_snapshot={"name": "Vase", "price": 100},
            quantity=1,
            price=100,
            seller_id="s1",
        )],
        subtotal=100,
        total=217,
        shipping_address=ADDRESS,
        payment_method="cod",
    )
    fields.update(overrides)
    return Order(**fields)


def test_order_number_format():
    assert re.fullmatch(r"ORD\d{13,}\d{4}", generate_order_id())
    assert make_order().order_id.startswith("ORD")


def test_update_status_appends_one_entry():
    order = make_order(status="packed")
    order.update_status("shipped", "Handed to courier", "Clay Works")
    assert order.status == "shipped"
    assert len(order.status_history) == 1
    assert order.status_history[0].note == "Handed to courier"
    assert order.status_history[0].updated_by == "Clay Works"


def test_update_status_keeps_prior_history():
    order = make_order()
    order.update_status("confirmed")
    first = order.status_history[0].model_copy()
    order.update_status("processing")
    assert len(order.status_history) == 2
    assert order.status_history[0] == first
    assert order.status_history[1].note == "Status changed from confirmed to processing"


def test_invalid_transitions_are_rejected():
    order = make_order(status="delivered")
    with pytest.raises(InvalidTransitionError) as exc:
        order.update_status("pending")
    assert exc.value.message == "Cannot change status from delivered to pending"
    assert order.status == "delivered"
    assert order.status_history == []


def test_terminal_states_have_no_exits():
    assert ORDER_TRANSITIONS["cancelled"] == ()
    assert ORDER_TRANSITIONS["refunded"] == ()
    for status in ("pending", "confirmed"):
        assert make_order(status=status).can_transition("cancelled")
    assert not make_order(status="shipped").can_transition("cancelled")


def test_happy_path_walks_the_table():
    order = make_order()
    for status in ("confirmed", "processing", "packed", "shipped", "out_for_delivery", "delivered", "returned", "refunded"):
        order.update_status(status)
    assert [h.status for h in order.status_history][-1] == "refunded"


def test_price_breakdown():
    assert price_breakdown(500) == {"subtotal": 500, "shipping": 99, "tax": 90, "total": 689}
    assert price_breakdown(1000) == {"subtotal": 1000, "shipping": 0, "tax": 180, "total": 1180}


# HTTP

def _checkout(client, headers, items=None, payment_method="cod"):
    body = {"shipping_address": ADDRESS, "payment_method": payment_method}
    if items is not None:
        body["items"] = items
    return client.post("/api/orders/checkout", json=body, headers=headers)


def test_checkout_splits_orders_by_seller(client, db, customer, customer_headers, make_product, notifier):
    other_seller = create_document(db, "sellers", {"store_name": "Loom", "email": "loom@example.com"})
    vase = make_product(price=400.0, stock=10)
    rug = make_product(name="Rug", sku="RG-1", price=700.0, stock=2, seller_id=other_seller)

    res = _checkout(client, customer_headers, [
        {"product_id": vase, "quantity": 2},
        {"product_id": rug, "quantity": 1},
    ], payment_method="upi")
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["order_count"] == 2
    totals = sorted(o["total"] for o in data["orders"])
    # 800 + 99 shipping + 144 tax; 700 + 99 shipping + 126 tax
    assert totals == [925, 1043]
    assert data["total_amount"] == 1968
    assert all(o["payment_status"] == "paid" for o in data["orders"])
    assert all(o["status_history"][0]["status"] == "pending" for o in data["orders"])

    assert db["products"].find_one({"name": "Rug"})["stock"] == 1
    assert db["products"].find_one({"name": "Terracotta Vase"})["stock"] == 8
    assert db["customers"].find_one({"email": "asha@example.com"})["total_orders"] == 2
    assert notifier.events().count("send_order_confirmation") == 2
    assert notifier.events().count("send_payment_confirmation") == 2
    # only the rug fell to its low stock threshold
    assert notifier.events().count("send_low_stock_alert") == 1


def test_checkout_from_cart_clears_cart(client, db, customer_headers, make_product):
    product_id = make_product(price=100.0)
    client.post("/api/cart/add", json={"product_id": product_id, "quantity": 3, "selected_variant": {"color": "red"}},
                headers=customer_headers)

    res = _checkout(client, customer_headers)
    assert res.status_code == 201
    order = res.json()["data"]["orders"][0]
    assert order["items"][0]["selected_variant"]["color"] == "red"
    assert order["items"][0]["product_snapshot"]["name"] == "Terracotta Vase"
    assert order["payment_status"] == "pending"
    assert db["carts"].find_one({})["items"] == []


def test_checkout_with_empty_cart(client, customer_headers):
    res = _checkout(client, customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cart is empty"


def test_checkout_insufficient_stock(client, db, customer_headers, make_product):
    product_id = make_product(stock=1)
    res = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 2}])
    assert res.status_code == 400
    assert res.json()["message"].startswith("Insufficient stock for product: Terracotta Vase")
    assert db["orders"].count_documents({}) == 0


def test_snapshot_survives_catalog_edit(client, db, customer_headers, make_product):
    product_id = make_product(price=100.0)
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 1}]).json()["data"]["orders"][0]
    db["products"].update_one({"name": "Terracotta Vase"}, {"$set": {"price": 999.0, "name": "Renamed"}})

    res = client.get(f"/api/orders/{order['order_id']}", headers=customer_headers)
    item = res.json()["data"]["items"][0]
    assert item["price"] == 100.0
    assert item["product_snapshot"]["name"] == "Terracotta Vase"


def test_customer_cancel_restores_stock(client, db, customer_headers, make_product):
    product_id = make_product(stock=10)
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 4}]).json()["data"]["orders"][0]
    assert db["products"].find_one({})["stock"] == 6

    res = client.patch(f"/api/orders/{order['id']}/cancel", json={"reason": "Changed my mind"}, headers=customer_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "Changed my mind"
    assert db["products"].find_one({})["stock"] == 10

    res = client.patch(f"/api/orders/{order['id']}/cancel", json={}, headers=customer_headers)
    assert res.status_code == 400


def test_other_customers_cannot_see_order(client, db, customer_headers, make_product):
    product_id = make_product()
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 1}]).json()["data"]["orders"][0]
    stranger = create_document(db, "customers", {"name": "Ravi", "email": "ravi@example.com", "role": "customer"})
    res = client.get(f"/api/orders/{order['id']}", headers=bearer(stranger, "customer"))
    assert res.status_code == 404


def test_seller_status_flow(client, db, customer_headers, seller_headers, make_product, notifier):
    product_id = make_product(price=2000.0)
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 1}]).json()["data"]["orders"][0]
    url = f"/api/seller/orders/{order['order_id']}/status"

    res = client.patch(url, json={"status": "shipped"}, headers=seller_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Cannot change status from pending to shipped"

    for status in ("confirmed", "processing", "packed"):
        assert client.patch(url, json={"status": status}, headers=seller_headers).status_code == 200
    res = client.patch(url, json={"status": "shipped", "tracking_number": "TRK123", "note": "Picked up"},
                       headers=seller_headers)
    data = res.json()["data"]
    assert data["tracking_number"] == "TRK123"
    assert data["status_history"][-1]["note"] == "Picked up"
    assert len(data["status_history"]) == 5

    res = client.patch(url, json={"status": "delivered"}, headers=seller_headers)
    assert res.json()["data"]["actual_delivery"] is not None
    seller = db["sellers"].find_one({"store_name": "Clay Works"})
    assert seller["total_orders"] == 1
    assert seller["total_revenue"] == order["total"]
    assert notifier.events().count("send_order_status_update") == 5


def test_seller_listing_filters_and_stats(client, customer_headers, seller_headers, make_product):
    product_id = make_product(stock=50)
    for _ in range(3):
        _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 1}])
    first = client.get("/api/seller/orders", headers=seller_headers).json()["data"][0]
    client.patch(f"/api/seller/orders/{first['id']}/status", json={"status": "confirmed"}, headers=seller_headers)

    res = client.get("/api/seller/orders", params={"status": "pending", "limit": 1}, headers=seller_headers)
    body = res.json()
    assert body["pagination"] == {"current": 1, "pages": 2, "total": 2, "has_next": True, "has_prev": False}
    assert body["stats"]["total_orders"] == 3
    assert body["stats"]["pending_orders"] == 2
    assert body["stats"]["processing_orders"] == 1

    res = client.get("/api/seller/orders", params={"search": "asha"}, headers=seller_headers)
    assert res.json()["pagination"]["total"] == 3
    res = client.get("/api/seller/orders", params={"search": first["order_id"]}, headers=seller_headers)
    assert [o["id"] for o in res.json()["data"]] == [first["id"]]


def test_return_request(client, db, customer_headers, make_product):
    product_id = make_product()
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 1}]).json()["data"]["orders"][0]
    url = f"/api/orders/{order['id']}/return"

    res = client.patch(url, json={"reason": "Cracked"}, headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Only delivered orders can be returned"

    db["orders"].update_one({"order_id": order["order_id"]}, {"$set": {"status": "delivered", "actual_delivery": utcnow()}})
    res = client.patch(url, json={"reason": "Cracked"}, headers=customer_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "returned"
    assert data["return_request"]["reason"] == "Cracked"
    assert data["return_request"]["item_ids"] == [product_id]


def test_return_window_expired(client, db, customer_headers, make_product):
    product_id = make_product()
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 1}]).json()["data"]["orders"][0]
    db["orders"].update_one(
        {"order_id": order["order_id"]},
        {"$set": {"status": "delivered", "actual_delivery": utcnow() - timedelta(days=45)}},
    )
    res = client.patch(f"/api/orders/{order['id']}/return", json={"reason": "Late"}, headers=customer_headers)
    assert res.status_code == 400
    assert res.json()["message"] == "Return window has expired"


def test_seller_cancel_restores_stock(client, db, customer_headers, seller_headers, make_product):
    product_id = make_product(stock=10)
    order = _checkout(client, customer_headers, [{"product_id": product_id, "quantity": 3}]).json()["data"]["orders"][0]
    url = f"/api/seller/orders/{order['id']}/status"
    for status in ("confirmed", "processing"):
        client.patch(url, json={"status": status}, headers=seller_headers)

    res = client.patch(url, json={"status": "cancelled", "note": "Kiln cracked the batch"}, headers=seller_headers)
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["status"] == "cancelled"
    assert data["cancellation_reason"] == "Kiln cracked the batch"
    product = db["products"].find_one({})
    assert product["stock"] == 10
    assert product["in_stock"] is True
