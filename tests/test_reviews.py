import pytest
from conftest import ADDRESS, bearer
from pydantic import ValidationError
from pymongo.errors import DuplicateKeyError

from database import create_document, utcnow
from reviews import Review, get_product_rating_summary


def review_doc(**overrides):
    doc = {
        "product_id": "p1",
        "customer_id": "c1",
        "order_id": "o1",
        "seller_id": "s1",
        "rating": 4,
        "title": "Lovely piece",
        "comment": "Arrived well packed and looks great.",
        "status": "approved",
    }
    doc.update(overrides)
    return doc


def test_rating_must_be_half_steps():
    Review(**review_doc(rating=4.5))
    with pytest.raises(ValidationError):
        Review(**review_doc(rating=4.3))
    with pytest.raises(ValidationError):
        Review(**review_doc(rating=0.5))


def test_second_review_for_same_purchase_is_rejected(db):
    create_document(db, "reviews", review_doc())
    with pytest.raises(DuplicateKeyError):
        create_document(db, "reviews", review_doc(rating=2))
    create_document(db, "reviews", review_doc(order_id="o2"))
    assert db["reviews"].count_documents({}) == 2


def test_votes_are_one_per_customer():
    review = Review(**review_doc())
    review.record_vote("a", True)
    review.record_vote("b", False)
    review.record_vote("a", True)
    assert review.helpful == 1
    assert review.helpful_percentage == 50
    review.record_vote("b", True)
    assert review.helpful == 2
    assert review.helpful_percentage == 100


def test_flag_threshold_hides_review():
    review = Review(**review_doc())
    for n in range(4):
        assert review.add_flag(f"c{n}", "spam")
    assert review.status == "approved"
    assert review.add_flag("c0", "fake") is False
    assert review.add_flag("c9", "fake")
    assert review.status == "flagged"
    assert review.flagged.count == 5
    assert review.flagged.reasons == ["spam", "fake"]


def test_rating_summary_buckets(db):
    for n, rating in enumerate((5, 4.5, 4, 1)):
        create_document(db, "reviews", review_doc(order_id=f"o{n}", rating=rating))
    create_document(db, "reviews", review_doc(order_id="hidden", rating=1, status="flagged"))

    summary = get_product_rating_summary(db, "p1")
    assert summary["total_reviews"] == 4
    assert summary["average_rating"] == 3.6
    assert summary["rating_breakdown"] == {"5": 1, "4": 2, "3": 0, "2": 0, "1": 1}


def test_rating_summary_without_reviews(db):
    summary = get_product_rating_summary(db, "p1")
    assert summary["total_reviews"] == 0
    assert summary["rating_breakdown"]["5"] == 0
    assert summary["average_rating"] == 0


def test_rating_summary_ignores_hidden_reviews(db):
    create_document(db, "reviews", review_doc(status="flagged"))
    summary = get_product_rating_summary(db, "p1")
    assert summary == {"total_reviews": 0, "average_rating": 0, "rating_breakdown": {"5": 0, "4": 0, "3": 0, "2": 0, "1": 0}}


# HTTP

@pytest.fixture
def delivered(db, customer, seller, make_product):
    product_id = make_product()
    order_id = create_document(db, "orders", {
        "order_id": "ORD17000000000001234",
        "customer_id": customer["_id"],
        "seller_id": seller["_id"],
        "items": [{"product_id": product_id, "quantity": 1, "price": 100.0}],
        "status": "delivered",
        "shipping_address": ADDRESS,
        "actual_delivery": utcnow(),
    })
    return {"product_id": product_id, "order_id": order_id}


def _post_review(client, headers, delivered, rating=4, **extra):
    body = {
        "product_id": delivered["product_id"],
        "order_id": delivered["order_id"],
        "rating": rating,
        "title": "Lovely piece",
        "comment": "Arrived well packed and looks great.",
        **extra,
    }
    return client.post("/api/reviews", json=body, headers=headers)


def test_create_review_updates_product(client, db, customer_headers, delivered):
    res = _post_review(client, customer_headers, delivered, rating=4.5)
    assert res.status_code == 201
    data = res.json()["data"]
    assert data["verified"] is True
    assert data["helpful_percentage"] == 0

    product = db["products"].find_one({})
    assert product["rating"] == 4.5
    assert product["review_count"] == 1


def test_duplicate_review_route(client, customer_headers, delivered):
    _post_review(client, customer_headers, delivered)
    res = _post_review(client, customer_headers, delivered, rating=1)
    assert res.status_code == 400
    assert res.json()["message"] == "You have already reviewed this product for this order"


def test_review_requires_delivered_order(client, db, customer_headers, delivered):
    db["orders"].update_one({}, {"$set": {"status": "shipped"}})
    res = _post_review(client, customer_headers, delivered)
    assert res.status_code == 404


def test_review_product_must_be_in_order(client, customer_headers, delivered, make_product):
    other = make_product(name="Mug", sku="MG-1")
    res = _post_review(client, customer_headers, {**delivered, "product_id": other})
    assert res.status_code == 400
    assert res.json()["message"] == "Product not found in this order"


def test_edit_and_delete_recompute_rating(client, db, customer_headers, delivered):
    review_id = _post_review(client, customer_headers, delivered, rating=2).json()["data"]["id"]

    res = client.put(f"/api/reviews/{review_id}", json={"rating": 5}, headers=customer_headers)
    assert res.status_code == 200
    assert db["products"].find_one({})["rating"] == 5

    res = client.delete(f"/api/reviews/{review_id}", headers=customer_headers)
    assert res.status_code == 200
    product = db["products"].find_one({})
    assert product["rating"] == 0
    assert product["review_count"] == 0


def test_product_reviews_listing(client, customer_headers, delivered):
    _post_review(client, customer_headers, delivered, rating=3)
    res = client.get(f"/api/reviews/product/{delivered['product_id']}", params={"sort": "highest-rating"})
    assert res.status_code == 200
    data = res.json()["data"]
    assert len(data["reviews"]) == 1
    assert data["summary"]["average_rating"] == 3
    assert data["pagination"]["total_items"] == 1

    res = client.get(f"/api/reviews/product/{delivered['product_id']}", params={"rating": 5})
    assert res.json()["data"]["reviews"] == []


def test_helpful_vote_and_flag(client, db, customer_headers, delivered):
    review_id = _post_review(client, customer_headers, delivered).json()["data"]["id"]
    voter = create_document(db, "customers", {"name": "Ravi", "email": "ravi@example.com", "role": "customer"})
    headers = bearer(voter, "customer")

    res = client.post(f"/api/reviews/{review_id}/helpful", json={"helpful": True}, headers=headers)
    assert res.json()["data"] == {"helpful": 1, "helpful_percentage": 100}

    assert client.post(f"/api/reviews/{review_id}/flag", json={"reason": "spam"}, headers=headers).status_code == 200
    res = client.post(f"/api/reviews/{review_id}/flag", json={"reason": "spam"}, headers=headers)
    assert res.status_code == 400
    assert res.json()["message"] == "You have already flagged this review"


def test_seller_response(client, seller_headers, customer_headers, delivered):
    review_id = _post_review(client, customer_headers, delivered).json()["data"]["id"]
    res = client.post(f"/api/reviews/{review_id}/response", json={"message": "Thank you for the kind words!"},
                      headers=seller_headers)
    assert res.status_code == 200
    assert res.json()["data"]["message"] == "Thank you for the kind words!"

    res = client.post(f"/api/reviews/{review_id}/response", json={"message": "short"}, headers=seller_headers)
    assert res.status_code == 400
