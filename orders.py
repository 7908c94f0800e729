"""
Order aggregate: one document per seller per checkout in the `orders` collection.

Items and addresses are snapshots taken at checkout, so later catalog edits do
not change historical orders. Status changes go through an explicit
transition table and each accepted change appends one history entry.
"""
import logging
import random
import re
import time
from datetime import datetime, timedelta
from typing import Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from account import default_address
from auth import get_current_customer, get_current_seller
from cart import find_cart, save_cart
from config import FLAT_SHIPPING, FREE_SHIPPING_THRESHOLD, MAX_ITEM_QUANTITY, RETURN_WINDOW_DAYS, TAX_RATE
from database import as_utc, create_document, get_db, oid, serialize, utcnow
from envelope import DomainError, InvalidTransitionError, NotFoundError, success
from notifications import NotificationService, get_notifier
from products import decrement_stock, restore_stock
from schemas import (Address, Customization, CustomerInfo, ObjectIdStr, PaymentMethod, PaymentStatus,
                     ProductSnapshot, SelectedVariant)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["orders"])
seller_router = APIRouter(prefix="/api/seller/orders", tags=["seller orders"])

OrderStatus = Literal[
    "pending", "confirmed", "processing", "packed", "shipped",
    "out_for_delivery", "delivered", "cancelled", "returned", "refunded",
]

ORDER_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("confirmed", "cancelled"),
    "confirmed": ("processing", "cancelled"),
    "processing": ("packed", "cancelled"),
    "packed": ("shipped", "cancelled"),
    "shipped": ("out_for_delivery", "delivered"),
    "out_for_delivery": ("delivered", "returned"),
    "delivered": ("returned",),
    "returned": ("refunded",),
    "cancelled": (),
    "refunded": (),
}

CUSTOMER_CANCELLABLE = ("pending", "confirmed")
ORDER_ID_ATTEMPTS = 3


def generate_order_id() -> str:
    return f"ORD{int(time.time() * 1000)}{random.randint(1000, 9999)}"


class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    timestamp: datetime = Field(default_factory=utcnow)
    note: str = ""
    updated_by: str = "system"


class OrderItem(BaseModel):
    product_id: str
    product_snapshot: ProductSnapshot
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    selected_variant: SelectedVariant = Field(default_factory=SelectedVariant)
    customization: Optional[Customization] = None
    delivery_days: int = 7
    seller_id: str


class ReturnRequest(BaseModel):
    reason: str
    requested_at: datetime = Field(default_factory=utcnow)
    item_ids: List[str] = Field(default_factory=list)
    status: Literal["pending", "approved", "rejected", "processed"] = "pending"


class Order(BaseModel):
    id: Optional[str] = None
    order_id: str = Field(default_factory=generate_order_id)
    customer_id: str
    customer_info: CustomerInfo = Field(default_factory=CustomerInfo)
    seller_id: str
    items: List[OrderItem]
    status: OrderStatus = "pending"
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    payment_id: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    actual_delivery: Optional[datetime] = None
    tracking_number: Optional[str] = None
    shipping_partner: Optional[str] = None
    return_request: Optional[ReturnRequest] = None
    cancellation_reason: Optional[str] = None
    refund_amount: float = 0
    notes: Optional[str] = None
    gift_message: Optional[str] = None
    source: Literal["web", "mobile", "api", "admin"] = "web"
    created_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "Order":
        return cls.model_validate(serialize(doc))

    def to_doc(self) -> dict:
        return self.model_dump(exclude={"id"})

    def can_transition(self, new_status: str) -> bool:
        return new_status in ORDER_TRANSITIONS.get(self.status, ())

    def update_status(self, new_status: str, note: str = "", updated_by: str = "system") -> StatusHistoryEntry:
        if not self.can_transition(new_status):
            raise InvalidTransitionError(self.status, new_status)
        old_status = self.status
        self.status = new_status
        entry = StatusHistoryEntry(
            status=new_status,
            note=note or f"Status changed from {old_status} to {new_status}",
            updated_by=updated_by,
        )
        self.status_history.append(entry)
        return entry


def insert_order(db: Database, order: Order) -> Order:
    """Insert with a fresh order number on the rare duplicate key clash."""
    for _ in range(ORDER_ID_ATTEMPTS - 1):
        try:
            order.id = create_document(db, "orders", order.to_doc())
            return order
        except DuplicateKeyError:
            logger.warning("Order number %s already taken, regenerating", order.order_id)
            order.order_id = generate_order_id()
    order.id = create_document(db, "orders", order.to_doc())
    return order


def save_order(db: Database, order: Order) -> Order:
    doc = order.to_doc()
    doc["updated_at"] = utcnow()
    db["orders"].replace_one({"_id": oid(order.id)}, doc)
    return order


def find_order(db: Database, ref: str, **owner) -> Optional[Order]:
    """Look an order up by document id or by its human-readable order number."""
    query = {"_id": ObjectId(ref)} if ObjectId.is_valid(ref) else {"order_id": ref}
    query.update(owner)
    doc = db["orders"].find_one(query)
    return Order.from_doc(doc) if doc else None


def release_stock(db: Database, order: Order) -> None:
    for item in order.items:
        restore_stock(db, item.product_id, item.quantity)


def _require_order(db: Database, ref: str, **owner) -> Order:
    order = find_order(db, ref, **owner)
    if order is None:
        raise NotFoundError("Order not found")
    return order


def price_breakdown(subtotal: float) -> Dict[str, float]:
    shipping = 0 if subtotal > FREE_SHIPPING_THRESHOLD else FLAT_SHIPPING
    tax = round(subtotal * TAX_RATE)
    return {"subtotal": subtotal, "shipping": shipping, "tax": tax, "total": subtotal + shipping + tax}


def build_seller_query(seller_id: str, status: Optional[str] = None, start_date: Optional[datetime] = None,
                       end_date: Optional[datetime] = None, search: Optional[str] = None) -> dict:
    query: dict = {"seller_id": seller_id}
    if status and status != "all":
        query["status"] = status
    if start_date or end_date:
        query["created_at"] = {}
        if start_date:
            query["created_at"]["$gte"] = start_date
        if end_date:
            query["created_at"]["$lte"] = end_date
    if search:
        search = re.escape(search)
        query["$or"] = [
            {"order_id": {"$regex": search, "$options": "i"}},
            {"customer_info.name": {"$regex": search, "$options": "i"}},
            {"customer_info.email": {"$regex": search, "$options": "i"}},
        ]
    return query


def _sort_spec(sort: str) -> Tuple[str, int]:
    field = sort.lstrip("-")
    if field not in ("created_at", "total", "status", "order_id"):
        field = "created_at"
    return field, -1 if sort.startswith("-") else 1


def get_by_seller_with_filters(db: Database, seller_id: str, page: int = 1, limit: int = 10,
                               status: Optional[str] = None, start_date: Optional[datetime] = None,
                               end_date: Optional[datetime] = None, search: Optional[str] = None,
                               sort: str = "-created_at") -> Tuple[List[Order], int]:
    query = build_seller_query(seller_id, status, start_date, end_date, search)
    field, direction = _sort_spec(sort)
    cursor = db["orders"].find(query).sort(field, direction).skip((page - 1) * limit).limit(limit)
    return [Order.from_doc(d) for d in cursor], db["orders"].count_documents(query)


def seller_order_stats(db: Database, seller_id: str) -> Dict[str, float]:
    stats = {
        "total_orders": 0, "total_revenue": 0.0, "pending_orders": 0,
        "processing_orders": 0, "shipped_orders": 0, "delivered_orders": 0,
    }
    groups = db["orders"].aggregate([
        {"$match": {"seller_id": seller_id}},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$total"}}},
    ])
    for g in groups:
        stats["total_orders"] += g["count"]
        stats["total_revenue"] += g["revenue"]
        if g["_id"] == "pending":
            stats["pending_orders"] += g["count"]
        elif g["_id"] in ("confirmed", "processing", "packed"):
            stats["processing_orders"] += g["count"]
        elif g["_id"] in ("shipped", "out_for_delivery"):
            stats["shipped_orders"] += g["count"]
        elif g["_id"] == "delivered":
            stats["delivered_orders"] += g["count"]
    return stats


# Checkout
class CheckoutItem(BaseModel):
    product_id: ObjectIdStr
    quantity: int = Field(..., ge=1, le=MAX_ITEM_QUANTITY)
    selected_variant: Optional[SelectedVariant] = None
    customization: Optional[Customization] = None


class CheckoutRequest(BaseModel):
    items: Optional[List[CheckoutItem]] = Field(None, min_length=1)
    shipping_address: Optional[Address] = None
    address_id: Optional[str] = None
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=500)
    gift_message: Optional[str] = Field(None, max_length=500)


class CancelRequest(BaseModel):
    reason: str = Field("Cancelled by customer", max_length=500)


class ReturnRequestPayload(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    item_ids: Optional[List[str]] = None


class StatusUpdateRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = None


def checkout(db: Database, customer: dict, payload: CheckoutRequest,
             notifier: Optional[NotificationService] = None) -> List[Order]:
    shipping_address = payload.shipping_address or default_address(customer, payload.address_id)
    if shipping_address is None:
        raise DomainError("Shipping address is required")

    from_cart = payload.items is None
    cart = None
    if from_cart:
        cart = find_cart(db, customer["_id"])
        if cart is None or not cart.items:
            raise DomainError("Cart is empty")
        lines = [CheckoutItem(product_id=i.product_id, quantity=i.quantity, selected_variant=i.selected_variant)
                 for i in cart.items]
    else:
        lines = payload.items

    product_ids = {line.product_id for line in lines}
    products = {
        str(p["_id"]): p
        for p in db["products"].find({"_id": {"$in": [oid(pid) for pid in product_ids]}, "status": "active", "in_stock": True})
    }
    if len(products) != len(product_ids):
        raise DomainError("One or more products not found or not available")

    requested: Dict[str, int] = {}
    for line in lines:
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
    for product_id, quantity in requested.items():
        product = products[product_id]
        if product.get("stock", 0) < quantity:
            raise DomainError(
                f"Insufficient stock for product: {product['name']}. "
                f"Available: {product.get('stock', 0)}, Requested: {quantity}"
            )

    by_seller: Dict[str, List[OrderItem]] = {}
    for line in lines:
        product = products[line.product_id]
        by_seller.setdefault(product["seller_id"], []).append(OrderItem(
            product_id=line.product_id,
            product_snapshot=ProductSnapshot(
                name=product["name"], price=product["price"], image=product.get("image"),
                sku=product.get("sku"), category=product.get("category"),
            ),
            quantity=line.quantity,
            price=float(product["price"]),
            selected_variant=line.selected_variant or SelectedVariant(),
            customization=line.customization,
            delivery_days=product.get("delivery_days", 7),
            seller_id=product["seller_id"],
        ))

    now = utcnow()
    info = CustomerInfo(name=customer.get("name"), email=customer.get("email"), phone=customer.get("phone"))
    paid = payload.payment_method != "cod"
    created: List[Order] = []
    for seller_id, items in by_seller.items():
        pricing = price_breakdown(sum(i.price * i.quantity for i in items))
        order = Order(
            customer_id=customer["_id"],
            customer_info=info,
            seller_id=seller_id,
            items=items,
            shipping_address=shipping_address,
            billing_address=payload.billing_address or shipping_address,
            payment_method=payload.payment_method,
            payment_status="paid" if paid else "pending",
            notes=payload.notes,
            gift_message=payload.gift_message,
            estimated_delivery=now + timedelta(days=max(i.delivery_days for i in items)),
            status_history=[StatusHistoryEntry(status="pending", note="Order placed by customer", updated_by="customer")],
            created_at=now,
            **pricing,
        )
        insert_order(db, order)
        for item in items:
            decrement_stock(db, item.product_id, item.quantity, notifier)
        created.append(order)
        logger.info("Order %s created for customer %s (seller %s, total %.2f)",
                    order.order_id, customer["_id"], seller_id, order.total)

    grand_total = sum(o.total for o in created)
    db["customers"].update_one(
        {"_id": oid(customer["_id"])},
        {"$inc": {"total_orders": len(created), "total_spent": grand_total}},
    )

    if cart is not None:
        cart.clear()
        save_cart(db, cart)

    if notifier is not None:
        for order in created:
            order_data = order.model_dump(mode="json")
            notifier.send_order_confirmation(info.model_dump(), order_data)
            if paid:
                notifier.send_payment_confirmation(info.model_dump(), {"order_id": order.order_id, "amount": order.total})
    return created


@router.post("/checkout")
def create_orders(
    payload: CheckoutRequest,
    customer: dict = Depends(get_current_customer),
    db: Database = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
):
    created = checkout(db, customer, payload, notifier)
    return success(
        f"{len(created)} order(s) created successfully",
        {
            "orders": [o.model_dump(mode="json") for o in created],
            "total_amount": sum(o.total for o in created),
            "order_count": len(created),
        },
        status_code=201,
    )


@router.get("")
def list_my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    customer: dict = Depends(get_current_customer),
    db: Database = Depends(get_db),
):
    query: dict = {"customer_id": customer["_id"]}
    if status:
        query["status"] = status
    total = db["orders"].count_documents(query)
    docs = db["orders"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return success(
        "Orders retrieved successfully",
        [Order.from_doc(d).model_dump(mode="json") for d in docs],
        pagination={"current": page, "pages": -(-total // limit), "total": total},
    )


@router.get("/{order_ref}")
def get_my_order(order_ref: str, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    order = _require_order(db, order_ref, customer_id=customer["_id"])
    return success("Order retrieved successfully", order.model_dump(mode="json"))


@router.patch("/{order_ref}/cancel")
def cancel_order(order_ref: str, payload: CancelRequest, customer: dict = Depends(get_current_customer),
                 db: Database = Depends(get_db)):
    order = _require_order(db, order_ref, customer_id=customer["_id"])
    if order.status not in CUSTOMER_CANCELLABLE:
        raise DomainError("Order cannot be cancelled at this stage")
    order.update_status("cancelled", payload.reason, "customer")
    order.cancellation_reason = payload.reason
    save_order(db, order)
    release_stock(db, order)
    return success("Order cancelled successfully", order.model_dump(mode="json"))


@router.patch("/{order_ref}/return")
def request_return(order_ref: str, payload: ReturnRequestPayload, customer: dict = Depends(get_current_customer),
                   db: Database = Depends(get_db)):
    order = _require_order(db, order_ref, customer_id=customer["_id"])
    if order.status != "delivered":
        raise DomainError("Only delivered orders can be returned")
    delivered_at = as_utc(order.actual_delivery or order.estimated_delivery)
    if delivered_at is not None and utcnow() > delivered_at + timedelta(days=RETURN_WINDOW_DAYS):
        raise DomainError("Return window has expired")
    order.update_status("returned", f"Return requested: {payload.reason}", "customer")
    order.return_request = ReturnRequest(
        reason=payload.reason,
        item_ids=payload.item_ids or [i.product_id for i in order.items],
    )
    save_order(db, order)
    return success("Return request submitted successfully", order.model_dump(mode="json"))


@seller_router.get("")
def list_seller_orders(
    status: Optional[Literal[OrderStatus, "all"]] = "all",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
    sort: str = "-created_at",
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    seller: dict = Depends(get_current_seller),
    db: Database = Depends(get_db),
):
    search = search.strip() if search else None
    orders, total = get_by_seller_with_filters(db, seller["_id"], page, limit, status, start_date, end_date, search, sort)
    pages = -(-total // limit)
    return success(
        "Orders retrieved successfully",
        [o.model_dump(mode="json") for o in orders],
        pagination={"current": page, "pages": pages, "total": total, "has_next": page < pages, "has_prev": page > 1},
        stats=seller_order_stats(db, seller["_id"]),
    )


@seller_router.get("/{order_ref}")
def get_seller_order(order_ref: str, seller: dict = Depends(get_current_seller), db: Database = Depends(get_db)):
    order = _require_order(db, order_ref, seller_id=seller["_id"])
    return success("Order retrieved successfully", order.model_dump(mode="json"))


@seller_router.patch("/{order_ref}/status")
def update_order_status(
    order_ref: str,
    payload: StatusUpdateRequest,
    seller: dict = Depends(get_current_seller),
    db: Database = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
):
    order = _require_order(db, order_ref, seller_id=seller["_id"])
    order.update_status(payload.status, payload.note or f"Status updated to {payload.status}", seller.get("store_name", "seller"))

    if payload.tracking_number and payload.status in ("shipped", "out_for_delivery"):
        order.tracking_number = payload.tracking_number
    if payload.status == "delivered":
        order.actual_delivery = utcnow()
    if payload.status == "cancelled":
        order.cancellation_reason = payload.note or "Cancelled by seller"
    if payload.status == "refunded" and order.payment_status == "paid":
        order.payment_status = "refunded"
        order.refund_amount = order.total
    save_order(db, order)

    if payload.status == "cancelled":
        release_stock(db, order)
    if payload.status == "delivered":
        db["sellers"].update_one({"_id": oid(seller["_id"])}, {"$inc": {"total_orders": 1, "total_revenue": order.total}})

    notifier.send_order_status_update(order.customer_info.model_dump(), order.model_dump(mode="json"))
    logger.info("Order %s moved to %s by seller %s", order.order_id, order.status, seller["_id"])
    return success("Order status updated successfully", order.model_dump(mode="json"))
