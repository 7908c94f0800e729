"""
Wishlist aggregate: one document per customer in the `wishlists` collection.

Lines are identified by product alone. Each line remembers the price it was
added at so the scheduled alert run can spot price drops and restocks.
"""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import get_current_customer, require_admin
from cart import cart_payload, get_or_create_cart, save_cart
from config import MAX_ITEM_QUANTITY
from database import get_db, get_documents, oid, serialize, utcnow
from envelope import NotFoundError, success
from notifications import NotificationService, get_notifier
from products import WISHLIST_PRODUCT_FIELDS, load_products
from schemas import ObjectIdStr

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/wishlist", tags=["wishlist"])
alerts_router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class WishlistItem(BaseModel):
    product_id: str
    added_at: datetime = Field(default_factory=utcnow)
    notify_on_sale: bool = False
    notify_on_restock: bool = False
    price_when_added: float


class Wishlist(BaseModel):
    id: Optional[str] = None
    customer_id: str
    items: List[WishlistItem] = Field(default_factory=list)
    total_items: int = 0
    last_modified: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_doc(cls, doc: dict) -> "Wishlist":
        return cls.model_validate(serialize(doc))

    def _find(self, product_id: str) -> int:
        for index, item in enumerate(self.items):
            if item.product_id == str(product_id):
                return index
        return -1

    def add_item(self, product_id: str, price: float, notify_on_sale: bool = False, notify_on_restock: bool = False) -> bool:
        """Returns True when the product was newly added. For a product that is
        already present only the notification preferences are updated."""
        index = self._find(product_id)
        if index >= 0:
            self.items[index].notify_on_sale = notify_on_sale
            self.items[index].notify_on_restock = notify_on_restock
            return False
        self.items.append(WishlistItem(
            product_id=str(product_id),
            price_when_added=price,
            notify_on_sale=notify_on_sale,
            notify_on_restock=notify_on_restock,
        ))
        return True

    def remove_item(self, product_id: str) -> bool:
        index = self._find(product_id)
        if index < 0:
            return False
        del self.items[index]
        return True

    def has_item(self, product_id: str) -> bool:
        return self._find(product_id) >= 0

    def clear(self) -> None:
        self.items = []

    def toggle_item(self, product_id: str, price: float, notify_on_sale: bool = False, notify_on_restock: bool = False) -> Dict:
        if self.has_item(product_id):
            self.remove_item(product_id)
            return {"action": "removed", "in_wishlist": False}
        self.add_item(product_id, price, notify_on_sale, notify_on_restock)
        return {"action": "added", "in_wishlist": True}

    def recalculate(self) -> None:
        self.total_items = len(self.items)
        self.last_modified = utcnow()


def find_wishlist(db: Database, customer_id: str) -> Optional[Wishlist]:
    doc = db["wishlists"].find_one({"customer_id": customer_id})
    return Wishlist.from_doc(doc) if doc else None


def get_or_create_wishlist(db: Database, customer_id: str) -> Wishlist:
    fresh = Wishlist(customer_id=customer_id)
    doc = db["wishlists"].find_one_and_update(
        {"customer_id": customer_id},
        {"$setOnInsert": fresh.model_dump(exclude={"id", "customer_id"})},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return Wishlist.from_doc(doc)


def save_wishlist(db: Database, wishlist: Wishlist) -> Wishlist:
    wishlist.recalculate()
    doc = wishlist.model_dump(exclude={"id"})
    doc["updated_at"] = wishlist.last_modified
    db["wishlists"].replace_one({"customer_id": wishlist.customer_id}, doc, upsert=True)
    return wishlist


def wishlist_payload(db: Database, wishlist: Wishlist) -> dict:
    products = load_products(db, (i.product_id for i in wishlist.items), WISHLIST_PRODUCT_FIELDS)
    sellers = {}
    seller_ids = {p["seller_id"] for p in products.values() if p.get("seller_id")}
    if seller_ids:
        sellers = {
            str(s["_id"]): s.get("store_name")
            for s in db["sellers"].find({"_id": {"$in": [oid(s) for s in seller_ids]}}, {"store_name": 1})
        }
    data = wishlist.model_dump(mode="json")
    for item in data["items"]:
        product = products.get(item["product_id"])
        if product is not None:
            product["store_name"] = sellers.get(product.get("seller_id"))
        item["product"] = product
    return data


def _alert_candidates(db: Database, flag: str) -> List[tuple]:
    wishlists = get_documents(db, "wishlists", {f"items.{flag}": True})
    product_ids = {i["product_id"] for w in wishlists for i in w.get("items", []) if i.get(flag)}
    products = load_products(db, product_ids)
    customer_ids = [oid(w["customer_id"]) for w in wishlists]
    customers = {
        str(c["_id"]): serialize(c)
        for c in db["customers"].find({"_id": {"$in": customer_ids}}, {"name": 1, "email": 1, "phone": 1})
    }
    pairs = []
    for w in wishlists:
        customer = customers.get(w["customer_id"])
        for item in w.get("items", []):
            product = products.get(item["product_id"])
            if item.get(flag) and product is not None and customer is not None:
                pairs.append((customer, item, product))
    return pairs


def get_items_on_sale(db: Database) -> List[dict]:
    notifications = []
    for customer, item, product in _alert_candidates(db, "notify_on_sale"):
        was = item["price_when_added"]
        now = product.get("price", was)
        if now < was:
            notifications.append({
                "customer": customer,
                "product": product,
                "original_price": was,
                "sale_price": now,
                "discount": (was - now) / was * 100 if was else 0.0,
            })
    return notifications


def get_items_back_in_stock(db: Database) -> List[dict]:
    notifications = []
    for customer, item, product in _alert_candidates(db, "notify_on_restock"):
        if product.get("stock", 0) > 0 and product.get("status") == "active":
            notifications.append({"customer": customer, "product": product})
    return notifications


def run_wishlist_alerts(db: Database, notifier: NotificationService) -> Dict[str, int]:
    sent = failed = 0
    for alert in get_items_on_sale(db):
        result = notifier.send_sale_alert(alert["customer"], alert)
        if result["success"]:
            sent += 1
        else:
            failed += 1
    for alert in get_items_back_in_stock(db):
        result = notifier.send_restock_alert(alert["customer"], alert)
        if result["success"]:
            sent += 1
        else:
            failed += 1
    logger.info("Wishlist alerts: %d sent, %d failed", sent, failed)
    return {"sent": sent, "failed": failed}


class WishlistAddRequest(BaseModel):
    product_id: ObjectIdStr
    notify_on_sale: bool = False
    notify_on_restock: bool = False


class WishlistRemoveRequest(BaseModel):
    product_id: ObjectIdStr


class MoveToCartRequest(BaseModel):
    product_ids: List[ObjectIdStr]


def _require_product(db: Database, product_id: str) -> dict:
    product = db["products"].find_one({"_id": oid(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


def _require_wishlist(db: Database, customer_id: str) -> Wishlist:
    wishlist = find_wishlist(db, customer_id)
    if wishlist is None:
        raise NotFoundError("Wishlist not found")
    return wishlist


@router.get("")
def get_wishlist(customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    wishlist = get_or_create_wishlist(db, customer["_id"])
    products = load_products(db, (i.product_id for i in wishlist.items), ("status",))
    wishlist.items = [i for i in wishlist.items if products.get(i.product_id, {}).get("status") == "active"]
    save_wishlist(db, wishlist)
    return success("Wishlist retrieved successfully", wishlist_payload(db, wishlist))


@router.post("/add")
def add_to_wishlist(payload: WishlistAddRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    product = _require_product(db, payload.product_id)
    wishlist = get_or_create_wishlist(db, customer["_id"])
    added = wishlist.add_item(payload.product_id, float(product["price"]), payload.notify_on_sale, payload.notify_on_restock)
    save_wishlist(db, wishlist)
    message = "Item added to wishlist successfully" if added else "Item already in wishlist, preferences updated"
    return success(message, wishlist_payload(db, wishlist), added=added)


@router.delete("/remove")
def remove_from_wishlist(payload: WishlistRemoveRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    wishlist = _require_wishlist(db, customer["_id"])
    if not wishlist.remove_item(payload.product_id):
        raise NotFoundError("Item not found in wishlist")
    save_wishlist(db, wishlist)
    return success("Item removed from wishlist successfully", wishlist_payload(db, wishlist))


@router.post("/toggle")
def toggle_wishlist(payload: WishlistAddRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    product = _require_product(db, payload.product_id)
    wishlist = get_or_create_wishlist(db, customer["_id"])
    result = wishlist.toggle_item(payload.product_id, float(product["price"]), payload.notify_on_sale, payload.notify_on_restock)
    save_wishlist(db, wishlist)
    preposition = "to" if result["action"] == "added" else "from"
    return success(
        f"Item {result['action']} {preposition} wishlist successfully",
        {"wishlist": wishlist_payload(db, wishlist), **result},
    )


@router.get("/check/{product_id}")
def check_wishlist(product_id: str, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    wishlist = find_wishlist(db, customer["_id"])
    in_wishlist = wishlist.has_item(product_id) if wishlist else False
    return success("Wishlist status checked successfully", {"product_id": product_id, "in_wishlist": in_wishlist})


@router.delete("/clear")
def clear_wishlist(customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    wishlist = _require_wishlist(db, customer["_id"])
    wishlist.clear()
    save_wishlist(db, wishlist)
    return success("Wishlist cleared successfully", wishlist.model_dump(mode="json"))


@router.post("/move-to-cart")
def move_to_cart(payload: MoveToCartRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    wishlist = _require_wishlist(db, customer["_id"])
    cart = get_or_create_cart(db, customer["_id"])
    products = load_products(db, payload.product_ids, ("price", "stock", "status"))

    moved, failed = [], []
    for product_id in payload.product_ids:
        if not wishlist.has_item(product_id):
            failed.append({"product_id": product_id, "reason": "Product not in wishlist"})
            continue
        product = products.get(product_id)
        if cart.quantity_of(product_id) >= MAX_ITEM_QUANTITY:
            failed.append({"product_id": product_id, "reason": f"Cart already holds {MAX_ITEM_QUANTITY} of this product"})
        elif product and product.get("status") == "active" and product.get("stock", 0) > 0:
            cart.add_item(product_id, 1, float(product["price"]))
            wishlist.remove_item(product_id)
            moved.append(product_id)
        else:
            failed.append({"product_id": product_id, "reason": "Product not available or out of stock"})

    # persist the cart before dropping anything from the wishlist
    save_cart(db, cart)
    save_wishlist(db, wishlist)

    return success(
        f"{len(moved)} items moved to cart successfully",
        {"cart": cart_payload(db, cart), "wishlist": wishlist_payload(db, wishlist), "moved": moved, "failed": failed},
    )


@alerts_router.post("/wishlist-alerts")
def send_wishlist_alerts(
    admin: dict = Depends(require_admin),
    db: Database = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
):
    summary = run_wishlist_alerts(db, notifier)
    return success("Wishlist alerts processed", summary)
