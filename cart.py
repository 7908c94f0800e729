"""
Cart aggregate: one document per customer in the `carts` collection.

Lines are identified by (product_id, selected_variant). Totals, the
last-modified stamp and the rolling expiry are recomputed on every save, so an
active cart never expires while an abandoned one is reaped by the TTL index.
Writers are not version checked; concurrent saves to the same cart are last
write wins.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import get_current_customer
from config import CART_TTL_DAYS, MAX_ITEM_QUANTITY
from database import get_db, serialize, utcnow
from envelope import NotFoundError, QuantityLimitError, success
from products import CART_PRODUCT_FIELDS, get_active_product, load_products
from schemas import ObjectIdStr, SelectedVariant

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cart", tags=["cart"])

VariantLike = Union[SelectedVariant, dict, None]


def as_variant(variant: VariantLike) -> SelectedVariant:
    if variant is None:
        return SelectedVariant()
    if isinstance(variant, SelectedVariant):
        return variant
    return SelectedVariant(**variant)


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    selected_variant: SelectedVariant = Field(default_factory=SelectedVariant)
    added_at: datetime = Field(default_factory=utcnow)

    def matches(self, product_id: str, variant: SelectedVariant) -> bool:
        return self.product_id == str(product_id) and self.selected_variant == variant


class Cart(BaseModel):
    id: Optional[str] = None
    customer_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_amount: float = 0.0
    last_modified: datetime = Field(default_factory=utcnow)
    expires_at: datetime = Field(default_factory=lambda: utcnow() + timedelta(days=CART_TTL_DAYS))

    @classmethod
    def from_doc(cls, doc: dict) -> "Cart":
        return cls.model_validate(serialize(doc))

    def to_doc(self) -> dict:
        return self.model_dump(exclude={"id"})

    def _find(self, product_id: str, variant: VariantLike) -> int:
        variant = as_variant(variant)
        for index, item in enumerate(self.items):
            if item.matches(product_id, variant):
                return index
        return -1

    def add_item(self, product_id: str, quantity: int, price: float, selected_variant: VariantLike = None) -> CartItem:
        """Merge into the matching line or append a new one.

        On merge the quantities add up and the price is replaced with the
        current catalog price.
        """
        index = self._find(product_id, selected_variant)
        if index >= 0:
            item = self.items[index]
            item.quantity += quantity
            item.price = price
            return item
        item = CartItem(product_id=str(product_id), quantity=quantity, price=price,
                        selected_variant=as_variant(selected_variant))
        self.items.append(item)
        return item

    def update_item_quantity(self, product_id: str, quantity: int, selected_variant: VariantLike = None) -> bool:
        index = self._find(product_id, selected_variant)
        if index < 0:
            return False
        if quantity <= 0:
            del self.items[index]
        else:
            self.items[index].quantity = quantity
        return True

    def remove_item(self, product_id: str, selected_variant: VariantLike = None) -> bool:
        index = self._find(product_id, selected_variant)
        if index < 0:
            return False
        del self.items[index]
        return True

    def has_item(self, product_id: str, selected_variant: VariantLike = None) -> bool:
        return self._find(product_id, selected_variant) >= 0

    def quantity_of(self, product_id: str, selected_variant: VariantLike = None) -> int:
        index = self._find(product_id, selected_variant)
        return self.items[index].quantity if index >= 0 else 0

    def clear(self) -> None:
        self.items = []

    def recalculate(self) -> None:
        self.total_items = sum(item.quantity for item in self.items)
        self.total_amount = sum(item.price * item.quantity for item in self.items)
        now = utcnow()
        self.last_modified = now
        self.expires_at = now + timedelta(days=CART_TTL_DAYS)


def find_cart(db: Database, customer_id: str) -> Optional[Cart]:
    doc = db["carts"].find_one({"customer_id": customer_id})
    return Cart.from_doc(doc) if doc else None


def get_or_create_cart(db: Database, customer_id: str) -> Cart:
    fresh = Cart(customer_id=customer_id)
    doc = db["carts"].find_one_and_update(
        {"customer_id": customer_id},
        {"$setOnInsert": fresh.model_dump(exclude={"id", "customer_id"})},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return Cart.from_doc(doc)


def save_cart(db: Database, cart: Cart) -> Cart:
    for item in cart.items:
        if item.quantity > MAX_ITEM_QUANTITY:
            raise QuantityLimitError(f"Quantity for a single item cannot exceed {MAX_ITEM_QUANTITY}")
    cart.recalculate()
    doc = cart.to_doc()
    doc["updated_at"] = cart.last_modified
    db["carts"].replace_one({"customer_id": cart.customer_id}, doc, upsert=True)
    return cart


def cart_payload(db: Database, cart: Cart) -> dict:
    products = load_products(db, (i.product_id for i in cart.items), CART_PRODUCT_FIELDS)
    data = cart.model_dump(mode="json")
    for item in data["items"]:
        item["product"] = products.get(item["product_id"])
    return data


class AddToCartRequest(BaseModel):
    product_id: ObjectIdStr
    quantity: int = Field(..., ge=1, le=MAX_ITEM_QUANTITY)
    selected_variant: Optional[SelectedVariant] = None


class UpdateCartRequest(BaseModel):
    product_id: ObjectIdStr
    quantity: int = Field(..., ge=0, le=MAX_ITEM_QUANTITY)
    selected_variant: Optional[SelectedVariant] = None


class RemoveFromCartRequest(BaseModel):
    product_id: ObjectIdStr
    selected_variant: Optional[SelectedVariant] = None


def _require_cart(db: Database, customer_id: str) -> Cart:
    cart = find_cart(db, customer_id)
    if cart is None:
        raise NotFoundError("Cart not found")
    return cart


@router.get("")
def get_cart(customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    cart = get_or_create_cart(db, customer["_id"])
    products = load_products(db, (i.product_id for i in cart.items), ("status",))
    cart.items = [i for i in cart.items if products.get(i.product_id, {}).get("status") == "active"]
    save_cart(db, cart)
    return success("Cart retrieved successfully", cart_payload(db, cart))


@router.post("/add")
def add_to_cart(payload: AddToCartRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    product = get_active_product(db, payload.product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found or not available")
    stock = product.get("stock", 0)
    if stock < payload.quantity:
        raise HTTPException(status_code=400, detail=f"Only {stock} items available in stock")

    cart = get_or_create_cart(db, customer["_id"])
    cart.add_item(payload.product_id, payload.quantity, float(product["price"]), payload.selected_variant)
    save_cart(db, cart)
    logger.info("Customer %s added %s x%d to cart", customer["_id"], payload.product_id, payload.quantity)
    return success("Item added to cart successfully", cart_payload(db, cart))


@router.put("/update")
def update_cart_item(payload: UpdateCartRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    cart = _require_cart(db, customer["_id"])
    if not cart.update_item_quantity(payload.product_id, payload.quantity, payload.selected_variant):
        raise NotFoundError("Item not found in cart")
    save_cart(db, cart)
    message = "Cart updated successfully" if payload.quantity > 0 else "Item removed from cart"
    return success(message, cart_payload(db, cart))


@router.delete("/remove")
def remove_cart_item(payload: RemoveFromCartRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    cart = _require_cart(db, customer["_id"])
    if not cart.remove_item(payload.product_id, payload.selected_variant):
        raise NotFoundError("Item not found in cart")
    save_cart(db, cart)
    return success("Item removed from cart successfully", cart_payload(db, cart))


@router.delete("/clear")
def clear_cart(customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    cart = _require_cart(db, customer["_id"])
    cart.clear()
    save_cart(db, cart)
    return success("Cart cleared successfully", cart.model_dump(mode="json"))
