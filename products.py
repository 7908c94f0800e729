import logging
import re
from typing import Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from pymongo import ReturnDocument
from pymongo.database import Database

from auth import get_current_seller
from database import create_document, get_db, oid, serialize, utcnow
from envelope import NotFoundError, success
from notifications import NotificationService
from schemas import Product, ProductStatus, StockChange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/products", tags=["products"])
inventory_router = APIRouter(prefix="/api/inventory", tags=["inventory"])

CART_PRODUCT_FIELDS = ("name", "price", "image", "stock", "status")
WISHLIST_PRODUCT_FIELDS = ("name", "price", "original_price", "image", "stock", "status", "rating", "review_count", "seller_id")


def load_products(db: Database, product_ids: Iterable[str], fields: Optional[Iterable[str]] = None) -> Dict[str, dict]:
    """Fetch products by id, keyed by id string. Unknown ids are simply absent."""
    ids = [oid(pid) for pid in set(product_ids)]
    if not ids:
        return {}
    projection = {f: 1 for f in fields} if fields else None
    return {str(p["_id"]): serialize(p) for p in db["products"].find({"_id": {"$in": ids}}, projection)}


def get_active_product(db: Database, product_id: str) -> Optional[dict]:
    return db["products"].find_one({"_id": oid(product_id), "status": "active"})


def decrement_stock(db: Database, product_id: str, quantity: int, notifier: Optional[NotificationService] = None) -> Optional[dict]:
    product = db["products"].find_one_and_update(
        {"_id": oid(product_id)},
        {"$inc": {"stock": -quantity, "orders": 1}, "$set": {"updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if product is None:
        return None
    stock = product.get("stock", 0)
    if stock <= 0 and product.get("in_stock", True):
        db["products"].update_one({"_id": product["_id"]}, {"$set": {"in_stock": False}})
    if notifier is not None and stock <= product.get("low_stock_threshold", 5):
        seller = db["sellers"].find_one({"_id": oid(product["seller_id"])})
        if seller:
            notifier.send_low_stock_alert(seller, [{"name": product.get("name"), "stock": stock}])
    return product


def restore_stock(db: Database, product_id: str, quantity: int) -> None:
    db["products"].update_one(
        {"_id": oid(product_id)},
        {"$inc": {"stock": quantity, "orders": -1}, "$set": {"in_stock": True, "updated_at": utcnow()}},
    )


class ProductPayload(BaseModel):
    name: str = Field(..., max_length=200)
    description: str = Field(..., max_length=2000)
    price: float = Field(..., ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    sku: str
    category: str
    image: Optional[str] = None
    stock: int = Field(0, ge=0)
    low_stock_threshold: int = Field(5, ge=0)
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    materials: List[str] = Field(default_factory=list)
    delivery_days: int = Field(7, ge=1)
    status: ProductStatus = "active"


@router.get("")
def list_products(
    q: Optional[str] = None,
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Database = Depends(get_db),
):
    filt: dict = {"status": "active"}
    if q:
        q = re.escape(q)
        filt["$or"] = [
            {"name": {"$regex": q, "$options": "i"}},
            {"description": {"$regex": q, "$options": "i"}},
        ]
    if category:
        filt["category"] = category
    if min_price is not None or max_price is not None:
        price_filter = {}
        if min_price is not None:
            price_filter["$gte"] = float(min_price)
        if max_price is not None:
            price_filter["$lte"] = float(max_price)
        filt["price"] = price_filter
    total = db["products"].count_documents(filt)
    docs = db["products"].find(filt).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return success(
        "Products retrieved successfully",
        [serialize(d) for d in docs],
        pagination={"current": page, "pages": -(-total // limit), "total": total},
    )


@router.get("/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    doc = db["products"].find_one({"_id": oid(product_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return success("Product retrieved successfully", serialize(doc))


@router.post("")
def create_product(payload: ProductPayload, seller: dict = Depends(get_current_seller), db: Database = Depends(get_db)):
    data = payload.model_dump(exclude_none=True)
    prod = Product(**data, seller_id=seller["_id"], in_stock=payload.stock > 0)
    product_id = create_document(db, "products", prod)
    return success("Product created successfully", {"id": product_id, **prod.model_dump()}, status_code=201)


@router.put("/{product_id}")
def update_product(product_id: str, payload: ProductPayload, seller: dict = Depends(get_current_seller), db: Database = Depends(get_db)):
    update_doc = {k: v for k, v in payload.model_dump().items() if v is not None}
    update_doc["in_stock"] = payload.stock > 0
    update_doc["updated_at"] = utcnow()
    res = db["products"].find_one_and_update(
        {"_id": oid(product_id), "seller_id": seller["_id"]},
        {"$set": update_doc},
        return_document=ReturnDocument.AFTER,
    )
    if res is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return success("Product updated successfully", serialize(res))


class StockUpdate(BaseModel):
    stock: int = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=200)


def _seller_product(db: Database, product_id: str, seller_id: str) -> dict:
    product = db["products"].find_one({"_id": oid(product_id), "seller_id": seller_id})
    if not product:
        raise NotFoundError("Product not found")
    return product


@inventory_router.get("/low-stock")
def low_stock(threshold: int = Query(10, ge=0), seller: dict = Depends(get_current_seller), db: Database = Depends(get_db)):
    docs = db["products"].find(
        {"seller_id": seller["_id"], "status": "active", "stock": {"$gt": 0, "$lte": threshold}},
        {"name": 1, "sku": 1, "stock": 1, "price": 1, "image": 1, "category": 1},
    ).sort("stock", 1)
    return success("Low stock products retrieved successfully", [serialize(d) for d in docs])


@inventory_router.patch("/update-stock/{product_id}")
def update_stock(product_id: str, payload: StockUpdate, seller: dict = Depends(get_current_seller),
                 db: Database = Depends(get_db)):
    product = _seller_product(db, product_id, seller["_id"])
    previous = product.get("stock", 0)
    change = StockChange(date=utcnow(), previous_stock=previous, new_stock=payload.stock,
                         reason=payload.reason, updated_by=seller["_id"])
    db["products"].update_one(
        {"_id": product["_id"]},
        {
            "$set": {"stock": payload.stock, "in_stock": payload.stock > 0, "updated_at": change.date},
            "$push": {"stock_history": change.model_dump()},
        },
    )
    logger.info("Seller %s set stock of %s from %d to %d", seller["_id"], product_id, previous, payload.stock)
    return success("Stock updated successfully", {
        "product_id": product_id,
        "name": product.get("name"),
        "previous_stock": previous,
        "new_stock": payload.stock,
        "reason": payload.reason,
    })


@inventory_router.get("/stock-history/{product_id}")
def stock_history(product_id: str, seller: dict = Depends(get_current_seller), db: Database = Depends(get_db)):
    product = _seller_product(db, product_id, seller["_id"])
    history = sorted(product.get("stock_history", []), key=lambda h: h["date"], reverse=True)
    return success("Stock history retrieved successfully", {
        "product_id": product_id,
        "name": product.get("name"),
        "current_stock": product.get("stock", 0),
        "history": history,
    })
