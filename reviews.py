"""
Review aggregate: one review per (product, customer, order) in `reviews`.

Every write recomputes the product's denormalized rating and review count from
the approved reviews. That second write is not wrapped in a transaction with
the first; if it fails the product figures stay stale until the next review
write for that product.
"""
import logging
from datetime import datetime
from typing import Annotated, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AfterValidator, BaseModel, Field
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import get_current_customer, get_current_seller
from config import REVIEW_FLAG_THRESHOLD
from database import create_document, get_db, oid, serialize, utcnow
from envelope import DomainError, DuplicateReviewError, NotFoundError, success
from schemas import ObjectIdStr

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reviews", tags=["reviews"])

ReviewStatus = Literal["pending", "approved", "rejected", "flagged"]
FlagReason = Literal["inappropriate", "spam", "fake", "offensive", "other"]

SORTS = {
    "newest": ("created_at", -1),
    "oldest": ("created_at", 1),
    "highest-rating": ("rating", -1),
    "lowest-rating": ("rating", 1),
    "most-helpful": ("helpful", -1),
}


def _check_rating(value: float) -> float:
    if not float(value * 2).is_integer():
        raise ValueError("Rating must be in increments of 0.5")
    return value


Rating = Annotated[float, Field(ge=1, le=5), AfterValidator(_check_rating)]


class ReviewImage(BaseModel):
    url: str
    public_id: Optional[str] = None
    alt: Optional[str] = None


class HelpfulVote(BaseModel):
    customer_id: str
    helpful: bool


class SellerResponse(BaseModel):
    message: str = Field(..., max_length=500)
    responded_at: datetime = Field(default_factory=utcnow)
    responded_by: str


class FlagEntry(BaseModel):
    customer_id: str
    reason: FlagReason
    flagged_at: datetime = Field(default_factory=utcnow)


class ReviewFlags(BaseModel):
    count: int = 0
    reasons: List[FlagReason] = Field(default_factory=list)
    flagged_by: List[FlagEntry] = Field(default_factory=list)


class Review(BaseModel):
    id: Optional[str] = None
    product_id: str
    customer_id: str
    order_id: str
    seller_id: str
    rating: Rating
    title: str = Field(..., max_length=100)
    comment: str = Field(..., max_length=1000)
    images: List[ReviewImage] = Field(default_factory=list)
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    verified: bool = False
    helpful: int = 0
    helpful_votes: List[HelpfulVote] = Field(default_factory=list)
    seller_response: Optional[SellerResponse] = None
    status: ReviewStatus = "approved"
    flagged: ReviewFlags = Field(default_factory=ReviewFlags)
    moderation_notes: Optional[str] = Field(None, max_length=500)
    created_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: dict) -> "Review":
        return cls.model_validate(serialize(doc))

    @property
    def helpful_percentage(self) -> int:
        if not self.helpful_votes:
            return 0
        yes = sum(1 for v in self.helpful_votes if v.helpful)
        return round(yes / len(self.helpful_votes) * 100)

    def record_vote(self, customer_id: str, helpful: bool) -> None:
        for vote in self.helpful_votes:
            if vote.customer_id == customer_id:
                vote.helpful = helpful
                break
        else:
            self.helpful_votes.append(HelpfulVote(customer_id=customer_id, helpful=helpful))
        self.helpful = sum(1 for v in self.helpful_votes if v.helpful)

    def add_flag(self, customer_id: str, reason: str) -> bool:
        if any(f.customer_id == customer_id for f in self.flagged.flagged_by):
            return False
        self.flagged.flagged_by.append(FlagEntry(customer_id=customer_id, reason=reason))
        self.flagged.count += 1
        if reason not in self.flagged.reasons:
            self.flagged.reasons.append(reason)
        if self.flagged.count >= REVIEW_FLAG_THRESHOLD:
            self.status = "flagged"
        return True

    def public(self) -> dict:
        data = self.model_dump(mode="json")
        data["helpful_percentage"] = self.helpful_percentage
        return data


def save_review(db: Database, review: Review) -> Review:
    doc = review.model_dump(exclude={"id"})
    doc["updated_at"] = utcnow()
    db["reviews"].replace_one({"_id": oid(review.id)}, doc)
    return review


def update_product_rating(db: Database, product_id: str) -> None:
    try:
        rows = list(db["reviews"].aggregate([
            {"$match": {"product_id": product_id, "status": "approved"}},
            {"$group": {"_id": None, "average_rating": {"$avg": "$rating"}, "review_count": {"$sum": 1}}},
        ]))
        average, count = (rows[0]["average_rating"], rows[0]["review_count"]) if rows else (0, 0)
        db["products"].update_one(
            {"_id": oid(product_id)},
            {"$set": {"rating": round(average or 0, 1), "review_count": count}},
        )
    except PyMongoError:
        logger.exception("Error updating product rating for %s", product_id)


def get_product_rating_summary(db: Database, product_id: str) -> Dict:
    rows = list(db["reviews"].aggregate([
        {"$match": {"product_id": product_id, "status": "approved"}},
        {"$group": {
            "_id": None,
            "total_reviews": {"$sum": 1},
            "average_rating": {"$avg": "$rating"},
            "ratings": {"$push": "$rating"},
        }},
    ]))
    breakdown = {str(star): 0 for star in range(5, 0, -1)}
    # an empty match may still come back as a single group with a null average
    if not rows or not rows[0]["total_reviews"]:
        return {"total_reviews": 0, "average_rating": 0, "rating_breakdown": breakdown}
    for rating in rows[0]["ratings"]:
        # half stars count toward the whole star below
        breakdown[str(int(rating))] += 1
    return {
        "total_reviews": rows[0]["total_reviews"],
        "average_rating": round(rows[0]["average_rating"] or 0, 1),
        "rating_breakdown": breakdown,
    }


class CreateReviewRequest(BaseModel):
    product_id: ObjectIdStr
    order_id: ObjectIdStr
    rating: Rating
    title: str = Field(..., min_length=5, max_length=100)
    comment: str = Field(..., min_length=10, max_length=1000)
    pros: List[str] = Field(default_factory=list)
    cons: List[str] = Field(default_factory=list)
    images: List[ReviewImage] = Field(default_factory=list)


class UpdateReviewRequest(BaseModel):
    rating: Optional[Rating] = None
    title: Optional[str] = Field(None, min_length=5, max_length=100)
    comment: Optional[str] = Field(None, min_length=10, max_length=1000)
    pros: Optional[List[str]] = None
    cons: Optional[List[str]] = None


class HelpfulRequest(BaseModel):
    helpful: bool


class SellerResponseRequest(BaseModel):
    message: str = Field(..., min_length=10, max_length=500)


class FlagRequest(BaseModel):
    reason: FlagReason


def create_review(db: Database, customer_id: str, payload: CreateReviewRequest) -> Review:
    order = db["orders"].find_one({"_id": oid(payload.order_id), "customer_id": customer_id, "status": "delivered"})
    if not order:
        raise NotFoundError("Order not found or not eligible for review (order must be delivered)")
    if not any(i.get("product_id") == payload.product_id for i in order.get("items", [])):
        raise DomainError("Product not found in this order")
    product = db["products"].find_one({"_id": oid(payload.product_id)})
    if not product:
        raise NotFoundError("Product not found")

    review = Review(
        customer_id=customer_id,
        seller_id=product["seller_id"],
        verified=True,
        created_at=utcnow(),
        **payload.model_dump(),
    )
    try:
        review.id = create_document(db, "reviews", review.model_dump(exclude={"id"}))
    except DuplicateKeyError:
        raise DuplicateReviewError("You have already reviewed this product for this order")
    if review.status == "approved":
        update_product_rating(db, review.product_id)
    return review


def _require_review(db: Database, review_id: str, **owner) -> Review:
    doc = db["reviews"].find_one({"_id": oid(review_id), **owner})
    if not doc:
        raise NotFoundError("Review not found")
    return Review.from_doc(doc)


@router.post("")
def post_review(payload: CreateReviewRequest, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    review = create_review(db, customer["_id"], payload)
    return success("Review created successfully", review.public(), status_code=201)


@router.get("/product/{product_id}")
def product_reviews(
    product_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Literal["newest", "oldest", "highest-rating", "lowest-rating", "most-helpful"] = "newest",
    rating: Optional[float] = Query(None, ge=1, le=5),
    verified: Optional[bool] = None,
    with_images: Optional[bool] = None,
    db: Database = Depends(get_db),
):
    filt: dict = {"product_id": product_id, "status": "approved"}
    if rating is not None:
        filt["rating"] = rating
    if verified:
        filt["verified"] = True
    if with_images:
        filt["images"] = {"$ne": []}
    field, direction = SORTS[sort]
    total = db["reviews"].count_documents(filt)
    docs = db["reviews"].find(filt).sort(field, direction).skip((page - 1) * limit).limit(limit)
    return success("Product reviews retrieved successfully", {
        "reviews": [Review.from_doc(d).public() for d in docs],
        "summary": get_product_rating_summary(db, product_id),
        "pagination": {
            "current_page": page,
            "total_pages": -(-total // limit),
            "total_items": total,
            "items_per_page": limit,
        },
    })


@router.get("/mine")
def my_reviews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    customer: dict = Depends(get_current_customer),
    db: Database = Depends(get_db),
):
    docs = db["reviews"].find({"customer_id": customer["_id"]}).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return success("Reviews retrieved successfully", [Review.from_doc(d).public() for d in docs])


@router.put("/{review_id}")
def edit_review(review_id: str, payload: UpdateReviewRequest, customer: dict = Depends(get_current_customer),
                db: Database = Depends(get_db)):
    review = _require_review(db, review_id, customer_id=customer["_id"])
    for key, value in payload.model_dump(exclude_none=True).items():
        setattr(review, key, value)
    save_review(db, review)
    update_product_rating(db, review.product_id)
    return success("Review updated successfully", review.public())


@router.delete("/{review_id}")
def delete_review(review_id: str, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    review = _require_review(db, review_id, customer_id=customer["_id"])
    db["reviews"].delete_one({"_id": oid(review.id)})
    update_product_rating(db, review.product_id)
    return success("Review deleted successfully")


@router.post("/{review_id}/helpful")
def mark_helpful(review_id: str, payload: HelpfulRequest, customer: dict = Depends(get_current_customer),
                 db: Database = Depends(get_db)):
    review = _require_review(db, review_id)
    review.record_vote(customer["_id"], payload.helpful)
    save_review(db, review)
    return success("Vote recorded successfully", {
        "helpful": review.helpful,
        "helpful_percentage": review.helpful_percentage,
    })


@router.post("/{review_id}/response")
def respond_to_review(review_id: str, payload: SellerResponseRequest, seller: dict = Depends(get_current_seller),
                      db: Database = Depends(get_db)):
    review = _require_review(db, review_id, seller_id=seller["_id"])
    review.seller_response = SellerResponse(message=payload.message, responded_by=seller["_id"])
    save_review(db, review)
    return success("Response added successfully", review.seller_response.model_dump(mode="json"))


@router.post("/{review_id}/flag")
def flag_review(review_id: str, payload: FlagRequest, customer: dict = Depends(get_current_customer),
                db: Database = Depends(get_db)):
    review = _require_review(db, review_id)
    if not review.add_flag(customer["_id"], payload.reason):
        raise DomainError("You have already flagged this review")
    save_review(db, review)
    if review.status == "flagged":
        # flagged reviews drop out of the product average
        update_product_rating(db, review.product_id)
    return success("Review flagged successfully")
