import logging
import os
import random
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from pymongo.database import Database

import account
import auth
import cart
import database
import orders
import products
import reviews
import wishlist
from config import CORS_ORIGINS, LOG_LEVEL
from database import create_document, get_db
from envelope import register_error_handlers, success
from notifications import build_notifier
from schemas import Customer, Product, Seller

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.notifier = build_notifier()
    if database.db is not None:
        database.ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL / DATABASE_NAME not set; running without a database")
    yield


app = FastAPI(title="Marketplace Commerce API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth.router)
app.include_router(account.router)
app.include_router(products.router)
app.include_router(products.inventory_router)
app.include_router(cart.router)
app.include_router(wishlist.router)
app.include_router(wishlist.alerts_router)
app.include_router(orders.router)
app.include_router(orders.seller_router)
app.include_router(reviews.router)


# Health checks
@app.get("/")
def root():
    return {"message": "Marketplace API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


CATEGORIES = ["Home Decor", "Jewellery", "Apparel", "Stationery", "Art"]


# Seed a demo seller, catalog and customers
@app.post("/api/seed")
def seed(db: Database = Depends(get_db)):
    from faker import Faker
    fake = Faker()
    if db["products"].count_documents({}) > 0:
        return success("Catalog already seeded", {"inserted": 0})

    seller = Seller(
        store_name=fake.company()[:100],
        email="seller@marketplace.io",
        contact_number=fake.numerify("98########"),
        password_hash=auth.hash_password("Seller@123"),
    )
    seller_id = create_document(db, "sellers", seller)

    created = 0
    for _ in range(12):
        price = float(random.randrange(199, 2999))
        product = Product(
            name=fake.catch_phrase()[:200],
            description=fake.paragraph(nb_sentences=3),
            price=price,
            original_price=price + random.choice([0, 100, 250]),
            sku=fake.unique.bothify("SKU-####-??").upper(),
            category=random.choice(CATEGORIES),
            stock=random.randint(0, 40),
            colors=random.sample(["red", "blue", "green", "black", "white"], 2),
            sizes=random.sample(["S", "M", "L", "XL"], 2),
            delivery_days=random.randint(2, 10),
            seller_id=seller_id,
        )
        product.in_stock = product.stock > 0
        create_document(db, "products", product)
        created += 1

    for _ in range(10):
        customer = Customer(
            name=fake.name(),
            email=fake.unique.email(),
            phone=fake.numerify("9#########"),
            password_hash=auth.hash_password("Password@123"),
        )
        create_document(db, "customers", customer)
        created += 1
    return success("Demo data seeded", {"inserted": created, "seller_id": seller_id})


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
