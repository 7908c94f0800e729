import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

from config import JWT_ALG, JWT_SECRET, RATE_LIMIT_MAX_ATTEMPTS, RATE_LIMIT_WINDOW_SEC, TOKEN_EXPIRE_MIN
from database import create_document, get_db, oid
from envelope import success
from notifications import NotificationService, get_notifier
from schemas import Customer, Seller

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
auth_scheme = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/api/auth", tags=["auth"])

# Simple in-memory rate limiting for login (per-IP)
rate_store: Dict[str, List[float]] = {}


def prune_rate_store(now: float) -> None:
    stale = [ip for ip, bucket in rate_store.items() if not bucket or now - bucket[-1] > RATE_LIMIT_WINDOW_SEC]
    for ip in stale:
        del rate_store[ip]


def check_rate_limit(ip: str):
    now = datetime.now().timestamp()
    prune_rate_store(now)
    bucket = rate_store.get(ip, [])
    # drop old timestamps
    bucket = [t for t in bucket if now - t <= RATE_LIMIT_WINDOW_SEC]
    if len(bucket) >= RATE_LIMIT_MAX_ATTEMPTS:
        raise HTTPException(status_code=429, detail="Too many login attempts. Please try again later.")
    bucket.append(now)
    rate_store[ip] = bucket


def create_access_token(data: dict, expires_minutes: int = TOKEN_EXPIRE_MIN):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, JWT_SECRET, algorithm=JWT_ALG)


def verify_password(plain: str, hashed: str) -> bool:
    return pwd_context.verify(plain, hashed)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def _decode(credentials: Optional[HTTPAuthorizationCredentials]) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, JWT_SECRET, algorithms=[JWT_ALG])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    if payload.get("sub") is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return payload


def get_current_customer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: Database = Depends(get_db),
) -> dict:
    payload = _decode(credentials)
    if payload.get("role") not in ("customer", "admin"):
        raise HTTPException(status_code=403, detail="Customer account required")
    customer = db["customers"].find_one({"_id": oid(payload["sub"])})
    if not customer or not customer.get("is_active", True):
        raise HTTPException(status_code=401, detail="Customer not found")
    customer["_id"] = str(customer["_id"])
    return customer


def get_current_seller(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    db: Database = Depends(get_db),
) -> dict:
    payload = _decode(credentials)
    if payload.get("role") != "seller":
        raise HTTPException(status_code=403, detail="Seller account required")
    seller = db["sellers"].find_one({"_id": oid(payload["sub"])})
    if not seller:
        raise HTTPException(status_code=401, detail="Seller not found")
    seller["_id"] = str(seller["_id"])
    return seller


def require_admin(customer: dict = Depends(get_current_customer)):
    if customer.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return customer


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


# Auth models
class CustomerRegisterPayload(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10,15}$")
    password: str = Field(..., min_length=6)


class SellerRegisterPayload(BaseModel):
    store_name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    contact_number: Optional[str] = Field(None, pattern=r"^[0-9]{10,15}$")
    password: str = Field(..., min_length=6)


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


@router.post("/customer/register")
def register_customer(
    payload: CustomerRegisterPayload,
    db: Database = Depends(get_db),
    notifier: NotificationService = Depends(get_notifier),
):
    if db["customers"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    customer = Customer(
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
    )
    customer_id = create_document(db, "customers", customer)
    notifier.send_welcome({"name": customer.name, "email": customer.email, "phone": customer.phone})
    token = create_access_token({"sub": customer_id, "role": customer.role})
    logger.info("Customer %s registered", customer_id)
    return success(
        "Registration successful",
        {"token": token, "customer": {"id": customer_id, "name": customer.name, "email": customer.email}},
        status_code=201,
    )


@router.post("/customer/login")
def login_customer(payload: LoginPayload, request: Request, db: Database = Depends(get_db)):
    check_rate_limit(_client_ip(request))
    doc = db["customers"].find_one({"email": payload.email})
    if not doc or not verify_password(payload.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(doc["_id"]), "role": doc.get("role", "customer")})
    return success(
        "Login successful",
        {"token": token, "customer": {"id": str(doc["_id"]), "name": doc.get("name"), "email": doc.get("email"), "role": doc.get("role")}},
    )


@router.post("/seller/register")
def register_seller(payload: SellerRegisterPayload, db: Database = Depends(get_db)):
    if db["sellers"].find_one({"email": payload.email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    seller = Seller(
        store_name=payload.store_name,
        email=payload.email,
        contact_number=payload.contact_number,
        password_hash=hash_password(payload.password),
    )
    seller_id = create_document(db, "sellers", seller)
    token = create_access_token({"sub": seller_id, "role": "seller"})
    return success(
        "Registration successful",
        {"token": token, "seller": {"id": seller_id, "store_name": seller.store_name, "email": seller.email}},
        status_code=201,
    )


@router.post("/seller/login")
def login_seller(payload: LoginPayload, request: Request, db: Database = Depends(get_db)):
    check_rate_limit(_client_ip(request))
    doc = db["sellers"].find_one({"email": payload.email})
    if not doc or not verify_password(payload.password, doc.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_access_token({"sub": str(doc["_id"]), "role": "seller"})
    return success(
        "Login successful",
        {"token": token, "seller": {"id": str(doc["_id"]), "store_name": doc.get("store_name"), "email": doc.get("email")}},
    )
