"""
Customer account routes: profile, address book and password change.

The address book lives on the customer document. At most one entry is the
default; the first address saved becomes the default, and deleting the
default promotes the next remaining address.
"""
import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo.database import Database

from auth import get_current_customer, hash_password, verify_password
from database import get_db, oid, utcnow
from envelope import NotFoundError, success
from schemas import Address, SavedAddress

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth/customer", tags=["account"])

PROFILE_FIELDS = ("name", "email", "phone", "role", "addresses", "total_orders", "total_spent", "created_at")


def load_addresses(customer: dict) -> List[SavedAddress]:
    return [SavedAddress.model_validate(a) for a in customer.get("addresses") or []]


def find_address(addresses: List[SavedAddress], address_id: str) -> Optional[SavedAddress]:
    return next((a for a in addresses if a.id == address_id), None)


def set_default(addresses: List[SavedAddress], address_id: str) -> None:
    for entry in addresses:
        entry.is_default = entry.id == address_id


def default_address(customer: dict, address_id: Optional[str] = None) -> Optional[Address]:
    """The saved address to ship to: the one asked for, else the default, else the first."""
    addresses = load_addresses(customer)
    if address_id is not None:
        chosen = find_address(addresses, address_id)
        if chosen is None:
            raise NotFoundError("Address not found")
        return chosen.to_address()
    chosen = next((a for a in addresses if a.is_default), addresses[0] if addresses else None)
    return chosen.to_address() if chosen else None


def _save_addresses(db: Database, customer_id: str, addresses: List[SavedAddress]) -> None:
    db["customers"].update_one(
        {"_id": oid(customer_id)},
        {"$set": {"addresses": [a.model_dump() for a in addresses], "updated_at": utcnow()}},
    )


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    phone: Optional[str] = Field(None, pattern=r"^[0-9]{10,15}$")


class AddressPayload(Address):
    type: Literal["home", "work", "other"] = "home"
    is_default: bool = False


class ChangePasswordPayload(BaseModel):
    current_password: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=6)


@router.get("/me")
def me(customer: dict = Depends(get_current_customer)):
    profile = {"id": customer["_id"], **{k: customer.get(k) for k in PROFILE_FIELDS}}
    profile["addresses"] = [a.model_dump() for a in load_addresses(customer)]
    return success("Profile retrieved successfully", profile)


@router.put("/profile")
def update_profile(payload: ProfileUpdate, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    changes = payload.model_dump(exclude_none=True)
    if changes:
        changes["updated_at"] = utcnow()
        db["customers"].update_one({"_id": oid(customer["_id"])}, {"$set": changes})
    customer.update(changes)
    return success("Profile updated successfully", {k: customer.get(k) for k in ("name", "email", "phone")})


@router.get("/addresses")
def list_addresses(customer: dict = Depends(get_current_customer)):
    return success("Addresses retrieved successfully", [a.model_dump() for a in load_addresses(customer)])


@router.post("/addresses")
def add_address(payload: AddressPayload, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    addresses = load_addresses(customer)
    entry = SavedAddress(**payload.model_dump())
    addresses.append(entry)
    if payload.is_default or len(addresses) == 1:
        set_default(addresses, entry.id)
    _save_addresses(db, customer["_id"], addresses)
    return success("Address added successfully", entry.model_dump(), status_code=201)


@router.put("/addresses/{address_id}")
def update_address(address_id: str, payload: AddressPayload, customer: dict = Depends(get_current_customer),
                   db: Database = Depends(get_db)):
    addresses = load_addresses(customer)
    entry = find_address(addresses, address_id)
    if entry is None:
        raise NotFoundError("Address not found")
    for key, value in payload.model_dump(exclude={"is_default"}).items():
        setattr(entry, key, value)
    if payload.is_default:
        set_default(addresses, entry.id)
    _save_addresses(db, customer["_id"], addresses)
    return success("Address updated successfully", entry.model_dump())


@router.delete("/addresses/{address_id}")
def delete_address(address_id: str, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    addresses = load_addresses(customer)
    entry = find_address(addresses, address_id)
    if entry is None:
        raise NotFoundError("Address not found")
    addresses.remove(entry)
    if entry.is_default and addresses:
        set_default(addresses, addresses[0].id)
    _save_addresses(db, customer["_id"], addresses)
    return success("Address deleted successfully", [a.model_dump() for a in addresses])


@router.put("/addresses/{address_id}/default")
def make_default(address_id: str, customer: dict = Depends(get_current_customer), db: Database = Depends(get_db)):
    addresses = load_addresses(customer)
    entry = find_address(addresses, address_id)
    if entry is None:
        raise NotFoundError("Address not found")
    set_default(addresses, entry.id)
    _save_addresses(db, customer["_id"], addresses)
    return success("Default address updated successfully", entry.model_dump())


@router.put("/change-password")
def change_password(payload: ChangePasswordPayload, customer: dict = Depends(get_current_customer),
                    db: Database = Depends(get_db)):
    if not verify_password(payload.current_password, customer.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    db["customers"].update_one(
        {"_id": oid(customer["_id"])},
        {"$set": {"password_hash": hash_password(payload.new_password), "updated_at": utcnow()}},
    )
    logger.info("Customer %s changed password", customer["_id"])
    return success("Password changed successfully")
