"""Customer profile lookups used by checkout."""
from typing import Optional

from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import REQUIRED_SHIPPING_FIELDS, SHIPPING_FIELDS, User


def get_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def get_shipping_address(db: Session, user_id: int) -> dict:
    return get_user(db, user_id).shipping_snapshot()


def missing_shipping_fields(address: dict) -> list:
    return [f for f in REQUIRED_SHIPPING_FIELDS if not (address.get(f) or "").strip()]


def require_complete_address(address: dict) -> dict:
    missing = missing_shipping_fields(address)
    if missing:
        raise ValidationError(
            "Shipping address is incomplete", missing_fields=missing
        )
    return address


def update_shipping_address(db: Session, user_id: int, address: dict) -> dict:
    user = get_user(db, user_id)
    for field in SHIPPING_FIELDS:
        value: Optional[str] = address.get(field)
        setattr(user, field, value.strip() if isinstance(value, str) else value)
    db.commit()
    return user.shipping_snapshot()
