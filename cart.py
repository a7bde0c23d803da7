"""
Cart store: per-user line items.

Rows with a quantity of zero or less are never stored; setting such a
quantity deletes the line instead.
"""
from typing import List

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from errors import NotFoundError, ValidationError
from models import CartItem, Product


def list_cart(db: Session, user_id: int) -> List[dict]:
    rows = db.execute(
        select(CartItem, Product)
        .join(Product, CartItem.product_id == Product.id)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.id)
    ).all()
    return [
        {
            "id": item.id,
            "product_id": product.id,
            "name": product.name,
            "price": product.price,
            "image_url": product.image_url,
            "quantity": item.quantity,
        }
        for item, product in rows
    ]


def _get_line(db: Session, user_id: int, product_id: int):
    return db.scalar(
        select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
    )


def add_to_cart(db: Session, user_id: int, product_id: int, quantity: int = 1) -> List[dict]:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    if db.get(Product, product_id) is None:
        raise NotFoundError(f"Product not found: {product_id}")
    line = _get_line(db, user_id, product_id)
    if line is None:
        db.add(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))
    else:
        line.quantity += quantity
    db.commit()
    return list_cart(db, user_id)


def set_quantity(db: Session, user_id: int, product_id: int, quantity: int) -> List[dict]:
    line = _get_line(db, user_id, product_id)
    if quantity <= 0:
        if line is not None:
            db.delete(line)
    elif line is None:
        return add_to_cart(db, user_id, product_id, quantity)
    else:
        line.quantity = quantity
    db.commit()
    return list_cart(db, user_id)


def remove_from_cart(db: Session, user_id: int, product_id: int) -> List[dict]:
    db.execute(delete(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id))
    db.commit()
    return list_cart(db, user_id)


def clear_cart(db: Session, user_id: int) -> int:
    """Delete every line of the user's cart. Does not commit."""
    result = db.execute(delete(CartItem).where(CartItem.user_id == user_id))
    return result.rowcount or 0
