import uuid
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import Order, OrderItem, Product


# -----------------------------
# Products
# -----------------------------

def create_product(db: Session, product_data: dict) -> Product:
    product_id = (product_data.get("id") or "").strip()
    if not product_id:
        raise ValueError("product_id_required")
    if get_product(db, product_id) is not None:
        raise ValueError("duplicate_product_id")

    title = (product_data.get("title") or "").strip()
    if not title:
        raise ValueError("title_required")

    db_product = Product(**{**product_data, "id": product_id, "title": title})
    db.add(db_product)
    db.commit()
    db.refresh(db_product)
    return db_product


def get_product(db: Session, product_id: str) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def get_products(db: Session, skip: int = 0, limit: int = 100, category: Optional[str] = None) -> List[Product]:
    query = db.query(Product)
    if category:
        query = query.filter(func.lower(Product.category) == category.strip().lower())
    return query.order_by(Product.id).offset(skip).limit(limit).all()


# -----------------------------
# Orders
# -----------------------------

def _new_order_id() -> str:
    return f"ORD-{uuid.uuid4().hex[:12].upper()}"


def create_order(
    db: Session,
    *,
    session_id: Optional[str],
    customer: dict,
    items_data: List[dict],
    payment_receipt: Optional[str] = None,
    message: Optional[str] = None,
) -> Order:
    total = sum(Decimal(str(item["price"])) * int(item["quantity"]) for item in items_data)

    db_order = Order(
        id=_new_order_id(),
        session_id=session_id,
        status="payment_pending",
        total=total,
        customer_name=customer["name"],
        customer_email=customer["email"],
        customer_phone=customer.get("phone"),
        customer_address=customer.get("address"),
        payment_receipt=payment_receipt,
        message=message,
    )
    db.add(db_order)
    db.flush()

    for item in items_data:
        db.add(
            OrderItem(
                order_id=db_order.id,
                product_id=item["product_id"],
                title=item["title"],
                quantity=int(item["quantity"]),
                price=item["price"],
                size=item.get("size"),
            )
        )

    db.commit()
    db.refresh(db_order)
    return db_order


def get_order(db: Session, order_id: str, *, lock: bool = False) -> Optional[Order]:
    query = db.query(Order).filter(Order.id == order_id)
    if lock:
        query = query.with_for_update()
    return query.first()


def get_orders(db: Session, skip: int = 0, limit: int = 100, status: Optional[str] = None) -> List[Order]:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    return query.order_by(Order.created_at.desc(), Order.id).offset(skip).limit(limit).all()


def get_order_count(db: Session, status: Optional[str] = None) -> int:
    query = db.query(Order)
    if status:
        query = query.filter(Order.status == status)
    return query.count()


def transition_order_status(db: Session, order_id: str, current_status: str, new_status: str) -> bool:
    """Move the order to new_status only if it is still in current_status. Returns False otherwise."""
    updated = (
        db.query(Order)
        .filter(Order.id == order_id, Order.status == current_status)
        .update({Order.status: new_status}, synchronize_session="fetch")
    )
    db.commit()
    return updated == 1
