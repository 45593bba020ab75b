"""Keyed reservation store: (product_id, session_id) -> quantity, reserved_until.

Product stock lives on the products table and is read on demand. Reservation
writes replace the whole set of rows for one product, mirroring a
last-write-wins document patch. Loading with ``lock=True`` takes a row lock on
the product (SELECT ... FOR UPDATE) which serializes concurrent
read-modify-write cycles on databases that support it.
"""
from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, List

from sqlalchemy.orm import Session

from .errors import NotFound
from .models import Product, StockReservation


def as_utc(value: dt.datetime) -> dt.datetime:
    # sqlite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


@dataclass(frozen=True)
class Reservation:
    session_id: str
    quantity: int
    reserved_until: dt.datetime

    def is_active(self, now: dt.datetime) -> bool:
        return as_utc(self.reserved_until) > now

    def with_quantity(self, quantity: int) -> "Reservation":
        return replace(self, quantity=quantity)

    def as_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "quantity": self.quantity,
            "reserved_until": as_utc(self.reserved_until).isoformat().replace("+00:00", "Z"),
        }


@dataclass
class ProductSnapshot:
    product_id: str
    title: str
    stock: int
    reservations: List[Reservation] = field(default_factory=list)

    def active_reservations(self, now: dt.datetime) -> List[Reservation]:
        return [r for r in self.reservations if r.is_active(now)]


@dataclass
class StockChange:
    product_id: str
    title: str
    previous_stock: int
    new_stock: int


class SqlReservationStore:
    def __init__(self, db: Session):
        self.db = db

    def load(self, product_id: str, *, lock: bool = False) -> ProductSnapshot:
        query = self.db.query(Product).filter(Product.id == product_id)
        if lock:
            query = query.with_for_update()
        product = query.first()
        if product is None:
            raise NotFound("Product", product_id)
        return ProductSnapshot(
            product_id=product.id,
            title=product.title,
            stock=int(product.stock or 0),
            reservations=self._reservations_for(product.id),
        )

    def load_many(self, product_ids: Iterable[str]) -> dict:
        ids = list(dict.fromkeys(product_ids))
        products = self.db.query(Product).filter(Product.id.in_(ids)).all()
        return {
            p.id: ProductSnapshot(
                product_id=p.id,
                title=p.title,
                stock=int(p.stock or 0),
                reservations=self._reservations_for(p.id),
            )
            for p in products
        }

    def products_with_reservations(self) -> List[ProductSnapshot]:
        """Every product carrying at least one reservation row, expired ones included."""
        products = (
            self.db.query(Product)
            .filter(Product.reservations.any())
            .order_by(Product.id)
            .all()
        )
        return [
            ProductSnapshot(
                product_id=p.id,
                title=p.title,
                stock=int(p.stock or 0),
                reservations=self._reservations_for(p.id),
            )
            for p in products
        ]

    def save_reservations(self, product_id: str, reservations: Iterable[Reservation]) -> None:
        """Replace every reservation of product_id with the given list and commit."""
        try:
            (
                self.db.query(StockReservation)
                .filter(StockReservation.product_id == product_id)
                .delete(synchronize_session="fetch")
            )
            for r in reservations:
                self.db.add(
                    StockReservation(
                        product_id=product_id,
                        session_id=r.session_id,
                        quantity=int(r.quantity),
                        reserved_until=as_utc(r.reserved_until),
                    )
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def adjust_stock(self, product_id: str, compute: Callable[[int], int]) -> StockChange:
        """Atomically read stock, compute the new value and commit it."""
        try:
            product = (
                self.db.query(Product)
                .filter(Product.id == product_id)
                .with_for_update()
                .first()
            )
            if product is None:
                raise NotFound("Product", product_id)
            previous = int(product.stock or 0)
            new_stock = int(compute(previous))
            product.stock = new_stock
            self.db.commit()
            return StockChange(product_id=product_id, title=product.title, previous_stock=previous, new_stock=new_stock)
        except Exception:
            self.db.rollback()
            raise

    def discard(self) -> None:
        """End the current unit of work without writing (releases row locks)."""
        self.db.rollback()

    def _reservations_for(self, product_id: str) -> List[Reservation]:
        rows = (
            self.db.query(StockReservation)
            .filter(StockReservation.product_id == product_id)
            .order_by(StockReservation.id)
            .all()
        )
        return [
            Reservation(session_id=row.session_id, quantity=int(row.quantity), reserved_until=as_utc(row.reserved_until))
            for row in rows
        ]
