"""Order lifecycle transitions and their stock side effects.

    payment_pending -> payment_confirmed -> shipped -> complete
    payment_pending -> payment_not_confirmed | canceled
    payment_not_confirmed -> payment_confirmed | canceled

Confirmation permanently decrements stock and clears every hold on the ordered
products. Non-confirmation and cancellation release only the placing session's
holds. The status is written with a conditional UPDATE on the status read
under a row lock, so of two concurrent confirmations only one applies and
stock is never decremented twice. Email problems never undo a transition.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, List

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import crud
from .emailer import order_completion_email, order_shipped_email, payment_confirmation_email
from .errors import InvalidStatusTransition, NotFound, StorefrontError, ValidationError
from .reservations import ReservationEngine
from .schemas import OrderStatus

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, set] = {
    OrderStatus.PAYMENT_PENDING: {
        OrderStatus.PAYMENT_CONFIRMED,
        OrderStatus.PAYMENT_NOT_CONFIRMED,
        OrderStatus.CANCELED,
    },
    OrderStatus.PAYMENT_NOT_CONFIRMED: {OrderStatus.PAYMENT_CONFIRMED, OrderStatus.CANCELED},
    OrderStatus.PAYMENT_CONFIRMED: {OrderStatus.SHIPPED},
    OrderStatus.SHIPPED: {OrderStatus.COMPLETE},
    OrderStatus.COMPLETE: set(),
    OrderStatus.CANCELED: set(),
}

EMAILS = {
    OrderStatus.PAYMENT_CONFIRMED: payment_confirmation_email,
    OrderStatus.SHIPPED: order_shipped_email,
    OrderStatus.COMPLETE: order_completion_email,
}

_SIZE_SUFFIX = re.compile(r"-(?:S|M|L|XL)-")


def base_product_id(product_id: str) -> str:
    """Strip a size suffix such as ``-M-1752900786241`` from a line item product id."""
    return _SIZE_SUFFIX.split(product_id, maxsplit=1)[0]


def parse_status(value) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationError(f"Invalid status: {value!r}") from None


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in TRANSITIONS.get(current, set())


class OrderStatusPromoter:
    def __init__(self, db: Session, engine: ReservationEngine, email_sender):
        self.db = db
        self.engine = engine
        self.email_sender = email_sender

    def promote(self, order_id: str, new_status) -> dict:
        status = parse_status(new_status)
        order = crud.get_order(self.db, order_id, lock=True)
        if order is None:
            raise NotFound("Order", order_id)

        current = parse_status(order.status)
        if not can_transition(current, status):
            self.db.rollback()
            raise InvalidStatusTransition(current.value, status.value)

        quantities = self._quantities_by_product(order.items)
        session_id = order.session_id

        # conditional write: a concurrent promotion that got here first wins
        if not crud.transition_order_status(self.db, order_id, current.value, status.value):
            self.db.rollback()
            latest = crud.get_order(self.db, order_id)
            logger.warning("Order %s changed status concurrently, refusing %s", order_id, status.value)
            raise InvalidStatusTransition(latest.status if latest else current.value, status.value)

        order = crud.get_order(self.db, order_id)
        logger.info("Order %s moved from %s to %s", order_id, current.value, status.value)

        stock_errors: List[dict] = []
        if status is OrderStatus.PAYMENT_CONFIRMED:
            stock_errors = self._confirm_stock(order_id, quantities)
        elif status in (OrderStatus.PAYMENT_NOT_CONFIRMED, OrderStatus.CANCELED):
            stock_errors = self._release_session_holds(order_id, session_id, quantities)

        email_sent = self._send_email(order, status)
        return {
            "success": True,
            "order_id": order_id,
            "previous_status": current.value,
            "status": status.value,
            "email_sent": email_sent,
            "stock_errors": stock_errors,
        }

    @staticmethod
    def _quantities_by_product(items) -> Dict[str, int]:
        quantities: Dict[str, int] = {}
        for item in items:
            pid = base_product_id(item.product_id)
            quantities[pid] = quantities.get(pid, 0) + int(item.quantity)
        return quantities

    def _confirm_stock(self, order_id: str, quantities: Dict[str, int]) -> List[dict]:
        errors = []
        for product_id, quantity in quantities.items():
            try:
                self.engine.decrement_stock(product_id, quantity)
            except (StorefrontError, SQLAlchemyError) as exc:
                logger.error("Order %s: failed to decrement stock for %s: %s", order_id, product_id, exc)
                errors.append({"product_id": product_id, "step": "decrement", "error": str(exc)})
            try:
                self.engine.clear_reservation(product_id, "all")
            except (StorefrontError, SQLAlchemyError) as exc:
                logger.error("Order %s: failed to clear reservations for %s: %s", order_id, product_id, exc)
                errors.append({"product_id": product_id, "step": "clear", "error": str(exc)})
        return errors

    def _release_session_holds(self, order_id: str, session_id, quantities: Dict[str, int]) -> List[dict]:
        if not session_id:
            logger.warning("Order %s has no session id, no reservations to release", order_id)
            return []
        errors = []
        for product_id in quantities:
            try:
                self.engine.clear_reservation(product_id, session_id)
            except (StorefrontError, SQLAlchemyError) as exc:
                logger.error("Order %s: failed to release hold on %s: %s", order_id, product_id, exc)
                errors.append({"product_id": product_id, "step": "release", "error": str(exc)})
        return errors

    def _send_email(self, order, status: OrderStatus) -> bool:
        build = EMAILS.get(status)
        if build is None:
            return False
        subject, html = build(order)
        try:
            return bool(self.email_sender.send(order.customer_email, subject, html))
        except Exception:
            logger.exception("Order %s: %s email failed", order.id, status.value)
            return False
