"""Reservation engine: soft holds of limited stock for shopper sessions.

Every reservation write is a whole-list replacement for one product. The
product row is locked while the list is read, checked and written back, so on
PostgreSQL concurrent reserve calls for the same product are serialized. On a
store without row locks the last writer wins and a narrow race can briefly
over-reserve; short hold durations and the confirm-time stock decrement bound
the damage.

Insufficient stock and rate limiting are returned as ``{"success": False}``
results. Malformed input raises ValidationError, unknown products raise
NotFound, and transient store failures are retried with exponential backoff
before StoreUnavailable is raised.
"""
from __future__ import annotations

import datetime as dt
import logging
import re
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from .broadcast import ACTIONS as BROADCAST_ACTIONS
from .broadcast import StockBroadcaster
from .config import (
    RESERVATION_HOLD_MINUTES,
    ROLLBACK_HOLD_MINUTES,
    STORE_RETRY_ATTEMPTS,
    STORE_RETRY_BASE_DELAY,
)
from .errors import StoreUnavailable, ValidationError
from .rate_limiter import utcnow
from .reservation_store import ProductSnapshot, Reservation, as_utc
from .retry import retry_store_operation

logger = logging.getLogger(__name__)

CLEAR_ALL = "all"
SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-:.]{1,128}$")
CLEANUP_BATCH_SIZE = 50


def to_iso(value: dt.datetime) -> str:
    return as_utc(value).isoformat().replace("+00:00", "Z")


def _require_product_id(product_id) -> str:
    if not isinstance(product_id, str) or not product_id.strip():
        raise ValidationError("Product ID is required")
    return product_id.strip()


def _require_session_id(session_id) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError("Session ID is required")
    session_id = session_id.strip()
    if session_id == CLEAR_ALL or not SESSION_ID_PATTERN.match(session_id):
        raise ValidationError("Session ID is malformed")
    return session_id


def _require_quantity(quantity, *, field: str = "quantity") -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(f"{field} must be a positive integer")
    return quantity


def _merge_items(items) -> Dict[str, int]:
    if not items:
        raise ValidationError("Items array is required")
    merged: Dict[str, int] = {}
    for item in items:
        if isinstance(item, dict):
            pid, qty = item.get("product_id"), item.get("quantity")
        else:
            pid, qty = getattr(item, "product_id", None), getattr(item, "quantity", None)
        pid = _require_product_id(pid)
        merged[pid] = merged.get(pid, 0) + _require_quantity(qty)
    return merged


class ReservationEngine:
    def __init__(
        self,
        store,
        *,
        broadcaster: Optional[StockBroadcaster] = None,
        session_validator=None,
        store_limiter=None,
        clock: Callable[[], dt.datetime] = utcnow,
        hold_duration: dt.timedelta = dt.timedelta(minutes=RESERVATION_HOLD_MINUTES),
        rollback_hold_duration: dt.timedelta = dt.timedelta(minutes=ROLLBACK_HOLD_MINUTES),
        retry_attempts: int = STORE_RETRY_ATTEMPTS,
        retry_base_delay: float = STORE_RETRY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.broadcaster = broadcaster or StockBroadcaster()
        self.session_validator = session_validator
        self.store_limiter = store_limiter
        self.clock = clock
        self.hold_duration = hold_duration
        self.rollback_hold_duration = rollback_hold_duration
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    # -----------------------------
    # plumbing
    # -----------------------------

    def _run(self, name: str, operation):
        def _attempt():
            try:
                return operation()
            except Exception:
                self.store.discard()
                raise

        return retry_store_operation(
            _attempt,
            name=name,
            max_attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            on_retry=self.store.discard,
            sleep=self.sleep,
        )

    def _throttle(self, operation: str) -> None:
        if self.store_limiter is None:
            return
        result = self.store_limiter.check(operation)
        if not result.allowed:
            raise StoreUnavailable(f"Rate limit exceeded for {operation}")

    @staticmethod
    def _split(active: List[Reservation], session_id: str) -> Tuple[Optional[Reservation], List[Reservation]]:
        mine = next((r for r in active if r.session_id == session_id), None)
        others = [r for r in active if r.session_id != session_id]
        return mine, others

    @staticmethod
    def _remaining(stock: int, reservations: Iterable[Reservation]) -> int:
        return max(0, stock - sum(r.quantity for r in reservations))

    # -----------------------------
    # reserve / rollback
    # -----------------------------

    def reserve(
        self,
        product_id: str,
        session_id: str,
        quantity: int,
        *,
        hold_duration: Optional[dt.timedelta] = None,
        operation: str = "reserve",
    ) -> dict:
        """Set this session's hold on product_id to exactly `quantity` units."""
        product_id = _require_product_id(product_id)
        session_id = _require_session_id(session_id)
        quantity = _require_quantity(quantity)
        hold = hold_duration or self.hold_duration
        self._throttle(operation)

        def _reserve() -> dict:
            now = self.clock()
            snapshot = self.store.load(product_id, lock=True)
            active = snapshot.active_reservations(now)
            mine, others = self._split(active, session_id)
            available = self._remaining(snapshot.stock, others)

            if quantity > available:
                self.store.discard()
                return {
                    "success": False,
                    "error": f"Only {available} items available for reservation",
                    "product_id": product_id,
                    "session_id": session_id,
                    "requested": quantity,
                    "available_stock": available,
                }

            reserved_until = now + hold
            held = Reservation(session_id=session_id, quantity=quantity, reserved_until=reserved_until)
            if mine is None:
                reservations = active + [held]
            else:
                reservations = [held if r.session_id == session_id else r for r in active]
            self.store.save_reservations(product_id, reservations)
            return {
                "success": True,
                "product_id": product_id,
                "session_id": session_id,
                "quantity": quantity,
                "reserved_until": to_iso(reserved_until),
                "available_stock": self._remaining(snapshot.stock, reservations),
            }

        result = self._run(operation, _reserve)
        if result["success"]:
            logger.info(
                "Reserved %d of %s for session %s until %s",
                quantity,
                product_id,
                session_id,
                result["reserved_until"],
            )
            self.broadcaster.notify(product_id, "reserve", available_stock=result["available_stock"])
        else:
            logger.info(
                "Reservation refused for %s (session %s): requested %d, available %d",
                product_id,
                session_id,
                quantity,
                result["available_stock"],
            )
        return result

    def rollback_release(self, product_id: str, session_id: str, quantity: int, *, ip_address: str = "unknown") -> dict:
        """Re-reserve after a release issued in error, with the longer rollback hold.

        Gated by the per-session limiter so it cannot be used to pin stock indefinitely.
        """
        product_id = _require_product_id(product_id)
        session_id = _require_session_id(session_id)
        quantity = _require_quantity(quantity)

        if self.session_validator is not None:
            rate = self.session_validator.check_rate_limit(session_id, ip_address)
            if not rate.allowed:
                return {
                    "success": False,
                    "rate_limited": True,
                    "error": "Too many rollback requests",
                    "reset_time": to_iso(rate.reset_time),
                    "remaining": rate.remaining,
                }

        return self.reserve(
            product_id,
            session_id,
            quantity,
            hold_duration=self.rollback_hold_duration,
            operation="rollback-release",
        )

    # -----------------------------
    # release
    # -----------------------------

    @staticmethod
    def _release_plan(
        snapshot: ProductSnapshot, session_id: str, quantity: int, now: dt.datetime
    ) -> Tuple[Optional[List[Reservation]], Optional[str]]:
        active = snapshot.active_reservations(now)
        mine = next((r for r in active if r.session_id == session_id), None)
        if mine is None:
            return None, f"No reservation found for product {snapshot.product_id}"
        if mine.quantity < quantity:
            return None, f"Insufficient reserved quantity for product {snapshot.product_id}"
        if mine.quantity > quantity:
            return [r.with_quantity(r.quantity - quantity) if r is mine else r for r in active], None
        return [r for r in active if r is not mine], None

    def release(self, product_id: str, session_id: str, quantity: int) -> dict:
        """Give back `quantity` units of this session's hold. Releasing nothing is a success."""
        product_id = _require_product_id(product_id)
        session_id = _require_session_id(session_id)
        quantity = _require_quantity(quantity)
        self._throttle("release")

        def _release() -> dict:
            now = self.clock()
            snapshot = self.store.load(product_id, lock=True)
            active = snapshot.active_reservations(now)
            mine, others = self._split(active, session_id)
            if mine is None:
                self.store.discard()
                return {
                    "success": True,
                    "product_id": product_id,
                    "session_id": session_id,
                    "released": 0,
                    "remaining_reserved": 0,
                    "available_stock": self._remaining(snapshot.stock, active),
                }

            if quantity >= mine.quantity:
                reservations = others
                released, left = mine.quantity, 0
            else:
                reservations = [r.with_quantity(mine.quantity - quantity) if r is mine else r for r in active]
                released, left = quantity, mine.quantity - quantity
            self.store.save_reservations(product_id, reservations)
            return {
                "success": True,
                "product_id": product_id,
                "session_id": session_id,
                "released": released,
                "remaining_reserved": left,
                "available_stock": self._remaining(snapshot.stock, reservations),
            }

        result = self._run("release", _release)
        if result["released"]:
            logger.info("Released %d of %s for session %s", result["released"], product_id, session_id)
            self.broadcaster.notify(product_id, "release", available_stock=result["available_stock"])
        return result

    def batch_release(self, session_id: str, items) -> dict:
        """Release several holds of one session.

        Every item is validated before anything is written; one invalid item
        means nothing is released. The writes themselves are independent
        per-product commits, so a store failure midway reports the items that
        did go through alongside the errors.
        """
        session_id = _require_session_id(session_id)
        merged = _merge_items(items)
        self._throttle("batch-release")

        now = self.clock()
        snapshots = self._run("batch-release", lambda: self.store.load_many(merged.keys()))
        self.store.discard()

        errors = []
        for product_id, quantity in merged.items():
            snapshot = snapshots.get(product_id)
            if snapshot is None:
                errors.append({"product_id": product_id, "error": f"Product {product_id} not found"})
                continue
            _, error = self._release_plan(snapshot, session_id, quantity, now)
            if error:
                errors.append({"product_id": product_id, "error": error})

        if errors:
            logger.info("Batch release for session %s rejected: %s", session_id, errors)
            return {"success": False, "session_id": session_id, "errors": errors, "released_items": []}

        released_items = []
        for product_id, quantity in merged.items():

            def _apply(product_id=product_id, quantity=quantity):
                snapshot = self.store.load(product_id, lock=True)
                reservations, error = self._release_plan(snapshot, session_id, quantity, self.clock())
                if error:
                    self.store.discard()
                    return None, error
                self.store.save_reservations(product_id, reservations)
                return self._remaining(snapshot.stock, reservations), None

            try:
                available, error = self._run("batch-release", _apply)
            except (StoreUnavailable, SQLAlchemyError) as exc:
                logger.error("Batch release write failed for %s: %s", product_id, exc)
                errors.append({"product_id": product_id, "error": str(exc)})
                continue
            if error:
                errors.append({"product_id": product_id, "error": error})
                continue
            released_items.append({"product_id": product_id, "quantity": quantity})
            self.broadcaster.notify(product_id, "release", available_stock=available)

        return {
            "success": not errors,
            "session_id": session_id,
            "released_items": released_items,
            "errors": errors,
        }

    # -----------------------------
    # clearing and sweeping
    # -----------------------------

    def clear_reservation(self, product_id: str, session_id: str) -> dict:
        """Drop one session's hold, or every hold on the product when session_id is "all"."""
        product_id = _require_product_id(product_id)
        if session_id != CLEAR_ALL:
            session_id = _require_session_id(session_id)
        self._throttle("clear-reservation")

        def _clear() -> dict:
            now = self.clock()
            snapshot = self.store.load(product_id, lock=True)
            if session_id == CLEAR_ALL:
                keep: List[Reservation] = []
            else:
                keep = [r for r in snapshot.reservations if r.session_id != session_id]
            cleared = len(snapshot.reservations) - len(keep)
            if cleared:
                self.store.save_reservations(product_id, keep)
            else:
                self.store.discard()
            return {
                "success": True,
                "product_id": product_id,
                "session_id": session_id,
                "cleared_count": cleared,
                "available_stock": self._remaining(snapshot.stock, [r for r in keep if r.is_active(now)]),
            }

        result = self._run("clear-reservation", _clear)
        if result["cleared_count"]:
            logger.info(
                "Cleared %d reservation(s) on %s for %s",
                result["cleared_count"],
                product_id,
                "all sessions" if session_id == CLEAR_ALL else f"session {session_id}",
            )
            self.broadcaster.notify(product_id, "clear", available_stock=result["available_stock"])
        return result

    def cleanup_expired_reservations(self, batch_size: int = CLEANUP_BATCH_SIZE) -> dict:
        """Sweep expired holds from every product. Best effort: failures are collected, not raised."""
        candidates = self._run("cleanup-reservations", self.store.products_with_reservations)
        self.store.discard()

        errors = []
        cleared_total = 0
        batch_size = max(1, batch_size)
        total_batches = (len(candidates) + batch_size - 1) // batch_size
        for start in range(0, len(candidates), batch_size):
            batch = candidates[start : start + batch_size]
            logger.info("Processing cleanup batch %d/%d", start // batch_size + 1, total_batches)
            for candidate in batch:
                product_id = candidate.product_id

                def _sweep(product_id=product_id) -> Tuple[int, int]:
                    # reload under lock so holds created since the scan survive
                    snapshot = self.store.load(product_id, lock=True)
                    valid = snapshot.active_reservations(self.clock())
                    expired = len(snapshot.reservations) - len(valid)
                    if expired:
                        self.store.save_reservations(product_id, valid)
                    else:
                        self.store.discard()
                    return expired, self._remaining(snapshot.stock, valid)

                try:
                    cleared, available = self._run("cleanup-reservations", _sweep)
                except (StoreUnavailable, SQLAlchemyError, LookupError) as exc:
                    logger.error("Cleanup failed for product %s (%s): %s", product_id, candidate.title, exc)
                    errors.append({"product_id": product_id, "title": candidate.title, "error": str(exc)})
                    continue
                if cleared:
                    logger.info("Cleared %d expired reservation(s) for %s", cleared, candidate.title)
                    cleared_total += cleared
                    self.broadcaster.notify(product_id, "cleanup", available_stock=available)

        logger.info(
            "Reservation cleanup completed: %d cleared across %d products, %d errors",
            cleared_total,
            len(candidates),
            len(errors),
        )
        return {
            "success": not errors,
            "total_products": len(candidates),
            "cleared_count": cleared_total,
            "errors": errors,
        }

    # -----------------------------
    # permanent stock changes
    # -----------------------------

    def decrement_stock(self, product_id: str, quantity: int) -> dict:
        """Permanently remove `quantity` units from stock, floored at zero."""
        product_id = _require_product_id(product_id)
        quantity = _require_quantity(quantity)
        self._throttle("decrement-stock")

        change = self._run(
            "decrement-stock",
            lambda: self.store.adjust_stock(product_id, lambda stock: max(0, stock - quantity)),
        )
        logger.info("Stock updated for %s: %d -> %d", product_id, change.previous_stock, change.new_stock)
        if change.new_stock == 0:
            logger.warning(
                "PRODUCT PERMANENTLY OUT OF STOCK: %s (%s) - manual restock required",
                change.title,
                product_id,
            )
        self.broadcaster.notify(product_id, "decrement", stock=change.new_stock)
        return {
            "success": True,
            "product_id": product_id,
            "previous_stock": change.previous_stock,
            "new_stock": change.new_stock,
        }

    def set_out_of_stock(self, product_id: str) -> dict:
        product_id = _require_product_id(product_id)
        self._throttle("set-out-of-stock")

        change = self._run("set-out-of-stock", lambda: self.store.adjust_stock(product_id, lambda stock: 0))
        logger.warning(
            "PRODUCT MANUALLY SET OUT OF STOCK: %s (%s) - stock changed from %d to 0",
            change.title,
            product_id,
            change.previous_stock,
        )
        self.broadcaster.notify(product_id, "out_of_stock", stock=0)
        return {"success": True, "product_id": product_id, "previous_stock": change.previous_stock, "new_stock": 0}

    def update_stock(self, product_id: str, stock: int) -> dict:
        """Admin override: set stock to an arbitrary non-negative value."""
        product_id = _require_product_id(product_id)
        if isinstance(stock, bool) or not isinstance(stock, int) or stock < 0:
            raise ValidationError("stock must be a non-negative integer")
        self._throttle("update-stock")

        change = self._run("update-stock", lambda: self.store.adjust_stock(product_id, lambda _: stock))
        logger.info("Stock overridden for %s: %d -> %d", product_id, change.previous_stock, change.new_stock)
        self.broadcaster.notify(product_id, "update", stock=change.new_stock)
        return {
            "success": True,
            "product_id": product_id,
            "previous_stock": change.previous_stock,
            "new_stock": change.new_stock,
        }

    # -----------------------------
    # read side
    # -----------------------------

    def get_availability(self, product_id: str, session_id: Optional[str] = None) -> dict:
        product_id = _require_product_id(product_id)
        snapshot = self._run("availability", lambda: self.store.load(product_id))
        self.store.discard()

        active = snapshot.active_reservations(self.clock())
        reserved = sum(r.quantity for r in active)
        mine = sum(r.quantity for r in active if session_id and r.session_id == session_id)
        by_others = reserved - mine
        available = max(0, snapshot.stock - reserved)

        result = {
            "product_id": product_id,
            "stock": snapshot.stock,
            "available_stock": available,
            "reserved_quantity": reserved,
            "reserved_by_current_user": mine,
            "reserved_by_others": by_others,
            "permanently_out_of_stock": snapshot.stock <= 0,
            "is_reserved_by_current_user": mine > 0,
            "is_reserved_by_other_user": False,
        }
        if snapshot.stock <= 0:
            result.update(available=False, available_stock=0, message="Product is out of stock")
        elif mine > 0:
            result.update(available=True, message=f"You reserved {mine} item{'s' if mine > 1 else ''}")
        elif available == 0:
            result.update(
                available=False,
                is_reserved_by_other_user=True,
                message="Item reserved by other users",
            )
        elif by_others > 0:
            result.update(
                available=True,
                message=f"{available} in stock, {by_others} currently reserved by others",
            )
        else:
            result.update(available=True, message=f"{available} in stock")
        return result

    def trigger_stock_update(self, product_id: str, action: str = "refresh") -> dict:
        if action not in BROADCAST_ACTIONS:
            raise ValidationError(f"Unknown stock action: {action}")
        availability = self.get_availability(product_id)
        sent = self.broadcaster.notify(
            availability["product_id"],
            action,
            available_stock=availability["available_stock"],
            stock=availability["stock"],
        )
        return {"success": True, "product_id": availability["product_id"], "action": action, "broadcast": sent}
