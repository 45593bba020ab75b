"""Best-effort "available stock changed" notifications.

Subscribers (open storefront tabs behind a websocket/SSE relay, cache
invalidators) bind to ``stock.<action>`` on the events exchange and re-fetch
availability. Correctness never depends on these signals: every reserve call
recomputes availability from the store.
"""
from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Optional

logger = logging.getLogger(__name__)

Publisher = Callable[[str, dict], None]

ACTIONS = {"reserve", "release", "clear", "decrement", "out_of_stock", "update", "refresh", "cleanup"}


class StockBroadcaster:
    def __init__(self, publisher: Optional[Publisher] = None):
        self.publisher = publisher

    def notify(self, product_id: str, action: str, *, available_stock: Optional[int] = None, stock: Optional[int] = None) -> bool:
        if action not in ACTIONS:
            raise ValueError(f"unknown stock action: {action}")
        if self.publisher is None:
            logger.debug("Stock broadcast disabled, skipping %s for %s", action, product_id)
            return False
        payload = {
            "event": "stock.updated",
            "action": action,
            "product_id": product_id,
            "available_stock": available_stock,
            "stock": stock,
            "occurred_at": dt.datetime.now(dt.timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        try:
            self.publisher(f"stock.{action}", payload)
            return True
        except Exception:
            logger.exception("Stock broadcast failed for product %s (%s)", product_id, action)
            return False
