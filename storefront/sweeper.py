from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .database import SessionLocal
from .deps import get_broadcaster
from .reservation_store import SqlReservationStore
from .reservations import ReservationEngine

logger = logging.getLogger(__name__)


def sweep_once(session_factory: Callable = SessionLocal, **engine_kwargs) -> dict:
    engine_kwargs.setdefault("broadcaster", get_broadcaster())
    db = session_factory()
    try:
        engine = ReservationEngine(SqlReservationStore(db), **engine_kwargs)
        return engine.cleanup_expired_reservations()
    finally:
        db.close()


def start_reservation_sweeper(
    interval_seconds: int,
    *,
    session_factory: Callable = SessionLocal,
    daemon: bool = True,
) -> Optional[threading.Event]:
    """Run the expired-reservation sweep every interval_seconds in a background thread.

    Returns an Event that stops the loop when set, or None when disabled.
    """
    if interval_seconds <= 0:
        return None
    stop = threading.Event()

    def _run() -> None:
        while not stop.wait(interval_seconds):
            try:
                sweep_once(session_factory)
            except Exception:
                # keep the loop alive; the next interval retries
                logger.exception("Scheduled reservation sweep failed")

    t = threading.Thread(target=_run, name="reservation-sweeper", daemon=daemon)
    t.start()
    logger.info("Reservation sweeper started (every %ds)", interval_seconds)
    return stop
