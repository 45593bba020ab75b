"""Request-scoped wiring of the reservation core for the routers."""
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from . import config
from .broadcast import StockBroadcaster
from .database import get_db
from .emailer import EmailSender
from .errors import InvalidStatusTransition, NotFound, StoreUnavailable, ValidationError
from .messaging import publish_event
from .order_status import OrderStatusPromoter
from .rate_limiter import RateLimiter, build_counter_store, make_limiter
from .reservation_store import SqlReservationStore
from .reservations import ReservationEngine
from .session_validator import RequestMeta, SessionValidator


@lru_cache
def get_counter_store():
    return build_counter_store(config.REDIS_URL)


@lru_cache
def get_session_validator() -> SessionValidator:
    return SessionValidator(get_counter_store())


@lru_cache
def get_broadcaster() -> StockBroadcaster:
    return StockBroadcaster(publish_event if config.STOCK_BROADCAST_ENABLED else None)


@lru_cache
def get_email_sender() -> EmailSender:
    return EmailSender()


def get_limiter(operation_class: str) -> RateLimiter:
    return make_limiter(get_counter_store(), operation_class)


def get_request_meta(request: Request) -> RequestMeta:
    return RequestMeta.from_headers(request.headers)


def get_reservation_engine(
    db: Session = Depends(get_db),
    broadcaster: StockBroadcaster = Depends(get_broadcaster),
    session_validator: SessionValidator = Depends(get_session_validator),
) -> ReservationEngine:
    return ReservationEngine(
        SqlReservationStore(db),
        broadcaster=broadcaster,
        session_validator=session_validator,
        store_limiter=get_limiter("store-writes"),
    )


def get_order_promoter(
    db: Session = Depends(get_db),
    engine: ReservationEngine = Depends(get_reservation_engine),
    email_sender: EmailSender = Depends(get_email_sender),
) -> OrderStatusPromoter:
    return OrderStatusPromoter(db, engine, email_sender)


def enforce_rate_limit(operation_class: str, client_key: Optional[str]) -> None:
    result = get_limiter(operation_class).check(client_key or "unknown")
    if not result.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"error": "rate_limit_exceeded", **result.as_dict()},
        )


def require_valid_session(
    session_id: str,
    action: str,
    meta: RequestMeta,
    validator: SessionValidator,
) -> None:
    info = validator.validate_session(session_id, meta)
    validator.log_validation(info, None, action)
    if not info.is_valid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_session",
                "reason": info.reason,
                "message": "Session is invalid or expired. Please refresh your session and try again.",
            },
        )


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, InvalidStatusTransition):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"error": "invalid_status_transition", "current": exc.current, "requested": exc.requested},
        )
    if isinstance(exc, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    if isinstance(exc, NotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{exc.kind} not found")
    if isinstance(exc, StoreUnavailable):
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service temporarily unavailable. Please try again in a moment.",
        )
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
