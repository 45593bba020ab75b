from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from ..auth import get_current_admin, get_optional_principal, get_stock_authority
from ..crud import create_product, get_product, get_products
from ..database import get_db
from ..deps import (
    enforce_rate_limit,
    get_request_meta,
    get_reservation_engine,
    get_session_validator,
    require_valid_session,
    to_http_exception,
)
from ..errors import StorefrontError
from ..reservations import CLEAR_ALL, ReservationEngine
from ..schemas import (
    BatchReleaseRequest,
    ClearReservationRequest,
    DecrementStockRequest,
    ProductCreate,
    ProductOut,
    ReserveRequest,
    StockChangeOut,
    StockOverrideRequest,
    TriggerStockUpdateRequest,
)
from ..session_validator import RequestMeta, SessionValidator

router = APIRouter(prefix="/products", tags=["Products & Reservations"])


@router.post("/", response_model=ProductOut, status_code=201)
def Create_Product_Only_Admin(
    body: ProductCreate,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        return create_product(db, body.model_dump())
    except ValueError as e:
        if str(e) == "duplicate_product_id":
            raise HTTPException(status_code=409, detail="Product id already exists")
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/", response_model=list[ProductOut])
def View_Products(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    category: Optional[str] = Query(None),
    db: Session = Depends(get_db),
):
    return get_products(db, skip=skip, limit=limit, category=category)


# -----------------------------
# Maintenance (declared before /{product_id} routes)
# -----------------------------


@router.post("/cleanup-reservations")
def cleanup_expired_reservations(
    current_admin: Dict = Depends(get_current_admin),
    meta: RequestMeta = Depends(get_request_meta),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    """Sweep expired holds from every product (best effort)."""
    enforce_rate_limit("admin", meta.ip_address)
    try:
        return engine.cleanup_expired_reservations()
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/batch-release")
def batch_release(
    body: BatchReleaseRequest,
    meta: RequestMeta = Depends(get_request_meta),
    validator: SessionValidator = Depends(get_session_validator),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    require_valid_session(body.session_id, "batch-release", meta, validator)
    try:
        result = engine.batch_release(body.session_id, [item.model_dump() for item in body.items])
    except StorefrontError as e:
        raise to_http_exception(e)
    if not result["success"] and not result["released_items"]:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Validation failed", **result})
    return result


# -----------------------------
# Per-product
# -----------------------------


@router.get("/{product_id}", response_model=ProductOut)
def View_Product(product_id: str, db: Session = Depends(get_db)):
    product = get_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.get("/{product_id}/availability")
def product_availability(
    product_id: str,
    session_id: Optional[str] = Query(None),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    try:
        return engine.get_availability(product_id, session_id)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/{product_id}/reserve")
def reserve_product(
    product_id: str,
    body: ReserveRequest,
    meta: RequestMeta = Depends(get_request_meta),
    validator: SessionValidator = Depends(get_session_validator),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    """Hold `quantity` units for this session. Insufficient stock is a 200 with success=false."""
    require_valid_session(body.session_id, "reserve", meta, validator)
    try:
        return engine.reserve(product_id, body.session_id, body.quantity)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/{product_id}/release")
def release_product(
    product_id: str,
    body: ReserveRequest,
    meta: RequestMeta = Depends(get_request_meta),
    validator: SessionValidator = Depends(get_session_validator),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    require_valid_session(body.session_id, "release", meta, validator)
    try:
        return engine.release(product_id, body.session_id, body.quantity)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/{product_id}/rollback-release")
def rollback_release(
    product_id: str,
    body: ReserveRequest,
    meta: RequestMeta = Depends(get_request_meta),
    validator: SessionValidator = Depends(get_session_validator),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    """Re-reserve items after a release that should not have happened (30 minute hold)."""
    require_valid_session(body.session_id, "rollback-release", meta, validator)
    try:
        result = engine.rollback_release(product_id, body.session_id, body.quantity, ip_address=meta.ip_address)
    except StorefrontError as e:
        raise to_http_exception(e)
    if result.get("rate_limited"):
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content={
                "error": "Rate limit exceeded",
                "message": f"Too many rollback requests. Please wait until {result['reset_time']} before trying again.",
                "reset_time": result["reset_time"],
                "remaining": result["remaining"],
            },
        )
    return result


@router.post("/{product_id}/clear-reservation")
def clear_reservation(
    product_id: str,
    body: ClearReservationRequest,
    meta: RequestMeta = Depends(get_request_meta),
    validator: SessionValidator = Depends(get_session_validator),
    principal: Optional[Dict] = Depends(get_optional_principal),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    """Drop the caller's own hold, or every hold on the product ("all", admin or service token only)."""
    if body.session_id == CLEAR_ALL:
        if principal is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Clearing all reservations requires admin or service authorization",
                headers={"WWW-Authenticate": "Bearer"},
            )
    elif principal is None:
        require_valid_session(body.session_id, "clear-reservation", meta, validator)
    try:
        return engine.clear_reservation(product_id, body.session_id)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/{product_id}/decrement-stock", response_model=StockChangeOut)
def decrement_stock(
    product_id: str,
    body: DecrementStockRequest,
    principal: Dict = Depends(get_stock_authority),
    meta: RequestMeta = Depends(get_request_meta),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    enforce_rate_limit("stock-mutation", meta.ip_address)
    try:
        return engine.decrement_stock(product_id, body.quantity)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/{product_id}/set-out-of-stock", response_model=StockChangeOut)
def set_out_of_stock(
    product_id: str,
    current_admin: Dict = Depends(get_current_admin),
    meta: RequestMeta = Depends(get_request_meta),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    enforce_rate_limit("stock-mutation", meta.ip_address)
    try:
        return engine.set_out_of_stock(product_id)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.put("/{product_id}/stock", response_model=StockChangeOut)
def override_stock(
    product_id: str,
    body: StockOverrideRequest,
    current_admin: Dict = Depends(get_current_admin),
    meta: RequestMeta = Depends(get_request_meta),
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    enforce_rate_limit("stock-mutation", meta.ip_address)
    try:
        return engine.update_stock(product_id, body.stock)
    except StorefrontError as e:
        raise to_http_exception(e)


@router.post("/{product_id}/trigger-stock-update")
def trigger_stock_update(
    product_id: str,
    body: Optional[TriggerStockUpdateRequest] = None,
    engine: ReservationEngine = Depends(get_reservation_engine),
):
    try:
        return engine.trigger_stock_update(product_id, body.action if body else "refresh")
    except StorefrontError as e:
        raise to_http_exception(e)
