from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from .. import crud, schemas
from ..auth import get_current_admin
from ..database import get_db
from ..deps import (
    enforce_rate_limit,
    get_order_promoter,
    get_request_meta,
    get_session_validator,
    require_valid_session,
    to_http_exception,
)
from ..errors import StorefrontError
from ..order_status import OrderStatusPromoter, parse_status
from ..session_validator import RequestMeta, SessionValidator

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


@router.post("/", response_model=schemas.OrderOut, status_code=status.HTTP_201_CREATED)
def create_checkout_order(
    body: schemas.OrderCreate,
    meta: RequestMeta = Depends(get_request_meta),
    validator: SessionValidator = Depends(get_session_validator),
    db: Session = Depends(get_db),
):
    """Place an order awaiting manual payment confirmation (receipt upload)."""
    enforce_rate_limit("checkout", meta.ip_address)
    require_valid_session(body.session_id, "checkout", meta, validator)

    return crud.create_order(
        db,
        session_id=body.session_id,
        customer=body.customer_info.model_dump(),
        items_data=[item.model_dump() for item in body.items],
        payment_receipt=body.payment_receipt,
        message=body.message,
    )


@router.get("/", response_model=schemas.OrderListResponse)
def get_orders(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    status_filter: Optional[str] = Query(None, alias="status"),
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    if status_filter is not None:
        try:
            status_filter = parse_status(status_filter).value
        except StorefrontError as e:
            raise to_http_exception(e)

    orders = crud.get_orders(db=db, skip=skip, limit=limit, status=status_filter)
    total = crud.get_order_count(db=db, status=status_filter)
    return {
        "orders": orders,
        "total": total,
        "skip": skip,
        "limit": limit,
    }


@router.get("/{order_id}", response_model=schemas.OrderOut)
def get_order(
    order_id: str,
    current_admin: Dict = Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    db_order = crud.get_order(db=db, order_id=order_id)
    if not db_order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Order with id {order_id} not found"
        )
    return db_order


@router.put("/{order_id}/status")
def update_order_status(
    order_id: str,
    body: schemas.OrderStatusUpdate,
    current_admin: Dict = Depends(get_current_admin),
    promoter: OrderStatusPromoter = Depends(get_order_promoter),
):
    """Move an order through its lifecycle and apply the stock side effects."""
    try:
        return promoter.promote(order_id, body.status)
    except StorefrontError as e:
        raise to_http_exception(e)
