"""
Order API Routes

- Order creation, listing and detail
- Status transitions and status history
- Kitchen queue and per-item kitchen status
- Ingredient pre-flight for a prospective order
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlmodel import Session

from . import models
from .availability_service import validate_ingredient_stock
from .db import get_session
from .inventory_models import StockCheckRequest
from .notifications import NotificationSink, get_notification_sink
from .order_service import (
    create_order,
    get_kitchen_orders,
    get_order_detail,
    get_order_status_history,
    list_orders,
    transition_order_status,
    update_order_item_status,
)
from .permissions import PermissionService, Permissions
from .security import PermissionChecker


router = APIRouter()


@router.post("/orders", status_code=status.HTTP_201_CREATED)
def create_staff_order(
    order_data: models.OrderCreate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_CREATE))
    ],
    session: Session = Depends(get_session),
):
    """Create an order at catalog prices"""
    # Servers take orders at the table
    if current_user.role == models.UserRole.server:
        order_data.order_type = models.OrderType.dine_in
    return create_order(session, order_data, actor=current_user)


@router.get("/orders")
def list_all_orders(
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))
    ],
    session: Session = Depends(get_session),
    status: str | None = None,
    order_type: str | None = None,
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
):
    """Newest first, paginated"""
    return list_orders(session, status=status, order_type=order_type, page=page, per_page=per_page)


@router.get("/orders/kitchen")
def kitchen_queue(
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))
    ],
    session: Session = Depends(get_session),
    status: str = "all",
):
    return get_kitchen_orders(session, status)


@router.post("/orders/validate-ingredients")
def validate_order_ingredients(
    check: StockCheckRequest,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_CREATE))
    ],
    session: Session = Depends(get_session),
):
    """Report ingredient shortages for the given lines without creating anything"""
    return validate_ingredient_stock(session, check.items)


@router.get("/orders/{order_id}")
def get_order(
    order_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))
    ],
    session: Session = Depends(get_session),
):
    return get_order_detail(session, order_id)


@router.patch("/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    status_update: models.OrderStatusUpdate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_UPDATE))
    ],
    session: Session = Depends(get_session),
    sink: NotificationSink = Depends(get_notification_sink),
):
    if status_update.status == models.OrderStatus.cancelled.value and not PermissionService.has_permission(
        current_user, Permissions.ORDERS_CANCEL.value
    ):
        raise HTTPException(
            status_code=403,
            detail=f"Missing permission: {Permissions.ORDERS_CANCEL.value}",
        )
    return transition_order_status(
        session,
        order_id,
        status_update.status,
        sink=sink,
        actor=current_user,
        notes=status_update.notes,
    )


@router.get("/orders/{order_id}/status-history")
def order_status_history(
    order_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))
    ],
    session: Session = Depends(get_session),
):
    return get_order_status_history(session, order_id)


@router.patch("/orders/{order_id}/items/{item_id}/status")
def update_item_status(
    order_id: int,
    item_id: int,
    status_update: models.OrderItemStatusUpdate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.KITCHEN_UPDATE))
    ],
    session: Session = Depends(get_session),
):
    return update_order_item_status(session, order_id, item_id, status_update.status)
