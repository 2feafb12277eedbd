from typing import Annotated

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from . import models
from .db import get_session
from .dependencies import get_payment_guard
from .notifications import NotificationSink, get_notification_sink
from .payment_service import (
    PaymentChannel,
    PaymentGuard,
    get_payment_summary,
    list_payments,
    process_payment,
)
from .permissions import Permissions
from .security import PermissionChecker


router = APIRouter()


@router.post("/orders/{order_id}/payments", status_code=status.HTTP_201_CREATED)
def create_payment(
    order_id: int,
    payment_data: models.PaymentCreate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_PAY))
    ],
    session: Session = Depends(get_session),
    guard: PaymentGuard = Depends(get_payment_guard),
    sink: NotificationSink = Depends(get_notification_sink),
):
    """Record a (possibly partial) payment taken by staff"""
    return process_payment(
        session,
        order_id,
        payment_data.payment_method,
        payment_data.amount,
        guard=guard,
        sink=sink,
        client_key=f"user:{current_user.id}",
        channel=PaymentChannel.staff,
        actor=current_user,
        reference_number=payment_data.reference_number,
    )


@router.get("/orders/{order_id}/payments")
def get_order_payments(
    order_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))
    ],
    session: Session = Depends(get_session),
):
    return list_payments(session, order_id)


@router.get("/orders/{order_id}/payment-summary")
def get_order_payment_summary(
    order_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.ORDERS_READ))
    ],
    session: Session = Depends(get_session),
):
    return get_payment_summary(session, order_id)
