"""
Public (customer) API Routes

No login: customers reach these from the QR code on their table.
Writes are CSRF protected and rate limited per client IP. Anything that
reads or pays for an existing order needs the X-Table-ID header of the
table the order was placed at.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request, status
from sqlmodel import Session

from . import models
from .csrf import CsrfService
from .customer_gateway import (
    client_ip,
    customer_order_view,
    get_table_by_qr,
    require_table_order,
    sanitize_customer_order,
)
from .db import get_session
from .dependencies import (
    get_csrf_service,
    get_customer_order_limiter,
    get_payment_guard,
    get_qr_limiter,
)
from .errors import RateLimited, ValidationFailed
from .notifications import (
    NotificationSink,
    get_notification,
    get_notification_sink,
    list_order_notifications,
    mark_notification_read,
)
from .order_service import OrderChannel, create_order, get_order_detail
from .payment_service import PaymentChannel, PaymentGuard, process_payment
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/csrf-token")
def get_csrf_token(csrf: CsrfService = Depends(get_csrf_service)):
    return {"csrf_token": csrf.issue(), "expires_in": csrf.ttl_seconds}


@router.get("/tables/{qr_code}")
def lookup_table(
    qr_code: str,
    request: Request,
    session: Session = Depends(get_session),
    limiter: RateLimiter = Depends(get_qr_limiter),
):
    ip = client_ip(request)
    result = limiter.hit(ip)
    if not result.allowed:
        logger.warning(f"QR lookup rate limit exceeded for {ip}")
        raise RateLimited(
            "rate_limit_exceeded",
            "Too many requests. Please try again later.",
            retry_after=result.retry_after,
        )
    return get_table_by_qr(session, qr_code)


@router.post("/orders", status_code=status.HTTP_201_CREATED)
def place_customer_order(
    order_data: models.CustomerOrderCreate,
    request: Request,
    session: Session = Depends(get_session),
    limiter: RateLimiter = Depends(get_customer_order_limiter),
    csrf: CsrfService = Depends(get_csrf_service),
    x_csrf_token: str | None = Header(default=None),
):
    ip = client_ip(request)
    result = limiter.hit(ip)
    if not result.allowed:
        logger.warning(f"Customer order rate limit exceeded for {ip}")
        raise RateLimited(
            "rate_limit_exceeded",
            "Too many orders. Please wait before ordering again.",
            retry_after=result.retry_after,
        )
    csrf.validate(x_csrf_token)

    order = create_order(session, sanitize_customer_order(order_data), channel=OrderChannel.customer)
    logger.info(f"Customer order {order['order_number']} placed from {ip}")
    return customer_order_view(order)


@router.post("/orders/{order_id}/payments", status_code=status.HTTP_201_CREATED)
def pay_customer_order(
    order_id: int,
    payment_data: models.CustomerPaymentCreate,
    request: Request,
    session: Session = Depends(get_session),
    guard: PaymentGuard = Depends(get_payment_guard),
    sink: NotificationSink = Depends(get_notification_sink),
    csrf: CsrfService = Depends(get_csrf_service),
    x_csrf_token: str | None = Header(default=None),
    x_table_id: int | None = Header(default=None),
):
    """Customers pay the full remaining balance for their own table's order"""
    csrf.validate(x_csrf_token)
    if x_table_id is None:
        raise ValidationFailed("table_id_required", "Table ID is required")

    return process_payment(
        session,
        order_id,
        payment_data.payment_method,
        payment_data.amount,
        guard=guard,
        sink=sink,
        client_key=f"ip:{client_ip(request)}",
        channel=PaymentChannel.customer,
        table_id=x_table_id,
    )


@router.get("/orders/{order_id}")
def poll_customer_order(
    order_id: int,
    session: Session = Depends(get_session),
    x_table_id: int | None = Header(default=None),
):
    require_table_order(session, order_id, x_table_id)
    return customer_order_view(get_order_detail(session, order_id))


@router.get("/orders/{order_id}/notifications")
def poll_order_notifications(
    order_id: int,
    session: Session = Depends(get_session),
    x_table_id: int | None = Header(default=None),
):
    require_table_order(session, order_id, x_table_id)
    return list_order_notifications(session, order_id)


@router.put("/notifications/{notification_id}/read")
def read_notification(
    notification_id: int,
    session: Session = Depends(get_session),
    x_table_id: int | None = Header(default=None),
):
    notification = get_notification(session, notification_id)
    require_table_order(session, notification.order_id, x_table_id)
    return mark_notification_read(session, notification_id)
