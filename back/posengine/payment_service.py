"""
Payment Service

Reconciles payments against an order's total. An order may be paid in
several parts; completed payments never add up to more than the total, and
the payment that reaches it completes the order and frees its table.

Staff payments may be partial. Customer (QR) payments must settle the exact
remaining balance.
"""

import logging
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, func, select

from . import models
from .errors import (
    InvalidState,
    NotFound,
    PolicyViolation,
    RateLimited,
    ServiceError,
    StoreUnavailable,
    ValidationFailed,
)
from .models import (
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderStatus,
    Payment,
    PaymentMethod,
    PaymentStatus,
)
from .notifications import NotificationSink, notify_status_change
from .order_service import apply_status_transition, lock_order
from .rate_limit import RateLimiter
from .settings import settings

logger = logging.getLogger(__name__)


class PaymentChannel(str, Enum):
    staff = "staff"
    customer = "customer"


class PaymentGuard:
    """
    Fraud controls in front of the payment engine.

    `attempts` hard-limits payment attempts per caller per minute. `failures`
    only counts rejected attempts over the last hour and raises a fraud-review
    log line once the threshold is reached; it never blocks.
    """

    def __init__(self, attempts: RateLimiter, failures: RateLimiter):
        self.attempts = attempts
        self.failures = failures

    def check_rate(self, client_key: str) -> None:
        try:
            result = self.attempts.hit(client_key)
        except Exception as e:
            # Counter store down: let the payment through
            logger.warning(f"Payment rate limiter unavailable, allowing {client_key}: {e}")
            return
        if not result.allowed:
            logger.warning(
                f"FRAUD_ALERT: Rate limit exceeded - Caller: {client_key}, "
                f"more than {self.attempts.limit} payments in {self.attempts.window_seconds}s"
            )
            raise RateLimited(
                "rate_limit_exceeded",
                "Too many payment attempts. Please wait a moment before trying again.",
                retry_after=result.retry_after,
            )

    def record_failure(self, client_key: str, code: str) -> None:
        try:
            failed = self.failures.record(client_key)
            if failed >= self.failures.limit:
                logger.warning(
                    f"FRAUD_ALERT: Multiple failed payments - Caller: {client_key}, "
                    f"Failed attempts: {failed}, last reason: {code}"
                )
        except Exception as e:
            logger.debug(f"Could not record failed payment for {client_key}: {e}")


def _completed_total(session: Session, order_id: int) -> int:
    total = session.exec(
        select(func.coalesce(func.sum(Payment.amount), 0))
        .where(Payment.order_id == order_id)
        .where(Payment.status == PaymentStatus.completed)
    ).one()
    return int(total)


def _parse_method(value: str) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ValidationFailed("invalid_payment_method", "Invalid payment method") from None


def _payment_to_dict(payment: Payment, processor: models.User | None) -> dict:
    data = {
        "id": payment.id,
        "order_id": payment.order_id,
        "payment_method": payment.payment_method.value,
        "amount": payment.amount,
        "reference_number": payment.reference_number,
        "status": payment.status.value,
        "processed_by": payment.processed_by,
        "processed_at": payment.processed_at,
        "created_at": payment.created_at,
    }
    if processor:
        data["processed_by_user"] = {
            "username": processor.username,
            "first_name": processor.first_name,
            "last_name": processor.last_name,
        }
    return data


def _validate_request(
    method: str,
    amount: int,
    channel: PaymentChannel,
    actor: models.User | None,
) -> PaymentMethod:
    payment_method = _parse_method(method)
    if amount is None or amount <= 0:
        raise ValidationFailed("invalid_amount", "Payment amount must be greater than zero")
    if channel == PaymentChannel.staff and amount > settings.max_payment_amount:
        logger.warning(
            f"FRAUD_ALERT: Suspicious large payment attempt - "
            f"User: {actor.id if actor else None}, Amount: {amount}"
        )
        raise PolicyViolation(
            "amount_exceeds_limit",
            "Payment amount exceeds maximum allowed limit",
            status_code=400,
        )
    return payment_method


def _record_payment(
    session: Session,
    order_id: int,
    payment_method: PaymentMethod,
    amount: int,
    channel: PaymentChannel,
    actor: models.User | None,
    reference_number: str | None,
    table_id: int | None,
) -> tuple[Payment, Order, int]:
    """Steps that run under the order row lock. Does not commit."""
    order = lock_order(session, order_id)

    if order.status in TERMINAL_ORDER_STATUSES:
        raise InvalidState(
            "invalid_order_status",
            f"Order cannot be paid - order is {order.status.value}",
            status_code=400,
        )

    if channel == PaymentChannel.customer and (order.table_id is None or order.table_id != table_id):
        logger.warning(
            f"AUTHORIZATION_ALERT: Cross-table payment attempt - "
            f"Order table: {order.table_id}, Request table: {table_id}"
        )
        raise PolicyViolation("table_mismatch", "You can only pay for orders from your table")

    paid = _completed_total(session, order.id)
    remaining = order.total_amount - paid
    if remaining <= 0:
        raise InvalidState("order_fully_paid", "Order is already fully paid", status_code=400)

    if channel == PaymentChannel.customer:
        if amount != remaining:
            raise PolicyViolation(
                "amount_mismatch",
                "Payment amount must match remaining balance",
                status_code=400,
                details={"required_amount": remaining, "provided_amount": amount},
            )
    elif amount > remaining:
        raise PolicyViolation(
            "amount_exceeds_balance",
            "Payment amount exceeds remaining balance",
            status_code=400,
            details={"remaining_amount": remaining, "provided_amount": amount},
        )

    actor_id = actor.id if actor else None
    payment = Payment(
        order_id=order.id,
        payment_method=payment_method,
        amount=amount,
        status=PaymentStatus.completed,
        reference_number=reference_number or None,
        processed_by=actor_id,
        processed_at=datetime.now(timezone.utc),
    )
    session.add(payment)
    session.flush()

    if paid + amount == order.total_amount:
        if channel == PaymentChannel.customer:
            note = f"Customer paid via {payment_method.value}"
        else:
            note = "Order completed after payment"
        apply_status_transition(session, order, OrderStatus.completed, actor_id, note)

    return payment, order, remaining - amount


def process_payment(
    session: Session,
    order_id: int,
    payment_method: str,
    amount: int,
    guard: PaymentGuard,
    sink: NotificationSink,
    client_key: str,
    channel: PaymentChannel = PaymentChannel.staff,
    actor: models.User | None = None,
    reference_number: str | None = None,
    table_id: int | None = None,
) -> dict:
    try:
        method = _validate_request(payment_method, amount, channel, actor)
        guard.check_rate(client_key)
    except ServiceError as e:
        guard.record_failure(client_key, e.code)
        raise

    try:
        payment, order, remaining = _record_payment(
            session, order_id, method, amount, channel, actor, reference_number, table_id
        )
        completed = order.status == OrderStatus.completed
        session.commit()
    except ServiceError as e:
        session.rollback()
        guard.record_failure(client_key, e.code)
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Payment for order #{order_id} failed: {e}")
        raise StoreUnavailable() from e

    session.refresh(payment)
    logger.info(
        f"Payment #{payment.id} of {amount} via {method.value} recorded on order #{order_id} "
        f"({channel.value}); remaining {remaining}"
    )
    if completed:
        logger.info(f"Order #{order_id} fully paid and completed")
        notify_status_change(sink, order_id, OrderStatus.completed)

    result = _payment_to_dict(payment, actor)
    result.update({
        "order_status": OrderStatus.completed.value if completed else order.status.value,
        "is_fully_paid": completed,
        "remaining_amount": remaining,
    })
    return result


def list_payments(session: Session, order_id: int) -> list[dict]:
    """Newest first, with the processing staff member when there is one"""
    if not session.get(Order, order_id):
        raise NotFound("order_not_found", "Order not found")

    rows = session.exec(
        select(Payment, models.User)
        .join(models.User, Payment.processed_by == models.User.id, isouter=True)
        .where(Payment.order_id == order_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
    ).all()
    return [_payment_to_dict(payment, processor) for payment, processor in rows]


def get_payment_summary(session: Session, order_id: int) -> dict:
    order = session.get(Order, order_id)
    if not order:
        raise NotFound("order_not_found", "Order not found")

    payments = session.exec(select(Payment).where(Payment.order_id == order_id)).all()
    total_paid = sum(p.amount for p in payments if p.status == PaymentStatus.completed)
    pending_amount = sum(p.amount for p in payments if p.status == PaymentStatus.pending)
    remaining = order.total_amount - total_paid

    return {
        "order_id": order_id,
        "total_amount": order.total_amount,
        "total_paid": total_paid,
        "pending_amount": pending_amount,
        "remaining_amount": remaining,
        "is_fully_paid": remaining <= 0,
        "payment_count": len(payments),
    }
