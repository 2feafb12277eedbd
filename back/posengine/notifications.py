"""
Customer-facing order notifications.

Status changes that a customer cares about are written to the
`order_notification` outbox in a session of their own, after the status
change itself has committed, and then published to Redis for any live
listener. Customers poll the outbox. Nothing in here may fail the caller.
"""

import json
import logging
from collections.abc import Callable
from typing import Protocol

import redis
from sqlmodel import Session, select

from .db import engine
from .errors import NotFound
from .models import Order, OrderNotification, OrderStatus
from .settings import settings

logger = logging.getLogger(__name__)

STATUS_MESSAGES: dict[OrderStatus, str] = {
    OrderStatus.preparing: "Your order is now being prepared in the kitchen.",
    OrderStatus.ready: "Your order is ready for pickup! Please proceed to the counter.",
    OrderStatus.completed: "Your order has been completed. Thank you for dining with us!",
}


# Redis client for pub/sub
redis_client: redis.Redis | None = None


def get_redis() -> redis.Redis | None:
    global redis_client
    if redis_client is None:
        try:
            redis_client = redis.from_url(settings.redis_url)
            redis_client.ping()
        except redis.RedisError:
            redis_client = None
    return redis_client


def publish_order_update(order_data: dict) -> None:
    """Publish to orders:all and orders:{order_id}. Silent when Redis is down."""
    r = get_redis()
    if r:
        try:
            payload = json.dumps(order_data)
            r.publish("orders:all", payload)
            r.publish(f"orders:{order_data['order_id']}", payload)
        except redis.RedisError as e:
            logger.debug(f"Redis publish failed: {e}")


class NotificationSink(Protocol):
    def enqueue(self, order_id: int, status: OrderStatus, message: str) -> None:
        ...


class OutboxNotificationSink:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        publisher: Callable[[dict], None] | None = publish_order_update,
    ):
        self._session_factory = session_factory
        self._publisher = publisher
        self.failure_count = 0

    def enqueue(self, order_id: int, status: OrderStatus, message: str) -> None:
        with self._session_factory() as session:
            notification = OrderNotification(order_id=order_id, status=status, message=message)
            session.add(notification)
            session.commit()
            session.refresh(notification)

        if self._publisher:
            self._publisher({
                "type": "status_changed",
                "order_id": order_id,
                "notification_id": notification.id,
                "status": status.value,
                "message": message,
            })


def notify_status_change(sink: NotificationSink, order_id: int, status: OrderStatus) -> bool:
    """
    Enqueue the customer message for `status`, if it has one.
    Returns whether a notification was written. Never raises.
    """
    message = STATUS_MESSAGES.get(status)
    if message is None:
        return False
    try:
        sink.enqueue(order_id, status, message)
    except Exception as e:
        if hasattr(sink, "failure_count"):
            sink.failure_count += 1
        logger.warning(
            f"Could not enqueue '{status.value}' notification for order #{order_id}: {e}"
        )
        return False
    return True


_default_sink = OutboxNotificationSink(session_factory=lambda: Session(engine))


def get_notification_sink() -> NotificationSink:
    return _default_sink


def list_order_notifications(session: Session, order_id: int) -> list[OrderNotification]:
    if not session.get(Order, order_id):
        raise NotFound("order_not_found", "Order not found")
    return list(
        session.exec(
            select(OrderNotification)
            .where(OrderNotification.order_id == order_id)
            .order_by(OrderNotification.created_at.desc(), OrderNotification.id.desc())
        ).all()
    )


def get_notification(session: Session, notification_id: int) -> OrderNotification:
    notification = session.get(OrderNotification, notification_id)
    if not notification:
        raise NotFound("notification_not_found", "Notification not found")
    return notification


def mark_notification_read(session: Session, notification_id: int) -> OrderNotification:
    notification = get_notification(session, notification_id)
    notification.is_read = True
    session.add(notification)
    session.commit()
    session.refresh(notification)
    return notification
