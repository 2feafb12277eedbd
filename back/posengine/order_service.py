"""
Order Service

Order lifecycle:
- Building an order from catalog prices in one transaction
- The status machine and its side effects (history, table release,
  ingredient restoration, customer notifications)
- Read views: hydrated order, paginated list, kitchen queue, status history
"""

import logging
import math
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, func, select

from . import models
from .availability_service import validate_ingredient_stock
from .errors import InvalidState, NotFound, ServiceError, StoreUnavailable, ValidationFailed
from .inventory_service import consume_ingredients_for_order, restore_ingredients_for_order
from .models import (
    KITCHEN_ORDER_STATUSES,
    ORDER_STATUS_FLOW,
    TERMINAL_ORDER_STATUSES,
    DiningTable,
    Order,
    OrderCreate,
    OrderItem,
    OrderItemStatus,
    OrderStatus,
    OrderStatusHistory,
    OrderType,
    Payment,
    PaymentStatus,
    Product,
)
from .notifications import NotificationSink, notify_status_change
from .pricing import TaxPolicy, compute_totals, resolve_line_prices
from .settings_store import load_business_settings

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 3


class OrderChannel(str, Enum):
    staff = "staff"
    customer = "customer"


def generate_order_number(session: Session, channel: OrderChannel) -> str:
    """ORDyyyymmddNNNN for staff orders, QRyymmdd-NNNN for customer orders"""
    now = datetime.now(timezone.utc)
    if channel == OrderChannel.customer:
        prefix = f"QR{now.strftime('%y%m%d')}-"
    else:
        prefix = f"ORD{now.strftime('%Y%m%d')}"

    # Find highest sequence for today
    last_number = session.exec(
        select(Order.order_number)
        .where(Order.order_number.startswith(prefix))
        .order_by(func.length(Order.order_number).desc(), Order.order_number.desc())
    ).first()

    next_seq = 1
    if last_number:
        try:
            next_seq = int(last_number[len(prefix):]) + 1
        except ValueError:
            next_seq = 1

    return f"{prefix}{next_seq:04d}"


def parse_order_status(value: str) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        raise ValidationFailed("invalid_status", "Invalid order status") from None


def validate_transition(current: OrderStatus, new: OrderStatus) -> None:
    """
    Forward-only: any later state in the flow, or cancelled from any
    non-terminal state. Same-state moves are rejected.
    """
    if current in TERMINAL_ORDER_STATUSES:
        raise InvalidState(
            "invalid_transition",
            f"Order is already {current.value} and cannot change status",
        )
    if new == current:
        raise InvalidState("invalid_transition", f"Order is already {current.value}")
    if new == OrderStatus.cancelled:
        return
    if ORDER_STATUS_FLOW.index(new) < ORDER_STATUS_FLOW.index(current):
        raise InvalidState(
            "invalid_transition",
            f"Cannot move order from {current.value} back to {new.value}",
        )


def _release_table(session: Session, order: Order) -> None:
    """Free the order's table unless another open order still sits there."""
    if order.table_id is None:
        return
    still_open = session.exec(
        select(Order.id)
        .where(Order.table_id == order.table_id)
        .where(Order.id != order.id)
        .where(Order.status.not_in(list(TERMINAL_ORDER_STATUSES)))
    ).first()
    if still_open is not None:
        return
    table = session.get(DiningTable, order.table_id)
    if table and table.is_occupied:
        table.is_occupied = False
        session.add(table)


def apply_status_transition(
    session: Session,
    order: Order,
    new_status: OrderStatus,
    changed_by: int | None = None,
    notes: str | None = None,
) -> OrderStatus:
    """
    Validate and apply one transition on a locked order row, with history and
    side effects. Does not commit. Returns the previous status.
    """
    previous = order.status
    validate_transition(previous, new_status)

    now = datetime.now(timezone.utc)
    order.status = new_status
    order.updated_at = now
    if new_status == OrderStatus.served:
        order.served_at = now
    elif new_status == OrderStatus.completed:
        order.completed_at = now
    session.add(order)

    session.add(
        OrderStatusHistory(
            order_id=order.id,
            previous_status=previous,
            new_status=new_status,
            changed_by=changed_by,
            notes=notes,
        )
    )

    if new_status == OrderStatus.cancelled:
        restore_ingredients_for_order(session, order, adjusted_by=changed_by)

    if new_status in TERMINAL_ORDER_STATUSES:
        _release_table(session, order)

    return previous


def lock_order(session: Session, order_id: int) -> Order:
    order = session.exec(
        select(Order).where(Order.id == order_id).with_for_update()
    ).first()
    if not order:
        raise NotFound("order_not_found", "Order not found")
    return order


def transition_order_status(
    session: Session,
    order_id: int,
    status: str,
    sink: NotificationSink,
    actor: models.User | None = None,
    notes: str | None = None,
) -> dict:
    new_status = parse_order_status(status)
    actor_id = actor.id if actor else None
    try:
        order = lock_order(session, order_id)
        previous = apply_status_transition(session, order, new_status, actor_id, notes)
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Status change for order #{order_id} failed: {e}")
        raise StoreUnavailable() from e

    logger.info(
        f"Order #{order_id} status {previous.value} -> {new_status.value} "
        f"by {actor.username if actor else 'system'}"
    )
    notify_status_change(sink, order_id, new_status)
    return get_order_detail(session, order_id)


# ============ ORDER CREATION ============

def _validate_order_input(session: Session, data: OrderCreate) -> DiningTable | None:
    if not data.items:
        raise ValidationFailed("empty_order", "Order must contain at least one item")
    if data.order_type == OrderType.dine_in and data.table_id is None:
        raise ValidationFailed(
            "table_required_for_dine_in", "Table selection is required for dine-in orders"
        )
    if data.table_id is None:
        return None
    table = session.get(DiningTable, data.table_id)
    if not table:
        raise ValidationFailed("table_not_found", "Selected table does not exist")
    return table


def _insert_order(
    session: Session,
    data: OrderCreate,
    actor: models.User | None,
    channel: OrderChannel,
    table: DiningTable | None,
    lines,
    totals,
    track_inventory: bool,
) -> Order:
    actor_id = actor.id if actor else None
    order = Order(
        order_number=generate_order_number(session, channel),
        table_id=data.table_id,
        user_id=actor_id,
        customer_name=data.customer_name or None,
        order_type=data.order_type,
        status=OrderStatus.pending,
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total_amount=totals.total_amount,
        notes=data.notes or None,
    )
    session.add(order)
    session.flush()

    for line in lines:
        session.add(
            OrderItem(
                order_id=order.id,
                product_id=line.product.id,
                quantity=line.quantity,
                unit_price=line.unit_price,
                total_price=line.total_price,
                special_instructions=line.special_instructions or None,
            )
        )

    session.add(
        OrderStatusHistory(
            order_id=order.id,
            previous_status=None,
            new_status=OrderStatus.pending,
            changed_by=actor_id,
            notes="Order placed by customer" if channel == OrderChannel.customer else "Order created",
        )
    )

    if table is not None and data.order_type == OrderType.dine_in:
        table.is_occupied = True
        session.add(table)

    session.flush()
    if track_inventory:
        consume_ingredients_for_order(session, order, adjusted_by=actor_id)
    return order


def create_order(
    session: Session,
    data: OrderCreate,
    actor: models.User | None = None,
    channel: OrderChannel = OrderChannel.staff,
) -> dict:
    """
    Price, validate and persist an order with its items, first history entry,
    table occupation and (when tracking is on) ingredient consumption.
    All of it commits or none of it does.
    """
    table = _validate_order_input(session, data)
    lines = resolve_line_prices(session, data.items)

    business = load_business_settings(session)
    totals = compute_totals(lines, TaxPolicy(business.tax_rate_percent))

    if business.inventory_tracking_enabled:
        report = validate_ingredient_stock(session, data.items)
        if not report["valid"]:
            raise ValidationFailed(
                "insufficient_ingredients",
                "Not enough ingredients in stock for this order",
                details=report,
            )

    order = None
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        try:
            order = _insert_order(
                session, data, actor, channel, table, lines, totals,
                business.inventory_tracking_enabled,
            )
            session.commit()
            break
        except ServiceError:
            session.rollback()
            raise
        except IntegrityError as e:
            # Most likely two orders drew the same number; draw again
            session.rollback()
            if attempt == ORDER_NUMBER_ATTEMPTS:
                raise StoreUnavailable() from e
            table = _validate_order_input(session, data)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Order creation failed: {e}")
            raise StoreUnavailable() from e

    logger.info(
        f"Order {order.order_number} (#{order.id}) created via {channel.value}: "
        f"subtotal={totals.subtotal} tax={totals.tax_amount} total={totals.total_amount}"
    )
    return get_order_detail(session, order.id)


# ============ READ VIEWS ============

def _user_brief(user: models.User | None) -> dict | None:
    if not user:
        return None
    return {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
    }


def _order_summary(order: Order, table: DiningTable | None) -> dict:
    return {
        "id": order.id,
        "order_number": order.order_number,
        "table_id": order.table_id,
        "table_number": table.table_number if table else None,
        "user_id": order.user_id,
        "customer_name": order.customer_name,
        "order_type": order.order_type.value,
        "status": order.status.value,
        "subtotal": order.subtotal,
        "tax_amount": order.tax_amount,
        "discount_amount": order.discount_amount,
        "total_amount": order.total_amount,
        "notes": order.notes,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
        "served_at": order.served_at,
        "completed_at": order.completed_at,
    }


def _order_items(session: Session, order_id: int) -> list[dict]:
    rows = session.exec(
        select(OrderItem, Product)
        .join(Product, OrderItem.product_id == Product.id, isouter=True)
        .where(OrderItem.order_id == order_id)
        .order_by(OrderItem.id)
    ).all()
    return [
        {
            "id": item.id,
            "product_id": item.product_id,
            "product_name": product.name if product else None,
            "product_description": product.description if product else None,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total_price": item.total_price,
            "special_instructions": item.special_instructions,
            "status": item.status.value,
        }
        for item, product in rows
    ]


def get_order_detail(session: Session, order_id: int) -> dict:
    """Order with items, payments, table and creating user"""
    order = session.get(Order, order_id)
    if not order:
        raise NotFound("order_not_found", "Order not found")
    session.refresh(order)

    table = session.get(DiningTable, order.table_id) if order.table_id else None
    user = session.get(models.User, order.user_id) if order.user_id else None

    payment_rows = session.exec(
        select(Payment, models.User)
        .join(models.User, Payment.processed_by == models.User.id, isouter=True)
        .where(Payment.order_id == order_id)
        .order_by(Payment.created_at, Payment.id)
    ).all()
    payments = [
        {
            "id": payment.id,
            "payment_method": payment.payment_method.value,
            "amount": payment.amount,
            "status": payment.status.value,
            "reference_number": payment.reference_number,
            "processed_by": payment.processed_by,
            "processed_by_user": _user_brief(processor),
            "processed_at": payment.processed_at,
            "created_at": payment.created_at,
        }
        for payment, processor in payment_rows
    ]
    total_paid = sum(p["amount"] for p in payments if p["status"] == PaymentStatus.completed.value)

    detail = _order_summary(order, table)
    detail.update({
        "table": {
            "id": table.id,
            "table_number": table.table_number,
            "location": table.location,
        } if table else None,
        "user": _user_brief(user),
        "items": _order_items(session, order_id),
        "payments": payments,
        "total_paid": total_paid,
        "remaining_amount": max(0, order.total_amount - total_paid),
    })
    return detail


def list_orders(
    session: Session,
    status: str | None = None,
    order_type: str | None = None,
    page: int = 1,
    per_page: int = 20,
) -> dict:
    page = max(1, page)
    per_page = max(1, min(per_page, 100))

    statement = select(Order)
    count_statement = select(func.count()).select_from(Order)
    if status:
        parsed = parse_order_status(status)
        statement = statement.where(Order.status == parsed)
        count_statement = count_statement.where(Order.status == parsed)
    if order_type:
        try:
            parsed_type = OrderType(order_type)
        except ValueError:
            raise ValidationFailed("invalid_order_type", "Invalid order type") from None
        statement = statement.where(Order.order_type == parsed_type)
        count_statement = count_statement.where(Order.order_type == parsed_type)

    total = session.exec(count_statement).one()
    orders = session.exec(
        statement.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).all()

    table_ids = {o.table_id for o in orders if o.table_id}
    tables = {
        t.id: t
        for t in session.exec(select(DiningTable).where(DiningTable.id.in_(table_ids))).all()
    } if table_ids else {}

    return {
        "data": [_order_summary(o, tables.get(o.table_id)) for o in orders],
        "meta": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": math.ceil(total / per_page) if total else 0,
        },
    }


def get_kitchen_orders(session: Session, status: str | None = None) -> list[dict]:
    """Orders the kitchen still has to act on, oldest first, with their items."""
    statuses = list(KITCHEN_ORDER_STATUSES)
    if status and status != "all":
        parsed = parse_order_status(status)
        if parsed not in KITCHEN_ORDER_STATUSES:
            raise ValidationFailed("invalid_status", "Invalid kitchen order status")
        statuses = [parsed]

    rows = session.exec(
        select(Order, DiningTable)
        .join(DiningTable, Order.table_id == DiningTable.id, isouter=True)
        .where(Order.status.in_(statuses))
        .order_by(Order.created_at, Order.id)
    ).all()

    return [
        {
            "id": order.id,
            "order_number": order.order_number,
            "table_id": order.table_id,
            "table_number": table.table_number if table else None,
            "order_type": order.order_type.value,
            "status": order.status.value,
            "customer_name": order.customer_name,
            "created_at": order.created_at,
            "items": _order_items(session, order.id),
        }
        for order, table in rows
    ]


def get_order_status_history(session: Session, order_id: int) -> list[dict]:
    """Oldest first. Entries without an actor are attributed to "System"."""
    if not session.get(Order, order_id):
        raise NotFound("order_not_found", "Order not found")

    rows = session.exec(
        select(OrderStatusHistory, models.User.username)
        .join(models.User, OrderStatusHistory.changed_by == models.User.id, isouter=True)
        .where(OrderStatusHistory.order_id == order_id)
        .order_by(OrderStatusHistory.created_at, OrderStatusHistory.id)
    ).all()

    return [
        {
            "id": entry.id,
            "previous_status": entry.previous_status.value if entry.previous_status else None,
            "new_status": entry.new_status.value,
            "changed_by": entry.changed_by,
            "changed_by_name": username or "System",
            "notes": entry.notes,
            "created_at": entry.created_at,
        }
        for entry, username in rows
    ]


def update_order_item_status(
    session: Session,
    order_id: int,
    item_id: int,
    status: str,
) -> dict:
    """Kitchen per-item workflow. Items of finished orders are frozen."""
    try:
        new_status = OrderItemStatus(status)
    except ValueError:
        raise ValidationFailed("invalid_status", "Invalid order item status") from None

    try:
        order = lock_order(session, order_id)
        if order.status in TERMINAL_ORDER_STATUSES:
            raise InvalidState(
                "invalid_order_status",
                f"Items of a {order.status.value} order cannot change",
                status_code=400,
            )
        item = session.get(OrderItem, item_id)
        if not item or item.order_id != order_id:
            raise NotFound("order_item_not_found", "Order item not found")

        item.status = new_status
        item.updated_at = datetime.now(timezone.utc)
        session.add(item)
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e

    session.refresh(item)
    return {
        "id": item.id,
        "order_id": item.order_id,
        "product_id": item.product_id,
        "quantity": item.quantity,
        "status": item.status.value,
        "updated_at": item.updated_at,
    }
