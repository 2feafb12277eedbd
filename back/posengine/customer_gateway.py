"""
Customer self-order gateway helpers.

Customers scan the QR code on their table, browse, order and pay without an
account. Their input is length-checked and stripped of HTML before it
reaches the order builder.
"""

import logging
import re

from fastapi import Request
from sqlmodel import Session, select

from .errors import NotFound, PolicyViolation, ValidationFailed
from .models import CustomerOrderCreate, DiningTable, Order, OrderCreate, OrderItemCreate, OrderType
from .settings import settings

logger = logging.getLogger(__name__)

_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_TAG = re.compile(r"<[^>]*>")


def strip_html_tags(value: str | None) -> str:
    if not value:
        return ""
    return _TAG.sub("", _SCRIPT_BLOCK.sub("", value)).strip()


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def sanitize_customer_order(data: CustomerOrderCreate) -> OrderCreate:
    """Check limits on the raw input, strip HTML, and turn it into a dine-in order."""
    if data.table_id is None:
        raise ValidationFailed("table_id_required", "Table ID is required")
    if not data.items:
        raise ValidationFailed("items_required", "At least one item is required")

    if data.customer_name and len(data.customer_name) > settings.max_customer_name_length:
        raise ValidationFailed(
            "customer_name_too_long",
            f"Customer name is too long (max {settings.max_customer_name_length} characters)",
        )
    if data.notes and len(data.notes) > settings.max_notes_length:
        raise ValidationFailed(
            "notes_too_long", f"Notes are too long (max {settings.max_notes_length} characters)"
        )
    for item in data.items:
        if item.special_instructions and len(item.special_instructions) > settings.max_special_instructions_length:
            raise ValidationFailed(
                "special_instructions_too_long",
                f"Special instructions too long (max {settings.max_special_instructions_length} characters)",
            )

    return OrderCreate(
        order_type=OrderType.dine_in,
        table_id=data.table_id,
        customer_name=strip_html_tags(data.customer_name) or None,
        notes=strip_html_tags(data.notes) or None,
        items=[
            OrderItemCreate(
                product_id=item.product_id,
                quantity=item.quantity,
                special_instructions=strip_html_tags(item.special_instructions) or None,
            )
            for item in data.items
        ],
    )


def get_table_by_qr(session: Session, qr_code: str) -> dict:
    qr_code = (qr_code or "").strip()
    if not qr_code:
        raise ValidationFailed("qr_code_required", "QR code is required")
    table = session.exec(select(DiningTable).where(DiningTable.qr_code == qr_code)).first()
    if not table:
        raise NotFound("table_not_found", "Table not found. Please scan a valid QR code.")
    return {
        "id": table.id,
        "table_number": table.table_number,
        "seating_capacity": table.seating_capacity,
        "location": table.location,
    }


_CUSTOMER_ORDER_FIELDS = (
    "id",
    "order_number",
    "table_id",
    "table_number",
    "customer_name",
    "status",
    "subtotal",
    "tax_amount",
    "discount_amount",
    "total_amount",
    "notes",
    "created_at",
    "updated_at",
    "items",
    "total_paid",
    "remaining_amount",
)


def customer_order_view(detail: dict) -> dict:
    """What a polling customer sees: no staff identities, no payment rows."""
    return {key: detail[key] for key in _CUSTOMER_ORDER_FIELDS}


def require_table_order(session: Session, order_id: int, table_id: int | None) -> Order:
    """
    Customers only see and touch orders placed at the table they are sitting
    at. Orders with no table (takeaway, delivery) belong to staff.
    """
    if table_id is None:
        raise ValidationFailed("table_id_required", "Table ID is required")
    order = session.get(Order, order_id)
    if not order:
        raise NotFound("order_not_found", "Order not found")
    if order.table_id is None or order.table_id != table_id:
        logger.warning(
            f"AUTHORIZATION_ALERT: Cross-table access attempt - "
            f"Order #{order_id} table: {order.table_id}, Request table: {table_id}"
        )
        raise PolicyViolation("table_mismatch", "You can only access orders from your table")
    return order
