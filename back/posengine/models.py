from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlmodel import Field, Relationship, SQLModel


class UserRole(str, Enum):
    admin = "admin"
    manager = "manager"
    server = "server"
    counter = "counter"
    kitchen = "kitchen"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    completed = "completed"
    cancelled = "cancelled"


# Forward lifecycle; cancelled sits outside it and is reachable from any non-terminal state
ORDER_STATUS_FLOW: list[OrderStatus] = [
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.preparing,
    OrderStatus.ready,
    OrderStatus.served,
    OrderStatus.completed,
]

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.completed, OrderStatus.cancelled})

# Orders the kitchen still has to act on
KITCHEN_ORDER_STATUSES = (
    OrderStatus.pending,
    OrderStatus.confirmed,
    OrderStatus.preparing,
    OrderStatus.ready,
)


class OrderType(str, Enum):
    dine_in = "dine_in"
    takeaway = "takeaway"
    delivery = "delivery"


class OrderItemStatus(str, Enum):
    pending = "pending"
    preparing = "preparing"
    ready = "ready"
    served = "served"
    cancelled = "cancelled"


class PaymentMethod(str, Enum):
    cash = "cash"
    credit_card = "credit_card"
    debit_card = "debit_card"
    digital_wallet = "digital_wallet"


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"


class User(SQLModel, table=True):
    """Staff account. Owned by the auth layer; read-only here."""
    id: int | None = Field(default=None, primary_key=True)
    username: str = Field(unique=True, index=True)
    first_name: str | None = None
    last_name: str | None = None
    role: UserRole = Field(default=UserRole.server)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class DiningTable(SQLModel, table=True):
    __tablename__ = "dining_table"

    id: int | None = Field(default=None, primary_key=True)
    table_number: str = Field(unique=True, index=True)  # e.g. "T05"
    seating_capacity: int = Field(default=4)
    location: str | None = None  # e.g. "Terrace"
    is_occupied: bool = Field(default=False, index=True)
    qr_code: str = Field(default_factory=lambda: str(uuid4()), unique=True, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Product(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    description: str | None = None
    price: int  # minor currency units
    # Written by the availability sync when the product has a recipe, manual otherwise
    is_available: bool = Field(default=True, index=True)
    preparation_time: int | None = None  # minutes
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SystemSetting(SQLModel, table=True):
    """Runtime business settings, edited by staff. Values are stored as strings."""
    __tablename__ = "system_setting"

    id: int | None = Field(default=None, primary_key=True)
    setting_key: str = Field(unique=True, index=True)
    setting_value: str
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Order(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_number: str = Field(unique=True, index=True)  # ORDyyyymmddNNNN or QRyymmdd-N
    table_id: int | None = Field(default=None, foreign_key="dining_table.id", index=True)
    user_id: int | None = Field(default=None, foreign_key="user.id", index=True)
    customer_name: str | None = None
    order_type: OrderType = Field(default=OrderType.dine_in)
    status: OrderStatus = Field(default=OrderStatus.pending, index=True)

    # Money, minor units. total_amount == subtotal + tax_amount - discount_amount
    subtotal: int = Field(default=0)
    tax_amount: int = Field(default=0)
    discount_amount: int = Field(default=0)
    total_amount: int = Field(default=0)

    notes: str | None = None
    # Recipe ingredients were taken out of stock for this order
    ingredients_deducted: bool = Field(default=False)

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    served_at: datetime | None = None
    completed_at: datetime | None = None

    items: list["OrderItem"] = Relationship(back_populates="order")
    payments: list["Payment"] = Relationship(back_populates="order")


class OrderItem(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    product_id: int = Field(foreign_key="product.id")
    quantity: int
    unit_price: int  # frozen at order time
    total_price: int  # quantity * unit_price
    special_instructions: str | None = None
    status: OrderItemStatus = Field(default=OrderItemStatus.pending, index=True)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    order: Order = Relationship(back_populates="items")


class OrderStatusHistory(SQLModel, table=True):
    """Append-only log of order status changes."""
    __tablename__ = "order_status_history"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    previous_status: OrderStatus | None = None  # None for the creation entry
    new_status: OrderStatus
    changed_by: int | None = Field(default=None, foreign_key="user.id")
    notes: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Payment(SQLModel, table=True):
    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    payment_method: PaymentMethod
    amount: int  # minor units, > 0
    status: PaymentStatus = Field(default=PaymentStatus.pending, index=True)
    reference_number: str | None = None
    processed_by: int | None = Field(default=None, foreign_key="user.id")  # None for customer payments
    processed_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    order: Order = Relationship(back_populates="payments")


class OrderNotification(SQLModel, table=True):
    """Outbox of customer-facing status messages. Customers poll these."""
    __tablename__ = "order_notification"

    id: int | None = Field(default=None, primary_key=True)
    order_id: int = Field(foreign_key="order.id", index=True)
    status: OrderStatus
    message: str
    is_read: bool = Field(default=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# Request/Response Models
class OrderItemCreate(SQLModel):
    product_id: int
    quantity: int
    special_instructions: str | None = None
    # Client-side prices are accepted for compatibility and ignored
    unit_price: int | None = None


class OrderCreate(SQLModel):
    order_type: OrderType = OrderType.dine_in
    table_id: int | None = None
    customer_name: str | None = None
    items: list[OrderItemCreate]
    notes: str | None = None


class OrderStatusUpdate(SQLModel):
    status: str  # validated by the status machine, unknown values -> invalid_status
    notes: str | None = None


class OrderItemStatusUpdate(SQLModel):
    status: str


class PaymentCreate(SQLModel):
    payment_method: str
    amount: int
    reference_number: str | None = None


class CustomerOrderCreate(SQLModel):
    table_id: int | None = None
    customer_name: str | None = None
    items: list[OrderItemCreate] | None = None
    notes: str | None = None


class CustomerPaymentCreate(SQLModel):
    payment_method: str
    amount: int
