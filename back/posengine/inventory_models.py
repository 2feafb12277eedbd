"""
Inventory Module Models

Ingredient stock with a full audit trail:
- Ingredients with minimum/maximum thresholds and unit cost
- Immutable stock ledger (every change to current_stock writes one row)
- Recipes linking sellable products to the ingredients they consume
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import Numeric, UniqueConstraint
from sqlmodel import Field, SQLModel

from .models import OrderItemCreate

# Scale of every Numeric(12, 4) quantity column
QUANTITY_STEP = Decimal("0.0001")


# ============ ENUMS ============

class StockOperation(str, Enum):
    """Direction of a stock movement"""
    add = "add"
    remove = "remove"
    restock = "restock"  # add from a supplier delivery, stamps last_restocked_at


class AdjustmentReason(str, Enum):
    """Why stock moved"""
    purchase = "purchase"
    sale = "sale"                          # recipe-driven, linked to an order
    spoilage = "spoilage"
    manual_adjustment = "manual_adjustment"
    inventory_count = "inventory_count"    # physical count / opening stock
    return_ = "return"                     # cancelled order gives ingredients back
    damage = "damage"
    theft = "theft"
    expired = "expired"


class StockStatus(str, Enum):
    ok = "ok"
    low = "low"
    out = "out"


# ============ CORE MODELS ============

class Ingredient(SQLModel, table=True):
    """
    Raw materials consumed by recipes.
    current_stock only changes through the stock ledger in inventory_service.
    """
    __tablename__ = "ingredient"

    id: int | None = Field(default=None, primary_key=True)

    name: str = Field(index=True)
    description: str | None = None
    unit: str = Field(default="piece")  # e.g. "kg", "liter", "piece"

    current_stock: Decimal = Field(
        default=Decimal("0"),
        sa_type=Numeric(12, 4)
    )
    minimum_stock: Decimal = Field(
        default=Decimal("0"),
        sa_type=Numeric(12, 4),
        description="Below this the ingredient is reported as low"
    )
    maximum_stock: Decimal | None = Field(
        default=None,
        sa_type=Numeric(12, 4)
    )

    unit_cost: int = Field(default=0)  # minor units per unit
    supplier: str | None = None

    is_active: bool = Field(default=True, index=True)
    last_restocked_at: datetime | None = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class IngredientHistory(SQLModel, table=True):
    """
    Immutable audit log of all stock movements.
    new_stock == previous_stock +/- quantity; replaying from zero gives current_stock.
    """
    __tablename__ = "ingredient_history"

    id: int | None = Field(default=None, primary_key=True)

    ingredient_id: int = Field(
        foreign_key="ingredient.id",
        index=True
    )

    operation: StockOperation
    quantity: Decimal = Field(sa_type=Numeric(12, 4))  # always positive
    previous_stock: Decimal = Field(sa_type=Numeric(12, 4))
    new_stock: Decimal = Field(sa_type=Numeric(12, 4))
    reason: AdjustmentReason = Field(index=True)
    notes: str | None = None

    adjusted_by: int | None = Field(
        default=None,
        foreign_key="user.id"
    )
    # Set for recipe-driven entries (sale / return)
    order_id: int | None = Field(
        default=None,
        foreign_key="order.id",
        index=True
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


class ProductIngredient(SQLModel, table=True):
    """
    Recipe line: how much of an ingredient one unit of a product consumes.
    """
    __tablename__ = "product_ingredient"
    __table_args__ = (
        UniqueConstraint("product_id", "ingredient_id", name="uq_product_ingredient"),
    )

    id: int | None = Field(default=None, primary_key=True)

    product_id: int = Field(foreign_key="product.id", index=True)
    ingredient_id: int = Field(foreign_key="ingredient.id", index=True)

    quantity_required: Decimal = Field(sa_type=Numeric(12, 4))

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


# ============ REQUEST/RESPONSE SCHEMAS ============

class IngredientCreate(SQLModel):
    """Schema for creating an ingredient. current_stock is recorded as the opening ledger entry."""
    name: str
    description: str | None = None
    unit: str = "piece"
    current_stock: Decimal = Decimal("0")
    minimum_stock: Decimal = Decimal("0")
    maximum_stock: Decimal | None = None
    unit_cost: int = 0
    supplier: str | None = None


class IngredientUpdate(SQLModel):
    """Schema for updating ingredient metadata (stock goes through /adjust and /restock)"""
    name: str | None = None
    description: str | None = None
    unit: str | None = None
    minimum_stock: Decimal | None = None
    maximum_stock: Decimal | None = None
    unit_cost: int | None = None
    supplier: str | None = None
    is_active: bool | None = None


class StockAdjustment(SQLModel):
    """Schema for manual stock adjustment"""
    operation: str  # add or remove
    quantity: Decimal
    reason: str
    notes: str | None = None


class RestockInput(SQLModel):
    quantity: Decimal
    notes: str | None = None


class RecipeLineCreate(SQLModel):
    ingredient_id: int
    quantity_required: Decimal


class RecipeLineUpdate(SQLModel):
    quantity_required: Decimal


class StockCheckRequest(SQLModel):
    """Pre-flight ingredient check for a prospective order"""
    items: list[OrderItemCreate]


# ============ RESPONSE SCHEMAS ============

class IngredientResponse(SQLModel):
    """Response schema for ingredient with derived stock info"""
    id: int
    name: str
    description: str | None
    unit: str
    current_stock: float  # Use float for proper JSON serialization
    minimum_stock: float
    maximum_stock: float | None
    unit_cost: int
    supplier: str | None
    is_active: bool
    status: str  # Calculated: out / low / ok
    total_value: float  # Calculated: current_stock * unit_cost
    last_restocked_at: datetime | None
    created_at: datetime
    updated_at: datetime


class IngredientHistoryResponse(SQLModel):
    id: int
    ingredient_id: int
    operation: str
    quantity: float
    previous_stock: float
    new_stock: float
    reason: str
    notes: str | None
    adjusted_by: int | None
    adjusted_by_username: str | None
    order_id: int | None
    created_at: datetime
