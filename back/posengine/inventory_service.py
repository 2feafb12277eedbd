"""
Inventory Service

Stock ledger for ingredients:
- Manual adjustments and restocks, one history row per change
- Recipe-driven consumption on order creation and restoration on cancel
- Derived stock status and value
- Ledger replay
"""

import logging
from collections import defaultdict
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import models
from .availability_service import sync_products_for_ingredient
from .errors import InvalidState, NotFound, ServiceError, StoreUnavailable, ValidationFailed
from .inventory_models import (
    QUANTITY_STEP,
    AdjustmentReason,
    Ingredient,
    IngredientCreate,
    IngredientHistory,
    IngredientResponse,
    IngredientUpdate,
    ProductIngredient,
    StockOperation,
    StockStatus,
)
from .settings import settings

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


def ingredient_status(current_stock: Decimal, minimum_stock: Decimal) -> StockStatus:
    if current_stock == 0:
        return StockStatus.out
    if current_stock < minimum_stock:
        return StockStatus.low
    return StockStatus.ok


def total_value(current_stock: Decimal, unit_cost: int) -> Decimal:
    return current_stock * unit_cost


def ingredient_to_response(ingredient: Ingredient) -> IngredientResponse:
    return IngredientResponse(
        id=ingredient.id,
        name=ingredient.name,
        description=ingredient.description,
        unit=ingredient.unit,
        current_stock=float(ingredient.current_stock),
        minimum_stock=float(ingredient.minimum_stock),
        maximum_stock=float(ingredient.maximum_stock) if ingredient.maximum_stock is not None else None,
        unit_cost=ingredient.unit_cost,
        supplier=ingredient.supplier,
        is_active=ingredient.is_active,
        status=ingredient_status(ingredient.current_stock, ingredient.minimum_stock).value,
        total_value=float(total_value(ingredient.current_stock, ingredient.unit_cost)),
        last_restocked_at=ingredient.last_restocked_at,
        created_at=ingredient.created_at,
        updated_at=ingredient.updated_at,
    )


def replay_stock(entries: Iterable[IngredientHistory]) -> Decimal:
    """Rebuild current stock from ledger entries, oldest first, starting at zero."""
    stock = Decimal("0")
    for entry in entries:
        if entry.operation == StockOperation.remove:
            stock -= entry.quantity
        else:
            stock += entry.quantity
    return stock


def _parse_operation(value: str) -> StockOperation:
    try:
        operation = StockOperation(value)
    except ValueError:
        raise ValidationFailed(
            "invalid_operation", "Operation must be one of: add, remove"
        ) from None
    if operation == StockOperation.restock:
        raise ValidationFailed(
            "invalid_operation", "Use the restock endpoint to record deliveries"
        )
    return operation


def _parse_reason(value: str) -> AdjustmentReason:
    try:
        return AdjustmentReason(value)
    except ValueError:
        valid = ", ".join(r.value for r in AdjustmentReason)
        raise ValidationFailed("invalid_reason", f"Reason must be one of: {valid}") from None


def _require_positive(quantity: Decimal) -> Decimal:
    """Round to the stored scale, then check. Returns the rounded quantity."""
    if quantity is not None:
        quantity = quantity.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)
    if quantity is None or quantity <= 0:
        raise ValidationFailed("invalid_quantity", "Quantity must be greater than 0")
    return quantity


def _lock_ingredient(session: Session, ingredient_id: int) -> Ingredient:
    ingredient = session.exec(
        select(Ingredient).where(Ingredient.id == ingredient_id).with_for_update()
    ).first()
    if not ingredient or not ingredient.is_active:
        raise NotFound("ingredient_not_found", "Ingredient not found")
    return ingredient


def apply_stock_movement(
    session: Session,
    ingredient: Ingredient,
    operation: StockOperation,
    quantity: Decimal,
    reason: AdjustmentReason,
    notes: str | None = None,
    adjusted_by: int | None = None,
    order_id: int | None = None,
) -> IngredientHistory:
    """
    Move stock and write the matching ledger row. Caller holds the row lock
    and owns the transaction; nothing is committed here.
    """
    previous_stock = ingredient.current_stock
    if operation == StockOperation.remove:
        new_stock = previous_stock - quantity
        if new_stock < 0:
            raise InvalidState(
                "insufficient_stock",
                "Insufficient stock",
                status_code=400,
                details={
                    "ingredient_id": ingredient.id,
                    "current_stock": float(previous_stock),
                    "requested": float(quantity),
                },
            )
    else:
        new_stock = previous_stock + quantity

    now = datetime.now(timezone.utc)
    ingredient.current_stock = new_stock
    ingredient.updated_at = now
    if operation == StockOperation.restock:
        ingredient.last_restocked_at = now
    session.add(ingredient)

    entry = IngredientHistory(
        ingredient_id=ingredient.id,
        operation=operation,
        quantity=quantity,
        previous_stock=previous_stock,
        new_stock=new_stock,
        reason=reason,
        notes=notes,
        adjusted_by=adjusted_by,
        order_id=order_id,
    )
    session.add(entry)
    session.flush()

    if previous_stock >= ingredient.minimum_stock > new_stock:
        logger.warning(
            f"Ingredient '{ingredient.name}' (#{ingredient.id}) fell below minimum stock: "
            f"{new_stock} {ingredient.unit} < {ingredient.minimum_stock}"
        )

    if settings.auto_sync_availability:
        sync_products_for_ingredient(session, ingredient.id)

    return entry


def _commit_movement(
    session: Session,
    ingredient_id: int,
    operation: StockOperation,
    quantity: Decimal,
    reason: AdjustmentReason,
    notes: str | None,
    adjusted_by: int | None,
) -> dict:
    try:
        ingredient = _lock_ingredient(session, ingredient_id)
        entry = apply_stock_movement(
            session, ingredient, operation, quantity, reason, notes, adjusted_by
        )
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e

    session.refresh(ingredient)
    session.refresh(entry)
    logger.info(
        f"Stock {operation.value} {quantity} {ingredient.unit} on ingredient #{ingredient.id} "
        f"({reason.value}): {entry.previous_stock} -> {entry.new_stock}"
    )
    return {
        "ingredient": ingredient_to_response(ingredient),
        "history_id": entry.id,
        "previous_stock": float(entry.previous_stock),
        "new_stock": float(entry.new_stock),
    }


def adjust_stock(
    session: Session,
    ingredient_id: int,
    operation: str,
    quantity: Decimal,
    reason: str,
    notes: str | None = None,
    adjusted_by: int | None = None,
) -> dict:
    """Manual stock adjustment (add or remove) with a reason."""
    parsed_operation = _parse_operation(operation)
    parsed_reason = _parse_reason(reason)
    quantity = _require_positive(quantity)
    return _commit_movement(
        session, ingredient_id, parsed_operation, quantity, parsed_reason, notes, adjusted_by
    )


def restock_ingredient(
    session: Session,
    ingredient_id: int,
    quantity: Decimal,
    notes: str | None = None,
    adjusted_by: int | None = None,
) -> dict:
    quantity = _require_positive(quantity)
    return _commit_movement(
        session,
        ingredient_id,
        StockOperation.restock,
        quantity,
        AdjustmentReason.purchase,
        notes,
        adjusted_by,
    )


# ============ INGREDIENT CRUD ============

def create_ingredient(
    session: Session,
    data: IngredientCreate,
    adjusted_by: int | None = None,
) -> Ingredient:
    if data.current_stock is None or data.current_stock < 0:
        raise ValidationFailed("invalid_quantity", "Opening stock cannot be negative")
    if data.minimum_stock is not None and data.minimum_stock < 0:
        raise ValidationFailed("invalid_quantity", "Minimum stock cannot be negative")

    ingredient = Ingredient(
        name=data.name,
        description=data.description,
        unit=data.unit,
        current_stock=Decimal("0"),
        minimum_stock=data.minimum_stock,
        maximum_stock=data.maximum_stock,
        unit_cost=data.unit_cost,
        supplier=data.supplier,
    )
    try:
        session.add(ingredient)
        session.flush()
        # Opening stock goes through the ledger so replay reproduces it
        if data.current_stock > 0:
            apply_stock_movement(
                session,
                ingredient,
                StockOperation.add,
                data.current_stock,
                AdjustmentReason.inventory_count,
                notes="Opening stock",
                adjusted_by=adjusted_by,
            )
        session.commit()
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e

    session.refresh(ingredient)
    logger.info(f"Ingredient #{ingredient.id} '{ingredient.name}' created")
    return ingredient


def get_ingredient(session: Session, ingredient_id: int) -> Ingredient:
    ingredient = session.get(Ingredient, ingredient_id)
    if not ingredient or not ingredient.is_active:
        raise NotFound("ingredient_not_found", "Ingredient not found")
    return ingredient


def update_ingredient(
    session: Session,
    ingredient_id: int,
    data: IngredientUpdate,
) -> Ingredient:
    ingredient = session.get(Ingredient, ingredient_id)
    if not ingredient:
        raise NotFound("ingredient_not_found", "Ingredient not found")

    update_data = data.model_dump(exclude_unset=True)
    if update_data.get("minimum_stock") is not None and update_data["minimum_stock"] < 0:
        raise ValidationFailed("invalid_quantity", "Minimum stock cannot be negative")
    for key, value in update_data.items():
        setattr(ingredient, key, value)
    ingredient.updated_at = datetime.now(timezone.utc)

    try:
        session.add(ingredient)
        session.flush()
        # Activation state feeds producibility
        if "is_active" in update_data and settings.auto_sync_availability:
            sync_products_for_ingredient(session, ingredient.id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e

    session.refresh(ingredient)
    return ingredient


def deactivate_ingredient(session: Session, ingredient_id: int) -> None:
    """Soft delete. History rows stay."""
    ingredient = get_ingredient(session, ingredient_id)
    ingredient.is_active = False
    ingredient.updated_at = datetime.now(timezone.utc)
    try:
        session.add(ingredient)
        session.flush()
        if settings.auto_sync_availability:
            sync_products_for_ingredient(session, ingredient.id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e
    logger.info(f"Ingredient #{ingredient_id} deactivated")


def list_ingredients(session: Session, include_inactive: bool = False) -> list[Ingredient]:
    """Out of stock first, then low, then the rest; by name within each group."""
    statement = select(Ingredient)
    if not include_inactive:
        statement = statement.where(Ingredient.is_active == True)  # noqa: E712
    rank = case(
        (Ingredient.current_stock == 0, 0),
        (Ingredient.current_stock < Ingredient.minimum_stock, 1),
        else_=2,
    )
    statement = statement.order_by(rank, Ingredient.name)
    return list(session.exec(statement).all())


def list_low_stock(session: Session) -> list[Ingredient]:
    return [
        ingredient
        for ingredient in list_ingredients(session)
        if ingredient_status(ingredient.current_stock, ingredient.minimum_stock) != StockStatus.ok
    ]


def get_ingredient_history(
    session: Session,
    ingredient_id: int,
    limit: int = HISTORY_LIMIT,
) -> list[dict]:
    """Newest first, capped at 100 rows."""
    if not session.get(Ingredient, ingredient_id):
        raise NotFound("ingredient_not_found", "Ingredient not found")

    limit = max(1, min(limit, HISTORY_LIMIT))
    rows = session.exec(
        select(IngredientHistory, models.User.username)
        .join(models.User, IngredientHistory.adjusted_by == models.User.id, isouter=True)
        .where(IngredientHistory.ingredient_id == ingredient_id)
        .order_by(IngredientHistory.created_at.desc(), IngredientHistory.id.desc())
        .limit(limit)
    ).all()

    return [
        {
            "id": entry.id,
            "ingredient_id": entry.ingredient_id,
            "operation": entry.operation.value,
            "quantity": float(entry.quantity),
            "previous_stock": float(entry.previous_stock),
            "new_stock": float(entry.new_stock),
            "reason": entry.reason.value,
            "notes": entry.notes,
            "adjusted_by": entry.adjusted_by,
            "adjusted_by_username": username,
            "order_id": entry.order_id,
            "created_at": entry.created_at,
        }
        for entry, username in rows
    ]


# ============ RECIPE-DRIVEN MOVEMENTS ============

def _required_per_ingredient(session: Session, order: models.Order) -> dict[int, Decimal]:
    required: dict[int, Decimal] = defaultdict(Decimal)
    rows = session.exec(
        select(models.OrderItem, ProductIngredient)
        .join(ProductIngredient, ProductIngredient.product_id == models.OrderItem.product_id)
        .where(models.OrderItem.order_id == order.id)
    ).all()
    for order_item, line in rows:
        required[line.ingredient_id] += line.quantity_required * order_item.quantity
    return required


def consume_ingredients_for_order(
    session: Session,
    order: models.Order,
    adjusted_by: int | None = None,
) -> list[IngredientHistory]:
    """
    Take recipe ingredients out of stock for every line of the order.
    Runs inside the order creation transaction; does not commit.
    """
    entries = []
    required = _required_per_ingredient(session, order)
    for ingredient_id in sorted(required):
        ingredient = _lock_ingredient(session, ingredient_id)
        entries.append(
            apply_stock_movement(
                session,
                ingredient,
                StockOperation.remove,
                required[ingredient_id],
                AdjustmentReason.sale,
                notes=f"Order {order.order_number}",
                adjusted_by=adjusted_by,
                order_id=order.id,
            )
        )
    if entries:
        order.ingredients_deducted = True
        session.add(order)
    return entries


def restore_ingredients_for_order(
    session: Session,
    order: models.Order,
    adjusted_by: int | None = None,
) -> list[IngredientHistory]:
    """
    Give back exactly what the order's sale entries took, even if recipes
    changed since. Does not commit.
    """
    if not order.ingredients_deducted:
        return []

    sold = session.exec(
        select(IngredientHistory)
        .where(IngredientHistory.order_id == order.id)
        .where(IngredientHistory.reason == AdjustmentReason.sale)
    ).all()
    taken: dict[int, Decimal] = defaultdict(Decimal)
    for entry in sold:
        taken[entry.ingredient_id] += entry.quantity

    entries = []
    for ingredient_id in sorted(taken):
        ingredient = session.exec(
            select(Ingredient).where(Ingredient.id == ingredient_id).with_for_update()
        ).first()
        if not ingredient:
            continue
        entries.append(
            apply_stock_movement(
                session,
                ingredient,
                StockOperation.add,
                taken[ingredient_id],
                AdjustmentReason.return_,
                notes=f"Order {order.order_number} cancelled",
                adjusted_by=adjusted_by,
                order_id=order.id,
            )
        )
    order.ingredients_deducted = False
    session.add(order)
    return entries
