"""
Ingredient Availability Service

Derives whether products can be made from current ingredient stock:
- Per-product availability check
- Sync of Product.is_available for all products (or those using one ingredient)
- Pre-flight shortage report for a prospective order
- Recipe (product -> ingredient) management
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session, select

from .errors import InvalidState, NotFound, StoreUnavailable, ValidationFailed
from .inventory_models import QUANTITY_STEP, Ingredient, ProductIngredient
from .models import OrderItemCreate, Product
from .settings import settings

logger = logging.getLogger(__name__)


def _recipe_lines(
    session: Session,
    product_ids: list[int] | None = None,
) -> dict[int, list[tuple[ProductIngredient, Ingredient]]]:
    """Recipe lines with their ingredient, grouped by product id"""
    statement = select(ProductIngredient, Ingredient).where(
        ProductIngredient.ingredient_id == Ingredient.id
    )
    if product_ids is not None:
        statement = statement.where(ProductIngredient.product_id.in_(product_ids))
    grouped: dict[int, list[tuple[ProductIngredient, Ingredient]]] = defaultdict(list)
    for line, ingredient in session.exec(statement).all():
        grouped[line.product_id].append((line, ingredient))
    return grouped


def _is_producible(line: ProductIngredient, ingredient: Ingredient) -> bool:
    # Deactivated ingredients cannot be used, whatever their stock
    return ingredient.is_active and ingredient.current_stock >= line.quantity_required


def _derive_available(lines: list[tuple[ProductIngredient, Ingredient]]) -> bool:
    return all(_is_producible(line, ingredient) for line, ingredient in lines)


def check_product_availability(session: Session, product_id: int) -> dict:
    product = session.get(Product, product_id)
    if not product:
        raise NotFound("product_not_found", "Product not found")

    lines = _recipe_lines(session, [product_id]).get(product_id, [])
    if not lines:
        # No recipe: the manual flag is authoritative
        return {
            "product_id": product_id,
            "product_name": product.name,
            "available": product.is_available,
            "has_recipe": False,
            "status": "available" if product.is_available else "out_of_stock",
            "missing_ingredients": [],
            "limiting_ingredients": [],
        }

    missing = []
    limiting = []
    for line, ingredient in lines:
        if not _is_producible(line, ingredient):
            missing.append(ingredient.name)
        elif ingredient.current_stock < ingredient.minimum_stock:
            limiting.append({
                "ingredient_id": ingredient.id,
                "name": ingredient.name,
                "current_stock": float(ingredient.current_stock),
                "minimum_stock": float(ingredient.minimum_stock),
            })

    if missing:
        status = "out_of_stock"
    elif limiting:
        status = "low_stock"
    else:
        status = "available"

    return {
        "product_id": product_id,
        "product_name": product.name,
        "available": not missing,
        "has_recipe": True,
        "status": status,
        "missing_ingredients": missing,
        "limiting_ingredients": limiting,
    }


def _sync_products(session: Session, product_ids: list[int] | None) -> dict:
    """
    Flip is_available where it disagrees with the recipe.
    Products without a recipe are left alone. Does not commit.
    """
    grouped = _recipe_lines(session, product_ids)
    details = []
    disabled = 0
    enabled = 0

    if grouped:
        products = session.exec(
            select(Product).where(Product.id.in_(list(grouped.keys()))).order_by(Product.id)
        ).all()
        now = datetime.now(timezone.utc)
        for product in products:
            now_available = _derive_available(grouped[product.id])
            if product.is_available == now_available:
                continue
            details.append({
                "product_id": product.id,
                "product_name": product.name,
                "was_available": product.is_available,
                "now_available": now_available,
            })
            product.is_available = now_available
            product.updated_at = now
            session.add(product)
            if now_available:
                enabled += 1
            else:
                disabled += 1

    return {
        "updated": len(details),
        "disabled": disabled,
        "enabled": enabled,
        "details": details,
    }


def sync_products_for_ingredient(session: Session, ingredient_id: int) -> dict:
    """Re-derive availability of products that use one ingredient. Does not commit."""
    product_ids = list(
        session.exec(
            select(ProductIngredient.product_id).where(
                ProductIngredient.ingredient_id == ingredient_id
            )
        ).all()
    )
    if not product_ids:
        return {"updated": 0, "disabled": 0, "enabled": 0, "details": []}
    return _sync_products(session, product_ids)


def sync_all_product_availability(session: Session) -> dict:
    try:
        result = _sync_products(session, None)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Availability sync failed: {e}")
        raise StoreUnavailable() from e

    logger.info(
        f"Availability sync: {result['updated']} updated, "
        f"{result['disabled']} disabled, {result['enabled']} enabled"
    )
    return result


def validate_ingredient_stock(session: Session, items: list[OrderItemCreate]) -> dict:
    """
    Pre-flight check: can these order lines be made from current stock?
    Requirements are summed per ingredient across all lines.
    """
    product_ids = list({item.product_id for item in items})
    grouped = _recipe_lines(session, product_ids)

    needed: dict[int, Decimal] = defaultdict(Decimal)
    ingredients: dict[int, Ingredient] = {}
    for item in items:
        for line, ingredient in grouped.get(item.product_id, []):
            needed[ingredient.id] += line.quantity_required * item.quantity
            ingredients[ingredient.id] = ingredient

    shortages = []
    for ingredient_id, needs in needed.items():
        ingredient = ingredients[ingredient_id]
        has = ingredient.current_stock if ingredient.is_active else Decimal("0")
        if has < needs:
            shortages.append({
                "ingredient_id": ingredient_id,
                "name": ingredient.name,
                "unit": ingredient.unit,
                "has": float(has),
                "needs": float(needs),
                "shortage": float(needs - has),
            })

    # Whole portions of each ordered product the current stock still allows
    max_portions = None
    for product_id in product_ids:
        for line, ingredient in grouped.get(product_id, []):
            has = ingredient.current_stock if ingredient.is_active else Decimal("0")
            portions = int(has // line.quantity_required)
            if max_portions is None or portions < max_portions:
                max_portions = portions

    return {
        "valid": not shortages,
        "shortages": shortages,
        "can_make_partial": bool(shortages) and bool(max_portions),
        "max_portions": max_portions,
    }


# ============ RECIPES ============

def _line_to_dict(line: ProductIngredient, ingredient: Ingredient) -> dict:
    return {
        "id": line.id,
        "product_id": line.product_id,
        "ingredient_id": ingredient.id,
        "ingredient_name": ingredient.name,
        "unit": ingredient.unit,
        "quantity_required": float(line.quantity_required),
        "current_stock": float(ingredient.current_stock),
    }


def _require_product(session: Session, product_id: int) -> Product:
    product = session.get(Product, product_id)
    if not product:
        raise NotFound("product_not_found", "Product not found")
    return product


def _require_positive(quantity: Decimal) -> Decimal:
    if quantity is not None:
        quantity = quantity.quantize(QUANTITY_STEP, rounding=ROUND_HALF_UP)
    if quantity is None or quantity <= 0:
        raise ValidationFailed("invalid_quantity", "quantity_required must be greater than 0")
    return quantity


def _resync_product(session: Session, product_id: int) -> None:
    if settings.auto_sync_availability:
        _sync_products(session, [product_id])


def list_recipe(session: Session, product_id: int) -> dict:
    product = _require_product(session, product_id)
    lines = _recipe_lines(session, [product_id]).get(product_id, [])
    return {
        "product_id": product_id,
        "product_name": product.name,
        "ingredients": [_line_to_dict(line, ingredient) for line, ingredient in lines],
    }


def add_recipe_line(
    session: Session,
    product_id: int,
    ingredient_id: int,
    quantity_required: Decimal,
) -> dict:
    quantity_required = _require_positive(quantity_required)
    _require_product(session, product_id)
    ingredient = session.get(Ingredient, ingredient_id)
    if not ingredient or not ingredient.is_active:
        raise NotFound("ingredient_not_found", "Ingredient not found")

    existing = session.exec(
        select(ProductIngredient)
        .where(ProductIngredient.product_id == product_id)
        .where(ProductIngredient.ingredient_id == ingredient_id)
    ).first()
    if existing:
        raise InvalidState(
            "duplicate_ingredient", "This ingredient is already part of the recipe"
        )

    line = ProductIngredient(
        product_id=product_id,
        ingredient_id=ingredient_id,
        quantity_required=quantity_required,
    )
    try:
        session.add(line)
        session.flush()
        _resync_product(session, product_id)
        session.commit()
    except IntegrityError as e:
        # Lost a race with a concurrent insert of the same line
        session.rollback()
        raise InvalidState(
            "duplicate_ingredient", "This ingredient is already part of the recipe"
        ) from e
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e

    session.refresh(line)
    return _line_to_dict(line, ingredient)


def _get_line(session: Session, product_id: int, line_id: int) -> ProductIngredient:
    line = session.get(ProductIngredient, line_id)
    if not line or line.product_id != product_id:
        raise NotFound("recipe_line_not_found", "Recipe ingredient not found")
    return line


def update_recipe_line(
    session: Session,
    product_id: int,
    line_id: int,
    quantity_required: Decimal,
) -> dict:
    quantity_required = _require_positive(quantity_required)
    line = _get_line(session, product_id, line_id)
    line.quantity_required = quantity_required
    line.updated_at = datetime.now(timezone.utc)
    try:
        session.add(line)
        session.flush()
        _resync_product(session, product_id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e

    session.refresh(line)
    return _line_to_dict(line, session.get(Ingredient, line.ingredient_id))


def remove_recipe_line(session: Session, product_id: int, line_id: int) -> None:
    line = _get_line(session, product_id, line_id)
    try:
        session.delete(line)
        session.flush()
        _resync_product(session, product_id)
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        raise StoreUnavailable() from e
