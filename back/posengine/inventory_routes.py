"""
Inventory API Routes

REST API for ingredient stock and recipes:
- Ingredients CRUD
- Stock adjustments, restocks and the movement history
- Recipe management (product ingredients)
- Product availability checks and sync
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status
from sqlmodel import Session

from . import models
from .availability_service import (
    add_recipe_line,
    check_product_availability,
    list_recipe,
    remove_recipe_line,
    sync_all_product_availability,
    update_recipe_line,
)
from .db import get_session
from .inventory_models import (
    IngredientCreate,
    IngredientHistoryResponse,
    IngredientResponse,
    IngredientUpdate,
    RecipeLineCreate,
    RecipeLineUpdate,
    RestockInput,
    StockAdjustment,
)
from .inventory_service import (
    HISTORY_LIMIT,
    adjust_stock,
    create_ingredient,
    deactivate_ingredient,
    get_ingredient,
    get_ingredient_history,
    ingredient_to_response,
    list_ingredients,
    list_low_stock,
    restock_ingredient,
    update_ingredient,
)
from .permissions import Permissions
from .security import PermissionChecker


router = APIRouter()


# ============ INGREDIENTS ============

@router.get("/ingredients", response_model=list[IngredientResponse])
def list_all_ingredients(
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_READ))
    ],
    session: Session = Depends(get_session),
    include_inactive: bool = False,
):
    """Out of stock first, then low stock, then the rest"""
    return [ingredient_to_response(i) for i in list_ingredients(session, include_inactive)]


@router.get("/ingredients/low-stock", response_model=list[IngredientResponse])
def low_stock_ingredients(
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_READ))
    ],
    session: Session = Depends(get_session),
):
    return [ingredient_to_response(i) for i in list_low_stock(session)]


@router.post(
    "/ingredients",
    response_model=IngredientResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_new_ingredient(
    ingredient_data: IngredientCreate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    ingredient = create_ingredient(session, ingredient_data, adjusted_by=current_user.id)
    return ingredient_to_response(ingredient)


@router.get("/ingredients/{ingredient_id}", response_model=IngredientResponse)
def get_single_ingredient(
    ingredient_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_READ))
    ],
    session: Session = Depends(get_session),
):
    return ingredient_to_response(get_ingredient(session, ingredient_id))


@router.put("/ingredients/{ingredient_id}", response_model=IngredientResponse)
def update_existing_ingredient(
    ingredient_id: int,
    ingredient_data: IngredientUpdate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    """Metadata only. Stock changes go through adjust/restock."""
    return ingredient_to_response(update_ingredient(session, ingredient_id, ingredient_data))


@router.delete("/ingredients/{ingredient_id}")
def delete_ingredient(
    ingredient_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    deactivate_ingredient(session, ingredient_id)
    return {"success": True, "message": "Ingredient deactivated"}


# ============ STOCK MOVEMENTS ============

@router.post("/ingredients/{ingredient_id}/adjust")
def adjust_ingredient_stock(
    ingredient_id: int,
    adjustment: StockAdjustment,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    return adjust_stock(
        session,
        ingredient_id,
        adjustment.operation,
        adjustment.quantity,
        adjustment.reason,
        notes=adjustment.notes,
        adjusted_by=current_user.id,
    )


@router.post("/ingredients/{ingredient_id}/restock")
def restock(
    ingredient_id: int,
    restock_data: RestockInput,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    return restock_ingredient(
        session,
        ingredient_id,
        restock_data.quantity,
        notes=restock_data.notes,
        adjusted_by=current_user.id,
    )


@router.get(
    "/ingredients/{ingredient_id}/history",
    response_model=list[IngredientHistoryResponse],
)
def ingredient_history(
    ingredient_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_READ))
    ],
    session: Session = Depends(get_session),
    limit: int = Query(default=50, ge=1, le=HISTORY_LIMIT),
):
    return get_ingredient_history(session, ingredient_id, limit)


# ============ RECIPES ============

@router.get("/recipes/product/{product_id}")
def get_product_recipe(
    product_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_READ))
    ],
    session: Session = Depends(get_session),
):
    return list_recipe(session, product_id)


@router.post("/recipes/product/{product_id}", status_code=status.HTTP_201_CREATED)
def add_product_recipe_line(
    product_id: int,
    line_data: RecipeLineCreate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    return add_recipe_line(
        session, product_id, line_data.ingredient_id, line_data.quantity_required
    )


@router.put("/recipes/product/{product_id}/{line_id}")
def update_product_recipe_line(
    product_id: int,
    line_id: int,
    line_data: RecipeLineUpdate,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    return update_recipe_line(session, product_id, line_id, line_data.quantity_required)


@router.delete("/recipes/product/{product_id}/{line_id}")
def delete_product_recipe_line(
    product_id: int,
    line_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    remove_recipe_line(session, product_id, line_id)
    return {"success": True, "message": "Ingredient removed from recipe"}


# ============ AVAILABILITY ============

@router.get("/availability/product/{product_id}")
def product_availability(
    product_id: int,
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_READ))
    ],
    session: Session = Depends(get_session),
):
    return check_product_availability(session, product_id)


@router.post("/availability/sync")
def sync_availability(
    current_user: Annotated[
        models.User, Depends(PermissionChecker(Permissions.INVENTORY_MANAGE))
    ],
    session: Session = Depends(get_session),
):
    """Recompute is_available for every product that has a recipe"""
    return sync_all_product_availability(session)
