from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import Principal, get_current_principal
from ..db import get_session_factory, session_dependency
from ..errors import InvalidMergeDecision, ShoppingListItemNotFound, ShoppingListNotFound
from ..schemas import (
    ActiveShoppingListResponse,
    MergeDecisionsRequest,
    PackageCountRequest,
    PackageCountResponse,
    PackageCountResult,
    ShoppingListBuildRequest,
    ShoppingListItemSchema,
    ShoppingListItemUpdateRequest,
    ShoppingListResponse,
)
from ..services.classifier import IngredientClassifier, OpenAIIngredientClassifier
from ..services.comparison_cache import ComparisonCache
from ..services.package_sizes import calculate_purchase_count
from ..services.shopping_list import (
    aggregate_shopping_list,
    apply_merge_decisions,
    clear_active_shopping_list,
    delete_shopping_list,
    get_active_shopping_list,
    get_shopping_list,
    mark_item_purchased,
    serialize_shopping_list,
)
from ..services.units import format_amount


router = APIRouter(prefix="/shopping-lists", tags=["shopping-lists"])

logger = logging.getLogger(__name__)


def get_comparison_cache() -> ComparisonCache:
    return ComparisonCache(get_session_factory())


def get_ingredient_classifier() -> IngredientClassifier:
    return OpenAIIngredientClassifier()


def _not_found(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))


@router.post("", response_model=ShoppingListResponse, status_code=status.HTTP_201_CREATED)
async def create_shopping_list(
    payload: ShoppingListBuildRequest,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
    cache: ComparisonCache = Depends(get_comparison_cache),
    classifier: IngredientClassifier = Depends(get_ingredient_classifier),
) -> ShoppingListResponse:
    outcome = await aggregate_shopping_list(
        session,
        user_id=principal.user_id,
        request=payload,
        cache=cache,
        classifier=classifier,
    )
    return serialize_shopping_list(outcome.shopping_list)


@router.get("/active", response_model=ActiveShoppingListResponse)
async def read_active_shopping_list(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
) -> ActiveShoppingListResponse:
    shopping_list = await get_active_shopping_list(session, principal.user_id)
    if shopping_list is None:
        return ActiveShoppingListResponse(shoppingList=None)
    return ActiveShoppingListResponse(shoppingList=serialize_shopping_list(shopping_list))


@router.delete("/active", status_code=status.HTTP_204_NO_CONTENT)
async def clear_active(
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
) -> Response:
    await clear_active_shopping_list(session, principal.user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/package-counts", response_model=PackageCountResponse)
async def estimate_package_counts(
    payload: PackageCountRequest,
    principal: Principal = Depends(get_current_principal),
) -> PackageCountResponse:
    results = []
    for line in payload.items:
        quantity = calculate_purchase_count(line.ingredientName, line.amount, line.unit, line.packageSize)
        package = quantity.package_size
        results.append(
            PackageCountResult(
                ingredientName=line.ingredientName,
                requiredAmount=line.amount,
                requiredUnit=line.unit,
                packageCount=quantity.package_count,
                packageAmount=package.amount if package else None,
                packageUnit=package.unit if package else None,
                reasoning=quantity.reasoning,
            )
        )
    return PackageCountResponse(items=results)


@router.get("/{shopping_list_id}", response_model=ShoppingListResponse)
async def read_shopping_list(
    shopping_list_id: str,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
) -> ShoppingListResponse:
    try:
        shopping_list = await get_shopping_list(session, principal.user_id, shopping_list_id)
    except ShoppingListNotFound as exc:
        raise _not_found(exc) from exc
    return serialize_shopping_list(shopping_list)


@router.delete("/{shopping_list_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_shopping_list(
    shopping_list_id: str,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
) -> Response:
    try:
        await delete_shopping_list(session, principal.user_id, shopping_list_id)
    except ShoppingListNotFound as exc:
        raise _not_found(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{shopping_list_id}/merge-decisions", response_model=ShoppingListResponse)
async def save_merge_decisions(
    shopping_list_id: str,
    payload: MergeDecisionsRequest,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
) -> ShoppingListResponse:
    try:
        shopping_list = await apply_merge_decisions(
            session,
            user_id=principal.user_id,
            shopping_list_id=shopping_list_id,
            decisions=[(entry.mergeId, entry.decision) for entry in payload.mergeDecisions],
        )
    except ShoppingListNotFound as exc:
        raise _not_found(exc) from exc
    except InvalidMergeDecision as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    logger.info(
        "Saved %d merge decision(s) list=%s user=%s",
        len(payload.mergeDecisions),
        shopping_list_id,
        principal.user_id,
    )
    return serialize_shopping_list(shopping_list)


@router.patch("/{shopping_list_id}/items/{item_id}", response_model=ShoppingListItemSchema)
async def update_shopping_list_item(
    shopping_list_id: str,
    item_id: str,
    payload: ShoppingListItemUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    session: AsyncSession = Depends(session_dependency),
) -> ShoppingListItemSchema:
    try:
        item = await mark_item_purchased(
            session,
            user_id=principal.user_id,
            shopping_list_id=shopping_list_id,
            item_id=item_id,
            is_purchased=payload.isPurchased,
            actual_price=payload.actualPrice,
        )
    except (ShoppingListNotFound, ShoppingListItemNotFound) as exc:
        raise _not_found(exc) from exc
    return ShoppingListItemSchema(
        id=str(item.id),
        ingredientId=item.ingredient_id,
        ingredientName=item.ingredient_name,
        totalAmount=item.total_amount,
        displayAmount=format_amount(item.total_amount),
        unit=item.unit,
        recipeBreakdown=item.recipe_breakdown or [],
        mergedIngredientIds=list(item.merged_ingredient_ids or []),
        isPurchased=item.is_purchased,
        actualPrice=item.actual_price,
    )
