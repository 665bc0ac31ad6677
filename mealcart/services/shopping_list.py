from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import Settings, SimilarityMode, get_settings
from ..errors import InvalidMergeDecision, ShoppingListItemNotFound, ShoppingListNotFound, UnitConversionError
from ..models import (
    MergeDecision,
    PantryItem,
    ShoppingList,
    ShoppingListItem,
    ShoppingListMergeOption,
    ShoppingListStatus,
)
from ..schemas import (
    MergeOptionSchema,
    RecipeBreakdownEntry,
    RecipeSelection,
    ShoppingListBuildRequest,
    ShoppingListItemSchema,
    ShoppingListResponse,
)
from .classifier import IngredientClassifier
from .comparison_cache import ComparisonCache
from .lines import IngredientLine, MergeDetectionResult, PotentialMerge, RecipeContribution
from .merging import apply_merge_decisions_by_ids, decision_key, merge_lines
from .similarity import detect_similar_ingredients
from .units import combine_amounts, format_amount, normalize_unit, same_unit

logger = logging.getLogger(__name__)

EXISTING_CART_RECIPE_ID = "existing"
EXISTING_CART_TITLE = "Existing cart"

# Strong references so detached warming tasks are not garbage collected mid-run.
_background_tasks: Set[asyncio.Task] = set()


@dataclass
class AggregationOutcome:
    shopping_list: ShoppingList
    detection: MergeDetectionResult
    warming_task: Optional[asyncio.Task] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_uuid(value: Any, *, missing: Exception) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError) as exc:
        raise missing from exc


# ---------------------------------------------------------------------------
# Line building


def _fold_line(
    lines: Dict[str, IngredientLine],
    *,
    ingredient_id: str,
    name: str,
    amount: float,
    unit: str,
    contribution: RecipeContribution,
) -> None:
    existing = lines.get(ingredient_id)
    if existing is None:
        normalized = normalize_unit(amount, unit)
        lines[ingredient_id] = IngredientLine(
            ingredient_id=ingredient_id,
            name=name,
            amount=normalized.amount,
            unit=normalized.unit,
            source_recipes=[contribution],
        )
        return

    if same_unit(existing.unit, unit):
        existing.amount += amount
        existing.source_recipes.append(contribution)
        return

    try:
        combined = combine_amounts(existing.amount, existing.unit, amount, unit)
    except UnitConversionError:
        split_key = f"{ingredient_id}_{unit}"
        logger.debug("Keeping %s (%s) as a separate line from %s", name, unit, existing.unit)
        _fold_line(
            lines,
            ingredient_id=split_key,
            name=name,
            amount=amount,
            unit=unit,
            contribution=contribution,
        )
        return
    existing.amount = combined.amount
    existing.unit = combined.unit
    existing.source_recipes.append(contribution)


def build_ingredient_lines(
    selections: Sequence[RecipeSelection],
    *,
    existing_items: Iterable[ShoppingListItem] = (),
    excluded_ingredient_ids: Optional[Set[str]] = None,
) -> List[IngredientLine]:
    """Flatten recipe selections into one line per ingredient (and incompatible unit).

    Each recipe's amounts are scaled by its quantity multiplier. A repeat of
    an ingredient is added directly when the unit matches, combined through
    the unit tables when only the unit type matches, and otherwise kept as a
    separate line keyed `<ingredient id>_<unit>`. Existing cart items seed
    the map as "Existing cart" contributions.
    """
    excluded = excluded_ingredient_ids or set()
    lines: Dict[str, IngredientLine] = {}

    for item in existing_items:
        amount = float(item.total_amount or 0.0)
        lines[item.ingredient_id] = IngredientLine(
            ingredient_id=item.ingredient_id,
            name=item.ingredient_name,
            amount=amount,
            unit=item.unit,
            source_recipes=[
                RecipeContribution(EXISTING_CART_RECIPE_ID, EXISTING_CART_TITLE, amount, item.unit)
            ],
            merged_ingredient_ids=list(item.merged_ingredient_ids or []),
        )

    for selection in selections:
        title = selection.recipeTitle or selection.recipeId
        for ingredient in selection.ingredients:
            if ingredient.ingredientId in excluded:
                continue
            amount = ingredient.amount * selection.quantity
            _fold_line(
                lines,
                ingredient_id=ingredient.ingredientId,
                name=ingredient.name,
                amount=amount,
                unit=ingredient.unit,
                contribution=RecipeContribution(selection.recipeId, title, amount, ingredient.unit),
            )
    return list(lines.values())


def _line_from_payload(payload: Dict[str, Any]) -> IngredientLine:
    return IngredientLine(
        ingredient_id=str(payload["ingredientId"]),
        name=str(payload["name"]),
        amount=float(payload.get("amount") or 0.0),
        unit=str(payload.get("unit") or ""),
        source_recipes=[RecipeContribution.from_payload(entry) for entry in payload.get("recipeBreakdown") or []],
        merged_ingredient_ids=list(payload.get("mergedIngredientIds") or []),
    )


def _line_payload(line: IngredientLine) -> Dict[str, Any]:
    return {
        "ingredientId": line.ingredient_id,
        "name": line.name,
        "amount": line.amount,
        "unit": line.unit,
        "recipeBreakdown": [entry.as_payload() for entry in line.source_recipes],
        "mergedIngredientIds": list(line.merged_ingredient_ids),
    }


def _line_from_item(item: ShoppingListItem) -> IngredientLine:
    return IngredientLine(
        ingredient_id=item.ingredient_id,
        name=item.ingredient_name,
        amount=float(item.total_amount or 0.0),
        unit=item.unit,
        source_recipes=[RecipeContribution.from_payload(entry) for entry in item.recipe_breakdown or []],
        merged_ingredient_ids=list(item.merged_ingredient_ids or []),
    )


def _item_from_line(line: IngredientLine, position: int) -> ShoppingListItem:
    return ShoppingListItem(
        position=position,
        ingredient_id=line.ingredient_id,
        ingredient_name=line.name,
        total_amount=line.amount,
        unit=line.unit,
        recipe_breakdown=[entry.as_payload() for entry in line.source_recipes],
        merged_ingredient_ids=list(line.merged_ingredient_ids),
    )


# ---------------------------------------------------------------------------
# Queries


async def get_active_shopping_list(session: AsyncSession, user_id: str) -> ShoppingList | None:
    result = await session.execute(
        select(ShoppingList)
        .where(ShoppingList.user_id == user_id, ShoppingList.status == ShoppingListStatus.ACTIVE)
        .order_by(ShoppingList.created_at.desc())
        .limit(1)
    )
    return result.scalars().first()


async def get_shopping_list(session: AsyncSession, user_id: str, shopping_list_id: Any) -> ShoppingList:
    list_uuid = _parse_uuid(shopping_list_id, missing=ShoppingListNotFound(str(shopping_list_id)))
    shopping_list = await session.get(ShoppingList, list_uuid)
    if (
        shopping_list is None
        or shopping_list.user_id != user_id
        or shopping_list.status == ShoppingListStatus.DELETED
    ):
        raise ShoppingListNotFound(str(shopping_list_id))
    return shopping_list


async def load_previous_decisions(session: AsyncSession, user_id: str) -> Dict[Tuple[str, ...], str]:
    """Every merge answer the user has given, keyed by sorted ingredient ids.

    Answers recorded on deleted or superseded lists still count; the most
    recent answer for a given id set wins.
    """
    result = await session.execute(
        select(ShoppingListMergeOption.ingredient_ids, ShoppingListMergeOption.user_decision)
        .join(ShoppingList, ShoppingList.id == ShoppingListMergeOption.shopping_list_id)
        .where(
            ShoppingList.user_id == user_id,
            ShoppingListMergeOption.user_decision.is_not(None),
        )
        .order_by(ShoppingListMergeOption.decided_at.asc(), ShoppingListMergeOption.created_at.asc())
    )
    decisions: Dict[Tuple[str, ...], str] = {}
    for ingredient_ids, user_decision in result.all():
        decisions[decision_key(ingredient_ids or [])] = user_decision
    return decisions


async def _available_pantry_ids(session: AsyncSession, user_id: str) -> Set[str]:
    result = await session.execute(
        select(PantryItem.ingredient_id).where(
            PantryItem.user_id == user_id,
            PantryItem.is_available.is_(True),
        )
    )
    return set(result.scalars().all())


# ---------------------------------------------------------------------------
# Cache warming


async def _run_with_guard(
    lines: Sequence[IngredientLine],
    *,
    cache: ComparisonCache,
    classifier: IngredientClassifier,
    batch_size: int,
    max_concurrency: int,
) -> None:
    logger.info("Ingredient cache warming dispatch lines=%d", len(lines))
    try:
        await detect_similar_ingredients(
            lines,
            cache=cache,
            classifier=classifier,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
        )
    except Exception:
        logger.exception("Ingredient cache warming failed (lines=%d)", len(lines))


def schedule_cache_warming(
    lines: Sequence[IngredientLine],
    *,
    cache: ComparisonCache,
    classifier: IngredientClassifier,
    settings: Settings | None = None,
) -> Optional[asyncio.Task]:
    """Fire-and-forget detection run so the response is not blocked by the classifier.

    Its only effect is on the comparison cache, which later requests read.
    The task is returned so callers can await it when they need to.
    """
    settings = settings or get_settings()
    if len(lines) < 2:
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("Cannot schedule ingredient cache warming; no running loop")
        return None
    task = loop.create_task(
        _run_with_guard(
            list(lines),
            cache=cache,
            classifier=classifier,
            batch_size=settings.similarity_batch_size,
            max_concurrency=settings.similarity_max_concurrency,
        )
    )
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


async def drain_background_tasks(timeout: float) -> int:
    """Wait up to `timeout` seconds for pending warming runs; returns how many were cancelled."""
    pending = list(_background_tasks)
    if not pending:
        return 0
    _, still_running = await asyncio.wait(pending, timeout=timeout)
    for task in still_running:
        task.cancel()
    if still_running:
        logger.warning("Cancelled %d unfinished cache warming task(s) at shutdown", len(still_running))
    return len(still_running)


# ---------------------------------------------------------------------------
# Aggregation


def _resolve_mode(request: ShoppingListBuildRequest, settings: Settings) -> SimilarityMode:
    if request.similarityMode:
        return request.similarityMode
    if request.mealPlanId:
        # Meal-plan lists are generated in bulk; classification only warms the cache.
        return "background"
    return settings.similarity_mode


def _final_lines(detection: MergeDetectionResult) -> List[IngredientLine]:
    members: List[IngredientLine] = []
    decided: List[Tuple[Sequence[str], str]] = []
    for suggestion in detection.suggested_merges:
        members.extend(suggestion.lines)
        if suggestion.user_decision:
            decided.append((suggestion.ingredient_ids, suggestion.user_decision))
    return [
        *detection.auto_merged,
        *detection.no_merge,
        *apply_merge_decisions_by_ids(members, decided),
    ]


def _merge_option_from_suggestion(
    suggestion: PotentialMerge, position: int, decided_at: datetime
) -> ShoppingListMergeOption:
    return ShoppingListMergeOption(
        merge_id=suggestion.merge_id,
        position=position,
        ingredient_ids=suggestion.ingredient_ids,
        suggested_name=suggestion.suggested_name,
        canonical_unit=suggestion.canonical_unit or "",
        conversion_ratios=list(suggestion.conversion_ratios),
        total_amount=suggestion.total_amount,
        member_lines=[_line_payload(line) for line in suggestion.lines],
        user_decision=suggestion.user_decision,
        decided_at=decided_at if suggestion.user_decision else None,
    )


async def aggregate_shopping_list(
    session: AsyncSession,
    *,
    user_id: str,
    request: ShoppingListBuildRequest,
    cache: ComparisonCache,
    classifier: IngredientClassifier,
    settings: Settings | None = None,
) -> AggregationOutcome:
    """Build, consolidate and persist a new active shopping list for the user.

    The new list replaces any active one in a single transaction; on failure
    nothing is written.
    """
    settings = settings or get_settings()
    mode = _resolve_mode(request, settings)

    existing_items: List[ShoppingListItem] = []
    if not request.clearCart:
        active = await get_active_shopping_list(session, user_id)
        if active is not None:
            existing_items = list(active.items)
            logger.info("Folding %d existing cart items into new list user=%s", len(existing_items), user_id)

    excluded: Set[str] = set()
    if request.excludePantry:
        excluded = await _available_pantry_ids(session, user_id)
        logger.info("Excluding %d pantry ingredients user=%s", len(excluded), user_id)

    lines = build_ingredient_lines(
        request.recipes,
        existing_items=existing_items,
        excluded_ingredient_ids=excluded,
    )
    logger.info(
        "Aggregating shopping list user=%s recipes=%d lines=%d mode=%s",
        user_id,
        len(request.recipes),
        len(lines),
        mode,
    )

    warming_task: Optional[asyncio.Task] = None
    if mode == "inline":
        previous = await load_previous_decisions(session, user_id)
        detection = await detect_similar_ingredients(
            lines,
            cache=cache,
            classifier=classifier,
            previous_decisions=previous,
            batch_size=settings.similarity_batch_size,
            max_concurrency=settings.similarity_max_concurrency,
        )
    else:
        detection = MergeDetectionResult(no_merge=list(lines))
        if mode == "background":
            warming_task = schedule_cache_warming(lines, cache=cache, classifier=classifier, settings=settings)

    now = _utcnow()
    shopping_list = ShoppingList(
        user_id=user_id,
        meal_plan_id=request.mealPlanId,
        source="meal_plan" if request.mealPlanId else "recipe_selection",
        status=ShoppingListStatus.BUILDING,
        recipes=[
            {
                "recipeId": selection.recipeId,
                "recipeTitle": selection.recipeTitle or selection.recipeId,
                "quantity": selection.quantity,
            }
            for selection in request.recipes
        ],
    )
    shopping_list.items = [
        _item_from_line(line, position) for position, line in enumerate(_final_lines(detection))
    ]
    shopping_list.merge_options = [
        _merge_option_from_suggestion(suggestion, position, now)
        for position, suggestion in enumerate(detection.suggested_merges)
    ]
    session.add(shopping_list)
    try:
        await session.flush()
        await session.execute(
            update(ShoppingList)
            .where(
                ShoppingList.user_id == user_id,
                ShoppingList.status == ShoppingListStatus.ACTIVE,
                ShoppingList.id != shopping_list.id,
            )
            .values(status=ShoppingListStatus.SUPERSEDED)
            .execution_options(synchronize_session=False)
        )
        shopping_list.status = ShoppingListStatus.ACTIVE
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(shopping_list)
    logger.info(
        "Shopping list %s created user=%s items=%d merge_options=%d",
        shopping_list.id,
        user_id,
        len(shopping_list.items),
        len(shopping_list.merge_options),
    )
    return AggregationOutcome(shopping_list=shopping_list, detection=detection, warming_task=warming_task)


# ---------------------------------------------------------------------------
# Decisions and list maintenance


def _option_members(option: ShoppingListMergeOption, items: Sequence[ShoppingListItem]) -> List[IngredientLine]:
    if option.member_lines:
        return [_line_from_payload(payload) for payload in option.member_lines]
    wanted = set(option.ingredient_ids or [])
    return [_line_from_item(item) for item in items if item.ingredient_id in wanted]


async def apply_merge_decisions(
    session: AsyncSession,
    *,
    user_id: str,
    shopping_list_id: Any,
    decisions: Sequence[Tuple[str, str]],
) -> ShoppingList:
    """Record (merge_id, decision) answers and rebuild the affected items.

    `merge` folds the option's members into one item; `keep_separate` lists
    them individually. Answers are stored on the option row, whose sorted
    ingredient ids make them replayable on future lists.
    """
    shopping_list = await get_shopping_list(session, user_id, shopping_list_id)
    options = {option.merge_id: option for option in shopping_list.merge_options}
    for merge_id, decision in decisions:
        if decision not in MergeDecision.ALL:
            raise InvalidMergeDecision(f"Unknown merge decision: {decision}")
        if merge_id not in options:
            raise InvalidMergeDecision(f"Unknown merge option: {merge_id}")

    now = _utcnow()
    items = list(shopping_list.items)
    for merge_id, decision in decisions:
        option = options[merge_id]
        option.user_decision = decision
        option.decided_at = now

        option_ids = set(option.ingredient_ids or [])
        replaced = [
            item
            for item in items
            if item.ingredient_id in option_ids or option_ids.intersection(item.merged_ingredient_ids or [])
        ]
        members = _option_members(option, replaced)
        if not members:
            continue
        purchased = any(item.is_purchased for item in replaced)
        price = next((item.actual_price for item in replaced if item.actual_price is not None), None)
        position = min((item.position for item in replaced), default=len(items))
        for item in replaced:
            items.remove(item)

        new_lines = [merge_lines(members)] if decision == MergeDecision.MERGE else members
        for offset, line in enumerate(new_lines):
            item = _item_from_line(line, position + offset)
            item.is_purchased = purchased
            item.actual_price = price
            items.append(item)
        logger.info(
            "Applied merge decision list=%s merge_id=%s decision=%s ids=%s",
            shopping_list.id,
            merge_id,
            decision,
            option.ingredient_ids,
        )

    items.sort(key=lambda item: item.position)
    for position, item in enumerate(items):
        item.position = position
    shopping_list.items = items
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(shopping_list)
    return shopping_list


async def clear_active_shopping_list(session: AsyncSession, user_id: str) -> bool:
    active = await get_active_shopping_list(session, user_id)
    if active is None:
        return False
    active.status = ShoppingListStatus.SUPERSEDED
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Cleared active shopping list %s user=%s", active.id, user_id)
    return True


async def delete_shopping_list(session: AsyncSession, user_id: str, shopping_list_id: Any) -> None:
    """Soft delete; merge answers on the list keep informing future lists."""
    shopping_list = await get_shopping_list(session, user_id, shopping_list_id)
    shopping_list.status = ShoppingListStatus.DELETED
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    logger.info("Deleted shopping list %s user=%s", shopping_list.id, user_id)


async def mark_item_purchased(
    session: AsyncSession,
    *,
    user_id: str,
    shopping_list_id: Any,
    item_id: Any,
    is_purchased: bool,
    actual_price: float | None = None,
) -> ShoppingListItem:
    shopping_list = await get_shopping_list(session, user_id, shopping_list_id)
    item_uuid = _parse_uuid(item_id, missing=ShoppingListItemNotFound(str(item_id)))
    item = next((entry for entry in shopping_list.items if entry.id == item_uuid), None)
    if item is None:
        raise ShoppingListItemNotFound(str(item_id))
    item.is_purchased = is_purchased
    if actual_price is not None:
        item.actual_price = actual_price
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(item)
    return item


# ---------------------------------------------------------------------------
# Serialization


def serialize_shopping_list(shopping_list: ShoppingList) -> ShoppingListResponse:
    return ShoppingListResponse(
        id=str(shopping_list.id),
        status=shopping_list.status,
        source=shopping_list.source,
        mealPlanId=shopping_list.meal_plan_id,
        recipes=list(shopping_list.recipes or []),
        items=[
            ShoppingListItemSchema(
                id=str(item.id),
                ingredientId=item.ingredient_id,
                ingredientName=item.ingredient_name,
                totalAmount=item.total_amount,
                displayAmount=format_amount(item.total_amount),
                unit=item.unit,
                recipeBreakdown=[RecipeBreakdownEntry(**entry) for entry in item.recipe_breakdown or []],
                mergedIngredientIds=list(item.merged_ingredient_ids or []),
                isPurchased=item.is_purchased,
                actualPrice=item.actual_price,
            )
            for item in shopping_list.items
        ],
        mergeOptions=[
            MergeOptionSchema(
                mergeId=option.merge_id,
                ingredientIds=list(option.ingredient_ids or []),
                suggestedName=option.suggested_name,
                canonicalUnit=option.canonical_unit,
                conversionRatios=list(option.conversion_ratios or []),
                totalAmount=option.total_amount,
                userDecision=option.user_decision,
            )
            for option in shopping_list.merge_options
        ],
        createdAt=shopping_list.created_at,
        updatedAt=shopping_list.updated_at,
    )
