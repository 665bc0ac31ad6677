from __future__ import annotations

import logging
from typing import Iterable, List, Sequence, Set, Tuple

from ..errors import InvalidMergeDecision
from ..models import MergeDecision
from .lines import IngredientLine, RecipeContribution
from .naming import canonical_name
from .units import convert_amount, same_unit

logger = logging.getLogger(__name__)


def decision_key(ingredient_ids: Iterable[str]) -> Tuple[str, ...]:
    """Order-independent identity of a merge question: the sorted id set."""
    return tuple(sorted({str(ingredient_id) for ingredient_id in ingredient_ids}))


def _amount_in(line: IngredientLine, target_unit: str, merged_name: str) -> float:
    if same_unit(line.unit, target_unit):
        return line.amount
    converted = convert_amount(line.name, line.amount, line.unit, target_unit)
    if converted is None and merged_name != line.name:
        converted = convert_amount(merged_name, line.amount, line.unit, target_unit)
    if converted is None:
        logger.warning(
            "Cannot convert %r to %r for %s; adding amounts unconverted",
            line.unit,
            target_unit,
            merged_name,
        )
        return line.amount
    return converted


def merge_lines(lines: Sequence[IngredientLine]) -> IngredientLine:
    """Fold several lines into one.

    The merged line takes the canonical name of the group and the unit of the
    line carrying that name (else the first line's unit). Amounts are added
    directly when units match, converted where a rule exists, and otherwise
    added raw with a warning. Recipe breakdowns are concatenated in order.
    """
    if not lines:
        raise ValueError("Cannot merge an empty list of ingredient lines")
    if len(lines) == 1:
        return lines[0]

    merged_name = canonical_name([line.name for line in lines])
    selected = next((line for line in lines if line.name == merged_name), lines[0])
    target_unit = selected.unit or lines[0].unit

    total = sum(_amount_in(line, target_unit, merged_name) for line in lines)

    breakdown: List[RecipeContribution] = []
    member_ids: Set[str] = set()
    for line in lines:
        breakdown.extend(line.source_recipes)
        member_ids.update(line.member_ids)

    return IngredientLine(
        ingredient_id=selected.ingredient_id,
        name=merged_name,
        amount=total,
        unit=target_unit,
        source_recipes=breakdown,
        merged_ingredient_ids=sorted(member_ids),
    )


def apply_merge_decisions_by_ids(
    lines: Sequence[IngredientLine],
    decisions: Sequence[Tuple[Sequence[str], str]],
) -> List[IngredientLine]:
    """Apply (ingredient_ids, decision) pairs to a flat set of lines.

    Decided groups come first in decision order; lines untouched by any
    decision follow in their original order. A line consumed by one decision
    is not reused by a later one.
    """
    result: List[IngredientLine] = []
    processed: Set[int] = set()
    for ingredient_ids, decision in decisions:
        if decision not in MergeDecision.ALL:
            raise InvalidMergeDecision(f"Unknown merge decision: {decision}")
        wanted = set(ingredient_ids)
        members = [
            (index, line)
            for index, line in enumerate(lines)
            if index not in processed and line.ingredient_id in wanted
        ]
        if not members:
            continue
        processed.update(index for index, _ in members)
        member_lines = [line for _, line in members]
        if decision == MergeDecision.MERGE:
            result.append(merge_lines(member_lines))
        else:
            result.extend(member_lines)
    result.extend(line for index, line in enumerate(lines) if index not in processed)
    return result
