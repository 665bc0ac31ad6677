from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple


@dataclass
class RecipeContribution:
    recipe_id: str
    recipe_title: str
    amount: float
    unit: str

    def as_payload(self) -> Dict[str, Any]:
        return {
            "recipeId": self.recipe_id,
            "recipeTitle": self.recipe_title,
            "amount": self.amount,
            "unit": self.unit,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RecipeContribution":
        return cls(
            recipe_id=str(payload.get("recipeId") or ""),
            recipe_title=str(payload.get("recipeTitle") or ""),
            amount=float(payload.get("amount") or 0.0),
            unit=str(payload.get("unit") or ""),
        )


@dataclass
class IngredientLine:
    """One ingredient on the way to a shopping list.

    `merged_ingredient_ids` lists every source id folded into this line;
    it is empty for a line that has not been merged with another id.
    """

    ingredient_id: str
    name: str
    amount: float
    unit: str
    source_recipes: List[RecipeContribution] = field(default_factory=list)
    merged_ingredient_ids: List[str] = field(default_factory=list)

    @property
    def member_ids(self) -> List[str]:
        return self.merged_ingredient_ids or [self.ingredient_id]


@dataclass
class PotentialMerge:
    merge_id: str
    lines: List[IngredientLine]
    suggested_name: str
    canonical_unit: str
    conversion_ratios: List[float]
    total_amount: float
    user_decision: Optional[str] = None

    @property
    def ingredient_ids(self) -> List[str]:
        return sorted({line.ingredient_id for line in self.lines})

    @property
    def decision_key(self) -> Tuple[str, ...]:
        return tuple(self.ingredient_ids)


@dataclass
class MergeDetectionResult:
    auto_merged: List[IngredientLine] = field(default_factory=list)
    suggested_merges: List[PotentialMerge] = field(default_factory=list)
    no_merge: List[IngredientLine] = field(default_factory=list)
