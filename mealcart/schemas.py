from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

SimilarityModeValue = Literal["inline", "background", "off"]
MergeDecisionValue = Literal["merge", "keep_separate"]


class RecipeIngredientPayload(BaseModel):
    ingredientId: str = Field(
        min_length=1,
        validation_alias=AliasChoices("ingredientId", "ingredient_id"),
    )
    name: str = Field(
        min_length=1,
        max_length=255,
        validation_alias=AliasChoices("name", "ingredientName", "ingredient_name"),
    )
    amount: float = Field(default=0.0, ge=0)
    unit: str = Field(default="", max_length=32)


class RecipeSelection(BaseModel):
    recipeId: str = Field(min_length=1, validation_alias=AliasChoices("recipeId", "recipe_id"))
    recipeTitle: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("recipeTitle", "recipe_title", "title")
    )
    quantity: float = Field(default=1.0, gt=0, le=50)
    ingredients: List[RecipeIngredientPayload] = Field(default_factory=list)


class ShoppingListBuildRequest(BaseModel):
    recipes: List[RecipeSelection] = Field(min_length=1)
    mealPlanId: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("mealPlanId", "meal_plan_id")
    )
    clearCart: bool = Field(default=True, validation_alias=AliasChoices("clearCart", "clear_cart"))
    excludePantry: bool = Field(
        default=False, validation_alias=AliasChoices("excludePantry", "exclude_pantry")
    )
    similarityMode: Optional[SimilarityModeValue] = Field(
        default=None, validation_alias=AliasChoices("similarityMode", "similarity_mode")
    )


class RecipeBreakdownEntry(BaseModel):
    recipeId: str
    recipeTitle: str
    amount: float
    unit: str


class ShoppingListItemSchema(BaseModel):
    id: str
    ingredientId: str
    ingredientName: str
    totalAmount: float
    displayAmount: str
    unit: str
    recipeBreakdown: List[RecipeBreakdownEntry] = []
    mergedIngredientIds: List[str] = []
    isPurchased: bool = False
    actualPrice: Optional[float] = None


class MergeOptionSchema(BaseModel):
    mergeId: str
    ingredientIds: List[str]
    suggestedName: Optional[str] = None
    canonicalUnit: str
    conversionRatios: List[float]
    totalAmount: Optional[float] = None
    userDecision: Optional[MergeDecisionValue] = None


class ShoppingListResponse(BaseModel):
    id: str
    status: str
    source: str
    mealPlanId: Optional[str] = None
    recipes: List[Dict[str, Any]] = []
    items: List[ShoppingListItemSchema]
    mergeOptions: List[MergeOptionSchema]
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ActiveShoppingListResponse(BaseModel):
    shoppingList: Optional[ShoppingListResponse] = None


class MergeDecisionPayload(BaseModel):
    mergeId: str = Field(min_length=1, validation_alias=AliasChoices("mergeId", "merge_id"))
    decision: MergeDecisionValue


class MergeDecisionsRequest(BaseModel):
    mergeDecisions: List[MergeDecisionPayload] = Field(
        min_length=1,
        validation_alias=AliasChoices("mergeDecisions", "merge_decisions", "decisions"),
    )


class ShoppingListItemUpdateRequest(BaseModel):
    isPurchased: bool = Field(validation_alias=AliasChoices("isPurchased", "is_purchased"))
    actualPrice: Optional[float] = Field(
        default=None, ge=0, validation_alias=AliasChoices("actualPrice", "actual_price")
    )


class PackageCountLine(BaseModel):
    ingredientName: str = Field(
        min_length=1, validation_alias=AliasChoices("ingredientName", "ingredient_name", "name")
    )
    amount: float = Field(ge=0)
    unit: str = ""
    packageSize: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("packageSize", "package_size", "size")
    )


class PackageCountRequest(BaseModel):
    items: List[PackageCountLine] = Field(min_length=1, max_length=200)


class PackageCountResult(BaseModel):
    ingredientName: str
    requiredAmount: float
    requiredUnit: str
    packageCount: int
    packageAmount: Optional[float] = None
    packageUnit: Optional[str] = None
    reasoning: str

    model_config = ConfigDict(extra="forbid")


class PackageCountResponse(BaseModel):
    items: List[PackageCountResult]
