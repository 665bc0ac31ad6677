from __future__ import annotations

from datetime import datetime
import uuid
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all ORM models."""


class TimestampMixin:
    """Common created/updated timestamp columns."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


json_type = JSON().with_variant(JSONB, "postgresql")


class ComparisonStatus:
    SAME = "same"
    SIMILAR = "similar"
    DIFFERENT = "different"

    ALL = (SAME, SIMILAR, DIFFERENT)
    MERGEABLE = (SAME, SIMILAR)


class ShoppingListStatus:
    BUILDING = "building"
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    DELETED = "deleted"


class MergeDecision:
    MERGE = "merge"
    KEEP_SEPARATE = "keep_separate"

    ALL = (MERGE, KEEP_SEPARATE)


class IngredientComparison(Base, TimestampMixin):
    """One classified ingredient-name pair; names are normalized and sorted."""

    __tablename__ = "ingredient_comparisons"
    __table_args__ = (
        UniqueConstraint("ingredient1", "ingredient2", name="uq_ingredient_comparisons_pair"),
        Index("ix_ingredient_comparisons_ingredient2", "ingredient2"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    ingredient1: Mapped[str] = mapped_column(String(255), nullable=False)
    ingredient2: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    canonical_unit: Mapped[Optional[str]] = mapped_column(String(32))
    conversion_ratio1: Mapped[Optional[float]] = mapped_column(Float)
    conversion_ratio2: Mapped[Optional[float]] = mapped_column(Float)

    def __repr__(self) -> str:
        return (
            f"IngredientComparison(ingredient1={self.ingredient1!r}, "
            f"ingredient2={self.ingredient2!r}, status={self.status})"
        )


class ShoppingList(Base, TimestampMixin):
    __tablename__ = "shopping_lists"
    __table_args__ = (Index("ix_shopping_lists_user_status", "user_id", "status"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    meal_plan_id: Mapped[Optional[str]] = mapped_column(String(128))
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="recipe_selection")
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ShoppingListStatus.BUILDING
    )
    recipes: Mapped[Optional[list]] = mapped_column(json_type)

    items: Mapped[List["ShoppingListItem"]] = relationship(
        back_populates="shopping_list",
        cascade="all, delete-orphan",
        order_by="ShoppingListItem.position",
        lazy="selectin",
    )
    merge_options: Mapped[List["ShoppingListMergeOption"]] = relationship(
        back_populates="shopping_list",
        cascade="all, delete-orphan",
        order_by="ShoppingListMergeOption.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"ShoppingList(id={self.id}, user_id={self.user_id}, status={self.status})"


class ShoppingListItem(Base, TimestampMixin):
    __tablename__ = "shopping_list_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    shopping_list_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("shopping_lists.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    ingredient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    ingredient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    total_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    unit: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    recipe_breakdown: Mapped[Optional[list]] = mapped_column(json_type)
    merged_ingredient_ids: Mapped[Optional[list]] = mapped_column(json_type)
    is_purchased: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    actual_price: Mapped[Optional[float]] = mapped_column(Float)

    shopping_list: Mapped[ShoppingList] = relationship(back_populates="items")


class ShoppingListMergeOption(Base, TimestampMixin):
    __tablename__ = "shopping_list_merge_options"
    __table_args__ = (
        UniqueConstraint("shopping_list_id", "merge_id", name="uq_merge_options_list_merge"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    shopping_list_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("shopping_lists.id", ondelete="CASCADE"),
        nullable=False,
    )
    merge_id: Mapped[str] = mapped_column(String(64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Always stored sorted; the sorted tuple is the decision-memory key.
    ingredient_ids: Mapped[list] = mapped_column(json_type, nullable=False)
    suggested_name: Mapped[Optional[str]] = mapped_column(String(255))
    canonical_unit: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    conversion_ratios: Mapped[list] = mapped_column(json_type, nullable=False)
    # Unmerged member lines, so a decision can be applied or reversed later.
    member_lines: Mapped[Optional[list]] = mapped_column(json_type)
    total_amount: Mapped[Optional[float]] = mapped_column(Float)
    user_decision: Mapped[Optional[str]] = mapped_column(String(16))
    decided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    shopping_list: Mapped[ShoppingList] = relationship(back_populates="merge_options")


class PantryItem(Base, TimestampMixin):
    """Ingredients a user already holds; read when building lists with pantry exclusion."""

    __tablename__ = "pantry_items"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    ingredient_id: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Optional[float]] = mapped_column(Float)
    unit: Mapped[Optional[str]] = mapped_column(String(32))
    is_available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
