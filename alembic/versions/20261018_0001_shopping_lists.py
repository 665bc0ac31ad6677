"""Ingredient comparison cache, shopping lists, merge options and pantry.

Revision ID: 5a1f0c2d7e31
Revises:
Create Date: 2026-10-18 09:00:00
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "5a1f0c2d7e31"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("NOW()"), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "ingredient_comparisons",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("ingredient1", sa.String(length=255), nullable=False),
        sa.Column("ingredient2", sa.String(length=255), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("canonical_unit", sa.String(length=32), nullable=True),
        sa.Column("conversion_ratio1", sa.Float(), nullable=True),
        sa.Column("conversion_ratio2", sa.Float(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("ingredient1", "ingredient2", name="uq_ingredient_comparisons_pair"),
    )
    op.create_index(
        "ix_ingredient_comparisons_ingredient2",
        "ingredient_comparisons",
        ["ingredient2"],
    )

    op.create_table(
        "shopping_lists",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("meal_plan_id", sa.String(length=128), nullable=True),
        sa.Column("source", sa.String(length=32), nullable=False, server_default="recipe_selection"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="building"),
        sa.Column("recipes", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_shopping_lists_user_status",
        "shopping_lists",
        ["user_id", "status"],
    )

    op.create_table(
        "shopping_list_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "shopping_list_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shopping_lists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ingredient_id", sa.String(length=128), nullable=False),
        sa.Column("ingredient_name", sa.String(length=255), nullable=False),
        sa.Column("total_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("unit", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("recipe_breakdown", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("merged_ingredient_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("is_purchased", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("actual_price", sa.Float(), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_shopping_list_items_shopping_list_id",
        "shopping_list_items",
        ["shopping_list_id"],
    )

    op.create_table(
        "shopping_list_merge_options",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "shopping_list_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("shopping_lists.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("merge_id", sa.String(length=64), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("ingredient_ids", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("suggested_name", sa.String(length=255), nullable=True),
        sa.Column("canonical_unit", sa.String(length=32), nullable=False, server_default=""),
        sa.Column("conversion_ratios", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("member_lines", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("total_amount", sa.Float(), nullable=True),
        sa.Column("user_decision", sa.String(length=16), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("shopping_list_id", "merge_id", name="uq_merge_options_list_merge"),
    )

    op.create_table(
        "pantry_items",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("ingredient_id", sa.String(length=128), nullable=False),
        sa.Column("amount", sa.Float(), nullable=True),
        sa.Column("unit", sa.String(length=32), nullable=True),
        sa.Column("is_available", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_pantry_items_user_id", "pantry_items", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_pantry_items_user_id", table_name="pantry_items")
    op.drop_table("pantry_items")
    op.drop_table("shopping_list_merge_options")
    op.drop_index("ix_shopping_list_items_shopping_list_id", table_name="shopping_list_items")
    op.drop_table("shopping_list_items")
    op.drop_index("ix_shopping_lists_user_status", table_name="shopping_lists")
    op.drop_table("shopping_lists")
    op.drop_index("ix_ingredient_comparisons_ingredient2", table_name="ingredient_comparisons")
    op.drop_table("ingredient_comparisons")
