from __future__ import annotations

import unittest
from unittest import IsolatedAsyncioTestCase, mock

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from mealcart.config import Settings
from mealcart.errors import InvalidMergeDecision, ShoppingListItemNotFound, ShoppingListNotFound
from mealcart.models import ComparisonStatus, PantryItem, ShoppingList, ShoppingListStatus
from mealcart.schemas import RecipeSelection, ShoppingListBuildRequest
from mealcart.services.classifier import Classified
from mealcart.services.comparison_cache import ComparisonCache
from mealcart.services.shopping_list import (
    EXISTING_CART_RECIPE_ID,
    aggregate_shopping_list,
    apply_merge_decisions,
    build_ingredient_lines,
    clear_active_shopping_list,
    delete_shopping_list,
    drain_background_tasks,
    get_active_shopping_list,
    get_shopping_list,
    load_previous_decisions,
    mark_item_purchased,
    serialize_shopping_list,
)

from .support import ScriptedClassifier, TempDatabase, verdict_key

USER = "user-1"


def _recipe(recipe_id: str, *ingredients, quantity: float = 1.0) -> dict:
    return {
        "recipeId": recipe_id,
        "recipeTitle": recipe_id.title(),
        "quantity": quantity,
        "ingredients": [
            {"ingredientId": ingredient_id, "name": name, "amount": amount, "unit": unit}
            for ingredient_id, name, amount, unit in ingredients
        ],
    }


def _request(*recipes, **extra) -> ShoppingListBuildRequest:
    return ShoppingListBuildRequest.model_validate({"recipes": list(recipes), **extra})


SALMON_RECIPES = (
    _recipe("teriyaki", ("s1", "salmon", 6, "oz")),
    _recipe("poke", ("s2", "salmon fillet", 8, "oz")),
)


class BuildIngredientLinesTest(unittest.TestCase):
    def test_quantity_scales_and_units_combine(self):
        selections = [
            RecipeSelection.model_validate(_recipe("soup", ("stock", "chicken stock", 1, "cup"), quantity=2)),
            RecipeSelection.model_validate(_recipe("risotto", ("stock", "chicken stock", 8, "tbsp"))),
        ]
        lines = build_ingredient_lines(selections)
        self.assertEqual(len(lines), 1)
        self.assertEqual(lines[0].unit, "cups")
        self.assertAlmostEqual(lines[0].amount, 2.5)
        self.assertEqual([entry.recipe_id for entry in lines[0].source_recipes], ["soup", "risotto"])
        self.assertAlmostEqual(lines[0].source_recipes[0].amount, 2.0)

    def test_incompatible_units_split_into_own_line(self):
        selections = [
            RecipeSelection.model_validate(
                _recipe("stir fry", ("garlic", "garlic", 2, "cloves"), ("garlic", "garlic", 1, "tsp"))
            )
        ]
        lines = build_ingredient_lines(selections)
        self.assertEqual([entry.ingredient_id for entry in lines], ["garlic", "garlic_tsp"])

    def test_excluded_ids_are_skipped(self):
        selections = [RecipeSelection.model_validate(_recipe("salad", ("salt", "salt", 1, "tsp"), ("kale", "kale", 2, "cup")))]
        lines = build_ingredient_lines(selections, excluded_ingredient_ids={"salt"})
        self.assertEqual([entry.ingredient_id for entry in lines], ["kale"])


class AggregateShoppingListTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = TempDatabase()
        await self.db.create_all()
        self.cache = ComparisonCache(self.db.Session)
        self.settings = Settings(similarity_mode="inline", similarity_batch_size=10, similarity_max_concurrency=2)

    async def asyncTearDown(self):
        await self.db.dispose()

    async def _aggregate(self, session, request, classifier=None):
        return await aggregate_shopping_list(
            session,
            user_id=USER,
            request=request,
            cache=self.cache,
            classifier=classifier or ScriptedClassifier(),
            settings=self.settings,
        )

    async def test_new_list_supersedes_active_one(self):
        async with self.db.Session() as session:
            first = await self._aggregate(session, _request(_recipe("r1", ("rice", "rice", 1, "cup")), similarityMode="off"))
            second = await self._aggregate(session, _request(_recipe("r2", ("beans", "beans", 1, "can")), similarityMode="off"))
            self.assertEqual(second.shopping_list.status, ShoppingListStatus.ACTIVE)
            active = await get_active_shopping_list(session, USER)
            self.assertEqual(active.id, second.shopping_list.id)

        async with self.db.Session() as session:
            stored = await session.get(ShoppingList, first.shopping_list.id)
            self.assertEqual(stored.status, ShoppingListStatus.SUPERSEDED)

    async def test_decisions_are_remembered_for_the_next_list(self):
        await self.cache.put("salmon", "salmon fillet", ComparisonStatus.SIMILAR)
        classifier = ScriptedClassifier()
        async with self.db.Session() as session:
            outcome = await self._aggregate(session, _request(*SALMON_RECIPES), classifier)
            shopping_list = outcome.shopping_list
            self.assertEqual(len(shopping_list.items), 2)
            self.assertEqual(len(shopping_list.merge_options), 1)
            option = shopping_list.merge_options[0]
            self.assertEqual(option.ingredient_ids, ["s1", "s2"])
            self.assertIsNone(option.user_decision)

            updated = await apply_merge_decisions(
                session, user_id=USER, shopping_list_id=shopping_list.id, decisions=[("merge-1", "merge")]
            )
            self.assertEqual(len(updated.items), 1)
            merged = updated.items[0]
            self.assertEqual(merged.merged_ingredient_ids, ["s1", "s2"])
            self.assertEqual(merged.unit, "oz")
            self.assertAlmostEqual(merged.total_amount, 14.0)
            self.assertEqual(updated.merge_options[0].user_decision, "merge")

            again = await self._aggregate(session, _request(*SALMON_RECIPES), classifier)
            self.assertEqual(classifier.calls, [])
            self.assertEqual(len(again.shopping_list.items), 1)
            remembered = again.shopping_list.merge_options[0]
            self.assertEqual(remembered.user_decision, "merge")
            self.assertIsNotNone(remembered.decided_at)

    async def test_keep_separate_can_be_reversed(self):
        await self.cache.put("salmon", "salmon fillet", ComparisonStatus.SIMILAR)
        async with self.db.Session() as session:
            outcome = await self._aggregate(session, _request(*SALMON_RECIPES))
            list_id = outcome.shopping_list.id
            merged = await apply_merge_decisions(
                session, user_id=USER, shopping_list_id=list_id, decisions=[("merge-1", "merge")]
            )
            self.assertEqual(len(merged.items), 1)
            separated = await apply_merge_decisions(
                session, user_id=USER, shopping_list_id=list_id, decisions=[("merge-1", "keep_separate")]
            )
            self.assertEqual(sorted(item.ingredient_id for item in separated.items), ["s1", "s2"])
            self.assertEqual([item.position for item in separated.items], [0, 1])

    async def test_invalid_decisions(self):
        await self.cache.put("salmon", "salmon fillet", ComparisonStatus.SIMILAR)
        async with self.db.Session() as session:
            outcome = await self._aggregate(session, _request(*SALMON_RECIPES))
            with self.assertRaises(InvalidMergeDecision):
                await apply_merge_decisions(
                    session, user_id=USER, shopping_list_id=outcome.shopping_list.id, decisions=[("merge-9", "merge")]
                )
            with self.assertRaises(InvalidMergeDecision):
                await apply_merge_decisions(
                    session, user_id=USER, shopping_list_id=outcome.shopping_list.id, decisions=[("merge-1", "maybe")]
                )
            with self.assertRaises(ShoppingListNotFound):
                await apply_merge_decisions(
                    session, user_id="someone-else", shopping_list_id=outcome.shopping_list.id, decisions=[("merge-1", "merge")]
                )

    async def test_pantry_items_are_excluded(self):
        async with self.db.Session() as session:
            session.add_all(
                [
                    PantryItem(user_id=USER, ingredient_id="salt", is_available=True),
                    PantryItem(user_id=USER, ingredient_id="pepper", is_available=False),
                    PantryItem(user_id="other", ingredient_id="kale", is_available=True),
                ]
            )
            await session.commit()

            request = _request(
                _recipe(
                    "salad",
                    ("salt", "salt", 1, "tsp"),
                    ("pepper", "black pepper", 1, "tsp"),
                    ("kale", "kale", 2, "cup"),
                ),
                excludePantry=True,
                similarityMode="off",
            )
            outcome = await self._aggregate(session, request)
            ids = [item.ingredient_id for item in outcome.shopping_list.items]
            self.assertEqual(sorted(ids), ["kale", "pepper"])

    async def test_existing_cart_is_folded_in(self):
        async with self.db.Session() as session:
            await self._aggregate(session, _request(_recipe("r1", ("rice", "rice", 1, "cup")), similarityMode="off"))
            outcome = await self._aggregate(
                session,
                _request(
                    _recipe("r2", ("rice", "rice", 1, "cup"), ("beans", "black beans", 1, "can")),
                    clearCart=False,
                    similarityMode="off",
                ),
            )
            items = {item.ingredient_id: item for item in outcome.shopping_list.items}
            self.assertEqual(set(items), {"rice", "beans"})
            self.assertAlmostEqual(items["rice"].total_amount, 2.0)
            sources = [entry["recipeId"] for entry in items["rice"].recipe_breakdown]
            self.assertEqual(sources, [EXISTING_CART_RECIPE_ID, "r2"])

    async def test_meal_plan_lists_warm_the_cache_in_background(self):
        classifier = ScriptedClassifier({verdict_key("salmon", "salmon fillet"): Classified(ComparisonStatus.SIMILAR)})
        async with self.db.Session() as session:
            outcome = await self._aggregate(session, _request(*SALMON_RECIPES, mealPlanId="plan-7"), classifier)
            self.assertEqual(outcome.detection.suggested_merges, [])
            self.assertEqual(len(outcome.shopping_list.items), 2)
            self.assertEqual(outcome.shopping_list.source, "meal_plan")
            self.assertIsNotNone(outcome.warming_task)

        self.assertEqual(await drain_background_tasks(5.0), 0)
        self.assertTrue(outcome.warming_task.done())
        self.assertEqual(classifier.pairs_seen, 1)
        cached = await self.cache.get("salmon fillet", "salmon")
        self.assertEqual(cached.status, ComparisonStatus.SIMILAR)

    async def test_cache_write_failure_leaves_nothing_behind(self):
        classifier = ScriptedClassifier({verdict_key("salmon", "salmon fillet"): Classified(ComparisonStatus.SAME)})
        failure = OperationalError("INSERT INTO ingredient_comparisons", {}, Exception("disk I/O error"))
        with mock.patch.object(self.cache, "put_many", new=mock.AsyncMock(side_effect=failure)):
            async with self.db.Session() as session:
                with self.assertRaises(OperationalError):
                    await self._aggregate(session, _request(*SALMON_RECIPES), classifier)

        async with self.db.Session() as session:
            count = await session.scalar(select(func.count()).select_from(ShoppingList))
        self.assertEqual(count, 0)
        self.assertEqual(classifier.pairs_seen, 1)

    async def test_off_mode_skips_detection(self):
        classifier = ScriptedClassifier()
        async with self.db.Session() as session:
            outcome = await self._aggregate(session, _request(*SALMON_RECIPES, similarityMode="off"), classifier)
        self.assertIsNone(outcome.warming_task)
        self.assertEqual(classifier.calls, [])
        self.assertEqual(outcome.shopping_list.merge_options, [])


class ShoppingListMaintenanceTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = TempDatabase()
        await self.db.create_all()
        self.cache = ComparisonCache(self.db.Session)
        await self.cache.put("salmon", "salmon fillet", ComparisonStatus.SIMILAR)

    async def asyncTearDown(self):
        await self.db.dispose()

    async def _build(self, session):
        outcome = await aggregate_shopping_list(
            session,
            user_id=USER,
            request=_request(*SALMON_RECIPES, similarityMode="inline"),
            cache=self.cache,
            classifier=ScriptedClassifier(),
            settings=Settings(),
        )
        return outcome.shopping_list

    async def test_delete_keeps_decisions(self):
        async with self.db.Session() as session:
            shopping_list = await self._build(session)
            await apply_merge_decisions(
                session, user_id=USER, shopping_list_id=shopping_list.id, decisions=[("merge-1", "keep_separate")]
            )
            await delete_shopping_list(session, USER, str(shopping_list.id))
            with self.assertRaises(ShoppingListNotFound):
                await get_shopping_list(session, USER, shopping_list.id)
            self.assertEqual(await load_previous_decisions(session, USER), {("s1", "s2"): "keep_separate"})

    async def test_merge_keeps_purchase_state_and_price(self):
        async with self.db.Session() as session:
            shopping_list = await self._build(session)
            fillet = next(item for item in shopping_list.items if item.ingredient_id == "s2")
            await mark_item_purchased(
                session,
                user_id=USER,
                shopping_list_id=shopping_list.id,
                item_id=str(fillet.id),
                is_purchased=True,
                actual_price=9.0,
            )
            merged = await apply_merge_decisions(
                session, user_id=USER, shopping_list_id=shopping_list.id, decisions=[("merge-1", "merge")]
            )
            self.assertEqual(len(merged.items), 1)
            self.assertTrue(merged.items[0].is_purchased)
            self.assertEqual(merged.items[0].actual_price, 9.0)

    async def test_merge_options_keep_detection_order(self):
        recipes = [
            _recipe(
                f"r{index}",
                (f"a{index}", f"spice {index}", 1, "tsp"),
                (f"b{index}", f"spice {index} blend", 1, "tsp"),
            )
            for index in range(1, 12)
        ]
        for index in range(1, 12):
            await self.cache.put(f"spice {index}", f"spice {index} blend", ComparisonStatus.SIMILAR)

        async with self.db.Session() as session:
            outcome = await aggregate_shopping_list(
                session,
                user_id=USER,
                request=_request(*recipes, similarityMode="inline"),
                cache=self.cache,
                classifier=ScriptedClassifier(),
                settings=Settings(similarity_batch_size=50),
            )
            list_id = outcome.shopping_list.id

        async with self.db.Session() as session:
            stored = await get_shopping_list(session, USER, list_id)
            self.assertEqual(
                [option.merge_id for option in stored.merge_options],
                [f"merge-{index}" for index in range(1, 12)],
            )

    async def test_lookup_rejects_bad_ids(self):
        async with self.db.Session() as session:
            with self.assertRaises(ShoppingListNotFound):
                await get_shopping_list(session, USER, "not-a-uuid")

    async def test_clear_active(self):
        async with self.db.Session() as session:
            self.assertFalse(await clear_active_shopping_list(session, USER))
            await self._build(session)
            self.assertTrue(await clear_active_shopping_list(session, USER))
            self.assertIsNone(await get_active_shopping_list(session, USER))

    async def test_mark_item_purchased_and_serialize(self):
        async with self.db.Session() as session:
            shopping_list = await self._build(session)
            item = shopping_list.items[0]
            updated = await mark_item_purchased(
                session,
                user_id=USER,
                shopping_list_id=shopping_list.id,
                item_id=str(item.id),
                is_purchased=True,
                actual_price=12.5,
            )
            self.assertTrue(updated.is_purchased)
            self.assertEqual(updated.actual_price, 12.5)

            with self.assertRaises(ShoppingListItemNotFound):
                await mark_item_purchased(
                    session,
                    user_id=USER,
                    shopping_list_id=shopping_list.id,
                    item_id="00000000-0000-0000-0000-000000000000",
                    is_purchased=True,
                )

            payload = serialize_shopping_list(shopping_list)
            self.assertEqual(payload.status, ShoppingListStatus.ACTIVE)
            self.assertEqual(len(payload.items), 2)
            self.assertTrue(payload.items[0].isPurchased)
            self.assertEqual(payload.items[0].displayAmount, "6")
            self.assertEqual(payload.mergeOptions[0].ingredientIds, ["s1", "s2"])
            self.assertIsNone(payload.mergeOptions[0].userDecision)


if __name__ == "__main__":
    unittest.main()
