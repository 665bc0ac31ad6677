from __future__ import annotations

import unittest
from unittest import IsolatedAsyncioTestCase

from sqlalchemy import func, select

from mealcart.models import ComparisonStatus, IngredientComparison
from mealcart.services.comparison_cache import ComparisonCache, IngredientPair

from .support import TempDatabase


class IngredientPairTest(unittest.TestCase):
    def test_pair_is_order_independent_and_normalized(self):
        self.assertEqual(IngredientPair.of("Salmon ", "fresh  salmon"), IngredientPair.of("fresh salmon", "salmon"))
        self.assertEqual(IngredientPair.of("b", "a"), IngredientPair("a", "b"))
        self.assertEqual(IngredientPair("a", "b").other("A"), "b")


class ComparisonCacheTest(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = TempDatabase()
        await self.db.create_all()
        self.cache = ComparisonCache(self.db.Session)

    async def asyncTearDown(self):
        await self.db.dispose()

    async def _row_count(self) -> int:
        async with self.db.Session() as session:
            result = await session.execute(select(func.count()).select_from(IngredientComparison))
            return result.scalar_one()

    async def test_lookup_is_symmetric(self):
        await self.cache.put("Salmon", "fresh salmon", ComparisonStatus.SAME)
        forward = await self.cache.get("salmon", "Fresh Salmon")
        backward = await self.cache.get("fresh salmon", "salmon")
        self.assertIsNotNone(forward)
        self.assertEqual(forward, backward)
        self.assertEqual(forward.status, ComparisonStatus.SAME)

    async def test_missing_pair(self):
        self.assertIsNone(await self.cache.get("salmon", "tuna"))

    async def test_put_is_an_upsert(self):
        await self.cache.put("broccoli", "broccoli florets", ComparisonStatus.SIMILAR)
        await self.cache.put("broccoli florets", "broccoli", ComparisonStatus.SIMILAR)
        await self.cache.put("broccoli", "broccoli florets", ComparisonStatus.DIFFERENT)
        self.assertEqual(await self._row_count(), 1)
        entry = await self.cache.get("broccoli", "broccoli florets")
        self.assertEqual(entry.status, ComparisonStatus.DIFFERENT)

    async def test_ratios_follow_their_names(self):
        await self.cache.put(
            "lemon",
            "lemon juice",
            ComparisonStatus.SIMILAR,
            canonical_unit="tbsp",
            ratio_a=4.0,
            ratio_b=1.0,
        )
        entry = await self.cache.get("lemon juice", "lemon")
        self.assertTrue(entry.has_conversion)
        self.assertEqual(entry.canonical_unit, "tbsp")
        self.assertEqual(entry.ratio_for("lemon"), 4.0)
        self.assertEqual(entry.ratio_for("lemon juice"), 1.0)

    async def test_unknown_status_rejected(self):
        with self.assertRaises(ValueError):
            await self.cache.put("a", "b", "maybe")

    async def test_neighbours_and_batch_get(self):
        await self.cache.put("salmon", "fresh salmon", ComparisonStatus.SAME)
        await self.cache.put("salmon", "tuna", ComparisonStatus.DIFFERENT)
        await self.cache.put("rice", "brown rice", ComparisonStatus.SIMILAR)

        neighbours = await self.cache.neighbours_for(["Salmon", "rice"])
        self.assertEqual(set(neighbours["salmon"]), {"fresh salmon", "tuna"})
        self.assertEqual(set(neighbours["rice"]), {"brown rice"})

        everything = await self.cache.get_all_for("tuna")
        self.assertEqual(set(everything), {"salmon"})

        found = await self.cache.batch_get([("tuna", "salmon"), ("rice", "salmon")])
        self.assertEqual(list(found), [IngredientPair("salmon", "tuna")])


if __name__ == "__main__":
    unittest.main()
