from __future__ import annotations

import asyncio
import unittest

from fastapi import FastAPI
from fastapi.testclient import TestClient

from mealcart.auth import Principal, get_current_principal
from mealcart.db import session_dependency
from mealcart.models import ComparisonStatus
from mealcart.observability import REQUEST_ID_HEADER, RequestContextMiddleware
from mealcart.routes import health, shopping
from mealcart.services.comparison_cache import ComparisonCache

from .support import ScriptedClassifier, TempDatabase

BUILD_PAYLOAD = {
    "recipes": [
        {
            "recipeId": "teriyaki",
            "recipeTitle": "Teriyaki Salmon",
            "ingredients": [{"ingredientId": "s1", "name": "salmon", "amount": 6, "unit": "oz"}],
        },
        {
            "recipe_id": "poke",
            "title": "Poke Bowl",
            "quantity": 2,
            "ingredients": [{"ingredient_id": "s2", "ingredientName": "salmon fillet", "amount": 4, "unit": "oz"}],
        },
    ],
    "similarityMode": "inline",
}


class ShoppingListRoutesTest(unittest.TestCase):
    def setUp(self):
        self.db = TempDatabase()
        asyncio.run(self.db.create_all())
        self.cache = ComparisonCache(self.db.Session)
        asyncio.run(self.cache.put("salmon", "salmon fillet", ComparisonStatus.SIMILAR))
        self.classifier = ScriptedClassifier()
        self.user_id = "user-1"

        async def _session():
            async with self.db.Session() as session:
                yield session

        app = FastAPI()
        app.add_middleware(RequestContextMiddleware)
        app.include_router(health.router, prefix="/v1")
        app.include_router(shopping.router, prefix="/v1")
        app.dependency_overrides[get_current_principal] = lambda: Principal(user_id=self.user_id)
        app.dependency_overrides[session_dependency] = _session
        app.dependency_overrides[shopping.get_comparison_cache] = lambda: self.cache
        app.dependency_overrides[shopping.get_ingredient_classifier] = lambda: self.classifier
        self.client = TestClient(app)

    def tearDown(self):
        asyncio.run(self.db.dispose())

    def _create(self) -> dict:
        resp = self.client.post("/v1/shopping-lists", json=BUILD_PAYLOAD)
        self.assertEqual(resp.status_code, 201, resp.text)
        return resp.json()

    def test_health(self):
        resp = self.client.get("/v1/health")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["status"], "ok")

    def test_request_id_is_echoed(self):
        resp = self.client.get("/v1/health", headers={REQUEST_ID_HEADER: "req-123"})
        self.assertEqual(resp.headers[REQUEST_ID_HEADER], "req-123")
        self.assertTrue(self.client.get("/v1/health").headers[REQUEST_ID_HEADER])

    def test_create_then_merge(self):
        created = self._create()
        self.assertEqual(created["status"], "active")
        self.assertEqual(len(created["items"]), 2)
        self.assertEqual(created["mergeOptions"][0]["mergeId"], "merge-1")
        self.assertIsNone(created["mergeOptions"][0]["userDecision"])
        self.assertEqual(self.classifier.calls, [])

        resp = self.client.post(
            f"/v1/shopping-lists/{created['id']}/merge-decisions",
            json={"mergeDecisions": [{"mergeId": "merge-1", "decision": "merge"}]},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        body = resp.json()
        self.assertEqual(len(body["items"]), 1)
        self.assertAlmostEqual(body["items"][0]["totalAmount"], 14.0)
        self.assertEqual(body["items"][0]["mergedIngredientIds"], ["s1", "s2"])
        self.assertEqual(body["mergeOptions"][0]["userDecision"], "merge")

        active = self.client.get("/v1/shopping-lists/active").json()
        self.assertEqual(active["shoppingList"]["id"], created["id"])

    def test_bad_merge_decisions(self):
        created = self._create()
        url = f"/v1/shopping-lists/{created['id']}/merge-decisions"
        resp = self.client.post(url, json={"mergeDecisions": [{"mergeId": "merge-42", "decision": "merge"}]})
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post(url, json={"mergeDecisions": [{"mergeId": "merge-1", "decision": "maybe"}]})
        self.assertEqual(resp.status_code, 422)

    def test_mark_item_purchased(self):
        created = self._create()
        item_id = created["items"][0]["id"]
        resp = self.client.patch(
            f"/v1/shopping-lists/{created['id']}/items/{item_id}",
            json={"isPurchased": True, "actualPrice": 9.99},
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        self.assertTrue(resp.json()["isPurchased"])
        self.assertEqual(resp.json()["actualPrice"], 9.99)

        resp = self.client.patch(f"/v1/shopping-lists/{created['id']}/items/nope", json={"isPurchased": True})
        self.assertEqual(resp.status_code, 404)

    def test_delete_and_clear(self):
        self.assertEqual(self.client.get("/v1/shopping-lists/active").json(), {"shoppingList": None})

        created = self._create()
        resp = self.client.delete(f"/v1/shopping-lists/{created['id']}")
        self.assertEqual(resp.status_code, 204)
        self.assertEqual(self.client.get(f"/v1/shopping-lists/{created['id']}").status_code, 404)

        self._create()
        self.assertEqual(self.client.delete("/v1/shopping-lists/active").status_code, 204)
        self.assertIsNone(self.client.get("/v1/shopping-lists/active").json()["shoppingList"])

    def test_lists_are_private(self):
        created = self._create()
        self.user_id = "user-2"
        self.assertEqual(self.client.get(f"/v1/shopping-lists/{created['id']}").status_code, 404)

    def test_validation(self):
        resp = self.client.post("/v1/shopping-lists", json={"recipes": []})
        self.assertEqual(resp.status_code, 422)

    def test_package_counts(self):
        resp = self.client.post(
            "/v1/shopping-lists/package-counts",
            json={
                "items": [
                    {"ingredientName": "chicken breast", "amount": 24, "unit": "oz", "packageSize": "16 oz"},
                    {"ingredientName": "saffron", "amount": 1, "unit": "pinch", "packageSize": "jar"},
                ]
            },
        )
        self.assertEqual(resp.status_code, 200, resp.text)
        first, second = resp.json()["items"]
        self.assertEqual(first["packageCount"], 2)
        self.assertEqual(first["packageUnit"], "oz")
        self.assertEqual(second["packageCount"], 1)
        self.assertIsNone(second["packageAmount"])


if __name__ == "__main__":
    unittest.main()
