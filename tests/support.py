from __future__ import annotations

import asyncio
import os
import tempfile
from typing import Dict, FrozenSet, List, Optional, Sequence

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from mealcart.errors import ClassifierError
from mealcart.models import Base
from mealcart.services.classifier import Classified, ClassificationResult, PairQuery, Unresolved
from mealcart.services.comparison_cache import normalize_ingredient_name
from mealcart.services.lines import IngredientLine, RecipeContribution


class TempDatabase:
    """File-backed SQLite so the comparison cache's own sessions see the same data."""

    def __init__(self) -> None:
        handle, self.path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        self.engine = create_async_engine(f"sqlite+aiosqlite:///{self.path}", poolclass=NullPool)
        self.Session = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
        if os.path.exists(self.path):
            os.remove(self.path)


def verdict_key(name_a: str, name_b: str) -> FrozenSet[str]:
    return frozenset({normalize_ingredient_name(name_a), normalize_ingredient_name(name_b)})


class ScriptedClassifier:
    """Answers from a fixed table; pairs not in the table come back Unresolved."""

    def __init__(self, verdicts: Optional[Dict[FrozenSet[str], Classified]] = None) -> None:
        self.verdicts = verdicts or {}
        self.calls: List[List[PairQuery]] = []

    @property
    def pairs_seen(self) -> int:
        return sum(len(batch) for batch in self.calls)

    async def compare(self, pairs: Sequence[PairQuery]) -> List[ClassificationResult]:
        self.calls.append(list(pairs))
        results: List[ClassificationResult] = []
        for pair in pairs:
            verdict = self.verdicts.get(verdict_key(pair.name_a, pair.name_b))
            results.append(verdict if verdict is not None else Unresolved("not scripted"))
        return results


class SlowClassifier:
    """Leaves every pair unresolved after a short pause, tracking overlapping calls."""

    def __init__(self, delay: float = 0.02) -> None:
        self.delay = delay
        self.calls = 0
        self.in_flight = 0
        self.peak = 0

    async def compare(self, pairs: Sequence[PairQuery]) -> List[ClassificationResult]:
        self.calls += 1
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return [Unresolved("no verdict") for _ in pairs]


class FailingClassifier:
    def __init__(self) -> None:
        self.calls = 0

    async def compare(self, pairs: Sequence[PairQuery]) -> List[ClassificationResult]:
        self.calls += 1
        raise ClassifierError("upstream timed out")


def line(ingredient_id: str, name: str, amount: float, unit: str, recipe_id: str = "r1") -> IngredientLine:
    return IngredientLine(
        ingredient_id=ingredient_id,
        name=name,
        amount=amount,
        unit=unit,
        source_recipes=[RecipeContribution(recipe_id, recipe_id.upper(), amount, unit)],
    )
