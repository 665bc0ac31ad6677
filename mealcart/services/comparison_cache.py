from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import ComparisonStatus, IngredientComparison

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
# Keeps IN lists well under driver bind-parameter limits.
_IN_CHUNK_SIZE = 500


def normalize_ingredient_name(name: str | None) -> str:
    return _WHITESPACE.sub(" ", (name or "").strip().lower())


class IngredientPair(NamedTuple):
    """Unordered pair of normalized names, stored in sorted order."""

    first: str
    second: str

    @classmethod
    def of(cls, name_a: str, name_b: str) -> "IngredientPair":
        a = normalize_ingredient_name(name_a)
        b = normalize_ingredient_name(name_b)
        return cls(a, b) if a <= b else cls(b, a)

    def other(self, name: str) -> str:
        return self.second if normalize_ingredient_name(name) == self.first else self.first


@dataclass(frozen=True)
class ComparisonEntry:
    pair: IngredientPair
    status: str
    canonical_unit: Optional[str] = None
    ratio1: Optional[float] = None
    ratio2: Optional[float] = None

    @classmethod
    def for_names(
        cls,
        name_a: str,
        name_b: str,
        status: str,
        *,
        canonical_unit: Optional[str] = None,
        ratio_a: Optional[float] = None,
        ratio_b: Optional[float] = None,
    ) -> "ComparisonEntry":
        """Build an entry from ratios given in caller order, re-ordering them to the pair."""
        if status not in ComparisonStatus.ALL:
            raise ValueError(f"Unknown comparison status: {status}")
        pair = IngredientPair.of(name_a, name_b)
        if pair.first == normalize_ingredient_name(name_a):
            ratio1, ratio2 = ratio_a, ratio_b
        else:
            ratio1, ratio2 = ratio_b, ratio_a
        return cls(pair, status, canonical_unit or None, ratio1, ratio2)

    @classmethod
    def from_row(cls, row: IngredientComparison) -> "ComparisonEntry":
        return cls(
            IngredientPair(row.ingredient1, row.ingredient2),
            row.status,
            row.canonical_unit,
            row.conversion_ratio1,
            row.conversion_ratio2,
        )

    @property
    def mergeable(self) -> bool:
        return self.status in ComparisonStatus.MERGEABLE

    @property
    def has_conversion(self) -> bool:
        return bool(self.canonical_unit) and self.ratio1 is not None and self.ratio2 is not None

    def ratio_for(self, name: str) -> Optional[float]:
        if normalize_ingredient_name(name) == self.pair.first:
            return self.ratio1
        return self.ratio2


def _chunks(values: Sequence[str]) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), _IN_CHUNK_SIZE):
        yield values[start : start + _IN_CHUNK_SIZE]


class ComparisonCache:
    """Persistent memo of ingredient-pair classifications.

    Each call opens its own short-lived session so concurrent detection
    batches can bank results independently of the request transaction.
    Writes are upserts keyed on the sorted pair; the last writer wins.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, name_a: str, name_b: str) -> Optional[ComparisonEntry]:
        pair = IngredientPair.of(name_a, name_b)
        async with self._session_factory() as session:
            result = await session.execute(
                select(IngredientComparison).where(
                    IngredientComparison.ingredient1 == pair.first,
                    IngredientComparison.ingredient2 == pair.second,
                )
            )
            row = result.scalar_one_or_none()
        return ComparisonEntry.from_row(row) if row else None

    async def put(
        self,
        name_a: str,
        name_b: str,
        status: str,
        *,
        canonical_unit: Optional[str] = None,
        ratio_a: Optional[float] = None,
        ratio_b: Optional[float] = None,
    ) -> ComparisonEntry:
        entry = ComparisonEntry.for_names(
            name_a,
            name_b,
            status,
            canonical_unit=canonical_unit,
            ratio_a=ratio_a,
            ratio_b=ratio_b,
        )
        await self.put_many([entry])
        return entry

    async def put_many(self, entries: Sequence[ComparisonEntry]) -> None:
        """Upsert a batch of entries in one transaction."""
        if not entries:
            return
        # One row per pair within a statement; later entries override earlier ones.
        by_pair: Dict[IngredientPair, ComparisonEntry] = {}
        for entry in entries:
            by_pair[entry.pair] = entry
        values = [
            {
                "id": uuid.uuid4(),
                "ingredient1": entry.pair.first,
                "ingredient2": entry.pair.second,
                "status": entry.status,
                "canonical_unit": entry.canonical_unit,
                "conversion_ratio1": entry.ratio1,
                "conversion_ratio2": entry.ratio2,
            }
            for entry in by_pair.values()
        ]
        async with self._session_factory() as session:
            insert = postgresql_insert if session.bind.dialect.name == "postgresql" else sqlite_insert
            stmt = insert(IngredientComparison).values(values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[IngredientComparison.ingredient1, IngredientComparison.ingredient2],
                set_={
                    "status": stmt.excluded.status,
                    "canonical_unit": stmt.excluded.canonical_unit,
                    "conversion_ratio1": stmt.excluded.conversion_ratio1,
                    "conversion_ratio2": stmt.excluded.conversion_ratio2,
                    "updated_at": func.now(),
                },
            )
            try:
                await session.execute(stmt)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        logger.debug("Cached %d ingredient comparisons", len(values))

    async def get_all_for(self, name: str) -> Dict[str, ComparisonEntry]:
        return (await self.neighbours_for([name])).get(normalize_ingredient_name(name), {})

    async def batch_get(self, pairs: Iterable[IngredientPair]) -> Dict[IngredientPair, ComparisonEntry]:
        wanted = {IngredientPair.of(*pair) for pair in pairs}
        if not wanted:
            return {}
        firsts = sorted({pair.first for pair in wanted})
        found: Dict[IngredientPair, ComparisonEntry] = {}
        async with self._session_factory() as session:
            for chunk in _chunks(firsts):
                result = await session.execute(
                    select(IngredientComparison).where(IngredientComparison.ingredient1.in_(chunk))
                )
                for row in result.scalars():
                    entry = ComparisonEntry.from_row(row)
                    if entry.pair in wanted:
                        found[entry.pair] = entry
        return found

    async def neighbours_for(self, names: Iterable[str]) -> Dict[str, Dict[str, ComparisonEntry]]:
        """Every cached comparison touching any of `names`, keyed name -> other -> entry."""
        normalized: List[str] = sorted({normalize_ingredient_name(name) for name in names if name})
        neighbours: Dict[str, Dict[str, ComparisonEntry]] = {name: {} for name in normalized}
        if not normalized:
            return neighbours
        async with self._session_factory() as session:
            for chunk in _chunks(normalized):
                result = await session.execute(
                    select(IngredientComparison).where(
                        or_(
                            IngredientComparison.ingredient1.in_(chunk),
                            IngredientComparison.ingredient2.in_(chunk),
                        )
                    )
                )
                for row in result.scalars():
                    entry = ComparisonEntry.from_row(row)
                    if entry.pair.first in neighbours:
                        neighbours[entry.pair.first][entry.pair.second] = entry
                    if entry.pair.second in neighbours:
                        neighbours[entry.pair.second][entry.pair.first] = entry
        logger.debug(
            "Loaded cached comparisons for %d names (%d edges)",
            len(normalized),
            sum(len(others) for others in neighbours.values()),
        )
        return neighbours
