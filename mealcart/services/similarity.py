from __future__ import annotations

import asyncio
import logging
from itertools import combinations
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..models import ComparisonStatus
from .classifier import Classified, IngredientClassifier, PairQuery
from .comparison_cache import ComparisonCache, ComparisonEntry, IngredientPair, normalize_ingredient_name
from .grouping import DisjointSet
from .lines import IngredientLine, MergeDetectionResult, PotentialMerge
from .merging import decision_key, merge_lines
from .naming import canonical_name
from .units import convert_amount, find_common_unit, same_unit

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 25
DEFAULT_MAX_CONCURRENCY = 5


def _chunked(pairs: Sequence[IngredientPair], size: int) -> List[Sequence[IngredientPair]]:
    return [pairs[start : start + size] for start in range(0, len(pairs), size)]


async def _classify_batch(
    batch: Sequence[IngredientPair],
    *,
    representatives: Mapping[str, IngredientLine],
    cache: ComparisonCache,
    classifier: IngredientClassifier,
    semaphore: asyncio.Semaphore,
    batch_number: int,
) -> Dict[IngredientPair, ComparisonEntry]:
    queries = [
        PairQuery(
            name_a=representatives[pair.first].name,
            unit_a=representatives[pair.first].unit,
            name_b=representatives[pair.second].name,
            unit_b=representatives[pair.second].unit,
        )
        for pair in batch
    ]
    async with semaphore:
        try:
            results = await classifier.compare(queries)
        except Exception as exc:
            logger.warning(
                "Classifier batch %d failed (%d pairs left unresolved): %s",
                batch_number,
                len(batch),
                exc,
            )
            return {}

    resolved: Dict[IngredientPair, ComparisonEntry] = {}
    for pair, query, result in zip(batch, queries, results):
        if not isinstance(result, Classified):
            continue
        resolved[pair] = ComparisonEntry.for_names(
            query.name_a,
            query.name_b,
            result.status,
            canonical_unit=result.canonical_unit,
            ratio_a=result.ratio_a,
            ratio_b=result.ratio_b,
        )
    # Banked before the batch returns so other batches' failures cannot lose it.
    await cache.put_many(list(resolved.values()))
    logger.info("Classifier batch %d resolved %d/%d pairs", batch_number, len(resolved), len(batch))
    return resolved


async def _classify_uncached(
    uncached: Sequence[IngredientPair],
    *,
    representatives: Mapping[str, IngredientLine],
    cache: ComparisonCache,
    classifier: IngredientClassifier,
    batch_size: int,
    max_concurrency: int,
) -> Dict[IngredientPair, ComparisonEntry]:
    if not uncached:
        return {}
    semaphore = asyncio.Semaphore(max_concurrency)
    batches = _chunked(uncached, batch_size)
    logger.info(
        "Classifying %d uncached pairs in %d batches (max %d concurrent)",
        len(uncached),
        len(batches),
        max_concurrency,
    )
    outcomes = await asyncio.gather(
        *(
            _classify_batch(
                batch,
                representatives=representatives,
                cache=cache,
                classifier=classifier,
                semaphore=semaphore,
                batch_number=number,
            )
            for number, batch in enumerate(batches, start=1)
        ),
        return_exceptions=True,
    )
    resolved: Dict[IngredientPair, ComparisonEntry] = {}
    failures = [outcome for outcome in outcomes if isinstance(outcome, BaseException)]
    if failures:
        # Only cache writes get here; classifier failures are absorbed per batch.
        raise failures[0]
    for outcome in outcomes:
        resolved.update(outcome)
    return resolved


def _group_is_automatic(names: Sequence[str], edges: Mapping[IngredientPair, ComparisonEntry]) -> bool:
    """A group merges without asking only when every known edge inside it is `same`."""
    known = [edges[pair] for pair in (IngredientPair.of(a, b) for a, b in combinations(names, 2)) if pair in edges]
    return all(entry.status == ComparisonStatus.SAME for entry in known)


def _conversion_for_group(
    lines: Sequence[IngredientLine],
    suggested_name: str,
    names: Sequence[str],
    edges: Mapping[IngredientPair, ComparisonEntry],
    representatives: Mapping[str, IngredientLine],
) -> Tuple[str, List[float]]:
    cached: Optional[ComparisonEntry] = None
    for a, b in combinations(names, 2):
        entry = edges.get(IngredientPair.of(a, b))
        if entry and entry.has_conversion:
            cached = entry
            break

    if cached is not None:
        unit = cached.canonical_unit or lines[0].unit
        ratios: List[float] = []
        for line in lines:
            key = normalize_ingredient_name(line.name)
            # A cached ratio only holds for the unit the classifier was shown.
            if key in cached.pair and same_unit(line.unit, representatives[key].unit):
                ratios.append(cached.ratio_for(key) or 1.0)
            else:
                ratios.append(convert_amount(line.name, 1.0, line.unit, unit) or 1.0)
        return unit, ratios

    common: Optional[str] = lines[0].unit
    for line in lines[1:]:
        if common is None:
            break
        common = find_common_unit(suggested_name, common, line.unit)
    if common is None:
        logger.warning("No common unit for %s; amounts are summed unconverted", suggested_name)
        return lines[0].unit, [1.0 for _ in lines]

    ratios = []
    for line in lines:
        ratio = convert_amount(line.name, 1.0, line.unit, common)
        if ratio is None:
            ratio = convert_amount(suggested_name, 1.0, line.unit, common)
        ratios.append(ratio if ratio is not None else 1.0)
    return common, ratios


async def detect_similar_ingredients(
    lines: Sequence[IngredientLine],
    *,
    cache: ComparisonCache,
    classifier: IngredientClassifier,
    previous_decisions: Optional[Mapping[Tuple[str, ...], str]] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
) -> MergeDetectionResult:
    """Partition lines into auto-merged lines, merge suggestions and untouched lines.

    Cached comparisons are consulted first; only unknown name pairs reach the
    classifier. Lines whose names normalise identically are treated as `same`
    without a lookup. A failed classifier batch leaves its pairs unmerged and
    uncached so they are retried on a later request.
    """
    result = MergeDetectionResult()
    if len(lines) < 2:
        result.no_merge.extend(lines)
        return result

    representatives: Dict[str, IngredientLine] = {}
    for line in lines:
        key = normalize_ingredient_name(line.name)
        if key:
            representatives.setdefault(key, line)
    names = list(representatives)

    neighbours = await cache.neighbours_for(names)
    edges: Dict[IngredientPair, ComparisonEntry] = {}
    uncached: List[IngredientPair] = []
    for a, b in combinations(names, 2):
        pair = IngredientPair.of(a, b)
        entry = neighbours.get(a, {}).get(b)
        if entry is not None:
            edges[pair] = entry
        else:
            uncached.append(pair)
    logger.info(
        "Similarity detection: %d lines, %d names, %d cached pairs, %d uncached",
        len(lines),
        len(names),
        len(edges),
        len(uncached),
    )

    edges.update(
        await _classify_uncached(
            uncached,
            representatives=representatives,
            cache=cache,
            classifier=classifier,
            batch_size=batch_size,
            max_concurrency=max_concurrency,
        )
    )

    groups = DisjointSet(names)
    for pair, entry in edges.items():
        if entry.mergeable:
            groups.union(pair.first, pair.second)

    absorbed = set()
    merge_counter = 0
    for group_names in groups.groups():
        members = set(group_names)
        group_lines = [
            (index, line)
            for index, line in enumerate(lines)
            if normalize_ingredient_name(line.name) in members
        ]
        if len(group_lines) < 2:
            continue
        absorbed.update(index for index, _ in group_lines)
        member_lines = [line for _, line in group_lines]

        if _group_is_automatic(group_names, edges):
            merged = merge_lines(member_lines)
            result.auto_merged.append(merged)
            logger.debug("Auto-merged %s", ", ".join(line.name for line in member_lines))
            continue

        merge_counter += 1
        suggested_name = canonical_name([line.name for line in member_lines])
        canonical_unit, ratios = _conversion_for_group(
            member_lines, suggested_name, group_names, edges, representatives
        )
        suggestion = PotentialMerge(
            merge_id=f"merge-{merge_counter}",
            lines=member_lines,
            suggested_name=suggested_name,
            canonical_unit=canonical_unit,
            conversion_ratios=ratios,
            total_amount=sum(line.amount * ratio for line, ratio in zip(member_lines, ratios)),
        )
        if previous_decisions:
            suggestion.user_decision = previous_decisions.get(decision_key(suggestion.ingredient_ids))
        result.suggested_merges.append(suggestion)

    result.no_merge.extend(line for index, line in enumerate(lines) if index not in absorbed)
    logger.info(
        "Similarity detection complete: %d auto-merged, %d suggested, %d standalone",
        len(result.auto_merged),
        len(result.suggested_merges),
        len(result.no_merge),
    )
    return result
