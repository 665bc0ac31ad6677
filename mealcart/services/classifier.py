from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Protocol, Sequence, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import Settings, get_settings
from ..models import ComparisonStatus
from .openai_responses import call_openai_responses

logger = logging.getLogger(__name__)

CODE_FENCE_PATTERN = re.compile(r"```(?:json)?(.*?)```", re.IGNORECASE | re.DOTALL)

SYSTEM_PROMPT = (
    "You are an expert chef helping decide whether ingredients should be merged "
    "on a shopping list. Return valid JSON only."
)

USER_PROMPT_TEMPLATE = """Compare these ingredient pairs and decide, for each pair, whether they should be merged on a shopping list:

{pairs}

For EACH pair, choose a status:
- "same": essentially identical, only a minor variation (e.g. "fresh salmon" vs "salmon"). Merged automatically.
- "similar": a different form or variation the shopper may want to merge (e.g. "broccoli florets" vs "broccoli"). The shopper is asked.
- "different": different items (e.g. "black pepper" vs "bell pepper"). Never merged.

If the units differ and the pair can be merged, give a canonicalUnit plus conversionRatio1 and conversionRatio2:
multiplying each side's amount by its ratio expresses it in the canonical unit.

Respond with a JSON object holding one entry per pair, referenced by its number:
{{
  "comparisons": [
    {{"pairIndex": 1, "status": "same|similar|different", "canonicalUnit": "cup", "conversionRatio1": 0.25, "conversionRatio2": 1.0}}
  ]
}}"""


@dataclass(frozen=True)
class PairQuery:
    """One ingredient pair sent to the classifier, in caller order."""

    name_a: str
    unit_a: str
    name_b: str
    unit_b: str


@dataclass(frozen=True)
class Classified:
    status: str
    canonical_unit: Optional[str] = None
    ratio_a: Optional[float] = None
    ratio_b: Optional[float] = None


@dataclass(frozen=True)
class Unresolved:
    """No usable verdict this run; the pair is neither merged nor cached."""

    reason: str


ClassificationResult = Union[Classified, Unresolved]


class IngredientClassifier(Protocol):
    async def compare(self, pairs: Sequence[PairQuery]) -> List[ClassificationResult]:
        """Return exactly one result per pair, in input order."""
        ...


class ComparisonPayload(BaseModel):
    pairIndex: int = Field(validation_alias=AliasChoices("pairIndex", "pair_index", "index"))
    status: str
    canonicalUnit: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("canonicalUnit", "canonical_unit")
    )
    conversionRatio1: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("conversionRatio1", "conversion_ratio1")
    )
    conversionRatio2: Optional[float] = Field(
        default=None, validation_alias=AliasChoices("conversionRatio2", "conversion_ratio2")
    )

    model_config = ConfigDict(extra="ignore")

    @field_validator("status", mode="before")
    @classmethod
    def _known_status(cls, value: Any) -> str:
        text = str(value or "").strip().lower()
        if text not in ComparisonStatus.ALL:
            raise ValueError(f"unknown status {value!r}")
        return text

    @field_validator("canonicalUnit", mode="before")
    @classmethod
    def _blank_unit(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("conversionRatio1", "conversionRatio2", mode="after")
    @classmethod
    def _usable_ratio(cls, value: Optional[float]) -> Optional[float]:
        if value is None or not math.isfinite(value) or value <= 0:
            return None
        return value


def _load_json(text: str) -> Any:
    stripped = (text or "").strip()
    match = CODE_FENCE_PATTERN.search(stripped)
    if match:
        stripped = match.group(1).strip()
    return json.loads(stripped)


def parse_comparison_response(text: str, pair_count: int) -> List[ClassificationResult]:
    """Validate a batch response into one result per pair.

    Entries that fail validation or point outside the batch are dropped and
    their pairs reported as Unresolved; the first verdict for an index wins.
    """
    try:
        payload = _load_json(text)
    except json.JSONDecodeError as exc:
        logger.warning("Unable to parse ingredient classifier output: %s", exc)
        return [Unresolved("invalid JSON") for _ in range(pair_count)]

    entries = payload.get("comparisons") if isinstance(payload, dict) else payload
    if not isinstance(entries, list):
        logger.warning("Ingredient classifier output has no comparisons list")
        return [Unresolved("missing comparisons") for _ in range(pair_count)]

    results: List[ClassificationResult] = [
        Unresolved("missing from response") for _ in range(pair_count)
    ]
    quarantined = 0
    for raw in entries:
        try:
            entry = ComparisonPayload.model_validate(raw)
        except ValidationError as exc:
            quarantined += 1
            logger.debug("Quarantined malformed comparison entry %r: %s", raw, exc)
            continue
        index = entry.pairIndex - 1
        if index < 0 or index >= pair_count:
            quarantined += 1
            continue
        if isinstance(results[index], Classified):
            continue
        ratios_complete = entry.conversionRatio1 is not None and entry.conversionRatio2 is not None
        results[index] = Classified(
            status=entry.status,
            canonical_unit=entry.canonicalUnit if ratios_complete else None,
            ratio_a=entry.conversionRatio1 if ratios_complete else None,
            ratio_b=entry.conversionRatio2 if ratios_complete else None,
        )
    if quarantined:
        logger.warning("Quarantined %d malformed classifier entries", quarantined)
    return results


def build_user_prompt(pairs: Sequence[PairQuery]) -> str:
    lines = [
        f'{index}. "{pair.name_a}" ({pair.unit_a or "no unit"}) vs "{pair.name_b}" ({pair.unit_b or "no unit"})'
        for index, pair in enumerate(pairs, start=1)
    ]
    return USER_PROMPT_TEMPLATE.format(pairs="\n".join(lines))


class OpenAIIngredientClassifier:
    """Classifies ingredient pairs with one Responses API call per batch."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def compare(self, pairs: Sequence[PairQuery]) -> List[ClassificationResult]:
        if not pairs:
            return []
        settings = self._settings
        logger.info("Sending batch of %d ingredient pairs to classifier", len(pairs))
        text = await asyncio.to_thread(
            call_openai_responses,
            model=settings.openai_similarity_model,
            system_prompt=SYSTEM_PROMPT,
            user_prompt=build_user_prompt(pairs),
            max_output_tokens=settings.openai_similarity_max_output_tokens,
            top_p=settings.openai_similarity_top_p,
            reasoning_effort=settings.openai_similarity_reasoning_effort,
        )
        results = parse_comparison_response(text, len(pairs))
        resolved = sum(1 for result in results if isinstance(result, Classified))
        logger.info("Classifier batch complete: %d/%d pairs resolved", resolved, len(pairs))
        return results
