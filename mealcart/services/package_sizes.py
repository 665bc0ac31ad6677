from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, Optional

from .units import UnitType, convert_amount, format_amount, unit_type

logger = logging.getLogger(__name__)

_NUMBER = r"(\d+(?:[\.,]\d+)?(?:\s+\d+/\d+)?|\d+/\d+)"
# Alternation order matters: "fl oz" before "oz", "gallon" before "g".
_SIZE_UNIT = (
    r"(fl\.?\s*oz\.?|fluid\s+ounces?|oz|ounces?|lbs?|pounds?|kg|kilograms?|"
    r"gallons?|gal|g|grams?|quarts?|qt|pints?|pt|cups?|ml|milliliters?|millilitres?|"
    r"liters?|litres?|l|ct|count|packs?|pk)(?![a-z])"
)

MULTIPLIER_PATTERN = re.compile(_NUMBER + r"\s*[x×]\s*" + _NUMBER + r"\s*" + _SIZE_UNIT, re.IGNORECASE)
SIZE_PATTERN = re.compile(_NUMBER + r"\s*" + _SIZE_UNIT, re.IGNORECASE)

SIZE_UNIT_LABELS: Dict[str, str] = {
    "floz": "fl oz",
    "fluidounce": "fl oz",
    "fluidounces": "fl oz",
    "oz": "oz",
    "ounce": "oz",
    "ounces": "oz",
    "lb": "lbs",
    "lbs": "lbs",
    "pound": "lbs",
    "pounds": "lbs",
    "kg": "kg",
    "kilogram": "kg",
    "kilograms": "kg",
    "g": "g",
    "gram": "g",
    "grams": "g",
    "gallon": "gallon",
    "gallons": "gallon",
    "gal": "gallon",
    "quart": "quart",
    "quarts": "quart",
    "qt": "quart",
    "pint": "pint",
    "pints": "pint",
    "pt": "pint",
    "cup": "cup",
    "cups": "cup",
    "ml": "ml",
    "milliliter": "ml",
    "milliliters": "ml",
    "millilitre": "ml",
    "millilitres": "ml",
    "l": "liter",
    "liter": "liter",
    "liters": "liter",
    "litre": "liter",
    "litres": "liter",
    "ct": "count",
    "count": "count",
    "pack": "count",
    "packs": "count",
    "pk": "count",
}


@dataclass(frozen=True)
class PackageSize:
    amount: float
    unit: str

    @property
    def unit_type(self) -> UnitType:
        return unit_type(self.unit)

    def describe(self) -> str:
        return f"{format_amount(self.amount)} {self.unit}"


@dataclass(frozen=True)
class PackageQuantity:
    package_count: int
    package_size: Optional[PackageSize]
    required_in_package_unit: Optional[float]
    reasoning: str


def _parse_fractional_number(value: str) -> float | None:
    normalized = value.strip().replace(",", ".")
    compound_match = re.match(r"^(\d+)\s+(\d+)/(\d+)$", normalized)
    if compound_match:
        whole = float(compound_match.group(1))
        numerator = float(compound_match.group(2))
        denominator = float(compound_match.group(3))
        if denominator != 0:
            return whole + numerator / denominator
    fraction_match = re.match(r"^(\d+)/(\d+)$", normalized)
    if fraction_match:
        numerator = float(fraction_match.group(1))
        denominator = float(fraction_match.group(2))
        if denominator != 0:
            return numerator / denominator
    try:
        return float(re.findall(r"\d+(?:\.\d+)?", normalized)[0])
    except (IndexError, ValueError):
        return None


def _unit_label(raw: str) -> Optional[str]:
    key = re.sub(r"[\s\.]+", "", raw.lower())
    return SIZE_UNIT_LABELS.get(key)


def parse_package_size(text: str | None) -> Optional[PackageSize]:
    """Read a retail size string such as "16 oz", "1.5 lbs" or "6 x 355 ml"."""
    if not text:
        return None
    multiplier_match = MULTIPLIER_PATTERN.search(text)
    if multiplier_match:
        count_value = _parse_fractional_number(multiplier_match.group(1))
        per_value = _parse_fractional_number(multiplier_match.group(2))
        label = _unit_label(multiplier_match.group(3))
        if count_value is not None and per_value is not None and label:
            return PackageSize(amount=count_value * per_value, unit=label)
    size_match = SIZE_PATTERN.search(text)
    if size_match:
        amount = _parse_fractional_number(size_match.group(1))
        label = _unit_label(size_match.group(2))
        if amount is not None and amount > 0 and label:
            return PackageSize(amount=amount, unit=label)
    return None


def calculate_package_quantity(
    ingredient_name: str,
    required_amount: float,
    required_unit: str,
    package: PackageSize,
) -> PackageQuantity:
    """Whole packages needed to cover a requirement, never fewer than one."""
    if package.amount <= 0:
        return PackageQuantity(1, package, None, "Package size has no usable amount")

    if unit_type(required_unit) == "count" and package.unit_type == "count":
        converted: Optional[float] = required_amount
    else:
        converted = convert_amount(ingredient_name, required_amount, required_unit, package.unit)

    if converted is None:
        return PackageQuantity(
            1,
            package,
            None,
            f"Cannot convert {required_unit} to {package.unit} for {ingredient_name}; defaulting to one package",
        )

    # Rounding keeps float noise such as 2.0000000001 from buying an extra package.
    count = max(1, math.ceil(round(converted / package.amount, 6)))
    reasoning = (
        f"Need {format_amount(converted)} {package.unit}; "
        f"{count} x {package.describe()} covers it"
    )
    return PackageQuantity(count, package, converted, reasoning)


def calculate_purchase_count(
    ingredient_name: str,
    required_amount: float,
    required_unit: str,
    package_size: str | None,
) -> PackageQuantity:
    package = parse_package_size(package_size)
    if package is None:
        logger.debug("Unparsable package size %r for %s", package_size, ingredient_name)
        return PackageQuantity(
            1, None, None, f"Could not parse package size {package_size!r}; defaulting to one package"
        )
    return calculate_package_quantity(ingredient_name, required_amount, required_unit, package)
