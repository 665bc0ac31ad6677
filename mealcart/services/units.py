from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Sequence, Tuple

from ..errors import UnitConversionError


UnitType = Literal["volume", "weight", "count"]

VOLUME_TO_CUPS: Dict[str, float] = {
    "cup": 1,
    "cups": 1,
    "c": 1,
    "tablespoon": 1 / 16,
    "tablespoons": 1 / 16,
    "tbsp": 1 / 16,
    "tbs": 1 / 16,
    "teaspoon": 1 / 48,
    "teaspoons": 1 / 48,
    "tsp": 1 / 48,
    "fluid ounce": 1 / 8,
    "fluid ounces": 1 / 8,
    "fl oz": 1 / 8,
    "fl. oz.": 1 / 8,
    "fl. oz": 1 / 8,
    "floz": 1 / 8,
    "pint": 2,
    "pints": 2,
    "pt": 2,
    "quart": 4,
    "quarts": 4,
    "qt": 4,
    "gallon": 16,
    "gallons": 16,
    "gal": 16,
    "milliliter": 1 / 236.588,
    "milliliters": 1 / 236.588,
    "millilitre": 1 / 236.588,
    "millilitres": 1 / 236.588,
    "ml": 1 / 236.588,
    "liter": 4.22675,
    "liters": 4.22675,
    "litre": 4.22675,
    "litres": 4.22675,
    "l": 4.22675,
}

# "oz" is read as weight; liquid ounces must be written "fl oz".
WEIGHT_TO_POUNDS: Dict[str, float] = {
    "pound": 1,
    "pounds": 1,
    "lb": 1,
    "lbs": 1,
    "ounce": 1 / 16,
    "ounces": 1 / 16,
    "oz": 1 / 16,
    "gram": 0.00220462,
    "grams": 0.00220462,
    "g": 0.00220462,
    "kilogram": 2.20462,
    "kilograms": 2.20462,
    "kg": 2.20462,
}

COUNT_UNITS = frozenset(
    {
        "whole", "piece", "pieces", "item", "items", "count", "ct",
        "clove", "cloves", "head", "heads", "bunch", "bunches",
        "can", "cans", "package", "packages", "bag", "bags",
        "slice", "slices", "strip", "strips",
        "pinch", "pinches", "dash", "dashes",
        "to taste", "as needed",
        "lemon", "lemons", "lime", "limes", "orange", "oranges",
        "apple", "apples", "banana", "bananas", "onion", "onions",
        "potato", "potatoes", "tomato", "tomatoes", "carrot", "carrots",
        "egg", "eggs", "pepper", "peppers", "avocado", "avocados",
    }
)

_WHITESPACE = re.compile(r"\s+")

_DISPLAY_FRACTIONS: Sequence[Tuple[float, str]] = (
    (1 / 4, "1/4"),
    (1 / 3, "1/3"),
    (1 / 2, "1/2"),
    (2 / 3, "2/3"),
    (3 / 4, "3/4"),
)


@dataclass(frozen=True)
class Measure:
    amount: float
    unit: str


@dataclass(frozen=True)
class IngredientConversionRule:
    """Cross-unit conversion that only holds for particular ingredients."""

    from_unit: str
    to_unit: str
    ratio: float
    ingredient_patterns: Tuple[str, ...]


_LEMON = ("lemon juice", "lemon", "fresh lemon")
_LIME = ("lime juice", "lime", "fresh lime")
_GARLIC = ("garlic", "minced garlic", "fresh garlic")

CONVERSION_RULES: Tuple[IngredientConversionRule, ...] = (
    IngredientConversionRule("whole", "cup", 0.25, _LEMON),
    IngredientConversionRule("whole", "oz", 2, _LEMON),
    IngredientConversionRule("whole", "tbsp", 4, _LEMON),
    IngredientConversionRule("whole", "cup", 0.125, _LIME),
    IngredientConversionRule("whole", "oz", 1, _LIME),
    IngredientConversionRule("whole", "tbsp", 2, _LIME),
    IngredientConversionRule("whole", "cup", 0.5, ("orange juice", "orange", "fresh orange")),
    IngredientConversionRule(
        "whole",
        "cup",
        1,
        ("onion", "yellow onion", "white onion", "red onion", "diced onion", "chopped onion"),
    ),
    IngredientConversionRule("clove", "tsp", 0.5, _GARLIC),
    IngredientConversionRule("clove", "tbsp", 0.167, _GARLIC),
    IngredientConversionRule("whole", "cup", 0.75, ("tomato", "diced tomato", "chopped tomato")),
    IngredientConversionRule(
        "whole",
        "cup",
        1,
        ("bell pepper", "red pepper", "green pepper", "yellow pepper", "pepper"),
    ),
    IngredientConversionRule("whole", "cup", 1, ("avocado", "mashed avocado")),
)


def _unit_key(unit: str | None) -> str:
    return _WHITESPACE.sub(" ", (unit or "").strip().lower())


def unit_type(unit: str | None) -> UnitType:
    """Classify a free-text unit; anything unrecognised counts as `count`."""
    key = _unit_key(unit)
    if key in VOLUME_TO_CUPS:
        return "volume"
    if key in WEIGHT_TO_POUNDS:
        return "weight"
    return "count"


def same_unit(unit_a: str | None, unit_b: str | None) -> bool:
    return _comparable_unit(unit_a or "") == _comparable_unit(unit_b or "")


def convert(amount: float, from_unit: str, to_unit: str) -> float:
    """Convert within one unit type using the fixed tables.

    Raises UnitConversionError when the units are of different types or are
    distinct count units (a "can" is not a "head").
    """
    if same_unit(from_unit, to_unit):
        return amount
    from_type = unit_type(from_unit)
    to_type = unit_type(to_unit)
    if from_type != to_type:
        raise UnitConversionError(
            f"Cannot convert {from_unit!r} ({from_type}) to {to_unit!r} ({to_type})"
        )
    if from_type == "volume":
        return amount * VOLUME_TO_CUPS[_unit_key(from_unit)] / VOLUME_TO_CUPS[_unit_key(to_unit)]
    if from_type == "weight":
        return amount * WEIGHT_TO_POUNDS[_unit_key(from_unit)] / WEIGHT_TO_POUNDS[_unit_key(to_unit)]
    raise UnitConversionError(f"No fixed ratio between count units {from_unit!r} and {to_unit!r}")


def to_cups(amount: float, unit: str) -> float:
    factor = VOLUME_TO_CUPS.get(_unit_key(unit))
    if factor is None:
        raise UnitConversionError(f"Unknown volume unit: {unit}")
    return amount * factor


def to_pounds(amount: float, unit: str) -> float:
    factor = WEIGHT_TO_POUNDS.get(_unit_key(unit))
    if factor is None:
        raise UnitConversionError(f"Unknown weight unit: {unit}")
    return amount * factor


def _comparable_unit(unit: str) -> str:
    key = _unit_key(unit).replace(".", "")
    if key.endswith("s") and len(key) > 1:
        key = key[:-1]
    return key


def _matches_pattern(ingredient_name: str, patterns: Sequence[str]) -> bool:
    lower = _unit_key(ingredient_name)
    if not lower:
        return False
    return any(pattern in lower or lower in pattern for pattern in patterns)


def find_conversion(ingredient_name: str, from_unit: str, to_unit: str) -> Optional[float]:
    """Ratio from `from_unit` to `to_unit` for this ingredient, if a rule exists."""
    wanted_from = _comparable_unit(from_unit)
    wanted_to = _comparable_unit(to_unit)
    for rule in CONVERSION_RULES:
        if not _matches_pattern(ingredient_name, rule.ingredient_patterns):
            continue
        rule_from = _comparable_unit(rule.from_unit)
        rule_to = _comparable_unit(rule.to_unit)
        if wanted_from == rule_from and wanted_to == rule_to:
            return rule.ratio
        if wanted_from == rule_to and wanted_to == rule_from:
            return 1 / rule.ratio
    return None


def convert_ingredient_specific(
    ingredient_name: str, amount: float, from_unit: str, to_unit: str
) -> Optional[float]:
    if same_unit(from_unit, to_unit):
        return amount
    ratio = find_conversion(ingredient_name, from_unit, to_unit)
    if ratio is None:
        return None
    return amount * ratio


def convert_amount(
    ingredient_name: str, amount: float, from_unit: str, to_unit: str
) -> Optional[float]:
    """Best available conversion: identity, fixed tables, then ingredient rules."""
    if same_unit(from_unit, to_unit):
        return amount
    try:
        return convert(amount, from_unit, to_unit)
    except UnitConversionError:
        pass
    return convert_ingredient_specific(ingredient_name, amount, from_unit, to_unit)


def _reaches(ingredient_name: str, unit: str, target: str) -> bool:
    return convert_amount(ingredient_name, 1.0, unit, target) is not None


def find_common_unit(ingredient_name: str, unit_a: str, unit_b: str) -> Optional[str]:
    """Pick the unit two differently-unitted lines of one ingredient can share."""
    if same_unit(unit_a, unit_b):
        return unit_a
    for preferred in ("cup", "oz"):
        if _reaches(ingredient_name, unit_a, preferred) and _reaches(ingredient_name, unit_b, preferred):
            return preferred
    if _reaches(ingredient_name, unit_a, unit_b):
        return unit_b
    if _reaches(ingredient_name, unit_b, unit_a):
        return unit_a
    return None


def best_volume_unit(cups: float) -> Measure:
    if cups < 0.25:
        tbsp = cups * 16
        if tbsp < 1:
            return Measure(tbsp * 3, "tsp")
        return Measure(tbsp, "tbsp")
    if cups < 2:
        return Measure(cups, "cup")
    if cups < 4:
        return Measure(cups, "cups")
    if cups < 8:
        quarts = cups / 4
        return Measure(quarts, "quart" if quarts == 1 else "quarts")
    gallons = cups / 16
    return Measure(gallons, "gallon" if gallons == 1 else "gallons")


def best_weight_unit(pounds: float) -> Measure:
    if pounds < 1:
        return Measure(pounds * 16, "oz")
    return Measure(pounds, "lb" if pounds == 1 else "lbs")


def normalize_unit(amount: float, unit: str) -> Measure:
    """Re-express an amount in the friendliest unit of its type."""
    if amount <= 0:
        return Measure(amount, unit)
    kind = unit_type(unit)
    if kind == "volume":
        return best_volume_unit(to_cups(amount, unit))
    if kind == "weight":
        return best_weight_unit(to_pounds(amount, unit))
    return Measure(amount, unit)


def combine_amounts(amount_a: float, unit_a: str, amount_b: float, unit_b: str) -> Measure:
    """Add two amounts of the same unit type, raising UnitConversionError otherwise."""
    kind_a = unit_type(unit_a)
    kind_b = unit_type(unit_b)
    if kind_a != kind_b:
        raise UnitConversionError(
            f"Cannot combine different unit types: {unit_a} ({kind_a}) and {unit_b} ({kind_b})"
        )
    if same_unit(unit_a, unit_b):
        return Measure(amount_a + amount_b, unit_a)
    if kind_a == "volume":
        return best_volume_unit(to_cups(amount_a, unit_a) + to_cups(amount_b, unit_b))
    if kind_a == "weight":
        return best_weight_unit(to_pounds(amount_a, unit_a) + to_pounds(amount_b, unit_b))
    raise UnitConversionError(f"Cannot combine count units {unit_a!r} and {unit_b!r}")


def format_amount(amount: float) -> str:
    if not math.isfinite(amount):
        return str(amount)
    whole = math.floor(amount)
    fraction = amount - whole
    for value, display in _DISPLAY_FRACTIONS:
        if abs(fraction - value) < 0.01:
            return f"{whole} {display}" if whole > 0 else display
    if fraction < 0.01:
        return str(int(whole))
    return f"{amount:.2f}"
