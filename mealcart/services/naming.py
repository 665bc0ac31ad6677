from __future__ import annotations

import re
from typing import Dict, List, Sequence, Tuple

_PARENTHETICAL = re.compile(r"\s*\([^)]*\)")
_DROPPED_WORDS = [
    re.compile(r"\b(fresh|frozen|raw|cooked|dried|canned)\b"),
    re.compile(r"\b(wild-caught|farm-raised|organic|free-range)\b"),
    re.compile(r"\b(large|small|medium|extra-large|jumbo)\b"),
    re.compile(r"\b(whole|half|halved|quartered|sliced|diced|chopped|minced)\b"),
    re.compile(r"\b(peeled|deveined|trimmed|cleaned)\b"),
]
_SINGULAR_FORMS: List[Tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bfillets?\b"), "fillet"),
    (re.compile(r"\bbreasts?\b"), "breast"),
    (re.compile(r"\bthighs?\b"), "thigh"),
    (re.compile(r"\bcloves?\b"), "clove"),
    (re.compile(r"\bonions?\b"), "onion"),
    (re.compile(r"\btomato(?:es)?\b"), "tomato"),
    (re.compile(r"\bpotato(?:es)?\b"), "potato"),
    (re.compile(r"\bcarrots?\b"), "carrot"),
]
_WHITESPACE = re.compile(r"\s+")


def display_key(name: str) -> str:
    """Reduce a name to its core noun phrase for choosing a display name.

    "2 Large Tomatoes (diced)" and "tomato" both reduce to "tomato". This is
    only used to pick a representative label; cache identity uses the plain
    lowercase/whitespace normalisation.
    """
    text = _PARENTHETICAL.sub("", (name or "").lower().strip())
    for pattern in _DROPPED_WORDS:
        text = pattern.sub("", text)
    for pattern, replacement in _SINGULAR_FORMS:
        text = pattern.sub(replacement, text)
    return _WHITESPACE.sub(" ", text).strip()


def canonical_name(names: Sequence[str]) -> str:
    """Most frequent display form among `names`, ties going to the longest original."""
    if not names:
        return ""
    if len(names) == 1:
        return names[0]

    counts: Dict[str, List] = {}
    for original in names:
        key = display_key(original)
        if key not in counts:
            counts[key] = [0, original]
        counts[key][0] += 1
        if len(original) > len(counts[key][1]):
            counts[key][1] = original

    best = names[0]
    best_count = 0
    for count, original in counts.values():
        if count > best_count or (count == best_count and len(original) > len(best)):
            best = original
            best_count = count
    return best
