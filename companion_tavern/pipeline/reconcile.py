"""Merge a parsed partial status into the canonical state.

``merge`` is pure: it reads the previous state, returns a new one and never
mutates its input. Rules:

- a top-level field changes only when the parsed status carries a non-null
  value for it that survives validation
- activity tracks merge field by field, so ``{"cooking": {"level": 12}}``
  keeps every other cooking field
- enumerated fields go through a synonym table, then fall back to the
  previous value
- the outfit text is canonicalized so the same garment always reads the same
- in channel-restricted turns every location-bearing field is ignored
- caller bookkeeping fields (daily counters) are never taken from the model
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, get_args

from pydantic.alias_generators import to_camel

from companion_tavern.errors import ValidationDowngrade
from companion_tavern.models import (
    TRACK_NAMES,
    CompanionState,
    LocationId,
    Mood,
    ParsedResult,
    PhaseValue,
    TrackState,
)

logger = logging.getLogger(__name__)

LOCATION_FIELDS = frozenset({"location", "exact_location", "is_accessible"})
CALLER_FIELDS = frozenset({"today_favor_gain", "last_reset_date"})

INT_BOUNDS: dict[str, tuple[int, int | None]] = {
    "favor": (0, 100),
    "energy": (0, 100),
    "stress": (0, 100),
    "heart_rate": (40, 200),
    "level": (0, 100),
    "practice_count": (0, None),
}
TEXT_FIELDS = frozenset({
    "exact_location", "outfit", "current_action", "inner_thought",
    "status", "gear", "last_partner", "notes",
})

MOOD_SYNONYMS = {
    "calm": "neutral",
    "normal": "neutral",
    "joyful": "happy",
    "cheerful": "happy",
    "content": "happy",
    "embarrassed": "shy",
    "blushing": "shy",
    "bashful": "shy",
    "thrilled": "excited",
    "eager": "excited",
    "mad": "angry",
    "furious": "angry",
    "annoyed": "angry",
    "upset": "sad",
    "unhappy": "sad",
    "down": "sad",
    "shocked": "surprised",
    "astonished": "surprised",
    "sleepy": "tired",
    "exhausted": "tired",
}

LOCATION_SYNONYMS = {
    "her_room": "bedroom",
    "lounge": "living_room",
    "home": "living_room",
    "dining": "dining_room",
    "restroom": "bathroom",
    "toilet": "bathroom",
    "corridor": "hallway",
    "entrance": "hallway",
    "movie_theater": "cinema",
    "movie_theatre": "cinema",
    "theater": "cinema",
    "shopping_mall": "mall",
    "boutique": "clothing_store",
    "theme_park": "amusement_park",
    "workplace": "office",
    "bakery": "cake_shop",
    "dessert_shop": "cake_shop",
    "university": "school",
    "campus": "school",
    "classroom": "school",
    "woods": "forest",
    "plaza": "square",
    "harbor": "port",
    "harbour": "port",
    "pier": "port",
    "gallery": "exhibition_center",
    "museum": "exhibition_center",
}

# (variant, canonical); matched on word boundaries, case-insensitive.
OUTFIT_VARIANTS = (
    ("white t shirt", "white t-shirt"),
    ("white tshirt", "white t-shirt"),
    ("white tee", "white t-shirt"),
    ("jean shorts", "denim shorts"),
    ("jorts", "denim shorts"),
    ("pjs", "pajamas"),
    ("pyjamas", "pajamas"),
    ("school uniform", "uniform"),
    ("trainers", "sneakers"),
)

_EXTRA_ALIASES = {
    "clothing": "outfit",
    "clothes": "outfit",
    "emotion": "mood",
    "action": "current_action",
    "thought": "inner_thought",
    "thoughts": "inner_thought",
    "phase": "arc",
}


@dataclass(frozen=True)
class ReconcileTables:
    moods: frozenset[str] = frozenset(get_args(Mood))
    locations: frozenset[str] = frozenset(get_args(LocationId))
    phases: frozenset[str] = frozenset(get_args(PhaseValue))
    mood_synonyms: Mapping[str, str] = field(default_factory=lambda: dict(MOOD_SYNONYMS))
    location_synonyms: Mapping[str, str] = field(default_factory=lambda: dict(LOCATION_SYNONYMS))
    outfit_variants: tuple[tuple[str, str], ...] = OUTFIT_VARIANTS


DEFAULT_TABLES = ReconcileTables()


def _aliases(names) -> dict[str, str]:
    table = {}
    for name in names:
        table[name] = name
        table[to_camel(name)] = name
    return table


_STATE_KEYS = {**_EXTRA_ALIASES, **_aliases(CompanionState.model_fields)}
_TRACK_KEYS = _aliases(TrackState.model_fields)


# ---------------------------------------------------------------------------
# Field validators; each raises ValidationDowngrade on bad input
# ---------------------------------------------------------------------------

def _token(value: Any) -> str:
    return re.sub(r"[\s\-]+", "_", str(value).strip().lower())


def validate_enum(name: str, value: Any, allowed: frozenset[str], synonyms: Mapping[str, str]) -> str:
    if not isinstance(value, str):
        raise ValidationDowngrade(name, value)
    if value in allowed:
        return value
    token = _token(value)
    if token in allowed:
        return token
    if token in synonyms:
        return synonyms[token]
    raise ValidationDowngrade(name, value)


def validate_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationDowngrade(name, value)
    if isinstance(value, (int, float)):
        number = value
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise ValidationDowngrade(name, value) from None
    else:
        raise ValidationDowngrade(name, value)
    if number != number:  # NaN
        raise ValidationDowngrade(name, value)
    low, high = INT_BOUNDS[name]
    number = max(low, round(number))
    return min(high, number) if high is not None else number


def validate_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValidationDowngrade(name, value)


def validate_text(name: str, value: Any) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ValidationDowngrade(name, value)
    return str(value).strip()


def canonicalize_outfit(text: str, variants: tuple[tuple[str, str], ...] = OUTFIT_VARIANTS) -> str:
    for variant, canonical in variants:
        text = re.sub(rf"\b{re.escape(variant)}\b", canonical, text, flags=re.IGNORECASE)
    return text


def _validate_field(key: str, value: Any, tables: ReconcileTables) -> Any:
    if key == "mood":
        return validate_enum(key, value, tables.moods, tables.mood_synonyms)
    if key == "location":
        return validate_enum(key, value, tables.locations, tables.location_synonyms)
    if key == "arc":
        if not isinstance(value, str) or value.strip().upper() not in tables.phases:
            raise ValidationDowngrade(key, value)
        return value.strip().upper()
    if key == "is_accessible":
        return validate_bool(key, value)
    if key in INT_BOUNDS:
        return validate_int(key, value)
    if key == "outfit":
        return canonicalize_outfit(validate_text(key, value), tables.outfit_variants)
    if key in TEXT_FIELDS:
        return validate_text(key, value)
    raise ValidationDowngrade(key, value)


def _merge_track(name: str, current: dict[str, Any], update: Any, tables: ReconcileTables) -> dict[str, Any]:
    if not isinstance(update, Mapping):
        raise ValidationDowngrade(name, update)
    merged = dict(current)
    for raw_key, value in update.items():
        key = _TRACK_KEYS.get(raw_key)
        if key is None or value is None:
            continue
        try:
            merged[key] = _validate_field(key, value, tables)
        except ValidationDowngrade as e:
            logger.debug("keeping previous %s.%s: %s", name, key, e)
    return merged


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def merge(
    canonical: CompanionState,
    parsed: ParsedResult,
    *,
    channel_restricted: bool = False,
    tables: ReconcileTables = DEFAULT_TABLES,
) -> CompanionState:
    data = canonical.model_dump()
    for raw_key, value in parsed.status.items():
        key = _STATE_KEYS.get(raw_key)
        if key is None:
            logger.debug("ignoring unknown status field %r", raw_key)
            continue
        if value is None or key in CALLER_FIELDS:
            continue
        if channel_restricted and key in LOCATION_FIELDS:
            logger.debug("channel-restricted turn; ignoring %s=%r", key, value)
            continue
        try:
            if key in TRACK_NAMES:
                data[key] = _merge_track(key, data[key], value, tables)
            else:
                data[key] = _validate_field(key, value, tables)
        except ValidationDowngrade as e:
            logger.debug("keeping previous %s: %s", key, e)
    return CompanionState.model_validate(data)
