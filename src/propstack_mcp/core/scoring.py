"""Property ↔ search-profile match scoring.

Scores each saved search profile against one property on the dimensions
both sides actually carry, then ranks the profiles. The upstream API has no
matching endpoint; this is what makes "who should I send this listing to?"
answerable in one call.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Optional

from pydantic import BaseModel

from .models import MatchReport, MatchResult

logger = logging.getLogger(__name__)

DEFAULT_TOP_N = 20


class MatchWeights(BaseModel):
    """Points per dimension. Categorical and location fit outweigh size checks."""

    marketing_type: int = 3
    city: int = 3
    price: int = 2
    base_rent: int = 2
    number_of_rooms: int = 2
    living_space: int = 1
    rs_type: int = 2


def unwrap_number(value: Any) -> Optional[float]:
    """Read a numeric field that may be a number, a numeric string, or ``{"value": n}``."""
    if isinstance(value, dict):
        value = value.get("value")
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value) if isinstance(value, (int, float)) else float(str(value).replace(",", "."))
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _text(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("value")
    if value is None:
        return ""
    return str(value).strip()


def _fmt_number(value: Optional[float]) -> str:
    if value is None:
        return "any"
    if value == int(value):
        return f"{int(value):,}"
    return f"{value:,.2f}"


def in_range(value: float, low: Optional[float], high: Optional[float]) -> bool:
    """Inclusive range check; a missing bound is open on that side."""
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


# (property field, profile lower bound, profile upper bound, weight attr, label)
_RANGE_DIMENSIONS = [
    ("price", "price", "price_to", "price", "Price"),
    ("base_rent", "base_rent", "base_rent_to", "base_rent", "Rent"),
    ("number_of_rooms", "number_of_rooms", "number_of_rooms_to", "number_of_rooms", "Rooms"),
    ("living_space", "living_space", "living_space_to", "living_space", "Space"),
]


def score_profile(unit: dict, profile: dict, weights: Optional[MatchWeights] = None) -> MatchResult:
    """Score one search profile against one property.

    A dimension counts toward both score and max_score only when the profile
    constrains it and the property has a value for it. Anything missing on
    either side is skipped, so sparse profiles are not penalized.
    """
    weights = weights or MatchWeights()
    score = 0
    max_score = 0
    matched: list[str] = []
    mismatched: list[str] = []

    # Marketing type (BUY / RENT)
    wanted_type = _text(profile.get("marketing_type"))
    unit_type = _text(unit.get("marketing_type"))
    if wanted_type and unit_type:
        max_score += weights.marketing_type
        if wanted_type.casefold() == unit_type.casefold():
            score += weights.marketing_type
            matched.append(f"Type: {unit_type}")
        else:
            mismatched.append(f"Type: wants {wanted_type}, property is {unit_type}")

    # City: substring match, so "Berlin" covers "Berlin-Mitte"
    cities = [c for c in (profile.get("cities") or []) if _text(c)]
    unit_city = _text(unit.get("city"))
    if cities and unit_city:
        max_score += weights.city
        if any(_text(c).casefold() in unit_city.casefold() for c in cities):
            score += weights.city
            matched.append(f"City: {unit_city}")
        else:
            mismatched.append(f"City: wants {'/'.join(_text(c) for c in cities)}, property in {unit_city}")

    for field, low_key, high_key, weight_attr, label in _RANGE_DIMENSIONS:
        low = unwrap_number(profile.get(low_key))
        high = unwrap_number(profile.get(high_key))
        actual = unwrap_number(unit.get(field))
        if (low is None and high is None) or actual is None:
            continue
        weight = getattr(weights, weight_attr)
        max_score += weight
        if in_range(actual, low, high):
            score += weight
            matched.append(f"{label}: {_fmt_number(actual)} in range")
        else:
            mismatched.append(f"{label}: {_fmt_number(actual)} outside {_fmt_number(low)}–{_fmt_number(high)}")

    # Property type enum (APARTMENT, HOUSE, ...)
    rs_types = [_text(t) for t in (profile.get("rs_types") or []) if _text(t)]
    unit_rs_type = _text(unit.get("rs_type"))
    if rs_types and unit_rs_type:
        max_score += weights.rs_type
        if unit_rs_type.casefold() in {t.casefold() for t in rs_types}:
            score += weights.rs_type
            matched.append(f"Property type: {unit_rs_type}")
        else:
            mismatched.append(f"Property type: wants {'/'.join(rs_types)}, is {unit_rs_type}")

    return MatchResult(
        profile_id=profile.get("id"),
        contact_id=profile.get("client_id"),
        score=score,
        max_score=max_score,
        matched=matched,
        mismatched=mismatched,
    )


def rank_profiles(
    unit: dict,
    profiles: Iterable[dict],
    weights: Optional[MatchWeights] = None,
    top_n: int = DEFAULT_TOP_N,
) -> MatchReport:
    """Score profiles flagged active, drop zero scores, and keep the best ``top_n``.

    Ordering is score descending, then fewer mismatches. The sort is stable,
    so equal candidates keep their input order.
    """
    weights = weights or MatchWeights()
    results: list[MatchResult] = []
    considered = 0

    for profile in profiles:
        if not profile.get("active"):
            continue
        considered += 1
        result = score_profile(unit, profile, weights)
        if result.score > 0:
            results.append(result)

    results.sort(key=lambda r: (-r.score, len(r.mismatched)))
    logger.debug("Scored %d profiles against property %s: %d matches", considered, unit.get("id"), len(results))

    return MatchReport(
        property_id=unit.get("id"),
        matches=results[:top_n],
        total_matches=len(results),
        profiles_considered=considered,
    )
