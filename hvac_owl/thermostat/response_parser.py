"""Best-effort extraction of a compatibility verdict from model text.

Parsing never raises. The order is:
1. strict JSON (first balanced object, markdown fences allowed)
2. keyword / regex patterns over the free text
3. a fixed "Uncertain" result
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Any, Dict, List, Optional

from hvac_owl.completion_client import extract_json
from hvac_owl.thermostat.schemas import CompatibilityInfo

logger = logging.getLogger(__name__)


FALLBACK_RECOMMENDATION = (
    "Unable to determine compatibility from the analysis. Please upload clearer photos "
    "of the thermostat and its wiring, or add a more detailed description."
)

_TYPE_RE = re.compile(r"type:?[ \t]*\**[ \t]*([^.\n]+)", re.IGNORECASE)
_CONFIDENCE_RE = re.compile(
    r"confidence[^\d\n]{0,40}?(\d+(?:\.\d+)?)\s*(%|percent)?", re.IGNORECASE
)
_RECOMMENDATION_LINE_RE = re.compile(r"recommendations?:?[ \t]*(.*?)(?:\n|$)", re.IGNORECASE)
_RECOMMENDATION_HEADING_RE = re.compile(r"^\W*recommendations?\W*$", re.IGNORECASE)
_LIST_ITEM_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.+?)\s*$")


def sentinel() -> CompatibilityInfo:
    """Result used when nothing can be recovered from the model output."""
    return CompatibilityInfo(
        thermostat_type="Not specified",
        compatibility="Uncertain",
        confidence=0.0,
        recommendations=[FALLBACK_RECOMMENDATION],
        parse_method="fallback",
    )


def normalize_confidence(value: Any) -> float:
    """Coerce a model-reported confidence into [0, 1].

    Values above 1 and up to 100 are read as percentages. Anything that is not
    a finite number becomes 0.
    """
    if isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if not match:
            return 0.0
        number = float(match.group(0))
        if "%" in value and number <= 100:
            number = number / 100
    elif isinstance(value, bool) or value is None:
        return 0.0
    else:
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0.0

    if math.isnan(number) or math.isinf(number):
        return 0.0
    if 1 < number <= 100:
        number = number / 100
    return min(max(number, 0.0), 1.0)


def normalize_compatibility(value: Any) -> str:
    """Map free-form labels onto Compatible / Not Compatible / Uncertain."""
    text = str(value or "").strip().lower()
    if not text:
        return "Uncertain"
    if re.search(r"\b(not|in|un)\s*-?\s*compatible\b", text) or "incompatible" in text:
        return "Not Compatible"
    if "compatible" in text:
        return "Compatible"
    return "Uncertain"


def parse_string_list(text: str) -> List[str]:
    """Parse a list of strings from model output.

    Accepts a JSON array (of strings or of objects with a ``description``/``text``
    field) or falls back to bullet / numbered lines.
    """
    if not text or not text.strip():
        return []
    try:
        data = json.loads(extract_json(text))
    except ValueError:
        data = None

    if isinstance(data, dict):
        # {"items": [...]} style wrappers
        lists = [v for v in data.values() if isinstance(v, list)]
        data = lists[0] if lists else None

    if isinstance(data, list):
        return as_list(data)

    return [m.group(1) for m in map(_LIST_ITEM_RE.match, text.splitlines()) if m]


def _lookup(data: Dict[str, Any], *names: str) -> Any:
    lowered = {str(k).lower().replace("_", ""): v for k, v in data.items()}
    for name in names:
        key = name.lower().replace("_", "")
        if key in lowered:
            return lowered[key]
    return None


def _label(item: Any) -> str:
    if isinstance(item, dict):
        item = item.get("description") or item.get("text") or item.get("title") or ""
    return str(item).strip()


def as_list(value: Any) -> List[str]:
    """Coerce a JSON field into a list of strings.

    A bare string becomes a one-item list rather than a list of characters.
    """
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [label for label in map(_label, value) if label]
    label = _label(value)
    return [label] if label else []


def _from_json(text: str) -> Optional[CompatibilityInfo]:
    try:
        data = json.loads(extract_json(text))
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    known = ("compatibility", "status", "verdict", "thermostatType", "type", "confidence", "recommendations")
    if all(_lookup(data, name) is None for name in known):
        return None

    # Some replies nest the verdict under a "compatibility" object.
    nested = _lookup(data, "compatibility")
    if isinstance(nested, dict):
        data = {**data, **nested}
        nested = _lookup(nested, "compatibility", "status")

    status = nested if not isinstance(nested, dict) else None
    if status is None:
        status = _lookup(data, "status", "verdict")

    return CompatibilityInfo(
        thermostat_type=str(_lookup(data, "thermostatType", "type") or "Not specified").strip()
        or "Not specified",
        compatibility=normalize_compatibility(status),
        confidence=normalize_confidence(_lookup(data, "confidence")),
        recommendations=as_list(_lookup(data, "recommendations", "recommendation")),
        parse_method="json",
    )


def _from_patterns(text: str) -> Optional[CompatibilityInfo]:
    lowered = text.lower()
    found = False

    if "not compatible" in lowered or "incompatible" in lowered:
        compatibility = "Not Compatible"
        found = True
    elif "compatible" in lowered:
        compatibility = "Compatible"
        found = True
    else:
        compatibility = "Uncertain"

    thermostat_type = "Not specified"
    type_match = _TYPE_RE.search(text)
    if type_match and type_match.group(1).strip(" *"):
        thermostat_type = type_match.group(1).strip(" *")
        found = True

    confidence = 0.0
    conf_match = _CONFIDENCE_RE.search(text)
    if conf_match:
        number = conf_match.group(1)
        raw = f"{number}%" if conf_match.group(2) else number
        confidence = normalize_confidence(raw)
        found = True

    recommendations = [
        r.strip(" *") for r in _RECOMMENDATION_LINE_RE.findall(text) if r.strip(" *:")
    ]
    # Bulleted items under a "Recommendations" heading
    in_section = False
    for line in text.splitlines():
        if _RECOMMENDATION_HEADING_RE.match(line.strip()):
            in_section = True
            continue
        if in_section:
            item = _LIST_ITEM_RE.match(line)
            if item:
                recommendations.append(item.group(1))
            elif line.strip():
                in_section = False
    if recommendations:
        found = True

    if not found:
        return None
    return CompatibilityInfo(
        thermostat_type=thermostat_type,
        compatibility=compatibility,
        confidence=confidence,
        recommendations=list(dict.fromkeys(recommendations)),
        parse_method="pattern",
    )


def parse_compatibility(text: Optional[str]) -> CompatibilityInfo:
    """Extract a :class:`CompatibilityInfo` from raw model text."""
    if not text or not text.strip():
        logger.warning("Empty model output, using fallback compatibility result")
        return sentinel()

    info = _from_json(text)
    if info is not None:
        return info

    logger.info("Model output was not valid JSON, trying pattern extraction")
    info = _from_patterns(text)
    if info is not None:
        return info

    logger.warning("Could not extract compatibility from model output, using fallback")
    return sentinel()
