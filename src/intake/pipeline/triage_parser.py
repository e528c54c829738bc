"""Parsing and normalization of raw triage responses.

Providers wrap the JSON in prose or code fences, add trailing commas, and
sometimes stop mid-object at the output-token limit. ``parse_triage_response``
copes with all of these and always yields a fully populated Classification,
or raises AutomationError when nothing at all can be recovered.
"""

import json
import logging
import math
import re

from src.intake.errors import AutomationError
from src.intake.models import (
    CATEGORIES,
    CONTEXT_VALIDITY,
    IMPACT_SCOPES,
    REPORT_TYPES,
    URGENCY_LEVELS,
    Classification,
)

logger = logging.getLogger(__name__)

_FENCED_BLOCK_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")

# Ordered: first matching keyword group wins
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("wifi", ("internet", "network")),
    ("electricity", ("electric", "power", "ac", "fan")),
    ("sanitation", ("toilet", "bathroom", "clean")),
    ("academics", ("exam", "class", "professor", "result")),
    ("safety", ("secure", "theft", "danger")),
)
FALLBACK_CATEGORY = "infrastructure"
DEFAULT_REASONING = "No reasoning provided"

_STRING_FIELD = r'"{name}"\s*:\s*"([^"]*)"'
_NUMBER_FIELD = r'"{name}"\s*:\s*([0-9.]+)'
_BOOL_FIELD = r'"{name}"\s*:\s*(true|false)'
_ENUM_FIELD = r'"{name}"\s*:\s*"({values})"'

_PARTIAL_PATTERNS: dict[str, tuple[re.Pattern, str]] = {
    "extracted_category": (re.compile(_STRING_FIELD.format(name="extracted_category")), "str"),
    "urgency_score": (re.compile(_NUMBER_FIELD.format(name="urgency_score")), "float"),
    "impact_scope": (re.compile(r'"impact_scope"\s*:\s*"(single|multi(?:ple)?)"'), "str"),
    "environmental_flag": (re.compile(_BOOL_FIELD.format(name="environmental_flag")), "bool"),
    "confidence_score": (re.compile(_NUMBER_FIELD.format(name="confidence_score")), "float"),
    # Reasoning may itself be cut off, so the closing quote is optional
    "reasoning": (re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)'), "escaped"),
    "urgency_level": (
        re.compile(_ENUM_FIELD.format(name="urgency_level", values="|".join(URGENCY_LEVELS))),
        "str",
    ),
    "report_type": (
        re.compile(_ENUM_FIELD.format(name="report_type", values="|".join(REPORT_TYPES))),
        "str",
    ),
    "reporter_welfare_flag": (re.compile(_BOOL_FIELD.format(name="reporter_welfare_flag")), "bool"),
    "requires_immediate_action": (
        re.compile(_BOOL_FIELD.format(name="requires_immediate_action")),
        "bool",
    ),
    "spam_confidence": (re.compile(_NUMBER_FIELD.format(name="spam_confidence")), "float"),
    "context_validity": (
        re.compile(_ENUM_FIELD.format(name="context_validity", values="|".join(CONTEXT_VALIDITY))),
        "str",
    ),
}


def clean_response(text: str) -> str:
    """Reduce a raw response to the text most likely to hold the JSON object."""
    cleaned = text.strip()

    block = _FENCED_BLOCK_RE.search(cleaned)
    if block:
        cleaned = block.group(1).strip()
    else:
        if cleaned.startswith("```json"):
            cleaned = cleaned[7:]
        elif cleaned.startswith("```"):
            cleaned = cleaned[3:]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
        cleaned = cleaned.strip()

    brace = cleaned.find("{")
    if brace > 0:
        cleaned = cleaned[brace:]

    return _TRAILING_COMMA_RE.sub(r"\1", cleaned)


def extract_partial_fields(text: str) -> dict:
    """Recover whatever known fields appear in a malformed or truncated object."""
    out: dict = {}
    for field_name, (pattern, kind) in _PARTIAL_PATTERNS.items():
        match = pattern.search(text)
        if not match:
            continue
        value = match.group(1)
        if kind == "float":
            try:
                out[field_name] = float(value)
            except ValueError:
                continue
        elif kind == "bool":
            out[field_name] = value == "true"
        elif kind == "escaped":
            out[field_name] = re.sub(r"\\(.)", r"\1", value)
        else:
            out[field_name] = value
    if out.get("impact_scope") == "multiple":
        out["impact_scope"] = "multi"
    return out


def _unit_interval(value, default: float) -> float:
    """Number in [0, 1] (numeric strings accepted), else ``default``."""
    if isinstance(value, bool) or value is None:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(number) or number < 0 or number > 1:
        return default
    return number


def _strict_bool(value) -> bool:
    return value is True or value == "true"


def _enum(value, allowed: tuple[str, ...], default: str | None) -> str | None:
    if isinstance(value, str) and value in allowed:
        return value
    return default


def normalize_category(raw) -> str:
    category = raw.lower().strip() if isinstance(raw, str) else ""
    if category in CATEGORIES:
        return category
    for target, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in category for keyword in keywords):
            return target
    return FALLBACK_CATEGORY


def urgency_level_for(score: float) -> str:
    if score >= 0.9:
        return "CRITICAL"
    if score >= 0.7:
        return "HIGH"
    if score >= 0.5:
        return "MEDIUM"
    return "LOW"


def normalize_fields(parsed: dict) -> Classification:
    """Map an arbitrary dict onto a Classification, defaulting each field on its own."""
    urgency_score = _unit_interval(parsed.get("urgency_score"), 0.5)
    impact = parsed.get("impact_scope")
    if impact == "multiple":
        impact = "multi"
    reasoning = parsed.get("reasoning")

    return Classification(
        category=normalize_category(parsed.get("extracted_category")),
        urgency_score=urgency_score,
        impact_scope=_enum(impact, IMPACT_SCOPES, "single"),
        environmental_flag=_strict_bool(parsed.get("environmental_flag")),
        confidence_score=_unit_interval(parsed.get("confidence_score"), 0.7),
        urgency_level=_enum(parsed.get("urgency_level"), URGENCY_LEVELS, None)
        or urgency_level_for(urgency_score),
        report_type=_enum(parsed.get("report_type"), REPORT_TYPES, "GENERAL"),
        reporter_welfare_flag=_strict_bool(parsed.get("reporter_welfare_flag")),
        requires_immediate_action=_strict_bool(parsed.get("requires_immediate_action")),
        spam_confidence=_unit_interval(parsed.get("spam_confidence"), 0.0),
        context_validity=_enum(parsed.get("context_validity"), CONTEXT_VALIDITY, "VALID"),
        reasoning=reasoning if isinstance(reasoning, str) else DEFAULT_REASONING,
    )


def parse_triage_response(text: str) -> Classification:
    """Parse a raw provider response.

    Raises:
        AutomationError: No JSON object and no recognizable field in the text.
    """
    cleaned = clean_response(text or "")
    try:
        parsed = json.loads(cleaned)
        if not isinstance(parsed, dict):
            raise ValueError(f"expected a JSON object, got {type(parsed).__name__}")
    except ValueError as exc:
        # json.JSONDecodeError is a ValueError
        logger.warning("Triage response parse failed, attempting partial extraction: %s", exc)
        parsed = extract_partial_fields(cleaned)
        if not parsed:
            logger.error("Unparseable triage response (%d chars)", len(text or ""))
            raise AutomationError("Failed to parse triage response") from exc
        logger.info("Recovered %d field(s) from partial triage response", len(parsed))

    return normalize_fields(parsed)
