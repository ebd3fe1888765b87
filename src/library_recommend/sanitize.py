"""
Input sanitization for recommendation requests.

Everything a patron types ends up in a catalog search pattern or in a
prompt sent to a third-party model, so the request body is checked against
an explicit field allow-list and free text is normalized and scrubbed of
likely PII before anything else sees it.
"""

import math
import re
import unicodedata
from typing import Any

from .errors import ValidationError
from .models import (
    AGE_GROUPS,
    DEFAULT_LIMIT,
    KEYWORD_MAX,
    KEYWORD_MAX_LENGTH,
    MAX_LIMIT,
    MAX_PROMPT_LENGTH,
    MEDIA_FORMATS,
    MEDIA_TYPES,
    RecommendationRequest,
    SanitizedFilters,
)

ALLOWED_BODY_KEYS = frozenset({"prompt", "filters"})
ALLOWED_FILTER_KEYS = frozenset({"mediaType", "mediaFormat", "ageGroup", "limit"})

PROMPT_REQUIRED = "Prompt is required."

CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
WHITESPACE = re.compile(r"\s+")

# Order matters: emails and UUIDs first so their digit runs are not
# eaten as phone numbers
PII_PATTERNS = [
    (re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE), "[REDACTED_EMAIL]"),
    (
        re.compile(
            r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b",
            re.IGNORECASE,
        ),
        "[REDACTED_ID]",
    ),
    (re.compile(r"(\+?\d[\d\s().-]{7,}\d)"), "[REDACTED_PHONE]"),
    (re.compile(r"\b\d{8,}\b"), "[REDACTED_NUMBER]"),
]

# Anything but letters, numbers, whitespace and hyphens
KEYWORD_UNSAFE = re.compile(r"[^\w\s-]|_")
HYPHEN_RUN = re.compile(r"-+")


def strip_control_characters(value: str) -> str:
    """Replace C0 control characters and DEL with spaces."""
    return CONTROL_CHARS.sub(" ", value)


def normalize_whitespace(value: str) -> str:
    return WHITESPACE.sub(" ", value).strip()


def sanitize_freeform(value: str) -> str:
    """NFKC-normalize, drop control characters and collapse whitespace."""
    return normalize_whitespace(strip_control_characters(unicodedata.normalize("NFKC", value)))


def redact_personal_info(value: str) -> str:
    """Replace emails, phone numbers, UUIDs and long digit runs with placeholders."""
    for pattern, placeholder in PII_PATTERNS:
        value = pattern.sub(placeholder, value)
    return value


def sanitize_prompt(raw: Any, max_length: int = MAX_PROMPT_LENGTH) -> str:
    """
    Normalize and validate a patron prompt.

    Raises ValidationError if the prompt is not a string or is empty once
    normalized. Long prompts are truncated, not rejected.
    """
    if not isinstance(raw, str):
        raise ValidationError(PROMPT_REQUIRED)

    sanitized = sanitize_freeform(raw)
    if not sanitized:
        raise ValidationError(PROMPT_REQUIRED)

    sanitized = redact_personal_info(sanitized)[:max_length].strip()
    if not sanitized:
        raise ValidationError(PROMPT_REQUIRED)

    return sanitized


def _sanitize_optional_enum(value: Any, label: str, allowed: tuple[str, ...]) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string.")

    normalized = value.strip().lower()
    if normalized not in allowed:
        return None
    return normalized


def _sanitize_limit(value: Any) -> int:
    # bool is an int subclass; treat it as garbage
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return DEFAULT_LIMIT
    if isinstance(value, float) and not math.isfinite(value):
        return DEFAULT_LIMIT
    return max(1, min(MAX_LIMIT, math.floor(value)))


def sanitize_filters(raw: dict[str, Any] | None) -> SanitizedFilters:
    """Validate catalog facets, dropping unknown enum values and clamping the limit."""
    raw = raw or {}
    return SanitizedFilters(
        media_type=_sanitize_optional_enum(raw.get("mediaType"), "mediaType", MEDIA_TYPES),
        media_format=_sanitize_optional_enum(raw.get("mediaFormat"), "mediaFormat", MEDIA_FORMATS),
        age_group=_sanitize_optional_enum(raw.get("ageGroup"), "ageGroup", AGE_GROUPS),
        limit=_sanitize_limit(raw.get("limit")),
    )


def _assert_allowed_keys(record: dict[str, Any], allowed: frozenset[str], context: str) -> None:
    for key in record:
        if key not in allowed:
            raise ValidationError(f'Unexpected field "{key}" in {context}.')


def parse_request_body(raw: Any) -> tuple[Any, dict[str, Any] | None]:
    """
    Check the shape of a decoded JSON request body.

    Returns (raw_prompt, raw_filters). Unknown keys at either level are
    rejected outright.
    """
    if not isinstance(raw, dict):
        raise ValidationError("Request body must be a JSON object.")
    _assert_allowed_keys(raw, ALLOWED_BODY_KEYS, "request body")

    filters = raw.get("filters")
    if filters is not None:
        if not isinstance(filters, dict):
            raise ValidationError("Filters must be an object when provided.")
        _assert_allowed_keys(filters, ALLOWED_FILTER_KEYS, "filters")

    return raw.get("prompt"), filters


def sanitize_request(raw: Any) -> RecommendationRequest:
    """Validate a whole request body into a RecommendationRequest."""
    raw_prompt, raw_filters = parse_request_body(raw)
    return RecommendationRequest(
        prompt=sanitize_prompt(raw_prompt),
        filters=sanitize_filters(raw_filters),
    )


def sanitize_keyword_value(value: str, max_length: int = KEYWORD_MAX_LENGTH) -> str:
    """Reduce a search term to letters, numbers and single spaces."""
    if not isinstance(value, str):
        return ""
    normalized = sanitize_freeform(value)
    if not normalized:
        return ""

    cleaned = KEYWORD_UNSAFE.sub(" ", normalized)
    cleaned = HYPHEN_RUN.sub(" ", cleaned)
    cleaned = normalize_whitespace(cleaned)
    return cleaned[:max_length].strip()


def sanitize_keyword_list(
    values: list[str],
    max_items: int = KEYWORD_MAX,
    max_length: int = KEYWORD_MAX_LENGTH,
) -> list[str]:
    """Sanitize, de-duplicate and cap a list of search terms."""
    sanitized: list[str] = []
    for value in values:
        if len(sanitized) >= max_items:
            break
        cleaned = sanitize_keyword_value(value, max_length=max_length)
        if cleaned and cleaned not in sanitized:
            sanitized.append(cleaned)
    return sanitized


def escape_angle_brackets(value: str) -> str:
    return value.replace("<", "&lt;").replace(">", "&gt;")


def wrap_prompt_for_model(prompt: str) -> str:
    """Fence patron text so the model can tell it apart from instructions."""
    return f"<user_prompt>\n{escape_angle_brackets(prompt)}\n</user_prompt>"
