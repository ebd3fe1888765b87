"""
Keyword extraction.

The LLM is asked for a small structured set of search terms. If that fails
for any reason, a deterministic stop-word extractor takes over, so the
request never fails because of this step.
"""

import logging
import re
from typing import Any, Protocol

from .models import KEYWORD_MAX, KeywordResult, KeywordSource
from .prompts import KEYWORD_SCHEMA, build_keyword_messages
from .sanitize import sanitize_freeform, sanitize_keyword_list

logger = logging.getLogger(__name__)

FALLBACK_SLICE_LENGTH = 20
MIN_TERM_LENGTH = 2

STOP_WORDS = frozenset(
    {
        "the", "and", "a", "an", "of", "for", "with", "about", "into", "on",
        "in", "to", "from", "by", "at", "as", "is", "are", "be", "this",
        "that", "these", "those", "it", "its", "their", "my", "our", "your",
        "we", "you", "they", "them", "me", "i", "but", "so", "if", "or",
        "not", "no", "yes", "please", "would", "like", "looking", "need",
        "want", "maybe", "just", "can", "could", "should", "any",
    }
)

NON_ALPHANUMERIC = re.compile(r"[^a-z0-9\s]")


class StructuredCompleter(Protocol):
    async def complete(
        self, messages: list[dict[str, str]], schema: dict[str, Any] | None = None
    ) -> Any: ...


class SchemaViolation(ValueError):
    """The model's JSON didn't match the keyword schema."""


def fallback_keywords(prompt: str, max_items: int = KEYWORD_MAX) -> list[str]:
    """
    Derive keywords without a model.

    Pure and deterministic: lower-case, drop punctuation, drop short tokens
    and stop words, keep first-seen order. If nothing survives, the start of
    the prompt is used as a single keyword.
    """
    cleaned = sanitize_freeform(prompt).lower()
    tokens = NON_ALPHANUMERIC.sub(" ", cleaned).split()

    unique: list[str] = []
    for token in tokens:
        if len(token) <= 2 or token in STOP_WORDS or token in unique:
            continue
        unique.append(token)
        if len(unique) >= max_items:
            break

    if not unique and cleaned:
        unique.append(cleaned[:FALLBACK_SLICE_LENGTH])

    return unique


def _validate_term_list(value: Any, field_name: str, min_items: int) -> list[str]:
    if not isinstance(value, list):
        raise SchemaViolation(f"{field_name} must be a list")
    if not min_items <= len(value) <= KEYWORD_MAX:
        raise SchemaViolation(f"{field_name} must have {min_items}-{KEYWORD_MAX} items")
    terms = []
    for item in value:
        if not isinstance(item, str) or len(item.strip()) < MIN_TERM_LENGTH:
            raise SchemaViolation(
                f"{field_name} items must be strings of length >= {MIN_TERM_LENGTH}"
            )
        terms.append(item.strip())
    return terms


def parse_keyword_payload(payload: Any) -> tuple[list[str], list[str]]:
    """Check a model response against the keyword schema."""
    if not isinstance(payload, dict):
        raise SchemaViolation("payload must be an object")
    unexpected = set(payload) - {"keywords", "exclude"}
    if unexpected:
        raise SchemaViolation(f"unexpected fields: {sorted(unexpected)}")
    keywords = _validate_term_list(payload.get("keywords"), "keywords", min_items=1)
    exclude = _validate_term_list(payload.get("exclude", []), "exclude", min_items=0)
    return keywords, exclude


class KeywordExtractor:
    """Turns a sanitized prompt into a bounded KeywordResult."""

    def __init__(self, completer: StructuredCompleter | None):
        self.completer = completer

    async def extract(self, prompt: str) -> KeywordResult:
        result = await self._extract_raw(prompt)

        # Whatever the source, terms get the same cleanup before use
        keywords = sanitize_keyword_list(result.keywords)
        if not keywords:
            keywords = sanitize_keyword_list(fallback_keywords(prompt))
            result.source = KeywordSource.FALLBACK
        result.keywords = keywords
        result.exclude = sanitize_keyword_list(result.exclude)
        return result

    async def _extract_raw(self, prompt: str) -> KeywordResult:
        if self.completer is None:
            return KeywordResult(keywords=fallback_keywords(prompt), source=KeywordSource.FALLBACK)

        try:
            payload = await self.completer.complete(build_keyword_messages(prompt), KEYWORD_SCHEMA)
            keywords, exclude = parse_keyword_payload(payload)
        except Exception as e:
            logger.warning(f"Keyword extraction failed, using fallback: {e}")
            return KeywordResult(
                keywords=fallback_keywords(prompt),
                source=KeywordSource.FALLBACK,
                raw=str(e),
            )

        logger.debug(f"Extracted keywords {keywords}, exclude {exclude}")
        return KeywordResult(
            keywords=keywords,
            exclude=exclude,
            source=KeywordSource.EXTRACTED,
            raw=payload,
        )
