"""
Candidate retrieval from the media catalog.

Keywords become ``LIKE`` patterns matched against case-folded columns
(SQLite's own LIKE only folds ASCII). A row is a candidate if any keyword
matches any searchable field, and is dropped if any exclude term matches
its description, genre or subject. Author and title are never used for
exclusion so that a name collision can't hide a good match.
"""

import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Protocol

from .errors import RetrievalError
from .models import RecommendationItem, SanitizedFilters

logger = logging.getLogger(__name__)

SEARCH_FIELDS = ("title", "description", "genre", "subject", "creator")
EXCLUDE_FIELDS = ("description", "genre", "subject")
MEDIA_COLUMNS = (
    "id",
    "title",
    "creator",
    "media_type",
    "media_format",
    "genre",
    "subject",
    "description",
    "cover_url",
    "published_at",
    "metadata",
)
MIN_PATTERN_LENGTH = 3

LIKE_SPECIAL = re.compile(r"([%_\\])")
WHITESPACE = re.compile(r"\s+")


def escape_like_term(term: str) -> str:
    """Escape LIKE wildcards so they match literally (with ESCAPE '\\')."""
    return LIKE_SPECIAL.sub(r"\\\1", term)


def build_wildcard_pattern(keyword: str) -> str:
    """
    Turn one keyword into a ``%...%`` pattern.

    Internal whitespace becomes a wildcard gap, so "space opera" matches
    "space-faring opera" as well as "space opera".
    """
    if not keyword:
        return ""
    return f"%{WHITESPACE.sub('%', escape_like_term(keyword.strip()))}%"


def casefold_text(value: Any) -> Any:
    """Unicode case folding, registered as the SQL function ``fold()``."""
    return value.casefold() if isinstance(value, str) else value


def build_search_patterns(keywords: list[str]) -> list[str]:
    patterns = [build_wildcard_pattern(keyword) for keyword in keywords]
    return [p for p in patterns if len(p) >= MIN_PATTERN_LENGTH]


class Catalog(Protocol):
    async def query(
        self,
        filters: SanitizedFilters,
        include_patterns: list[str],
        exclude_patterns: list[str],
        limit: int,
    ) -> list[dict[str, Any]]: ...


class MediaCatalog:
    """Catalog backed by the ``media`` table of a SQLite database."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    def build_query(
        self,
        filters: SanitizedFilters,
        include_patterns: list[str],
        exclude_patterns: list[str],
        limit: int,
    ) -> tuple[str, list[Any]]:
        """Build the SQL and parameters for a candidate query."""
        clauses: list[str] = []
        params: list[Any] = []

        if filters.media_type:
            clauses.append("media_type = ?")
            params.append(filters.media_type)
        if filters.media_format:
            clauses.append("media_format = ?")
            params.append(filters.media_format)

        if include_patterns:
            alternatives = []
            for pattern in include_patterns:
                for column in SEARCH_FIELDS:
                    alternatives.append(f"fold({column}) LIKE ? ESCAPE '\\'")
                    params.append(pattern.casefold())
            clauses.append("(" + " OR ".join(alternatives) + ")")

        for pattern in exclude_patterns:
            for column in EXCLUDE_FIELDS:
                # NULL never matches, so it must never exclude either
                clauses.append(f"coalesce(fold({column}), '') NOT LIKE ? ESCAPE '\\'")
                params.append(pattern.casefold())

        sql = f"SELECT {', '.join(MEDIA_COLUMNS)} FROM media"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY published_at DESC LIMIT ?"
        params.append(limit)
        return sql, params

    async def query(
        self,
        filters: SanitizedFilters,
        include_patterns: list[str],
        exclude_patterns: list[str],
        limit: int,
    ) -> list[dict[str, Any]]:
        """Run a candidate query and return rows as dicts."""
        sql, params = self.build_query(filters, include_patterns, exclude_patterns, limit)

        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.create_function("fold", 1, casefold_text, deterministic=True)
        try:
            cursor = conn.execute(sql, params)
            return [dict(row) for row in cursor.fetchall()]
        finally:
            conn.close()


async def fetch_candidates(
    catalog: Catalog,
    keywords: list[str],
    exclude: list[str],
    filters: SanitizedFilters,
) -> list[RecommendationItem]:
    """
    Retrieve recommendation candidates for a keyword set.

    Fetches up to ``filters.limit + 4`` rows so the summary step has a few
    spares. With no keywords, the newest items are returned.

    Raises:
        RetrievalError: if the catalog query fails
    """
    include_patterns = build_search_patterns(keywords)
    exclude_patterns = build_search_patterns(exclude)
    limit = filters.fetch_limit

    logger.debug(
        f"Catalog query: {len(include_patterns)} include, "
        f"{len(exclude_patterns)} exclude, limit {limit}"
    )

    try:
        rows = await catalog.query(filters, include_patterns, exclude_patterns, limit)
    except RetrievalError:
        raise
    except Exception as e:
        logger.exception("Catalog query failed")
        raise RetrievalError() from e

    return [RecommendationItem.from_row(row) for row in rows[:limit]]
