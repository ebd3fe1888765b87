"""
Data models for the recommendation pipeline.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

MAX_PROMPT_LENGTH = 800
DEFAULT_LIMIT = 12
MAX_LIMIT = 20
OVERFETCH = 4
KEYWORD_MAX = 6
KEYWORD_MAX_LENGTH = 64

MEDIA_TYPES = ("book", "video", "audio", "other")
MEDIA_FORMATS = ("print", "ebook", "audiobook", "dvd", "blu-ray")
AGE_GROUPS = ("adult", "teen", "child", "kids", "all")


class Role(str, Enum):
    """Personas the summary can be written for."""

    MEMBER = "member"
    LIBRARIAN = "librarian"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: Any) -> "Role":
        """Map a raw role string to a Role, defaulting to MEMBER."""
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.MEMBER


class KeywordSource(str, Enum):
    """Where a keyword set came from."""

    EXTRACTED = "extracted"
    FALLBACK = "fallback"


class EventType(str, Enum):
    """Server-Sent Event names used on the recommendation stream."""

    STATUS = "status"
    METADATA = "metadata"
    TOKEN = "token"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class Identity:
    """The resolved user for a request."""

    user_id: str
    role: Role = Role.MEMBER

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.user_id, "role": self.role.value}


@dataclass(frozen=True)
class SanitizedFilters:
    """Catalog facets after validation."""

    media_type: str | None = None
    media_format: str | None = None
    age_group: str | None = None
    limit: int = DEFAULT_LIMIT

    def to_dict(self) -> dict[str, Any]:
        """Convert to the camelCase shape used on the wire."""
        result: dict[str, Any] = {"limit": self.limit}
        if self.media_type:
            result["mediaType"] = self.media_type
        if self.media_format:
            result["mediaFormat"] = self.media_format
        if self.age_group:
            result["ageGroup"] = self.age_group
        return result

    @property
    def fetch_limit(self) -> int:
        """Row cap for the catalog query, including overfetch."""
        return min(self.limit + OVERFETCH, MAX_LIMIT + OVERFETCH)


@dataclass(frozen=True)
class RecommendationRequest:
    """An accepted, sanitized recommendation request."""

    prompt: str
    filters: SanitizedFilters = field(default_factory=SanitizedFilters)


@dataclass
class KeywordResult:
    """Search terms derived from a prompt."""

    keywords: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    source: KeywordSource = KeywordSource.FALLBACK
    raw: Any = None  # diagnostics only, never sent to clients


@dataclass
class RecommendationItem:
    """A catalog record offered as a recommendation candidate."""

    id: str
    title: str
    author: str
    media_type: str
    media_format: str
    cover_url: str | None = None
    subjects: list[str] = field(default_factory=list)
    description: str | None = None
    published_at: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "mediaType": self.media_type,
            "mediaFormat": self.media_format,
            "coverUrl": self.cover_url,
            "subjects": self.subjects,
            "description": self.description,
            "publishedAt": self.published_at,
            "metadata": self.metadata,
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """The subset of fields shown to the summarizing model."""
        return {
            "title": self.title,
            "author": self.author,
            "mediaType": self.media_type,
            "mediaFormat": self.media_format,
            "subjects": self.subjects,
            "description": self.description,
            "metadata": self.metadata,
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RecommendationItem":
        """Create from a ``media`` table row."""
        metadata = row.get("metadata")
        if isinstance(metadata, str):
            try:
                metadata = json.loads(metadata)
            except ValueError:
                metadata = None
        if not isinstance(metadata, dict):
            metadata = {}

        return cls(
            id=str(row["id"]),
            title=row["title"],
            author=row.get("creator") or "",
            media_type=row["media_type"],
            media_format=row["media_format"],
            cover_url=row.get("cover_url") or None,
            subjects=[s for s in (row.get("genre"), row.get("subject")) if s],
            description=row.get("description") or None,
            published_at=row.get("published_at") or None,
            metadata=metadata,
        )
