"""
Configuration for library-recommend.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

PLUGIN_NAME = "datasette-library-recommend"


@dataclass
class LLMConfig:
    """LLM provider configuration."""

    provider: str = "openai"  # openai, ollama (OpenAI-compatible endpoint)
    model: str = "gpt-4o-mini"
    keyword_model: str | None = None  # defaults to model
    base_url: str | None = None
    api_key: str | None = None
    api_key_env: str | None = "OPENAI_API_KEY"
    keyword_temperature: float = 0.1
    summary_temperature: float = 0.4
    max_tokens: int = 1000
    timeout_seconds: float = 30.0

    def get_api_key(self) -> str | None:
        """Get API key from config or environment."""
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env)
        return None

    def get_keyword_model(self) -> str:
        return self.keyword_model or self.model


@dataclass
class RateLimitConfig:
    """Per-client request throttling for the recommend endpoint."""

    max_requests: int = 30
    window_seconds: float = 300.0


@dataclass
class RecommendConfig:
    """Complete library-recommend configuration."""

    catalog_db_path: Path = field(default_factory=lambda: Path("library.db"))
    llm: LLMConfig = field(default_factory=LLMConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RecommendConfig":
        """Create config from a dictionary (e.g., the plugin config section)."""
        config = cls()

        if "catalog_db_path" in data:
            config.catalog_db_path = Path(data["catalog_db_path"])

        if "llm" in data:
            llm = data["llm"] or {}
            defaults = LLMConfig()
            config.llm = LLMConfig(
                provider=llm.get("provider", defaults.provider),
                model=llm.get("model", defaults.model),
                keyword_model=llm.get("keyword_model"),
                base_url=llm.get("base_url"),
                api_key=llm.get("api_key"),
                api_key_env=llm.get("api_key_env", defaults.api_key_env),
                keyword_temperature=llm.get("keyword_temperature", defaults.keyword_temperature),
                summary_temperature=llm.get("summary_temperature", defaults.summary_temperature),
                max_tokens=llm.get("max_tokens", defaults.max_tokens),
                timeout_seconds=llm.get("timeout_seconds", defaults.timeout_seconds),
            )

        if "rate_limit" in data:
            rl = data["rate_limit"] or {}
            config.rate_limit = RateLimitConfig(
                max_requests=rl.get("max_requests", 30),
                window_seconds=rl.get("window_seconds", 300.0),
            )

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "RecommendConfig":
        """Load config from a YAML file (datasette.yaml format)."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        # Look for config under plugins.datasette-library-recommend
        plugin_config = data.get("plugins", {}).get(PLUGIN_NAME, {})
        return cls.from_dict(plugin_config or {})

    def to_dict(self) -> dict[str, Any]:
        """Convert config to dictionary for JSON serialization. Secrets are left out."""
        return {
            "catalog_db_path": str(self.catalog_db_path),
            "llm": {
                "provider": self.llm.provider,
                "model": self.llm.model,
                "keyword_model": self.llm.get_keyword_model(),
                "base_url": self.llm.base_url,
                "max_tokens": self.llm.max_tokens,
            },
            "rate_limit": {
                "max_requests": self.rate_limit.max_requests,
                "window_seconds": self.rate_limit.window_seconds,
            },
        }
