"""Configuration management for the feedback loop engine."""

from pathlib import Path

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings, loaded from env vars and optionally overridden by a YAML config file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API keys
    openai_api_key: str = ""

    # Model config
    openai_model: str = "gpt-4.1-mini"
    openai_base_url: str = ""
    openai_temperature: float = 0.2
    llm_timeout_seconds: float = 120.0
    client_max_retries: int = 3
    client_backoff_seconds: float = 1.0
    # USD per million tokens, used for the estimated cost of clustering calls
    llm_input_price_per_million: float = 0.0
    llm_output_price_per_million: float = 0.0

    # Clustering
    min_cluster_size: int = 3
    max_reviews: int = 300
    snippet_chars: int = 200
    clustering_scopes: list[str] = Field(
        default_factory=lambda: ["Tech_Bug", "Compliance_Risk", "Product_Issue"]
    )

    # Summaries
    summary_top_k: int = 5

    # Paths
    database_path: Path = Field(default=Path("data/voc_loop.sqlite3"))
    lock_dir: Path | None = None

    @classmethod
    def from_yaml(cls, config_path: str | Path, **overrides) -> "Settings":
        """Load settings from a YAML config file, with env vars and overrides applied on top."""
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_config = yaml.safe_load(f) or {}
        else:
            yaml_config = {}
        merged = {**yaml_config, **overrides}
        return cls(**merged)

    def resolved_openai_base_url(self) -> str:
        """Return the effective base URL with a trailing slash, or empty for the default."""

        candidate = self.openai_base_url.strip()
        if not candidate:
            return ""
        return f"{candidate.rstrip('/')}/"

    def resolved_openai_key_source(self) -> str:
        """Return non-secret key source label for diagnostics."""

        if self.openai_api_key.strip():
            return "OPENAI_API_KEY"
        return "none"
