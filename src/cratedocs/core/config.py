"""Environment-sourced settings for the ingestion pipeline."""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from .errors import ConfigError

# Load environment variables
load_dotenv()

DEFAULT_DATABASE_URL = "postgresql://localhost/rustdocs_mcp"
DEFAULT_COST_PER_MILLION = 0.02


@dataclass
class Settings:
    """Configuration for a populate run."""
    embedding_provider: str = "openai"
    embedding_model: Optional[str] = None
    openai_api_base: Optional[str] = None
    openai_api_key: Optional[str] = None
    voyage_api_key: Optional[str] = None
    database_url: str = DEFAULT_DATABASE_URL
    cost_per_million: float = DEFAULT_COST_PER_MILLION
    embed_batch_size: Optional[int] = None
    log_level: str = "INFO"
    json_logs: bool = False


def _optional(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key, "").strip()
    return value or None


def get_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment (or an explicit mapping).

    Only values that can be checked without knowing the provider are
    validated here; provider-specific requirements such as API keys are
    enforced when the provider is created.
    """
    if env is None:
        env = os.environ

    raw_cost = env.get("EMBEDDING_COST_PER_MILLION", str(DEFAULT_COST_PER_MILLION))
    try:
        cost_per_million = float(raw_cost)
    except ValueError:
        raise ConfigError(f"EMBEDDING_COST_PER_MILLION must be a number, got {raw_cost!r}")
    if cost_per_million <= 0:
        raise ConfigError("EMBEDDING_COST_PER_MILLION must be greater than zero")

    batch_size = None
    raw_batch = _optional(env, "EMBED_BATCH_SIZE")
    if raw_batch is not None:
        try:
            batch_size = int(raw_batch)
        except ValueError:
            raise ConfigError(f"EMBED_BATCH_SIZE must be an integer, got {raw_batch!r}")
        if batch_size < 1:
            raise ConfigError("EMBED_BATCH_SIZE must be a positive integer")

    return Settings(
        embedding_provider=env.get("EMBEDDING_PROVIDER", "openai").strip().lower() or "openai",
        embedding_model=_optional(env, "EMBEDDING_MODEL"),
        openai_api_base=_optional(env, "OPENAI_API_BASE"),
        openai_api_key=_optional(env, "OPENAI_API_KEY"),
        voyage_api_key=_optional(env, "VOYAGE_API_KEY"),
        database_url=env.get("DATABASE_URL", DEFAULT_DATABASE_URL),
        cost_per_million=cost_per_million,
        embed_batch_size=batch_size,
        log_level=env.get("LOG_LEVEL", "INFO"),
        json_logs=env.get("JSON_LOGS", "false").lower() == "true",
    )
