"""
Configuration
--------------
Typed configuration for the whole engine.

Resolution order (later wins):
  1. Defaults baked into the pydantic models below
  2. YAML file (config/config.yaml by default, optional)
  3. RAG_CONFIG_OVERRIDES - a JSON object deep-merged on top
  4. Individual RAG_* environment toggles (RAG_RERANK_ENABLED, ...)

Credentials are never read from YAML; they come from the environment
(loaded from .env via python-dotenv).
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import orjson
import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from memrag.errors import ConfigurationError

DEFAULT_CONFIG_PATH = "config/config.yaml"


# --- Sections -----------------------------------------------------------------

class FeatureConfig(BaseModel):
    rerank_enabled: bool = True
    rerank_provider: str = "cohere"          # cohere | pinecone | pinecone-cohere | pinecone-bge | none
    hybrid_search_enabled: bool = True
    query_expansion_enabled: bool = True
    recency_weighting_enabled: bool = True
    intent_detection_enabled: bool = True
    auto_tagging_enabled: bool = True
    llm_expansion_enabled: bool = False
    query_decomposition_enabled: bool = True
    llm_decomposition_enabled: bool = False
    default_recency_weight: str = "normal"


class RerankConfig(BaseModel):
    cohere_model: str = "rerank-v3.5"
    pinecone_model: str = "pinecone-rerank-v0"
    top_n: int = 10
    timeout_s: float = 5.0
    fallback_enabled: bool = True
    score_weight: float = 0.7
    fallback_chain: list[str] = Field(
        default_factory=lambda: ["cohere", "pinecone", "pinecone-bge", "none"]
    )
    breaker_threshold: int = 5
    breaker_reset_s: float = 60.0


class HybridConfig(BaseModel):
    default_alpha: float = 0.5
    auto_tune_enabled: bool = True


class SearchConfig(BaseModel):
    default_limit: int = 10
    max_limit: int = 50
    fetch_multiplier_for_rerank: int = 5


class EmbeddingConfig(BaseModel):
    model: str = "text-embedding-3-large"
    dimensions: int = 3072
    max_input_chars: int = 8000
    batch_size: int = 100
    sparse_model: str = "pinecone-sparse-english-v0"


class RateLimitSettings(BaseModel):
    requests_per_minute: int
    tokens_per_minute: Optional[int] = None
    requests_per_day: Optional[int] = None
    max_wait_s: float = 60.0


def _default_rate_limits() -> dict[str, RateLimitSettings]:
    return {
        "openai": RateLimitSettings(requests_per_minute=3000, tokens_per_minute=1_000_000),
        "cohere": RateLimitSettings(requests_per_minute=100),
        "pinecone": RateLimitSettings(requests_per_minute=100),
        "anthropic": RateLimitSettings(requests_per_minute=50, tokens_per_minute=40_000),
    }


class IngestionConfig(BaseModel):
    batch_size: int = 10
    max_concurrent: int = 2
    retry_attempts: int = 3
    retry_delay_s: float = 2.0
    timeout_s: float = 60.0
    deduplication_enabled: bool = True
    normalize_whitespace: bool = True
    max_retries_for_dlq: int = 3
    stale_processing_minutes: int = 30
    default_project: str = "default"


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_file: Optional[str] = "logs/memrag.log"


class IndexConfig(BaseModel):
    backend: str = "faiss"                   # faiss | pinecone
    local_dir: str = "data/index"


class ProviderCredentials(BaseModel):
    openai_api_key: Optional[str] = None
    pinecone_api_key: Optional[str] = None
    pinecone_index_host: Optional[str] = None
    cohere_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "ProviderCredentials":
        env = os.environ if environ is None else environ
        return cls(
            openai_api_key=env.get("OPENAI_API_KEY"),
            pinecone_api_key=env.get("PINECONE_API_KEY"),
            pinecone_index_host=env.get("PINECONE_INDEX_HOST"),
            cohere_api_key=env.get("COHERE_API_KEY"),
            anthropic_api_key=env.get("ANTHROPIC_API_KEY"),
        )

    def require(self, name: str) -> str:
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(f"Missing credential: {name.upper()} is not set")
        return value


class RAGConfig(BaseModel):
    features: FeatureConfig = Field(default_factory=FeatureConfig)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
    hybrid: HybridConfig = Field(default_factory=HybridConfig)
    search: SearchConfig = Field(default_factory=SearchConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    rate_limits: dict[str, RateLimitSettings] = Field(default_factory=_default_rate_limits)
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
    credentials: ProviderCredentials = Field(default_factory=ProviderCredentials, exclude=True)


# --- Loading ------------------------------------------------------------------

_BOOL_ENV_TOGGLES: dict[str, tuple[str, str]] = {
    "RAG_RERANK_ENABLED": ("features", "rerank_enabled"),
    "RAG_HYBRID_SEARCH_ENABLED": ("features", "hybrid_search_enabled"),
    "RAG_QUERY_EXPANSION_ENABLED": ("features", "query_expansion_enabled"),
    "RAG_RECENCY_ENABLED": ("features", "recency_weighting_enabled"),
    "RAG_LLM_EXPANSION_ENABLED": ("features", "llm_expansion_enabled"),
    "RAG_QUERY_DECOMPOSITION_ENABLED": ("features", "query_decomposition_enabled"),
}


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into a copy of base. Override wins on conflicts."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _parse_bool(name: str, raw: str) -> bool:
    lowered = raw.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {raw!r}")


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}

    raw_json = environ.get("RAG_CONFIG_OVERRIDES")
    if raw_json:
        try:
            parsed = orjson.loads(raw_json)
        except orjson.JSONDecodeError as exc:
            raise ConfigurationError(f"RAG_CONFIG_OVERRIDES is not valid JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ConfigurationError("RAG_CONFIG_OVERRIDES must be a JSON object")
        overrides = deep_merge(overrides, parsed)

    for env_name, (section, key) in _BOOL_ENV_TOGGLES.items():
        if env_name in environ:
            value = _parse_bool(env_name, environ[env_name])
            overrides = deep_merge(overrides, {section: {key: value}})

    if environ.get("RAG_RERANK_PROVIDER"):
        overrides = deep_merge(overrides, {"features": {"rerank_provider": environ["RAG_RERANK_PROVIDER"]}})
    if environ.get("RAG_LOG_LEVEL"):
        overrides = deep_merge(overrides, {"observability": {"log_level": environ["RAG_LOG_LEVEL"].upper()}})

    return overrides


def load_config(
    path: str | Path | None = DEFAULT_CONFIG_PATH,
    environ: Optional[dict[str, str]] = None,
) -> RAGConfig:
    """
    Build the effective RAGConfig.

    Args:
        path:    YAML file to layer over the defaults. Missing files are skipped.
        environ: Environment mapping (defaults to os.environ after load_dotenv()).

    Raises:
        ConfigurationError: on unreadable YAML, bad overrides, or invalid values.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    data: dict[str, Any] = {}
    if path is not None and Path(path).exists():
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Cannot parse config file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        logger.debug(f"[Config] Loaded {path}")

    data = deep_merge(data, _env_overrides(environ))
    data.pop("credentials", None)

    try:
        config = RAGConfig(**data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    config.credentials = ProviderCredentials.from_env(environ)
    return config
