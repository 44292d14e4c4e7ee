from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, Field

from utils import mask_secret


DEFAULT_REGION_ALIASES = [
    "Tel Aviv",
    "Tel Aviv-Yafo",
    "Tel Aviv-Jaffa",
    "תל אביב",
    "תל אביב-יפו",
    "Jaffa",
    "יפו",
]


class RerankWeights(BaseModel):
    """Blend used by the reranker. Empirical defaults, not a contract."""

    semantic: float = Field(default=0.5)
    # share of the semantic weight given to the user's taste embedding when one is supplied
    taste_share: float = Field(default=0.3)
    keyword: float = Field(default=0.2)
    rating: float = Field(default=0.15)
    social: float = Field(default=0.15)
    budget: float = Field(default=0.05)
    distance_per_km: float = Field(default=0.01)
    distance_cap: float = Field(default=0.10)
    popularity_review_cap: int = Field(default=1000)


class Configuration(BaseModel):
    # Completion service
    llm_provider: Optional[str] = Field(default=None)
    llm_api_key: Optional[str] = Field(default=None)
    llm_base_url: Optional[str] = Field(default=None)
    llm_model_id: Optional[str] = Field(default=None)
    local_llm: Optional[str] = Field(default=None)
    # native ollama base (without /v1)
    ollama_base_url: str = Field(default="http://localhost:11434")
    llm_timeout: int = Field(default=30)

    # Embedding service
    embedding_provider: str = Field(default="openai")
    embedding_api_key: Optional[str] = Field(default=None)
    embedding_base_url: str = Field(default="https://api.openai.com/v1")
    embedding_model: str = Field(default="text-embedding-3-small")
    embedding_dimensions: Optional[int] = Field(default=1536)
    embedding_timeout: int = Field(default=15)

    # Catalog store (PostgREST / Supabase REST)
    catalog_url: Optional[str] = Field(default=None)
    catalog_key: Optional[str] = Field(default=None)
    catalog_table: str = Field(default="restaurant_cache")
    catalog_timeout: int = Field(default=15)
    catalog_max_rows: int = Field(default=1000)
    catalog_fixture_path: Optional[str] = Field(default=None)

    # Region defaults
    default_region: str = Field(default="Tel Aviv")
    default_region_aliases: list[str] = Field(default_factory=lambda: list(DEFAULT_REGION_ALIASES))
    nearby_default_meters: int = Field(default=2000)
    walking_distance_meters: int = Field(default=800)

    # Pipeline tunables
    vector_search_top_k: int = Field(default=50)
    rerank_top_n: int = Field(default=15)
    enable_diversity: bool = Field(default=True)
    enable_debug: bool = Field(default=True)
    diversity_window: int = Field(default=10)
    pipeline_timeout_sec: float = Field(default=45.0)
    rerank_weights: RerankWeights = Field(default_factory=RerankWeights)

    @classmethod
    def from_env(cls, overrides: Optional[dict[str, Any]] = None) -> "Configuration":
        raw: dict[str, Any] = {}

        env_map = {
            # LLM
            "llm_provider": os.getenv("LLM_PROVIDER"),
            "llm_api_key": os.getenv("LLM_API_KEY"),
            "llm_base_url": os.getenv("LLM_BASE_URL"),
            "llm_model_id": os.getenv("LLM_MODEL_ID"),
            "local_llm": os.getenv("LOCAL_LLM"),
            "ollama_base_url": os.getenv("OLLAMA_BASE_URL"),
            "llm_timeout": os.getenv("LLM_TIMEOUT"),
            # Embeddings
            "embedding_provider": os.getenv("EMBEDDING_PROVIDER"),
            "embedding_api_key": os.getenv("EMBEDDING_API_KEY") or os.getenv("OPENAI_API_KEY"),
            "embedding_base_url": os.getenv("EMBEDDING_BASE_URL"),
            "embedding_model": os.getenv("EMBEDDING_MODEL"),
            "embedding_dimensions": os.getenv("EMBEDDING_DIMENSIONS"),
            "embedding_timeout": os.getenv("EMBEDDING_TIMEOUT"),
            # Catalog
            "catalog_url": os.getenv("CATALOG_URL"),
            "catalog_key": os.getenv("CATALOG_KEY"),
            "catalog_table": os.getenv("CATALOG_TABLE"),
            "catalog_timeout": os.getenv("CATALOG_TIMEOUT"),
            "catalog_max_rows": os.getenv("CATALOG_MAX_ROWS"),
            "catalog_fixture_path": os.getenv("CATALOG_FIXTURE_PATH"),
            # Region
            "default_region": os.getenv("DEFAULT_REGION"),
            "nearby_default_meters": os.getenv("NEARBY_DEFAULT_METERS"),
            "walking_distance_meters": os.getenv("WALKING_DISTANCE_METERS"),
            # Tunables
            "vector_search_top_k": os.getenv("VECTOR_SEARCH_TOP_K"),
            "rerank_top_n": os.getenv("RERANK_TOP_N"),
            "enable_diversity": os.getenv("ENABLE_DIVERSITY"),
            "enable_debug": os.getenv("ENABLE_DEBUG"),
            "diversity_window": os.getenv("DIVERSITY_WINDOW"),
            "pipeline_timeout_sec": os.getenv("PIPELINE_TIMEOUT_SEC"),
        }

        bool_fields = {"enable_diversity", "enable_debug"}

        for k, v in env_map.items():
            if v is None:
                continue
            if k in bool_fields:
                raw[k] = str(v).lower() in {"1", "true", "yes", "on"}
            else:
                raw[k] = v

        aliases = os.getenv("DEFAULT_REGION_ALIASES")
        if aliases:
            raw["default_region_aliases"] = [a.strip() for a in aliases.split("|") if a.strip()]

        weight_env = {
            "semantic": os.getenv("RERANK_WEIGHT_SEMANTIC"),
            "taste_share": os.getenv("RERANK_WEIGHT_TASTE_SHARE"),
            "keyword": os.getenv("RERANK_WEIGHT_KEYWORD"),
            "rating": os.getenv("RERANK_WEIGHT_RATING"),
            "social": os.getenv("RERANK_WEIGHT_SOCIAL"),
            "budget": os.getenv("RERANK_WEIGHT_BUDGET"),
            "distance_per_km": os.getenv("RERANK_DISTANCE_PER_KM"),
            "distance_cap": os.getenv("RERANK_DISTANCE_CAP"),
        }
        weights = {k: v for k, v in weight_env.items() if v is not None}
        if weights:
            raw["rerank_weights"] = weights

        if overrides:
            raw.update({k: v for k, v in overrides.items() if v is not None})

        return cls(**raw)

    def require_catalog(self) -> None:
        if not self.catalog_url and not self.catalog_fixture_path:
            raise ValueError("CATALOG_URL (or CATALOG_FIXTURE_PATH) is required")

    def require_embeddings(self) -> None:
        if self.embedding_provider.lower() == "openai" and not self.embedding_api_key:
            raise ValueError("EMBEDDING_API_KEY is required for the openai embedding provider")

    def llm_enabled(self) -> bool:
        return bool(self.llm_provider or self.llm_base_url or self.local_llm)

    def log_summary(self) -> str:
        return (
            "llm=%s model=%s embedding=%s/%s catalog=%s table=%s top_k=%s top_n=%s diversity=%s "
            "timeout=%ss llm_key=%s embedding_key=%s catalog_key=%s"
            % (
                self.llm_provider or "unset",
                self.llm_model_id or self.local_llm or "default",
                self.embedding_provider,
                self.embedding_model,
                self.catalog_url or self.catalog_fixture_path or "unset",
                self.catalog_table,
                self.vector_search_top_k,
                self.rerank_top_n,
                self.enable_diversity,
                self.pipeline_timeout_sec,
                mask_secret(self.llm_api_key),
                mask_secret(self.embedding_api_key),
                mask_secret(self.catalog_key),
            )
        )

    def sanitized_ollama_url(self) -> str:
        base = (self.ollama_base_url or "http://localhost:11434").rstrip("/")
        if not base.endswith("/v1"):
            base = f"{base}/v1"
        return base
