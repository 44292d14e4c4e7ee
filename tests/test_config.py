import pytest

from config import DEFAULT_REGION_ALIASES, Configuration, RerankWeights


def test_defaults():
    cfg = Configuration()
    assert cfg.vector_search_top_k == 50
    assert cfg.rerank_top_n == 15
    assert cfg.enable_diversity is True
    assert cfg.enable_debug is True
    assert cfg.default_region_aliases == DEFAULT_REGION_ALIASES
    assert cfg.rerank_weights == RerankWeights()
    assert cfg.rerank_weights.semantic == 0.5
    assert cfg.rerank_weights.distance_cap == 0.10


def test_from_env_parses_types(monkeypatch):
    monkeypatch.setenv("VECTOR_SEARCH_TOP_K", "20")
    monkeypatch.setenv("ENABLE_DIVERSITY", "off")
    monkeypatch.setenv("ENABLE_DEBUG", "YES")
    monkeypatch.setenv("DEFAULT_REGION_ALIASES", "Haifa| חיפה |")
    monkeypatch.setenv("RERANK_WEIGHT_KEYWORD", "0.3")
    monkeypatch.setenv("PIPELINE_TIMEOUT_SEC", "12.5")

    cfg = Configuration.from_env()

    assert cfg.vector_search_top_k == 20
    assert cfg.enable_diversity is False
    assert cfg.enable_debug is True
    assert cfg.default_region_aliases == ["Haifa", "חיפה"]
    assert cfg.rerank_weights.keyword == 0.3
    assert cfg.rerank_weights.semantic == 0.5
    assert cfg.pipeline_timeout_sec == 12.5


def test_from_env_embedding_key_falls_back_to_openai(monkeypatch):
    monkeypatch.delenv("EMBEDDING_API_KEY", raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-from-openai")
    assert Configuration.from_env().embedding_api_key == "sk-from-openai"


def test_overrides_win_and_skip_none(monkeypatch):
    monkeypatch.setenv("RERANK_TOP_N", "9")
    cfg = Configuration.from_env({"rerank_top_n": 4, "catalog_table": None})
    assert cfg.rerank_top_n == 4
    assert cfg.catalog_table == "restaurant_cache"


def test_require_guards():
    cfg = Configuration(embedding_api_key=None)
    with pytest.raises(ValueError):
        cfg.require_embeddings()
    with pytest.raises(ValueError):
        cfg.require_catalog()
    Configuration(embedding_provider="local").require_embeddings()
    Configuration(catalog_fixture_path="venues.json").require_catalog()


def test_log_summary_masks_secrets():
    cfg = Configuration(llm_api_key="sk-supersecretvalue", catalog_key="service-role-key-123456")
    summary = cfg.log_summary()
    assert "supersecret" not in summary
    assert "role-key" not in summary
    assert "top_k=50" in summary


def test_ollama_url_sanitized():
    assert Configuration(ollama_base_url="http://host:11434/").sanitized_ollama_url() == "http://host:11434/v1"
    assert Configuration(ollama_base_url="http://host:11434/v1").sanitized_ollama_url() == "http://host:11434/v1"
