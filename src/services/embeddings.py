from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, List, Optional

import requests
from loguru import logger

from config import Configuration


class EmbeddingError(RuntimeError):
    pass


@dataclass
class _RetryPolicy:
    retries: int = 2
    base_delay: float = 0.5
    budget: Optional[float] = None

    def allows(self, attempt: int, started: float, call_timeout: float) -> bool:
        if attempt > self.retries:
            return False
        if self.budget is None:
            return True
        return time.monotonic() - started + self.base_delay * attempt + call_timeout <= self.budget


class EmbeddingClient:
    """OpenAI-compatible ``/embeddings`` client.

    One request per call; the session is reused so the client can be shared
    across concurrent requests.
    """

    def __init__(self, cfg: Configuration) -> None:
        self.cfg = cfg
        self.base = cfg.embedding_base_url.rstrip("/")
        self.model = cfg.embedding_model
        self.session = requests.Session()

    def _post(self, payload: dict) -> dict:
        url = f"{self.base}/embeddings"
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.cfg.embedding_api_key}",
        }
        policy = _RetryPolicy(budget=self.cfg.pipeline_timeout_sec)
        started = time.monotonic()
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.post(url, headers=headers, json=payload, timeout=self.cfg.embedding_timeout)
            except requests.RequestException as exc:  # network error
                if policy.allows(attempt, started, self.cfg.embedding_timeout):
                    time.sleep(policy.base_delay * attempt)
                    continue
                raise EmbeddingError(f"request error: {exc}")

            if resp.status_code in (429, 500, 502, 503, 504):
                if policy.allows(attempt, started, self.cfg.embedding_timeout):
                    time.sleep(policy.base_delay * attempt)
                    continue
                raise EmbeddingError(f"upstream {resp.status_code}: {resp.text[:300]}")

            if not resp.ok:
                raise EmbeddingError(f"upstream {resp.status_code}: {resp.text[:300]}")

            try:
                return resp.json()
            except ValueError:
                raise EmbeddingError("invalid json response")

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingError("cannot embed empty text")
        payload: dict[str, Any] = {"model": self.model, "input": text}
        if self.cfg.embedding_dimensions:
            payload["dimensions"] = self.cfg.embedding_dimensions
        data = self._post(payload)
        items = data.get("data") or []
        if not items or not isinstance(items[0], dict):
            raise EmbeddingError("embedding response has no data")
        vector = items[0].get("embedding")
        if not isinstance(vector, list) or not vector:
            raise EmbeddingError("embedding response has no vector")
        return [float(x) for x in vector]


class LocalEmbeddingClient:
    """SentenceTransformer-backed embedder; the model loads on first use."""

    def __init__(self, model_name: str) -> None:
        self.model_name = model_name
        self._model: Any = None

    def _ensure_model(self) -> None:
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError as exc:  # pragma: no cover - optional extra
                raise EmbeddingError("sentence-transformers is not installed (pip install .[local])") from exc
            logger.info("Loading local embedding model {}", self.model_name)
            self._model = SentenceTransformer(self.model_name)

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            raise EmbeddingError("cannot embed empty text")
        self._ensure_model()
        try:
            vector = self._model.encode(text, show_progress_bar=False)
        except Exception as exc:
            raise EmbeddingError(f"local embedding failed: {exc}") from exc
        return vector.tolist() if hasattr(vector, "tolist") else list(vector)


def build_embedder(cfg: Configuration, model_name: Optional[str] = None):
    provider = (cfg.embedding_provider or "openai").lower()
    if provider == "local":
        return LocalEmbeddingClient(model_name or cfg.embedding_model)
    cfg.require_embeddings()
    return EmbeddingClient(cfg)
