from __future__ import annotations

from typing import Any, Dict, List, Optional

from google import genai
from google.genai import types as genai_types
from hello_agents import HelloAgentsLLM
from loguru import logger

from config import Configuration
from utils import strip_thinking_tokens


DEFAULT_GEMINI_MODEL = "gemini-2.0-flash"


class CompletionError(RuntimeError):
    pass


class CompletionClient:
    """Stateless text-completion client, safe to share across requests.

    Gemini is used when the provider is ``google``; every other provider goes
    through HelloAgentsLLM (OpenAI-compatible, Ollama included).
    """

    def __init__(self, cfg: Configuration) -> None:
        self.cfg = cfg
        self.provider = (cfg.llm_provider or "").lower()
        self._gemini: Optional[genai.Client] = None
        self._llm: Optional[HelloAgentsLLM] = None
        if self.provider == "google":
            if not cfg.llm_api_key:
                raise ValueError("LLM_API_KEY is required for the google provider")
            self._gemini = genai.Client(api_key=cfg.llm_api_key)
            self.model_id = cfg.llm_model_id or DEFAULT_GEMINI_MODEL
            logger.debug("Completion client using Gemini model: {}", self.model_id)
        else:
            self._llm = self._init_llm(cfg)
            self.model_id = cfg.llm_model_id or cfg.local_llm or "default"

    def _init_llm(self, cfg: Configuration) -> HelloAgentsLLM:
        kwargs: Dict[str, Any] = {"temperature": 0.0, "timeout": cfg.llm_timeout}
        if cfg.llm_model_id or cfg.local_llm:
            kwargs["model"] = cfg.llm_model_id or cfg.local_llm
        if cfg.llm_provider:
            kwargs["provider"] = cfg.llm_provider
        # prefer explicit llm_base_url; for ollama, fallback to sanitized /v1
        if cfg.llm_base_url:
            kwargs["base_url"] = cfg.llm_base_url
        elif (cfg.llm_provider or "").lower() == "ollama":
            kwargs["base_url"] = cfg.sanitized_ollama_url()
        if cfg.llm_api_key:
            kwargs["api_key"] = cfg.llm_api_key
        return HelloAgentsLLM(**kwargs)

    def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 300,
    ) -> str:
        """Return the raw completion text. Raises CompletionError on any upstream failure."""
        try:
            if self._gemini is not None:
                response = self._gemini.models.generate_content(
                    model=self.model_id,
                    contents=prompt,
                    config=genai_types.GenerateContentConfig(
                        system_instruction=system,
                        temperature=temperature,
                        max_output_tokens=max_tokens,
                    ),
                )
                raw = response.text or ""
            else:
                assert self._llm is not None
                messages: List[Dict[str, str]] = []
                if system:
                    messages.append({"role": "system", "content": system})
                messages.append({"role": "user", "content": prompt})
                raw = self._llm.invoke(messages, temperature=temperature, max_tokens=max_tokens) or ""
        except Exception as exc:
            raise CompletionError(f"completion failed ({self.provider or 'default'}): {exc}") from exc
        return strip_thinking_tokens(raw).strip()
