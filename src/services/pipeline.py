from __future__ import annotations

import asyncio
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from loguru import logger

from config import Configuration
from models import (
    ChatMessage,
    ConversationContext,
    LocationPreference,
    PipelineDebug,
    PipelineResult,
    RankingSignals,
    Recommendation,
    TimingPreference,
    UserLocation,
)
from services.catalog import CatalogStore, build_catalog
from services.context_extractor import detect_language, extract_context
from services.embeddings import build_embedder
from services.hard_filter import apply_hard_filters
from services.llm import CompletionClient
from services.ranking import enhance_diversity, rerank_venues
from services.selector import build_recommendations, match_percentage, select_with_llm
from services.vector_search import perform_vector_search


@contextmanager
def _stage(timings: Dict[str, int], name: str) -> Iterator[None]:
    started = time.perf_counter()
    try:
        yield
    finally:
        timings[name] = int((time.perf_counter() - started) * 1000)


def _error_marker(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    return f"{type(exc).__name__}: {exc}"


class RecommendationPipeline:
    """Conversation + location -> three recommendations.

    Stages run strictly in order; each one's output is the next one's whole
    input. Collaborators are injected so one instance can serve concurrent
    requests.
    """

    def __init__(
        self,
        cfg: Configuration,
        completion: Optional[CompletionClient],
        embedder,
        catalog: CatalogStore,
    ) -> None:
        self.cfg = cfg
        self.completion = completion
        self.embedder = embedder
        self.catalog = catalog

    @classmethod
    def from_config(cls, cfg: Configuration) -> "RecommendationPipeline":
        cfg.require_catalog()
        completion = CompletionClient(cfg) if cfg.llm_enabled() else None
        if completion is None:
            logger.warning("No completion provider configured; selection will use ranked fallbacks")
        return cls(cfg, completion, build_embedder(cfg), build_catalog(cfg))

    async def recommend(
        self,
        messages: List[ChatMessage],
        user_location: Optional[UserLocation],
        signals: Optional[RankingSignals] = None,
        now: Optional[datetime] = None,
    ) -> PipelineResult:
        """Never raises for upstream failures: they become an empty result with ``debug.error`` set."""
        started = time.perf_counter()
        debug = PipelineDebug(context=ConversationContext.empty())
        recommendations: List[Recommendation] = []
        try:
            recommendations = await asyncio.wait_for(
                self._run(messages, user_location, signals, now or datetime.now(), debug),
                timeout=self.cfg.pipeline_timeout_sec,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("Pipeline timed out after {}s", self.cfg.pipeline_timeout_sec)
            debug.error = _error_marker(exc)
        except Exception as exc:
            logger.exception("Pipeline failed: {}", exc)
            debug.error = _error_marker(exc)
            recommendations = []

        debug.processing_time_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Pipeline done in {} ms: filtered={} vector={} ranked={} recommendations={} error={}",
            debug.processing_time_ms,
            debug.hard_filter_count,
            debug.vector_search_count,
            debug.rerank_count,
            len(recommendations),
            debug.error,
        )
        return PipelineResult(recommendations=recommendations, debug=debug if self.cfg.enable_debug else None)

    async def _run(
        self,
        messages: List[ChatMessage],
        user_location: Optional[UserLocation],
        signals: Optional[RankingSignals],
        now: datetime,
        debug: PipelineDebug,
    ) -> List[Recommendation]:
        timings = debug.stage_timings_ms

        with _stage(timings, "extract_context"):
            context = await extract_context(messages, self.completion, self.cfg, now=now)
        debug.context = context

        with _stage(timings, "hard_filter"):
            filtered = await apply_hard_filters(context, user_location, self.catalog, self.cfg, now=now)
        debug.hard_filter_count = len(filtered)
        if not filtered:
            logger.info("No venues survived the hard filter")
            return []

        with _stage(timings, "vector_search"):
            scored = await perform_vector_search(
                context, filtered, self.embedder, self.cfg.vector_search_top_k, user_location=user_location
            )
        debug.vector_search_count = len(scored)
        if not scored:
            return []

        with _stage(timings, "rerank"):
            ranked = rerank_venues(
                scored, context, user_location, self.cfg.rerank_top_n, self.cfg.rerank_weights, signals
            )
            if self.cfg.enable_diversity:
                ranked = enhance_diversity(ranked, self.cfg.diversity_window)
        debug.rerank_count = len(ranked)

        with _stage(timings, "select"):
            selections = await select_with_llm(ranked, context, messages, self.completion)
            recommendations = build_recommendations(selections, ranked, context.language)

        for rec in recommendations:
            logger.debug("Recommended {} ({}%): {}", rec.venue.name, rec.match_percentage, rec.reason)
        return recommendations

    async def recommend_quick(
        self,
        search_text: str,
        user_location: Optional[UserLocation],
        top_k: int = 10,
        signals: Optional[RankingSignals] = None,
    ) -> List[Recommendation]:
        """Default-region search without completion calls; reasons are left empty."""
        context = ConversationContext(
            location_preference=LocationPreference.NAMED_REGION,
            timing=TimingPreference.ANYTIME,
            conversation_text=search_text,
            language=detect_language(search_text),
        )

        async def run() -> List[Recommendation]:
            filtered = await apply_hard_filters(context, user_location, self.catalog, self.cfg)
            scored = await perform_vector_search(
                context, filtered, self.embedder, top_k * 2, user_location=user_location
            )
            ranked = rerank_venues(scored, context, user_location, top_k, self.cfg.rerank_weights, signals)
            return [Recommendation(venue=r, reason="", match_percentage=match_percentage(r.final_score)) for r in ranked]

        try:
            return await asyncio.wait_for(run(), timeout=self.cfg.pipeline_timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("Quick search timed out after {}s", self.cfg.pipeline_timeout_sec)
            return []
        except Exception as exc:
            logger.exception("Quick search failed: {}", exc)
            return []
