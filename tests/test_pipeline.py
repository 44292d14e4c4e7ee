import asyncio
import json
import time
from datetime import datetime

from config import Configuration
from models import CatalogVenue, RankingSignals, UserLocation
from services.catalog import CatalogError, InMemoryCatalogStore
from services.embeddings import EmbeddingError
from services.pipeline import RecommendationPipeline

CALLER = UserLocation(lat=32.08, lng=34.78)
NOW = datetime(2024, 1, 3, 14, 0)
MESSAGES = [{"role": "user", "content": "sushi for a date"}]


class FakeEmbedder:
    def __init__(self, error=None, delay=0.0):
        self.error = error
        self.delay = delay

    def embed(self, text):
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return [1.0, 0.0, 0.0]


class ScriptedCompletion:
    """Answers extraction calls and selection calls with canned replies."""

    def __init__(self, extraction, selection):
        self.extraction = extraction
        self.selection = selection
        self.temperatures = []

    def complete(self, prompt, *, system=None, temperature=0.3, max_tokens=300):
        self.temperatures.append(temperature)
        return self.extraction if temperature < 0.5 else self.selection


class BrokenCatalog(InMemoryCatalogStore):
    def fetch_by_cities(self, names):
        raise CatalogError("upstream 500")


def _venues(city="Tel Aviv", n=5):
    return [
        CatalogVenue(
            id=f"v{i}",
            name=f"Venue {i}",
            city=city,
            lat=CALLER.lat + 0.001 * i,
            lng=CALLER.lng,
            rating=4.0 + 0.1 * i,
            categories=["Sushi" if i % 2 else "Bar"],
            summary_embedding=[1.0, 0.1 * i, 0.0],
        )
        for i in range(n)
    ]


def _pipeline(venues=None, completion=None, embedder=None, catalog=None, **cfg):
    catalog = catalog or InMemoryCatalogStore(_venues() if venues is None else venues)
    return RecommendationPipeline(Configuration(**cfg), completion, embedder or FakeEmbedder(), catalog)


def _recommend(pipeline, signals=None):
    return asyncio.run(pipeline.recommend(MESSAGES, CALLER, signals=signals, now=NOW))


def test_happy_path_uses_llm_selection():
    completion = ScriptedCompletion(
        extraction=json.dumps({"cuisinePreferences": ["sushi"], "occasion": "date"}),
        selection=json.dumps(
            {
                "selections": [
                    {"id": "v3", "reason": "Best fish in town"},
                    {"id": "v1", "reason": "Cozy and close"},
                    {"id": "v0", "reason": "Great value"},
                ]
            }
        ),
    )
    result = _recommend(_pipeline(completion=completion))

    assert [r.venue.id for r in result.recommendations] == ["v3", "v1", "v0"]
    assert result.recommendations[0].reason == "Best fish in town"
    assert all(70 <= r.match_percentage <= 99 for r in result.recommendations)
    debug = result.debug
    assert debug.error is None
    assert (debug.hard_filter_count, debug.vector_search_count, debug.rerank_count) == (5, 5, 5)
    assert set(debug.stage_timings_ms) == {"extract_context", "hard_filter", "vector_search", "rerank", "select"}
    assert debug.context.cuisine_preferences == ("sushi",)
    assert completion.temperatures == [0.3, 0.7]


def test_without_completion_falls_back_to_ranking():
    result = _recommend(_pipeline())
    assert len(result.recommendations) == 3
    assert len({r.venue.id for r in result.recommendations}) == 3
    assert result.debug.error is None


def test_zero_venues_is_an_empty_result_not_an_error():
    result = _recommend(_pipeline(venues=_venues(city="Haifa")))
    assert result.recommendations == []
    assert result.debug.error is None
    assert (result.debug.hard_filter_count, result.debug.vector_search_count, result.debug.rerank_count) == (0, 0, 0)


def test_fewer_than_three_candidates():
    result = _recommend(_pipeline(venues=_venues(n=2)))
    assert len(result.recommendations) == 2


def test_timeout_is_reported():
    pipeline = _pipeline(embedder=FakeEmbedder(delay=0.3), pipeline_timeout_sec=0.05)
    result = _recommend(pipeline)
    assert result.recommendations == []
    assert result.debug.error == "timeout"


def test_embedding_failure_is_reported():
    result = _recommend(_pipeline(embedder=FakeEmbedder(error=EmbeddingError("service down"))))
    assert result.recommendations == []
    assert result.debug.error == "EmbeddingError: service down"
    assert result.debug.hard_filter_count == 5
    assert result.debug.vector_search_count == 0


def test_catalog_failure_is_reported():
    result = _recommend(_pipeline(catalog=BrokenCatalog(_venues())))
    assert result.recommendations == []
    assert result.debug.error.startswith("CatalogError")


def test_debug_omitted_when_disabled():
    result = _recommend(_pipeline(enable_debug=False))
    assert result.debug is None
    assert len(result.recommendations) == 3


def test_friend_signals_reach_the_ranking():
    signals = RankingSignals(friend_visits={"v0": 5})
    result = _recommend(_pipeline(enable_diversity=False), signals=signals)
    assert result.recommendations[0].venue.id == "v0"


def test_quick_recommendations():
    recs = asyncio.run(_pipeline().recommend_quick("sushi", CALLER, top_k=2))
    assert len(recs) == 2
    assert all(r.reason == "" for r in recs)
    assert recs[0].venue.final_score >= recs[1].venue.final_score


def test_quick_recommendations_swallow_failures():
    pipeline = _pipeline(embedder=FakeEmbedder(error=EmbeddingError("down")))
    assert asyncio.run(pipeline.recommend_quick("sushi", CALLER)) == []
