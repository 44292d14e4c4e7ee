from __future__ import annotations

import asyncio
from typing import List, Optional, Sequence

import numpy as np
from loguru import logger

from models import CatalogVenue, ConversationContext, ScoredVenue, UserLocation
from services.embeddings import EmbeddingError
from utils import clamp, haversine_meters

SUMMARY_WEIGHT = 0.7
REVIEWS_WEIGHT = 0.3
NEUTRAL_SCORE = 0.5


def build_search_text(context: ConversationContext) -> str:
    """Search string from the structured slots, or the raw transcript when none are filled."""
    if not context.has_preferences():
        return context.conversation_text
    parts: list[str] = []
    if context.cuisine_preferences:
        parts.append(f"Looking for: {', '.join(context.cuisine_preferences)}")
    if context.occasion:
        parts.append(f"Occasion: {context.occasion}")
    if context.vibe:
        parts.append(f"Atmosphere: {', '.join(context.vibe)}")
    if context.budget:
        parts.append(f"Budget: {context.budget}")
    if context.dietary_restrictions:
        parts.append(f"Dietary: {', '.join(context.dietary_restrictions)}")
    return ". ".join(parts) + "."


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Raw cosine in [-1, 1]; None when the vectors can't be compared."""
    if a is None or b is None or len(a) != len(b) or len(a) == 0:
        return None
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0 or not np.isfinite(na) or not np.isfinite(nb):
        return None
    cos = float(np.dot(va, vb) / (na * nb))
    return clamp(cos, -1.0, 1.0)


def normalized_similarity(a: Sequence[float], b: Sequence[float]) -> Optional[float]:
    """Cosine mapped onto [0, 1] via (cos + 1) / 2."""
    cos = cosine_similarity(a, b)
    if cos is None:
        return None
    return (cos + 1.0) / 2.0


def combine_scores(summary: Optional[float], reviews: Optional[float]) -> float:
    if summary is not None and reviews is not None:
        return SUMMARY_WEIGHT * summary + REVIEWS_WEIGHT * reviews
    if summary is not None:
        return summary
    if reviews is not None:
        return reviews
    return NEUTRAL_SCORE


def score_venues(
    query_vector: Optional[Sequence[float]],
    venues: List[CatalogVenue],
    user_location: Optional[UserLocation] = None,
) -> List[ScoredVenue]:
    scored: list[ScoredVenue] = []
    for venue in venues:
        summary = reviews = None
        if query_vector is not None:
            if venue.summary_embedding:
                summary = normalized_similarity(query_vector, venue.summary_embedding)
            if venue.reviews_embedding:
                reviews = normalized_similarity(query_vector, venue.reviews_embedding)
        distance = None
        if user_location is not None and venue.has_coordinates:
            distance = haversine_meters(user_location.lat, user_location.lng, venue.lat, venue.lng)  # type: ignore[arg-type]
        scored.append(
            ScoredVenue.from_venue(
                venue,
                vector_score=combine_scores(summary, reviews),
                summary_score=summary,
                reviews_score=reviews,
                distance_meters=distance,
            )
        )
    return scored


async def embed_query(embedder, text: str) -> List[float]:
    vector = await asyncio.to_thread(embedder.embed, text)
    if not vector:
        raise EmbeddingError("embedding service returned an empty vector")
    return vector


async def perform_vector_search(
    context: ConversationContext,
    venues: List[CatalogVenue],
    embedder,
    top_k: int = 50,
    user_location: Optional[UserLocation] = None,
    query_vector: Optional[Sequence[float]] = None,
) -> List[ScoredVenue]:
    """Score ``venues`` against the context embedding and keep the best ``top_k``.

    Venues without embeddings stay in the pool at a neutral score. Embedding
    service failures propagate as EmbeddingError.
    """
    if not venues:
        return []

    if query_vector is None and any(v.summary_embedding or v.reviews_embedding for v in venues):
        search_text = build_search_text(context)
        if search_text.strip():
            logger.debug("Search text: {}", search_text[:200])
            query_vector = await embed_query(embedder, search_text)
        else:
            logger.warning("Empty search text; scoring all venues neutrally")

    scored = score_venues(query_vector, venues, user_location)
    scored.sort(key=lambda s: s.vector_score, reverse=True)
    top = scored[: max(top_k, 0)]
    logger.info(
        "Vector search: {} venues scored, kept {} (best {:.3f})",
        len(scored),
        len(top),
        top[0].vector_score if top else 0.0,
    )
    return top
