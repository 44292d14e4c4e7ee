from __future__ import annotations

import math
from typing import Dict, List, Optional, Tuple

from loguru import logger

from config import RerankWeights
from models import ConversationContext, RankedVenue, RankingSignals, ScoredVenue, UserLocation
from services.vector_search import normalized_similarity
from utils import haversine_meters

# occasion triggers -> words that suggest a venue suits it
OCCASION_KEYWORDS: Dict[str, Tuple[Tuple[str, ...], Tuple[str, ...]]] = {
    "date": (
        ("date", "romantic", "anniversary", "דייט", "רומנטי", "יום נישואין"),
        ("romantic", "cozy", "wine", "intimate", "candle", "רומנטי", "אינטימי", "יין", "נעים"),
    ),
    "friends": (
        ("friends", "group", "party", "חברים", "חבר'ה", "מסיבה"),
        ("bar", "lively", "sharing", "beer", "cocktail", "בר", "שוקק", "בירה", "קוקטייל"),
    ),
    "family": (
        ("family", "kids", "children", "משפחה", "ילדים"),
        ("family", "kids", "spacious", "casual", "משפחתי", "ילדים", "מרווח"),
    ),
    "business": (
        ("business", "meeting", "work", "עסקים", "פגישה", "עבודה"),
        ("quiet", "business", "elegant", "professional", "שקט", "עסקי", "אלגנטי"),
    ),
    "quick": (
        ("quick", "fast", "solo", "lunch break", "מהיר", "קל", "לבד"),
        ("fast", "quick", "takeaway", "counter", "street food", "מהיר", "טייק אווי", "אוכל רחוב"),
    ),
}

# budget words -> expected price tier
BUDGET_TERMS: Tuple[Tuple[Tuple[str, ...], int], ...] = (
    (("cheap", "budget", "inexpensive", "זול", "תקציב"), 1),
    (("moderate", "mid", "reasonable", "בינוני", "סביר"), 2),
    (("expensive", "upscale", "fancy", "luxury", "יקר", "יוקרתי"), 3),
)

DEFAULT_PRICE_TIER = 2
FRIEND_VISITS_FOR_FULL_BOOST = 5


def _venue_text(venue: ScoredVenue) -> str:
    return " ".join([venue.name or "", venue.summary or "", " ".join(venue.categories)]).lower()


def occasion_keywords(occasion: str) -> Tuple[str, ...]:
    lower = (occasion or "").lower()
    if not lower:
        return ()
    words: list[str] = []
    for triggers, keywords in OCCASION_KEYWORDS.values():
        if any(t in lower for t in triggers):
            words.extend(keywords)
    return tuple(words)


def keyword_match(venue: ScoredVenue, context: ConversationContext) -> float:
    """1.0 for an occasion keyword hit, 0.5 for a vibe or cuisine hit, else 0."""
    text = _venue_text(venue)
    if any(k in text for k in occasion_keywords(context.occasion)):
        return 1.0
    terms = [t.lower() for t in (*context.vibe, *context.cuisine_preferences) if t and t.strip()]
    if any(t in text for t in terms):
        return 0.5
    return 0.0


def expected_price_tier(budget: str) -> Optional[int]:
    lower = (budget or "").lower()
    if not lower:
        return None
    for words, tier in BUDGET_TERMS:
        if any(w in lower for w in words):
            return tier
    return None


def budget_alignment(venue: ScoredVenue, context: ConversationContext, weight: float) -> float:
    expected = expected_price_tier(context.budget)
    if expected is None:
        return 0.0
    tier = venue.price_level or DEFAULT_PRICE_TIER
    gap = abs(tier - expected)
    if gap == 0:
        return weight
    if gap == 1:
        return weight / 2
    return -weight


def popularity_score(review_count: Optional[int], cap: int) -> float:
    if not review_count or review_count <= 0:
        return 0.0
    return min(1.0, math.log10(1 + review_count) / math.log10(1 + max(cap, 1)))


def friend_score(venue_id: str, signals: Optional[RankingSignals]) -> float:
    if signals is None:
        return 0.0
    visits = signals.friend_visits.get(venue_id, 0)
    return min(max(visits, 0) / FRIEND_VISITS_FOR_FULL_BOOST, 1.0)


def distance_penalty(distance_meters: Optional[float], weights: RerankWeights) -> float:
    if distance_meters is None:
        return 0.0
    return min(distance_meters / 1000.0 * weights.distance_per_km, weights.distance_cap)


def _distance_for(venue: ScoredVenue, user_location: Optional[UserLocation]) -> Optional[float]:
    if venue.distance_meters is not None:
        return venue.distance_meters
    if user_location is None or not venue.has_coordinates:
        return None
    return haversine_meters(user_location.lat, user_location.lng, venue.lat, venue.lng)  # type: ignore[arg-type]


def score_venue(
    venue: ScoredVenue,
    context: ConversationContext,
    user_location: Optional[UserLocation],
    weights: RerankWeights,
    signals: Optional[RankingSignals] = None,
) -> RankedVenue:
    semantic = venue.vector_score
    taste = None
    if signals is not None and signals.taste_embedding and venue.summary_embedding:
        taste = normalized_similarity(signals.taste_embedding, venue.summary_embedding)
        if taste is not None:
            semantic = (1 - weights.taste_share) * venue.vector_score + weights.taste_share * taste
    semantic_part = weights.semantic * semantic

    keyword_bonus = weights.keyword * keyword_match(venue, context)
    rating_boost = weights.rating * min(max(venue.rating or 0.0, 0.0), 5.0) / 5.0
    social = max(
        popularity_score(venue.review_count, weights.popularity_review_cap),
        friend_score(venue.id, signals),
    )
    popularity_boost = weights.social * social
    budget = budget_alignment(venue, context, weights.budget)
    distance = _distance_for(venue, user_location)
    penalty = distance_penalty(distance, weights)

    final = semantic_part + keyword_bonus + rating_boost + popularity_boost + budget - penalty
    debug = {
        "semantic": round(semantic_part, 4),
        "keyword": round(keyword_bonus, 4),
        "rating": round(rating_boost, 4),
        "social": round(popularity_boost, 4),
        "budget": round(budget, 4),
        "distance": round(penalty, 4),
    }
    if taste is not None:
        debug["taste"] = round(taste, 4)

    ranked = RankedVenue.from_scored(
        venue,
        final_score=final,
        rating_boost=rating_boost,
        popularity_boost=popularity_boost,
        distance_penalty=penalty,
        keyword_bonus=keyword_bonus,
        debug_scores=debug,
    )
    ranked.distance_meters = distance
    return ranked


def rerank_venues(
    scored: List[ScoredVenue],
    context: ConversationContext,
    user_location: Optional[UserLocation],
    top_n: int = 15,
    weights: Optional[RerankWeights] = None,
    signals: Optional[RankingSignals] = None,
) -> List[RankedVenue]:
    """Recompute final scores and return the best ``top_n``, sorted descending."""
    weights = weights or RerankWeights()
    ranked = [score_venue(v, context, user_location, weights, signals) for v in scored]
    ranked.sort(key=lambda r: r.final_score, reverse=True)
    top = ranked[: max(top_n, 0)]
    for r in top[:5]:
        logger.debug("Rerank {:.3f} {} {}", r.final_score, r.name, r.debug_scores)
    logger.info("Rerank: {} -> {}", len(scored), len(top))
    return top


def enhance_diversity(ranked: List[RankedVenue], window: int = 10) -> List[RankedVenue]:
    """Reorder the head so neighbours differ in primary category when possible.

    Never drops a venue; the tail after ``window`` keeps its order.
    """
    if window <= 1 or len(ranked) <= 2:
        return list(ranked)
    head = list(ranked[:window])
    tail = list(ranked[window:])
    ordered: list[RankedVenue] = []
    while head:
        last = ordered[-1].primary_category.casefold() if ordered else None
        pick = next((i for i, v in enumerate(head) if v.primary_category.casefold() != last), 0)
        ordered.append(head.pop(pick))
    return ordered + tail
