from __future__ import annotations

from dataclasses import asdict
from typing import Any, Dict, List, Literal, Optional

import requests
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field, model_validator

from config import Configuration
from models import RankedVenue, RankingSignals, Recommendation, UserLocation
from services.pipeline import RecommendationPipeline

load_dotenv()

app = FastAPI(title="Restaurant Recommender")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_pipeline(request: Request) -> RecommendationPipeline:
    """Build the pipeline once per process and share it across requests."""
    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        try:
            cfg = Configuration.from_env()
            pipeline = RecommendationPipeline.from_config(cfg)
        except ValueError as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        logger.info("Pipeline ready: {}", cfg.log_summary())
        request.app.state.pipeline = pipeline
    return pipeline


class ChatMessagePayload(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class _LocationFields(BaseModel):
    user_lat: Optional[float] = Field(None, ge=-90, le=90, description="Caller latitude")
    user_lng: Optional[float] = Field(None, ge=-180, le=180, description="Caller longitude")

    @model_validator(mode="after")
    def both_or_neither(self):
        if (self.user_lat is None) != (self.user_lng is None):
            raise ValueError("user_lat and user_lng must be provided together")
        return self

    def user_location(self) -> Optional[UserLocation]:
        if self.user_lat is None or self.user_lng is None:
            return None
        return UserLocation(lat=self.user_lat, lng=self.user_lng)


class RecommendRequest(_LocationFields):
    messages: List[ChatMessagePayload] = Field(..., min_length=1, description="Conversation, oldest first")
    include_debug: bool = Field(False, description="Attach per-stage counts and timings")
    friend_visits: Dict[str, int] = Field(default_factory=dict, description="Venue id -> friends who visited")
    taste_embedding: Optional[List[float]] = Field(None, description="Caller taste-profile embedding")

    def signals(self) -> Optional[RankingSignals]:
        if not self.friend_visits and not self.taste_embedding:
            return None
        return RankingSignals(taste_embedding=self.taste_embedding, friend_visits=dict(self.friend_visits))


class QuickRecommendRequest(_LocationFields):
    query: str = Field(..., min_length=1, description="Free-text search")
    top_k: int = Field(10, ge=1, le=50)


class VenuePayload(BaseModel):
    id: str
    name: str
    address: Optional[str] = None
    city: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    price_level: Optional[int] = None
    categories: List[str] = []
    opening_hours: Optional[Dict[str, Any]] = None
    photos: List[Dict[str, Any]] = []
    summary: Optional[str] = None
    distance_meters: Optional[float] = None
    vector_score: float = 0.0
    final_score: float = 0.0
    debug_scores: Dict[str, float] = {}


class RecommendationPayload(BaseModel):
    venue: VenuePayload
    reason: str
    match_percentage: int


class RecommendResponse(BaseModel):
    recommendations: List[RecommendationPayload]
    debug: Optional[Dict[str, Any]] = None


def to_venue_payload(venue: RankedVenue) -> VenuePayload:
    # embeddings and review text stay server-side
    return VenuePayload(
        id=venue.id,
        name=venue.name,
        address=venue.address,
        city=venue.city,
        lat=venue.lat,
        lng=venue.lng,
        phone=venue.phone,
        website=venue.website,
        rating=venue.rating,
        review_count=venue.review_count,
        price_level=venue.price_level,
        categories=list(venue.categories),
        opening_hours=asdict(venue.opening_hours) if venue.opening_hours else None,
        photos=[asdict(p) for p in venue.photos],
        summary=venue.summary,
        distance_meters=round(venue.distance_meters, 1) if venue.distance_meters is not None else None,
        vector_score=round(venue.vector_score, 4),
        final_score=round(venue.final_score, 4),
        debug_scores=dict(venue.debug_scores),
    )


def to_payload(rec: Recommendation) -> RecommendationPayload:
    return RecommendationPayload(
        venue=to_venue_payload(rec.venue),
        reason=rec.reason,
        match_percentage=rec.match_percentage,
    )


@app.get("/healthz")
def healthz() -> dict:
    cfg = Configuration.from_env()
    logger.info("cfg: {}", cfg.log_summary())
    return {"status": "ok"}


@app.get("/health/llm")
def health_llm() -> dict:
    cfg = Configuration.from_env()
    provider = (cfg.llm_provider or "").lower()
    ok = False
    detail = None
    try:
        if provider == "ollama":
            r = requests.get(f"{cfg.ollama_base_url.rstrip('/')}/api/tags", timeout=5)
            ok = r.ok
            if r.ok:
                detail = r.json().get("models", [])
        elif provider == "google":
            ok = bool(cfg.llm_api_key)
            detail = "api key configured" if ok else "LLM_API_KEY missing"
        elif cfg.llm_base_url:
            # OpenAI-compatible
            r = requests.get(f"{cfg.llm_base_url.rstrip('/')}/models", timeout=5)
            ok = r.ok
    except requests.RequestException as exc:
        ok = False
        detail = str(exc)
    return {"ok": ok, "provider": provider or "unset", "detail": detail}


@app.post("/recommend", response_model=RecommendResponse)
async def recommend(
    req: RecommendRequest,
    pipeline: RecommendationPipeline = Depends(get_pipeline),
) -> RecommendResponse:
    messages = [{"role": m.role, "content": m.content} for m in req.messages]
    result = await pipeline.recommend(messages, req.user_location(), signals=req.signals())
    debug = result.debug.to_dict() if (req.include_debug and result.debug is not None) else None
    return RecommendResponse(recommendations=[to_payload(r) for r in result.recommendations], debug=debug)


@app.post("/recommend/quick", response_model=RecommendResponse)
async def recommend_quick(
    req: QuickRecommendRequest,
    pipeline: RecommendationPipeline = Depends(get_pipeline),
) -> RecommendResponse:
    recs = await pipeline.recommend_quick(req.query, req.user_location(), top_k=req.top_k)
    return RecommendResponse(recommendations=[to_payload(r) for r in recs])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8010, reload=True)
