"""Data models for the restaurant recommendation pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, TypedDict


class ChatMessage(TypedDict):
    role: str  # "user" or "assistant"
    content: str


class Language(str, Enum):
    EN = "en"
    HE = "he"


class LocationPreference(str, Enum):
    NEARBY = "nearby"
    ANYWHERE = "anywhere"
    NAMED_REGION = "named_region"
    SPECIFIC_CITY = "specific_city"


class TimingPreference(str, Enum):
    NOW = "now"
    TONIGHT = "tonight"
    TOMORROW = "tomorrow"
    WEEKEND = "weekend"
    ANYTIME = "anytime"


@dataclass(frozen=True)
class UserLocation:
    lat: float
    lng: float


@dataclass(frozen=True)
class ConversationContext:
    location_preference: LocationPreference = LocationPreference.NAMED_REGION
    specific_city: Optional[str] = None
    max_distance_meters: Optional[int] = None  # only meaningful for NEARBY
    timing: TimingPreference = TimingPreference.ANYTIME
    specific_time: Optional[int] = None  # minutes of day
    specific_day: Optional[int] = None  # 0 = Sunday .. 6 = Saturday
    cuisine_preferences: Tuple[str, ...] = ()
    occasion: str = ""
    vibe: Tuple[str, ...] = ()
    budget: str = ""
    dietary_restrictions: Tuple[str, ...] = ()
    conversation_text: str = ""
    language: Language = Language.EN

    def __post_init__(self) -> None:
        if self.location_preference is LocationPreference.SPECIFIC_CITY and not (self.specific_city or "").strip():
            raise ValueError("specific_city is required when location_preference is specific_city")
        if self.specific_day is not None and not 0 <= self.specific_day <= 6:
            raise ValueError(f"specific_day must be within 0-6, got {self.specific_day}")

    @classmethod
    def empty(cls) -> "ConversationContext":
        return cls(location_preference=LocationPreference.ANYWHERE, timing=TimingPreference.ANYTIME)

    def has_preferences(self) -> bool:
        return bool(
            self.cuisine_preferences or self.occasion or self.vibe or self.budget or self.dietary_restrictions
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["location_preference"] = self.location_preference.value
        data["timing"] = self.timing.value
        data["language"] = self.language.value
        for key in ("cuisine_preferences", "vibe", "dietary_restrictions"):
            data[key] = list(data[key])
        return data


@dataclass
class TimePoint:
    day: int  # 0 = Sunday .. 6 = Saturday
    time: str  # "HHMM" or "HH:MM"


@dataclass
class OpeningPeriod:
    open: TimePoint
    close: Optional[TimePoint] = None  # missing close means open around the clock


@dataclass
class OpeningHours:
    periods: List[OpeningPeriod] = field(default_factory=list)
    weekday_text: List[str] = field(default_factory=list)  # Monday first

    def is_empty(self) -> bool:
        return not self.periods and not self.weekday_text


@dataclass
class PhotoReference:
    photo_reference: str
    width: int = 0
    height: int = 0


@dataclass
class CatalogVenue:
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
    price_level: Optional[int] = None  # 1-4
    categories: List[str] = field(default_factory=list)
    opening_hours: Optional[OpeningHours] = None
    photos: List[PhotoReference] = field(default_factory=list)
    summary: Optional[str] = None
    summary_embedding: Optional[List[float]] = None
    reviews_text: Optional[str] = None
    reviews_embedding: Optional[List[float]] = None

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None

    @property
    def primary_category(self) -> str:
        return self.categories[0] if self.categories else "Other"


def _base_values(venue: CatalogVenue, base: type) -> Dict[str, Any]:
    return {f.name: getattr(venue, f.name) for f in fields(base)}


@dataclass
class ScoredVenue(CatalogVenue):
    vector_score: float = 0.0
    summary_score: Optional[float] = None
    reviews_score: Optional[float] = None
    distance_meters: Optional[float] = None

    @classmethod
    def from_venue(cls, venue: CatalogVenue, **scores: Any) -> "ScoredVenue":
        return cls(**_base_values(venue, CatalogVenue), **scores)


@dataclass
class RankedVenue(ScoredVenue):
    final_score: float = 0.0
    rating_boost: float = 0.0
    popularity_boost: float = 0.0
    distance_penalty: float = 0.0
    keyword_bonus: float = 0.0
    debug_scores: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_scored(cls, scored: ScoredVenue, **scores: Any) -> "RankedVenue":
        return cls(**_base_values(scored, ScoredVenue), **scores)


@dataclass
class Recommendation:
    venue: RankedVenue
    reason: str
    match_percentage: int  # display only, 70-99


@dataclass
class RankingSignals:
    """Optional per-user signals supplied by the profile and social-graph stores."""

    taste_embedding: Optional[List[float]] = None
    friend_visits: Dict[str, int] = field(default_factory=dict)  # venue id -> friends who visited


@dataclass
class PipelineDebug:
    context: ConversationContext
    hard_filter_count: int = 0
    vector_search_count: int = 0
    rerank_count: int = 0
    processing_time_ms: int = 0
    stage_timings_ms: Dict[str, int] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "context": self.context.to_dict(),
            "hard_filter_count": self.hard_filter_count,
            "vector_search_count": self.vector_search_count,
            "rerank_count": self.rerank_count,
            "processing_time_ms": self.processing_time_ms,
            "stage_timings_ms": dict(self.stage_timings_ms),
            "error": self.error,
        }


@dataclass
class PipelineResult:
    recommendations: List[Recommendation] = field(default_factory=list)
    debug: Optional[PipelineDebug] = None
