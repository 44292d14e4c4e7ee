from __future__ import annotations

import asyncio
import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from config import Configuration
from models import ChatMessage, ConversationContext, Language, LocationPreference, TimingPreference
from services.llm import CompletionClient, CompletionError
from utils import extract_json_object

HEBREW_CHAR_RE = re.compile(r"[\u0590-\u05FF]")
HEBREW_THRESHOLD = 3

# Location buckets, checked in this order after the city gazetteer.
LOCATION_PHRASES: Dict[Language, Dict[LocationPreference, Tuple[str, ...]]] = {
    Language.EN: {
        LocationPreference.NEARBY: (
            "nearby",
            "close",
            "close by",
            "walking distance",
            "near me",
            "around here",
        ),
        LocationPreference.NAMED_REGION: ("tel aviv", "tlv", "bus distance", "in the city"),
        LocationPreference.ANYWHERE: ("anywhere", "don't care", "doesn't matter", "any place", "wherever"),
    },
    Language.HE: {
        LocationPreference.NEARBY: ("קרוב אליי", "קרוב", "במרחק הליכה", "ברגל", "ליד", "באזור"),
        LocationPreference.NAMED_REGION: ("תל אביב", 'ת"א', "מרחק אוטובוס", "בעיר"),
        LocationPreference.ANYWHERE: ("לא משנה", "בכל מקום", "איפה שיש", "לא אכפת", "כל מקום"),
    },
}

WALKING_PHRASES: Dict[Language, Tuple[str, ...]] = {
    Language.EN: ("walking distance", "walk", "walkable"),
    Language.HE: ("במרחק הליכה", "ברגל"),
}

# Timing buckets, first hit wins.
TIMING_PHRASES: Dict[Language, Dict[TimingPreference, Tuple[str, ...]]] = {
    Language.EN: {
        TimingPreference.NOW: (
            "now",
            "right now",
            "immediately",
            "asap",
            "right away",
            "open now",
            "currently open",
            "that's open",
        ),
        TimingPreference.TONIGHT: ("tonight", "this evening", "dinner", "for dinner"),
        TimingPreference.TOMORROW: ("tomorrow", "tomorrow night", "tomorrow evening"),
        TimingPreference.WEEKEND: ("weekend", "saturday", "friday", "this weekend"),
    },
    Language.HE: {
        TimingPreference.NOW: (
            "עכשיו",
            "מיד",
            "כרגע",
            "עוד רגע",
            "עוד מעט",
            "פתוח עכשיו",
            "פתוח",
            "שפתוח",
            "שיהיה פתוח",
            "מקום פתוח",
        ),
        TimingPreference.TONIGHT: ("הערב", "הלילה", "ערב", "לארוחת ערב", "דינר"),
        TimingPreference.TOMORROW: ("מחר", "מחר בערב", "מחר בצהריים"),
        TimingPreference.WEEKEND: ("סוף שבוע", "שבת", "שישי", "יום שישי"),
    },
}

CITY_GAZETTEER: Dict[Language, Dict[str, str]] = {
    Language.EN: {
        "jerusalem": "Jerusalem",
        "haifa": "Haifa",
        "beer sheva": "Beer Sheva",
        "eilat": "Eilat",
        "herzliya": "Herzliya",
        "ramat gan": "Ramat Gan",
        "petah tikva": "Petah Tikva",
        "netanya": "Netanya",
        "rishon lezion": "Rishon LeZion",
        "holon": "Holon",
    },
    Language.HE: {
        "ירושלים": "Jerusalem",
        "חיפה": "Haifa",
        "באר שבע": "Beer Sheva",
        "אילת": "Eilat",
        "הרצליה": "Herzliya",
        "רמת גן": "Ramat Gan",
        "פתח תקווה": "Petah Tikva",
        "נתניה": "Netanya",
        "ראשון לציון": "Rishon LeZion",
        "חולון": "Holon",
    },
}

EVENING_ANCHOR_MINUTES = 20 * 60
FRIDAY, SATURDAY = 5, 6

_CLOCK_12H_RE = re.compile(r"(?<![\d:])(\d{1,2})(?::([0-5]\d))?\s*([ap])\.?m\b\.?", re.I)
_CLOCK_24H_RE = re.compile(r"(?<![\d:.])([01]?\d|2[0-3]):([0-5]\d)(?![\d:])")


EXTRACTION_SYSTEM_PROMPT = "You are a JSON extractor. Return ONLY valid JSON, no markdown."

EXTRACTION_PROMPT = """Analyze this conversation and extract dining preferences.

Conversation:
{conversation}

Extract the following (use the same language as the conversation):
1. cuisinePreferences: Array of cuisine types mentioned (e.g., ["italian", "pizza"] or ["איטלקי", "פיצה"])
2. occasion: The occasion (e.g., "date", "friends", "family", "business", "solo" or Hebrew equivalents)
3. vibe: Array of atmosphere preferences (e.g., ["romantic", "quiet"] or ["רומנטי", "שקט"])
4. budget: Budget preference if mentioned (e.g., "cheap", "moderate", "expensive" or "זול", "בינוני", "יקר")
5. dietaryRestrictions: Any dietary restrictions (e.g., ["vegetarian", "kosher"] or ["צמחוני", "כשר"])

Return ONLY valid JSON:
{{"cuisinePreferences": [], "occasion": "", "vibe": [], "budget": "", "dietaryRestrictions": []}}"""


class ExtractedPreferences(BaseModel):
    """Validated shape of the extraction completion. Unknown keys are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    cuisine_preferences: List[str] = Field(default_factory=list, alias="cuisinePreferences")
    occasion: str = ""
    vibe: List[str] = Field(default_factory=list)
    budget: str = ""
    dietary_restrictions: List[str] = Field(default_factory=list, alias="dietaryRestrictions")

    @field_validator("cuisine_preferences", "vibe", "dietary_restrictions", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> List[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            return []
        return [str(v).strip() for v in value if v is not None and str(v).strip()]

    @field_validator("occasion", "budget", mode="before")
    @classmethod
    def _coerce_str(cls, value: Any) -> str:
        if value is None:
            return ""
        if isinstance(value, (list, tuple)):
            value = value[0] if value else ""
        return str(value).strip()


# ---------------------------------------------------------------------------
# Rule-based matching
# ---------------------------------------------------------------------------


def detect_language(text: str) -> Language:
    if len(HEBREW_CHAR_RE.findall(text or "")) > HEBREW_THRESHOLD:
        return Language.HE
    return Language.EN


def _phrase_in(text: str, phrase: str) -> bool:
    phrase = phrase.lower()
    if phrase.isascii():
        return re.search(r"(?<!\w)" + re.escape(phrase) + r"(?!\w)", text) is not None
    # Hebrew prefixes attach to words (בתל אביב), so plain containment
    return phrase in text


def matches_any(text: str, phrases: Tuple[str, ...]) -> bool:
    lower = (text or "").lower()
    return any(_phrase_in(lower, p) for p in phrases)


def match_city(text: str, language: Language) -> Optional[str]:
    lower = (text or "").lower()
    for term, canonical in CITY_GAZETTEER[language].items():
        if _phrase_in(lower, term):
            return canonical
    return None


def extract_location(
    text: str, language: Language, cfg: Configuration
) -> Tuple[LocationPreference, Optional[str], Optional[int]]:
    """(preference, specific_city, max_distance_meters).

    Order: specific city, nearby, named region, anywhere, then the named-region default.
    """
    city = match_city(text, language)
    if city:
        return LocationPreference.SPECIFIC_CITY, city, None

    buckets = LOCATION_PHRASES[language]
    if matches_any(text, buckets[LocationPreference.NEARBY]):
        walking = matches_any(text, WALKING_PHRASES[language])
        radius = cfg.walking_distance_meters if walking else cfg.nearby_default_meters
        return LocationPreference.NEARBY, None, radius
    if matches_any(text, buckets[LocationPreference.NAMED_REGION]):
        return LocationPreference.NAMED_REGION, None, None
    if matches_any(text, buckets[LocationPreference.ANYWHERE]):
        return LocationPreference.ANYWHERE, None, None
    return LocationPreference.NAMED_REGION, None, None


def day_index(moment: datetime) -> int:
    """Weekday with 0 = Sunday."""
    return (moment.weekday() + 1) % 7


def next_weekend_day(today: int) -> int:
    if today < FRIDAY:
        return FRIDAY
    if today == FRIDAY:
        return SATURDAY
    return FRIDAY


def parse_explicit_time(text: str) -> Optional[int]:
    """Minutes of day for "at 7pm", "7:30 PM" or "21:30"; None when no clock time is present."""
    match = _CLOCK_12H_RE.search(text or "")
    if match:
        hour, minute = int(match.group(1)), int(match.group(2) or 0)
        if 1 <= hour <= 12:
            if match.group(3).lower() == "p" and hour != 12:
                hour += 12
            elif match.group(3).lower() == "a" and hour == 12:
                hour = 0
            return hour * 60 + minute
    match = _CLOCK_24H_RE.search(text or "")
    if match:
        return int(match.group(1)) * 60 + int(match.group(2))
    return None


def extract_timing(
    text: str, language: Language, now: datetime
) -> Tuple[TimingPreference, Optional[int], Optional[int]]:
    """(timing, specific_time, specific_day).

    ``now`` leaves specific_time unset so the filter uses the live clock; the
    other buckets anchor at 20:00. An explicit clock time in the text wins over
    the anchor and, without any timing phrase, means today at that time.
    """
    today = day_index(now)
    explicit = parse_explicit_time(text)
    buckets = TIMING_PHRASES[language]

    if matches_any(text, buckets[TimingPreference.NOW]):
        return TimingPreference.NOW, explicit, today
    if matches_any(text, buckets[TimingPreference.TONIGHT]):
        return TimingPreference.TONIGHT, explicit if explicit is not None else EVENING_ANCHOR_MINUTES, today
    if matches_any(text, buckets[TimingPreference.TOMORROW]):
        anchor = explicit if explicit is not None else EVENING_ANCHOR_MINUTES
        return TimingPreference.TOMORROW, anchor, (today + 1) % 7
    if matches_any(text, buckets[TimingPreference.WEEKEND]):
        anchor = explicit if explicit is not None else EVENING_ANCHOR_MINUTES
        return TimingPreference.WEEKEND, anchor, next_weekend_day(today)
    if explicit is not None:
        return TimingPreference.NOW, explicit, today
    return TimingPreference.ANYTIME, None, None


# ---------------------------------------------------------------------------
# Completion-based slots
# ---------------------------------------------------------------------------


def format_transcript(messages: List[ChatMessage]) -> str:
    lines = []
    for m in messages:
        speaker = "User" if m.get("role") == "user" else "Assistant"
        lines.append(f"{speaker}: {m.get('content', '')}")
    return "\n".join(lines)


def parse_extraction(raw: str) -> ExtractedPreferences:
    data = extract_json_object(raw)
    if data is None:
        logger.warning("Preference extraction returned no JSON object; using empty slots")
        return ExtractedPreferences()
    try:
        return ExtractedPreferences.model_validate(data)
    except ValidationError as exc:
        logger.warning("Preference extraction failed validation: {}", exc.errors()[:3])
        return ExtractedPreferences()


async def extract_preferences(
    messages: List[ChatMessage], completion: Optional[CompletionClient]
) -> ExtractedPreferences:
    """One completion call; every failure collapses to empty slots."""
    if completion is None or not messages:
        return ExtractedPreferences()
    conversation = "\n".join(f"{m.get('role', 'user')}: {m.get('content', '')}" for m in messages)
    prompt = EXTRACTION_PROMPT.format(conversation=conversation)
    try:
        raw = await asyncio.to_thread(
            completion.complete,
            prompt,
            system=EXTRACTION_SYSTEM_PROMPT,
            temperature=0.3,
            max_tokens=300,
        )
    except CompletionError as exc:
        logger.warning("Preference extraction unavailable: {}", exc)
        return ExtractedPreferences()
    logger.debug("Preference extraction raw output: {}", raw[:500])
    return parse_extraction(raw)


async def extract_context(
    messages: List[ChatMessage],
    completion: Optional[CompletionClient],
    cfg: Configuration,
    now: Optional[datetime] = None,
) -> ConversationContext:
    now = now or datetime.now()
    user_text = " ".join(m.get("content", "") for m in messages if m.get("role") == "user")
    language = detect_language(user_text)

    location, city, max_distance = extract_location(user_text, language, cfg)
    timing, specific_time, specific_day = extract_timing(user_text, language, now)
    slots = await extract_preferences(messages, completion)

    context = ConversationContext(
        location_preference=location,
        specific_city=city,
        max_distance_meters=max_distance,
        timing=timing,
        specific_time=specific_time,
        specific_day=specific_day,
        cuisine_preferences=tuple(slots.cuisine_preferences),
        occasion=slots.occasion,
        vibe=tuple(slots.vibe),
        budget=slots.budget,
        dietary_restrictions=tuple(slots.dietary_restrictions),
        conversation_text=format_transcript(messages),
        language=language,
    )
    logger.info(
        "Context: lang={} location={} city={} radius={} timing={} time={} day={} cuisines={} occasion={!r}",
        language.value,
        location.value,
        city,
        max_distance,
        timing.value,
        specific_time,
        specific_day,
        list(context.cuisine_preferences),
        context.occasion,
    )
    return context
