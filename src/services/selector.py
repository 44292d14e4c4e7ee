from __future__ import annotations

import asyncio
import json
import math
from typing import Any, List, Optional

from loguru import logger
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from models import ChatMessage, ConversationContext, Language, RankedVenue, Recommendation
from services.llm import CompletionClient, CompletionError
from utils import clamp, extract_json_object, strip_code_fences, strip_thinking_tokens

MAX_PICKS = 3
MIN_MATCH, MAX_MATCH = 70, 99
SUMMARY_PREVIEW_CHARS = 150

SYSTEM_PROMPT_EN = """You are a restaurant expert helping people find the perfect place.

You received a conversation with a user and a list of candidate restaurants.
Your task:
1. Select 3 restaurants that match exactly what the user wants
2. Write a short, personal reason for each

The reason should:
- Be one or two sentences only
- Sound like a friend who knows them
- Reference what the user specifically asked for
- Be short and to the point, no fluff

Good reasons:
- "Exactly what you were after - authentic Italian with fresh pasta"
- "Perfect for your date, romantic and quiet just like you wanted"
- "Closest to you and the food is amazing"

Bad reasons (never write like this):
- "This restaurant offers a wide variety of quality dishes in a pleasant environment..."
- "I recommend this place because of its unique atmosphere and exquisite food..."

Return JSON only, in this format:
{"selections": [{"id": "...", "reason": "..."}, {"id": "...", "reason": "..."}, {"id": "...", "reason": "..."}]}"""

SYSTEM_PROMPT_HE = """אתה מומחה מסעדות שעוזר לאנשים למצוא את המקום המושלם.

קיבלת שיחה עם משתמש ורשימת מסעדות מועמדות.
המשימה שלך:
1. בחר 3 מסעדות שמתאימות בדיוק למה שהמשתמש רוצה
2. לכל מסעדה כתוב נימוק אישי וקצר

הנימוק צריך:
- להיות משפט אחד או שניים בלבד
- להרגיש כאילו אתה חבר שמכיר אותו
- להתייחס למה שהמשתמש ביקש ספציפית
- להיות קצר וקולע, בלי חפירות

דוגמאות לנימוקים טובים:
- "בול מה שחיפשת - איטלקי אותנטי עם פסטה טרייה"
- "מקום מושלם לדייט, רומנטי ושקט בדיוק כמו שרצית"
- "הכי קרוב אליך והאוכל שם מדהים"

דוגמאות לנימוקים גרועים (לא לכתוב ככה):
- "המסעדה הזו מציעה מגוון רחב של מנות איכותיות בסביבה נעימה..."
- "אני ממליץ על המקום הזה בגלל האווירה הייחודית והאוכל המשובח..."

החזר JSON בלבד, בפורמט הבא:
{"selections": [{"id": "...", "reason": "..."}, {"id": "...", "reason": "..."}, {"id": "...", "reason": "..."}]}"""

USER_PROMPT_EN = """Conversation with the user:
{conversation}

Candidates (top {count} restaurants):
{candidates}

Select 3 restaurants and write a short, personal reason for each."""

USER_PROMPT_HE = """השיחה עם המשתמש:
{conversation}

המועמדים ({count} המסעדות המובילות):
{candidates}

בחר 3 מסעדות וכתוב נימוק קצר ואישי לכל אחת."""

FALLBACK_REASONS = {
    Language.EN: (
        "Top pick for what you asked for",
        "A great place that fits what you were looking for",
        "An excellent option in your area",
    ),
    Language.HE: (
        "המלצה מובילה בהתאם להעדפות שלך",
        "מקום מצוין שמתאים למה שחיפשת",
        "אופציה נהדרת באזור שלך",
    ),
}

BACKFILL_REASON = {
    Language.EN: "Another strong match for your preferences",
    Language.HE: "המלצה נוספת שמתאימה להעדפות שלך",
}

ROLE_NAMES = {
    Language.EN: {"user": "User", "assistant": "Assistant"},
    Language.HE: {"user": "משתמש", "assistant": "עוזר"},
}


class Selection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(validation_alias=AliasChoices("id", "venue_id", "google_place_id"))
    reason: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> Any:
        # integer catalog keys come back as JSON numbers
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        if isinstance(value, str):
            return value.strip()
        return value

    @field_validator("reason", mode="before")
    @classmethod
    def _coerce_reason(cls, value: Any) -> Any:
        return "" if value is None else value


class SelectionResponse(BaseModel):
    """Outer envelope only; items are validated one by one."""

    model_config = ConfigDict(extra="ignore")

    selections: List[Any]


def match_percentage(score: float) -> int:
    """Display-only transform of a final score into [70, 99]."""
    if score is None or math.isnan(score):
        return MIN_MATCH
    if math.isinf(score):
        return MAX_MATCH if score > 0 else MIN_MATCH
    return int(clamp(round(score * 100), MIN_MATCH, MAX_MATCH))


def format_candidate(venue: RankedVenue, index: int) -> str:
    rating = f"{venue.rating}" if venue.rating is not None else "N/A"
    lines = [
        f"{index + 1}. {venue.name}",
        f"   ID: {venue.id}",
        f"   Rating: {rating}/5 ({venue.review_count or 0} reviews)",
        f"   Price: {'$' * (venue.price_level or 2)}",
        f"   Categories: {', '.join(venue.categories) or 'Restaurant'}",
        f"   Distance: {f'{round(venue.distance_meters)}m' if venue.distance_meters is not None else 'N/A'}",
        f"   Match Score: {round(venue.final_score * 100)}%",
    ]
    if venue.summary:
        preview = venue.summary[:SUMMARY_PREVIEW_CHARS]
        if len(venue.summary) > SUMMARY_PREVIEW_CHARS:
            preview += "..."
        lines.append(f"   Summary: {preview}")
    return "\n".join(lines)


def format_conversation(messages: List[ChatMessage], language: Language) -> str:
    names = ROLE_NAMES[language]
    return "\n".join(f"{names.get(m.get('role', 'user'), names['user'])}: {m.get('content', '')}" for m in messages)


def build_prompts(
    candidates: List[RankedVenue], context: ConversationContext, messages: List[ChatMessage]
) -> tuple[str, str]:
    template = USER_PROMPT_HE if context.language is Language.HE else USER_PROMPT_EN
    system = SYSTEM_PROMPT_HE if context.language is Language.HE else SYSTEM_PROMPT_EN
    prompt = template.format(
        conversation=format_conversation(messages, context.language),
        count=len(candidates),
        candidates="\n\n".join(format_candidate(c, i) for i, c in enumerate(candidates)),
    )
    return system, prompt


def fallback_selections(candidates: List[RankedVenue], language: Language) -> List[Selection]:
    reasons = FALLBACK_REASONS[language]
    return [Selection(id=c.id, reason=reasons[i]) for i, c in enumerate(candidates[:MAX_PICKS])]


def _selection_items(raw: str) -> Optional[List[Any]]:
    cleaned = strip_code_fences(strip_thinking_tokens(raw or ""))
    if cleaned.startswith("["):
        # a bare array of picks without the envelope
        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, list):
            return data
    data = extract_json_object(cleaned)
    if data is None:
        return None
    try:
        return SelectionResponse.model_validate(data).selections
    except ValidationError as exc:
        logger.warning("Selection output failed validation: {}", exc.errors()[:3])
        return None


def parse_selections(raw: str) -> Optional[List[Selection]]:
    """Selections validated item by item, or None when there is no usable list.

    Malformed items are skipped so the remaining picks survive.
    """
    items = _selection_items(raw)
    if items is None:
        return None
    selections: list[Selection] = []
    for item in items:
        try:
            selections.append(Selection.model_validate(item))
        except ValidationError as exc:
            logger.debug("Skipping malformed selection {!r}: {}", item, exc.errors()[:1])
    return selections


async def select_with_llm(
    candidates: List[RankedVenue],
    context: ConversationContext,
    messages: List[ChatMessage],
    completion: Optional[CompletionClient],
) -> List[Selection]:
    """Ask the completion service for 3 picks; fall back to the top 3 on any failure."""
    if not candidates:
        return []
    if completion is None:
        return fallback_selections(candidates, context.language)

    system, prompt = build_prompts(candidates, context, messages)
    try:
        raw = await asyncio.to_thread(completion.complete, prompt, system=system, temperature=0.7, max_tokens=500)
    except CompletionError as exc:
        logger.warning("Selection completion failed, using top-ranked fallback: {}", exc)
        return fallback_selections(candidates, context.language)

    selections = parse_selections(raw)
    if not selections:
        logger.warning("Selection output unparseable, using top-ranked fallback: {!r}", (raw or "")[:200])
        return fallback_selections(candidates, context.language)
    logger.debug("LLM selected {}", [s.id for s in selections])
    return selections


def build_recommendations(
    selections: List[Selection],
    candidates: List[RankedVenue],
    language: Language = Language.EN,
) -> List[Recommendation]:
    """Resolve selections against the candidates, then backfill up to 3 from the ranking."""
    by_id = {c.id: c for c in candidates}
    picked: list[Recommendation] = []
    seen: set[str] = set()
    for selection in selections:
        venue = by_id.get(selection.id)
        if venue is None:
            logger.debug("Dropping unknown selection id {}", selection.id)
            continue
        if venue.id in seen:
            continue
        seen.add(venue.id)
        reason = selection.reason.strip() or BACKFILL_REASON[language]
        picked.append(Recommendation(venue=venue, reason=reason, match_percentage=match_percentage(venue.final_score)))
        if len(picked) == MAX_PICKS:
            return picked

    for venue in candidates:
        if len(picked) >= MAX_PICKS:
            break
        if venue.id in seen:
            continue
        seen.add(venue.id)
        picked.append(
            Recommendation(
                venue=venue,
                reason=BACKFILL_REASON[language],
                match_percentage=match_percentage(venue.final_score),
            )
        )
    return picked
