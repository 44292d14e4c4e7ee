"""Utility helpers for the restaurant recommendation pipeline."""

from __future__ import annotations

import json
import math
import re
from typing import Any, Optional

EARTH_RADIUS_M = 6371000.0

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?")


def mask_secret(value: Optional[str], visible: int = 4) -> str:
    if not value:
        return "unset"
    if len(value) <= visible * 2:
        return "*" * len(value)
    return f"{value[:visible]}...{value[-visible:]}"


def strip_thinking_tokens(text: str) -> str:
    """Remove <think>...</think> blocks if present."""
    if not text:
        return text
    while True:
        start = text.find("<think>")
        if start == -1:
            break
        end = text.find("</think>", start)
        if end == -1:
            break
        text = text[:start] + text[end + len("</think>") :]
    return text


def strip_code_fences(text: str) -> str:
    """Drop markdown code fences (```json ... ```) around a model response."""
    if not text:
        return ""
    return _FENCE_RE.sub("", text).replace("```", "").strip()


def extract_json_object(text: Optional[str]) -> Optional[dict[str, Any]]:
    """Best-effort parse of the outermost JSON object in an LLM response.

    Returns None instead of raising when nothing parseable is found.
    """
    if not text:
        return None
    cleaned = strip_code_fences(strip_thinking_tokens(text))
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    try:
        data = json.loads(cleaned[start : end + 1])
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    # clamp against float drift pushing a marginally above 1
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
