from __future__ import annotations

import asyncio
from datetime import datetime
from typing import List, Optional

from loguru import logger

from config import Configuration
from models import CatalogVenue, ConversationContext, LocationPreference, TimingPreference, UserLocation
from services.bbox_builder import expand_bbox_from_center
from services.catalog import CatalogStore
from services.context_extractor import day_index
from services.opening_hours import is_open_at, time_window_for
from utils import haversine_meters


def region_names(cfg: Configuration) -> List[str]:
    """Default region plus its known spellings, deduplicated case-insensitively."""
    names: list[str] = []
    seen: set[str] = set()
    for name in [cfg.default_region, *cfg.default_region_aliases]:
        key = (name or "").strip().casefold()
        if key and key not in seen:
            seen.add(key)
            names.append(name.strip())
    return names


async def fetch_by_geography(
    context: ConversationContext,
    user_location: Optional[UserLocation],
    catalog: CatalogStore,
    cfg: Configuration,
) -> List[CatalogVenue]:
    pref = context.location_preference

    if pref is LocationPreference.NEARBY and user_location is None:
        logger.warning("Nearby requested without a caller location; using the default region")
        pref = LocationPreference.NAMED_REGION

    if pref is LocationPreference.NEARBY:
        assert user_location is not None
        radius = context.max_distance_meters or cfg.nearby_default_meters
        bbox = expand_bbox_from_center(user_location.lng, user_location.lat, radius)
        candidates = await asyncio.to_thread(catalog.fetch_in_bbox, bbox)
        logger.debug("Bbox prefilter ({} m): {} venues", radius, len(candidates))
        nearby: list[CatalogVenue] = []
        for venue in candidates:
            if not venue.has_coordinates:
                continue
            distance = haversine_meters(user_location.lat, user_location.lng, venue.lat, venue.lng)  # type: ignore[arg-type]
            if distance <= radius:
                nearby.append(venue)
        return nearby

    if pref is LocationPreference.SPECIFIC_CITY:
        return await asyncio.to_thread(catalog.fetch_by_cities, [context.specific_city or ""])
    if pref is LocationPreference.NAMED_REGION:
        return await asyncio.to_thread(catalog.fetch_by_cities, region_names(cfg))
    return await asyncio.to_thread(catalog.fetch_all)


def filter_open(
    venues: List[CatalogVenue],
    context: ConversationContext,
    now: datetime,
) -> List[CatalogVenue]:
    now_minutes = now.hour * 60 + now.minute
    window = time_window_for(context.timing, context.specific_time, now_minutes)
    if window is None:
        return venues
    day = context.specific_day if context.specific_day is not None else day_index(now)
    kept = [v for v in venues if is_open_at(v.opening_hours, day, window.start_minutes)]
    logger.debug(
        "Opening-hours filter ({}, day {}, start {}): {} -> {}",
        context.timing.value,
        day,
        window.start_minutes,
        len(venues),
        len(kept),
    )
    return kept


async def apply_hard_filters(
    context: ConversationContext,
    user_location: Optional[UserLocation],
    catalog: CatalogStore,
    cfg: Configuration,
    now: Optional[datetime] = None,
) -> List[CatalogVenue]:
    """Geography, then coordinates, then opening hours.

    Store errors propagate; an empty result is a normal outcome.
    """
    now = now or datetime.now()
    fetched = await fetch_by_geography(context, user_location, catalog, cfg)
    located = [v for v in fetched if v.has_coordinates]
    if len(located) != len(fetched):
        logger.debug("Skipped {} venues without coordinates", len(fetched) - len(located))

    if context.timing is TimingPreference.ANYTIME:
        result = located
    else:
        result = filter_open(located, context, now)

    logger.info(
        "Hard filter: location={} timing={} fetched={} kept={}",
        context.location_preference.value,
        context.timing.value,
        len(fetched),
        len(result),
    )
    return result
