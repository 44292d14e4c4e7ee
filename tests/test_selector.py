import asyncio
import json
import math

import pytest

from models import ConversationContext, Language, RankedVenue
from services.llm import CompletionError
from services.selector import (
    BACKFILL_REASON,
    FALLBACK_REASONS,
    build_recommendations,
    format_candidate,
    match_percentage,
    parse_selections,
    select_with_llm,
)

MESSAGES = [{"role": "user", "content": "somewhere quiet for sushi"}]


class FakeCompletion:
    def __init__(self, reply=None, error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, prompt, *, system=None, temperature=0.3, max_tokens=300):
        self.calls.append({"prompt": prompt, "system": system, "temperature": temperature, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return self.reply


def _candidates(n=5):
    return [
        RankedVenue(id=f"v{i}", name=f"Venue {i}", final_score=0.9 - i * 0.05, categories=["Sushi"])
        for i in range(n)
    ]


def _select(candidates, completion, language=Language.EN):
    context = ConversationContext(language=language)
    return asyncio.run(select_with_llm(candidates, context, MESSAGES, completion))


@pytest.mark.parametrize(
    "score, expected",
    [(0.85, 85), (0.2, 70), (-3.0, 70), (1.7, 99), (float("nan"), 70), (float("inf"), 99), (float("-inf"), 70)],
)
def test_match_percentage_bounds(score, expected):
    assert match_percentage(score) == expected


def test_selection_uses_completion_reply():
    reply = json.dumps(
        {"selections": [{"id": "v2", "reason": "Quiet and great fish"}, {"id": "v0", "reason": "Close by"}]}
    )
    completion = FakeCompletion(reply=reply)
    selections = _select(_candidates(), completion)
    assert [(s.id, s.reason) for s in selections] == [("v2", "Quiet and great fish"), ("v0", "Close by")]
    call = completion.calls[0]
    assert call["temperature"] == 0.7 and call["max_tokens"] == 500
    assert "ID: v4" in call["prompt"]
    assert "somewhere quiet for sushi" in call["prompt"]


def test_alternate_id_keys_are_accepted():
    selections = parse_selections('{"selections": [{"google_place_id": "v1", "reason": "x"}, {"venue_id": "v3"}]}')
    assert [s.id for s in selections] == ["v1", "v3"]
    assert selections[1].reason == ""


@pytest.mark.parametrize("reply", ["not json at all", '{"picks": "v1"}', '{"selections": [{"reason": "no id"}]}'])
def test_unusable_reply_falls_back_to_top_three(reply):
    selections = _select(_candidates(), FakeCompletion(reply=reply))
    assert [s.id for s in selections] == ["v0", "v1", "v2"]
    assert [s.reason for s in selections] == list(FALLBACK_REASONS[Language.EN])


def test_fallback_with_fewer_candidates():
    selections = _select(_candidates(2), FakeCompletion(reply="garbage"))
    assert len(selections) == 2


def test_completion_error_falls_back_in_hebrew():
    selections = _select(_candidates(), FakeCompletion(error=CompletionError("quota")), Language.HE)
    assert [s.reason for s in selections] == list(FALLBACK_REASONS[Language.HE])


def test_no_completion_client_uses_fallback():
    assert [s.id for s in _select(_candidates(), None)] == ["v0", "v1", "v2"]


def test_no_candidates_skips_the_call():
    completion = FakeCompletion(reply="{}")
    assert _select([], completion) == []
    assert completion.calls == []


def test_recommendations_drop_unknown_ids_and_backfill():
    candidates = _candidates()
    selections = parse_selections(
        '{"selections": [{"id": "ghost", "reason": "made up"}, {"id": "v3", "reason": "Great omakase"},'
        ' {"id": "v3", "reason": "duplicate"}]}'
    )
    recs = build_recommendations(selections, candidates, Language.EN)
    assert [r.venue.id for r in recs] == ["v3", "v0", "v1"]
    assert recs[0].reason == "Great omakase"
    assert recs[1].reason == BACKFILL_REASON[Language.EN]
    assert all(70 <= r.match_percentage <= 99 for r in recs)


def test_recommendations_capped_at_three():
    candidates = _candidates()
    selections = parse_selections(
        json.dumps({"selections": [{"id": c.id, "reason": "ok"} for c in reversed(candidates)]})
    )
    recs = build_recommendations(selections, candidates)
    assert [r.venue.id for r in recs] == ["v4", "v3", "v2"]


def test_blank_reason_gets_language_backfill():
    selections = parse_selections('{"selections": [{"id": "v0", "reason": "  "}]}')
    recs = build_recommendations(selections, _candidates(1), Language.HE)
    assert recs[0].reason == BACKFILL_REASON[Language.HE]


def test_match_percentage_uses_final_score():
    candidate = RankedVenue(id="x", name="x", final_score=math.inf)
    recs = build_recommendations([], [candidate])
    assert recs[0].match_percentage == 99


def test_format_candidate_truncates_summary():
    venue = RankedVenue(id="x", name="Long", summary="a" * 200, final_score=0.5)
    text = format_candidate(venue, 0)
    assert text.startswith("1. Long")
    assert "Price: $$" in text
    assert ("a" * 150 + "...") in text
    assert ("a" * 151) not in text


def _numbered_candidates(n=7):
    return [RankedVenue(id=str(i), name=f"Venue {i}", final_score=0.95 - i * 0.02) for i in range(1, n + 1)]


def test_numeric_ids_resolve_against_string_keys():
    reply = json.dumps(
        {
            "selections": [
                {"id": 5, "reason": "Best hummus nearby"},
                {"id": 6, "reason": "Quiet garden"},
                {"id": 7, "reason": "Open late"},
            ]
        }
    )
    candidates = _numbered_candidates()
    selections = _select(candidates, FakeCompletion(reply=reply))
    recs = build_recommendations(selections, candidates)
    assert [r.venue.id for r in recs] == ["5", "6", "7"]
    assert [r.reason for r in recs] == ["Best hummus nearby", "Quiet garden", "Open late"]


def test_malformed_item_does_not_discard_valid_picks():
    reply = json.dumps(
        {
            "selections": [
                {"id": "5", "reason": "Great shakshuka"},
                {"id": "6", "reason": "Your favourite bakery"},
                {"reason": "close"},
            ]
        }
    )
    candidates = _numbered_candidates()
    recs = build_recommendations(_select(candidates, FakeCompletion(reply=reply)), candidates)
    assert [r.venue.id for r in recs] == ["5", "6", "1"]
    assert recs[0].reason == "Great shakshuka"
    assert recs[2].reason == BACKFILL_REASON[Language.EN]


def test_bare_array_reply_is_accepted():
    selections = parse_selections('[{"id": "5", "reason": "x"}, {"id": true}, {"venue_id": 6, "reason": null}]')
    assert [(s.id, s.reason) for s in selections] == [("5", "x"), ("6", "")]
