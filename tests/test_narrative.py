"""
Tests for narrative validation, the stats fallback and prompt building.
Run with: pytest tests/test_narrative.py -v
"""

import json
from unittest.mock import MagicMock

import pytest

from backend.core.errors import NarrativeServiceFailure
from backend.core.signals import HeadToHead, RawMatchInput, SeasonRecord, normalize
from backend.services.narrative import (
    NarrativeOracle,
    StatsNarrativeOracle,
    build_prompt,
    parse_narrative,
    resolve_narrative,
)

VALID = {
    "favored": "home",
    "confidence": "high",
    "game_flow": "Arsenal should control possession.",
    "snapshot": ["Arsenal unbeaten at home"],
    "risk_factors": ["Derby volatility"],
}


def _prompt(sport="soccer_epl", home="Arsenal", away="Chelsea", has_draw=True, **kwargs):
    raw = RawMatchInput(sport=sport, home_team=home, away_team=away, **kwargs)
    return build_prompt(raw, normalize(raw), has_draw, kickoff="2025-03-01 15:00")


class StubOracle(NarrativeOracle):
    def __init__(self, text):
        self.text = text

    def generate(self, prompt):
        return self.text


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestParseNarrative:

    def test_plain_json(self):
        payload = parse_narrative(json.dumps(VALID), has_draw=True)
        assert payload.favored == "home"
        assert payload.confidence == "high"
        assert payload.snapshot == ["Arsenal unbeaten at home"]

    def test_code_fence_and_smart_quotes(self):
        text = "```json\n" + json.dumps(VALID, ensure_ascii=False).replace("Arsenal should", "Arsenal’s side should") + "\n```"
        payload = parse_narrative(text, has_draw=True)
        assert payload.game_flow.startswith("Arsenal's side")

    @pytest.mark.parametrize("alias, level", [("strong", "high"), ("Moderate", "medium"), ("slight", "low")])
    def test_confidence_aliases(self, alias, level):
        payload = parse_narrative(json.dumps({**VALID, "confidence": alias}), has_draw=True)
        assert payload.confidence == level

    def test_draw_coerced_without_draws(self):
        payload = parse_narrative(json.dumps({**VALID, "favored": "Draw"}), has_draw=False)
        assert payload.favored == "home"

    def test_draw_kept_when_possible(self):
        payload = parse_narrative(json.dumps({**VALID, "favored": "draw"}), has_draw=True)
        assert payload.favored == "draw"

    def test_story_wrapper_unwrapped(self):
        payload = parse_narrative(json.dumps({"story": VALID}), has_draw=True)
        assert payload.favored == "home"

    @pytest.mark.parametrize("text", [
        "",
        "   ",
        "not json at all",
        "[1, 2, 3]",
        json.dumps({"confidence": "high"}),
        json.dumps({**VALID, "favored": "nobody"}),
        json.dumps({**VALID, "probabilities": {"home": 1.4, "away": 0.1}}),
    ])
    def test_rejected(self, text):
        with pytest.raises(NarrativeServiceFailure):
            parse_narrative(text, has_draw=True)

    def test_none_rejected(self):
        with pytest.raises(NarrativeServiceFailure):
            parse_narrative(None, has_draw=True)


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

class TestStatsNarrativeOracle:

    def test_even_records_favour_draw_in_draw_sport(self):
        payload = StatsNarrativeOracle().build(_prompt())
        assert payload.favored == "draw"
        assert payload.confidence == "medium"

    def test_even_records_favour_home_without_draws(self):
        payload = StatsNarrativeOracle().build(
            _prompt("basketball_nba", "Boston Celtics", "Miami Heat", has_draw=False))
        assert payload.favored == "home"

    def test_clear_gap_favours_better_side(self):
        payload = StatsNarrativeOracle().build(_prompt(
            home_form="LLDLL",
            away_form="WWWDW",
            home_record=SeasonRecord(played=10, won=2, drawn=2, lost=6, scored=8, conceded=18),
            away_record=SeasonRecord(played=10, won=7, drawn=2, lost=1, scored=20, conceded=7),
            h2h=HeadToHead(total=4, home_wins=1, away_wins=2, draws=1),
        ))
        assert payload.favored == "away"
        assert payload.snapshot[0] == "Form: Arsenal LLDLL vs Chelsea WWWDW"
        assert payload.snapshot[1] == "Chelsea outscoring Arsenal: 2.0 vs 0.8 goals per game"
        assert payload.snapshot[2] == "H2H (4 meetings): Arsenal 1, Chelsea 2, draws 1"
        assert "Chelsea appears to have a slight edge" in payload.game_flow

    def test_low_clarity_adds_risk_factor(self):
        payload = StatsNarrativeOracle().build(_prompt())
        assert any("Limited data clarity" in r for r in payload.risk_factors)

    def test_generate_returns_valid_json(self):
        text = StatsNarrativeOracle().generate(_prompt())
        assert parse_narrative(text, has_draw=True).favored == "draw"


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolveNarrative:

    def test_valid_oracle_output_used(self):
        narrative = resolve_narrative(StubOracle(json.dumps(VALID)), _prompt())
        assert narrative["source"] == "oracle"
        assert narrative["favored"] == "home"
        assert narrative["strength"] == "strong"

    def test_garbage_falls_back(self):
        narrative = resolve_narrative(StubOracle("Sorry, I can't help with that."), _prompt())
        assert narrative["source"] == "fallback"
        assert narrative["favored"] == "draw"

    def test_oracle_exception_falls_back(self):
        oracle = MagicMock(spec=NarrativeOracle)
        oracle.generate.side_effect = TimeoutError("oracle timed out")
        narrative = resolve_narrative(oracle, _prompt())
        assert narrative["source"] == "fallback"

    def test_no_oracle(self):
        assert resolve_narrative(None, _prompt())["source"] == "fallback"


class TestPrompt:

    def test_league_hint_and_unit(self):
        prompt = _prompt()
        assert prompt.league_hint.startswith("EPL WARNING")
        assert prompt.scoring_unit == "goals"
        text = prompt.render()
        assert "MATCH: Arsenal vs Chelsea" in text
        assert "Draws are possible" in text

    def test_no_draw_sport_render(self):
        text = _prompt("basketball_nba", "Boston Celtics", "Miami Heat", has_draw=False).render()
        assert "NO DRAWS" in text
        assert '"favored": "home" | "away",' in text
        assert 'Use "points" for scoring' in text


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
