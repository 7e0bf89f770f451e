"""
Tests for sport family detection, league resolution and conviction caps.
Run with: pytest tests/test_sport_config.py -v
"""

from dataclasses import replace

import pytest

from backend.core.sport_config import (
    DEFAULT_CONFIG,
    EngineConfig,
    SportConfig,
    ValueBetRules,
    detect_sport,
    normalize_key,
)


@pytest.mark.parametrize("sport_key, family", [
    ("soccer_epl", "soccer"),
    ("basketball_nba", "basketball"),
    ("basketball_euroleague", "basketball"),
    ("americanfootball_nfl", "football"),
    ("americanfootball_ncaaf", "football"),
    ("icehockey_nhl", "hockey"),
    ("mma_mixed_martial_arts", "mma"),
    ("Soccer-Spain La-Liga", "soccer"),
    ("cricket_test_match", "soccer"),
])
def test_detect_sport(sport_key, family):
    assert detect_sport(sport_key) == family


def test_normalize_key():
    assert normalize_key("  Premier League ") == "premier_league"
    assert normalize_key("Ligue-1") == "ligue_1"


class TestLeagueResolution:

    @pytest.mark.parametrize("name", ["soccer_epl", "EPL", "Premier League", "soccer_epl_2025"])
    def test_epl_aliases(self, name):
        assert DEFAULT_CONFIG.league(name).key == "soccer_epl"

    @pytest.mark.parametrize("name", [None, "", "Primeira Liga", "soccer_portugal_primeira_liga"])
    def test_unknown_falls_back_to_default(self, name):
        assert DEFAULT_CONFIG.league(name).key == "default"

    @pytest.mark.parametrize("league_key, min_prob", [
        ("default", 0.40),
        ("soccer_epl", 0.42),
        ("soccer_france_ligue_one", 0.42),
        ("soccer_spain_la_liga", 0.40),
        ("basketball_nba", 0.55),
        ("basketball_euroleague", 0.55),
        ("americanfootball_nfl", 0.55),
        ("americanfootball_ncaaf", 0.55),
        ("icehockey_nhl", 0.60),
    ])
    def test_emission_gates(self, league_key, min_prob):
        assert DEFAULT_CONFIG.league(league_key).min_winner_prob == min_prob

    def test_calibration_factors_in_range(self):
        for profile in DEFAULT_CONFIG.leagues.values():
            assert 0.0 < profile.calibration_factor <= 1.0

    def test_two_way_leagues_have_no_draw_rate(self):
        for key in ("basketball_nba", "americanfootball_nfl", "icehockey_nhl"):
            assert DEFAULT_CONFIG.league(key).draw_rate == 0.0

    def test_hints_attached(self):
        assert "EPL WARNING" in DEFAULT_CONFIG.league("soccer_epl").hint
        assert DEFAULT_CONFIG.league("default").hint == ""


class TestConvictionCaps:

    @pytest.mark.parametrize("sport_key, cap", [
        ("icehockey_nhl", 5),
        ("americanfootball_nfl", 9),
        ("americanfootball_ncaaf", 7),
        ("soccer_epl", 7),
        ("soccer_belgium_first_div", 6),
        ("soccer_portugal_primeira_liga", 7),
        ("basketball_nba", 7),
        ("mma_mixed_martial_arts", 7),
    ])
    def test_caps(self, sport_key, cap):
        assert DEFAULT_CONFIG.conviction_cap(sport_key) == cap

    def test_unlisted_hockey_uses_family_cap(self):
        assert DEFAULT_CONFIG.conviction_cap("icehockey_khl") == 5


class TestEngineConfig:

    def test_tables_are_read_only(self):
        with pytest.raises(TypeError):
            DEFAULT_CONFIG.leagues["new"] = DEFAULT_CONFIG.league("default")

    def test_override_single_table(self):
        strict = replace(DEFAULT_CONFIG, value_bet=ValueBetRules(max_odds=3.0))
        assert strict.value_bet.max_odds == 3.0
        assert DEFAULT_CONFIG.value_bet.max_odds == 4.0
        assert strict.leagues is DEFAULT_CONFIG.leagues

    def test_default_builds_equal_configs(self):
        assert EngineConfig.default().sport("soccer_epl") == DEFAULT_CONFIG.sport("soccer_epl")

    def test_family_constants(self):
        assert DEFAULT_CONFIG.sport("soccer_epl").has_draw is True
        assert DEFAULT_CONFIG.sport("basketball_nba").has_draw is False
        assert DEFAULT_CONFIG.sport("basketball_nba").is_points_sport

    def test_unknown_family(self):
        with pytest.raises(ValueError):
            SportConfig.for_family("curling")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
