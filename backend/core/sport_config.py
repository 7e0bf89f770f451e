"""Sport and league configuration: every per-sport constant in one place.

This module is the **registry** for the tables the engine consults: sport
family constants, league base rates and calibration, conviction ceilings,
value-bet rules and edge thresholds.  Nowhere else in the codebase should
those numbers be hard-coded.

Architecture
------------
:class:`SportConfig` is a frozen dataclass carrying one sport family's
constants; named constructors (:meth:`SportConfig.soccer`,
:meth:`SportConfig.basketball`, ...) return pre-populated instances.

:class:`EngineConfig` bundles the family configs with the league table and
the threshold groups.  It is built once (:meth:`EngineConfig.default`) and
passed explicitly into :func:`~backend.core.signals.normalize`,
:func:`~backend.core.market_intel.compute_edge` and
:func:`~backend.core.conviction.qualify`.  No calculator reads a module
global, so tests can override a single table per case.

Typical usage::

    from dataclasses import replace
    from backend.core.sport_config import EngineConfig, ValueBetRules

    cfg = EngineConfig.default()
    strict = replace(cfg, value_bet=ValueBetRules(max_odds=3.0))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Final, Mapping


#: Sport family identifiers.
FAMILY_SOCCER: Final[str] = "soccer"
FAMILY_BASKETBALL: Final[str] = "basketball"
FAMILY_FOOTBALL: Final[str] = "football"
FAMILY_HOCKEY: Final[str] = "hockey"
FAMILY_MMA: Final[str] = "mma"

_FAMILY_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    (FAMILY_MMA, ("mma", "ufc", "mixed_martial", "bellator", "pfl")),
    (FAMILY_BASKETBALL, ("basketball", "nba", "euroleague")),
    (FAMILY_FOOTBALL, ("american", "nfl", "ncaa")),
    (FAMILY_HOCKEY, ("hockey", "nhl", "khl")),
)


def normalize_key(key: str) -> str:
    """Lower-case a sport or league key and replace spaces/hyphens with ``_``."""
    return key.strip().lower().replace(" ", "_").replace("-", "_")


def detect_sport(sport_key: str) -> str:
    """Map a provider sport key (``"icehockey_nhl"``) to its sport family.

    Markers are checked in order; anything unrecognised is treated as soccer.
    """
    key = normalize_key(sport_key)
    for family, markers in _FAMILY_MARKERS:
        if any(marker in key for marker in markers):
            return family
    return FAMILY_SOCCER


@dataclass(frozen=True)
class SportConfig:
    """Immutable constants for a single sport family.

    Attributes:
        family: One of the ``FAMILY_*`` identifiers.
        has_draw: Whether a drawn result is a priced outcome by default.
            Callers may still pass an explicit has-draw flag per market
            (NFL is listed two-way even though ties exist).
        tempo_low: Combined scoring rate (per team, per game) below which
            a match is bucketed "low" tempo.
        tempo_high: Rate above which a match is bucketed "high" tempo.
        home_advantage: Fractional strength-edge bonus for the home side
            (0.04 = four percentage points before scaling).
        efficiency_threshold: Minimum absolute attack+defence edge, in
            scoring units per game, before one side is called advantaged.
        scoring_unit: ``"goals"``, ``"points"`` or ``"rounds"``.
    """

    family: str
    has_draw: bool
    tempo_low: float
    tempo_high: float
    home_advantage: float
    efficiency_threshold: float
    scoring_unit: str

    # ------------------------------------------------------------------ #
    #  Named constructors                                                  #
    # ------------------------------------------------------------------ #

    @classmethod
    def soccer(cls) -> SportConfig:
        return cls(FAMILY_SOCCER, True, 1.2, 2.0, 0.04, 0.15, "goals")

    @classmethod
    def basketball(cls) -> SportConfig:
        return cls(FAMILY_BASKETBALL, False, 100.0, 115.0, 0.055, 3.0, "points")

    @classmethod
    def football(cls) -> SportConfig:
        return cls(FAMILY_FOOTBALL, True, 18.0, 28.0, 0.025, 2.0, "points")

    @classmethod
    def hockey(cls) -> SportConfig:
        return cls(FAMILY_HOCKEY, False, 2.3, 3.2, 0.035, 0.2, "goals")

    @classmethod
    def mma(cls) -> SportConfig:
        return cls(FAMILY_MMA, True, 1.0, 3.0, 0.0, 10.0, "rounds")

    @classmethod
    def for_family(cls, family: str) -> SportConfig:
        """Return the named constructor's instance for ``family``."""
        constructors = {
            FAMILY_SOCCER: cls.soccer,
            FAMILY_BASKETBALL: cls.basketball,
            FAMILY_FOOTBALL: cls.football,
            FAMILY_HOCKEY: cls.hockey,
            FAMILY_MMA: cls.mma,
        }
        try:
            return constructors[family]()
        except KeyError:
            raise ValueError(f"Unknown sport family: {family!r}") from None

    @property
    def is_points_sport(self) -> bool:
        """True when scores are counted in points (wider scoring ranges)."""
        return self.scoring_unit == "points"


@dataclass(frozen=True)
class LeagueProfile:
    """Historical base rates and calibration quality for one league.

    Attributes:
        key: Canonical league key (the provider's sport key).
        name: Display name, also used to look up prompt hints.
        goals_per_game: Average combined score per match.
        draw_rate: Fraction of matches drawn (0.0 for two-way sports).
        home_win_rate: Fraction of matches won by the home side.
        away_win_rate: Fraction of matches won by the away side.
        calibration_factor: How far the model may deviate from the
            margin-free market, in ``(0, 1]``.  1.0 trusts the model fully;
            0.5 halves every model-vs-market gap.  Leagues where past
            predictions have been poorly calibrated carry lower values.
        min_winner_prob: Minimum model probability of the predicted winner
            before a prediction is emitted for this league.
        hint: Free-text guidance appended to the narrative prompt.
    """

    key: str
    name: str
    goals_per_game: float
    draw_rate: float
    home_win_rate: float
    away_win_rate: float
    calibration_factor: float = 0.8
    min_winner_prob: float = 0.40
    hint: str = ""


@dataclass(frozen=True)
class ValueBetRules:
    """Fixed gates a value bet must clear (all must hold)."""

    max_odds: float = 4.00
    min_prob: float = 0.25
    min_edge: float = 3.0
    high_bucket: float = 8.0
    medium_bucket: float = 5.0


@dataclass(frozen=True)
class EdgeThresholds:
    """Edge (percentage point) boundaries for classification and alerting."""

    strong: float = 10.0
    moderate: float = 5.0
    slight: float = 3.0
    overpriced: float = -5.0
    avoid_confidence: float = 40.0
    max_model_confidence: float = 85.0
    alert_high: float = 10.0
    alert_medium: float = 5.0
    alert_low: float = 3.0
    value_flag: float = 3.0


@dataclass(frozen=True)
class MovementThresholds:
    """Decimal-price deltas used to classify line movement between snapshots."""

    direction: float = 0.05
    sharp: float = 0.15
    moderate: float = 0.08
    steam_moderate: float = 0.10
    suspicious: float = 0.20
    reverse_gap: float = 10.0


# ---------------------------------------------------------------------------
# League table
# ---------------------------------------------------------------------------

_EPL_HINT = """EPL WARNING: home picks have underperformed away picks.
- Modern EPL has weak home advantage (post-COVID ~45% home wins)
- Top 6 away wins are often undervalued
- Be skeptical of home picks for mid-table teams"""

_LA_LIGA_HINT = """LA LIGA INSIGHT: adjust for Spanish football patterns.
- Draws are overrated here
- Away wins happen more than expected for the top 4
- Mid-table clashes are volatile, lower conviction"""

_BUNDESLIGA_HINT = """BUNDESLIGA WARNING: strong away performance historically.
- Home advantage is weaker than in other leagues
- High-scoring nature means form matters more than H2H"""

_SERIE_A_HINT = """SERIE A INSIGHT: defensive league patterns.
- Low-scoring games favour underdogs and draws
- Home teams rarely get blown out
- Trust clean sheet data heavily"""

_LIGUE_1_HINT = """LIGUE 1 INSIGHT: one dominant club, the rest is unpredictable.
- Outside the top club the league is highly volatile
- Lower conviction on all other matches"""

_NBA_HINT = """NBA INSIGHT: home picks have been far more reliable than away picks.
- Home teams win ~57% of games
- Be more conservative on away picks and require stronger evidence
- Back-to-back games are significant, favour rested teams"""

_NFL_HINT = """NFL INSIGHT: the best-calibrated sport. Trust the model.
- Home field matters more than in other sports
- Division games are more predictable than expected"""

_NHL_HINT = """NHL CRITICAL WARNING: very low historical accuracy, home picks especially.
- Do not trust home ice advantage
- High variance sport, goalie matchups dominate outcomes
- Check for goalie absences before picking
- Consider not picking a winner if the match is close"""

_EUROLEAGUE_HINT = """EUROLEAGUE INSIGHT: strong home accuracy.
- Home court is even stronger than in the NBA
- Away picks need very strong form evidence"""


def _default_leagues() -> dict[str, LeagueProfile]:
    profiles = [
        LeagueProfile("default", "Default", 2.75, 0.240, 0.462, 0.298, 0.8, 0.40),
        LeagueProfile("soccer_epl", "Premier League", 2.84, 0.219, 0.479, 0.302,
                      0.7, 0.42, _EPL_HINT),
        LeagueProfile("soccer_spain_la_liga", "La Liga", 2.55, 0.253, 0.476, 0.271,
                      0.8, 0.40, _LA_LIGA_HINT),
        LeagueProfile("soccer_germany_bundesliga", "Bundesliga", 3.16, 0.222, 0.444,
                      0.333, 0.8, 0.40, _BUNDESLIGA_HINT),
        LeagueProfile("soccer_italy_serie_a", "Serie A", 2.34, 0.288, 0.397, 0.314,
                      0.8, 0.40, _SERIE_A_HINT),
        LeagueProfile("soccer_france_ligue_one", "Ligue 1", 2.85, 0.215, 0.514, 0.271,
                      0.75, 0.42, _LIGUE_1_HINT),
        LeagueProfile("basketball_nba", "NBA", 228.0, 0.0, 0.570, 0.430,
                      0.85, 0.55, _NBA_HINT),
        LeagueProfile("basketball_euroleague", "EuroLeague", 162.0, 0.0, 0.640, 0.360,
                      0.9, 0.55, _EUROLEAGUE_HINT),
        LeagueProfile("americanfootball_nfl", "NFL", 45.0, 0.0, 0.570, 0.430,
                      1.0, 0.55, _NFL_HINT),
        LeagueProfile("americanfootball_ncaaf", "NCAA Football", 55.0, 0.0, 0.600, 0.400,
                      0.9, 0.55),
        LeagueProfile("icehockey_nhl", "NHL", 6.1, 0.0, 0.540, 0.460,
                      0.5, 0.60, _NHL_HINT),
    ]
    return {p.key: p for p in profiles}


_LEAGUE_ALIASES: dict[str, str] = {
    "epl": "soccer_epl",
    "premier_league": "soccer_epl",
    "english_premier_league": "soccer_epl",
    "england": "soccer_epl",
    "la_liga": "soccer_spain_la_liga",
    "laliga": "soccer_spain_la_liga",
    "spain": "soccer_spain_la_liga",
    "bundesliga": "soccer_germany_bundesliga",
    "germany": "soccer_germany_bundesliga",
    "serie_a": "soccer_italy_serie_a",
    "italy": "soccer_italy_serie_a",
    "ligue_1": "soccer_france_ligue_one",
    "ligue1": "soccer_france_ligue_one",
    "france": "soccer_france_ligue_one",
    "nba": "basketball_nba",
    "euroleague": "basketball_euroleague",
    "nfl": "americanfootball_nfl",
    "ncaaf": "americanfootball_ncaaf",
    "ncaa_football": "americanfootball_ncaaf",
    "nhl": "icehockey_nhl",
}

# Ceilings reflect how well each sport's convictions have been calibrated.
_CONVICTION_CAPS: dict[str, int] = {
    "icehockey_nhl": 5,
    "hockey": 5,
    "nhl": 5,
    "soccer_belgium_first_div": 6,
    "soccer_epl": 7,
    "soccer_spain_la_liga": 7,
    "soccer_germany_bundesliga": 7,
    "soccer_italy_serie_a": 7,
    "soccer_france_ligue_one": 7,
    "soccer": 7,
    "basketball_nba": 7,
    "basketball_euroleague": 7,
    "basketball": 7,
    "americanfootball_nfl": 9,
    "americanfootball_ncaaf": 7,
    "football": 9,
    "nfl": 9,
}


@dataclass(frozen=True)
class EngineConfig:
    """Everything the calculators need, bundled and immutable.

    Mapping fields are wrapped in :class:`types.MappingProxyType` by
    :meth:`default` so a shared instance cannot be mutated in place.
    """

    sports: Mapping[str, SportConfig]
    leagues: Mapping[str, LeagueProfile]
    league_aliases: Mapping[str, str]
    conviction_caps: Mapping[str, int]
    default_conviction_cap: int = 7
    value_bet: ValueBetRules = field(default_factory=ValueBetRules)
    edges: EdgeThresholds = field(default_factory=EdgeThresholds)
    movement: MovementThresholds = field(default_factory=MovementThresholds)
    #: Margin removal for implied probabilities: "proportional" or "shin".
    #: Shin applies to two-way markets; three-way markets stay proportional.
    devig_method: str = "proportional"

    @classmethod
    def default(cls) -> EngineConfig:
        families = (FAMILY_SOCCER, FAMILY_BASKETBALL, FAMILY_FOOTBALL,
                    FAMILY_HOCKEY, FAMILY_MMA)
        return cls(
            sports=MappingProxyType({f: SportConfig.for_family(f) for f in families}),
            leagues=MappingProxyType(_default_leagues()),
            league_aliases=MappingProxyType(dict(_LEAGUE_ALIASES)),
            conviction_caps=MappingProxyType(dict(_CONVICTION_CAPS)),
        )

    def sport(self, sport_key: str) -> SportConfig:
        """Return the family config for a provider sport key."""
        return self.sports[detect_sport(sport_key)]

    def league(self, league_key: str | None) -> LeagueProfile:
        """Resolve a league key, alias or display name to its profile.

        Lookup order: exact key, alias, a known key contained in the given
        one (``"soccer_epl_2025"``), then the ``"default"`` profile.
        """
        default = self.leagues["default"]
        if not league_key:
            return default
        key = normalize_key(league_key)
        if key in self.leagues:
            return self.leagues[key]
        if key in self.league_aliases:
            return self.leagues[self.league_aliases[key]]
        for known in self.leagues:
            if known != "default" and known in key:
                return self.leagues[known]
        return default

    def conviction_cap(self, sport_key: str) -> int:
        """Return the conviction ceiling for a sport key.

        Exact key first, then the sport family, then the default ceiling.
        """
        key = normalize_key(sport_key)
        if key in self.conviction_caps:
            return self.conviction_caps[key]
        return self.conviction_caps.get(detect_sport(key), self.default_conviction_cap)


DEFAULT_CONFIG: Final[EngineConfig] = EngineConfig.default()
