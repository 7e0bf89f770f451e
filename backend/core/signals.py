"""Signal normalizer: raw per-sport match data into five universal signals.

Every sport maps into the same five signals so the rest of the engine never
branches on sport:

1. **Form**: recency-weighted results per team.
2. **Strength edge**: season win rate, scoring differential, venue split,
   head-to-head and home advantage blended into a bounded percentage.
3. **Tempo**: combined scoring rate against the family's baseline.
4. **Efficiency**: attack vs defence rates, with the driving aspect.
5. **Availability**: absences mapped to an impact tier.

:func:`normalize` is pure: the same :class:`RawMatchInput` and
:class:`~backend.core.sport_config.EngineConfig` always produce the same
:class:`UniversalSignals`.

Missing data
------------
A sub-metric whose inputs lack sample size (fewer than
``MIN_FORM_RESULTS`` form results, fewer than ``MIN_RECORD_GAMES`` played
games, fewer than ``MIN_H2H_MEETINGS`` meetings) is left out of its signal
instead of being filled with a neutral default, and every omitted team-level
input lowers the clarity score.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Final, Sequence

from backend.core.errors import InputDataMissing
from backend.core.sport_config import DEFAULT_CONFIG, EngineConfig, SportConfig

logger = logging.getLogger(__name__)

#: Recency weights, most recent result first.
FORM_WEIGHTS: Final[tuple[float, ...]] = (1.5, 1.3, 1.1, 1.0, 0.9)

MIN_FORM_RESULTS: Final[int] = 3
MIN_RECORD_GAMES: Final[int] = 2
MIN_VENUE_GAMES: Final[int] = 2
MIN_H2H_MEETINGS: Final[int] = 3

STRENGTH_EDGE_CAP: Final[float] = 20.0
STRENGTH_EDGE_FLOOR: Final[float] = 2.0
MISSING_INPUT_PENALTY: Final[int] = 10

KEY_POSITIONS: Final[frozenset[str]] = frozenset({
    "quarterback", "qb", "goalkeeper", "goalie", "g", "striker",
    "forward", "center", "c", "point guard", "pg",
})
KEY_TIERS: Final[frozenset[str]] = frozenset({"star", "starter"})


# ---------------------------------------------------------------------------
# Input data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SeasonRecord:
    """Season-to-date results for one team (or one team at one venue)."""

    played: int = 0
    won: int = 0
    drawn: int = 0
    lost: int = 0
    scored: float = 0.0
    conceded: float = 0.0

    @property
    def win_rate(self) -> float:
        return self.won / self.played if self.played else 0.0

    @property
    def scored_per_game(self) -> float:
        return self.scored / self.played if self.played else 0.0

    @property
    def conceded_per_game(self) -> float:
        return self.conceded / self.played if self.played else 0.0

    @property
    def goal_difference_per_game(self) -> float:
        return (self.scored - self.conceded) / self.played if self.played else 0.0


@dataclass(frozen=True)
class HeadToHead:
    total: int = 0
    home_wins: int = 0
    away_wins: int = 0
    draws: int = 0


@dataclass(frozen=True)
class Absence:
    """One unavailable player.

    ``key`` marks a player whose absence changes the match; it is inferred
    from ``position`` or ``tier`` when not set explicitly.
    """

    player: str
    position: str = ""
    reason: str = "injury"
    key: bool = False
    tier: str | None = None

    @property
    def is_key(self) -> bool:
        return (
            self.key
            or self.position.strip().lower() in KEY_POSITIONS
            or (self.tier or "").lower() in KEY_TIERS
        )

    def as_dict(self) -> dict:
        return {
            "player": self.player,
            "position": self.position,
            "reason": self.reason,
            "key": self.is_key,
        }


@dataclass(frozen=True)
class RawMatchInput:
    """Everything known about a match before normalisation.

    ``home_venue_record`` is the home team's record at home and
    ``away_venue_record`` the away team's record away; both are optional.
    Form strings list the most recent result first.
    """

    sport: str
    home_team: str
    away_team: str
    league: str | None = None
    home_form: str = ""
    away_form: str = ""
    home_record: SeasonRecord | None = None
    away_record: SeasonRecord | None = None
    home_venue_record: SeasonRecord | None = None
    away_venue_record: SeasonRecord | None = None
    h2h: HeadToHead | None = None
    home_absences: tuple[Absence, ...] = ()
    away_absences: tuple[Absence, ...] = ()


# ---------------------------------------------------------------------------
# Output data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FormSignal:
    label: str  # "home_better" | "away_better" | "balanced"
    lean: str
    magnitude: float
    home_rating: float | None
    away_rating: float | None
    home_label: str | None
    away_label: str | None


@dataclass(frozen=True)
class StrengthEdgeSignal:
    label: str  # "home" | "away" | "even"
    lean: str
    magnitude: int  # percentage, 0..20

    @property
    def direction(self) -> str:
        return self.label

    @property
    def percentage(self) -> int:
        return self.magnitude


@dataclass(frozen=True)
class TempoSignal:
    label: str  # "low" | "medium" | "high" | "unknown"
    lean: str
    magnitude: float | None  # expected scoring per team per game


@dataclass(frozen=True)
class EfficiencySignal:
    label: str  # "home" | "away" | "balanced"
    lean: str
    magnitude: float
    aspect: str | None  # "offense" | "defense" | "both"

    @property
    def winner(self) -> str:
        return self.label


@dataclass(frozen=True)
class AvailabilitySignal:
    label: str  # "low" | "medium" | "high" | "critical"
    lean: str
    magnitude: int  # number of key absences
    note: str | None
    home_absences: tuple[Absence, ...] = ()
    away_absences: tuple[Absence, ...] = ()

    @property
    def level(self) -> str:
        return self.label


@dataclass(frozen=True)
class UniversalSignals:
    """The normalised view of a match that the edge calculator consumes."""

    home_team: str
    away_team: str
    sport_family: str
    form: FormSignal
    strength_edge: StrengthEdgeSignal
    tempo: TempoSignal
    efficiency: EfficiencySignal
    availability: AvailabilitySignal
    clarity_score: int
    confidence: str
    missing: tuple[str, ...] = field(default_factory=tuple)

    def labels(self) -> dict[str, str]:
        """Short display labels, one per signal."""
        form = self.form
        if form.label == "home_better":
            form_label = f"{self.home_team} stronger"
        elif form.label == "away_better":
            form_label = f"{self.away_team} stronger"
        else:
            form_label = "Balanced"

        edge = self.strength_edge
        edge_label = "Even" if edge.label == "even" else f"{edge.label.title()} +{edge.magnitude}%"

        tempo_label = {
            "high": "Fast-Paced",
            "low": "Controlled",
            "medium": "Medium",
        }.get(self.tempo.label, "Unknown")

        eff = self.efficiency
        if eff.label == "balanced":
            eff_label = "Balanced"
        else:
            eff_label = eff.label.title() + (f" {eff.aspect}" if eff.aspect else "")

        avail = self.availability
        avail_label = avail.label.title()
        if avail.note:
            avail_label = f"{avail_label} - {avail.note}"

        return {
            "form": form_label,
            "strength_edge": edge_label,
            "tempo": tempo_label,
            "efficiency_edge": eff_label,
            "availability_impact": avail_label,
        }

    def summary(self) -> str:
        """One-line summary used in logs and the narrative prompt."""
        lbl = self.labels()
        return (
            f"Form: {lbl['form']} | Edge: {lbl['strength_edge']} | "
            f"Tempo: {lbl['tempo']} | Efficiency: {lbl['efficiency_edge']} | "
            f"Availability: {lbl['availability_impact']}"
        )

    def to_prompt_json(self) -> str:
        return json.dumps(self.labels(), indent=2)

    def to_dict(self) -> dict:
        return {
            "labels": self.labels(),
            "form": {
                "home": self.form.home_label,
                "away": self.form.away_label,
                "home_rating": self.form.home_rating,
                "away_rating": self.form.away_rating,
                "trend": self.form.label,
            },
            "strength_edge": {
                "direction": self.strength_edge.label,
                "percentage": self.strength_edge.magnitude,
            },
            "tempo": {"level": self.tempo.label, "rate": self.tempo.magnitude},
            "efficiency": {
                "winner": self.efficiency.label,
                "aspect": self.efficiency.aspect,
                "edge": self.efficiency.magnitude,
            },
            "availability": {
                "level": self.availability.label,
                "note": self.availability.note,
                "home_absences": [a.as_dict() for a in self.availability.home_absences],
                "away_absences": [a.as_dict() for a in self.availability.away_absences],
            },
            "clarity_score": self.clarity_score,
            "confidence": self.confidence,
            "missing": list(self.missing),
        }


# ---------------------------------------------------------------------------
# Sub-metric helpers
# ---------------------------------------------------------------------------


def form_results(form: str | None) -> list[str]:
    """Return the usable W/D/L characters of a form string, most recent first."""
    return [ch for ch in (form or "").upper() if ch in "WDL"]


def form_rating(form: str | None, has_draw: bool) -> float:
    """Recency-weighted form rating on a 0-100 scale.

    A win earns 3 points in draw sports (1 otherwise), a draw earns 1 in draw
    sports; each result is multiplied by its :data:`FORM_WEIGHTS` entry.

    Raises:
        InputDataMissing: If fewer than ``MIN_FORM_RESULTS`` results exist.
    """
    results = form_results(form)[: len(FORM_WEIGHTS)]
    if len(results) < MIN_FORM_RESULTS:
        raise InputDataMissing("form", f"{len(results)} usable results")

    win_points = 3 if has_draw else 1
    points = 0.0
    max_points = 0.0
    for result, weight in zip(results, FORM_WEIGHTS):
        max_points += win_points * weight
        if result == "W":
            points += win_points * weight
        elif result == "D" and has_draw:
            points += weight
    return points / max_points * 100.0


def form_label(rating: float | None) -> str | None:
    if rating is None:
        return None
    if rating >= 60:
        return "strong"
    if rating <= 40:
        return "weak"
    return "neutral"


def _usable_record(record: SeasonRecord | None, minimum: int) -> SeasonRecord | None:
    if record is None or record.played < minimum:
        return None
    return record


def _lean(value: float, dead_zone: float = 0.0) -> str:
    if value > dead_zone:
        return "home"
    if value < -dead_zone:
        return "away"
    return "even"


def _form_signal(raw: RawMatchInput, sport: SportConfig, missing: list[str]) -> FormSignal:
    ratings: dict[str, float | None] = {}
    for side, form in (("home", raw.home_form), ("away", raw.away_form)):
        try:
            ratings[side] = form_rating(form, sport.has_draw)
        except InputDataMissing:
            ratings[side] = None
            missing.append(f"{side}_form")

    home, away = ratings["home"], ratings["away"]
    if home is None or away is None:
        trend, diff = "balanced", 0.0
    else:
        diff = home - away
        if home > away + 10:
            trend = "home_better"
        elif away > home + 10:
            trend = "away_better"
        else:
            trend = "balanced"

    lean = {"home_better": "home", "away_better": "away"}.get(trend, "even")
    return FormSignal(
        label=trend,
        lean=lean,
        magnitude=round(abs(diff), 1),
        home_rating=round(home, 1) if home is not None else None,
        away_rating=round(away, 1) if away is not None else None,
        home_label=form_label(home),
        away_label=form_label(away),
    )


def _strength_edge(raw: RawMatchInput, sport: SportConfig, form: FormSignal) -> StrengthEdgeSignal:
    edge = sport.home_advantage

    if form.home_rating is not None and form.away_rating is not None:
        edge += (form.home_rating - form.away_rating) / 100.0 * 0.4

    home_rec = _usable_record(raw.home_record, MIN_RECORD_GAMES)
    away_rec = _usable_record(raw.away_record, MIN_RECORD_GAMES)
    if home_rec and away_rec:
        edge += (home_rec.win_rate - away_rec.win_rate) * 0.2
        scale = 0.008 if sport.is_points_sport else 0.015
        edge += (home_rec.goal_difference_per_game - away_rec.goal_difference_per_game) * scale

    home_venue = _usable_record(raw.home_venue_record, MIN_VENUE_GAMES)
    away_venue = _usable_record(raw.away_venue_record, MIN_VENUE_GAMES)
    if home_venue and away_venue:
        edge += (home_venue.win_rate - away_venue.win_rate) * 0.05

    h2h = raw.h2h
    if h2h and h2h.total >= MIN_H2H_MEETINGS:
        edge += (h2h.home_wins - h2h.away_wins) / h2h.total * 0.10

    pct = max(-STRENGTH_EDGE_CAP, min(STRENGTH_EDGE_CAP, edge * 100.0))
    if abs(pct) < STRENGTH_EDGE_FLOOR:
        return StrengthEdgeSignal(label="even", lean="even", magnitude=0)
    direction = "home" if pct > 0 else "away"
    return StrengthEdgeSignal(label=direction, lean=direction, magnitude=int(abs(pct) + 0.5))


def _tempo(raw: RawMatchInput, sport: SportConfig) -> TempoSignal:
    home_rec = _usable_record(raw.home_record, MIN_RECORD_GAMES)
    away_rec = _usable_record(raw.away_record, MIN_RECORD_GAMES)
    if not (home_rec and away_rec):
        return TempoSignal(label="unknown", lean="even", magnitude=None)

    rate = (
        home_rec.scored_per_game + home_rec.conceded_per_game
        + away_rec.scored_per_game + away_rec.conceded_per_game
    ) / 4.0
    if rate < sport.tempo_low:
        level = "low"
    elif rate > sport.tempo_high:
        level = "high"
    else:
        level = "medium"
    return TempoSignal(label=level, lean="even", magnitude=round(rate, 2))


def _efficiency(raw: RawMatchInput, sport: SportConfig) -> EfficiencySignal:
    home_rec = _usable_record(raw.home_record, MIN_RECORD_GAMES)
    away_rec = _usable_record(raw.away_record, MIN_RECORD_GAMES)
    if not (home_rec and away_rec):
        return EfficiencySignal(label="balanced", lean="even", magnitude=0.0, aspect=None)

    off_edge = home_rec.scored_per_game - away_rec.scored_per_game
    def_edge = away_rec.conceded_per_game - home_rec.conceded_per_game
    total = off_edge + def_edge

    if abs(total) < sport.efficiency_threshold:
        return EfficiencySignal(label="balanced", lean="even", magnitude=round(abs(total), 3),
                                aspect=None)

    if abs(off_edge) > abs(def_edge) * 1.5:
        aspect = "offense"
    elif abs(def_edge) > abs(off_edge) * 1.5:
        aspect = "defense"
    else:
        aspect = "both"

    winner = "home" if total > 0 else "away"
    return EfficiencySignal(label=winner, lean=winner, magnitude=round(abs(total), 3),
                            aspect=aspect)


def _availability(raw: RawMatchInput) -> AvailabilitySignal:
    home_key = [a for a in raw.home_absences if a.is_key]
    away_key = [a for a in raw.away_absences if a.is_key]
    key_out = len(home_key) + len(away_key)
    total_out = len(raw.home_absences) + len(raw.away_absences)

    if key_out >= 3:
        level, note = "critical", "Multiple key absences"
    elif key_out >= 1 or total_out >= 5:
        level = "high"
        first_key = (home_key or away_key or [None])[0]
        note = f"{first_key.player} out" if first_key else "Significant absences"
    elif total_out >= 2:
        level, note = "medium", None
    else:
        level, note = "low", None

    # The side missing more key players is the weaker one.
    lean = _lean(len(away_key) - len(home_key))
    return AvailabilitySignal(
        label=level,
        lean=lean,
        magnitude=key_out,
        note=note,
        home_absences=tuple(raw.home_absences),
        away_absences=tuple(raw.away_absences),
    )


def confidence_tier(clarity_score: int) -> str:
    """Map a clarity score to a tier; monotonic non-decreasing in the score."""
    if clarity_score >= 70:
        return "high"
    if clarity_score >= 45:
        return "medium"
    return "low"


def clarity(
    form: FormSignal,
    edge: StrengthEdgeSignal,
    efficiency: EfficiencySignal,
    availability: AvailabilitySignal,
    missing: Sequence[str],
) -> int:
    score = 0
    if form.label != "balanced":
        score += 25
    if edge.magnitude >= 4:
        score += 30
    if efficiency.label != "balanced":
        score += 25
    if availability.label in ("low", "medium"):
        score += 20
    score -= MISSING_INPUT_PENALTY * len(missing)
    return max(0, min(100, score))


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(raw: RawMatchInput, config: EngineConfig = DEFAULT_CONFIG) -> UniversalSignals:
    """Convert raw match data into :class:`UniversalSignals`.

    Args:
        raw: Per-match inputs; any optional field may be absent.
        config: Engine configuration supplying the sport family constants.

    Returns:
        The five signals plus clarity score and confidence tier.
    """
    sport = config.sport(raw.sport)
    missing: list[str] = []

    form = _form_signal(raw, sport, missing)
    if _usable_record(raw.home_record, MIN_RECORD_GAMES) is None:
        missing.append("home_record")
    if _usable_record(raw.away_record, MIN_RECORD_GAMES) is None:
        missing.append("away_record")

    edge = _strength_edge(raw, sport, form)
    tempo = _tempo(raw, sport)
    efficiency = _efficiency(raw, sport)
    availability = _availability(raw)

    score = clarity(form, edge, efficiency, availability, missing)
    if missing:
        logger.debug(
            "%s vs %s: omitted inputs %s, clarity %d",
            raw.home_team, raw.away_team, ", ".join(missing), score,
        )

    return UniversalSignals(
        home_team=raw.home_team,
        away_team=raw.away_team,
        sport_family=sport.family,
        form=form,
        strength_edge=edge,
        tempo=tempo,
        efficiency=efficiency,
        availability=availability,
        clarity_score=score,
        confidence=confidence_tier(score),
        missing=tuple(missing),
    )
