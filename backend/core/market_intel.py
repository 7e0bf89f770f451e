"""Market intel: model-vs-market edge calculation for a single match.

Pipeline (all pure, no I/O)::

    odds ──validate──► implied (margin removed) ─────────────┐
                                                             ▼
    signals ──► raw model probability ──calibrate──► model ──► edges ──► value edge
                        ▲                                      │
    previous odds ──► line movement (steam boost) ─────────────┘──► recommendation

* **Implied probability** is ``1/odds`` normalised so the set sums to 1;
  the removed overround is reported as ``margin``.
* **Raw model probability** starts from the league's historical home / draw /
  away rates and is shifted by the strength edge, form, efficiency,
  availability and any steam move, then normalised and bounded to 5-90 %.
* **Calibration** pulls the raw model toward the market by the league's
  ``calibration_factor``: ``model = implied + factor × (raw − implied)``.
* **Edge** is ``model − implied`` in percentage points.  The value edge is
  the argmax; exact ties resolve home, then away, then draw.

Usage::

    intel = compute_edge(signals, MatchOdds(1.75, 2.20), has_draw=False,
                         league_key="basketball_nba")
    intel.value_edge.strength   # "none" | "slight" | "moderate" | "strong"
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Final

from backend.core.errors import InvalidOdds, NoMarketData
from backend.core.odds_math import (
    AWAY,
    DRAW,
    HOME,
    OUTCOME_ORDER,
    MatchOdds,
    OutcomeProbabilities,
    bookmaker_margin,
    quoted_probabilities,
    remove_margin,
    validate_odds,
)
from backend.core.signals import UniversalSignals
from backend.core.sport_config import (
    DEFAULT_CONFIG,
    EdgeThresholds,
    EngineConfig,
    LeagueProfile,
    MovementThresholds,
)

MODEL_PROB_FLOOR: Final[float] = 0.05
MODEL_PROB_CEILING: Final[float] = 0.90

_STEAM_BOOST: Final[dict[str, float]] = {"sharp": 5.0, "moderate": 3.0, "slight": 1.5}


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValueEdge:
    outcome: str
    strength: str  # "strong" | "moderate" | "slight" | "none"
    edge: float  # percentage points
    label: str

    @property
    def has_value(self) -> bool:
        return self.strength != "none"


@dataclass(frozen=True)
class LineMovement:
    """Advisory description of how the home price moved since the last snapshot."""

    direction: str  # "toward_home" | "toward_away" | "stable"
    magnitude: str  # "sharp" | "moderate" | "slight"
    home_change: float
    away_change: float
    draw_change: float | None
    steam_move: bool
    suspicious: bool
    reverse: bool = False
    note: str = ""

    @property
    def steam_side(self) -> str | None:
        if not self.steam_move:
            return None
        return {"toward_home": HOME, "toward_away": AWAY}.get(self.direction)


@dataclass(frozen=True)
class MarketIntel:
    model_probability: OutcomeProbabilities
    implied_probability: OutcomeProbabilities
    quoted_probability: OutcomeProbabilities
    margin: float
    edges: dict[str, float]
    value_edge: ValueEdge
    recommendation: str
    model_confidence: float
    league_key: str
    calibration_factor: float
    odds: MatchOdds
    line_movement: LineMovement | None = None
    conflict_explanation: str | None = None
    summary: str = ""

    @property
    def has_draw(self) -> bool:
        return self.model_probability.draw is not None

    @property
    def model_favorite(self) -> str:
        return self.model_probability.argmax()

    def to_dict(self) -> dict:
        movement = None
        if self.line_movement is not None:
            lm = self.line_movement
            movement = {
                "direction": lm.direction,
                "magnitude": lm.magnitude,
                "home_change": round(lm.home_change, 3),
                "away_change": round(lm.away_change, 3),
                "draw_change": round(lm.draw_change, 3) if lm.draw_change is not None else None,
                "steam_move": lm.steam_move,
                "suspicious": lm.suspicious,
                "reverse": lm.reverse,
                "note": lm.note,
            }
        return {
            "model_probability": _rounded(self.model_probability),
            "implied_probability": _rounded(self.implied_probability),
            "quoted_probability": _rounded(self.quoted_probability),
            "margin": round(self.margin, 4),
            "edges": {k: round(v, 2) for k, v in self.edges.items()},
            "value_edge": {
                "outcome": self.value_edge.outcome,
                "strength": self.value_edge.strength,
                "edge": round(self.value_edge.edge, 2),
                "label": self.value_edge.label,
            },
            "recommendation": self.recommendation,
            "model_confidence": self.model_confidence,
            "league_key": self.league_key,
            "calibration_factor": self.calibration_factor,
            "odds": self.odds.as_dict(),
            "line_movement": movement,
            "conflict_explanation": self.conflict_explanation,
            "summary": self.summary,
        }


def _rounded(probs: OutcomeProbabilities) -> dict[str, float | None]:
    return {k: (round(v, 4) if v is not None else None) for k, v in probs.as_dict().items()}


# ---------------------------------------------------------------------------
# Model probability
# ---------------------------------------------------------------------------


def bounded_normalize(values: dict[str, float], floor: float, ceiling: float) -> dict[str, float]:
    """Normalise ``values`` to sum to 1 with each entry inside ``[floor, ceiling]``.

    The floor is raised when needed so the bounds stay feasible (a two-way
    market capped at 0.90 needs a 0.10 floor).  Mass removed by clamping is
    redistributed proportionally across the entries that are still free.
    """
    n = len(values)
    floor = max(floor, 1.0 - ceiling * (n - 1))
    clipped = {k: max(v, 0.0) for k, v in values.items()}
    total = sum(clipped.values())
    if total <= 0:
        return {k: 1.0 / n for k in values}
    probs = {k: v / total for k, v in clipped.items()}

    for _ in range(n + 1):
        probs = {k: min(max(v, floor), ceiling) for k, v in probs.items()}
        excess = 1.0 - sum(probs.values())
        if abs(excess) < 1e-12:
            break
        if excess > 0:
            free = [k for k, v in probs.items() if v < ceiling]
        else:
            free = [k for k, v in probs.items() if v > floor]
        free_total = sum(probs[k] for k in free)
        if not free or free_total <= 0:
            break
        for k in free:
            probs[k] += excess * probs[k] / free_total
    return probs


def raw_model_probability(
    signals: UniversalSignals,
    has_draw: bool,
    league: LeagueProfile,
    movement: LineMovement | None = None,
) -> OutcomeProbabilities:
    """Signal-driven outcome probabilities before market calibration.

    Adjustments are applied in percentage points on top of the league's
    historical rates, then normalised and bounded.
    """
    home = league.home_win_rate * 100.0
    away = league.away_win_rate * 100.0
    draw = league.draw_rate * 100.0
    if not has_draw:
        two_way = home + away
        home, away, draw = home / two_way * 100.0, away / two_way * 100.0, 0.0

    edge = signals.strength_edge
    pct = float(edge.magnitude)
    if edge.label == HOME:
        home += pct
        away -= pct * 0.6
        draw -= pct * 0.4
    elif edge.label == AWAY:
        away += pct
        home -= pct * 0.6
        draw -= pct * 0.4

    form = signals.form
    home += {"strong": 8.0, "weak": -8.0}.get(form.home_label or "", 0.0)
    away += {"strong": 8.0, "weak": -8.0}.get(form.away_label or "", 0.0)

    eff = signals.efficiency.label
    if eff == HOME:
        home += 3.0
        away -= 2.0
    elif eff == AWAY:
        away += 3.0
        home -= 2.0

    if signals.availability.label in ("high", "critical"):
        draw += 3.0
        home -= 1.0
        away -= 1.0

    steam_side = movement.steam_side if movement is not None else None
    if steam_side is not None:
        boost = _STEAM_BOOST[movement.magnitude]
        if steam_side == HOME:
            home += boost
            away -= boost * 0.6
        else:
            away += boost
            home -= boost * 0.6
        draw -= boost * 0.4

    values = {HOME: home, AWAY: away}
    if has_draw:
        values[DRAW] = draw
    probs = bounded_normalize(values, MODEL_PROB_FLOOR, MODEL_PROB_CEILING)
    return OutcomeProbabilities.from_mapping(probs, has_draw)


def calibrate(
    raw: OutcomeProbabilities,
    implied: OutcomeProbabilities,
    factor: float,
) -> OutcomeProbabilities:
    """Shrink the model toward the market: ``implied + factor × (raw − implied)``.

    Raises:
        ValueError: If ``factor`` is outside ``(0, 1]``.
    """
    if not 0.0 < factor <= 1.0:
        raise ValueError(f"calibration factor must be in (0, 1], got {factor}")

    def blend(model_p: float | None, market_p: float | None) -> float | None:
        if model_p is None or market_p is None:
            return None
        return market_p + factor * (model_p - market_p)

    return OutcomeProbabilities(
        home=blend(raw.home, implied.home),
        away=blend(raw.away, implied.away),
        draw=blend(raw.draw, implied.draw),
    )


# ---------------------------------------------------------------------------
# Edges and classification
# ---------------------------------------------------------------------------


def outcome_edges(model: OutcomeProbabilities, implied: OutcomeProbabilities) -> dict[str, float]:
    """Per-outcome edge, ``(model − implied) × 100``, for every priced outcome."""
    edges: dict[str, float] = {}
    for outcome, model_p in model.items():
        market_p = implied.get(outcome)
        if market_p is not None:
            edges[outcome] = (model_p - market_p) * 100.0
    return edges


def classify_edge(edge: float, thresholds: EdgeThresholds) -> str:
    if edge > thresholds.strong:
        return "strong"
    if edge > thresholds.moderate:
        return "moderate"
    if edge > thresholds.slight:
        return "slight"
    return "none"


def pick_value_edge(edges: dict[str, float], thresholds: EdgeThresholds) -> ValueEdge:
    """Return the argmax edge; exact ties resolve in ``OUTCOME_ORDER``."""
    best = None
    for outcome in OUTCOME_ORDER:
        if outcome in edges and (best is None or edges[outcome] > edges[best]):
            best = outcome
    if best is None:
        raise ValueError("no edges to choose from")

    edge = edges[best]
    strength = classify_edge(edge, thresholds)
    label = f"{best.title()} +{edge:.1f}% Value" if strength != "none" else "No clear value"
    return ValueEdge(outcome=best, strength=strength, edge=edge, label=label)


def recommend(
    value_edge: ValueEdge,
    favorite_edge: float,
    model_confidence: float,
    thresholds: EdgeThresholds,
) -> str:
    """Map the value edge and confidence to a recommendation.

    ``overpriced`` means the market prices the model favourite shorter than
    the model does by more than the threshold.
    """
    if value_edge.strength == "strong":
        return "strong_value"
    if value_edge.strength == "moderate":
        return "slight_value"
    if favorite_edge < thresholds.overpriced:
        return "overpriced"
    if model_confidence < thresholds.avoid_confidence:
        return "avoid"
    return "fair_price"


# ---------------------------------------------------------------------------
# Line movement
# ---------------------------------------------------------------------------


def detect_line_movement(
    current: MatchOdds,
    previous: MatchOdds,
    thresholds: MovementThresholds,
) -> LineMovement:
    """Classify the move in the home price between two snapshots.

    A shortening home price (``previous.home > current.home``) means money
    arriving on the home side.
    """
    home_diff = previous.home - current.home
    away_diff = previous.away - current.away
    draw_diff = None
    if previous.draw is not None and current.draw is not None:
        draw_diff = previous.draw - current.draw
    size = abs(home_diff)

    if home_diff > thresholds.direction:
        direction = "toward_home"
    elif home_diff < -thresholds.direction:
        direction = "toward_away"
    else:
        direction = "stable"

    if size > thresholds.sharp:
        magnitude = "sharp"
    elif size > thresholds.moderate:
        magnitude = "moderate"
    else:
        magnitude = "slight"

    steam = magnitude == "sharp" or (magnitude == "moderate" and size > thresholds.steam_moderate)
    note = {
        "toward_home": "Money coming for Home",
        "toward_away": "Money coming for Away",
    }.get(direction, "Line stable")
    return LineMovement(
        direction=direction,
        magnitude=magnitude,
        home_change=-home_diff,
        away_change=-away_diff,
        draw_change=-draw_diff if draw_diff is not None else None,
        steam_move=steam and direction != "stable",
        suspicious=size > thresholds.suspicious,
        note=note,
    )


def flag_reverse_movement(
    movement: LineMovement,
    model: OutcomeProbabilities,
    thresholds: MovementThresholds,
) -> LineMovement:
    """Mark moves against a side the model clearly prefers (gap > threshold)."""
    gap = (model.home - model.away) * 100.0
    if gap > thresholds.reverse_gap:
        strongly_favors = HOME
    elif -gap > thresholds.reverse_gap:
        strongly_favors = AWAY
    else:
        return movement

    reverse = (
        (strongly_favors == HOME and movement.direction == "toward_away")
        or (strongly_favors == AWAY and movement.direction == "toward_home")
    )
    if not reverse:
        return movement
    public = strongly_favors.title()
    sharp = AWAY.title() if strongly_favors == HOME else HOME.title()
    note = (
        f"Reverse line movement: public likely on {public} (favourite) "
        f"but the line is moving toward {sharp}."
    )
    return replace(movement, reverse=True, note=note)


def _usable_previous(previous: MatchOdds | None, has_draw: bool) -> MatchOdds | None:
    # Movement is advisory; an incomplete earlier snapshot is simply ignored.
    if previous is None:
        return None
    try:
        return validate_odds(previous, has_draw)
    except (NoMarketData, InvalidOdds):
        return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def assess_market(
    model: OutcomeProbabilities,
    odds: MatchOdds,
    *,
    model_confidence: float,
    league_key: str = "default",
    calibration_factor: float = 1.0,
    line_movement: LineMovement | None = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> MarketIntel:
    """Price a final model distribution against validated odds.

    This is the second half of :func:`compute_edge`, exposed so a model
    probability from any source can be assessed against the market.
    """
    has_draw = model.draw is not None
    odds = validate_odds(odds, has_draw)
    implied = remove_margin(odds, config.devig_method)
    edges = outcome_edges(model, implied)
    value_edge = pick_value_edge(edges, config.edges)
    favorite = model.argmax()
    recommendation = recommend(value_edge, edges[favorite], model_confidence, config.edges)

    conflict = None
    if value_edge.has_value and value_edge.outcome != favorite:
        conflict = (
            f"{favorite.title()} is the stronger side ({model.get(favorite):.0%} model "
            f"probability) but the market prices it too short. "
            f"{value_edge.outcome.title()} offers +{value_edge.edge:.1f} points of value: "
            f"market {implied.get(value_edge.outcome):.0%} vs model "
            f"{model.get(value_edge.outcome):.0%}."
        )

    if value_edge.has_value:
        summary = (
            f"Model sees {value_edge.label}. Market implies {implied.home:.0%} home, "
            f"model {model.home:.0%}."
        )
    else:
        summary = f"Fair price. Model and market align around {model.home:.0%} home."

    return MarketIntel(
        model_probability=model,
        implied_probability=implied,
        quoted_probability=quoted_probabilities(odds),
        margin=bookmaker_margin(odds),
        edges=edges,
        value_edge=value_edge,
        recommendation=recommendation,
        model_confidence=model_confidence,
        league_key=league_key,
        calibration_factor=calibration_factor,
        odds=odds,
        line_movement=line_movement,
        conflict_explanation=conflict,
        summary=summary,
    )


def compute_edge(
    signals: UniversalSignals,
    odds: MatchOdds,
    has_draw: bool,
    league_key: str | None = None,
    previous_odds: MatchOdds | None = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> MarketIntel:
    """Full edge calculation for one match.

    Args:
        signals: Output of :func:`~backend.core.signals.normalize`.
        odds: Current decimal prices.
        has_draw: Whether the draw is a priced outcome in this market.
        league_key: League key, alias or display name for calibration.
        previous_odds: Last stored prices; enables line-movement detection.
        config: Engine configuration.

    Raises:
        NoMarketData: If a required side's price is missing.
        InvalidOdds: If any price is <= 1.0 or non-finite.
    """
    odds = validate_odds(odds, has_draw)
    league = config.league(league_key)
    implied = remove_margin(odds, config.devig_method)

    movement = None
    previous = _usable_previous(previous_odds, has_draw)
    if previous is not None:
        movement = detect_line_movement(odds, previous, config.movement)
        pre_steam = raw_model_probability(signals, has_draw, league)
        movement = flag_reverse_movement(movement, pre_steam, config.movement)

    raw = raw_model_probability(signals, has_draw, league, movement)
    model = calibrate(raw, implied, league.calibration_factor)
    confidence = min(config.edges.max_model_confidence, float(signals.clarity_score))

    return assess_market(
        model,
        odds,
        model_confidence=confidence,
        league_key=league.key,
        calibration_factor=league.calibration_factor,
        line_movement=movement,
        config=config,
    )
