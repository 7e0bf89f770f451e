"""Conviction scoring and value-bet qualification.

Conviction is a 1-10 scale derived from the predicted winner's model
probability and then capped per sport, because some sports have proven far
less predictable than their raw probabilities suggest (NHL is capped at 5,
NFL at 9).  The cap is applied after clamping, so a cap can only lower a
score.

A value bet is only ever placed on the predicted winner: a larger edge on a
non-winner side produces no value bet at all.
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from backend.core.market_intel import MarketIntel
from backend.core.odds_math import MatchOdds
from backend.core.sport_config import DEFAULT_CONFIG, EngineConfig, ValueBetRules


@dataclass(frozen=True)
class ValueBet:
    side: str
    odds: float
    edge: float
    probability: float
    bucket: str  # "HIGH" | "MEDIUM" | "SMALL"


@dataclass(frozen=True)
class Qualification:
    """Outcome of :func:`qualify` for one match.

    Attributes:
        winner: Predicted winner (argmax of model probability).
        winner_probability: Model probability of ``winner``.
        conviction: Capped 1-10 score.
        emit: Whether the winner clears the league's minimum probability
            gate, i.e. whether a prediction should be recorded at all.
        value_bet: Qualified value bet, or ``None``.
        rejection: Why no value bet qualified (``None`` when one did).
    """

    winner: str
    winner_probability: float
    conviction: int
    emit: bool
    value_bet: ValueBet | None = None
    rejection: str | None = None


def raw_conviction(probability: float) -> int:
    """``round(p × 12)`` (half-up) clamped to ``[1, 10]``."""
    return max(1, min(10, math.floor(probability * 12 + 0.5)))


def conviction_score(probability: float, sport_key: str, config: EngineConfig = DEFAULT_CONFIG) -> int:
    """Capped conviction for ``probability`` in ``sport_key``."""
    return min(raw_conviction(probability), config.conviction_cap(sport_key))


def edge_bucket(edge: float, rules: ValueBetRules) -> str:
    if edge >= rules.high_bucket:
        return "HIGH"
    if edge >= rules.medium_bucket:
        return "MEDIUM"
    return "SMALL"


def qualify_value_bet(
    intel: MarketIntel,
    winner: str,
    rules: ValueBetRules,
    odds: MatchOdds | None = None,
) -> tuple[ValueBet | None, str | None]:
    """Apply the four value-bet gates; returns ``(value_bet, rejection_reason)``."""
    side = intel.value_edge.outcome
    if side != winner:
        return None, f"value side {side} is not the predicted winner {winner}"

    price = (odds or intel.odds).get(side)
    probability = intel.model_probability.get(side)
    edge = intel.edges[side]

    if price is None or price > rules.max_odds:
        return None, f"odds {price} above ceiling {rules.max_odds}"
    if probability is None or probability < rules.min_prob:
        return None, f"probability {probability} below floor {rules.min_prob}"
    if edge < rules.min_edge:
        return None, f"edge {edge:.2f} below minimum {rules.min_edge}"

    return ValueBet(
        side=side,
        odds=price,
        edge=round(edge, 2),
        probability=probability,
        bucket=edge_bucket(edge, rules),
    ), None


def qualify(
    intel: MarketIntel,
    sport_key: str,
    odds: MatchOdds | None = None,
    config: EngineConfig = DEFAULT_CONFIG,
) -> Qualification:
    """Derive conviction, the emission gate and any value bet for a match.

    Args:
        intel: Output of :func:`~backend.core.market_intel.compute_edge`.
        sport_key: Provider sport key, used for the conviction cap.
        odds: Prices to bet at; defaults to the prices ``intel`` was built on.
        config: Engine configuration.
    """
    winner = intel.model_probability.argmax()
    probability = intel.model_probability.get(winner)
    league = config.league(intel.league_key)

    value_bet, rejection = qualify_value_bet(intel, winner, config.value_bet, odds)
    return Qualification(
        winner=winner,
        winner_probability=probability,
        conviction=conviction_score(probability, sport_key, config),
        emit=probability >= league.min_winner_prob,
        value_bet=value_bet,
        rejection=rejection,
    )
