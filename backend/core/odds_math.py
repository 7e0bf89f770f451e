"""Fundamental odds mathematics: the single source of truth.

Every function here is **pure**: no I/O, no logging, no side effects.
Import from this module; never reimplement locally in services or models.

The pillars exposed are:

1. **Price containers**: :class:`MatchOdds` (decimal prices) and
   :class:`OutcomeProbabilities` (a home/away/optional-draw distribution).
2. **Validation**: :func:`validate_odds` rejects missing sides
   (:class:`~backend.core.errors.NoMarketData`) and unusable prices
   (:class:`~backend.core.errors.InvalidOdds`).
3. **Margin removal**: proportional normalisation for any market, plus the
   Shin (1993) method for two-way markets.

Design decisions
----------------
* All prices are **decimal** odds.  The Odds API is queried with
  ``oddsFormat=decimal`` so no American conversion is needed downstream.
* Proportional normalisation is the default: ``p_i = (1/o_i) / Σ(1/o_j)``.
  It is exact in the sense that matters to the engine (the set sums to 1)
  and extends to three-way markets.  Shin is offered for two-way markets
  because it corrects the favourite-longshot bias that proportional
  normalisation leaves in place.

Run tests with::

    pytest tests/test_odds_math.py -v
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Final, Iterable, Iterator

from backend.core.errors import InvalidOdds, NoMarketData

# ---------------------------------------------------------------------------
# Module-level constants
# ---------------------------------------------------------------------------

HOME: Final[str] = "home"
AWAY: Final[str] = "away"
DRAW: Final[str] = "draw"

#: Canonical outcome order.  Exact ties anywhere in the engine resolve in
#: this order (home, then away, then draw).
OUTCOME_ORDER: Final[tuple[str, ...]] = (HOME, AWAY, DRAW)

#: Symmetry threshold for the Shin short-circuit.
_SHIN_SYMMETRY_TOL: Final[float] = 1e-3

#: Bisection convergence tolerance for the inner Shin solve.
_SHIN_INNER_TOL: Final[float] = 1e-10

#: Maximum iterations for the inner Shin bisection.
_SHIN_MAX_ITER: Final[int] = 200

#: Overround floor below which Shin degenerates to proportional.
_MIN_OVERROUND: Final[float] = 1.001


# ---------------------------------------------------------------------------
# Containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MatchOdds:
    """Decimal prices for a single match (draw is ``None`` in two-way markets)."""

    home: float | None
    away: float | None
    draw: float | None = None

    def get(self, outcome: str) -> float | None:
        return getattr(self, outcome)

    def items(self) -> Iterator[tuple[str, float]]:
        """Yield ``(outcome, price)`` for every priced outcome, in canonical order."""
        for outcome in OUTCOME_ORDER:
            price = self.get(outcome)
            if price is not None:
                yield outcome, price

    def as_dict(self) -> dict[str, float | None]:
        return {HOME: self.home, AWAY: self.away, DRAW: self.draw}


@dataclass(frozen=True, slots=True)
class OutcomeProbabilities:
    """A probability distribution over home / away / optional draw.

    ``draw`` is ``None`` for two-way markets.  Values are fractions in
    ``[0, 1]`` and, once normalised, sum to 1.
    """

    home: float
    away: float
    draw: float | None = None

    def get(self, outcome: str) -> float | None:
        return getattr(self, outcome)

    def items(self) -> Iterator[tuple[str, float]]:
        for outcome in OUTCOME_ORDER:
            value = self.get(outcome)
            if value is not None:
                yield outcome, value

    def total(self) -> float:
        return sum(value for _, value in self.items())

    def argmax(self) -> str:
        """Return the most likely outcome; exact ties follow ``OUTCOME_ORDER``."""
        best_outcome, best_value = HOME, self.home
        for outcome, value in self.items():
            if value > best_value:
                best_outcome, best_value = outcome, value
        return best_outcome

    def as_dict(self) -> dict[str, float | None]:
        return {HOME: self.home, AWAY: self.away, DRAW: self.draw}

    @classmethod
    def from_mapping(cls, values: dict[str, float], has_draw: bool) -> OutcomeProbabilities:
        return cls(
            home=values[HOME],
            away=values[AWAY],
            draw=values.get(DRAW, 0.0) if has_draw else None,
        )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_price(price: float | None, outcome: str) -> float:
    """Return ``price`` as a float, rejecting missing, non-finite or <= 1.0 values.

    Raises:
        NoMarketData: If ``price`` is ``None``.
        InvalidOdds: If ``price`` is not a finite number greater than 1.0.
    """
    if price is None:
        raise NoMarketData(f"No {outcome} price available")
    try:
        value = float(price)
    except (TypeError, ValueError):
        raise InvalidOdds(f"{outcome} price {price!r} is not numeric") from None
    if not math.isfinite(value) or value <= 1.0:
        raise InvalidOdds(f"{outcome} price {value!r} must be a finite decimal > 1.0")
    return value


def validate_odds(odds: MatchOdds | None, has_draw: bool) -> MatchOdds:
    """Check that every required side is priced and every price is usable.

    In a draw market the draw price is required; in a two-way market any
    supplied draw price is dropped.

    Raises:
        NoMarketData: If ``odds`` is ``None`` or a required side is missing.
        InvalidOdds: If any price is <= 1.0 or non-finite.
    """
    if odds is None:
        raise NoMarketData("No odds supplied")
    home = validate_price(odds.home, HOME)
    away = validate_price(odds.away, AWAY)
    draw = validate_price(odds.draw, DRAW) if has_draw else None
    return MatchOdds(home=home, away=away, draw=draw)


# ---------------------------------------------------------------------------
# Margin removal
# ---------------------------------------------------------------------------


def quoted_probabilities(odds: MatchOdds) -> OutcomeProbabilities:
    """Raw ``1/price`` per outcome, bookmaker margin included."""
    return OutcomeProbabilities(
        home=1.0 / odds.home,
        away=1.0 / odds.away,
        draw=(1.0 / odds.draw) if odds.draw is not None else None,
    )


def bookmaker_margin(odds: MatchOdds) -> float:
    """Overround: ``Σ(1/price) − 1``.  Negative for an underround quote."""
    return quoted_probabilities(odds).total() - 1.0


def remove_margin(odds: MatchOdds, method: str = "proportional") -> OutcomeProbabilities:
    """Return margin-free implied probabilities summing to 1.

    Args:
        odds: Validated decimal prices (see :func:`validate_odds`).
        method: ``"proportional"`` (any market) or ``"shin"`` (two-way
            markets only; three-way markets fall back to proportional).

    Raises:
        ValueError: If ``method`` is not recognised.
    """
    if method not in ("proportional", "shin"):
        raise ValueError(f"Unknown margin removal method: {method!r}")

    if method == "shin" and odds.draw is None:
        home, away = remove_vig_shin(odds.home, odds.away)
        return OutcomeProbabilities(home=home, away=away)

    raw = quoted_probabilities(odds)
    total = raw.total()
    return OutcomeProbabilities(
        home=raw.home / total,
        away=raw.away / total,
        draw=(raw.draw / total) if raw.draw is not None else None,
    )


def remove_vig_shin(
    price_a: float,
    price_b: float,
    *,
    inner_tol: float = _SHIN_INNER_TOL,
    max_iter: int = _SHIN_MAX_ITER,
) -> tuple[float, float]:
    """Extract no-vig probabilities for a two-way market via Shin (1993).

    Shin attributes the overround to informed traders rather than uniform
    margin compression::

        ω_i / K = (1 − z) · p_i  +  z · p_i² / Σ p_j²

    ``z`` is estimated from the overround as ``(K − 1) / (1 − Σ q_i²)`` and
    ``p_a`` is then solved by bisection with ``p_b = 1 − p_a``.

    Underround quotes (K < 1.001) and near-even markets short-circuit to
    proportional normalisation.

    Args:
        price_a: Decimal price for side A (home by convention).
        price_b: Decimal price for side B.

    Returns:
        ``(prob_a, prob_b)`` summing to 1.0.

    Raises:
        InvalidOdds: If either price is <= 1.0 or non-finite.
    """
    raw_a = 1.0 / validate_price(price_a, HOME)
    raw_b = 1.0 / validate_price(price_b, AWAY)
    overround = raw_a + raw_b

    if overround < _MIN_OVERROUND:
        return raw_a / overround, raw_b / overround

    q_a = raw_a / overround
    q_b = raw_b / overround

    if abs(q_a - 0.5) < _SHIN_SYMMETRY_TOL:
        return q_a, q_b

    herfindahl = q_a ** 2 + q_b ** 2
    denom = max(1.0 - herfindahl, 1e-10)
    z = max(0.0, min((overround - 1.0) / denom, 0.499))

    # f(p) = (1−z)·p + z·p²/(p²+(1−p)²) is strictly increasing on (0, 1).
    lo, hi = 1e-9, 1.0 - 1e-9
    for _ in range(max_iter):
        p_mid = (lo + hi) * 0.5
        denom_sq = p_mid ** 2 + (1.0 - p_mid) ** 2
        shin_val = (1.0 - z) * p_mid + z * (p_mid ** 2) / denom_sq
        if shin_val < q_a:
            lo = p_mid
        else:
            hi = p_mid
        if (hi - lo) < inner_tol:
            break

    p_a = (lo + hi) * 0.5
    return p_a, 1.0 - p_a


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------


def average_price(prices: Iterable[float]) -> float | None:
    """Mean of the usable prices, or ``None`` when there are none."""
    usable = [p for p in prices if p is not None and math.isfinite(p) and p > 1.0]
    if not usable:
        return None
    return sum(usable) / len(usable)
