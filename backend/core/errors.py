"""Exception taxonomy for the match edge engine.

Each class maps to one failure mode and one handling policy:

* :class:`InputDataMissing`: a stats input lacks sample size.  Signals
  degrade (the sub-metric is omitted and clarity drops); nothing fails.
* :class:`NoMarketData` / :class:`InvalidOdds`: the odds needed to price a
  match are absent or unusable.  The match is aborted, the batch continues.
* :class:`StatsUnavailable`: the core season-stats fetch failed.  Same
  policy as the odds failures.
* :class:`OddsUnavailable`: the odds feed for a whole sport failed.  The
  sweep records it and moves on to the next sport.
* :class:`NarrativeServiceFailure`: the narrative oracle returned nothing
  usable.  The deterministic fallback is used instead.
* :class:`PersistenceConflict`: a unique-key race at the storage boundary.
  Resolved by retrying as an update; never surfaced to callers.
* :class:`RateLimitExceeded`: a provider refused service.  Propagates to
  the sweep controller, which stops issuing provider calls.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the engine."""


class InputDataMissing(EngineError):
    """Raised when an input has too few observations to compute a sub-metric."""

    def __init__(self, field: str, message: str = ""):
        self.field = field
        super().__init__(message or f"insufficient data for {field}")


class NoMarketData(EngineError):
    """Raised when a required side of the market has no price."""


class InvalidOdds(EngineError, ValueError):
    """Raised when a decimal price is <= 1.0 or not a finite number."""


class StatsUnavailable(EngineError):
    """Raised when the critical season-stats fetch fails for a match."""


class OddsUnavailable(EngineError):
    """Raised when the odds feed cannot be reached or returns an error."""


class NarrativeServiceFailure(EngineError):
    """Raised when the narrative oracle fails or returns malformed output."""


class PersistenceConflict(EngineError):
    """Raised internally when an insert collides with a concurrent writer."""


class RateLimitExceeded(EngineError):
    """Raised when a provider rejects calls for quota or rate reasons."""

    def __init__(self, provider: str, remaining: int | None = None):
        self.provider = provider
        self.remaining = remaining
        detail = f" ({remaining} requests remaining)" if remaining is not None else ""
        super().__init__(f"{provider} rate limit exceeded{detail}")
