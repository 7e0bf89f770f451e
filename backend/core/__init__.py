"""Core mathematics and configuration for the match edge engine.

This package contains pure, sport-agnostic building blocks:

- ``errors``      : exception taxonomy and handling policy
- ``sport_config``: per-sport and per-league constants, thresholds, caps
- ``odds_math``   : price validation, margin removal, consensus averaging
- ``signals``     : raw match data → five universal signals
- ``market_intel``: model probability, calibration, edges, line movement
- ``conviction``  : conviction caps and value-bet qualification

Nothing in this package imports from ``backend.services`` or ``backend.models``.
All modules are side-effect-free and unit-testable in isolation.
"""
