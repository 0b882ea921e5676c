"""Core mathematics, records and configuration for the edge scoring engine.

This package contains pure building blocks:

- ``odds_math``: American / decimal / implied-probability conversion,
  parlay combination, payout
- ``records``: frozen DTOs for quotes, picks, settlements and runs
- ``scoring_config``: engine weights, penalty rules, confidence tiers
- ``errors``: the validation error taxonomy

Nothing in this package imports from ``edge_engine.services`` or
``edge_engine.models``.  All modules are side-effect-free and unit-testable
in isolation.
"""
