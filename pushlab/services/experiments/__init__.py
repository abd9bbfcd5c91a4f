"""
Push notification experiments.

This module provides:
- Weighted, shuffled allocation of device handles across variants
- Experiment lifecycle (draft, active, paused, completed, cancelled)
- Atomic per-variant metric tracking and winner selection
"""

from pushlab.services.experiments.allocation import WeightedVariant, allocate
from pushlab.services.experiments.service import ExperimentService
from pushlab.services.experiments.stats import (
    VariantCounts,
    determine_winner,
    leader_significance,
    run_proportion_z_test,
)

__all__ = [
    "allocate",
    "WeightedVariant",
    "VariantCounts",
    "determine_winner",
    "leader_significance",
    "run_proportion_z_test",
    "ExperimentService",
]
