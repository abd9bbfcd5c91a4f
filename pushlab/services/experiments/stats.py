import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from scipy import stats as scipy_stats


@dataclass
class VariantCounts:
    name: str
    impressions: int
    successes: int  # Count for the experiment's primary metric

    @property
    def rate(self) -> Optional[float]:
        if self.impressions <= 0:
            return None
        return self.successes / self.impressions


@dataclass
class LeaderSignificance:
    leader: str
    runner_up: str
    z_score: float
    p_value: float
    alpha: float
    is_significant: bool


def determine_winner(variants: Sequence[VariantCounts]) -> Optional[str]:
    """
    Pick the variant with the strictly greatest primary-metric rate.

    Variants without impressions are skipped. Ties keep the variant seen
    first. Returns None when no variant has impressions.
    """
    best_rate = -1.0
    winner = None

    for variant in variants:
        rate = variant.rate
        if rate is None:
            continue
        if rate > best_rate:
            best_rate = rate
            winner = variant.name

    return winner


def rank_variants(variants: Sequence[VariantCounts]) -> List[VariantCounts]:
    """Variants with impressions, best rate first (stable for ties)."""
    scored = [v for v in variants if v.rate is not None]
    return sorted(scored, key=lambda v: v.rate, reverse=True)


def calculate_pooled_proportion(a: VariantCounts, b: VariantCounts) -> float:
    total_successes = a.successes + b.successes
    total_impressions = a.impressions + b.impressions

    if total_impressions == 0:
        return 0.0

    return total_successes / total_impressions


def run_proportion_z_test(a: VariantCounts, b: VariantCounts) -> Tuple[float, float]:
    """Two-proportion z-test of ``a`` against ``b``; returns (z, two-tailed p)."""
    if a.impressions <= 0 or b.impressions <= 0:
        return 0.0, 1.0

    p_pooled = calculate_pooled_proportion(a, b)
    se = math.sqrt(p_pooled * (1 - p_pooled) * (1 / a.impressions + 1 / b.impressions))

    if se == 0:
        return 0.0, 1.0

    z_score = (a.rate - b.rate) / se

    # Two-tailed p-value
    p_value = 2 * (1 - scipy_stats.norm.cdf(abs(z_score)))

    return z_score, p_value


def leader_significance(
    variants: Sequence[VariantCounts], confidence_threshold: int
) -> Optional[LeaderSignificance]:
    """
    Test the current leader against the runner-up.

    Informational only: ``confidence_threshold`` (80-99) sets alpha, but the
    result never changes which variant wins. Needs at least two variants
    with impressions.
    """
    ranked = rank_variants(variants)
    if len(ranked) < 2:
        return None

    leader, runner_up = ranked[0], ranked[1]
    alpha = 1 - confidence_threshold / 100
    z_score, p_value = run_proportion_z_test(leader, runner_up)

    return LeaderSignificance(
        leader=leader.name,
        runner_up=runner_up.name,
        z_score=z_score,
        p_value=p_value,
        alpha=alpha,
        is_significant=p_value <= alpha,
    )
